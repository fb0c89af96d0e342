""" 接触约束：一个接触对应LCP中的1个法向行，摩擦系数大于0时再加2个双向摩擦行。
约束方向d（法向n或切向t）对应的世界坐标系力旋量 F = [p × d; d]，
约束行 = J_A^T F - J_B^T F，即 “A上接触点相对B上接触点的速度在d方向的分量”。
切向基沿用ODE的构造：t = normalize(Z × n)（|Z × n| < 1e-6时改用X轴），T = [t, n × t]。 """
import math
import torch

from diff_dynamics.constraints.base import Constraint, ConstraintKind
from diff_dynamics.utils.geometry_utils import normalize_gradient

_PARALLEL_THRESHOLD = 1e-6


def _tangent_seed(normal):
    """切向基的参考轴：默认Z轴，法向接近Z轴时改用X轴"""
    seed = torch.tensor([0.0, 0.0, 1.0], dtype=normal.dtype, device=normal.device)
    if torch.linalg.norm(torch.cross(seed, normal, dim=0)) < _PARALLEL_THRESHOLD:
        seed = torch.tensor([1.0, 0.0, 0.0], dtype=normal.dtype, device=normal.device)
    return seed


def get_tangent_basis_matrix_ode(normal):
    """
    ODE风格的摩擦切向基
    Args:
        normal: 单位法向（形状[3]）
    Returns:
        Tensor，形状[3, 2]，两列为相互正交且与法向正交的单位切向
    """
    t_raw = torch.cross(_tangent_seed(normal), normal, dim=0)
    t = t_raw / torch.linalg.norm(t_raw)
    return torch.stack([t, torch.cross(normal, t, dim=0)], dim=1)


def get_tangent_basis_matrix_ode_gradient(normal, normal_gradient):
    """
    切向基对法向扰动的一阶导数（参考轴的选择在扰动下保持不变）
    Args:
        normal: 单位法向
        normal_gradient: 法向的导数
    Returns:
        Tensor，形状[3, 2]
    """
    if float(torch.dot(normal_gradient, normal_gradient)) <= 1e-12:
        return torch.zeros((3, 2), dtype=normal.dtype, device=normal.device)
    seed = _tangent_seed(normal)
    t_raw = torch.cross(seed, normal, dim=0)
    t = t_raw / torch.linalg.norm(t_raw)
    dt = normalize_gradient(t_raw, torch.cross(seed, normal_gradient, dim=0))
    d_second = torch.cross(normal_gradient, t, dim=0) + torch.cross(normal, dt, dim=0)
    return torch.stack([dt, d_second], dim=1)


class ContactConstraint(Constraint):
    """
    刚体A与刚体B之间一个接触点的约束
    """

    kind = ConstraintKind.CONTACT

    def __init__(self, contact):
        """
        Args:
            contact (Contact): 碰撞检测生成的接触记录（法向从B指向A）
        """
        self.contact = contact
        self.body_node_a = contact.body_node_a
        self.body_node_b = contact.body_node_b
        self.friction_coefficient = min(float(self.body_node_a.friction_coefficient),
                                        float(self.body_node_b.friction_coefficient))
        super().__init__(constraint_dim=3 if self.friction_coefficient > 0.0 else 1)

    def get_body_node_a(self):
        return self.body_node_a

    def get_body_node_b(self):
        return self.body_node_b

    def get_num_tangent_directions(self):
        return self.constraint_dim - 1

    def get_force_direction(self, index):
        """第index个约束方向（0为法向，>0为切向）"""
        if index == 0:
            return self.contact.normal
        return get_tangent_basis_matrix_ode(self.contact.normal)[:, index - 1]

    def get_world_wrench(self, index):
        direction = self.get_force_direction(index)
        return torch.cat([torch.cross(self.contact.point, direction, dim=0), direction])

    def J(self, world):
        rows = []
        for index in range(self.constraint_dim):
            wrench = self.get_world_wrench(index)
            row = world.get_body_jacobian(self.body_node_a).transpose(0, 1) @ wrench
            row = row - world.get_body_jacobian(self.body_node_b).transpose(0, 1) @ wrench
            rows.append(row)
        return torch.stack(rows, dim=0)

    def get_bounds(self):
        mu = self.friction_coefficient
        lo, hi, findex, mus = [0.0], [math.inf], [-1], [0.0]
        for _ in range(self.get_num_tangent_directions()):
            lo.append(-mu)
            hi.append(mu)
            findex.append(0)
            mus.append(mu)
        return lo, hi, findex, mus

    def get_skeletons(self):
        skeletons = [self.body_node_a.skeleton]
        if self.body_node_b.skeleton is not self.body_node_a.skeleton:
            skeletons.append(self.body_node_b.skeleton)
        return skeletons

    def __repr__(self):
        return f"ContactConstraint({self.contact}, mu={self.friction_coefficient})"
