""" 可微接触约束：表示一个已求解约束的一个标量力方向（接触的法向或某个摩擦切向），
给出接触几何（位置、法向、力方向）对任意自由度的解析梯度，进而给出广义约束力及其导数，
并组装骨架/世界级别的雅可比矩阵；每个解析梯度都配有暴力有限差分版本用于校验。

约定：
1. 自由度对接触的因果关系（DofContactType）由它是A、B、两者还是都不是的运动学祖先决定；
   只是A的祖先：FACE_VERTEX → FACE，VERTEX_FACE → VERTEX，EDGE_EDGE → EDGE_B；
   只是B的祖先：FACE_VERTEX → VERTEX，VERTEX_FACE → FACE，EDGE_EDGE → EDGE_A；
2. 自由度沿其世界旋量轴转动θ时，刚体上的点 p 的导数为 w × p + v，方向 d 的导数为 w × d；
3. 世界力旋量 F = [p × d; d]，广义约束力 = 力倍数 × ξ_dof · F，
   力倍数：只是A的祖先为+1，只是B的祖先为-1，其余为0（非接触约束恒为1）；
4. 后代自由度的世界旋量轴在祖先自由度扰动下的导数为 ad(ξ_祖先, ξ_后代)。
接触记录按值拷贝保存，扰动世界状态后仍保持原值；旋量轴则总是读取世界的当前状态。 """
from typing import NamedTuple
import torch

from diff_dynamics.collision.contact import ContactType, DofContactType
from diff_dynamics.constraints.contact_constraint import (
    get_tangent_basis_matrix_ode, get_tangent_basis_matrix_ode_gradient
)
from diff_dynamics.dynamics.skeleton import Skeleton
from diff_dynamics.neural.restorable_snapshot import RestorableSnapshot
from diff_dynamics.utils.geometry_utils import (
    DTYPE, AdT, ad, exp_map, get_contact_point, get_contact_point_gradient, gradient_wrt_theta,
    gradient_wrt_theta_pure_rotation, normalize_gradient, rotate_vector, transform_point
)

EPS = 1e-6
CONSTRAINT_FORCES_EPS = 1e-7


class EdgeData(NamedTuple):
    edge_a_pos: torch.Tensor
    edge_a_dir: torch.Tensor
    edge_b_pos: torch.Tensor
    edge_b_dir: torch.Tensor


def _zeros(*shape):
    return torch.zeros(shape, dtype=DTYPE)


def _dofs_of(target):
    """World / Skeleton / 骨架列表 → 自由度列表（按世界顺序）"""
    if isinstance(target, Skeleton):
        return target.get_dofs()
    if isinstance(target, (list, tuple)):
        return [dof for skeleton in target for dof in skeleton.get_dofs()]
    if hasattr(target, "get_dofs"):
        return target.get_dofs()
    raise ValueError(f"Cannot enumerate dofs of {target}")


class DifferentiableContactConstraint(object):
    def __init__(self, constraint, index):
        """
        Args:
            constraint (Constraint): 本时间步求解过的约束
            index (int): 约束内序号（0为法向，>0为摩擦切向）
        """
        if constraint is None:
            raise ValueError("A differentiable contact constraint needs an underlying constraint")
        if index < 0 or index >= constraint.get_dimension():
            raise ValueError(f"Index {index} out of range for a constraint of dimension {constraint.get_dimension()}")
        self.constraint = constraint
        self.index = index
        self.contact = constraint.contact.copy() if constraint.is_contact_constraint() else None
        self.skeleton_names = [skeleton.name for skeleton in constraint.get_skeletons()]
        self.offset_into_world = -1
        self.is_upper_bound = False

    # ------------------------------------------------------------------
    # 记账
    # ------------------------------------------------------------------
    def get_constraint(self):
        return self.constraint

    def get_index_in_constraint(self):
        return self.index

    def get_skeleton_names(self):
        return list(self.skeleton_names)

    def set_offset_into_world(self, offset, is_upper_bound):
        self.offset_into_world = offset
        self.is_upper_bound = is_upper_bound

    def get_offset_into_world(self):
        return self.offset_into_world

    def is_upper_bound_constraint(self):
        return self.is_upper_bound

    def get_peer_constraint(self, snapshot):
        """在另一个（扰动后重新仿真的）快照中找到对应同一接触、同一方向的约束"""
        constraints = (snapshot.get_upper_bound_constraints() if self.is_upper_bound
                       else snapshot.get_clamping_constraints())
        if self.offset_into_world < 0 or self.offset_into_world >= len(constraints):
            raise ValueError(f"No peer for constraint at offset {self.offset_into_world}: "
                             f"the perturbed snapshot has {len(constraints)} such constraints")
        return constraints[self.offset_into_world]

    def is_contact(self):
        return self.contact is not None

    # ------------------------------------------------------------------
    # 接触几何
    # ------------------------------------------------------------------
    def get_contact_world_position(self):
        return self.contact.point if self.contact is not None else _zeros(3)

    def get_contact_world_normal(self):
        return self.contact.normal if self.contact is not None else _zeros(3)

    def get_contact_world_force_direction(self):
        if self.contact is None:
            return _zeros(3)
        if self.index == 0:
            return self.contact.normal
        return get_tangent_basis_matrix_ode(self.contact.normal)[:, self.index - 1]

    def get_world_force(self):
        """世界坐标系力旋量 [p × d; d]"""
        if self.contact is None:
            return _zeros(6)
        direction = self.get_contact_world_force_direction()
        return torch.cat([torch.cross(self.get_contact_world_position(), direction, dim=0), direction])

    def get_contact_type(self):
        return self.contact.type if self.contact is not None else ContactType.UNSUPPORTED

    def get_edges(self):
        if self.contact is None or self.contact.type != ContactType.EDGE_EDGE:
            return EdgeData(_zeros(3), _zeros(3), _zeros(3), _zeros(3))
        return EdgeData(self.contact.edge_a_fixed_point, self.contact.edge_a_dir,
                        self.contact.edge_b_fixed_point, self.contact.edge_b_dir)

    # ------------------------------------------------------------------
    # 因果关系
    # ------------------------------------------------------------------
    @staticmethod
    def is_parent(dof, body):
        """dof是否是body的运动学祖先（属于body到根节点路径上的某个关节）"""
        if dof is None or body is None:
            raise ValueError("is_parent needs a dof and a body node")
        joint = body.get_parent_joint()
        if dof.get_skeleton() is not body.get_skeleton() or dof.get_skeleton().name != body.get_skeleton().name:
            return False
        if dof.get_tree_index() != joint.get_tree_index():
            return False
        if dof.get_index_in_tree() > joint.get_index_in_tree():
            return False
        while joint is not None:
            if dof.get_joint() is joint:
                return True
            parent = joint.get_parent_body_node()
            joint = parent.get_parent_joint() if parent is not None else None
        return False

    @staticmethod
    def is_parent_dof(parent, child):
        """parent扰动时child的世界旋量轴是否随之运动（同一关节内仅序号更小的自由度）"""
        if parent is None or child is None:
            raise ValueError("is_parent_dof needs two dofs")
        if parent.get_joint() is child.get_joint():
            return parent.get_index_in_joint() < child.get_index_in_joint()
        parent_body = child.get_joint().get_parent_body_node()
        if parent_body is None:
            return False
        return DifferentiableContactConstraint.is_parent(parent, parent_body)

    def get_dof_contact_type(self, dof):
        if self.contact is None:
            return DofContactType.UNSUPPORTED
        is_parent_a = self.is_parent(dof, self.contact.body_node_a)
        is_parent_b = self.is_parent(dof, self.contact.body_node_b)
        contact_type = self.contact.type

        if is_parent_a and is_parent_b:
            if contact_type in (ContactType.FACE_VERTEX, ContactType.VERTEX_FACE):
                return DofContactType.VERTEX_FACE_SELF_COLLISION
            if contact_type == ContactType.EDGE_EDGE:
                return DofContactType.EDGE_EDGE_SELF_COLLISION
            return DofContactType.UNSUPPORTED
        if is_parent_a:
            return {
                ContactType.FACE_VERTEX: DofContactType.FACE,
                ContactType.VERTEX_FACE: DofContactType.VERTEX,
                ContactType.EDGE_EDGE: DofContactType.EDGE_B,
            }.get(contact_type, DofContactType.UNSUPPORTED)
        if is_parent_b:
            return {
                ContactType.FACE_VERTEX: DofContactType.VERTEX,
                ContactType.VERTEX_FACE: DofContactType.FACE,
                ContactType.EDGE_EDGE: DofContactType.EDGE_A,
            }.get(contact_type, DofContactType.UNSUPPORTED)
        return DofContactType.NONE

    def get_force_multiple(self, dof):
        if self.contact is None:
            return 1.0
        is_parent_a = self.is_parent(dof, self.contact.body_node_a)
        is_parent_b = self.is_parent(dof, self.contact.body_node_b)
        if is_parent_a and not is_parent_b:
            return 1.0
        if is_parent_b and not is_parent_a:
            return -1.0
        return 0.0

    @staticmethod
    def get_world_screw_axis(dof):
        return dof.get_skeleton().get_world_screw_axis(dof)

    # ------------------------------------------------------------------
    # 解析梯度
    # ------------------------------------------------------------------
    def get_edge_gradient(self, dof):
        zero = _zeros(3)
        dof_type = self.get_dof_contact_type(dof)
        edges = self.get_edges()
        move_a = dof_type in (DofContactType.EDGE_A, DofContactType.EDGE_EDGE_SELF_COLLISION)
        move_b = dof_type in (DofContactType.EDGE_B, DofContactType.EDGE_EDGE_SELF_COLLISION)
        if not move_a and not move_b:
            return EdgeData(zero, zero, zero, zero)
        screw = self.get_world_screw_axis(dof)
        if move_a:
            a_pos = gradient_wrt_theta(screw, edges.edge_a_pos)
            a_dir = gradient_wrt_theta_pure_rotation(screw[:3], edges.edge_a_dir)
        else:
            a_pos, a_dir = zero, zero
        if move_b:
            b_pos = gradient_wrt_theta(screw, edges.edge_b_pos)
            b_dir = gradient_wrt_theta_pure_rotation(screw[:3], edges.edge_b_dir)
        else:
            b_pos, b_dir = zero, zero
        return EdgeData(a_pos, a_dir, b_pos, b_dir)

    def get_contact_position_gradient(self, dof):
        dof_type = self.get_dof_contact_type(dof)
        if dof_type in (DofContactType.VERTEX, DofContactType.VERTEX_FACE_SELF_COLLISION,
                        DofContactType.EDGE_EDGE_SELF_COLLISION):
            return gradient_wrt_theta(self.get_world_screw_axis(dof), self.get_contact_world_position())
        if dof_type in (DofContactType.EDGE_A, DofContactType.EDGE_B):
            edges = self.get_edges()
            d = self.get_edge_gradient(dof)
            return get_contact_point_gradient(edges.edge_a_pos, d.edge_a_pos, edges.edge_a_dir, d.edge_a_dir,
                                              edges.edge_b_pos, d.edge_b_pos, edges.edge_b_dir, d.edge_b_dir)
        return _zeros(3)

    def get_contact_normal_gradient(self, dof):
        dof_type = self.get_dof_contact_type(dof)
        if dof_type in (DofContactType.FACE, DofContactType.VERTEX_FACE_SELF_COLLISION,
                        DofContactType.EDGE_EDGE_SELF_COLLISION):
            return gradient_wrt_theta_pure_rotation(self.get_world_screw_axis(dof)[:3], self.get_contact_world_normal())
        if dof_type in (DofContactType.EDGE_A, DofContactType.EDGE_B):
            edges = self.get_edges()
            d = self.get_edge_gradient(dof)
            raw = torch.cross(edges.edge_a_dir, edges.edge_b_dir, dim=0)
            raw_gradient = (torch.cross(d.edge_a_dir, edges.edge_b_dir, dim=0)
                            + torch.cross(edges.edge_a_dir, d.edge_b_dir, dim=0))
            return normalize_gradient(raw, raw_gradient)
        return _zeros(3)

    def get_contact_force_gradient(self, dof):
        """力方向（法向或切向）的梯度"""
        normal_gradient = self.get_contact_normal_gradient(dof)
        if self.index == 0:
            return normal_gradient
        return get_tangent_basis_matrix_ode_gradient(self.get_contact_world_normal(), normal_gradient)[:, self.index - 1]

    def get_contact_world_force_gradient(self, dof):
        """世界力旋量的梯度 [p × dd + dp × d; dd]"""
        if self.contact is None:
            return _zeros(6)
        position = self.get_contact_world_position()
        direction = self.get_contact_world_force_direction()
        d_position = self.get_contact_position_gradient(dof)
        d_direction = self.get_contact_force_gradient(dof)
        return torch.cat([
            torch.cross(position, d_direction, dim=0) + torch.cross(d_position, direction, dim=0),
            d_direction,
        ])

    def get_screw_axis_gradient(self, dof, wrt):
        """wrt扰动时dof世界旋量轴的导数"""
        if not self.is_parent_dof(wrt, dof):
            return _zeros(6)
        return ad(self.get_world_screw_axis(wrt), self.get_world_screw_axis(dof))

    # ------------------------------------------------------------------
    # 广义约束力
    # ------------------------------------------------------------------
    def _get_constraint_row(self, world):
        return self.constraint.J(world)[self.index]

    def get_constraint_force(self, dof):
        if self.contact is None:
            world = dof.get_skeleton().world
            return self._get_constraint_row(world)[world.get_world_dof_index(dof)]
        multiple = self.get_force_multiple(dof)
        if multiple == 0.0:
            return torch.zeros((), dtype=DTYPE)
        return torch.dot(self.get_world_screw_axis(dof), self.get_world_force()) * multiple

    def get_constraint_force_derivative(self, dof, wrt):
        if self.contact is None:
            return torch.zeros((), dtype=DTYPE)
        multiple = self.get_force_multiple(dof)
        if multiple == 0.0:
            return torch.zeros((), dtype=DTYPE)
        screw = self.get_world_screw_axis(dof)
        d_screw = self.get_screw_axis_gradient(dof, wrt)
        return multiple * (torch.dot(screw, self.get_contact_world_force_gradient(wrt))
                           + torch.dot(d_screw, self.get_world_force()))

    def get_constraint_forces(self, target):
        """
        约束方向对应的广义力向量（接触约束为 J_A^T F - J_B^T F 在target自由度上的分量，非接触约束为约束雅可比行）
        Args:
            target: World或Skeleton
        """
        dofs = _dofs_of(target)
        if not dofs:
            return _zeros(0)
        if self.contact is None:
            world = dofs[0].get_skeleton().world
            row = self._get_constraint_row(world)
            return torch.stack([row[world.get_world_dof_index(dof)] for dof in dofs])
        return torch.stack([self.get_constraint_force(dof) for dof in dofs])

    def get_constraint_forces_jacobian(self, target, wrt=None):
        """
        广义约束力对位置的雅可比，[i, j] = d(约束力_i)/d(q_j)
        Args:
            target: 行对应的 World / Skeleton / 骨架列表
            wrt: 列对应的 World / Skeleton / 骨架列表，默认与target相同
        """
        rows = _dofs_of(target)
        cols = rows if wrt is None else _dofs_of(wrt)
        result = _zeros(len(rows), len(cols))
        if self.contact is None or not rows or not cols:
            return result
        return torch.stack([
            torch.stack([self.get_constraint_force_derivative(dof, other) for other in cols])
            for dof in rows
        ])

    # ------------------------------------------------------------------
    # 几何雅可比
    # ------------------------------------------------------------------
    def _stack_columns(self, columns, height):
        if not columns:
            return _zeros(height, 0)
        return torch.stack(columns, dim=1)

    def get_contact_position_jacobian(self, target):
        return self._stack_columns([self.get_contact_position_gradient(dof) for dof in _dofs_of(target)], 3)

    def get_contact_force_direction_jacobian(self, target):
        return self._stack_columns([self.get_contact_force_gradient(dof) for dof in _dofs_of(target)], 3)

    def get_contact_force_jacobian(self, target):
        return self._stack_columns([self.get_contact_world_force_gradient(dof) for dof in _dofs_of(target)], 6)

    # ------------------------------------------------------------------
    # 一阶扰动估计（解析）
    # ------------------------------------------------------------------
    def estimate_perturbed_screw_axis(self, axis, rotate, eps=EPS):
        """rotate沿自身旋量转动eps后，axis世界旋量轴的一阶估计"""
        screw = self.get_world_screw_axis(axis)
        if not self.is_parent_dof(rotate, axis):
            return screw
        return AdT(exp_map(self.get_world_screw_axis(rotate) * eps), screw)

    def estimate_perturbed_edges(self, dof, eps=EPS):
        edges = self.get_edges()
        dof_type = self.get_dof_contact_type(dof)
        move_a = dof_type in (DofContactType.EDGE_A, DofContactType.EDGE_EDGE_SELF_COLLISION)
        move_b = dof_type in (DofContactType.EDGE_B, DofContactType.EDGE_EDGE_SELF_COLLISION)
        if not move_a and not move_b:
            return edges
        T = exp_map(self.get_world_screw_axis(dof) * eps)
        a_pos, a_dir = edges.edge_a_pos, edges.edge_a_dir
        b_pos, b_dir = edges.edge_b_pos, edges.edge_b_dir
        if move_a:
            a_pos, a_dir = transform_point(T, a_pos), rotate_vector(T, a_dir)
        if move_b:
            b_pos, b_dir = transform_point(T, b_pos), rotate_vector(T, b_dir)
        return EdgeData(a_pos, a_dir, b_pos, b_dir)

    def estimate_perturbed_contact_position(self, dof, eps=EPS):
        dof_type = self.get_dof_contact_type(dof)
        position = self.get_contact_world_position()
        if dof_type in (DofContactType.VERTEX, DofContactType.VERTEX_FACE_SELF_COLLISION,
                        DofContactType.EDGE_EDGE_SELF_COLLISION):
            return transform_point(exp_map(self.get_world_screw_axis(dof) * eps), position)
        if dof_type in (DofContactType.EDGE_A, DofContactType.EDGE_B):
            edges = self.estimate_perturbed_edges(dof, eps)
            return get_contact_point(edges.edge_a_pos, edges.edge_a_dir, edges.edge_b_pos, edges.edge_b_dir)
        return position

    def estimate_perturbed_contact_normal(self, dof, eps=EPS):
        dof_type = self.get_dof_contact_type(dof)
        normal = self.get_contact_world_normal()
        if dof_type in (DofContactType.FACE, DofContactType.VERTEX_FACE_SELF_COLLISION,
                        DofContactType.EDGE_EDGE_SELF_COLLISION):
            return rotate_vector(exp_map(self.get_world_screw_axis(dof) * eps), normal)
        if dof_type in (DofContactType.EDGE_A, DofContactType.EDGE_B):
            edges = self.estimate_perturbed_edges(dof, eps)
            raw = torch.cross(edges.edge_a_dir, edges.edge_b_dir, dim=0)
            return raw / torch.linalg.norm(raw)
        return normal

    def estimate_perturbed_contact_force_direction(self, dof, eps=EPS):
        normal = self.estimate_perturbed_contact_normal(dof, eps)
        if self.index == 0 or self.contact is None:
            return normal
        return get_tangent_basis_matrix_ode(normal)[:, self.index - 1]

    # ------------------------------------------------------------------
    # 暴力有限差分
    # ------------------------------------------------------------------
    def _perturbed_peer(self, world, positions):
        """把世界设到positions重新推进一步，返回对应的约束；世界位置留在positions（旋量轴按扰动后的状态读取）"""
        from diff_dynamics.neural.neural_utils import forward_pass

        world.set_positions(positions)
        snapshot = forward_pass(world, assemble_backprop_snapshot=True)
        world.set_positions(positions)
        return self.get_peer_constraint(snapshot)

    def _perturbed_positions(self, world, dof, eps):
        positions = world.get_positions().clone()
        index = torch.tensor([world.get_world_dof_index(dof)], device=positions.device)
        return positions + torch.zeros_like(positions).index_fill(0, index, eps)

    def brute_force_perturbed_contact_position(self, world, dof, eps=EPS):
        with RestorableSnapshot(world):
            return self._perturbed_peer(world, self._perturbed_positions(world, dof, eps)).get_contact_world_position()

    def brute_force_perturbed_contact_normal(self, world, dof, eps=EPS):
        with RestorableSnapshot(world):
            return self._perturbed_peer(world, self._perturbed_positions(world, dof, eps)).get_contact_world_normal()

    def brute_force_perturbed_contact_force_direction(self, world, dof, eps=EPS):
        with RestorableSnapshot(world):
            peer = self._perturbed_peer(world, self._perturbed_positions(world, dof, eps))
            return peer.get_contact_world_force_direction()

    def brute_force_edges(self, world, dof, eps=EPS):
        with RestorableSnapshot(world):
            return self._perturbed_peer(world, self._perturbed_positions(world, dof, eps)).get_edges()

    def brute_force_screw_axis(self, world, axis, rotate, eps=EPS):
        with RestorableSnapshot(world):
            world.set_positions(self._perturbed_positions(world, rotate, eps))
            return self.get_world_screw_axis(axis).clone()

    def _brute_force_jacobian(self, world, quantity, eps):
        """对世界每个自由度做前向差分：(quantity(peer@q+eps) - quantity(self@q)) / eps"""
        original = quantity(self)
        columns = []
        for dof in world.get_dofs():
            with RestorableSnapshot(world):
                peer = self._perturbed_peer(world, self._perturbed_positions(world, dof, eps))
                columns.append((quantity(peer) - original) / eps)
        return self._stack_columns(columns, original.shape[0])

    def brute_force_contact_position_jacobian(self, world):
        return self._brute_force_jacobian(world, lambda c: c.get_contact_world_position(), EPS)

    def brute_force_contact_force_direction_jacobian(self, world):
        return self._brute_force_jacobian(world, lambda c: c.get_contact_world_force_direction(), EPS)

    def brute_force_contact_force_jacobian(self, world):
        return self._brute_force_jacobian(world, lambda c: c.get_world_force(), EPS)

    def brute_force_constraint_forces_jacobian(self, world):
        return self._brute_force_jacobian(world, lambda c: c.get_constraint_forces(world), CONSTRAINT_FORCES_EPS)

    def __repr__(self):
        return (f"DifferentiableContactConstraint(index={self.index}, type={self.get_contact_type().name}, "
                f"offset={self.offset_into_world}, upper_bound={self.is_upper_bound})")
