""" 关节定义：JointType枚举标识关节类型；Joint类以 “单自由度轴的指数积” 表示关节相对变换，
T_joint(q) = E_0(q_0) @ E_1(q_1) @ ... @ E_{n-1}(q_{n-1})，每个E_k为绕轴转动（REVOLUTE）或沿轴平移（PRISMATIC）。
相对雅可比（子坐标系表示）第k列：Ad_{(Π_{i>k} E_i)^-1} S_k，S_k为第k个单位旋量轴。 """
from enum import Enum
import torch

from diff_dynamics.dynamics.dof import DegreeOfFreedom
from diff_dynamics.utils.geometry_utils import (
    DTYPE, AdT, identity_transform, inverse_transform, prismatic_transform, revolute_transform
)


class JointType(Enum):
    """
    关节类型枚举
    """
    # 焊接：无自由度，子刚体与父刚体（或世界）刚性连接，如固定地面
    WELD = 0
    # 转动关节：1个绕轴转动自由度
    REVOLUTE = 1
    # 移动关节：1个沿轴平移自由度
    PRISMATIC = 2
    # 平移关节：x/y/z三个平移自由度，无转动
    TRANSLATIONAL = 3
    # 自由关节：先x/y/z平移，再x/y/z转动（XYZ欧拉角），共6个自由度
    FREE = 4


REVOLUTE_AXIS = "revolute"
PRISMATIC_AXIS = "prismatic"

_UNIT_X = (1.0, 0.0, 0.0)
_UNIT_Y = (0.0, 1.0, 0.0)
_UNIT_Z = (0.0, 0.0, 1.0)


def get_joint_axes(joint_type, axis=None):
    """
    根据关节类型生成单自由度轴列表
    Args:
        joint_type (JointType): 关节类型
        axis: REVOLUTE/PRISMATIC关节的轴方向（会被归一化），默认z轴
    Returns:
        list: [(轴类型, 单位轴Tensor)]，顺序即关节内自由度顺序
    """
    if joint_type in (JointType.REVOLUTE, JointType.PRISMATIC):
        axis = torch.as_tensor(_UNIT_Z if axis is None else axis, dtype=DTYPE)
        norm = torch.linalg.norm(axis)
        if norm < 1e-12:
            raise ValueError("Joint axis must be non-zero")
        kind = REVOLUTE_AXIS if joint_type == JointType.REVOLUTE else PRISMATIC_AXIS
        return [(kind, axis / norm)]
    if joint_type == JointType.WELD:
        return []
    translations = [(PRISMATIC_AXIS, torch.tensor(a, dtype=DTYPE)) for a in (_UNIT_X, _UNIT_Y, _UNIT_Z)]
    if joint_type == JointType.TRANSLATIONAL:
        return translations
    if joint_type == JointType.FREE:
        rotations = [(REVOLUTE_AXIS, torch.tensor(a, dtype=DTYPE)) for a in (_UNIT_X, _UNIT_Y, _UNIT_Z)]
        return translations + rotations
    raise ValueError(f"Unknown joint type: {joint_type}")


class Joint(object):
    """
    关节：连接父刚体（None表示世界）与子刚体，持有若干自由度
    """

    def __init__(self, name, joint_type, axis=None, transform_from_parent=None, device=None):
        """
        Args:
            name (str): 关节名称
            joint_type (JointType): 关节类型
            axis: REVOLUTE/PRISMATIC关节的轴（子坐标系下）
            transform_from_parent: 父刚体坐标系到关节零位坐标系的固定4x4变换，默认单位阵
            device: 计算设备
        """
        self.name = name
        self.joint_type = joint_type
        self.device = device
        self.axes = get_joint_axes(joint_type, axis)
        if transform_from_parent is None:
            transform_from_parent = identity_transform(device)
        self.transform_from_parent = torch.as_tensor(transform_from_parent, dtype=DTYPE, device=device)

        self.skeleton = None
        self.parent_body_node = None
        self.child_body_node = None
        self.tree_index = None
        self.index_in_tree = None
        self.index_in_skeleton = None
        self.dof_offset = None

        self.dofs = [DegreeOfFreedom(self, index) for index in range(len(self.axes))]

    def get_num_dofs(self):
        return len(self.dofs)

    def get_dof(self, index):
        return self.dofs[index]

    def get_skeleton(self):
        return self.skeleton

    def get_parent_body_node(self):
        return self.parent_body_node

    def get_child_body_node(self):
        return self.child_body_node

    def get_tree_index(self):
        return self.tree_index

    def get_index_in_tree(self):
        return self.index_in_tree

    def get_positions(self):
        return self.skeleton.get_positions()[self.dof_offset:self.dof_offset + self.get_num_dofs()]

    def get_screw_axis(self, index):
        """第index个自由度的单位旋量轴S_k（[角; 线]）"""
        kind, axis = self.axes[index]
        zeros = torch.zeros(3, dtype=DTYPE, device=self.device)
        if kind == REVOLUTE_AXIS:
            return torch.cat([axis, zeros])
        return torch.cat([zeros, axis])

    def _axis_transform(self, index, q):
        kind, axis = self.axes[index]
        if kind == REVOLUTE_AXIS:
            return revolute_transform(axis, q)
        return prismatic_transform(axis, q)

    def get_relative_transform(self, q=None):
        """
        关节相对变换（关节零位坐标系 → 子刚体坐标系）
        Args:
            q: 本关节的广义坐标（Tensor，形状[n]），None表示使用当前状态
        Returns:
            4x4齐次变换
        """
        if q is None:
            q = self.get_positions()
        T = identity_transform(self.device)
        for index in range(self.get_num_dofs()):
            T = T @ self._axis_transform(index, q[index])
        return T

    def get_relative_jacobian(self, q=None):
        """
        相对雅可比（子刚体坐标系表示，6 x n）：第k列为 Ad_{(Π_{i>k} E_i)^-1} S_k
        Args:
            q: 本关节的广义坐标，None表示使用当前状态
        Returns:
            Tensor，形状[6, n]
        """
        n = self.get_num_dofs()
        if n == 0:
            return torch.zeros((6, 0), dtype=DTYPE, device=self.device)
        if q is None:
            q = self.get_positions()
        columns = [None] * n
        after = identity_transform(self.device)
        for index in reversed(range(n)):
            columns[index] = AdT(inverse_transform(after), self.get_screw_axis(index))
            after = self._axis_transform(index, q[index]) @ after
        return torch.stack(columns, dim=1)

    def __repr__(self):
        return f"Joint(name={self.name}, type={self.joint_type.name}, dofs={self.get_num_dofs()})"
