""" 约束基础定义：ConstraintKind枚举区分约束种类（接触/关节限位/其它），Constraint抽象基类封装约束维度与
边界语义，子类通过J方法给出约束在广义速度空间中的方向（行向量），由ConstraintSolver拼成LCP：
A = J M^-1 J^T，b = -J v_free，w = A x - b，x ∈ [lo, hi]（摩擦行的上下界为 ±mu·|x[findex]|）。 """
from abc import ABCMeta, abstractmethod
from enum import Enum
import math


class ConstraintKind(Enum):
    """
    约束种类枚举：只有CONTACT携带接触几何，其它种类的几何查询返回零/UNSUPPORTED
    """
    # 接触约束：1个法向 + 摩擦时2个切向
    CONTACT = 0
    # 关节限位：越限自由度各1行
    JOINT_LIMIT = 1
    # 其它约束
    OTHER = 2


class Constraint(metaclass=ABCMeta):
    """
    约束抽象基类，所有具体约束（接触约束、关节限位约束）的父类
    """

    kind = ConstraintKind.OTHER

    def __init__(self, constraint_dim):
        """
        Args:
            constraint_dim: 约束维度（LCP中占用的行数）
        """
        self.id = None  # 约束在本时间步约束列表中的序号
        self.constraint_dim = constraint_dim

    def get_dimension(self):
        return self.constraint_dim

    @abstractmethod
    def J(self, world):
        """
        计算约束雅可比
        Args:
            world (World): 世界（提供自由度编号与当前运动学状态）
        Returns:
            Tensor，形状[constraint_dim, world.get_num_dofs()]
        """
        pass

    def get_bounds(self):
        """
        LCP边界，默认单边约束 x ≥ 0
        Returns:
            (lo, hi, findex, mu)：lo/hi/mu为长度constraint_dim的列表，findex为摩擦行对应的法向行在本约束内的序号（-1表示无）
        """
        n = self.constraint_dim
        return [0.0] * n, [math.inf] * n, [-1] * n, [0.0] * n

    @abstractmethod
    def get_skeletons(self):
        """约束涉及的骨架列表（按出现顺序，去重）"""
        pass

    def is_contact_constraint(self):
        return self.kind == ConstraintKind.CONTACT

    def set_id(self, id):
        self.id = id
