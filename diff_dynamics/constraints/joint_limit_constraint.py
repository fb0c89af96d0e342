# 关节限位约束：自由度位置达到/越过下限时生成行 e_k（只允许向上推），达到/越过上限时生成行 -e_k，边界 [0, ∞)
import torch

from diff_dynamics.constraints.base import Constraint, ConstraintKind
from diff_dynamics.utils.geometry_utils import DTYPE


class JointLimitConstraint(Constraint):
    kind = ConstraintKind.JOINT_LIMIT

    def __init__(self, dof, sign):
        """
        Args:
            dof (DegreeOfFreedom): 越限的自由度
            sign (float): +1表示触及下限，-1表示触及上限
        """
        if dof is None:
            raise ValueError("A joint limit constraint needs a dof")
        super().__init__(constraint_dim=1)
        self.dof = dof
        self.sign = float(sign)

    def J(self, world):
        index = world.get_dof_offset(self.dof.get_skeleton()) + self.dof.get_index_in_skeleton()
        row = torch.zeros(world.get_num_dofs(), dtype=DTYPE, device=world.device)
        row = row.index_fill(0, torch.tensor([index], device=world.device), self.sign)
        return row.unsqueeze(0)

    def get_skeletons(self):
        return [self.dof.get_skeleton()]

    def __repr__(self):
        return f"JointLimitConstraint({self.dof.name}, sign={self.sign:+.0f})"


def detect_joint_limits(world):
    """
    为所有达到或越过位置上下限的自由度生成限位约束
    Args:
        world (World): 世界
    Returns:
        list[JointLimitConstraint]
    """
    constraints = []
    for dof in world.get_dofs():
        if not dof.has_position_limits():
            continue
        position = float(dof.get_position())
        if position <= dof.position_lower_limit:
            constraints.append(JointLimitConstraint(dof, 1.0))
        elif position >= dof.position_upper_limit:
            constraints.append(JointLimitConstraint(dof, -1.0))
    return constraints
