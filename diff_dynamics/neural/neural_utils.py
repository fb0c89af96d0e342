# 前向推进驱动：推进世界一个时间步，并（可选）把本步的约束与状态打包成BackpropSnapshot
import torch

from diff_dynamics.neural.backprop_snapshot import BackpropSnapshot
from diff_dynamics.neural.differentiable_contact_constraint import DifferentiableContactConstraint
from diff_dynamics.solver.constraint_solver import ConstraintRowState
from diff_dynamics.utils.geometry_utils import DTYPE


class LossGradient(object):
    """损失对一个时间步输入（位置、速度、力矩）的梯度"""

    def __init__(self, loss_wrt_position=None, loss_wrt_velocity=None, loss_wrt_torque=None):
        self.loss_wrt_position = loss_wrt_position
        self.loss_wrt_velocity = loss_wrt_velocity
        self.loss_wrt_torque = loss_wrt_torque

    @classmethod
    def zeros(cls, num_dofs, device=None):
        return cls(torch.zeros(num_dofs, dtype=DTYPE, device=device),
                   torch.zeros(num_dofs, dtype=DTYPE, device=device),
                   torch.zeros(num_dofs, dtype=DTYPE, device=device))


def forward_pass(world, assemble_backprop_snapshot=True):
    """
    推进一个时间步：平滑动力学 → 盒约束LCP → 积分
    Args:
        world (World): 世界
        assemble_backprop_snapshot (bool): 是否打包反向传播快照
    Returns:
        BackpropSnapshot 或 None
    Raises:
        LcpSolveError: 所有LCP求解器都失败
    """
    pre_step_position = world.get_positions().clone()
    pre_step_velocity = world.get_velocities().clone()
    pre_step_torques = world.get_forces().clone()
    pre_step_time = world.cur_time

    world.step()
    if not assemble_backprop_snapshot:
        return None

    solution = world.constraint_solver.last_solution
    clamping, upper_bound = [], []
    clamping_impulses, upper_bound_impulses = [], []
    clamping_index_of_row = {}
    upper_bound_rows = []
    for row, (constraint, index) in enumerate(solution.rows):
        state = solution.states[row]
        if state == ConstraintRowState.CLAMPING:
            constraint_direction = DifferentiableContactConstraint(constraint, index)
            constraint_direction.set_offset_into_world(len(clamping), False)
            clamping_index_of_row[row] = len(clamping)
            clamping.append(constraint_direction)
            clamping_impulses.append(solution.x[row])
        elif state == ConstraintRowState.UPPER_BOUND:
            constraint_direction = DifferentiableContactConstraint(constraint, index)
            constraint_direction.set_offset_into_world(len(upper_bound), True)
            upper_bound.append(constraint_direction)
            upper_bound_impulses.append(solution.x[row])
            upper_bound_rows.append(row)

    # 上界约束冲量 = 比例 × 对应法向（CLAMPING）冲量
    mapping = torch.zeros((len(upper_bound), len(clamping)), dtype=DTYPE, device=world.device)
    for k, row in enumerate(upper_bound_rows):
        normal_row = solution.findex[row]
        ratio = float(solution.x[row] / solution.x[normal_row])
        mapping = mapping.index_put((torch.tensor([k]), torch.tensor([clamping_index_of_row[normal_row]])),
                                    torch.tensor([ratio], dtype=DTYPE, device=world.device))

    def _stack(values):
        if not values:
            return torch.zeros(0, dtype=DTYPE, device=world.device)
        return torch.stack(values)

    return BackpropSnapshot(
        world, pre_step_position, pre_step_velocity, pre_step_torques, world.last_unconstrained_velocities,
        clamping, upper_bound, _stack(clamping_impulses), _stack(upper_bound_impulses), mapping,
        pre_step_time=pre_step_time,
    )
