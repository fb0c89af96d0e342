""" 把一个仿真时间步封装为torch.autograd.Function：
前向用forward_pass推进世界并记录BackpropSnapshot，反向用快照的雅可比矩阵把梯度传回上一步的(q, v, τ)，
从而可以把多个时间步串成一条可微轨迹，直接对损失调用backward()。 """
import torch
from torch.autograd import Function

from diff_dynamics.neural.neural_utils import LossGradient, forward_pass


class TimestepFunction(Function):
    @staticmethod
    def forward(ctx, world, positions, velocities, torques):
        """
        Args:
            world (World): 世界
            positions, velocities, torques: 本步输入（形状[n]）
        Returns:
            (推进后的位置, 推进后的速度)
        """
        world.set_positions(positions.detach())
        world.set_velocities(velocities.detach())
        world.set_forces(torques.detach())
        ctx.world = world
        ctx.snapshot = forward_pass(world, assemble_backprop_snapshot=True)
        return world.get_positions().clone(), world.get_velocities().clone()

    @staticmethod
    def backward(ctx, grad_positions, grad_velocities):
        world = ctx.world
        n = world.get_num_dofs()
        next_timestep_loss = LossGradient.zeros(n, world.device)
        if grad_positions is not None:
            next_timestep_loss.loss_wrt_position = grad_positions
        if grad_velocities is not None:
            next_timestep_loss.loss_wrt_velocity = grad_velocities
        this_timestep_loss = ctx.snapshot.backprop(world, LossGradient.zeros(n, world.device), next_timestep_loss)
        return (None, this_timestep_loss.loss_wrt_position, this_timestep_loss.loss_wrt_velocity,
                this_timestep_loss.loss_wrt_torque)


def timestep(world, positions, velocities, torques):
    """可微分的单步仿真，返回 (位置, 速度)"""
    return TimestepFunction.apply(world, positions, velocities, torques)


def rollout(world, positions, velocities, torques_list):
    """
    按力矩序列连续推进，返回每一步之后的 (位置, 速度) 列表
    Args:
        torques_list: 每个时间步的力矩（形状[n]）
    """
    trajectory = []
    for torques in torques_list:
        positions, velocities = timestep(world, positions, velocities, torques)
        trajectory.append((positions, velocities))
    return trajectory
