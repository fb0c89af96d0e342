import torch

from diff_dynamics.neural.autograd import rollout, timestep
from diff_dynamics.neural.neural_utils import forward_pass

from conftest import assert_close, set_pre_step_state


def _inputs(world):
    positions = world.get_positions().clone().requires_grad_(True)
    velocities = world.get_velocities().clone().requires_grad_(True)
    torques = world.get_forces().clone().requires_grad_(True)
    return positions, velocities, torques


def test_timestep_backward_uses_snapshot_jacobians(box_world):
    positions, velocities, torques = _inputs(box_world)
    new_positions, new_velocities = timestep(box_world, positions, velocities, torques)
    (new_positions[2] + new_velocities[0]).backward()

    box_world.set_positions(positions.detach())
    box_world.set_velocities(velocities.detach())
    box_world.set_forces(torques.detach())
    box_world.cur_time = 0.0
    snapshot = forward_pass(box_world)
    set_pre_step_state(box_world, snapshot)
    expected_position = snapshot.get_pos_pos_jacobian(box_world)[2] + snapshot.get_pos_vel_jacobian(box_world)[0]
    expected_velocity = snapshot.get_vel_pos_jacobian(box_world)[2] + snapshot.get_vel_vel_jacobian(box_world)[0]
    expected_torque = snapshot.get_force_pos_jacobian(box_world)[2] + snapshot.get_force_vel_jacobian(box_world)[0]
    assert_close(positions.grad, expected_position, atol=1e-10)
    assert_close(velocities.grad, expected_velocity, atol=1e-10)
    assert_close(torques.grad, expected_torque, atol=1e-10)


def test_rollout_chains_timesteps(slider_world):
    positions, velocities, torques = _inputs(slider_world)
    trajectory = rollout(slider_world, positions, velocities, [torques, torques, torques])
    assert len(trajectory) == 3
    final_velocity = trajectory[-1][1]
    final_velocity.sum().backward()
    # 限位一直压住滑块，速度对初始速度不敏感
    assert_close(velocities.grad, torch.zeros_like(velocities.grad), atol=1e-10)
    assert torques.grad is not None
