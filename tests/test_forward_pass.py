import math
import pytest
import torch

from diff_dynamics.neural.neural_utils import forward_pass
from diff_dynamics.neural.restorable_snapshot import RestorableSnapshot
from diff_dynamics.utils.geometry_utils import DTYPE

from conftest import assert_close


def test_joint_limit_holds_slider(slider_world):
    snapshot = forward_pass(slider_world)
    assert snapshot.get_num_clamping() == 1
    assert snapshot.get_num_upper_bound() == 0
    assert_close(snapshot.get_post_step_velocity(), torch.zeros(1, dtype=DTYPE), atol=1e-12)
    assert_close(snapshot.get_post_step_position(), torch.zeros(1, dtype=DTYPE), atol=1e-12)
    # 限位冲量恰好抵消一个时间步的重力冲量
    assert_close(snapshot.get_constraint_forces(slider_world), torch.tensor([9.81], dtype=DTYPE), atol=1e-9)
    assert_close(snapshot.get_constraint_forces(slider_world.get_skeleton("slider")),
                 torch.tensor([9.81], dtype=DTYPE), atol=1e-9)


def test_snapshot_records_states(box_world):
    positions = box_world.get_positions().clone()
    velocities = box_world.get_velocities().clone()
    snapshot = forward_pass(box_world)
    assert_close(snapshot.get_pre_step_position(), positions, atol=0.0)
    assert_close(snapshot.get_pre_step_velocity(), velocities, atol=0.0)
    assert_close(snapshot.get_post_step_position(), box_world.get_positions(), atol=0.0)
    assert_close(snapshot.get_post_step_velocity(), box_world.get_velocities(), atol=0.0)
    assert snapshot.get_pre_constraint_velocity().shape == (6,)
    assert math.isclose(box_world.cur_time, box_world.dtime)


def test_contact_stops_falling_corner(box_world):
    snapshot = forward_pass(box_world)
    # 接触约束满足后，角点相对地面的法向速度为0（约束方向按推进前的几何计算）
    normal_direction = snapshot.get_clamping_constraint_matrix(box_world)[:, 0]
    assert abs(float(normal_direction @ snapshot.get_post_step_velocity())) < 1e-9
    assert float(snapshot.get_clamping_constraint_impulses()[0]) > 0.0


def test_forward_pass_without_snapshot(box_world):
    assert forward_pass(box_world, assemble_backprop_snapshot=False) is None
    assert box_world.cur_time > 0.0


def test_free_fall_has_no_constraints(world):
    skeleton = world.create_skeleton("ball")
    skeleton.create_joint_and_body_node_pair(None, body_name="ball")
    snapshot = forward_pass(world)
    assert snapshot.get_num_clamping() == 0
    assert snapshot.get_upper_bound_mapping_matrix().shape == (0, 0)
    assert snapshot.get_constraint_forces(world).shape == (6,)


def test_restorable_snapshot_restores_on_exception(box_world):
    positions = box_world.get_positions().clone()
    velocities = box_world.get_velocities().clone()
    with pytest.raises(RuntimeError):
        with RestorableSnapshot(box_world):
            box_world.step()
            box_world.set_velocities(torch.ones(6, dtype=DTYPE))
            raise RuntimeError("boom")
    assert box_world.cur_time == 0.0
    assert_close(box_world.get_positions(), positions, atol=0.0)
    assert_close(box_world.get_velocities(), velocities, atol=0.0)


def test_restorable_snapshot_requires_world():
    with pytest.raises(ValueError):
        RestorableSnapshot(None)


def test_restorable_snapshot_keeps_last_step_results(box_snapshot):
    world, snapshot = box_snapshot
    solution = world.constraint_solver.last_solution
    unconstrained = world.last_unconstrained_velocities
    constraint = snapshot.get_clamping_constraints()[0]
    constraint.brute_force_contact_position_jacobian(world)
    snapshot.finite_difference_vel_vel_jacobian(world)
    assert world.constraint_solver.last_solution is solution
    assert world.last_unconstrained_velocities is unconstrained
