import pytest
import torch

from diff_dynamics.collision.contact import ContactType
from diff_dynamics.neural.neural_utils import LossGradient, forward_pass
from diff_dynamics.utils.geometry_utils import DTYPE
from diff_dynamics.utils.sys_utils import Logger

from conftest import assert_close, set_pre_step_state


@pytest.fixture(params=["box", "rods", "plate", "fork"])
def contact_snapshot(request):
    return request.getfixturevalue(f"{request.param}_snapshot")


@pytest.fixture
def sliding_snapshot(sliding_box_world):
    snapshot = forward_pass(sliding_box_world)
    set_pre_step_state(sliding_box_world, snapshot)
    return sliding_box_world, snapshot


def test_vel_vel_jacobian(contact_snapshot):
    world, snapshot = contact_snapshot
    assert_close(snapshot.get_vel_vel_jacobian(world), snapshot.finite_difference_vel_vel_jacobian(world))


def test_force_vel_jacobian(contact_snapshot):
    world, snapshot = contact_snapshot
    assert_close(snapshot.get_force_vel_jacobian(world), snapshot.finite_difference_force_vel_jacobian(world))


def test_pos_vel_jacobian(contact_snapshot):
    world, snapshot = contact_snapshot
    assert_close(snapshot.get_pos_vel_jacobian(world), snapshot.finite_difference_pos_vel_jacobian(world))


def test_pos_pos_jacobian(contact_snapshot):
    world, snapshot = contact_snapshot
    assert_close(snapshot.get_pos_pos_jacobian(world), snapshot.finite_difference_pos_pos_jacobian(world))


def test_vel_pos_jacobian(contact_snapshot):
    world, snapshot = contact_snapshot
    assert_close(snapshot.get_vel_pos_jacobian(world), snapshot.finite_difference_vel_pos_jacobian(world))


def test_force_pos_jacobian(box_snapshot):
    world, snapshot = box_snapshot
    assert_close(snapshot.get_force_pos_jacobian(world), snapshot.finite_difference_force_pos_jacobian(world))


def test_upper_bound_friction_jacobians(sliding_snapshot):
    world, snapshot = sliding_snapshot
    assert snapshot.get_num_upper_bound() >= 1
    mapping = snapshot.get_upper_bound_mapping_matrix()
    assert mapping.shape == (snapshot.get_num_upper_bound(), snapshot.get_num_clamping())
    assert_close(mapping.abs().sum(dim=1), torch.full((snapshot.get_num_upper_bound(),), 0.5, dtype=DTYPE),
                 atol=1e-12)
    assert_close(snapshot.get_vel_vel_jacobian(world), snapshot.finite_difference_vel_vel_jacobian(world))
    assert_close(snapshot.get_pos_vel_jacobian(world), snapshot.finite_difference_pos_vel_jacobian(world))


def test_jacobians_without_contact(world):
    skeleton = world.create_skeleton("ball")
    skeleton.create_joint_and_body_node_pair(None, body_name="ball")
    snapshot = forward_pass(world)
    set_pre_step_state(world, snapshot)
    assert snapshot.get_num_clamping() == 0
    assert_close(snapshot.get_vel_vel_jacobian(world), torch.eye(6, dtype=DTYPE), atol=1e-9)
    assert_close(snapshot.get_pos_vel_jacobian(world), snapshot.finite_difference_pos_vel_jacobian(world))


def test_jacobians_do_not_move_world(box_snapshot):
    world, snapshot = box_snapshot
    world.set_positions(snapshot.get_post_step_position())
    snapshot.get_pos_vel_jacobian(world)
    snapshot.finite_difference_pos_pos_jacobian(world, subdivisions=2)
    assert_close(world.get_positions(), snapshot.get_post_step_position(), atol=0.0)


def test_backprop_applies_jacobian_transposes(box_snapshot):
    world, snapshot = box_snapshot
    n = world.get_num_dofs()
    generator = torch.Generator().manual_seed(0)
    grad_position = torch.randn(n, dtype=DTYPE, generator=generator)
    grad_velocity = torch.randn(n, dtype=DTYPE, generator=generator)
    result = snapshot.backprop(world, LossGradient.zeros(n), LossGradient(grad_position, grad_velocity))

    expected_position = (snapshot.get_pos_pos_jacobian(world).T @ grad_position
                         + snapshot.get_pos_vel_jacobian(world).T @ grad_velocity)
    expected_velocity = (snapshot.get_vel_pos_jacobian(world).T @ grad_position
                         + snapshot.get_vel_vel_jacobian(world).T @ grad_velocity)
    expected_torque = (snapshot.get_force_pos_jacobian(world).T @ grad_position
                       + snapshot.get_force_vel_jacobian(world).T @ grad_velocity)
    assert_close(result.loss_wrt_position, expected_position, atol=1e-12)
    assert_close(result.loss_wrt_velocity, expected_velocity, atol=1e-12)
    assert_close(result.loss_wrt_torque, expected_torque, atol=1e-12)


def test_backprop_records_timings(box_snapshot, tmp_path):
    world, snapshot = box_snapshot
    perf_log = Logger(str(tmp_path), [])
    n = world.get_num_dofs()
    snapshot.backprop(world, LossGradient.zeros(n), LossGradient.zeros(n), perf_log=perf_log)
    for key in ("pos_vel", "vel_vel", "force_vel", "backprop"):
        assert perf_log.get_value(f"backprop_snapshot/{key}") is not None


def test_constraint_forces_by_skeleton(box_snapshot):
    world, snapshot = box_snapshot
    forces = snapshot.get_constraint_forces(world)
    box = world.get_skeleton("box")
    assert_close(snapshot.get_constraint_forces(box), forces, atol=0.0)
    assert snapshot.get_constraint_forces(world.get_skeleton("ground")).shape == (0,)
    # 法向冲量抵消重力方向的下落
    assert float(forces[2]) > 0.0


def test_ground_constraint_forces_jacobian_is_empty(box_snapshot):
    world, snapshot = box_snapshot
    ground = world.get_skeleton("ground")
    box = world.get_skeleton("box")
    constraint = snapshot.get_clamping_constraints()[0]
    assert constraint.get_constraint_forces_jacobian(ground).shape == (0, 0)
    assert constraint.get_constraint_forces_jacobian(ground, box).shape == (0, 6)
    assert_close(constraint.get_constraint_forces_jacobian([ground, box]),
                 constraint.get_constraint_forces_jacobian(box), atol=0.0)


def test_standing_rod_static_equilibrium(rod_world):
    snapshot = forward_pass(rod_world)
    ground = rod_world.get_skeleton("ground")
    rod = rod_world.get_skeleton("rod")
    assert snapshot.get_num_clamping() == 1
    constraint = snapshot.get_clamping_constraints()[0]
    assert constraint.get_contact_type() == ContactType.FACE_VERTEX
    # 单个接触点托住整根杆的重量
    weight = 2.0 * 9.81
    assert_close(snapshot.get_constraint_forces(rod), torch.tensor([0.0, 0.0, weight, 0.0, 0.0, 0.0], dtype=DTYPE),
                 atol=1e-8)
    assert snapshot.get_constraint_forces(ground).shape == (0,)
    assert_close(snapshot.get_post_step_velocity(), torch.zeros(6, dtype=DTYPE), atol=1e-9)
    set_pre_step_state(rod_world, snapshot)
    assert constraint.get_constraint_forces_jacobian(ground).shape == (0, 0)
    assert constraint.get_constraint_forces_jacobian(ground, rod).shape == (0, 6)
