import pytest
import torch

from diff_dynamics.collision.contact import ContactType, DofContactType
from diff_dynamics.constraints.contact_constraint import ContactConstraint
from diff_dynamics.constraints.joint_limit_constraint import detect_joint_limits
from diff_dynamics.neural.differentiable_contact_constraint import DifferentiableContactConstraint
from diff_dynamics.neural.neural_utils import forward_pass
from diff_dynamics.utils.geometry_utils import DTYPE

from conftest import assert_close, set_pre_step_state

EPS = 1e-6


def _fork_constraint(world):
    contact = world.collision_detector.detect(world)[0]
    return DifferentiableContactConstraint(ContactConstraint(contact), 0)


@pytest.fixture(params=["box", "rods", "plate", "fork"])
def contact_snapshot(request):
    # 两个场景共用world夹具，只实例化被参数选中的那个
    return request.getfixturevalue(f"{request.param}_snapshot")


def test_box_dof_types(box_snapshot):
    world, snapshot = box_snapshot
    assert snapshot.get_num_clamping() == 1
    constraint = snapshot.get_clamping_constraints()[0]
    assert constraint.get_contact_type() == ContactType.FACE_VERTEX
    for dof in world.get_skeleton("box").get_dofs():
        assert constraint.get_dof_contact_type(dof) == DofContactType.VERTEX
        assert constraint.get_force_multiple(dof) == -1.0


def test_rods_dof_types(rods_snapshot):
    world, snapshot = rods_snapshot
    constraint = snapshot.get_clamping_constraints()[0]
    assert constraint.get_contact_type() == ContactType.EDGE_EDGE
    hinge = world.get_skeleton("rod_a").get_dof(0)
    assert constraint.get_dof_contact_type(hinge) == DofContactType.EDGE_B
    assert constraint.get_force_multiple(hinge) == 1.0
    for dof in world.get_skeleton("rod_b").get_dofs():
        assert constraint.get_dof_contact_type(dof) == DofContactType.EDGE_A
        assert constraint.get_force_multiple(dof) == -1.0


def test_plate_dof_types(plate_snapshot):
    world, snapshot = plate_snapshot
    assert snapshot.get_num_clamping() == 1
    constraint = snapshot.get_clamping_constraints()[0]
    assert constraint.get_contact_type() == ContactType.FACE_VERTEX
    assert constraint.get_constraint().get_body_node_a().name == "plate"
    hinge = world.get_skeleton("plate").get_dof(0)
    assert constraint.get_dof_contact_type(hinge) == DofContactType.FACE
    assert constraint.get_force_multiple(hinge) == 1.0


def test_plate_normal_gradient(plate_snapshot):
    world, snapshot = plate_snapshot
    constraint = snapshot.get_clamping_constraints()[0]
    hinge = world.get_skeleton("plate").get_dof(0)
    gradient = constraint.get_contact_normal_gradient(hinge)
    # 平板绕y轴转动，法向只在x方向变化
    assert float(gradient.abs().sum()) > 0.0
    perturbed = constraint.brute_force_perturbed_contact_normal(world, hinge, EPS)
    assert_close(gradient, (perturbed - constraint.get_contact_world_normal()) / EPS)
    estimate = constraint.estimate_perturbed_contact_normal(hinge, EPS)
    assert_close(gradient, (estimate - constraint.get_contact_world_normal()) / EPS)


def test_constraint_forces_match_constraint_row(contact_snapshot):
    world, snapshot = contact_snapshot
    constraint = snapshot.get_clamping_constraints()[0]
    row = constraint.get_constraint().J(world)[constraint.get_index_in_constraint()]
    assert_close(constraint.get_constraint_forces(world), row, atol=1e-12)


def test_contact_position_jacobian(contact_snapshot):
    world, snapshot = contact_snapshot
    constraint = snapshot.get_clamping_constraints()[0]
    analytic = constraint.get_contact_position_jacobian(world)
    assert_close(analytic, constraint.brute_force_contact_position_jacobian(world))


def test_contact_force_direction_jacobian(contact_snapshot):
    world, snapshot = contact_snapshot
    constraint = snapshot.get_clamping_constraints()[0]
    analytic = constraint.get_contact_force_direction_jacobian(world)
    assert_close(analytic, constraint.brute_force_contact_force_direction_jacobian(world))


def test_contact_force_jacobian(contact_snapshot):
    world, snapshot = contact_snapshot
    constraint = snapshot.get_clamping_constraints()[0]
    analytic = constraint.get_contact_force_jacobian(world)
    assert_close(analytic, constraint.brute_force_contact_force_jacobian(world))


def test_constraint_forces_jacobian(contact_snapshot):
    world, snapshot = contact_snapshot
    constraint = snapshot.get_clamping_constraints()[0]
    analytic = constraint.get_constraint_forces_jacobian(world)
    assert_close(analytic, constraint.brute_force_constraint_forces_jacobian(world))


def test_brute_force_leaves_world_untouched(box_snapshot):
    world, snapshot = box_snapshot
    positions = world.get_positions().clone()
    velocities = world.get_velocities().clone()
    constraint = snapshot.get_clamping_constraints()[0]
    constraint.brute_force_contact_position_jacobian(world)
    assert_close(world.get_positions(), positions, atol=0.0)
    assert_close(world.get_velocities(), velocities, atol=0.0)


def test_friction_direction_jacobian(sliding_box_world):
    snapshot = forward_pass(sliding_box_world)
    set_pre_step_state(sliding_box_world, snapshot)
    tangents = [c for c in snapshot.get_clamping_constraints() + snapshot.get_upper_bound_constraints()
                if c.get_index_in_constraint() > 0]
    assert tangents
    for constraint in tangents:
        # 地面法向固定，切向方向不随任何自由度变化
        jacobian = constraint.get_contact_force_direction_jacobian(sliding_box_world)
        assert_close(jacobian, torch.zeros_like(jacobian), atol=1e-12)
        assert_close(constraint.get_constraint_forces_jacobian(sliding_box_world),
                     constraint.brute_force_constraint_forces_jacobian(sliding_box_world))


def test_fork_self_collision_dof_types(fork_world):
    constraint = _fork_constraint(fork_world)
    fork = fork_world.get_skeleton("fork")
    for dof in fork.get_dofs()[:6]:
        assert constraint.get_dof_contact_type(dof) == DofContactType.EDGE_EDGE_SELF_COLLISION
        assert constraint.get_force_multiple(dof) == 0.0
    assert constraint.get_dof_contact_type(fork.get_dof(6)) == DofContactType.EDGE_B
    assert constraint.get_dof_contact_type(fork.get_dof(7)) == DofContactType.EDGE_A


def test_fork_gradients_match_first_order_estimates(fork_world):
    constraint = _fork_constraint(fork_world)
    position = constraint.get_contact_world_position()
    normal = constraint.get_contact_world_normal()
    for dof in fork_world.get_dofs():
        estimate = (constraint.estimate_perturbed_contact_position(dof, EPS) - position) / EPS
        assert_close(constraint.get_contact_position_gradient(dof), estimate)
        estimate = (constraint.estimate_perturbed_contact_normal(dof, EPS) - normal) / EPS
        assert_close(constraint.get_contact_normal_gradient(dof), estimate)
        estimate = (constraint.estimate_perturbed_contact_force_direction(dof, EPS) - normal) / EPS
        assert_close(constraint.get_contact_force_gradient(dof), estimate)


def test_fork_edge_gradients_match_estimate(fork_world):
    constraint = _fork_constraint(fork_world)
    edges = constraint.get_edges()
    for dof in fork_world.get_dofs():
        perturbed = constraint.estimate_perturbed_edges(dof, EPS)
        gradient = constraint.get_edge_gradient(dof)
        for field in edges._fields:
            estimate = (getattr(perturbed, field) - getattr(edges, field)) / EPS
            assert_close(getattr(gradient, field), estimate)


def test_fork_contact_is_active(fork_snapshot):
    world, snapshot = fork_snapshot
    assert snapshot.get_num_clamping() == 1
    constraint = snapshot.get_clamping_constraints()[0]
    assert constraint.get_contact_type() == ContactType.EDGE_EDGE
    assert constraint.get_constraint().get_body_node_a().name == "left"
    assert constraint.get_constraint().get_body_node_b().name == "right"
    assert float(snapshot.get_clamping_constraint_impulses()[0]) > 0.0
    # 共同祖先自由度上的合力为0，只有两根杆各自的铰链受力
    forces = snapshot.get_constraint_forces(world)
    assert_close(forces[:6], torch.zeros(6, dtype=DTYPE), atol=1e-9)
    assert float(forces[6:].abs().sum()) > 0.0


def test_fork_peer_after_resimulation(fork_snapshot):
    world, snapshot = fork_snapshot
    constraint = snapshot.get_clamping_constraints()[0]
    velocities = world.get_velocities().clone()
    velocities[7] -= 1e-3
    world.set_velocities(velocities)
    other = forward_pass(world)
    set_pre_step_state(world, snapshot)
    peer = constraint.get_peer_constraint(other)
    assert not peer.is_upper_bound_constraint()
    assert peer.get_index_in_constraint() == constraint.get_index_in_constraint()
    assert peer.get_constraint().get_body_node_a() is constraint.get_constraint().get_body_node_a()
    assert peer.get_constraint().get_body_node_b() is constraint.get_constraint().get_body_node_b()
    assert_close(peer.get_contact_world_position(), constraint.get_contact_world_position(), atol=1e-12)


def test_screw_axis_gradient(fork_world):
    constraint = _fork_constraint(fork_world)
    dofs = fork_world.get_dofs()
    for axis in dofs:
        screw = constraint.get_world_screw_axis(axis).clone()
        for rotate in dofs:
            analytic = constraint.get_screw_axis_gradient(axis, rotate)
            brute_force = (constraint.brute_force_screw_axis(fork_world, axis, rotate, EPS) - screw) / EPS
            assert_close(analytic, brute_force)
            estimate = (constraint.estimate_perturbed_screw_axis(axis, rotate, EPS) - screw) / EPS
            assert_close(analytic, estimate)


def test_is_parent_dof_within_one_joint(fork_world):
    fork = fork_world.get_skeleton("fork")
    x, rot_x = fork.get_dof(0), fork.get_dof(3)
    assert DifferentiableContactConstraint.is_parent_dof(x, rot_x)
    assert not DifferentiableContactConstraint.is_parent_dof(rot_x, x)
    assert DifferentiableContactConstraint.is_parent_dof(rot_x, fork.get_dof(6))
    assert not DifferentiableContactConstraint.is_parent_dof(fork.get_dof(6), fork.get_dof(7))


def test_none_arguments_rejected(fork_world):
    constraint = _fork_constraint(fork_world)
    with pytest.raises(ValueError):
        constraint.is_parent(None, constraint.get_constraint().get_body_node_a())
    with pytest.raises(ValueError):
        DifferentiableContactConstraint.is_parent_dof(None, fork_world.get_dofs()[0])
    with pytest.raises(ValueError):
        DifferentiableContactConstraint(None, 0)


def test_peer_constraint(box_snapshot):
    world, snapshot = box_snapshot
    constraint = snapshot.get_clamping_constraints()[0]
    other = forward_pass(world)
    set_pre_step_state(world, snapshot)
    peer = constraint.get_peer_constraint(other)
    assert peer.get_offset_into_world() == constraint.get_offset_into_world()
    assert_close(peer.get_contact_world_position(), constraint.get_contact_world_position(), atol=1e-12)
    constraint.set_offset_into_world(3, False)
    with pytest.raises(ValueError):
        constraint.get_peer_constraint(other)


def test_joint_limit_direction(slider_world):
    constraint = DifferentiableContactConstraint(detect_joint_limits(slider_world)[0], 0)
    assert not constraint.is_contact()
    assert constraint.get_contact_type() == ContactType.UNSUPPORTED
    dof = slider_world.get_dofs()[0]
    assert constraint.get_dof_contact_type(dof) == DofContactType.UNSUPPORTED
    assert constraint.get_force_multiple(dof) == 1.0
    assert_close(constraint.get_constraint_forces(slider_world), torch.tensor([1.0], dtype=DTYPE), atol=0.0)
    assert_close(constraint.get_constraint_forces_jacobian(slider_world), torch.zeros((1, 1), dtype=DTYPE), atol=0.0)
    assert_close(constraint.get_world_force(), torch.zeros(6, dtype=DTYPE), atol=0.0)
