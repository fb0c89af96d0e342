import math
import pytest
import torch

from diff_dynamics.builder import box_on_plane, crossed_rods
from diff_dynamics.dynamics.joint import JointType
from diff_dynamics.utils.geometry_utils import DTYPE, transform_point

from conftest import assert_close


def test_dof_offsets_follow_skeleton_order(world):
    ground, box = box_on_plane(world)
    assert world.get_num_dofs() == 6
    assert world.get_dof_offset(ground) == 0
    assert world.get_dof_offset(box) == 0
    rods = world.create_skeleton("extra")
    rods.create_joint_and_body_node_pair(None, JointType.REVOLUTE, body_name="link")
    assert world.get_dof_offset(rods) == 6
    assert world.get_world_dof_index(rods.get_dof(0)) == 6


def test_duplicate_skeleton_name_rejected(world):
    world.create_skeleton("a")
    with pytest.raises(ValueError):
        world.create_skeleton("a")


def test_unknown_skeleton_name(world):
    with pytest.raises(KeyError):
        world.get_skeleton("missing")


def test_state_vector_size_checked(box_world):
    with pytest.raises(ValueError):
        box_world.set_positions(torch.zeros(5, dtype=DTYPE))


def test_box_corner_touches_ground(box_world):
    box = box_world.get_skeleton("box").get_body_node("box")
    T = box.get_world_transform()
    heights = sorted(float(transform_point(T, v)[2]) for v in box.shape.get_local_vertices())
    assert abs(heights[0]) < 1e-12
    assert heights[1] > box_world.collision_detector.contact_margin


def test_mass_matrix_symmetric_positive_definite(rods_world):
    M = rods_world.get_mass_matrix()
    assert_close(M, M.transpose(0, 1), atol=1e-12)
    assert bool(torch.all(torch.linalg.eigvalsh(M) > 0))


def test_world_screw_axes_match_finite_difference_of_transform(rods_world):
    rod_b = rods_world.get_skeleton("rod_b")
    body = rod_b.get_body_node("rod")
    point_local = torch.tensor([0.2, 0.0, 0.0], dtype=DTYPE)
    eps = 1e-7
    for dof in rod_b.get_dofs():
        before = transform_point(body.get_world_transform(), point_local)
        screw = rod_b.get_world_screw_axis(dof)
        predicted = torch.cross(screw[:3], before, dim=0) + screw[3:]
        positions = rod_b.get_positions().clone()
        rod_b.set_positions(positions.index_fill(0, torch.tensor([dof.get_index_in_skeleton()]),
                                                 float(positions[dof.get_index_in_skeleton()]) + eps))
        after = transform_point(body.get_world_transform(), point_local)
        rod_b.set_positions(positions)
        assert_close((after - before) / eps, predicted, atol=1e-6)


def test_hinged_rod_falls_under_gravity(world):
    rod_a, _ = crossed_rods(world, gap=1.0)
    world.step()
    # 无接触时杆绕y轴向下转动（正方向把+x转向-z）
    assert float(rod_a.get_velocities()[0]) > 0.0


def test_free_body_falls_with_gravity(world):
    skeleton = world.create_skeleton("ball")
    skeleton.create_joint_and_body_node_pair(None, JointType.FREE, body_name="ball")
    world.step()
    assert_close(skeleton.get_velocities()[:3], torch.tensor([0.0, 0.0, -9.81 * world.dtime], dtype=DTYPE),
                 atol=1e-10)
    assert math.isclose(world.cur_time, world.dtime)


def test_reset_restores_initial_state(box_world):
    positions = box_world.get_positions().clone()
    for _ in range(3):
        box_world.step()
    box_world.reset()
    assert box_world.cur_time == 0.0
    assert_close(box_world.get_positions(), positions, atol=0.0)


def test_physical_materials_round_trip(box_world, tmp_path):
    path = str(tmp_path / "materials.json")
    box = box_world.get_skeleton("box").get_body_node("box")
    box.get_physical_materials().set_material("mass", 2.5)
    box.set_physical_materials(box.get_physical_materials())
    box_world.save_all_physical_materials(path)
    box.get_physical_materials().set_material("mass", 1.0)
    box_world.load_all_physical_materials(path)
    assert math.isclose(float(box.mass), 2.5)


def test_constant_force_cancels_gravity(world):
    from diff_dynamics.force.constant_force import Constant_Force

    skeleton = world.create_skeleton("ball")
    _, body = skeleton.create_joint_and_body_node_pair(None, JointType.FREE, body_name="ball")
    body.add_external_force(Constant_Force([0.0, 0.0, 1.0], 9.81 * float(body.mass), endtime=1.5 * world.dtime))
    world.step()
    assert_close(skeleton.get_velocities(), torch.zeros(6, dtype=DTYPE), atol=1e-10)
    # 时间窗口结束后只剩重力
    world.step()
    world.step()
    assert float(skeleton.get_velocities()[2]) < 0.0
