import pytest
import torch

from diff_dynamics.builder import (
    box_on_plane, build_world, crossed_rods, prismatic_limit, self_collision_fork, standing_rod, tilting_plate
)
from diff_dynamics.neural.neural_utils import forward_pass


def set_pre_step_state(world, snapshot):
    world.set_positions(snapshot.get_pre_step_position())
    world.set_velocities(snapshot.get_pre_step_velocity())
    world.set_forces(snapshot.get_pre_step_torques())
    world.cur_time = snapshot.pre_step_time


def assert_close(actual, expected, atol=1e-5, rtol=1e-4):
    assert actual.shape == expected.shape, f"{tuple(actual.shape)} != {tuple(expected.shape)}"
    diff = (actual - expected).abs().max().item() if actual.numel() else 0.0
    assert torch.allclose(actual, expected, atol=atol, rtol=rtol), f"max abs diff {diff}\n{actual}\n{expected}"


@pytest.fixture
def world():
    return build_world()


@pytest.fixture
def box_world(world):
    box_on_plane(world)
    return world


@pytest.fixture
def sliding_box_world(world):
    box_on_plane(world, friction_coefficient=0.5, velocity=[0.5, 0.0, 0.0, 0.0, 0.0, 0.0])
    return world


@pytest.fixture
def rods_world(world):
    crossed_rods(world)
    return world


@pytest.fixture
def fork_world(world):
    self_collision_fork(world)
    return world


@pytest.fixture
def plate_world(world):
    tilting_plate(world)
    return world


@pytest.fixture
def rod_world(world):
    standing_rod(world)
    return world


@pytest.fixture
def slider_world(world):
    prismatic_limit(world)
    return world


@pytest.fixture
def box_snapshot(box_world):
    """已推进一步、世界状态已还原到推进前的 (world, snapshot)"""
    snapshot = forward_pass(box_world)
    set_pre_step_state(box_world, snapshot)
    return box_world, snapshot


@pytest.fixture
def rods_snapshot(rods_world):
    snapshot = forward_pass(rods_world)
    set_pre_step_state(rods_world, snapshot)
    return rods_world, snapshot


@pytest.fixture
def plate_snapshot(plate_world):
    snapshot = forward_pass(plate_world)
    set_pre_step_state(plate_world, snapshot)
    return plate_world, snapshot


@pytest.fixture
def fork_snapshot(fork_world):
    snapshot = forward_pass(fork_world)
    set_pre_step_state(fork_world, snapshot)
    return fork_world, snapshot
