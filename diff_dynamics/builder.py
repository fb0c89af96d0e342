""" 场景构建：按配置创建World并搭建几个标准场景，脚本与测试共用：
box_on_plane：自由长方体以一个角点压在焊接地面上（顶点-面接触，可带摩擦）；
crossed_rods：一根绕铰链转动的杆与一根自由下落的杆十字交叉（棱-棱接触）；
self_collision_fork：同一骨架上两根兄弟杆十字交叉，右杆绕水平铰链向下摆向左杆（自碰撞，共同祖先为自由根关节）；
tilting_plate：绕铰链转动的平板托住一个焊接长方体的角点（平板一侧为可动的面）；
standing_rod：自由细杆竖直立在焊接地面上（静力平衡）；
prismatic_limit：竖直移动关节停在下限上（关节限位约束）。 """
import os
import math
import random
from argparse import Namespace
import numpy as np
import torch

from diff_dynamics.collision.shapes import BoxShape, PlaneShape, SegmentShape
from diff_dynamics.dynamics.joint import JointType
from diff_dynamics.physical_material import Physical_Materials
from diff_dynamics.simulator import World
from diff_dynamics.utils.cfg_utils import get_world_args
from diff_dynamics.utils.geometry_utils import (
    DTYPE, euler_xyz_to_rotmat, make_transform, rotation_z, transform_point
)


def build_world(world_args=None, logger=None):
    """
    Args:
        world_args: World_args / dict / Namespace，None时全部使用默认值
        logger: 约束求解器使用的Logger
    """
    if world_args is None or not hasattr(world_args, "_fields"):
        world_args = get_world_args(world_args)
    return World(dtime=world_args.dtime, gravity=world_args.gravity, device=world_args.device,
                 contact_margin=world_args.contact_margin, lcp_max_iterations=world_args.lcp_max_iterations,
                 lcp_tolerance=world_args.lcp_tolerance, logger=logger)


def _translation(x, y, z, rotation=None):
    if rotation is None:
        rotation = torch.eye(3, dtype=DTYPE)
    return make_transform(rotation, torch.tensor([x, y, z], dtype=DTYPE))


def box_on_plane(world, friction_coefficient=0.0, box_size=(0.5, 0.5, 0.5), mass=1.0,
                 angles=(0.3, 0.2, 0.1), velocity=None):
    """
    地面骨架先加入世界（接触的A侧为地面，B侧为长方体）
    Args:
        angles: 长方体的XYZ欧拉角，使恰好一个角点最低
        velocity: 长方体的初始广义速度（长度6）
    Returns:
        (地面骨架, 长方体骨架)
    """
    ground = world.create_skeleton("ground")
    ground.create_joint_and_body_node_pair(
        None, JointType.WELD, body_name="ground", shape=PlaneShape(),
        physical_materials=Physical_Materials(friction_coefficient=friction_coefficient),
    )
    box = world.create_skeleton("box")
    _, body = box.create_joint_and_body_node_pair(
        None, JointType.FREE, body_name="box", shape=BoxShape(box_size),
        physical_materials=Physical_Materials(mass=mass, friction_coefficient=friction_coefficient),
    )
    positions = torch.tensor([0.0, 0.0, 0.0] + list(angles), dtype=DTYPE)
    box.set_positions(positions)
    T = body.get_world_transform()
    lowest = min(float(transform_point(T, v)[2]) for v in body.shape.get_local_vertices())
    # 最低角点恰好落在地面上
    box.set_positions(positions + torch.tensor([0.0, 0.0, -lowest, 0.0, 0.0, 0.0], dtype=DTYPE))
    if velocity is not None:
        box.set_velocities(velocity)
    return ground, box


def crossed_rods(world, length=1.0, gap=5e-4, friction_coefficient=0.0):
    """
    rod_a：铰链（绕y轴）在(-length/2, 0, 0)，杆沿x轴，中点位于原点；
    rod_b：自由杆，沿y轴，中点位于(0, 0, gap)
    Returns:
        (rod_a骨架, rod_b骨架)
    """
    rod_a = world.create_skeleton("rod_a")
    _, hinge = rod_a.create_joint_and_body_node_pair(
        None, JointType.REVOLUTE, axis=(0.0, 1.0, 0.0), transform_from_parent=_translation(-0.5 * length, 0.0, 0.0),
        body_name="hinge", physical_materials=Physical_Materials(mass=0.5),
    )
    rod_a.create_joint_and_body_node_pair(
        hinge, JointType.WELD, transform_from_parent=_translation(0.5 * length, 0.0, 0.0),
        body_name="rod", shape=SegmentShape(length),
        physical_materials=Physical_Materials(mass=1.0, friction_coefficient=friction_coefficient),
    )
    rod_b = world.create_skeleton("rod_b")
    rod_b.create_joint_and_body_node_pair(
        None, JointType.FREE, body_name="rod", shape=SegmentShape(length),
        physical_materials=Physical_Materials(mass=1.0, friction_coefficient=friction_coefficient),
    )
    rod_b.set_positions(torch.tensor([0.0, 0.0, gap, 0.0, 0.0, 0.5 * math.pi], dtype=DTYPE))
    return rod_a, rod_b


def self_collision_fork(world, length=1.0, gap=5e-4, height=1.0, swing=1.0):
    """
    fork骨架：自由根刚体base（无形状），其下两根兄弟杆。
    left绕竖直轴转动，沿x轴位于base原点；
    right_hinge绕x轴转动，位于(0, -length/2, gap)，right焊接在其上，沿y轴，中点在left正上方gap处。
    整个骨架一起自由下落，只有铰链角速度能让right靠近left
    Args:
        swing: right_hinge的初始角速度大小（方向使right向下摆）
    """
    fork = world.create_skeleton("fork", self_collision=True)
    _, base = fork.create_joint_and_body_node_pair(None, JointType.FREE, body_name="base")
    fork.create_joint_and_body_node_pair(
        base, JointType.REVOLUTE, axis=(0.0, 0.0, 1.0), body_name="left", shape=SegmentShape(length),
    )
    _, hinge = fork.create_joint_and_body_node_pair(
        base, JointType.REVOLUTE, axis=(1.0, 0.0, 0.0),
        transform_from_parent=_translation(0.0, -0.5 * length, gap),
        body_name="right_hinge", physical_materials=Physical_Materials(mass=0.1),
    )
    fork.create_joint_and_body_node_pair(
        hinge, JointType.WELD, transform_from_parent=_translation(0.0, 0.5 * length, 0.0, rotation_z(0.5 * math.pi)),
        body_name="right", shape=SegmentShape(length),
    )
    positions = torch.zeros(fork.get_num_dofs(), dtype=DTYPE)
    fork.set_positions(positions.index_fill(0, torch.tensor([2]), height))
    # 绕x轴的负角速度使+y一侧向下
    velocities = torch.zeros(fork.get_num_dofs(), dtype=DTYPE)
    fork.set_velocities(velocities.index_fill(0, torch.tensor([7]), -swing))
    return fork


def tilting_plate(world, corner=(-0.3, 0.0, 0.0), box_size=(0.2, 0.2, 0.2), angles=(0.3, 0.2, 0.1),
                  plate_mass=1.0):
    """
    plate骨架：铰链（绕y轴）在原点，平板焊接在(0.5, 0, 0)处（平面过铰链轴，法向+z），
    重力使+x一侧下沉、-x一侧上抬，把焊接长方体的最低角点（位于corner）顶住。
    平板骨架先加入世界（接触的A侧为平板，B侧为长方体）
    Returns:
        (平板骨架, 长方体骨架)
    """
    plate = world.create_skeleton("plate")
    _, hinge = plate.create_joint_and_body_node_pair(
        None, JointType.REVOLUTE, axis=(0.0, 1.0, 0.0), body_name="hinge",
        physical_materials=Physical_Materials(mass=0.5),
    )
    plate.create_joint_and_body_node_pair(
        hinge, JointType.WELD, transform_from_parent=_translation(0.5, 0.0, 0.0),
        body_name="plate", shape=PlaneShape(), physical_materials=Physical_Materials(mass=plate_mass),
    )
    shape = BoxShape(box_size)
    rotation = euler_xyz_to_rotmat(angles)
    vertices = shape.get_local_vertices() @ rotation.T
    lowest = vertices[int(torch.argmin(vertices[:, 2]))]
    translation = torch.tensor(corner, dtype=DTYPE) - lowest
    box = world.create_skeleton("box")
    box.create_joint_and_body_node_pair(
        None, JointType.WELD, transform_from_parent=make_transform(rotation, translation),
        body_name="box", shape=shape,
    )
    return plate, box


def standing_rod(world, length=1.0, mass=2.0):
    """
    自由细杆绕Y轴转-90°后竖直，下端点恰好落在焊接地面上
    Returns:
        (地面骨架, 细杆骨架)
    """
    ground = world.create_skeleton("ground")
    ground.create_joint_and_body_node_pair(
        None, JointType.WELD, body_name="ground", shape=PlaneShape(),
        physical_materials=Physical_Materials(friction_coefficient=0.0),
    )
    rod = world.create_skeleton("rod")
    rod.create_joint_and_body_node_pair(
        None, JointType.FREE, body_name="rod", shape=SegmentShape(length),
        physical_materials=Physical_Materials(mass=mass, friction_coefficient=0.0),
    )
    rod.set_positions(torch.tensor([0.0, 0.0, 0.5 * length, 0.0, -0.5 * math.pi, 0.0], dtype=DTYPE))
    return ground, rod


def prismatic_limit(world, lower=0.0, upper=1.0, mass=1.0):
    """竖直移动关节，初始位置在下限上，重力把它压向下限"""
    slider = world.create_skeleton("slider")
    slider.create_joint_and_body_node_pair(
        None, JointType.PRISMATIC, axis=(0.0, 0.0, 1.0), body_name="slider",
        physical_materials=Physical_Materials(mass=mass),
    )
    slider.get_dof(0).set_position_limits(lower, upper)
    slider.set_positions(torch.tensor([lower], dtype=DTYPE))
    return slider


SCENES = {
    "box_on_plane": box_on_plane,
    "crossed_rods": crossed_rods,
    "self_collision_fork": self_collision_fork,
    "tilting_plate": tilting_plate,
    "standing_rod": standing_rod,
    "prismatic_limit": prismatic_limit,
}


class Builder():
    """
    由配置（sys_args / world_args / scene_args）构建世界与场景
    """

    def __init__(self, all_args):
        self.sys_args = Namespace(**all_args['sys_args'])
        self.world_args = get_world_args(all_args.get('world_args'))
        self.scene_args = dict(all_args.get('scene_args', {}))
        self.set_seed(getattr(self.sys_args, "seed", 0))

    def set_seed(self, seed):
        os.environ['PYTHONHASHSEED'] = str(seed)
        random.seed(seed)
        np.random.seed(seed)
        torch.manual_seed(seed)

    def build_world(self, logger=None):
        return build_world(self.world_args, logger=logger)

    def build_scene(self, world):
        """按scene_args中的name搭建场景，其余字段作为场景函数的关键字参数"""
        scene_args = dict(self.scene_args)
        name = scene_args.pop("name", "box_on_plane")
        if name not in SCENES:
            raise KeyError(f"Unknown scene {name}, expected one of {sorted(SCENES)}")
        return SCENES[name](world, **scene_args)
