# 刚体节点（BodyNode）：骨架运动学树上的一个刚体，封装物理属性（质量、惯量、摩擦）、碰撞形状和外力，
# 位姿不单独存储，而是由所属骨架根据广义坐标做正运动学得到（刚体坐标系原点即质心）
import torch

from diff_dynamics.physical_material import Physical_Materials
from diff_dynamics.utils.geometry_utils import DTYPE


class BodyNode(object):
    def __init__(self, name, shape=None, physical_materials: Physical_Materials = None, device=None):
        """
        初始化刚体节点
        Args:
            name (str): 刚体名称（骨架内唯一）
            shape: 碰撞形状（BoxShape/PlaneShape/SegmentShape，None表示不参与碰撞）
            physical_materials: 物理材料实例（质量、惯量、摩擦系数），None则使用默认值
            device: 计算设备
        """
        self.name = name
        self.shape = shape
        self.device = device
        if physical_materials is None:
            physical_materials = Physical_Materials(requires_grad=False, device=device)
        self.set_physical_materials(physical_materials)

        self.skeleton = None
        self.parent_joint = None
        self.child_joints = []
        self.index_in_skeleton = None
        self.ancestor_dof_indices = []

        self.forces = []  # 作用在刚体上的外力列表
        self.apply_positions = []  # 外力作用点列表（刚体坐标系，None则作用于质心）

    def get_physical_materials(self):
        return self.physical_materials

    def set_physical_materials(self, physical_materials):
        """更新物理材料，并同步质量、惯量、摩擦系数"""
        self.physical_materials = physical_materials
        self.physical_materials.body_name = self.name
        if self.physical_materials.inertia_from_shape and self.shape is not None:
            unit_inertia = self.shape.get_unit_inertia()
            if unit_inertia is not None:
                self.physical_materials.all["inertia"].data = unit_inertia.to(self.device)
                self.physical_materials.inertia_from_shape = True
        self.mass = self.physical_materials.get_material("mass")
        self.inertia_body = self.physical_materials.get_material("inertia") * self.mass  # 本体惯量 = 单位惯量 × 质量
        self.friction_coefficient = self.physical_materials.get_material("friction_coefficient")
        self.restitution = self.physical_materials.get_material("restitution")

    def get_spatial_inertia(self):
        """本体坐标系下的6x6空间惯量 diag(I_body, m·I3)，顺序与旋量一致（[角; 线]）"""
        zeros = torch.zeros((3, 3), dtype=DTYPE, device=self.device)
        eye = torch.eye(3, dtype=DTYPE, device=self.device)
        top = torch.cat([self.inertia_body, zeros], dim=1)
        bottom = torch.cat([zeros, self.mass * eye], dim=1)
        return torch.cat([top, bottom], dim=0)

    def get_skeleton(self):
        return self.skeleton

    def get_parent_joint(self):
        return self.parent_joint

    def get_parent_body_node(self):
        return self.parent_joint.parent_body_node if self.parent_joint is not None else None

    def get_world_transform(self):
        """当前状态下的世界位姿（4x4）"""
        return self.skeleton.get_world_transforms()[self.index_in_skeleton]

    def get_world_position(self):
        return self.get_world_transform()[:3, 3]

    def is_adjacent(self, other):
        """两个刚体是否直接父子相连（自碰撞检测时跳过）"""
        return self.get_parent_body_node() is other or other.get_parent_body_node() is self

    def add_external_force(self, force, apply_pos=None):
        """
        添加外力
        Args:
            force (Force): 力实例
            apply_pos: 作用点（刚体坐标系），None则作用于质心
        """
        self.forces.append(force)
        self.apply_positions.append(None if apply_pos is None else torch.as_tensor(apply_pos, dtype=DTYPE))

    def clear_force(self):
        self.forces = []
        self.apply_positions = []

    def get_external_wrench(self, cur_time, world_transform):
        """
        所有外力在世界坐标系下的合力旋量
        Args:
            cur_time: 当前仿真时间
            world_transform: 刚体世界位姿（可带梯度）
        Returns:
            力旋量（形状[6]）
        """
        wrench = torch.zeros(6, dtype=DTYPE, device=self.device)
        for force, apply_pos in zip(self.forces, self.apply_positions):
            point = world_transform[:3, 3]
            if apply_pos is not None:
                point = world_transform[:3, :3] @ apply_pos + point
            wrench = wrench + force.get_wrench(cur_time, point)
        return wrench

    def __repr__(self):
        return f"BodyNode({self.name})"
