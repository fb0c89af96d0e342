""" 骨架（Skeleton）：由关节与刚体节点组成的运动学树（可包含多棵树），持有该骨架全部自由度的
位置/速度/力（广义力矩）向量，并提供：
正运动学：刚体世界位姿 T_child = T_parent @ T_from_parent @ T_joint(q)；
世界旋量轴：自由度k的世界旋量 ξ_k = AdT(T_child, J_rel[:, k])；
动力学量：质量矩阵 M = Σ_b J_bᵀ G_b J_b，重力势能、科氏力+重力项（torch.autograd求导）、外力对应的广义力。
所有以q为参数的compute_*函数都是q的纯函数（无原地写入），可被torch.autograd.functional.jacobian嵌套求导。 """
import torch

from diff_dynamics.dynamics.body_node import BodyNode
from diff_dynamics.dynamics.joint import Joint, JointType
from diff_dynamics.utils.geometry_utils import (
    DTYPE, AdT, AdT_matrix, identity_transform, inverse_transform
)


class Skeleton(object):
    def __init__(self, name, device=None, self_collision=False):
        """
        Args:
            name (str): 骨架名称（世界内唯一）
            device: 计算设备
            self_collision (bool): 是否检测本骨架内（非相邻刚体之间）的自碰撞
        """
        self.name = name
        self.device = device
        self.enable_self_collision = self_collision
        self.world = None

        self.body_nodes = []
        self.joints = []
        self.dofs = []
        self.num_trees = 0

        self.positions = torch.zeros(0, dtype=DTYPE, device=device)
        self.velocities = torch.zeros(0, dtype=DTYPE, device=device)
        self.forces = torch.zeros(0, dtype=DTYPE, device=device)

        self._world_transforms = None
        self._world_screw_axes = None

    # ------------------------------------------------------------------
    # 结构
    # ------------------------------------------------------------------
    def create_joint_and_body_node_pair(self, parent=None, joint_type=JointType.FREE, joint_name=None, axis=None,
                                        transform_from_parent=None, body_name=None, shape=None,
                                        physical_materials=None):
        """
        创建一个关节及其子刚体，并挂到parent刚体下（parent为None时作为新运动学树的根，连接到世界）
        Args:
            parent (BodyNode): 父刚体
            joint_type (JointType): 关节类型
            joint_name (str): 关节名称，默认 "<body_name>_joint"
            axis: REVOLUTE/PRISMATIC关节轴
            transform_from_parent: 父刚体坐标系到关节零位的固定变换（4x4）
            body_name (str): 刚体名称，默认 "body_<序号>"
            shape: 碰撞形状
            physical_materials: 物理材料
        Returns:
            (Joint, BodyNode)
        """
        if parent is not None and parent.skeleton is not self:
            raise ValueError(f"Parent body {parent} does not belong to skeleton {self.name}")
        if body_name is None:
            body_name = f"body_{len(self.body_nodes)}"
        if joint_name is None:
            joint_name = f"{body_name}_joint"
        if any(body.name == body_name for body in self.body_nodes):
            raise ValueError(f"Body name {body_name} already exists in skeleton {self.name}")

        joint = Joint(joint_name, joint_type, axis=axis, transform_from_parent=transform_from_parent,
                      device=self.device)
        body = BodyNode(body_name, shape=shape, physical_materials=physical_materials, device=self.device)

        joint.skeleton = self
        joint.parent_body_node = parent
        joint.child_body_node = body
        body.skeleton = self
        body.parent_joint = joint

        if parent is None:
            joint.tree_index = self.num_trees
            joint.index_in_tree = 0
            self.num_trees += 1
        else:
            joint.tree_index = parent.parent_joint.tree_index
            joint.index_in_tree = sum(1 for j in self.joints if j.tree_index == joint.tree_index)
            parent.child_joints.append(joint)

        joint.index_in_skeleton = len(self.joints)
        joint.dof_offset = len(self.dofs)
        for dof in joint.dofs:
            dof.index_in_skeleton = len(self.dofs)
            self.dofs.append(dof)
        self.joints.append(joint)

        body.index_in_skeleton = len(self.body_nodes)
        parent_dofs = parent.ancestor_dof_indices if parent is not None else []
        body.ancestor_dof_indices = parent_dofs + [dof.index_in_skeleton for dof in joint.dofs]
        self.body_nodes.append(body)

        extra = torch.zeros(joint.get_num_dofs(), dtype=DTYPE, device=self.device)
        self.positions = torch.cat([self.positions, extra])
        self.velocities = torch.cat([self.velocities, extra])
        self.forces = torch.cat([self.forces, extra])
        self._invalidate()
        return joint, body

    def get_name(self):
        return self.name

    def get_num_dofs(self):
        return len(self.dofs)

    def get_dofs(self):
        return list(self.dofs)

    def get_dof(self, key):
        """按序号或名称获取自由度"""
        if isinstance(key, int):
            return self.dofs[key]
        for dof in self.dofs:
            if dof.name == key:
                return dof
        raise KeyError(f"No dof named {key} in skeleton {self.name}")

    def get_num_body_nodes(self):
        return len(self.body_nodes)

    def get_body_nodes(self):
        return list(self.body_nodes)

    def get_body_node(self, key):
        """按序号或名称获取刚体"""
        if isinstance(key, int):
            return self.body_nodes[key]
        for body in self.body_nodes:
            if body.name == key:
                return body
        raise KeyError(f"No body node named {key} in skeleton {self.name}")

    def get_joint(self, key):
        if isinstance(key, int):
            return self.joints[key]
        for joint in self.joints:
            if joint.name == key:
                return joint
        raise KeyError(f"No joint named {key} in skeleton {self.name}")

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------
    def _as_state(self, value):
        value = torch.as_tensor(value, dtype=DTYPE, device=self.device).detach().clone()
        if value.shape != (self.get_num_dofs(),):
            raise ValueError(f"Expected a state vector of size {self.get_num_dofs()} for skeleton {self.name}, "
                             f"got shape {tuple(value.shape)}")
        return value

    def _invalidate(self):
        self._world_transforms = None
        self._world_screw_axes = None

    def get_positions(self):
        return self.positions

    def set_positions(self, positions):
        self.positions = self._as_state(positions)
        self._invalidate()

    def set_position(self, index, value):
        positions = self.positions.clone()
        positions[index] = float(value)
        self.set_positions(positions)

    def get_velocities(self):
        return self.velocities

    def set_velocities(self, velocities):
        self.velocities = self._as_state(velocities)

    def set_velocity(self, index, value):
        velocities = self.velocities.clone()
        velocities[index] = float(value)
        self.velocities = velocities

    def get_forces(self):
        return self.forces

    def set_forces(self, forces):
        self.forces = self._as_state(forces)

    def reset_command(self):
        self.forces = torch.zeros_like(self.forces)

    # ------------------------------------------------------------------
    # 运动学
    # ------------------------------------------------------------------
    def compute_world_transforms(self, q):
        """
        正运动学
        Args:
            q: 广义坐标（形状[n]）
        Returns:
            list: 每个刚体的世界位姿（4x4），顺序同body_nodes
        """
        transforms = []
        for body in self.body_nodes:
            joint = body.parent_joint
            parent = joint.parent_body_node
            T_parent = transforms[parent.index_in_skeleton] if parent is not None else identity_transform(self.device)
            q_joint = q[joint.dof_offset:joint.dof_offset + joint.get_num_dofs()]
            transforms.append(T_parent @ joint.transform_from_parent @ joint.get_relative_transform(q_joint))
        return transforms

    def compute_world_screw_axes(self, q, transforms=None):
        """
        所有自由度的世界旋量轴
        Args:
            q: 广义坐标
            transforms: 已算好的刚体世界位姿（可选）
        Returns:
            Tensor，形状[6, n]
        """
        if self.get_num_dofs() == 0:
            return torch.zeros((6, 0), dtype=DTYPE, device=self.device)
        if transforms is None:
            transforms = self.compute_world_transforms(q)
        columns = []
        for joint in self.joints:
            if joint.get_num_dofs() == 0:
                continue
            T_child = transforms[joint.child_body_node.index_in_skeleton]
            q_joint = q[joint.dof_offset:joint.dof_offset + joint.get_num_dofs()]
            relative_jacobian = joint.get_relative_jacobian(q_joint)
            for index in range(joint.get_num_dofs()):
                columns.append(AdT(T_child, relative_jacobian[:, index]))
        return torch.stack(columns, dim=1)

    def get_world_transforms(self):
        """当前状态下的刚体世界位姿（缓存，位置改变时失效）"""
        if self._world_transforms is None:
            self._world_transforms = self.compute_world_transforms(self.positions)
        return self._world_transforms

    def get_world_screw_axes(self):
        if self._world_screw_axes is None:
            self._world_screw_axes = self.compute_world_screw_axes(self.positions, self.get_world_transforms())
        return self._world_screw_axes

    def get_world_screw_axis(self, dof):
        """当前状态下某个自由度的世界旋量轴（形状[6]）"""
        if dof.get_skeleton() is not self:
            raise ValueError(f"{dof} does not belong to skeleton {self.name}")
        return self.get_world_screw_axes()[:, dof.index_in_skeleton]

    def _ancestor_mask(self, body):
        mask = torch.zeros(self.get_num_dofs(), dtype=DTYPE, device=self.device)
        if body.ancestor_dof_indices:
            mask = mask.index_fill(0, torch.tensor(body.ancestor_dof_indices, device=self.device), 1.0)
        return mask

    def compute_body_jacobian(self, body, screw_axes):
        """
        刚体的空间（世界坐标系）雅可比：祖先自由度的列为其世界旋量轴，其余为0
        Args:
            body (BodyNode): 刚体
            screw_axes: compute_world_screw_axes 的结果
        Returns:
            Tensor，形状[6, n]
        """
        return screw_axes * self._ancestor_mask(body).unsqueeze(0)

    def get_world_jacobian(self, body):
        return self.compute_body_jacobian(body, self.get_world_screw_axes())

    # ------------------------------------------------------------------
    # 动力学
    # ------------------------------------------------------------------
    def compute_mass_matrix(self, q):
        """
        质量矩阵 M(q) = Σ_b (Ad_{T_b^-1} J_b)ᵀ G_b (Ad_{T_b^-1} J_b)
        Args:
            q: 广义坐标
        Returns:
            Tensor，形状[n, n]
        """
        n = self.get_num_dofs()
        M = torch.zeros((n, n), dtype=DTYPE, device=self.device)
        if n == 0:
            return M
        transforms = self.compute_world_transforms(q)
        screw_axes = self.compute_world_screw_axes(q, transforms)
        for body, T in zip(self.body_nodes, transforms):
            body_jacobian = AdT_matrix(inverse_transform(T)) @ self.compute_body_jacobian(body, screw_axes)
            M = M + body_jacobian.transpose(0, 1) @ body.get_spatial_inertia() @ body_jacobian
        return M

    def compute_potential_energy(self, q, gravity):
        """重力势能 U(q) = -Σ_b m_b g·p_b"""
        energy = torch.zeros((), dtype=DTYPE, device=self.device)
        for body, T in zip(self.body_nodes, self.compute_world_transforms(q)):
            energy = energy - body.mass * torch.dot(gravity, T[:3, 3])
        return energy

    def compute_coriolis_and_gravity_forces(self, q, v, gravity):
        """
        科氏力/离心力与重力项 C(q, v) = (∂(M v)/∂q) v - ∂(½ vᵀ M v)/∂q + ∂U/∂q
        动力学方程：M v̇ + C = τ + τ_ext
        当q或v本身带梯度（外层雅可比）时，内部求导保留计算图
        Args:
            q: 广义坐标
            v: 广义速度
            gravity: 重力加速度（形状[3]）
        Returns:
            Tensor，形状[n]
        """
        n = self.get_num_dofs()
        if n == 0:
            return torch.zeros(0, dtype=DTYPE, device=self.device)
        outer = q.requires_grad or v.requires_grad
        with torch.enable_grad():
            q_in = q if q.requires_grad else q.detach().requires_grad_(True)
            Mv_jacobian = torch.autograd.functional.jacobian(
                lambda qq: self.compute_mass_matrix(qq) @ v, q_in, create_graph=True
            )
            kinetic = 0.5 * torch.dot(v, self.compute_mass_matrix(q_in) @ v)
            potential = self.compute_potential_energy(q_in, gravity)
            dkinetic, = torch.autograd.grad(kinetic, q_in, create_graph=True, allow_unused=True)
            dpotential, = torch.autograd.grad(potential, q_in, create_graph=True, allow_unused=True)
        if dkinetic is None:
            dkinetic = torch.zeros_like(q_in)
        if dpotential is None:
            dpotential = torch.zeros_like(q_in)
        result = Mv_jacobian @ v - dkinetic + dpotential
        return result if outer else result.detach()

    def compute_external_forces(self, q, cur_time):
        """
        刚体外力（Force列表）对应的广义力 τ_ext = Σ_b J_bᵀ F_b
        Args:
            q: 广义坐标
            cur_time: 当前仿真时间（决定力是否生效）
        Returns:
            Tensor，形状[n]
        """
        n = self.get_num_dofs()
        tau = torch.zeros(n, dtype=DTYPE, device=self.device)
        if n == 0 or not any(body.forces for body in self.body_nodes):
            return tau
        transforms = self.compute_world_transforms(q)
        screw_axes = self.compute_world_screw_axes(q, transforms)
        for body, T in zip(self.body_nodes, transforms):
            if not body.forces:
                continue
            wrench = body.get_external_wrench(cur_time, T)
            tau = tau + self.compute_body_jacobian(body, screw_axes).transpose(0, 1) @ wrench
        return tau

    def get_mass_matrix(self):
        return self.compute_mass_matrix(self.positions)

    def __repr__(self):
        return f"Skeleton(name={self.name}, dofs={self.get_num_dofs()}, bodies={self.get_num_body_nodes()})"
