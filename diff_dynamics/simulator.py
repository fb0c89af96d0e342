""" 可微分多体动力学世界（World）：
骨架管理：按添加顺序登记骨架，世界自由度 = 各骨架自由度依次拼接（get_dof_offset给出每个骨架的起始列）；
平滑动力学：质量矩阵（块对角）、科氏力+重力项、外力广义力，v_free = v + dt·M^-1 (τ + τ_ext - C)；
约束求解：碰撞检测 → 接触/关节限位约束 → 盒约束LCP → v' = v_free + M^-1 J^T x；
积分：q' = q + dt·v'（广义坐标上的欧拉积分）。
所有以(q, v, τ)为参数的compute_*函数都是纯函数，可被torch.autograd.functional.jacobian求导，供反向传播快照使用。 """
import json
import torch

from diff_dynamics.collision.collision_detector import CollisionDetector
from diff_dynamics.solver.constraint_solver import ConstraintSolver
from diff_dynamics.utils.geometry_utils import DTYPE


class World(object):
    """可微分多体动力学世界：管理骨架、碰撞检测与约束求解，推进一个时间步"""

    def __init__(self, dtime=1e-3, gravity=(0.0, 0.0, -9.81), device=None, contact_margin=1e-3,
                 lcp_max_iterations=1000, lcp_tolerance=1e-8, logger=None):
        """
        Args:
            dtime (float): 仿真时间步长
            gravity: 重力加速度（长度3）
            device (torch.device): 计算设备
            contact_margin (float): 碰撞检测的接触距离阈值
            lcp_max_iterations (int): PGS最大迭代次数
            lcp_tolerance (float): PGS收敛/互补条件校验容差
            logger: sys_utils.Logger，用于记录求解器回退
        """
        self.device = device
        self.dtime = dtime
        self.cur_time = 0.0
        self.gravity = torch.as_tensor(gravity, dtype=DTYPE, device=device)
        self.lcp_max_iterations = lcp_max_iterations
        self.lcp_tolerance = lcp_tolerance

        self.skeletons = []
        self.collision_detector = CollisionDetector(contact_margin)
        self.constraint_solver = ConstraintSolver(self, logger=logger)
        self.initial_state = None
        self.last_unconstrained_velocities = None

    # ------------------------------------------------------------------
    # 骨架与自由度
    # ------------------------------------------------------------------
    def add_skeleton(self, skeleton):
        if skeleton is None:
            raise ValueError("Cannot add a None skeleton")
        if any(s.name == skeleton.name for s in self.skeletons):
            raise ValueError(f"Skeleton name {skeleton.name} already exists in the world")
        skeleton.world = self
        self.skeletons.append(skeleton)
        return skeleton

    def create_skeleton(self, name, self_collision=False):
        from diff_dynamics.dynamics.skeleton import Skeleton
        return self.add_skeleton(Skeleton(name, device=self.device, self_collision=self_collision))

    def get_skeleton(self, key):
        """按序号或名称获取骨架"""
        if isinstance(key, int):
            return self.skeletons[key]
        for skeleton in self.skeletons:
            if skeleton.name == key:
                return skeleton
        raise KeyError(f"No skeleton named {key} in the world")

    def get_skeletons(self):
        return list(self.skeletons)

    def get_num_skeletons(self):
        return len(self.skeletons)

    def get_num_dofs(self):
        return sum(skeleton.get_num_dofs() for skeleton in self.skeletons)

    def get_dofs(self):
        return [dof for skeleton in self.skeletons for dof in skeleton.get_dofs()]

    def get_body_nodes(self):
        return [body for skeleton in self.skeletons for body in skeleton.get_body_nodes()]

    def get_dof_offset(self, skeleton):
        """骨架的第一个自由度在世界自由度向量中的位置"""
        offset = 0
        for s in self.skeletons:
            if s is skeleton:
                return offset
            offset += s.get_num_dofs()
        raise ValueError(f"{skeleton} is not part of this world")

    def get_world_dof_index(self, dof):
        return self.get_dof_offset(dof.get_skeleton()) + dof.get_index_in_skeleton()

    def _split(self, vector):
        sizes = [skeleton.get_num_dofs() for skeleton in self.skeletons]
        if vector.shape != (sum(sizes),):
            raise ValueError(f"Expected a world state vector of size {sum(sizes)}, got shape {tuple(vector.shape)}")
        return torch.split(vector, sizes)

    def _cat(self, vectors):
        if not vectors:
            return torch.zeros(0, dtype=DTYPE, device=self.device)
        return torch.cat(vectors)

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------
    def get_positions(self):
        return self._cat([skeleton.get_positions() for skeleton in self.skeletons])

    def set_positions(self, positions):
        positions = torch.as_tensor(positions, dtype=DTYPE, device=self.device)
        for skeleton, chunk in zip(self.skeletons, self._split(positions)):
            skeleton.set_positions(chunk)

    def get_velocities(self):
        return self._cat([skeleton.get_velocities() for skeleton in self.skeletons])

    def set_velocities(self, velocities):
        velocities = torch.as_tensor(velocities, dtype=DTYPE, device=self.device)
        for skeleton, chunk in zip(self.skeletons, self._split(velocities)):
            skeleton.set_velocities(chunk)

    def get_forces(self):
        return self._cat([skeleton.get_forces() for skeleton in self.skeletons])

    def set_forces(self, forces):
        forces = torch.as_tensor(forces, dtype=DTYPE, device=self.device)
        for skeleton, chunk in zip(self.skeletons, self._split(forces)):
            skeleton.set_forces(chunk)

    # ------------------------------------------------------------------
    # 动力学（q, v的纯函数）
    # ------------------------------------------------------------------
    def compute_mass_matrix(self, q):
        blocks = [skeleton.compute_mass_matrix(chunk)
                  for skeleton, chunk in zip(self.skeletons, self._split(q)) if skeleton.get_num_dofs() > 0]
        if not blocks:
            return torch.zeros((0, 0), dtype=DTYPE, device=self.device)
        return torch.block_diag(*blocks)

    def compute_inv_mass_matrix(self, q):
        blocks = [torch.linalg.inv(skeleton.compute_mass_matrix(chunk))
                  for skeleton, chunk in zip(self.skeletons, self._split(q)) if skeleton.get_num_dofs() > 0]
        if not blocks:
            return torch.zeros((0, 0), dtype=DTYPE, device=self.device)
        return torch.block_diag(*blocks)

    def compute_coriolis_and_gravity_forces(self, q, v):
        return self._cat([
            skeleton.compute_coriolis_and_gravity_forces(q_chunk, v_chunk, self.gravity)
            for skeleton, q_chunk, v_chunk in zip(self.skeletons, self._split(q), self._split(v))
        ])

    def compute_external_forces(self, q):
        return self._cat([
            skeleton.compute_external_forces(chunk, self.cur_time)
            for skeleton, chunk in zip(self.skeletons, self._split(q))
        ])

    def compute_unconstrained_velocities(self, q, v, tau):
        """
        无约束速度 v_free = v + dt·M(q)^-1 (τ + τ_ext(q) - C(q, v))
        """
        rhs = tau + self.compute_external_forces(q) - self.compute_coriolis_and_gravity_forces(q, v)
        return v + self.dtime * (self.compute_inv_mass_matrix(q) @ rhs)

    def get_mass_matrix(self):
        return self.compute_mass_matrix(self.get_positions())

    def get_inv_mass_matrix(self):
        return self.compute_inv_mass_matrix(self.get_positions())

    def get_coriolis_and_gravity_forces(self):
        return self.compute_coriolis_and_gravity_forces(self.get_positions(), self.get_velocities())

    def get_external_forces(self):
        return self.compute_external_forces(self.get_positions())

    def get_unconstrained_velocities(self):
        return self.compute_unconstrained_velocities(self.get_positions(), self.get_velocities(), self.get_forces())

    def get_body_jacobian(self, body):
        """
        刚体的世界尺寸空间雅可比（形状[6, 世界自由度数]），非本骨架的列为0
        """
        skeleton = body.get_skeleton()
        offset = self.get_dof_offset(skeleton)
        n = skeleton.get_num_dofs()
        before = torch.zeros((6, offset), dtype=DTYPE, device=self.device)
        after = torch.zeros((6, self.get_num_dofs() - offset - n), dtype=DTYPE, device=self.device)
        return torch.cat([before, skeleton.get_world_jacobian(body), after], dim=1)

    # ------------------------------------------------------------------
    # 仿真推进
    # ------------------------------------------------------------------
    def integrate_positions(self, q, v):
        return q + self.dtime * v

    def step(self):
        """执行单步仿真：平滑动力学 → 碰撞检测与约束求解 → 位置积分 → 时间更新"""
        if self.initial_state is None:
            self.initial_state = (self.get_positions().clone(), self.get_velocities().clone())
        v_free = self.get_unconstrained_velocities().detach()
        self.last_unconstrained_velocities = v_free
        new_velocities = self.constraint_solver.solve(v_free).detach()
        new_positions = self.integrate_positions(self.get_positions(), new_velocities)
        self.set_velocities(new_velocities)
        self.set_positions(new_positions)
        self.cur_time = self.cur_time + self.dtime

    def reset(self):
        """重置仿真时间，并恢复到第一次step之前的状态"""
        self.cur_time = 0.0
        if self.initial_state is not None:
            positions, velocities = self.initial_state
            self.set_positions(positions)
            self.set_velocities(velocities)
        for skeleton in self.skeletons:
            skeleton.reset_command()

    # ------------------------------------------------------------------
    # 物理材料
    # ------------------------------------------------------------------
    def get_all_physical_materials(self):
        return [body.get_physical_materials() for body in self.get_body_nodes()]

    def load_all_physical_materials(self, json_path):
        """从JSON文件（"activate"字段，按skeleton_name/body_name定位刚体）加载物理材料参数"""
        with open(json_path, 'r') as json_file:
            all_physical_materials_json = json.load(json_file)["activate"]
        for physical_materials_json in all_physical_materials_json:
            skeleton = self.get_skeleton(physical_materials_json["skeleton_name"])
            body = skeleton.get_body_node(physical_materials_json["body_name"])
            physical_materials = body.get_physical_materials()
            for key, value in physical_materials_json.items():
                if key in physical_materials.all:
                    physical_materials.set_material(key, value)
            body.set_physical_materials(physical_materials)

    def save_all_physical_materials(self, json_path):
        entries = []
        for body in self.get_body_nodes():
            entry = body.get_physical_materials().get_activate_json_dict()
            entry["skeleton_name"] = body.get_skeleton().name
            entries.append(entry)
        with open(json_path, 'w') as json_file:
            json.dump({"activate": entries}, json_file, indent=4)
