""" 反向传播快照：记录一个时间步的前后状态与全部起作用的约束方向（CLAMPING / UPPER_BOUND），
组装跨时间步的雅可比矩阵，供轨迹优化反向传播使用。

记号（n为世界自由度数，c为CLAMPING约束数，u为UPPER_BOUND约束数）：
A_c [n, c]、A_u [n, u]：各约束方向的广义力向量 a_i（即约束雅可比的行）；
E [u, c]：上界冲量 = E × CLAMPING冲量（摩擦方向为 ±mu，对应其法向列）；
B = A_c + A_u E，Q = A_c^T M^-1 B，P = Q^-1 A_c^T，x_c = -P v_free；
v' = v_free + M^-1 B x_c = (I - M^-1 B P) v_free。
对速度/力矩：v_free线性依赖，直接左乘 (I - M^-1 B P)；
对位置：还需对 M^-1、a_i（接触几何）求导，见get_pos_vel_jacobian；
位置积分 q' = q + dt·v'。 """
import time
import torch

from diff_dynamics.neural.restorable_snapshot import RestorableSnapshot
from diff_dynamics.utils.geometry_utils import DTYPE


class BackpropSnapshot(object):
    def __init__(self, world, pre_step_position, pre_step_velocity, pre_step_torques, pre_constraint_velocities,
                 clamping_constraints, upper_bound_constraints, clamping_constraint_impulses,
                 upper_bound_constraint_impulses, upper_bound_mapping_matrix, pre_step_time=0.0):
        """
        Args:
            world (World): 世界（已推进完本时间步）
            pre_step_position, pre_step_velocity, pre_step_torques: 推进前的状态
            pre_constraint_velocities: 约束求解前（平滑动力学后）的速度 v_free
            clamping_constraints, upper_bound_constraints: 可微接触约束列表
            clamping_constraint_impulses, upper_bound_constraint_impulses: 对应冲量
            upper_bound_mapping_matrix: E [u, c]
            pre_step_time: 推进前的仿真时间
        """
        self.world = world
        self.num_dofs = world.get_num_dofs()
        self.dt = world.dtime
        self.pre_step_position = pre_step_position
        self.pre_step_velocity = pre_step_velocity
        self.pre_step_torques = pre_step_torques
        self.pre_step_time = pre_step_time
        self.pre_constraint_velocities = pre_constraint_velocities
        self.post_step_position = world.get_positions().clone()
        self.post_step_velocity = world.get_velocities().clone()
        self.post_step_torques = world.get_forces().clone()

        self.clamping_constraints = clamping_constraints
        self.upper_bound_constraints = upper_bound_constraints
        self.clamping_constraint_impulses = clamping_constraint_impulses
        self.upper_bound_constraint_impulses = upper_bound_constraint_impulses
        self.upper_bound_mapping_matrix = upper_bound_mapping_matrix

        self._cache = {}

    # ------------------------------------------------------------------
    # 记录的状态
    # ------------------------------------------------------------------
    def get_clamping_constraints(self):
        return self.clamping_constraints

    def get_upper_bound_constraints(self):
        return self.upper_bound_constraints

    def get_num_clamping(self):
        return len(self.clamping_constraints)

    def get_num_upper_bound(self):
        return len(self.upper_bound_constraints)

    def get_clamping_constraint_impulses(self):
        return self.clamping_constraint_impulses

    def get_upper_bound_constraint_impulses(self):
        return self.upper_bound_constraint_impulses

    def get_upper_bound_mapping_matrix(self):
        return self.upper_bound_mapping_matrix

    def get_pre_step_position(self):
        return self.pre_step_position

    def get_pre_step_velocity(self):
        return self.pre_step_velocity

    def get_pre_step_torques(self):
        return self.pre_step_torques

    def get_pre_constraint_velocity(self):
        return self.pre_constraint_velocities

    def get_post_step_position(self):
        return self.post_step_position

    def get_post_step_velocity(self):
        return self.post_step_velocity

    def get_post_step_torques(self):
        return self.post_step_torques

    def _set_pre_step_state(self, world):
        world.set_positions(self.pre_step_position)
        world.set_velocities(self.pre_step_velocity)
        world.set_forces(self.pre_step_torques)
        world.cur_time = self.pre_step_time

    def _memoize(self, key, compute, world, perf_log=None):
        if key not in self._cache:
            start = time.time()
            with RestorableSnapshot(world):
                self._set_pre_step_state(world)
                self._cache[key] = compute(world)
            if perf_log is not None:
                perf_log.record_mean(f"backprop_snapshot/{key}", time.time() - start)
        return self._cache[key]

    def get_mass_matrix(self, world):
        return self._memoize("mass_matrix", lambda w: w.get_mass_matrix().detach(), world)

    def get_inv_mass_matrix(self, world):
        return self._memoize("inv_mass_matrix", lambda w: w.get_inv_mass_matrix().detach(), world)

    # ------------------------------------------------------------------
    # 约束矩阵
    # ------------------------------------------------------------------
    def _constraint_matrix(self, world, constraints):
        if not constraints:
            return torch.zeros((self.num_dofs, 0), dtype=DTYPE, device=world.device)
        return torch.stack([c.get_constraint_forces(world) for c in constraints], dim=1).detach()

    def get_clamping_constraint_matrix(self, world):
        return self._memoize("clamping_matrix", lambda w: self._constraint_matrix(w, self.clamping_constraints), world)

    def get_upper_bound_constraint_matrix(self, world):
        return self._memoize("upper_bound_matrix",
                             lambda w: self._constraint_matrix(w, self.upper_bound_constraints), world)

    def get_bounced_constraint_matrix(self, world):
        """B = A_c + A_u E"""
        return self.get_clamping_constraint_matrix(world) + \
            self.get_upper_bound_constraint_matrix(world) @ self.upper_bound_mapping_matrix

    def _projection(self, world):
        """返回 (I - M^-1 B P, M^-1 B, Q^+)"""
        Minv = self.get_inv_mass_matrix(world)
        eye = torch.eye(self.num_dofs, dtype=DTYPE, device=world.device)
        if self.get_num_clamping() == 0:
            empty = torch.zeros((self.num_dofs, 0), dtype=DTYPE, device=world.device)
            return eye, empty, torch.zeros((0, 0), dtype=DTYPE, device=world.device)
        A_c = self.get_clamping_constraint_matrix(world)
        Minv_B = Minv @ self.get_bounced_constraint_matrix(world)
        Q_pinv = torch.linalg.pinv(A_c.transpose(0, 1) @ Minv_B)
        P = Q_pinv @ A_c.transpose(0, 1)
        return eye - Minv_B @ P, Minv_B, Q_pinv

    def get_constraint_forces(self, target):
        """
        本时间步的广义约束力 Σ a_i x_i / dt
        Args:
            target: World或Skeleton
        """
        world = self.world
        forces = self._memoize("constraint_forces", self._compute_constraint_forces, world)
        if target is world or hasattr(target, "get_num_skeletons"):
            return forces
        offset = world.get_dof_offset(target)
        return forces[offset:offset + target.get_num_dofs()]

    def _compute_constraint_forces(self, world):
        impulse = self.get_clamping_constraint_matrix(world) @ self.clamping_constraint_impulses
        if self.get_num_upper_bound() > 0:
            impulse = impulse + self.get_upper_bound_constraint_matrix(world) @ self.upper_bound_constraint_impulses
        return impulse / self.dt

    # ------------------------------------------------------------------
    # 解析雅可比
    # ------------------------------------------------------------------
    def get_vel_vel_jacobian(self, world, perf_log=None):
        def compute(w):
            projection, _, _ = self._projection(w)
            q, v, tau = self.pre_step_position, self.pre_step_velocity, self.pre_step_torques
            dvf_dv = torch.autograd.functional.jacobian(
                lambda vv: w.compute_unconstrained_velocities(q, vv, tau), v)
            return (projection @ dvf_dv).detach()
        return self._memoize("vel_vel", compute, world, perf_log)

    def get_force_vel_jacobian(self, world, perf_log=None):
        def compute(w):
            projection, _, _ = self._projection(w)
            return (projection @ (self.dt * self.get_inv_mass_matrix(w))).detach()
        return self._memoize("force_vel", compute, world, perf_log)

    def get_pos_vel_jacobian(self, world, perf_log=None):
        """
        dv'/dq = (I - M^-1 B P) Z - M^-1 B Q^-1 D
        Z = ∂v_free/∂q + ∂(M^-1 f)/∂q|_{f = B x_c} + M^-1 Σ_i x_i ∂a_i/∂q（i取CLAMPING与UPPER_BOUND）
        D的第i行 = v'^T ∂a_i/∂q（i取CLAMPING）
        """
        def compute(w):
            projection, Minv_B, Q_pinv = self._projection(w)
            q, v, tau = self.pre_step_position, self.pre_step_velocity, self.pre_step_torques
            dvf_dq = torch.autograd.functional.jacobian(
                lambda qq: w.compute_unconstrained_velocities(qq, v, tau), q)
            if self.get_num_clamping() == 0:
                return (projection @ dvf_dq).detach()

            Minv = self.get_inv_mass_matrix(w)
            f = self.get_bounced_constraint_matrix(w) @ self.clamping_constraint_impulses
            dMinv_f = torch.autograd.functional.jacobian(lambda qq: w.compute_inv_mass_matrix(qq) @ f, q)

            weighted = torch.zeros((self.num_dofs, self.num_dofs), dtype=DTYPE, device=w.device)
            D_rows = []
            for constraint, impulse in zip(self.clamping_constraints, self.clamping_constraint_impulses):
                da_dq = constraint.get_constraint_forces_jacobian(w)
                weighted = weighted + impulse * da_dq
                D_rows.append(self.post_step_velocity @ da_dq)
            for constraint, impulse in zip(self.upper_bound_constraints, self.upper_bound_constraint_impulses):
                weighted = weighted + impulse * constraint.get_constraint_forces_jacobian(w)
            D = torch.stack(D_rows, dim=0)

            Z = dvf_dq + dMinv_f + Minv @ weighted
            return (projection @ Z - Minv_B @ Q_pinv @ D).detach()
        return self._memoize("pos_vel", compute, world, perf_log)

    def get_pos_pos_jacobian(self, world, perf_log=None):
        eye = torch.eye(self.num_dofs, dtype=DTYPE, device=world.device)
        return eye + self.dt * self.get_pos_vel_jacobian(world, perf_log)

    def get_vel_pos_jacobian(self, world, perf_log=None):
        return self.dt * self.get_vel_vel_jacobian(world, perf_log)

    def get_force_pos_jacobian(self, world, perf_log=None):
        return self.dt * self.get_force_vel_jacobian(world, perf_log)

    # ------------------------------------------------------------------
    # 反向传播
    # ------------------------------------------------------------------
    def backprop(self, world, this_timestep_loss, next_timestep_loss, perf_log=None):
        """
        由损失对本步输出（位置、速度）的梯度，求损失对本步输入（位置、速度、力矩）的梯度
        Args:
            world (World): 世界
            this_timestep_loss (LossGradient): 输出，被填充
            next_timestep_loss (LossGradient): 损失对post-step位置/速度的梯度
            perf_log: sys_utils.Logger，记录各雅可比的耗时
        Returns:
            this_timestep_loss
        """
        start = time.time()
        grad_position = next_timestep_loss.loss_wrt_position
        grad_velocity = next_timestep_loss.loss_wrt_velocity
        this_timestep_loss.loss_wrt_position = (self.get_pos_pos_jacobian(world, perf_log).transpose(0, 1) @ grad_position
                                                + self.get_pos_vel_jacobian(world, perf_log).transpose(0, 1) @ grad_velocity)
        this_timestep_loss.loss_wrt_velocity = (self.get_vel_pos_jacobian(world, perf_log).transpose(0, 1) @ grad_position
                                                + self.get_vel_vel_jacobian(world, perf_log).transpose(0, 1) @ grad_velocity)
        this_timestep_loss.loss_wrt_torque = (self.get_force_pos_jacobian(world, perf_log).transpose(0, 1) @ grad_position
                                              + self.get_force_vel_jacobian(world, perf_log).transpose(0, 1) @ grad_velocity)
        if perf_log is not None:
            perf_log.record_mean("backprop_snapshot/backprop", time.time() - start)
        return this_timestep_loss

    # ------------------------------------------------------------------
    # 有限差分
    # ------------------------------------------------------------------
    def _finite_difference(self, world, perturb, read, eps, subdivisions=1):
        """
        中心差分：对第j个输入分量 ±eps 重新推进（subdivisions个dt/subdivisions的子步），读取输出
        Args:
            perturb: (world, j, delta) → 在world上施加扰动
            read: world → 输出量
        """
        columns = []
        dtime = world.dtime
        try:
            world.dtime = dtime / subdivisions
            for j in range(self.num_dofs):
                results = []
                for delta in (eps, -eps):
                    with RestorableSnapshot(world):
                        self._set_pre_step_state(world)
                        perturb(world, j, delta)
                        for _ in range(subdivisions):
                            world.step()
                        results.append(read(world).clone())
                columns.append((results[0] - results[1]) / (2.0 * eps))
        finally:
            world.dtime = dtime
        if not columns:
            return torch.zeros((self.num_dofs, 0), dtype=DTYPE, device=world.device)
        return torch.stack(columns, dim=1)

    @staticmethod
    def _perturb(getter, setter):
        def perturb(world, j, delta):
            value = getter(world).clone()
            value = value + torch.zeros_like(value).index_fill(0, torch.tensor([j], device=value.device), delta)
            setter(world, value)
        return perturb

    def finite_difference_vel_vel_jacobian(self, world, eps=1e-6):
        return self._finite_difference(
            world, self._perturb(lambda w: w.get_velocities(), lambda w, x: w.set_velocities(x)),
            lambda w: w.get_velocities(), eps)

    def finite_difference_pos_vel_jacobian(self, world, eps=1e-6):
        return self._finite_difference(
            world, self._perturb(lambda w: w.get_positions(), lambda w, x: w.set_positions(x)),
            lambda w: w.get_velocities(), eps)

    def finite_difference_force_vel_jacobian(self, world, eps=1e-6):
        return self._finite_difference(
            world, self._perturb(lambda w: w.get_forces(), lambda w, x: w.set_forces(x)),
            lambda w: w.get_velocities(), eps)

    def finite_difference_pos_pos_jacobian(self, world, subdivisions=1, eps=1e-6):
        return self._finite_difference(
            world, self._perturb(lambda w: w.get_positions(), lambda w, x: w.set_positions(x)),
            lambda w: w.get_positions(), eps, subdivisions)

    def finite_difference_vel_pos_jacobian(self, world, subdivisions=1, eps=1e-6):
        return self._finite_difference(
            world, self._perturb(lambda w: w.get_velocities(), lambda w, x: w.set_velocities(x)),
            lambda w: w.get_positions(), eps, subdivisions)

    def finite_difference_force_pos_jacobian(self, world, eps=1e-6):
        return self._finite_difference(
            world, self._perturb(lambda w: w.get_forces(), lambda w, x: w.set_forces(x)),
            lambda w: w.get_positions(), eps)
