""" 约束求解：收集本时间步的接触约束与关节限位约束，拼成盒约束LCP
A = J M^-1 J^T，b = -J v_free（w = A x - b = J v'），求得冲量x后更新速度 v' = v_free + M^-1 J^T x，
并把每一行划分为：
CLAMPING：冲量严格在边界内（法向/限位冲量 > eps，或摩擦冲量 |x| < mu·x_n - eps），速度约束 J_i v' = 0；
UPPER_BOUND：摩擦冲量达到 ±mu·x_n（对应法向行必须是CLAMPING），冲量随法向冲量按比例变化；
DROPPED：冲量为0，约束不起作用。 """
from enum import Enum
import torch

from diff_dynamics.constraints.contact_constraint import ContactConstraint
from diff_dynamics.constraints.joint_limit_constraint import detect_joint_limits
from diff_dynamics.solver.lcp_solver import CvxpyBoxedLcpSolver, LcpSolveError, PgsBoxedLcpSolver
from diff_dynamics.solver.util import print_header
from diff_dynamics.utils.geometry_utils import DTYPE


class ConstraintRowState(Enum):
    CLAMPING = 0
    UPPER_BOUND = 1
    DROPPED = 2


class LcpSolution(object):
    """
    一个时间步的LCP求解记录
    """

    def __init__(self, constraints, rows, J, x, lo, hi, findex, mu, states):
        """
        Args:
            constraints: 本时间步的约束列表
            rows: 每一行对应的 (约束, 约束内序号)
            J: 约束雅可比（形状[m, n]）
            x: 冲量（形状[m]）
            lo, hi, findex, mu: LCP边界数据（findex为全局行号）
            states: 每一行的ConstraintRowState
        """
        self.constraints = constraints
        self.rows = rows
        self.J = J
        self.x = x
        self.lo = lo
        self.hi = hi
        self.findex = findex
        self.mu = mu
        self.states = states

    def get_num_rows(self):
        return len(self.rows)

    def get_rows(self, state):
        return [i for i, s in enumerate(self.states) if s == state]


class ConstraintSolver(object):
    def __init__(self, world, solvers=None, logger=None, classification_eps=1e-9):
        """
        Args:
            world (World): 世界
            solvers: 按顺序尝试的BoxedLcpSolver列表，默认 [PGS, CVXPY]
            logger: sys_utils.Logger，None时直接打印
            classification_eps: 冲量划分阈值
        """
        self.world = world
        if solvers is None:
            solvers = [
                PgsBoxedLcpSolver(max_iterations=world.lcp_max_iterations, tolerance=world.lcp_tolerance),
                CvxpyBoxedLcpSolver(),
            ]
        self.solvers = solvers
        self.logger = logger
        self.classification_eps = classification_eps
        self.last_solution = None

    def _log_warn(self, msg):
        if self.logger is not None:
            self.logger.warn(msg)
        else:
            print_header(msg)

    def collect_constraints(self):
        contacts = self.world.collision_detector.detect(self.world)
        constraints = [ContactConstraint(contact) for contact in contacts]
        constraints += detect_joint_limits(self.world)
        for index, constraint in enumerate(constraints):
            constraint.set_id(index)
        return constraints

    def solve_lcp(self, A, b, lo, hi, findex):
        """依次尝试各求解器，全部失败时抛出LcpSolveError"""
        errors = []
        for solver in self.solvers:
            try:
                return solver.solve(A, b, lo, hi, findex)
            except LcpSolveError as e:
                errors.append(f"{solver.get_name()}: {e}")
                self._log_warn(f"{solver.get_name()} failed at t={self.world.cur_time:.6f} ({e}), falling back")
        raise LcpSolveError("All LCP solvers failed: " + "; ".join(errors))

    def classify(self, constraints, rows, x, findex, mu):
        eps = self.classification_eps
        states = []
        for i, (constraint, index) in enumerate(rows):
            if findex[i] < 0:
                states.append(ConstraintRowState.CLAMPING if x[i] > eps else ConstraintRowState.DROPPED)
                continue
            normal = findex[i]
            if states[normal] != ConstraintRowState.CLAMPING:
                states.append(ConstraintRowState.DROPPED)
            elif abs(x[i]) < mu[i] * x[normal] - eps:
                states.append(ConstraintRowState.CLAMPING)
            else:
                states.append(ConstraintRowState.UPPER_BOUND)
        return states

    def solve(self, v_free):
        """
        求解约束并返回约束后的速度
        Args:
            v_free: 无约束速度（形状[n]）
        Returns:
            约束后的速度 v'
        Raises:
            LcpSolveError: 所有求解器都失败
        """
        constraints = self.collect_constraints()
        n = self.world.get_num_dofs()
        rows, J_rows, lo, hi, findex, mu = [], [], [], [], [], []
        for constraint in constraints:
            offset = len(rows)
            J_rows.append(constraint.J(self.world))
            c_lo, c_hi, c_findex, c_mu = constraint.get_bounds()
            for index in range(constraint.get_dimension()):
                rows.append((constraint, index))
                lo.append(c_lo[index])
                hi.append(c_hi[index])
                findex.append(c_findex[index] + offset if c_findex[index] >= 0 else -1)
                mu.append(c_mu[index])

        if not rows:
            empty_J = torch.zeros((0, n), dtype=DTYPE, device=self.world.device)
            empty_x = torch.zeros(0, dtype=DTYPE, device=self.world.device)
            self.last_solution = LcpSolution(constraints, rows, empty_J, empty_x, lo, hi, findex, mu, [])
            return v_free

        J = torch.cat(J_rows, dim=0).detach()
        Minv = self.world.get_inv_mass_matrix()
        A = J @ Minv @ J.transpose(0, 1)
        b = -J @ v_free.detach()
        x = self.solve_lcp(A, b, lo, hi, findex)
        states = self.classify(constraints, rows, x, findex, mu)
        x = torch.as_tensor(x, dtype=DTYPE, device=self.world.device)

        self.last_solution = LcpSolution(constraints, rows, J, x, lo, hi, findex, mu, states)
        return v_free + Minv @ J.transpose(0, 1) @ x
