""" 盒约束线性互补问题（boxed LCP）求解器：
求x使 w = A x - b 且对每一行i满足 lo_i ≤ x_i ≤ hi_i，
x_i在下界时w_i ≥ 0，在上界时w_i ≤ 0，严格在区间内时w_i = 0；
摩擦行（findex_i ≥ 0）的边界随对应法向冲量变化：[lo_i·|x_findex|, hi_i·|x_findex|]。
PgsBoxedLcpSolver：投影高斯-赛德尔迭代 + 有效集精修（在当前有效集上精确求解缩减线性方程组并校验互补条件）；
CvxpyBoxedLcpSolver：备用求解器，A对称半正定时LCP等价于盒约束QP，摩擦边界由法向冲量估计迭代更新。
任何求解器都不会返回未经校验的解，失败时抛出LcpSolveError。 """
from abc import ABCMeta, abstractmethod
import numpy as np

import diff_dynamics.solver.cvxpy as cvxpy
from diff_dynamics.solver.util import check_lcp_solution, effective_bounds, to_np


class LcpSolveError(RuntimeError):
    """LCP求解器无法给出满足互补条件的解"""
    pass


def _as_problem(A, b, lo, hi, findex):
    A = to_np(A)
    b = to_np(b)
    lo = np.asarray(to_np(lo) if hasattr(lo, "nelement") else lo, dtype=np.float64)
    hi = np.asarray(to_np(hi) if hasattr(hi, "nelement") else hi, dtype=np.float64)
    findex = np.asarray(to_np(findex) if hasattr(findex, "nelement") else findex, dtype=np.int64)
    n = b.shape[0]
    if A.shape != (n, n) or lo.shape != (n,) or hi.shape != (n,) or findex.shape != (n,):
        raise ValueError(f"Inconsistent LCP sizes: A {A.shape}, b {b.shape}, lo {lo.shape}, hi {hi.shape}, "
                         f"findex {findex.shape}")
    return A, b, lo, hi, findex


def polish_lcp_solution(A, b, x, lo, hi, findex, tol=1e-8, max_passes=5):
    """
    有效集精修：根据近似解x判断每一行处于下界/上界/区间内，
    把处于边界的行固定为边界值（摩擦行固定为 ±mu·x_normal，法向行自由时作为线性关系代入），
    在区间内的行上精确求解 (A P)_F y = (b - A c)_F，得到 x = P y + c
    Args:
        A, b, x, lo, hi, findex: 问题数据与近似解（numpy）
        tol: 互补条件校验容差
        max_passes: 重新划分有效集的最大次数
    Returns:
        np.ndarray 或 None（精修后仍不满足互补条件）
    """
    n = x.shape[0]
    if n == 0:
        return x
    for _ in range(max_passes):
        lower, upper = effective_bounds(x, lo, hi, findex)
        eps = tol * (1.0 + np.max(np.abs(x)))
        state = np.zeros(n, dtype=np.int64)
        for i in range(n):
            if upper[i] - lower[i] <= eps or x[i] <= lower[i] + eps:
                state[i] = -1
            elif x[i] >= upper[i] - eps:
                state[i] = 1
        free = np.flatnonzero(state == 0)
        column = {int(i): k for k, i in enumerate(free)}

        P = np.zeros((n, free.shape[0]))
        c = np.zeros(n)
        for i in range(n):
            if state[i] == 0:
                P[i, column[i]] = 1.0
                continue
            coef = lo[i] if state[i] < 0 else hi[i]
            j = findex[i]
            if j < 0:
                c[i] = coef
            elif state[j] == 0:
                P[i, column[int(j)]] = coef
            else:
                c[i] = coef * abs(lower[j] if state[j] < 0 else upper[j])

        if free.shape[0] > 0:
            lhs = (A @ P)[free]
            rhs = (b - A @ c)[free]
            y = np.linalg.lstsq(lhs, rhs, rcond=None)[0]
            polished = P @ y + c
        else:
            polished = c
        if check_lcp_solution(A, b, polished, lo, hi, findex, tol):
            return polished
        if np.allclose(polished, x, atol=eps, rtol=0.0):
            return None
        x = polished
    return None


class BoxedLcpSolver(metaclass=ABCMeta):
    def __init__(self, tolerance=1e-8):
        self.tolerance = tolerance

    @abstractmethod
    def solve(self, A, b, lo, hi, findex):
        """
        Args:
            A: [n, n]
            b: [n]
            lo, hi: 名义上下界（摩擦行为 ∓mu）
            findex: 摩擦行对应的法向行序号，-1表示普通行
        Returns:
            np.ndarray: 满足互补条件的解x
        Raises:
            LcpSolveError: 无法得到经过校验的解
        """
        pass

    def get_name(self):
        return type(self).__name__


class PgsBoxedLcpSolver(BoxedLcpSolver):
    def __init__(self, max_iterations=1000, tolerance=1e-8):
        super().__init__(tolerance)
        self.max_iterations = max_iterations

    def solve(self, A, b, lo, hi, findex):
        A, b, lo, hi, findex = _as_problem(A, b, lo, hi, findex)
        n = b.shape[0]
        x = np.zeros(n)
        if n == 0:
            return x
        diag = np.diag(A)
        for _ in range(self.max_iterations):
            max_delta = 0.0
            for i in range(n):
                if diag[i] <= 1e-14:
                    continue
                value = x[i] + (b[i] - A[i] @ x) / diag[i]
                if findex[i] >= 0:
                    scale = abs(x[findex[i]])
                    value = min(max(value, lo[i] * scale), hi[i] * scale)
                else:
                    value = min(max(value, lo[i]), hi[i])
                max_delta = max(max_delta, abs(value - x[i]))
                x[i] = value
            if max_delta < self.tolerance:
                break

        polished = polish_lcp_solution(A, b, x, lo, hi, findex, self.tolerance)
        if polished is not None:
            return polished
        if check_lcp_solution(A, b, x, lo, hi, findex, self.tolerance):
            return x
        raise LcpSolveError(f"PGS did not reach a complementary solution after {self.max_iterations} iterations")


class CvxpyBoxedLcpSolver(BoxedLcpSolver):
    def __init__(self, max_friction_rounds=10, tolerance=1e-7):
        super().__init__(tolerance)
        self.max_friction_rounds = max_friction_rounds

    def solve(self, A, b, lo, hi, findex):
        A, b, lo, hi, findex = _as_problem(A, b, lo, hi, findex)
        n = b.shape[0]
        if n == 0:
            return np.zeros(0)
        estimate = np.zeros(n)
        x = estimate
        for _ in range(self.max_friction_rounds):
            lower, upper = effective_bounds(estimate, lo, hi, findex)
            try:
                _, x = cvxpy.forward_single_np(A, b, lower, upper)
            except Exception as e:
                raise LcpSolveError(f"CVXPY failed on the box QP: {e}") from e
            if np.max(np.abs(x - estimate)) < self.tolerance * (1.0 + np.max(np.abs(x))):
                break
            estimate = x

        polished = polish_lcp_solution(A, b, x, lo, hi, findex, self.tolerance)
        if polished is None:
            raise LcpSolveError("CVXPY solution does not satisfy the complementarity conditions")
        return polished
