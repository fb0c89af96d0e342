import math
import numpy as np
import pytest

from diff_dynamics.solver.lcp_solver import (
    CvxpyBoxedLcpSolver, LcpSolveError, PgsBoxedLcpSolver, polish_lcp_solution
)
from diff_dynamics.solver.util import check_lcp_solution

INF = math.inf


def _two_contacts():
    A = np.array([[2.0, 1.0], [1.0, 2.0]])
    b = np.array([1.0, -1.0])
    return A, b, [0.0, 0.0], [INF, INF], [-1, -1]


def _friction_problem(push):
    # 法向行 + 一个摩擦行，mu = 0.5
    A = np.array([[1.0, 0.0], [0.0, 1.0]])
    b = np.array([1.0, push])
    return A, b, [0.0, -0.5], [INF, 0.5], [-1, 0]


@pytest.mark.parametrize("solver", [PgsBoxedLcpSolver(), CvxpyBoxedLcpSolver()])
def test_separating_row_is_zero(solver):
    A, b, lo, hi, findex = _two_contacts()
    x = solver.solve(A, b, lo, hi, findex)
    np.testing.assert_allclose(x, [0.5, 0.0], atol=1e-7)


@pytest.mark.parametrize("solver", [PgsBoxedLcpSolver(), CvxpyBoxedLcpSolver()])
def test_friction_inside_cone(solver):
    A, b, lo, hi, findex = _friction_problem(0.2)
    x = solver.solve(A, b, lo, hi, findex)
    np.testing.assert_allclose(x, [1.0, 0.2], atol=1e-7)


@pytest.mark.parametrize("solver", [PgsBoxedLcpSolver(), CvxpyBoxedLcpSolver()])
def test_friction_clamped_to_cone(solver):
    A, b, lo, hi, findex = _friction_problem(-3.0)
    x = solver.solve(A, b, lo, hi, findex)
    np.testing.assert_allclose(x, [1.0, -0.5], atol=1e-7)
    assert check_lcp_solution(A, b, x, lo, hi, findex, 1e-7)


def test_empty_problem():
    x = PgsBoxedLcpSolver().solve(np.zeros((0, 0)), np.zeros(0), [], [], [])
    assert x.shape == (0,)


def test_inconsistent_sizes_rejected():
    with pytest.raises(ValueError):
        PgsBoxedLcpSolver().solve(np.eye(2), np.zeros(3), [0.0, 0.0], [INF, INF], [-1, -1])


def test_pgs_failure_raises():
    # A不半正定且无解：x ≥ 0，w = -x - 1 不可能 ≥ 0，x > 0 时 w ≠ 0
    solver = PgsBoxedLcpSolver(max_iterations=5)
    with pytest.raises(LcpSolveError):
        solver.solve(np.array([[-1.0]]), np.array([1.0]), [0.0], [INF], [-1])


def test_check_rejects_wrong_solution():
    A, b, lo, hi, findex = _two_contacts()
    assert not check_lcp_solution(A, b, np.array([0.4, 0.0]), lo, hi, findex, 1e-8)
    assert check_lcp_solution(A, b, np.array([0.5, 0.0]), lo, hi, findex, 1e-8)


def test_polish_recovers_exact_solution():
    A, b, lo, hi, findex = _two_contacts()
    polished = polish_lcp_solution(A, b, np.array([0.4999, 1e-12]), np.array(lo), np.array(hi), np.array(findex))
    np.testing.assert_allclose(polished, [0.5, 0.0], atol=1e-12)
