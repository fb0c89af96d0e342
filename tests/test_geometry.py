import math
import torch

from diff_dynamics.utils.geometry_utils import (
    DTYPE, AdT, ad, exp_map, get_contact_point, get_contact_point_gradient, gradient_wrt_theta,
    inverse_transform, make_transform, normalize_gradient, revolute_transform, rotation_z, skew,
    transform_point
)

from conftest import assert_close


def test_skew_matches_cross():
    w = torch.tensor([0.3, -1.2, 0.7], dtype=DTYPE)
    x = torch.tensor([2.0, 0.5, -0.4], dtype=DTYPE)
    assert_close(skew(w) @ x, torch.cross(w, x, dim=0), atol=1e-12)


def test_inverse_transform():
    T = make_transform(rotation_z(0.7), torch.tensor([1.0, 2.0, 3.0], dtype=DTYPE))
    assert_close(T @ inverse_transform(T), torch.eye(4, dtype=DTYPE), atol=1e-12)


def test_revolute_transform_quarter_turn():
    T = revolute_transform(torch.tensor([0.0, 0.0, 1.0], dtype=DTYPE), torch.tensor(0.5 * math.pi, dtype=DTYPE))
    point = transform_point(T, torch.tensor([1.0, 0.0, 0.0], dtype=DTYPE))
    assert_close(point, torch.tensor([0.0, 1.0, 0.0], dtype=DTYPE), atol=1e-12)


def test_exp_map_pure_translation():
    twist = torch.tensor([0.0, 0.0, 0.0, 0.1, -0.2, 0.3], dtype=DTYPE)
    T = exp_map(twist)
    assert_close(T[:3, :3], torch.eye(3, dtype=DTYPE), atol=1e-12)
    assert_close(T[:3, 3], twist[3:], atol=1e-12)


def test_exp_map_first_order_matches_gradient_wrt_theta():
    twist = torch.tensor([0.2, -0.5, 0.9, 0.3, 0.1, -0.4], dtype=DTYPE)
    point = torch.tensor([0.4, 1.1, -0.3], dtype=DTYPE)
    eps = 1e-7
    moved = transform_point(exp_map(twist * eps), point)
    assert_close((moved - point) / eps, gradient_wrt_theta(twist, point), atol=1e-6)


def test_ad_is_derivative_of_adjoint():
    xi_1 = torch.tensor([0.1, 0.7, -0.3, 0.5, 0.2, 0.0], dtype=DTYPE)
    xi_2 = torch.tensor([-0.4, 0.2, 0.8, 0.1, -0.6, 0.3], dtype=DTYPE)
    eps = 1e-7
    estimate = (AdT(exp_map(xi_1 * eps), xi_2) - xi_2) / eps
    assert_close(estimate, ad(xi_1, xi_2), atol=1e-6)


def test_contact_point_is_midpoint_of_closest_points():
    pA = torch.tensor([0.0, 0.0, 0.0], dtype=DTYPE)
    dA = torch.tensor([1.0, 0.0, 0.0], dtype=DTYPE)
    pB = torch.tensor([0.3, -1.0, 0.2], dtype=DTYPE)
    dB = torch.tensor([0.0, 1.0, 0.0], dtype=DTYPE)
    assert_close(get_contact_point(pA, dA, pB, dB), torch.tensor([0.3, 0.0, 0.1], dtype=DTYPE), atol=1e-12)


def test_contact_point_gradient_matches_finite_difference():
    generator = torch.Generator().manual_seed(0)
    pA, dA, pB, dB, dpA, ddA, dpB, ddB = [torch.randn(3, dtype=DTYPE, generator=generator) for _ in range(8)]
    eps = 1e-7
    moved = get_contact_point(pA + eps * dpA, dA + eps * ddA, pB + eps * dpB, dB + eps * ddB)
    estimate = (moved - get_contact_point(pA, dA, pB, dB)) / eps
    analytic = get_contact_point_gradient(pA, dpA, dA, ddA, pB, dpB, dB, ddB)
    assert_close(analytic, estimate, atol=1e-5, rtol=1e-4)


def test_parallel_edges_raise():
    d = torch.tensor([1.0, 0.0, 0.0], dtype=DTYPE)
    try:
        get_contact_point(torch.zeros(3, dtype=DTYPE), d, torch.ones(3, dtype=DTYPE), d)
    except ValueError:
        return
    raise AssertionError("parallel edges should raise ValueError")


def test_normalize_gradient():
    x = torch.tensor([0.3, -0.4, 1.2], dtype=DTYPE)
    dx = torch.tensor([0.1, 0.5, -0.2], dtype=DTYPE)
    eps = 1e-7
    estimate = ((x + eps * dx) / torch.linalg.norm(x + eps * dx) - x / torch.linalg.norm(x)) / eps
    assert_close(normalize_gradient(x, dx), estimate, atol=1e-6)
