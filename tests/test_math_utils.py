import numpy as np
from scipy.linalg import expm

from msckf_slam.math_utils import (
    mahalanobis_squared,
    projection_jacobian,
    quat_boxplus,
    quat_multiply,
    quat_to_rot,
    rot_to_quat,
    skew_symmetric,
    small_angle_quat,
)


def test_rotation_is_orthonormal():
    R = quat_to_rot(np.array([0.9, 0.1, -0.3, 0.2]))  # not unit, normalized inside
    np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-12)
    assert np.linalg.det(R) > 0.0


def test_rot_to_quat_inverts_quat_to_rot():
    for v in ([0.3, -0.2, 0.1], [3.0, 0.1, 0.0], [0.0, -2.9, 0.4]):
        q = small_angle_quat(np.array(v))
        q_back = rot_to_quat(quat_to_rot(q))
        assert np.allclose(q_back, q, atol=1e-10) or np.allclose(q_back, -q, atol=1e-10)


def test_boxplus_is_right_perturbation():
    q = small_angle_quat(np.array([0.2, -0.4, 0.7]))
    dtheta = np.array([0.01, 0.02, -0.015])
    expected = quat_to_rot(q) @ expm(skew_symmetric(dtheta))
    np.testing.assert_allclose(quat_to_rot(quat_boxplus(q, dtheta)), expected, atol=1e-12)


def test_quat_multiply_composes_rotations():
    q1 = small_angle_quat(np.array([0.1, 0.0, 0.3]))
    q2 = small_angle_quat(np.array([-0.2, 0.5, 0.0]))
    np.testing.assert_allclose(quat_to_rot(quat_multiply(q1, q2)),
                               quat_to_rot(q1) @ quat_to_rot(q2), atol=1e-12)


def test_skew_is_cross_product():
    a = np.array([1.0, -2.0, 0.5])
    b = np.array([0.3, 0.4, -1.0])
    np.testing.assert_allclose(skew_symmetric(a) @ b, np.cross(a, b))


def test_projection_jacobian_matches_finite_difference():
    p = np.array([0.4, -0.7, 3.0])
    J = projection_jacobian(p)
    eps = 1e-6
    for k in range(3):
        dp = np.zeros(3)
        dp[k] = eps
        num = ((p + dp)[:2] / (p + dp)[2] - (p - dp)[:2] / (p - dp)[2]) / (2 * eps)
        np.testing.assert_allclose(J[:, k], num, atol=1e-8)


def test_mahalanobis_matches_solve():
    A = np.array([[2.0, 0.3, 0.0], [0.3, 1.0, 0.1], [0.0, 0.1, 0.5]])
    y = np.array([0.5, -1.0, 2.0])
    assert np.isclose(mahalanobis_squared(y, A), y @ np.linalg.solve(A, y))


def test_mahalanobis_singular_falls_back_to_pinv():
    S = np.diag([1.0, 0.0])
    assert np.isclose(mahalanobis_squared(np.array([2.0, 0.0]), S), 4.0)
