#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
MSCKF-SLAM Math Utilities Module
================================

Quaternion operations, rotation matrices and linear-algebra helpers shared
by the triangulator and the MSCKF-SLAM update.

Quaternion Convention:
----------------------
All quaternions use Hamilton convention with [w, x, y, z] ordering:
- w is the scalar (real) part
- [x, y, z] is the vector (imaginary) part

Camera attitudes are stored as R_WC (camera-to-world), so a world point
p_w is expressed in camera i as  p_c = R_WC_i^T @ (p_w - p_i).

Error-state perturbation is local (right) for attitudes:
    R = R_hat @ Exp(δθ)
which matches quat_boxplus() below.

Key Operations:
---------------
- quat_multiply: Hamilton quaternion product
- quat_normalize: Ensure unit quaternion
- quat_to_rot / rot_to_quat: Conversions
- quat_boxplus: Quaternion ⊞ rotation vector (perturbation)
- skew_symmetric: 3x3 cross-product matrix
- projection_jacobian: d(x/z, y/z)/d(x, y, z)
- mahalanobis_squared: y^T S^-1 y via Cholesky

Author: VIO project
"""

import numpy as np


# =============================================================================
# Quaternion Operations (all use [w, x, y, z] Hamilton convention)
# =============================================================================

def quat_multiply(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    """
    Quaternion multiplication: q1 ⊗ q2, both in [w,x,y,z] format.

    q1 ⊗ q2 represents rotation q2 followed by rotation q1.
    """
    w1, x1, y1, z1 = q1
    w2, x2, y2, z2 = q2
    return np.array([
        w1*w2 - x1*x2 - y1*y2 - z1*z2,
        w1*x2 + x1*w2 + y1*z2 - z1*y2,
        w1*y2 - x1*z2 + y1*w2 + z1*x2,
        w1*z2 + x1*y2 - y1*x2 + z1*w2
    ])


def quat_normalize(q: np.ndarray) -> np.ndarray:
    """Normalize quaternion to unit length (identity if degenerate)."""
    norm = np.linalg.norm(q)
    if norm < 1e-10:
        return np.array([1.0, 0.0, 0.0, 0.0])
    return q / norm


def quat_to_rot(q: np.ndarray) -> np.ndarray:
    """Convert quaternion [w,x,y,z] to 3x3 rotation matrix."""
    w, x, y, z = quat_normalize(np.asarray(q, dtype=float))
    return np.array([
        [1-2*(y*y+z*z), 2*(x*y-w*z),   2*(x*z+w*y)],
        [2*(x*y+w*z),   1-2*(x*x+z*z), 2*(y*z-w*x)],
        [2*(x*z-w*y),   2*(y*z+w*x),   1-2*(x*x+y*y)]
    ])


def rot_to_quat(R: np.ndarray) -> np.ndarray:
    """Convert 3x3 rotation matrix to quaternion [w,x,y,z]."""
    trace = np.trace(R)
    if trace > 0:
        s = 0.5 / np.sqrt(trace + 1.0)
        w = 0.25 / s
        x = (R[2,1] - R[1,2]) * s
        y = (R[0,2] - R[2,0]) * s
        z = (R[1,0] - R[0,1]) * s
    else:
        if R[0,0] > R[1,1] and R[0,0] > R[2,2]:
            s = 2.0 * np.sqrt(1.0 + R[0,0] - R[1,1] - R[2,2])
            w = (R[2,1] - R[1,2]) / s
            x = 0.25 * s
            y = (R[0,1] + R[1,0]) / s
            z = (R[0,2] + R[2,0]) / s
        elif R[1,1] > R[2,2]:
            s = 2.0 * np.sqrt(1.0 + R[1,1] - R[0,0] - R[2,2])
            w = (R[0,2] - R[2,0]) / s
            x = (R[0,1] + R[1,0]) / s
            y = 0.25 * s
            z = (R[1,2] + R[2,1]) / s
        else:
            s = 2.0 * np.sqrt(1.0 + R[2,2] - R[0,0] - R[1,1])
            w = (R[1,0] - R[0,1]) / s
            x = (R[0,2] + R[2,0]) / s
            y = (R[1,2] + R[2,1]) / s
            z = 0.25 * s
    return quat_normalize(np.array([w, x, y, z]))


def small_angle_quat(dtheta: np.ndarray) -> np.ndarray:
    """
    Convert rotation vector (3D) to quaternion.
    Uses the exact formula, first-order below 1e-8 rad.
    """
    theta = np.linalg.norm(dtheta)
    if theta < 1e-8:
        return quat_normalize(np.array([1.0, dtheta[0]/2, dtheta[1]/2, dtheta[2]/2]))
    half_theta = theta / 2
    axis = dtheta / theta
    return np.array([
        np.cos(half_theta),
        np.sin(half_theta) * axis[0],
        np.sin(half_theta) * axis[1],
        np.sin(half_theta) * axis[2]
    ])


def quat_boxplus(q: np.ndarray, dtheta: np.ndarray) -> np.ndarray:
    """
    Quaternion box-plus operation (manifold update).
    q_new = q ⊕ δθ = q ⊗ exp(δθ)
    """
    dq = small_angle_quat(dtheta)
    return quat_normalize(quat_multiply(q, dq))


# =============================================================================
# Matrix Operations
# =============================================================================

def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """
    Create skew-symmetric matrix from 3D vector.
    [v]× such that [v]× @ u = v × u (cross product)

    [v]× = [ 0   -vz   vy ]
           [ vz   0   -vx ]
           [-vy   vx   0  ]
    """
    return np.array([
        [0,      -v[2],  v[1]],
        [v[2],    0,    -v[0]],
        [-v[1],   v[0],   0   ]
    ], dtype=float)


def projection_jacobian(p_c: np.ndarray) -> np.ndarray:
    """
    Jacobian of the pinhole projection [x/z, y/z] w.r.t. [x, y, z].

    The input does not need to be metric: any positive multiple of the
    camera-frame point gives the same projection, and the Jacobian scales
    with 1/z accordingly.
    """
    inv_z = 1.0 / p_c[2]
    inv_z2 = inv_z * inv_z
    return np.array([
        [inv_z, 0.0, -p_c[0] * inv_z2],
        [0.0, inv_z, -p_c[1] * inv_z2]
    ])


# =============================================================================
# Mahalanobis Distance
# =============================================================================

def mahalanobis_squared(y: np.ndarray, S: np.ndarray) -> float:
    """
    Compute squared Mahalanobis distance: d² = y^T @ S^{-1} @ y
    Uses Cholesky decomposition for numerical stability.

    Args:
        y: Innovation vector
        S: Innovation covariance matrix

    Returns:
        Squared Mahalanobis distance
    """
    y = np.asarray(y, dtype=float).reshape(-1)
    try:
        L = np.linalg.cholesky(S)
        z = np.linalg.solve(L, y)
        return float(np.dot(z, z))
    except np.linalg.LinAlgError:
        # S is only PSD when P is rank-deficient along H
        return float(y @ np.linalg.pinv(S) @ y)
