#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Feature Triangulation Module

Multi-view triangulation of a feature track in anchored inverse-depth
coordinates:

    p_w = p_a + R_a @ [alpha, beta, 1] / rho

where (R_a, p_a) is the pose of the track's last observation (the anchor).
Projecting into camera i and multiplying by rho (projection is scale
invariant) gives

    h_i = R_i^T @ (R_a @ [alpha, beta, 1] + rho * (p_a - p_i))
    z_i = h_i[:2] / h_i[2]

which stays well conditioned for distant, low-parallax features.

Pipeline:
    1. observation count / baseline checks
    2. linear multi-view DLT for an initial point
    3. parallax check against the anchor ray
    4. Levenberg-damped Gauss-Newton on (alpha, beta, rho)
    5. depth and reprojection-error validation

References:
- Civera et al., "Inverse Depth Parametrization for Monocular SLAM", T-RO 2008
- Li & Mourikis, "Optimization-based estimator design for vision-aided
  inertial navigation", RSS 2012 / ICRA 2012

Author: VIO project
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple, runtime_checkable

import numpy as np
from scipy.spatial.distance import pdist

from .math_utils import projection_jacobian
from .types import PoseWindow, PreconditionError, Track


# Triangulation constants
MIN_OBSERVATIONS = 2          # geometric floor, two rays
MIN_BASELINE = 0.005          # [m] largest camera-centre distance in the track
MIN_PARALLAX_ANGLE_DEG = 0.3  # largest ray angle w.r.t. the anchor ray
MAX_DEPTH = 500.0             # [m] along the anchor optical axis
MAX_REPROJ_ERROR = 0.05       # average error, normalized coordinates
MIN_CAMERA_DEPTH = 1e-3       # [m] point must be in front of every camera


@dataclass(frozen=True, eq=False)
class Triangulation:
    """Outcome of triangulating one track."""

    ok: bool
    p_w: np.ndarray
    reason: str = "success"
    avg_reproj_error: float = float("nan")
    iterations: int = 0

    @classmethod
    def failed(cls, reason: str, p_w: Optional[np.ndarray] = None,
               avg_reproj_error: float = float("nan"),
               iterations: int = 0) -> "Triangulation":
        if p_w is None or not np.all(np.isfinite(p_w)):
            p_w = np.full(3, np.nan)
        return cls(False, np.asarray(p_w, dtype=float).reshape(3), reason,
                   avg_reproj_error, iterations)


@runtime_checkable
class Triangulator(Protocol):
    """
    Produces a world point for a track, or a failure.

    `poses` holds exactly the poses the track references, aligned with its
    observations.
    """

    def triangulate(self, track: Track, poses: PoseWindow,
                    covariance: Optional[np.ndarray] = None) -> Triangulation: ...


def inverse_depth_projection(feature: np.ndarray, R_a: np.ndarray, p_a: np.ndarray,
                             R_i: np.ndarray, p_i: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Scaled camera-frame point of an anchored inverse-depth feature.

    Args:
        feature: [alpha, beta, rho]
        R_a, p_a: anchor pose (R_WC, camera centre)
        R_i, p_i: observing pose (R_WC, camera centre)

    Returns:
        h: rho * p_ci, the point in camera i scaled by the inverse depth
        H_f: dh/d[alpha, beta, rho] (3x3)
    """
    alpha, beta, rho = feature
    dp = p_a - p_i
    m = np.array([alpha, beta, 1.0])
    h = R_i.T @ (R_a @ m + rho * dp)
    H_f = R_i.T @ np.column_stack([R_a[:, 0], R_a[:, 1], dp])
    return h, H_f


def triangulate_point_linear(uv: np.ndarray, poses: PoseWindow) -> Optional[np.ndarray]:
    """
    Linear triangulation using DLT (Direct Linear Transform).

    Each observation contributes two rows
        (u * r3 - r1) . p = (u * r3 - r1) . c
        (v * r3 - r2) . p = (v * r3 - r2) . c
    with r_k the rows of R_CW and c the camera centre.

    Args:
        uv: (n, 2) normalized coordinates
        poses: poses aligned with uv

    Returns:
        3D point in world frame, or None if the system is rank deficient
    """
    if len(uv) < 2:
        return None

    A_rows = []
    b_rows = []
    for i, (u, v) in enumerate(uv):
        R_cw = poses.rotation(i).T
        c = poses.position(i)
        row_u = u * R_cw[2] - R_cw[0]
        row_v = v * R_cw[2] - R_cw[1]
        A_rows.extend([row_u, row_v])
        b_rows.extend([row_u @ c, row_v @ c])

    A = np.array(A_rows)
    b = np.array(b_rows)

    try:
        p_world, _, rank, s = np.linalg.lstsq(A, b, rcond=None)
    except np.linalg.LinAlgError:
        return None

    if rank < 3 or s[-1] < 1e-9 * s[0]:
        return None
    return p_world


class GaussNewtonTriangulator:
    """
    Inverse-depth Gauss-Newton triangulator.

    Stateless between calls: the same track and poses always give the same
    result.
    """

    def __init__(self, min_observations: int = MIN_OBSERVATIONS,
                 min_baseline: float = MIN_BASELINE,
                 min_parallax_deg: float = MIN_PARALLAX_ANGLE_DEG,
                 max_depth: float = MAX_DEPTH,
                 max_reproj_error: float = MAX_REPROJ_ERROR,
                 max_iters: int = 20,
                 convergence_tol: float = 1e-10,
                 debug: bool = False):
        self.min_observations = max(int(min_observations), MIN_OBSERVATIONS)
        self.min_baseline = float(min_baseline)
        self.min_parallax_deg = float(min_parallax_deg)
        self.max_depth = float(max_depth)
        self.max_reproj_error = float(max_reproj_error)
        self.max_iters = int(max_iters)
        self.convergence_tol = float(convergence_tol)
        self.debug = debug

    def _reject(self, track: Track, reason: str, detail: str = "", **kwargs) -> Triangulation:
        if self.debug:
            print(f"[MSCKF-TRI] REJECT fid={track.feature_id}: {reason} {detail}".rstrip())
        return Triangulation.failed(reason, **kwargs)

    def _residuals(self, feature: np.ndarray, uv: np.ndarray,
                   poses: PoseWindow) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Stacked residual (2n), its negated Jacobian d(pred)/d(feature) and depths."""
        n = len(uv)
        anchor = n - 1
        R_a, p_a = poses.rotation(anchor), poses.position(anchor)

        r = np.zeros(2 * n)
        J = np.zeros((2 * n, 3))
        h_z = np.zeros(n)
        for i in range(n):
            h, H_f = inverse_depth_projection(feature, R_a, p_a,
                                              poses.rotation(i), poses.position(i))
            h_z[i] = h[2]
            if h[2] <= 1e-12:
                r[:] = np.inf
                return r, J, h_z
            r[2*i:2*i+2] = uv[i] - h[:2] / h[2]
            J[2*i:2*i+2] = projection_jacobian(h) @ H_f
        return r, J, h_z

    def triangulate(self, track: Track, poses: PoseWindow,
                    covariance: Optional[np.ndarray] = None) -> Triangulation:
        """
        Triangulate a track.

        Args:
            track: Feature track in normalized coordinates
            poses: Poses referenced by the track, in observation order
            covariance: Unused, kept for interface compatibility

        Returns:
            Triangulation with ok=False and a `fail_*` reason on failure
        """
        n = len(track)
        if n < self.min_observations:
            return self._reject(track, "fail_few_obs", f"n_obs={n}")

        if len(poses) != n:
            raise PreconditionError(
                f"track {track.feature_id}: {n} observations but {len(poses)} poses")

        uv = track.measurements()
        centres = np.array(poses.positions)

        baseline = float(np.max(pdist(centres)))
        if baseline < self.min_baseline:
            return self._reject(track, "fail_baseline", f"baseline={baseline:.4f}m")

        p_init = triangulate_point_linear(uv, poses)
        if p_init is None:
            return self._reject(track, "fail_solver")

        anchor = n - 1
        R_a, p_a = poses.rotation(anchor), poses.position(anchor)

        # Parallax of every ray against the anchor ray
        rays = np.column_stack([uv, np.ones(n)])
        rays_w = np.array([poses.rotation(i) @ rays[i] for i in range(n)])
        rays_w /= np.linalg.norm(rays_w, axis=1, keepdims=True)
        cos_angles = np.clip(rays_w @ rays_w[anchor], -1.0, 1.0)
        parallax_deg = float(np.degrees(np.max(np.arccos(cos_angles))))
        if parallax_deg < self.min_parallax_deg:
            return self._reject(track, "fail_parallax", f"parallax={parallax_deg:.3f}deg",
                                p_w=p_init)

        p_ca = R_a.T @ (p_init - p_a)
        if p_ca[2] <= MIN_CAMERA_DEPTH:
            return self._reject(track, "fail_depth_sign", f"z_anchor={p_ca[2]:.3f}",
                                p_w=p_init)

        feature = np.array([p_ca[0] / p_ca[2], p_ca[1] / p_ca[2], 1.0 / p_ca[2]])

        # Levenberg-damped Gauss-Newton
        r, J, h_z = self._residuals(feature, uv, poses)
        cost = float(r @ r)
        lambda_lm = 1e-3
        iteration = 0
        for iteration in range(1, self.max_iters + 1):
            if not np.isfinite(cost):
                break
            HTH = J.T @ J
            HTr = J.T @ r
            try:
                dx = np.linalg.solve(HTH + lambda_lm * np.diag(np.diag(HTH) + 1e-12), HTr)
            except np.linalg.LinAlgError:
                return self._reject(track, "fail_nonlinear", "singular normal equations",
                                    p_w=p_init, iterations=iteration)

            candidate = feature + dx
            r_new, J_new, h_z_new = self._residuals(candidate, uv, poses)
            cost_new = float(r_new @ r_new)

            if np.isfinite(cost_new) and cost_new <= cost:
                feature, r, J, h_z, cost = candidate, r_new, J_new, h_z_new, cost_new
                lambda_lm = max(lambda_lm / 10.0, 1e-10)
                if np.linalg.norm(dx) <= self.convergence_tol * (np.linalg.norm(feature) + self.convergence_tol):
                    break
            else:
                lambda_lm *= 10.0
                if lambda_lm > 1e10:
                    break

        if not (np.all(np.isfinite(feature)) and np.isfinite(cost)):
            return self._reject(track, "fail_nonlinear", p_w=p_init, iterations=iteration)

        alpha, beta, rho = feature
        if rho <= 0.0 or np.any(h_z / rho <= MIN_CAMERA_DEPTH):
            return self._reject(track, "fail_depth_sign", f"rho={rho:.4g}",
                                iterations=iteration)

        p_w = p_a + R_a @ np.array([alpha, beta, 1.0]) / rho

        if 1.0 / rho > self.max_depth:
            return self._reject(track, "fail_depth_large", f"depth={1.0 / rho:.1f}m",
                                p_w=p_w, iterations=iteration)

        errors = np.linalg.norm(r.reshape(-1, 2), axis=1)
        avg_error = float(np.mean(errors))
        if avg_error > self.max_reproj_error:
            return self._reject(track, "fail_reproj_error", f"avg_err={avg_error:.4f}",
                                p_w=p_w, avg_reproj_error=avg_error, iterations=iteration)

        return Triangulation(True, p_w, "success", avg_error, iteration)


def create_triangulator_from_config(config) -> GaussNewtonTriangulator:
    """
    Create the default triangulator from an MsckfSlamConfig.

    Args:
        config: MsckfSlamConfig (see config.py)

    Returns:
        GaussNewtonTriangulator with the configured thresholds
    """
    return GaussNewtonTriangulator(
        min_observations=config.min_observations,
        min_baseline=config.min_baseline,
        min_parallax_deg=config.min_parallax_deg,
        max_depth=config.max_depth,
        max_reproj_error=config.max_reproj_error,
        max_iters=config.max_iters,
        debug=config.debug,
    )
