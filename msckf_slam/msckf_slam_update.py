#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
MSCKF-SLAM Update Module

MSCKF update and SLAM feature initialization matrices for one filter cycle.

Features are expressed in anchored inverse depth instead of cartesian
coordinates, which changes the nullspace projection with respect to the
standard MSCKF. For each track the feature Jacobian is QR-factorized,

    H_f = [Q1 Q2] [R1]
                  [0 ]

and the stacked per-track model  r = H_x δx + H_f δf + n  splits into

    Q2^T r = Q2^T H_x δx + Q2^T n          (2n-3 rows, feature eliminated)
    Q1^T r = Q1^T H_x δx + R1 δf + Q1^T n  (3 rows, kept for initialization)

The first block is a regular MSCKF update for the poses. The second block
(H1 = Q1^T H_x, H2 = R1, r1 = Q1^T r) lets the filter add the feature to the
state instead of discarding it. Since Q is orthonormal both blocks keep the
isotropic image noise sigma_img^2 I.

Error-state layout (see types.ErrorStateLayout):
    [core (15) | δθ_0 δp_0 | ... | δθ_{N-1} δp_{N-1} | landmarks ...]
with local attitude perturbation R = R_hat Exp(δθ).

References:
- Li & Mourikis, "Optimization-based estimator design for vision-aided
  inertial navigation", ICRA 2012
- Mourikis & Roumeliotis, "A Multi-State Constraint Kalman Filter for
  Vision-aided Inertial Navigation", ICRA 2007

Author: VIO project
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.linalg import block_diag, qr
from scipy.stats import chi2

from .math_utils import mahalanobis_squared, projection_jacobian, skew_symmetric
from .numerical_checks import assert_finite, check_covariance_psd
from .row_buffer import RowBlockBuilder
from .triangulation import (
    Triangulator,
    create_triangulator_from_config,
    inverse_depth_projection,
)
from .types import (
    ErrorStateLayout,
    InverseDepthFeature,
    MsckfSlamMatrices,
    PoseWindow,
    PreconditionError,
    Track,
    TrackList,
    TrackRows,
)
from .update import UpdateBundle


# Default chi-square gate (confidence of the chi2 quantile, per track dof)
CHI2_CONFIDENCE = 0.95

# Minimum |diag(R1)| relative to its largest entry before the feature is
# considered unobservable from its track
RANK_TOL = 1e-9

MSCKF_SLAM_STAT_KEYS = (
    'total_attempt',
    'success',
    'fail_few_obs',
    'fail_baseline',
    'fail_parallax',
    'fail_solver',
    'fail_depth_sign',
    'fail_depth_large',
    'fail_nonlinear',
    'fail_reproj_error',
    'fail_rank',
    'fail_chi2',
)


def _require_finite(name: str, M, verbose: bool):
    if not assert_finite(name, M, verbose=verbose):
        raise PreconditionError(f"NaN/inf detected in {name}")


class MsckfSlamUpdate:
    """
    MSCKF-SLAM update and feature state initialization.

    Does the full matrix construction in the constructor. Tracks are
    processed strictly in order; each accepted track owns a contiguous row
    range in the MSCKF bundle (2n-3 rows) and in the initialization
    matrices (3 rows), placed after every earlier accepted track.

    Results are read-only views valid for this update cycle only.
    """

    def __init__(self, tracks: TrackList,
                 attitudes: Sequence[np.ndarray],
                 positions: Sequence[np.ndarray],
                 triangulator: Triangulator,
                 cov_s: np.ndarray,
                 n_poses_max: int,
                 sigma_img: float,
                 chi2_confidence: float = CHI2_CONFIDENCE,
                 chi2_threshold_scale: float = 1.0,
                 core_dim: int = 15,
                 debug: bool = False):
        """
        Args:
            tracks: Feature tracks in normalized coordinates
            attitudes: Camera quaternions [w,x,y,z] (R_WC), one per window pose
            positions: Camera positions in world frame, aligned with attitudes
            triangulator: Feature triangulator
            cov_s: Error state covariance (not modified)
            n_poses_max: Maximum number of poses in sliding window
            sigma_img: Standard deviation of feature measurement
                       [in normalized coordinates]
            chi2_confidence: Confidence level of the per-track chi2 gate
            chi2_threshold_scale: Multiplier applied to the chi2 quantile
            core_dim: Size of the core (non-pose) error state
            debug: Print per-track diagnostics

        Raises:
            PreconditionError: Malformed window, covariance or track indices
        """
        self.debug = debug

        if not np.isfinite(sigma_img) or sigma_img <= 0.0:
            raise PreconditionError(f"sigma_img must be positive, got {sigma_img}")
        if not 0.0 < chi2_confidence < 1.0:
            raise PreconditionError(f"chi2_confidence must be in (0, 1), got {chi2_confidence}")
        if chi2_threshold_scale <= 0.0:
            raise PreconditionError(
                f"chi2_threshold_scale must be positive, got {chi2_threshold_scale}")

        self.layout = ErrorStateLayout(int(n_poses_max), int(core_dim))
        self.var_img = float(sigma_img) ** 2
        self.chi2_confidence = float(chi2_confidence)
        self.chi2_threshold_scale = float(chi2_threshold_scale)

        if len(attitudes) != len(positions):
            raise PreconditionError(
                f"attitude list has {len(attitudes)} poses, position list has {len(positions)}")
        if len(attitudes) > self.layout.n_poses_max:
            raise PreconditionError(
                f"window holds {len(attitudes)} poses, maximum is {self.layout.n_poses_max}")
        _require_finite("attitudes", np.reshape(attitudes, (-1,)), debug)
        _require_finite("positions", np.reshape(positions, (-1,)), debug)
        self._window = PoseWindow(tuple(attitudes), tuple(positions))

        cov = np.asarray(cov_s, dtype=float)
        if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
            raise PreconditionError(f"covariance must be square, got shape {cov.shape}")
        if cov.shape[0] < self.layout.min_dim:
            raise PreconditionError(
                f"covariance is {cov.shape[0]}x{cov.shape[0]}, layout needs at least "
                f"{self.layout.min_dim} (core {self.layout.core_dim} + 6 x {self.layout.n_poses_max} poses)")
        _require_finite("cov_s", cov, debug)
        if debug and not check_covariance_psd(cov, name="cov_s"):
            print("[MSCKF-SLAM] WARNING: input covariance is not symmetric PSD")
        self._cov = cov.view()
        self._cov.setflags(write=False)

        # Resolve every track before touching any math so a malformed track
        # fails the whole call. Doubles as the row-count pre-pass.
        pose_indices = []
        for track in tracks:
            pose_indices.append(track.resolve_pose_indices(len(self._window)))
            _require_finite(f"track {track.feature_id}", track.measurements(), debug)

        cols = cov.shape[0]
        n_trks = len(tracks)
        max_msckf_rows = sum(max(2 * len(t) - 3, 0) for t in tracks)

        self.stats: Dict[str, int] = {key: 0 for key in MSCKF_SLAM_STAT_KEYS}
        self._chi2_quantiles: Dict[int, float] = {}

        self._h_rows = RowBlockBuilder(cols, initial_rows=max_msckf_rows)
        self._r_rows = RowBlockBuilder(1, initial_rows=max_msckf_rows)
        self._h1_rows = RowBlockBuilder(cols, initial_rows=3 * n_trks)
        self._r1_rows = RowBlockBuilder(1, initial_rows=3 * n_trks)
        self._f_rows = RowBlockBuilder(1, initial_rows=3 * n_trks)
        self._h2_blocks: List[np.ndarray] = []
        self._anchor_indices: List[int] = []
        self._feature_ids: List[Optional[int]] = []
        self._track_rows: List[TrackRows] = []
        self._inliers: List[np.ndarray] = []
        self._outliers: List[np.ndarray] = []

        for j, (track, indices) in enumerate(zip(tracks, pose_indices)):
            self.process_one_track(track, indices, triangulator, j)

        self._finalize(cols)

        if debug:
            print(f"[MSCKF-SLAM] {len(self._inliers)}/{n_trks} tracks accepted, "
                  f"rows: msckf={self._bundle.n_rows}, init={self._init_mats.r1.shape[0]}")

    @classmethod
    def from_config(cls, tracks: TrackList,
                    attitudes: Sequence[np.ndarray],
                    positions: Sequence[np.ndarray],
                    cov_s: np.ndarray,
                    config,
                    triangulator: Optional[Triangulator] = None) -> "MsckfSlamUpdate":
        """Build an update from an MsckfSlamConfig (default triangulator if None)."""
        if triangulator is None:
            triangulator = create_triangulator_from_config(config)
        return cls(tracks, attitudes, positions, triangulator, cov_s,
                   n_poses_max=config.n_poses_max,
                   sigma_img=config.sigma_img,
                   chi2_confidence=config.chi2_confidence,
                   chi2_threshold_scale=config.chi2_threshold_scale,
                   core_dim=config.core_dim,
                   debug=config.debug)

    # ------------------------------------------------------------------
    # Per-track processing
    # ------------------------------------------------------------------

    def _chi2_threshold(self, dof: int) -> float:
        if dof not in self._chi2_quantiles:
            self._chi2_quantiles[dof] = float(chi2.ppf(self.chi2_confidence, dof))
        return self.chi2_threshold_scale * self._chi2_quantiles[dof]

    def _reject(self, j: int, track: Track, reason: str, p_w: np.ndarray) -> bool:
        self.stats[reason] = self.stats.get(reason, 0) + 1
        self._outliers.append(np.asarray(p_w, dtype=float).reshape(3))
        if self.debug:
            print(f"[MSCKF-SLAM] track {j} (fid={track.feature_id}, n_obs={len(track)}): "
                  f"outlier, {reason}")
        return False

    def process_one_track(self, track: Track, pose_indices: Sequence[int],
                          triangulator: Triangulator, j: int) -> bool:
        """
        Process one feature track.

        Args:
            track: Feature track in normalized coordinates
            pose_indices: Window pose index of each observation
            triangulator: Feature triangulator
            j: Index of the track in the track list

        Returns:
            True if the track was accepted (rows appended, point in inliers)
        """
        self.stats['total_attempt'] += 1
        nan_point = np.full(3, np.nan)

        n_obs = len(track)
        rows = 2 * n_obs
        if rows <= 3:
            return self._reject(j, track, 'fail_few_obs', nan_point)

        window = self._window
        tri = triangulator.triangulate(track, window.subset(pose_indices), self._cov)
        if not tri.ok:
            return self._reject(j, track, tri.reason, tri.p_w)

        p_w = np.asarray(tri.p_w, dtype=float).reshape(3)

        # Anchor on the last observation
        anchor = pose_indices[-1]
        R_a, p_a = window.rotation(anchor), window.position(anchor)
        if (R_a.T @ (p_w - p_a))[2] <= 0.0:
            return self._reject(j, track, 'fail_depth_sign', p_w)

        feature = InverseDepthFeature.from_world(p_w, R_a, p_a, anchor)
        f = feature.as_vector()
        rho = feature.rho
        skew_m = skew_symmetric(np.array([feature.alpha, feature.beta, 1.0]))

        cols = self._cov.shape[0]
        h_x = np.zeros((rows, cols))
        h_f = np.zeros((rows, 3))
        res = np.zeros(rows)

        a_att = self.layout.attitude_idx(anchor)
        a_pos = self.layout.position_idx(anchor)

        for i, (obs, pose) in enumerate(zip(track, pose_indices)):
            R_i, p_i = window.rotation(pose), window.position(pose)
            h, H_fh = inverse_depth_projection(f, R_a, p_a, R_i, p_i)
            if h[2] <= 1e-12:
                return self._reject(j, track, 'fail_depth_sign', p_w)

            J = projection_jacobian(h)
            r0 = 2 * i
            res[r0:r0+2] = obs.uv - h[:2] / h[2]
            h_f[r0:r0+2] = J @ H_fh

            # Observing pose. For the anchor observation these cancel against
            # the anchor terms below.
            att = self.layout.attitude_idx(pose)
            pos = self.layout.position_idx(pose)
            J_Rt = J @ R_i.T
            h_x[r0:r0+2, att:att+3] += J @ skew_symmetric(h)
            h_x[r0:r0+2, pos:pos+3] += -rho * J_Rt

            # Anchor pose
            h_x[r0:r0+2, a_att:a_att+3] += -J_Rt @ R_a @ skew_m
            h_x[r0:r0+2, a_pos:a_pos+3] += rho * J_Rt

        # Inverse-depth nullspace projection
        try:
            Q, R = qr(h_f, mode='full')
        except np.linalg.LinAlgError:
            return self._reject(j, track, 'fail_rank', p_w)

        R1 = R[:3, :3]
        diag = np.abs(np.diag(R1))
        if not np.all(np.isfinite(diag)) or diag.min() <= RANK_TOL * max(diag.max(), 1e-300):
            return self._reject(j, track, 'fail_rank', p_w)

        Q1 = Q[:, :3]
        Q2 = Q[:, 3:]
        h_o = Q2.T @ h_x
        r_o = Q2.T @ res

        # Chi-square gate on the feature-eliminated rows
        dof = rows - 3
        s_mat = h_o @ self._cov @ h_o.T + self.var_img * np.eye(dof)
        gamma = mahalanobis_squared(r_o, s_mat)
        threshold = self._chi2_threshold(dof)
        if not np.isfinite(gamma) or gamma > threshold:
            if self.debug:
                print(f"[MSCKF-SLAM] track {j}: chi2={gamma:.3f} > {threshold:.3f} (dof={dof})")
            return self._reject(j, track, 'fail_chi2', p_w)

        msckf_start = self._h_rows.offset
        msckf_stop = self._h_rows.append(h_o)
        self._r_rows.append(r_o)

        init_start = self._h1_rows.offset
        init_stop = self._h1_rows.append(Q1.T @ h_x)
        self._r1_rows.append(Q1.T @ res)
        self._f_rows.append(f)
        self._h2_blocks.append(R1)
        self._anchor_indices.append(anchor)
        self._feature_ids.append(track.feature_id)

        self._track_rows.append(TrackRows(j, slice(msckf_start, msckf_stop),
                                          slice(init_start, init_stop), track.feature_id))
        self._inliers.append(p_w)
        self.stats['success'] += 1
        return True

    def _finalize(self, cols: int):
        jac = self._h_rows.finalize()
        res = self._r_rows.finalize().reshape(-1)
        self._bundle = UpdateBundle(jac, res, self.var_img * np.eye(res.shape[0]))

        if self._h2_blocks:
            h2 = block_diag(*self._h2_blocks)
        else:
            h2 = np.zeros((0, 0))
        self._init_mats = MsckfSlamMatrices(
            H1=self._h1_rows.finalize(),
            H2=h2,
            r1=self._r1_rows.finalize().reshape(-1),
            features=self._f_rows.finalize().reshape(-1),
            anchor_indices=tuple(self._anchor_indices),
            feature_ids=tuple(self._feature_ids),
            var_img=self.var_img,
        )

        self._inliers_arr = np.array(self._inliers, dtype=float).reshape(-1, 3)
        self._outliers_arr = np.array(self._outliers, dtype=float).reshape(-1, 3)
        self._inliers_arr.setflags(write=False)
        self._outliers_arr.setflags(write=False)

    # ------------------------------------------------------------------
    # Getters
    # ------------------------------------------------------------------

    @property
    def init_mats(self) -> MsckfSlamMatrices:
        """MSCKF-SLAM initialization matrices."""
        return self._init_mats

    @property
    def inliers(self) -> np.ndarray:
        """(k, 3) cartesian coordinates of accepted features."""
        return self._inliers_arr

    @property
    def outliers(self) -> np.ndarray:
        """(m, 3) cartesian coordinates of rejected features (NaN if none estimated)."""
        return self._outliers_arr

    @property
    def bundle(self) -> UpdateBundle:
        return self._bundle

    @property
    def jacobian(self) -> np.ndarray:
        return self._bundle.jacobian

    @property
    def residual(self) -> np.ndarray:
        return self._bundle.residual

    @property
    def noise(self) -> np.ndarray:
        return self._bundle.noise

    @property
    def track_rows(self) -> Tuple[TrackRows, ...]:
        return tuple(self._track_rows)

    @property
    def row_count(self) -> int:
        """Total rows over both outputs, 2 per observation of each accepted track."""
        return self._bundle.n_rows + self._init_mats.r1.shape[0]

    @property
    def window(self) -> PoseWindow:
        return self._window

    def print_stats(self):
        """Print per-cycle triangulation/gating statistics."""
        total = self.stats['total_attempt']
        if total == 0:
            print("[MSCKF-SLAM-STATS] No tracks processed")
            return

        success = self.stats['success']
        print(f"[MSCKF-SLAM-STATS] Total: {total}, Success: {success} ({100*success/total:.1f}%)")
        for key, val in self.stats.items():
            if key.startswith('fail_') and val > 0:
                print(f"  {key}: {val} ({100*val/total:.1f}%)")
