"""
MSCKF-SLAM Update Package

Measurement-update core of a visual-inertial filter: turns feature tracks
observed over a sliding window of camera poses into

- a feature-eliminated MSCKF update (Jacobian, residual, noise) for the poses
- initialization matrices for promoting accepted features into the state as
  anchored inverse-depth landmarks
- inlier/outlier 3D points for diagnostics

Version: 1.0.0

Submodules:
- config: YAML loading and MsckfSlamConfig
- math_utils: Quaternion operations, rotation matrices, Mahalanobis distance
- numerical_checks: NaN/inf and covariance tripwires
- types: Track, PoseWindow, ErrorStateLayout, MsckfSlamMatrices
- row_buffer: RowBlockBuilder for stacking per-track rows
- update: MeasurementUpdate protocol and UpdateBundle
- triangulation: Triangulator protocol, GaussNewtonTriangulator
- msckf_slam_update: MsckfSlamUpdate (per-track processing and batching)
- slam_init: Landmark state/covariance augmentation

Author: VIO project

Usage:
    from msckf_slam.types import Track
    from msckf_slam.triangulation import GaussNewtonTriangulator
    from msckf_slam.msckf_slam_update import MsckfSlamUpdate
    from msckf_slam.slam_init import initialize_slam_features

    upd = MsckfSlamUpdate(tracks, quats, positions, GaussNewtonTriangulator(),
                          P, n_poses_max=10, sigma_img=0.0015)
    H, r, R = upd.jacobian, upd.residual, upd.noise
    P_aug, landmarks = initialize_slam_features(P, upd.init_mats)
"""

__version__ = "1.0.0"

# Lazy module imports - access as msckf_slam.config, msckf_slam.types, etc.
import importlib

_SUBMODULES = {
    "config", "math_utils", "numerical_checks", "types", "row_buffer",
    "update", "triangulation", "msckf_slam_update", "slam_init",
}


def __getattr__(name):
    """Lazy module loading."""
    if name in _SUBMODULES:
        module = importlib.import_module(f".{name}", __name__)
        globals()[name] = module
        return module
    raise AttributeError(f"module 'msckf_slam' has no attribute '{name}'")


def __dir__():
    """List available submodules."""
    return list(_SUBMODULES)


__all__ = list(_SUBMODULES)
