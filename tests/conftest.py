import numpy as np
import pytest

from msckf_slam.math_utils import quat_boxplus, quat_to_rot, small_angle_quat
from msckf_slam.types import ErrorStateLayout, Track


class _Scene:
    """Forward-moving camera looking down +z at points 4-9 m ahead."""

    def __init__(self, n_poses=6, n_poses_max=8, n_points=6, seed=0):
        rng = np.random.default_rng(seed)
        self.n_poses_max = n_poses_max
        self.layout = ErrorStateLayout(n_poses_max)
        self.attitudes = [small_angle_quat(np.array([0.02 * i, -0.015 * i, 0.01 * i]))
                          for i in range(n_poses)]
        self.positions = [np.array([0.25 * i, 0.05 * np.sin(i), 0.02 * i])
                          for i in range(n_poses)]
        self.points = [np.array([rng.uniform(-1.0, 2.0),
                                 rng.uniform(-1.0, 1.0),
                                 rng.uniform(4.0, 9.0)]) for _ in range(n_points)]

        dim = self.layout.min_dim
        self.cov = np.eye(dim) * 1e-6
        self.cov[:15, :15] = np.eye(15) * 1e-2

    @property
    def n_poses(self):
        return len(self.attitudes)

    def project(self, p_w, i, attitudes=None, positions=None):
        attitudes = self.attitudes if attitudes is None else attitudes
        positions = self.positions if positions is None else positions
        p_c = quat_to_rot(attitudes[i]).T @ (p_w - positions[i])
        return p_c[:2] / p_c[2]

    def track(self, k, n_obs=None, noise=0.0, seed=1, explicit=False,
              attitudes=None, positions=None):
        """Track of point k over the newest n_obs poses."""
        n_obs = self.n_poses if n_obs is None else n_obs
        poses = list(range(self.n_poses - n_obs, self.n_poses))
        rng = np.random.default_rng(seed)
        uv = [self.project(self.points[k], i, attitudes, positions)
              + noise * rng.standard_normal(2) for i in poses]
        return Track.from_points(uv, pose_indices=poses if explicit else None,
                                 feature_id=k)

    def perturbed_poses(self, scale, seed=3):
        """True poses = nominal ⊞ dx, and the error-state dx in layout order."""
        rng = np.random.default_rng(seed)
        dx = np.zeros(self.layout.min_dim)
        attitudes, positions = [], []
        for i in range(self.n_poses):
            dtheta = scale * rng.standard_normal(3)
            dp = scale * rng.standard_normal(3)
            a, p = self.layout.attitude_idx(i), self.layout.position_idx(i)
            dx[a:a+3] = dtheta
            dx[p:p+3] = dp
            attitudes.append(quat_boxplus(self.attitudes[i], dtheta))
            positions.append(self.positions[i] + dp)
        return attitudes, positions, dx


@pytest.fixture
def scene():
    return _Scene()
