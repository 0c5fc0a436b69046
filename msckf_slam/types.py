"""Snapshot and result types for one MSCKF-SLAM update cycle.

Inputs (tracks, pose window) are frozen for the duration of a cycle and the
result containers are exposed read-only, so an update instance can hand out
views without copying.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .math_utils import quat_to_rot


class PreconditionError(ValueError):
    """Malformed update input (window/track bookkeeping defect upstream)."""


def _read_only(a: np.ndarray) -> np.ndarray:
    a = np.array(a, dtype=float)
    a.setflags(write=False)
    return a


@dataclass(frozen=True)
class Observation:
    """One normalized image measurement of a feature."""

    x: float
    y: float
    pose_index: Optional[int] = None  # window index; None = implicit alignment

    @property
    def uv(self) -> np.ndarray:
        return np.array([self.x, self.y], dtype=float)


@dataclass(frozen=True)
class Track:
    """
    Ordered observations of one feature, one per observing pose.

    Pose mapping: when every observation carries a `pose_index` those are
    used as-is. Otherwise the track ends at the newest pose of the window,
    i.e. observation i of an n-long track maps to window pose N - n + i.
    """

    observations: Tuple[Observation, ...] = field(default_factory=tuple)
    feature_id: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "observations", tuple(self.observations))

    @classmethod
    def from_points(cls, points, pose_indices: Optional[Sequence[int]] = None,
                    feature_id: Optional[int] = None) -> "Track":
        points = np.asarray(points, dtype=float).reshape(-1, 2)
        if pose_indices is None:
            obs = [Observation(float(x), float(y)) for x, y in points]
        else:
            if len(pose_indices) != len(points):
                raise PreconditionError(
                    f"{len(points)} observations but {len(pose_indices)} pose indices")
            obs = [Observation(float(x), float(y), int(i))
                   for (x, y), i in zip(points, pose_indices)]
        return cls(tuple(obs), feature_id)

    def __len__(self) -> int:
        return len(self.observations)

    def __iter__(self) -> Iterator[Observation]:
        return iter(self.observations)

    def measurements(self) -> np.ndarray:
        """(n, 2) array of normalized coordinates."""
        if not self.observations:
            return np.zeros((0, 2))
        return np.array([[o.x, o.y] for o in self.observations], dtype=float)

    def resolve_pose_indices(self, window_size: int) -> List[int]:
        """
        Map observations to window pose indices.

        Raises:
            PreconditionError: index outside [0, window_size), duplicated
                poses, or explicit and implicit indices mixed in one track.
        """
        n = len(self.observations)
        explicit = [o.pose_index is not None for o in self.observations]

        if n and all(explicit):
            indices = [int(o.pose_index) for o in self.observations]
        elif any(explicit):
            raise PreconditionError(
                f"track {self.feature_id}: mixes explicit and implicit pose indices")
        else:
            indices = list(range(window_size - n, window_size))

        for idx in indices:
            if idx < 0 or idx >= window_size:
                raise PreconditionError(
                    f"track {self.feature_id}: pose index {idx} outside window "
                    f"of {window_size} poses")
        if len(set(indices)) != len(indices):
            raise PreconditionError(
                f"track {self.feature_id}: pose observed more than once {indices}")
        return indices


TrackList = Sequence[Track]


@dataclass(frozen=True, eq=False)
class PoseWindow:
    """
    Sliding-window camera poses, index-aligned.

    attitudes: unit quaternions [w, x, y, z], camera-to-world (R_WC)
    positions: camera centres in world frame
    """

    attitudes: Tuple[np.ndarray, ...]
    positions: Tuple[np.ndarray, ...]

    def __post_init__(self):
        atts = tuple(_read_only(np.asarray(q, dtype=float).reshape(4)) for q in self.attitudes)
        poss = tuple(_read_only(np.asarray(p, dtype=float).reshape(3)) for p in self.positions)
        if len(atts) != len(poss):
            raise PreconditionError(
                f"attitude list has {len(atts)} poses, position list has {len(poss)}")
        object.__setattr__(self, "attitudes", atts)
        object.__setattr__(self, "positions", poss)
        object.__setattr__(self, "_rotations", tuple(quat_to_rot(q) for q in atts))

    def __len__(self) -> int:
        return len(self.attitudes)

    def rotation(self, i: int) -> np.ndarray:
        """R_WC of pose i."""
        return self._rotations[i]

    def position(self, i: int) -> np.ndarray:
        return self.positions[i]

    def subset(self, indices: Sequence[int]) -> "PoseWindow":
        """Poses referenced by a track, in observation order."""
        return PoseWindow(tuple(self.attitudes[i] for i in indices),
                          tuple(self.positions[i] for i in indices))


@dataclass(frozen=True)
class ErrorStateLayout:
    """
    Column layout of the error-state covariance.

    Error state:
      [core (core_dim) | pose_0 | ... | pose_{n_poses_max-1} | landmarks ...]
    Each pose block is [δθ_i (3), δp_i (3)]; each landmark block is 3 wide.
    Slots for poses not currently in the window still exist, so columns do
    not move as the window fills.
    """

    n_poses_max: int
    core_dim: int = 15

    POSE_BLOCK = 6

    def __post_init__(self):
        if self.n_poses_max < 1:
            raise PreconditionError(f"n_poses_max must be >= 1, got {self.n_poses_max}")
        if self.core_dim < 0:
            raise PreconditionError(f"core_dim must be >= 0, got {self.core_dim}")

    def attitude_idx(self, pose: int) -> int:
        return self.core_dim + self.POSE_BLOCK * pose

    def position_idx(self, pose: int) -> int:
        return self.core_dim + self.POSE_BLOCK * pose + 3

    @property
    def min_dim(self) -> int:
        return self.core_dim + self.POSE_BLOCK * self.n_poses_max

    def n_landmarks(self, err_dim: int) -> int:
        return (err_dim - self.min_dim) // 3


@dataclass(frozen=True)
class InverseDepthFeature:
    """Anchored inverse-depth landmark: p_w = p_a + R_a [alpha, beta, 1] / rho."""

    alpha: float
    beta: float
    rho: float
    anchor_index: int

    def as_vector(self) -> np.ndarray:
        return np.array([self.alpha, self.beta, self.rho], dtype=float)

    @classmethod
    def from_world(cls, p_w: np.ndarray, R_a: np.ndarray, p_a: np.ndarray,
                   anchor_index: int) -> "InverseDepthFeature":
        p_ca = R_a.T @ (np.asarray(p_w, dtype=float) - p_a)
        return cls(float(p_ca[0] / p_ca[2]), float(p_ca[1] / p_ca[2]),
                   float(1.0 / p_ca[2]), int(anchor_index))

    def to_world(self, R_a: np.ndarray, p_a: np.ndarray) -> np.ndarray:
        m = np.array([self.alpha, self.beta, 1.0])
        return p_a + R_a @ m / self.rho


@dataclass(frozen=True)
class TrackRows:
    """Row ranges owned by one accepted track."""

    track_index: int
    msckf: slice    # rows in the feature-eliminated update bundle
    init: slice     # rows in the landmark initialization matrices
    feature_id: Optional[int] = None

    @property
    def n_rows(self) -> int:
        return (self.msckf.stop - self.msckf.start) + (self.init.stop - self.init.start)


@dataclass(frozen=True, eq=False)
class MsckfSlamMatrices:
    """
    Landmark initialization matrices for k accepted features (Li 2012, eq. 7).

    r1 = H1 δx + H2 δf + n1,  n1 ~ N(0, var_img I)

    H1: (3k, err_dim)   pose/other-state Jacobian
    H2: (3k, 3k)        block-diagonal feature Jacobian (upper-triangular blocks)
    r1: (3k,)           residual
    features: (3k,)     stacked [alpha, beta, rho] per feature
    """

    H1: np.ndarray
    H2: np.ndarray
    r1: np.ndarray
    features: np.ndarray
    anchor_indices: Tuple[int, ...] = ()
    feature_ids: Tuple[Optional[int], ...] = ()
    var_img: float = 0.0

    def __post_init__(self):
        for name in ("H1", "H2", "r1", "features"):
            object.__setattr__(self, name, _read_only(getattr(self, name)))
        object.__setattr__(self, "anchor_indices", tuple(self.anchor_indices))
        object.__setattr__(self, "feature_ids", tuple(self.feature_ids))

    @classmethod
    def empty(cls, err_dim: int, var_img: float = 0.0) -> "MsckfSlamMatrices":
        return cls(np.zeros((0, err_dim)), np.zeros((0, 0)), np.zeros(0),
                   np.zeros(0), var_img=var_img)

    @property
    def n_features(self) -> int:
        return self.r1.shape[0] // 3

    @property
    def noise(self) -> np.ndarray:
        return self.var_img * np.eye(self.r1.shape[0])

    def feature(self, k: int) -> InverseDepthFeature:
        alpha, beta, rho = self.features[3*k:3*k+3]
        return InverseDepthFeature(float(alpha), float(beta), float(rho),
                                   self.anchor_indices[k])
