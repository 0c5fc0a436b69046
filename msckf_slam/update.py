"""Measurement-update capability shared by update producers.

A producer hands the filter a Jacobian, a residual and a measurement noise
covariance; applying them to the state and covariance is the filter's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import numpy as np


@runtime_checkable
class MeasurementUpdate(Protocol):
    """Anything that can feed a generic EKF update: z = H δx + n, n ~ N(0, R)."""

    @property
    def jacobian(self) -> np.ndarray: ...

    @property
    def residual(self) -> np.ndarray: ...

    @property
    def noise(self) -> np.ndarray: ...


@dataclass(frozen=True, eq=False)
class UpdateBundle:
    """Pre-built (H, r, R) triple."""

    jacobian: np.ndarray
    residual: np.ndarray
    noise: np.ndarray

    def __post_init__(self):
        H = np.array(self.jacobian, dtype=float, ndmin=2)
        r = np.array(self.residual, dtype=float).reshape(-1)
        R = np.array(self.noise, dtype=float, ndmin=2)
        if H.shape[0] != r.shape[0] or R.shape != (r.shape[0], r.shape[0]):
            raise ValueError(
                f"inconsistent update shapes: H{H.shape}, r{r.shape}, R{R.shape}")
        for name, a in (("jacobian", H), ("residual", r), ("noise", R)):
            a.setflags(write=False)
            object.__setattr__(self, name, a)

    @property
    def n_rows(self) -> int:
        return self.residual.shape[0]
