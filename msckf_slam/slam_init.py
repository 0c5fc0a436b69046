"""
SLAM landmark initialization from MSCKF-SLAM matrices.

Solving the retained rows  r1 = H1 δx + H2 δf + n1  for the feature error
gives the new landmark estimate and its cross-covariance with the existing
state (Li & Mourikis, ICRA 2012):

    f      = f_hat + H2^-1 r1
    P_xf   = -P H1^T H2^-T
    P_ff   = H2^-1 (H1 P H1^T + sigma^2 I) H2^-T

H2 is block diagonal with upper-triangular 3x3 blocks, so it is inverted
by back substitution. Landmarks are appended after the existing error
state, in the order they appear in the matrices.
"""

from typing import Tuple

import numpy as np
from scipy.linalg import solve_triangular

from .types import MsckfSlamMatrices, PreconditionError


def initialize_slam_features(cov: np.ndarray,
                             init_mats: MsckfSlamMatrices) -> Tuple[np.ndarray, np.ndarray]:
    """
    Augment an error-state covariance with the accepted features.

    The input covariance is not modified. It should be the covariance the
    matrices were built from, or that covariance after the MSCKF rows of the
    same cycle have been applied.

    Args:
        cov: (n, n) error-state covariance
        init_mats: Matrices from MsckfSlamUpdate.init_mats

    Returns:
        cov_aug: (n + 3k, n + 3k) augmented covariance
        features: (3k,) corrected [alpha, beta, rho] per landmark
    """
    P = np.asarray(cov, dtype=float)
    n = P.shape[0]
    if init_mats.H1.shape[1] != n:
        raise PreconditionError(
            f"init matrices have {init_mats.H1.shape[1]} state columns, covariance is {n}x{n}")

    if init_mats.n_features == 0:
        return P.copy(), np.zeros(0)

    H1 = init_mats.H1
    H2 = init_mats.H2
    m = H2.shape[0]

    H2_inv = solve_triangular(H2, np.eye(m), lower=False)
    G = H2_inv @ H1

    P_xf = -P @ G.T
    P_ff = G @ P @ G.T + init_mats.var_img * (H2_inv @ H2_inv.T)

    cov_aug = np.zeros((n + m, n + m))
    cov_aug[:n, :n] = P
    cov_aug[:n, n:] = P_xf
    cov_aug[n:, :n] = P_xf.T
    cov_aug[n:, n:] = (P_ff + P_ff.T) / 2.0

    features = init_mats.features + H2_inv @ init_mats.r1
    return cov_aug, features
