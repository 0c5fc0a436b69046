#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Numerical Validation and Tripwire Module
=========================================

Checks applied to the inputs of an MSCKF-SLAM update before any Jacobian is
built. Dumps diagnostic information when numerical issues are detected.
"""

import numpy as np


def assert_finite(name, M, extra_info=None, raise_on_fail=False, verbose=True):
    """
    Tripwire: Check matrix/vector for inf/nan and dump diagnostics if found.

    Parameters:
    -----------
    name : str
        Descriptive name of the quantity being checked
    M : np.ndarray
        Matrix or vector to validate
    extra_info : dict, optional
        Additional diagnostic information to dump
    raise_on_fail : bool
        If True, raises ValueError on failure. If False, only prints warning.
    verbose : bool
        Print the diagnostic block on failure

    Returns:
    --------
    bool : True if finite, False if inf/nan detected
    """
    if M is None:
        if raise_on_fail:
            raise ValueError(f"{name} is None")
        if verbose:
            print(f"[TRIPWIRE] {name}: is None!")
        return False

    M = np.asarray(M, dtype=float)
    if np.all(np.isfinite(M)):
        return True

    if verbose:
        print(f"\n{'='*70}")
        print(f"[TRIPWIRE] NaN/inf DETECTED in {name}")
        print(f"{'='*70}")
        print(f"Matrix shape: {M.shape}")
        print(f"Has NaN: {np.any(np.isnan(M))}")
        print(f"Has inf: {np.any(np.isinf(M))}")

        if M.size <= 100:
            print(f"\nFull matrix:\n{M}")

        bad_locs = np.argwhere(~np.isfinite(M))
        print(f"\nNon-finite locations (first 10): {bad_locs[:10].tolist()}")

        if extra_info:
            print(f"\nAdditional context:")
            for key, val in extra_info.items():
                print(f"  {key}: {val}")
        print(f"{'='*70}\n")

    if raise_on_fail:
        raise ValueError(f"NaN/inf detected in {name}")

    return False


def check_covariance_psd(P, name="covariance", min_eigenvalue=1e-9, verbose=True):
    """
    Validate covariance matrix is symmetric positive semi-definite.

    Parameters:
    -----------
    P : np.ndarray
        Covariance matrix
    name : str
        Descriptive name for logging
    min_eigenvalue : float
        Tolerance on negative eigenvalues
    verbose : bool
        Print the reason when the check fails

    Returns:
    --------
    is_valid : bool
        True if PSD, False otherwise
    """
    if not assert_finite(name, P, verbose=verbose):
        return False

    P = np.asarray(P, dtype=float)
    if P.ndim != 2 or P.shape[0] != P.shape[1]:
        if verbose:
            print(f"[TRIPWIRE] {name}: not square (shape={P.shape})")
        return False

    scale = max(1.0, float(np.max(np.abs(P)))) if P.size else 1.0
    if not np.allclose(P, P.T, rtol=1e-5, atol=1e-9 * scale):
        if verbose:
            asymmetry = np.max(np.abs(P - P.T))
            print(f"[TRIPWIRE] {name}: not symmetric (max diff={asymmetry:.6e})")
        return False

    try:
        eigvals = np.linalg.eigvalsh(P)
    except np.linalg.LinAlgError:
        if verbose:
            print(f"[TRIPWIRE] {name}: eigenvalue computation failed")
        return False

    if eigvals.size and eigvals[0] < -min_eigenvalue * scale:
        if verbose:
            print(f"[TRIPWIRE] {name}: negative eigenvalue ({eigvals[0]:.6e})")
            print(f"  Eigenvalue range: [{eigvals[0]:.6e}, {eigvals[-1]:.6e}]")
        return False

    return True
