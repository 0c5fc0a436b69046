#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
MSCKF-SLAM Configuration Module
===============================

Handles YAML configuration loading for the MSCKF-SLAM update.

Configuration Structure:
------------------------
The YAML config file contains an `msckf_slam` section:

    msckf_slam:
      sigma_img: 0.0015          # feature noise std [normalized coords]
      n_poses_max: 10            # sliding window size
      core_dim: 15               # core error state (p, v, θ, bg, ba)
      chi2_confidence: 0.95      # per-track chi2 gate
      chi2_threshold_scale: 1.0
      triangulation:
        min_observations: 2
        min_baseline_m: 0.005
        min_parallax_deg: 0.3
        max_depth_m: 500.0
        max_reproj_error: 0.05
        max_iters: 20
      debug: false

load_config() flattens it into upper-case keys (SIGMA_IMG, N_POSES_MAX,
MSCKF_SLAM_CHI2_CONFIDENCE, ...) and MsckfSlamConfig.from_dict() turns the
flat dict into a typed config.

Author: VIO project
"""

from dataclasses import dataclass, fields
from typing import Any, Dict

import yaml

from .msckf_slam_update import CHI2_CONFIDENCE
from .triangulation import (
    MAX_DEPTH,
    MAX_REPROJ_ERROR,
    MIN_BASELINE,
    MIN_OBSERVATIONS,
    MIN_PARALLAX_ANGLE_DEG,
)


@dataclass(frozen=True)
class MsckfSlamConfig:
    """Configuration for the MSCKF-SLAM update."""

    # Measurement model
    sigma_img: float = 0.0015  # normalized coords (~1 px at 650 px focal)

    # Error-state layout
    n_poses_max: int = 10
    core_dim: int = 15

    # Gating
    chi2_confidence: float = CHI2_CONFIDENCE
    chi2_threshold_scale: float = 1.0

    # Triangulation
    min_observations: int = MIN_OBSERVATIONS
    min_baseline: float = MIN_BASELINE  # meters
    min_parallax_deg: float = MIN_PARALLAX_ANGLE_DEG
    max_depth: float = MAX_DEPTH  # meters
    max_reproj_error: float = MAX_REPROJ_ERROR
    max_iters: int = 20

    debug: bool = False

    # Flat config key for each field
    _KEYS = {
        'sigma_img': 'SIGMA_IMG',
        'n_poses_max': 'N_POSES_MAX',
        'core_dim': 'CORE_ERR_DIM',
        'chi2_confidence': 'MSCKF_SLAM_CHI2_CONFIDENCE',
        'chi2_threshold_scale': 'MSCKF_SLAM_CHI2_SCALE',
        'min_observations': 'TRI_MIN_OBSERVATIONS',
        'min_baseline': 'TRI_MIN_BASELINE',
        'min_parallax_deg': 'TRI_MIN_PARALLAX_DEG',
        'max_depth': 'TRI_MAX_DEPTH',
        'max_reproj_error': 'TRI_MAX_REPROJ_ERROR',
        'max_iters': 'TRI_MAX_ITERS',
        'debug': 'MSCKF_SLAM_DEBUG',
    }

    @classmethod
    def from_dict(cls, global_config: Dict[str, Any]) -> "MsckfSlamConfig":
        """
        Build from a flat config dict (as returned by load_config).

        Missing keys keep their defaults.
        """
        kwargs = {}
        for f in fields(cls):
            key = cls._KEYS[f.name]
            if global_config.get(key) is not None:
                kwargs[f.name] = f.type(global_config[key])
        return cls(**kwargs)


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load YAML configuration file and convert to flat global-config format.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Dictionary with keys SIGMA_IMG, N_POSES_MAX, CORE_ERR_DIM,
        MSCKF_SLAM_CHI2_CONFIDENCE, MSCKF_SLAM_CHI2_SCALE, TRI_* and
        MSCKF_SLAM_DEBUG. Keys absent from the file are absent here.

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed

    Example:
        >>> config = load_config("configs/msckf_slam_default.yaml")
        >>> cfg = MsckfSlamConfig.from_dict(config)
    """
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    section = config.get('msckf_slam', {}) or {}
    tri = section.get('triangulation', {}) or {}

    result = {}

    # ========================================
    # Measurement model / state layout
    # ========================================
    for yaml_key, flat_key in (('sigma_img', 'SIGMA_IMG'),
                               ('n_poses_max', 'N_POSES_MAX'),
                               ('core_dim', 'CORE_ERR_DIM'),
                               ('chi2_confidence', 'MSCKF_SLAM_CHI2_CONFIDENCE'),
                               ('chi2_threshold_scale', 'MSCKF_SLAM_CHI2_SCALE'),
                               ('debug', 'MSCKF_SLAM_DEBUG')):
        if yaml_key in section:
            result[flat_key] = section[yaml_key]

    # ========================================
    # Triangulation thresholds
    # ========================================
    for yaml_key, flat_key in (('min_observations', 'TRI_MIN_OBSERVATIONS'),
                               ('min_baseline_m', 'TRI_MIN_BASELINE'),
                               ('min_parallax_deg', 'TRI_MIN_PARALLAX_DEG'),
                               ('max_depth_m', 'TRI_MAX_DEPTH'),
                               ('max_reproj_error', 'TRI_MAX_REPROJ_ERROR'),
                               ('max_iters', 'TRI_MAX_ITERS')):
        if yaml_key in tri:
            result[flat_key] = tri[yaml_key]

    return result


def load_msckf_slam_config(config_path: str) -> MsckfSlamConfig:
    """Shorthand for MsckfSlamConfig.from_dict(load_config(path))."""
    return MsckfSlamConfig.from_dict(load_config(config_path))
