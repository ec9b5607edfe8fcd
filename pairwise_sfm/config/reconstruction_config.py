#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Configuration of the incremental reconstruction.

Options are grouped in dataclasses and can be loaded from / saved to YAML.
Missing keys keep their defaults, unknown keys are rejected so typos do not
go unnoticed.
"""

import os
import logging
from dataclasses import dataclass, field, fields, asdict
from typing import Dict, Any, Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class RansacConfig:
    """Robust estimation options."""
    iterations: int = 500  # Maximum number of RANSAC iterations
    inlier_threshold: float = 2.0  # Reprojection error threshold in pixels
    min_inliers: int = 15  # Minimum number of inliers for an accepted model
    confidence: float = 0.999  # Used to stop early once a good model was found
    random_seed: int = 0xBEEF  # Seed so identical inputs give identical output


@dataclass
class SeedConfig:
    """Seed selection options."""
    min_neighbors: int = 2  # Qualifying neighbors needed for a seed candidate
    max_neighbors: int = 2  # Neighbors used to initialize the reconstruction
    min_inliers: int = 20  # Minimum edge inliers for an edge to qualify
    min_score_3d: float = 0.0  # Minimum 3D score for an edge to qualify


@dataclass
class BundleAdjustmentConfig:
    """Bundle adjustment options passed to scipy.optimize.least_squares."""
    max_iterations: int = 1000  # Maximum number of function evaluations
    ftol: float = 1e-10
    xtol: float = 1e-10
    gtol: float = 1e-10
    loss: str = "linear"  # linear, huber, soft_l1, cauchy, arctan
    loss_scale: float = 1.0  # Inlier residual scale in pixels for robust losses
    refine_intrinsics: bool = True  # Optimize the focal length of free views
    refine_distortion: bool = False  # Also optimize k1, k2 of free views
    refine_projective: bool = True  # Projective bundle adjustment after estimation


@dataclass
class SanityCheckConfig:
    """Physical constraint checks applied after metric expansion."""
    fraction_bad_features_recover: float = 0.05  # Above this the view is rejected
    max_reprojection_error: float = 10.0  # Pixels
    check_image_bounds: bool = True
    retry_divergence_ratio: float = 2.0  # Allowed RMS growth of kept features on retry
    retry_divergence_floor: float = 0.5  # Pixels added to the allowed RMS


@dataclass
class ReconstructionConfig:
    """Top level options."""
    ransac: RansacConfig = field(default_factory=RansacConfig)
    seed: SeedConfig = field(default_factory=SeedConfig)
    bundle_adjustment: BundleAdjustmentConfig = field(default_factory=BundleAdjustmentConfig)
    sanity: SanityCheckConfig = field(default_factory=SanityCheckConfig)
    min_common_features: int = 6  # Geometric minimum for three-view estimation
    default_focal_scale: float = 1.2  # Focal guess = scale * max(width, height)
    num_workers: int = 1  # Threads used to score frontier candidates
    show_progress: bool = False  # tqdm progress bar over the expansion loop

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a nested dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ReconstructionConfig':
        """Create from a (possibly partial) nested dictionary."""
        data = dict(data or {})
        config = cls()
        groups = {
            "ransac": RansacConfig,
            "seed": SeedConfig,
            "bundle_adjustment": BundleAdjustmentConfig,
            "sanity": SanityCheckConfig,
        }
        for name, group_cls in groups.items():
            if name in data:
                setattr(config, name, _build_group(group_cls, data.pop(name) or {}))

        _update_fields(config, data, exclude=set(groups))
        return config


def _build_group(group_cls, values: Dict[str, Any]):
    group = group_cls()
    _update_fields(group, values)
    return group


def _update_fields(target, values: Dict[str, Any], exclude=frozenset()):
    known = {f.name: f for f in fields(target) if f.name not in exclude}
    for key, value in values.items():
        if key not in known:
            raise ValueError(f"Unknown configuration option '{key}' for {type(target).__name__}")
        current = getattr(target, key)
        # YAML has no int/float distinction for values like 1e-8
        if isinstance(current, float) and isinstance(value, (int, float, str)):
            value = float(value)
        elif isinstance(current, bool):
            if not isinstance(value, bool):
                raise ValueError(f"Option '{key}' of {type(target).__name__} expects true or false, got {value!r}")
        elif isinstance(current, int) and isinstance(value, (int, float)):
            value = int(value)
        setattr(target, key, value)


def get_default_config_path() -> str:
    """Get path to the default configuration file shipped with the package."""
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), "default_config.yaml")


def load_config(config_path: Optional[str] = None) -> ReconstructionConfig:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to configuration file, the default file when None

    Returns:
        Reconstruction configuration
    """
    if config_path is None:
        config_path = get_default_config_path()

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f)

    logger.debug(f"Loaded configuration from {config_path}")
    return ReconstructionConfig.from_dict(data)


def save_config(config: ReconstructionConfig, config_path: str):
    """Save configuration to a YAML file."""
    directory = os.path.dirname(config_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(config_path, 'w') as f:
        yaml.safe_dump(config.to_dict(), f, sort_keys=False)
