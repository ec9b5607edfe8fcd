#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Robust two-view and three-view projective estimators.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

import cv2
import numpy as np

from pairwise_sfm.config.reconstruction_config import RansacConfig
from pairwise_sfm.core.errors import GeometricEstimationFailed
from pairwise_sfm.core import multiview

logger = logging.getLogger(__name__)


@dataclass
class ProjectiveModel:
    """Cameras (first one is [I|0]) and the observations they explain."""
    cameras: List[np.ndarray]
    inliers: np.ndarray  # Boolean mask over the input observations
    errors: np.ndarray  # Worst reprojection error per observation

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))


class TrifocalRansac:
    """RANSAC over the linear trifocal tensor solution.

    Each hypothesis is scored by triangulating every triple and taking the
    worst reprojection error across the three views.
    """

    SAMPLE_SIZE = 7

    def __init__(self, config: Optional[RansacConfig] = None):
        self.config = config or RansacConfig()

    def _max_iterations(self, inlier_ratio: float) -> int:
        if inlier_ratio >= 1.0:
            return 1
        p_good = inlier_ratio ** self.SAMPLE_SIZE
        if p_good <= 0.0:
            return self.config.iterations
        needed = math.log(1.0 - self.config.confidence) / math.log1p(-p_good)
        return min(self.config.iterations, max(1, int(math.ceil(needed))))

    def _score(self, x1, x2, x3, P2, P3) -> np.ndarray:
        cameras = [multiview.canonical_camera(), P2, P3]
        errors = multiview.three_view_errors(cameras, [x1, x2, x3])
        return np.where(np.isfinite(errors), errors, np.inf)

    def estimate(self, x1: np.ndarray, x2: np.ndarray, x3: np.ndarray) -> ProjectiveModel:
        """Estimate the cameras of views 2 and 3.

        Args:
            x1, x2, x3: Nx2 pixel coordinates of the same tracks in each view

        Returns:
            Best model, refit on all of its inliers

        Raises:
            GeometricEstimationFailed: when no model has enough inliers
        """
        n = len(x1)
        if n < self.SAMPLE_SIZE:
            raise GeometricEstimationFailed(f"Only {n} triples, need {self.SAMPLE_SIZE}")

        threshold = self.config.inlier_threshold
        rng = np.random.default_rng(self.config.random_seed)

        best_count = 0
        best = None
        max_iterations = self.config.iterations
        iteration = 0
        while iteration < max_iterations:
            iteration += 1
            sample = rng.choice(n, self.SAMPLE_SIZE, replace=False)
            try:
                P2, P3 = multiview.estimate_three_view_cameras(x1[sample], x2[sample], x3[sample])
            except (ValueError, np.linalg.LinAlgError):
                continue

            errors = self._score(x1, x2, x3, P2, P3)
            count = int(np.count_nonzero(errors <= threshold))
            if count > best_count:
                best_count = count
                best = (P2, P3)
                max_iterations = min(max_iterations, max(iteration, self._max_iterations(count / n)))

        if best is None or best_count < self.SAMPLE_SIZE:
            raise GeometricEstimationFailed("RANSAC did not find a trifocal model")

        errors = self._score(x1, x2, x3, *best)
        inliers = errors <= threshold

        # Refit on all inliers, keep it only when it explains at least as much
        try:
            P2, P3 = multiview.estimate_three_view_cameras(x1[inliers], x2[inliers], x3[inliers])
            refit_errors = self._score(x1, x2, x3, P2, P3)
            if np.count_nonzero(refit_errors <= threshold) >= best_count:
                best, errors = (P2, P3), refit_errors
                inliers = errors <= threshold
        except (ValueError, np.linalg.LinAlgError) as e:
            logger.debug(f"Trifocal refit failed: {e}")

        model = ProjectiveModel([multiview.canonical_camera(), best[0], best[1]], inliers, errors)
        logger.debug(f"Trifocal RANSAC: {model.num_inliers}/{n} inliers after {iteration} iterations")
        if model.num_inliers < self.config.min_inliers:
            raise GeometricEstimationFailed(
                f"Trifocal model has {model.num_inliers} inliers, need {self.config.min_inliers}")
        return model


class FundamentalRansac:
    """Two-view projective cameras from a RANSAC fundamental matrix."""

    def __init__(self, config: Optional[RansacConfig] = None):
        self.config = config or RansacConfig()

    def estimate(self, x1: np.ndarray, x2: np.ndarray) -> ProjectiveModel:
        if len(x1) < 8:
            raise GeometricEstimationFailed(f"Only {len(x1)} pairs, need 8")

        F, mask = cv2.findFundamentalMat(
            np.asarray(x1, dtype=np.float64), np.asarray(x2, dtype=np.float64),
            method=cv2.FM_RANSAC,
            ransacReprojThreshold=self.config.inlier_threshold,
            confidence=self.config.confidence,
            maxIters=self.config.iterations)
        if F is None or mask is None:
            raise GeometricEstimationFailed("Fundamental matrix estimation failed")
        # The 7-point solver can return several stacked solutions
        F = F[:3, :3]

        cameras = list(multiview.cameras_from_fundamental(F))
        X = multiview.triangulate_dlt(cameras, [x1, x2])
        errors = np.max(multiview.reprojection_errors(cameras, X, [x1, x2]), axis=0)
        errors = np.where(np.isfinite(errors), errors, np.inf)
        inliers = mask.ravel().astype(bool) & (errors <= self.config.inlier_threshold)

        model = ProjectiveModel(cameras, inliers, errors)
        if model.num_inliers < self.config.min_inliers:
            raise GeometricEstimationFailed(
                f"Fundamental model has {model.num_inliers} inliers, need {self.config.min_inliers}")
        return model
