#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Lookup of per-view feature observations.

Feature indices stored in the pairwise graph refer to rows of the pixel
arrays kept here.
"""

import logging
from typing import Dict, List, Tuple, Optional

import numpy as np

from pairwise_sfm.core.camera import CameraIntrinsics
from pairwise_sfm.core.pairwise_graph import Motion, View

logger = logging.getLogger(__name__)


class ImageObservations:
    """Pixel observations, image shapes and optional intrinsic priors per view."""

    def __init__(self):
        self._pixels: Dict[str, np.ndarray] = {}
        self._shapes: Dict[str, Tuple[int, int]] = {}
        self._priors: Dict[str, CameraIntrinsics] = {}

    def add_view(self, view_id: str, pixels: np.ndarray, shape: Tuple[int, int],
                 prior: Optional[CameraIntrinsics] = None):
        """Register the features of one image.

        Args:
            view_id: View identifier, must match the pairwise graph
            pixels: Nx2 pixel coordinates, row i is feature i
            shape: (width, height) of the image
            prior: Known intrinsics, if any
        """
        pixels = np.asarray(pixels, dtype=float).reshape(-1, 2)
        self._pixels[view_id] = pixels
        self._shapes[view_id] = (int(shape[0]), int(shape[1]))
        if prior is not None:
            self._priors[view_id] = prior

    def lookup_pixels(self, view_id: str) -> np.ndarray:
        try:
            return self._pixels[view_id]
        except KeyError:
            raise KeyError(f"No observations for view {view_id}") from None

    def lookup_shape(self, view_id: str) -> Tuple[int, int]:
        return self._shapes[view_id]

    def lookup_prior(self, view_id: str) -> Optional[CameraIntrinsics]:
        return self._priors.get(view_id)

    def observation(self, view_id: str, feature: int) -> Tuple[float, float]:
        x, y = self.lookup_pixels(view_id)[feature]
        return float(x), float(y)

    def set_pixel(self, view_id: str, feature: int, xy: Tuple[float, float]):
        """Overwrite one observation."""
        self._pixels[view_id][feature] = xy

    def common_features(self, seed: View, motions: List[Motion]) -> Tuple[np.ndarray, List[np.ndarray]]:
        """Features of `seed` that have an inlier in every motion.

        Args:
            seed: View shared by every motion
            motions: Edges from the seed to its neighbors

        Returns:
            Tuple of (seed feature indices, list of the matching feature indices
            in each neighbor, same order as `motions`)
        """
        maps = [motion.feature_map(seed) for motion in motions]
        if not maps:
            return np.zeros(0, dtype=int), []

        common = set(maps[0].keys())
        for feature_map in maps[1:]:
            common &= feature_map.keys()

        seed_features = np.array(sorted(common), dtype=int)
        neighbors = [np.array([m[f] for f in seed_features.tolist()], dtype=int) for m in maps]
        return seed_features, neighbors
