#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Three-view helpers shared by initialization and expansion.

A ThreeViewWorkingSet lives for a single estimation attempt. It holds the
features observed by all three views, their pixels and the local projective
cameras estimated from them.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Tuple, Optional

import numpy as np

from pairwise_sfm.config.reconstruction_config import ReconstructionConfig
from pairwise_sfm.core import multiview
from pairwise_sfm.core.bundle_adjustment import (ProjectiveBundleAdjustment, ProjectiveSceneStructure,
                                                 SceneObservations)
from pairwise_sfm.core.errors import InsufficientCommonFeatures, RefinementDivergence
from pairwise_sfm.core.lookup import ImageObservations
from pairwise_sfm.core.pairwise_graph import View
from pairwise_sfm.core.robust import TrifocalRansac
from pairwise_sfm.core.working_graph import InlierInfo

logger = logging.getLogger(__name__)


@dataclass
class ThreeViewWorkingSet:
    """Scratch state of one three-view estimation."""
    views: List[View]  # view1, view2, target
    features: List[np.ndarray]  # Feature indices per view, aligned
    pixels: List[np.ndarray]  # Nx2 pixels per view, aligned with features
    cameras: List[np.ndarray] = field(default_factory=list)  # Local frame, view1 = [I|0]
    inliers: Optional[np.ndarray] = None  # Boolean mask over the features

    def __len__(self) -> int:
        return len(self.features[0])

    @property
    def num_inliers(self) -> int:
        return 0 if self.inliers is None else int(np.count_nonzero(self.inliers))

    def inlier_pixels(self) -> List[np.ndarray]:
        return [pixels[self.inliers] for pixels in self.pixels]

    def inlier_features(self) -> List[np.ndarray]:
        return [features[self.inliers] for features in self.features]

    def discard(self, bad: np.ndarray):
        """Remove inliers flagged in `bad`, a mask over the current inliers."""
        indices = np.flatnonzero(self.inliers)
        self.inliers = self.inliers.copy()
        self.inliers[indices[bad]] = False

    def to_inlier_info(self, owner: int) -> InlierInfo:
        """Accepted observations with the view at position `owner` first."""
        order = [owner] + [i for i in range(len(self.views)) if i != owner]
        features = self.inlier_features()
        return InlierInfo([self.views[i].view_id for i in order], [features[i].copy() for i in order])


class PairwiseGraphUtils:
    """Builds and estimates three-view working sets."""

    def __init__(self, config: Optional[ReconstructionConfig] = None):
        self.config = config or ReconstructionConfig()
        self.trifocal = TrifocalRansac(self.config.ransac)
        self.projective_ba = ProjectiveBundleAdjustment(self.config.bundle_adjustment)
        self.verbose: Optional[logging.Logger] = None

    def set_verbose(self, verbose: Optional[logging.Logger]):
        self.verbose = verbose
        self.projective_ba.set_verbose(verbose)

    def find_fully_connected_triple(self, view1: View, view2: View,
                                    target: View) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Features that are inliers of all three motions and agree with each other.

        Returns:
            Aligned feature indices in view1, view2 and target

        Raises:
            InsufficientCommonFeatures: when one of the three motions is missing
        """
        m12 = view1.find_motion(view2)
        m13 = view1.find_motion(target)
        m23 = view2.find_motion(target)
        if m12 is None or m13 is None or m23 is None:
            raise InsufficientCommonFeatures(
                f"Views {view1.view_id}, {view2.view_id}, {target.view_id} are not fully connected")

        to_2 = m12.feature_map(view1)
        to_3 = m13.feature_map(view1)
        from_2_to_3 = m23.feature_map(view2)

        f1, f2, f3 = [], [], []
        for feature in sorted(to_2.keys() & to_3.keys()):
            in_2 = to_2[feature]
            in_3 = to_3[feature]
            if from_2_to_3.get(in_2) == in_3:
                f1.append(feature)
                f2.append(in_2)
                f3.append(in_3)
        return np.array(f1, dtype=int), np.array(f2, dtype=int), np.array(f3, dtype=int)

    def create_three_view_set(self, db: ImageObservations, view1: View, view2: View,
                              target: View) -> ThreeViewWorkingSet:
        """Collect the common features of a triple.

        Raises:
            InsufficientCommonFeatures: when fewer than `min_common_features` are shared
        """
        features = list(self.find_fully_connected_triple(view1, view2, target))
        if len(features[0]) < self.config.min_common_features:
            raise InsufficientCommonFeatures(
                f"Only {len(features[0])} common features between {view1.view_id}, "
                f"{view2.view_id} and {target.view_id}")
        views = [view1, view2, target]
        pixels = [db.lookup_pixels(view.view_id)[f] for view, f in zip(views, features)]
        return ThreeViewWorkingSet(views, features, pixels)

    def estimate_projective_cameras_robustly(self, working_set: ThreeViewWorkingSet):
        """Fill in the local cameras and inliers of a working set.

        Raises:
            GeometricEstimationFailed: when RANSAC fails
            RefinementDivergence: when the optional refinement fails
        """
        model = self.trifocal.estimate(*working_set.pixels)
        working_set.cameras = model.cameras
        working_set.inliers = model.inliers

        if self.verbose is not None:
            ids = [view.view_id for view in working_set.views]
            self.verbose.info(f"Trifocal {ids}: {model.num_inliers}/{len(working_set)} inliers")

        if self.config.bundle_adjustment.refine_projective:
            working_set.cameras, _ = self.refine_projective(
                working_set.cameras, [True, False, False], working_set.inlier_pixels())

    def refine_projective(self, cameras: List[np.ndarray], fixed: List[bool],
                          pixels: List[np.ndarray]) -> Tuple[List[np.ndarray], np.ndarray]:
        """Projective bundle adjustment over tracks seen by every camera.

        Returns:
            Tuple of (refined cameras, Nx4 refined points)

        Raises:
            RefinementDivergence: when the optimization fails
        """
        points = multiview.triangulate_dlt(cameras, pixels)
        structure = ProjectiveSceneStructure([P.copy() for P in cameras], points, list(fixed))
        result = self.projective_ba.process(structure, SceneObservations.from_tracks(pixels))
        if not result.success:
            raise RefinementDivergence(f"Projective bundle adjustment failed: {result.message}")
        return structure.cameras, structure.points
