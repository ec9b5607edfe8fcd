#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Initial reconstruction from a seed view and its selected neighbors.

The projective initializer estimates cameras for every seed view from the
features all of them observe. The metric initializer upgrades that result
with a calibrating homography computed from the intrinsic priors of the
seed pair and refines it with bundle adjustment.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from pairwise_sfm.config.reconstruction_config import ReconstructionConfig
from pairwise_sfm.core import multiview
from pairwise_sfm.core.bundle_adjustment import (MetricBundleAdjustment, MetricSceneStructure,
                                                 SceneObservations)
from pairwise_sfm.core.camera import CameraExtrinsics, CameraIntrinsics, estimate_camera_intrinsics
from pairwise_sfm.core.errors import (GeometricEstimationFailed, InsufficientCommonFeatures,
                                      RefinementDivergence)
from pairwise_sfm.core.lookup import ImageObservations
from pairwise_sfm.core.pairwise_graph import PairwiseImageGraph, View
from pairwise_sfm.core.pairwise_utils import PairwiseGraphUtils
from pairwise_sfm.core.robust import FundamentalRansac
from pairwise_sfm.core.sanity_checks import MetricSanityChecks
from pairwise_sfm.core.seed_scoring import SeedInfo
from pairwise_sfm.core.working_graph import InlierInfo, SceneWorkingGraph

logger = logging.getLogger(__name__)


@dataclass
class SeedReconstruction:
    """Projective cameras of the seed views and the tracks they explain."""
    views: List[View]  # Seed first
    cameras: List[np.ndarray]
    features: List[np.ndarray]  # Inlier feature indices per view, aligned
    pixels: List[np.ndarray]  # Inlier pixels per view, aligned

    def inlier_info(self) -> InlierInfo:
        return InlierInfo([v.view_id for v in self.views], [f.copy() for f in self.features])


class InitializeCommon:
    """Base class of the initializers."""

    def __init__(self, config: Optional[ReconstructionConfig] = None):
        self.config = config or ReconstructionConfig()
        self.utils = PairwiseGraphUtils(self.config)
        self.verbose: Optional[logging.Logger] = None

    def set_verbose(self, verbose: Optional[logging.Logger]):
        self.verbose = verbose
        self.utils.set_verbose(verbose)

    def initialize(self, db: ImageObservations, graph: PairwiseImageGraph,
                   seed: SeedInfo, work_graph: SceneWorkingGraph):
        """Register the seed views in `work_graph`.

        Raises:
            ReconstructionError: any failure, the seed cannot be used
        """
        raise NotImplementedError


class ProjectiveInitializeAllCommon(InitializeCommon):
    """Projective reconstruction of the seed and all of its selected neighbors."""

    def __init__(self, config: Optional[ReconstructionConfig] = None):
        super().__init__(config)
        self.fundamental = FundamentalRansac(self.config.ransac)

    def estimate(self, db: ImageObservations, seed: SeedInfo) -> SeedReconstruction:
        """Estimate cameras for the seed views without touching any working graph."""
        views = [seed.seed] + seed.neighbors
        if len(views) < 2:
            raise InsufficientCommonFeatures("The seed has no neighbors")

        seed_features, neighbor_features = db.common_features(seed.seed, seed.motions)
        if len(seed_features) < self.config.min_common_features:
            raise InsufficientCommonFeatures(
                f"Seed {seed.seed.view_id} shares only {len(seed_features)} features with "
                f"{[v.view_id for v in views[1:]]}")

        features = [seed_features] + neighbor_features
        pixels = [db.lookup_pixels(view.view_id)[f] for view, f in zip(views, features)]

        if len(views) == 2:
            model = self.fundamental.estimate(pixels[0], pixels[1])
        else:
            model = self.utils.trifocal.estimate(pixels[0], pixels[1], pixels[2])
        cameras = list(model.cameras)
        inliers = model.inliers

        if len(views) > 3:
            cameras, inliers = self._resect_remaining(cameras, pixels, inliers)

        inlier_pixels = [p[inliers] for p in pixels]
        if self.config.bundle_adjustment.refine_projective:
            cameras, _ = self.utils.refine_projective(
                cameras, [True] + [False] * (len(cameras) - 1), inlier_pixels)
        cameras = [multiview.normalize_camera(P) for P in cameras]

        if self.verbose is not None:
            self.verbose.info(f"Seed {seed.seed.view_id}: {int(np.count_nonzero(inliers))}/{len(seed_features)} "
                              f"common features accepted across {len(views)} views")

        return SeedReconstruction(views, cameras, [f[inliers] for f in features], inlier_pixels)

    def _resect_remaining(self, cameras: List[np.ndarray], pixels: List[np.ndarray], inliers: np.ndarray):
        """Add the neighbors beyond the first two by resection."""
        known = len(cameras)
        X = multiview.triangulate_dlt(cameras, [p[inliers] for p in pixels[:known]])
        for k in range(known, len(pixels)):
            try:
                cameras.append(multiview.resect_dlt(X, pixels[k][inliers]))
            except (ValueError, np.linalg.LinAlgError) as e:
                raise GeometricEstimationFailed(f"Resection of seed neighbor failed: {e}") from e

        # Drop tracks the resected cameras do not explain
        X_all = multiview.triangulate_dlt(cameras, pixels)
        errors = np.max(multiview.reprojection_errors(cameras, X_all, pixels), axis=0)
        inliers = inliers & (errors <= self.config.ransac.inlier_threshold)
        if np.count_nonzero(inliers) < self.config.ransac.min_inliers:
            raise GeometricEstimationFailed(
                f"Only {int(np.count_nonzero(inliers))} tracks consistent with all seed views")
        return cameras, inliers

    def initialize(self, db: ImageObservations, graph: PairwiseImageGraph,
                   seed: SeedInfo, work_graph: SceneWorkingGraph):
        result = self.estimate(db, seed)
        for view, P in zip(result.views, result.cameras):
            wview = work_graph.add_view(view)
            wview.projective = P
            wview.added = True
        work_graph.lookup_view(seed.seed.view_id).inliers = result.inlier_info()
        logger.info(f"Projective initialization from seed {seed.seed.view_id} with {len(result.views)} views")


class MetricInitialize(InitializeCommon):
    """Metric reconstruction of the seed views.

    Intrinsics come from the observation priors; views without a prior get
    the default focal length guess for the two views the upgrade depends on
    and the upgraded calibration otherwise.
    """

    def __init__(self, config: Optional[ReconstructionConfig] = None):
        super().__init__(config)
        self.projective = ProjectiveInitializeAllCommon(self.config)
        self.metric_ba = MetricBundleAdjustment(self.config.bundle_adjustment)
        self.checks = MetricSanityChecks(self.config.sanity)

    def set_verbose(self, verbose: Optional[logging.Logger]):
        super().set_verbose(verbose)
        self.projective.set_verbose(verbose)
        self.metric_ba.set_verbose(verbose)
        self.checks.set_verbose(verbose)

    def lookup_prior(self, db: ImageObservations, view: View) -> Optional[CameraIntrinsics]:
        prior = db.lookup_prior(view.view_id)
        return None if prior is None else dataclasses.replace(prior)

    def default_intrinsics(self, view: View) -> CameraIntrinsics:
        return estimate_camera_intrinsics(image_size=(view.width, view.height),
                                          focal_scale=self.config.default_focal_scale)

    def initialize(self, db: ImageObservations, graph: PairwiseImageGraph,
                   seed: SeedInfo, work_graph: SceneWorkingGraph):
        result = self.projective.estimate(db, seed)
        views = result.views

        priors = [self.lookup_prior(db, view) for view in views]
        intrinsics = [prior if prior is not None or i >= 2 else self.default_intrinsics(view)
                      for i, (view, prior) in enumerate(zip(views, priors))]

        H = multiview.calibrating_homography(result.cameras[1], intrinsics[0].K, intrinsics[1].K,
                                             result.pixels[0], result.pixels[1])

        poses = [CameraExtrinsics.identity()]
        for i in range(1, len(views)):
            K, pose = multiview.projective_to_metric(result.cameras[i], H)
            poses.append(pose)
            if intrinsics[i] is None:
                intrinsics[i] = CameraIntrinsics.from_calibration_matrix(K, views[i].width, views[i].height)

        # Fix the scale so the seed pair baseline is one
        scale = multiview.checked_scale(1.0, np.linalg.norm(poses[1].t), "seed baseline")
        for pose in poses:
            pose.t = pose.t * scale

        normalized = [intr.normalize(px) for intr, px in zip(intrinsics, result.pixels)]
        structure = MetricSceneStructure(
            intrinsics=intrinsics,
            poses=poses,
            points=multiview.triangulate_metric(poses, normalized),
            fixed_intrinsics=[prior is not None for prior in priors],
            fixed_poses=[True] + [False] * (len(views) - 1),
        )
        observations = SceneObservations.from_tracks(result.pixels)
        ba_result = self.metric_ba.process(structure, observations)
        if not ba_result.success:
            raise RefinementDivergence(f"Seed bundle adjustment failed: {ba_result.message}")

        # The seed pair baseline drifts freely during refinement
        scale = multiview.checked_scale(1.0, np.linalg.norm(structure.poses[1].t), "seed baseline")
        for pose in structure.poses:
            pose.t = pose.t * scale
        structure.points = structure.points * scale

        bad = self.checks.check_physical_constraints(structure, observations,
                                                     [view.shape for view in views])
        inlier_info = InlierInfo([v.view_id for v in views], [f[~bad] for f in result.features])

        for view, intr, pose in zip(views, structure.intrinsics, structure.poses):
            wview = work_graph.add_view(view)
            wview.intrinsics = intr
            wview.world_to_view = pose
            wview.added = True
        work_graph.lookup_view(seed.seed.view_id).inliers = inlier_info

        logger.info(f"Metric initialization from seed {seed.seed.view_id} with {len(views)} views, "
                    f"rms={ba_result.rms_error:.3f} px, {int(np.count_nonzero(bad))} bad features")
        if self.verbose is not None:
            for view, intr, pose in zip(views, structure.intrinsics, structure.poses):
                self.verbose.info(f"  {view.view_id}: f={intr.focal:.1f} T={np.round(pose.t, 4).tolist()}")
