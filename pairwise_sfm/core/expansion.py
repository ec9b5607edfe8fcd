#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Adding a single view to an existing reconstruction.

Both strategies pick two known views connected to the target and to each
other, estimate the three-view geometry of the triple in a local frame
where the first known view is [I|0], and then move the target's camera
into the global frame. The projective strategy does this with a 4x4
homography; the metric strategy upgrades the local frame with a
calibrating homography, fixes scale and sign against the known pair and
refines the target with a three-view bundle adjustment.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import List, Tuple, Optional

import numpy as np

from pairwise_sfm.config.reconstruction_config import ReconstructionConfig
from pairwise_sfm.core import multiview
from pairwise_sfm.core.bundle_adjustment import (MetricBundleAdjustment, MetricSceneStructure,
                                                 SceneObservations)
from pairwise_sfm.core.camera import CameraExtrinsics, CameraIntrinsics
from pairwise_sfm.core.errors import (GeometricEstimationFailed, InsufficientCommonFeatures,
                                      PhysicalConstraintViolation, RefinementDivergence)
from pairwise_sfm.core.lookup import ImageObservations
from pairwise_sfm.core.pairwise_graph import PairwiseImageGraph, View
from pairwise_sfm.core.pairwise_utils import PairwiseGraphUtils, ThreeViewWorkingSet
from pairwise_sfm.core.sanity_checks import MetricSanityChecks
from pairwise_sfm.core.working_graph import SceneWorkingGraph, WorkingView

logger = logging.getLogger(__name__)


def known_connected_pairs(work_graph: SceneWorkingGraph, target: View) -> List[Tuple[View, View]]:
    """Pairs of known views connected to `target` and to each other.

    Pairs follow the order of the target's connections.
    """
    known = [m.other(target) for m in target.connections if work_graph.is_known(m.other(target))]
    pairs = []
    for i in range(len(known)):
        for j in range(i + 1, len(known)):
            if known[i].find_motion(known[j]) is not None:
                pairs.append((known[i], known[j]))
    return pairs


@dataclass
class PairCandidate:
    """A pair of known views that could be used to add a target."""
    view1: View
    view2: View
    common: int  # Features seen by all three views
    inliers: int  # Combined inliers of the two edges to the target
    distance: int  # Combined hop count from the seed

    def sort_key(self):
        return (-self.common, -self.inliers, self.distance, self.view1.index, self.view2.index)


class ExpandByOneView:
    """Strategy interface for adding one view to the working graph."""

    def __init__(self, config: Optional[ReconstructionConfig] = None):
        self.config = config or ReconstructionConfig()
        self.utils = PairwiseGraphUtils(self.config)
        self.verbose: Optional[logging.Logger] = None

    def set_verbose(self, verbose: Optional[logging.Logger]):
        self.verbose = verbose
        self.utils.set_verbose(verbose)

    def _log(self, message: str):
        logger.debug(message)
        if self.verbose is not None:
            self.verbose.info(message)

    def select_two_connections(self, work_graph: SceneWorkingGraph, target: View) -> Tuple[View, View]:
        """Pick the known pair with the richest three-view connection to `target`.

        Ties are broken by the combined inlier count of the edges to the
        target, then by the lower combined distance from the seed and
        finally by graph order.

        Raises:
            InsufficientCommonFeatures: when no pair is connected
        """
        far = len(work_graph.seed_distances) + 1
        candidates = []
        for a, b in known_connected_pairs(work_graph, target):
            # The view with more inliers to the target becomes the local origin
            inliers_a = len(a.find_motion(target).inliers)
            inliers_b = len(b.find_motion(target).inliers)
            if inliers_b > inliers_a or (inliers_b == inliers_a and b.index < a.index):
                a, b = b, a
                inliers_a, inliers_b = inliers_b, inliers_a
            common = len(self.utils.find_fully_connected_triple(a, b, target)[0])
            distance = (work_graph.seed_distances.get(a.view_id, far) +
                        work_graph.seed_distances.get(b.view_id, far))
            candidates.append(PairCandidate(a, b, common, inliers_a + inliers_b, distance))

        if not candidates:
            raise InsufficientCommonFeatures(f"{target.view_id} has no connected pair of known views")

        best = min(candidates, key=PairCandidate.sort_key)
        self._log(f"Selected {best.view1.view_id}, {best.view2.view_id} for {target.view_id}: "
                  f"common={best.common} inliers={best.inliers} distance={best.distance}")
        return best.view1, best.view2

    def expand(self, db: ImageObservations, graph: PairwiseImageGraph,
               work_graph: SceneWorkingGraph, target: View) -> WorkingView:
        """Estimate `target` and add it to `work_graph`.

        Returns:
            The new working view

        Raises:
            ReconstructionError: the view could not be added, `work_graph` is unchanged
        """
        raise NotImplementedError


class ProjectiveExpandByOneView(ExpandByOneView):
    """Adds a view to a projective reconstruction."""

    def expand(self, db: ImageObservations, graph: PairwiseImageGraph,
               work_graph: SceneWorkingGraph, target: View) -> WorkingView:
        view1, view2 = self.select_two_connections(work_graph, target)
        working = self.utils.create_three_view_set(db, view1, view2, target)
        self.utils.estimate_projective_cameras_robustly(working)

        P1 = work_graph.lookup_view(view1.view_id).projective
        P2 = work_graph.lookup_view(view2.view_id).projective
        P_target = working.cameras[2] @ self.local_to_global(working.cameras[1], P1, P2)

        if self.config.bundle_adjustment.refine_projective:
            cameras, _ = self.utils.refine_projective([P1, P2, P_target], [True, True, False],
                                                      working.inlier_pixels())
            P_target = cameras[2]

        wview = work_graph.add_view(target)
        wview.projective = multiview.normalize_camera(P_target)
        wview.inliers = working.to_inlier_info(owner=2)
        wview.added = True
        self._log(f"Added {target.view_id} with {working.num_inliers} inliers")
        return wview

    def local_to_global(self, P2_local: np.ndarray, P1_global: np.ndarray,
                        P2_global: np.ndarray) -> np.ndarray:
        """Homography H taking local cameras to the global frame, P_global ~ P_local H.

        The first local camera is [I|0] so the top rows of H are P1_global.
        The bottom row h and a scale s come from P2_local H = s P2_global.

        Raises:
            GeometricEstimationFailed: when H is singular
        """
        A = P2_local[:, :3]
        a = P2_local[:, 3]
        M = np.zeros((12, 5))
        for r in range(3):
            for c in range(4):
                M[4 * r + c, c] = a[r]
                M[4 * r + c, 4] = -P2_global[r, c]
        rhs = -(A @ P1_global).ravel()
        solution = np.linalg.lstsq(M, rhs, rcond=None)[0]

        H = np.vstack([P1_global, solution[:4]])
        det = np.linalg.det(H / np.linalg.norm(H))
        if not np.all(np.isfinite(H)) or abs(det) < 1e-12 or abs(solution[4]) < 1e-12:
            raise GeometricEstimationFailed("Local to global homography is singular")
        return H


@dataclass
class MetricUpgrade:
    """Target estimate in the local metric frame of view1."""
    intrinsics: CameraIntrinsics
    view1_to_target: CameraExtrinsics
    view1_to_view2: CameraExtrinsics  # Known rotation, translation in local units
    scale: float  # Local to global translation scale


class MetricExpandByOneView(ExpandByOneView):
    """Adds a view to a metric reconstruction."""

    def __init__(self, config: Optional[ReconstructionConfig] = None):
        super().__init__(config)
        self.metric_ba = MetricBundleAdjustment(self.config.bundle_adjustment)
        self.checks = MetricSanityChecks(self.config.sanity)

    def set_verbose(self, verbose: Optional[logging.Logger]):
        super().set_verbose(verbose)
        self.metric_ba.set_verbose(verbose)
        self.checks.set_verbose(verbose)

    def expand(self, db: ImageObservations, graph: PairwiseImageGraph,
               work_graph: SceneWorkingGraph, target: View) -> WorkingView:
        view1, view2 = self.select_two_connections(work_graph, target)
        wview1 = work_graph.lookup_view(view1.view_id)
        wview2 = work_graph.lookup_view(view2.view_id)

        working = self.utils.create_three_view_set(db, view1, view2, target)
        self.utils.estimate_projective_cameras_robustly(working)

        inlier_pixels = working.inlier_pixels()
        H = multiview.calibrating_homography(working.cameras[1], wview1.intrinsics.K, wview2.intrinsics.K,
                                             inlier_pixels[0], inlier_pixels[1])
        upgrade = self.upgrade_to_metric(working, H, wview1, wview2, target)

        structure = self.refine_with_bundle_adjustment(working, upgrade, wview1, wview2, target)

        view1_to_target = structure.poses[2]
        view1_to_target = CameraExtrinsics(view1_to_target.R, view1_to_target.t * upgrade.scale)

        wview = work_graph.add_view(target)
        wview.intrinsics = structure.intrinsics[2]
        wview.world_to_view = wview1.world_to_view.concat(view1_to_target)
        wview.inliers = working.to_inlier_info(owner=2)
        wview.added = True
        self._log(f"Added {target.view_id}: f={wview.intrinsics.focal:.2f} "
                  f"T={np.round(wview.world_to_view.t, 4).tolist()} inliers={working.num_inliers}")
        return wview

    def upgrade_to_metric(self, working: ThreeViewWorkingSet, H: np.ndarray, wview1: WorkingView,
                          wview2: WorkingView, target: View) -> MetricUpgrade:
        """Apply the calibrating homography and resolve scale and sign.

        Raises:
            CalibrationUpgradeFailed: when the upgrade or the scale is degenerate
        """
        K_target, view1_to_target = multiview.projective_to_metric(working.cameras[2], H)
        _, view1_to_view2_local = multiview.projective_to_metric(working.cameras[1], H)

        # Local units: the target is at distance one from view1
        norm = multiview.checked_scale(1.0, np.linalg.norm(view1_to_target.t), "target translation")
        view1_to_target.t = view1_to_target.t * norm
        view1_to_view2_local.t = view1_to_view2_local.t * norm

        view1_to_view2 = wview1.world_to_view.inverse.concat(wview2.world_to_view)
        scale = multiview.checked_scale(np.linalg.norm(view1_to_view2.t),
                                        np.linalg.norm(view1_to_view2_local.t), "local to global scale")

        if np.dot(view1_to_view2_local.t, view1_to_view2.t) < 0:
            self._log(f"Negating local translation of {target.view_id}")
            view1_to_target.t = -view1_to_target.t

        intrinsics = CameraIntrinsics.from_calibration_matrix(K_target, target.width, target.height)
        self._log(f"Upgrade {target.view_id}: f={intrinsics.focal:.2f} scale={scale:.4f} "
                  f"local T={np.round(view1_to_target.t, 4).tolist()}")
        return MetricUpgrade(intrinsics, view1_to_target,
                             CameraExtrinsics(view1_to_view2.R, view1_to_view2.t / scale), scale)

    def create_structure(self, working: ThreeViewWorkingSet, intrinsics: List[CameraIntrinsics],
                         poses: List[CameraExtrinsics]) -> Tuple[MetricSceneStructure, SceneObservations]:
        """Three-view structure with only the target free, points triangulated."""
        pixels = working.inlier_pixels()
        normalized = [intr.normalize(px) for intr, px in zip(intrinsics, pixels)]
        structure = MetricSceneStructure(
            intrinsics=intrinsics,
            poses=poses,
            points=multiview.triangulate_metric(poses, normalized),
            fixed_intrinsics=[True, True, False],
            fixed_poses=[True, True, False],
        )
        return structure, SceneObservations.from_tracks(pixels)

    def refine_with_bundle_adjustment(self, working: ThreeViewWorkingSet, upgrade: MetricUpgrade,
                                      wview1: WorkingView, wview2: WorkingView,
                                      target: View) -> MetricSceneStructure:
        """Bundle adjustment followed by the physical checks, with one retry.

        When a few features are bad they are removed from the working set
        and the refinement is repeated once, starting from the first pass.

        Raises:
            RefinementDivergence: when an optimization fails or the retry
                drifts too far from the first pass
            PhysicalConstraintViolation: when too many features are bad, or
                any remain bad after the retry
        """
        shapes = [wview1.shape, wview2.shape, target.shape]
        intrinsics = [dataclasses.replace(wview1.intrinsics), dataclasses.replace(wview2.intrinsics),
                      upgrade.intrinsics]
        poses = [CameraExtrinsics.identity(), upgrade.view1_to_view2, upgrade.view1_to_target]

        structure, observations = self.create_structure(working, intrinsics, poses)
        first = self._bundle_adjust(structure, observations, "first")

        bad = self.checks.check_physical_constraints(structure, observations, shapes)
        num_bad = int(np.count_nonzero(bad))
        fraction = num_bad / max(len(bad), 1)
        self._log(f"{target.view_id}: {num_bad}/{len(bad)} bad features after refinement")
        if fraction > self.config.sanity.fraction_bad_features_recover:
            raise PhysicalConstraintViolation(
                f"{num_bad}/{len(bad)} bad features in {target.view_id} exceeds "
                f"{self.config.sanity.fraction_bad_features_recover:.1%}")
        if num_bad == 0:
            return structure

        kept_rms = first.point_rms(observations.point_indices, len(bad))[~bad]
        rms_first = float(np.sqrt(np.mean(kept_rms ** 2)))

        working.discard(bad)
        structure, observations = self.create_structure(working, structure.intrinsics, structure.poses)
        second = self._bundle_adjust(structure, observations, "retry")

        bad = self.checks.check_physical_constraints(structure, observations, shapes)
        if np.any(bad):
            raise PhysicalConstraintViolation(
                f"{int(np.count_nonzero(bad))} features in {target.view_id} still bad after retry")

        limit = (self.config.sanity.retry_divergence_ratio * rms_first +
                 self.config.sanity.retry_divergence_floor)
        if second.rms_error > limit:
            raise RefinementDivergence(
                f"Retry rms {second.rms_error:.3f} px exceeds {limit:.3f} px for {target.view_id}")
        return structure

    def _bundle_adjust(self, structure: MetricSceneStructure, observations: SceneObservations, label: str):
        result = self.metric_ba.process(structure, observations)
        if not result.success:
            raise RefinementDivergence(f"Bundle adjustment ({label}) failed: {result.message}")
        return result
