#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Physical plausibility checks of a refined metric scene.
"""

import logging
from typing import List, Tuple, Optional

import numpy as np

from pairwise_sfm.config.reconstruction_config import SanityCheckConfig
from pairwise_sfm.core.bundle_adjustment import MetricSceneStructure, SceneObservations
from pairwise_sfm.core.errors import PhysicalConstraintViolation

logger = logging.getLogger(__name__)


class MetricSanityChecks:
    """Flags features that cannot be physically correct.

    A feature is bad when its point is not finite, lies behind any camera
    observing it, projects outside an image, or has a reprojection error
    larger than `max_reprojection_error`.
    """

    def __init__(self, config: Optional[SanityCheckConfig] = None):
        self.config = config or SanityCheckConfig()
        self.verbose: Optional[logging.Logger] = None
        self.reset_counters()

    def set_verbose(self, verbose: Optional[logging.Logger]):
        self.verbose = verbose

    def reset_counters(self):
        self.failed_triangulation = 0
        self.failed_behind = 0
        self.failed_bounds = 0
        self.failed_reprojection = 0

    def check_physical_constraints(self, structure: MetricSceneStructure,
                                   observations: SceneObservations,
                                   shapes: List[Tuple[int, int]]) -> np.ndarray:
        """Check every feature of the structure.

        Args:
            structure: Refined metric scene
            observations: Observations used to refine it
            shapes: (width, height) of every view in the structure

        Returns:
            Boolean array, True for bad features

        Raises:
            PhysicalConstraintViolation: when the input is inconsistent
        """
        if len(shapes) != structure.num_views or len(structure.intrinsics) != structure.num_views:
            raise PhysicalConstraintViolation(
                f"Structure has {structure.num_views} views but {len(shapes)} shapes were given")
        self.reset_counters()

        num_points = len(structure.points)
        bad = np.zeros(num_points, dtype=bool)

        finite = np.all(np.isfinite(structure.points), axis=1)
        self.failed_triangulation = int(np.count_nonzero(~finite))
        bad |= ~finite

        behind = np.zeros(num_points, dtype=bool)
        outside = np.zeros(num_points, dtype=bool)
        reprojection = np.zeros(num_points, dtype=bool)

        for view in range(structure.num_views):
            selected = observations.view_indices == view
            if not np.any(selected):
                continue
            point_ids = observations.point_indices[selected]
            points = structure.points[point_ids]

            points_cam = structure.poses[view].transform(points)
            with np.errstate(invalid='ignore'):
                behind[point_ids] |= ~(points_cam[:, 2] > 0)

            intrinsics = structure.intrinsics[view]
            pixels = intrinsics.project(points_cam)
            if self.config.check_image_bounds:
                width, height = shapes[view]
                with np.errstate(invalid='ignore'):
                    inside = ((pixels[:, 0] >= 0) & (pixels[:, 0] <= width) &
                              (pixels[:, 1] >= 0) & (pixels[:, 1] <= height))
                outside[point_ids] |= ~inside

            errors = np.linalg.norm(pixels - observations.pixels[selected], axis=1)
            with np.errstate(invalid='ignore'):
                reprojection[point_ids] |= ~(errors <= self.config.max_reprojection_error)

        # Count each feature once, under the first failure that applies
        behind &= finite
        outside &= finite & ~behind
        reprojection &= finite & ~behind & ~outside
        self.failed_behind = int(np.count_nonzero(behind))
        self.failed_bounds = int(np.count_nonzero(outside))
        self.failed_reprojection = int(np.count_nonzero(reprojection))
        bad |= behind | outside | reprojection

        if self.verbose is not None:
            self.verbose.info(f"Sanity: {int(np.count_nonzero(bad))}/{num_points} bad, "
                              f"triangulation={self.failed_triangulation} behind={self.failed_behind} "
                              f"bounds={self.failed_bounds} reprojection={self.failed_reprojection}")
        return bad
