#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import dataclasses

import numpy as np
import pytest

from pairwise_sfm.config.reconstruction_config import SanityCheckConfig
from pairwise_sfm.core.bundle_adjustment import MetricSceneStructure, SceneObservations
from pairwise_sfm.core.errors import PhysicalConstraintViolation
from pairwise_sfm.core.sanity_checks import MetricSanityChecks

VIEWS = ["0", "1", "2"]


@pytest.fixture
def structure_and_observations(scene):
    mappings = np.array([scene.features[v] for v in VIEWS])
    points = np.flatnonzero(np.all(mappings >= 0, axis=0))
    pixels = [scene.db.lookup_pixels(v)[scene.features[v][points]] for v in VIEWS]
    structure = MetricSceneStructure(
        intrinsics=[dataclasses.replace(scene.cameras[v].intrinsics) for v in VIEWS],
        poses=[scene.cameras[v].extrinsics.copy() for v in VIEWS],
        points=scene.points[points].copy(),
    )
    shapes = [scene.graph.lookup_node(v).shape for v in VIEWS]
    return structure, SceneObservations.from_tracks(pixels), shapes


def test_exact_scene_has_no_bad_features(structure_and_observations):
    structure, obs, shapes = structure_and_observations

    bad = MetricSanityChecks().check_physical_constraints(structure, obs, shapes)

    assert bad.shape == (len(structure.points),)
    assert not np.any(bad)


def test_each_failure_kind_is_detected(structure_and_observations):
    structure, obs, shapes = structure_and_observations
    pose = structure.poses[0]

    structure.points[0] = np.nan
    # Mirror a point through the first camera center so it is behind that camera
    structure.points[1] = 2 * pose.center - structure.points[1]
    # Far to the side, still in front of every camera
    structure.points[2] = structure.points[2] + np.array([50.0, 0.0, 0.0])
    obs.pixels[obs.point_indices == 3] += np.array([20.0, 0.0])

    checks = MetricSanityChecks(SanityCheckConfig(max_reprojection_error=10.0))
    bad = checks.check_physical_constraints(structure, obs, shapes)

    assert np.flatnonzero(bad).tolist() == [0, 1, 2, 3]
    assert checks.failed_triangulation == 1
    assert checks.failed_behind == 1
    assert checks.failed_bounds == 1
    assert checks.failed_reprojection == 1


def test_image_bounds_can_be_disabled(structure_and_observations):
    structure, obs, shapes = structure_and_observations
    # Tiny images: every projection falls outside but the reprojection is exact
    shapes = [(1, 1)] * 3

    enabled = MetricSanityChecks().check_physical_constraints(structure, obs, shapes)
    disabled = MetricSanityChecks(SanityCheckConfig(check_image_bounds=False)).check_physical_constraints(
        structure, obs, shapes)

    assert np.all(enabled)
    assert not np.any(disabled)


def test_shape_mismatch_raises(structure_and_observations):
    structure, obs, shapes = structure_and_observations

    with pytest.raises(PhysicalConstraintViolation):
        MetricSanityChecks().check_physical_constraints(structure, obs, shapes[:2])


def test_verbose_sink_receives_summary(structure_and_observations, verbose_logger, caplog):
    structure, obs, shapes = structure_and_observations
    checks = MetricSanityChecks()
    checks.set_verbose(verbose_logger)

    with caplog.at_level("INFO", logger=verbose_logger.name):
        checks.check_physical_constraints(structure, obs, shapes)

    assert "Sanity: 0/" in caplog.text
