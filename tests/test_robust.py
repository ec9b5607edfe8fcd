#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import numpy as np
import pytest

from pairwise_sfm.config.reconstruction_config import RansacConfig
from pairwise_sfm.core import multiview
from pairwise_sfm.core.errors import GeometricEstimationFailed
from pairwise_sfm.core.robust import FundamentalRansac, TrifocalRansac


def _tracks(scene, view_ids):
    mappings = np.array([scene.features[v] for v in view_ids])
    points = np.flatnonzero(np.all(mappings >= 0, axis=0))
    return [scene.db.lookup_pixels(v)[scene.features[v][points]].copy() for v in view_ids]


def test_trifocal_ransac_separates_gross_outliers(scene):
    x1, x2, x3 = _tracks(scene, ["0", "1", "3"])
    outliers = np.arange(0, len(x1), 10)
    x3[outliers] += np.array([60.0, -45.0])

    model = TrifocalRansac(RansacConfig(inlier_threshold=1.0)).estimate(x1, x2, x3)

    assert not np.any(model.inliers[outliers])
    assert model.num_inliers == len(x1) - len(outliers)
    assert np.max(model.errors[model.inliers]) < 1e-6
    np.testing.assert_allclose(model.cameras[0], multiview.canonical_camera())


def test_trifocal_ransac_is_deterministic(scene):
    x1, x2, x3 = _tracks(scene, ["0", "2", "4"])
    x2[::7] += 30.0
    config = RansacConfig(inlier_threshold=1.0)

    first = TrifocalRansac(config).estimate(x1, x2, x3)
    second = TrifocalRansac(config).estimate(x1, x2, x3)

    np.testing.assert_array_equal(first.inliers, second.inliers)
    np.testing.assert_allclose(first.cameras[2], second.cameras[2])


def test_trifocal_ransac_rejects_small_inputs(scene):
    x1, x2, x3 = (x[:5] for x in _tracks(scene, ["0", "1", "2"]))

    with pytest.raises(GeometricEstimationFailed):
        TrifocalRansac().estimate(x1, x2, x3)


def test_trifocal_ransac_requires_min_inliers(scene):
    x1, x2, x3 = (x[:12] for x in _tracks(scene, ["0", "1", "2"]))

    with pytest.raises(GeometricEstimationFailed):
        TrifocalRansac(RansacConfig(min_inliers=20)).estimate(x1, x2, x3)


def test_fundamental_ransac_cameras_satisfy_epipolar_constraint(scene):
    x1, x2 = _tracks(scene, ["1", "2"])

    model = FundamentalRansac(RansacConfig(inlier_threshold=1.0)).estimate(x1, x2)

    F = multiview.fundamental_from_cameras(model.cameras[0], model.cameras[1])
    assert model.num_inliers >= 0.95 * len(x1)
    assert np.max(multiview.sampson_errors(F, x1[model.inliers], x2[model.inliers])) < 1e-3


def test_fundamental_ransac_rejects_small_inputs(scene):
    x1, x2 = (x[:7] for x in _tracks(scene, ["1", "2"]))

    with pytest.raises(GeometricEstimationFailed):
        FundamentalRansac().estimate(x1, x2)
