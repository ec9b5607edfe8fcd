#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import itertools

import numpy as np
import pytest

from pairwise_sfm.core import multiview
from pairwise_sfm.core.errors import InsufficientCommonFeatures
from pairwise_sfm.core.initialization import MetricInitialize, ProjectiveInitializeAllCommon
from pairwise_sfm.core.working_graph import SceneWorkingGraph
from pairwise_sfm.utils.dataset import create_synthetic_scene
from pairwise_sfm.utils.transforms import rotation_angle_deg


def _inlier_pixels(scene, work_graph, seed_id):
    info = work_graph.lookup_view(seed_id).inliers
    return {view_id: scene.db.lookup_pixels(view_id)[features]
            for view_id, features in zip(info.views, info.observations)}


def test_projective_seed_satisfies_epipolar_constraint(four_view_scene, config, make_seed):
    scene = four_view_scene
    seed = make_seed(scene.graph, "0", ["1", "2"])
    work_graph = SceneWorkingGraph()

    ProjectiveInitializeAllCommon(config).initialize(scene.db, scene.graph, seed, work_graph)

    assert sorted(work_graph.known_ids()) == ["0", "1", "2"]
    assert all(work_graph.lookup_view(v).added for v in ["0", "1", "2"])

    pixels = _inlier_pixels(scene, work_graph, "0")
    assert len(pixels["0"]) >= 50
    for a, b in itertools.combinations(["0", "1", "2"], 2):
        F = multiview.fundamental_from_cameras(work_graph.lookup_view(a).camera_matrix(),
                                               work_graph.lookup_view(b).camera_matrix())
        assert np.max(multiview.sampson_errors(F, pixels[a], pixels[b])) < 1e-6


def test_projective_seed_inliers_are_true_correspondences(four_view_scene, config, make_seed):
    scene = four_view_scene
    seed = make_seed(scene.graph, "0", ["1", "2"])
    work_graph = SceneWorkingGraph()
    ProjectiveInitializeAllCommon(config).initialize(scene.db, scene.graph, seed, work_graph)

    info = work_graph.lookup_view("0").inliers
    assert info.views == ["0", "1", "2"]
    for features_0, features_1 in zip(info.observations[0], info.observations[1]):
        assert scene.point_of("0", features_0) == scene.point_of("1", features_1)


def test_projective_seed_with_one_neighbor(four_view_scene, config, make_seed):
    scene = four_view_scene
    seed = make_seed(scene.graph, "1", ["2"])

    result = ProjectiveInitializeAllCommon(config).estimate(scene.db, seed)

    assert [v.view_id for v in result.views] == ["1", "2"]
    F = multiview.fundamental_from_cameras(*result.cameras)
    assert np.max(multiview.sampson_errors(F, result.pixels[0], result.pixels[1])) < 1e-3


def test_projective_seed_with_three_neighbors(four_view_scene, config, make_seed):
    scene = four_view_scene
    seed = make_seed(scene.graph, "1", ["0", "2", "3"])

    result = ProjectiveInitializeAllCommon(config).estimate(scene.db, seed)

    assert len(result.cameras) == 4
    X = multiview.triangulate_dlt(result.cameras, result.pixels)
    errors = multiview.reprojection_errors(result.cameras, X, result.pixels)
    assert np.max(errors) < 1e-4


def test_seed_without_common_features_fails(config, make_seed):
    scene = create_synthetic_scene(num_views=3, num_points=120, edges=[(0, 1), (0, 2), (1, 2)],
                                   edge_points={(0, 1): range(0, 60), (0, 2): range(60, 120)}, seed=5)
    seed = make_seed(scene.graph, "0", ["1", "2"])
    work_graph = SceneWorkingGraph()

    with pytest.raises(InsufficientCommonFeatures):
        ProjectiveInitializeAllCommon(config).initialize(scene.db, scene.graph, seed, work_graph)
    assert len(work_graph) == 0


def test_metric_seed_recovers_relative_poses(four_view_scene, config, make_seed):
    scene = four_view_scene
    seed = make_seed(scene.graph, "0", ["1", "2"])
    work_graph = SceneWorkingGraph()

    MetricInitialize(config).initialize(scene.db, scene.graph, seed, work_graph)

    seed_pose = work_graph.lookup_view("0").world_to_view
    np.testing.assert_allclose(seed_pose.R, np.eye(3))
    np.testing.assert_allclose(seed_pose.t, np.zeros(3))
    # The seed pair baseline defines the unit of length
    assert np.linalg.norm(work_graph.lookup_view("1").world_to_view.t) == pytest.approx(1.0, rel=1e-9)

    gt_seed = scene.cameras["0"].extrinsics
    gt_scale = np.linalg.norm(gt_seed.inverse.concat(scene.cameras["1"].extrinsics).t)
    for view_id in ["1", "2"]:
        wview = work_graph.lookup_view(view_id)
        expected = gt_seed.inverse.concat(scene.cameras[view_id].extrinsics)
        assert wview.is_metric
        assert rotation_angle_deg(wview.world_to_view.R.T @ expected.R) < 1e-3
        np.testing.assert_allclose(wview.world_to_view.t * gt_scale, expected.t, atol=1e-4 * gt_scale)
        assert wview.intrinsics.focal == pytest.approx(scene.cameras[view_id].intrinsics.focal)


def test_metric_seed_keeps_only_good_features(four_view_scene, config, make_seed):
    scene = four_view_scene
    seed = make_seed(scene.graph, "0", ["1", "2"])
    work_graph = SceneWorkingGraph()

    initializer = MetricInitialize(config)
    initializer.initialize(scene.db, scene.graph, seed, work_graph)

    info = work_graph.lookup_view("0").inliers
    common, _ = scene.db.common_features(seed.seed, seed.motions)
    assert len(info) == len(common)
    assert initializer.checks.failed_behind == 0


def test_default_intrinsics_guess(four_view_scene, config):
    view = four_view_scene.graph.lookup_node("0")

    intrinsics = MetricInitialize(config).default_intrinsics(view)

    assert intrinsics.focal == pytest.approx(1.2 * 640)
    assert (intrinsics.cx, intrinsics.cy) == (320.0, 240.0)
