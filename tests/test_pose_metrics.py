#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import numpy as np
import pytest

from pairwise_sfm.core.camera import CameraExtrinsics
from pairwise_sfm.evaluation.pose_metrics import compute_camera_pose_metrics, mean_baseline
from pairwise_sfm.utils.transforms import create_rotation_matrix, similarity_transform_3d


def _transformed(poses, scale, R, t):
    """Express world_to_view poses in a world scaled, rotated and shifted by (scale, R, t)."""
    result = {}
    for view_id, pose in poses.items():
        # X_new = scale R X_old + t
        R_new = pose.R @ R.T
        t_new = scale * pose.t - R_new @ t
        result[view_id] = CameraExtrinsics(R_new, t_new)
    return result


def test_similarity_transformed_poses_have_no_error(scene):
    gt = scene.ground_truth_poses()
    predicted = _transformed(gt, 0.25, create_rotation_matrix(np.array([10.0, -40.0, 5.0])),
                             np.array([1.0, 2.0, -3.0]))

    metrics = compute_camera_pose_metrics(predicted, gt)

    assert metrics['num_cameras'] == 5
    assert metrics['rotation_error_max'] < 1e-6
    assert metrics['center_error_max'] < 1e-9
    assert metrics['scale'] == pytest.approx(4.0)


def test_perturbed_pose_is_reported(scene):
    gt = scene.ground_truth_poses()
    predicted = {k: v.copy() for k, v in gt.items()}
    predicted["2"] = CameraExtrinsics(create_rotation_matrix(np.array([0.0, 2.0, 0.0])) @ gt["2"].R, gt["2"].t)

    metrics = compute_camera_pose_metrics(predicted, gt)

    assert metrics['rotation_error_max'] > 1.0


def test_too_few_cameras_gives_infinite_error(scene):
    gt = scene.ground_truth_poses()
    predicted = {k: gt[k] for k in ["0", "1"]}

    metrics = compute_camera_pose_metrics(predicted, gt)

    assert metrics['center_error_mean'] == float('inf')


def test_mean_baseline():
    centers = np.array([[0.0, 0.0, 0.0], [3.0, 0.0, 0.0], [0.0, 4.0, 0.0]])

    assert mean_baseline(centers) == pytest.approx(4.0)


def test_similarity_transform_recovers_known_transform(rng):
    A = rng.normal(size=(20, 3))
    R = create_rotation_matrix(np.array([30.0, 20.0, -10.0]))
    B = 2.5 * A @ R.T + np.array([0.5, -1.0, 2.0])

    s, R_est, t_est = similarity_transform_3d(A, B)

    assert s == pytest.approx(2.5)
    np.testing.assert_allclose(R_est, R, atol=1e-9)
    np.testing.assert_allclose(t_est, [0.5, -1.0, 2.0], atol=1e-9)
