#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Camera pose evaluation for metric reconstructions.

A reconstruction is only defined up to a similarity transform, so the
estimated camera centers are first aligned to the ground truth centers and
the errors are measured after the alignment.
"""

import logging
import time
from typing import Dict

import numpy as np

from pairwise_sfm.core.camera import CameraExtrinsics
from pairwise_sfm.core.working_graph import SceneWorkingGraph
from pairwise_sfm.utils.transforms import rotation_angle_deg, similarity_transform_3d

logger = logging.getLogger(__name__)


def poses_from_working_graph(work_graph: SceneWorkingGraph) -> Dict[str, CameraExtrinsics]:
    """world_to_view of every metric view in a working graph."""
    return {wview.view_id: wview.world_to_view for wview in work_graph.list_views() if wview.is_metric}


def mean_baseline(centers: np.ndarray) -> float:
    """Mean distance between every pair of camera centers."""
    diffs = centers[:, None, :] - centers[None, :, :]
    distances = np.linalg.norm(diffs, axis=2)
    upper = np.triu_indices(len(centers), k=1)
    return float(np.mean(distances[upper])) if len(upper[0]) else 0.0


def compute_camera_pose_metrics(pred_poses: Dict[str, CameraExtrinsics],
                                gt_poses: Dict[str, CameraExtrinsics]) -> Dict[str, float]:
    """Compute metrics between predicted and ground truth camera poses.

    Args:
        pred_poses: Dictionary of predicted world_to_view poses {view_id: pose}
        gt_poses: Dictionary of ground truth world_to_view poses {view_id: pose}

    Returns:
        Dictionary of metrics. Center errors are divided by the mean ground
        truth baseline so they do not depend on the scene scale.
    """
    start_time = time.time()

    common_ids = [view_id for view_id in gt_poses if view_id in pred_poses]
    if len(common_ids) < 3:
        logger.error(f"Need at least 3 common cameras for alignment, found {len(common_ids)}")
        return {
            'num_cameras': float(len(common_ids)),
            'rotation_error_mean': float('inf'),
            'rotation_error_max': float('inf'),
            'center_error_mean': float('inf'),
            'center_error_max': float('inf'),
            'scale': float('nan'),
            'runtime': 0.0
        }

    pred_centers = np.array([pred_poses[v].center for v in common_ids])
    gt_centers = np.array([gt_poses[v].center for v in common_ids])
    scale, R_align, t_align = similarity_transform_3d(pred_centers, gt_centers)

    baseline = mean_baseline(gt_centers)
    if baseline <= 0:
        raise ValueError("Ground truth cameras share a single center")

    rotation_errors = []
    center_errors = []
    for view_id, pred_center, gt_center in zip(common_ids, pred_centers, gt_centers):
        # Rotation of the predicted camera expressed in the ground truth world
        R_pred = pred_poses[view_id].R @ R_align.T
        rotation_errors.append(rotation_angle_deg(gt_poses[view_id].R.T @ R_pred))

        aligned = scale * R_align @ pred_center + t_align
        center_errors.append(np.linalg.norm(aligned - gt_center) / baseline)

    metrics = {
        'num_cameras': float(len(common_ids)),
        'rotation_error_mean': float(np.mean(rotation_errors)),
        'rotation_error_max': float(np.max(rotation_errors)),
        'center_error_mean': float(np.mean(center_errors)),
        'center_error_max': float(np.max(center_errors)),
        'scale': float(scale),
        'runtime': float(time.time() - start_time)
    }

    logger.info(f"Pose metrics over {len(common_ids)} cameras: rotation max "
                f"{metrics['rotation_error_max']:.4f} deg, center max {metrics['center_error_max']:.4%}")
    return metrics
