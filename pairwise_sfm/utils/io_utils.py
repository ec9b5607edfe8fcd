#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Input/output helpers for saving and restoring reconstructions.
"""

import os
import json
import logging
from typing import Dict

import numpy as np

from pairwise_sfm.core.camera import CameraExtrinsics, CameraIntrinsics
from pairwise_sfm.core.working_graph import InlierInfo, SceneWorkingGraph, WorkingView

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def ensure_dir(directory: str) -> str:
    """Ensure directory exists, creating it if necessary.

    Args:
        directory: Directory path

    Returns:
        Absolute path to directory
    """
    if directory == "":
        return directory

    directory = os.path.abspath(directory)
    os.makedirs(directory, exist_ok=True)
    return directory


def load_json(filepath: str) -> Dict:
    """Load JSON file.

    Args:
        filepath: Path to JSON file

    Returns:
        Loaded data
    """
    try:
        with open(filepath, 'r') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load JSON file {filepath}: {e}")
        raise


def save_json(data: Dict, filepath: str, indent: int = 2) -> None:
    """Save data to JSON file.

    Args:
        data: Data to save
        filepath: Output file path
        indent: JSON indentation
    """
    parent = os.path.dirname(filepath)
    if parent:
        ensure_dir(parent)
    try:
        with open(filepath, 'w') as f:
            json.dump(data, f, indent=indent)
    except (OSError, TypeError) as e:
        logger.error(f"Failed to save JSON file {filepath}: {e}")
        raise


def working_view_to_dict(wview: WorkingView) -> Dict:
    return {
        "view_id": wview.view_id,
        "index": wview.index,
        "width": wview.width,
        "height": wview.height,
        "projective": None if wview.projective is None else np.asarray(wview.projective).tolist(),
        "intrinsics": None if wview.intrinsics is None else wview.intrinsics.to_dict(),
        "world_to_view": wview.world_to_view.to_dict(),
        "inliers": None if wview.inliers is None else wview.inliers.to_dict(),
        "added": wview.added,
    }


def working_view_from_dict(data: Dict) -> WorkingView:
    projective = data.get("projective")
    intrinsics = data.get("intrinsics")
    inliers = data.get("inliers")
    return WorkingView(
        view_id=data["view_id"],
        index=int(data["index"]),
        width=int(data["width"]),
        height=int(data["height"]),
        projective=None if projective is None else np.array(projective, dtype=float),
        intrinsics=None if intrinsics is None else CameraIntrinsics.from_dict(intrinsics),
        world_to_view=CameraExtrinsics.from_dict(data["world_to_view"]),
        inliers=None if inliers is None else InlierInfo.from_dict(inliers),
        added=bool(data.get("added", False)),
    )


def save_working_graph(work_graph: SceneWorkingGraph, filepath: str) -> None:
    """Save the known views of a reconstruction.

    The open frontier is not saved, it only has meaning while the pairwise
    graph it refers to is in memory.

    Args:
        work_graph: Reconstruction to save
        filepath: Output JSON file
    """
    data = {
        "version": FORMAT_VERSION,
        "views": [working_view_to_dict(wview)
                  for wview in sorted(work_graph.list_views(), key=lambda v: v.index)],
        "seed_distances": dict(work_graph.seed_distances),
    }
    save_json(data, filepath)
    logger.info(f"Saved {len(work_graph)} views to {filepath}")


def load_working_graph(filepath: str) -> SceneWorkingGraph:
    """Load a reconstruction written by `save_working_graph`.

    Args:
        filepath: Input JSON file

    Returns:
        Working graph with its known views, an empty frontier and every
        known view marked explored
    """
    data = load_json(filepath)
    version = data.get("version")
    if version != FORMAT_VERSION:
        raise ValueError(f"Unsupported working graph format version: {version}")

    work_graph = SceneWorkingGraph()
    for entry in data["views"]:
        wview = working_view_from_dict(entry)
        work_graph.views[wview.view_id] = wview
        work_graph.explored.add(wview.view_id)
    work_graph.seed_distances.update({k: int(v) for k, v in data.get("seed_distances", {}).items()})
    return work_graph
