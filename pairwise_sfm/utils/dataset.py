#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Synthetic scenes with known ground truth.

Cameras are placed on an arc looking at a cloud of points, every point is
projected into every view and the resulting correspondences are turned
into a pairwise graph and an observation lookup, the same inputs a real
feature matching front end would produce.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple, Optional

import numpy as np

from pairwise_sfm.core.camera import Camera, CameraExtrinsics, CameraIntrinsics
from pairwise_sfm.core.lookup import ImageObservations
from pairwise_sfm.core.pairwise_graph import PairwiseImageGraph
from pairwise_sfm.utils.transforms import look_at_rotation, skew_symmetric

logger = logging.getLogger(__name__)


@dataclass
class SyntheticScene:
    """Ground truth and matching inputs of a generated scene."""
    graph: PairwiseImageGraph
    db: ImageObservations
    points: np.ndarray  # Nx3 world points
    cameras: Dict[str, Camera]  # Ground truth, world_to_view poses
    features: Dict[str, np.ndarray] = field(default_factory=dict)  # Point index -> feature index, -1 if unseen

    @property
    def view_ids(self) -> List[str]:
        return list(self.cameras.keys())

    def ground_truth_poses(self) -> Dict[str, CameraExtrinsics]:
        return {view_id: camera.extrinsics for view_id, camera in self.cameras.items()}

    def feature_of(self, view_id: str, point: int) -> int:
        """Feature index of a world point in a view, -1 when it is not observed."""
        return int(self.features[view_id][point])

    def point_of(self, view_id: str, feature: int) -> int:
        matches = np.flatnonzero(self.features[view_id] == feature)
        if len(matches) == 0:
            raise KeyError(f"Feature {feature} of {view_id} is not a projected point")
        return int(matches[0])


def _parallax_deg(points: np.ndarray, center_a: np.ndarray, center_b: np.ndarray) -> np.ndarray:
    rays_a = points - center_a
    rays_b = points - center_b
    cos = np.sum(rays_a * rays_b, axis=1) / (np.linalg.norm(rays_a, axis=1) * np.linalg.norm(rays_b, axis=1))
    return np.degrees(np.arccos(np.clip(cos, -1.0, 1.0)))


def ground_truth_fundamental(camera_a: Camera, camera_b: Camera) -> np.ndarray:
    """Fundamental matrix with x_b^T F x_a = 0."""
    a_to_b = camera_a.extrinsics.inverse.concat(camera_b.extrinsics)
    E = skew_symmetric(a_to_b.t) @ a_to_b.R
    F = np.linalg.inv(camera_b.intrinsics.K).T @ E @ np.linalg.inv(camera_a.intrinsics.K)
    return F / np.linalg.norm(F)


def create_synthetic_scene(num_views: int = 5,
                           num_points: int = 150,
                           noise_sigma: float = 0.0,
                           focal: float = 500.0,
                           image_size: Tuple[int, int] = (640, 480),
                           radius: float = 6.0,
                           arc_deg: float = 60.0,
                           point_extent: float = 1.5,
                           edges: Optional[Iterable[Tuple[int, int]]] = None,
                           edge_points: Optional[Dict[Tuple[int, int], Iterable[int]]] = None,
                           known_intrinsics: bool = True,
                           min_parallax_deg: float = 1.0,
                           seed: int = 0) -> SyntheticScene:
    """Generate a scene, its pairwise graph and observations.

    Args:
        num_views: Number of cameras, spread evenly along the arc
        num_points: Number of world points inside a cube around the origin
        noise_sigma: Standard deviation of the pixel noise
        focal: Focal length of every camera in pixels
        image_size: (width, height) of every image
        radius: Distance of the cameras from the origin
        arc_deg: Angle covered by the arc of cameras
        point_extent: Half size of the point cube
        edges: View index pairs to connect, all pairs when None
        edge_points: Optional subset of world points used as inliers of an edge
        known_intrinsics: Store the true intrinsics as priors in the lookup
        min_parallax_deg: Median parallax below which an edge is not 3D
        seed: Random seed, the scene is fully determined by it

    Returns:
        The generated scene
    """
    if num_views < 2:
        raise ValueError("A scene needs at least two views")

    rng = np.random.default_rng(seed)
    width, height = image_size
    points = rng.uniform(-point_extent, point_extent, size=(num_points, 3))

    cameras: Dict[str, Camera] = {}
    for i in range(num_views):
        angle = np.radians(-0.5 * arc_deg + arc_deg * i / (num_views - 1))
        # Small elevation changes keep the camera centers off a single plane
        center = np.array([radius * np.sin(angle), 0.4 * ((i % 3) - 1), -radius * np.cos(angle)])
        R = look_at_rotation(center, np.zeros(3))
        intrinsics = CameraIntrinsics(width=width, height=height, fx=focal, fy=focal,
                                      cx=width / 2.0, cy=height / 2.0)
        cameras[str(i)] = Camera(intrinsics, CameraExtrinsics(R, -R @ center), name=str(i))

    graph = PairwiseImageGraph()
    db = ImageObservations()
    features: Dict[str, np.ndarray] = {}

    for view_id, camera in cameras.items():
        pixels, in_front = camera.project(points)
        visible = in_front & camera.intrinsics.contains(pixels)
        if noise_sigma > 0:
            pixels = pixels + rng.normal(0.0, noise_sigma, size=pixels.shape)

        # Feature order is unrelated to the point order, as with a real detector
        seen = np.flatnonzero(visible)
        order = rng.permutation(len(seen))
        mapping = np.full(num_points, -1, dtype=int)
        mapping[seen[order]] = np.arange(len(seen))
        observed = np.zeros((len(seen), 2))
        observed[mapping[seen]] = pixels[seen]

        features[view_id] = mapping
        graph.create_node(view_id, width, height)
        db.add_view(view_id, observed, (width, height),
                    prior=CameraIntrinsics.from_dict(camera.intrinsics.to_dict()) if known_intrinsics else None)

    if edges is None:
        edges = [(i, j) for i in range(num_views) for j in range(i + 1, num_views)]
    edge_points = {tuple(k): np.asarray(list(v), dtype=int) for k, v in (edge_points or {}).items()}

    for i, j in edges:
        src, dst = str(i), str(j)
        subset = edge_points.get((i, j), edge_points.get((j, i), np.arange(num_points)))
        shared = subset[(features[src][subset] >= 0) & (features[dst][subset] >= 0)]
        inliers = np.column_stack([features[src][shared], features[dst][shared]])
        inliers = inliers[np.argsort(inliers[:, 0])]

        parallax = _parallax_deg(points[shared], cameras[src].extrinsics.center, cameras[dst].extrinsics.center)
        score = float(np.median(parallax)) if len(parallax) else 0.0
        graph.connect(src, dst, inliers,
                      fundamental=ground_truth_fundamental(cameras[src], cameras[dst]),
                      is_3d=score >= min_parallax_deg, score_3d=score)

    logger.debug(f"Synthetic scene: {num_views} views, {num_points} points, {len(graph.edges)} edges")
    return SyntheticScene(graph, db, points, cameras, features)


def inject_outliers(scene: SyntheticScene, view_id: str, fraction: float, magnitude: float,
                    seed: int = 1, points: Optional[Iterable[int]] = None) -> List[int]:
    """Displace a fraction of the observations of one view.

    Args:
        scene: Scene to modify in place
        view_id: View whose observations are corrupted
        fraction: Fraction of the candidate points to displace
        magnitude: Displacement in pixels, in a random direction
        seed: Random seed
        points: Candidate world points, every point seen by the view when None

    Returns:
        Indices of the displaced world points
    """
    rng = np.random.default_rng(seed)
    mapping = scene.features[view_id]
    candidates = np.flatnonzero(mapping >= 0) if points is None else np.asarray(list(points), dtype=int)
    count = max(1, int(round(fraction * len(candidates))))
    chosen = np.sort(rng.choice(candidates, size=count, replace=False))

    width, height = scene.db.lookup_shape(view_id)
    for point in chosen.tolist():
        feature = int(mapping[point])
        x, y = scene.db.observation(view_id, feature)
        angle = rng.uniform(0.0, 2.0 * np.pi)
        dx, dy = magnitude * np.cos(angle), magnitude * np.sin(angle)
        # Displace the other way when the first choice leaves the image
        if not (0.0 <= x + dx <= width and 0.0 <= y + dy <= height):
            dx, dy = -dx, -dy
        scene.db.set_pixel(view_id, feature, (x + dx, y + dy))
    return chosen.tolist()
