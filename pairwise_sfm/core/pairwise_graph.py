#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Pairwise image graph consumed by the reconstruction.

Nodes are views, edges carry the two-view geometric relationship (motion)
found between them: inlier correspondences, a fundamental or essential
matrix and a score describing how much 3D information the pair contains.
The graph is built elsewhere and treated as read-only here.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Iterator, Optional

import networkx as nx
import numpy as np

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class View:
    """A single image in the graph."""
    view_id: str
    width: int
    height: int
    index: int = 0  # Insertion order, used to break ties deterministically
    connections: List['Motion'] = field(default_factory=list)

    @property
    def shape(self):
        return self.width, self.height

    def find_motion(self, other: 'View') -> Optional['Motion']:
        for motion in self.connections:
            if motion.other(self) is other:
                return motion
        return None

    def __repr__(self) -> str:
        return f"View({self.view_id!r}, {self.width}x{self.height}, edges={len(self.connections)})"


@dataclass(eq=False)
class Motion:
    """Geometric relationship between two views.

    `inliers` holds (src_feature, dst_feature) index pairs and `fundamental`
    maps src to dst, i.e. x_dst^T F x_src = 0.
    """
    src: View
    dst: View
    inliers: np.ndarray
    is_3d: bool = True
    score_3d: float = 0.0
    fundamental: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    index: int = 0

    def __post_init__(self):
        self.inliers = np.asarray(self.inliers, dtype=int).reshape(-1, 2)

    def other(self, view: View) -> View:
        if view is self.src:
            return self.dst
        if view is self.dst:
            return self.src
        raise ValueError(f"{view.view_id} is not part of motion {self.src.view_id}-{self.dst.view_id}")

    def feature_map(self, from_view: View) -> Dict[int, int]:
        """Map features in `from_view` to the matching feature in the other view."""
        if from_view is self.src:
            return dict(zip(self.inliers[:, 0].tolist(), self.inliers[:, 1].tolist()))
        if from_view is self.dst:
            return dict(zip(self.inliers[:, 1].tolist(), self.inliers[:, 0].tolist()))
        raise ValueError(f"{from_view.view_id} is not part of this motion")

    def __repr__(self) -> str:
        return (f"Motion({self.src.view_id!r}->{self.dst.view_id!r}, inliers={len(self.inliers)}, "
                f"is_3d={self.is_3d}, score_3d={self.score_3d:.2f})")


class PairwiseImageGraph:
    """Graph of views connected by motions, backed by networkx."""

    def __init__(self):
        self.graph = nx.Graph()
        self.nodes: Dict[str, View] = {}
        self.edges: List[Motion] = []

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[View]:
        return iter(self.nodes.values())

    def __contains__(self, view_id: str) -> bool:
        return view_id in self.nodes

    def create_node(self, view_id: str, width: int, height: int) -> View:
        """Add a new view to the graph.

        Args:
            view_id: Unique identifier of the image
            width: Image width in pixels
            height: Image height in pixels

        Returns:
            The created view
        """
        if view_id in self.nodes:
            raise ValueError(f"View {view_id} already exists")
        view = View(view_id, int(width), int(height), index=len(self.nodes))
        self.nodes[view_id] = view
        self.graph.add_node(view_id)
        return view

    def connect(self, src_id: str, dst_id: str, inliers: np.ndarray,
                fundamental: Optional[np.ndarray] = None,
                is_3d: bool = True, score_3d: float = 0.0) -> Motion:
        """Create a motion between two existing views.

        Args:
            src_id: Source view
            dst_id: Destination view
            inliers: Kx2 (src_feature, dst_feature) pairs
            fundamental: Matrix with x_dst^T F x_src = 0
            is_3d: Whether the pair has enough parallax for 3D estimation
            score_3d: How much 3D information the pair contains

        Returns:
            The created motion
        """
        src = self.lookup_node(src_id)
        dst = self.lookup_node(dst_id)
        if src is dst:
            raise ValueError("Cannot connect a view to itself")
        if self.graph.has_edge(src_id, dst_id):
            raise ValueError(f"Views {src_id} and {dst_id} are already connected")

        motion = Motion(src, dst, inliers, is_3d=is_3d, score_3d=float(score_3d),
                        index=len(self.edges))
        if fundamental is not None:
            motion.fundamental = np.asarray(fundamental, dtype=float)
        src.connections.append(motion)
        dst.connections.append(motion)
        self.edges.append(motion)
        self.graph.add_edge(src_id, dst_id, motion=motion)
        return motion

    def lookup_node(self, view_id: str) -> View:
        try:
            return self.nodes[view_id]
        except KeyError:
            raise KeyError(f"Unknown view {view_id}") from None

    def lookup_motion(self, a: str, b: str) -> Optional[Motion]:
        data = self.graph.get_edge_data(a, b)
        return None if data is None else data["motion"]

    def has_edge(self, a: str, b: str) -> bool:
        return self.graph.has_edge(a, b)

    def distances_from(self, view_id: str) -> Dict[str, int]:
        """Hop count from `view_id` to every reachable view."""
        return dict(nx.single_source_shortest_path_length(self.graph, view_id))

