#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Working reconstruction shared by the initializer, expansion and driver.

Holds the views whose cameras are known plus the open frontier of views
adjacent to them. Known views are only ever added: once a view is known
it stays known for the rest of the run and never re-enters the frontier.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Set, Tuple, Optional

import numpy as np

from pairwise_sfm.core.camera import CameraExtrinsics, CameraIntrinsics
from pairwise_sfm.core.pairwise_graph import PairwiseImageGraph, View

logger = logging.getLogger(__name__)


@dataclass
class InlierInfo:
    """Observations accepted when a view was estimated.

    `views[0]` is the owner; observations[i][j] is the feature index in
    views[i] of the j-th accepted track.
    """
    views: List[str] = field(default_factory=list)
    observations: List[np.ndarray] = field(default_factory=list)

    def __len__(self) -> int:
        return 0 if not self.observations else len(self.observations[0])

    def to_dict(self) -> Dict:
        return {
            "views": list(self.views),
            "observations": [np.asarray(obs).tolist() for obs in self.observations]
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'InlierInfo':
        return cls(list(data["views"]),
                   [np.asarray(obs, dtype=int) for obs in data["observations"]])


@dataclass
class WorkingView:
    """Reconstruction state of a single known view."""
    view_id: str
    index: int  # Order in which the view became known
    width: int
    height: int
    projective: Optional[np.ndarray] = None  # 3x4 camera in projective mode
    intrinsics: Optional[CameraIntrinsics] = None  # Metric mode only
    world_to_view: CameraExtrinsics = field(default_factory=CameraExtrinsics.identity)
    inliers: Optional[InlierInfo] = None
    added: bool = False

    @property
    def shape(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def is_metric(self) -> bool:
        return self.intrinsics is not None

    def camera_matrix(self) -> np.ndarray:
        """3x4 camera matrix, K [R|t] in metric mode."""
        if self.intrinsics is not None:
            return self.intrinsics.K @ self.world_to_view.matrix[:3, :]
        if self.projective is None:
            raise ValueError(f"View {self.view_id} has no camera")
        return self.projective


class SceneWorkingGraph:
    """Known views plus the open frontier."""

    def __init__(self):
        self.views: Dict[str, WorkingView] = {}
        self.open: List[View] = []
        self.explored: Set[str] = set()
        # Hop count of every view from the seed
        self.seed_distances: Dict[str, int] = {}

    def reset(self):
        self.views.clear()
        self.open.clear()
        self.explored.clear()
        self.seed_distances.clear()

    def __len__(self) -> int:
        return len(self.views)

    def is_known(self, view: View) -> bool:
        return view.view_id in self.views

    def lookup_view(self, view_id: str) -> WorkingView:
        return self.views[view_id]

    def list_views(self) -> List[WorkingView]:
        return list(self.views.values())

    def known_ids(self) -> List[str]:
        return list(self.views.keys())

    def add_view(self, view: View) -> WorkingView:
        """Mark a view as known and return its (empty) working state."""
        if view.view_id in self.views:
            raise ValueError(f"View {view.view_id} is already known")
        wview = WorkingView(view.view_id, len(self.views), view.width, view.height)
        self.views[view.view_id] = wview
        self.explored.add(view.view_id)
        self.remove_open(view)
        return wview

    def add_open(self, view: View) -> bool:
        """Add a view to the frontier unless it was already explored."""
        if view.view_id in self.explored or self.is_known(view):
            return False
        self.open.append(view)
        self.explored.add(view.view_id)
        return True

    def remove_open(self, view: View) -> bool:
        for i, candidate in enumerate(self.open):
            if candidate is view:
                del self.open[i]
                return True
        return False

    def open_neighbors_of(self, view: View) -> List[View]:
        """Add every unexplored neighbor of `view` to the frontier.

        Returns:
            The views that were opened
        """
        opened = []
        for motion in view.connections:
            other = motion.other(view)
            if self.add_open(other):
                opened.append(other)
        return opened

    def check_frontier(self, graph: PairwiseImageGraph) -> List[str]:
        """Describe every violated frontier invariant, empty when consistent."""
        problems = []
        seen = set()
        for view in self.open:
            if view.view_id in seen:
                problems.append(f"{view.view_id} appears twice in open")
            seen.add(view.view_id)
            if self.is_known(view):
                problems.append(f"{view.view_id} is both known and open")
            if not any(self.is_known(m.other(view)) for m in view.connections):
                problems.append(f"{view.view_id} is open without a known neighbor")
            if view.view_id not in graph:
                problems.append(f"{view.view_id} is not in the pairwise graph")
        return problems
