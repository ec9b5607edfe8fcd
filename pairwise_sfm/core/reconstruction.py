#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Incremental reconstruction driver.

Starting from the best seed, views are added one at a time. At every step
the open frontier is scored, the best candidate is removed from it and an
expansion is attempted. Accepted views open their unexplored neighbors;
rejected views are discarded for the rest of the run.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from tqdm import tqdm

from pairwise_sfm.config.reconstruction_config import ReconstructionConfig
from pairwise_sfm.core.errors import ReconstructionError
from pairwise_sfm.core.expansion import (ExpandByOneView, MetricExpandByOneView, ProjectiveExpandByOneView,
                                         known_connected_pairs)
from pairwise_sfm.core.initialization import (InitializeCommon, MetricInitialize,
                                              ProjectiveInitializeAllCommon)
from pairwise_sfm.core.lookup import ImageObservations
from pairwise_sfm.core.pairwise_graph import PairwiseImageGraph, View
from pairwise_sfm.core.seed_scoring import SeedInfo, SeedScorer
from pairwise_sfm.core.working_graph import SceneWorkingGraph

logger = logging.getLogger(__name__)


class TerminationState(Enum):
    """How the last run ended."""
    NOT_STARTED = "not_started"
    INITIALIZATION_FAILED = "initialization_failed"
    EXHAUSTED = "exhausted"  # Open frontier is empty
    STALLED = "stalled"  # Open views remain but none can be scored


@dataclass
class CandidateScore:
    """Expansion quality of an open view."""
    view: View
    valid_pairs: int  # Pairs of connected known neighbors
    best_pair_inliers: int  # Smallest edge inlier count of the best pair

    @property
    def is_valid(self) -> bool:
        return self.valid_pairs > 0

    def sort_key(self):
        return (-self.valid_pairs, -self.best_pair_inliers, self.view.index)


@dataclass
class ExpansionAttempt:
    """Outcome of one attempt to add a view."""
    view_id: str
    accepted: bool
    reason: str = ""


class ReconstructionFromPairwiseGraph:
    """Grows a single reconstruction from the best seed.

    The initializer and the expansion strategy decide whether the result is
    projective or metric; they are chosen once, when the driver is created.
    """

    def __init__(self, config: Optional[ReconstructionConfig],
                 initializer: InitializeCommon, expander: ExpandByOneView):
        self.config = config or ReconstructionConfig()
        self.seed_scorer = SeedScorer(self.config.seed)
        self.initializer = initializer
        self.expander = expander
        self.work_graph = SceneWorkingGraph()
        self.history: List[ExpansionAttempt] = []
        self.seed: Optional[SeedInfo] = None
        self.termination = TerminationState.NOT_STARTED
        self.verbose: Optional[logging.Logger] = None

    def set_verbose(self, verbose: Optional[logging.Logger]):
        """Send human readable progress to `verbose`, None to disable."""
        self.verbose = verbose
        self.initializer.set_verbose(verbose)
        self.expander.set_verbose(verbose)

    def _log(self, message: str):
        if self.verbose is not None:
            self.verbose.info(message)

    def process(self, db: ImageObservations, graph: PairwiseImageGraph) -> bool:
        """Reconstruct as much of the graph as possible.

        Args:
            db: Feature observations of every view
            graph: Pairwise relationships between views

        Returns:
            True when the seed was initialized; the working graph then holds
            every view that could be added

        Raises:
            InsufficientSeedCandidates: when no view can be a seed
        """
        self.work_graph.reset()
        self.history = []
        self.termination = TerminationState.NOT_STARTED

        self.seed = self.seed_scorer.select_seed(graph)
        self._log(f"Seed {self.seed}")

        try:
            self.initializer.initialize(db, graph, self.seed, self.work_graph)
        except ReconstructionError as e:
            logger.error(f"Failed to initialize from seed {self.seed.seed.view_id}: {e}")
            self._log(f"Initialization failed: {type(e).__name__}: {e}")
            self.termination = TerminationState.INITIALIZATION_FAILED
            return False

        self.work_graph.seed_distances = graph.distances_from(self.seed.seed.view_id)
        for wview in self.work_graph.list_views():
            self.work_graph.open_neighbors_of(graph.lookup_node(wview.view_id))

        self.expand_scene(db, graph)

        unreachable = len(graph) - len(self.work_graph.seed_distances)
        logger.info(f"Reconstruction finished ({self.termination.value}) with "
                    f"{len(self.work_graph)}/{len(graph)} views, {unreachable} unreachable from the seed")
        return True

    def expand_scene(self, db: ImageObservations, graph: PairwiseImageGraph):
        """Add open views until the frontier is exhausted or stalls."""
        with tqdm(total=len(graph), initial=len(self.work_graph), desc="Expanding",
                  disable=not self.config.show_progress) as progress:
            while True:
                if not self.work_graph.open:
                    self.termination = TerminationState.EXHAUSTED
                    break

                best = self.select_next_view()
                if best is None:
                    self.termination = TerminationState.STALLED
                    self._log(f"Stalled with {len(self.work_graph.open)} open views")
                    break

                target = best.view
                self.work_graph.remove_open(target)
                self._log(f"Expanding {target.view_id}: pairs={best.valid_pairs} "
                          f"inliers={best.best_pair_inliers}")

                try:
                    self.expander.expand(db, graph, self.work_graph, target)
                except ReconstructionError as e:
                    logger.warning(f"Discarding view {target.view_id}: {type(e).__name__}: {e}")
                    self._log(f"Rejected {target.view_id}: {type(e).__name__}")
                    self.history.append(ExpansionAttempt(target.view_id, False, type(e).__name__))
                    continue

                self.history.append(ExpansionAttempt(target.view_id, True))
                opened = self.work_graph.open_neighbors_of(target)
                self._log(f"Accepted {target.view_id}, opened {[v.view_id for v in opened]}")
                progress.update(1)

    def score_candidate(self, view: View) -> CandidateScore:
        """Score an open view, reads the working graph only."""
        best_inliers = 0
        pairs = known_connected_pairs(self.work_graph, view)
        for a, b in pairs:
            inliers = min(len(a.find_motion(view).inliers), len(b.find_motion(view).inliers))
            best_inliers = max(best_inliers, inliers)
        return CandidateScore(view, len(pairs), best_inliers)

    def select_next_view(self) -> Optional[CandidateScore]:
        """Best scoring open view, None when none can be expanded."""
        candidates = list(self.work_graph.open)
        if self.config.num_workers > 1 and len(candidates) > 1:
            with ThreadPoolExecutor(max_workers=self.config.num_workers) as executor:
                scores = list(executor.map(self.score_candidate, candidates))
        else:
            scores = [self.score_candidate(view) for view in candidates]

        valid = [score for score in scores if score.is_valid]
        if not valid:
            return None
        return min(valid, key=CandidateScore.sort_key)

    def accepted_views(self) -> List[str]:
        return [attempt.view_id for attempt in self.history if attempt.accepted]

    def rejected_views(self) -> List[str]:
        return [attempt.view_id for attempt in self.history if not attempt.accepted]


class ProjectiveReconstructionFromPairwiseGraph(ReconstructionFromPairwiseGraph):
    """Projective reconstruction, every known view has a 3x4 camera matrix."""

    def __init__(self, config: Optional[ReconstructionConfig] = None):
        config = config or ReconstructionConfig()
        super().__init__(config, ProjectiveInitializeAllCommon(config), ProjectiveExpandByOneView(config))


class MetricReconstructionFromPairwiseGraph(ReconstructionFromPairwiseGraph):
    """Metric reconstruction, every known view has intrinsics and a world pose."""

    def __init__(self, config: Optional[ReconstructionConfig] = None):
        config = config or ReconstructionConfig()
        super().__init__(config, MetricInitialize(config), MetricExpandByOneView(config))
