#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Selection of the view the reconstruction grows from.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from pairwise_sfm.config.reconstruction_config import SeedConfig
from pairwise_sfm.core.errors import InsufficientSeedCandidates
from pairwise_sfm.core.pairwise_graph import Motion, PairwiseImageGraph, View

logger = logging.getLogger(__name__)


@dataclass
class SeedInfo:
    """A candidate seed view and the neighbors it would be initialized with."""
    seed: View
    motions: List[Motion] = field(default_factory=list)
    score: float = 0.0
    total_inliers: int = 0
    num_qualifying: int = 0

    @property
    def neighbors(self) -> List[View]:
        return [motion.other(self.seed) for motion in self.motions]

    def __repr__(self) -> str:
        return (f"SeedInfo({self.seed.view_id!r}, neighbors={[v.view_id for v in self.neighbors]}, "
                f"score={self.score:.2f}, inliers={self.total_inliers})")


class SeedScorer:
    """Ranks views by how much 3D information their edges carry."""

    def __init__(self, config: Optional[SeedConfig] = None):
        self.config = config or SeedConfig()

    def is_qualifying(self, motion: Motion) -> bool:
        return (motion.is_3d and
                len(motion.inliers) >= self.config.min_inliers and
                motion.score_3d >= self.config.min_score_3d)

    def score_view(self, view: View) -> Optional[SeedInfo]:
        """Score a single view, None when it cannot be a seed."""
        qualifying = [m for m in view.connections if self.is_qualifying(m)]
        if len(qualifying) < self.config.min_neighbors:
            return None

        qualifying.sort(key=lambda m: (-m.score_3d, -len(m.inliers), m.other(view).index))
        return SeedInfo(
            seed=view,
            motions=qualifying[:self.config.max_neighbors],
            score=float(sum(m.score_3d for m in qualifying)),
            total_inliers=int(sum(len(m.inliers) for m in qualifying)),
            num_qualifying=len(qualifying),
        )

    def score_nodes_as_seeds(self, graph: PairwiseImageGraph) -> List[SeedInfo]:
        """Rank every qualifying view, best first.

        Ties on the score are broken by the total inlier count and then by
        the order the views were added to the graph.

        Raises:
            InsufficientSeedCandidates: when no view qualifies
        """
        candidates = [info for info in (self.score_view(view) for view in graph) if info is not None]
        if not candidates:
            raise InsufficientSeedCandidates(
                f"No view has {self.config.min_neighbors} neighbors with at least "
                f"{self.config.min_inliers} inliers and 3D score {self.config.min_score_3d}")

        candidates.sort(key=lambda info: (-info.score, -info.total_inliers, info.seed.index))
        logger.debug(f"{len(candidates)} seed candidates, best {candidates[0]}")
        return candidates

    def select_seed(self, graph: PairwiseImageGraph) -> SeedInfo:
        return self.score_nodes_as_seeds(graph)[0]
