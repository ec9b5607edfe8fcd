#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Shared fixtures: synthetic scenes and helpers to build seeds by hand.
"""

import logging
from typing import List

import numpy as np
import pytest

from pairwise_sfm.config.reconstruction_config import ReconstructionConfig
from pairwise_sfm.core.pairwise_graph import PairwiseImageGraph
from pairwise_sfm.core.seed_scoring import SeedInfo
from pairwise_sfm.core.working_graph import SceneWorkingGraph
from pairwise_sfm.utils.dataset import create_synthetic_scene
from pairwise_sfm.utils.logging_utils import setup_logger


def build_seed(graph: PairwiseImageGraph, seed_id: str, neighbor_ids: List[str]) -> SeedInfo:
    """Seed made of explicitly chosen views, bypassing the scorer."""
    seed = graph.lookup_node(seed_id)
    motions = [seed.find_motion(graph.lookup_node(other)) for other in neighbor_ids]
    return SeedInfo(seed=seed, motions=motions, score=1.0,
                    total_inliers=int(sum(len(m.inliers) for m in motions)),
                    num_qualifying=len(motions))


def prepare_work_graph(graph: PairwiseImageGraph, seed_id: str) -> SceneWorkingGraph:
    work_graph = SceneWorkingGraph()
    work_graph.seed_distances = graph.distances_from(seed_id)
    return work_graph


@pytest.fixture
def config():
    return ReconstructionConfig()


@pytest.fixture
def scene():
    """Five views, zero noise, known intrinsics."""
    return create_synthetic_scene(num_views=5, num_points=120, seed=3)


@pytest.fixture
def four_view_scene():
    return create_synthetic_scene(num_views=4, num_points=150, arc_deg=45.0, seed=11)


@pytest.fixture
def make_seed():
    return build_seed


@pytest.fixture
def make_work_graph():
    return prepare_work_graph


@pytest.fixture
def verbose_logger():
    return setup_logger("pairwise_sfm.tests.verbose", logging.INFO)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
