#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import logging

import numpy as np
import pytest

from pairwise_sfm.config.reconstruction_config import ReconstructionConfig
from pairwise_sfm.core import multiview
from pairwise_sfm.core.errors import InsufficientSeedCandidates
from pairwise_sfm.core.reconstruction import (MetricReconstructionFromPairwiseGraph,
                                              ProjectiveReconstructionFromPairwiseGraph, TerminationState)
from pairwise_sfm.evaluation.pose_metrics import compute_camera_pose_metrics, poses_from_working_graph
from pairwise_sfm.utils.dataset import create_synthetic_scene


def _history(driver):
    return [(attempt.view_id, attempt.accepted, attempt.reason) for attempt in driver.history]


def test_metric_round_trip(scene):
    driver = MetricReconstructionFromPairwiseGraph()

    assert driver.process(scene.db, scene.graph)

    assert driver.termination == TerminationState.EXHAUSTED
    assert sorted(driver.work_graph.known_ids()) == sorted(scene.view_ids)
    assert driver.rejected_views() == []
    assert len(driver.accepted_views()) == len(scene.view_ids) - len(driver.seed.neighbors) - 1

    metrics = compute_camera_pose_metrics(poses_from_working_graph(driver.work_graph),
                                          scene.ground_truth_poses())
    assert metrics['num_cameras'] == 5
    assert metrics['center_error_max'] < 0.01
    assert metrics['rotation_error_max'] < 0.1


def test_projective_round_trip(scene):
    driver = ProjectiveReconstructionFromPairwiseGraph()

    assert driver.process(scene.db, scene.graph)

    assert driver.termination == TerminationState.EXHAUSTED
    view_ids = sorted(driver.work_graph.known_ids())
    assert view_ids == sorted(scene.view_ids)

    mappings = np.array([scene.features[v] for v in view_ids])
    points = np.flatnonzero(np.all(mappings >= 0, axis=0))
    pixels = [scene.db.lookup_pixels(v)[scene.features[v][points]] for v in view_ids]
    cameras = [driver.work_graph.lookup_view(v).camera_matrix() for v in view_ids]
    X = multiview.triangulate_dlt(cameras, pixels)
    assert np.max(multiview.reprojection_errors(cameras, X, pixels)) < 1e-3


def test_identical_inputs_give_identical_runs(scene):
    first = MetricReconstructionFromPairwiseGraph()
    second = MetricReconstructionFromPairwiseGraph()
    first.process(scene.db, scene.graph)
    second.process(scene.db, scene.graph)

    assert _history(first) == _history(second)
    assert first.seed.seed.view_id == second.seed.seed.view_id
    for view_id in first.work_graph.known_ids():
        np.testing.assert_allclose(first.work_graph.lookup_view(view_id).world_to_view.t,
                                   second.work_graph.lookup_view(view_id).world_to_view.t)


def test_parallel_scoring_matches_serial(scene):
    serial = ProjectiveReconstructionFromPairwiseGraph()
    config = ReconstructionConfig()
    config.num_workers = 3
    parallel = ProjectiveReconstructionFromPairwiseGraph(config)

    serial.process(scene.db, scene.graph)
    parallel.process(scene.db, scene.graph)

    assert _history(serial) == _history(parallel)


def test_known_views_only_grow_and_frontier_stays_consistent(scene):
    driver = MetricReconstructionFromPairwiseGraph()
    snapshots = []
    problems = []
    expand = driver.expander.expand

    def recording_expand(db, graph, work_graph, target):
        snapshots.append(set(work_graph.known_ids()))
        problems.extend(work_graph.check_frontier(graph))
        if work_graph.is_known(target) or target in work_graph.open:
            problems.append(f"{target.view_id} is being expanded while known or open")
        return expand(db, graph, work_graph, target)

    driver.expander.expand = recording_expand
    driver.process(scene.db, scene.graph)
    snapshots.append(set(driver.work_graph.known_ids()))

    assert problems == []
    assert len(snapshots) >= 2
    for before, after in zip(snapshots, snapshots[1:]):
        assert before <= after
    assert driver.work_graph.check_frontier(scene.graph) == []


def test_view_without_common_features_is_discarded_once(config):
    # Views 0, 1, 2 are fully connected; 3 only shares disjoint features with 0 and 1
    scene = create_synthetic_scene(num_views=4, num_points=150, arc_deg=45.0,
                                   edges=[(0, 1), (0, 2), (1, 2), (0, 3), (1, 3)],
                                   edge_points={(0, 3): range(0, 60), (1, 3): range(75, 135)}, seed=11)
    # Edges to view 3 are too weak to be used for the seed
    config.seed.min_inliers = 100
    driver = MetricReconstructionFromPairwiseGraph(config)

    assert driver.process(scene.db, scene.graph)

    target = scene.graph.lookup_node("3")
    assert _history(driver) == [("3", False, "InsufficientCommonFeatures")]
    assert driver.termination == TerminationState.EXHAUSTED
    assert sorted(driver.work_graph.known_ids()) == ["0", "1", "2"]
    assert target not in driver.work_graph.open
    # Only an unexplored view can be opened again
    assert driver.work_graph.open_neighbors_of(scene.graph.lookup_node("0")) == []


def test_view_with_a_single_known_neighbor_stalls(config):
    # The weak edge keeps view 3 out of the seed
    scene = create_synthetic_scene(num_views=4, num_points=120, arc_deg=45.0,
                                   edges=[(0, 1), (0, 2), (1, 2), (2, 3)],
                                   edge_points={(2, 3): range(0, 10)}, seed=4)
    driver = ProjectiveReconstructionFromPairwiseGraph(config)

    assert driver.process(scene.db, scene.graph)

    assert driver.termination == TerminationState.STALLED
    assert [v.view_id for v in driver.work_graph.open] == ["3"]
    assert driver.history == []
    assert driver.score_candidate(scene.graph.lookup_node("3")).valid_pairs == 0


def test_failed_initialization_is_reported(config):
    scene = create_synthetic_scene(num_views=3, num_points=120, edges=[(0, 1), (0, 2)],
                                   edge_points={(0, 1): range(0, 60), (0, 2): range(60, 120)}, seed=5)
    driver = ProjectiveReconstructionFromPairwiseGraph(config)

    assert not driver.process(scene.db, scene.graph)
    assert driver.termination == TerminationState.INITIALIZATION_FAILED
    assert len(driver.work_graph) == 0


def test_missing_seed_candidates_raise(config):
    scene = create_synthetic_scene(num_views=3, num_points=60, edges=[(0, 1)], seed=2)

    with pytest.raises(InsufficientSeedCandidates):
        ProjectiveReconstructionFromPairwiseGraph(config).process(scene.db, scene.graph)


def test_candidates_are_ranked_by_connected_pairs(scene):
    driver = ProjectiveReconstructionFromPairwiseGraph()
    graph = scene.graph
    for view_id in ["0", "1", "2"]:
        driver.work_graph.add_view(graph.lookup_node(view_id))
    for view_id in ["3", "4"]:
        driver.work_graph.add_open(graph.lookup_node(view_id))

    best = driver.select_next_view()

    scores = [driver.score_candidate(graph.lookup_node(v)) for v in ["3", "4"]]
    assert [s.valid_pairs for s in scores] == [3, 3]
    # Equal pair counts, so the stronger edges win and then the lower graph index
    expected = min(scores, key=lambda s: (-s.best_pair_inliers, s.view.index))
    assert best.view is expected.view


def test_verbose_sink_receives_progress(scene, verbose_logger, caplog):
    driver = MetricReconstructionFromPairwiseGraph()
    driver.set_verbose(verbose_logger)

    with caplog.at_level(logging.INFO, logger=verbose_logger.name):
        driver.process(scene.db, scene.graph)

    verbose_records = [r for r in caplog.records if r.name == verbose_logger.name]
    text = "\n".join(r.getMessage() for r in verbose_records)
    assert "Seed SeedInfo(" in text
    assert "Accepted" in text
    assert "Trifocal" in text
    assert "Sanity:" in text


def test_silent_without_verbose_sink(scene, verbose_logger, caplog):
    driver = MetricReconstructionFromPairwiseGraph()

    with caplog.at_level(logging.INFO, logger=verbose_logger.name):
        driver.process(scene.db, scene.graph)

    assert not [r for r in caplog.records if r.name == verbose_logger.name]
