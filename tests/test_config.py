#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os

import pytest
import yaml

from pairwise_sfm.config.reconstruction_config import (ReconstructionConfig, get_default_config_path,
                                                       load_config, save_config)


def test_default_file_matches_defaults():
    assert os.path.exists(get_default_config_path())
    assert load_config() == ReconstructionConfig()


def test_save_and_load(tmp_path):
    config = ReconstructionConfig()
    config.ransac.inlier_threshold = 3.5
    config.sanity.check_image_bounds = False
    config.num_workers = 4
    path = os.path.join(str(tmp_path), "nested", "config.yaml")

    save_config(config, path)

    assert load_config(path) == config


def test_partial_dictionary_keeps_defaults():
    config = ReconstructionConfig.from_dict({"seed": {"min_inliers": 40}, "show_progress": True})

    assert config.seed.min_inliers == 40
    assert config.seed.max_neighbors == 2
    assert config.show_progress is True
    assert config.ransac == ReconstructionConfig().ransac


def test_yaml_scientific_notation_is_coerced(tmp_path):
    path = tmp_path / "config.yaml"
    # PyYAML reads "1e-8" without a dot as a string
    path.write_text("bundle_adjustment:\n  ftol: 1e-8\n  max_iterations: 50.0\n")

    config = load_config(str(path))

    assert config.bundle_adjustment.ftol == pytest.approx(1e-8)
    assert config.bundle_adjustment.max_iterations == 50
    assert isinstance(config.bundle_adjustment.max_iterations, int)


@pytest.mark.parametrize("data", [{"unknown": 1}, {"ransac": {"threshold": 2.0}}])
def test_unknown_keys_are_rejected(data):
    with pytest.raises(ValueError):
        ReconstructionConfig.from_dict(data)


def test_to_dict_is_plain_yaml():
    data = ReconstructionConfig().to_dict()

    assert yaml.safe_load(yaml.safe_dump(data)) == data
    assert data["sanity"]["fraction_bad_features_recover"] == 0.05


@pytest.mark.parametrize("value", ["false", 0, "yes"])
def test_switches_require_booleans(value):
    with pytest.raises(ValueError):
        ReconstructionConfig.from_dict({"show_progress": value})


def test_quoted_boolean_in_yaml_is_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("bundle_adjustment:\n  refine_intrinsics: \"false\"\n")

    with pytest.raises(ValueError):
        load_config(str(path))

    path.write_text("bundle_adjustment:\n  refine_intrinsics: false\n")
    assert load_config(str(path)).bundle_adjustment.refine_intrinsics is False
