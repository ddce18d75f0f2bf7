"""Tests for the CrossManovaStudy orchestrator."""

import numpy as np
import pytest

from cvcrossmanova.config import AnalysisConfig
from cvcrossmanova.core import CrossManovaStudy
from cvcrossmanova.searchlight.checkpoint import CHECKPOINT_PREFIX


@pytest.fixture
def study(sample_config_yaml):
    return CrossManovaStudy(AnalysisConfig.from_yaml(sample_config_yaml))


def test_study_loads_data(study, grid_mask):
    assert study.data.m == 4
    assert study.data.n_variables == int(grid_mask.sum())
    np.testing.assert_array_equal(study.mask, grid_mask)
    assert study.affine is not None
    assert study.analysis_names == ["distinct_21", "stable_21_43", "halves"]
    assert study.ccm.n_results == [4, 1, 1]
    # 4 sessions of 36 df, leaving out the largest
    assert study.max_variables == pytest.approx(108 * 0.9)


def test_study_validate(study):
    assert study.validate() == []


def test_run_regions(study):
    results = study.run_regions()
    assert results.p == {"corner": 11}
    assert len(results.D["corner"]) == 3
    assert results.D["corner"][0].shape == (4,)

    table = results.to_frame()
    assert list(table.columns) == ["region", "analysis", "permutation", "D", "p"]
    assert len(table) == 4 + 1 + 1
    first = table[(table["analysis"] == "distinct_21") & (table["permutation"] == 1)]
    assert first["D"].iloc[0] == pytest.approx(results.D["corner"][0][0])


def test_run_regions_insufficient_data(study):
    results = study.run_regions({"empty": np.array([], dtype=int), "one": [0, 1]})
    assert all(np.isnan(d).all() for d in results.D["empty"])
    assert any("insufficient" in msg for msg in results.advisories)
    assert all(np.isfinite(d).all() for d in results.D["one"])


def test_run_searchlight(study, grid_mask):
    result = study.run_searchlight()
    n_mask = int(grid_mask.sum())
    assert [d.shape for d in result.D] == [(n_mask, 4), (n_mask, 1), (n_mask, 1)]
    assert np.nanmax(result.p) == 7
    # no checkpoint left behind after completion
    assert not list(study.config.output_dir.glob(f"{CHECKPOINT_PREFIX}*"))


def test_run_searchlight_mm_units(study):
    # 2 mm isotropic voxels, radius 2 mm is one voxel
    study.config.searchlight.mm_units = True
    result = study.run_searchlight(radius=2.0)
    assert np.nanmax(result.p) == 7


def test_run_searchlight_too_large(study):
    with pytest.raises(ValueError, match="insufficient"):
        study.run_searchlight(radius=3.0)


def test_searchlight_params_change_hash(study):
    from cvcrossmanova.searchlight.checkpoint import parameter_hash

    a = parameter_hash(study.searchlight_params(1.0, False))
    b = parameter_hash(study.searchlight_params(2.0, False))
    assert a != b
    assert a == parameter_hash(study.searchlight_params(1.0, False))


def test_study_from_arrays(small_sessions):
    config = AnalysisConfig.from_dict({
        "name": "arrays",
        "data_dir": ".",
        "output_dir": "out",
        "contrasts": {"named": {"C21": [-1, 1, 0, 0]}},
        "analyses": [{"name": "d21", "CA": "C21"}],
    })
    study = CrossManovaStudy(config, sessions=small_sessions)
    assert study.mask.shape == (6,)
    results = study.run_regions()
    assert list(results.D) == ["all"]
    assert results.p["all"] == 6
    assert np.isfinite(results.D["all"][0]).all()


def test_study_mask_mismatch(small_sessions, sample_config_yaml):
    config = AnalysisConfig.from_yaml(sample_config_yaml)
    with pytest.raises(ValueError, match="Mask"):
        CrossManovaStudy(config, sessions=small_sessions, mask=np.ones(5, dtype=bool))


def test_affine_change_changes_checkpoint_hash(sample_config_yaml, data_dir):
    from cvcrossmanova.searchlight.checkpoint import parameter_hash

    config = AnalysisConfig.from_yaml(sample_config_yaml)
    config.searchlight.mm_units = True
    before = parameter_hash(CrossManovaStudy(config).searchlight_params(4.0, True))

    # same data, 1 mm voxels instead of 2 mm
    np.save(data_dir / "affine.npy", np.eye(4))
    after = parameter_hash(CrossManovaStudy(config).searchlight_params(4.0, True))
    assert before != after


def test_mask_change_changes_checkpoint_hash(sample_config_yaml, data_dir, grid_mask):
    from cvcrossmanova.searchlight.checkpoint import parameter_hash

    config = AnalysisConfig.from_yaml(sample_config_yaml)
    before = parameter_hash(CrossManovaStudy(config).searchlight_params(1.0, False))

    # same voxel count, different layout
    mask = grid_mask.copy()
    mask[1, 2, 1], mask[2, 2, 1] = True, False
    np.save(data_dir / "mask.npy", mask)
    after = parameter_hash(CrossManovaStudy(config).searchlight_params(1.0, False))
    assert before != after


def test_in_memory_affine_changes_checkpoint_hash(grid_sessions, grid_mask, sample_config_yaml):
    from cvcrossmanova.searchlight.checkpoint import parameter_hash

    config = AnalysisConfig.from_yaml(sample_config_yaml)
    hashes = {
        parameter_hash(
            CrossManovaStudy(config, sessions=grid_sessions, mask=grid_mask, affine=affine)
            .searchlight_params(4.0, True)
        )
        for affine in (np.diag([2.0, 2.0, 2.0, 1.0]), np.eye(4))
    }
    assert len(hashes) == 2
