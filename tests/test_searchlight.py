"""Tests for searchlight templates and the sliding-window runner."""

import itertools
import logging

import numpy as np
import pytest

from cvcrossmanova.errors import (
    CheckpointMismatchError,
    SearchlightCancelled,
    SearchlightPositionError,
)
from cvcrossmanova.searchlight.checkpoint import checkpoint_path, load_checkpoint, save_checkpoint
from cvcrossmanova.searchlight.runner import run_searchlight
from cvcrossmanova.searchlight.template import (
    build_searchlight,
    searchlight_size,
    searchlight_size_table,
)
from cvcrossmanova.stats.analysis import Analysis
from cvcrossmanova.stats.cvcrossmanova import CvCrossManova
from cvcrossmanova.stats.glm import ModeledData

C21 = np.array([-1, 1, 0, 0])
C43 = np.array([0, 0, -1, 1])


@pytest.fixture
def ccm(grid_sessions):
    analyses = [
        Analysis.leave_one_session_out(4, C21),
        Analysis.leave_one_session_out(4, C21, C43).with_permutations(rng=0),
    ]
    return CvCrossManova(ModeledData(grid_sessions), analyses)


def counter_cancel(n_checks):
    """Cancellation hook that fires on the ``n_checks + 1``-th check."""
    counter = itertools.count()
    return lambda: next(counter) >= n_checks


@pytest.mark.parametrize(
    "radius, size",
    [(0, 1), (1, 7), (1.5, 19), (1.8, 27), (2, 33), (3, 123)],
)
def test_template_sizes(radius, size):
    template = build_searchlight(radius)
    assert template.size == size
    assert searchlight_size(radius) == size


def test_template_sorted_by_distance():
    template = build_searchlight(2.5)
    assert np.all(np.diff(template.distances) >= 0)
    np.testing.assert_array_equal(template.offsets[0], [0, 0, 0])
    assert template.is_center.sum() == 1
    assert np.all(template.distances <= 2.5)


def test_template_anisotropic_voxels():
    # 2 x 2 x 4 mm voxels, radius 4 mm
    template = build_searchlight(4, np.diag([2.0, 2.0, 4.0, 1.0]))
    assert template.size == 15
    assert np.abs(template.offsets[:, 2]).max() == 1
    assert np.abs(template.offsets[:, 0]).max() == 2


def test_template_invalid():
    with pytest.raises(ValueError):
        build_searchlight(-1)
    with pytest.raises(ValueError, match="singular"):
        build_searchlight(2, np.zeros((3, 3)))


def test_template_two_dimensional():
    assert build_searchlight(1, ndim=2).size == 5


def test_size_table():
    table = searchlight_size_table(0, 2)
    np.testing.assert_allclose(table["radius"], [0, 1, 1.5, 1.8, 2])
    np.testing.assert_array_equal(table["p_max"], [1, 7, 19, 27, 33])
    # each tabulated radius reproduces its size
    for _, row in table.iterrows():
        assert searchlight_size(row["radius"]) == row["p_max"]


def test_runner_shapes_and_boundaries(ccm, grid_mask):
    result = run_searchlight(ccm, grid_mask, build_searchlight(1))
    n_mask = int(grid_mask.sum())
    assert result.D[0].shape == (n_mask, 1)
    assert result.D[1].shape == (n_mask, 8)
    assert np.all(np.isfinite(result.D[0]))

    p = result.to_volume(result.p)
    assert p[2, 1, 1] == 7  # interior
    assert p[3, 0, 0] == 4  # grid corner
    assert p[1, 1, 1] == 6  # neighbor (1, 2, 1) outside the mask
    assert np.isnan(p[0, 0, 0])  # not in the mask


def test_runner_matches_engine(ccm, grid_mask):
    template = build_searchlight(1)
    result = run_searchlight(ccm, grid_mask, template)

    volume_to_mask = np.full(grid_mask.shape, -1)
    volume_to_mask[grid_mask] = np.arange(grid_mask.sum())
    center = np.array([2, 1, 1])
    vi = volume_to_mask[tuple((center + template.offsets).T)]
    est = ccm.estimate(vi)

    i = volume_to_mask[tuple(center)]
    np.testing.assert_allclose(result.D[0][i], est.D[0])
    np.testing.assert_allclose(result.D[1][i], est.D[1])


def test_runner_volumes(ccm, grid_mask):
    result = run_searchlight(ccm, grid_mask, build_searchlight(1))
    volumes = list(result.volumes())
    assert len(volumes) == 1 + 8
    i, j, volume = volumes[-1]
    assert (i, j) == (1, 7)
    assert volume.shape == grid_mask.shape
    assert np.isnan(volume[~grid_mask]).all()


def test_runner_mask_mismatch(ccm, grid_mask):
    mask = grid_mask.copy()
    mask[2, 2, 2] = False
    with pytest.raises(ValueError, match="voxels"):
        run_searchlight(ccm, mask, build_searchlight(1))


def test_resume_after_cancel(ccm, grid_mask, tmp_path, caplog):
    template = build_searchlight(1)
    path = checkpoint_path(tmp_path, "ABC")
    reference = run_searchlight(ccm, grid_mask, template)

    with pytest.raises(SearchlightCancelled) as info:
        run_searchlight(
            ccm, grid_mask, template, checkpoint=path, uid="ABC",
            checkpoint_interval=3600, cancel=counter_cancel(10),
        )
    assert info.value.n_done == 10
    assert path.exists()
    state = load_checkpoint(path, "ABC")
    assert int(state["n_done"]) == 10
    assert np.isnan(state["p"][10:]).all()

    caplog.set_level(logging.INFO)
    resumed = run_searchlight(ccm, grid_mask, template, checkpoint=path, uid="ABC")
    assert "*restart*" in caplog.text
    for a, b in zip(resumed.D, reference.D):
        np.testing.assert_array_equal(a, b)
    np.testing.assert_array_equal(resumed.p, reference.p)
    # removed after completion
    assert not path.exists()


def test_resume_keeps_advisory_counts(grid_sessions, grid_mask, tmp_path):
    ccm = CvCrossManova(
        ModeledData(grid_sessions),
        [Analysis.leave_one_session_out(4, C21)],
        condition_threshold=1.0,
    )
    template = build_searchlight(1)
    path = checkpoint_path(tmp_path, "ABC")
    reference = run_searchlight(ccm, grid_mask, template)

    with pytest.raises(SearchlightCancelled):
        run_searchlight(
            ccm, grid_mask, template, checkpoint=path, uid="ABC",
            checkpoint_interval=3600, cancel=counter_cancel(10),
        )
    state = load_checkpoint(path, "ABC")
    assert state["adv_counts"].tolist() == [10]

    resumed = run_searchlight(ccm, grid_mask, template, checkpoint=path, uid="ABC")
    assert resumed.advisory_counts == reference.advisory_counts
    assert list(resumed.advisory_counts.values()) == [int(grid_mask.sum())]
    assert resumed.advisories == reference.advisories


def test_checkpoint_mismatch(ccm, grid_mask, tmp_path):
    path = checkpoint_path(tmp_path, "ABC")
    save_checkpoint(path, "OTHER", {"n_done": np.array(0)})
    with pytest.raises(CheckpointMismatchError):
        run_searchlight(ccm, grid_mask, build_searchlight(1), checkpoint=path, uid="ABC")


def test_parallel_matches_serial(ccm, grid_mask):
    template = build_searchlight(1)
    serial = run_searchlight(ccm, grid_mask, template)
    parallel = run_searchlight(ccm, grid_mask, template, n_jobs=2, batch_size=8)
    for a, b in zip(serial.D, parallel.D):
        np.testing.assert_allclose(a, b)
    np.testing.assert_array_equal(serial.p, parallel.p)


def test_parallel_cancel_at_batch_boundary(ccm, grid_mask, tmp_path):
    template = build_searchlight(1)
    path = checkpoint_path(tmp_path, "ABC")
    with pytest.raises(SearchlightCancelled) as info:
        run_searchlight(
            ccm, grid_mask, template, checkpoint=path, uid="ABC",
            n_jobs=2, batch_size=8, cancel=counter_cancel(2),
        )
    assert info.value.n_done == 16
    resumed = run_searchlight(
        ccm, grid_mask, template, checkpoint=path, uid="ABC", n_jobs=2, batch_size=8,
    )
    assert np.all(np.isfinite(resumed.p))
    assert not path.exists()


def test_position_error(ccm, grid_mask, tmp_path, monkeypatch):
    template = build_searchlight(1)
    path = checkpoint_path(tmp_path, "ABC")
    estimate = ccm.estimate

    def failing(vi):
        # the center is always the first template voxel
        if vi[0] == 5:
            raise np.linalg.LinAlgError("singular")
        return estimate(vi)

    monkeypatch.setattr(ccm, "estimate", failing)
    with pytest.raises(SearchlightPositionError) as info:
        run_searchlight(ccm, grid_mask, template, checkpoint=path, uid="ABC")
    assert info.value.position == tuple(int(c) for c in np.argwhere(grid_mask)[5])
    assert isinstance(info.value.cause, np.linalg.LinAlgError)
    # results up to the failing center are kept
    assert int(load_checkpoint(path, "ABC")["n_done"]) == 5


def test_advisories_are_counted(grid_sessions, grid_mask):
    ccm = CvCrossManova(
        ModeledData(grid_sessions),
        [Analysis.leave_one_session_out(4, C21)],
        condition_threshold=1.0,
    )
    result = run_searchlight(ccm, grid_mask, build_searchlight(1))
    n_mask = int(grid_mask.sum())
    assert len(result.advisory_counts) == 1
    assert list(result.advisory_counts.values()) == [n_mask]
    assert result.advisories[0].endswith(f"(at {n_mask} centers)")


def test_advisory_log_shows_plain_center(grid_sessions, grid_mask, caplog):
    ccm = CvCrossManova(
        ModeledData(grid_sessions),
        [Analysis.leave_one_session_out(4, C21)],
        condition_threshold=1.0,
    )
    caplog.set_level(logging.WARNING)
    run_searchlight(ccm, grid_mask, build_searchlight(1))
    # (0, 0, 0) is outside the mask
    assert "(first at center (0, 0, 1))" in caplog.text
    assert "int64" not in caplog.text
