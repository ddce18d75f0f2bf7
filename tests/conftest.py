"""Synthetic data fixtures for testing."""

from __future__ import annotations

import numpy as np
import pytest

from cvcrossmanova.stats.glm import SessionData

# contrasts for the differences between conditions 1 & 2 and 3 & 4,
# with four condition regressors and a constant
C21 = np.array([-1, 1, 0, 0, 0], dtype=float)
C43 = np.array([0, 0, -1, 1, 0], dtype=float)


def simulate_sessions(
    b21,
    b43,
    Sigma,
    n_rep: int = 1000,
    m: int = 4,
    seed: int = 42,
) -> list[SessionData]:
    """Four-condition design plus constant, repeated ``n_rep`` times per session.

    The true pattern difference between conditions 1 & 2 is ``b21`` and
    between conditions 3 & 4 is ``b43``.
    """
    rng = np.random.default_rng(seed)
    X = np.tile(np.hstack([np.eye(4), np.ones((4, 1))]), (n_rep, 1))
    b1 = np.array([1.0, 2.0])
    b3 = np.array([3.0, 4.0])
    B = np.vstack([b1, b1 + b21, b3, b3 + b43, [5.0, 6.0]])
    n, p = X.shape[0], B.shape[1]
    return [
        SessionData(Y=X @ B + rng.multivariate_normal(np.zeros(p), Sigma, n), X=X)
        for _ in range(m)
    ]


def make_grid_sessions(mask: np.ndarray, m: int = 4, n_rep: int = 10, seed: int = 0):
    """Sessions whose variables are the mask voxels, with a smooth effect."""
    rng = np.random.default_rng(seed)
    n_vox = int(mask.sum())
    X = np.tile(np.eye(4), (n_rep, 1))
    coords = np.argwhere(mask)
    effect = np.sin(coords.sum(axis=1) / 2.0)
    B = np.vstack([np.zeros(n_vox), effect, np.zeros(n_vox), 0.5 * effect])
    return [
        SessionData(Y=X @ B + rng.standard_normal((X.shape[0], n_vox)), X=X)
        for _ in range(m)
    ]


@pytest.fixture
def grid_mask():
    """A 4 x 4 x 3 mask with a few voxels removed."""
    mask = np.ones((4, 4, 3), dtype=bool)
    mask[0, 0, 0] = False
    mask[3, 3, 2] = False
    mask[1, 2, 1] = False
    return mask


@pytest.fixture
def grid_sessions(grid_mask):
    return make_grid_sessions(grid_mask)


@pytest.fixture
def small_sessions():
    """Four sessions of random data, 40 observations, 6 variables."""
    rng = np.random.default_rng(7)
    X = np.tile(np.eye(4), (10, 1))
    B = rng.standard_normal((4, 6))
    return [
        SessionData(Y=X @ B + rng.standard_normal((40, 6)), X=X)
        for _ in range(4)
    ]


@pytest.fixture
def data_dir(tmp_path, grid_mask, grid_sessions):
    """A data directory with session files, mask and affine."""
    d = tmp_path / "data"
    d.mkdir()
    for k, s in enumerate(grid_sessions, 1):
        np.savez(d / f"session-{k:02d}.npz", Y=s.Y, X=s.X)
    np.save(d / "mask.npy", grid_mask)
    np.save(d / "affine.npy", np.diag([2.0, 2.0, 2.0, 1.0]))
    region = np.zeros(grid_mask.shape, dtype=bool)
    region[:2, :2, :] = True
    np.save(d / "region_corner.npy", region)
    return d


@pytest.fixture
def sample_config_yaml(tmp_path, data_dir):
    """A sample analysis YAML config pointing to synthetic data."""
    output_dir = tmp_path / "output"

    config_text = f"""
name: "Test Analysis"
data_dir: "{data_dir}"
output_dir: "{output_dir}"

lambda: 0.0001
seed: 12

contrasts:
  factorial:
    levels: [2, 2]
    names: [Face, House]
  named:
    C21: [-1, 1, 0, 0]
    C43: [0, 0, -1, 1]

analyses:
  - name: distinct_21
    CA: C21
    permute: true
    max_perms: 4
  - name: stable_21_43
    CA: C21
    CB: C43
  - name: halves
    CA: C21
    CB: C43
    sessions_a: [[1, 1, 0, 0], [0, 0, 1, 1]]
    sessions_b: [[0, 0, 1, 1], [1, 1, 0, 0]]

regions:
  corner: "{data_dir / 'region_corner.npy'}"

searchlight:
  radius: 1.0
  checkpoint_interval: 0
"""
    config_path = tmp_path / "test_config.yaml"
    config_path.write_text(config_text)
    return config_path
