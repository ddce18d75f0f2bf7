"""SessionLoader: reads per-session model inputs and writes result maps.

Expected layout of a data directory:

    data_dir/
    ├── session-01.npz      arrays Y (scans x voxels), X (scans x regressors), optional f
    ├── session-02.npz
    ├── ...
    ├── mask.npy            optional boolean volume; columns of Y are its voxels
    └── affine.npy          optional 4 x 4 voxel-to-mm transform
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
import yaml

from ..stats.glm import SessionData

logger = logging.getLogger(__name__)


class SessionLoader:
    """Load per-session data and design matrices from a directory.

    Parameters
    ----------
    data_dir : Path
        Directory containing ``session-*.npz`` files.
    """

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)
        if not self.data_dir.is_dir():
            raise FileNotFoundError(f"Data directory not found: {self.data_dir}")

    def _load_npy(self, filename: str) -> np.ndarray:
        path = self.data_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        return np.load(path)

    @property
    def session_files(self) -> list[Path]:
        return sorted(self.data_dir.glob("session-*.npz"))

    def load_sessions(self) -> list[SessionData]:
        """Load all sessions in filename order."""
        files = self.session_files
        if not files:
            raise FileNotFoundError(f"No session-*.npz files in {self.data_dir}")
        sessions = []
        for path in files:
            with np.load(path) as data:
                f = float(data["f"]) if "f" in data.files else None
                sessions.append(SessionData(Y=data["Y"], X=data["X"], f=f))
            logger.debug("Loaded %s", path.name)
        logger.info("Loaded %d sessions from %s", len(sessions), self.data_dir)
        return sessions

    def load_mask(self) -> np.ndarray | None:
        """Load the analysis mask if present."""
        try:
            return self._load_npy("mask.npy").astype(bool)
        except FileNotFoundError:
            return None

    def load_affine(self) -> np.ndarray | None:
        """Load the voxel-to-mm transform if present."""
        try:
            return self._load_npy("affine.npy")
        except FileNotFoundError:
            return None

    def provenance(self) -> list[tuple[str, float]]:
        """Names and modification times of the session, mask and affine files."""
        files = self.session_files + [
            self.data_dir / name for name in ("mask.npy", "affine.npy")
            if (self.data_dir / name).exists()
        ]
        return [(p.name, p.stat().st_mtime) for p in files]

    @property
    def available_files(self) -> list[str]:
        """List all files present in the data directory."""
        return sorted(f.name for f in self.data_dir.iterdir() if f.is_file())


def region_indices(region: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Variable indices (mask voxels in row-major order) inside a region."""
    region = np.asarray(region, dtype=bool)
    if region.shape != mask.shape:
        raise ValueError(f"Region shape {region.shape} does not match mask {mask.shape}")
    return np.flatnonzero(region[mask])


def load_region(path: str | Path, mask: np.ndarray) -> np.ndarray:
    """Load a region mask volume and convert it to variable indices."""
    return region_indices(np.load(path), mask)


def export_region_results(results: pd.DataFrame, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    results.to_csv(path, index=False)
    logger.info("Exported %s (%d rows)", path.name, len(results))


def save_searchlight_results(result, output_dir: str | Path, params: dict[str, Any]) -> None:
    """Write one volume per analysis and permutation, plus searchlight sizes.

    Files are named ``spmD_A####_P####.npy`` (analysis and permutation,
    1-based); ``VPSL.npy`` holds the number of voxels per searchlight and
    ``params.yaml`` the analysis parameters.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    for i, j, volume in result.volumes():
        np.save(output_dir / f"spmD_A{i + 1:04d}_P{j + 1:04d}.npy", volume)
    np.save(output_dir / "VPSL.npy", result.to_volume(result.p))
    with open(output_dir / "params.yaml", "w") as f:
        yaml.safe_dump(params, f, default_flow_style=False)
    logger.info("Saved searchlight results to %s", output_dir)
