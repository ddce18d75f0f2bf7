"""Checkpoint files for resumable searchlight runs.

The checkpoint filename contains an MD5 checksum of a canonical encoding of
every parameter that affects the result, so a run with different parameters
never picks up another run's partial results. The checksum is also stored
inside the file and verified on load.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any

import numpy as np

from ..errors import CheckpointMismatchError
from ..stats.analysis import Analysis

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX = "ccmSearchlightCheckpoint"


def _canonical(value: Any) -> Any:
    if isinstance(value, Analysis):
        return {
            "CA": _canonical(value.CA),
            "CB": _canonical(value.CB),
            "sessions_a": _canonical(value.sessions_a),
            "sessions_b": _canonical(value.sessions_b),
            "perms": _canonical(value.perms),
        }
    if isinstance(value, np.ndarray):
        return {"dtype": value.dtype.str, "shape": list(value.shape),
                "data": value.ravel().tolist()}
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, float):
        return repr(value)
    return value


def parameter_hash(params: dict[str, Any]) -> str:
    """32-digit hexadecimal checksum of the searchlight parameters."""
    text = json.dumps(_canonical(params), sort_keys=True, separators=(",", ":"))
    return hashlib.md5(text.encode("utf-8")).hexdigest().upper()


def checkpoint_path(directory: str | Path, uid: str) -> Path:
    return Path(directory) / f"{CHECKPOINT_PREFIX}{uid}.npz"


def save_checkpoint(path: Path, uid: str, state: dict[str, np.ndarray]) -> None:
    """Write the checkpoint atomically (write to a temporary file, then rename)."""
    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "wb") as f:
        np.savez(f, uid=np.array(uid), **state)
    os.replace(tmp, path)
    logger.debug("Saved checkpoint %s", path)


def load_checkpoint(path: Path, uid: str) -> dict[str, np.ndarray] | None:
    """Load a checkpoint if it exists.

    Raises
    ------
    CheckpointMismatchError
        If the checkpoint was written for different parameters.
    """
    path = Path(path)
    if not path.exists():
        return None
    with np.load(path, allow_pickle=False) as data:
        stored = str(data["uid"]) if "uid" in data.files else None
        if stored != uid:
            raise CheckpointMismatchError(
                f"Checkpoint {path} was written for parameters {stored}, "
                f"current parameters are {uid}"
            )
        state = {k: data[k] for k in data.files if k != "uid"}
    logger.info("Loaded checkpoint %s", path)
    return state


def delete_checkpoint(path: Path) -> None:
    path = Path(path)
    if path.exists():
        path.unlink()
        logger.debug("Deleted checkpoint %s", path)
