"""Sliding-window (searchlight) execution of the statistic engine.

Every in-mask grid position is visited in row-major order. The template is
translated to the position, restricted to the grid and the mask, and the
engine is run on the corresponding variables. Partial results are written to
a checkpoint file at fixed wall-clock intervals; a later call with the same
checkpoint path resumes from there.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import numpy as np
from joblib import Parallel, delayed

from ..errors import SearchlightCancelled, SearchlightPositionError
from ..stats.cvcrossmanova import CvCrossManova, Estimate
from .checkpoint import delete_checkpoint, load_checkpoint, save_checkpoint
from .template import SearchlightTemplate

logger = logging.getLogger(__name__)


@dataclass
class SearchlightResult:
    """Searchlight output aligned with the mask voxels (row-major order)."""

    mask: np.ndarray  # (grid shape), bool
    D: list[np.ndarray]  # per analysis, (n_mask_voxels, n_perms)
    p: np.ndarray  # (n_mask_voxels,) number of voxels per searchlight
    advisory_counts: dict[str, int] = field(default_factory=dict)

    @property
    def advisories(self) -> list[str]:
        return [f"{msg} (at {n} centers)" for msg, n in self.advisory_counts.items()]

    def to_volume(self, values: np.ndarray) -> np.ndarray:
        """Place mask-aligned values into a NaN-filled grid."""
        volume = np.full(self.mask.shape, np.nan)
        volume[self.mask] = values
        return volume

    def volumes(self):
        """Yield ``(analysis_index, permutation_index, volume)`` for every map."""
        for i, d in enumerate(self.D):
            for j in range(d.shape[1]):
                yield i, j, self.to_volume(d[:, j])


def _is_cancelled(cancel) -> bool:
    if cancel is None:
        return False
    if isinstance(cancel, threading.Event):
        return cancel.is_set()
    return bool(cancel())


class _Neighborhoods:
    """Maps searchlight centers to mask-relative variable indices."""

    def __init__(self, mask: np.ndarray, template: SearchlightTemplate):
        if template.ndim != mask.ndim:
            raise ValueError(
                f"Template has {template.ndim} dimensions but mask has {mask.ndim}"
            )
        self.mask = mask
        self.offsets = template.offsets
        self.dim = np.array(mask.shape)
        self.centers = np.argwhere(mask)
        self.volume_to_mask = np.full(mask.shape, -1, dtype=np.int64)
        self.volume_to_mask[mask] = np.arange(self.centers.shape[0])

    def __len__(self) -> int:
        return self.centers.shape[0]

    def indices(self, i: int) -> np.ndarray:
        coords = self.centers[i] + self.offsets
        inside = np.all((coords >= 0) & (coords < self.dim), axis=1)
        mvi = self.volume_to_mask[tuple(coords[inside].T)]
        return mvi[mvi >= 0]


def run_searchlight(
    ccm: CvCrossManova,
    mask: np.ndarray,
    template: SearchlightTemplate,
    checkpoint: str | Path | None = None,
    uid: str = "",
    checkpoint_interval: float = 30.0,
    n_jobs: int = 1,
    batch_size: int = 256,
    cancel: threading.Event | Callable[[], bool] | None = None,
) -> SearchlightResult:
    """Apply the engine to every searchlight in the mask.

    Parameters
    ----------
    ccm : CvCrossManova
        Engine whose variables are the mask voxels in row-major order.
    mask : ndarray of bool
        Voxels to use, both as centers and as searchlight members.
    template : SearchlightTemplate
        Neighborhood offsets.
    checkpoint : path, optional
        Checkpoint file; None disables checkpointing.
    uid : str
        Parameter checksum stored in and verified against the checkpoint.
    checkpoint_interval : float
        Seconds between checkpoint writes and progress reports.
    n_jobs : int
        Worker threads; with more than one, centers are processed in
        batches of ``batch_size`` and checkpoints cover completed batches.
    cancel : threading.Event or callable, optional
        Checked between centers (batches); when set, the checkpoint is
        written and :class:`SearchlightCancelled` is raised.

    Returns
    -------
    SearchlightResult

    Raises
    ------
    SearchlightPositionError
        If the engine fails at a center; the checkpoint up to the previous
        center (batch) is kept.
    """
    mask = np.asarray(mask, dtype=bool)
    hoods = _Neighborhoods(mask, template)
    n_mask = len(hoods)
    if n_mask != ccm.data.n_variables:
        raise ValueError(
            f"Mask has {n_mask} voxels but the data have {ccm.data.n_variables} variables"
        )

    D = [np.full((n_mask, n), np.nan) for n in ccm.n_results]
    p = np.full(n_mask, np.nan)
    advisory_counts: dict[str, int] = {}
    n_done = 0

    if checkpoint is not None:
        state = load_checkpoint(checkpoint, uid)
        if state is not None:
            D = [state[f"D{i}"] for i in range(len(D))]
            p = state["p"]
            n_done = int(state["n_done"])
            if "adv_msgs" in state:
                advisory_counts = dict(zip(
                    state["adv_msgs"].tolist(), state["adv_counts"].tolist()
                ))
            logger.info(
                "  *restart*  %6d voxels  %5.1f %%", n_done, n_done / max(n_mask, 1) * 100
            )

    def save():
        if checkpoint is not None and n_done < n_mask:
            state = {f"D{i}": d for i, d in enumerate(D)}
            state["p"] = p
            state["n_done"] = np.array(n_done)
            state["adv_msgs"] = np.array(list(advisory_counts), dtype=str)
            state["adv_counts"] = np.array(list(advisory_counts.values()), dtype=np.int64)
            save_checkpoint(checkpoint, uid, state)

    def evaluate(i: int) -> tuple[int, int, Estimate]:
        mvi = hoods.indices(i)
        try:
            return i, mvi.size, ccm.estimate(mvi)
        except (np.linalg.LinAlgError, ValueError, FloatingPointError) as e:
            raise SearchlightPositionError(tuple(hoods.centers[i]), e) from e

    def store(results) -> None:
        for i, size, est in results:
            for a, d in enumerate(est.D):
                D[a][i] = d
            p[i] = size
            for msg in est.advisories:
                if msg not in advisory_counts:
                    logger.warning(
                        "%s (first at center %s)", msg, tuple(int(c) for c in hoods.centers[i])
                    )
                advisory_counts[msg] = advisory_counts.get(msg, 0) + 1

    step = 1 if n_jobs == 1 else max(1, batch_size)
    start = time.monotonic()
    last = start
    pool = Parallel(n_jobs=n_jobs, prefer="threads") if n_jobs != 1 else nullcontext()
    with pool as parallel:
        while n_done < n_mask:
            if _is_cancelled(cancel):
                save()
                raise SearchlightCancelled(n_done, n_mask)

            batch = range(n_done, min(n_done + step, n_mask))
            try:
                if parallel is None:
                    results = [evaluate(i) for i in batch]
                else:
                    results = parallel(delayed(evaluate)(i) for i in batch)
            except SearchlightPositionError:
                save()
                raise
            store(results)
            n_done = batch.stop

            now = time.monotonic()
            if now - last > checkpoint_interval or n_done == n_mask:
                last = now
                logger.info(
                    " %6.1f min  %6d voxels  %5.1f %%",
                    (now - start) / 60, n_done, n_done / n_mask * 100,
                )
                save()

    if checkpoint is not None:
        delete_checkpoint(checkpoint)
    return SearchlightResult(mask=mask, D=D, p=p, advisory_counts=advisory_counts)
