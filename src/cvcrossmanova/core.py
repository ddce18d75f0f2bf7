"""CrossManovaStudy: runs the configured analyses on regions or a searchlight."""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

import numpy as np
import pandas as pd

from .config import AnalysisConfig
from .io.loader import SessionLoader, load_region
from .searchlight.checkpoint import checkpoint_path, parameter_hash
from .searchlight.runner import SearchlightResult, run_searchlight
from .searchlight.template import build_searchlight
from .stats.cvcrossmanova import CvCrossManova
from .stats.glm import ModeledData, SessionData

logger = logging.getLogger(__name__)

# fraction of the available degrees of freedom a variable subset may use
MAX_DF_FRACTION = 0.9


def _array_digest(a: np.ndarray) -> str:
    a = np.ascontiguousarray(a)
    md5 = hashlib.md5(f"{a.dtype.str}{a.shape}".encode())
    md5.update(a.tobytes())
    return md5.hexdigest()


@dataclass
class RegionResults:
    """Results of region-of-interest mode."""

    analysis_names: list[str]
    D: dict[str, list[np.ndarray]]  # region -> per analysis (n_perms,)
    p: dict[str, int]  # region -> number of variables
    advisories: list[str] = field(default_factory=list)

    def to_frame(self) -> pd.DataFrame:
        """Long-format table with one row per region, analysis and permutation."""
        rows = []
        for region, values in self.D.items():
            for name, d in zip(self.analysis_names, values):
                for j, value in enumerate(d):
                    rows.append({
                        "region": region,
                        "analysis": name,
                        "permutation": j + 1,
                        "D": float(value),
                        "p": self.p[region],
                    })
        return pd.DataFrame(rows, columns=["region", "analysis", "permutation", "D", "p"])


class CrossManovaStudy:
    """Orchestrates cross-validated (cross-) MANOVA analyses for one data set.

    Parameters
    ----------
    config : AnalysisConfig
        Analysis configuration.
    sessions : list[SessionData], optional
        Pre-loaded sessions. If None, loads from ``config.data_dir``.
    mask : ndarray of bool, optional
        Voxels corresponding to the variables, in row-major order. Defaults
        to the mask in the data directory, or a 1-D all-true mask.
    affine : ndarray, optional
        Voxel-to-mm transform, needed for ``mm_units`` searchlights.
    """

    def __init__(
        self,
        config: AnalysisConfig,
        sessions: list[SessionData] | None = None,
        mask: np.ndarray | None = None,
        affine: np.ndarray | None = None,
    ):
        self.config = config
        self._provenance = None
        if sessions is None:
            loader = SessionLoader(config.data_dir)
            sessions = loader.load_sessions()
            mask = loader.load_mask() if mask is None else mask
            affine = loader.load_affine() if affine is None else affine
            self._provenance = {"data_dir": str(config.data_dir), "files": loader.provenance()}

        self.data = ModeledData(sessions)
        if mask is None:
            mask = np.ones(self.data.n_variables, dtype=bool)
        self.mask = np.asarray(mask, dtype=bool)
        if self.mask.sum() != self.data.n_variables:
            raise ValueError(
                f"Mask has {self.mask.sum()} voxels but the data have "
                f"{self.data.n_variables} variables"
            )
        self.affine = affine
        if self._provenance is None:
            self._provenance = {"digest": self._digest()}

        self.ccm = CvCrossManova(
            self.data,
            config.build_analyses(self.data.m),
            lambda_=config.lambda_,
            check_estimability=config.check_estimability,
            condition_threshold=config.condition_threshold,
        )
        logger.info("Sessions:\n%s", self.data.describe().to_string(index=False))
        logger.info("%s", self.ccm.describe())

    def _digest(self) -> str:
        md5 = hashlib.md5()
        for s in self.data.sessions:
            md5.update(np.ascontiguousarray(s.X).tobytes())
            md5.update(np.ascontiguousarray(s.betas).tobytes())
            md5.update(np.ascontiguousarray(s.residuals).tobytes())
            md5.update(repr(s.f).encode())
        md5.update(_array_digest(self.mask).encode())
        if self.affine is not None:
            md5.update(_array_digest(np.asarray(self.affine, dtype=float)).encode())
        return md5.hexdigest()

    @property
    def analysis_names(self) -> list[str]:
        names = [spec.name for spec in self.config.analyses]
        return names or [f"analysis_{i + 1}" for i in range(self.ccm.n_analyses)]

    @property
    def max_variables(self) -> float:
        """Largest variable subset that still gives decent numerical precision."""
        return self.data.f_min * MAX_DF_FRACTION

    def _load_regions(self) -> dict[str, np.ndarray]:
        if not self.config.regions:
            return {"all": np.arange(self.data.n_variables)}
        return {
            name: load_region(path, self.mask) for name, path in self.config.regions.items()
        }

    def run_regions(self, regions: dict[str, np.ndarray] | None = None) -> RegionResults:
        """Run all analyses on each region.

        Parameters
        ----------
        regions : dict[str, ndarray], optional
            Region name -> variable indices. Defaults to the configured
            region masks, or all variables.
        """
        if regions is None:
            regions = self._load_regions()

        advisories = list(self.ccm.advisories)
        D, p = {}, {}
        for name, vi in regions.items():
            vi = np.asarray(vi, dtype=int)
            p[name] = int(vi.size)
            if vi.size == 0 or vi.size > self.max_variables:
                msg = (
                    f"Data insufficient for the {vi.size} voxels of region '{name}' "
                    f"(at most {self.max_variables:.0f})"
                )
                logger.error(msg)
                advisories.append(msg)
                D[name] = [np.full(n, np.nan) for n in self.ccm.n_results]
                continue

            logger.info("Region '%s': %d variables", name, vi.size)
            est = self.ccm.estimate(vi)
            for msg in est.advisories:
                logger.warning("Region '%s': %s", name, msg)
                advisories.append(f"Region '{name}': {msg}")
            D[name] = est.D

        return RegionResults(
            analysis_names=self.analysis_names, D=D, p=p, advisories=advisories,
        )

    def searchlight_params(self, radius: float, mm_units: bool) -> dict:
        """Every parameter that affects the searchlight result."""
        affine = None if self.affine is None else np.asarray(self.affine, dtype=float)
        return {
            "provenance": self._provenance,
            "radius": float(radius),
            "mm_units": bool(mm_units),
            "analyses": list(self.ccm.analyses),
            "lambda": self.ccm.lambda_,
            "mask_shape": list(self.mask.shape),
            "mask": _array_digest(self.mask),
            "affine": None if affine is None else _array_digest(affine),
        }

    def run_searchlight(
        self,
        radius: float | None = None,
        cancel: threading.Event | Callable[[], bool] | None = None,
    ) -> SearchlightResult:
        """Run all analyses on a searchlight swept across the mask.

        If a checkpoint for identical parameters exists in the checkpoint
        directory, the run resumes from it.
        """
        settings = self.config.searchlight
        radius = settings.radius if radius is None else radius
        if settings.mm_units:
            if self.affine is None:
                raise ValueError("mm_units requires a voxel-to-mm transform (affine)")
            template = build_searchlight(radius, self.affine, ndim=self.mask.ndim)
            unit = "mm"
        else:
            template = build_searchlight(radius, ndim=self.mask.ndim)
            unit = "voxels"

        if template.size > self.max_variables:
            raise ValueError(
                f"Data insufficient for searchlight of size {template.size} "
                f"(at most {self.max_variables:.0f} variables)"
            )

        uid = parameter_hash(self.searchlight_params(radius, settings.mm_units))
        checkpoint_dir = settings.checkpoint_dir or self.config.output_dir
        checkpoint_dir.mkdir(parents=True, exist_ok=True)
        checkpoint = checkpoint_path(checkpoint_dir, uid)

        logger.info(
            "Running searchlight of radius %g %s (%d voxels)", radius, unit, template.size
        )
        logger.info("Intermediate results are saved to %s", checkpoint)
        return run_searchlight(
            self.ccm,
            self.mask,
            template,
            checkpoint=checkpoint,
            uid=uid,
            checkpoint_interval=settings.checkpoint_interval,
            n_jobs=settings.n_jobs,
            batch_size=settings.batch_size,
            cancel=cancel,
        )

    def validate(self) -> list[str]:
        """Validate the configuration against the loaded data."""
        issues = self.config.validate()
        issues.extend(self.ccm.advisories)
        if self.data.m < 2:
            issues.append("Cross-validation needs at least 2 sessions")
        return issues
