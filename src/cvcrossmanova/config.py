"""YAML-driven analysis configuration loader."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from .stats.analysis import Analysis
from .stats.contrasts import factorial_contrasts
from .stats.cvcrossmanova import DEFAULT_CONDITION_THRESHOLD, DEFAULT_LAMBDA


@dataclass
class AnalysisSpec:
    """One analysis as written in the config.

    ``CA`` and ``CB`` are contrast names or explicit matrices
    (regressors x subcontrasts; a flat list is a single column). Without
    ``sessions_a``/``sessions_b`` the analysis is leave-one-session-out.
    """

    name: str
    CA: str | list
    CB: str | list | None = None
    sessions_a: list[list[int]] | None = None
    sessions_b: list[list[int]] | None = None
    permute: bool = False
    max_perms: int = 1000


@dataclass
class SearchlightSettings:
    """Searchlight parameters."""

    radius: float = 3.0
    mm_units: bool = False
    checkpoint_dir: Path | None = None
    checkpoint_interval: float = 30.0
    n_jobs: int = 1
    batch_size: int = 256


@dataclass
class AnalysisConfig:
    """Complete analysis configuration loaded from YAML.

    Attributes
    ----------
    name : str
        Human-readable analysis name.
    data_dir : Path
        Directory with ``session-*.npz`` files (and optionally ``mask.npy``,
        ``affine.npy``).
    output_dir : Path
        Root directory for results.
    analyses : list[AnalysisSpec]
        Analyses to run.
    contrasts : dict[str, ndarray]
        Named contrasts, from an explicit ``named`` mapping and/or a
        ``factorial`` design description.
    lambda_ : float
        Shrinkage regularization (YAML key ``lambda``).
    condition_threshold : float
        Condition number above which an advisory is issued.
    check_estimability : bool
        Whether to check contrasts against design matrices.
    seed : int, optional
        Seed for random permutation subsampling. Fix it for resumable
        searchlight runs.
    regions : dict[str, Path]
        Region masks (``.npy`` boolean volumes) for region mode.
    searchlight : SearchlightSettings
    raw : dict
        The raw parsed YAML for extension.
    """

    name: str
    data_dir: Path
    output_dir: Path
    analyses: list[AnalysisSpec]
    contrasts: dict[str, np.ndarray] = field(default_factory=dict)
    lambda_: float = DEFAULT_LAMBDA
    condition_threshold: float = DEFAULT_CONDITION_THRESHOLD
    check_estimability: bool = True
    seed: int | None = None
    regions: dict[str, Path] = field(default_factory=dict)
    searchlight: SearchlightSettings = field(default_factory=SearchlightSettings)
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_yaml(cls, path: str | Path) -> AnalysisConfig:
        """Load an analysis config from a YAML file."""
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisConfig:
        contrasts = {}
        contrast_cfg = data.get("contrasts", {})
        factorial = contrast_cfg.get("factorial")
        if factorial:
            contrasts.update(factorial_contrasts(factorial["levels"], factorial.get("names")))
        for name, matrix in contrast_cfg.get("named", {}).items():
            contrasts[name] = np.asarray(matrix, dtype=float)

        analyses = [
            AnalysisSpec(
                name=a.get("name", f"analysis_{i + 1}"),
                CA=a["CA"],
                CB=a.get("CB"),
                sessions_a=a.get("sessions_a"),
                sessions_b=a.get("sessions_b"),
                permute=bool(a.get("permute", False)),
                max_perms=int(a.get("max_perms", 1000)),
            )
            for i, a in enumerate(data.get("analyses", []))
        ]

        sl = data.get("searchlight", {})
        searchlight = SearchlightSettings(
            radius=float(sl.get("radius", 3.0)),
            mm_units=bool(sl.get("mm_units", False)),
            checkpoint_dir=Path(sl["checkpoint_dir"]) if sl.get("checkpoint_dir") else None,
            checkpoint_interval=float(sl.get("checkpoint_interval", 30.0)),
            n_jobs=int(sl.get("n_jobs", 1)),
            batch_size=int(sl.get("batch_size", 256)),
        )

        return cls(
            name=data["name"],
            data_dir=Path(data["data_dir"]),
            output_dir=Path(data["output_dir"]),
            analyses=analyses,
            contrasts=contrasts,
            lambda_=float(data.get("lambda", DEFAULT_LAMBDA)),
            condition_threshold=float(data.get("condition_threshold", DEFAULT_CONDITION_THRESHOLD)),
            check_estimability=bool(data.get("check_estimability", True)),
            seed=data.get("seed"),
            regions={name: Path(p) for name, p in data.get("regions", {}).items()},
            searchlight=searchlight,
            raw=data,
        )

    def get_contrast(self, ref: str | list) -> np.ndarray:
        """Resolve a contrast reference to a matrix."""
        if isinstance(ref, str):
            if ref not in self.contrasts:
                raise KeyError(f"Unknown contrast '{ref}'")
            return self.contrasts[ref]
        return np.asarray(ref, dtype=float)

    def build_analyses(self, m: int) -> list[Analysis]:
        """Turn the analysis specifications into :class:`Analysis` objects.

        Permutations are drawn from a single random source seeded with
        ``seed``, in the order the analyses are listed.
        """
        rng = np.random.default_rng(self.seed)
        analyses = []
        for spec in self.analyses:
            CA = self.get_contrast(spec.CA)
            CB = self.get_contrast(spec.CB) if spec.CB is not None else CA
            if spec.sessions_a is None and spec.sessions_b is None:
                analysis = Analysis.leave_one_session_out(m, CA, CB)
            else:
                analysis = Analysis(CA, CB, spec.sessions_a, spec.sessions_b)
            if spec.permute:
                analysis = analysis.with_permutations(spec.max_perms, rng)
            analyses.append(analysis)
        return analyses

    def validate(self) -> list[str]:
        """Check configuration for common errors. Returns list of warnings."""
        warnings = []
        if not self.analyses:
            warnings.append("No analyses defined")
        if not 0 <= self.lambda_ <= 1:
            warnings.append(f"lambda must be between 0 and 1, got {self.lambda_}")
        for spec in self.analyses:
            for label, ref in (("CA", spec.CA), ("CB", spec.CB)):
                if isinstance(ref, str) and ref not in self.contrasts:
                    warnings.append(f"Analysis '{spec.name}': {label} '{ref}' not in contrasts")
            if (spec.sessions_a is None) != (spec.sessions_b is None):
                warnings.append(
                    f"Analysis '{spec.name}': sessions_a and sessions_b must be given together"
                )
        if self.searchlight.radius <= 0:
            warnings.append(f"Searchlight radius must be positive, got {self.searchlight.radius}")
        if not self.data_dir.exists():
            warnings.append(f"data_dir does not exist: {self.data_dir}")
        for name, path in self.regions.items():
            if not path.exists():
                warnings.append(f"Region '{name}' mask does not exist: {path}")
        return warnings
