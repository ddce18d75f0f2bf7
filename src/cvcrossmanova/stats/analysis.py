"""Analysis definitions: contrasts, cross-validation folds and sign permutations.

An analysis pairs a 'training' contrast ``CA`` with a 'validation' contrast
``CB`` and a fold structure given by two boolean matrices (folds x sessions)
that mark the training and validation sessions of each fold. If ``CA`` and
``CB`` are the same the analysis estimates pattern distinctness *D*,
otherwise pattern stability *D*×.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

import numpy as np

from .contrasts import contrast_estimable

logger = logging.getLogger(__name__)

MAX_PERMUTATION_SESSIONS = 21
VARIANCE_TOLERANCE = 1e-14


def _as_contrast(C, name: str) -> np.ndarray:
    C = np.asarray(C, dtype=float)
    if C.ndim == 1:
        C = C[:, np.newaxis]
    if C.ndim != 2:
        raise ValueError(f"{name} must be a matrix (regressors x subcontrasts)")
    return C


def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.array(a)
    a.setflags(write=False)
    return a


def enumerate_sign_permutations(m: int) -> np.ndarray:
    """All 2**m per-session sign vectors, the all-ones vector first.

    Row ``i`` flips the sessions whose bit is set in the binary
    representation of ``i``, the first session being the most significant
    bit.
    """
    if m > MAX_PERMUTATION_SESSIONS:
        raise ValueError(
            f"Too many possible sign permutations to process: {m} sessions "
            f"(2^{m}), at most {MAX_PERMUTATION_SESSIONS} sessions are supported"
        )
    idx = np.arange(2 ** m)[:, np.newaxis]
    bits = (idx >> (m - 1 - np.arange(m))) & 1
    return (1 - 2 * bits).astype(np.int8)


def _as_rng(rng) -> np.random.Generator:
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)


@dataclass(frozen=True, eq=False)
class Analysis:
    """Immutable definition of one (cross-) MANOVA analysis.

    Parameters
    ----------
    CA : ndarray, shape (n_regressors_a, n_subcontrasts)
        Training contrast.
    CB : ndarray, shape (n_regressors_b, n_subcontrasts)
        Validation contrast.
    sessions_a : ndarray of bool, shape (n_folds, n_sessions)
        Training sessions of each fold.
    sessions_b : ndarray of bool, shape (n_folds, n_sessions)
        Validation sessions of each fold.
    perms : ndarray of int8, shape (n_perms, n_sessions), optional
        Sign permutations; row 0 is the neutral (all-ones) permutation.
        Defaults to the neutral permutation only. Use
        :meth:`with_permutations` to add the unique permutations.
    """

    CA: np.ndarray
    CB: np.ndarray
    sessions_a: np.ndarray
    sessions_b: np.ndarray
    perms: np.ndarray | None = field(default=None)

    def __post_init__(self):
        CA = _as_contrast(self.CA, "CA")
        CB = _as_contrast(self.CB, "CB")
        if CA.shape[1] != CB.shape[1]:
            raise ValueError(
                f"CA and CB must have the same number of subcontrasts, "
                f"got {CA.shape[1]} and {CB.shape[1]}"
            )

        sessions_a = np.atleast_2d(np.asarray(self.sessions_a, dtype=bool))
        sessions_b = np.atleast_2d(np.asarray(self.sessions_b, dtype=bool))
        if sessions_a.shape != sessions_b.shape:
            raise ValueError(
                f"sessions_a and sessions_b must have the same size, "
                f"got {sessions_a.shape} and {sessions_b.shape}"
            )
        for l in range(sessions_a.shape[0]):
            if not sessions_a[l].any() or not sessions_b[l].any():
                raise ValueError(
                    f"Fold {l} needs at least one training and one validation session"
                )

        m = sessions_a.shape[1]
        if self.perms is None:
            perms = np.ones((1, m), dtype=np.int8)
        else:
            perms = np.atleast_2d(np.asarray(self.perms)).astype(np.int8)
            if perms.shape[1] != m:
                raise ValueError(
                    f"perms must have {m} columns (sessions), got {perms.shape[1]}"
                )
            if not np.all(np.abs(perms) == 1):
                raise ValueError("perms entries must be +1 or -1")
            if not np.all(perms[0] == 1):
                raise ValueError("The first permutation must be the neutral (all-ones) one")

        object.__setattr__(self, "CA", _readonly(CA))
        object.__setattr__(self, "CB", _readonly(CB))
        object.__setattr__(self, "sessions_a", _readonly(sessions_a))
        object.__setattr__(self, "sessions_b", _readonly(sessions_b))
        object.__setattr__(self, "perms", _readonly(perms))

    @classmethod
    def leave_one_session_out(cls, m: int, CA, CB=None) -> Analysis:
        """Analysis with leave-one-session-out cross-validation.

        In fold ``l`` session ``l`` is the validation session and all
        others are training sessions. ``CB`` defaults to ``CA``.
        """
        if m < 2:
            raise ValueError(f"Leave-one-session-out needs at least 2 sessions, got {m}")
        if CB is None:
            CB = CA
        sessions_b = np.eye(m, dtype=bool)
        return cls(CA, CB, ~sessions_b, sessions_b)

    @property
    def L(self) -> int:
        """Number of folds."""
        return self.sessions_a.shape[0]

    @property
    def m(self) -> int:
        """Number of sessions."""
        return self.sessions_a.shape[1]

    @property
    def n_perms(self) -> int:
        return self.perms.shape[0]

    @property
    def same(self) -> bool:
        """Whether training and validation contrasts are identical."""
        return self.CA.shape == self.CB.shape and bool(np.array_equal(self.CA, self.CB))

    def with_permutations(self, max_perms: int = 1000, rng=None) -> Analysis:
        """Return a copy that includes all unique sign permutations.

        For ``m`` sessions there are ``2**m`` sign permutations, but two
        permutations give the same value if in every fold they apply the
        same relative signs to the sessions involved in that fold. One
        representative of each equivalence class is kept, in order of first
        occurrence, so the neutral permutation stays first.

        If more than ``max_perms`` unique permutations remain, the neutral
        permutation plus a random sample without replacement of
        ``max_perms - 1`` others is kept (Monte Carlo test; Dwass 1957).

        Parameters
        ----------
        max_perms : int
            Maximum number of permutations, including the neutral one.
        rng : numpy.random.Generator or int, optional
            Random source for subsampling. Pass a fixed seed for
            reproducible (and resumable) searchlight runs.
        """
        if max_perms < 1:
            raise ValueError(f"max_perms must be at least 1, got {max_perms}")

        perms = enumerate_sign_permutations(self.m)
        n_possible = perms.shape[0]

        involved = self.sessions_a | self.sessions_b
        signature = []
        for l in range(self.L):
            p_involved = perms[:, involved[l]]
            # only relative signs within a fold matter
            signature.append(p_involved[:, :1] * p_involved)
        signature = np.hstack(signature)

        _, first = np.unique(signature, axis=0, return_index=True)
        perms = perms[np.sort(first)]
        n_unique = perms.shape[0]
        logger.info(
            "%d possible sign permutations, %d of them unique", n_possible, n_unique
        )

        if n_unique > max_perms:
            logger.info("Randomly selecting a subset of %d permutations", max_perms)
            sample = _as_rng(rng).choice(n_unique - 1, size=max_perms - 1, replace=False) + 1
            perms = perms[np.sort(np.concatenate([[0], sample]))]

        return replace(self, perms=perms)

    def characterize(self) -> list[str]:
        """Check the contrasts and folds; returns a list of advisories."""
        advisories = []

        overlap = np.flatnonzero((self.sessions_a & self.sessions_b).any(axis=1))
        if overlap.size:
            advisories.append(
                f"Training and validation sessions overlap in fold(s) "
                f"{', '.join(str(l) for l in overlap)}; the estimate will be biased"
            )

        if self.same:
            return advisories

        rank_a = np.linalg.matrix_rank(self.CA)
        rank_b = np.linalg.matrix_rank(self.CB)
        if rank_a != rank_b:
            advisories.append(
                f"Training contrast is {rank_a}-dimensional but validation "
                f"contrast is {rank_b}-dimensional"
            )

        rank_x, variance = self.cross_operator()
        if rank_x < min(rank_a, rank_b):
            advisories.append(
                f"Cross operator CB·pinv(CA) is only {rank_x}-dimensional, "
                f"less than the contrasts ({min(rank_a, rank_b)})"
            )
        if abs(variance - 1) > VARIANCE_TOLERANCE:
            advisories.append(
                f"Variance is not preserved by CB·pinv(CA) "
                f"({variance * 100:g}% variance)"
            )
        return advisories

    def cross_operator(self) -> tuple[int, float]:
        """Rank and normalized variance of the operator ``CB @ pinv(CA)``.

        The normalized variance is the squared Frobenius norm divided by the
        rank; it is 1 if the operator preserves variance.
        """
        op = self.CB @ np.linalg.pinv(self.CA)
        rank = int(np.linalg.matrix_rank(op))
        sf = float(np.sum(op ** 2))
        variance = sf / rank if rank > 0 else 0.0
        return rank, variance

    def check_estimability(self, Xs: list[np.ndarray]) -> list[str]:
        """Check ``CA``/``CB`` against the design matrix of every session using them.

        Returns a list of advisories, one per inestimable combination.
        """
        if len(Xs) != self.m:
            raise ValueError(
                f"Analysis has {self.m} sessions but {len(Xs)} design matrices were given"
            )
        advisories = []
        used_a = self.sessions_a.any(axis=0)
        used_b = self.sessions_b.any(axis=0)
        for k, X in enumerate(Xs):
            for label, C, used in (("CA", self.CA, used_a), ("CB", self.CB, used_b)):
                if not used[k]:
                    continue
                if C.shape[0] > X.shape[1]:
                    advisories.append(
                        f"{label} has {C.shape[0]} regressors but session {k} "
                        f"only {X.shape[1]}"
                    )
                    continue
                estimable, error = contrast_estimable(C, X)
                if not estimable:
                    advisories.append(
                        f"{label} is not estimable in session {k} (error {error:.3g})"
                    )
        return advisories

    def describe(self) -> str:
        """Textual summary of the analysis."""
        lines = [
            "Analysis:",
            f"  {self.L} folds, {self.m} sessions, {self.n_perms} permutations",
            "  CA:     %d x %d, %d-dimensional"
            % (*self.CA.shape, np.linalg.matrix_rank(self.CA)),
        ]
        if not self.same:
            lines.append(
                "  CB:     %d x %d, %d-dimensional"
                % (*self.CB.shape, np.linalg.matrix_rank(self.CB))
            )
            rank, variance = self.cross_operator()
            lines.append(f"  CA->CB: {rank}-dimensional, {variance * 100:g}% variance")
        return "\n".join(lines)

    def __repr__(self) -> str:
        kind = "D" if self.same else "Dx"
        return f"Analysis({kind}, L={self.L}, m={self.m}, n_perms={self.n_perms})"
