"""Per-session general linear model fits.

Each session (acquisition run / block) contributes a data matrix ``Y``
(observations x variables) and a design matrix ``X`` (observations x
regressors). The model is fitted once by ordinary least squares through the
pseudo-inverse, so rank-deficient designs yield the minimum-norm solution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionData:
    """Raw inputs for one session."""

    Y: np.ndarray  # (n_observations, n_variables)
    X: np.ndarray  # (n_observations, n_regressors)
    f: float | None = None  # residual degrees of freedom, if known


@dataclass(frozen=True)
class SessionModel:
    """Fitted GLM of one session."""

    X: np.ndarray  # design matrix
    betas: np.ndarray  # (n_regressors, n_variables) parameter estimates
    residuals: np.ndarray  # (n_observations, n_variables)
    f: float  # residual degrees of freedom

    @property
    def n(self) -> int:
        return self.X.shape[0]

    @property
    def q(self) -> int:
        return self.X.shape[1]

    @property
    def p(self) -> int:
        return self.betas.shape[1]


def fit_session(Y: np.ndarray, X: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Least-squares fit of ``Y = X B + Xi``.

    Parameters
    ----------
    Y : ndarray, shape (n, p)
        Data matrix.
    X : ndarray, shape (n, q)
        Design matrix; need not have full column rank.

    Returns
    -------
    betas : ndarray, shape (q, p)
        ``pinv(X) @ Y``.
    residuals : ndarray, shape (n, p)
        ``Y - X @ betas``.
    """
    Y = np.asarray(Y, dtype=float)
    X = np.asarray(X, dtype=float)
    if Y.shape[0] != X.shape[0]:
        raise ValueError(
            f"Number of rows of Y ({Y.shape[0]}) and X ({X.shape[0]}) must match"
        )
    betas = np.linalg.pinv(X) @ Y
    residuals = Y - X @ betas
    return betas, residuals


def _readonly(a: np.ndarray) -> np.ndarray:
    a.setflags(write=False)
    return a


class ModeledData:
    """Fitted GLMs for a set of sessions sharing the same variables.

    Parameters
    ----------
    sessions : list[SessionData]
        One record per session. If a session's ``f`` is None it is computed
        as ``n - rank(X)``, which assumes uncorrelated observations; for
        filtered or (approximately) whitened data pass the correct value.
    """

    def __init__(self, sessions: list[SessionData]):
        if not sessions:
            raise ValueError("At least one session is required")

        n_variables = np.asarray(sessions[0].Y).shape[1]
        models = []
        for k, s in enumerate(sessions):
            Y = np.asarray(s.Y, dtype=float)
            X = np.asarray(s.X, dtype=float)
            if Y.ndim != 2 or X.ndim != 2:
                raise ValueError(f"Session {k}: Y and X must be 2-dimensional")
            if Y.shape[0] != X.shape[0]:
                raise ValueError(
                    f"Session {k}: number of rows of Y ({Y.shape[0]}) and "
                    f"X ({X.shape[0]}) must match"
                )
            if Y.shape[1] != n_variables:
                raise ValueError(
                    f"Session {k}: {Y.shape[1]} variables, expected {n_variables}; "
                    f"number of columns must match between sessions"
                )
            f = s.f
            if f is None:
                f = Y.shape[0] - np.linalg.matrix_rank(X)
            if not f > 0:
                raise ValueError(f"Session {k}: residual degrees of freedom must be positive, got {f}")

            betas, residuals = fit_session(Y, X)
            models.append(SessionModel(
                X=_readonly(X.copy()),
                betas=_readonly(betas),
                residuals=_readonly(residuals),
                f=float(f),
            ))

        self.sessions: tuple[SessionModel, ...] = tuple(models)
        self.n_variables = n_variables
        logger.debug("Fitted GLMs for %d sessions, %d variables", self.m, n_variables)

    @classmethod
    def from_arrays(
        cls,
        Ys: list[np.ndarray],
        Xs: list[np.ndarray],
        fs: list[float] | np.ndarray | None = None,
    ) -> ModeledData:
        """Build from parallel lists of data and design matrices."""
        if len(Ys) != len(Xs):
            raise ValueError(
                f"Number of sessions of Ys ({len(Ys)}) and Xs ({len(Xs)}) must match"
            )
        if fs is None:
            fs = [None] * len(Ys)
        elif len(fs) != len(Ys):
            raise ValueError(
                f"Number of sessions of Ys ({len(Ys)}) and fs ({len(fs)}) must match"
            )
        return cls([SessionData(Y=Y, X=X, f=f) for Y, X, f in zip(Ys, Xs, fs)])

    @property
    def m(self) -> int:
        """Number of sessions."""
        return len(self.sessions)

    @property
    def fs(self) -> np.ndarray:
        return np.array([s.f for s in self.sessions])

    @property
    def ns(self) -> np.ndarray:
        return np.array([s.n for s in self.sessions])

    @property
    def f_min(self) -> float:
        """Smallest total degrees of freedom available to any training set."""
        fs = self.fs
        return float(fs.sum() - fs.max()) if self.m > 1 else float(fs.sum())

    def describe(self) -> pd.DataFrame:
        """Per-session table of observations, variables, regressors and df."""
        return pd.DataFrame({
            "session": np.arange(1, self.m + 1),
            "n": self.ns,
            "p": [s.p for s in self.sessions],
            "q": [s.q for s in self.sessions],
            "f": self.fs,
        })

    def __repr__(self) -> str:
        return f"ModeledData(m={self.m}, n_variables={self.n_variables})"
