"""Cross-validated (cross-) MANOVA: pattern distinctness and pattern stability.

Given per-session GLM fits and a list of analyses, :class:`CvCrossManova`
estimates a shrinkage-regularized error covariance for a subset of
variables, pre-whitens the parameter estimates with its Cholesky factor, and
computes for every analysis and sign permutation the cross-validated
estimator

    D = 1/L sum_l trace( mean_A(DBA)' · mean_B(X'X/n) · mean_B(DB) )

where for each fold ``l`` the training effects ``DBA = CB pinv(CA) B`` are
averaged across training sessions and the validation effects
``DB = CB pinv(CB) B`` across validation sessions, each with the
permutation's per-session signs applied.

D is an unbiased estimator, so negative values are legitimate and must not
be clipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
from scipy import linalg, optimize

from ..errors import NotPositiveDefiniteError
from .analysis import Analysis
from .glm import ModeledData

logger = logging.getLogger(__name__)

DEFAULT_LAMBDA = 1e-8
DEFAULT_CONDITION_THRESHOLD = 1000.0


@dataclass
class Estimate:
    """Result of running all analyses on one subset of variables."""

    D: list[np.ndarray]  # per analysis, (n_perms,); index 0 is unpermuted
    n_variables: int
    condition_number: float
    advisories: list[str] = field(default_factory=list)

    def values(self) -> list[float | np.ndarray]:
        """Per analysis a scalar, or a vector if permutations were applied."""
        return [float(d[0]) if d.size == 1 else d for d in self.D]


@dataclass(frozen=True)
class _Prepared:
    """Per-analysis quantities independent of the variable subset."""

    ri_a: np.ndarray
    ri_b: np.ndarray
    op_a: np.ndarray  # CB_r @ pinv(CA_r)
    op_b: np.ndarray  # CB_r @ pinv(CB_r)
    xxn: dict[int, np.ndarray]  # validation sessions -> X'X/n on ri_b


def regularized_covariance(
    S: np.ndarray,
    f_total: float,
    lambda_: float,
) -> np.ndarray:
    """Shrinkage estimate of the error covariance from a residual cross-product.

    ``S / (f_total - p - 1)`` is the estimate whose inverse is unbiased. It
    is blended with a scaled identity whose scale uses ``f_total - 2``,
    because for a scalar (Euclidean) metric the inverse is 1-dimensional.
    ``lambda_ = 0`` gives the proper estimate, ``lambda_ = 1`` the
    Euclidean metric.
    """
    p = S.shape[0]
    target = np.eye(p) * (np.mean(np.diag(S)) / (f_total - 2))
    if lambda_ == 1:
        return target
    proper = S / (f_total - p - 1)
    if lambda_ == 0:
        return proper
    return (1 - lambda_) * proper + lambda_ * target


def _cholesky(Sigma: np.ndarray, lambda_: float) -> np.ndarray:
    if not np.all(np.isfinite(Sigma)):
        raise NotPositiveDefiniteError(Sigma.shape[0], lambda_)
    try:
        return linalg.cholesky(Sigma, lower=False)
    except np.linalg.LinAlgError as e:
        raise NotPositiveDefiniteError(Sigma.shape[0], lambda_) from e


class CvCrossManova:
    """Statistic engine for a set of sessions and analyses.

    Parameters
    ----------
    data : ModeledData
        Fitted per-session GLMs.
    analyses : list
        :class:`Analysis` objects. A tuple ``(CA,)`` or ``(CA, CB)`` is
        turned into a leave-one-session-out analysis.
    lambda_ : float
        Shrinkage regularization strength in [0, 1] towards the Euclidean
        metric. The small default avoids numerical instability.
    check_estimability : bool
        Check every contrast against the design matrix of every session it
        is used in; inestimable contrasts produce advisories.
    condition_threshold : float
        Condition number of the regularized covariance above which an
        advisory suggests increasing ``lambda_``.
    """

    def __init__(
        self,
        data: ModeledData,
        analyses: list,
        lambda_: float = DEFAULT_LAMBDA,
        check_estimability: bool = True,
        condition_threshold: float = DEFAULT_CONDITION_THRESHOLD,
    ):
        if not 0 <= lambda_ <= 1:
            raise ValueError(f"lambda must be in [0, 1], got {lambda_}")
        self.data = data
        self.lambda_ = float(lambda_)
        self.condition_threshold = float(condition_threshold)

        self.analyses: tuple[Analysis, ...] = tuple(
            a if isinstance(a, Analysis) else Analysis.leave_one_session_out(data.m, *a)
            for a in analyses
        )
        if not self.analyses:
            raise ValueError("At least one analysis is required")
        for i, a in enumerate(self.analyses):
            if a.m != data.m:
                raise ValueError(
                    f"Analysis {i} has {a.m} sessions, data has {data.m}; "
                    f"number of sessions must match"
                )
            self._check_regressor_counts(i, a)

        self.advisories: list[str] = []
        Xs = [s.X for s in data.sessions]
        for i, a in enumerate(self.analyses):
            self.advisories.extend(f"Analysis {i}: {msg}" for msg in a.characterize())
            if check_estimability:
                self.advisories.extend(
                    f"Analysis {i}: {msg}" for msg in a.check_estimability(Xs)
                )
        for msg in self.advisories:
            logger.warning(msg)

        self._prepared = [self._prepare(a) for a in self.analyses]

    def _check_regressor_counts(self, i: int, a: Analysis) -> None:
        for k, s in enumerate(self.data.sessions):
            if a.sessions_a[:, k].any() and a.CA.shape[0] > s.q:
                raise ValueError(
                    f"Analysis {i}: CA has {a.CA.shape[0]} regressors but "
                    f"session {k} only {s.q}"
                )
            if a.sessions_b[:, k].any() and a.CB.shape[0] > s.q:
                raise ValueError(
                    f"Analysis {i}: CB has {a.CB.shape[0]} regressors but "
                    f"session {k} only {s.q}"
                )

    def _prepare(self, a: Analysis) -> _Prepared:
        # restrict to regressors involved in the contrasts
        ri_a = np.flatnonzero(np.any(a.CA != 0, axis=1))
        ri_b = np.flatnonzero(np.any(a.CB != 0, axis=1))
        CA_r = a.CA[ri_a]
        CB_r = a.CB[ri_b]
        xxn = {}
        for k in np.flatnonzero(a.sessions_b.any(axis=0)):
            s = self.data.sessions[k]
            Xr = s.X[:, ri_b]
            xxn[int(k)] = Xr.T @ Xr / s.n
        return _Prepared(
            ri_a=ri_a,
            ri_b=ri_b,
            op_a=CB_r @ np.linalg.pinv(CA_r),
            op_b=CB_r @ np.linalg.pinv(CB_r),
            xxn=xxn,
        )

    @property
    def m(self) -> int:
        return self.data.m

    @property
    def n_analyses(self) -> int:
        return len(self.analyses)

    @property
    def n_results(self) -> list[int]:
        """Number of values (permutations) returned per analysis."""
        return [a.n_perms for a in self.analyses]

    def _variable_indices(self, vi) -> np.ndarray:
        if vi is None:
            return np.arange(self.data.n_variables)
        vi = np.asarray(vi, dtype=int).ravel()
        if vi.size == 0:
            raise ValueError("Variable subset is empty")
        return vi

    def _error_cross_product(self, vi: np.ndarray) -> np.ndarray:
        S = 0
        for s in self.data.sessions:
            x = s.residuals[:, vi]
            S = S + x.T @ x
        return S

    def covariance(self, vi=None) -> np.ndarray:
        """Regularized error covariance estimate for a variable subset."""
        vi = self._variable_indices(vi)
        S = self._error_cross_product(vi)
        return regularized_covariance(S, self.data.fs.sum(), self.lambda_)

    def estimate(self, vi=None) -> Estimate:
        """Run all analyses on a subset of variables.

        Parameters
        ----------
        vi : array-like of int, optional
            Column indices into the data matrices; default all variables.

        Returns
        -------
        Estimate

        Raises
        ------
        NotPositiveDefiniteError
            If the regularized covariance has no Cholesky factor.
        """
        vi = self._variable_indices(vi)
        p = vi.size
        advisories = []

        Sigma = self.covariance(vi)
        R = _cholesky(Sigma, self.lambda_)
        condition = float(np.linalg.cond(Sigma))
        if condition > self.condition_threshold:
            advisories.append(
                f"Regularized error covariance is ill-conditioned "
                f"(condition number > {self.condition_threshold:g}); "
                f"consider increasing lambda"
            )
            logger.debug("Condition number %.3g for %d variables", condition, p)

        # pre-whiten: B R^-1, with Sigma = R' R
        betas = [
            linalg.solve_triangular(R, s.betas[:, vi].T, trans="T", lower=False).T
            for s in self.data.sessions
        ]

        D = [self._run_analysis(a, prep, betas) for a, prep in zip(self.analyses, self._prepared)]
        return Estimate(D=D, n_variables=p, condition_number=condition, advisories=advisories)

    def run_analyses(self, vi=None) -> list[float | np.ndarray]:
        """Pattern distinctness / stability for every analysis.

        Each element is a scalar if the analysis has no permutations, or a
        vector of permutation values whose first element is the unpermuted
        estimate.
        """
        return self.estimate(vi).values()

    @staticmethod
    def _run_analysis(a: Analysis, prep: _Prepared, betas: list[np.ndarray]) -> np.ndarray:
        used_a = np.flatnonzero(a.sessions_a.any(axis=0))
        used_b = np.flatnonzero(a.sessions_b.any(axis=0))
        dba = {int(k): prep.op_a @ betas[k][prep.ri_a] for k in used_a}
        db = {int(k): prep.op_b @ betas[k][prep.ri_b] for k in used_b}

        perms = a.perms.astype(float)
        D = np.zeros(a.n_perms)
        for l in range(a.L):
            A = np.flatnonzero(a.sessions_a[l])
            B = np.flatnonzero(a.sessions_b[l])
            # means across sessions first, then the product
            m_dba = np.einsum("pk,krv->prv", perms[:, A], np.stack([dba[k] for k in A])) / A.size
            m_xxn = np.mean([prep.xxn[k] for k in B], axis=0)
            m_db = np.einsum("pk,krv->prv", perms[:, B], np.stack([db[k] for k in B])) / B.size
            D += np.einsum("prv,rs,psv->p", m_dba, m_xxn, m_db, optimize=True)
        return D / a.L

    def optimize_regularization(self, vi=None) -> float:
        """Choose lambda by leave-one-session-out cross-validation.

        For each held-out session, the error covariance of that session is
        whitened by the regularized estimate from the remaining sessions,
        and the mean squared deviation from the identity is computed. The
        lambda in [0, 1] minimizing the average deviation is returned.

        Because each estimate uses fewer sessions than the full analysis,
        the result is an upper estimate of the appropriate lambda; it is a
        diagnostic and not used automatically.
        """
        if self.m < 2:
            raise ValueError("Optimizing lambda needs at least 2 sessions")
        vi = self._variable_indices(vi)
        p = vi.size

        cross = [s.residuals[:, vi].T @ s.residuals[:, vi] for s in self.data.sessions]
        fs = self.data.fs
        S_total = np.sum(cross, axis=0)
        held_out = [cross[k] / fs[k] for k in range(self.m)]

        def loss(lambda_: float) -> float:
            total = 0.0
            for k in range(self.m):
                Sigma = regularized_covariance(S_total - cross[k], fs.sum() - fs[k], lambda_)
                try:
                    R = _cholesky(Sigma, lambda_)
                except NotPositiveDefiniteError:
                    return np.inf
                Ri = linalg.solve_triangular(R, np.eye(p), lower=False)
                W = Ri.T @ held_out[k] @ Ri
                total += np.mean((W - np.eye(p)) ** 2)
            return total / self.m

        res = optimize.minimize_scalar(loss, bounds=(0.0, 1.0), method="bounded")
        logger.info("Cross-validated lambda for %d variables: %.4g", p, res.x)
        return float(res.x)

    def describe(self) -> str:
        lines = [
            f"CvCrossManova: {self.m} sessions, {self.data.n_variables} variables, "
            f"lambda={self.lambda_:g}",
        ]
        for i, a in enumerate(self.analyses):
            lines.append(f"[{i}] " + a.describe())
        return "\n".join(lines)
