"""Contrast construction and estimability checks."""

from __future__ import annotations

import logging

import numpy as np

logger = logging.getLogger(__name__)


def factorial_contrasts(
    levels: list[int],
    names: list[str] | None = None,
) -> dict[str, np.ndarray]:
    """Contrasts for main effects and interactions of a factorial design.

    Parameters
    ----------
    levels : list[int]
        Number of levels of each factor. The first factor is the one
        enumerated slowest in the regressor order.
    names : list[str], optional
        Factor names; defaults to "A", "B", ...

    Returns
    -------
    dict[str, ndarray]
        Contrast name -> matrix of shape (prod(levels), n_subcontrasts),
        main effects first, then two-way interactions, and so on. Names of
        interactions join the factor names with "×". Contrasts are not
        orthonormalized.
    """
    nf = len(levels)
    if nf == 0:
        raise ValueError("At least one factor is required")
    if names is None:
        names = [chr(ord("A") + i) for i in range(nf)]
    if len(names) != nf:
        raise ValueError(f"{len(names)} factor names given for {nf} factors")

    # factor-membership signature of every effect, ordered by interaction order
    signatures = [
        [bool((ci >> fi) & 1) for fi in range(nf)]
        for ci in range(1, 2 ** nf)
    ]
    signatures.sort(key=sum)

    elements = []
    for n_levels in levels:
        if n_levels < 2:
            raise ValueError(f"Each factor needs at least 2 levels, got {n_levels}")
        # column j is e_j - e_{j+1}
        diff = -np.diff(np.eye(n_levels), axis=0).T
        elements.append((np.ones((n_levels, 1)), diff))

    contrasts = {}
    for sig in signatures:
        C = np.ones((1, 1))
        for fi, involved in enumerate(sig):
            C = np.kron(C, elements[fi][int(involved)])
        name = "×".join(n for n, involved in zip(names, sig) if involved)
        contrasts[name] = C
    return contrasts


def contrast_estimable(C: np.ndarray, X: np.ndarray) -> tuple[bool, float]:
    """Check whether a contrast is estimable with respect to a design matrix.

    A contrast is estimable if it lies in the row space of ``X``
    (Friston et al. 2007, p. 106), i.e. if it is unchanged by the orthogonal
    projector onto that row space. The projector is built from the SVD of
    ``X`` with the same tolerance as SPM's ``spm_sp``.

    Parameters
    ----------
    C : ndarray, shape (n_regressors, n_subcontrasts)
        Contrast matrix. If it has fewer rows than ``X`` has columns, it is
        zero-padded.
    X : ndarray, shape (n_observations, n_regressors)

    Returns
    -------
    estimable : bool
    error : float
        Relative deviation of the projected contrast; 0 up to rounding
        error for an estimable contrast.
    """
    C = np.asarray(C, dtype=float)
    if C.ndim == 1:
        C = C[:, np.newaxis]
    X = np.asarray(X, dtype=float)
    if C.shape[0] < X.shape[1]:
        logger.debug("Contrast does not extend across all regressors, zero-padding")
        C = np.vstack([C, np.zeros((X.shape[1] - C.shape[0], C.shape[1]))])
    elif C.shape[0] > X.shape[1]:
        raise ValueError(
            f"Contrast has {C.shape[0]} rows but design matrix only "
            f"{X.shape[1]} columns"
        )

    _, s, Vt = np.linalg.svd(X, full_matrices=False)
    if s.size == 0 or s.max() == 0:
        return False, float("inf")
    tol = max(X.shape) * np.spacing(s.max())
    V = Vt[s > tol].T
    projector = V @ V.T

    norm_C = np.linalg.norm(C, 2)
    if norm_C == 0:
        return False, float("inf")
    error = float(np.linalg.norm(projector @ C - C, 2) / norm_C)
    estimable = error < max(C.shape) * 10 * np.finfo(float).eps
    return bool(estimable), error
