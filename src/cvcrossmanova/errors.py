"""Fatal error types raised by the cross-validated MANOVA machinery.

Quality problems that do not prevent a result (inestimable contrasts,
ill-conditioned covariance, ...) are not exceptions; they are collected as
advisory strings and returned next to the result.
"""

from __future__ import annotations

import numpy as np


class CrossManovaError(Exception):
    """Base class for errors raised by cvcrossmanova."""


class NotPositiveDefiniteError(CrossManovaError, np.linalg.LinAlgError):
    """The regularized error covariance matrix has no Cholesky factor.

    Usually means that lambda is too small, or that the variable subset is
    too large relative to the residual degrees of freedom.
    """

    def __init__(self, n_variables: int, lambda_: float):
        self.n_variables = n_variables
        self.lambda_ = lambda_
        super().__init__(
            f"Regularized error covariance of {n_variables} variables is not "
            f"positive definite (lambda={lambda_:g}); increase lambda or "
            f"reduce the number of variables"
        )


class SearchlightPositionError(CrossManovaError):
    """A numerical failure at one searchlight center."""

    def __init__(self, position: tuple[int, ...], cause: Exception):
        self.position = tuple(int(i) for i in position)
        self.cause = cause
        super().__init__(f"Searchlight failed at center {self.position}: {cause}")


class CheckpointMismatchError(CrossManovaError):
    """A checkpoint was written for different analysis parameters."""


class SearchlightCancelled(CrossManovaError):
    """The searchlight was stopped through its cancellation hook."""

    def __init__(self, n_done: int, n_total: int):
        self.n_done = n_done
        self.n_total = n_total
        super().__init__(
            f"Searchlight cancelled after {n_done}/{n_total} mask voxels; "
            f"checkpoint retained"
        )
