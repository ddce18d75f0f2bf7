"""Statistics: per-session GLMs, analysis definitions and the cross-validated MANOVA engine."""

from .glm import SessionData, SessionModel, ModeledData, fit_session
from .contrasts import factorial_contrasts, contrast_estimable
from .analysis import Analysis, enumerate_sign_permutations
from .cvcrossmanova import CvCrossManova, Estimate, regularized_covariance

__all__ = [
    "SessionData",
    "SessionModel",
    "ModeledData",
    "fit_session",
    "factorial_contrasts",
    "contrast_estimable",
    "Analysis",
    "enumerate_sign_permutations",
    "CvCrossManova",
    "Estimate",
    "regularized_covariance",
]
