from .distributions import Bernoulli, Gamma, Gaussian, truncated_gaussian_moments
from .interfaces import ConvergenceCriterion, ProgressHandler, UpdateEngine

__all__ = [
    "Gaussian",
    "Gamma",
    "Bernoulli",
    "truncated_gaussian_moments",
    "ConvergenceCriterion",
    "ProgressHandler",
    "UpdateEngine",
]
