"""
Error taxonomy for Bayesian dictionary learning.

InvalidArgument is raised immediately for missing or mis-shaped inputs.
NumericalInstability aborts the current sweep; the iteration driver catches it
and falls back to the last complete posterior. NotConverged is a warning, not
an error: the caller still receives a valid posterior.
"""


class BDLError(Exception):
    """Base class for all errors raised by this package."""


class InvalidArgument(BDLError, ValueError):
    """Missing, inconsistent or mis-shaped priors, signals or configuration."""


class InvalidParameter(InvalidArgument):
    """Distribution constructed with a non-positive precision, shape or rate."""


class NumericalInstability(BDLError, ArithmeticError):
    """An update produced a non-finite or non-positive precision/rate."""

    def __init__(self, factor: str, message: str = ""):
        self.factor = factor
        detail = f": {message}" if message else ""
        super().__init__(f"Numerical instability while updating {factor}{detail}")


class NotConverged(RuntimeWarning):
    """The iteration budget was exhausted before the convergence criterion held."""
