"""
Protocol interfaces for the inference loop.

Defines contracts for: UpdateEngine, ConvergenceCriterion, ProgressHandler.
The iteration driver only talks to these, so an alternative engine or a
custom stopping rule can be plugged in without touching the loop.
"""

from typing import Any, Protocol


class UpdateEngine(Protocol):
    """
    One-sweep variational update engine.

    A sweep applies every update step of the model's schedule once and returns
    the evidence lower bound of the resulting factorised posterior.
    """

    def sweep(self) -> float:
        """
        Run one full update schedule.

        Returns:
            Evidence lower bound after the sweep

        Raises:
            NumericalInstability: If an update produced a non-finite or
                non-positive precision, or non-finite moments
        """
        ...

    def snapshot(self) -> Any:
        """Opaque copy of the current posterior state."""
        ...

    def restore(self, state: Any) -> None:
        """Reset the posterior state to a previous snapshot."""
        ...


class ConvergenceCriterion(Protocol):
    """Stopping rule evaluated on the ratio of successive evidence values."""

    def __call__(self, evidence_ratio: float, tolerance: float) -> bool:
        ...


class ProgressHandler(Protocol):
    """Callback invoked after every completed sweep."""

    def __call__(self, iteration: int, evidence: float) -> None:
        ...
