"""
Convergence monitor and iteration driver.

The driver runs an ``UpdateEngine`` for at most ``max_iterations`` sweeps. After
each sweep it records the evidence, notifies progress handlers and evaluates
the convergence predicate on the ratio of the current to the previous
evidence. A sweep that raises ``NumericalInstability`` is rolled back and the
run ends in ``FAILED`` with the last good state.
"""

import logging
import math
import warnings
from enum import Enum
from typing import Callable, List, Optional, Sequence

from ..config import default_convergence_criterion
from ..core.interfaces import ConvergenceCriterion, ProgressHandler, UpdateEngine
from ..exceptions import NotConverged, NumericalInstability

logger = logging.getLogger(__name__)


class InferenceState(str, Enum):
    RUNNING = "running"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {InferenceState.CONVERGED, InferenceState.EXHAUSTED, InferenceState.FAILED, InferenceState.CANCELLED}
)


def evidence_ratio(current: float, previous: float) -> float:
    """current / previous, defined as 1 when the two are equal."""
    if current == previous:
        return 1.0
    if not math.isfinite(previous) or previous == 0.0:
        return 0.0
    return current / previous


class InferenceMonitor:
    """
    Evidence trajectory and terminal state of one inference run.

    Attributes:
        name: Label used in log messages (the mode name)
        state: Current ``InferenceState``
        evidence_history: Evidence after every completed sweep
        ratio_history: Evidence ratio after every completed sweep
        error: The exception that moved the run to ``FAILED``, if any
    """

    def __init__(self, name: str = "inference"):
        self.name = name
        self.state = InferenceState.RUNNING
        self.evidence_history: List[float] = []
        self.ratio_history: List[float] = []
        self.error: Optional[BaseException] = None

    @property
    def iterations(self) -> int:
        return len(self.evidence_history)

    @property
    def previous_evidence(self) -> float:
        if len(self.evidence_history) < 2:
            return -math.inf
        return self.evidence_history[-2]

    @property
    def current_evidence(self) -> float:
        return self.evidence_history[-1] if self.evidence_history else -math.inf

    @property
    def converged(self) -> bool:
        return self.state == InferenceState.CONVERGED

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def record(self, evidence: float) -> float:
        """Append a sweep's evidence and return the ratio to the previous one."""
        previous = self.current_evidence
        self.evidence_history.append(float(evidence))
        ratio = evidence_ratio(float(evidence), previous)
        self.ratio_history.append(ratio)
        return ratio

    def copy(self) -> "InferenceMonitor":
        other = InferenceMonitor(self.name)
        other.state = self.state
        other.evidence_history = list(self.evidence_history)
        other.ratio_history = list(self.ratio_history)
        other.error = self.error
        return other

    def __repr__(self) -> str:
        return f"InferenceMonitor(name={self.name!r}, state={self.state.value}, iterations={self.iterations})"


class IterationDriver:
    """
    Runs an update engine until convergence, exhaustion, failure or cancellation.

    Args:
        engine: Engine whose ``sweep`` performs one full update schedule
        max_iterations: Upper bound on the number of sweeps
        tolerance: Passed to the convergence criterion
        criterion: ``(evidence_ratio, tolerance) -> bool``
        handlers: Callbacks invoked as ``handler(iteration, evidence)`` after every sweep
        show_progress: Log per-sweep progress at INFO instead of DEBUG
        name: Label for log messages
        cancel_event: Object with ``is_set()``, checked between sweeps only
    """

    def __init__(
        self,
        engine: UpdateEngine,
        max_iterations: int,
        tolerance: float,
        criterion: ConvergenceCriterion = default_convergence_criterion,
        handlers: Sequence[ProgressHandler] = (),
        show_progress: bool = True,
        name: str = "inference",
        cancel_event=None,
    ):
        self.engine = engine
        self.max_iterations = int(max_iterations)
        self.tolerance = tolerance
        self.criterion: Callable[[float, float], bool] = criterion or default_convergence_criterion
        self.handlers = list(handlers)
        self.show_progress = show_progress
        self.cancel_event = cancel_event
        self.monitor = InferenceMonitor(name)
        self._level = logging.INFO if show_progress else logging.DEBUG

    def run(self) -> InferenceMonitor:
        monitor = self.monitor
        for iteration in range(self.max_iterations):
            if self.cancel_event is not None and self.cancel_event.is_set():
                monitor.state = InferenceState.CANCELLED
                logger.log(self._level, "%s cancelled after %d iterations", monitor.name, iteration)
                return monitor

            snapshot = self.engine.snapshot()
            try:
                evidence = self.engine.sweep()
            except NumericalInstability as e:
                self.engine.restore(snapshot)
                monitor.state = InferenceState.FAILED
                monitor.error = e
                logger.error("%s %d: numerical instability in %s update: %s",
                             monitor.name, iteration, e.factor, e)
                return monitor

            ratio = monitor.record(evidence)
            for handler in self.handlers:
                handler(iteration, evidence)
            logger.log(self._level, "%s %d: %.6f", monitor.name, iteration, ratio)

            if iteration > 0 and self.criterion(ratio, self.tolerance):
                monitor.state = InferenceState.CONVERGED
                logger.log(self._level, "%s converged after %d iterations", monitor.name, iteration + 1)
                return monitor

        monitor.state = InferenceState.EXHAUSTED
        warnings.warn(
            f"{monitor.name} did not converge within {self.max_iterations} iterations "
            f"(last evidence {monitor.current_evidence:.6g})",
            NotConverged,
            stacklevel=2,
        )
        return monitor
