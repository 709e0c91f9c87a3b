"""
Tests for the convergence monitor and iteration driver state machine.
"""

import logging
import threading
import warnings

import pytest

from bayesian_dictionary_learning import InferenceState, IterationDriver, NotConverged, NumericalInstability
from bayesian_dictionary_learning.inference.monitor import InferenceMonitor, evidence_ratio


class ScriptedEngine:
    """Engine stub returning a fixed evidence sequence; ``None`` raises an instability."""

    def __init__(self, evidences):
        self.evidences = list(evidences)
        self.calls = 0
        self.state = 0
        self.restored = []

    def sweep(self):
        value = self.evidences[self.calls]
        self.calls += 1
        if value is None:
            self.state = "corrupted"
            raise NumericalInstability("dictionary", "test")
        self.state = self.calls
        return value

    def snapshot(self):
        return self.state

    def restore(self, state):
        self.restored.append(state)
        self.state = state


class TestEvidenceRatio:

    def test_equal_values(self):
        assert evidence_ratio(-5.0, -5.0) == 1.0
        assert evidence_ratio(0.0, 0.0) == 1.0

    def test_first_sweep(self):
        assert evidence_ratio(-5.0, float("-inf")) == 0.0

    def test_plain_ratio(self):
        assert evidence_ratio(-99.0, -100.0) == pytest.approx(0.99)


class TestIterationDriver:

    def test_converges(self):
        engine = ScriptedEngine([-100.0, -50.0, -49.99, -49.98])
        monitor = IterationDriver(engine, max_iterations=10, tolerance=1e-3, show_progress=False).run()
        assert monitor.state == InferenceState.CONVERGED
        assert monitor.converged
        assert monitor.iterations == 3
        assert monitor.evidence_history == [-100.0, -50.0, -49.99]
        assert engine.calls == 3

    def test_never_converges_on_first_sweep(self):
        engine = ScriptedEngine([-1.0, -1.0])
        monitor = IterationDriver(engine, 5, 1e-3, criterion=lambda r, t: True, show_progress=False).run()
        assert monitor.iterations == 2
        assert monitor.state == InferenceState.CONVERGED

    def test_exhausted_warns(self):
        engine = ScriptedEngine([-100.0, -50.0, -25.0])
        driver = IterationDriver(engine, max_iterations=3, tolerance=1e-3, show_progress=False)
        with pytest.warns(NotConverged):
            monitor = driver.run()
        assert monitor.state == InferenceState.EXHAUSTED
        assert not monitor.converged
        assert monitor.iterations == 3

    def test_failure_restores_snapshot(self):
        engine = ScriptedEngine([-100.0, -90.0, None, -10.0])
        monitor = IterationDriver(engine, max_iterations=10, tolerance=1e-6, show_progress=False).run()
        assert monitor.state == InferenceState.FAILED
        assert isinstance(monitor.error, NumericalInstability)
        assert monitor.error.factor == "dictionary"
        assert engine.state == 2
        assert engine.restored == [2]
        assert monitor.evidence_history == [-100.0, -90.0]

    def test_handlers_receive_iteration_and_evidence(self):
        seen = []
        engine = ScriptedEngine([-3.0, -2.0, -1.0])
        driver = IterationDriver(engine, 3, 1e-9, criterion=lambda r, t: False,
                                 handlers=[lambda i, e: seen.append((i, e))], show_progress=False)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", NotConverged)
            driver.run()
        assert seen == [(0, -3.0), (1, -2.0), (2, -1.0)]

    def test_cancel_between_sweeps(self):
        cancel = threading.Event()
        engine = ScriptedEngine([-3.0, -2.0, -1.0, -0.5])

        def stop_after_second(iteration, evidence):
            if iteration == 1:
                cancel.set()

        driver = IterationDriver(engine, 10, 1e-9, criterion=lambda r, t: False,
                                 handlers=[stop_after_second], show_progress=False, cancel_event=cancel)
        monitor = driver.run()
        assert monitor.state == InferenceState.CANCELLED
        assert monitor.iterations == 2
        assert engine.calls == 2

    def test_progress_logged_at_info(self, caplog):
        engine = ScriptedEngine([-2.0, -2.0])
        with caplog.at_level(logging.INFO, logger="bayesian_dictionary_learning"):
            IterationDriver(engine, 5, 1e-3, name="train", show_progress=True).run()
        assert any(record.getMessage().startswith("train 0:") for record in caplog.records)
        assert any("converged" in record.getMessage() for record in caplog.records)

    def test_quiet_progress_not_logged_at_info(self, caplog):
        engine = ScriptedEngine([-2.0, -2.0])
        with caplog.at_level(logging.INFO, logger="bayesian_dictionary_learning"):
            IterationDriver(engine, 5, 1e-3, name="train", show_progress=False).run()
        assert not caplog.records


class TestInferenceMonitor:

    def test_record_and_copy(self):
        monitor = InferenceMonitor("train")
        assert monitor.current_evidence == float("-inf")
        monitor.record(-10.0)
        ratio = monitor.record(-9.0)
        assert ratio == pytest.approx(0.9)
        assert monitor.previous_evidence == -10.0
        clone = monitor.copy()
        monitor.record(-8.0)
        assert clone.iterations == 2
        assert monitor.iterations == 3
        assert not monitor.finished
