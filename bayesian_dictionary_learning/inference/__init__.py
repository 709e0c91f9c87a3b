from .engine import ResolvedPriors, VariationalEngine, VariationalState
from .monitor import InferenceMonitor, InferenceState, IterationDriver, evidence_ratio

__all__ = [
    "VariationalEngine",
    "VariationalState",
    "ResolvedPriors",
    "InferenceMonitor",
    "InferenceState",
    "IterationDriver",
    "evidence_ratio",
]
