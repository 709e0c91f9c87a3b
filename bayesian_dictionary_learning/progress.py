"""
Progress handlers for the iteration driver.

Handlers are plain callables ``handler(iteration, evidence)`` registered with
``BDL.add_update_handler``. Anything they need (held-out data, companion
models, result accumulators) is passed in explicitly, so concurrent runs never
share state.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from .bdl import BDL
from .config import Mode
from .jsonlog import log
from .marginals import reconstruction_error

logger = logging.getLogger(__name__)


@dataclass
class ConvergenceResults:
    """Per-sweep evidence, held-out reconstruction error and sparsity of one run."""
    name: str = ""
    evidence: List[float] = field(default_factory=list)
    errors: List[float] = field(default_factory=list)
    sparsity: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReconstructionProgressHandler:
    """
    Tracks held-out reconstruction error while a model trains.

    After every training sweep except the first, the current training
    posterior is used to infer coefficients for ``test_signals``
    (train-fixed mode) which are then reconstructed and scored.

    Args:
        train_model: The model being trained; its ``current_marginals`` is read
        test_signals: Held-out N x M signals
        results: Accumulator, created when not given
        normalise: Score unit-norm reconstructions
    """

    def __init__(self, train_model: BDL, test_signals: np.ndarray,
                 results: Optional[ConvergenceResults] = None, normalise: bool = False):
        self.train_model = train_model
        self.test_signals = np.asarray(test_signals, dtype=float)
        self.results = results if results is not None else ConvergenceResults(name=train_model.name)
        self.normalise = normalise
        base = train_model.parameters.model_copy(update={"show_progress": False})
        self.train_fixed_model = BDL(base.for_mode(Mode.TRAIN_FIXED))
        self.reconstruct_model = BDL(base.for_mode(Mode.RECONSTRUCT))

    def __call__(self, iteration: int, evidence: float) -> None:
        if iteration == 0:
            return
        self.results.evidence.append(float(evidence))
        train_posteriors = self.train_model.current_marginals()
        test_posteriors = self.train_fixed_model.train(train_posteriors, self.test_signals)
        reconstructed = self.reconstruct_model.reconstruct(test_posteriors).signals
        error = reconstruction_error(self.test_signals, reconstructed, normalise=self.normalise)
        self.results.errors.append(error)
        self.results.sparsity.append(test_posteriors.average_sparsity())
        logger.info("Reconstruction error %.6g", error)


class JsonProgressLogger:
    """Emits one ``inference_progress`` JSON record per sweep."""

    def __init__(self, name: str = "train", stream=None):
        self.name = name
        self.stream = stream

    def __call__(self, iteration: int, evidence: float) -> None:
        log("inference_progress", stream=self.stream, name=self.name, iteration=iteration, evidence=float(evidence))
