"""
Batch-sequential dictionary learning.

Each ``partial_fit`` call runs a full hierarchical train on one batch, using
the previous batch's posterior over dictionary means, dictionary precisions and
noise precision as the new prior, and its dictionary as the warm start.
"""

import logging
from threading import Lock
from typing import Optional

import numpy as np

from .bdl import BDL
from .config import BDLParameters, Mode
from .exceptions import InvalidArgument
from .marginals import Marginals, create_hyper_priors

logger = logging.getLogger(__name__)


class OnlineBDL:
    """
    Online Bayesian dictionary learning with a partial_fit interface.

    Parameters
    ----------
    n_bases : int
        Number of dictionary bases K
    parameters : BDLParameters, optional
        Model flags; ``mode``, ``hierarchical`` and ``warm_start`` are overridden
    thread_safe : bool, default=True
        Serialise concurrent ``partial_fit`` calls

    Examples
    --------
    >>> learner = OnlineBDL(n_bases=8)
    >>> for batch in batches:
    ...     learner.partial_fit(batch)
    >>> learner.dictionary.mean
    """

    def __init__(self, n_bases: int, parameters: Optional[BDLParameters] = None, thread_safe: bool = True):
        if not isinstance(n_bases, int) or n_bases < 1:
            raise InvalidArgument(f"n_bases must be a positive integer, got {n_bases!r}")
        parameters = parameters if parameters is not None else BDLParameters()
        self.n_bases = n_bases
        self.parameters = parameters.model_copy(
            update={"mode": Mode.TRAIN, "hierarchical": True, "warm_start": True}
        )
        self._model = BDL(self.parameters)
        self._posteriors: Optional[Marginals] = None
        self._n_signals_seen = 0
        self._n_batches_seen = 0
        self._lock = Lock() if thread_safe else None

    @property
    def posteriors(self) -> Optional[Marginals]:
        return self._posteriors

    @property
    def dictionary(self):
        return None if self._posteriors is None else self._posteriors.dictionary

    @property
    def n_signals_seen(self) -> int:
        return self._n_signals_seen

    @property
    def n_batches_seen(self) -> int:
        return self._n_batches_seen

    @property
    def model(self) -> BDL:
        return self._model

    def _safe_operation(self, func, *args, **kwargs):
        if self._lock is not None:
            with self._lock:
                return func(*args, **kwargs)
        return func(*args, **kwargs)

    def _next_priors(self, n_samples: int) -> Marginals:
        previous = self._posteriors
        if previous is None:
            rng = np.random.default_rng(self.parameters.seed)
            return create_hyper_priors(self.n_bases, n_samples, rng=rng)
        if previous.dictionary.shape[1] != n_samples:
            raise InvalidArgument(
                f"Expected signals of width {previous.dictionary.shape[1]}, got {n_samples}"
            )
        return Marginals(
            dictionary=previous.dictionary,
            dictionary_means=previous.dictionary_means,
            dictionary_precisions=previous.dictionary_precisions,
            noise_precision=previous.noise_precision,
            bias=previous.bias,
        )

    def partial_fit(self, signals: np.ndarray, mask: Optional[np.ndarray] = None) -> "OnlineBDL":
        """
        Update the posterior with one batch of signals.

        Args:
            signals: N x M batch (a single length-M signal is accepted)
            mask: Optional N x M boolean matrix, True where an entry is missing

        Returns:
            self
        """
        def _partial_fit_impl():
            batch = np.asarray(signals, dtype=float)
            if batch.ndim == 1:
                batch = batch[np.newaxis, :]
            priors = self._next_priors(batch.shape[1])
            self._posteriors = self._model.train(priors, batch, mask)
            self._n_signals_seen += batch.shape[0]
            self._n_batches_seen += 1
            logger.debug("batch %d: %d signals, evidence %.6g", self._n_batches_seen,
                         batch.shape[0], float(self._posteriors.evidence.log_odds))
            return self

        return self._safe_operation(_partial_fit_impl)

    def fit(self, signals: np.ndarray, mask: Optional[np.ndarray] = None) -> "OnlineBDL":
        """Reset, then learn from ``signals`` as a single batch."""
        self.reset()
        return self.partial_fit(signals, mask)

    def reset(self) -> None:
        self._posteriors = None
        self._n_signals_seen = 0
        self._n_batches_seen = 0

    def transform(self, signals: np.ndarray) -> np.ndarray:
        """Coefficient posterior means of ``signals`` under the current dictionary."""
        if self._posteriors is None:
            raise InvalidArgument("OnlineBDL has not seen any data yet")
        model = BDL(self.parameters.for_mode(Mode.TRAIN_FIXED))
        batch = np.asarray(signals, dtype=float)
        if batch.ndim == 1:
            batch = batch[np.newaxis, :]
        return np.array(model.train(self._posteriors, batch).coefficients.mean)
