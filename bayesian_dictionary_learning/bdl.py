"""
Mode controller: validates inputs, builds the engine and runs the iteration driver.

``BDL.train`` learns coefficients (and, in train mode, the dictionary) from
signals. ``BDL.reconstruct`` evaluates the posterior predictive of the signals
from fixed coefficient and dictionary posteriors.
"""

import logging
from typing import List, Optional

import numpy as np

from .config import BDLParameters, Mode
from .core.distributions import Gamma, Gaussian
from .core.interfaces import ProgressHandler
from .exceptions import BDLError, InvalidArgument
from .inference.engine import ResolvedPriors, VariationalEngine
from .inference.monitor import InferenceMonitor, IterationDriver
from .marginals import Marginals
from .model import (
    BIAS_PRIOR_PRECISION,
    DICTIONARY_MEAN_PRIOR,
    DICTIONARY_PRECISION_PRIOR,
    NOISE_PRECISION_PRIOR,
    ModelDefinition,
)

logger = logging.getLogger(__name__)


class BDL:
    """
    Bayesian dictionary learning model.

    Args:
        parameters: Model flags, mode and iteration settings

    Example:
        >>> model = BDL(BDLParameters(mode=Mode.TRAIN, sparse=True))
        >>> priors = create_priors(n_bases=8, n_samples=signals.shape[1])
        >>> posteriors = model.train(priors, signals)
        >>> BDL(BDLParameters(mode=Mode.RECONSTRUCT)).reconstruct(posteriors).signals.mean
    """

    def __init__(self, parameters: Optional[BDLParameters] = None):
        self.parameters = parameters if parameters is not None else BDLParameters()
        self._handlers: List[ProgressHandler] = []
        self._engine: Optional[VariationalEngine] = None
        self._monitor: Optional[InferenceMonitor] = None

    @property
    def mode(self) -> Mode:
        return self.parameters.mode

    @property
    def name(self) -> str:
        return f"BDL ({self.mode.value})"

    @property
    def inference_monitor(self) -> Optional[InferenceMonitor]:
        """Monitor of the most recent (or in-flight) run."""
        return self._monitor

    @property
    def converged(self) -> bool:
        return self._monitor is not None and self._monitor.converged

    def add_update_handler(self, handler: ProgressHandler) -> None:
        """Register ``handler(iteration, evidence)``, called after every sweep."""
        self._handlers.append(handler)

    def remove_update_handler(self, handler: ProgressHandler) -> None:
        self._handlers.remove(handler)

    def train(self, priors: Marginals, signals: np.ndarray, mask: Optional[np.ndarray] = None,
              cancel_event=None) -> Marginals:
        """
        Learn posteriors from training signals.

        Args:
            priors: Must carry ``dictionary``, or ``dictionary_means`` and
                ``dictionary_precisions`` for hierarchical models. An optional
                ``noise_precision`` and ``bias`` replace the default priors.
            signals: N x M signal matrix; with ``missing_data`` NaN marks a missing entry
            mask: Optional N x M boolean matrix, True where an entry is missing
            cancel_event: ``threading.Event``-like flag checked between sweeps

        Returns:
            Marginals with coefficients, coefficient precisions, noise precision
            and evidence; in train mode also the learned dictionary and its
            hyper-posteriors, in train-fixed mode the supplied dictionary.

        Raises:
            InvalidArgument: If priors or signals are missing or mis-shaped
        """
        mode = self.mode
        if mode == Mode.RECONSTRUCT:
            raise InvalidArgument("train() requires mode TRAIN or TRAIN_FIXED; use reconstruct()")
        if priors is None:
            raise InvalidArgument("priors must not be None")
        if signals is None:
            raise InvalidArgument("signals must not be None")
        signals = np.asarray(signals, dtype=float)
        if signals.ndim != 2:
            raise InvalidArgument(f"signals must be a 2-D matrix, got {signals.ndim} dimension(s)")

        hierarchical_priors = priors.dictionary_means is not None and priors.dictionary_precisions is not None
        if priors.dictionary is None and not hierarchical_priors:
            raise InvalidArgument("priors.dictionary must not be None")

        mask = self._resolve_mask(signals, mask)
        dictionary = priors.dictionary if priors.dictionary is not None else self._dictionary_from_hyper_priors(priors)
        if dictionary.mean.ndim != 2:
            raise InvalidArgument("priors.dictionary must be a K x M array")
        n_bases, n_samples = dictionary.shape
        n_signals = signals.shape[0]
        if signals.shape[1] != n_samples:
            raise InvalidArgument(
                f"signal width {signals.shape[1]} does not match dictionary width {n_samples}"
            )

        definition = ModelDefinition.from_parameters(self.parameters, n_signals, n_bases, n_samples, mode)
        resolved = self._resolve_priors(definition, priors, dictionary)
        rng = np.random.default_rng(self.parameters.seed)
        engine = VariationalEngine(definition, resolved, signals, mask, rng, warm_start=self.parameters.warm_start)
        monitor = self._run(engine, cancel_event)

        posteriors = Marginals(
            coefficients=engine.coefficient_posterior(),
            coefficient_precisions=engine.coefficient_precision_posterior(),
            noise_precision=engine.noise_precision_posterior(),
            evidence=engine.evidence_posterior(),
            bias=engine.bias_posterior() if definition.include_bias else None,
            monitor=monitor,
        )
        if mode == Mode.TRAIN:
            return posteriors.with_updates(
                dictionary=engine.dictionary_posterior(),
                dictionary_precisions=engine.dictionary_precision_posterior(),
                dictionary_means=engine.dictionary_means_posterior() if definition.hierarchical else None,
            )
        return posteriors.with_updates(dictionary=dictionary)

    def reconstruct(self, priors: Marginals, cancel_event=None) -> Marginals:
        """
        Posterior predictive of the signals given fixed coefficients and dictionary.

        Args:
            priors: Must carry ``coefficients`` and either ``dictionary`` or
                ``dictionary_means`` and ``dictionary_precisions``

        Returns:
            Marginals with only ``signals`` (and ``monitor``) set

        Raises:
            InvalidArgument: If priors are missing or their shapes disagree
        """
        if priors is None:
            raise InvalidArgument("priors must not be None")
        if priors.coefficients is None:
            raise InvalidArgument("priors.coefficients must not be None")
        if priors.dictionary is None and (priors.dictionary_means is None or priors.dictionary_precisions is None):
            raise InvalidArgument("priors.dictionary must not be None")
        if priors.coefficients.mean.ndim != 2:
            raise InvalidArgument("priors.coefficients must be an N x K array")

        dictionary = priors.dictionary if priors.dictionary is not None else self._dictionary_from_hyper_priors(priors)
        if dictionary.mean.ndim != 2:
            raise InvalidArgument("priors.dictionary must be a K x M array")
        n_signals, n_bases = priors.coefficients.shape
        if dictionary.shape[0] != n_bases:
            raise InvalidArgument(
                f"coefficients have {n_bases} bases but the dictionary has {dictionary.shape[0]}"
            )
        parameters = self.parameters.for_mode(Mode.RECONSTRUCT)
        definition = ModelDefinition.from_parameters(parameters, n_signals, n_bases, dictionary.shape[1])
        resolved = self._resolve_priors(definition, priors, dictionary)
        engine = VariationalEngine(definition, resolved)
        monitor = self._run(engine, cancel_event, parameters)
        return Marginals(signals=engine.signals_posterior(), monitor=monitor)

    def current_marginals(self) -> Marginals:
        """
        Copied snapshot of the in-flight (or last) posterior.

        Meant for progress handlers; the returned distributions are immutable
        copies, so nothing a handler does can reach the engine.
        """
        engine = self._engine
        if engine is None:
            raise BDLError("No inference has been run on this model")
        if engine.definition.mode == Mode.RECONSTRUCT:
            return Marginals(signals=engine.signals_posterior(), monitor=self._monitor.copy())
        marginals = Marginals(
            coefficients=engine.coefficient_posterior(),
            coefficient_precisions=engine.coefficient_precision_posterior(),
            noise_precision=engine.noise_precision_posterior(),
            evidence=engine.evidence_posterior(),
            bias=engine.bias_posterior() if engine.definition.include_bias else None,
            monitor=self._monitor.copy(),
        )
        if engine.definition.mode == Mode.TRAIN:
            return marginals.with_updates(
                dictionary=engine.dictionary_posterior(),
                dictionary_precisions=engine.dictionary_precision_posterior(),
                dictionary_means=engine.dictionary_means_posterior() if engine.definition.hierarchical else None,
            )
        return marginals.with_updates(dictionary=engine.dictionary_posterior())

    def _run(self, engine: VariationalEngine, cancel_event, parameters: Optional[BDLParameters] = None) -> InferenceMonitor:
        parameters = parameters or self.parameters
        driver = IterationDriver(
            engine,
            max_iterations=parameters.iterations,
            tolerance=parameters.tolerance,
            criterion=parameters.convergence_criterion,
            handlers=self._handlers,
            show_progress=parameters.show_progress,
            name=parameters.mode.value,
            cancel_event=cancel_event,
        )
        self._engine = engine
        self._monitor = driver.monitor
        return driver.run()

    def _resolve_mask(self, signals: np.ndarray, mask: Optional[np.ndarray]) -> Optional[np.ndarray]:
        missing = np.isnan(signals)
        if not self.parameters.missing_data:
            if mask is not None:
                raise InvalidArgument("a missing-data mask requires missing_data=True")
            if missing.any():
                raise InvalidArgument("signals contain NaN; set missing_data=True to treat them as missing")
            if not np.all(np.isfinite(signals)):
                raise InvalidArgument("signals must be finite")
            return None
        if mask is not None:
            mask = np.asarray(mask, dtype=bool)
            if mask.shape != signals.shape:
                raise InvalidArgument(f"mask shape {mask.shape} does not match signals shape {signals.shape}")
            missing = missing | mask
        if not np.all(np.isfinite(signals[~missing])):
            raise InvalidArgument("observed signal entries must be finite")
        return missing

    @staticmethod
    def _dictionary_from_hyper_priors(priors: Marginals) -> Gaussian:
        """Marginal of D ~ N(M, 1/Lambda) moment-matched to a Gaussian."""
        means = priors.dictionary_means
        precisions = priors.dictionary_precisions
        variance = means.variance + 1.0 / precisions.mean
        return Gaussian.from_mean_and_variance(means.mean, variance)

    def _resolve_priors(self, definition: ModelDefinition, priors: Marginals, dictionary: Gaussian) -> ResolvedPriors:
        shape = definition.dictionary_shape
        noise = priors.noise_precision
        if noise is None:
            noise = Gamma(*NOISE_PRECISION_PRIOR)

        dictionary_precisions = priors.dictionary_precisions
        if dictionary_precisions is None:
            dictionary_precisions = Gamma(np.full(shape, DICTIONARY_PRECISION_PRIOR[0]),
                                          np.full(shape, DICTIONARY_PRECISION_PRIOR[1]))
        dictionary_means = priors.dictionary_means
        if dictionary_means is None:
            if definition.hierarchical:
                mean, variance = DICTIONARY_MEAN_PRIOR
                dictionary_means = Gaussian.from_mean_and_variance(np.full(shape, mean), np.full(shape, variance))
            else:
                dictionary_means = Gaussian.point_mass(np.zeros(shape))
        for name, value in (("dictionary_precisions", dictionary_precisions), ("dictionary_means", dictionary_means)):
            if np.shape(value.mean) != shape:
                raise InvalidArgument(f"priors.{name} must have shape {shape}, got {np.shape(value.mean)}")

        bias = priors.bias
        if bias is None:
            bias = Gaussian(np.zeros(definition.n_samples), np.full(definition.n_samples, BIAS_PRIOR_PRECISION))
        elif bias.shape != (definition.n_samples,):
            raise InvalidArgument(f"priors.bias must have shape ({definition.n_samples},), got {bias.shape}")

        coefficients = priors.coefficients
        if not definition.learns_coefficients and coefficients.shape != definition.coefficient_shape:
            raise InvalidArgument(
                f"priors.coefficients must have shape {definition.coefficient_shape}, got {coefficients.shape}"
            )
        return ResolvedPriors(
            noise_precision=noise,
            dictionary_precisions=dictionary_precisions,
            dictionary_means=dictionary_means,
            bias=bias,
            dictionary=dictionary,
            coefficients=coefficients,
        )

    def __repr__(self) -> str:
        return self.name
