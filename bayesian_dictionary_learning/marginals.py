"""
Marginals bundle: the priors passed into and the posteriors returned from a run.

The same container carries both directions. ``create_priors`` and
``create_hyper_priors`` build the usual starting points; a trained bundle can be
passed straight back as the prior of a TrainFixed or Reconstruct run.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

import numpy as np

from .core.distributions import Bernoulli, Gamma, Gaussian
from .exceptions import InvalidArgument
from .model import DICTIONARY_MEAN_PRIOR, DICTIONARY_PRECISION_PRIOR

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Marginals:
    """
    Posterior (or prior) distributions of one run.

    Attributes:
        coefficients: N x K Gaussian
        coefficient_precisions: N x K Gamma
        noise_precision: Scalar Gamma
        dictionary: K x M Gaussian
        dictionary_means: K x M Gaussian (hierarchical models)
        dictionary_precisions: K x M Gamma
        bias: Length-M Gaussian
        evidence: Bernoulli whose log-odds is the evidence lower bound
        signals: N x M posterior predictive (reconstruct mode)
        monitor: Evidence trajectory of the run that produced this bundle
    """
    coefficients: Optional[Gaussian] = None
    coefficient_precisions: Optional[Gamma] = None
    noise_precision: Optional[Gamma] = None
    dictionary: Optional[Gaussian] = None
    dictionary_means: Optional[Gaussian] = None
    dictionary_precisions: Optional[Gamma] = None
    bias: Optional[Gaussian] = None
    evidence: Optional[Bernoulli] = None
    signals: Optional[Gaussian] = None
    monitor: Any = field(default=None, compare=False, repr=False)

    # distributions compare by value and are unhashable, so the bundle is too
    __hash__ = None

    def coefficient_sparsity(self, threshold: float = 1e-2) -> np.ndarray:
        """Per-signal fraction of coefficient means with magnitude below ``threshold``."""
        if self.coefficients is None:
            raise InvalidArgument("Marginals carry no coefficients")
        return self.coefficients.sparsity(threshold, axis=1)

    def average_sparsity(self, threshold: float = 1e-2) -> float:
        return float(np.mean(self.coefficient_sparsity(threshold)))

    def summary(self) -> Dict[str, Any]:
        """
        Noise precision and per-basis norms of the dictionary means.

        The summary is also logged at INFO.
        """
        info: Dict[str, Any] = {}
        if self.noise_precision is not None:
            info["noise_precision"] = float(self.noise_precision.mean)
            logger.info("Noise precision: %r", self.noise_precision)
        if self.dictionary is not None:
            bases: List[Dict[str, float]] = []
            for i, basis in enumerate(self.dictionary.mean):
                l2 = float(np.linalg.norm(basis))
                linf = float(np.max(np.abs(basis)))
                bases.append({"l2": l2, "linf": linf})
                logger.info("Basis %d, L2 %.2f, L∞ %.2f", i, l2, linf)
            info["bases"] = bases
        return info

    def with_updates(self, **changes) -> "Marginals":
        return replace(self, **changes)


def create_priors(
    n_bases: int,
    n_samples: int,
    dictionary: Optional[np.ndarray] = None,
    coefficients: Optional[np.ndarray] = None,
    sigma: float = 1.0,
    rng: Optional[np.random.Generator] = None,
) -> Marginals:
    """
    Priors for a train run.

    Args:
        n_bases: Number of bases K
        n_samples: Signal width M
        dictionary: Optional K x M array used as point-mass dictionary priors
        coefficients: Optional N x K array used as point-mass coefficient priors
        sigma: Standard deviation of the random dictionary prior
        rng: Generator for the random dictionary prior means

    Returns:
        Marginals with ``dictionary`` (and ``coefficients`` when given)
    """
    if dictionary is None:
        rng = rng if rng is not None else np.random.default_rng()
        prior = Gaussian.from_mean_and_variance(
            rng.standard_normal((n_bases, n_samples)), np.full((n_bases, n_samples), sigma * sigma)
        )
    else:
        dictionary = np.asarray(dictionary, dtype=float)
        if dictionary.shape != (n_bases, n_samples):
            raise InvalidArgument(
                f"dictionary must have shape {(n_bases, n_samples)}, got {dictionary.shape}"
            )
        prior = Gaussian.point_mass(dictionary)
    return Marginals(
        dictionary=prior,
        coefficients=None if coefficients is None else Gaussian.point_mass(coefficients),
    )


def create_hyper_priors(
    n_bases: int,
    n_samples: int,
    dictionary: Optional[np.ndarray] = None,
    coefficients: Optional[np.ndarray] = None,
    rng: Optional[np.random.Generator] = None,
) -> Marginals:
    """``create_priors`` plus Gaussian(0, 1) dictionary means and Gamma(1, 1) precisions."""
    priors = create_priors(n_bases, n_samples, dictionary, coefficients, sigma=1.0, rng=rng)
    shape = (n_bases, n_samples)
    mean, variance = DICTIONARY_MEAN_PRIOR
    precision_shape, precision_rate = DICTIONARY_PRECISION_PRIOR
    return priors.with_updates(
        dictionary_means=Gaussian.from_mean_and_variance(np.full(shape, mean), np.full(shape, variance)),
        dictionary_precisions=Gamma(np.full(shape, precision_shape), np.full(shape, precision_rate)),
    )


def normalise_rows(values: np.ndarray) -> np.ndarray:
    """Scale each row to unit L2 norm; all-zero rows are left at zero."""
    values = np.asarray(values, dtype=float)
    norms = np.linalg.norm(values, axis=1, keepdims=True)
    return np.divide(values, norms, out=np.zeros_like(values), where=norms > 0)


def reconstruction_error(signals: np.ndarray, reconstructed, normalise: bool = False) -> float:
    """
    Mean over signals of the per-signal root-mean-square reconstruction error.

    Args:
        signals: N x M observed signals
        reconstructed: N x M array or a ``Gaussian`` whose means are used
        normalise: Compare unit-norm versions of both signals and reconstructions
    """
    if isinstance(reconstructed, Gaussian):
        reconstructed = reconstructed.mean
    signals = np.asarray(signals, dtype=float)
    reconstructed = np.asarray(reconstructed, dtype=float)
    if signals.shape != reconstructed.shape:
        raise InvalidArgument(
            f"signals {signals.shape} and reconstruction {reconstructed.shape} differ in shape"
        )
    if normalise:
        signals = normalise_rows(signals)
        reconstructed = normalise_rows(reconstructed)
    per_signal = np.sqrt(np.nanmean((signals - reconstructed) ** 2, axis=1))
    return float(np.mean(per_signal))
