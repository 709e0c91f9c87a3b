"""
Closed-form distribution primitives used by the variational engine.

Each class is elementwise: parameters are NumPy arrays of any shape (a 0-d
array for a scalar), so a K x M dictionary posterior is a single ``Gaussian``
rather than a nested list of objects. Parameter arrays are stored read-only,
which keeps returned posteriors immutable.

Gaussian is parameterised by mean and precision (inverse variance); a precision
of ``inf`` is a point mass. Gamma uses shape and rate. Bernoulli stores log-odds,
which is how model evidence is reported.

References:
    Winn & Bishop (2005). Variational Message Passing. JMLR 6.
    Bishop (2006). Pattern Recognition and Machine Learning, ch. 10.
"""

from __future__ import annotations

from typing import Any, Tuple, Union

import numpy as np
from scipy import special

from ..exceptions import InvalidParameter

ArrayLike = Union[float, np.ndarray]

LOG_2PI = float(np.log(2.0 * np.pi))


def _frozen(values: ArrayLike) -> np.ndarray:
    arr = np.array(values, dtype=float)
    arr.setflags(write=False)
    return arr


class Gaussian:
    """
    Elementwise univariate Gaussian with mean/precision parameterisation.

    Args:
        mean: Posterior means
        precision: Posterior precisions, strictly positive (``inf`` = point mass)

    Raises:
        InvalidParameter: If any precision is non-positive or NaN, or the
            shapes of ``mean`` and ``precision`` cannot be broadcast together
    """

    __slots__ = ("_mean", "_precision")

    def __init__(self, mean: ArrayLike, precision: ArrayLike):
        try:
            mean_arr, precision_arr = np.broadcast_arrays(
                np.asarray(mean, dtype=float), np.asarray(precision, dtype=float)
            )
        except ValueError as e:
            raise InvalidParameter(f"Gaussian mean/precision shapes do not match: {e}") from e
        if np.any(np.isnan(precision_arr)) or np.any(precision_arr <= 0):
            raise InvalidParameter("Gaussian precision must be strictly positive")
        if np.any(~np.isfinite(mean_arr)):
            raise InvalidParameter("Gaussian mean must be finite")
        self._mean = _frozen(mean_arr)
        self._precision = _frozen(precision_arr)

    @classmethod
    def from_mean_and_precision(cls, mean: ArrayLike, precision: ArrayLike) -> "Gaussian":
        return cls(mean, precision)

    @classmethod
    def from_mean_and_variance(cls, mean: ArrayLike, variance: ArrayLike) -> "Gaussian":
        variance = np.asarray(variance, dtype=float)
        if np.any(np.isnan(variance)) or np.any(variance < 0):
            raise InvalidParameter("Gaussian variance must be non-negative")
        with np.errstate(divide="ignore"):
            return cls(mean, 1.0 / variance)

    @classmethod
    def from_natural(cls, mean_times_precision: ArrayLike, precision: ArrayLike) -> "Gaussian":
        """Build from natural parameters (precision * mean, precision)."""
        precision = np.asarray(precision, dtype=float)
        if np.any(np.isnan(precision)) or np.any(precision <= 0):
            raise InvalidParameter("Gaussian precision must be strictly positive")
        return cls(np.asarray(mean_times_precision, dtype=float) / precision, precision)

    @classmethod
    def point_mass(cls, values: ArrayLike) -> "Gaussian":
        """Point masses at ``values``, e.g. for seeding from a precomputed dictionary."""
        values = np.asarray(values, dtype=float)
        return cls(values, np.full(values.shape, np.inf))

    @classmethod
    def standard(cls, shape: Tuple[int, ...], mean: float = 0.0, precision: float = 1.0) -> "Gaussian":
        return cls(np.full(shape, mean), np.full(shape, precision))

    @property
    def mean(self) -> np.ndarray:
        return self._mean

    @property
    def precision(self) -> np.ndarray:
        return self._precision

    @property
    def variance(self) -> np.ndarray:
        return 1.0 / self._precision

    @property
    def std(self) -> np.ndarray:
        return np.sqrt(self.variance)

    @property
    def second_moment(self) -> np.ndarray:
        """E[x^2] = mean^2 + variance."""
        return self._mean ** 2 + self.variance

    @property
    def mean_times_precision(self) -> np.ndarray:
        return self._mean * self._precision

    @property
    def is_point_mass(self) -> np.ndarray:
        return np.isinf(self._precision)

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._mean.shape

    def entropy(self) -> np.ndarray:
        """Differential entropy, elementwise (-inf for point masses)."""
        with np.errstate(divide="ignore"):
            return 0.5 * (LOG_2PI + 1.0 - np.log(self._precision))

    def kl_divergence(self, other: "Gaussian") -> np.ndarray:
        """KL(self || other), elementwise."""
        return gaussian_kl(self._mean, self._precision, other.mean, other.precision)

    def sparsity(self, threshold: float = 1e-2, axis: Any = None) -> Union[float, np.ndarray]:
        """Fraction of entries whose mean magnitude is below ``threshold``."""
        return np.mean(np.abs(self._mean) < threshold, axis=axis)

    def __mul__(self, other: "Gaussian") -> "Gaussian":
        """Product of densities (sum of natural parameters), normalised."""
        precision = self._precision + other.precision
        with np.errstate(invalid="ignore"):
            weighted = np.where(
                np.isinf(self._precision), self._mean,
                np.where(np.isinf(other.precision), other.mean,
                         (self._mean * self._precision + other.mean * other.precision) / precision),
            )
        return Gaussian(weighted, precision)

    def __getitem__(self, index) -> "Gaussian":
        return Gaussian(self._mean[index], self._precision[index])

    def __len__(self) -> int:
        return len(self._mean)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Gaussian):
            return NotImplemented
        return np.array_equal(self._mean, other.mean) and np.array_equal(self._precision, other.precision)

    def __repr__(self) -> str:
        if self._mean.ndim == 0:
            return f"Gaussian({float(self._mean):.4g}, {float(self.variance):.4g})"
        return f"Gaussian(shape={self.shape})"


class Gamma:
    """
    Elementwise Gamma distribution with shape/rate parameterisation.

    Raises:
        InvalidParameter: If any shape or rate is non-positive or non-finite
    """

    __slots__ = ("_shape", "_rate")

    def __init__(self, shape: ArrayLike, rate: ArrayLike):
        try:
            shape_arr, rate_arr = np.broadcast_arrays(
                np.asarray(shape, dtype=float), np.asarray(rate, dtype=float)
            )
        except ValueError as e:
            raise InvalidParameter(f"Gamma shape/rate shapes do not match: {e}") from e
        for name, arr in (("shape", shape_arr), ("rate", rate_arr)):
            if np.any(~np.isfinite(arr)) or np.any(arr <= 0):
                raise InvalidParameter(f"Gamma {name} must be finite and strictly positive")
        self._shape = _frozen(shape_arr)
        self._rate = _frozen(rate_arr)

    @classmethod
    def from_shape_and_rate(cls, shape: ArrayLike, rate: ArrayLike) -> "Gamma":
        return cls(shape, rate)

    @classmethod
    def from_shape_and_scale(cls, shape: ArrayLike, scale: ArrayLike) -> "Gamma":
        return cls(shape, 1.0 / np.asarray(scale, dtype=float))

    @classmethod
    def from_mean_and_variance(cls, mean: ArrayLike, variance: ArrayLike) -> "Gamma":
        mean = np.asarray(mean, dtype=float)
        variance = np.asarray(variance, dtype=float)
        return cls(mean ** 2 / variance, mean / variance)

    @classmethod
    def standard(cls, shape_of_array: Tuple[int, ...], shape: float = 1.0, rate: float = 1.0) -> "Gamma":
        return cls(np.full(shape_of_array, shape), np.full(shape_of_array, rate))

    @property
    def shape(self) -> np.ndarray:
        """Shape parameter (use ``array_shape`` for the array dimensions)."""
        return self._shape

    @property
    def rate(self) -> np.ndarray:
        return self._rate

    @property
    def scale(self) -> np.ndarray:
        return 1.0 / self._rate

    @property
    def mean(self) -> np.ndarray:
        return self._shape / self._rate

    @property
    def variance(self) -> np.ndarray:
        return self._shape / self._rate ** 2

    @property
    def std(self) -> np.ndarray:
        return np.sqrt(self.variance)

    @property
    def mean_log(self) -> np.ndarray:
        """E[log x] = digamma(shape) - log(rate)."""
        return special.digamma(self._shape) - np.log(self._rate)

    @property
    def array_shape(self) -> Tuple[int, ...]:
        return self._shape.shape

    def entropy(self) -> np.ndarray:
        a, b = self._shape, self._rate
        return a - np.log(b) + special.gammaln(a) + (1.0 - a) * special.digamma(a)

    def kl_divergence(self, other: "Gamma") -> np.ndarray:
        """KL(self || other), elementwise."""
        return gamma_kl(self._shape, self._rate, other.shape, other.rate)

    def __mul__(self, other: "Gamma") -> "Gamma":
        return Gamma(self._shape + other.shape - 1.0, self._rate + other.rate)

    def __getitem__(self, index) -> "Gamma":
        return Gamma(self._shape[index], self._rate[index])

    def __len__(self) -> int:
        return len(self._shape)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Gamma):
            return NotImplemented
        return np.array_equal(self._shape, other.shape) and np.array_equal(self._rate, other.rate)

    def __repr__(self) -> str:
        if self._shape.ndim == 0:
            return f"Gamma({float(self._shape):.4g}, {float(self.scale):.4g})[mean={float(self.mean):.4g}]"
        return f"Gamma(shape={self.array_shape})"


class Bernoulli:
    """Bernoulli in log-odds form. Model evidence is carried as its log-odds."""

    __slots__ = ("_log_odds",)

    def __init__(self, log_odds: ArrayLike):
        log_odds = np.asarray(log_odds, dtype=float)
        if np.any(np.isnan(log_odds)):
            raise InvalidParameter("Bernoulli log-odds must not be NaN")
        self._log_odds = _frozen(log_odds)

    @classmethod
    def from_log_odds(cls, log_odds: ArrayLike) -> "Bernoulli":
        return cls(log_odds)

    @classmethod
    def from_probability(cls, probability: ArrayLike) -> "Bernoulli":
        probability = np.asarray(probability, dtype=float)
        if np.any((probability < 0) | (probability > 1)):
            raise InvalidParameter("Bernoulli probability must lie in [0, 1]")
        with np.errstate(divide="ignore"):
            return cls(special.logit(probability))

    @property
    def log_odds(self) -> np.ndarray:
        return self._log_odds

    @property
    def probability(self) -> np.ndarray:
        return special.expit(self._log_odds)

    @property
    def mean(self) -> np.ndarray:
        return self.probability

    @property
    def variance(self) -> np.ndarray:
        p = self.probability
        return p * (1.0 - p)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Bernoulli):
            return NotImplemented
        return np.array_equal(self._log_odds, other.log_odds)

    def __repr__(self) -> str:
        if self._log_odds.ndim == 0:
            return f"Bernoulli(log_odds={float(self._log_odds):.6g})"
        return f"Bernoulli(shape={self._log_odds.shape})"


def truncated_gaussian_moments(location: np.ndarray, precision: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Moments of N(location, 1/precision) truncated to [0, inf).

    Uses ``log_ndtr`` so the normaliser stays accurate deep in the lower tail.

    Args:
        location: Mean of the untruncated Gaussian
        precision: Precision of the untruncated Gaussian

    Returns:
        (mean, variance, entropy) of the truncated distribution
    """
    sd = 1.0 / np.sqrt(precision)
    alpha = -location / sd
    log_z = special.log_ndtr(-alpha)
    hazard = np.exp(-0.5 * alpha ** 2 - 0.5 * LOG_2PI - log_z)
    mean = np.maximum(location + sd * hazard, 0.0)
    variance = sd ** 2 * (1.0 + alpha * hazard - hazard ** 2)
    # cancellation in the far tail can leave a tiny negative residue
    variance = np.maximum(variance, sd ** 2 * 1e-12)
    entropy = 0.5 * (LOG_2PI + 1.0) + np.log(sd) + log_z + 0.5 * alpha * hazard
    return mean, variance, entropy


def gaussian_kl(mean_q, precision_q, mean_p, precision_p) -> np.ndarray:
    """KL(N(mean_q, 1/precision_q) || N(mean_p, 1/precision_p)) on raw arrays."""
    return 0.5 * (
        np.log(precision_q / precision_p)
        + precision_p * (1.0 / precision_q + (mean_q - mean_p) ** 2)
        - 1.0
    )


def gamma_kl(shape_q, rate_q, shape_p, rate_p) -> np.ndarray:
    """KL(Gamma(shape_q, rate_q) || Gamma(shape_p, rate_p)) on raw arrays."""
    return (
        (shape_q - shape_p) * special.digamma(shape_q)
        - special.gammaln(shape_q) + special.gammaln(shape_p)
        + shape_p * (np.log(rate_q) - np.log(rate_p))
        + shape_q * (rate_p - rate_q) / rate_q
    )


def gamma_mean_log(shape, rate) -> np.ndarray:
    """E[log x] under Gamma(shape, rate) on raw arrays."""
    return special.digamma(shape) - np.log(rate)
