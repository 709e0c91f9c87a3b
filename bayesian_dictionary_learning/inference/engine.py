"""
Mean-field variational update engine.

Closed-form coordinate-ascent updates for the conjugate-exponential model in
``bayesian_dictionary_learning.model``. One call to ``sweep`` runs the model's
schedule once, in order:

1. coefficient precisions   Gamma(a + 1/2, b + E[C^2] / 2)
2. coefficients             Gaussian (zero-truncated when non-negative)
3. dictionary precisions    Gamma(1 + 1/2, 1 + E[(D - M)^2] / 2)
3b. dictionary means        Gaussian, hierarchical models only
4. dictionary               Gaussian, optionally with the unit-norm pseudo-observation
4b. bias                    Gaussian, when a bias is included
5. noise precision          Gamma over the unmasked entries
6. evidence                 ELBO of the factorised posterior

Coefficients are updated basis by basis with each basis' update covering all
signals at once. Signals are conditionally independent given the dictionary,
so this visits exactly the same fixed points as a signal-by-signal sweep; only
the coupling between bases inside one signal needs to be sequential, and it is.
The same holds for dictionary rows.

Masked entries carry weight zero in every sum. A signal (dictionary column)
with no observed entry keeps its previous posterior.

References:
    Winn & Bishop (2005). Variational Message Passing. JMLR 6.
    Bishop (2006). Pattern Recognition and Machine Learning, sections 10.1-10.3.
"""

import logging
from dataclasses import dataclass, fields
from typing import Optional, Tuple

import numpy as np

from ..core.distributions import (
    LOG_2PI,
    Bernoulli,
    Gamma,
    Gaussian,
    gamma_kl,
    gamma_mean_log,
    gaussian_kl,
    truncated_gaussian_moments,
)
from ..exceptions import NumericalInstability
from ..model import (
    BIAS,
    COEFFICIENT_PRECISIONS,
    COEFFICIENTS,
    DICTIONARY,
    DICTIONARY_MEANS,
    DICTIONARY_PRECISIONS,
    EVIDENCE,
    NOISE_PRECISION,
    NORM_PSEUDO_OBSERVATION,
    SIGNALS,
    ModelDefinition,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedPriors:
    """
    Fully specified inputs for one engine run.

    Latent factors are initialised from (and regularised towards) these
    distributions; factors that are observed in the current mode are held at
    them for the whole run.
    """
    noise_precision: Gamma
    dictionary_precisions: Gamma
    dictionary_means: Gaussian
    bias: Gaussian
    dictionary: Optional[Gaussian] = None
    coefficients: Optional[Gaussian] = None


@dataclass
class VariationalState:
    """Mutable parameters of the factorised posterior, owned by one engine."""
    coefficient_location: np.ndarray
    coefficient_precision: np.ndarray
    coefficient_mean: np.ndarray
    coefficient_second_moment: np.ndarray
    coefficient_precision_shape: np.ndarray
    coefficient_precision_rate: np.ndarray
    dictionary_mean: np.ndarray
    dictionary_precision: np.ndarray
    dictionary_precision_shape: np.ndarray
    dictionary_precision_rate: np.ndarray
    means_mean: np.ndarray
    means_precision: np.ndarray
    bias_mean: np.ndarray
    bias_precision: np.ndarray
    noise_shape: float
    noise_rate: float
    evidence: float = 0.0
    signal_mean: Optional[np.ndarray] = None
    signal_variance: Optional[np.ndarray] = None

    def copy(self) -> "VariationalState":
        values = {}
        for f in fields(self):
            value = getattr(self, f.name)
            values[f.name] = value.copy() if isinstance(value, np.ndarray) else value
        return VariationalState(**values)


def _inverse(precision: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore"):
        return 1.0 / precision


def _gaussian_entropy(precision: np.ndarray) -> np.ndarray:
    return 0.5 * (LOG_2PI + 1.0 - np.log(precision))


def _check(factor: str, means=(), positives=()) -> None:
    for arr in means:
        if not np.all(np.isfinite(arr)):
            raise NumericalInstability(factor, "non-finite posterior mean")
    for arr in positives:
        arr = np.asarray(arr)
        if np.any(np.isnan(arr)) or np.any(arr <= 0):
            raise NumericalInstability(factor, "non-positive precision or rate")


def _norm_constrained_entry(precision: float, weighted: float, others: float,
                            mean: float, variance: float) -> Tuple[float, float]:
    """
    Maximise the evidence over one dictionary entry N(mean, variance).

    Besides the usual quadratic terms ``-precision * E[D^2] / 2 + weighted * E[D]``
    the entry sees the pseudo-observation of its row's squared norm, whose
    expected log-density is quartic in the mean. ``others`` is the sum of the
    squared means of the rest of the row. The mean is set to the best root of
    the stationarity cubic (the current mean is kept if no root beats it), then
    the variance to the positive root of its quadratic. Neither step can lower
    the evidence.
    """
    value, noise = NORM_PSEUDO_OBSERVATION
    shift = 2.0 * (others - value)

    def objective(mu, var):
        second = mu ** 2 + var
        return (-0.5 * precision * second + weighted * mu + 0.5 * np.log(var)
                - 0.5 * (second ** 2 + shift * mu ** 2) / noise)

    roots = np.roots([2.0, 0.0, precision * noise + 2.0 * variance + shift, -noise * weighted])
    candidates = np.append(roots.real, mean)
    mean = float(candidates[np.argmax(objective(candidates, variance))])

    # 2 v^2 + b v - noise = 0
    b = precision * noise + 2.0 * mean ** 2
    variance = 2.0 * noise / (b + np.sqrt(b * b + 8.0 * noise))
    return mean, float(variance)


class VariationalEngine:
    """
    Coordinate-ascent engine for one inference run.

    Args:
        definition: Shapes, mode and model flags
        priors: Resolved priors / fixed factors for this run
        signals: N x M signal matrix; ignored (may be None) in reconstruct mode
        mask: Optional N x M boolean matrix, True where an entry is missing
        rng: Generator for the symmetry-breaking dictionary draw
        warm_start: Initialise a latent dictionary from ``priors.dictionary``
    """

    def __init__(
        self,
        definition: ModelDefinition,
        priors: ResolvedPriors,
        signals: Optional[np.ndarray] = None,
        mask: Optional[np.ndarray] = None,
        rng: Optional[np.random.Generator] = None,
        warm_start: bool = False,
    ):
        self.definition = definition
        self.priors = priors
        shape = definition.signal_shape
        if signals is None:
            signals = np.zeros(shape)
        signals = np.asarray(signals, dtype=float)
        if mask is None:
            observed = np.ones(shape)
        else:
            observed = (~np.asarray(mask, dtype=bool)).astype(float)
        self._observed = observed
        self._signals = np.where(observed > 0, signals, 0.0)
        self._observed_per_signal = observed.sum(axis=1)
        self._observed_per_sample = observed.sum(axis=0)
        self._n_observed = float(observed.sum())
        self._rng = rng if rng is not None else np.random.default_rng()
        self._steps = tuple((name, getattr(self, f"_update_{name}")) for name in definition.schedule)
        self.iteration = 0
        self.state = self._initial_state(warm_start)

    # ------------------------------------------------------------------ setup

    def _initial_state(self, warm_start: bool) -> VariationalState:
        d = self.definition
        p = self.priors
        a, b = d.coefficient_prior
        coefficient_shape = d.coefficient_shape
        dictionary_shape = d.dictionary_shape

        if d.learns_coefficients:
            location = np.zeros(coefficient_shape)
            precision = np.ones(coefficient_shape)
        else:
            location = np.array(p.coefficients.mean, dtype=float)
            precision = np.array(p.coefficients.precision, dtype=float)

        means_mean = np.broadcast_to(p.dictionary_means.mean, dictionary_shape).astype(float)
        means_precision = np.broadcast_to(p.dictionary_means.precision, dictionary_shape).astype(float)
        lambda_shape = np.broadcast_to(p.dictionary_precisions.shape, dictionary_shape).astype(float)
        lambda_rate = np.broadcast_to(p.dictionary_precisions.rate, dictionary_shape).astype(float)

        if d.learns_dictionary and not (warm_start and p.dictionary is not None):
            # independent draw from the prior breaks the C/D symmetry
            prior_precision = lambda_shape / lambda_rate
            dictionary_mean = means_mean + self._rng.standard_normal(dictionary_shape) / np.sqrt(prior_precision)
            dictionary_precision = prior_precision.copy()
        else:
            dictionary_mean = np.array(p.dictionary.mean, dtype=float)
            dictionary_precision = np.array(p.dictionary.precision, dtype=float)
            if d.learns_dictionary:
                # a point-mass warm start would have -inf entropy
                dictionary_precision = np.where(
                    np.isinf(dictionary_precision), lambda_shape / lambda_rate, dictionary_precision
                )

        state = VariationalState(
            coefficient_location=location,
            coefficient_precision=precision,
            coefficient_mean=location.copy(),
            coefficient_second_moment=location ** 2 + _inverse(precision),
            coefficient_precision_shape=np.full(coefficient_shape, a),
            coefficient_precision_rate=np.full(coefficient_shape, b),
            dictionary_mean=dictionary_mean,
            dictionary_precision=dictionary_precision,
            dictionary_precision_shape=lambda_shape.copy(),
            dictionary_precision_rate=lambda_rate.copy(),
            means_mean=means_mean.copy(),
            means_precision=means_precision.copy(),
            bias_mean=np.broadcast_to(p.bias.mean, (d.n_samples,)).astype(float),
            bias_precision=np.broadcast_to(p.bias.precision, (d.n_samples,)).astype(float),
            noise_shape=float(p.noise_precision.shape),
            noise_rate=float(p.noise_precision.rate),
        )
        if d.learns_coefficients and d.non_negative:
            mean, variance, _ = truncated_gaussian_moments(location, precision)
            state.coefficient_mean = mean
            state.coefficient_second_moment = mean ** 2 + variance
        if not d.include_bias:
            state.bias_mean = np.zeros(d.n_samples)
            state.bias_precision = np.full(d.n_samples, np.inf)
        return state

    # --------------------------------------------------------------- protocol

    def sweep(self) -> float:
        """Apply every update of the schedule once and return the new evidence."""
        with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
            for name, step in self._steps:
                step()
        self.iteration += 1
        return self.state.evidence

    def snapshot(self) -> VariationalState:
        return self.state.copy()

    def restore(self, state: VariationalState) -> None:
        self.state = state.copy()

    # ---------------------------------------------------------------- moments

    @property
    def noise_mean(self) -> float:
        return self.state.noise_shape / self.state.noise_rate

    def _dictionary_moments(self) -> Tuple[np.ndarray, np.ndarray]:
        s = self.state
        return s.dictionary_mean, s.dictionary_mean ** 2 + _inverse(s.dictionary_precision)

    def _means_moments(self) -> Tuple[np.ndarray, np.ndarray]:
        s = self.state
        return s.means_mean, s.means_mean ** 2 + _inverse(s.means_precision)

    def _bias_variance(self) -> np.ndarray:
        return _inverse(self.state.bias_precision)

    def _predictive_moments(self) -> Tuple[np.ndarray, np.ndarray]:
        """Mean and variance of C @ D + bias under the factorised posterior."""
        s = self.state
        ec, ec2 = s.coefficient_mean, s.coefficient_second_moment
        ed, ed2 = self._dictionary_moments()
        mean = ec @ ed + s.bias_mean
        variance = ec2 @ ed2 - (ec ** 2) @ (ed ** 2) + self._bias_variance()
        return mean, np.maximum(variance, 0.0)

    def expected_squared_error(self) -> np.ndarray:
        """E[(X - C @ D - bias)^2] per entry (masked entries included, unweighted)."""
        mean, variance = self._predictive_moments()
        return (self._signals - mean) ** 2 + variance

    # ---------------------------------------------------------------- updates

    def _update_coefficient_precisions(self) -> None:
        s = self.state
        a, b = self.definition.coefficient_prior
        s.coefficient_precision_shape = np.full(self.definition.coefficient_shape, a + 0.5)
        s.coefficient_precision_rate = b + 0.5 * s.coefficient_second_moment
        _check(COEFFICIENT_PRECISIONS, positives=(s.coefficient_precision_rate,))

    def _update_coefficients(self) -> None:
        s = self.state
        w = self._observed
        tau = self.noise_mean
        alpha = s.coefficient_precision_shape / s.coefficient_precision_rate
        ed, ed2 = self._dictionary_moments()
        active = self._observed_per_signal > 0
        target = self._signals - s.bias_mean
        reconstruction = s.coefficient_mean @ ed

        for k in range(self.definition.n_bases):
            old_mean = s.coefficient_mean[:, k].copy()
            residual = target - reconstruction + np.outer(old_mean, ed[k])
            precision = alpha[:, k] + tau * (w @ ed2[k])
            location = tau * ((w * residual) @ ed[k]) / precision
            if self.definition.non_negative:
                mean, variance, _ = truncated_gaussian_moments(location, precision)
                second_moment = mean ** 2 + variance
            else:
                mean = location
                second_moment = location ** 2 + 1.0 / precision
            _check(COEFFICIENTS, means=(mean[active],), positives=(precision[active],))

            s.coefficient_location[active, k] = location[active]
            s.coefficient_precision[active, k] = precision[active]
            s.coefficient_mean[active, k] = mean[active]
            s.coefficient_second_moment[active, k] = second_moment[active]
            reconstruction += np.outer(s.coefficient_mean[:, k] - old_mean, ed[k])

    def _update_dictionary_precisions(self) -> None:
        s = self.state
        p = self.priors.dictionary_precisions
        ed, ed2 = self._dictionary_moments()
        em, em2 = self._means_moments()
        squared_deviation = ed2 - 2.0 * ed * em + em2
        s.dictionary_precision_shape = np.broadcast_to(p.shape + 0.5, ed.shape).astype(float)
        s.dictionary_precision_rate = p.rate + 0.5 * squared_deviation
        _check(DICTIONARY_PRECISIONS, positives=(s.dictionary_precision_rate,))

    def _update_dictionary_means(self) -> None:
        s = self.state
        p = self.priors.dictionary_means
        expected_lambda = s.dictionary_precision_shape / s.dictionary_precision_rate
        precision = p.precision + expected_lambda
        mean = (p.mean * p.precision + expected_lambda * s.dictionary_mean) / precision
        _check(DICTIONARY_MEANS, means=(mean,), positives=(precision,))
        s.means_mean = np.broadcast_to(mean, s.dictionary_mean.shape).astype(float)
        s.means_precision = np.broadcast_to(precision, s.dictionary_mean.shape).astype(float)

    def _update_dictionary(self) -> None:
        s = self.state
        w = self._observed
        tau = self.noise_mean
        expected_lambda = s.dictionary_precision_shape / s.dictionary_precision_rate
        em, _ = self._means_moments()
        ec, ec2 = s.coefficient_mean, s.coefficient_second_moment
        active = self._observed_per_sample > 0
        target = self._signals - s.bias_mean
        reconstruction = ec @ s.dictionary_mean

        for k in range(self.definition.n_bases):
            old_mean = s.dictionary_mean[k].copy()
            residual = target - reconstruction + np.outer(ec[:, k], old_mean)
            precision = expected_lambda[k] + tau * (ec2[:, k] @ w)
            weighted = expected_lambda[k] * em[k] + tau * (ec[:, k] @ (w * residual))
            if self.definition.constrains_norms:
                _check(DICTIONARY, means=(weighted[active],), positives=(precision[active],))
                mean, precision = self._constrained_row(k, precision, weighted, active)
            else:
                mean = weighted / precision
            _check(DICTIONARY, means=(mean[active],), positives=(precision[active],))

            s.dictionary_mean[k, active] = mean[active]
            s.dictionary_precision[k, active] = precision[active]
            reconstruction += np.outer(ec[:, k], s.dictionary_mean[k] - old_mean)

    def _constrained_row(self, k: int, precision: np.ndarray, weighted: np.ndarray,
                         active: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Row update under the squared-norm pseudo-observation.

        The pseudo-observation couples the samples of a row, so the entries are
        visited one at a time, each against the current values of the rest of
        the row.
        """
        mean = self.state.dictionary_mean[k].copy()
        variance = _inverse(self.state.dictionary_precision[k])
        for m in np.flatnonzero(active):
            others = mean @ mean - mean[m] ** 2
            mean[m], variance[m] = _norm_constrained_entry(
                precision[m], weighted[m], others, mean[m], variance[m]
            )
        return mean, 1.0 / variance

    def _update_bias(self) -> None:
        s = self.state
        p = self.priors.bias
        w = self._observed
        tau = self.noise_mean
        active = self._observed_per_sample > 0
        residual = self._signals - s.coefficient_mean @ s.dictionary_mean
        precision = p.precision + tau * self._observed_per_sample
        mean = (p.mean * p.precision + tau * (w * residual).sum(axis=0)) / precision
        _check(BIAS, means=(mean[active],), positives=(precision[active],))
        s.bias_mean[active] = np.broadcast_to(mean, active.shape)[active]
        s.bias_precision[active] = np.broadcast_to(precision, active.shape)[active]

    def _update_noise_precision(self) -> None:
        s = self.state
        p = self.priors.noise_precision
        error = float(np.sum(self._observed * self.expected_squared_error()))
        s.noise_shape = float(p.shape) + 0.5 * self._n_observed
        s.noise_rate = float(p.rate) + 0.5 * error
        _check(NOISE_PRECISION, positives=(s.noise_shape, s.noise_rate))

    def _update_signals(self) -> None:
        s = self.state
        mean, variance = self._predictive_moments()
        s.signal_mean = mean
        s.signal_variance = variance + 1.0 / self.noise_mean
        _check(SIGNALS, means=(mean,), positives=(s.signal_variance,))

    def _update_evidence(self) -> None:
        evidence = self.evidence_lower_bound()
        if not np.isfinite(evidence):
            raise NumericalInstability(EVIDENCE, f"evidence is {evidence}")
        self.state.evidence = evidence

    # --------------------------------------------------------------- evidence

    def evidence_lower_bound(self) -> float:
        """
        ELBO of the current factorised posterior.

        Zero in reconstruct mode, where nothing is latent and the predictive
        distribution is evaluated directly.
        """
        d = self.definition
        if not d.learns_coefficients:
            return 0.0
        s = self.state
        p = self.priors

        tau_mean = self.noise_mean
        tau_log = gamma_mean_log(s.noise_shape, s.noise_rate)
        total = np.sum(self._observed * (
            0.5 * tau_log - 0.5 * LOG_2PI - 0.5 * tau_mean * self.expected_squared_error()
        ))

        a, b = d.coefficient_prior
        alpha_mean = s.coefficient_precision_shape / s.coefficient_precision_rate
        alpha_log = gamma_mean_log(s.coefficient_precision_shape, s.coefficient_precision_rate)
        log_prior = 0.5 * alpha_log - 0.5 * LOG_2PI - 0.5 * alpha_mean * s.coefficient_second_moment
        if d.non_negative:
            _, _, entropy = truncated_gaussian_moments(s.coefficient_location, s.coefficient_precision)
            log_prior = log_prior + np.log(2.0)
        else:
            entropy = _gaussian_entropy(s.coefficient_precision)
        total += np.sum(log_prior + entropy)
        total -= np.sum(gamma_kl(s.coefficient_precision_shape, s.coefficient_precision_rate, a, b))

        if d.learns_dictionary:
            ed, ed2 = self._dictionary_moments()
            em, em2 = self._means_moments()
            lambda_mean = s.dictionary_precision_shape / s.dictionary_precision_rate
            lambda_log = gamma_mean_log(s.dictionary_precision_shape, s.dictionary_precision_rate)
            squared_deviation = ed2 - 2.0 * ed * em + em2
            total += np.sum(
                0.5 * lambda_log - 0.5 * LOG_2PI - 0.5 * lambda_mean * squared_deviation
                + _gaussian_entropy(s.dictionary_precision)
            )
            total -= np.sum(gamma_kl(
                s.dictionary_precision_shape, s.dictionary_precision_rate,
                p.dictionary_precisions.shape, p.dictionary_precisions.rate,
            ))
            if d.learns_dictionary_means:
                total -= np.sum(gaussian_kl(
                    s.means_mean, s.means_precision, p.dictionary_means.mean, p.dictionary_means.precision
                ))
            if d.constrains_norms:
                total += self._norm_constraint_term(ed, ed2)

        if d.learns_bias:
            total -= np.sum(gaussian_kl(s.bias_mean, s.bias_precision, p.bias.mean, p.bias.precision))
        total -= float(gamma_kl(s.noise_shape, s.noise_rate, p.noise_precision.shape, p.noise_precision.rate))
        return float(total)

    @staticmethod
    def _norm_constraint_term(ed: np.ndarray, ed2: np.ndarray) -> float:
        """Expected log-density of the unit squared-norm pseudo-observations."""
        norm_value, norm_variance = NORM_PSEUDO_OBSERVATION
        squared_means = np.sum(ed ** 2, axis=1)
        # E[(sum_m D D')^2] with D' an independent copy of D
        second_moment = np.sum(ed2 ** 2, axis=1) + squared_means ** 2 - np.sum(ed ** 4, axis=1)
        expected_error = second_moment - 2.0 * norm_value * squared_means + norm_value ** 2
        return float(np.sum(-0.5 * np.log(2.0 * np.pi * norm_variance) - 0.5 * expected_error / norm_variance))

    # ---------------------------------------------------------------- results

    def coefficient_posterior(self) -> Gaussian:
        """Coefficient posterior, moment-matched to a Gaussian when truncated."""
        s = self.state
        if self.definition.non_negative and self.definition.learns_coefficients:
            variance = np.maximum(s.coefficient_second_moment - s.coefficient_mean ** 2, 1e-300)
            return Gaussian(s.coefficient_mean, 1.0 / variance)
        return Gaussian(s.coefficient_location, s.coefficient_precision)

    def coefficient_precision_posterior(self) -> Gamma:
        s = self.state
        return Gamma(s.coefficient_precision_shape, s.coefficient_precision_rate)

    def dictionary_posterior(self) -> Gaussian:
        return Gaussian(self.state.dictionary_mean, self.state.dictionary_precision)

    def dictionary_precision_posterior(self) -> Gamma:
        return Gamma(self.state.dictionary_precision_shape, self.state.dictionary_precision_rate)

    def dictionary_means_posterior(self) -> Gaussian:
        return Gaussian(self.state.means_mean, self.state.means_precision)

    def bias_posterior(self) -> Gaussian:
        return Gaussian(self.state.bias_mean, self.state.bias_precision)

    def noise_precision_posterior(self) -> Gamma:
        return Gamma(self.state.noise_shape, self.state.noise_rate)

    def evidence_posterior(self) -> Bernoulli:
        return Bernoulli.from_log_odds(self.state.evidence)

    def signals_posterior(self) -> Gaussian:
        s = self.state
        if s.signal_mean is None:
            mean, variance = self._predictive_moments()
            return Gaussian.from_mean_and_variance(mean, variance + 1.0 / self.noise_mean)
        return Gaussian.from_mean_and_variance(s.signal_mean, s.signal_variance)
