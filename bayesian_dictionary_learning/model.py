"""
Model definition for Bayesian dictionary learning.

Generative model (n = signal, k = basis, m = sample)::

    CoefficientPrecisions[n, k] ~ Gamma(a, b)
    Coefficients[n, k]          ~ N(0, 1 / CoefficientPrecisions[n, k])   (zero-truncated if non-negative)
    DictionaryPrecisions[k, m]  ~ Gamma(1, 1)
    DictionaryMeans[k, m]       ~ N(0, 1)                                 (hierarchical only, else 0)
    Dictionary[k, m]            ~ N(DictionaryMeans[k, m], 1 / DictionaryPrecisions[k, m])
    Bias[m]                     ~ N(0, 1 / 0.01)                          (optional)
    NoisePrecision              ~ Gamma(1, 1)
    Signals[n, m]               ~ N(sum_k C[n, k] D[k, m] + Bias[m], 1 / NoisePrecision)

plus, when norm constraints are enabled, a pseudo-observation
``N(1.0; sum_m D[k, m]^2, variance=1.0)`` per dictionary row. Masked (missing)
signal entries drop out of the likelihood.

A ``ModelDefinition`` fixes the shapes and, per mode, which factors are latent.
Its ``schedule`` is the ordered list of update steps the engine runs per sweep.
"""

from dataclasses import dataclass
from typing import Tuple

from .config import BDLParameters, Mode
from .exceptions import InvalidArgument

# Fixed hyperparameters of the canonical model
DICTIONARY_PRECISION_PRIOR = (1.0, 1.0)     # shape, rate
DICTIONARY_MEAN_PRIOR = (0.0, 1.0)          # mean, variance
NOISE_PRECISION_PRIOR = (1.0, 1.0)          # shape, rate
BIAS_PRIOR_PRECISION = 0.01
NORM_PSEUDO_OBSERVATION = (1.0, 1.0)        # mean, variance

# Update steps in sweep order
COEFFICIENT_PRECISIONS = "coefficient_precisions"
COEFFICIENTS = "coefficients"
DICTIONARY_PRECISIONS = "dictionary_precisions"
DICTIONARY_MEANS = "dictionary_means"
DICTIONARY = "dictionary"
BIAS = "bias"
NOISE_PRECISION = "noise_precision"
SIGNALS = "signals"
EVIDENCE = "evidence"


@dataclass(frozen=True)
class ModelDefinition:
    n_signals: int
    n_bases: int
    n_samples: int
    mode: Mode = Mode.TRAIN
    sparse: bool = True
    norm_constraints: bool = False
    include_bias: bool = False
    missing_data: bool = False
    non_negative: bool = False
    hierarchical: bool = False

    def __post_init__(self):
        for name in ("n_signals", "n_bases", "n_samples"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise InvalidArgument(f"{name} must be a positive integer, got {value!r}")

    @classmethod
    def from_parameters(cls, parameters: BDLParameters, n_signals: int, n_bases: int,
                        n_samples: int, mode: Mode = None) -> "ModelDefinition":
        return cls(
            n_signals=int(n_signals),
            n_bases=int(n_bases),
            n_samples=int(n_samples),
            mode=Mode(mode or parameters.mode),
            sparse=parameters.sparse,
            norm_constraints=parameters.norm_constraints,
            include_bias=parameters.include_bias,
            missing_data=parameters.missing_data,
            non_negative=parameters.non_negative,
            hierarchical=parameters.hierarchical,
        )

    @property
    def signal_shape(self) -> Tuple[int, int]:
        return (self.n_signals, self.n_samples)

    @property
    def coefficient_shape(self) -> Tuple[int, int]:
        return (self.n_signals, self.n_bases)

    @property
    def dictionary_shape(self) -> Tuple[int, int]:
        return (self.n_bases, self.n_samples)

    @property
    def coefficient_prior(self) -> Tuple[float, float]:
        """(a, b) of the coefficient-precision Gamma prior; ARD when sparse."""
        return (0.5, 1e-6) if self.sparse else (1.0, 1.0)

    @property
    def learns_coefficients(self) -> bool:
        return self.mode in (Mode.TRAIN, Mode.TRAIN_FIXED)

    @property
    def learns_dictionary(self) -> bool:
        return self.mode == Mode.TRAIN

    @property
    def learns_dictionary_means(self) -> bool:
        return self.learns_dictionary and self.hierarchical

    @property
    def learns_noise_precision(self) -> bool:
        return self.mode != Mode.RECONSTRUCT

    @property
    def learns_bias(self) -> bool:
        return self.include_bias and self.mode != Mode.RECONSTRUCT

    @property
    def constrains_norms(self) -> bool:
        return self.norm_constraints and self.learns_dictionary

    @property
    def schedule(self) -> Tuple[str, ...]:
        if self.mode == Mode.RECONSTRUCT:
            return (SIGNALS, EVIDENCE)
        steps = [COEFFICIENT_PRECISIONS, COEFFICIENTS]
        if self.learns_dictionary:
            steps.append(DICTIONARY_PRECISIONS)
            if self.learns_dictionary_means:
                steps.append(DICTIONARY_MEANS)
            steps.append(DICTIONARY)
        if self.learns_bias:
            steps.append(BIAS)
        steps.extend([NOISE_PRECISION, EVIDENCE])
        return tuple(steps)
