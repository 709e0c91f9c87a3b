"""
Test configuration and fixtures for Bayesian dictionary learning tests.

Provides seeded synthetic data sets, parameter factories and shared
assertion helpers for all test modules.
"""

import numpy as np
import pytest
from sklearn.datasets import make_sparse_coded_signal

from bayesian_dictionary_learning import BDL, BDLParameters, Mode, create_priors


@pytest.fixture
def random_seed():
    """Fixed random seed for reproducible tests."""
    return 42


@pytest.fixture
def rng(random_seed):
    return np.random.default_rng(random_seed)


@pytest.fixture
def small_problem(random_seed):
    """
    20 signals of width 8 generated from 3 unit-norm bases with sparse
    Laplace coefficients and a little Gaussian noise.
    """
    gen = np.random.default_rng(random_seed)
    n_signals, n_bases, n_samples = 20, 3, 8
    dictionary = gen.standard_normal((n_bases, n_samples))
    dictionary /= np.linalg.norm(dictionary, axis=1, keepdims=True)
    codes = gen.laplace(scale=1.0, size=(n_signals, n_bases))
    codes[np.abs(codes) < 0.5] = 0.0
    signals = codes @ dictionary + 0.05 * gen.standard_normal((n_signals, n_samples))
    return {
        'signals': signals,
        'dictionary': dictionary,
        'codes': codes,
        'n_signals': n_signals,
        'n_bases': n_bases,
        'n_samples': n_samples,
    }


@pytest.fixture
def sparse_coded_signals(random_seed):
    """Signals from sklearn's sparse coded signal generator, rows = signals."""
    n_signals, n_components, n_features = 30, 6, 10
    signals, dictionary, codes = make_sparse_coded_signal(
        n_samples=n_signals,
        n_components=n_components,
        n_features=n_features,
        n_nonzero_coefs=2,
        random_state=random_seed,
    )
    # older scikit-learn releases return (n_features, n_samples)
    if signals.shape != (n_signals, n_features):
        signals = signals.T
    return {
        'signals': np.asarray(signals, dtype=float),
        'n_components': n_components,
        'n_features': n_features,
    }


def never_converge(evidence_ratio, tolerance):
    """Convergence criterion that forces the full iteration budget."""
    return False


def make_parameters(mode=Mode.TRAIN, iterations=100, **overrides):
    """Quiet parameters with the same iteration budget for every mode."""
    settings = dict(
        mode=mode,
        show_progress=False,
        max_iterations={m: iterations for m in Mode},
    )
    settings.update(overrides)
    return BDLParameters(**settings)


def train_model(signals, n_bases, seed=0, **overrides):
    """Train a BDL model on ``signals`` from random priors; returns (model, posteriors)."""
    signals = np.asarray(signals, dtype=float)
    model = BDL(make_parameters(**overrides))
    priors = create_priors(n_bases, signals.shape[1], rng=np.random.default_rng(seed))
    posteriors = model.train(priors, signals)
    return model, posteriors


def assert_non_decreasing(values, rel_tol=1e-9, abs_tol=1e-9):
    """Assert a sequence never drops by more than floating-point noise."""
    values = np.asarray(values, dtype=float)
    for i in range(1, len(values)):
        slack = abs_tol + rel_tol * max(abs(values[i]), abs(values[i - 1]))
        assert values[i] >= values[i - 1] - slack, (
            f"Evidence decreased at sweep {i}: {values[i - 1]:.12g} -> {values[i]:.12g}"
        )


def assert_finite_posterior(distribution):
    """Assert a Gaussian/Gamma posterior has finite moments."""
    assert np.all(np.isfinite(distribution.mean))
    assert np.all(np.isfinite(distribution.variance))
