"""
Unit tests for the Gaussian / Gamma / Bernoulli primitives.
"""

import numpy as np
import pytest
from scipy import integrate, stats

from bayesian_dictionary_learning import Bernoulli, Gamma, Gaussian, InvalidArgument, InvalidParameter
from bayesian_dictionary_learning.core.distributions import (
    gamma_kl,
    gaussian_kl,
    truncated_gaussian_moments,
)


class TestGaussian:
    """Moment accessors and parameter conversions."""

    def test_moments(self):
        g = Gaussian.from_mean_and_variance([1.0, -2.0], [4.0, 0.25])
        np.testing.assert_allclose(g.mean, [1.0, -2.0])
        np.testing.assert_allclose(g.precision, [0.25, 4.0])
        np.testing.assert_allclose(g.std, [2.0, 0.5])
        np.testing.assert_allclose(g.second_moment, [5.0, 4.25])

    def test_natural_round_trip(self):
        g = Gaussian(np.array([0.5, 3.0]), np.array([2.0, 0.1]))
        back = Gaussian.from_natural(g.mean_times_precision, g.precision)
        np.testing.assert_allclose(back.mean, g.mean)
        np.testing.assert_allclose(back.precision, g.precision)

    def test_point_mass(self):
        g = Gaussian.point_mass(np.arange(6.0).reshape(2, 3))
        assert g.shape == (2, 3)
        assert np.all(g.is_point_mass)
        np.testing.assert_array_equal(g.variance, 0.0)
        np.testing.assert_array_equal(g.second_moment, g.mean ** 2)

    @pytest.mark.parametrize("precision", [0.0, -1.0, np.nan])
    def test_rejects_non_positive_precision(self, precision):
        with pytest.raises(InvalidParameter):
            Gaussian(0.0, precision)

    def test_invalid_parameter_is_invalid_argument(self):
        with pytest.raises(InvalidArgument):
            Gaussian.from_mean_and_variance(0.0, -1.0)

    def test_parameters_are_read_only(self):
        g = Gaussian.standard((2, 2))
        with pytest.raises(ValueError):
            g.mean[0, 0] = 5.0

    def test_sparsity(self):
        g = Gaussian.point_mass([[0.0, 0.005, 1.0, -0.5], [0.0, 0.0, 0.0, 2.0]])
        assert g.sparsity() == pytest.approx(5 / 8)
        np.testing.assert_allclose(g.sparsity(axis=1), [0.5, 0.75])
        assert g.sparsity(threshold=1e-3) == pytest.approx(4 / 8)

    def test_product_adds_natural_parameters(self):
        a = Gaussian(1.0, 2.0)
        b = Gaussian(-1.0, 6.0)
        prod = a * b
        assert float(prod.precision) == pytest.approx(8.0)
        assert float(prod.mean) == pytest.approx((1.0 * 2.0 - 1.0 * 6.0) / 8.0)

    def test_product_with_point_mass(self):
        prod = Gaussian(1.0, 2.0) * Gaussian.point_mass(3.0)
        assert float(prod.mean) == 3.0
        assert bool(prod.is_point_mass)

    def test_entropy_matches_scipy(self):
        g = Gaussian.from_mean_and_variance(0.3, 2.5)
        assert float(g.entropy()) == pytest.approx(stats.norm(0.3, np.sqrt(2.5)).entropy())

    def test_kl(self):
        q = Gaussian(0.0, 1.0)
        p = Gaussian(1.0, 0.5)
        expected = 0.5 * (np.log(1.0 / 0.5) + 0.5 * (1.0 + 1.0) - 1.0)
        assert float(q.kl_divergence(p)) == pytest.approx(expected)
        assert float(q.kl_divergence(q)) == pytest.approx(0.0, abs=1e-12)

    def test_indexing_and_equality(self):
        g = Gaussian(np.arange(6.0).reshape(3, 2), np.ones((3, 2)))
        row = g[1]
        np.testing.assert_array_equal(row.mean, [2.0, 3.0])
        assert len(g) == 3
        assert g == Gaussian(np.arange(6.0).reshape(3, 2), 1.0)
        assert g != Gaussian.standard((3, 2))

    def test_shape_mismatch(self):
        with pytest.raises(InvalidParameter):
            Gaussian(np.zeros(3), np.ones(2))


class TestGamma:
    """Shape/rate parameterisation."""

    def test_moments(self):
        g = Gamma.from_shape_and_rate(3.0, 2.0)
        assert float(g.mean) == pytest.approx(1.5)
        assert float(g.variance) == pytest.approx(0.75)
        assert float(g.scale) == pytest.approx(0.5)

    def test_from_mean_and_variance(self):
        g = Gamma.from_mean_and_variance(2.0, 0.5)
        assert float(g.mean) == pytest.approx(2.0)
        assert float(g.variance) == pytest.approx(0.5)

    def test_from_shape_and_scale(self):
        g = Gamma.from_shape_and_scale(2.0, 4.0)
        assert float(g.rate) == pytest.approx(0.25)

    def test_mean_log_and_entropy_match_scipy(self):
        g = Gamma(2.5, 1.5)
        ref = stats.gamma(a=2.5, scale=1 / 1.5)
        assert float(g.entropy()) == pytest.approx(ref.entropy())
        samples = ref.rvs(size=200000, random_state=np.random.default_rng(0))
        assert float(g.mean_log) == pytest.approx(np.mean(np.log(samples)), abs=1e-2)

    @pytest.mark.parametrize("shape,rate", [(0.0, 1.0), (1.0, 0.0), (-1.0, 1.0), (1.0, np.inf)])
    def test_rejects_invalid(self, shape, rate):
        with pytest.raises(InvalidParameter):
            Gamma(shape, rate)

    def test_array_shape(self):
        g = Gamma.standard((4, 3))
        assert g.array_shape == (4, 3)
        assert len(g) == 4
        assert g[0].array_shape == (3,)

    def test_kl_zero_for_identical(self):
        g = Gamma(np.array([1.0, 4.0]), np.array([2.0, 0.5]))
        np.testing.assert_allclose(g.kl_divergence(g), 0.0, atol=1e-12)


class TestBernoulli:

    def test_log_odds_round_trip(self):
        b = Bernoulli.from_probability(0.8)
        assert float(b.log_odds) == pytest.approx(np.log(4.0))
        assert float(b.probability) == pytest.approx(0.8)
        assert float(b.variance) == pytest.approx(0.16)

    def test_evidence_carried_as_log_odds(self):
        b = Bernoulli.from_log_odds(-1234.5)
        assert float(b.log_odds) == -1234.5

    def test_rejects_invalid(self):
        with pytest.raises(InvalidParameter):
            Bernoulli.from_probability(1.5)
        with pytest.raises(InvalidParameter):
            Bernoulli(np.nan)


class TestRawHelpers:

    def test_kl_helpers_match_methods(self):
        q, p = Gamma(2.0, 3.0), Gamma(1.0, 1.0)
        assert float(gamma_kl(2.0, 3.0, 1.0, 1.0)) == pytest.approx(float(q.kl_divergence(p)))
        assert float(gaussian_kl(0.5, 2.0, 0.0, 1.0)) == pytest.approx(
            float(Gaussian(0.5, 2.0).kl_divergence(Gaussian(0.0, 1.0)))
        )

    @pytest.mark.parametrize("location", [-8.0, -3.0, -0.5, 0.0, 0.7, 4.0])
    def test_truncated_moments_match_scipy(self, location):
        precision = 2.0
        sd = 1 / np.sqrt(precision)
        ref = stats.truncnorm((0 - location) / sd, np.inf, loc=location, scale=sd)
        mean, variance, entropy = truncated_gaussian_moments(np.array(location), np.array(precision))
        assert float(mean) == pytest.approx(ref.mean(), rel=1e-6, abs=1e-12)
        assert float(variance) == pytest.approx(ref.var(), rel=1e-4, abs=1e-12)
        upper = ref.mean() + 40.0 * ref.std()
        ref_entropy, _ = integrate.quad(lambda x: -ref.pdf(x) * ref.logpdf(x), 0.0, upper, limit=200)
        assert float(entropy) == pytest.approx(ref_entropy, rel=1e-5, abs=1e-7)

    def test_truncated_moments_are_non_negative(self):
        location = np.linspace(-50, 50, 101)
        mean, variance, _ = truncated_gaussian_moments(location, np.ones_like(location))
        assert np.all(mean >= 0)
        assert np.all(variance > 0)
