import numpy as np
import pytest

from mindtwin.engines import early_warning as ews
from mindtwin.models.tipping_point import CriticalityLevel


RAMP = [0.3 + 0.05 * i for i in range(11)]
ALTERNATING = [0.2, 0.8] * 10


class TestIndicators:
    def test_autocorrelation_short_and_constant(self):
        assert ews.autocorrelation([0.5]) == 0.0
        assert ews.autocorrelation([0.4] * 10) == 0.0

    def test_autocorrelation_of_linear_ramp(self):
        # normalized by the full-series sum of squares: 80 / 110
        assert ews.autocorrelation(RAMP) == pytest.approx(80 / 110)

    def test_alternating_series_is_anticorrelated(self):
        assert ews.autocorrelation(ALTERNATING) == pytest.approx(-0.95)

    def test_variance_of_empty_series(self):
        assert ews.variance([]) == 0.0
        assert ews.variance([1.0, 3.0]) == pytest.approx(1.0)

    def test_skewness(self):
        assert ews.skewness([0.5] * 5) == 0.0
        assert ews.skewness([0.1, 0.1, 0.1, 0.1, 0.9]) > 0

    def test_recovery_rate_defaults(self):
        assert ews.recovery_rate([0.1, 0.2]) == ews.DEFAULT_RECOVERY_RATE
        assert ews.recovery_rate([0.5, 0.51, 0.49, 0.5]) == ews.DEFAULT_RECOVERY_RATE

    def test_fast_recovery(self):
        series = [0.5, 0.8, 0.5, 0.5, 0.2, 0.5, 0.5]
        assert ews.recovery_rate(series) > 0.9

    def test_dfa_short_series_default(self):
        assert ews.dfa_exponent(np.ones(10)) == ews.DEFAULT_DFA_EXPONENT

    def test_dfa_separates_noise_from_random_walk(self, rng):
        noise = rng.standard_normal(256)
        walk = np.cumsum(noise)
        assert ews.dfa_exponent(walk) > ews.dfa_exponent(noise)
        assert 0.0 <= ews.dfa_exponent(noise) <= 1.5

    def test_flickering_between_two_modes(self):
        assert ews.flickering_score(ALTERNATING) == 1.0

    def test_no_flickering_for_short_or_unimodal_series(self):
        assert ews.flickering_score([0.2, 0.8] * 4) == 0.0
        assert ews.flickering_score(RAMP) == 0.0

    def test_periodicity(self):
        assert ews.periodicity_score(ALTERNATING) == 1.0
        assert ews.periodicity_score([0.5]) == 0.0

    def test_period_doubling(self):
        assert ews.period_doubling_score(ALTERNATING) == pytest.approx(0.6)
        assert ews.period_doubling_score(RAMP) == 0.0


class TestComposite:
    def test_composite_bounds(self):
        assert ews.composite_score(0.0, 1.0, 1.0, 0.5, 0.0) == pytest.approx(0.0)
        assert ews.composite_score(1.0, 3.0, 0.0, 1.0, 1.0) == pytest.approx(1.0)

    @pytest.mark.parametrize("composite, autocorr, expected", [
        (0.75, 0.0, CriticalityLevel.CRITICAL),
        (0.1, 0.9, CriticalityLevel.CRITICAL),
        (0.6, 0.0, CriticalityLevel.WARNING),
        (0.1, 0.75, CriticalityLevel.WARNING),
        (0.1, 0.1, CriticalityLevel.LOW),
    ])
    def test_criticality_level(self, composite, autocorr, expected):
        assert ews.criticality_level(composite, autocorr) is expected

    def test_signals_for_rising_series(self):
        signals = ews.compute_signals(RAMP)
        assert signals.autocorrelation > ews.AUTOCORRELATION_WARNING
        assert signals.variance_ratio > 1.0
        assert signals.criticality_level in (CriticalityLevel.WARNING, CriticalityLevel.CRITICAL)
        assert 0.0 <= signals.composite_score <= 1.0

    def test_signals_for_flat_series(self):
        signals = ews.compute_signals([0.4] * 12)
        assert signals.autocorrelation == 0.0
        assert signals.variance_ratio == 1.0
        assert signals.criticality_level is CriticalityLevel.LOW
