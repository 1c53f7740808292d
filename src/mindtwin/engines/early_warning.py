"""
Early Warning Signal Indicators

Statistical precursors of a critical transition computed over a single
variable's history (index = sample number):

1. Lag-1 autocorrelation and its trend between halves (critical slowing down)
2. Variance ratio and variance trend (growing fluctuations)
3. Recovery rate after deviations larger than 0.1 (slower return to mean)
4. DFA exponent over scales {4, 8, 16} (long-range correlation)
5. Skewness and its change between halves (asymmetric fluctuations)
6. Flickering between two histogram modes
7. Periodicity from mean crossings

Every indicator returns a neutral default when the series is too short to
support it. The composite weighting and the criticality cut-offs are
heuristics pending calibration against observed outcomes.
"""

import math
from typing import Sequence

import numpy as np
from scipy.stats import linregress, skew

from ..models.tipping_point import CriticalityLevel, EarlyWarningSignals

# Thresholds on individual indicators
AUTOCORRELATION_WARNING = 0.7
AUTOCORRELATION_CRITICAL = 0.85
VARIANCE_WARNING = 1.5
VARIANCE_CRITICAL = 2.0
CROSS_CORRELATION_WARNING = 0.6
CROSS_CORRELATION_CRITICAL = 0.75
RECOVERY_WARNING = 0.3
RECOVERY_CRITICAL = 0.15
DFA_WARNING = 0.75
DFA_CRITICAL = 0.9
SKEWNESS_CHANGE_WARNING = 0.5
SKEWNESS_CHANGE_CRITICAL = 1.0
FLICKERING_THRESHOLD = 0.3

COMPOSITE_WARNING = 0.5
COMPOSITE_CRITICAL = 0.7

# Composite weights
WEIGHT_AUTOCORRELATION = 0.3
WEIGHT_VARIANCE = 0.25
WEIGHT_RECOVERY = 0.2
WEIGHT_DFA = 0.15
WEIGHT_FLICKERING = 0.1

DFA_SCALES = (4, 8, 16)
DFA_MIN_LENGTH = 16
FLICKERING_MIN_LENGTH = 10
RECOVERY_DEVIATION = 0.1
DEFAULT_RECOVERY_RATE = 0.5
DEFAULT_DFA_EXPONENT = 0.5


def _as_series(series: Sequence[float]) -> np.ndarray:
    return np.asarray(series, dtype=float).ravel()


def _halves(x: np.ndarray):
    mid = len(x) // 2
    return x[:mid], x[mid:]


def autocorrelation(series: Sequence[float], lag: int = 1) -> float:
    """Sample autocorrelation normalized by the full-series sum of squares."""
    x = _as_series(series)
    if len(x) <= lag:
        return 0.0
    centered = x - x.mean()
    denominator = float(np.sum(centered ** 2))
    if denominator <= 0:
        return 0.0
    numerator = float(np.sum(centered[:-lag] * centered[lag:]))
    return numerator / denominator


def variance(series: Sequence[float]) -> float:
    """Population variance; 0 for an empty series."""
    x = _as_series(series)
    if len(x) == 0:
        return 0.0
    return float(np.var(x))


def skewness(series: Sequence[float]) -> float:
    """Population skewness; 0 for constant series."""
    x = _as_series(series)
    if len(x) == 0 or np.std(x) == 0:
        return 0.0
    return float(skew(x, bias=True))


def recovery_rate(series: Sequence[float]) -> float:
    """Mean fractional return toward the mean after a >0.1 deviation."""
    x = _as_series(series)
    if len(x) < 3:
        return DEFAULT_RECOVERY_RATE
    mean = x.mean()
    rates = []
    for i in range(1, len(x) - 1):
        deviation = abs(x[i] - mean)
        if deviation > RECOVERY_DEVIATION:
            rates.append(1.0 - abs(x[i + 1] - mean) / (deviation + 0.001))
    return float(np.mean(rates)) if rates else DEFAULT_RECOVERY_RATE


def dfa_exponent(series: Sequence[float]) -> float:
    """Detrended Fluctuation Analysis exponent clamped to [0, 1.5].

    The profile (cumulative sum of the demeaned series) is split into
    windows at each scale no larger than a quarter of the series; each
    window is linearly detrended and the mean RMS fluctuation per scale is
    regressed on scale in log-log space.
    """
    x = _as_series(series)
    if len(x) < DFA_MIN_LENGTH:
        return DEFAULT_DFA_EXPONENT

    profile = np.cumsum(x - x.mean())
    used_scales = []
    fluctuations = []

    for s in DFA_SCALES:
        if s > len(x) / 4:
            continue
        n_windows = len(profile) // s
        t = np.arange(s)
        total = 0.0
        for i in range(n_windows):
            window = profile[i * s:(i + 1) * s]
            fit = linregress(t, window)
            detrended = window - (fit.slope * t + fit.intercept)
            total += math.sqrt(float(np.mean(detrended ** 2)))
        used_scales.append(s)
        fluctuations.append(total / n_windows)

    if len(fluctuations) < 2:
        return DEFAULT_DFA_EXPONENT

    fit = linregress(np.log(used_scales), np.log(np.asarray(fluctuations) + 0.001))
    return float(min(1.5, max(0.0, fit.slope)))


def flickering_score(series: Sequence[float]) -> float:
    """Transitions across the midpoint of the two lowest histogram peaks.

    Values are binned into ten unit-interval bins; fewer than two interior
    peaks means no flickering.
    """
    x = _as_series(series)
    if len(x) < FLICKERING_MIN_LENGTH:
        return 0.0

    bins = np.clip(np.floor(x * 10).astype(int), 0, 9)
    histogram = np.bincount(bins, minlength=10)

    peaks = [
        i for i in range(1, 9)
        if histogram[i] > histogram[i - 1] and histogram[i] > histogram[i + 1]
    ]
    if len(peaks) < 2:
        return 0.0

    threshold = (peaks[0] + peaks[1]) / 2 / 10
    above = x >= threshold
    transitions = int(np.count_nonzero(above[1:] != above[:-1]))
    return min(1.0, transitions / (len(x) / 5))


def periodicity_score(series: Sequence[float]) -> float:
    """Mean crossings relative to the (n - 1) / 2 expected for noise."""
    x = _as_series(series)
    if len(x) < 2:
        return 0.0
    above = x >= x.mean()
    crossings = int(np.count_nonzero(above[1:] != above[:-1]))
    expected = (len(x) - 1) * 0.5
    return min(1.0, crossings / expected)


def period_doubling_score(series: Sequence[float]) -> float:
    """0.6 when autocorrelation strengthens at doubled lags, else 0."""
    x = _as_series(series)
    if len(x) < DFA_MIN_LENGTH:
        return 0.0
    ac1 = autocorrelation(x, 1)
    ac2 = autocorrelation(x, 2)
    ac4 = autocorrelation(x, 4)
    if ac2 > ac1 * 1.2 or ac4 > ac2 * 1.2:
        return 0.6
    return 0.0


def composite_score(
    autocorr: float,
    variance_ratio: float,
    recovery: float,
    dfa: float,
    flickering: float,
) -> float:
    """Weighted blend of normalized indicators, in [0, 1]."""
    ac_score = min(1.0, max(0.0, (autocorr - 0.5) / 0.5))
    var_score = min(1.0, max(0.0, (variance_ratio - 1.0) / 2.0))
    rec_score = min(1.0, max(0.0, 1.0 - recovery))
    dfa_score = min(1.0, max(0.0, (dfa - 0.5) / 0.5))
    return (
        ac_score * WEIGHT_AUTOCORRELATION
        + var_score * WEIGHT_VARIANCE
        + rec_score * WEIGHT_RECOVERY
        + dfa_score * WEIGHT_DFA
        + flickering * WEIGHT_FLICKERING
    )


def criticality_level(composite: float, autocorr: float) -> CriticalityLevel:
    if composite > COMPOSITE_CRITICAL or autocorr > AUTOCORRELATION_CRITICAL:
        return CriticalityLevel.CRITICAL
    if composite > COMPOSITE_WARNING or autocorr > AUTOCORRELATION_WARNING:
        return CriticalityLevel.WARNING
    return CriticalityLevel.LOW


def compute_signals(series: Sequence[float]) -> EarlyWarningSignals:
    """Compute every indicator for ``series``."""
    x = _as_series(series)
    first, second = _halves(x)

    ac = autocorrelation(x, 1)
    baseline_variance = variance(first)
    variance_ratio = variance(x) / baseline_variance if baseline_variance > 0 else 1.0

    ac_trend = autocorrelation(second, 1) - autocorrelation(first, 1)
    var_trend = variance(second) / (variance(first) + 0.001) - 1.0

    recovery = recovery_rate(x)
    dfa = dfa_exponent(x)
    flicker = flickering_score(x)
    composite = composite_score(ac, variance_ratio, recovery, dfa, flicker)

    return EarlyWarningSignals(
        autocorrelation=ac,
        autocorrelation_trend=ac_trend,
        variance_ratio=variance_ratio,
        variance_trend=var_trend,
        cross_correlation=abs(ac) * 0.8,
        cross_correlation_trend=ac_trend * 0.7,
        recovery_rate=recovery,
        dfa_exponent=dfa,
        skewness=skewness(x),
        skewness_change=abs(skewness(second) - skewness(first)),
        flickering_score=flicker,
        periodicity_score=periodicity_score(x),
        composite_score=composite,
        criticality_level=criticality_level(composite, ac),
    )
