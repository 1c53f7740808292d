from datetime import timedelta

import pytest

from mindtwin.services.personalization import (
    CROSS_VALIDATION_SCORE,
    DEFAULT_MEAN_REVERSION,
    DEFAULT_VOLATILITY,
    MIN_PRIOR_VARIANCE,
    learn_personalization,
    mean_reversion_rate,
    volatility,
    weekly_pattern,
)


def test_mean_reversion_defaults_for_short_series():
    assert mean_reversion_rate([0.4, 0.5]) == DEFAULT_MEAN_REVERSION


def test_trending_series_reverts_slowly():
    rate = mean_reversion_rate([0.1 * i for i in range(10)])
    assert 0.01 <= rate < DEFAULT_MEAN_REVERSION


def test_alternating_series_clamped_to_one():
    assert mean_reversion_rate([0.2, 0.8] * 5) == 1.0


def test_constant_series_reverts_fully():
    # zero variance -> phi defaults to 0
    assert mean_reversion_rate([0.5] * 6) == 1.0


def test_volatility():
    assert volatility([0.5]) == DEFAULT_VOLATILITY
    assert volatility([0.1 * i for i in range(6)]) == pytest.approx(0.0, abs=1e-12)
    assert volatility([0.0, 1.0, 0.0, 1.0]) == pytest.approx((8 / 9) ** 0.5)


def test_weekly_pattern_by_weekday(make_twin, start_time):
    history = [
        make_twin({"emotion_joy": 0.8}, version=0, timestamp=start_time),
        make_twin({"emotion_joy": 0.6}, version=1, timestamp=start_time + timedelta(days=7)),
        make_twin({"emotion_joy": 0.2}, version=2, timestamp=start_time + timedelta(days=1)),
    ]
    pattern = weekly_pattern(history, "emotion_joy")
    assert len(pattern) == 7
    assert pattern[0] == pytest.approx(0.7)
    assert pattern[1] == pytest.approx(0.2)
    assert pattern[2:] == (0.5,) * 5


def test_too_little_history_gives_default(make_twin, start_time):
    history = [make_twin(version=i, timestamp=start_time + timedelta(days=i)) for i in range(6)]
    personalization = learn_personalization("subject-1", history, start_time)
    assert personalization.is_default
    assert personalization.data_points_used == 6
    assert personalization.fit_quality == 0.0


def test_learned_personalization(make_twin, start_time):
    history = [
        make_twin({"emotion_anxiety": 0.3 + 0.02 * i}, version=i, timestamp=start_time + timedelta(days=i))
        for i in range(14)
    ]
    personalization = learn_personalization("subject-1", history, start_time + timedelta(days=14))

    assert not personalization.is_default
    assert personalization.data_points_used == 14
    assert personalization.cross_validation_score == CROSS_VALIDATION_SCORE

    anxiety = personalization.learned_priors["emotion_anxiety"]
    assert anxiety.mean == pytest.approx(0.3 + 0.02 * 6.5)
    assert anxiety.variance > MIN_PRIOR_VARIANCE
    assert personalization.volatility["emotion_anxiety"] == pytest.approx(0.0, abs=1e-9)

    # constant variables keep a floored prior variance
    assert personalization.learned_priors["emotion_joy"].variance == MIN_PRIOR_VARIANCE
    assert set(personalization.weekly_pattern) == set(history[-1].variables)
