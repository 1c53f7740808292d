import math
from dataclasses import replace
from datetime import timedelta

import pytest

from mindtwin.engines import early_warning as ews
from mindtwin.engines.bifurcation import (
    BifurcationEngine,
    VARIABLE_THRESHOLDS,
    calculate_irreversibility,
    calculate_prevention_probability,
    fit_exponential_approach,
)
from mindtwin.models.tipping_point import BifurcationType, Urgency
from mindtwin.models.twin import AttractorType, DerivedMetrics, StabilityClass


ANXIETY_RAMP = [0.3 + 0.05 * i for i in range(11)]


@pytest.fixture
def engine(clock):
    return BifurcationEngine(clock=clock)


@pytest.fixture
def ramp_history(make_twin, start_time):
    return [
        make_twin({"emotion_anxiety": value}, version=i, timestamp=start_time + timedelta(days=i))
        for i, value in enumerate(ANXIETY_RAMP)
    ]


class TestDetection:
    def test_insufficient_history_yields_nothing(self, engine, ramp_history):
        assert engine.detect_tipping_points(ramp_history[-1], ramp_history[:6]) == []

    def test_rising_anxiety_is_detected(self, engine, ramp_history, clock):
        twin = ramp_history[-1]
        tipping_points = engine.detect_tipping_points(twin, ramp_history)

        assert len(tipping_points) == 1
        tp = tipping_points[0]
        assert tp.critical_parameter == "emotion_anxiety"
        assert tp.critical_threshold == pytest.approx(0.85)
        assert tp.current_distance == pytest.approx(0.05)
        assert tp.detected_at == clock()
        assert tp.expected_outcome == "crisis"
        assert tp.urgency is Urgency.HIGH
        assert tp.post_transition_state in (AttractorType.STRANGE, AttractorType.LIMIT_CYCLE)
        assert isinstance(tp.bifurcation_type, BifurcationType)

    def test_timing_is_clamped_and_bracketed(self, engine, ramp_history):
        tp = engine.detect_tipping_points(ramp_history[-1], ramp_history)[0]
        low, high = tp.confidence_interval
        assert engine.min_days <= tp.estimated_time_to_point <= engine.max_days
        assert low <= tp.estimated_time_to_point <= high
        assert tp.intervention_window_days == pytest.approx(max(0.0, tp.estimated_time_to_point - 2))
        assert 0.0 <= tp.prevention_probability <= 1.0
        assert 0.0 <= tp.irreversibility <= 1.0

    def test_interventions_attached_with_urgency(self, engine, ramp_history):
        tp = engine.detect_tipping_points(ramp_history[-1], ramp_history)[0]
        interventions = tp.recommended_interventions
        assert interventions[0].intervention_type == "relaxation"
        assert all(i.urgency is tp.urgency for i in interventions)

    def test_flat_history_is_quiet(self, engine, make_twin, start_time):
        history = [make_twin(version=i, timestamp=start_time + timedelta(days=i)) for i in range(10)]
        assert engine.detect_tipping_points(history[-1], history) == []

    def test_results_sorted_by_time(self, engine, make_twin, start_time):
        history = [
            make_twin(
                {"emotion_anxiety": 0.3 + 0.05 * i, "emotion_sadness": 0.3 + 0.04 * i},
                version=i,
                timestamp=start_time + timedelta(days=i),
            )
            for i in range(11)
        ]
        tipping_points = engine.detect_tipping_points(history[-1], history)
        days = [tp.estimated_time_to_point for tp in tipping_points]
        assert days == sorted(days)


class TestTiming:
    def test_exponential_fit_recovers_rate(self):
        series = [0.85 - 0.5 * math.exp(-0.2 * t) for t in range(10)]
        rate, r_squared = fit_exponential_approach(series, 0.85)
        assert rate == pytest.approx(0.2, rel=1e-6)
        assert r_squared == pytest.approx(1.0)

    def test_exponential_fit_short_series(self):
        assert fit_exponential_approach([0.5, 0.6], 0.85) == (0.0, 0.0)

    def test_receding_series_has_no_rate(self):
        series = [0.8 - 0.05 * t for t in range(8)]
        rate, _ = fit_exponential_approach(series, 0.85)
        assert rate == 0.0

    def test_fallback_timing_without_approach(self, engine):
        series = [0.5] * 10
        signals = ews.compute_signals(series)
        timing = engine.estimate_timing(series, signals, 0.5, VARIABLE_THRESHOLDS["emotion_anxiety"])
        assert timing.days == pytest.approx(30.0)
        assert timing.confidence_interval == (pytest.approx(1.0), pytest.approx(60.0))
        assert timing.rate == 0.0

    def test_predict_bifurcation_timing(self, engine, ramp_history):
        tp = engine.detect_tipping_points(ramp_history[-1], ramp_history)[0]
        prediction = engine.predict_bifurcation_timing(tp, ramp_history)
        assert prediction.estimated_days >= 1
        assert isinstance(prediction.estimated_days, int)
        assert 0.0 <= prediction.confidence <= 1.0
        assert prediction.intervention_window >= 0


class TestClassification:
    def test_oscillation_with_doubling(self, engine):
        series = [0.2, 0.8] * 10
        signals = ews.compute_signals(series)
        assert engine.classify_bifurcation(series, signals) is BifurcationType.PERIOD_DOUBLING

    def test_flat_series_is_unknown(self, engine):
        series = [0.4] * 10
        assert engine.classify_bifurcation(series, ews.compute_signals(series)) is BifurcationType.UNKNOWN

    def test_heuristics(self):
        signals = ews.compute_signals([0.4] * 10)
        assert calculate_irreversibility(BifurcationType.BLUE_SKY, signals) <= 1.0
        assert calculate_irreversibility(BifurcationType.HOPF, signals) < calculate_irreversibility(
            BifurcationType.FOLD, signals
        )
        assert calculate_prevention_probability(28, signals) > calculate_prevention_probability(2, signals)

    def test_attractor_classification(self, make_twin):
        assert BifurcationEngine.classify_attractor(
            make_twin(metrics=DerivedMetrics(lyapunov_exponent=0.3))
        ) is AttractorType.STRANGE
        assert BifurcationEngine.classify_attractor(
            make_twin(metrics=DerivedMetrics(stability=StabilityClass.STABLE, lyapunov_exponent=-0.5))
        ) is AttractorType.POINT
        assert BifurcationEngine.classify_attractor(
            make_twin(metrics=DerivedMetrics(stability=StabilityClass.METASTABLE, lyapunov_exponent=-0.2))
        ) is AttractorType.LIMIT_CYCLE


class TestDistanceAndLandscape:
    def test_default_twin_closest_to_suicidal_ideation(self, engine, make_twin):
        distance = engine.distance_to_tipping_point(make_twin())
        assert distance.direction == "cognition_suicidal_ideation"
        assert distance.distance == pytest.approx(0.5)
        assert distance.time_to_reach is None

    def test_rising_variable_has_time_to_reach(self, engine, make_twin):
        twin = make_twin({"emotion_anxiety": 0.8}, velocities={"emotion_anxiety": 0.05})
        distance = engine.distance_to_tipping_point(twin)
        assert distance.direction == "emotion_anxiety"
        assert distance.distance == pytest.approx(0.05)
        assert distance.time_to_reach == pytest.approx(1.0)

    def test_landscape_for_default_twin(self, engine, make_twin, clock):
        landscape = engine.analyze_stability_landscape(make_twin())
        assert landscape.current_attractor == "stressed"
        assert landscape.landscape_topology == "complex"
        assert landscape.dominant_transition_path == ("stressed", "healthy")
        assert len(landscape.current_basin_position) == 4
        assert landscape.timestamp == clock()
        assert not landscape.is_landscape_changing

    def test_landscape_for_crisis_twin(self, engine, make_twin):
        twin = make_twin(
            {"emotion_anxiety": 0.9, "emotion_sadness": 0.85, "physio_sleep_quality": 0.15, "social_engagement": 0.1},
            metrics=DerivedMetrics(lyapunov_exponent=0.3),
        )
        landscape = engine.analyze_stability_landscape(twin)
        assert landscape.current_attractor == "crisis"
        assert landscape.is_landscape_changing
        assert landscape.landscape_change_rate == pytest.approx(0.3)


class TestInterventions:
    def test_sorted_by_effect_with_urgency(self, engine):
        interventions = engine.find_interventions("emotion_anxiety", Urgency.LOW)
        assert [i.intervention_type for i in interventions] == ["relaxation", "cognitive_reframe"]
        assert all(i.urgency is Urgency.LOW for i in interventions)

    def test_unmapped_variable(self, engine):
        assert engine.find_interventions("physio_appetite", Urgency.HIGH) == []

    def test_preventive_intervention_urgency(self, engine, ramp_history):
        tp = engine.detect_tipping_points(ramp_history[-1], ramp_history)[0]
        imminent = engine.find_preventive_intervention(replace(tp, estimated_time_to_point=2.0))
        later = engine.find_preventive_intervention(replace(tp, estimated_time_to_point=10.0))
        assert imminent.urgency is Urgency.CRITICAL
        assert later.urgency is Urgency.HIGH
        assert imminent.intervention_type == "relaxation"

    def test_no_preventive_intervention_for_unmapped(self, engine, ramp_history):
        tp = engine.detect_tipping_points(ramp_history[-1], ramp_history)[0]
        assert engine.find_preventive_intervention(replace(tp, critical_parameter="physio_energy")) is None
