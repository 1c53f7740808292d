"""
Tests for the belief update engine and likelihood models.
"""

import math
from datetime import timedelta

import pytest

from mindtwin.belief.adapter import DimensionEstimate, apply_belief_update
from mindtwin.belief.engine import BeliefUpdateEngine
from mindtwin.belief.likelihood import DefaultLikelihoodModel, LikelihoodModel
from mindtwin.belief.models import (
    BeliefComponent,
    BeliefObservation,
    ChangeType,
    ObservationType,
    RiskLevel,
)
from mindtwin.common.config import BeliefEngineConfiguration
from mindtwin.common.exceptions import BeliefUpdateError, EmptyBatchError


@pytest.fixture
def engine(clock):
    return BeliefUpdateEngine(BeliefEngineConfiguration(likelihood_noise=0.0), clock=clock)


@pytest.fixture
def belief(engine):
    return engine.initialize_belief("subject-1")


def emotion_report(timestamp, **data):
    return BeliefObservation(
        observation_type=ObservationType.SELF_REPORT_EMOTION,
        timestamp=timestamp,
        data=data,
        informs_components={BeliefComponent.EMOTIONAL},
    )


class TestInitialization:
    def test_population_priors(self, belief, clock):
        assert belief.timestamp == clock()
        assert belief.mean("valence") == 0.0
        assert belief.mean("overall_risk") == pytest.approx(0.1)
        assert belief.variance("valence", 0.0) == pytest.approx(0.25)
        assert len(belief.dimensions) == 19
        assert sum(belief.emotion.distribution.values()) == pytest.approx(1.0)
        assert belief.emotion.most_likely[0] == "neutral"
        assert belief.meta.total_observations == 0


class TestUpdate:
    def test_conjugate_update(self, engine, belief, clock):
        result = engine.update_belief(belief, emotion_report(clock(), valence=0.8))

        # weight = 0.95 likelihood * 0.9 type reliability; precision 4 + 0.855 / 0.25
        precision = 4.0 + 0.855 / 0.25
        valence = result.new_belief.get("valence")
        assert valence.posterior.mean == pytest.approx(0.8 * (0.855 / 0.25) / precision)
        assert valence.posterior.variance == pytest.approx(1.0 / precision)
        assert valence.posterior.based_on_observations == 1
        assert valence.prior.mean == 0.0
        assert result.updated_dimensions == ("valence",)
        assert result.total_information_gain == pytest.approx(math.log(0.25 * precision) / 2)
        assert result.surprise == pytest.approx(-math.log(0.95 + 0.001))

    def test_previous_belief_untouched(self, engine, belief, clock):
        result = engine.update_belief(belief, emotion_report(clock(), valence=0.8))
        assert result.previous_belief is belief
        assert belief.mean("valence") == 0.0
        assert result.new_belief.meta.total_observations == 1
        assert result.new_belief.meta.overall_confidence > belief.meta.overall_confidence

    def test_significant_improvement(self, engine, belief, clock):
        result = engine.update_belief(belief, emotion_report(clock(), valence=0.8))
        (change,) = result.significant_changes
        assert change.dimension == "valence"
        assert change.change_type is ChangeType.IMPROVEMENT
        assert change.clinical_significance

    def test_small_shift_is_not_significant(self, engine, belief, clock):
        result = engine.update_belief(belief, emotion_report(clock(), dominance=0.6))
        assert result.significant_changes == ()

    def test_rising_risk_is_a_decline(self, engine, belief, clock):
        observation = BeliefObservation(
            observation_type=ObservationType.ASSESSMENT,
            timestamp=clock(),
            data={"risk_level": "high"},
            informs_components={BeliefComponent.RISK},
        )
        result = engine.update_belief(belief, observation)
        (change,) = result.significant_changes
        assert change.dimension == "overall_risk"
        assert change.change_type is ChangeType.DECLINE
        assert change.clinical_significance
        assert result.new_belief.mean("overall_risk") > 0.4

    def test_components_gate_updates(self, engine, belief, clock):
        observation = BeliefObservation(
            observation_type=ObservationType.BEHAVIORAL,
            timestamp=clock(),
            data={"energy": 0.2, "valence": 0.9},
            informs_components={BeliefComponent.RESOURCES},
        )
        result = engine.update_belief(belief, observation)
        assert result.updated_dimensions == ("energy",)
        assert result.new_belief.mean("valence") == 0.0

    def test_cognitive_triad_update(self, engine, belief, clock):
        observation = BeliefObservation(
            observation_type=ObservationType.TEXT_MESSAGE,
            timestamp=clock(),
            data={"self_view": 0.2, "future_view": 0.1},
            informs_components={BeliefComponent.COGNITIVE},
        )
        result = engine.update_belief(belief, observation)
        assert set(result.updated_dimensions) == {"self_view", "future_view"}
        assert result.new_belief.mean("self_view") < 0.5

    def test_emotion_distribution_shifts(self, engine, belief, clock):
        result = engine.update_belief(belief, emotion_report(clock(), emotion="joy"))
        emotion = result.new_belief.emotion
        assert emotion.distribution["joy"] > belief.emotion.distribution["joy"]
        assert sum(emotion.distribution.values()) == pytest.approx(1.0)
        assert emotion.most_likely[0] == "joy"

    def test_unknown_emotion_ignored(self, engine, belief, clock):
        result = engine.update_belief(belief, emotion_report(clock(), emotion="euphoria"))
        assert dict(result.new_belief.emotion.distribution) == dict(belief.emotion.distribution)

    def test_invalid_values_rejected(self, engine, belief, clock):
        with pytest.raises(BeliefUpdateError):
            engine.update_belief(belief, emotion_report(clock(), valence="very good"))
        with pytest.raises(BeliefUpdateError):
            engine.update_belief(belief, BeliefObservation(
                observation_type=ObservationType.ASSESSMENT,
                timestamp=clock(),
                data={"risk_level": "extreme"},
                informs_components={BeliefComponent.RISK},
            ))

    def test_surprise_uses_the_applied_likelihood(self, clock):
        class SequenceLikelihood(LikelihoodModel):
            def __init__(self, values):
                self.values = iter(values)

            def calculate_likelihood(self, observation, hypothesized_state=None):
                return next(self.values)

        engine = BeliefUpdateEngine(
            BeliefEngineConfiguration(), likelihood_model=SequenceLikelihood([0.5, 0.9]), clock=clock
        )
        belief = engine.initialize_belief("subject-1")
        result = engine.update_belief(belief, emotion_report(clock(), valence=0.8))

        precision = 4.0 + 0.5 * 0.9 / 0.25
        assert result.new_belief.get("valence").posterior.variance == pytest.approx(1.0 / precision)
        assert result.surprise == pytest.approx(-math.log(0.5 + 0.001))

    def test_variance_floor(self, clock):
        engine = BeliefUpdateEngine(
            BeliefEngineConfiguration(likelihood_noise=0.0, min_variance=0.05), clock=clock
        )
        belief = engine.initialize_belief("subject-1")
        for _ in range(20):
            belief = engine.update_belief(belief, emotion_report(clock(), arousal=0.4)).new_belief
        assert belief.variance("arousal", 1.0) == pytest.approx(0.05)


class TestBatch:
    def test_empty_batch(self, engine, belief):
        with pytest.raises(EmptyBatchError):
            engine.batch_update(belief, [])

    def test_order_of_arrival_does_not_matter(self, engine, belief, clock):
        first = emotion_report(clock(), valence=0.6, arousal=0.2)
        second = emotion_report(clock() + timedelta(hours=1), valence=-0.2, arousal=0.5)

        forward = engine.batch_update(belief, [first, second])
        backward = engine.batch_update(belief, [second, first])

        for name in ("valence", "arousal"):
            assert forward.new_belief.mean(name) == pytest.approx(backward.new_belief.mean(name))
            assert forward.new_belief.variance(name, 0) == pytest.approx(backward.new_belief.variance(name, 0))
        assert forward.observation is second
        assert backward.observation is second

    def test_aggregates(self, engine, belief, clock):
        observations = [
            emotion_report(clock(), valence=0.8),
            emotion_report(clock() + timedelta(minutes=5), valence=0.85),
        ]
        result = engine.batch_update(belief, observations)
        single = engine.update_belief(belief, observations[0])

        assert result.updated_dimensions == ("valence",)
        assert result.total_information_gain > single.total_information_gain
        assert len(result.significant_changes) == 1
        assert result.new_belief.meta.total_observations == 2


class TestDecay:
    def test_zero_hours_is_noop(self, engine, belief):
        assert engine.apply_belief_decay(belief, 0) is belief

    def test_negative_hours_rejected(self, engine, belief):
        with pytest.raises(ValueError):
            engine.apply_belief_decay(belief, -1)

    def test_variance_grows_toward_prior(self, engine, belief, clock):
        updated = engine.update_belief(belief, emotion_report(clock(), valence=0.8)).new_belief
        before = updated.variance("valence", 0)

        decayed = engine.apply_belief_decay(updated, 10)
        longer = engine.apply_belief_decay(updated, 1000)

        assert decayed.variance("valence", 0) == pytest.approx(before * 1.01 ** 10)
        assert decayed.variance("valence", 0) > before
        assert longer.variance("valence", 0) == pytest.approx(0.25)
        assert decayed.mean("valence") == updated.mean("valence")
        assert decayed.meta.overall_confidence < updated.meta.overall_confidence

    def test_fresh_belief_stays_at_prior(self, engine, belief):
        decayed = engine.apply_belief_decay(belief, 24)
        assert decayed.variance("energy", 0) == pytest.approx(0.25)


class TestQueries:
    def test_dimension_uncertainty(self, engine, belief):
        uncertainty = engine.get_dimension_uncertainty(belief, "social_support")
        assert uncertainty.uncertainty == pytest.approx(0.25)
        assert uncertainty.sample_size_needed == 5
        assert uncertainty.suggested_observation_type is ObservationType.INTERACTION

    def test_unknown_dimension_uncertainty(self, engine, belief):
        uncertainty = engine.get_dimension_uncertainty(belief, "creativity")
        assert uncertainty.uncertainty == pytest.approx(0.25)
        assert uncertainty.suggested_observation_type is ObservationType.SELF_REPORT_MOOD

    def test_certain_dimension_needs_one_sample(self, engine, belief, clock):
        for _ in range(10):
            belief = engine.update_belief(belief, emotion_report(clock(), valence=0.1)).new_belief
        assert engine.get_dimension_uncertainty(belief, "valence").sample_size_needed == 1

    def test_suggests_assessment_for_fresh_belief(self, engine, belief):
        suggestion = engine.suggest_next_observation(belief)
        assert suggestion.observation_type is ObservationType.ASSESSMENT
        assert suggestion.target_dimension == "valence"
        assert suggestion.expected_information_gain > 0
        assert suggestion.rationale

    def test_sensor_never_suggested(self, engine, belief):
        gains = {t: engine.expected_information_gain(belief, t) for t in ObservationType}
        assert engine.suggest_next_observation(belief).observation_type is not ObservationType.SENSOR
        assert gains[ObservationType.ASSESSMENT] > gains[ObservationType.CONTEXTUAL]

    def test_consistency(self, engine, belief):
        assert engine.check_consistency(belief).is_consistent

        conflicted = apply_belief_update(belief, {
            "valence": DimensionEstimate(0.8, 0.1),
            "risk": DimensionEstimate(0.7, 0.1),
        })
        report = engine.check_consistency(conflicted)
        assert not report.is_consistent
        assert [i.conflict_type for i in report.inconsistencies] == ["positive_mood_high_risk"]

    def test_risk_level(self, engine, belief):
        assert engine.get_risk_level(belief) is RiskLevel.NONE
        high = apply_belief_update(belief, {"risk": DimensionEstimate(0.7, 0.1)})
        assert engine.get_risk_level(high) is RiskLevel.HIGH

    def test_wellbeing_index(self, engine, belief):
        assert engine.calculate_wellbeing(belief) == pytest.approx(56.0)


class TestLikelihood:
    def test_deterministic_without_noise(self, clock):
        model = DefaultLikelihoodModel(noise_level=0.0)
        observation = emotion_report(clock(), valence=0.2)
        assert model.calculate_likelihood(observation) == pytest.approx(0.95)

    def test_noise_stays_in_bounds(self, clock, rng):
        model = DefaultLikelihoodModel(noise_level=0.2, rng=rng)
        observation = BeliefObservation(
            observation_type=ObservationType.CONTEXTUAL, timestamp=clock(), reliability=0.05
        )
        values = [model.calculate_likelihood(observation) for _ in range(50)]
        assert all(0.01 <= v <= 0.99 for v in values)
        assert len(set(values)) > 1
        assert model.get_parameters() == {"noise_level": 0.2}

    def test_negative_noise_rejected(self):
        with pytest.raises(ValueError):
            DefaultLikelihoodModel(noise_level=-0.1)

    def test_observation_validation(self, clock):
        with pytest.raises(ValueError):
            BeliefObservation(observation_type=ObservationType.SENSOR, timestamp=clock(), reliability=1.5)
