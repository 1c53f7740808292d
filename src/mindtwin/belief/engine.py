"""
Belief Update Engine

POMDP-style belief tracking with independent Gaussian beliefs per dimension.

Each observation is turned into an effective weight
``likelihood × type reliability × observation reliability`` and applied to
every dimension it carries a value for with the conjugate normal-normal
rule::

    posterior precision = prior precision + weight / default prior variance
    posterior mean      = precision-weighted average of prior mean and value
    posterior variance  = max(min_variance, 1 / posterior precision)

Observation precision is expressed in units of the default prior precision,
so a perfectly reliable observation carries as much information as a fresh
prior. Without new observations, :meth:`BeliefUpdateEngine.apply_belief_decay`
inflates variance back toward the default prior.
"""

import logging
import math
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..common.config import BeliefEngineConfiguration
from ..common.exceptions import BeliefUpdateError, EmptyBatchError
from .likelihood import DefaultLikelihoodModel, LikelihoodModel
from .models import (
    DIMENSION_GROUPS,
    RISK_DIMENSIONS,
    RISK_LEVEL_VALUES,
    BeliefComponent,
    BeliefMeta,
    BeliefObservation,
    BeliefState,
    BeliefUpdateResult,
    ChangeType,
    ConsistencyReport,
    DimensionBelief,
    DimensionUncertainty,
    EmotionBelief,
    Inconsistency,
    ObservationSuggestion,
    ObservationType,
    Posterior,
    Prior,
    RiskLevel,
    SignificantChange,
    shannon_entropy,
    utcnow,
)

logger = logging.getLogger(__name__)

RELIABILITY_WEIGHTS: Dict[ObservationType, float] = {
    ObservationType.SELF_REPORT_EMOTION: 0.9,
    ObservationType.SELF_REPORT_MOOD: 0.85,
    ObservationType.ASSESSMENT: 0.95,
    ObservationType.TEXT_MESSAGE: 0.7,
    ObservationType.BEHAVIORAL: 0.6,
    ObservationType.CONTEXTUAL: 0.5,
    ObservationType.SENSOR: 0.65,
    ObservationType.INTERACTION: 0.55,
}

DIMENSIONS_BY_TYPE: Dict[ObservationType, Tuple[str, ...]] = {
    ObservationType.SELF_REPORT_EMOTION: ("valence", "arousal", "dominance"),
    ObservationType.SELF_REPORT_MOOD: ("valence", "energy"),
    ObservationType.ASSESSMENT: (
        "valence", "arousal", "self_view", "world_view", "future_view", "overall_risk",
    ),
    ObservationType.TEXT_MESSAGE: ("valence", "self_view", "world_view"),
    ObservationType.BEHAVIORAL: ("energy", "coping_capacity", "engagement"),
    ObservationType.CONTEXTUAL: ("valence", "arousal"),
    ObservationType.SENSOR: ("arousal", "energy"),
    ObservationType.INTERACTION: ("social_support", "relationships"),
}

SUGGESTED_TYPE_BY_DIMENSION: Dict[str, ObservationType] = {
    "valence": ObservationType.SELF_REPORT_EMOTION,
    "arousal": ObservationType.SELF_REPORT_MOOD,
    "dominance": ObservationType.SELF_REPORT_MOOD,
    "self_view": ObservationType.ASSESSMENT,
    "world_view": ObservationType.TEXT_MESSAGE,
    "future_view": ObservationType.ASSESSMENT,
    "overall_risk": ObservationType.ASSESSMENT,
    "energy": ObservationType.SELF_REPORT_MOOD,
    "coping_capacity": ObservationType.BEHAVIORAL,
    "social_support": ObservationType.INTERACTION,
}

# Sensor data is passive and never actively requested
ACTIVE_OBSERVATION_TYPES: Tuple[ObservationType, ...] = tuple(
    t for t in ObservationType if t is not ObservationType.SENSOR
)

RATIONALES: Dict[ObservationType, str] = {
    ObservationType.SELF_REPORT_EMOTION: "Direct emotion report provides a high-reliability emotional state update",
    ObservationType.SELF_REPORT_MOOD: "Mood report captures overall valence and energy",
    ObservationType.ASSESSMENT: "Formal assessment provides a comprehensive state update",
    ObservationType.TEXT_MESSAGE: "Text analysis provides indirect emotional and cognitive insights",
    ObservationType.BEHAVIORAL: "Behavioral patterns reveal energy and engagement levels",
    ObservationType.CONTEXTUAL: "Context helps calibrate predictions",
    ObservationType.SENSOR: "Passive sensing provides continuous low-burden data",
    ObservationType.INTERACTION: "Interaction patterns reveal social support and engagement",
}

TARGET_VARIANCE = 0.05
CREDIBLE_Z = 1.96
SURPRISE_EPSILON = 0.001
CONFIDENCE_CAP = 0.95
CLINICAL_RISK_MEAN = 0.6


def _surprise(likelihood: float) -> float:
    return -math.log(likelihood + SURPRISE_EPSILON)


class BeliefUpdateEngine:
    """Conjugate Gaussian belief updates, decay and active observation selection.

    Args:
        config: Engine settings; defaults to ``BeliefEngineConfiguration()``
        likelihood_model: Likelihood used for weighting and surprise
        rng: Random source for the default likelihood model's noise
        clock: Source of belief timestamps
    """

    def __init__(
        self,
        config: Optional[BeliefEngineConfiguration] = None,
        likelihood_model: Optional[LikelihoodModel] = None,
        rng: Optional[np.random.Generator] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or BeliefEngineConfiguration()
        self.likelihood_model = likelihood_model or DefaultLikelihoodModel(
            noise_level=self.config.likelihood_noise, rng=rng
        )
        self.clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize_belief(self, subject_id: str) -> BeliefState:
        """Fresh belief from population priors."""
        now = self.clock()
        variance = self.config.default_prior_variance

        dimensions = {
            name: DimensionBelief(
                dimension=name,
                prior=Prior(mean=mean, variance=variance, sample_size=0, last_updated=now),
                posterior=Posterior(mean=mean, variance=variance, based_on_observations=0, updated_at=now),
            )
            for group in DIMENSION_GROUPS.values()
            for name, mean in group.items()
        }

        return BeliefState(
            subject_id=subject_id,
            timestamp=now,
            dimensions=dimensions,
            emotion=EmotionBelief.from_priors(),
            meta=BeliefMeta(),
        )

    def update_belief(self, belief: BeliefState, observation: BeliefObservation) -> BeliefUpdateResult:
        """Apply one observation.

        Raises:
            BeliefUpdateError: If an observed value is not numeric or an
                observed risk level is unknown
        """
        likelihood = self.likelihood_model.calculate_likelihood(observation, belief.point_estimate())
        weight = likelihood * RELIABILITY_WEIGHTS[observation.observation_type] * observation.reliability

        updated: Dict[str, DimensionBelief] = {}
        changes: List[SignificantChange] = []

        for component in BeliefComponent:
            if component not in observation.informs_components:
                continue
            for dimension, value in self._observed_values(component, observation, belief.subject_id):
                current = belief.dimensions[dimension]
                new_dim = self._update_dimension(current, value, weight)
                updated[dimension] = new_dim
                change = self._significant_change(current, new_dim)
                if change is not None:
                    changes.append(change)

        emotion = belief.emotion
        if BeliefComponent.EMOTIONAL in observation.informs_components:
            emotion = self._update_emotion(belief.emotion, observation.data.get("emotion"), weight)

        dimensions = dict(belief.dimensions)
        dimensions.update(updated)

        total_gain = max(0.0, sum(d.information_gain for d in updated.values()))
        surprise = _surprise(likelihood)

        meta = belief.meta
        count = meta.total_observations
        new_meta = replace(
            meta,
            overall_confidence=min(CONFIDENCE_CAP, meta.overall_confidence + total_gain * 0.1),
            total_observations=count + 1,
            average_information_gain=(meta.average_information_gain * count + total_gain) / (count + 1),
            belief_consistency=self._consistency_score(dimensions),
        )

        new_belief = BeliefState(
            subject_id=belief.subject_id,
            timestamp=self.clock(),
            dimensions=dimensions,
            emotion=emotion,
            meta=new_meta,
        )

        if changes:
            logger.info(
                f"Significant belief change for subject {belief.subject_id}",
                extra={
                    "subject_id": belief.subject_id,
                    "dimensions": [c.dimension for c in changes],
                    "observation_type": observation.observation_type.value,
                }
            )

        return BeliefUpdateResult(
            previous_belief=belief,
            new_belief=new_belief,
            observation=observation,
            updated_dimensions=tuple(updated),
            total_information_gain=total_gain,
            surprise=surprise,
            significant_changes=tuple(changes),
        )

    def batch_update(self, belief: BeliefState, observations: Iterable[BeliefObservation]) -> BeliefUpdateResult:
        """Apply observations in timestamp order and aggregate the results.

        Information gain is summed, surprise averaged, updated dimensions and
        significant changes de-duplicated.

        Raises:
            EmptyBatchError: If ``observations`` is empty
        """
        ordered = sorted(observations, key=lambda o: o.timestamp)
        if not ordered:
            raise EmptyBatchError(subject_id=belief.subject_id, method="belief_batch_update")

        current = belief
        updated_dimensions: List[str] = []
        changes: List[SignificantChange] = []
        total_gain = 0.0
        total_surprise = 0.0

        for observation in ordered:
            result = self.update_belief(current, observation)
            current = result.new_belief
            updated_dimensions.extend(d for d in result.updated_dimensions if d not in updated_dimensions)
            changes.extend(result.significant_changes)
            total_gain += result.total_information_gain
            total_surprise += result.surprise

        return BeliefUpdateResult(
            previous_belief=belief,
            new_belief=current,
            observation=ordered[-1],
            updated_dimensions=tuple(updated_dimensions),
            total_information_gain=total_gain,
            surprise=total_surprise / len(ordered),
            significant_changes=self._deduplicate(changes),
        )

    def apply_belief_decay(self, belief: BeliefState, hours_elapsed: float) -> BeliefState:
        """Inflate variance by ``(1 + decay_rate) ** hours_elapsed``.

        Variance is capped at the default prior variance; stability and
        overall confidence shrink by the inverse factor. Zero hours returns
        ``belief`` unchanged.
        """
        if hours_elapsed < 0:
            raise ValueError("hours_elapsed must be non-negative")
        if hours_elapsed == 0:
            return belief

        factor = (1.0 + self.config.decay_rate) ** hours_elapsed
        cap = self.config.default_prior_variance

        def decay(dim: DimensionBelief) -> DimensionBelief:
            # Beliefs already wider than the cap are left as they are
            variance = max(dim.posterior.variance, min(cap, dim.posterior.variance * factor))
            return replace(
                dim,
                posterior=replace(dim.posterior, variance=variance),
                stability=dim.stability / factor,
            )

        return replace(
            belief,
            timestamp=self.clock(),
            dimensions={name: decay(dim) for name, dim in belief.dimensions.items()},
            meta=replace(belief.meta, overall_confidence=belief.meta.overall_confidence / factor),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_dimension_uncertainty(self, belief: BeliefState, dimension: str) -> DimensionUncertainty:
        """Posterior variance and the observations needed to reach 0.05.

        Unknown dimensions report the default prior variance.
        """
        dim = belief.get(dimension)
        variance = dim.posterior.variance if dim is not None else self.config.default_prior_variance

        reliability = RELIABILITY_WEIGHTS[ObservationType.SELF_REPORT_EMOTION]
        needed = math.ceil((variance - TARGET_VARIANCE) / (TARGET_VARIANCE * reliability))

        return DimensionUncertainty(
            uncertainty=variance,
            sample_size_needed=max(1, needed),
            suggested_observation_type=SUGGESTED_TYPE_BY_DIMENSION.get(
                dimension, ObservationType.SELF_REPORT_MOOD
            ),
        )

    def expected_information_gain(self, belief: BeliefState, observation_type: ObservationType) -> float:
        """Mean expected log variance reduction over the dimensions a type informs."""
        dimensions = DIMENSIONS_BY_TYPE[observation_type]
        reliability = RELIABILITY_WEIGHTS[observation_type]
        min_variance = self.config.min_variance

        total = 0.0
        for name in dimensions:
            dim = belief.get(name)
            if dim is None:
                continue
            current = dim.posterior.variance
            expected = current * (1.0 - reliability) + min_variance * reliability
            total += max(0.0, math.log(current / expected))
        return total / len(dimensions)

    def suggest_next_observation(self, belief: BeliefState) -> ObservationSuggestion:
        """Active observation selection by expected information gain."""
        best_type = ObservationType.SELF_REPORT_MOOD
        best_gain = 0.0
        best_dimension = "valence"

        for observation_type in ACTIVE_OBSERVATION_TYPES:
            gain = self.expected_information_gain(belief, observation_type)
            if gain > best_gain:
                best_gain = gain
                best_type = observation_type
                best_dimension = self._most_uncertain_dimension(belief, observation_type)

        return ObservationSuggestion(
            observation_type=best_type,
            expected_information_gain=best_gain,
            target_dimension=best_dimension,
            rationale=RATIONALES[best_type],
        )

    def check_consistency(self, belief: BeliefState) -> ConsistencyReport:
        """Flag plausible contradictions between related dimensions for review."""
        mean = belief.mean
        found = []

        if mean("arousal") > 0.5 and mean("energy") < 0.3:
            found.append(Inconsistency(
                "arousal", "energy", "high_arousal_low_energy",
                "May indicate a stress or anxiety state; verify with a direct assessment",
            ))
        if mean("valence") > 0.5 and mean("overall_risk") > 0.5:
            found.append(Inconsistency(
                "valence", "overall_risk", "positive_mood_high_risk",
                "May indicate denial or a manic state; investigate further",
            ))
        if mean("coping_capacity") < 0.3 and mean("social_support") < 0.3 and mean("overall_risk") < 0.3:
            found.append(Inconsistency(
                "resources", "overall_risk", "low_resources_low_risk",
                "Risk may be underestimated; reassess protective factors",
            ))
        if abs(mean("self_view") - mean("future_view")) > 0.5:
            found.append(Inconsistency(
                "self_view", "future_view", "triad_imbalance",
                "Large difference between self and future views; explore cognitive patterns",
            ))

        return ConsistencyReport(is_consistent=not found, inconsistencies=tuple(found))

    def calculate_surprise(self, belief: BeliefState, observation: BeliefObservation) -> float:
        """Negative log-likelihood of ``observation`` under the current point estimate."""
        return _surprise(self.likelihood_model.calculate_likelihood(observation, belief.point_estimate()))

    @staticmethod
    def get_risk_level(belief: BeliefState) -> RiskLevel:
        risk = belief.mean("overall_risk", 0.1)
        if risk >= 0.8:
            return RiskLevel.CRITICAL
        if risk >= 0.6:
            return RiskLevel.HIGH
        if risk >= 0.4:
            return RiskLevel.MEDIUM
        if risk >= 0.2:
            return RiskLevel.LOW
        return RiskLevel.NONE

    @staticmethod
    def calculate_wellbeing(belief: BeliefState) -> float:
        """Wellbeing index on a 0-100 scale."""
        mean = belief.mean
        valence = (mean("valence", 0.0) + 1.0) / 2.0
        perma = sum(mean(d) for d in ("positive", "engagement", "relationships", "meaning", "accomplishment")) / 5
        wellbeing = (
            valence * 0.3
            + mean("energy") * 0.15
            + mean("coping_capacity") * 0.15
            + perma * 0.25
            + (1.0 - mean("overall_risk", 0.1)) * 0.15
        ) * 100
        return max(0.0, min(100.0, wellbeing))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _observed_values(
        self,
        component: BeliefComponent,
        observation: BeliefObservation,
        subject_id: str,
    ) -> List[Tuple[str, float]]:
        data = observation.data
        values = []

        if component is BeliefComponent.RISK and "risk_level" in data:
            try:
                level = RiskLevel(data["risk_level"])
            except ValueError as e:
                raise BeliefUpdateError(
                    f"Unknown risk level: {data['risk_level']!r}",
                    subject_id=subject_id,
                    observation_type=observation.observation_type.value,
                    cause=e
                ) from e
            values.append(("overall_risk", RISK_LEVEL_VALUES[level]))

        for name in DIMENSION_GROUPS[component]:
            if name not in data or any(existing == name for existing, _ in values):
                continue
            raw = data[name]
            if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not math.isfinite(raw):
                raise BeliefUpdateError(
                    f"Observed value for {name} must be a finite number, got {raw!r}",
                    subject_id=subject_id,
                    observation_type=observation.observation_type.value
                )
            values.append((name, float(raw)))

        return values

    def _update_dimension(self, dim: DimensionBelief, value: float, weight: float) -> DimensionBelief:
        prior = dim.posterior
        prior_precision = 1.0 / prior.variance
        observation_precision = weight / self.config.default_prior_variance

        posterior_precision = prior_precision + observation_precision
        posterior_mean = (prior.mean * prior_precision + value * observation_precision) / posterior_precision
        posterior_variance = max(self.config.min_variance, 1.0 / posterior_precision)
        shift = abs(posterior_mean - prior.mean)

        return DimensionBelief(
            dimension=dim.dimension,
            prior=Prior(
                mean=prior.mean,
                variance=prior.variance,
                sample_size=prior.based_on_observations,
                last_updated=prior.updated_at,
            ),
            posterior=Posterior(
                mean=posterior_mean,
                variance=posterior_variance,
                based_on_observations=prior.based_on_observations + 1,
                updated_at=self.clock(),
            ),
            belief_shift=shift,
            information_gain=math.log(prior.variance / posterior_variance) / 2.0,
            stability=1.0 - shift,
        )

    def _significant_change(self, before: DimensionBelief, after: DimensionBelief) -> Optional[SignificantChange]:
        shift = after.belief_shift
        if shift <= self.config.significance_threshold:
            return None

        increased = after.posterior.mean > before.posterior.mean
        clinical_threshold = self.config.clinical_significance_threshold

        if after.dimension in RISK_DIMENSIONS:
            change_type = ChangeType.DECLINE if increased else ChangeType.IMPROVEMENT
            clinical = after.posterior.mean > CLINICAL_RISK_MEAN or shift > clinical_threshold
        else:
            change_type = ChangeType.IMPROVEMENT if increased else ChangeType.DECLINE
            clinical = shift > clinical_threshold

        return SignificantChange(
            dimension=after.dimension,
            change_type=change_type,
            magnitude=shift,
            clinical_significance=clinical,
        )

    @staticmethod
    def _update_emotion(current: EmotionBelief, observed, weight: float) -> EmotionBelief:
        """Shift mass toward the observed emotion; unknown emotions are ignored."""
        if not observed or observed not in current.distribution:
            return current

        shifted = {
            emotion: (p + weight * (1.0 - p)) if emotion == observed else p * (1.0 - weight)
            for emotion, p in current.distribution.items()
        }
        total = sum(shifted.values())
        distribution = {emotion: p / total for emotion, p in shifted.items()}
        return EmotionBelief(distribution=distribution, entropy=shannon_entropy(distribution.values()))

    @staticmethod
    def _consistency_score(dimensions: Mapping[str, DimensionBelief]) -> float:
        def mean(name: str) -> float:
            return dimensions[name].posterior.mean

        score = 1.0
        # Valence and risk should move in opposite directions
        if -mean("valence") * mean("overall_risk") < -0.3:
            score -= 0.2
        if abs(mean("energy") - (mean("arousal") + 1.0) / 2.0) > 0.5:
            score -= 0.1
        return max(0.0, score)

    @staticmethod
    def _most_uncertain_dimension(belief: BeliefState, observation_type: ObservationType) -> str:
        dimensions = DIMENSIONS_BY_TYPE[observation_type]
        best = dimensions[0]
        highest = 0.0
        for name in dimensions:
            dim = belief.get(name)
            if dim is not None and dim.posterior.variance > highest:
                highest = dim.posterior.variance
                best = name
        return best

    @staticmethod
    def _deduplicate(changes: Sequence[SignificantChange]) -> Tuple[SignificantChange, ...]:
        seen = set()
        unique = []
        for change in changes:
            key = (change.dimension, change.change_type)
            if key in seen:
                continue
            seen.add(key)
            unique.append(change)
        return tuple(unique)
