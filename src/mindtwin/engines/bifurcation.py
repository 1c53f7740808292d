"""
Bifurcation / Early-Warning Engine.

Scans each critical variable's history for early warning signals, decides
whether the variable is approaching its critical threshold, classifies the
likely bifurcation, estimates time to transition and attaches preventive
interventions. Irreversibility and prevention probability are prioritization
heuristics, not calibrated probabilities.
"""

import logging
import math
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.stats import linregress

from . import early_warning as ews
from ..models.tipping_point import (
    AttractorBasin,
    BifurcationType,
    EarlyWarningSignals,
    InterventionRecommendation,
    StabilityLandscape,
    ThresholdDirection,
    TimingEstimate,
    TimingPrediction,
    TippingPoint,
    TippingPointDistance,
    Urgency,
    VariableThreshold,
)
from ..models.twin import AttractorType, StabilityClass, TwinState, utcnow

logger = logging.getLogger(__name__)

HIGH = ThresholdDirection.HIGH
LOW = ThresholdDirection.LOW

VARIABLE_THRESHOLDS: Dict[str, VariableThreshold] = {
    "emotion_anxiety": VariableThreshold(0.85, 0.3, HIGH, 1.0),
    "emotion_sadness": VariableThreshold(0.85, 0.3, HIGH, 1.0),
    "emotion_hopelessness": VariableThreshold(0.8, 0.25, HIGH, 1.2),
    "cognition_rumination": VariableThreshold(0.8, 0.3, HIGH, 0.9),
    "cognition_suicidal_ideation": VariableThreshold(0.5, 0.1, HIGH, 2.0),
    "behavior_withdrawal": VariableThreshold(0.8, 0.3, HIGH, 0.8),
    "behavior_substance_use": VariableThreshold(0.7, 0.2, HIGH, 1.1),
    "physio_sleep_quality": VariableThreshold(0.2, 0.6, LOW, 0.9),
    "physio_energy": VariableThreshold(0.2, 0.5, LOW, 0.8),
    "social_engagement": VariableThreshold(0.2, 0.5, LOW, 0.7),
}

INTERVENTION_MAPPING: Dict[str, Tuple[InterventionRecommendation, ...]] = {
    "emotion_anxiety": (
        InterventionRecommendation(
            "relaxation", "emotion_anxiety", -0.3, Urgency.HIGH, 0.8,
            "Progressive muscle relaxation or breathing exercises",
        ),
        InterventionRecommendation(
            "cognitive_reframe", "emotion_anxiety", -0.25, Urgency.MEDIUM, 0.7,
            "Cognitive restructuring of anxious thoughts",
        ),
    ),
    "emotion_sadness": (
        InterventionRecommendation(
            "behavioral_activation", "emotion_sadness", -0.25, Urgency.HIGH, 0.7,
            "Scheduled pleasant activities",
        ),
        InterventionRecommendation(
            "social_support", "emotion_sadness", -0.2, Urgency.MEDIUM, 0.6,
            "Reach out to a supportive person",
        ),
    ),
    "cognition_rumination": (
        InterventionRecommendation(
            "mindfulness", "cognition_rumination", -0.3, Urgency.HIGH, 0.75,
            "Mindfulness meditation to break the rumination cycle",
        ),
    ),
    "cognition_suicidal_ideation": (
        InterventionRecommendation(
            "crisis_intervention", "cognition_suicidal_ideation", -0.4, Urgency.CRITICAL, 0.9,
            "Immediate crisis support and safety planning",
        ),
    ),
    "physio_sleep_quality": (
        InterventionRecommendation(
            "sleep_hygiene", "physio_sleep_quality", 0.25, Urgency.MEDIUM, 0.8,
            "Sleep hygiene improvement protocol",
        ),
    ),
}

BASE_IRREVERSIBILITY: Dict[BifurcationType, float] = {
    BifurcationType.SADDLE_NODE: 0.8,
    BifurcationType.FOLD: 0.9,
    BifurcationType.HOPF: 0.3,
    BifurcationType.TRANSCRITICAL: 0.5,
    BifurcationType.PITCHFORK: 0.6,
    BifurcationType.PERIOD_DOUBLING: 0.4,
    BifurcationType.BLUE_SKY: 0.95,
    BifurcationType.UNKNOWN: 0.5,
}

DEFAULT_ATTRACTORS: Tuple[AttractorBasin, ...] = (
    AttractorBasin(
        "healthy", AttractorType.POINT,
        {"emotion_anxiety": 0.2, "emotion_sadness": 0.2, "physio_sleep_quality": 0.8, "social_engagement": 0.7},
        basin_size=0.4, basin_depth=0.6, escape_velocity=0.5, neighboring_attractors=("stressed",),
    ),
    AttractorBasin(
        "stressed", AttractorType.POINT,
        {"emotion_anxiety": 0.5, "emotion_sadness": 0.4, "physio_sleep_quality": 0.5, "social_engagement": 0.5},
        basin_size=0.3, basin_depth=0.4, escape_velocity=0.3, neighboring_attractors=("healthy", "crisis"),
    ),
    AttractorBasin(
        "crisis", AttractorType.STRANGE,
        {"emotion_anxiety": 0.85, "emotion_sadness": 0.8, "physio_sleep_quality": 0.2, "social_engagement": 0.2},
        basin_size=0.3, basin_depth=0.7, escape_velocity=0.8, neighboring_attractors=("stressed",),
    ),
)

# Distance at which the threshold counts as reached in timing estimates
ARRIVAL_DISTANCE = 0.01
MIN_FIT_POINTS = 3


@dataclass(frozen=True)
class ApproachAssessment:
    is_approaching: bool
    distance: float
    urgency: Urgency


def calculate_irreversibility(bifurcation_type: BifurcationType, signals: EarlyWarningSignals) -> float:
    """Heuristic: type base value scaled by ``0.5 + 0.5 * composite``, capped at 1."""
    base = BASE_IRREVERSIBILITY[bifurcation_type]
    return min(1.0, base * (0.5 + signals.composite_score * 0.5))


def calculate_prevention_probability(days: float, signals: EarlyWarningSignals) -> float:
    """Heuristic: more lead time and weaker signals favour prevention."""
    time_factor = min(1.0, days / 14)
    signal_factor = 1.0 - signals.composite_score
    return time_factor * 0.6 + signal_factor * 0.4


def fit_exponential_approach(series: Sequence[float], threshold: float) -> Tuple[float, float]:
    """Least-squares fit of ``log(|threshold - x_t|)`` against ``t``.

    Returns ``(rate, r_squared)`` with ``rate = -slope`` clamped at zero.
    Points within ``ARRIVAL_DISTANCE`` of the threshold are ignored; fewer
    than three samples or two usable points yield ``(0, 0)``.
    """
    x = np.asarray(series, dtype=float)
    if len(x) < MIN_FIT_POINTS:
        return 0.0, 0.0

    distances = np.abs(threshold - x)
    mask = distances > ARRIVAL_DISTANCE
    if np.count_nonzero(mask) < 2:
        return 0.0, 0.0

    times = np.arange(len(x), dtype=float)[mask]
    log_distances = np.log(distances[mask])
    fit = linregress(times, log_distances)

    predictions = fit.intercept + fit.slope * times
    ss_total = float(np.sum((log_distances - log_distances.mean()) ** 2))
    ss_residual = float(np.sum((log_distances - predictions) ** 2))
    r_squared = max(0.0, 1.0 - ss_residual / ss_total) if ss_total > 0 else 0.0

    return max(0.0, -float(fit.slope)), r_squared


class BifurcationEngine:
    """Detect approaching tipping points from twin history.

    Args:
        min_history: Snapshots required before any detection is attempted
        approach_distance: Distance to threshold that counts as "near"
        min_days: Lower clamp on the time-to-transition estimate
        max_days: Upper clamp on the time-to-transition estimate
        clock: Source of detection timestamps
    """

    def __init__(
        self,
        min_history: int = 7,
        approach_distance: float = 0.3,
        min_days: float = 1.0,
        max_days: float = 365.0,
        thresholds: Optional[Mapping[str, VariableThreshold]] = None,
        interventions: Optional[Mapping[str, Sequence[InterventionRecommendation]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.min_history = min_history
        self.approach_distance = approach_distance
        self.min_days = min_days
        self.max_days = max_days
        self.thresholds = dict(thresholds or VARIABLE_THRESHOLDS)
        self.interventions = {k: tuple(v) for k, v in (interventions or INTERVENTION_MAPPING).items()}
        self.clock = clock

    def detect_tipping_points(self, twin: TwinState, history: Sequence[TwinState]) -> List[TippingPoint]:
        """Tipping points for every critical variable, soonest first.

        Returns an empty list when fewer than ``min_history`` snapshots exist.
        """
        if len(history) < self.min_history:
            return []

        tipping_points = []
        for variable_id, threshold in self.thresholds.items():
            variable = twin.get(variable_id)
            if variable is None:
                continue

            series = self.extract_series(history, variable_id)
            if len(series) < self.min_history:
                continue

            signals = ews.compute_signals(series)
            approach = self.assess_approach(signals, variable.value, threshold)
            if not approach.is_approaching:
                continue

            bifurcation_type = self.classify_bifurcation(series, signals)
            timing = self.estimate_timing(series, signals, variable.value, threshold)
            now = self.clock()

            tipping_points.append(TippingPoint(
                tipping_point_id=f"TP_{uuid.uuid4().hex[:12]}",
                detected_at=now,
                bifurcation_type=bifurcation_type,
                critical_parameter=variable_id,
                critical_threshold=threshold.critical_value,
                current_distance=approach.distance,
                estimated_time_to_point=timing.days,
                confidence_interval=timing.confidence_interval,
                pre_transition_state=self.classify_attractor(twin),
                post_transition_state=self.predict_post_transition(bifurcation_type, threshold),
                expected_outcome="crisis" if threshold.direction is HIGH else "recovery",
                irreversibility=calculate_irreversibility(bifurcation_type, signals),
                early_warning_strength=signals.composite_score,
                autocorrelation_increase=signals.autocorrelation_trend,
                variance_increase=signals.variance_trend,
                cross_correlation_increase=signals.cross_correlation_trend,
                flickering_detected=signals.flickering_score > ews.FLICKERING_THRESHOLD,
                skewness_change=signals.skewness_change,
                dfa_exponent=signals.dfa_exponent,
                criticality_level=signals.criticality_level,
                urgency=approach.urgency,
                intervention_window_days=max(0.0, timing.days - 2),
                prevention_probability=calculate_prevention_probability(timing.days, signals),
                recommended_interventions=tuple(self.find_interventions(variable_id, approach.urgency)),
                signals=signals,
            ))

            logger.info(
                f"Tipping point detected for {variable_id}",
                extra={
                    "subject_id": twin.subject_id,
                    "variable_id": variable_id,
                    "bifurcation_type": bifurcation_type.value,
                    "days": round(timing.days, 2),
                    "composite_score": round(signals.composite_score, 3),
                }
            )

        return sorted(tipping_points, key=lambda tp: tp.estimated_time_to_point)

    @staticmethod
    def extract_series(history: Sequence[TwinState], variable_id: str) -> List[float]:
        return [state.value_of(variable_id, 0.0) for state in history]

    def assess_approach(
        self,
        signals: EarlyWarningSignals,
        current_value: float,
        threshold: VariableThreshold,
    ) -> ApproachAssessment:
        """Warning signal present AND (near, trending toward, or flickering)."""
        distance = threshold.distance(current_value)

        signal_warning = (
            signals.composite_score > ews.COMPOSITE_WARNING
            or signals.autocorrelation > ews.AUTOCORRELATION_WARNING
        )
        near_threshold = distance < self.approach_distance
        if threshold.direction is HIGH:
            trending_towards = signals.variance_trend > 0.1
        else:
            trending_towards = signals.variance_trend < -0.1
        flickering = signals.flickering_score > ews.FLICKERING_THRESHOLD

        is_approaching = signal_warning and (near_threshold or trending_towards or flickering)

        if distance < 0.1 and signals.composite_score > 0.7:
            urgency = Urgency.CRITICAL
        elif distance < 0.2 and signals.composite_score > 0.5:
            urgency = Urgency.HIGH
        elif is_approaching:
            urgency = Urgency.MEDIUM
        else:
            urgency = Urgency.LOW

        return ApproachAssessment(is_approaching=is_approaching, distance=distance, urgency=urgency)

    def classify_bifurcation(self, series: Sequence[float], signals: EarlyWarningSignals) -> BifurcationType:
        """Deterministic decision tree over the indicator values."""
        oscillation = ews.periodicity_score(series)
        bistability = ews.flickering_score(series)

        if oscillation > 0.6 and signals.periodicity_score > 0.5:
            if ews.period_doubling_score(series) > 0.4:
                return BifurcationType.PERIOD_DOUBLING
            return BifurcationType.HOPF

        if (
            signals.autocorrelation_trend > 0.2
            and signals.variance_trend > 0.3
            and abs(signals.skewness) > 0.5
        ):
            return BifurcationType.SADDLE_NODE

        if bistability > 0.4:
            return BifurcationType.FOLD

        if signals.composite_score > 0.8 and signals.dfa_exponent > 0.9:
            return BifurcationType.BLUE_SKY

        if signals.autocorrelation_trend > 0.1 and abs(signals.skewness) < 0.3:
            return BifurcationType.TRANSCRITICAL

        if abs(signals.skewness) > 0.8 and bistability > 0.3:
            return BifurcationType.PITCHFORK

        return BifurcationType.UNKNOWN

    def estimate_timing(
        self,
        series: Sequence[float],
        signals: EarlyWarningSignals,
        current_value: float,
        threshold: VariableThreshold,
    ) -> TimingEstimate:
        """Days until the threshold from the exponential-approach fit.

        Falls back to 14 days (composite above 0.5) or 30 days when no
        positive approach rate can be estimated. The interval half-width is
        ``sqrt(variance_ratio) * days``.
        """
        distance = abs(threshold.critical_value - current_value)
        rate, r_squared = fit_exponential_approach(series, threshold.critical_value)

        if rate > 0:
            days = math.log(max(distance, 1e-12) / ARRIVAL_DISTANCE) / rate
        else:
            days = 14.0 if signals.composite_score > ews.COMPOSITE_WARNING else 30.0

        days = max(self.min_days, min(self.max_days, days))

        uncertainty = math.sqrt(max(signals.variance_ratio, 0.0)) * days
        interval = (max(self.min_days, days - uncertainty), days + uncertainty)

        return TimingEstimate(days=days, confidence_interval=interval, rate=rate, r_squared=r_squared)

    def predict_bifurcation_timing(self, tipping_point: TippingPoint, history: Sequence[TwinState]) -> TimingPrediction:
        """Refit timing for an existing tipping point against fresh history."""
        series = self.extract_series(history, tipping_point.critical_parameter)
        rate, r_squared = fit_exponential_approach(series, tipping_point.critical_threshold)

        current = series[-1] if series else 0.0
        distance = abs(tipping_point.critical_threshold - current)

        if rate > 0:
            estimated = math.log(max(distance, 1e-12) / ARRIVAL_DISTANCE) / rate
        else:
            estimated = self.max_days

        confidence = min(1.0, r_squared * (tipping_point.early_warning_strength + 0.5))
        window = max(0.0, estimated - 3)

        return TimingPrediction(
            estimated_days=max(1, int(round(estimated))),
            confidence=confidence,
            intervention_window=int(round(window)),
        )

    def distance_to_tipping_point(self, twin: TwinState) -> TippingPointDistance:
        """Closest not-yet-crossed threshold, ranked by importance weight."""
        best_weighted = math.inf
        min_distance = math.inf
        critical_variable = ""
        velocity = 0.0

        for variable_id, threshold in self.thresholds.items():
            variable = twin.get(variable_id)
            if variable is None:
                continue
            distance = threshold.distance(variable.value)
            if distance <= 0:
                continue
            weighted = distance / threshold.weight
            if weighted < best_weighted:
                best_weighted = weighted
                min_distance = distance
                critical_variable = variable_id
                velocity = variable.velocity

        if not critical_variable:
            return TippingPointDistance(distance=1.0, direction="", velocity=0.0, time_to_reach=None)

        time_to_reach = None
        direction = self.thresholds[critical_variable].direction
        if (direction is HIGH and velocity > 0) or (direction is LOW and velocity < 0):
            time_to_reach = min_distance / abs(velocity)

        return TippingPointDistance(
            distance=min(1.0, min_distance),
            direction=critical_variable,
            velocity=velocity,
            time_to_reach=time_to_reach,
        )

    def analyze_stability_landscape(self, twin: TwinState) -> StabilityLandscape:
        attractors = DEFAULT_ATTRACTORS
        current = self._nearest_attractor(twin, attractors)

        if current is None:
            position: Tuple[float, ...] = (0.5, 0.5)
        else:
            position = tuple(
                twin.value_of(variable_id) - center
                for variable_id, center in current.center_state.items()
                if twin.get(variable_id) is not None
            )

        if len(attractors) > 2:
            topology = "complex"
        elif len(attractors) == 2:
            topology = "multistable"
        else:
            topology = "simple"

        lyapunov = twin.metrics.lyapunov_exponent
        return StabilityLandscape(
            timestamp=self.clock(),
            attractors=attractors,
            current_attractor=current.attractor_id if current else "unknown",
            current_basin_position=position,
            landscape_topology=topology,
            dominant_transition_path=self._transition_path(attractors, current),
            is_landscape_changing=lyapunov > -0.1,
            landscape_change_rate=abs(lyapunov),
        )

    def find_preventive_intervention(self, tipping_point: TippingPoint) -> Optional[InterventionRecommendation]:
        urgency = Urgency.CRITICAL if tipping_point.estimated_time_to_point < 3 else Urgency.HIGH
        interventions = self.find_interventions(tipping_point.critical_parameter, urgency)
        return interventions[0] if interventions else None

    def find_interventions(self, variable_id: str, urgency: Urgency) -> List[InterventionRecommendation]:
        """Mapped interventions stamped with ``urgency``, largest effect first."""
        return sorted(
            (replace(intervention, urgency=urgency) for intervention in self.interventions.get(variable_id, ())),
            key=lambda intervention: abs(intervention.expected_effect),
            reverse=True,
        )

    @staticmethod
    def classify_attractor(twin: TwinState) -> AttractorType:
        if twin.metrics.lyapunov_exponent > 0:
            return AttractorType.STRANGE
        if twin.metrics.stability is StabilityClass.STABLE:
            return AttractorType.POINT
        if twin.metrics.stability is StabilityClass.METASTABLE:
            return AttractorType.LIMIT_CYCLE
        return AttractorType.NONE

    @staticmethod
    def predict_post_transition(bifurcation_type: BifurcationType, threshold: VariableThreshold) -> AttractorType:
        if threshold.direction is HIGH:
            if bifurcation_type in (BifurcationType.HOPF, BifurcationType.PERIOD_DOUBLING):
                return AttractorType.LIMIT_CYCLE
            return AttractorType.STRANGE
        return AttractorType.POINT

    @staticmethod
    def _nearest_attractor(twin: TwinState, attractors: Sequence[AttractorBasin]) -> Optional[AttractorBasin]:
        closest = None
        min_distance = math.inf
        for attractor in attractors:
            diffs = [
                (twin.value_of(variable_id) - center) ** 2
                for variable_id, center in attractor.center_state.items()
                if twin.get(variable_id) is not None
            ]
            if not diffs:
                continue
            distance = math.sqrt(sum(diffs) / len(diffs))
            if distance < min_distance:
                min_distance = distance
                closest = attractor
        return closest

    @staticmethod
    def _transition_path(attractors: Sequence[AttractorBasin], current: Optional[AttractorBasin]) -> Tuple[str, ...]:
        if current is None:
            return ()
        by_id = {attractor.attractor_id: attractor for attractor in attractors}
        path = [current.attractor_id]
        visited = {current.attractor_id}
        node = current
        while True:
            nxt = next((n for n in node.neighboring_attractors if n not in visited), None)
            if nxt is None or nxt not in by_id:
                if nxt is not None:
                    path.append(nxt)
                break
            path.append(nxt)
            visited.add(nxt)
            node = by_id[nxt]
        return tuple(path)
