"""
Belief State Adapter

Bridges ``BeliefState`` and the vector-valued estimators through a fixed
five-dimensional mapping::

    S = (valence, arousal, dominance, risk, resources)

``resources`` aggregates energy, coping capacity and social support.
"""

from dataclasses import replace
from typing import Dict, Mapping, NamedTuple, Optional, Sequence

import numpy as np

from ..engines.kalman_filter import KalmanFilterState
from ..models.twin import TwinState
from .models import BeliefState, DimensionBelief

DIMENSION_MAPPING: Dict[int, str] = {
    0: "valence",
    1: "arousal",
    2: "dominance",
    3: "risk",
    4: "resources",
}
DIMENSION_INDEX: Dict[str, int] = {name: index for index, name in DIMENSION_MAPPING.items()}

RESOURCE_DIMENSIONS = ("energy", "coping_capacity", "social_support")

# Vector slot -> belief dimensions it is written back to
BELIEF_TARGETS: Dict[str, Sequence[str]] = {
    "valence": ("valence",),
    "arousal": ("arousal",),
    "dominance": ("dominance",),
    "risk": ("overall_risk",),
    "resources": RESOURCE_DIMENSIONS,
}

DEFAULT_MEANS = (0.0, 0.0, 0.5, 0.1, 0.5)
DEFAULT_VARIANCE = 0.1
INITIAL_GAIN = 0.5


class DimensionEstimate(NamedTuple):
    mean: float
    variance: float


def belief_to_vector(belief: BeliefState) -> np.ndarray:
    """Posterior means in mapping order."""
    resources = sum(belief.mean(name) for name in RESOURCE_DIMENSIONS) / len(RESOURCE_DIMENSIONS)
    return np.array([
        belief.mean("valence", 0.0),
        belief.mean("arousal", 0.0),
        belief.mean("dominance"),
        belief.mean("overall_risk", 0.1),
        resources,
    ])


def belief_to_uncertainty(belief: BeliefState, default_variance: float = 0.25) -> np.ndarray:
    """Posterior variances in mapping order; resources is the mean variance."""
    def var(name: str) -> float:
        return belief.variance(name, default_variance)

    resources = sum(var(name) for name in RESOURCE_DIMENSIONS) / len(RESOURCE_DIMENSIONS)
    return np.array([var("valence"), var("arousal"), var("dominance"), var("overall_risk"), resources])


def vector_to_belief_update(
    vector: Sequence[float],
    uncertainty: Optional[Sequence[float]] = None,
) -> Dict[str, DimensionEstimate]:
    """Per-dimension estimates from a state vector; missing slots take defaults."""
    values = list(vector)
    variances = list(uncertainty) if uncertainty is not None else []

    update = {}
    for index, name in DIMENSION_MAPPING.items():
        mean = float(values[index]) if index < len(values) else DEFAULT_MEANS[index]
        variance = float(variances[index]) if index < len(variances) else DEFAULT_VARIANCE
        update[name] = DimensionEstimate(mean=mean, variance=variance)
    return update


def belief_to_kalman_state(belief: BeliefState, default_variance: float = 0.25) -> KalmanFilterState:
    """Initial filter state with a diagonal covariance built from the belief."""
    x = belief_to_vector(belief)
    covariance = np.diag(belief_to_uncertainty(belief, default_variance))
    dim = len(x)

    return KalmanFilterState(
        state_estimate=x,
        error_covariance=covariance,
        predicted_state=x.copy(),
        predicted_covariance=covariance.copy(),
        innovation=np.zeros(dim),
        innovation_covariance=covariance.copy(),
        kalman_gain=np.eye(dim) * INITIAL_GAIN,
        timestep=0,
        timestamp=belief.timestamp,
    )


def kalman_state_to_belief_update(state: KalmanFilterState) -> Dict[str, DimensionEstimate]:
    return vector_to_belief_update(state.state_estimate, np.diag(state.error_covariance))


def apply_belief_update(belief: BeliefState, update: Mapping[str, DimensionEstimate]) -> BeliefState:
    """Overwrite posteriors with externally estimated values.

    Non-positive variances are ignored so that a degenerate estimate never
    collapses a belief.
    """
    dimensions: Dict[str, DimensionBelief] = dict(belief.dimensions)
    for slot, estimate in update.items():
        for name in BELIEF_TARGETS.get(slot, ()):
            current = dimensions.get(name)
            if current is None:
                continue
            variance = estimate.variance if estimate.variance > 0 else current.posterior.variance
            dimensions[name] = replace(
                current,
                posterior=replace(current.posterior, mean=estimate.mean, variance=variance),
            )
    return replace(belief, dimensions=dimensions)


def twin_to_vector(twin: TwinState) -> np.ndarray:
    """Project twin variables onto the five belief dimensions.

    valence = joy - mean(anxiety, sadness); arousal = anxiety + stress - 1;
    dominance = coping; risk = max(suicidal ideation, hopelessness);
    resources = mean(energy, coping, social support).
    """
    v = twin.value_of
    valence = v("emotion_joy", 0.5) - (v("emotion_anxiety", 0.3) + v("emotion_sadness", 0.3)) / 2
    arousal = v("emotion_anxiety", 0.3) + v("emotion_stress", 0.3) - 1.0
    dominance = v("protective_coping", 0.5)
    risk = max(v("cognition_suicidal_ideation", 0.0), v("emotion_hopelessness", 0.2))
    resources = (v("physio_energy", 0.5) + v("protective_coping", 0.5) + v("social_support", 0.5)) / 3
    return np.array([
        float(np.clip(valence, -1.0, 1.0)),
        float(np.clip(arousal, -1.0, 1.0)),
        dominance,
        risk,
        resources,
    ])
