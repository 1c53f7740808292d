"""
Tipping-point detection results.

These are transient: the Bifurcation Engine creates them on every detection
pass and callers decide whether to store or alert on them.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from .twin import AttractorType


class BifurcationType(Enum):
    SADDLE_NODE = "saddle_node"
    TRANSCRITICAL = "transcritical"
    PITCHFORK = "pitchfork"
    HOPF = "hopf"
    FOLD = "fold_bifurcation"
    PERIOD_DOUBLING = "period_doubling"
    BLUE_SKY = "blue_sky"
    UNKNOWN = "unknown"


class CriticalityLevel(Enum):
    LOW = "low"
    WARNING = "warning"
    CRITICAL = "critical"


class Urgency(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ThresholdDirection(Enum):
    """Whether the crisis lies above (HIGH) or below (LOW) the current value."""
    HIGH = "high"
    LOW = "low"


@dataclass(frozen=True)
class VariableThreshold:
    crisis: float
    recovery: float
    direction: ThresholdDirection
    weight: float

    @property
    def critical_value(self) -> float:
        return self.crisis if self.direction is ThresholdDirection.HIGH else self.recovery

    def distance(self, value: float) -> float:
        """Signed distance; positive while the threshold has not been crossed."""
        if self.direction is ThresholdDirection.HIGH:
            return self.critical_value - value
        return value - self.critical_value


@dataclass(frozen=True)
class EarlyWarningSignals:
    """Critical-slowing-down indicators for one time series."""
    autocorrelation: float
    autocorrelation_trend: float
    variance_ratio: float
    variance_trend: float
    cross_correlation: float
    cross_correlation_trend: float
    recovery_rate: float
    dfa_exponent: float
    skewness: float
    skewness_change: float
    flickering_score: float
    periodicity_score: float
    composite_score: float
    criticality_level: CriticalityLevel


@dataclass(frozen=True)
class InterventionRecommendation:
    intervention_type: str
    target_variable: str
    expected_effect: float
    urgency: Urgency
    feasibility: float
    description: str


@dataclass(frozen=True)
class TimingEstimate:
    days: float
    confidence_interval: Tuple[float, float]
    rate: float = 0.0
    r_squared: float = 0.0


@dataclass(frozen=True)
class TippingPoint:
    """An approaching critical transition for one variable."""
    tipping_point_id: str
    detected_at: datetime
    bifurcation_type: BifurcationType
    critical_parameter: str
    critical_threshold: float
    current_distance: float
    estimated_time_to_point: float
    confidence_interval: Tuple[float, float]
    pre_transition_state: AttractorType
    post_transition_state: AttractorType
    expected_outcome: str
    irreversibility: float
    early_warning_strength: float
    autocorrelation_increase: float
    variance_increase: float
    cross_correlation_increase: float
    flickering_detected: bool
    skewness_change: float
    dfa_exponent: float
    criticality_level: CriticalityLevel
    urgency: Urgency
    intervention_window_days: float
    prevention_probability: float
    recommended_interventions: Tuple[InterventionRecommendation, ...] = ()
    signals: Optional[EarlyWarningSignals] = None


@dataclass(frozen=True)
class AttractorBasin:
    attractor_id: str
    attractor_type: AttractorType
    center_state: Mapping[str, float]
    basin_size: float
    basin_depth: float
    escape_velocity: float
    neighboring_attractors: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'center_state', MappingProxyType(dict(self.center_state)))


@dataclass(frozen=True)
class StabilityLandscape:
    timestamp: datetime
    attractors: Tuple[AttractorBasin, ...]
    current_attractor: str
    current_basin_position: Tuple[float, ...]
    landscape_topology: str
    dominant_transition_path: Tuple[str, ...]
    is_landscape_changing: bool
    landscape_change_rate: float


@dataclass(frozen=True)
class TippingPointDistance:
    distance: float
    direction: str
    velocity: float
    time_to_reach: Optional[float] = None


@dataclass(frozen=True)
class TimingPrediction:
    estimated_days: int
    confidence: float
    intervention_window: int
