"""
Belief State Models

Per-dimension Gaussian beliefs (prior and posterior sufficient statistics),
a categorical distribution over the primary emotion and meta-level
bookkeeping. A ``BeliefState`` is immutable; every engine operation returns
a new one.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


class ObservationType(Enum):
    SELF_REPORT_EMOTION = "self_report_emotion"
    SELF_REPORT_MOOD = "self_report_mood"
    ASSESSMENT = "assessment"
    TEXT_MESSAGE = "text_message"
    BEHAVIORAL = "behavioral"
    CONTEXTUAL = "contextual"
    SENSOR = "sensor"
    INTERACTION = "interaction"


class BeliefComponent(Enum):
    """Groups of dimensions an observation can inform."""
    EMOTIONAL = "emotional"
    COGNITIVE = "cognitive"
    RISK = "risk"
    RESOURCES = "resources"


class RiskLevel(Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ChangeType(Enum):
    IMPROVEMENT = "improvement"
    DECLINE = "decline"


# Observed risk level -> value on the overall risk scale
RISK_LEVEL_VALUES: Mapping[RiskLevel, float] = MappingProxyType({
    RiskLevel.NONE: 0.1,
    RiskLevel.LOW: 0.25,
    RiskLevel.MEDIUM: 0.5,
    RiskLevel.HIGH: 0.75,
    RiskLevel.CRITICAL: 0.95,
})

# Dimension name -> initial mean, grouped by component
DIMENSION_GROUPS: Mapping[BeliefComponent, Mapping[str, float]] = MappingProxyType({
    BeliefComponent.EMOTIONAL: MappingProxyType({
        "valence": 0.0,
        "arousal": 0.0,
        "dominance": 0.5,
    }),
    BeliefComponent.COGNITIVE: MappingProxyType({
        "self_view": 0.5,
        "world_view": 0.5,
        "future_view": 0.5,
    }),
    BeliefComponent.RISK: MappingProxyType({
        "overall_risk": 0.1,
        "self_harm": 0.05,
        "substance": 0.1,
        "isolation": 0.1,
        "crisis": 0.05,
    }),
    BeliefComponent.RESOURCES: MappingProxyType({
        "energy": 0.5,
        "coping_capacity": 0.5,
        "social_support": 0.5,
        "positive": 0.5,
        "engagement": 0.5,
        "relationships": 0.5,
        "meaning": 0.5,
        "accomplishment": 0.5,
    }),
})

RISK_DIMENSIONS: FrozenSet[str] = frozenset(DIMENSION_GROUPS[BeliefComponent.RISK])

# Population base rates for the primary emotion
POPULATION_EMOTION_PRIORS: Mapping[str, float] = MappingProxyType({
    "neutral": 0.3,
    "calm": 0.1,
    "contentment": 0.08,
    "joy": 0.05,
    "sadness": 0.08,
    "anxiety": 0.07,
    "stress": 0.1,
    "frustration": 0.05,
    "boredom": 0.05,
    "anger": 0.02,
    "fear": 0.02,
    "surprise": 0.01,
    "disgust": 0.01,
    "trust": 0.01,
    "anticipation": 0.01,
    "love": 0.01,
    "guilt": 0.01,
    "shame": 0.01,
    "hope": 0.01,
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def shannon_entropy(probabilities) -> float:
    """Base-2 entropy, skipping zero-probability outcomes."""
    return -sum(p * math.log2(p) for p in probabilities if p > 0)


@dataclass(frozen=True)
class BeliefObservation:
    """An observation fed to the belief engine.

    Args:
        observation_type: Channel the observation came from
        timestamp: When it was made
        data: Observed values keyed by dimension name; ``emotion`` names a
            primary emotion and ``risk_level`` a ``RiskLevel`` value
        reliability: Source reliability in [0, 1]
        informs_components: Components this observation may update
    """
    observation_type: ObservationType
    timestamp: datetime
    data: Mapping[str, Any] = field(default_factory=dict)
    reliability: float = 1.0
    informs_components: FrozenSet[BeliefComponent] = frozenset()
    observation_id: str = ""

    def __post_init__(self):
        if not 0.0 <= self.reliability <= 1.0:
            raise ValueError("reliability must be between 0.0 and 1.0")
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, 'timestamp', self.timestamp.replace(tzinfo=timezone.utc))
        object.__setattr__(self, 'data', MappingProxyType(dict(self.data)))
        object.__setattr__(
            self, 'informs_components',
            frozenset(BeliefComponent(c) for c in self.informs_components)
        )
        if self.observation_id == "":
            object.__setattr__(self, 'observation_id', str(uuid.uuid4()))


@dataclass(frozen=True)
class Prior:
    mean: float
    variance: float
    sample_size: int = 0
    last_updated: Optional[datetime] = None


@dataclass(frozen=True)
class Posterior:
    mean: float
    variance: float
    based_on_observations: int = 0
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.variance <= 0:
            raise ValueError("posterior variance must be positive")

    @property
    def credible_interval(self) -> Tuple[float, float]:
        """95% interval, ``mean ± 1.96·sd``."""
        half_width = 1.96 * math.sqrt(self.variance)
        return self.mean - half_width, self.mean + half_width


@dataclass(frozen=True)
class DimensionBelief:
    dimension: str
    prior: Prior
    posterior: Posterior
    belief_shift: float = 0.0
    information_gain: float = 0.0
    stability: float = 1.0


@dataclass(frozen=True)
class EmotionBelief:
    """Categorical belief over the primary emotion."""
    distribution: Mapping[str, float]
    entropy: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, 'distribution', MappingProxyType(dict(self.distribution)))

    @classmethod
    def from_priors(cls, priors: Mapping[str, float] = POPULATION_EMOTION_PRIORS) -> "EmotionBelief":
        total = sum(priors.values())
        distribution = {emotion: p / total for emotion, p in priors.items()}
        return cls(distribution=distribution, entropy=shannon_entropy(distribution.values()))

    @property
    def most_likely(self) -> Tuple[str, float]:
        return max(self.distribution.items(), key=lambda item: item[1])


@dataclass(frozen=True)
class BeliefMeta:
    overall_confidence: float = 0.3
    total_observations: int = 0
    average_information_gain: float = 0.0
    belief_consistency: float = 1.0
    prediction_accuracy: float = 0.5


@dataclass(frozen=True)
class BeliefState:
    """Complete belief about one subject's hidden state."""
    subject_id: str
    timestamp: datetime
    dimensions: Mapping[str, DimensionBelief]
    emotion: EmotionBelief = field(default_factory=EmotionBelief.from_priors)
    meta: BeliefMeta = field(default_factory=BeliefMeta)

    def __post_init__(self):
        if not self.subject_id:
            raise ValueError("subject_id must not be empty")
        object.__setattr__(self, 'dimensions', MappingProxyType(dict(self.dimensions)))

    def get(self, dimension: str) -> Optional[DimensionBelief]:
        return self.dimensions.get(dimension)

    def mean(self, dimension: str, default: float = 0.5) -> float:
        belief = self.dimensions.get(dimension)
        return belief.posterior.mean if belief is not None else default

    def variance(self, dimension: str, default: float) -> float:
        belief = self.dimensions.get(dimension)
        return belief.posterior.variance if belief is not None else default

    def point_estimate(self) -> Dict[str, float]:
        """Posterior means keyed by dimension name."""
        return {name: belief.posterior.mean for name, belief in self.dimensions.items()}


@dataclass(frozen=True)
class SignificantChange:
    dimension: str
    change_type: ChangeType
    magnitude: float
    clinical_significance: bool


@dataclass(frozen=True)
class BeliefUpdateResult:
    previous_belief: BeliefState
    new_belief: BeliefState
    observation: BeliefObservation
    updated_dimensions: Tuple[str, ...]
    total_information_gain: float
    surprise: float
    significant_changes: Tuple[SignificantChange, ...] = ()


@dataclass(frozen=True)
class DimensionUncertainty:
    uncertainty: float
    sample_size_needed: int
    suggested_observation_type: ObservationType


@dataclass(frozen=True)
class ObservationSuggestion:
    observation_type: ObservationType
    expected_information_gain: float
    target_dimension: str
    rationale: str


@dataclass(frozen=True)
class Inconsistency:
    dimension1: str
    dimension2: str
    conflict_type: str
    resolution: str


@dataclass(frozen=True)
class ConsistencyReport:
    is_consistent: bool
    inconsistencies: Tuple[Inconsistency, ...] = ()


@dataclass(frozen=True)
class BeliefHistoryPoint:
    timestamp: datetime
    mean: float
    variance: float
