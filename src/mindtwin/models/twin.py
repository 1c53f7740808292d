"""
Twin Domain Models

Immutable value objects for observations, per-variable estimates and the
versioned per-subject twin snapshot. A snapshot is never mutated once
created; the Twin State Service derives a new one for each cycle, sharing
unchanged variables structurally with its predecessor.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional, Tuple
import math
import uuid


class StabilityClass(Enum):
    """Stability classification from mean variable variance."""
    STABLE = "stable"
    METASTABLE = "metastable"
    UNSTABLE = "unstable"
    CRITICAL = "critical"


class AttractorType(Enum):
    """Qualitative attractor shape."""
    POINT = "point"
    LIMIT_CYCLE = "limit_cycle"
    STRANGE = "strange"
    QUASI_PERIODIC = "quasi_periodic"
    NONE = "none"


class EstimationMethod(Enum):
    """State estimation strategies selectable per ``estimate_state`` call."""
    KALMAN_FILTER = "kalman_filter"
    ENSEMBLE_KALMAN = "ensemble_kalman"
    BAYESIAN_INFERENCE = "bayesian_inference"


class SyncMode(Enum):
    BIDIRECTIONAL = "bidirectional"
    PUSH = "push"
    PULL = "pull"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _readonly(mapping: Optional[Mapping]) -> Mapping:
    if isinstance(mapping, MappingProxyType):
        return mapping
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Observation:
    """A single reading from an observation source.

    Args:
        source: Source tag, e.g. ``ema_survey`` or ``sleep_tracking``
        timestamp: When the reading was taken
        raw_value: Scalar reading, normalized per source when used
        features: Pre-extracted values keyed by variable id; take precedence
            over ``raw_value``
        quality: Data-quality score in [0, 1]
        missing: Variable ids flagged as missing in this reading
    """
    source: str
    timestamp: datetime
    raw_value: Optional[float] = None
    features: Mapping[str, float] = field(default_factory=dict)
    quality: float = 1.0
    missing: FrozenSet[str] = frozenset()
    observation_id: str = ""

    def __post_init__(self):
        if not self.source:
            raise ValueError("Observation source must not be empty")
        if not 0.0 <= self.quality <= 1.0:
            raise ValueError("Observation quality must be between 0.0 and 1.0")
        if self.raw_value is not None and not math.isfinite(self.raw_value):
            raise ValueError("Observation raw_value must be finite")
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, 'timestamp', self.timestamp.replace(tzinfo=timezone.utc))
        object.__setattr__(self, 'features', _readonly({k: float(v) for k, v in self.features.items()}))
        object.__setattr__(self, 'missing', frozenset(self.missing))
        if self.observation_id == "":
            object.__setattr__(self, 'observation_id', str(uuid.uuid4()))


@dataclass(frozen=True)
class KalmanSubState:
    """Scalar Kalman memory carried by a state variable between cycles."""
    estimate: float
    error_covariance: float
    process_noise: float
    measurement_noise: float
    gain: float = 0.5
    adapted_process_noise: Optional[float] = None
    adapted_measurement_noise: Optional[float] = None
    innovations: Tuple[float, ...] = ()
    last_nis: float = 0.0
    last_outlier: bool = False

    def __post_init__(self):
        if self.error_covariance < 0:
            raise ValueError("error_covariance must be non-negative")
        if self.process_noise < 0 or self.measurement_noise <= 0:
            raise ValueError("noise covariances must be positive")
        object.__setattr__(self, 'innovations', tuple(float(v) for v in self.innovations))


@dataclass(frozen=True)
class GaussianPrior:
    mean: float
    variance: float


@dataclass(frozen=True)
class StateVariable:
    """Estimate of one latent variable."""
    variable_id: str
    value: float
    variance: float
    velocity: float = 0.0
    acceleration: float = 0.0
    baseline: float = 0.5
    historical_mean: float = 0.5
    historical_std: float = 0.0
    kalman: Optional[KalmanSubState] = None
    last_observed: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    observation_count: int = 0
    data_sources: Tuple[str, ...] = ()
    confidence: float = 0.5
    posterior: Optional[GaussianPrior] = None

    def __post_init__(self):
        if self.variance <= 0:
            raise ValueError(f"Variance of {self.variable_id} must be positive")
        if self.observation_count < 0:
            raise ValueError("observation_count must be non-negative")
        object.__setattr__(self, 'data_sources', tuple(self.data_sources))


@dataclass(frozen=True)
class DerivedMetrics:
    """Composite metrics recomputed after every estimation cycle."""
    overall_wellbeing: float = 0.5
    stability: StabilityClass = StabilityClass.STABLE
    dominant_attractor: AttractorType = AttractorType.POINT
    resilience: float = 0.5
    lyapunov_exponent: float = -0.3
    autocorrelation: float = 0.3
    variance_ratio: float = 1.0
    state_uncertainty: float = 0.3
    data_quality: float = 0.5


@dataclass(frozen=True)
class RegimeBeliefs:
    """Discrete distribution over qualitative regimes."""
    probabilities: Mapping[str, float] = field(
        default_factory=lambda: {"healthy": 0.6, "stressed": 0.3, "crisis": 0.1}
    )
    entropy: float = 0.5

    def __post_init__(self):
        object.__setattr__(self, 'probabilities', _readonly(self.probabilities))

    @property
    def most_likely(self) -> str:
        return max(self.probabilities.items(), key=lambda item: item[1])[0]


@dataclass(frozen=True)
class SyncMetadata:
    last_sync: datetime
    sync_mode: SyncMode = SyncMode.BIDIRECTIONAL
    pending_updates: int = 0
    sync_health: float = 1.0

    def __post_init__(self):
        if self.pending_updates < 0:
            raise ValueError("pending_updates must be non-negative")


@dataclass(frozen=True)
class TwinState:
    """Versioned snapshot of one subject's twin."""
    subject_id: str
    version: int
    timestamp: datetime
    created_at: datetime
    variables: Mapping[str, StateVariable]
    metrics: DerivedMetrics = field(default_factory=DerivedMetrics)
    regime_beliefs: RegimeBeliefs = field(default_factory=RegimeBeliefs)
    sync: Optional[SyncMetadata] = None

    def __post_init__(self):
        if not self.subject_id:
            raise ValueError("subject_id must not be empty")
        if self.version < 0:
            raise ValueError("version must be non-negative")
        object.__setattr__(self, 'variables', _readonly(self.variables))
        if self.sync is None:
            object.__setattr__(self, 'sync', SyncMetadata(last_sync=self.timestamp))

    def get(self, variable_id: str) -> Optional[StateVariable]:
        return self.variables.get(variable_id)

    def value_of(self, variable_id: str, default: float = 0.0) -> float:
        variable = self.variables.get(variable_id)
        return variable.value if variable is not None else default

    def values(self) -> Dict[str, float]:
        return {variable_id: variable.value for variable_id, variable in self.variables.items()}


@dataclass(frozen=True)
class Personalization:
    """Per-subject dynamics learned from history."""
    subject_id: str
    learned_at: datetime
    mean_reversion_rate: Mapping[str, float] = field(default_factory=dict)
    volatility: Mapping[str, float] = field(default_factory=dict)
    learned_priors: Mapping[str, GaussianPrior] = field(default_factory=dict)
    weekly_pattern: Mapping[str, Tuple[float, ...]] = field(default_factory=dict)
    data_points_used: int = 0
    fit_quality: float = 0.0
    cross_validation_score: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, 'mean_reversion_rate', _readonly(self.mean_reversion_rate))
        object.__setattr__(self, 'volatility', _readonly(self.volatility))
        object.__setattr__(self, 'learned_priors', _readonly(self.learned_priors))
        object.__setattr__(
            self, 'weekly_pattern',
            _readonly({k: tuple(v) for k, v in self.weekly_pattern.items()})
        )

    @property
    def is_default(self) -> bool:
        return not self.learned_priors
