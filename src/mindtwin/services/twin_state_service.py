"""
Twin State Service

Owns the canonical per-subject twin. The only external write path is
applying observations: each observation is mapped to the variables its
source informs, every affected variable runs one Kalman predict/update
cycle, and composite metrics are recomputed once per call. Each call
produces a new immutable ``TwinState`` with an incremented version that is
stored as the latest snapshot and appended to the bounded history.

Writes for one subject are serialized with a per-subject ``asyncio.Lock``;
readers always receive an immutable snapshot.
"""

import asyncio
import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from ..common.config import EarlyWarningConfiguration, MindTwinConfiguration, TwinServiceConfiguration
from ..common.exceptions import (
    EmptyBatchError,
    EstimationError,
    MindTwinException,
    TwinNotFoundError,
)
from ..common.logging_setup import subject_context
from ..engines import early_warning as ews
from ..engines.bifurcation import BifurcationEngine
from ..engines.ensemble_kalman import EnsembleKalmanConfig, EnsembleKalmanFilter
from ..engines.kalman_filter import KalmanFilterConfig, KalmanFilterEngine, kalman_filter_engine
from ..models.catalog import (
    NEGATIVE_VARIABLES,
    POSITIVE_VARIABLES,
    PROTECTIVE_VARIABLES,
    VARIABLE_DEFINITIONS,
    variables_for_source,
)
from ..models.tipping_point import StabilityLandscape, TippingPoint, TippingPointDistance
from ..models.twin import (
    AttractorType,
    DerivedMetrics,
    EstimationMethod,
    GaussianPrior,
    KalmanSubState,
    Observation,
    Personalization,
    RegimeBeliefs,
    StabilityClass,
    StateVariable,
    SyncMetadata,
    TwinState,
    utcnow,
)
from ..storage.repository import (
    PersonalizationRepository,
    TwinHistoryRepository,
    TwinStateRepository,
)
from ..storage.storage_backend import InMemoryStorageBackend, StorageBackend
from .personalization import learn_personalization

logger = logging.getLogger(__name__)

LYAPUNOV_BY_STABILITY: Dict[StabilityClass, float] = {
    StabilityClass.STABLE: -0.5,
    StabilityClass.METASTABLE: -0.2,
    StabilityClass.UNSTABLE: 0.0,
    StabilityClass.CRITICAL: 0.3,
}

HOURS_PER_DAY = 24.0

# lowest quality credited to a reading; R is scaled by its inverse
MIN_OBSERVATION_QUALITY = 0.05


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def extract_measurement(observation: Observation, variable_id: str) -> Optional[float]:
    """Value of ``variable_id`` carried by ``observation`` on the [0, 1] scale.

    Pre-extracted features take precedence; otherwise the raw value is
    normalized per source. Returns ``None`` when neither is present.
    """
    if variable_id in observation.features:
        return observation.features[variable_id]

    raw = observation.raw_value
    if raw is None:
        return None

    if observation.source == "screen_time":
        # hours per day over a 12 hour range
        return min(1.0, raw / 12.0)
    if observation.source == "sleep_tracking":
        # closeness to 7.5 hours
        return _clamp01(1.0 - abs(raw - 7.5) / 7.5)
    if observation.source == "ema_survey":
        return raw if raw <= 1.0 else raw / 10.0
    return _clamp01(raw)


def calculate_confidence(variable: StateVariable, reference_time: datetime) -> float:
    """Heuristic blend of observation count, recency and inverse variance."""
    count_factor = min(1.0, variable.observation_count / 10)
    if variable.last_observed is None:
        recency_factor = 0.0
    else:
        age_hours = max(0.0, (reference_time - variable.last_observed).total_seconds() / 3600)
        recency_factor = max(0.0, 1.0 - age_hours / HOURS_PER_DAY)
    variance_factor = max(0.0, 1.0 - variable.variance)
    return count_factor * 0.3 + recency_factor * 0.3 + variance_factor * 0.4


def compute_regime_beliefs(positive_mean: float, negative_mean: float) -> RegimeBeliefs:
    crisis = max(0.0, (negative_mean - 0.5) * 2)
    healthy = max(0.0, (positive_mean - 0.3) * 1.5)
    stressed = max(0.0, 1.0 - crisis - healthy)
    total = crisis + healthy + stressed
    probabilities = {
        "healthy": healthy / total,
        "stressed": stressed / total,
        "crisis": crisis / total,
    }
    entropy = -sum(p * math.log2(p) for p in probabilities.values() if p > 0)
    return RegimeBeliefs(probabilities=probabilities, entropy=entropy)


def compute_metrics(
    variables: Mapping[str, StateVariable],
    reference_time: datetime,
    previous: DerivedMetrics,
    wellbeing_history: Sequence[float] = (),
) -> Tuple[DerivedMetrics, RegimeBeliefs]:
    """Composite metrics and regime beliefs for a variable map."""
    positive = [variables[v].value for v in POSITIVE_VARIABLES if v in variables]
    negative = [variables[v].value for v in NEGATIVE_VARIABLES if v in variables]
    positive_mean = sum(positive) / len(POSITIVE_VARIABLES)
    negative_mean = sum(negative) / len(NEGATIVE_VARIABLES)

    wellbeing = previous.overall_wellbeing
    if positive or negative:
        wellbeing = _clamp01((positive_mean - negative_mean + 1.0) / 2.0)

    avg_variance = sum(v.variance for v in variables.values()) / len(variables)
    if avg_variance < 0.05:
        stability = StabilityClass.STABLE
    elif avg_variance < 0.1:
        stability = StabilityClass.METASTABLE
    elif avg_variance < 0.2:
        stability = StabilityClass.UNSTABLE
    else:
        stability = StabilityClass.CRITICAL

    if wellbeing > 0.6:
        attractor = AttractorType.POINT
    elif wellbeing > 0.4:
        attractor = AttractorType.LIMIT_CYCLE
    else:
        attractor = AttractorType.STRANGE

    protective = [variables[v].value if v in variables else 0.5 for v in PROTECTIVE_VARIABLES]

    observed = [v.last_observed for v in variables.values() if v.last_observed is not None]
    data_quality = previous.data_quality
    if observed:
        avg_hours = sum(
            max(0.0, (reference_time - t).total_seconds() / 3600) for t in observed
        ) / len(observed)
        data_quality = max(0.0, 1.0 - avg_hours / HOURS_PER_DAY)

    autocorrelation = previous.autocorrelation
    variance_ratio = previous.variance_ratio
    series = list(wellbeing_history) + [wellbeing]
    if len(series) >= 3:
        autocorrelation = ews.autocorrelation(series, 1)
        first, second = series[:len(series) // 2], series[len(series) // 2:]
        baseline = ews.variance(first)
        variance_ratio = ews.variance(second) / baseline if baseline > 0 else 1.0

    metrics = DerivedMetrics(
        overall_wellbeing=wellbeing,
        stability=stability,
        dominant_attractor=attractor,
        resilience=sum(protective) / len(protective),
        lyapunov_exponent=LYAPUNOV_BY_STABILITY[stability],
        autocorrelation=autocorrelation,
        variance_ratio=variance_ratio,
        state_uncertainty=avg_variance,
        data_quality=data_quality,
    )
    return metrics, compute_regime_beliefs(positive_mean, negative_mean)


class TwinStateService:
    """Per-subject digital twin lifecycle, estimation and detection.

    Args:
        storage_backend: Persistence collaborator; in-memory when omitted
        config: Service configuration
        early_warning_config: Detection configuration for the bifurcation engine
        kalman_engine: Kalman engine used for per-variable updates
        bifurcation_engine: Tipping point detector
        rng: Random source for ensemble estimation
        clock: Source of "now" for creation, sync and history windows
    """

    def __init__(
        self,
        storage_backend: Optional[StorageBackend] = None,
        config: Optional[TwinServiceConfiguration] = None,
        early_warning_config: Optional[EarlyWarningConfiguration] = None,
        kalman_engine: Optional[KalmanFilterEngine] = None,
        bifurcation_engine: Optional[BifurcationEngine] = None,
        rng: Optional[np.random.Generator] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or TwinServiceConfiguration()
        self.early_warning_config = early_warning_config or EarlyWarningConfiguration()
        self.storage_backend = storage_backend or InMemoryStorageBackend()
        self.kalman_engine = kalman_engine or kalman_filter_engine
        self.rng = rng if rng is not None else np.random.default_rng()
        self.clock = clock
        self.bifurcation_engine = bifurcation_engine or BifurcationEngine(
            min_history=self.early_warning_config.min_history,
            approach_distance=self.early_warning_config.approach_distance,
            min_days=self.early_warning_config.min_days,
            max_days=self.early_warning_config.max_days,
            clock=clock,
        )

        self.states = TwinStateRepository(self.storage_backend)
        self.history = TwinHistoryRepository(self.storage_backend, cap=self.config.history_cap)
        self.personalizations = PersonalizationRepository(self.storage_backend)

        self._locks: Dict[str, asyncio.Lock] = {}
        self._estimators = {
            EstimationMethod.KALMAN_FILTER: self._estimate_kalman,
            EstimationMethod.ENSEMBLE_KALMAN: self._estimate_ensemble,
            EstimationMethod.BAYESIAN_INFERENCE: self._estimate_bayesian,
        }
        missing = set(EstimationMethod) - set(self._estimators)
        if missing:
            raise TypeError(f"No estimator registered for {sorted(m.value for m in missing)}")

    @classmethod
    def from_configuration(
        cls,
        configuration: MindTwinConfiguration,
        storage_backend: Optional[StorageBackend] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "TwinStateService":
        """Build a service from the root configuration.

        ``random_seed`` seeds the generator used for ensemble estimation;
        when unset the generator draws fresh OS entropy.
        """
        return cls(
            storage_backend=storage_backend,
            config=configuration.twin,
            early_warning_config=configuration.early_warning,
            rng=np.random.default_rng(configuration.random_seed),
            clock=clock,
        )

    def _lock(self, subject_id: str) -> asyncio.Lock:
        lock = self._locks.get(subject_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subject_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_twin(self, subject_id: str, initial_observations: Iterable[Observation] = ()) -> TwinState:
        """Create a twin with default values, optionally seeded by observations.

        An existing twin is returned unchanged.
        """
        observations = list(initial_observations)
        async with self._lock(subject_id):
            with subject_context(subject_id):
                state = await self.states.get_by_id(subject_id)
                if state is None:
                    state = await self._create(subject_id)
                if observations:
                    wellbeing_history = await self._wellbeing_history(subject_id)
                    state = await self._commit(self._apply(state, observations, wellbeing_history))
                return state

    async def get_state(self, subject_id: str) -> Optional[TwinState]:
        return await self.states.get_by_id(subject_id)

    async def require_state(self, subject_id: str) -> TwinState:
        state = await self.states.get_by_id(subject_id)
        if state is None:
            raise TwinNotFoundError(subject_id)
        return state

    async def get_history(self, subject_id: str, window_days: Optional[float] = None) -> List[TwinState]:
        """Snapshots in version order, limited to the last ``window_days`` when given."""
        since = self.clock() - timedelta(days=window_days) if window_days is not None else None
        return await self.history.get_history(subject_id, since=since)

    async def delete_twin(self, subject_id: str) -> bool:
        """Remove state, history and personalization; True if a twin existed."""
        async with self._lock(subject_id):
            existed = await self.states.delete(subject_id)
            await self.history.delete_subject(subject_id)
            await self.personalizations.delete(subject_id)
        if existed:
            logger.info(f"Deleted twin for subject {subject_id}", extra={"subject_id": subject_id})
        return existed

    # ------------------------------------------------------------------
    # Observation ingestion
    # ------------------------------------------------------------------

    async def apply_observation(self, subject_id: str, observation: Observation) -> TwinState:
        """Apply one observation, creating the twin on first contact."""
        return await self.apply_observations(subject_id, [observation])

    async def apply_observations(self, subject_id: str, observations: Iterable[Observation]) -> TwinState:
        """Apply a batch in ascending timestamp order and recompute metrics once.

        Raises:
            EmptyBatchError: If ``observations`` is empty
            EstimationError: If a variable update fails
        """
        batch = list(observations)
        if not batch:
            raise EmptyBatchError(subject_id=subject_id, method="apply_observations")

        async with self._lock(subject_id):
            with subject_context(subject_id):
                state = await self.states.get_by_id(subject_id)
                if state is None:
                    state = await self._create(subject_id)
                wellbeing_history = await self._wellbeing_history(subject_id)
                return await self._commit(self._apply(state, batch, wellbeing_history))

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    async def estimate_state(
        self,
        subject_id: str,
        method: Union[EstimationMethod, str] = EstimationMethod.KALMAN_FILTER,
    ) -> TwinState:
        """Run one estimation pass without new observations.

        Raises:
            EstimationError: If ``method`` is unknown or estimation fails
        """
        try:
            method = EstimationMethod(method)
        except ValueError as e:
            raise EstimationError(
                f"Unknown estimation method: {method!r}",
                subject_id=subject_id,
                method=str(method),
                cause=e
            ) from e

        async with self._lock(subject_id):
            with subject_context(subject_id):
                state = await self.states.get_by_id(subject_id)
                if state is None:
                    state = await self._create(subject_id)
                return await self._estimate(state, method)

    async def synchronize(self, subject_id: str) -> TwinState:
        """Clear pending updates, refresh sync metadata and re-estimate."""
        async with self._lock(subject_id):
            with subject_context(subject_id):
                state = await self.states.get_by_id(subject_id)
                if state is None:
                    return await self._create(subject_id)
                now = self.clock()
                state = replace(
                    state,
                    sync=replace(state.sync, last_sync=now, pending_updates=0, sync_health=1.0),
                )
                return await self._estimate(state, EstimationMethod.KALMAN_FILTER)

    async def _estimate(self, state: TwinState, method: EstimationMethod) -> TwinState:
        personalization = await self.personalizations.get_by_id(state.subject_id)
        try:
            variables = self._estimators[method](state, personalization)
        except MindTwinException:
            raise
        except Exception as e:
            raise EstimationError(
                f"State estimation failed for subject {state.subject_id}",
                subject_id=state.subject_id,
                method=method.value,
                cause=e
            ) from e

        now = self.clock()
        wellbeing_history = await self._wellbeing_history(state.subject_id)
        metrics, regimes = compute_metrics(variables, now, state.metrics, wellbeing_history)
        new_state = replace(
            state,
            version=state.version + 1,
            timestamp=now,
            variables=variables,
            metrics=metrics,
            regime_beliefs=regimes,
        )
        logger.debug(
            f"Estimated state with {method.value}",
            extra={"subject_id": state.subject_id, "version": new_state.version}
        )
        return await self._commit(new_state)

    def _estimate_kalman(
        self,
        state: TwinState,
        personalization: Optional[Personalization],
    ) -> Dict[str, StateVariable]:
        """Predict-only step: variance grows by the (adapted) process noise."""
        floor = self.config.kalman.variance_floor
        variables = dict(state.variables)
        for variable_id, variable in state.variables.items():
            if variable.kalman is None:
                continue
            config = self._kalman_config(variable.kalman)
            predicted = self.kalman_engine.predict(self._restore_filter(variable.kalman, config), config)
            variance = max(floor, predicted.variance)
            variables[variable_id] = replace(
                variable,
                value=predicted.estimate,
                variance=variance,
                kalman=replace(variable.kalman, estimate=predicted.estimate, error_covariance=variance),
            )
        return variables

    def _estimate_ensemble(
        self,
        state: TwinState,
        personalization: Optional[Personalization],
    ) -> Dict[str, StateVariable]:
        """Mean and spread of jittered random-walk forecasts over all variables."""
        variable_ids = list(state.variables)
        values = np.array([state.variables[v].value for v in variable_ids])
        half_spread = self.config.ensemble_spread / 2

        enkf = EnsembleKalmanFilter(EnsembleKalmanConfig(ensemble_size=self.config.ensemble_runs), rng=self.rng)
        enkf.initialize(values, np.zeros((len(values), len(values))))
        enkf.forecast(lambda member: member + self.rng.uniform(-half_spread, half_spread, member.shape))

        means = enkf.state_estimate()
        spreads = np.var(enkf.ensemble, axis=0)
        floor = self.config.kalman.variance_floor

        variables = dict(state.variables)
        for index, variable_id in enumerate(variable_ids):
            variables[variable_id] = replace(
                state.variables[variable_id],
                value=float(means[index]),
                variance=max(floor, float(spreads[index])),
            )
        return variables

    def _estimate_bayesian(
        self,
        state: TwinState,
        personalization: Optional[Personalization],
    ) -> Dict[str, StateVariable]:
        """Gaussian-conjugate combination of each estimate with its learned prior."""
        if personalization is None or personalization.is_default:
            return dict(state.variables)

        floor = self.config.kalman.variance_floor
        variables = dict(state.variables)
        for variable_id, variable in state.variables.items():
            prior = personalization.learned_priors.get(variable_id)
            if prior is None:
                continue
            prior_variance = max(floor, prior.variance)
            posterior_variance = 1.0 / (1.0 / prior_variance + 1.0 / variable.variance)
            posterior_mean = posterior_variance * (prior.mean / prior_variance + variable.value / variable.variance)
            posterior_variance = max(floor, posterior_variance)
            variables[variable_id] = replace(
                variable,
                value=posterior_mean,
                variance=posterior_variance,
                posterior=GaussianPrior(mean=posterior_mean, variance=posterior_variance),
            )
        return variables

    # ------------------------------------------------------------------
    # Personalization
    # ------------------------------------------------------------------

    async def update_personalization(self, subject_id: str) -> Personalization:
        """Learn dynamics from the recent history window and store them."""
        history = await self.get_history(subject_id, self.config.personalization_window_days)
        personalization = learn_personalization(
            subject_id,
            history,
            learned_at=self.clock(),
            min_points=self.config.min_personalization_points,
        )
        await self.personalizations.save(personalization)
        logger.info(
            f"Updated personalization for subject {subject_id}",
            extra={
                "subject_id": subject_id,
                "data_points": personalization.data_points_used,
                "is_default": personalization.is_default,
            }
        )
        return personalization

    async def get_personalization(self, subject_id: str) -> Optional[Personalization]:
        return await self.personalizations.get_by_id(subject_id)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def detect_tipping_points(self, subject_id: str) -> List[TippingPoint]:
        """Tipping points from the recent history, soonest first."""
        state = await self.states.get_by_id(subject_id)
        if state is None:
            return []
        history = await self.get_history(subject_id, self.early_warning_config.history_window_days)
        with subject_context(subject_id):
            return self.bifurcation_engine.detect_tipping_points(state, history)

    async def analyze_stability_landscape(self, subject_id: str) -> StabilityLandscape:
        return self.bifurcation_engine.analyze_stability_landscape(await self.require_state(subject_id))

    async def distance_to_tipping_point(self, subject_id: str) -> TippingPointDistance:
        return self.bifurcation_engine.distance_to_tipping_point(await self.require_state(subject_id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _initial_twin(self, subject_id: str, now: datetime) -> TwinState:
        variance = self.config.initial_variance
        variables = {
            definition.variable_id: StateVariable(
                variable_id=definition.variable_id,
                value=definition.default_value,
                variance=variance,
                baseline=definition.default_value,
                historical_mean=definition.default_value,
                kalman=KalmanSubState(
                    estimate=definition.default_value,
                    error_covariance=variance,
                    process_noise=definition.process_noise,
                    measurement_noise=definition.measurement_noise,
                ),
                last_observed=now,
                last_updated=now,
                confidence=0.5,
            )
            for definition in VARIABLE_DEFINITIONS.values()
        }
        metrics, regimes = compute_metrics(variables, now, DerivedMetrics())
        return TwinState(
            subject_id=subject_id,
            version=0,
            timestamp=now,
            created_at=now,
            variables=variables,
            metrics=metrics,
            regime_beliefs=regimes,
            sync=SyncMetadata(last_sync=now),
        )

    async def _create(self, subject_id: str) -> TwinState:
        state = await self._commit(self._initial_twin(subject_id, self.clock()))
        logger.info(f"Created twin for subject {subject_id}", extra={"subject_id": subject_id})
        return state

    async def _commit(self, state: TwinState) -> TwinState:
        await self.states.save(state)
        await self.history.save(state)
        return state

    async def _wellbeing_history(self, subject_id: str) -> List[float]:
        history = await self.history.get_history(subject_id)
        return [s.metrics.overall_wellbeing for s in history[-self.config.summary_window:]]

    def _apply(
        self,
        state: TwinState,
        observations: Sequence[Observation],
        wellbeing_history: Sequence[float] = (),
    ) -> TwinState:
        ordered = sorted(observations, key=lambda o: o.timestamp)
        snapshot_time = ordered[-1].timestamp
        variables = dict(state.variables)

        for observation in ordered:
            affected = variables_for_source(observation.source)
            if not affected:
                logger.debug(f"Ignoring observation from unmapped source {observation.source}")
                continue
            for variable_id in affected:
                if variable_id in observation.missing or variable_id not in variables:
                    continue
                measurement = extract_measurement(observation, variable_id)
                if measurement is None:
                    continue
                try:
                    variables[variable_id] = self._update_variable(
                        variables[variable_id], measurement, observation
                    )
                except MindTwinException:
                    raise
                except Exception as e:
                    raise EstimationError(
                        f"Failed to update {variable_id} for subject {state.subject_id}",
                        subject_id=state.subject_id,
                        method=EstimationMethod.KALMAN_FILTER.value,
                        variable_id=variable_id,
                        cause=e
                    ) from e

        variables = {
            variable_id: replace(variable, confidence=calculate_confidence(variable, snapshot_time))
            for variable_id, variable in variables.items()
        }
        metrics, regimes = compute_metrics(variables, snapshot_time, state.metrics, wellbeing_history)

        return replace(
            state,
            version=state.version + 1,
            timestamp=snapshot_time,
            variables=variables,
            metrics=metrics,
            regime_beliefs=regimes,
            sync=replace(state.sync, last_sync=self.clock(), sync_health=1.0),
        )

    def _kalman_config(self, kalman: KalmanSubState, noise_scale: float = 1.0) -> KalmanFilterConfig:
        defaults = self.config.kalman
        return KalmanFilterConfig.scalar(
            kalman.estimate,
            max(defaults.variance_floor, kalman.error_covariance),
            kalman.process_noise,
            kalman.measurement_noise * noise_scale,
            adaptive_q=defaults.adaptive_q,
            adaptive_r=defaults.adaptive_r,
            adaptation_rate=defaults.adaptation_rate,
            forgetting_factor=defaults.forgetting_factor,
            outlier_threshold=defaults.outlier_threshold,
            max_gain=defaults.max_gain,
            innovation_window=defaults.innovation_window,
        )

    def _restore_filter(self, kalman: KalmanSubState, config: KalmanFilterConfig, noise_scale: float = 1.0):
        """Rebuild a filter state carrying the adaptive memory of a sub-state.

        ``noise_scale`` inflates the adapted measurement noise for one cycle.
        """
        state = self.kalman_engine.initialize(config)
        return replace(
            state,
            adapted_q=(
                np.array([[kalman.adapted_process_noise]])
                if kalman.adapted_process_noise is not None else None
            ),
            adapted_r=(
                np.array([[kalman.adapted_measurement_noise * noise_scale]])
                if kalman.adapted_measurement_noise is not None else None
            ),
            innovations=tuple(np.array([v]) for v in kalman.innovations),
        )

    def _update_variable(self, variable: StateVariable, measurement: float, observation: Observation) -> StateVariable:
        floor = self.config.kalman.variance_floor
        quality = max(MIN_OBSERVATION_QUALITY, observation.quality)

        if variable.kalman is not None:
            # low quality readings get a proportionally larger R; stored noise stays unscaled
            noise_scale = 1.0 / quality
            config = self._kalman_config(variable.kalman, noise_scale)
            result = self.kalman_engine.filter(
                self._restore_filter(variable.kalman, config, noise_scale),
                [measurement],
                config,
                timestamp=observation.timestamp,
            )
            value = result.estimate
            variance = max(floor, result.variance)
            kalman = replace(
                variable.kalman,
                estimate=value,
                error_covariance=variance,
                gain=result.gain,
                adapted_process_noise=float(result.adapted_q[0, 0]) if result.adapted_q is not None else None,
                adapted_measurement_noise=(
                    float(result.adapted_r[0, 0]) / noise_scale if result.adapted_r is not None else None
                ),
                innovations=tuple(float(i[0]) for i in result.innovations),
                last_nis=result.normalized_innovation_squared,
                last_outlier=result.is_outlier,
            )
            if result.is_outlier:
                logger.debug(
                    f"Outlier measurement for {variable.variable_id} attenuated",
                    extra={"variable_id": variable.variable_id, "nis": result.normalized_innovation_squared}
                )
        else:
            alpha = self.config.smoothing_alpha * quality
            value = alpha * measurement + (1.0 - alpha) * variable.value
            variance = max(floor, variable.variance * (1.0 - alpha))
            kalman = None

        velocity = value - variable.value
        count = variable.observation_count + 1

        # Welford running mean and population std of estimated values
        if variable.observation_count == 0:
            historical_mean = value
            historical_std = 0.0
        else:
            m2 = variable.historical_std ** 2 * variable.observation_count
            historical_mean = variable.historical_mean + (value - variable.historical_mean) / count
            m2 += (value - variable.historical_mean) * (value - historical_mean)
            historical_std = math.sqrt(max(0.0, m2 / count))

        sources = variable.data_sources
        if observation.source not in sources:
            sources = sources + (observation.source,)

        return replace(
            variable,
            value=value,
            variance=variance,
            velocity=velocity,
            acceleration=velocity - variable.velocity,
            historical_mean=historical_mean,
            historical_std=historical_std,
            kalman=kalman,
            last_observed=observation.timestamp,
            last_updated=observation.timestamp,
            observation_count=count,
            data_sources=sources,
        )
