"""
Repository Module

Repositories encapsulate persistence of one domain entity on top of a
``StorageBackend``. Entities are converted to plain dictionaries (ISO
timestamps, enum values) on the way in and rebuilt as immutable domain
objects on the way out. Backend failures surface as ``DataStoreError``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from ..belief.models import (
    BeliefMeta,
    BeliefState,
    DimensionBelief,
    EmotionBelief,
    Posterior,
    Prior,
)
from ..common.exceptions import DataStoreError
from ..models.twin import (
    AttractorType,
    DerivedMetrics,
    GaussianPrior,
    KalmanSubState,
    Personalization,
    RegimeBeliefs,
    StabilityClass,
    StateVariable,
    SyncMetadata,
    SyncMode,
    TwinState,
)
from .storage_backend import StorageBackend

T = TypeVar('T')


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _str_to_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


class Repository(Generic[T], ABC):
    """Abstract base class for repositories."""

    entity_type: str = "entity"

    def __init__(self, storage_backend: StorageBackend, collection_name: str):
        self.storage_backend = storage_backend
        self.collection_name = collection_name

    @abstractmethod
    async def save(self, entity: T) -> None:
        """Save an entity to the repository."""
        pass

    async def get_by_id(self, entity_id: str) -> Optional[T]:
        """Get an entity by its ID."""
        try:
            data = await self.storage_backend.retrieve(self.collection_name, entity_id)
            return self._dict_to_entity(data) if data else None
        except Exception as e:
            raise DataStoreError(
                f"Failed to retrieve {self.entity_type} {entity_id}",
                operation="get_by_id",
                entity_type=self.entity_type,
                cause=e
            ) from e

    async def delete(self, entity_id: str) -> bool:
        """Delete an entity by its ID."""
        try:
            return await self.storage_backend.delete(self.collection_name, entity_id)
        except Exception as e:
            raise DataStoreError(
                f"Failed to delete {self.entity_type} {entity_id}",
                operation="delete",
                entity_type=self.entity_type,
                cause=e
            ) from e

    async def _store(self, key: str, entity: T) -> None:
        try:
            await self.storage_backend.store(self.collection_name, key, self._entity_to_dict(entity))
        except Exception as e:
            raise DataStoreError(
                f"Failed to save {self.entity_type} {key}",
                operation="save",
                entity_type=self.entity_type,
                cause=e
            ) from e

    @abstractmethod
    def _entity_to_dict(self, entity: T) -> Dict[str, Any]:
        """Convert entity to dictionary for storage."""
        pass

    @abstractmethod
    def _dict_to_entity(self, data: Dict[str, Any]) -> T:
        """Convert dictionary from storage to entity."""
        pass


# ----------------------------------------------------------------------
# Twin state
# ----------------------------------------------------------------------

def _kalman_to_dict(kalman: Optional[KalmanSubState]) -> Optional[Dict[str, Any]]:
    if kalman is None:
        return None
    return {
        "estimate": kalman.estimate,
        "error_covariance": kalman.error_covariance,
        "process_noise": kalman.process_noise,
        "measurement_noise": kalman.measurement_noise,
        "gain": kalman.gain,
        "adapted_process_noise": kalman.adapted_process_noise,
        "adapted_measurement_noise": kalman.adapted_measurement_noise,
        "innovations": list(kalman.innovations),
        "last_nis": kalman.last_nis,
        "last_outlier": kalman.last_outlier,
    }


def _variable_to_dict(variable: StateVariable) -> Dict[str, Any]:
    return {
        "variable_id": variable.variable_id,
        "value": variable.value,
        "variance": variable.variance,
        "velocity": variable.velocity,
        "acceleration": variable.acceleration,
        "baseline": variable.baseline,
        "historical_mean": variable.historical_mean,
        "historical_std": variable.historical_std,
        "kalman": _kalman_to_dict(variable.kalman),
        "last_observed": _dt_to_str(variable.last_observed),
        "last_updated": _dt_to_str(variable.last_updated),
        "observation_count": variable.observation_count,
        "data_sources": list(variable.data_sources),
        "confidence": variable.confidence,
        "posterior": (
            {"mean": variable.posterior.mean, "variance": variable.posterior.variance}
            if variable.posterior is not None else None
        ),
    }


def _dict_to_variable(data: Dict[str, Any]) -> StateVariable:
    kalman = data.get("kalman")
    posterior = data.get("posterior")
    return StateVariable(
        variable_id=data["variable_id"],
        value=data["value"],
        variance=data["variance"],
        velocity=data.get("velocity", 0.0),
        acceleration=data.get("acceleration", 0.0),
        baseline=data.get("baseline", 0.5),
        historical_mean=data.get("historical_mean", 0.5),
        historical_std=data.get("historical_std", 0.0),
        kalman=KalmanSubState(**kalman) if kalman else None,
        last_observed=_str_to_dt(data.get("last_observed")),
        last_updated=_str_to_dt(data.get("last_updated")),
        observation_count=data.get("observation_count", 0),
        data_sources=tuple(data.get("data_sources", ())),
        confidence=data.get("confidence", 0.5),
        posterior=GaussianPrior(**posterior) if posterior else None,
    )


def twin_to_dict(state: TwinState) -> Dict[str, Any]:
    metrics = state.metrics
    return {
        "subject_id": state.subject_id,
        "version": state.version,
        "timestamp": state.timestamp.isoformat(),
        "timestamp_epoch": state.timestamp.timestamp(),
        "created_at": state.created_at.isoformat(),
        "variables": {k: _variable_to_dict(v) for k, v in state.variables.items()},
        "metrics": {
            "overall_wellbeing": metrics.overall_wellbeing,
            "stability": metrics.stability.value,
            "dominant_attractor": metrics.dominant_attractor.value,
            "resilience": metrics.resilience,
            "lyapunov_exponent": metrics.lyapunov_exponent,
            "autocorrelation": metrics.autocorrelation,
            "variance_ratio": metrics.variance_ratio,
            "state_uncertainty": metrics.state_uncertainty,
            "data_quality": metrics.data_quality,
        },
        "regime_beliefs": {
            "probabilities": dict(state.regime_beliefs.probabilities),
            "entropy": state.regime_beliefs.entropy,
        },
        "sync": {
            "last_sync": state.sync.last_sync.isoformat(),
            "sync_mode": state.sync.sync_mode.value,
            "pending_updates": state.sync.pending_updates,
            "sync_health": state.sync.sync_health,
        },
    }


def dict_to_twin(data: Dict[str, Any]) -> TwinState:
    metrics = dict(data["metrics"])
    metrics["stability"] = StabilityClass(metrics["stability"])
    metrics["dominant_attractor"] = AttractorType(metrics["dominant_attractor"])
    sync = data["sync"]
    return TwinState(
        subject_id=data["subject_id"],
        version=data["version"],
        timestamp=datetime.fromisoformat(data["timestamp"]),
        created_at=datetime.fromisoformat(data["created_at"]),
        variables={k: _dict_to_variable(v) for k, v in data["variables"].items()},
        metrics=DerivedMetrics(**metrics),
        regime_beliefs=RegimeBeliefs(**data["regime_beliefs"]),
        sync=SyncMetadata(
            last_sync=datetime.fromisoformat(sync["last_sync"]),
            sync_mode=SyncMode(sync["sync_mode"]),
            pending_updates=sync["pending_updates"],
            sync_health=sync["sync_health"],
        ),
    )


class TwinStateRepository(Repository[TwinState]):
    """Latest twin snapshot per subject, keyed by subject id."""

    entity_type = "TwinState"

    def __init__(self, storage_backend: StorageBackend):
        super().__init__(storage_backend, "twin_states")

    async def save(self, state: TwinState) -> None:
        await self._store(state.subject_id, state)

    def _entity_to_dict(self, entity: TwinState) -> Dict[str, Any]:
        return twin_to_dict(entity)

    def _dict_to_entity(self, data: Dict[str, Any]) -> TwinState:
        return dict_to_twin(data)


class TwinHistoryRepository(Repository[TwinState]):
    """Append-only bounded snapshot history per subject.

    Each snapshot is stored under ``<subject>:<version>``; a per-subject index
    document lists the keys in append order so the oldest entry can be
    evicted once ``cap`` is exceeded.
    """

    entity_type = "TwinHistory"
    INDEX_COLLECTION = "twin_history_index"

    def __init__(self, storage_backend: StorageBackend, cap: int = 1000):
        super().__init__(storage_backend, "twin_history")
        if cap < 1:
            raise ValueError("cap must be at least 1")
        self.cap = cap

    @staticmethod
    def snapshot_key(state: TwinState) -> str:
        return f"{state.subject_id}:{state.version:012d}"

    async def save(self, state: TwinState) -> None:
        """Append a snapshot, evicting the oldest past the cap."""
        key = self.snapshot_key(state)
        await self._store(key, state)

        try:
            index = await self.storage_backend.retrieve(self.INDEX_COLLECTION, state.subject_id)
            keys = list(index["keys"]) if index else []
            keys.append(key)
            evicted, keys = keys[:-self.cap], keys[-self.cap:]
            if evicted:
                await self.storage_backend.delete_many(self.collection_name, evicted)
            await self.storage_backend.store(
                self.INDEX_COLLECTION, state.subject_id,
                {"subject_id": state.subject_id, "keys": keys}
            )
        except Exception as e:
            raise DataStoreError(
                f"Failed to update history index for {state.subject_id}",
                operation="append",
                entity_type=self.entity_type,
                cause=e
            ) from e

    async def get_history(self, subject_id: str, since: Optional[datetime] = None) -> List[TwinState]:
        """Snapshots for ``subject_id`` in version order, optionally from ``since``."""
        filters: Dict[str, Any] = {"subject_id": subject_id}
        if since is not None:
            filters["timestamp_epoch"] = {"$gte": since.timestamp()}
        try:
            results = await self.storage_backend.query(self.collection_name, filters)
        except Exception as e:
            raise DataStoreError(
                f"Failed to query history for {subject_id}",
                operation="get_history",
                entity_type=self.entity_type,
                cause=e
            ) from e
        return [self._dict_to_entity(data) for data in sorted(results, key=lambda d: d["version"])]

    async def count(self, subject_id: str) -> int:
        index = await self.storage_backend.retrieve(self.INDEX_COLLECTION, subject_id)
        return len(index["keys"]) if index else 0

    async def delete_subject(self, subject_id: str) -> int:
        """Remove every snapshot for ``subject_id``; returns how many were removed."""
        try:
            index = await self.storage_backend.retrieve(self.INDEX_COLLECTION, subject_id)
            keys = list(index["keys"]) if index else []
            removed = await self.storage_backend.delete_many(self.collection_name, keys)
            await self.storage_backend.delete(self.INDEX_COLLECTION, subject_id)
            return removed
        except Exception as e:
            raise DataStoreError(
                f"Failed to delete history for {subject_id}",
                operation="delete_subject",
                entity_type=self.entity_type,
                cause=e
            ) from e

    def _entity_to_dict(self, entity: TwinState) -> Dict[str, Any]:
        return twin_to_dict(entity)

    def _dict_to_entity(self, data: Dict[str, Any]) -> TwinState:
        return dict_to_twin(data)


# ----------------------------------------------------------------------
# Personalization
# ----------------------------------------------------------------------

class PersonalizationRepository(Repository[Personalization]):
    entity_type = "Personalization"

    def __init__(self, storage_backend: StorageBackend):
        super().__init__(storage_backend, "personalizations")

    async def save(self, personalization: Personalization) -> None:
        await self._store(personalization.subject_id, personalization)

    def _entity_to_dict(self, entity: Personalization) -> Dict[str, Any]:
        return {
            "subject_id": entity.subject_id,
            "learned_at": entity.learned_at.isoformat(),
            "mean_reversion_rate": dict(entity.mean_reversion_rate),
            "volatility": dict(entity.volatility),
            "learned_priors": {
                k: {"mean": p.mean, "variance": p.variance} for k, p in entity.learned_priors.items()
            },
            "weekly_pattern": {k: list(v) for k, v in entity.weekly_pattern.items()},
            "data_points_used": entity.data_points_used,
            "fit_quality": entity.fit_quality,
            "cross_validation_score": entity.cross_validation_score,
        }

    def _dict_to_entity(self, data: Dict[str, Any]) -> Personalization:
        return Personalization(
            subject_id=data["subject_id"],
            learned_at=datetime.fromisoformat(data["learned_at"]),
            mean_reversion_rate=data.get("mean_reversion_rate", {}),
            volatility=data.get("volatility", {}),
            learned_priors={k: GaussianPrior(**p) for k, p in data.get("learned_priors", {}).items()},
            weekly_pattern=data.get("weekly_pattern", {}),
            data_points_used=data.get("data_points_used", 0),
            fit_quality=data.get("fit_quality", 0.0),
            cross_validation_score=data.get("cross_validation_score", 0.0),
        )


# ----------------------------------------------------------------------
# Belief state
# ----------------------------------------------------------------------

def _dimension_to_dict(dim: DimensionBelief) -> Dict[str, Any]:
    return {
        "dimension": dim.dimension,
        "prior": {
            "mean": dim.prior.mean,
            "variance": dim.prior.variance,
            "sample_size": dim.prior.sample_size,
            "last_updated": _dt_to_str(dim.prior.last_updated),
        },
        "posterior": {
            "mean": dim.posterior.mean,
            "variance": dim.posterior.variance,
            "based_on_observations": dim.posterior.based_on_observations,
            "updated_at": _dt_to_str(dim.posterior.updated_at),
        },
        "belief_shift": dim.belief_shift,
        "information_gain": dim.information_gain,
        "stability": dim.stability,
    }


def _dict_to_dimension(data: Dict[str, Any]) -> DimensionBelief:
    prior = dict(data["prior"])
    prior["last_updated"] = _str_to_dt(prior.get("last_updated"))
    posterior = dict(data["posterior"])
    posterior["updated_at"] = _str_to_dt(posterior.get("updated_at"))
    return DimensionBelief(
        dimension=data["dimension"],
        prior=Prior(**prior),
        posterior=Posterior(**posterior),
        belief_shift=data.get("belief_shift", 0.0),
        information_gain=data.get("information_gain", 0.0),
        stability=data.get("stability", 1.0),
    )


class BeliefStateRepository(Repository[BeliefState]):
    """Latest belief per subject, keyed by subject id."""

    entity_type = "BeliefState"

    def __init__(self, storage_backend: StorageBackend):
        super().__init__(storage_backend, "belief_states")

    async def save(self, belief: BeliefState) -> None:
        await self._store(belief.subject_id, belief)

    def _entity_to_dict(self, entity: BeliefState) -> Dict[str, Any]:
        meta = entity.meta
        return {
            "subject_id": entity.subject_id,
            "timestamp": entity.timestamp.isoformat(),
            "dimensions": {k: _dimension_to_dict(v) for k, v in entity.dimensions.items()},
            "emotion": {
                "distribution": dict(entity.emotion.distribution),
                "entropy": entity.emotion.entropy,
            },
            "meta": {
                "overall_confidence": meta.overall_confidence,
                "total_observations": meta.total_observations,
                "average_information_gain": meta.average_information_gain,
                "belief_consistency": meta.belief_consistency,
                "prediction_accuracy": meta.prediction_accuracy,
            },
        }

    def _dict_to_entity(self, data: Dict[str, Any]) -> BeliefState:
        return BeliefState(
            subject_id=data["subject_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            dimensions={k: _dict_to_dimension(v) for k, v in data["dimensions"].items()},
            emotion=EmotionBelief(**data["emotion"]),
            meta=BeliefMeta(**data["meta"]),
        )
