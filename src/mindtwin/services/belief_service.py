"""
Belief Service

Stateful wrapper around the pure :class:`BeliefUpdateEngine`. Keeps the
latest belief per subject in the belief repository and a bounded in-process
history of snapshots for trend queries.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional

import numpy as np

from ..belief.engine import BeliefUpdateEngine
from ..belief.models import (
    BeliefHistoryPoint,
    BeliefObservation,
    BeliefState,
    BeliefUpdateResult,
    DIMENSION_GROUPS,
    ObservationSuggestion,
    utcnow,
)
from ..common.config import MindTwinConfiguration
from ..common.exceptions import BeliefUpdateError
from ..common.logging_setup import subject_context
from ..storage.repository import BeliefStateRepository
from ..storage.storage_backend import InMemoryStorageBackend, StorageBackend

logger = logging.getLogger(__name__)

TRACKED_DIMENSIONS = frozenset(name for group in DIMENSION_GROUPS.values() for name in group)


class BeliefService:
    """Per-subject belief lifecycle.

    Args:
        engine: Belief update engine; its configuration also bounds history
        storage_backend: Persistence collaborator; in-memory when omitted
    """

    def __init__(
        self,
        engine: Optional[BeliefUpdateEngine] = None,
        storage_backend: Optional[StorageBackend] = None,
    ):
        self.engine = engine or BeliefUpdateEngine()
        self.storage_backend = storage_backend or InMemoryStorageBackend()
        self.beliefs = BeliefStateRepository(self.storage_backend)
        self.history_cap = self.engine.config.history_cap
        self._history: Dict[str, Deque[BeliefState]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def from_configuration(
        cls,
        configuration: MindTwinConfiguration,
        storage_backend: Optional[StorageBackend] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "BeliefService":
        """Build a service whose likelihood noise is seeded by ``random_seed``."""
        engine = BeliefUpdateEngine(
            configuration.belief,
            rng=np.random.default_rng(configuration.random_seed),
            clock=clock,
        )
        return cls(engine=engine, storage_backend=storage_backend)

    def _lock(self, subject_id: str) -> asyncio.Lock:
        return self._locks.setdefault(subject_id, asyncio.Lock())

    async def _commit(self, belief: BeliefState) -> BeliefState:
        await self.beliefs.save(belief)
        history = self._history.setdefault(belief.subject_id, deque(maxlen=self.history_cap))
        history.append(belief)
        return belief

    async def _current(self, subject_id: str) -> BeliefState:
        belief = await self.beliefs.get_by_id(subject_id)
        if belief is None:
            belief = await self._commit(self.engine.initialize_belief(subject_id))
            logger.info(f"Initialized belief for subject {subject_id}", extra={"subject_id": subject_id})
        return belief

    async def initialize_belief(self, subject_id: str) -> BeliefState:
        """Return the stored belief, initializing it from population priors."""
        async with self._lock(subject_id):
            return await self._current(subject_id)

    async def get_belief(self, subject_id: str) -> Optional[BeliefState]:
        return await self.beliefs.get_by_id(subject_id)

    async def update_belief(self, subject_id: str, observation: BeliefObservation) -> BeliefUpdateResult:
        async with self._lock(subject_id):
            with subject_context(subject_id):
                belief = await self._current(subject_id)
                result = self.engine.update_belief(belief, observation)
                await self._commit(result.new_belief)
                return result

    async def batch_update(self, subject_id: str, observations: Iterable[BeliefObservation]) -> BeliefUpdateResult:
        batch = list(observations)
        async with self._lock(subject_id):
            with subject_context(subject_id):
                belief = await self._current(subject_id)
                result = self.engine.batch_update(belief, batch)
                await self._commit(result.new_belief)
                return result

    async def apply_belief_decay(self, subject_id: str, hours_elapsed: float) -> BeliefState:
        """Decay the stored belief; a zero interval leaves it untouched."""
        async with self._lock(subject_id):
            belief = await self._current(subject_id)
            decayed = self.engine.apply_belief_decay(belief, hours_elapsed)
            if decayed is belief:
                return belief
            return await self._commit(decayed)

    async def suggest_next_observation(self, subject_id: str) -> ObservationSuggestion:
        return self.engine.suggest_next_observation(await self.initialize_belief(subject_id))

    def get_belief_history(
        self,
        subject_id: str,
        dimension: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[BeliefHistoryPoint]:
        """Posterior trajectory of ``dimension`` within ``[start, end]``.

        Raises:
            BeliefUpdateError: If ``dimension`` is not tracked
        """
        if dimension not in TRACKED_DIMENSIONS:
            raise BeliefUpdateError(f"Unknown belief dimension: {dimension}", subject_id=subject_id)

        points = []
        for belief in self._history.get(subject_id, ()):
            if start is not None and belief.timestamp < start:
                continue
            if end is not None and belief.timestamp > end:
                continue
            dim = belief.dimensions[dimension]
            points.append(BeliefHistoryPoint(
                timestamp=belief.timestamp,
                mean=dim.posterior.mean,
                variance=dim.posterior.variance,
            ))
        return points

    async def delete_belief(self, subject_id: str) -> bool:
        async with self._lock(subject_id):
            self._history.pop(subject_id, None)
            return await self.beliefs.delete(subject_id)
