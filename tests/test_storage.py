from datetime import timedelta

import pytest

from mindtwin.belief.engine import BeliefUpdateEngine
from mindtwin.common.exceptions import DataStoreError
from mindtwin.models.twin import GaussianPrior, KalmanSubState, Personalization, StateVariable, TwinState
from mindtwin.storage import (
    BeliefStateRepository,
    InMemoryStorageBackend,
    PersonalizationRepository,
    TwinHistoryRepository,
    TwinStateRepository,
)


class FailingBackend(InMemoryStorageBackend):
    async def store(self, collection, key, data):
        raise ConnectionError("store unavailable")

    async def retrieve(self, collection, key):
        raise ConnectionError("store unavailable")

    async def query(self, collection, filters):
        raise ConnectionError("store unavailable")


class TestInMemoryBackend:
    async def test_connect_cycle_keeps_data(self, backend):
        await backend.connect()
        assert backend.connected
        await backend.store("things", "a", {"value": 1})
        await backend.disconnect()
        assert not backend.connected
        assert await backend.retrieve("things", "a") == {"value": 1}

    async def test_stored_documents_are_copies(self, backend):
        document = {"value": 1}
        await backend.store("things", "a", document)
        document["value"] = 2
        assert (await backend.retrieve("things", "a"))["value"] == 1

    async def test_query_filters(self, backend):
        for i in range(5):
            await backend.store("things", str(i), {"kind": "x" if i % 2 else "y", "n": i})
        odd = await backend.query("things", {"kind": "x"})
        assert sorted(d["n"] for d in odd) == [1, 3]
        ranged = await backend.query("things", {"n": {"$gte": 1, "$lte": 3}})
        assert sorted(d["n"] for d in ranged) == [1, 2, 3]
        assert await backend.query("missing", {}) == []
        chosen = await backend.query("things", {"n": {"$in": (0, 4)}})
        assert sorted(d["n"] for d in chosen) == [0, 4]
        with pytest.raises(ValueError):
            await backend.query("things", {"n": {"$regex": "1"}})

    async def test_delete(self, backend):
        await backend.store("things", "a", {})
        assert await backend.delete("things", "a")
        assert not await backend.delete("things", "a")
        assert backend.count("things") == 0

    async def test_delete_many(self, backend):
        for key in "abc":
            await backend.store("things", key, {})
        assert await backend.delete_many("things", ["a", "c", "z"]) == 2
        assert backend.count("things") == 1


class TestTwinRepositories:
    async def test_twin_round_trip(self, backend, make_twin, start_time):
        twin = make_twin({"emotion_anxiety": 0.7}, version=3)
        variable = twin.get("emotion_anxiety")
        enriched = {
            **twin.variables,
            "emotion_anxiety": StateVariable(
                variable_id="emotion_anxiety",
                value=variable.value,
                variance=variable.variance,
                kalman=KalmanSubState(
                    estimate=0.7, error_covariance=0.02, process_noise=0.01,
                    measurement_noise=0.1, innovations=(0.1, -0.05),
                ),
                last_observed=start_time,
                data_sources=("ema_survey",),
                posterior=GaussianPrior(0.7, 0.02),
            ),
        }
        twin = TwinState(
            subject_id=twin.subject_id,
            version=twin.version,
            timestamp=twin.timestamp,
            created_at=twin.created_at,
            variables=enriched,
            metrics=twin.metrics,
            regime_beliefs=twin.regime_beliefs,
        )

        repository = TwinStateRepository(backend)
        await repository.save(twin)
        loaded = await repository.get_by_id("subject-1")

        assert loaded == twin
        assert loaded.get("emotion_anxiety").kalman.innovations == (0.1, -0.05)
        assert await repository.get_by_id("subject-2") is None

    async def test_history_cap_and_order(self, backend, make_twin, start_time):
        repository = TwinHistoryRepository(backend, cap=3)
        for version in range(5):
            await repository.save(make_twin(version=version, timestamp=start_time + timedelta(days=version)))

        history = await repository.get_history("subject-1")
        assert [s.version for s in history] == [2, 3, 4]
        assert await repository.count("subject-1") == 3

        recent = await repository.get_history("subject-1", since=start_time + timedelta(days=3))
        assert [s.version for s in recent] == [3, 4]

    async def test_history_is_per_subject(self, backend, make_twin):
        repository = TwinHistoryRepository(backend, cap=10)
        await repository.save(make_twin(subject_id="a"))
        await repository.save(make_twin(subject_id="b"))
        await repository.save(make_twin(subject_id="b", version=1))

        assert await repository.delete_subject("b") == 2
        assert await repository.get_history("b") == []
        assert len(await repository.get_history("a")) == 1

    def test_history_cap_validation(self, backend):
        with pytest.raises(ValueError):
            TwinHistoryRepository(backend, cap=0)

    async def test_personalization_round_trip(self, backend, start_time):
        personalization = Personalization(
            subject_id="subject-1",
            learned_at=start_time,
            mean_reversion_rate={"emotion_joy": 0.2},
            volatility={"emotion_joy": 0.05},
            learned_priors={"emotion_joy": GaussianPrior(0.55, 0.01)},
            weekly_pattern={"emotion_joy": (0.5,) * 7},
            data_points_used=12,
            fit_quality=0.7,
            cross_validation_score=0.65,
        )
        repository = PersonalizationRepository(backend)
        await repository.save(personalization)
        assert await repository.get_by_id("subject-1") == personalization


class TestBeliefRepository:
    async def test_round_trip(self, backend, clock):
        belief = BeliefUpdateEngine(clock=clock).initialize_belief("subject-1")
        repository = BeliefStateRepository(backend)
        await repository.save(belief)
        assert await repository.get_by_id("subject-1") == belief
        assert await repository.delete("subject-1")


class TestFailures:
    async def test_backend_errors_are_wrapped(self, make_twin):
        repository = TwinStateRepository(FailingBackend())

        with pytest.raises(DataStoreError) as excinfo:
            await repository.save(make_twin())
        assert excinfo.value.context == {"operation": "save", "entity_type": "TwinState"}
        assert isinstance(excinfo.value.cause, ConnectionError)

        with pytest.raises(DataStoreError):
            await repository.get_by_id("subject-1")

    async def test_history_query_errors_are_wrapped(self):
        repository = TwinHistoryRepository(FailingBackend())
        with pytest.raises(DataStoreError) as excinfo:
            await repository.get_history("subject-1")
        assert excinfo.value.context["operation"] == "get_history"
