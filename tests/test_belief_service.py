import asyncio
from datetime import timedelta

import pytest

from mindtwin.belief.engine import BeliefUpdateEngine
from mindtwin.belief.models import BeliefComponent, BeliefObservation, ObservationType
from mindtwin.common.config import BeliefEngineConfiguration, MindTwinConfiguration
from mindtwin.common.exceptions import BeliefUpdateError, EmptyBatchError
from mindtwin.services.belief_service import BeliefService


@pytest.fixture
def service(clock, backend):
    engine = BeliefUpdateEngine(BeliefEngineConfiguration(likelihood_noise=0.0, history_cap=5), clock=clock)
    return BeliefService(engine=engine, storage_backend=backend)


def mood_report(timestamp, valence, energy=0.5):
    return BeliefObservation(
        observation_type=ObservationType.SELF_REPORT_MOOD,
        timestamp=timestamp,
        data={"valence": valence, "energy": energy},
        informs_components={BeliefComponent.EMOTIONAL, BeliefComponent.RESOURCES},
    )


async def test_initialize_is_persisted_and_idempotent(service, clock):
    first = await service.initialize_belief("subject-1")
    clock.advance(hours=1)
    second = await service.initialize_belief("subject-1")

    assert second == first
    assert await service.get_belief("subject-1") == first
    assert await service.get_belief("unknown") is None


async def test_update_creates_belief_on_demand(service, clock):
    result = await service.update_belief("subject-1", mood_report(clock(), valence=0.6))

    stored = await service.get_belief("subject-1")
    assert stored == result.new_belief
    assert stored.mean("valence") > 0.0
    assert set(result.updated_dimensions) == {"valence", "energy"}


async def test_batch_update(service, clock):
    observations = [mood_report(clock() + timedelta(minutes=i), valence=0.4) for i in range(3)]
    result = await service.batch_update("subject-1", observations)
    assert result.new_belief.meta.total_observations == 3

    with pytest.raises(EmptyBatchError):
        await service.batch_update("subject-1", [])


async def test_decay(service, clock):
    await service.update_belief("subject-1", mood_report(clock(), valence=0.6))
    before = await service.get_belief("subject-1")

    assert await service.apply_belief_decay("subject-1", 0) == before

    clock.advance(hours=12)
    decayed = await service.apply_belief_decay("subject-1", 12)
    assert decayed.variance("valence", 0) > before.variance("valence", 0)
    assert await service.get_belief("subject-1") == decayed


async def test_history_window(service, clock, start_time):
    await service.initialize_belief("subject-1")
    for valence in (0.2, 0.4):
        clock.advance(hours=1)
        await service.update_belief("subject-1", mood_report(clock(), valence=valence))

    points = service.get_belief_history("subject-1", "valence")
    assert [p.timestamp for p in points] == [start_time + timedelta(hours=h) for h in range(3)]
    assert points[0].mean == 0.0
    assert points[2].variance < points[0].variance

    recent = service.get_belief_history("subject-1", "valence", start=start_time + timedelta(minutes=30))
    assert len(recent) == 2
    early = service.get_belief_history("subject-1", "valence", end=start_time + timedelta(minutes=30))
    assert len(early) == 1


async def test_history_is_bounded(service, clock):
    for _ in range(8):
        clock.advance(hours=1)
        await service.update_belief("subject-1", mood_report(clock(), valence=0.1))
    assert len(service.get_belief_history("subject-1", "valence")) == 5


async def test_history_for_unknown_dimension(service, clock):
    await service.initialize_belief("subject-1")
    with pytest.raises(BeliefUpdateError):
        service.get_belief_history("subject-1", "creativity")
    assert service.get_belief_history("nobody", "valence") == []


def test_unknown_dimension_rejected_without_history(service):
    with pytest.raises(BeliefUpdateError):
        service.get_belief_history("nobody", "creativity")
    assert service.get_belief_history("nobody", "overall_risk") == []


async def test_suggest_next_observation(service):
    suggestion = await service.suggest_next_observation("subject-1")
    assert suggestion.observation_type is ObservationType.ASSESSMENT
    assert await service.get_belief("subject-1") is not None


async def test_concurrent_updates_are_serialized(service, clock):
    observations = [mood_report(clock(), valence=0.3) for _ in range(10)]
    await asyncio.gather(*(service.update_belief("subject-1", o) for o in observations))
    belief = await service.get_belief("subject-1")
    assert belief.meta.total_observations == 10


async def test_delete(service, clock):
    await service.update_belief("subject-1", mood_report(clock(), valence=0.3))
    assert await service.delete_belief("subject-1")
    assert await service.get_belief("subject-1") is None
    assert service.get_belief_history("subject-1", "valence") == []
    assert not await service.delete_belief("subject-1")


async def test_delete_does_not_drop_queued_updates(clock, yielding_backend):
    engine = BeliefUpdateEngine(BeliefEngineConfiguration(likelihood_noise=0.0), clock=clock)
    service = BeliefService(engine=engine, storage_backend=yielding_backend)

    async def delete_then_update():
        await service.delete_belief("subject-1")
        return await service.update_belief("subject-1", mood_report(clock(), valence=0.2))

    await asyncio.gather(
        service.update_belief("subject-1", mood_report(clock(), valence=0.6)),
        delete_then_update(),
        service.update_belief("subject-1", mood_report(clock(), valence=0.4)),
    )

    belief = await service.get_belief("subject-1")
    assert belief.meta.total_observations == 2
    assert len(service.get_belief_history("subject-1", "valence")) == 3


async def test_seeded_services_agree(clock):
    configuration = MindTwinConfiguration(random_seed=3)
    first = BeliefService.from_configuration(configuration, clock=clock)
    second = BeliefService.from_configuration(configuration, clock=clock)

    observation = mood_report(clock(), valence=0.5)
    one = await first.update_belief("subject-1", observation)
    two = await second.update_belief("subject-1", observation)
    assert one.surprise == two.surprise
    assert one.new_belief.mean("valence") == two.new_belief.mean("valence")
    assert first.engine.config == configuration.belief
