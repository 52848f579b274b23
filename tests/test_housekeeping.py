from __future__ import annotations

import pytest

from conftest import OWNER, FixedClock, ScriptedBackend, as_json, diet_payload
from fitplan_engine.engine import PlanGenerationEngine
from fitplan_engine.errors import ValidationRejectedError
from fitplan_engine.models import GenerationPhase, PlanKind
from fitplan_engine.state_store import GENERATIONS_COLLECTION, PLANS_COLLECTION, FileDocumentStore


async def _completed_plan(engine: PlanGenerationEngine, backend: ScriptedBackend) -> str:
    backend.queue_ready()
    result = await engine.start_conversation(OWNER, PlanKind.DIET, "Meal plan please")
    backend.generations.append(as_json(diet_payload(7)))
    outcome = await engine.begin_generation(OWNER, result.record.id)
    assert outcome.plan is not None
    return outcome.plan.id


@pytest.mark.asyncio
async def test_current_week_plan_is_left_alone(
    engine: PlanGenerationEngine, backend: ScriptedBackend, clock: FixedClock
) -> None:
    plan_id = await _completed_plan(engine, backend)
    # Sunday evening of the same week.
    clock.advance(days=4, hours=14)

    report = await engine.archive_stale(OWNER)

    assert report.archived_plan_ids == []
    plan = await engine.plans.get(plan_id)
    assert plan is not None and not plan.is_archived


@pytest.mark.asyncio
async def test_elapsed_plan_is_archived_not_deleted(
    engine: PlanGenerationEngine, backend: ScriptedBackend, clock: FixedClock, store: FileDocumentStore
) -> None:
    plan_id = await _completed_plan(engine, backend)
    before = await engine.plans.get(plan_id)
    clock.advance(days=5)

    report = await engine.archive_stale(OWNER)

    assert report.archived_plan_ids == [plan_id]
    plan = await engine.plans.get(plan_id)
    assert plan is not None
    assert plan.is_archived
    assert plan.archived_at == clock.now()
    assert plan.payload == before.payload
    assert plan.content_fingerprint == before.content_fingerprint

    record = await engine.get_record(OWNER, plan.generation_id)
    assert record.is_archived
    assert record.phase is GenerationPhase.COMPLETED
    assert report.archived_generation_ids == [record.id]
    assert len(await store.query(PLANS_COLLECTION, lambda document: True)) == 1
    assert len(await store.query(GENERATIONS_COLLECTION, lambda document: True)) == 1

    # A second pass finds nothing new.
    again = await engine.archive_stale(OWNER)
    assert again.archived_plan_ids == [] and again.archived_generation_ids == []


@pytest.mark.asyncio
async def test_old_failed_records_are_archived(
    engine: PlanGenerationEngine, backend: ScriptedBackend, clock: FixedClock
) -> None:
    backend.queue_ready()
    result = await engine.start_conversation(OWNER, PlanKind.WORKOUT_HOME, "Home workouts")
    backend.generations.append(as_json({"days": []}))
    with pytest.raises(ValidationRejectedError):
        await engine.begin_generation(OWNER, result.record.id)

    clock.advance(days=6)
    assert (await engine.archive_stale(OWNER)).archived_generation_ids == []

    clock.advance(days=2)
    report = await engine.archive_stale(OWNER)
    assert report.archived_generation_ids == [result.record.id]
    record = await engine.get_record(OWNER, result.record.id)
    assert record.is_archived
    assert record.phase is GenerationPhase.FAILED


@pytest.mark.asyncio
async def test_load_plans_archives_first_and_filters(
    engine: PlanGenerationEngine, backend: ScriptedBackend, clock: FixedClock
) -> None:
    old_plan_id = await _completed_plan(engine, backend)
    clock.advance(days=7)
    new_plan_id = await _completed_plan(engine, backend)

    visible = await engine.load_plans(OWNER)
    everything = await engine.load_plans(OWNER, include_archived=True)

    assert [plan.id for plan in visible] == [new_plan_id]
    assert [plan.id for plan in everything] == [new_plan_id, old_plan_id]
    assert await engine.load_plans("user-2") == []
