from __future__ import annotations

import asyncio
from typing import Any

import pytest

from conftest import OWNER, FixedClock, ScriptedBackend, as_json, diet_payload, workout_payload
from fitplan_engine.engine import PlanGenerationEngine
from fitplan_engine.errors import BackendUnavailableError
from fitplan_engine.events import GenerationCompleted
from fitplan_engine.models import (
    GenerationPhase,
    GenerationRecord,
    PlanDocument,
    PlanKind,
    ResponseKind,
    plan_id_for,
)
from fitplan_engine.notifications import LoggingNotificationScheduler
from fitplan_engine.state_store import FileDocumentStore
from fitplan_engine.utils import week_bounds


async def _stored_record(
    engine: PlanGenerationEngine,
    clock: FixedClock,
    record_id: str,
    *,
    kind: PlanKind = PlanKind.DIET,
    phase: GenerationPhase = GenerationPhase.GENERATING,
    **fields: Any,
) -> GenerationRecord:
    now = clock.now()
    record = GenerationRecord(id=record_id, owner_id=OWNER, plan_kind=kind, created_at=now, updated_at=now, **fields)
    record.append_user_turn("Build me a plan", now=now)
    record.collected_context = "Build me a plan"
    record.append_assistant_turn("Ready!", ResponseKind.READY, now=now)
    if phase is not GenerationPhase.CONVERSATION:
        record.transition_to(GenerationPhase.GENERATING, now=now)
    if phase is GenerationPhase.COMPLETED:
        record.mark_completed(plan_id_for(record_id), now=now)
    await engine.generations.save(record)
    return record


def _plan_for(record: GenerationRecord, clock: FixedClock) -> PlanDocument:
    start, end = week_bounds(clock.now())
    return PlanDocument(
        id=plan_id_for(record.id),
        owner_id=record.owner_id,
        plan_kind=record.plan_kind,
        generation_id=record.id,
        title="Stored plan",
        payload=diet_payload(7),
        week_start_date=start,
        week_end_date=end,
        created_at=clock.now(),
        last_updated=clock.now(),
    )


@pytest.mark.asyncio
async def test_interrupted_generation_is_regenerated(
    engine: PlanGenerationEngine, backend: ScriptedBackend, clock: FixedClock, notifier: LoggingNotificationScheduler
) -> None:
    await _stored_record(engine, clock, "rec-interrupted")
    backend.generations.append(as_json(diet_payload(7)))

    report = await engine.recover_pending_work(OWNER)

    assert report.regenerated == ["rec-interrupted"]
    record = await engine.get_record(OWNER, "rec-interrupted")
    assert record.phase is GenerationPhase.COMPLETED
    assert record.notification_sent is True
    assert notifier.sent == [(PlanKind.DIET, "Your Meal Plan is Ready!")]


@pytest.mark.asyncio
async def test_existing_plan_is_reused_without_backend_call(
    engine: PlanGenerationEngine, backend: ScriptedBackend, clock: FixedClock
) -> None:
    record = await _stored_record(engine, clock, "rec-crashed-after-plan")
    await engine.plans.save(_plan_for(record, clock))

    report = await engine.recover_pending_work(OWNER)

    assert report.finalized_from_plan == ["rec-crashed-after-plan"]
    assert backend.generate_calls == []
    stored = await engine.get_record(OWNER, record.id)
    assert stored.phase is GenerationPhase.COMPLETED
    assert stored.result_plan_id == plan_id_for(record.id)
    assert stored.notification_sent is True


@pytest.mark.asyncio
async def test_missed_notification_is_delivered_once(
    engine: PlanGenerationEngine, clock: FixedClock, notifier: LoggingNotificationScheduler
) -> None:
    record = await _stored_record(engine, clock, "rec-unnotified", phase=GenerationPhase.COMPLETED)
    await engine.plans.save(_plan_for(record, clock))

    first = await engine.recover_pending_work(OWNER)
    second = await engine.recover_pending_work(OWNER)

    assert first.notified == ["rec-unnotified"]
    assert not second.touched
    assert notifier.sent == [(PlanKind.DIET, "Your Meal Plan is Ready!")]


@pytest.mark.asyncio
async def test_completed_record_with_missing_plan_is_reported(engine: PlanGenerationEngine, clock: FixedClock) -> None:
    await _stored_record(engine, clock, "rec-orphan", phase=GenerationPhase.COMPLETED)

    report = await engine.recover_pending_work(OWNER)

    assert report.failed == ["rec-orphan"]
    record = await engine.get_record(OWNER, "rec-orphan")
    assert record.notification_sent is False


@pytest.mark.asyncio
async def test_only_newest_record_per_kind_is_resumed(
    engine: PlanGenerationEngine, backend: ScriptedBackend, clock: FixedClock
) -> None:
    await _stored_record(engine, clock, "rec-old")
    clock.advance(minutes=5)
    await _stored_record(engine, clock, "rec-new")
    await _stored_record(engine, clock, "rec-gym", kind=PlanKind.WORKOUT_GYM)
    backend.generations_by_kind[PlanKind.DIET] = [as_json(diet_payload(7))]
    backend.generations_by_kind[PlanKind.WORKOUT_GYM] = [as_json(workout_payload(7))]

    report = await engine.recover_pending_work(OWNER)

    assert sorted(report.regenerated) == ["rec-gym", "rec-new"]
    assert report.skipped == ["rec-old"]
    assert len(backend.generate_calls) == 2
    old = await engine.get_record(OWNER, "rec-old")
    assert old.phase is GenerationPhase.GENERATING


@pytest.mark.asyncio
async def test_sweep_skips_kinds_with_an_active_flow(
    engine: PlanGenerationEngine, backend: ScriptedBackend, clock: FixedClock
) -> None:
    await _stored_record(engine, clock, "rec-background")
    await engine.start_conversation(OWNER, PlanKind.DIET, "A new diet plan")

    report = await engine.recover_pending_work(OWNER)

    assert report.skipped == ["rec-background"]
    assert backend.generate_calls == []


@pytest.mark.asyncio
async def test_backend_failure_during_sweep_is_reported_and_retried_later(
    engine: PlanGenerationEngine, backend: ScriptedBackend, clock: FixedClock
) -> None:
    await _stored_record(engine, clock, "rec-retry")
    backend.generations.append(BackendUnavailableError("offline"))

    first = await engine.recover_pending_work(OWNER)
    assert first.failed == ["rec-retry"]
    record = await engine.get_record(OWNER, "rec-retry")
    assert record.phase is GenerationPhase.GENERATING

    clock.advance(hours=1)
    backend.generations.append(as_json(diet_payload(7)))
    second = await engine.recover_pending_work(OWNER)
    assert second.regenerated == ["rec-retry"]

    third = await engine.recover_pending_work(OWNER)
    assert not third.touched


@pytest.mark.asyncio
async def test_sweep_is_scoped_to_owner(engine: PlanGenerationEngine, backend: ScriptedBackend, clock: FixedClock) -> None:
    await _stored_record(engine, clock, "rec-mine")
    report = await engine.recover_pending_work("user-2")
    assert not report.touched
    assert backend.generate_calls == []


@pytest.mark.asyncio
async def test_sweep_during_live_handoff_notifies_once(
    store: FileDocumentStore, backend: ScriptedBackend, clock: FixedClock, events: Any
) -> None:
    class BlockingNotifier:
        def __init__(self) -> None:
            self.sent: list[tuple[PlanKind, str]] = []
            self.entered = asyncio.Event()
            self.release = asyncio.Event()

        async def schedule_completion_notification(self, plan_kind: PlanKind, title: str) -> None:
            self.sent.append((plan_kind, title))
            if len(self.sent) == 1:
                self.entered.set()
                await self.release.wait()

    notifier = BlockingNotifier()
    engine = PlanGenerationEngine(store=store, backend=backend, clock=clock, notifier=notifier, events=events[0])
    backend.queue_ready()
    result = await engine.start_conversation(OWNER, PlanKind.DIET, "Meal plan please")
    backend.generations.append(as_json(diet_payload(7)))

    generation = asyncio.create_task(engine.begin_generation(OWNER, result.record.id))
    await notifier.entered.wait()
    report = await engine.recover_pending_work(OWNER)
    notifier.release.set()
    await generation

    assert report.notified == []
    assert len(notifier.sent) == 1
    assert len([event for event in events[1] if isinstance(event, GenerationCompleted)]) == 1


@pytest.mark.asyncio
async def test_handoff_with_stale_copy_is_skipped(
    engine: PlanGenerationEngine, clock: FixedClock, notifier: LoggingNotificationScheduler
) -> None:
    record = await _stored_record(engine, clock, "rec-stale", phase=GenerationPhase.COMPLETED)
    plan = _plan_for(record, clock)
    await engine.plans.save(plan)
    stale = record.model_copy(deep=True)

    assert await engine.orchestrator.complete_handoff(record, plan) is True
    assert await engine.orchestrator.complete_handoff(stale, plan) is False
    assert notifier.sent == [(PlanKind.DIET, "Your Meal Plan is Ready!")]
    assert stale.notification_sent is True
