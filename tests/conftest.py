from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Sequence

import pytest

from fitplan_engine.backend import ConversationReply
from fitplan_engine.engine import PlanGenerationEngine
from fitplan_engine.events import EventChannel
from fitplan_engine.models import PlanKind, ResponseKind, Turn
from fitplan_engine.notifications import LoggingNotificationScheduler
from fitplan_engine.settings import RuntimeSettings
from fitplan_engine.state_store import FileDocumentStore

OWNER = "user-1"


class FixedClock:
    def __init__(self, current: datetime) -> None:
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current = self.current + timedelta(**kwargs)


class ScriptedBackend:
    """Backend double that replays queued replies and records every call."""

    def __init__(self) -> None:
        self.replies: list[ConversationReply | Exception] = []
        self.generations: list[str | Exception] = []
        self.generations_by_kind: dict[PlanKind, list[str | Exception]] = {}
        self.converse_calls: list[tuple[list[Turn], str, bool]] = []
        self.generate_calls: list[str] = []
        self.before_generate = None

    def queue_question(self, message: str = "What are your goals?") -> None:
        self.replies.append(ConversationReply(message, ResponseKind.QUESTION))

    def queue_ready(self, message: str = "Ready!", summary: str = "Summary of preferences") -> None:
        self.replies.append(ConversationReply(message, ResponseKind.READY, summary))

    async def converse(
        self, history: Sequence[Turn], context: str, forced: bool, *, plan_kind: PlanKind
    ) -> ConversationReply:
        self.converse_calls.append((list(history), context, forced))
        item = self.replies.pop(0) if self.replies else ConversationReply("Tell me more?", ResponseKind.QUESTION)
        if isinstance(item, Exception):
            raise item
        return item

    async def generate(self, prompt: str, *, plan_kind: PlanKind) -> str:
        self.generate_calls.append(prompt)
        if self.before_generate is not None:
            await self.before_generate()
        queue = self.generations_by_kind.get(plan_kind) or self.generations
        if not queue:
            raise AssertionError("unexpected generate call")
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def diet_payload(days: int = 7, *, meals: Sequence[str] = ("breakfast", "lunch", "dinner", "snack")) -> dict[str, Any]:
    def meal(kind: str) -> dict[str, Any]:
        return {
            "type": kind,
            "recipe": {
                "name": f"{kind.title()} bowl",
                "ingredients": [{"name": "oats", "amount": "50g"}],
                "instructions": ["Mix", "Serve"],
                "prep_time": 10,
            },
            "nutrition": {"calories": 400, "protein": 20, "carbs": 50, "fat": 12},
        }

    return {
        "total_days": days,
        "daily_plans": [
            {"day": index + 1, "date": f"2026-10-{12 + index:02d}", "total_calories": 1800, "meals": [meal(kind) for kind in meals]}
            for index in range(days)
        ],
        "summary": {"avg_calories_per_day": 1800},
    }


def workout_payload(days: int = 7, *, rest_days: Sequence[int] = (3, 7)) -> dict[str, Any]:
    plan_days = []
    for number in range(1, days + 1):
        if number in rest_days:
            plan_days.append({"day": number, "is_rest_day": True, "exercises": []})
        else:
            plan_days.append(
                {
                    "day": number,
                    "is_rest_day": False,
                    "focus": ["legs"],
                    "exercises": [
                        {"name": "Squat", "sets": 3, "reps": "10", "rest_seconds": 60},
                        {"name": "Plank", "duration_seconds": 45},
                    ],
                }
            )
    return {"title": "Strength Week", "total_days": days, "days": plan_days}


@pytest.fixture
def clock() -> FixedClock:
    # Wednesday
    return FixedClock(datetime(2026, 10, 14, 9, 30, tzinfo=UTC))


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def store(tmp_path: Path) -> FileDocumentStore:
    return FileDocumentStore(tmp_path / "state_store")


@pytest.fixture
def notifier() -> LoggingNotificationScheduler:
    return LoggingNotificationScheduler()


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings()


@pytest.fixture
def events() -> tuple[EventChannel, list[Any]]:
    channel = EventChannel()
    received: list[Any] = []
    channel.subscribe(received.append)
    return channel, received


@pytest.fixture
def engine(
    store: FileDocumentStore,
    backend: ScriptedBackend,
    settings: RuntimeSettings,
    clock: FixedClock,
    notifier: LoggingNotificationScheduler,
    events: tuple[EventChannel, list[Any]],
) -> PlanGenerationEngine:
    return PlanGenerationEngine(
        store=store,
        backend=backend,
        settings=settings,
        clock=clock,
        notifier=notifier,
        events=events[0],
    )


def as_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload)
