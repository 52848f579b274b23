from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Union

from .models import GenerationPhase, PlanKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseChanged:
    record_id: str
    owner_id: str
    plan_kind: PlanKind
    old_phase: GenerationPhase
    new_phase: GenerationPhase


@dataclass(frozen=True)
class GenerationCompleted:
    plan_kind: PlanKind
    result_plan_id: str
    generation_id: str
    owner_id: str
    partial: bool = False


EngineEvent = Union[PhaseChanged, GenerationCompleted]
Subscriber = Callable[[EngineEvent], None]


class EventChannel:
    """Synchronous fan-out of engine events to subscribers.

    A failing subscriber is logged and skipped; it never affects the engine
    or the remaining subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: EngineEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:  # noqa: BLE001 - subscriber faults are isolated
                logger.exception("Event subscriber failed for %s", type(event).__name__)
