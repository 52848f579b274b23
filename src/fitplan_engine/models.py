from __future__ import annotations

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import IllegalPhaseTransitionError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3


class PlanKind(str, Enum):
    DIET = "diet"
    WORKOUT_HOME = "workoutHome"
    WORKOUT_GYM = "workoutGym"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def notification_title(self) -> str:
        return _NOTIFICATION_TITLES[self]

    @property
    def is_workout(self) -> bool:
        return self is not PlanKind.DIET


_DISPLAY_NAMES = {
    PlanKind.DIET: "Meal Plan",
    PlanKind.WORKOUT_HOME: "Home Workout Plan",
    PlanKind.WORKOUT_GYM: "Gym Workout Plan",
}

_NOTIFICATION_TITLES = {
    PlanKind.DIET: "Your Meal Plan is Ready!",
    PlanKind.WORKOUT_HOME: "Your Home Workout is Ready!",
    PlanKind.WORKOUT_GYM: "Your Gym Workout is Ready!",
}


class GenerationPhase(str, Enum):
    CONVERSATION = "conversation"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationPhase.COMPLETED, GenerationPhase.FAILED)


PHASE_TRANSITIONS: dict[GenerationPhase, set[GenerationPhase]] = {
    GenerationPhase.CONVERSATION: {GenerationPhase.GENERATING, GenerationPhase.FAILED},
    GenerationPhase.GENERATING: {GenerationPhase.COMPLETED, GenerationPhase.FAILED},
    GenerationPhase.COMPLETED: set(),
    GenerationPhase.FAILED: set(),
}


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ResponseKind(str, Enum):
    QUESTION = "question"
    READY = "ready"


class PlanGenerationStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL_SUCCESS = "partialSuccess"


def new_record_id() -> str:
    return str(uuid.uuid4())


def plan_id_for(generation_id: str) -> str:
    """Derive the stable plan document id for a generation record."""
    return f"plan-{generation_id}"


class Turn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: TurnRole
    text: str
    response_kind: ResponseKind | None = None
    timestamp: datetime


class GenerationRecord(BaseModel):
    """Persisted unit of work for one conversation and its generation.

    Schema history:
        v1: no ``message_count`` or ``schema_version``; owner stored as ``user_id``
            and kind as ``plan_type``.
        v2: adds ``message_count`` and ``schema_version``.
        v3: adds ``ready_summary``, ``is_archived`` and ``archived_at``.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    owner_id: str
    plan_kind: PlanKind
    conversation_history: list[Turn] = Field(default_factory=list)
    collected_context: str = ""
    phase: GenerationPhase = GenerationPhase.CONVERSATION
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    result_plan_id: str | None = None
    error_message: str | None = None
    notification_sent: bool = False
    message_count: int = 0
    ready_summary: str | None = None
    is_archived: bool = False
    archived_at: datetime | None = None
    schema_version: int = SCHEMA_VERSION

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if "schema_version" in data:
            version = data["schema_version"]
        elif "user_id" in data or "plan_type" in data:
            version = 1
        else:
            # Freshly constructed in-process record.
            return data
        if not isinstance(version, int) or version >= SCHEMA_VERSION:
            return data
        upgraded = dict(data)
        if "owner_id" not in upgraded and "user_id" in upgraded:
            upgraded["owner_id"] = upgraded.pop("user_id")
        if "plan_kind" not in upgraded and "plan_type" in upgraded:
            upgraded["plan_kind"] = upgraded.pop("plan_type")
        if "message_count" not in upgraded:
            history = upgraded.get("conversation_history") or []
            upgraded["message_count"] = sum(
                1 for turn in history if isinstance(turn, dict) and turn.get("role") == TurnRole.USER.value
            )
        upgraded.setdefault("updated_at", upgraded.get("created_at"))
        upgraded["schema_version"] = SCHEMA_VERSION
        logger.warning(
            "Upgraded generation record %s from schema v%d to v%d",
            upgraded.get("id"),
            version,
            SCHEMA_VERSION,
        )
        return upgraded

    @model_validator(mode="after")
    def _check_terminal_fields(self) -> "GenerationRecord":
        if self.phase is GenerationPhase.COMPLETED and (self.result_plan_id is None or self.completed_at is None):
            raise ValueError("completed generation record requires result_plan_id and completed_at")
        if self.phase is GenerationPhase.FAILED and self.error_message is None:
            raise ValueError("failed generation record requires error_message")
        return self

    @property
    def user_turn_count(self) -> int:
        return sum(1 for turn in self.conversation_history if turn.role is TurnRole.USER)

    @property
    def last_assistant_turn(self) -> Turn | None:
        for turn in reversed(self.conversation_history):
            if turn.role is TurnRole.ASSISTANT:
                return turn
        return None

    @property
    def is_ready(self) -> bool:
        """True when the latest assistant turn signalled readiness."""
        turn = self.last_assistant_turn
        return turn is not None and turn.response_kind is ResponseKind.READY

    def append_user_turn(self, text: str, *, now: datetime) -> None:
        self.conversation_history.append(Turn(role=TurnRole.USER, text=text, timestamp=now))
        self.message_count += 1
        self.updated_at = now

    def append_assistant_turn(self, text: str, kind: ResponseKind, *, now: datetime) -> None:
        self.conversation_history.append(
            Turn(role=TurnRole.ASSISTANT, text=text, response_kind=kind, timestamp=now)
        )
        self.updated_at = now

    def transition_to(self, new_phase: GenerationPhase, *, now: datetime) -> GenerationPhase:
        """Move to ``new_phase`` if allowed and return the previous phase.

        Raises:
            IllegalPhaseTransitionError: If the transition would regress or leave a terminal phase.
        """
        self._require_transition(new_phase)
        previous = self.phase
        self.phase = new_phase
        self.updated_at = now
        return previous

    def _require_transition(self, new_phase: GenerationPhase) -> None:
        if new_phase not in PHASE_TRANSITIONS[self.phase]:
            raise IllegalPhaseTransitionError(
                f"Illegal generation phase transition for {self.id}: {self.phase.value} -> {new_phase.value}",
                record_id=self.id,
            )

    def mark_completed(self, plan_id: str, *, now: datetime) -> GenerationPhase:
        self._require_transition(GenerationPhase.COMPLETED)
        self.result_plan_id = plan_id
        self.completed_at = now
        return self.transition_to(GenerationPhase.COMPLETED, now=now)

    def mark_failed(self, message: str, *, now: datetime) -> GenerationPhase:
        self._require_transition(GenerationPhase.FAILED)
        self.error_message = message
        return self.transition_to(GenerationPhase.FAILED, now=now)

    def mark_archived(self, *, now: datetime) -> None:
        # updated_at is left untouched so archiving changes only the archive fields.
        self.is_archived = True
        self.archived_at = now


class PlanDocument(BaseModel):
    """Generated weekly plan as stored in the plan collection."""

    model_config = ConfigDict(extra="ignore")

    id: str
    owner_id: str
    plan_kind: PlanKind
    generation_id: str
    title: str
    preferences: str = ""
    payload: dict[str, Any]
    generation_status: PlanGenerationStatus = PlanGenerationStatus.COMPLETED
    has_filled_data: bool = False
    filled_data_details: list[str] = Field(default_factory=list)
    completeness_ratio: float = 1.0
    content_fingerprint: str = ""
    week_start_date: datetime
    week_end_date: datetime
    created_at: datetime
    last_updated: datetime
    is_archived: bool = False
    archived_at: datetime | None = None

    @property
    def is_partial(self) -> bool:
        return self.generation_status is PlanGenerationStatus.PARTIAL_SUCCESS

    def mark_archived(self, *, now: datetime) -> None:
        self.is_archived = True
        self.archived_at = now
