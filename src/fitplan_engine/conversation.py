from __future__ import annotations

import logging
from dataclasses import dataclass

from .backend import ConversationReply, GenerationBackend
from .errors import (
    ConversationLimitReachedError,
    IllegalPhaseTransitionError,
    InputInvalidError,
    NotAuthenticatedError,
)
from .events import EventChannel, PhaseChanged
from .flow import CancellationToken, FlowRegistry
from .models import SCHEMA_VERSION, GenerationPhase, GenerationRecord, PlanKind, ResponseKind, new_record_id
from .settings import RuntimeSettings
from .state_store import GenerationRepository
from .utils import Clock, accumulate_context

logger = logging.getLogger(__name__)

MORE_QUESTIONS_TEXT = "I'd like to provide more details about my preferences."
CANCELLED_MESSAGE = "Generation was cancelled."


@dataclass(frozen=True)
class ConversationTurnResult:
    record: GenerationRecord
    reply: ConversationReply
    forced: bool

    @property
    def is_ready(self) -> bool:
        return self.reply.response_kind is ResponseKind.READY


def require_owner(owner_id: str | None) -> str:
    """Reject a missing owner before any state is touched."""
    if owner_id is None or not str(owner_id).strip():
        raise NotAuthenticatedError("operation requires an owner id")
    return str(owner_id).strip()


def require_text(text: str | None) -> str:
    if text is None or not text.strip():
        raise InputInvalidError("message text is empty")
    return text.strip()


class ConversationDriver:
    """Bounded multi-turn exchange that gathers context before generation.

    Only backend-acknowledged state is persisted: user turns are kept in a
    working copy until the backend reply arrives, so a failed call leaves the
    stored record exactly as it was.
    """

    def __init__(
        self,
        *,
        generations: GenerationRepository,
        backend: GenerationBackend,
        clock: Clock,
        settings: RuntimeSettings,
        flows: FlowRegistry,
        events: EventChannel,
    ) -> None:
        self.generations = generations
        self.backend = backend
        self.clock = clock
        self.settings = settings
        self.flows = flows
        self.events = events

    def is_forced(self, record: GenerationRecord) -> bool:
        return record.message_count >= self.settings.max_messages

    async def start_conversation(self, owner_id: str, plan_kind: PlanKind, initial_text: str) -> ConversationTurnResult:
        """Create a record from the user's first request and get the first reply.

        Raises:
            NotAuthenticatedError: If ``owner_id`` is empty.
            InputInvalidError: If ``initial_text`` is empty or whitespace.
            FlowAlreadyActiveError: If a flow for (owner, kind) is already active.
            BackendUnavailableError: If the backend call fails; nothing is persisted.
        """
        owner_id = require_owner(owner_id)
        text = require_text(initial_text)
        plan_kind = PlanKind(plan_kind)

        record_id = new_record_id()
        token = self.flows.claim(owner_id, plan_kind, record_id)
        now = self.clock.now()
        record = GenerationRecord(
            id=record_id,
            owner_id=owner_id,
            plan_kind=plan_kind,
            created_at=now,
            updated_at=now,
            schema_version=SCHEMA_VERSION,
        )
        record.append_user_turn(text, now=now)
        record.collected_context = accumulate_context("", text)
        logger.info("Starting %s conversation %s", plan_kind.value, record_id)
        try:
            return await self._exchange(record, token)
        except BaseException:
            self.flows.release(owner_id, plan_kind, record_id)
            raise

    async def send_message(self, owner_id: str, record_id: str, text: str) -> ConversationTurnResult:
        """Append a user message, ask the backend, and persist both turns.

        Raises:
            NotAuthenticatedError: If ``owner_id`` is empty.
            InputInvalidError: If ``text`` is empty or whitespace.
            RecordNotFoundError: If the record does not exist for this owner.
            ConversationLimitReachedError: If the message budget is already spent.
            BackendUnavailableError: If the backend call fails; the stored record is unchanged.
        """
        owner_id = require_owner(owner_id)
        message = require_text(text)
        record = await self._load_open_conversation(owner_id, record_id)
        record.append_user_turn(message, now=self.clock.now())
        record.collected_context = accumulate_context(record.collected_context, message)
        token = self.flows.claim(owner_id, record.plan_kind, record.id)
        return await self._exchange(record, token)

    async def request_more_questions(self, owner_id: str, record_id: str) -> ConversationTurnResult:
        """Decline an early ``ready`` and keep the conversation going.

        The synthetic turn counts as a user message but adds nothing to the
        collected context.
        """
        owner_id = require_owner(owner_id)
        record = await self._load_open_conversation(owner_id, record_id)
        record.append_user_turn(MORE_QUESTIONS_TEXT, now=self.clock.now())
        record.ready_summary = None
        token = self.flows.claim(owner_id, record.plan_kind, record.id)
        return await self._exchange(record, token)

    async def start_over(self, owner_id: str, plan_kind: PlanKind) -> str | None:
        """Discard the active flow for (owner, kind) and fail its record.

        An in-flight backend call is not interrupted; its response is discarded
        when it arrives.  Returns the cancelled record id, if any.
        """
        owner_id = require_owner(owner_id)
        plan_kind = PlanKind(plan_kind)
        record_id = self.flows.cancel(owner_id, plan_kind)
        if record_id is None:
            latest = await self.active_conversation(owner_id, plan_kind)
            if latest is None:
                return None
            record_id = latest.id
        async with self.flows.lock(record_id):
            record = await self.generations.get(record_id)
            if record is None or record.phase.is_terminal:
                return record_id
            previous = record.mark_failed(CANCELLED_MESSAGE, now=self.clock.now())
            await self.generations.save(record)
        logger.info("Started over %s flow; record %s marked failed", plan_kind.value, record_id)
        self.events.emit(PhaseChanged(record_id, owner_id, plan_kind, previous, GenerationPhase.FAILED))
        return record_id

    async def active_conversation(self, owner_id: str, plan_kind: PlanKind) -> GenerationRecord | None:
        """Return the newest open conversation for (owner, kind), e.g. to restore a UI after restart."""
        owner_id = require_owner(owner_id)
        records = await self.generations.list_for_owner(
            owner_id,
            phase=GenerationPhase.CONVERSATION,
            plan_kind=PlanKind(plan_kind),
            include_archived=False,
        )
        return records[-1] if records else None

    async def _load_open_conversation(self, owner_id: str, record_id: str) -> GenerationRecord:
        record = await self.generations.require(owner_id, record_id)
        if record.phase is not GenerationPhase.CONVERSATION:
            raise IllegalPhaseTransitionError(
                f"record {record_id} is {record.phase.value}; it no longer accepts messages",
                record_id=record_id,
            )
        if self.is_forced(record):
            raise ConversationLimitReachedError(
                f"record {record_id} already has {record.message_count} messages",
                record_id=record_id,
            )
        return record

    async def _exchange(self, record: GenerationRecord, token: CancellationToken) -> ConversationTurnResult:
        forced = self.is_forced(record)
        with self.flows.backend_call(record.id):
            reply = await self.backend.converse(
                list(record.conversation_history),
                record.collected_context,
                forced,
                plan_kind=record.plan_kind,
            )
            if forced and reply.response_kind is not ResponseKind.READY:
                reply = ConversationReply(reply.message, ResponseKind.READY, reply.summary)
            async with self.flows.lock(record.id):
                self.flows.ensure_current(record.owner_id, record.plan_kind, token)
                record.append_assistant_turn(reply.message, reply.response_kind, now=self.clock.now())
                if reply.response_kind is ResponseKind.READY:
                    record.ready_summary = reply.summary or reply.message
                await self.generations.save(record)
        logger.info(
            "Record %s turn %d/%d: %s%s",
            record.id,
            record.message_count,
            self.settings.max_messages,
            reply.response_kind.value,
            " (forced)" if forced else "",
        )
        return ConversationTurnResult(record=record, reply=reply, forced=forced)
