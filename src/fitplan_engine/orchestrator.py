from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .backend import GenerationBackend
from .canonical import content_fingerprint
from .conversation import require_owner
from .errors import (
    ConversationNotReadyError,
    IllegalPhaseTransitionError,
    MalformedResponseError,
    PlanGenerationError,
    ValidationRejectedError,
)
from .events import EventChannel, GenerationCompleted, PhaseChanged
from .flow import CancellationToken, FlowRegistry
from .models import (
    GenerationPhase,
    GenerationRecord,
    PlanDocument,
    PlanGenerationStatus,
    plan_id_for,
)
from .notifications import NotificationScheduler
from .prompts import generation_prompt
from .settings import RuntimeSettings
from .state_store import GenerationRepository, PlanRepository
from .utils import Clock, week_bounds
from .validation import PlanValidator, ValidationResult, Verdict, extract_json_block

logger = logging.getLogger(__name__)

GENERIC_MALFORMED_MESSAGE = "The generated plan could not be read."


class GenerationState(TypedDict, total=False):
    record: GenerationRecord
    token: CancellationToken
    raw_text: str
    payload: dict[str, Any]
    validation: ValidationResult
    plan: PlanDocument
    failure: PlanGenerationError


@dataclass
class GenerationOutcome:
    record: GenerationRecord
    plan: PlanDocument | None = None
    validation: ValidationResult | None = None
    reused_existing_plan: bool = False

    @property
    def partial(self) -> bool:
        return self.plan is not None and self.plan.is_partial


class GenerationOrchestrator:
    """Owns the Generating phase: generate -> extract -> validate -> complete/fail.

    The phase change to ``generating`` is persisted before the backend is
    called.  A transport failure leaves the record in ``generating`` so a
    caller or the recovery sweep can retry; malformed or rejected output
    fails the record durably.
    """

    def __init__(
        self,
        *,
        generations: GenerationRepository,
        plans: PlanRepository,
        backend: GenerationBackend,
        clock: Clock,
        settings: RuntimeSettings,
        flows: FlowRegistry,
        events: EventChannel,
        notifier: NotificationScheduler,
        validator: PlanValidator | None = None,
    ) -> None:
        self.generations = generations
        self.plans = plans
        self.backend = backend
        self.clock = clock
        self.settings = settings
        self.flows = flows
        self.events = events
        self.notifier = notifier
        self.validator = validator or PlanValidator(
            expected_days=settings.expected_plan_days,
            partial_success_threshold=settings.partial_success_threshold,
        )
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(GenerationState)
        graph.add_node("generate", self._generate)
        graph.add_node("extract", self._extract)
        graph.add_node("validate", self._validate)
        graph.add_node("complete", self._complete)
        graph.add_node("fail", self._fail)

        graph.add_edge(START, "generate")
        graph.add_conditional_edges("generate", self._route_on_failure("extract"), {"extract": "extract", "fail": "fail"})
        graph.add_conditional_edges("extract", self._route_on_failure("validate"), {"validate": "validate", "fail": "fail"})
        graph.add_conditional_edges("validate", self._route_on_failure("complete"), {"complete": "complete", "fail": "fail"})
        graph.add_edge("complete", END)
        graph.add_edge("fail", END)
        return graph

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def begin_generation(self, owner_id: str, record_id: str) -> GenerationOutcome:
        """Enter (or retry) the Generating phase for a record.

        Raises:
            ConversationNotReadyError: If the conversation is neither ready nor at the message cap.
            IllegalPhaseTransitionError: If the record already reached a terminal phase.
            BackendUnavailableError: If the backend is unreachable; the record stays ``generating``.
            MalformedResponseError: If no plan could be extracted; the record is ``failed``.
            ValidationRejectedError: If the plan was rejected; the record is ``failed``.
        """
        owner_id = require_owner(owner_id)
        record = await self.generations.require(owner_id, record_id)
        if record.phase.is_terminal:
            raise IllegalPhaseTransitionError(
                f"record {record_id} is already {record.phase.value}", record_id=record_id
            )
        if record.phase is GenerationPhase.CONVERSATION:
            forced = record.message_count >= self.settings.max_messages
            if not (record.is_ready or forced):
                raise ConversationNotReadyError(
                    f"record {record_id} has not been marked ready by the backend", record_id=record_id
                )
        token = self.flows.claim(owner_id, record.plan_kind, record.id)
        return await self.resume_generation(record, token)

    async def resume_generation(self, record: GenerationRecord, token: CancellationToken) -> GenerationOutcome:
        """Run the Generating-phase logic for a record whose flow is already claimed.

        If a plan already exists at the record's stable plan id the record is
        completed from it without calling the backend.
        """
        try:
            with self.flows.backend_call(record.id):
                async with self.flows.lock(record.id):
                    self.flows.ensure_current(record.owner_id, record.plan_kind, token)
                    if record.phase is GenerationPhase.CONVERSATION:
                        previous = record.transition_to(GenerationPhase.GENERATING, now=self.clock.now())
                        await self.generations.save(record)
                        self._emit_phase(record, previous)
                        logger.info("Record %s entered generating", record.id)

                existing = await self.plans.get(plan_id_for(record.id))
                if existing is not None:
                    logger.info("Plan %s already stored; completing record %s from it", existing.id, record.id)
                    await self._finalize(record, existing, token)
                    return GenerationOutcome(record=record, plan=existing, reused_existing_plan=True)

                final_state = await self.graph.ainvoke({"record": record, "token": token})
                record = final_state.get("record", record)
        finally:
            # Terminal or awaiting retry, the slot is free for the next begin or sweep.
            self.flows.release(record.owner_id, record.plan_kind, record.id)

        failure = final_state.get("failure")
        if failure is not None:
            raise failure
        return GenerationOutcome(
            record=record,
            plan=final_state.get("plan"),
            validation=final_state.get("validation"),
        )

    async def complete_handoff(self, record: GenerationRecord, plan: PlanDocument) -> bool:
        """Mark the notification as sent, then emit the completion event and notify.

        The flag is claimed under the record lock against the stored copy, so
        concurrent callers (a live flow and a recovery sweep) hand off at most
        once.  Returns True when this call performed the hand-off.
        """
        async with self.flows.lock(record.id):
            stored = await self.generations.get(record.id)
            if stored is None or stored.notification_sent:
                record.notification_sent = True
                return False
            stored.notification_sent = True
            stored.updated_at = self.clock.now()
            await self.generations.save(stored)
            record.notification_sent = True
            record.updated_at = stored.updated_at

        self.events.emit(
            GenerationCompleted(
                plan_kind=record.plan_kind,
                result_plan_id=plan.id,
                generation_id=record.id,
                owner_id=record.owner_id,
                partial=plan.is_partial,
            )
        )
        try:
            await self.notifier.schedule_completion_notification(record.plan_kind, record.plan_kind.notification_title)
        except Exception:  # noqa: BLE001 - notifications are best-effort
            logger.exception("Notification scheduling failed for record %s", record.id)
        logger.info("Hand-off complete for record %s (plan %s)", record.id, plan.id)
        return True

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    @staticmethod
    def _route_on_failure(next_node: str):  # noqa: ANN205
        def route(state: GenerationState) -> str:
            return "fail" if state.get("failure") is not None else next_node

        return route

    async def _generate(self, state: GenerationState) -> dict[str, Any]:
        record = state["record"]
        prompt = generation_prompt(
            record.plan_kind,
            record.collected_context,
            expected_days=self.settings.expected_plan_days,
            summary=record.ready_summary,
        )
        logger.info("Requesting %s generation for record %s", record.plan_kind.value, record.id)
        try:
            raw_text = await self.backend.generate(prompt, plan_kind=record.plan_kind)
        except MalformedResponseError as exc:
            logger.error("Generation for record %s returned nothing usable: %s", record.id, exc)
            return {"failure": MalformedResponseError(GENERIC_MALFORMED_MESSAGE, record_id=record.id)}
        return {"raw_text": raw_text}

    async def _extract(self, state: GenerationState) -> dict[str, Any]:
        record = state["record"]
        try:
            payload = extract_json_block(state["raw_text"])
        except MalformedResponseError as exc:
            logger.error("Could not extract a plan for record %s: %s", record.id, exc)
            return {"failure": MalformedResponseError(GENERIC_MALFORMED_MESSAGE, record_id=record.id)}
        return {"payload": payload}

    async def _validate(self, state: GenerationState) -> dict[str, Any]:
        record = state["record"]
        result = self.validator.validate(record.plan_kind, state["payload"])
        logger.info(
            "Record %s validation: %s (%.0f%% complete, %d issues)",
            record.id,
            result.verdict.value,
            result.completeness_ratio * 100,
            len(result.issues),
        )
        if result.verdict is Verdict.REJECT:
            message = result.failure_message(self.settings.failure_summary_limit)
            return {
                "validation": result,
                "failure": ValidationRejectedError(message, record_id=record.id, context={"ratio": result.completeness_ratio}),
            }
        return {"validation": result}

    async def _complete(self, state: GenerationState) -> dict[str, Any]:
        record = state["record"]
        plan = self._build_plan(record, state["payload"], state["validation"])
        await self._finalize(record, plan, state["token"], store_plan=True)
        return {"record": record, "plan": plan}

    async def _fail(self, state: GenerationState) -> dict[str, Any]:
        record = state["record"]
        token = state["token"]
        failure = state["failure"]
        async with self.flows.lock(record.id):
            self.flows.ensure_current(record.owner_id, record.plan_kind, token)
            previous = record.mark_failed(failure.message, now=self.clock.now())
            await self.generations.save(record)
        self._emit_phase(record, previous)
        logger.warning("Record %s failed: %s", record.id, failure.message)
        return {"record": record}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_plan(self, record: GenerationRecord, payload: dict[str, Any], result: ValidationResult) -> PlanDocument:
        now = self.clock.now()
        week_start, week_end = week_bounds(now)
        partial = result.verdict is Verdict.PARTIAL_ACCEPT
        details = result.disclosure_details(self.settings.disclosure_limit) if partial else []
        title = payload.get("title")
        if not isinstance(title, str) or not title.strip():
            title = f"{record.plan_kind.display_name} - week of {week_start:%b %d}"
        return PlanDocument(
            id=plan_id_for(record.id),
            owner_id=record.owner_id,
            plan_kind=record.plan_kind,
            generation_id=record.id,
            title=title.strip(),
            preferences=record.collected_context,
            payload=payload,
            generation_status=PlanGenerationStatus.PARTIAL_SUCCESS if partial else PlanGenerationStatus.COMPLETED,
            has_filled_data=partial,
            filled_data_details=details,
            completeness_ratio=result.completeness_ratio,
            content_fingerprint=content_fingerprint(payload),
            week_start_date=week_start,
            week_end_date=week_end,
            created_at=now,
            last_updated=now,
        )

    async def _finalize(
        self,
        record: GenerationRecord,
        plan: PlanDocument,
        token: CancellationToken,
        *,
        store_plan: bool = False,
    ) -> None:
        """Persist the plan (if new), complete the record, then run the hand-off."""
        async with self.flows.lock(record.id):
            self.flows.ensure_current(record.owner_id, record.plan_kind, token)
            if store_plan:
                await self.plans.save(plan)
            previous = record.mark_completed(plan.id, now=self.clock.now())
            await self.generations.save(record)
        self._emit_phase(record, previous)
        logger.info("Record %s completed with plan %s", record.id, plan.id)
        await self.complete_handoff(record, plan)

    def _emit_phase(self, record: GenerationRecord, previous: GenerationPhase) -> None:
        self.events.emit(PhaseChanged(record.id, record.owner_id, record.plan_kind, previous, record.phase))
