from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .conversation import require_owner
from .errors import FlowAlreadyActiveError, PlanGenerationError
from .flow import FlowRegistry
from .models import GenerationPhase, GenerationRecord, PlanKind
from .orchestrator import GenerationOrchestrator
from .state_store import GenerationRepository, PlanRepository

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    regenerated: list[str] = field(default_factory=list)
    finalized_from_plan: list[str] = field(default_factory=list)
    notified: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def touched(self) -> bool:
        return bool(self.regenerated or self.finalized_from_plan or self.notified or self.failed)


class RecoverySweep:
    """Resume or finalize interrupted work for one owner at session start."""

    def __init__(
        self,
        *,
        generations: GenerationRepository,
        plans: PlanRepository,
        orchestrator: GenerationOrchestrator,
        flows: FlowRegistry,
    ) -> None:
        self.generations = generations
        self.plans = plans
        self.orchestrator = orchestrator
        self.flows = flows

    async def recover_pending_work(self, owner_id: str) -> RecoveryReport:
        """Regenerate interrupted records, then re-run any missed completion hand-offs.

        Running the sweep twice in a row is a no-op the second time.
        """
        owner_id = require_owner(owner_id)
        report = RecoveryReport()

        generating = await self.generations.list_for_owner(owner_id, phase=GenerationPhase.GENERATING)
        selected = self._select_per_kind(generating, report)
        if selected:
            logger.info("Recovering %d interrupted generation(s) for owner", len(selected))
            outcomes = await asyncio.gather(
                *(self._regenerate(record) for record in selected),
                return_exceptions=True,
            )
            for record, outcome in zip(selected, outcomes):
                self._record_outcome(record, outcome, report)

        pending = await self.generations.list_for_owner(owner_id, phase=GenerationPhase.COMPLETED)
        for record in pending:
            if record.notification_sent or record.result_plan_id is None:
                continue
            if self.flows.is_active(record.owner_id, record.plan_kind):
                # The live flow is still finishing its own hand-off.
                report.skipped.append(record.id)
                continue
            plan = await self.plans.get(record.result_plan_id)
            if plan is None:
                logger.error("Completed record %s references missing plan %s", record.id, record.result_plan_id)
                report.failed.append(record.id)
                continue
            if await self.orchestrator.complete_handoff(record, plan):
                report.notified.append(record.id)

        if report.touched:
            logger.info(
                "Recovery sweep: regenerated=%d finalized=%d notified=%d skipped=%d failed=%d",
                len(report.regenerated),
                len(report.finalized_from_plan),
                len(report.notified),
                len(report.skipped),
                len(report.failed),
            )
        return report

    def _select_per_kind(self, records: list[GenerationRecord], report: RecoveryReport) -> list[GenerationRecord]:
        """Pick at most one record per plan kind: the most recently updated one."""
        newest: dict[PlanKind, GenerationRecord] = {}
        for record in records:
            if self.flows.is_active(record.owner_id, record.plan_kind):
                logger.info("Skipping record %s: a %s flow is active", record.id, record.plan_kind.value)
                report.skipped.append(record.id)
                continue
            current = newest.get(record.plan_kind)
            if current is None or record.updated_at > current.updated_at:
                if current is not None:
                    report.skipped.append(current.id)
                newest[record.plan_kind] = record
            else:
                report.skipped.append(record.id)
        return list(newest.values())

    async def _regenerate(self, record: GenerationRecord) -> str:
        token = self.flows.claim(record.owner_id, record.plan_kind, record.id)
        outcome = await self.orchestrator.resume_generation(record, token)
        return "finalized" if outcome.reused_existing_plan else "regenerated"

    @staticmethod
    def _record_outcome(record: GenerationRecord, outcome: object, report: RecoveryReport) -> None:
        if outcome == "finalized":
            report.finalized_from_plan.append(record.id)
        elif outcome == "regenerated":
            report.regenerated.append(record.id)
        elif isinstance(outcome, FlowAlreadyActiveError):
            report.skipped.append(record.id)
        elif isinstance(outcome, PlanGenerationError):
            logger.warning("Recovery of record %s failed: %s", record.id, outcome.message)
            report.failed.append(record.id)
        elif isinstance(outcome, Exception):
            logger.error("Recovery of record %s raised %r", record.id, outcome, exc_info=outcome)
            report.failed.append(record.id)
        elif isinstance(outcome, BaseException):
            raise outcome
