from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from .conversation import require_owner
from .flow import FlowRegistry
from .models import GenerationPhase
from .settings import RuntimeSettings
from .state_store import GenerationRepository, PlanRepository
from .utils import Clock

logger = logging.getLogger(__name__)


@dataclass
class ArchiveReport:
    archived_plan_ids: list[str] = field(default_factory=list)
    archived_generation_ids: list[str] = field(default_factory=list)


class Housekeeping:
    """Non-destructive archival of plans whose week has elapsed.

    Archiving only sets ``is_archived`` and ``archived_at``; nothing is deleted.
    """

    def __init__(
        self,
        *,
        generations: GenerationRepository,
        plans: PlanRepository,
        clock: Clock,
        settings: RuntimeSettings,
        flows: FlowRegistry,
    ) -> None:
        self.generations = generations
        self.plans = plans
        self.clock = clock
        self.settings = settings
        self.flows = flows

    async def archive_stale(self, owner_id: str) -> ArchiveReport:
        """Archive elapsed plans with their generation records, and old failed records."""
        owner_id = require_owner(owner_id)
        now = self.clock.now()
        report = ArchiveReport()

        for plan in await self.plans.list_for_owner(owner_id):
            if plan.is_archived or plan.week_end_date >= now:
                continue
            plan.mark_archived(now=now)
            await self.plans.save(plan)
            report.archived_plan_ids.append(plan.id)
            async with self.flows.lock(plan.generation_id):
                record = await self.generations.get(plan.generation_id)
                if record is not None and not record.is_archived:
                    record.mark_archived(now=now)
                    await self.generations.save(record)
                    report.archived_generation_ids.append(record.id)

        cutoff = now - timedelta(days=self.settings.stale_generation_days)
        failed = await self.generations.list_for_owner(
            owner_id, phase=GenerationPhase.FAILED, include_archived=False
        )
        for record in failed:
            if record.updated_at >= cutoff:
                continue
            async with self.flows.lock(record.id):
                record.mark_archived(now=now)
                await self.generations.save(record)
            report.archived_generation_ids.append(record.id)

        if report.archived_plan_ids or report.archived_generation_ids:
            logger.info(
                "Archived %d plan(s) and %d generation record(s)",
                len(report.archived_plan_ids),
                len(report.archived_generation_ids),
            )
        return report
