from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

from .backend import ChatModelGenerationBackend, GenerationBackend
from .conversation import ConversationDriver, ConversationTurnResult, require_owner
from .events import EventChannel, Subscriber
from .flow import FlowRegistry
from .housekeeping import ArchiveReport, Housekeeping
from .models import GenerationRecord, PlanDocument, PlanKind
from .notifications import LoggingNotificationScheduler, NotificationScheduler, WebhookNotificationScheduler
from .orchestrator import GenerationOrchestrator, GenerationOutcome
from .recovery import RecoveryReport, RecoverySweep
from .settings import RuntimeSettings
from .state_store import DocumentStore, FileDocumentStore, GenerationRepository, PlanRepository
from .utils import Clock, SystemClock

logger = logging.getLogger(__name__)


class PlanGenerationEngine:
    """Single entry point wiring the driver, orchestrator, recovery and housekeeping.

    Every operation takes an explicit ``owner_id``; there is no ambient session.
    """

    def __init__(
        self,
        *,
        store: DocumentStore,
        backend: GenerationBackend,
        settings: RuntimeSettings | None = None,
        clock: Clock | None = None,
        notifier: NotificationScheduler | None = None,
        events: EventChannel | None = None,
    ) -> None:
        self.settings = settings or RuntimeSettings()
        self.clock = clock or SystemClock()
        self.events = events or EventChannel()
        self.notifier = notifier or LoggingNotificationScheduler()
        self.flows = FlowRegistry()
        self.generations = GenerationRepository(store)
        self.plans = PlanRepository(store)
        self.driver = ConversationDriver(
            generations=self.generations,
            backend=backend,
            clock=self.clock,
            settings=self.settings,
            flows=self.flows,
            events=self.events,
        )
        self.orchestrator = GenerationOrchestrator(
            generations=self.generations,
            plans=self.plans,
            backend=backend,
            clock=self.clock,
            settings=self.settings,
            flows=self.flows,
            events=self.events,
            notifier=self.notifier,
        )
        self.recovery = RecoverySweep(
            generations=self.generations,
            plans=self.plans,
            orchestrator=self.orchestrator,
            flows=self.flows,
        )
        self.housekeeping = Housekeeping(
            generations=self.generations,
            plans=self.plans,
            clock=self.clock,
            settings=self.settings,
            flows=self.flows,
        )

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "PlanGenerationEngine":
        """Build an engine backed by the filesystem store and OpenAI chat models."""
        root = settings.state_store_path(repo_root if repo_root is not None else Path.cwd())
        notifier: NotificationScheduler
        if settings.notification_webhook_url:
            notifier = WebhookNotificationScheduler(settings.notification_webhook_url)
        else:
            notifier = LoggingNotificationScheduler()
        return cls(
            store=FileDocumentStore(root),
            backend=ChatModelGenerationBackend(settings),
            settings=settings,
            notifier=notifier,
        )

    def subscribe(self, callback: Subscriber):  # noqa: ANN201
        """Register a phase-change/completion callback; returns an unsubscribe function."""
        return self.events.subscribe(callback)

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    async def start_conversation(self, owner_id: str, plan_kind: PlanKind, initial_text: str) -> ConversationTurnResult:
        result = await self.driver.start_conversation(owner_id, plan_kind, initial_text)
        return await self._generate_if_forced(result)

    async def send_message(self, owner_id: str, record_id: str, text: str) -> ConversationTurnResult:
        """Send a user message; at the message cap, generation starts automatically."""
        result = await self.driver.send_message(owner_id, record_id, text)
        return await self._generate_if_forced(result)

    async def request_more_questions(self, owner_id: str, record_id: str) -> ConversationTurnResult:
        result = await self.driver.request_more_questions(owner_id, record_id)
        return await self._generate_if_forced(result)

    async def start_over(self, owner_id: str, plan_kind: PlanKind) -> str | None:
        return await self.driver.start_over(owner_id, plan_kind)

    async def active_conversation(self, owner_id: str, plan_kind: PlanKind) -> GenerationRecord | None:
        return await self.driver.active_conversation(owner_id, plan_kind)

    async def _generate_if_forced(self, result: ConversationTurnResult) -> ConversationTurnResult:
        if not result.forced:
            return result
        logger.info("Record %s reached the message limit; generating", result.record.id)
        outcome = await self.orchestrator.begin_generation(result.record.owner_id, result.record.id)
        return replace(result, record=outcome.record)

    # ------------------------------------------------------------------
    # Generation, recovery, housekeeping
    # ------------------------------------------------------------------

    async def begin_generation(self, owner_id: str, record_id: str) -> GenerationOutcome:
        return await self.orchestrator.begin_generation(owner_id, record_id)

    async def recover_pending_work(self, owner_id: str) -> RecoveryReport:
        return await self.recovery.recover_pending_work(owner_id)

    async def archive_stale(self, owner_id: str) -> ArchiveReport:
        return await self.housekeeping.archive_stale(owner_id)

    async def load_plans(self, owner_id: str, *, include_archived: bool = False) -> list[PlanDocument]:
        """Archive elapsed plans, then return the owner's plans newest first."""
        owner_id = require_owner(owner_id)
        await self.housekeeping.archive_stale(owner_id)
        return await self.plans.list_for_owner(owner_id, include_archived=include_archived)

    async def get_record(self, owner_id: str, record_id: str) -> GenerationRecord:
        return await self.generations.require(require_owner(owner_id), record_id)
