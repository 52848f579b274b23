from importlib.metadata import PackageNotFoundError, version

from .backend import ChatModelGenerationBackend, ConversationReply, GenerationBackend, parse_conversation_reply
from .canonical import content_fingerprint, to_canonical_json
from .conversation import ConversationDriver, ConversationTurnResult
from .engine import PlanGenerationEngine
from .errors import (
    BackendUnavailableError,
    ConversationLimitReachedError,
    ConversationNotReadyError,
    FlowAlreadyActiveError,
    FlowCancelledError,
    IllegalPhaseTransitionError,
    InputInvalidError,
    MalformedResponseError,
    NotAuthenticatedError,
    PlanGenerationError,
    RecordNotFoundError,
    ValidationRejectedError,
    user_message_for,
)
from .events import EventChannel, GenerationCompleted, PhaseChanged
from .housekeeping import ArchiveReport, Housekeeping
from .models import (
    GenerationPhase,
    GenerationRecord,
    PlanDocument,
    PlanGenerationStatus,
    PlanKind,
    ResponseKind,
    Turn,
    TurnRole,
)
from .orchestrator import GenerationOrchestrator, GenerationOutcome
from .recovery import RecoveryReport, RecoverySweep
from .settings import RuntimeSettings
from .state_store import DocumentStore, FileDocumentStore
from .validation import PlanValidator, Severity, ValidationIssue, ValidationResult, Verdict, decide, extract_json_block


def get_version() -> str:
    try:
        return version("fitplan-engine")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "ArchiveReport",
    "BackendUnavailableError",
    "ChatModelGenerationBackend",
    "ConversationDriver",
    "ConversationLimitReachedError",
    "ConversationNotReadyError",
    "ConversationReply",
    "ConversationTurnResult",
    "DocumentStore",
    "EventChannel",
    "FileDocumentStore",
    "FlowAlreadyActiveError",
    "FlowCancelledError",
    "GenerationBackend",
    "GenerationCompleted",
    "GenerationOrchestrator",
    "GenerationOutcome",
    "GenerationPhase",
    "GenerationRecord",
    "Housekeeping",
    "IllegalPhaseTransitionError",
    "InputInvalidError",
    "MalformedResponseError",
    "NotAuthenticatedError",
    "PhaseChanged",
    "PlanDocument",
    "PlanGenerationEngine",
    "PlanGenerationError",
    "PlanGenerationStatus",
    "PlanKind",
    "PlanValidator",
    "RecordNotFoundError",
    "RecoveryReport",
    "RecoverySweep",
    "ResponseKind",
    "RuntimeSettings",
    "Severity",
    "Turn",
    "TurnRole",
    "ValidationIssue",
    "ValidationRejectedError",
    "ValidationResult",
    "Verdict",
    "content_fingerprint",
    "decide",
    "extract_json_block",
    "get_version",
    "parse_conversation_reply",
    "to_canonical_json",
    "user_message_for",
]
