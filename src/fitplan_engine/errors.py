"""Exception hierarchy for the plan generation engine.

Every error carries a stable ``kind`` and a fixed ``user_message``.  The
exception text (``str(exc)``) is diagnostic detail for logs; only
``user_message`` is ever shown to an end user.
"""

from __future__ import annotations

from typing import Any


class PlanGenerationError(Exception):
    """Base class for all engine errors."""

    kind = "internal"
    user_message = "Something went wrong while preparing your plan. Please try again."

    def __init__(self, message: str = "", *, record_id: str | None = None, context: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.user_message)
        self.message = message or self.user_message
        self.record_id = record_id
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert the error to a dictionary for logging."""
        return {
            "kind": self.kind,
            "message": self.message,
            "user_message": self.user_message,
            "record_id": self.record_id,
            "context": self.context,
        }


class NotAuthenticatedError(PlanGenerationError):
    kind = "not_authenticated"
    user_message = "Please sign in to create a plan."


class InputInvalidError(PlanGenerationError):
    kind = "input_invalid"
    user_message = "Please enter a message before sending."


class ConversationLimitReachedError(InputInvalidError):
    """Raised when a message is sent after the conversation budget is spent."""

    kind = "conversation_limit_reached"
    user_message = "We have everything we need. Your plan is being generated."


class ConversationNotReadyError(InputInvalidError):
    """Raised when generation is requested before readiness or the message cap."""

    kind = "conversation_not_ready"
    user_message = "A few more details are needed before your plan can be generated."


class BackendUnavailableError(PlanGenerationError):
    kind = "backend_unavailable"
    user_message = "The plan service is unavailable right now. Please try again."


class MalformedResponseError(PlanGenerationError):
    kind = "malformed_response"
    user_message = "We couldn't read the generated plan. Please start a new request."


class ValidationRejectedError(PlanGenerationError):
    kind = "validation_rejected"
    user_message = "The generated plan was incomplete. Please start a new request."


class RecordNotFoundError(PlanGenerationError):
    kind = "record_not_found"
    user_message = "That plan request could not be found."


class IllegalPhaseTransitionError(PlanGenerationError):
    kind = "illegal_phase_transition"
    user_message = "That plan request has already finished."


class FlowAlreadyActiveError(PlanGenerationError):
    kind = "flow_already_active"
    user_message = "A plan of this type is already being prepared."


class FlowCancelledError(PlanGenerationError):
    kind = "flow_cancelled"
    user_message = "This plan request was cancelled."


def user_message_for(exc: BaseException) -> str:
    """Return the user-facing message for any exception."""
    if isinstance(exc, PlanGenerationError):
        return exc.user_message
    return PlanGenerationError.user_message
