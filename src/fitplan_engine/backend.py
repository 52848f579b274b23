from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from langchain_core.messages import HumanMessage, SystemMessage

from .errors import BackendUnavailableError, MalformedResponseError
from .llm import get_chat_model
from .models import PlanKind, ResponseKind, Turn
from .prompts import conversation_system_prompt, conversation_user_prompt
from .settings import RuntimeSettings
from .utils import content_to_text
from .validation import extract_json_block

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationReply:
    message: str
    response_kind: ResponseKind
    summary: str | None = None


class GenerationBackend(Protocol):
    """Opaque text-generation service used by the conversation driver and orchestrator.

    Implementations raise ``BackendUnavailableError`` for transport failures
    and ``MalformedResponseError`` when a reply is empty.
    """

    async def converse(
        self, history: Sequence[Turn], context: str, forced: bool, *, plan_kind: PlanKind
    ) -> ConversationReply:
        ...

    async def generate(self, prompt: str, *, plan_kind: PlanKind) -> str:
        ...


def parse_conversation_reply(raw_text: str, *, forced: bool = False) -> ConversationReply:
    """Decode a ``{type, message, summary}`` reply.

    Unparseable text is kept as a plain question.  When ``forced`` is set the
    reply is always treated as ``ready``.

    Raises:
        MalformedResponseError: If the reply is empty.
    """
    if not raw_text or not raw_text.strip():
        raise MalformedResponseError("backend returned an empty conversational reply")
    try:
        data = extract_json_block(raw_text)
    except MalformedResponseError:
        logger.warning("Conversational reply was not JSON; treating it as a question")
        data = {"type": ResponseKind.QUESTION.value, "message": raw_text.strip()}

    raw_kind = str(data.get("type", "")).strip().lower()
    kind = ResponseKind.READY if raw_kind == ResponseKind.READY.value else ResponseKind.QUESTION
    message = data.get("message")
    if not isinstance(message, str) or not message.strip():
        message = raw_text.strip()
    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        summary = None

    if forced and kind is not ResponseKind.READY:
        logger.warning("Backend asked another question after the message limit; forcing ready")
        kind = ResponseKind.READY
    return ConversationReply(message=message.strip(), response_kind=kind, summary=summary)


class ChatModelGenerationBackend:
    """Generation backend backed by OpenAI chat models through LangChain.

    Conversation and generation use separately configured models; both are
    created on first use so constructing the backend never needs an API key.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        conversation_model: Any | None = None,
        generation_model: Any | None = None,
    ) -> None:
        self.settings = settings
        self._conversation_model = conversation_model
        self._generation_model = generation_model

    def _conversation(self) -> Any:
        if self._conversation_model is None:
            self._conversation_model = get_chat_model(
                model_name=self.settings.conversation_model,
                temperature=self.settings.conversation_temperature,
                timeout=self.settings.request_timeout_seconds,
                json_mode=True,
            )
        return self._conversation_model

    def _generation(self) -> Any:
        if self._generation_model is None:
            self._generation_model = get_chat_model(
                model_name=self.settings.generation_model,
                temperature=self.settings.generation_temperature,
                timeout=self.settings.request_timeout_seconds,
                json_mode=True,
            )
        return self._generation_model

    async def converse(
        self, history: Sequence[Turn], context: str, forced: bool, *, plan_kind: PlanKind
    ) -> ConversationReply:
        system_prompt = conversation_system_prompt(
            plan_kind, forced=forced, expected_days=self.settings.expected_plan_days
        )
        user_prompt = conversation_user_prompt(history, context)
        raw_text = await self._complete(self._conversation(), system_prompt, user_prompt, purpose="conversation")
        return parse_conversation_reply(raw_text, forced=forced)

    async def generate(self, prompt: str, *, plan_kind: PlanKind) -> str:
        system_prompt = (
            f"You are an expert planner producing a {plan_kind.display_name.lower()} as structured JSON."
        )
        raw_text = await self._complete(self._generation(), system_prompt, prompt, purpose="generation")
        if not raw_text.strip():
            raise MalformedResponseError("backend returned an empty generation response")
        return raw_text

    @staticmethod
    async def _complete(model: Any, system_prompt: str, user_prompt: str, *, purpose: str) -> str:
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        try:
            response = await model.ainvoke(messages)
        except Exception as exc:  # noqa: BLE001 - any transport failure is reported the same way
            logger.error("Backend %s call failed: %s", purpose, exc)
            raise BackendUnavailableError(f"backend {purpose} call failed: {type(exc).__name__}") from exc
        return content_to_text(getattr(response, "content", response))
