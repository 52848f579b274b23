from __future__ import annotations

import json
from typing import Any

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from fitplan_engine.backend import ChatModelGenerationBackend, parse_conversation_reply
from fitplan_engine.errors import BackendUnavailableError, MalformedResponseError
from fitplan_engine.llm import ensure_openai_api_key, get_chat_model
from fitplan_engine.models import PlanKind, ResponseKind, Turn, TurnRole
from fitplan_engine.prompts import conversation_system_prompt, conversation_user_prompt, generation_prompt
from fitplan_engine.settings import RuntimeSettings

NOW = "2026-10-14T09:30:00+00:00"


class FakeChatModel:
    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[list[Any]] = []

    async def ainvoke(self, messages: list[Any]) -> Any:
        self.calls.append(messages)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def test_parse_ready_reply() -> None:
    raw = json.dumps({"type": "ready", "message": "Let's go!", "summary": "Vegan, 1800 kcal"})
    reply = parse_conversation_reply(raw)
    assert reply.response_kind is ResponseKind.READY
    assert reply.message == "Let's go!"
    assert reply.summary == "Vegan, 1800 kcal"


def test_parse_plain_text_is_a_question() -> None:
    reply = parse_conversation_reply("How many days a week can you train?")
    assert reply.response_kind is ResponseKind.QUESTION
    assert reply.message == "How many days a week can you train?"
    assert reply.summary is None


def test_forced_reply_is_coerced_to_ready() -> None:
    raw = json.dumps({"type": "question", "message": "One more thing?"})
    assert parse_conversation_reply(raw, forced=True).response_kind is ResponseKind.READY


def test_empty_reply_is_malformed() -> None:
    with pytest.raises(MalformedResponseError):
        parse_conversation_reply("   ")


@pytest.mark.asyncio
async def test_converse_sends_history_and_context() -> None:
    model = FakeChatModel(AIMessage(content='{"type": "question", "message": "Any allergies?"}'))
    backend = ChatModelGenerationBackend(RuntimeSettings(), conversation_model=model)
    history = [Turn.model_validate({"role": "user", "text": "Lose weight", "timestamp": NOW})]

    reply = await backend.converse(history, "Lose weight", False, plan_kind=PlanKind.DIET)

    assert reply.message == "Any allergies?"
    system, human = model.calls[0]
    assert isinstance(system, SystemMessage)
    assert isinstance(human, HumanMessage)
    assert "Lose weight" in human.content


@pytest.mark.asyncio
async def test_generate_returns_raw_text_from_content_blocks() -> None:
    model = FakeChatModel(AIMessage(content=[{"type": "text", "text": '{"days": []}'}]))
    backend = ChatModelGenerationBackend(RuntimeSettings(), generation_model=model)
    assert await backend.generate("prompt", plan_kind=PlanKind.WORKOUT_HOME) == '{"days": []}'


@pytest.mark.asyncio
async def test_transport_errors_become_backend_unavailable() -> None:
    model = FakeChatModel(TimeoutError("read timed out"))
    backend = ChatModelGenerationBackend(RuntimeSettings(), generation_model=model)
    with pytest.raises(BackendUnavailableError) as excinfo:
        await backend.generate("prompt", plan_kind=PlanKind.DIET)
    assert excinfo.value.user_message


@pytest.mark.asyncio
async def test_empty_generation_is_malformed() -> None:
    model = FakeChatModel(AIMessage(content="  "))
    backend = ChatModelGenerationBackend(RuntimeSettings(), generation_model=model)
    with pytest.raises(MalformedResponseError):
        await backend.generate("prompt", plan_kind=PlanKind.DIET)


def test_missing_api_key_is_reported(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:  # noqa: ANN001
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        ensure_openai_api_key(repo_root=tmp_path)


def test_api_key_is_loaded_from_dotenv(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:  # noqa: ANN001
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    (tmp_path / ".env").write_text("OPENAI_API_KEY=sk-test\n", encoding="utf-8")
    assert ensure_openai_api_key(repo_root=tmp_path) == "sk-test"
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


def test_get_chat_model_rejects_blank_name() -> None:
    with pytest.raises(ValueError):
        get_chat_model(model_name="  ")


def test_conversation_prompts_mention_kind_and_limit() -> None:
    forced = conversation_system_prompt(PlanKind.WORKOUT_GYM, forced=True)
    relaxed = conversation_system_prompt(PlanKind.WORKOUT_GYM, forced=False)
    assert forced != relaxed
    assert "ready" in forced

    history = [
        Turn.model_validate({"role": "user", "text": "Get stronger", "timestamp": NOW}),
        Turn.model_validate({"role": "assistant", "text": "How often?", "response_kind": "question", "timestamp": NOW}),
    ]
    prompt = conversation_user_prompt(history, "Get stronger")
    assert "CONVERSATION HISTORY" in prompt
    assert "COLLECTED CONTEXT SO FAR" in prompt
    assert history[0].role is TurnRole.USER


def test_generation_prompt_includes_context_and_days() -> None:
    prompt = generation_prompt(PlanKind.DIET, "No dairy", expected_days=7, summary="Dairy free")
    assert "No dairy" in prompt
    assert "Dairy free" in prompt
    assert "7" in prompt
