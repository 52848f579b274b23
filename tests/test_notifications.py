from __future__ import annotations

import json
import urllib.error
from typing import Any

import pytest

import fitplan_engine.notifications as notifications_module
from fitplan_engine.events import EventChannel, GenerationCompleted
from fitplan_engine.models import PlanKind
from fitplan_engine.notifications import WebhookNotificationScheduler


class _FakeResponse:
    status = 202

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        return None


@pytest.mark.asyncio
async def test_webhook_posts_notification_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def _fake_urlopen(request: Any, timeout: int) -> _FakeResponse:
        captured["url"] = request.full_url
        captured["method"] = request.get_method()
        captured["body"] = json.loads(request.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _FakeResponse()

    monkeypatch.setattr(notifications_module.urllib.request, "urlopen", _fake_urlopen)
    scheduler = WebhookNotificationScheduler("https://push.example.test/notify", timeout=5)

    await scheduler.schedule_completion_notification(PlanKind.WORKOUT_HOME, PlanKind.WORKOUT_HOME.notification_title)

    assert captured["url"] == "https://push.example.test/notify"
    assert captured["method"] == "POST"
    assert captured["timeout"] == 5
    assert captured["body"]["plan_kind"] == "workoutHome"
    assert captured["body"]["title"] == "Your Home Workout is Ready!"


@pytest.mark.asyncio
async def test_webhook_failure_is_logged_not_raised(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    def _unreachable(request: Any, timeout: int) -> _FakeResponse:
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(notifications_module.urllib.request, "urlopen", _unreachable)
    scheduler = WebhookNotificationScheduler("http://localhost:9/notify")

    await scheduler.schedule_completion_notification(PlanKind.DIET, "Your Meal Plan is Ready!")

    assert "was not delivered" in caplog.text


def test_http_post_json_wraps_url_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def _unreachable(request: Any, timeout: int) -> _FakeResponse:
        raise urllib.error.URLError("no route to host")

    monkeypatch.setattr(notifications_module.urllib.request, "urlopen", _unreachable)
    with pytest.raises(RuntimeError, match="unreachable"):
        notifications_module._http_post_json("http://localhost:9/notify", {"x": 1})


def test_webhook_requires_http_url() -> None:
    with pytest.raises(ValueError):
        WebhookNotificationScheduler("ftp://example.test/notify")


def test_event_subscribers_are_isolated() -> None:
    channel = EventChannel()
    received: list[Any] = []

    def _broken(event: Any) -> None:
        raise RuntimeError("subscriber bug")

    channel.subscribe(_broken)
    unsubscribe = channel.subscribe(received.append)
    event = GenerationCompleted(PlanKind.DIET, "plan-1", "1", "user-1")

    channel.emit(event)
    unsubscribe()
    channel.emit(event)

    assert received == [event]
