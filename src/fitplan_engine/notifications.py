from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request
from typing import Any, Protocol

from .models import PlanKind

logger = logging.getLogger(__name__)

_WEBHOOK_TIMEOUT_SECONDS = 10


class NotificationScheduler(Protocol):
    """Fire-and-forget completion notifications.

    Implementations never raise; delivery is best-effort.
    """

    async def schedule_completion_notification(self, plan_kind: PlanKind, title: str) -> None:
        ...


class LoggingNotificationScheduler:
    """Default scheduler that records notifications in the log only."""

    def __init__(self) -> None:
        self.sent: list[tuple[PlanKind, str]] = []

    async def schedule_completion_notification(self, plan_kind: PlanKind, title: str) -> None:
        self.sent.append((plan_kind, title))
        logger.info("Completion notification for %s: %s", plan_kind.value, title)


def _http_post_json(url: str, payload: dict[str, Any], *, timeout: int = _WEBHOOK_TIMEOUT_SECONDS) -> int:
    """Send a JSON POST request and return the HTTP status code.

    Raises:
        RuntimeError: If the request fails.
    """
    request = urllib.request.Request(
        url,
        method="POST",
        headers={"Content-Type": "application/json"},
        data=json.dumps(payload).encode("utf-8"),
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return int(response.status)
    except urllib.error.HTTPError as exc:
        body = ""
        try:
            body = exc.read().decode("utf-8", errors="replace")[:500]
        except OSError:
            pass
        logger.error("HTTP %d from %s: %s", exc.code, url, body)
        raise RuntimeError(f"notification webhook returned HTTP {exc.code}") from exc
    except urllib.error.URLError as exc:
        logger.error("Notification webhook unreachable at %s: %s", url, exc.reason)
        raise RuntimeError(f"notification webhook unreachable: {exc.reason}") from exc
    except OSError as exc:
        logger.error("Notification webhook request to %s failed: %s", url, exc)
        raise RuntimeError(f"notification webhook request failed: {exc}") from exc


class WebhookNotificationScheduler:
    """POST completion notifications to an HTTP endpoint."""

    def __init__(self, url: str, *, timeout: int = _WEBHOOK_TIMEOUT_SECONDS) -> None:
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"webhook url must be http(s), got: {url!r}")
        self.url = url
        self.timeout = timeout

    async def schedule_completion_notification(self, plan_kind: PlanKind, title: str) -> None:
        payload = {
            "plan_kind": plan_kind.value,
            "title": title,
            "body": f"Tap to view your new {plan_kind.display_name}.",
        }
        try:
            await asyncio.to_thread(_http_post_json, self.url, payload, timeout=self.timeout)
        except RuntimeError as exc:
            logger.warning("Completion notification for %s was not delivered: %s", plan_kind.value, exc)
