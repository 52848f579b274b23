from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol


class Clock(Protocol):
    """Wall-clock source for timestamps and archival comparisons."""

    def now(self) -> datetime:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(UTC)


def accumulate_context(existing: str, new_message: str) -> str:
    """Append a user message to the collected context without dropping anything.

    Args:
        existing: Context gathered so far (may be empty).
        new_message: The latest user message.

    Returns:
        The new context, which always contains ``existing`` as a prefix.
    """
    if not existing:
        return new_message
    return f"{existing}\n\nAdditional info: {new_message}"


def week_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """Return the (Monday 00:00, Sunday 23:59:59.999999) UTC bounds of ``moment``'s week."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    moment = moment.astimezone(UTC)
    start = (moment - timedelta(days=moment.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=7) - timedelta(microseconds=1)
    return start, end


def content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous LLM response content.

    Handles strings, lists of text/dict items, and nested content structures
    produced by various chat model response formats.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
                continue
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                    continue
                nested = item.get("content")
                if nested is not None:
                    chunks.append(content_to_text(nested))
                    continue
                chunks.append(json.dumps(item, sort_keys=True))
                continue
            chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    if content is None:
        return ""
    return str(content)
