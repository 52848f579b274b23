from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    max_messages: int = 10
    partial_success_threshold: float = 0.7
    expected_plan_days: int = 7
    disclosure_limit: int = 5
    failure_summary_limit: int = 3
    stale_generation_days: int = 7
    state_store_root: str = "state_store"
    conversation_model: str = "gpt-4o-mini"
    generation_model: str = "gpt-4o"
    conversation_temperature: float = 0.7
    generation_temperature: float = 1.0
    request_timeout_seconds: int = 120
    notification_webhook_url: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            max_messages=_get_env_int("FITPLAN_MAX_MESSAGES", default=10, minimum=1, maximum=100),
            partial_success_threshold=_get_env_float(
                "FITPLAN_PARTIAL_SUCCESS_THRESHOLD", default=0.7, minimum=0.0, maximum=1.0
            ),
            expected_plan_days=_get_env_int("FITPLAN_EXPECTED_PLAN_DAYS", default=7, minimum=1, maximum=31),
            disclosure_limit=_get_env_int("FITPLAN_DISCLOSURE_LIMIT", default=5, minimum=0),
            failure_summary_limit=_get_env_int("FITPLAN_FAILURE_SUMMARY_LIMIT", default=3, minimum=1),
            stale_generation_days=_get_env_int("FITPLAN_STALE_GENERATION_DAYS", default=7, minimum=1),
            state_store_root=os.getenv("FITPLAN_STATE_STORE_ROOT", "state_store"),
            conversation_model=os.getenv("FITPLAN_CONVERSATION_MODEL", "gpt-4o-mini"),
            generation_model=os.getenv("FITPLAN_GENERATION_MODEL", "gpt-4o"),
            conversation_temperature=_get_env_float(
                "FITPLAN_CONVERSATION_TEMPERATURE", default=0.7, minimum=0.0, maximum=2.0
            ),
            generation_temperature=_get_env_float(
                "FITPLAN_GENERATION_TEMPERATURE", default=1.0, minimum=0.0, maximum=2.0
            ),
            request_timeout_seconds=_get_env_int("FITPLAN_REQUEST_TIMEOUT", default=120, minimum=1, maximum=3_600),
            notification_webhook_url=os.getenv("FITPLAN_NOTIFICATION_WEBHOOK_URL", ""),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""

        # -- Model name validation --
        conversation_model = self.conversation_model.strip()
        if not conversation_model:
            raise ValueError("FITPLAN_CONVERSATION_MODEL must be non-empty")
        generation_model = self.generation_model.strip()
        if not generation_model:
            raise ValueError("FITPLAN_GENERATION_MODEL must be non-empty")

        # -- Numeric bounds validation --
        if not 0.0 <= self.partial_success_threshold <= 1.0:
            raise ValueError(
                "FITPLAN_PARTIAL_SUCCESS_THRESHOLD must be within [0, 1], "
                f"got: {self.partial_success_threshold}"
            )
        if self.max_messages < 1:
            raise ValueError(f"FITPLAN_MAX_MESSAGES must be >= 1, got: {self.max_messages}")
        if self.expected_plan_days < 1:
            raise ValueError(f"FITPLAN_EXPECTED_PLAN_DAYS must be >= 1, got: {self.expected_plan_days}")

        # -- String field validation --
        if not self.state_store_root.strip():
            raise ValueError("FITPLAN_STATE_STORE_ROOT must be non-empty")
        webhook_url = self.notification_webhook_url.strip()
        if webhook_url and not webhook_url.startswith(("http://", "https://")):
            raise ValueError(
                f"FITPLAN_NOTIFICATION_WEBHOOK_URL must be an http(s) URL, got: {webhook_url!r}"
            )
        return RuntimeSettings(
            max_messages=self.max_messages,
            partial_success_threshold=self.partial_success_threshold,
            expected_plan_days=self.expected_plan_days,
            disclosure_limit=self.disclosure_limit,
            failure_summary_limit=self.failure_summary_limit,
            stale_generation_days=self.stale_generation_days,
            state_store_root=self.state_store_root,
            conversation_model=conversation_model,
            generation_model=generation_model,
            conversation_temperature=self.conversation_temperature,
            generation_temperature=self.generation_temperature,
            request_timeout_seconds=self.request_timeout_seconds,
            notification_webhook_url=webhook_url,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    """Parse a float from an environment variable with inclusive bounds checking."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed != parsed:
        raise ValueError(f"{name} must be a number, got: {raw!r}")
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
