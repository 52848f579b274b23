"""Shape validation and the accept / partial-accept / reject policy for generated plans."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .errors import MalformedResponseError
from .models import PlanKind

logger = logging.getLogger(__name__)

DIET_REQUIRED_MEALS = ("breakfast", "lunch", "dinner")
DIET_OPTIONAL_MEALS = ("snack",)

_RATIO_PRECISION = 6

DayCheck = Callable[[dict[str, Any], int, str, list["ValidationIssue"]], tuple[int, int]]
_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class Verdict(str, Enum):
    ACCEPT = "accept"
    PARTIAL_ACCEPT = "partial_accept"
    REJECT = "reject"


@dataclass(frozen=True)
class ValidationIssue:
    severity: Severity
    location: str
    message: str


@dataclass(frozen=True)
class ValidationResult:
    verdict: Verdict
    completeness_ratio: float
    issues: tuple[ValidationIssue, ...] = ()
    present_items: int = 0
    expected_items: int = 0

    @property
    def critical_issues(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity is Severity.CRITICAL]

    @property
    def is_usable(self) -> bool:
        return self.verdict is not Verdict.REJECT

    def disclosure_details(self, limit: int) -> list[str]:
        """Missing/approximated field descriptions to attach to a partially accepted plan."""
        return [issue.message for issue in self.issues[:limit]]

    def failure_message(self, limit: int) -> str:
        """Summarize why the payload was rejected.

        The first critical issue wins; otherwise up to ``limit`` issues are joined.
        """
        critical = self.critical_issues
        if critical:
            return critical[0].message
        if self.issues:
            return "; ".join(issue.message for issue in self.issues[:limit])
        return f"Generated plan is only {self.completeness_ratio:.0%} complete"


def decide(ratio: float, issues: list[ValidationIssue] | tuple[ValidationIssue, ...], threshold: float) -> Verdict:
    """Apply the severity-gated threshold policy.

    Args:
        ratio: Completeness ratio in [0, 1].
        issues: Issues found during validation.
        threshold: Inclusive partial-accept threshold.

    Returns:
        ACCEPT for a complete payload with no issues, PARTIAL_ACCEPT when the
        ratio reaches the threshold without critical issues, REJECT otherwise.
    """
    ratio = round(ratio, _RATIO_PRECISION)
    if any(issue.severity is Severity.CRITICAL for issue in issues):
        return Verdict.REJECT
    if ratio >= 1.0 and not issues:
        return Verdict.ACCEPT
    if ratio >= round(threshold, _RATIO_PRECISION):
        return Verdict.PARTIAL_ACCEPT
    return Verdict.REJECT


class PlanValidator:
    """Validate a decoded plan payload against the shape contract for its plan kind."""

    def __init__(self, *, expected_days: int = 7, partial_success_threshold: float = 0.7) -> None:
        if expected_days < 1:
            raise ValueError("expected_days must be >= 1")
        self.expected_days = expected_days
        self.partial_success_threshold = partial_success_threshold

    def validate(self, plan_kind: PlanKind, payload: Any) -> ValidationResult:
        if not isinstance(payload, dict):
            return self._reject("payload", "Generated plan is not a JSON object")
        if plan_kind is PlanKind.DIET:
            return self._validate_collection(payload, "daily_plans", "Diet plan has no daily plans", self._check_diet_day)
        return self._validate_collection(payload, "days", "Workout plan has no days", self._check_workout_day)

    def _reject(self, location: str, message: str) -> ValidationResult:
        issue = ValidationIssue(Severity.CRITICAL, location, message)
        return ValidationResult(
            verdict=Verdict.REJECT,
            completeness_ratio=0.0,
            issues=(issue,),
            expected_items=self.expected_days,
        )

    def _validate_collection(
        self, payload: dict[str, Any], key: str, empty_message: str, check_day: DayCheck
    ) -> ValidationResult:
        days = payload.get(key)
        if not isinstance(days, list) or not days:
            return self._reject(key, empty_message)

        issues: list[ValidationIssue] = []
        present = 0
        expected = 0
        for index in range(self.expected_days):
            location = f"{key}[{index}]"
            if index >= len(days):
                expected += self._items_per_day(key)
                issues.append(ValidationIssue(Severity.WARNING, location, f"Day {index + 1} is missing"))
                continue
            day = days[index]
            if not isinstance(day, dict):
                issues.append(ValidationIssue(Severity.CRITICAL, location, f"Day {index + 1} is not an object"))
                expected += self._items_per_day(key)
                continue
            day_present, day_expected = check_day(day, index, location, issues)
            present += day_present
            expected += day_expected

        if len(days) > self.expected_days:
            issues.append(
                ValidationIssue(
                    Severity.WARNING,
                    key,
                    f"Plan has {len(days)} days, expected {self.expected_days}; extra days are kept as-is",
                )
            )
        total_days = payload.get("total_days")
        if isinstance(total_days, int) and not isinstance(total_days, bool) and total_days != len(days):
            issues.append(
                ValidationIssue(
                    Severity.WARNING,
                    "total_days",
                    f"Total days ({total_days}) doesn't match day count ({len(days)})",
                )
            )
        if key == "days" and not _non_empty_string(payload.get("title")):
            issues.append(ValidationIssue(Severity.WARNING, "title", "Workout plan has no title"))

        ratio = present / expected if expected else 0.0
        verdict = decide(ratio, issues, self.partial_success_threshold)
        result = ValidationResult(
            verdict=verdict,
            completeness_ratio=round(ratio, _RATIO_PRECISION),
            issues=tuple(issues),
            present_items=present,
            expected_items=expected,
        )
        logger.debug(
            "Validated %s: verdict=%s ratio=%.3f issues=%d",
            key,
            verdict.value,
            result.completeness_ratio,
            len(issues),
        )
        return result

    @staticmethod
    def _items_per_day(key: str) -> int:
        return len(DIET_REQUIRED_MEALS) if key == "daily_plans" else 1

    # ------------------------------------------------------------------
    # Diet
    # ------------------------------------------------------------------

    def _check_diet_day(
        self, day: dict[str, Any], index: int, location: str, issues: list[ValidationIssue]
    ) -> tuple[int, int]:
        prefix = f"Day {index + 1}"
        meals = day.get("meals")
        if not isinstance(meals, list):
            meals = []
        slots: set[str] = set()
        for meal_index, meal in enumerate(meals):
            meal_location = f"{location}.meals[{meal_index}]"
            if not isinstance(meal, dict):
                issues.append(ValidationIssue(Severity.WARNING, meal_location, f"{prefix} has an unreadable meal entry"))
                continue
            meal_type = str(meal.get("type", "")).strip().lower()
            if meal_type in DIET_REQUIRED_MEALS or meal_type in DIET_OPTIONAL_MEALS:
                slots.add(meal_type)
            self._check_meal(meal, f"{prefix} {meal_type or 'meal'}", meal_location, issues)

        present = 0
        for slot in DIET_REQUIRED_MEALS:
            if slot in slots:
                present += 1
            else:
                issues.append(ValidationIssue(Severity.WARNING, f"{location}.meals", f"{prefix} is missing {slot}"))
        return present, len(DIET_REQUIRED_MEALS)

    @staticmethod
    def _check_meal(meal: dict[str, Any], prefix: str, location: str, issues: list[ValidationIssue]) -> None:
        recipe = meal.get("recipe")
        if not isinstance(recipe, dict):
            issues.append(ValidationIssue(Severity.WARNING, f"{location}.recipe", f"{prefix} has no recipe"))
        else:
            if not _non_empty_string(recipe.get("name")):
                issues.append(ValidationIssue(Severity.WARNING, f"{location}.recipe.name", f"{prefix} recipe has no name"))
            if not _non_empty_list(recipe.get("ingredients")):
                issues.append(
                    ValidationIssue(Severity.WARNING, f"{location}.recipe.ingredients", f"{prefix} recipe has no ingredients")
                )
            if not _non_empty_list(recipe.get("instructions")):
                issues.append(
                    ValidationIssue(
                        Severity.WARNING, f"{location}.recipe.instructions", f"{prefix} recipe has no instructions"
                    )
                )
        nutrition = meal.get("nutrition")
        if isinstance(nutrition, dict):
            macros = [nutrition.get(name) for name in ("protein", "carbs", "fat")]
            if any(isinstance(value, (int, float)) and value < 0 for value in macros):
                issues.append(
                    ValidationIssue(Severity.WARNING, f"{location}.nutrition", f"{prefix} has negative macro values")
                )

    # ------------------------------------------------------------------
    # Workout
    # ------------------------------------------------------------------

    def _check_workout_day(
        self, day: dict[str, Any], index: int, location: str, issues: list[ValidationIssue]
    ) -> tuple[int, int]:
        prefix = f"Day {index + 1}"
        if day.get("is_rest_day") is True:
            return 1, 1
        exercises = day.get("exercises")
        if not _non_empty_list(exercises):
            issues.append(ValidationIssue(Severity.WARNING, f"{location}.exercises", f"{prefix} has no exercises"))
            return 0, 1
        for exercise_index, exercise in enumerate(exercises):
            exercise_location = f"{location}.exercises[{exercise_index}]"
            if not isinstance(exercise, dict):
                issues.append(
                    ValidationIssue(Severity.WARNING, exercise_location, f"{prefix} has an unreadable exercise entry")
                )
                continue
            name = exercise.get("name")
            label = f"{prefix} {name}" if _non_empty_string(name) else f"{prefix} exercise {exercise_index + 1}"
            if not _non_empty_string(name):
                issues.append(ValidationIssue(Severity.WARNING, f"{exercise_location}.name", f"{label} has no name"))
            has_sets = exercise.get("sets") not in (None, 0, "") and exercise.get("reps") not in (None, 0, "")
            has_duration = exercise.get("duration_seconds") not in (None, 0, "")
            if not (has_sets or has_duration):
                issues.append(
                    ValidationIssue(Severity.WARNING, exercise_location, f"{label} has no sets/reps or duration")
                )
        return 1, 1


def _non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _non_empty_list(value: Any) -> bool:
    return isinstance(value, list) and len(value) > 0


# ---------------------------------------------------------------------------
# Payload extraction
# ---------------------------------------------------------------------------

def strip_code_fences(raw_text: str) -> str:
    """Return the body of the first Markdown code fence, or the trimmed text if there is none."""
    match = _FENCE_PATTERN.search(raw_text)
    if match:
        return match.group(1).strip()
    return raw_text.strip()


def extract_json_block(raw_text: str) -> dict[str, Any]:
    """Isolate and decode the structured JSON object embedded in a backend reply.

    Tries the fenced/trimmed text first, then the outermost ``{...}`` span.

    Raises:
        MalformedResponseError: If no JSON object can be decoded.
    """
    if not isinstance(raw_text, str) or not raw_text.strip():
        raise MalformedResponseError("backend returned an empty response")
    candidate = strip_code_fences(raw_text)
    for text in (candidate, _outermost_object(candidate), _outermost_object(raw_text)):
        if not text:
            continue
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(decoded, dict):
            return decoded
    raise MalformedResponseError(f"no JSON object found in backend response ({len(raw_text)} chars)")


def _outermost_object(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return ""
    return text[start : end + 1]
