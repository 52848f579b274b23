from __future__ import annotations

from typing import Sequence

from .models import PlanKind, Turn, TurnRole

_REPLY_FORMAT = """RESPOND WITH EXACTLY THIS JSON FORMAT:

If you need more info:
{"type": "question", "message": "<Your question to the user>"}

If you have enough info:
{"type": "ready", "message": "<Message saying you're ready to create their plan>", "summary": "<Brief summary of what you collected>"}

IMPORTANT: Output valid JSON only. No markdown, no explanatory text."""

_FORCED_FORMAT = """RESPOND WITH THIS EXACT JSON FORMAT:
{{
    "type": "ready",
    "message": "Perfect! I have everything I need to create your {plan_name}.",
    "summary": "<Summarize what you learned about the user's {focus}>"
}}

Do not ask any further questions."""

_DIET_GATHER = """You are a friendly nutrition assistant gathering information to create a personalized {days}-day meal plan.

BEHAVIOR RULES:
1. Ask ONE focused, conversational question at a time
2. Be warm and encouraging, not clinical
3. Remember what the user already told you - don't repeat questions
4. After gathering enough info (typically 3-6 exchanges), indicate you're ready
5. You can be ready earlier if the user provides comprehensive info upfront

INFORMATION TO GATHER (not all required):
- Dietary restrictions or allergies
- Calorie goals
- Cooking time preference
- Budget constraints
- Cuisine preferences
- Household size / servings needed
- Specific health goals"""

_WORKOUT_GATHER = """You are a friendly fitness coach gathering information to create a personalized {plan_name}.

BEHAVIOR RULES:
1. Ask ONE focused, conversational question at a time
2. Be motivating and supportive
3. Remember what the user already told you - don't repeat questions
4. After gathering enough info (typically 3-6 exchanges), indicate you're ready
5. You can be ready earlier if the user provides comprehensive info upfront

INFORMATION TO GATHER (not all required):
- Fitness goals (strength, weight loss, muscle gain, endurance)
- Current fitness level / experience
{equipment_line}
- Days per week they can work out
- Time per session
- Any injuries or limitations"""

_DIET_SHAPE = """{
  "total_days": <int>,
  "daily_plans": [
    {
      "day": <int>,
      "date": "<YYYY-MM-DD>",
      "total_calories": <int>,
      "meals": [
        {
          "type": "breakfast" | "lunch" | "dinner" | "snack",
          "recipe": {
            "name": "<string>",
            "prep_time": <minutes>,
            "servings": <int>,
            "ingredients": [{"name": "<string>", "amount": "<string>"}],
            "instructions": ["<step>"]
          },
          "nutrition": {"calories": <int>, "protein": <g>, "carbs": <g>, "fat": <g>}
        }
      ]
    }
  ],
  "summary": {"avg_calories_per_day": <int>, "avg_protein": <g>, "avg_carbs": <g>, "avg_fat": <g>}
}"""

_WORKOUT_SHAPE = """{
  "title": "<string>",
  "total_days": <int>,
  "days": [
    {
      "day": <int>,
      "date": "<YYYY-MM-DD>",
      "is_rest_day": <bool>,
      "focus": ["<muscle group>"],
      "warmup": "<string>",
      "exercises": [
        {
          "name": "<string>",
          "sets": <int>,
          "reps": "<string>",
          "duration_seconds": <int or null>,
          "rest_seconds": <int>,
          "equipment_needed": ["<string>"],
          "notes": "<string>"
        }
      ],
      "cooldown": "<string>"
    }
  ]
}"""


def conversation_system_prompt(plan_kind: PlanKind, *, forced: bool, expected_days: int = 7) -> str:
    """Build the system prompt for one conversational turn."""
    plan_name = plan_kind.display_name.lower()
    if forced:
        role = "nutrition assistant" if plan_kind is PlanKind.DIET else "fitness assistant"
        focus = "dietary needs" if plan_kind is PlanKind.DIET else "fitness needs"
        header = f"You are a {role}. The user has provided enough information."
        return f"{header}\n\n{_FORCED_FORMAT.format(plan_name=plan_name, focus=focus)}"
    if plan_kind is PlanKind.DIET:
        body = _DIET_GATHER.format(days=expected_days)
    else:
        if plan_kind is PlanKind.WORKOUT_HOME:
            equipment_line = "- Equipment available at home (or bodyweight only)"
        else:
            equipment_line = "- Gym access and preferred machines or free weights"
        body = _WORKOUT_GATHER.format(plan_name=plan_name, equipment_line=equipment_line)
    return f"{body}\n\n{_REPLY_FORMAT}"


def conversation_user_prompt(history: Sequence[Turn], context: str) -> str:
    """Render the full ordered history plus the collected context."""
    lines = ["CONVERSATION HISTORY:"]
    for turn in history:
        role = "User" if turn.role is TurnRole.USER else "Assistant"
        lines.append(f"{role}: {turn.text}")
    lines.append("")
    lines.append("COLLECTED CONTEXT SO FAR:")
    lines.append(context)
    lines.append("")
    lines.append("Based on this conversation, provide your next response.")
    return "\n".join(lines)


def generation_prompt(plan_kind: PlanKind, context: str, *, expected_days: int = 7, summary: str | None = None) -> str:
    """Build the single prompt used to generate the structured plan."""
    if plan_kind is PlanKind.DIET:
        intro = f"Create a personalized {expected_days}-day meal plan with breakfast, lunch and dinner every day."
        shape = _DIET_SHAPE
    else:
        setting = "at home" if plan_kind is PlanKind.WORKOUT_HOME else "in a gym"
        intro = (
            f"Create a personalized {expected_days}-day workout plan to be done {setting}. "
            "Mark rest days with is_rest_day=true and an empty exercises list."
        )
        shape = _WORKOUT_SHAPE
    sections = [intro, "", "USER PREFERENCES:", context]
    if summary:
        sections.extend(["", "SUMMARY:", summary])
    sections.extend(
        [
            "",
            f"Return exactly {expected_days} days as a single JSON object with this shape:",
            shape,
            "",
            "IMPORTANT: Output valid JSON only. No markdown, no explanatory text.",
        ]
    )
    return "\n".join(sections)
