"""Entry point for `python -m fitplan_engine` and the `fitplan` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from fitplan_engine.engine import PlanGenerationEngine
from fitplan_engine.errors import PlanGenerationError
from fitplan_engine.models import PlanKind
from fitplan_engine.settings import RuntimeSettings


PLAN_KIND_CHOICES = [kind.value for kind in PlanKind]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive diet and workout plan generation")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--state-store-root",
        type=Path,
        default=None,
        help="Directory holding generation records and plans (default: FITPLAN_STATE_STORE_ROOT)",
    )
    parser.add_argument("--owner", required=True, help="Owner (user) id every operation is scoped to")
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Start a conversation with an initial request")
    start.add_argument("--kind", required=True, choices=PLAN_KIND_CHOICES)
    start.add_argument("text", help="Initial free-text request")

    send = subparsers.add_parser("send", help="Send a message to an open conversation")
    send.add_argument("record_id")
    send.add_argument("text")

    more = subparsers.add_parser("more", help="Decline readiness and ask for more questions")
    more.add_argument("record_id")

    generate = subparsers.add_parser("generate", help="Begin (or retry) generation for a ready record")
    generate.add_argument("record_id")

    reset = subparsers.add_parser("start-over", help="Cancel the active flow for a plan kind")
    reset.add_argument("--kind", required=True, choices=PLAN_KIND_CHOICES)

    subparsers.add_parser("recover", help="Resume interrupted work")
    subparsers.add_parser("archive", help="Archive plans whose week has elapsed")

    plans = subparsers.add_parser("plans", help="List plans (archives stale ones first)")
    plans.add_argument("--include-archived", action="store_true")

    show = subparsers.add_parser("show", help="Print a generation record")
    show.add_argument("record_id")
    return parser.parse_args(argv)


async def run_command(engine: PlanGenerationEngine, args: argparse.Namespace) -> dict[str, Any]:
    owner = args.owner
    if args.command == "start":
        result = await engine.start_conversation(owner, PlanKind(args.kind), args.text)
        return _turn_summary(result)
    if args.command == "send":
        return _turn_summary(await engine.send_message(owner, args.record_id, args.text))
    if args.command == "more":
        return _turn_summary(await engine.request_more_questions(owner, args.record_id))
    if args.command == "generate":
        outcome = await engine.begin_generation(owner, args.record_id)
        return {
            "record_id": outcome.record.id,
            "phase": outcome.record.phase.value,
            "result_plan_id": outcome.record.result_plan_id,
            "partial": outcome.partial,
        }
    if args.command == "start-over":
        return {"cancelled_record_id": await engine.start_over(owner, PlanKind(args.kind))}
    if args.command == "recover":
        report = await engine.recover_pending_work(owner)
        return {
            "regenerated": report.regenerated,
            "finalized_from_plan": report.finalized_from_plan,
            "notified": report.notified,
            "skipped": report.skipped,
            "failed": report.failed,
        }
    if args.command == "archive":
        archived = await engine.archive_stale(owner)
        return {
            "archived_plan_ids": archived.archived_plan_ids,
            "archived_generation_ids": archived.archived_generation_ids,
        }
    if args.command == "plans":
        plans = await engine.load_plans(owner, include_archived=args.include_archived)
        return {
            "plans": [
                {
                    "id": plan.id,
                    "kind": plan.plan_kind.value,
                    "title": plan.title,
                    "status": plan.generation_status.value,
                    "week_start_date": plan.week_start_date.isoformat(),
                    "is_archived": plan.is_archived,
                    "filled_data_details": plan.filled_data_details,
                }
                for plan in plans
            ]
        }
    if args.command == "show":
        record = await engine.get_record(owner, args.record_id)
        return record.model_dump(mode="json")
    raise ValueError(f"Unknown command: {args.command}")


def _turn_summary(result: Any) -> dict[str, Any]:
    return {
        "record_id": result.record.id,
        "phase": result.record.phase.value,
        "message_count": result.record.message_count,
        "response_kind": result.reply.response_kind.value,
        "message": result.reply.message,
        "summary": result.reply.summary,
        "forced": result.forced,
    }


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.state_store_root is not None:
        os.environ["FITPLAN_STATE_STORE_ROOT"] = str(args.state_store_root.resolve())

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    engine = PlanGenerationEngine.from_settings(settings)
    try:
        output = asyncio.run(run_command(engine, args))
    except PlanGenerationError as exc:
        logging.error("%s failed: %s", args.command, exc.message)
        print(exc.user_message)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("%s failed: %s", args.command, exc)
        return 1

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
