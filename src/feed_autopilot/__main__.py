"""Entry point for `python -m feed_autopilot` and the `feed-autopilot` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import threading
from pathlib import Path
from typing import Any, Sequence

from pydantic import BaseModel

from feed_autopilot.analysis import LLMAnalysisAgent, PermissionOffer, load_agent_result
from feed_autopilot.catalog import InMemoryFeedCatalog
from feed_autopilot.control import AutopilotControl
from feed_autopilot.errors import AutopilotError
from feed_autopilot.models import AutomationMode, LedgerStatus
from feed_autopilot.settings import AutopilotSettings
from feed_autopilot.state_store import AutopilotStateStore

MODE_CHOICES = [mode.value for mode in AutomationMode]
GRANT_CHOICES = [AutomationMode.REVIEW.value, AutomationMode.AUTO.value]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Operate the autonomous product-feed optimizer for one account")
    parser.add_argument("--state-root", type=Path, default=None, help="State store directory (default: AUTOPILOT_STATE_STORE_ROOT)")
    parser.add_argument("--account-id", default=None, help="Connected account (default: AUTOPILOT_ACCOUNT_ID)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show permission state, queue and plan")

    seed = sub.add_parser("seed-feed", help="Load products into the feed from a JSON object of id -> attributes")
    seed.add_argument("products_file", type=Path)

    ingest = sub.add_parser("ingest", help="Ingest a saved analysis result and enqueue its optimizations")
    ingest.add_argument("result_file", type=Path)
    ingest.add_argument("--accept", choices=GRANT_CHOICES, default=None, help="Accept the automation offer in this mode")

    analyze = sub.add_parser("analyze", help="Run the store analysis agent and enqueue its optimizations")
    analyze.add_argument("store_identifier")
    analyze.add_argument("--accept", choices=GRANT_CHOICES, default=None, help="Accept the automation offer in this mode")

    grant = sub.add_parser("grant", help="Grant autonomous write access")
    grant.add_argument("--mode", choices=GRANT_CHOICES, default=None, help="Automation mode (default: AUTOPILOT_DEFAULT_MODE)")
    sub.add_parser("revoke", help="Revoke autonomous write access")
    mode = sub.add_parser("mode", help="Change the automation mode of a granted account")
    mode.add_argument("mode", choices=MODE_CHOICES)

    run = sub.add_parser("run", help="Execute every runnable queue item")
    run.add_argument("--watch", action="store_true", help="Keep running and wait for new work")

    for name, help_text in (
        ("approve", "Approve and execute an item awaiting approval"),
        ("reject", "Reject an item awaiting approval"),
        ("pause", "Pause a queued or running item"),
        ("resume", "Resume a paused item"),
        ("remove", "Remove a queued item"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("priority", type=int)

    ledger = sub.add_parser("ledger", help="List ledger entries, newest first")
    ledger.add_argument("--status", choices=[status.value for status in LedgerStatus], default=None)

    rollback = sub.add_parser("rollback", help="Undo a completed ledger entry")
    rollback.add_argument("entry_id")
    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(_jsonable(payload), indent=2, sort_keys=True, default=str))


def _jsonable(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    if isinstance(payload, dict):
        return {key: _jsonable(value) for key, value in payload.items()}
    if isinstance(payload, (list, tuple)):
        return [_jsonable(value) for value in payload]
    return payload


def _describe_offer(offer: PermissionOffer | None) -> dict[str, Any] | None:
    if offer is None:
        return None
    return {
        "scope": offer.scope,
        "actions_planned": offer.actions_planned,
        "estimated_improvements": offer.estimated_improvements,
    }


def _handle_offer(control: AutopilotControl, offer: PermissionOffer | None, accept: str | None) -> dict[str, Any]:
    result: dict[str, Any] = {"permission_offer": _describe_offer(offer)}
    if offer is not None and accept is not None:
        result["permission"] = offer.accept(AutomationMode(accept))
    result["queue"] = control.queue_items()
    return result


def run_command(args: argparse.Namespace, control: AutopilotControl, settings: AutopilotSettings) -> Any:
    command = args.command
    if command == "status":
        return {"permission": control.permission_state(), "queue": control.queue_items(), "plan": control.plan()}
    if command == "seed-feed":
        products = json.loads(args.products_file.read_text(encoding="utf-8"))
        if not isinstance(products, dict):
            raise ValueError("products file must contain a JSON object of product id -> attributes")
        if not isinstance(control.feed, InMemoryFeedCatalog):
            raise RuntimeError("the configured feed cannot be seeded")
        for product_id, fields in products.items():
            control.feed.upsert(str(product_id), fields)
        control.save()
        return {"seeded": sorted(products)}
    if command == "ingest":
        offer = control.ingest(load_agent_result(args.result_file))
        return _handle_offer(control, offer, args.accept)
    if command == "analyze":
        agent = LLMAnalysisAgent(model_name=settings.analysis_model)
        result, offer = control.analyze(args.store_identifier, agent)
        payload = _handle_offer(control, offer, args.accept)
        payload["analysis"] = result.analysis
        payload["recommendations"] = result.recommendations
        return payload
    if command == "grant":
        mode = AutomationMode(args.mode) if args.mode else settings.default_automation_mode
        return control.grant(mode)
    if command == "revoke":
        return control.revoke()
    if command == "mode":
        return control.set_mode(AutomationMode(args.mode))
    if command == "run":
        if args.watch:
            stop = threading.Event()
            try:
                control.engine.run_forever(stop)
            except KeyboardInterrupt:
                stop.set()
            control.save()
            return {"queue": control.queue_items()}
        outcomes = control.run_pending()
        return [{"priority": o.priority, "result": o.result.value, "entry": o.entry} for o in outcomes]
    if command in {"approve", "reject", "pause", "resume", "remove"}:
        return getattr(control, command)(args.priority)
    if command == "ledger":
        return list(control.ledger_entries(LedgerStatus(args.status) if args.status else None))
    if command == "rollback":
        return control.rollback(args.entry_id)
    raise ValueError(f"unknown command: {command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = AutopilotSettings.from_env()
        state_root = args.state_root if args.state_root is not None else settings.state_store_path(Path.cwd())
        store = AutopilotStateStore(state_root, account_id=args.account_id or settings.account_id)
        control = AutopilotControl.open(store, settings=settings)
        payload = run_command(args, control, settings)
    except AutopilotError as exc:
        logging.error("%s: %s", type(exc).__name__, exc)
        return 2
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to complete %s: %s", args.command, exc)
        return 1

    _emit(payload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
