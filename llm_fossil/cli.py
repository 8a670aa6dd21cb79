"""llm-fossil CLI - usage reports, fossil queries and one-off calls.

Commands::

    llm-fossil report [--format text|json] [--days N] [--purpose P] [--provider P]
    llm-fossil fossils [--search S] [--type T] [--tag TAG ...] [--limit N] [--offset N]
    llm-fossil call --purpose P --context C [--value-score V] [--prefer auto|local|cloud] MESSAGE

Configuration comes from the environment (see ``llm_fossil.config``).

Exit codes: 0 success, 1 call answered by fallback, 2 invalid input.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from pydantic import ValidationError

from llm_fossil.config import RoutingPreference, Settings, get_settings
from llm_fossil.core.errors import LLMFossilError
from llm_fossil.fossils import FossilQuery
from llm_fossil.service import LLMService
from llm_fossil.telemetry import configure_logging
from llm_fossil.usage import render_text

EXIT_OK = 0
EXIT_FALLBACK = 1
EXIT_INVALID = 2


def _err(msg: str) -> None:
    print(f"error: {msg}", file=sys.stderr)


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


async def cmd_report(args: argparse.Namespace, settings: Settings) -> int:
    """Print usage analytics computed from the usage log."""
    async with LLMService(settings) as service:
        report = await service.usage_report(
            days=args.days,
            purpose=args.purpose,
            provider=args.provider,
        )

    if args.format == "json":
        print(report.model_dump_json(indent=2))
    else:
        print(render_text(report), end="")
    return EXIT_OK


async def cmd_fossils(args: argparse.Namespace, settings: Settings) -> int:
    """List fossils matching the given filters."""
    query = FossilQuery(
        search=args.search,
        type=args.type,
        tags=args.tag or None,
        limit=args.limit,
        offset=args.offset,
    )
    async with LLMService(settings) as service:
        fossils = await service.fossils.query(query)

    if args.format == "json":
        print(json.dumps([fossil.model_dump(mode="json") for fossil in fossils], indent=2))
        return EXIT_OK

    if not fossils:
        print("No fossils found.")
        return EXIT_OK
    for fossil in fossils:
        tags = ",".join(fossil.tags)
        print(f"{fossil.id}  v{fossil.version}  {fossil.type}  {fossil.title}  [{tags}]")
    return EXIT_OK


async def cmd_call(args: argparse.Namespace, settings: Settings) -> int:
    """Run a single call and print its text."""
    messages = [{"role": "user", "content": args.message}]
    if args.system:
        messages.insert(0, {"role": "system", "content": args.system})

    raw: dict[str, object] = {
        "messages": messages,
        "purpose": args.purpose,
        "context": args.context,
        "force_refresh": args.force_refresh,
    }
    if args.value_score is not None:
        raw["value_score"] = args.value_score
    if args.prefer is not None:
        raw["routing_preference"] = args.prefer

    async with LLMService(settings) as service:
        result = await service.call(raw)

    if args.format == "json":
        payload = {
            "text": result.text,
            "success": result.success,
            "provider": result.provider,
            "fingerprint": result.fingerprint,
            "call_id": result.call_id,
            "prompt_tokens": result.prompt_tokens,
            "completion_tokens": result.completion_tokens,
            "cost": result.cost,
            "fallback": result.fallback,
            "deduplicated": result.deduplicated,
            "error_kind": result.error_kind.value if result.error_kind else None,
            "attempts": result.attempts,
            "fossil_id": result.fossil_id,
        }
        print(json.dumps(payload, indent=2))
    else:
        print(result.text)

    if result.fallback:
        _err(f"call fell back ({result.error_kind}): {result.error_message}")
        return EXIT_FALLBACK
    return EXIT_OK


# ------------------------------------------------------------------ #
# Argument parsing
# ------------------------------------------------------------------ #


def _value_score(raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not a number: {raw!r}") from exc
    if not 0.0 <= value <= 1.0:
        raise argparse.ArgumentTypeError("value score must be within [0, 1]")
    return value


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an integer: {raw!r}") from exc
    if value < 0:
        raise argparse.ArgumentTypeError("must not be negative")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llm-fossil",
        description="Budgeted LLM calls with a deduplicating fossil ledger",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    report = sub.add_parser("report", help="Show LLM usage analytics")
    report.add_argument("--format", choices=["text", "json"], default="text")
    report.add_argument("--days", type=_positive_int, default=None, help="Only the last N days")
    report.add_argument("--purpose", default=None, help="Only calls with this purpose")
    report.add_argument("--provider", default=None, help="Only calls served by this provider")
    report.set_defaults(handler=cmd_report)

    fossils = sub.add_parser("fossils", help="Query stored fossils")
    fossils.add_argument("--search", default=None, help="Case-insensitive text search")
    fossils.add_argument("--type", default=None, help="Exact fossil type")
    fossils.add_argument("--tag", action="append", default=[], help="Match any tag (repeatable)")
    fossils.add_argument("--limit", type=_positive_int, default=100)
    fossils.add_argument("--offset", type=_positive_int, default=0)
    fossils.add_argument("--format", choices=["text", "json"], default="text")
    fossils.set_defaults(handler=cmd_fossils)

    call = sub.add_parser("call", help="Run one LLM call")
    call.add_argument("message", help="User message content")
    call.add_argument("--purpose", required=True)
    call.add_argument("--context", required=True)
    call.add_argument("--system", default=None, help="Optional system message")
    call.add_argument("--value-score", type=_value_score, default=None)
    call.add_argument(
        "--prefer",
        choices=[preference.value for preference in RoutingPreference],
        default=None,
    )
    call.add_argument("--force-refresh", action="store_true")
    call.add_argument("--format", choices=["text", "json"], default="text")
    call.set_defaults(handler=cmd_call)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        # argparse exits with 2 on usage errors and 0 for --help
        return int(exc.code or 0)

    try:
        settings = get_settings()
    except ValidationError as exc:
        _err(f"invalid configuration: {exc}")
        return EXIT_INVALID

    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)

    try:
        return asyncio.run(args.handler(args, settings))
    except (LLMFossilError, ValidationError) as exc:
        _err(str(exc))
        return EXIT_INVALID


if __name__ == "__main__":
    sys.exit(main())
