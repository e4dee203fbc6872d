from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import orjson

from .api import Operation, default_state, dispatch
from .domain.models import parse_datetime
from .errors import CalendarError, ValidationError
from .logging import configure_logging


def _add_window(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", help="ISO-8601 window start; defaults to today at midnight.")
    parser.add_argument("--end", help="ISO-8601 window end; defaults to seven days after start.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="zerocal command line interface.")
    parser.add_argument("--user", required=True, help="User id to act for.")
    parser.add_argument("--log-level", default=None)
    subparsers = parser.add_subparsers(dest="command", required=True)

    events_parser = subparsers.add_parser("events", help="List merged events for a window.")
    _add_window(events_parser)

    search_parser = subparsers.add_parser("search", help="Search local and external events.")
    search_parser.add_argument("query")

    free_parser = subparsers.add_parser("free", help="Find free slots within working hours.")
    _add_window(free_parser)
    free_parser.add_argument("--duration", type=int, default=30, help="Minimum slot length in minutes.")
    free_parser.add_argument("--with", dest="participants", action="append", default=[])

    conflicts_parser = subparsers.add_parser("conflicts", help="Check a candidate time for conflicts.")
    conflicts_parser.add_argument("--start", required=True)
    conflicts_parser.add_argument("--end", required=True)
    conflicts_parser.add_argument("--buffer", type=int, default=0)

    subparsers.add_parser("sync", help="Backfill local events to the connected calendar.")

    tz_parser = subparsers.add_parser("timezone", help="Show or set the display timezone.")
    tz_parser.add_argument("zone", nargs="?")

    return parser


def _parse_when(value: str, flag: str) -> datetime:
    try:
        return parse_datetime(value)
    except ValueError as exc:
        raise ValidationError(f"{flag} must be an ISO-8601 date or datetime, got {value!r}") from exc


def _window(start: Optional[str], end: Optional[str]) -> Dict[str, str]:
    if start:
        lower = _parse_when(start, "--start")
    else:
        lower = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
    upper = _parse_when(end, "--end") if end else lower + timedelta(days=7)
    return {"start": lower.isoformat(), "end": upper.isoformat()}


def _run(args: argparse.Namespace) -> Dict[str, Any]:
    user = args.user
    if args.command == "events":
        return dispatch(Operation.GET_EVENTS, {"user_id": user, **_window(args.start, args.end)})
    if args.command == "search":
        return dispatch(Operation.SEARCH_EVENTS, {"user_id": user, "query": args.query})
    if args.command == "free":
        window = _window(args.start, args.end)
        if args.participants:
            participants: List[str] = [user, *args.participants]
            return dispatch(
                Operation.FIND_MEETING_TIME,
                {"user_ids": participants, "duration_minutes": args.duration, **window},
            )
        return dispatch(
            Operation.FIND_FREE_SLOTS,
            {"user_id": user, "min_duration_minutes": args.duration, **window},
        )
    if args.command == "conflicts":
        return dispatch(
            Operation.FIND_CONFLICTS,
            {"user_id": user, **_window(args.start, args.end), "buffer_minutes": args.buffer},
        )
    if args.command == "sync":
        return dispatch(Operation.SYNC_EXTERNAL, {"user_id": user})
    if args.command == "timezone":
        calendar = default_state().calendar
        if args.zone:
            calendar.set_display_zone(user, args.zone)
        return {"user_id": user, "timezone": calendar.display_zone(user)}
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    logger = logging.getLogger(__name__)
    try:
        result = _run(args)
    except CalendarError as exc:
        logger.error("%s failed: %s", args.command, exc)
        sys.stderr.write(orjson.dumps({"error": type(exc).__name__, "message": str(exc)}).decode() + "\n")
        return 1
    finally:
        default_state().close()
    sys.stdout.write(orjson.dumps(result, option=orjson.OPT_INDENT_2).decode() + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
