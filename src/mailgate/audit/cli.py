"""Command-line queries over the security audit trail.

Filters by agent, sender, event type and date range, with a ``--last``
shorthand for recent windows.  Output is a table (default) or JSON.

Usage::

    mailgate-audit --agent todo --last 24h
    python -m mailgate.audit.cli --event-type security_block --format json
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from mailgate.audit.models import EventType
from mailgate.audit.store import close_audit_db, init_audit_db, query_audit_trail

_UNITS: dict[str, str] = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for audit trail queries."""
    parser = argparse.ArgumentParser(description="Query the mailgate security audit trail")

    parser.add_argument("--agent", type=str, help="Filter by agent name")
    parser.add_argument("--sender", type=str, help="Filter by sender address")
    parser.add_argument(
        "--event-type",
        type=str,
        choices=[e.value for e in EventType],
        help="Filter by event type",
    )
    parser.add_argument("--from-date", type=str, help="Start (YYYY-MM-DD or ISO 8601)")
    parser.add_argument("--to-date", type=str, help="End (YYYY-MM-DD or ISO 8601)")
    parser.add_argument(
        "--last",
        type=str,
        help='Only entries newer than a duration, e.g. "30m", "24h", "7d", "2w"',
    )
    parser.add_argument(
        "--format",
        type=str,
        choices=["table", "json"],
        default="table",
        dest="output_format",
        help="Output format (default: table)",
    )
    parser.add_argument("--limit", type=int, default=50, help="Maximum results (default: 50)")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the audit database (default: AUDIT_DB_PATH setting)",
    )
    return parser


def parse_last_duration(last: str, now: datetime | None = None) -> str:
    """Convert a shorthand duration into the ISO 8601 timestamp that far back.

    Args:
        last: A positive integer followed by ``m``, ``h``, ``d`` or ``w``.
        now: Reference time; defaults to the current UTC time.

    Raises:
        ValueError: If the format is not recognized.
    """
    unit = _UNITS.get(last[-1:]) if last else None
    amount = last[:-1]
    if unit is None or not amount.isdigit():
        raise ValueError(
            f"Unrecognized duration {last!r}; use a number followed by one of m, h, d, w"
        )
    now = now or datetime.now(tz=UTC)
    since = now - timedelta(**{unit: int(amount)})
    return since.strftime("%Y-%m-%dT%H:%M:%SZ")


def format_table(results: list[dict[str, Any]]) -> str:
    """Render audit rows as a fixed-width table, truncating long cells."""
    if not results:
        return "No results found."

    columns = [
        ("Timestamp", "timestamp", 20),
        ("Event", "event_type", 19),
        ("Agent", "agent_name", 10),
        ("Sender", "sender", 28),
        ("Policy", "policy", 18),
        ("Reason", "reason", 40),
    ]

    def cell(value: Any, width: int) -> str:
        text = "" if value is None else str(value)
        return text if len(text) <= width else text[: width - 3] + "..."

    header = "  ".join(title.ljust(width) for title, _, width in columns)
    lines = [header, "-" * len(header)]
    for row in results:
        lines.append(
            "  ".join(cell(row.get(key), width).ljust(width) for _, key, width in columns)
        )
    return "\n".join(lines)


def format_json(results: list[dict[str, Any]]) -> str:
    """Render audit rows as pretty-printed JSON."""
    return json.dumps(results, indent=2, default=str)


def main(argv: Sequence[str] | None = None) -> int:
    """Run one audit query and print the results.

    Returns:
        The process exit code.
    """
    args = build_parser().parse_args(argv)

    from_date = args.from_date
    if args.last:
        try:
            from_date = parse_last_duration(args.last)
        except ValueError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 2

    db_path: Path | None = args.db
    if db_path is None:
        from mailgate.config import get_settings

        db_path = get_settings().audit_db_path
    if not db_path.exists():
        print(f"error: audit database not found: {db_path}", file=sys.stderr)
        return 1

    conn = init_audit_db(db_path)
    try:
        results = query_audit_trail(
            conn,
            agent_name=args.agent,
            sender=args.sender,
            event_type=args.event_type,
            from_date=from_date,
            to_date=args.to_date,
            limit=args.limit,
        )
    finally:
        close_audit_db(conn)

    print(format_json(results) if args.output_format == "json" else format_table(results))
    return 0


if __name__ == "__main__":
    sys.exit(main())
