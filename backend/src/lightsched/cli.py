"""Command-line helpers for previewing cron expressions and serving the API."""

from __future__ import annotations

import argparse
import json
from collections.abc import Iterable
from datetime import UTC, datetime

from .cron import iter_fire_times, resolve_timezone
from .errors import StoreUnavailableError, ValidationError
from .store import get_schedule_store
from .utils import configure_logging, logger

EXIT_INVALID = 2


def _dump_json(data: object, *, print_fn=print) -> None:
    formatted = json.dumps(data, indent=2, sort_keys=True, default=str)
    print_fn(formatted)


def _parse_after(raw: str | None) -> datetime:
    if not raw:
        return datetime.now(UTC)
    value = datetime.fromisoformat(raw)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def preview_fire_times(
    expression: str,
    *,
    timezone: str = "UTC",
    count: int = 5,
    after: str | None = None,
    print_fn=print,
) -> int:
    """Print the next ``count`` fire instants for ``expression`` in UTC and local time."""
    try:
        reference = _parse_after(after)
    except ValueError as exc:
        print_fn(f"Invalid --after value: {exc}")
        return EXIT_INVALID

    try:
        instants = list(iter_fire_times(expression, timezone, reference, count))
        zone = resolve_timezone(timezone)
    except ValidationError as exc:
        logger.bind(field=exc.field).debug("Rejected cron expression")
        print_fn(f"Invalid schedule: {exc}")
        return EXIT_INVALID

    for instant in instants:
        print_fn(f"{instant.isoformat()}  {instant.astimezone(zone).isoformat()}")
    return 0


def list_schedules(*, print_fn=print) -> int:
    """Print every persisted schedule as JSON."""
    try:
        definitions = get_schedule_store().list_all()
    except StoreUnavailableError as exc:
        logger.exception("Failed to list schedules")
        raise SystemExit(f"Schedule store error: {exc}") from exc

    if not definitions:
        print_fn("No schedules found.")
        return 0

    _dump_json(
        {
            "total": len(definitions),
            "schedules": [
                definition.model_dump(mode="json", by_alias=True)
                for definition in definitions
            ],
        },
        print_fn=print_fn,
    )
    return 0


def serve(host: str, port: int) -> int:
    import uvicorn

    uvicorn.run("lightsched.app:app", host=host, port=port)
    return 0


def main(argv: Iterable[str] | None = None, *, print_fn=print) -> int:
    parser = argparse.ArgumentParser(
        description="Preview cron schedules, list stored schedules, or run the API."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    next_parser = subparsers.add_parser("next", help="Show upcoming fire times.")
    next_parser.add_argument("expression", help='Cron expression, e.g. "0 7 * * *".')
    next_parser.add_argument(
        "-t",
        "--timezone",
        default="UTC",
        help="IANA timezone the expression is evaluated in.",
    )
    next_parser.add_argument(
        "-n",
        "--count",
        type=int,
        default=5,
        help="Number of fire times to print.",
    )
    next_parser.add_argument(
        "--after",
        help="ISO-8601 reference instant; defaults to now. Naive values are UTC.",
    )

    subparsers.add_parser("list", help="List persisted schedules.")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API.")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging()

    if args.command == "next":
        if args.count < 1:
            parser.error("--count must be at least 1")
        return preview_fire_times(
            args.expression,
            timezone=args.timezone,
            count=args.count,
            after=args.after,
            print_fn=print_fn,
        )
    if args.command == "list":
        return list_schedules(print_fn=print_fn)
    return serve(args.host, args.port)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
