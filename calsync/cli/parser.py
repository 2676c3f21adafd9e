"""Command-line argument parsing for calsync."""

import argparse
from datetime import datetime, timezone

from .. import __version__


def parse_datetime(value: str) -> datetime:
    """Parse an ISO 8601 date or date-time argument.

    Dates become midnight UTC and naive date-times are treated as UTC.

    Raises:
        argparse.ArgumentTypeError: If the value is not ISO 8601
    """
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as err:
        raise argparse.ArgumentTypeError(
            f"Invalid date/time: {value}. Use YYYY-MM-DD or YYYY-MM-DDTHH:MM[:SS][+HH:MM]"
        ) from err

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as err:
        raise argparse.ArgumentTypeError(f"Expected an integer, got {value!r}") from err
    if number < 1:
        raise argparse.ArgumentTypeError(f"Expected a positive integer, got {number}")
    return number


def create_parser() -> argparse.ArgumentParser:
    """Create the command line parser with one sub-command per operation.

    Returns:
        Configured ArgumentParser

    Example:
        >>> parser = create_parser()
        >>> args = parser.parse_args(["add", "acme", "Team", "webcal://example.com/team.ics"])
        >>> args.command
        'add'
    """
    parser = argparse.ArgumentParser(
        prog="calsync",
        description="calsync - external calendar subscription sync engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s add acme "Team calendar" webcal://example.com/team.ics
  %(prog)s list acme
  %(prog)s sync 3f2a...                  # Sync one subscription now
  %(prog)s busy acme --from 2024-05-01 --to 2024-05-08 --merge
  %(prog)s run                           # Run the scheduler until interrupted
        """,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", dest="config_file", metavar="FILE", help="YAML config file")
    parser.add_argument(
        "--database", dest="database_path", metavar="PATH", help="SQLite database path"
    )

    logging_group = parser.add_argument_group("logging", "Logging options")
    logging_group.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Log level for console and file output",
    )
    logging_group.add_argument("--verbose", "-v", action="store_true", help="Debug console output")
    logging_group.add_argument("--quiet", "-q", action="store_true", help="Errors only")
    logging_group.add_argument("--log-dir", metavar="DIR", help="Also log to rotating files in DIR")
    logging_group.add_argument("--no-log-colors", action="store_true", help="Disable colors")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    subparsers.add_parser("run", help="Run the sync scheduler until SIGINT/SIGTERM")

    add_parser = subparsers.add_parser("add", help="Create a subscription")
    add_parser.add_argument("tenant_id")
    add_parser.add_argument("name")
    add_parser.add_argument("url", help="Feed URL (http, https, webcal, webcals)")
    add_parser.add_argument("--frequency", type=positive_int, metavar="MINUTES", help="Sync frequency")
    add_parser.add_argument("--user", dest="user_id", help="Owning user within the tenant")
    add_parser.add_argument(
        "--validate", action="store_true", help="Fetch and validate the feed before saving"
    )

    update_parser = subparsers.add_parser("update", help="Update a subscription")
    update_parser.add_argument("subscription_id")
    update_parser.add_argument("--name")
    update_parser.add_argument("--frequency", type=positive_int, metavar="MINUTES")
    active_group = update_parser.add_mutually_exclusive_group()
    active_group.add_argument("--activate", dest="is_active", action="store_true", default=None)
    active_group.add_argument("--deactivate", dest="is_active", action="store_false")

    list_parser = subparsers.add_parser("list", help="List a tenant's subscriptions")
    list_parser.add_argument("tenant_id")
    list_parser.add_argument("--user", dest="user_id")

    remove_parser = subparsers.add_parser("remove", help="Delete a subscription and its events")
    remove_parser.add_argument("subscription_id")

    sync_parser = subparsers.add_parser("sync", help="Sync a subscription now")
    sync_parser.add_argument("subscription_id")

    events_parser = subparsers.add_parser("events", help="List a subscription's events")
    events_parser.add_argument("subscription_id")
    events_parser.add_argument("--upcoming", action="store_true", help="Only events starting from now")
    events_parser.add_argument("--limit", type=positive_int)
    events_parser.add_argument("--offset", type=int, default=0)

    busy_parser = subparsers.add_parser("busy", help="List a tenant's busy intervals")
    busy_parser.add_argument("tenant_id")
    busy_parser.add_argument("--from", dest="start", type=parse_datetime, required=True)
    busy_parser.add_argument("--to", dest="end", type=parse_datetime, required=True)
    busy_parser.add_argument("--merge", action="store_true", help="Merge overlapping intervals")
    busy_parser.add_argument("--user", dest="user_id", help="Only calendars owned by this user")

    import_parser = subparsers.add_parser("import", help="Import an .ics file once")
    import_parser.add_argument("tenant_id")
    import_parser.add_argument("file", help="Path to the .ics file")
    import_parser.add_argument("--name", help="Calendar name (defaults to the file's X-WR-CALNAME)")
    import_parser.add_argument("--user", dest="user_id")

    return parser


__all__ = ["create_parser", "parse_datetime", "positive_int"]
