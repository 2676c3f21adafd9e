"""Command implementations for the calsync CLI."""

import argparse
import asyncio
import contextlib
import logging
import signal
from pathlib import Path

from ..service import CalendarSyncService
from ..store.models import StoredEvent, Subscription
from ..utils.helpers import format_duration, truncate_string

logger = logging.getLogger(__name__)


def _format_subscription(subscription: Subscription) -> str:
    status = "active" if subscription.is_active else "inactive"
    synced = subscription.last_synced_at.isoformat() if subscription.last_synced_at else "never"
    line = (
        f"{subscription.id}  {subscription.name}  [{status}, every "
        f"{format_duration(subscription.sync_frequency_minutes * 60)}]  {subscription.url}  "
        f"last sync: {synced}"
    )
    if subscription.last_error:
        line += f"  error ({subscription.consecutive_failures}x): {subscription.last_error}"
    return line


def _format_event(event: StoredEvent) -> str:
    if event.all_day:
        when = f"{event.start.date().isoformat()} (all day)"
    elif event.end is not None:
        when = f"{event.start.isoformat()} - {event.end.isoformat()}"
    else:
        when = event.start.isoformat()
    title = truncate_string(event.title or "(no title)", 60)
    location = f"  @ {truncate_string(event.location, 40)}" if event.location else ""
    return f"{when}  {title}{location}"


async def run_scheduler(service: CalendarSyncService) -> int:
    """Run the scheduler until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _on_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _on_signal)

    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()
    return 0


async def run_command(service: CalendarSyncService, args: argparse.Namespace) -> int:
    """Dispatch a parsed sub-command.

    Returns:
        Process exit code
    """
    command = args.command

    if command == "run":
        return await run_scheduler(service)

    if command == "add":
        subscription = await service.create_subscription(
            args.tenant_id,
            args.name,
            args.url,
            sync_frequency_minutes=args.frequency,
            user_id=args.user_id,
            validate_feed=args.validate,
        )
        print(_format_subscription(subscription))
        return 0

    if command == "update":
        subscription = await service.update_subscription(
            args.subscription_id,
            name=args.name,
            sync_frequency_minutes=args.frequency,
            is_active=args.is_active,
        )
        print(_format_subscription(subscription))
        return 0

    if command == "list":
        subscriptions = await service.list_subscriptions(args.tenant_id, user_id=args.user_id)
        for subscription in subscriptions:
            print(_format_subscription(subscription))
        if not subscriptions:
            print("No subscriptions")
        return 0

    if command == "remove":
        await service.delete_subscription(args.subscription_id)
        print(f"Deleted {args.subscription_id}")
        return 0

    if command == "sync":
        result = await service.sync_now(args.subscription_id)
        suffix = " (not modified)" if result.not_modified else ""
        print(
            f"Synced {result.subscription_id}: {result.added} added, {result.updated} updated, "
            f"{result.deleted} deleted{suffix}"
        )
        for warning in result.warnings:
            print(f"  warning: {warning}")
        return 0

    if command == "events":
        events = await service.list_events(
            args.subscription_id, upcoming_only=args.upcoming, limit=args.limit, offset=args.offset
        )
        for event in events:
            print(_format_event(event))
        if not events:
            print("No events")
        return 0

    if command == "busy":
        intervals = await service.list_busy_intervals(
            args.tenant_id, args.start, args.end, merge=args.merge, user_id=args.user_id
        )
        for interval in intervals:
            end = interval.end.isoformat() if interval.end else "(instant)"
            label = f"  {interval.title}" if interval.title else ""
            print(f"{interval.start.isoformat()} - {end}{label}")
        if not intervals:
            print("No busy intervals")
        return 0

    if command == "import":
        content = Path(args.file).read_bytes()
        result = await service.import_ics(args.tenant_id, args.name, content, user_id=args.user_id)
        print(f"Imported {result.imported} events into {result.subscription.id} ({result.subscription.name})")
        for warning in result.warnings:
            print(f"  warning: {warning}")
        return 0

    raise ValueError(f"Unknown command: {command}")
