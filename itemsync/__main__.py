"""CLI entry point for itemsync."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from .auth import Credentials
from .config import Config, load_config
from .errors import ItemSyncError
from .models import Item
from .remote import ItemEventClient, ItemService
from .store import ItemStore
from .sync import ResyncDriver, ResyncOutcome, SyncEngine, SyncScheduler

logger = logging.getLogger(__name__)

# Delay before reopening an event stream that ended on its own
STREAM_REOPEN_DELAY_SECONDS = 5.0

LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

# Libraries that log every request or packet at INFO/DEBUG
NOISY_LOGGERS = ("httpx", "httpcore")


def _current_task_name() -> str | None:
    try:
        task = asyncio.current_task()
    except RuntimeError:
        # paho network thread, no running loop
        return None
    return task.get_name() if task else None


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Records from paho's network thread carry ``thread``; records logged
    inside an asyncio task carry ``task`` so a resync job or mutation can be
    followed across lines.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if record.threadName != "MainThread":
            entry["thread"] = record.threadName
        if task_name := _current_task_name():
            entry["task"] = task_name
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Install a single stderr handler on the root logger.

    ``log_level`` wins over ``verbose``. The default is WARNING, so a
    one-shot command only prints its own output unless something failed.
    """
    if log_level:
        level = LOG_LEVELS.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.WARNING

    handler = logging.StreamHandler()
    handler.setFormatter(
        JSONFormatter()
        if json_output
        else logging.Formatter(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    logging.basicConfig(level=level, handlers=[handler])

    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


class App:
    """Wires the store, clients and engine from a Config."""

    def __init__(self, config: Config):
        self.config = config
        self.credentials = Credentials(config.auth.token)
        self.store = ItemStore(config.store.db_path)
        self.service = ItemService(config.server, self.credentials)
        self.event_client = ItemEventClient(config.events) if config.events.enabled else None
        if self.event_client:
            self.event_client.authorize(config.auth.token)
        self.engine = SyncEngine(
            store=self.store,
            service=self.service,
            event_client=self.event_client,
            credentials=self.credentials,
            settle_delay=config.sync.settle_delay_seconds,
            event_queue_size=config.events.queue_size,
        )
        self.driver = ResyncDriver(self.engine)
        self.scheduler = SyncScheduler(
            self.driver,
            connectivity=self.service.check_connection,
            max_backoff_seconds=config.sync.max_backoff_seconds,
            connectivity_poll_seconds=config.sync.connectivity_poll_seconds,
        )

    async def __aenter__(self) -> "App":
        self.store.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.engine.close_event_stream()
        await self.scheduler.cancel_sync()
        await self.engine.drain()
        await self.service.close()
        self.store.close()


def _format_item(item: Item) -> str:
    done = "x" if item.is_completed else " "
    due = f" (due {item.due_date:%Y-%m-%d %H:%M})" if item.due_date else ""
    return f"[{done}] {item.id}  {item.text}{due}  p{item.priority}  {item.sync_status.value}"


def _item_json(item: Item) -> dict:
    data = item.to_dict()
    data["syncStatus"] = item.sync_status.value
    return data


async def _event_stream_loop(app: App, stop_event: asyncio.Event) -> None:
    """Keep one event stream open, reopening it after it ends."""
    while not stop_event.is_set():
        await app.engine.open_event_stream()
        if stop_event.is_set():
            break
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=STREAM_REOPEN_DELAY_SECONDS)
        except asyncio.TimeoutError:
            logger.info("Reopening event stream")
            # Catch up on whatever the closed stream missed
            await app.engine.refresh()


async def _connectivity_loop(
    app: App, stop_event: asyncio.Event, poll_seconds: float
) -> None:
    """Probe the server and schedule a resync when it becomes reachable again."""
    while not stop_event.is_set():
        app.scheduler.on_connectivity_changed(await app.service.check_connection())
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=poll_seconds)
        except asyncio.TimeoutError:
            pass


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the event stream and periodic resync until interrupted."""
    config = load_config(args.config)

    print(f"Server: {config.server.base_url}")
    print(f"Store: {config.store.db_path}")
    if config.events.enabled:
        print(f"Events: {config.events.broker}:{config.events.port} ({config.events.topic})")
    else:
        print("Events: disabled")

    stop_event = asyncio.Event()

    try:
        async with App(config) as app:
            if config.sync.refresh_on_start:
                await app.engine.refresh()

            tasks = [
                asyncio.create_task(
                    app.scheduler.run_periodic(
                        config.sync.resync_interval_minutes * 60, stop_event
                    )
                ),
                asyncio.create_task(
                    _connectivity_loop(
                        app, stop_event, config.sync.connectivity_poll_seconds
                    )
                ),
            ]
            if app.event_client:
                tasks.append(asyncio.create_task(_event_stream_loop(app, stop_event)))

            try:
                await asyncio.gather(*tasks)
            finally:
                stop_event.set()
                app.engine.close_event_stream()
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nShutting down...")
    except ItemSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one resync pass."""
    config = load_config(args.config)

    async with App(config) as app:
        result = await app.driver.run_resync()

    print(
        f"Resync {result.outcome.value}: {result.succeeded} synced, "
        f"{result.failed} failed, {result.skipped} skipped"
    )
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)

    return {
        ResyncOutcome.SUCCESS: 0,
        ResyncOutcome.FAILURE: 1,
        ResyncOutcome.RETRY: 2,
    }[result.outcome]


async def cmd_refresh(args: argparse.Namespace) -> int:
    """Pull the full item list from the server."""
    config = load_config(args.config)

    async with App(config) as app:
        ok = await app.engine.refresh()

    print("Refreshed from server" if ok else "Refresh failed (server unreachable?)")
    return 0 if ok else 1


async def cmd_list(args: argparse.Namespace) -> int:
    """List local items."""
    config = load_config(args.config)

    async with App(config) as app:
        items = await app.store.get_all_active()

    if args.json_output:
        print(json.dumps([_item_json(item) for item in items], indent=2))
    elif not items:
        print("No items")
    else:
        for item in items:
            print(_format_item(item))
    return 0


def _parse_due(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


async def cmd_add(args: argparse.Namespace) -> int:
    """Create an item."""
    config = load_config(args.config)

    item = Item(
        text=args.text,
        description=args.description or "",
        due_date=_parse_due(args.due),
        priority=args.priority,
    )

    async with App(config) as app:
        saved = await app.engine.save(item)

    print(_format_item(saved))
    return 0


async def cmd_update(args: argparse.Namespace) -> int:
    """Edit an existing item."""
    config = load_config(args.config)

    async with App(config) as app:
        item = await app.store.get(args.id)
        if item is None:
            print(f"No item with id {args.id}", file=sys.stderr)
            return 1

        if args.text is not None:
            item.text = args.text
        if args.description is not None:
            item.description = args.description
        if args.due is not None:
            item.due_date = _parse_due(args.due)
        if args.priority is not None:
            item.priority = args.priority
        if args.completed is not None:
            item.is_completed = args.completed

        updated = await app.engine.update(item)

    print(_format_item(updated))
    return 0


async def cmd_delete(args: argparse.Namespace) -> int:
    """Delete an item."""
    config = load_config(args.config)

    async with App(config) as app:
        purged = await app.engine.delete(args.id)

    print("Deleted" if purged else "Marked for deletion, will sync later")
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show server reachability and local sync state."""
    config = load_config(args.config)

    async with App(config) as app:
        reachable = await app.service.check_connection()
        stats = app.store.get_stats()

    status = {
        "server": {"url": config.server.base_url, "reachable": reachable},
        "events": {
            "enabled": config.events.enabled,
            "broker": f"{config.events.broker}:{config.events.port}",
            "topic": config.events.topic,
        },
        "store": {"path": config.store.db_path, **stats},
    }

    if args.json_output:
        print(json.dumps(status, indent=2))
        return 0

    print(f"Server: {config.server.base_url} ({'reachable' if reachable else 'unreachable'})")
    if config.events.enabled:
        print(f"Events: {config.events.broker}:{config.events.port} ({config.events.topic})")
    else:
        print("Events: disabled")
    print(f"Items: {stats['total_items']} total, {stats['pending_items']} pending")
    for name, count in sorted(stats["items_by_status"].items()):
        print(f"  {name}: {count}")
    return 0


def _bool_arg(value: str) -> bool:
    if value.lower() in ("true", "1", "yes"):
        return True
    if value.lower() in ("false", "0", "no"):
        return False
    raise argparse.ArgumentTypeError(f"Expected true/false, got {value!r}")


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="itemsync",
        description="Local-first item store synchronized with a remote server",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: none, built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Stream changes and resync in the background")
    run_parser.set_defaults(func=cmd_run)

    sync_parser = subparsers.add_parser("sync", help="Push pending items to the server once")
    sync_parser.set_defaults(func=cmd_sync)

    refresh_parser = subparsers.add_parser("refresh", help="Pull all items from the server")
    refresh_parser.set_defaults(func=cmd_refresh)

    list_parser = subparsers.add_parser("list", help="List local items")
    list_parser.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        help="Output items as JSON",
    )
    list_parser.set_defaults(func=cmd_list)

    add_parser = subparsers.add_parser("add", help="Create an item")
    add_parser.add_argument("text", help="Item title")
    add_parser.add_argument("-d", "--description", default=None)
    add_parser.add_argument("--due", default=None, help="Due date (ISO 8601)")
    add_parser.add_argument("-p", "--priority", type=int, default=0)
    add_parser.set_defaults(func=cmd_add)

    update_parser = subparsers.add_parser("update", help="Edit an item")
    update_parser.add_argument("id", help="Item id")
    update_parser.add_argument("-t", "--text", default=None)
    update_parser.add_argument("-d", "--description", default=None)
    update_parser.add_argument("--due", default=None, help="Due date (ISO 8601)")
    update_parser.add_argument("-p", "--priority", type=int, default=None)
    update_parser.add_argument("--completed", type=_bool_arg, default=None)
    update_parser.set_defaults(func=cmd_update)

    delete_parser = subparsers.add_parser("delete", help="Delete an item")
    delete_parser.add_argument("id", help="Item id")
    delete_parser.set_defaults(func=cmd_delete)

    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json)

    if not args.command:
        parser.print_help()
        return 1

    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
