"""CLI entry point for Quillsync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime

from .config import load_config
from .session import WriterSession


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # Safe JSON serialization
        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


async def cmd_status(args: argparse.Namespace) -> int:
    """Show pending changes and sync state."""
    config = load_config(args.config)
    session = WriterSession(config)
    await session.open()

    try:
        status_data = session.status()
        status_data["backend"] = config.backend.url or None
        status_data["storage"] = config.storage.db_path
    finally:
        await session.close()

    if args.json:
        print(json.dumps(status_data, indent=2, default=str))
        return 0

    print("Quillsync Status")
    print("================")
    print(f"Backend: {status_data['backend'] or 'not configured'}")
    print(f"Storage: {status_data['storage']}")
    print()
    print(f"Pending changes: {status_data['pending_total']}")
    for entity_type, count in status_data["pending"].items():
        print(f"  {entity_type}: {count}")

    last_success = status_data["last_sending_success"]
    if last_success:
        print(f"Last successful sending: {datetime.fromtimestamp(last_success / 1000).isoformat()}")
    else:
        print("Last successful sending: never")

    if status_data["documents"]:
        print()
        print("Documents:")
        for task_id, doc in status_data["documents"].items():
            print(f"  Task {task_id}: {doc['steps']} steps")

    return 0


async def cmd_flush(args: argparse.Namespace) -> int:
    """Send all pending changes once."""
    config = load_config(args.config)
    session = WriterSession(config)
    await session.open()

    try:
        for document in session.documents.values():
            await document.check(forced=args.full)
        result = await session.flush(wait=True)
    finally:
        await session.close()

    if result.success:
        print(f"Sent {result.sent} changes ({result.message})")
        return 0

    print(f"Sending failed: {result.message}", file=sys.stderr)
    return 1


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the periodic check and sync tasks until interrupted."""
    config = load_config(args.config)
    session = WriterSession(config)
    await session.open()

    print(f"Backend: {config.backend.url or 'not configured'}")
    print(f"Sync interval: {config.sync.interval_seconds}s")

    session.start()
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nShutting down...")
    finally:
        await session.flush(wait=True)
        await session.close()

    return 0


async def cmd_clear(args: argparse.Namespace) -> int:
    """Delete all local state."""
    config = load_config(args.config)
    session = WriterSession(config)
    await session.open()

    try:
        pending = session.ledger.count()
        if pending and not args.force:
            print(
                f"Refusing to clear: {pending} changes are not sent yet "
                "(use --force to discard them)",
                file=sys.stderr,
            )
            return 1
        await session.clear()
    finally:
        await session.close()

    print("Local state cleared")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Quillsync - offline-first change tracking and sync",
    )
    parser.add_argument(
        "-c", "--config",
        help="Path to config file",
        default=None,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        choices=["warning", "info", "debug"],
        help="Set log level (overrides --verbose)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Status command
    status_parser = subparsers.add_parser("status", help="Show pending changes")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Flush command
    flush_parser = subparsers.add_parser("flush", help="Send pending changes now")
    flush_parser.add_argument(
        "--full",
        action="store_true",
        help="Save a full snapshot of every document before sending",
    )
    flush_parser.set_defaults(func=cmd_flush)

    # Run command
    run_parser = subparsers.add_parser("run", help="Run the sync loop")
    run_parser.set_defaults(func=cmd_run)

    # Clear command
    clear_parser = subparsers.add_parser("clear", help="Delete all local state")
    clear_parser.add_argument(
        "--force",
        action="store_true",
        help="Also discard unsent changes",
    )
    clear_parser.set_defaults(func=cmd_clear)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.log_json)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
