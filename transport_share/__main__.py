"""CLI entry point for transport-share."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import load_config
from .exceptions import ConfigError, InvalidEventError, TransportShareError
from .node import Node, run_node
from .sync import EventKind


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

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

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
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the device: sync server, connectivity monitor, discovery, sync loop."""
    config = load_config(args.config)

    print(f"Starting transport-share device: {config.device.id}")
    print(f"Event log: {config.storage.db_path}")
    print(f"Sync API: http://{config.server.host}:{config.server.port}")
    print(f"Peers: {len(config.peers)} configured", end="")
    if config.discovery.enabled:
        print(" (+ mDNS discovery)")
    else:
        print()

    try:
        await run_node(config)
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


def cmd_append(args: argparse.Namespace) -> int:
    """Append a local event."""
    config = load_config(args.config)
    node = Node(config)

    try:
        payload = args.payload.encode("utf-8") if args.payload else b""
        event = node.log.create(EventKind(args.kind), args.resource, payload)
    except InvalidEventError as e:
        print(f"Rejected: {e}", file=sys.stderr)
        return 1
    finally:
        node.log.close()
        node.cursors.close()

    print(json.dumps(event.to_dict(), indent=2))
    return 0


def cmd_log(args: argparse.Namespace) -> int:
    """Print events after a cursor."""
    config = load_config(args.config)
    node = Node(config)

    try:
        events = node.log.since(args.since).take(args.limit)
    except InvalidEventError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        node.log.close()
        node.cursors.close()

    if args.json:
        print(json.dumps([e.to_dict() for e in events], indent=2))
        return 0

    for e in events:
        print(
            f"{e.clock:>6}  {e.device_id:<20} {e.kind.value:<12} "
            f"{e.resource_id:<24} {e.id}"
        )
    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Sync once with one or all configured peers."""
    config = load_config(args.config)
    node = Node(config)

    try:
        if args.peer:
            results = {args.peer: await _sync_one(node, args.peer)}
        else:
            results = await node.coordinator.sync_all()
    finally:
        node.log.close()
        node.cursors.close()

    if not results:
        print("No peers configured")
        return 1

    exit_code = 0
    for peer_id, outcome in results.items():
        if isinstance(outcome, TransportShareError):
            print(f"{peer_id}: FAILED ({outcome})")
            exit_code = 1
        else:
            print(
                f"{peer_id}: sent={outcome.sent} received={outcome.received} "
                f"conflicts={outcome.conflicts} attempts={outcome.attempts}"
            )
    return exit_code


async def _sync_one(node: Node, peer_id: str):
    try:
        return await node.coordinator.sync_with(peer_id)
    except TransportShareError as e:
        return e


def cmd_status(args: argparse.Namespace) -> int:
    """Show log and sync status."""
    config = load_config(args.config)
    node = Node(config)

    try:
        status = {
            "timestamp": datetime.now().isoformat(),
            "device": {"id": config.device.id, "name": config.device.name},
            "log": node.log.get_stats(),
            "sync": node.coordinator.get_sync_status(),
        }
    finally:
        node.log.close()
        node.cursors.close()

    if args.json:
        print(json.dumps(status, indent=2))
        return 0

    log_stats = status["log"]
    print(f"Device: {config.device.id} ({config.device.name})")
    print(f"Clock: {log_stats['clock']}")
    print(
        f"Events: {log_stats['live_events']} live, "
        f"{log_stats['compacted_events']} compacted, "
        f"{log_stats['resources']} resources"
    )
    print("Peers:")
    peers = status["sync"]["peers"]
    if not peers:
        print("  (none)")
    for peer_id, info in peers.items():
        print(
            f"  {peer_id}: {info['transport']} "
            f"acked={info['last_acked_event_id']} "
            f"received={info['last_received_event_id']}"
        )
    return 0


def cmd_compact(args: argparse.Namespace) -> int:
    """Compact events acknowledged by all configured peers."""
    config = load_config(args.config)
    node = Node(config)

    try:
        compacted = node.coordinator.compact()
    finally:
        node.log.close()
        node.cursors.close()

    print(f"Compacted {compacted} events")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="transport-share",
        description="Local-first sync of transport events between devices",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
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
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Run the device and its sync server")
    run_parser.set_defaults(func=cmd_run)

    append_parser = subparsers.add_parser("append", help="Append a local event")
    append_parser.add_argument(
        "kind",
        choices=[k.value for k in EventKind],
        help="Event kind",
    )
    append_parser.add_argument("resource", help="Resource id (e.g. trip:42)")
    append_parser.add_argument(
        "-p", "--payload",
        default="",
        help="Event payload (stored as UTF-8)",
    )
    append_parser.set_defaults(func=cmd_append)

    log_parser = subparsers.add_parser("log", help="List events")
    log_parser.add_argument(
        "--since",
        default=None,
        help="Cursor: id of the last event already seen",
    )
    log_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=50,
        help="Maximum events to show (default: 50)",
    )
    log_parser.add_argument("--json", action="store_true", help="Output as JSON")
    log_parser.set_defaults(func=cmd_log)

    sync_parser = subparsers.add_parser("sync", help="Sync once with peers")
    sync_parser.add_argument(
        "--peer",
        default=None,
        help="Only sync with this peer id",
    )
    sync_parser.set_defaults(func=cmd_sync)

    status_parser = subparsers.add_parser("status", help="Show log and sync status")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")
    status_parser.set_defaults(func=cmd_status)

    compact_parser = subparsers.add_parser(
        "compact", help="Compact events acknowledged by all peers"
    )
    compact_parser.set_defaults(func=cmd_compact)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    try:
        if asyncio.iscoroutinefunction(func):
            return asyncio.run(func(args))
        return func(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
