"""Command line entry point.

Usage::

    python -m asa_ssh_fleet monitor
    python -m asa_ssh_fleet discover
    python -m asa_ssh_fleet start|stop|restart|backup NAME
    python -m asa_ssh_fleet shutdown NAME MINUTES
    python -m asa_ssh_fleet update NAME [--immediate]
    python -m asa_ssh_fleet all start|stop|restart|update|backup [--stagger SECONDS]
    python -m asa_ssh_fleet logs NAME
    python -m asa_ssh_fleet config NAME GameUserSettings.ini|Game.ini

Connection details come from the environment (see ``config.py``).
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from . import __version__
from .config import Settings, load_settings
from .errors import FleetError
from .events import (
    ConnectionLostEvent,
    Event,
    InstanceUpdated,
    OperationFinished,
    OperationOutput,
    OperationProgress,
    StatusTransition,
)
from .fleet import Fleet
from .game_config import KNOWN_FILES
from .lifecycle import CLUSTER_OPERATIONS
from .mqtt_bridge import MqttBridge

_LOGGER = logging.getLogger(__name__)


def _setup_logging(level: str) -> None:
    """Configure module wide logging."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    # paramiko is chatty at INFO.
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m asa_ssh_fleet",
        description="Manage ASA game server instances over SSH",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("monitor", help="Poll the fleet and print/publish changes until interrupted")
    sub.add_parser("discover", help="List the instances found on the host")
    for name in ("start", "stop", "restart", "backup"):
        p = sub.add_parser(name, help=f"{name.capitalize()} one instance")
        p.add_argument("name")
    p = sub.add_parser("shutdown", help="Save and schedule a delayed shutdown")
    p.add_argument("name")
    p.add_argument("minutes", type=int)
    p = sub.add_parser("update", help="Stop, update and start one instance")
    p.add_argument("name")
    p.add_argument("--immediate", action="store_true", help="Skip the waits around the update")
    p = sub.add_parser("all", help="Run one operation on every instance in turn")
    p.add_argument("operation", choices=CLUSTER_OPERATIONS)
    p.add_argument("--stagger", type=float, default=None, help="Seconds between instances")
    p = sub.add_parser("logs", help="Follow the live server log")
    p.add_argument("name")
    p = sub.add_parser("config", help="Print a game config file")
    p.add_argument("name")
    p.add_argument("file", choices=KNOWN_FILES)
    return parser


def _print_event(event: Event) -> None:
    if isinstance(event, OperationOutput):
        print(f"[{event.name}] {event.line}")
    elif isinstance(event, OperationProgress):
        print(f"[{event.name}] {event.message}")
    elif isinstance(event, OperationFinished):
        state = "done" if event.ok else f"failed: {event.error}"
        print(f"[{event.name}] {event.operation} {state}")
    elif isinstance(event, StatusTransition):
        print(f"[{event.name}] {event.previous.value} -> {event.current.value} ({event.kind.value})")
    elif isinstance(event, ConnectionLostEvent):
        print(f"Connection to {event.host} lost: {event.reason}")


async def _monitor(fleet: Fleet, settings: Settings) -> None:
    bridge = MqttBridge(
        settings.mqtt_host,
        settings.mqtt_port,
        settings.mqtt_user,
        settings.mqtt_pass,
        settings.mqtt_topic_prefix,
    )
    bridge.attach(fleet.bus)
    queue = fleet.bus.subscribe()
    fleet.monitor.start()
    try:
        while True:
            event = await queue.get()
            if isinstance(event, InstanceUpdated):
                st = event.snapshot.status
                _LOGGER.debug(
                    "%s: %s cpu=%.1f%% mem=%s players=%d/%d",
                    event.name,
                    st.status.value,
                    st.cpu_percent,
                    st.memory_usage or "-",
                    st.online_players,
                    st.max_players,
                )
            else:
                _print_event(event)
            if isinstance(event, ConnectionLostEvent):
                return
    finally:
        fleet.bus.unsubscribe(queue)
        bridge.detach()


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    fleet = Fleet(settings)
    try:
        found = await fleet.connect()
        if args.command == "discover":
            for snap in found:
                inst = snap.instance
                print(
                    f"{inst.name}\t{inst.bare_name}\t{inst.map_name}\t"
                    f"port={inst.server_port}\trcon={inst.rcon_port}\t{inst.directory_path}"
                )
            return 0
        if args.command == "monitor":
            await _monitor(fleet, settings)
            return 0
        if args.command == "config":
            print(await fleet.configs.read_text(args.name, args.file), end="")
            return 0
        if args.command == "logs":
            await fleet.lifecycle.stream_logs(args.name, print)
            return 0

        fleet.bus.add_listener(_print_event)
        lifecycle = fleet.lifecycle
        if args.command == "shutdown":
            await lifecycle.shutdown(args.name, args.minutes)
        elif args.command == "update":
            await lifecycle.update(args.name, immediate=args.immediate)
        elif args.command == "all":
            outcome = await lifecycle.run_for_all(args.operation, stagger=args.stagger)
            failed = {name: err for name, err in outcome.items() if err is not None}
            for name, err in failed.items():
                print(f"{name}: {err.kind}: {err}", file=sys.stderr)
            return 1 if failed else 0
        else:
            await getattr(lifecycle, args.command)(args.name)
        return 0
    finally:
        await fleet.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings()
    except ValueError as err:
        print(err, file=sys.stderr)
        return 1
    _setup_logging(settings.log_level)
    try:
        return asyncio.run(_run(args, settings))
    except FleetError as err:
        _LOGGER.error("%s: %s", err.kind, err)
        diagnostics = getattr(err, "diagnostics", None)
        for line in diagnostics or ():
            print(f"  {line}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
