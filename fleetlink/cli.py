"""Command-line interface for fleetlink."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from . import constants
from .app import FleetLinkApp, FleetLinkContext
from .config import FleetLinkConfig, load_config
from .core import (
    DeviceBusyError,
    DeviceNotConnectedError,
    FleetLinkError,
    TaskDefinitionError,
)
from .logging import configure_logging
from .tasks import TaskRunResult, TaskStep, parse_steps
from .telemetry import Event

LOGGER = logging.getLogger(__name__)


def _device_ref(value: str) -> int | str:
    return int(value) if value.isdigit() else value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleetlink", description="Realtime telemetry and command client for drone fleets"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    monitor_parser = subparsers.add_parser(
        "monitor", help="Stream telemetry and print events as JSON lines"
    )
    monitor_parser.add_argument(
        "devices",
        nargs="*",
        type=_device_ref,
        help="Device ids or uuids whose command channels should be opened",
    )
    monitor_parser.add_argument(
        "--duration", type=float, default=None, help="Stop after this many seconds"
    )

    send_parser = subparsers.add_parser("send", help="Send one command to a device")
    send_parser.add_argument("device", type=_device_ref)
    send_parser.add_argument("text", help="Literal command, e.g. 'height:5'")
    send_parser.add_argument(
        "--relay",
        action="store_true",
        help="Send through the backend REST API instead of a direct channel",
    )

    task_parser = subparsers.add_parser("run-task", help="Run a task on a device")
    task_parser.add_argument("device", type=_device_ref)
    source = task_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--steps-file", type=Path, help="JSON file with step records")
    source.add_argument("--task", dest="task_uuid", help="Task uuid in the registry")

    history_parser = subparsers.add_parser(
        "history", help="Print stored readings for a device"
    )
    history_parser.add_argument("device_uuid")
    history_parser.add_argument("--limit", type=int, default=100)
    history_parser.add_argument("--offset", type=int, default=0)

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def _print_event(event: Event) -> None:
    print(json.dumps(event.to_dict(), default=str), flush=True)


def _load_steps(path: Path, default_timeout: float) -> List[TaskStep]:
    with path.open("r", encoding="utf-8") as stream:
        payload: Any = json.load(stream)
    if isinstance(payload, dict):
        payload = payload.get("steps", [])
    return parse_steps(payload, default_timeout=default_timeout)


async def _send(config: FleetLinkConfig, device: int | str, text: str, relay: bool) -> int:
    context = FleetLinkContext(config)
    try:
        if relay:
            result = await context.registry.send_device_command(device, text)
        else:
            identity = await context.open_device(device)
            if identity is None:
                return 1
            result = await context.commands.send(identity.device_id, text)
    finally:
        await context.stop()

    print(result.value)
    return 0 if result.ok else 1


async def _run_task(
    config: FleetLinkConfig,
    device: int | str,
    *,
    steps_file: Optional[Path],
    task_uuid: Optional[str],
) -> int:
    context = FleetLinkContext(config)
    context.bus.subscribe(_print_event)
    try:
        if steps_file is not None:
            steps = _load_steps(steps_file, config.tasks.default_step_timeout_seconds)
        elif task_uuid is not None:
            steps = await context.registry.get_task_steps(task_uuid)
        else:
            raise TaskDefinitionError("No task steps given")

        identity = await context.open_device(device)
        if identity is None:
            return 1

        result: TaskRunResult = await context.tasks.run(identity.device_id, steps)
    finally:
        await context.stop()

    print(json.dumps(result.as_dict()))
    return 0 if result.ok else 1


async def _history(
    config: FleetLinkConfig, device_uuid: str, limit: int, offset: int
) -> int:
    context = FleetLinkContext(config)
    try:
        records = await context.registry.get_device_history(
            device_uuid, limit=limit, offset=offset
        )
    finally:
        await context.stop()

    for record in records:
        print(json.dumps(record, default=str))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "monitor":
        FleetLinkApp.start(
            config,
            device_refs=args.devices,
            duration=args.duration,
            event_handler=_print_event,
        )
        return 0

    configure_logging(
        config.logging.level,
        log_path=config.logging.path,
        log_network=config.logging.log_network,
    )

    try:
        if args.command == "send":
            return asyncio.run(_send(config, args.device, args.text, args.relay))
        if args.command == "run-task":
            return asyncio.run(
                _run_task(
                    config,
                    args.device,
                    steps_file=args.steps_file,
                    task_uuid=args.task_uuid,
                )
            )
        if args.command == "history":
            return asyncio.run(
                _history(config, args.device_uuid, args.limit, args.offset)
            )
    except (DeviceBusyError, DeviceNotConnectedError) as exc:
        LOGGER.error("%s", exc)
        return 2
    except FleetLinkError as exc:
        LOGGER.error("%s failed (%s): %s", args.command, exc.code, exc)
        return 1
    except OSError as exc:
        LOGGER.error("%s failed: %s", args.command, exc)
        return 1

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
