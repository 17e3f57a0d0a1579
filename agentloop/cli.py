"""Command line entry point.

Usage:
    agentloop check
    agentloop tasks
    agentloop run my-task --provider amp
    agentloop iterations my-task
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

import yaml

from agentloop.engine.config import LoopConfig
from agentloop.engine.providers.registry import build_provider_registry, parse_provider_kind
from agentloop.engine.runtime import AgentLoop
from agentloop.engine.yaml_config import load_yaml_config
from agentloop.shared.services.persistence import SqliteDurableStore
from agentloop.shared.services.tasks import list_tasks


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentloop",
        description="Run coding-agent CLIs in a loop against task files",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (default: AGENTLOOP_* environment only)",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Workspace folder (default: current dir)",
    )
    parser.add_argument(
        "--provider", "-p",
        default=None,
        help="Agent CLI to use: claude_code or amp",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("check", help="Check which agent CLIs are usable")
    sub.add_parser("tasks", help="List tasks in the workspace")
    run = sub.add_parser("run", help="Iterate on a task until it is complete")
    run.add_argument("task_id")
    iterations = sub.add_parser("iterations", help="Show recorded iterations")
    iterations.add_argument("task_id")
    return parser


def _load_config(args: argparse.Namespace):
    provider_configs = {}
    if args.config:
        loaded = load_yaml_config(args.config)
        config, provider_configs = loaded.loop, loaded.providers
    else:
        config = LoopConfig.from_env()
    if args.cwd is not None:
        config.default_cwd = args.cwd
    if args.provider is not None:
        config.default_provider = parse_provider_kind(args.provider).value
    return config, provider_configs


async def _check(config: LoopConfig, provider_configs) -> int:
    registry = build_provider_registry(provider_configs, default=config.default_provider)
    report = await registry.availability_report()
    for kind, status in report.items():
        if status.available:
            print(f"{kind.value:12} ok")
        else:
            print(f"{kind.value:12} {status.error_kind.value if status.error_kind else 'error'}: {status.error}")
            if status.auth_instructions:
                print(f"{'':12} {status.auth_instructions}")
    return 0 if any(s.available for s in report.values()) else 1


async def _iterations(config: LoopConfig, task_id: str) -> int:
    cwd = os.path.abspath(config.default_cwd)
    async with SqliteDurableStore(config.db_path, cwd) as durable:
        records = await durable.get_iterations(task_id)
    if not records:
        print(f"No iterations recorded for {task_id}")
        return 0
    for record in records:
        print(
            f"#{record.iteration_number:<4} {record.status.value:10} "
            f"{record.created_at}  {record.session_id or '-'}"
        )
    return 0


async def _run(config: LoopConfig, provider_configs, task_id: str) -> int:
    providers = build_provider_registry(provider_configs, default=config.default_provider)
    loop = AgentLoop(config, providers=providers)
    await loop.start()
    try:
        if not await loop.controller.start_iteration(task_id):
            print(f"Error: {loop.controller.last_error}")
            return 1
        await loop.controller.wait_idle()
    except asyncio.CancelledError:
        print("\nStopping iteration...")
        raise
    finally:
        await loop.shutdown()

    error = loop.controller.last_error
    if error is not None:
        print(f"Error: {error}")
        return 1
    records = loop.controller.iterations.get(task_id, [])
    print(f"Task {task_id} finished after {len(records)} iteration(s)")
    return 0


def main() -> None:
    args = _build_parser().parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config, provider_configs = _load_config(args)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    if not args.verbose:
        logging.getLogger().setLevel(config.log_level.upper())

    if args.command == "tasks":
        tasks = list_tasks(config.default_cwd, config)
        if not tasks:
            print(f"No tasks under {os.path.join(config.default_cwd, config.task_dir)}")
        for task_id in tasks:
            print(task_id)
        return

    try:
        if args.command == "check":
            code = asyncio.run(_check(config, provider_configs))
        elif args.command == "iterations":
            code = asyncio.run(_iterations(config, args.task_id))
        else:
            code = asyncio.run(_run(config, provider_configs, args.task_id))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()
