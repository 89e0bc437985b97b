"""Delegate MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from delegate_mcp.config import DelegateSettings
from delegate_mcp.session import HostSessionService, SessionService, SessionServiceError
from delegate_mcp.tasks import BroadcastBus, CompletionOracle


def load_service(settings: DelegateSettings) -> SessionService:
    return HostSessionService(
        settings.host_url,
        directory=str(settings.directory),
        timeout=settings.request_timeout,
    )


async def _close(service: SessionService) -> None:
    aclose = getattr(service, "aclose", None)
    if aclose is not None:
        await aclose()


async def _collect_tasks(service: SessionService, session_id: str) -> list[dict]:
    oracle = CompletionOracle(service)
    try:
        children = await service.children(session_id)
        rows = []
        for child in children:
            rows.append(
                {
                    "task_id": child.id,
                    "title": child.title,
                    "directory": child.directory,
                    "complete": await oracle.is_complete(child),
                }
            )
        return rows
    finally:
        await _close(service)


async def _collect_agents(service: SessionService) -> list[dict]:
    try:
        return [agent.model_dump(exclude_none=True) for agent in await service.agents()]
    finally:
        await _close(service)


async def _collect_broadcasts(service: SessionService, args: argparse.Namespace) -> dict:
    bus = BroadcastBus(service)
    try:
        result = await bus.read(
            args.session_id,
            category=args.category,
            limit=args.limit,
            source=args.source,
        )
        return result.to_payload()
    finally:
        await _close(service)


def cmd_tasks(args: argparse.Namespace) -> None:
    settings = DelegateSettings()
    service = load_service(settings)
    try:
        tasks = asyncio.run(_collect_tasks(service, args.session_id))
    except SessionServiceError as exc:
        print(f"Host unavailable: {exc}")
        raise SystemExit(1)
    if args.json:
        print(json.dumps(tasks, indent=2))
    else:
        for task in tasks:
            state = "complete" if task["complete"] else "running"
            print(f"{task['task_id']} [{state}] {task['title']}")


def cmd_agents(args: argparse.Namespace) -> None:
    settings = DelegateSettings()
    service = load_service(settings)
    try:
        agents = asyncio.run(_collect_agents(service))
    except SessionServiceError as exc:
        print(f"Host unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps(agents, indent=2))


def cmd_broadcasts(args: argparse.Namespace) -> None:
    settings = DelegateSettings()
    service = load_service(settings)
    payload = asyncio.run(_collect_broadcasts(service, args))
    if payload.get("error"):
        print(f"Host unavailable: {payload['error']}")
        raise SystemExit(1)
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delegate MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_tasks = sub.add_parser("tasks", help="List the child tasks of a session")
    p_tasks.add_argument("session_id")
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_agents = sub.add_parser("agents", help="List agents known to the host")
    p_agents.set_defaults(func=cmd_agents)

    p_broadcasts = sub.add_parser("broadcasts", help="Show broadcasts received by a session")
    p_broadcasts.add_argument("session_id")
    p_broadcasts.add_argument(
        "--source",
        choices=["self", "children"],
        default="self",
        help="Read the session's own history or its children's",
    )
    p_broadcasts.add_argument(
        "--category",
        choices=["discovery", "warning", "context", "blocker"],
        default=None,
    )
    p_broadcasts.add_argument("--limit", type=int, default=10)
    p_broadcasts.set_defaults(func=cmd_broadcasts)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
