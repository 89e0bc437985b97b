"""FastMCP server bootstrap for Delegate."""

import asyncio
import contextlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import DelegateSettings, get_settings
from .git import GitNotFoundError, GitRunner
from .session import HostSessionService, SessionService
from .tasks import (
    BroadcastBus,
    CancellationController,
    CompletionOracle,
    ResultHarvester,
    SeenCache,
    TaskEventWatcher,
    TaskLauncher,
)
from .tools import register_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Delegate server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def create_server(
    settings: Optional[DelegateSettings] = None,
    service: SessionService | None = None,
    git_runner: GitRunner | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server and wire the task components."""

    settings = settings or get_settings()

    owns_service = service is None
    if service is None:
        service = HostSessionService(
            settings.host_url,
            directory=str(settings.directory),
            timeout=settings.request_timeout,
        )

    git_metadata: dict[str, Any] = {
        "available": False,
        "version": None,
        "error": None,
    }
    if git_runner is None:
        try:
            git_runner = GitRunner(Path(settings.git_path) if settings.git_path else None)
        except GitNotFoundError as exc:
            git_metadata["error"] = str(exc)
    if git_runner is not None:
        git_metadata["available"] = True
        version_result = _run_sync(git_runner.version())
        if version_result.ok:
            git_metadata["version"] = version_result.stdout.strip() or None
        else:
            git_metadata["error"] = version_result.stderr.strip() or "git version command failed"

    oracle = CompletionOracle(
        service,
        poll_interval_ms=settings.poll_interval_ms,
        poll_multiplier=settings.poll_multiplier,
        poll_max_interval_ms=settings.poll_max_interval_ms,
        default_timeout_ms=settings.default_wait_timeout_ms,
    )
    harvester = ResultHarvester(service)
    launcher = TaskLauncher(
        service,
        oracle,
        harvester,
        git=git_runner,
        max_active_tasks=settings.max_active_tasks,
    )
    canceller = CancellationController(service, oracle)
    bus = BroadcastBus(service, max_length=settings.broadcast_max_length)
    watcher = TaskEventWatcher(
        service,
        oracle,
        notified=SeenCache(settings.seen_cache_capacity, settings.seen_cache_ttl_seconds),
        injected=SeenCache(settings.seen_cache_capacity, ttl_seconds=30.0),
        retry_seconds=settings.event_retry_seconds,
    )

    startup: dict[str, Any] = {"worktree_prune": None, "watching_events": False}

    @contextlib.asynccontextmanager
    async def lifespan(_: FastMCP):
        if git_runner is not None and settings.prune_worktrees:
            result = await git_runner.prune_worktrees(settings.directory)
            startup["worktree_prune"] = "ok" if result.ok else result.stderr.strip() or "failed"
            if not result.ok:
                logger.warning(
                    "git worktree prune failed",
                    extra={"directory": str(settings.directory), "stderr": result.stderr.strip()},
                )

        watch_task: asyncio.Task | None = None
        if settings.watch_events:
            watch_task = asyncio.create_task(watcher.run())
            startup["watching_events"] = True
        try:
            yield {}
        finally:
            if watch_task is not None:
                watch_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watch_task
                startup["watching_events"] = False
            await launcher.drain()
            if owns_service:
                await service.aclose()

    server = FastMCP(
        name="Delegate MCP",
        version=__version__,
        instructions=(
            "Delegate runs prompts in child agent sessions. Use create_task to start work, "
            "get_task_output to collect it, and broadcast/read_broadcasts to share findings "
            "between sibling tasks. Every tool takes your own session_id."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(
        server,
        settings=settings,
        launcher=launcher,
        canceller=canceller,
        bus=bus,
    )

    def status_snapshot(request_id: Any = None) -> dict[str, Any]:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "host": {
                "url": settings.host_url,
                "directory": str(settings.directory),
            },
            "git": {
                "path": settings.git_path,
                **git_metadata,
            },
            "startup": dict(startup),
            "tasks": {
                "pending_dispatches": launcher.pending_dispatches,
                "max_active_tasks": settings.max_active_tasks,
                "notified_sessions": len(watcher.notified),
                "context_injections": len(watcher.injected),
            },
            "request_id": request_id,
        }

    @server.resource(
        "resource://delegate/status",
        name="delegate_status",
        title="Delegate MCP Status",
        description="Provides the current runtime status for the Delegate MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        return json.dumps(status_snapshot(getattr(context, "request_id", None)))

    setattr(server, "session_service", service)
    setattr(server, "git_runner", git_runner)
    setattr(server, "git_metadata", git_metadata)
    setattr(server, "task_launcher", launcher)
    setattr(server, "event_watcher", watcher)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_snapshot", status_snapshot)
    setattr(server, "delegate_lifespan", lifespan)
    return server


def main() -> None:
    """Entry point for running the Delegate MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching Delegate MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "host_url": settings.host_url,
            "git_available": getattr(server, "git_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
