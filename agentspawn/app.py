"""agentspawn CLI: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from agentspawn.engine.config import DEFAULT_HOME, EngineConfig
from agentspawn.engine.errors import AgentSpawnError, SessionNotFoundError
from agentspawn.engine.models import RegistryEntry, SessionState

logger = logging.getLogger(__name__)

_STATE_STYLES = {
    SessionState.RUNNING: "green",
    SessionState.STARTING: "yellow",
    SessionState.STOPPING: "yellow",
    SessionState.STOPPED: "dim",
    SessionState.CRASHED: "bold red",
}


def _setup_logging(level_name: str, log_to_stderr: bool = True) -> Path:
    log_dir = DEFAULT_HOME / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentspawn.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if log_to_stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(logging.WARNING)
        root.addHandler(stream_handler)
    return log_file


def _format_uptime(started_at: str | None) -> str:
    if not started_at:
        return "-"
    try:
        started = datetime.fromisoformat(started_at)
    except ValueError:
        return "-"
    seconds = int((datetime.now(timezone.utc) - started).total_seconds())
    hours, rem = divmod(max(seconds, 0), 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def render_sessions_table(entries: list[RegistryEntry]) -> Table:
    table = Table(title="Sessions")
    table.add_column("Name", style="bold")
    table.add_column("State")
    table.add_column("PID", justify="right")
    table.add_column("Uptime", justify="right")
    table.add_column("Prompts", justify="right")
    table.add_column("Tags")
    table.add_column("Directory", overflow="fold")
    for entry in sorted(entries, key=lambda e: e.name):
        style = _STATE_STYLES.get(entry.state, "")
        live = entry.state in (SessionState.RUNNING, SessionState.STARTING)
        table.add_row(
            entry.name,
            f"[{style}]{entry.state.value}[/]" if style else entry.state.value,
            str(entry.pid) if entry.pid else "-",
            _format_uptime(entry.started_at) if live else "-",
            str(entry.prompt_count),
            ", ".join(entry.tags),
            entry.working_directory,
        )
    return table


# ── Subcommands ──


async def _cmd_list(config: EngineConfig, console: Console) -> int:
    from agentspawn.engine.manager import SessionManager

    manager = SessionManager(config)
    entries = await manager.refresh_registry()
    if not entries:
        console.print("No sessions.")
        return 0
    console.print(render_sessions_table(entries))
    return 0


async def _cmd_stats(config: EngineConfig, console: Console, name: str) -> int:
    from agentspawn.engine.manager import SessionManager

    manager = SessionManager(config)
    await manager.refresh_registry()
    info = manager.get_session_info(name)
    entry = await asyncio.to_thread(manager.registry.get, name)

    table = Table(title=f"Session {name}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("State", info.state.value)
    table.add_row("PID", str(info.pid) if info.pid else "-")
    table.add_row("Directory", info.working_directory)
    table.add_row(
        "Started", info.started_at.isoformat() if info.started_at else "-",
    )
    table.add_row("Uptime", _format_uptime(entry.started_at if entry else None))
    table.add_row("Prompts", str(info.prompt_count))
    table.add_row(
        "Permission mode",
        info.permission_mode.value if info.permission_mode else "default",
    )
    if entry is not None and entry.restart_policy is not None:
        policy = entry.restart_policy
        table.add_row(
            "Restart policy",
            f"enabled={policy.enabled} max_retries={policy.max_retries}",
        )
    if info.exit_code is not None:
        table.add_row("Last exit code", str(info.exit_code))
    table.add_row("Tags", ", ".join(info.tags) or "-")
    console.print(table)
    return 0


async def _cmd_stop(config: EngineConfig, console: Console, name: str) -> int:
    from agentspawn.engine.registry import Registry
    from agentspawn.shared.services.process_cleanup import terminate_pid

    registry = Registry(
        config.resolved_registry_path,
        lock_timeout_seconds=config.lock_timeout_seconds,
    )
    entry = await asyncio.to_thread(registry.get, name)
    if entry is None:
        raise SessionNotFoundError(name)
    if entry.pid and entry.state in (SessionState.RUNNING, SessionState.STARTING):
        # Claim the stop first so a supervising `run` treats the exit as
        # requested rather than restarting the session.
        entry = await asyncio.to_thread(
            registry.set_state, name, SessionState.STOPPING,
            exit_code=entry.exit_code,
        )
        if entry is None:
            raise SessionNotFoundError(name)
        gone = await asyncio.to_thread(
            terminate_pid, entry.pid, config.shutdown_timeout_seconds,
        )
        if not gone:
            console.print(f"[red]pid {entry.pid} did not exit[/]")
            return 1
    await asyncio.to_thread(registry.remove, name)
    console.print(f"Stopped {name}")
    return 0


async def _cmd_run(
    config: EngineConfig,
    console: Console,
    config_path: str,
    attach: str | None,
) -> int:
    from agentspawn.engine.manager import SessionManager
    from agentspawn.engine.router import Router, open_terminal_reader
    from agentspawn.engine.yaml_config import load_yaml_config
    from agentspawn.shared.services.hooks import HookRunner

    orchestration = load_yaml_config(config_path, base=config)
    engine = orchestration.engine
    if attach and attach not in {s.name for s in orchestration.sessions}:
        raise SessionNotFoundError(attach)

    manager = SessionManager(engine)
    await manager.init()
    hooks = HookRunner.load(engine.resolved_hooks_path)
    hooks.bind(manager)

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    router: Router | None = None
    try:
        for session_config in orchestration.sessions:
            session = await manager.start_session(session_config)
            console.print(
                f"Started [bold]{session.name}[/] (pid {session.pid})",
            )
        if attach:
            router = Router(input_reader=await open_terminal_reader())
            await router.attach(manager.get_session(attach))
        else:
            console.print(render_sessions_table(
                await manager.refresh_registry(),
            ))
            console.print("Press Ctrl-C to stop all sessions.")
        await shutdown.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        if router is not None:
            await router.detach()
        await manager.stop_all()
        hooks.unbind()
        await hooks.drain()
    console.print("All sessions stopped.")
    return 0


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentspawn",
        description="agentspawn: supervise interactive agent sessions",
    )
    parser.add_argument(
        "--registry", metavar="PATH",
        help="Registry file (default: ~/.agentspawn/sessions.json)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List sessions recorded in the registry")

    stats = sub.add_parser("stats", help="Show details of one session")
    stats.add_argument("name")

    run = sub.add_parser(
        "run", help="Start the sessions declared in a YAML file and supervise them",
    )
    run.add_argument("--config", metavar="PATH", required=True)
    run.add_argument(
        "--attach", metavar="NAME",
        help="Attach this terminal to a session once started",
    )

    stop = sub.add_parser("stop", help="Stop a session by name")
    stop.add_argument("name")

    args = parser.parse_args(argv)

    config = EngineConfig.from_env()
    if args.registry:
        config.registry_path = args.registry
    log_file = _setup_logging(config.log_level)
    logger.info("agentspawn %s (log=%s)", args.command, log_file)

    console = Console()
    err_console = Console(stderr=True)

    if args.command == "list":
        coro = _cmd_list(config, console)
    elif args.command == "stats":
        coro = _cmd_stats(config, console, args.name)
    elif args.command == "stop":
        coro = _cmd_stop(config, console, args.name)
    else:
        coro = _cmd_run(config, console, args.config, args.attach)

    try:
        code = asyncio.run(coro)
    except AgentSpawnError as exc:
        logger.error("%s failed: %s", args.command, exc)
        err_console.print(f"[red]error[/] {escape(f'[{exc.code}] {exc}')}")
        sys.exit(1)
    except FileNotFoundError as exc:
        err_console.print(f"[red]error[/] file not found: {exc.filename}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
