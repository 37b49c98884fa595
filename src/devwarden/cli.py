"""CLI entry point for devwarden."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os

import typer

from devwarden.command import (
    SafeCommand,
    command_to_string,
    parse_command_string,
    validate_command,
)
from devwarden.config import WardenConfig

app = typer.Typer(
    name="devwarden",
    help="Supervise dev servers and terminals with validated commands and self-healing restarts.",
    no_args_is_help=True,
)

VERSION = "0.1.0"


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _project_path(path: str) -> str:
    project = os.path.abspath(os.path.expanduser(path))
    if not os.path.isdir(project):
        typer.echo(f"Error: Project directory not found: {project}", err=True)
        raise typer.Exit(1)
    return project


def _rejection_reason(raw: str) -> str:
    parts = raw.split()
    if not parts:
        return "Command is empty"
    result = validate_command(SafeCommand(bin=parts[0], args=tuple(parts[1:])))
    return result.error or "Command contains shell metacharacters"


@app.command()
def validate(
    command: str = typer.Argument(help='Command to check, e.g. "npm run dev".'),
) -> None:
    """Check a dev server command against the allowlist."""
    cmd = parse_command_string(command)
    if cmd is None:
        typer.echo(f"REJECTED: {_rejection_reason(command)}", err=True)
        raise typer.Exit(1)
    typer.echo(f"OK: {command_to_string(cmd)}")


@app.command()
def plan(
    path: str = typer.Argument(".", help="Project directory."),
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Show the dev server plan that would be used for a project."""
    from devwarden.devserver import DevConfigStore, PackageJsonResolver

    project = _project_path(path)
    config = WardenConfig.load(config_file)
    resolver = PackageJsonResolver(DevConfigStore(config.state_path))
    resolved = resolver.resolve(project)

    if as_json:
        data = dataclasses.asdict(resolved)
        data["confidence"] = resolved.confidence.value
        typer.echo(json.dumps(data, indent=2))
        return

    typer.echo(f"Project: {resolved.cwd}")
    if resolved.spawn_cwd:
        typer.echo(f"Runs in: {resolved.spawn_cwd}")
    typer.echo(f"Command: {command_to_string(resolved.command)}")
    typer.echo(f"Port: {resolved.port or 'unknown'}")
    typer.echo(f"Confidence: {resolved.confidence.value}")
    if resolved.detection.framework:
        typer.echo(f"Framework: {resolved.detection.framework}")
    for reason in resolved.reasons:
        typer.echo(f"  - {reason}")


@app.command()
def configure(
    path: str = typer.Argument(".", help="Project directory."),
    command: str | None = typer.Option(
        None, "--command", help='Dev command to pin, e.g. "pnpm dev".'
    ),
    port: int | None = typer.Option(None, "--port", help="Port the server listens on."),
    clear: bool = typer.Option(False, "--clear", help="Remove the pinned command."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Pin (or clear) the dev command for a project."""
    from devwarden.devserver import DevConfigStore

    project = _project_path(path)
    store = DevConfigStore(WardenConfig.load(config_file).state_path)

    if clear:
        store.clear_user_override(project)
        typer.echo(f"Cleared pinned command for {project}")
        return
    if command is None:
        typer.echo("Error: pass --command or --clear", err=True)
        raise typer.Exit(1)

    cmd = parse_command_string(command)
    if cmd is None:
        typer.echo(f"Error: {_rejection_reason(command)}", err=True)
        raise typer.Exit(1)
    store.set_user_override(project, cmd, port=port)
    typer.echo(f"Pinned {command_to_string(cmd)} for {project}")


@app.command()
def run(
    path: str = typer.Argument(".", help="Project directory."),
    command: str | None = typer.Option(
        None, "--command", help="Explicit dev command instead of auto-detection."
    ),
    no_repair: bool = typer.Option(
        False, "--no-repair", help="Do not restart the server after a crash."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Start and supervise a project's dev server until Ctrl-C."""
    setup_logging(verbose)

    project = _project_path(path)
    config = WardenConfig.load(config_file)
    if no_repair:
        config.repair.enabled = False

    typer.echo(f"devwarden v{VERSION}")
    typer.echo(f"Project: {project}")
    if not config.repair.enabled:
        typer.echo("Auto-repair: off")
    else:
        typer.echo(f"Auto-repair: {'agent' if config.repair.agent_mode else 'restart only'}")
    typer.echo("---")

    try:
        code = asyncio.run(_run_supervised(project, command, config))
    except KeyboardInterrupt:
        code = 0
    raise typer.Exit(code)


async def _run_supervised(project: str, command: str | None, config: WardenConfig) -> int:
    """Supervise one project, printing status and repair events."""
    from devwarden.devserver import DevConfigStore, DevServerSupervisor
    from devwarden.pty import PTYRegistry
    from devwarden.repair import SelfHealingLoop
    from devwarden.session.wire import EventType, Wire
    from devwarden.tracker import ProcessTracker

    wire = Wire()
    supervisor = DevServerSupervisor(
        config=config, wire=wire, store=DevConfigStore(config.state_path)
    )
    ptys = PTYRegistry(wire=wire, config=config)
    healer = SelfHealingLoop(supervisor, config=config, wire=wire)
    healer.attach()
    tracker = ProcessTracker(ptys, supervisor)

    async def _consume_wire() -> None:
        queue = wire.subscribe(
            key=project,
            types={EventType.DEV_STATUS, EventType.DEV_CRASH, EventType.REPAIR},
        )
        while True:
            event = await queue.get()
            if event is None:
                break
            d = event.data
            if event.type == EventType.DEV_STATUS:
                url = f" {d['url']}" if d.get("url") else ""
                typer.echo(f"[{d.get('status')}] {d.get('message', '')}{url}")
            elif event.type == EventType.DEV_CRASH:
                typer.echo(f"[crash] exit code {d.get('exit_code')}", err=True)
            elif event.type == EventType.REPAIR:
                typer.echo(
                    f"[repair {d.get('iteration')}/{d.get('max_iterations')}] "
                    f"{d.get('phase')}: {d.get('message')}"
                )

    async def _report_usage() -> None:
        while True:
            await asyncio.sleep(10)
            for info in await tracker.list_processes():
                cpu = f"{info.cpu:.1f}%" if info.cpu is not None else "?"
                rss = f"{info.memory / 1_048_576:.0f} MiB" if info.memory is not None else "?"
                typer.echo(f"[{info.kind}] pid {info.pid} {info.label}: cpu {cpu}, rss {rss}")

    consumer = asyncio.create_task(_consume_wire())
    reporter = asyncio.create_task(_report_usage())
    try:
        result = await supervisor.start(project, command)
        if not result.ok:
            typer.echo(f"Error: {result.error}", err=True)
            if result.needs_configuration:
                typer.echo(
                    'Pin a command with: devwarden configure . --command "npm run dev"',
                    err=True,
                )
            return 1
        if result.url is None:
            typer.echo("Server started but no URL was detected (status unknown).")
        await asyncio.Event().wait()
        return 0
    finally:
        reporter.cancel()
        await healer.close()
        await supervisor.stop_all()
        await ptys.kill_all()
        wire.close()
        await asyncio.gather(consumer, reporter, return_exceptions=True)


@app.command()
def version() -> None:
    """Show the devwarden version."""
    typer.echo(f"devwarden v{VERSION}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
