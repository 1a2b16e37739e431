"""Command-line interface for agentsquad."""

import asyncio
import logging
import subprocess
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import SquadConfig, create_sample_config, load_config
from .core.daemon import SquadDaemon, launch_background_daemon
from .core.orchestrator import SessionOrchestrator
from .error_handling import ConfigurationError, SquadError, check_dependencies, handle_error
from .process_lock import ProcessLock
from .session.models import CreateSessionRequest, Session, SessionStatus

console = Console()

T = TypeVar("T")


def require_dependencies() -> None:
    """Exit with a readable message when git or tmux is missing."""
    missing_deps = check_dependencies()
    if missing_deps:
        console.print("[red bold]🚫 Missing Dependencies[/red bold]")
        console.print("agentsquad requires the following programs:\n")
        for dep in missing_deps:
            console.print(f"  • {dep}")
        console.print("\n[dim]Install the missing programs and try again[/dim]")
        sys.exit(1)


def setup_logging(
    *,
    verbose: bool = False,
    config: SquadConfig | None = None,
) -> None:
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    # Clean up existing handlers first to prevent resource leaks
    cleanup_logging()

    # Configure RichHandler to show path only at DEBUG level
    show_path = level == logging.DEBUG
    handlers: list[logging.Handler] = [
        RichHandler(console=console, rich_tracebacks=True, show_path=show_path),
    ]

    if config and config.log_dir:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        log_file = config.log_dir / "agentsquad.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            ),
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,  # Force reconfiguration of root logger
    )


def cleanup_logging() -> None:
    """Clean up logging handlers to prevent ResourceWarnings."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if isinstance(handler, logging.FileHandler):
            handler.close()
            root_logger.removeHandler(handler)


def run_with_orchestrator(
    config: SquadConfig,
    func: Callable[[SessionOrchestrator], Awaitable[T]],
) -> T:
    """Run ``func`` against a fresh orchestrator, reporting squad errors."""
    require_dependencies()
    config.ensure_directories()

    async def runner() -> T:
        orchestrator = SessionOrchestrator.from_config(config)
        try:
            return await func(orchestrator)
        finally:
            await orchestrator.aclose()

    try:
        return asyncio.run(runner())
    except SquadError as e:
        handle_error(e)
        sys.exit(1)
    except OSError as e:
        logging.getLogger(__name__).debug("Command failed", exc_info=True)
        handle_error(e)
        sys.exit(1)


def get_status_color(status: SessionStatus) -> str:
    """Get color code for status display."""
    status_colors = {
        SessionStatus.RUNNING: "green",
        SessionStatus.READY: "cyan",
        SessionStatus.LOADING: "blue",
        SessionStatus.PAUSED: "yellow",
    }
    return status_colors.get(status, "white")


def format_session_table(sessions: list[Session]) -> Table:
    """Format sessions into a table."""
    table = Table()
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Branch")
    table.add_column("Program")
    table.add_column("Created")

    for session in sessions:
        color = get_status_color(session.status)
        table.add_row(
            session.session_id,
            session.title,
            f"[{color}]{session.status.value.title()}[/{color}]",
            session.branch,
            session.program,
            session.created_at.astimezone().strftime("%Y-%m-%d %H:%M"),
        )

    return table


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Configuration file path",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, config: Path | None, verbose: bool) -> None:
    """agentsquad - Run AI coding agents side by side in isolated git worktrees."""
    try:
        ctx.ensure_object(dict)
        loaded_config = load_config(config)
        ctx.obj["config"] = loaded_config
        ctx.obj["config_path"] = config
        ctx.obj["verbose"] = verbose

        setup_logging(verbose=verbose, config=loaded_config)
    except (OSError, ValueError, RuntimeError) as e:
        config_error = ConfigurationError(
            f"Failed to load configuration: {e}",
            config_path=config,
            solution="Run 'agentsquad config show' to check your configuration",
        )
        console.print(f"[red]Configuration Error:[/red] {config_error}")
        sys.exit(1)


@cli.command()
@click.argument("title")
@click.option(
    "--path",
    "-p",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path(),
    help="Repository to work in (default: current directory)",
)
@click.option("--program", help="Program to run in the session")
@click.option("--branch", "-b", help="Branch to work on (default: current branch)")
@click.option("--prompt", help="Initial prompt sent to the program")
@click.option("--autoyes", "-y", is_flag=True, help="Auto-accept prompts via the daemon")
@click.option("--width", type=int, help="Terminal width")
@click.option("--height", type=int, help="Terminal height")
@click.pass_context
def new(
    ctx: click.Context,
    title: str,
    path: Path,
    program: str | None,
    branch: str | None,
    prompt: str | None,
    autoyes: bool,
    width: int | None,
    height: int | None,
) -> None:
    """Create a new session."""
    config: SquadConfig = ctx.obj["config"]
    auto_yes = autoyes or config.auto_yes

    request = CreateSessionRequest(
        title=title,
        path=path,
        program=program or config.default_program,
        branch=branch,
        width=width or config.default_width,
        height=height or config.default_height,
        auto_yes=auto_yes,
        prompt=prompt,
    )

    async def create(orchestrator: SessionOrchestrator) -> Session:
        session = await orchestrator.create_session(request)
        with console.status(f"Starting {session.program}..."):
            await orchestrator.wait_background()
        return await orchestrator.get_session(session.session_id)

    session = run_with_orchestrator(config, create)
    console.print(f"[green]Created session {session.title}[/green] ({session.session_id})")
    console.print(f"Branch: {session.branch}")
    console.print(f"Workspace: {session.workspace_path}")

    if auto_yes and not ProcessLock(config).running_pid():
        launch_background_daemon(ctx.obj.get("config_path"))
        console.print("[blue]Started auto-accept daemon[/blue]")


@cli.command("list")
@click.pass_context
def list_cmd(ctx: click.Context) -> None:
    """List all sessions."""
    config: SquadConfig = ctx.obj["config"]

    async def load(orchestrator: SessionOrchestrator) -> list[Session]:
        await orchestrator.recover_stuck_sessions()
        return await orchestrator.list_sessions()

    sessions = run_with_orchestrator(config, load)
    if not sessions:
        console.print("No sessions")
        return

    console.print(format_session_table(sessions))


@cli.command()
@click.argument("session")
@click.pass_context
def diff(ctx: click.Context, session: str) -> None:
    """Show change statistics of a session's workspace."""
    config: SquadConfig = ctx.obj["config"]

    async def compute(orchestrator: SessionOrchestrator) -> Any:
        found = await orchestrator.find_session(session)
        return await orchestrator.diff_session(found.session_id)

    stats = run_with_orchestrator(config, compute)
    if stats.is_empty:
        console.print("No changes")
        return

    table = Table()
    table.add_column("File")
    table.add_column("Status")
    table.add_column("+", justify="right", style="green")
    table.add_column("-", justify="right", style="red")
    for file_diff in stats.files:
        table.add_row(
            file_diff.path,
            "binary" if file_diff.binary else file_diff.status,
            str(file_diff.insertions),
            str(file_diff.deletions),
        )
    console.print(table)
    console.print(
        f"{stats.files_changed} files changed, "
        f"[green]+{stats.insertions}[/green] [red]-{stats.deletions}[/red]",
    )


@cli.command()
@click.argument("session")
@click.pass_context
def pause(ctx: click.Context, session: str) -> None:
    """Pause a session, keeping its branch."""
    config: SquadConfig = ctx.obj["config"]

    async def run(orchestrator: SessionOrchestrator) -> Session:
        found = await orchestrator.find_session(session)
        return await orchestrator.pause_session(found.session_id)

    paused = run_with_orchestrator(config, run)
    console.print(f"[yellow]Paused {paused.title}[/yellow] (branch {paused.branch} kept)")


@cli.command()
@click.argument("session")
@click.pass_context
def resume(ctx: click.Context, session: str) -> None:
    """Resume a paused session."""
    config: SquadConfig = ctx.obj["config"]

    async def run(orchestrator: SessionOrchestrator) -> Session:
        found = await orchestrator.find_session(session)
        return await orchestrator.resume_session(found.session_id)

    resumed = run_with_orchestrator(config, run)
    console.print(f"[green]Resumed {resumed.title}[/green]")


@cli.command()
@click.argument("session")
@click.pass_context
def attach(ctx: click.Context, session: str) -> None:
    """Attach the terminal to a session (detach with Ctrl-b d)."""
    config: SquadConfig = ctx.obj["config"]

    async def run(orchestrator: SessionOrchestrator) -> int:
        found = await orchestrator.find_session(session)
        return await orchestrator.attach_session(found.session_id)

    sys.exit(run_with_orchestrator(config, run))


@cli.command()
@click.argument("session")
@click.argument("text")
@click.option("--no-enter", is_flag=True, help="Do not press Enter after the text")
@click.pass_context
def send(ctx: click.Context, session: str, text: str, no_enter: bool) -> None:
    """Type text into a session."""
    config: SquadConfig = ctx.obj["config"]
    if not no_enter:
        text += "\n"

    async def run(orchestrator: SessionOrchestrator) -> None:
        found = await orchestrator.find_session(session)
        await orchestrator.send_input(found.session_id, text)

    run_with_orchestrator(config, run)


@cli.command()
@click.argument("session")
@click.option("--full", is_flag=True, help="Include the whole scrollback")
@click.pass_context
def output(ctx: click.Context, session: str, full: bool) -> None:
    """Print what a session's terminal currently shows."""
    config: SquadConfig = ctx.obj["config"]

    async def run(orchestrator: SessionOrchestrator) -> str:
        found = await orchestrator.find_session(session)
        return await orchestrator.get_output(found.session_id, full=full)

    click.echo(run_with_orchestrator(config, run), nl=False)


@cli.command()
@click.argument("session")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def stop(ctx: click.Context, session: str, yes: bool) -> None:
    """Stop a session and delete its workspace."""
    config: SquadConfig = ctx.obj["config"]

    if not yes and not click.confirm(f"Stop session {session} and delete its workspace?"):
        return

    async def run(orchestrator: SessionOrchestrator) -> Session:
        found = await orchestrator.find_session(session)
        await orchestrator.stop_session(found.session_id)
        return found

    stopped = run_with_orchestrator(config, run)
    console.print(f"[green]Stopped {stopped.title}[/green]")


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def reset(ctx: click.Context, yes: bool) -> None:
    """Stop every session and clean up all agentsquad state."""
    config: SquadConfig = ctx.obj["config"]

    if not yes and not click.confirm("Stop ALL sessions and delete their workspaces?"):
        return

    pid = ProcessLock(config).running_pid()
    if pid:
        ProcessLock.stop_process(pid)
        console.print("[blue]Stopped auto-accept daemon[/blue]")

    count = run_with_orchestrator(config, lambda orchestrator: orchestrator.reset())
    console.print(f"[green]Reset {count} sessions[/green]")


@cli.group("daemon")
@click.pass_context
def daemon_cmd(ctx: click.Context) -> None:
    """Auto-accept daemon commands."""


@daemon_cmd.command("start")
@click.option("--foreground", "-f", is_flag=True, help="Stay in the foreground")
@click.pass_context
def daemon_start(ctx: click.Context, foreground: bool) -> None:
    """Start the auto-accept daemon."""
    config: SquadConfig = ctx.obj["config"]
    require_dependencies()

    squad_daemon = SquadDaemon(config)
    try:
        if foreground:
            squad_daemon.start_foreground()
        else:
            console.print(f"Starting auto-accept daemon, logging to {squad_daemon.log_file_path}")
            squad_daemon.start_daemon()
    except SquadError as e:
        handle_error(e)
        sys.exit(1)


@daemon_cmd.command("stop")
@click.pass_context
def daemon_stop(ctx: click.Context) -> None:
    """Stop the auto-accept daemon."""
    config: SquadConfig = ctx.obj["config"]

    pid = ProcessLock(config).running_pid()
    if not pid:
        console.print("[yellow]Auto-accept daemon is not running[/yellow]")
        return

    console.print(f"[blue]Stopping auto-accept daemon (PID {pid})...[/blue]")
    if ProcessLock.stop_process(pid):
        console.print("[green]Auto-accept daemon stopped[/green]")
    else:
        console.print(f"[red]Failed to stop daemon process {pid}[/red]")
        sys.exit(1)


@daemon_cmd.command("status")
@click.pass_context
def daemon_status(ctx: click.Context) -> None:
    """Show whether the auto-accept daemon is running."""
    config: SquadConfig = ctx.obj["config"]

    pid = ProcessLock(config).running_pid()
    if pid:
        console.print(f"🟢 Auto-accept daemon: [green]Running (PID {pid})[/green]")
    else:
        console.print("🔴 Auto-accept daemon: [red]Not running[/red]")


@daemon_cmd.command("logs")
@click.option("--follow", "-f", is_flag=True, help="Follow log output")
@click.option("--lines", "-n", type=int, default=10, help="Number of lines to show")
@click.pass_context
def daemon_logs(ctx: click.Context, follow: bool, lines: int) -> None:
    """Show daemon log output with colors."""
    config: SquadConfig = ctx.obj["config"]
    log_file = SquadDaemon(config).log_file_path

    if not log_file.exists():
        console.print("[yellow]No log file found[/yellow]")
        console.print(f"Expected location: {log_file}")
        sys.exit(1)

    if follow:
        cmd = ["tail", "-f", str(log_file)]
    else:
        cmd = ["tail", "-n", str(lines), str(log_file)]

    try:
        with subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
        ) as proc:
            try:
                for line in proc.stdout:
                    _colorize_log_line(line.rstrip())
            except KeyboardInterrupt:
                proc.terminate()
                sys.exit(0)
    except FileNotFoundError:
        console.print("[red]tail command not found - install coreutils[/red]")
        sys.exit(1)

    if proc.returncode != 0:
        console.print("[red]Error running tail command[/red]")
        sys.exit(1)


@cli.group("config")
@click.pass_context
def config_cmd(ctx: click.Context) -> None:
    """Configuration management commands."""


@config_cmd.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration."""
    config: SquadConfig = ctx.obj["config"]

    table = Table()
    table.add_column("Setting")
    table.add_column("Value")

    table.add_row("Default Program", config.default_program)
    table.add_row("Auto Yes", str(config.auto_yes))
    table.add_row("Data Directory", str(config.data_dir))
    table.add_row("Log Directory", str(config.log_dir))
    table.add_row("Workspace Directory", str(config.workspace_dir))
    table.add_row("Max Concurrent Commands", str(config.max_concurrent))
    table.add_row("Command Timeout", f"{config.default_timeout:g}s")
    table.add_row("Retries", str(config.retry_count))
    table.add_row("Daemon Poll Interval", f"{config.daemon_poll_interval:g}s")

    console.print(table)


@config_cmd.command("init")
@click.option(
    "--path",
    "-p",
    type=click.Path(path_type=Path),
    default=Path.home() / ".config" / "agentsquad" / "config.toml",
    help="Path for the configuration file",
)
def config_init(path: Path) -> None:
    """Create a sample configuration file."""
    try:
        create_sample_config(path)
        console.print(f"[green]Created sample configuration at {path}[/green]")
        console.print("Please edit the configuration file with your settings.")
    except OSError as e:
        console.print(f"[red]Error creating configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
def version() -> None:
    """Show the agentsquad version."""
    console.print(f"agentsquad {__version__}")


def _colorize_log_line(line: str) -> None:
    """Colorize a single log line based on log level."""
    if " ERROR " in line:
        console.print(f"[red]{line}[/red]")
    elif " WARNING " in line:
        console.print(f"[yellow]{line}[/yellow]")
    elif " INFO " in line:
        console.print(f"[blue]{line}[/blue]")
    elif " DEBUG " in line:
        console.print(f"[dim]{line}[/dim]")
    else:
        console.print(line)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
