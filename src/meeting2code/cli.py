"""CLI entrypoint for meeting2code.

``serve`` starts the dashboard server. The other commands run pipeline
stages headless in this process and print the stage events as they
arrive; a stage that ends with an ``error`` event exits with status 1.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import Config
from .dashboard.events import Event, EventType, StageStream
from .errors import Meeting2CodeError
from .pipeline import Pipeline

app = typer.Typer(
    name="meeting2code",
    help="Turn meeting requirements into verified, deployed code changes.",
    add_completion=False,
)

console = Console()

DEFAULT_CONFIG_DIR = Path(__file__).parent.parent.parent / "config"


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"meeting2code version {__version__}")
        raise typer.Exit()


def get_config_dir(config_dir: Optional[Path]) -> Path:
    """Resolve the directory holding ``pipeline.yaml``.

    Args:
        config_dir: User-provided config dir, or None for default.
    """
    if config_dir:
        return config_dir.resolve()
    cwd_config = Path.cwd() / "config"
    if cwd_config.exists():
        return cwd_config
    return DEFAULT_CONFIG_DIR


def load_config(config_dir: Optional[Path], mock: bool, verbose: bool) -> Config:
    """Set up logging, load configuration and exit on invalid settings."""
    setup_logging(verbose)
    config = Config.from_env(get_config_dir(config_dir))
    if mock:
        config.mock_mode = True
        config.backend = "mock"

    errors = config.validate()
    if errors:
        for error in errors:
            console.print(f"[red]Error:[/red] {error}")
        raise typer.Exit(1)
    return config


def print_event(event: Event) -> None:
    """Render one stage event on the console."""
    data = event.data
    if event.type == EventType.LOG:
        console.print(f"[dim]{escape(data.get('message', ''))}[/dim]")
    elif event.type == EventType.PROGRESS:
        if "total" in data:
            console.print(f"[cyan]({data.get('current', 0)}/{data['total']})[/cyan] {escape(data.get('message', ''))}")
        else:
            console.print(f"[cyan]Step {data.get('step', 0)}:[/cyan] {escape(data.get('message', ''))}")
    elif event.type == EventType.MEETING_INFO:
        console.print(f"[bold]Meeting:[/bold] {data.get('title')} ({data.get('date') or 'no date'})")
    elif event.type == EventType.GAP:
        gap = data["gap"]
        console.print(f"[yellow]Gap {gap['id']}[/yellow] [{gap['complexity']}] {escape(gap['gap'])}")
    elif event.type == EventType.ISSUE:
        issue = data["issue"]
        if issue.get("number"):
            console.print(f"[green]Issue #{issue['number']}[/green] {issue['url']}")
        else:
            console.print(f"[red]Issue for gap {issue['id']} failed:[/red] {escape(str(issue.get('error')))}")
    elif event.type == EventType.ITEM_COMPLETE:
        mark = "[green]✔[/green]" if data.get("success") else "[red]✘[/red]"
        console.print(f"{mark} Gap {data.get('id')}: {escape(data.get('summary', ''))}")
    elif event.type == EventType.RESULT:
        result = data["result"]
        if "passed" in result:
            mark = "[green]PASS[/green]" if result["passed"] else "[red]FAIL[/red]"
            console.print(f"{mark} {result['requirement']}\n  [dim]{escape(result['details'])}[/dim]")
        else:
            console.print(f"#{result.get('issueNumber')}: {result.get('message')}")
    elif event.type == EventType.DEPLOY_URL:
        console.print(f"[bold green]Deployed:[/bold green] {data.get('url')}")
    elif event.type == EventType.COMPLETE:
        console.print("[bold green]✔ Stage complete[/bold green]")
    elif event.type == EventType.ERROR:
        console.print(f"[bold red]✘ Stage failed:[/bold red] {escape(str(data.get('error')))}")


async def follow(stream: StageStream) -> Event:
    """Print a stage's events until it ends and return the terminal event."""
    async for event in stream.events():
        print_event(event)
    return await stream.wait()


def _run(coro) -> None:
    """Run a headless stage sequence, exiting 1 on a failed stage."""
    try:
        ok = asyncio.run(coro)
    except Meeting2CodeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    if not ok:
        raise typer.Exit(1)


def _show_gaps(pipeline: Pipeline) -> None:
    table = Table(title="Gap Analysis")
    table.add_column("#", style="cyan")
    table.add_column("Requirement")
    table.add_column("Complexity")
    table.add_column("Effort")
    for gap in pipeline.state.gaps:
        table.add_row(str(gap.id), gap.requirement, gap.complexity.value, gap.estimated_effort)
    console.print(table)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Meeting-to-code pipeline."""
    pass


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to run the dashboard server on."),
    host: Optional[str] = typer.Option(None, "--host", help="Host to bind the dashboard server to."),
    reset: bool = typer.Option(False, "--reset", help="Reset the target working copy on start."),
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", "-c", help="Directory holding pipeline.yaml."),
    mock: bool = typer.Option(False, "--mock", "-m", help="Run with scripted agents and CLIs."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """Start the dashboard server.

    Examples:
        meeting2code serve
        meeting2code serve --port 8080 --mock
    """
    config = load_config(config_dir, mock, verbose)
    if port is not None:
        config.port = port
    if host is not None:
        config.host = host
    if reset:
        config.reset_on_start = True

    from .dashboard.server import run_server

    console.print("[bold cyan]meeting2code dashboard[/bold cyan]")
    console.print(f"[dim]Starting server at http://{config.host}:{config.port}[/dim]")
    if config.mock_mode:
        console.print("[yellow]Mock mode: agents and CLIs are scripted[/yellow]")
    console.print("[dim]Press Ctrl+C to stop the server.[/dim]")
    try:
        run_server(config)
    except KeyboardInterrupt:
        console.print("\n[dim]Dashboard server stopped.[/dim]")


@app.command()
def extract(
    meeting: Optional[str] = typer.Option(None, "--meeting", help="Meeting title to look up."),
    analyze: bool = typer.Option(False, "--analyze", "-a", help="Also run gap analysis."),
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", "-c", help="Directory holding pipeline.yaml."),
    mock: bool = typer.Option(False, "--mock", "-m", help="Run with scripted agents and CLIs."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """Extract requirements from the meeting."""
    config = load_config(config_dir, mock, verbose)
    pipeline = Pipeline(config)

    async def stages() -> bool:
        terminal = await follow(await pipeline.extract(meeting, analyze=analyze))
        if terminal.type != EventType.ERROR:
            for requirement in pipeline.state.requirements:
                console.print(f"{requirement.number}. {requirement.text}")
            if analyze:
                _show_gaps(pipeline)
        return terminal.type == EventType.COMPLETE

    _run(stages())


@app.command("analyze")
def analyze_cmd(
    requirement: Optional[list[str]] = typer.Option(
        None, "--requirement", "-r", help="Requirement text; repeat for several. Extracts when omitted."
    ),
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", "-c", help="Directory holding pipeline.yaml."),
    mock: bool = typer.Option(False, "--mock", "-m", help="Run with scripted agents and CLIs."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """Analyze requirements against the target codebase."""
    config = load_config(config_dir, mock, verbose)
    pipeline = Pipeline(config)

    async def stages() -> bool:
        if requirement:
            pipeline.seed_requirements(requirement)
            terminal = await follow(await pipeline.analyze())
        else:
            terminal = await follow(await pipeline.extract(analyze=True))
        if terminal.type == EventType.COMPLETE:
            _show_gaps(pipeline)
        return terminal.type == EventType.COMPLETE

    _run(stages())


@app.command()
def dispatch(
    requirement: Optional[list[str]] = typer.Option(
        None, "--requirement", "-r", help="Requirement text; repeat for several. Extracts when omitted."
    ),
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", "-c", help="Directory holding pipeline.yaml."),
    mock: bool = typer.Option(False, "--mock", "-m", help="Run with scripted agents and CLIs."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """Analyze requirements, then implement every gap in the local working copy."""
    config = load_config(config_dir, mock, verbose)
    pipeline = Pipeline(config)

    async def stages() -> bool:
        if requirement:
            pipeline.seed_requirements(requirement)
            terminal = await follow(await pipeline.analyze())
        else:
            terminal = await follow(await pipeline.extract(analyze=True))
        if terminal.type != EventType.COMPLETE:
            return False
        terminal = await follow(await pipeline.dispatch([gap.id for gap in pipeline.state.gaps]))
        return terminal.type == EventType.COMPLETE

    _run(stages())


@app.command()
def deploy(
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", "-c", help="Directory holding pipeline.yaml."),
    mock: bool = typer.Option(False, "--mock", "-m", help="Run with scripted agents and CLIs."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """Merge feature branches and deploy the working copy."""
    config = load_config(config_dir, mock, verbose)
    pipeline = Pipeline(config)

    async def stages() -> bool:
        terminal = await follow(await pipeline.deploy())
        return terminal.type == EventType.COMPLETE

    _run(stages())


@app.command()
def validate(
    url: str = typer.Argument(..., help="URL of the deployed site."),
    requirement: Optional[list[str]] = typer.Option(
        None, "--requirement", "-r", help="Requirement text; repeat for several. Extracts when omitted."
    ),
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", "-c", help="Directory holding pipeline.yaml."),
    mock: bool = typer.Option(False, "--mock", "-m", help="Run with scripted agents and CLIs."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """Judge requirements against a live site."""
    config = load_config(config_dir, mock, verbose)
    pipeline = Pipeline(config)

    async def stages() -> bool:
        if not requirement:
            terminal = await follow(await pipeline.extract())
            if terminal.type != EventType.COMPLETE:
                return False
        terminal = await follow(await pipeline.validate(url, requirement))
        if terminal.type == EventType.COMPLETE:
            data = terminal.data
            console.print(f"[bold]{data['passed']}/{data['total']} requirements passed[/bold]")
        return terminal.type == EventType.COMPLETE

    _run(stages())


@app.command("reset-repo")
def reset_repo(
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", "-c", help="Directory holding pipeline.yaml."),
    mock: bool = typer.Option(False, "--mock", "-m", help="Run with scripted agents and CLIs."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    """Restore the working copy to the baseline and delete local feature branches."""
    config = load_config(config_dir, mock, verbose)
    pipeline = Pipeline(config)

    async def stages() -> bool:
        deleted = await pipeline.reset_repo()
        console.print(f"[green]✔[/green] Working copy at {pipeline.workspace.baseline}")
        for branch in deleted:
            console.print(f"  [dim]deleted {branch}[/dim]")
        return True

    _run(stages())


if __name__ == "__main__":
    app()
