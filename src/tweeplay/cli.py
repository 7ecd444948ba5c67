"""tweeplay CLI - typer application entry point."""

from __future__ import annotations

import atexit
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from dotenv import load_dotenv
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from tweeplay.config import EngineConfig, EngineConfigError, load_engine_config
from tweeplay.library import StoryLibrary, StoryLibraryError
from tweeplay.observability import close_file_logging, configure_logging, get_logger
from tweeplay.play import StoryEngine, render_passage
from tweeplay.story import BuildResult, NavigationError, StoryBuildError, load_document

if TYPE_CHECKING:
    from collections.abc import Callable

    from tweeplay.play import RenderedView


def _is_interactive_tty() -> bool:
    """Check if stdin/stdout are connected to a TTY."""
    return sys.stdin.isatty() and sys.stdout.isatty()


# Load environment variables from .env file
load_dotenv()

app = typer.Typer(
    name="tweeplay",
    help="tweeplay: Play and check Twee interactive fiction stories.",
    no_args_is_help=True,
)
library_app = typer.Typer(
    help="Manage the story library.",
    no_args_is_help=True,
)
app.add_typer(library_app, name="library")
console = Console()

DEFAULT_LIBRARY_DIR = Path("library")
LOCAL_USER = "local"

# Global state (set by callbacks, used by commands)
_config_path: Path | None = None
_library_dir: Path = DEFAULT_LIBRARY_DIR


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log: Annotated[
        Path | None,
        typer.Option(
            "--log",
            help="Also write a JSONL event log to this file.",
        ),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Engine configuration file (YAML).",
            envvar="TWEEPLAY_CONFIG",
        ),
    ] = None,
) -> None:
    """tweeplay: Play and check Twee interactive fiction stories."""
    global _config_path
    _config_path = config

    configure_logging(verbosity=verbose, log_file=log)
    if log is not None:
        atexit.register(close_file_logging)


def _engine_config() -> EngineConfig:
    """Load engine configuration, exiting with an error message on failure."""
    try:
        return load_engine_config(_config_path)
    except EngineConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None


def _read_document(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        console.print(f"[red]Error:[/red] Cannot read {path}: {escape(str(e))}")
        raise typer.Exit(1) from None


def _build(path: Path, config: EngineConfig) -> BuildResult:
    """Build a story document, printing feedback and exiting on build errors."""
    raw_text = _read_document(path)
    try:
        return load_document(raw_text, default_start=config.default_start)
    except StoryBuildError as e:
        console.print(Markdown(e.to_feedback()))
        raise typer.Exit(1) from None


def _print_view(view: RenderedView) -> None:
    console.print()
    console.print(
        Panel(
            escape(view.text) or "[dim](empty passage)[/dim]",
            title=escape(view.title),
            title_align="left",
            border_style="green" if not view.is_ending else "magenta",
        )
    )
    for choice in view.choices:
        if choice.available:
            console.print(f"  [cyan]{choice.index}[/cyan]  {escape(choice.label)}")
        else:
            console.print(f"  [dim]{choice.index}  {escape(choice.label)} (unavailable)[/dim]")
    if view.is_ending:
        console.print("[magenta]The End.[/magenta]")


# =============================================================================
# Commands
# =============================================================================


@app.command()
def version() -> None:
    """Show version information."""
    from tweeplay import __version__

    console.print(f"tweeplay v{__version__}")


@app.command()
def check(
    file: Annotated[Path, typer.Argument(help="Twee story document.", exists=True)],
    strict: Annotated[
        bool,
        typer.Option("--strict", help="Exit with an error if there are warnings."),
    ] = False,
) -> None:
    """Build a story and report its warnings."""
    log = get_logger(__name__)
    config = _engine_config()
    result = _build(file, config)
    graph = result.graph

    title = graph.title or "(untitled)"
    console.print(
        f"[bold]{escape(title)}[/bold]: {len(graph)} passages, "
        f"start [cyan]{escape(graph.start.name)}[/cyan]"
    )

    if result.report.has_warnings:
        table = Table(title=f"Warnings ({result.report.summary})")
        table.add_column("Code", style="yellow")
        table.add_column("Passage", style="cyan")
        table.add_column("Message")
        table.add_column("Details", style="dim")
        for warning in result.warnings:
            details = " ".join(f"{key}={value}" for key, value in warning.context.items())
            table.add_row(
                warning.code,
                escape(warning.passage or "-"),
                escape(warning.message),
                escape(details),
            )
        console.print()
        console.print(table)
    else:
        console.print("[green]✓[/green] No warnings")

    log.info("story_checked", file=str(file), warnings=len(result.warnings))
    if strict and result.report.has_warnings:
        raise typer.Exit(1)


@app.command()
def show(
    file: Annotated[Path, typer.Argument(help="Twee story document.", exists=True)],
    passage: Annotated[str, typer.Argument(help="Passage name.")],
) -> None:
    """Render a single passage."""
    config = _engine_config()
    graph = _build(file, config).graph

    found = graph.get(passage)
    if found is None:
        console.print(f"[red]Error:[/red] No passage named '{escape(passage)}'.")
        raise typer.Exit(1)

    view = render_passage(
        found,
        story_id=file.stem,
        story_title=graph.title,
        dangling_choices=config.dangling_choices,
        link_template=config.link_template,
    )
    _print_view(view)


@app.command()
def play(
    file: Annotated[Path, typer.Argument(help="Twee story document.", exists=True)],
) -> None:
    """Play a story in the terminal.

    Enter a choice number to follow it, ``r`` to restart, ``q`` to quit.
    """
    config = _engine_config()
    engine = StoryEngine(config)
    try:
        loaded = engine.load_story(_read_document(file), story_id=file.stem)
    except StoryBuildError as e:
        console.print(Markdown(e.to_feedback()))
        raise typer.Exit(1) from None

    handle = loaded.handle
    if handle.title:
        console.print(f"[bold]{escape(handle.title)}[/bold]")
    read_answer = _answer_reader()

    view = engine.render_current(handle, LOCAL_USER)
    _print_view(view)
    while True:
        answer = read_answer()
        if answer is None or answer.lower() in ("q", "quit"):
            break
        if answer.lower() in ("r", "restart") or (view.is_ending and answer):
            engine.reset_session(handle, LOCAL_USER)
            view = engine.render_current(handle, LOCAL_USER)
            _print_view(view)
            continue
        try:
            index = int(answer)
        except ValueError:
            console.print("[yellow]Enter a choice number, r to restart or q to quit.[/yellow]")
            continue
        try:
            view = engine.choose(handle, LOCAL_USER, index)
        except NavigationError as e:
            console.print(Markdown(e.to_feedback()))
            continue
        _print_view(view)


def _answer_reader() -> Callable[[], str | None]:
    """Return a function reading one answer, or None at end of input."""
    if _is_interactive_tty():
        session: PromptSession[str] = PromptSession()

        def _prompt() -> str | None:
            try:
                return session.prompt(HTML("<b><ansicyan>&gt;</ansicyan></b> ")).strip()
            except (EOFError, KeyboardInterrupt):
                return None

        return _prompt

    def _readline() -> str | None:
        line = sys.stdin.readline()
        return line.strip() if line else None

    return _readline


# =============================================================================
# Library commands
# =============================================================================


@library_app.callback()
def library_main(
    library: Annotated[
        Path,
        typer.Option(
            "--library",
            "-l",
            help="Library folder (default: ./library).",
            envvar="TWEEPLAY_LIBRARY",
        ),
    ] = DEFAULT_LIBRARY_DIR,
) -> None:
    """Manage the story library."""
    global _library_dir
    _library_dir = library


def _open_library(config: EngineConfig) -> StoryLibrary:
    try:
        return StoryLibrary(_library_dir, default_start=config.default_start)
    except StoryLibraryError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None


@library_app.command("add")
def library_add(
    file: Annotated[Path, typer.Argument(help="Twee story document.", exists=True)],
) -> None:
    """Validate a story and add it to the library."""
    config = _engine_config()
    raw_text = _read_document(file)
    with _open_library(config) as library:
        try:
            stored = library.add_story(raw_text)
        except StoryBuildError as e:
            console.print(Markdown(e.to_feedback()))
            raise typer.Exit(1) from None
        except StoryLibraryError as e:
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            raise typer.Exit(1) from None
    console.print(f"[green]✓[/green] Added '{escape(stored.name)}' as story {stored.id}")


@library_app.command("list")
def library_list() -> None:
    """List stored stories."""
    config = _engine_config()
    with _open_library(config) as library:
        stories = library.list_stories()

    if not stories:
        console.print("[dim]The library is empty.[/dim]")
        return

    table = Table(title=f"Story Library: {_library_dir}")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Name", style="bold")
    table.add_column("Added", style="dim")
    for stored in stories:
        table.add_row(str(stored.id), escape(stored.name), stored.added_at)
    console.print(table)


@library_app.command("remove")
def library_remove(
    story_id: Annotated[int, typer.Argument(help="Library id of the story.")],
) -> None:
    """Delete a story from the library."""
    config = _engine_config()
    with _open_library(config) as library:
        try:
            stored = library.delete_story(story_id)
        except StoryLibraryError as e:
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            raise typer.Exit(1) from None
    console.print(f"[green]✓[/green] Removed '{escape(stored.name)}'")


if __name__ == "__main__":
    app()
