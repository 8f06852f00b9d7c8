import asyncio
import functools
import importlib.metadata
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

import structlog
import typer
from dotenv import dotenv_values
from rich.console import Console
from rich.traceback import Traceback

from .config import load_settings
from .data.schemas import Record
from .engine.context import StepContext
from .engine.sandbox.driver import CodeStepExecutor
from .engine.sandbox.errors import CodeExecutionError
from .engine.sandbox.installer import ModuleRequest
from .engine.sandbox.interpreter import load_interpreter

console = Console()
error_console = Console(stderr=True)
logger = structlog.get_logger(__name__)

_verbose_mode = False


def version_callback(value: bool):
    """Prints the application version and exits."""
    if value:
        try:
            version = importlib.metadata.version("cx-code")
            console.print(f"cx-code version: {version}")
        except importlib.metadata.PackageNotFoundError:
            console.print("cx-code version: unknown (package not installed)")
        raise typer.Exit()


def setup_logging(verbose: bool):
    log_level = logging.DEBUG if verbose else logging.INFO
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processor=structlog.dev.ConsoleRenderer(),
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)


def handle_exceptions(func):
    """A decorator to catch and format exceptions for all CLI commands."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise
        except Exception as e:
            error_console.print(f"[bold red]Error:[/bold red] {e}", highlight=False)
            if isinstance(e, CodeExecutionError) and e.description:
                error_console.print(f"[dim]{e.description}[/dim]", highlight=False)
            if _verbose_mode:
                error_console.print(
                    Traceback.from_exception(
                        type(e), e, e.__traceback__, show_locals=True
                    )
                )
            raise typer.Exit(code=1)

    return wrapper


def ui_message_sink(*args: Any, sep: str = " ", **_print_options: Any) -> None:
    """Shows snippet console output on stderr, keeping stdout for the items."""
    error_console.print(
        sep.join(str(arg) for arg in args), markup=False, highlight=False
    )


def _load_items(input_path: Optional[Path]) -> List[Record]:
    if input_path is not None:
        content = input_path.read_text()
    elif not sys.stdin.isatty():
        content = sys.stdin.read()
    else:
        content = ""
    if not content.strip():
        return [Record(json={})]
    data = json.loads(content)
    if not isinstance(data, list):
        data = [data]
    return [Record.from_item(item) for item in data]


app = typer.Typer(
    name="cx-code",
    help="Run JavaScript or Python snippets over workflow items.",
    no_args_is_help=True,
    rich_markup_mode="markdown",
)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose DEBUG logging."
    ),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the application's version and exit.",
    ),
):
    """Global options."""
    global _verbose_mode
    _verbose_mode = verbose
    setup_logging(verbose)


@app.command()
@handle_exceptions
def run(
    code_file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="File holding the snippet to run."
    ),
    language: str = typer.Option(
        "javaScript", "--language", "-l", help="'javaScript' or 'python'."
    ),
    mode: str = typer.Option(
        "runOnceForAllItems",
        "--mode",
        "-m",
        help="'runOnceForAllItems' or 'runOnceForEachItem'.",
    ),
    input_path: Optional[Path] = typer.Option(
        None,
        "--input",
        "-i",
        exists=True,
        dir_okay=False,
        help="JSON file with the input items. Defaults to piped stdin.",
    ),
    modules: str = typer.Option(
        "", "--modules", help="Comma-separated modules a Python snippet needs."
    ),
    env_file: Optional[Path] = typer.Option(
        None, "--env-file", exists=True, dir_okay=False, help="A .env file for `$env`."
    ),
    continue_on_fail: bool = typer.Option(
        False,
        "--continue-on-fail",
        help="Turn failures into error items instead of stopping.",
    ),
    manual: bool = typer.Option(
        False, "--manual", help="Run as a manual execution and show console output."
    ),
):
    """Runs a snippet over the input items and prints the output items as JSON."""
    items = _load_items(input_path)
    env = {}
    if env_file:
        env = {k: v for k, v in dotenv_values(env_file).items() if v is not None}
    step = StepContext(
        items=items,
        mode="manual" if manual else "cli",
        env=env,
        message_sink=ui_message_sink,
    )
    executor = CodeStepExecutor(load_settings())

    records = asyncio.run(
        executor.execute(
            language,
            mode,
            items,
            code_file.read_text(),
            modules,
            "degrade" if continue_on_fail else "abort",
            step=step,
        )
    )
    console.print_json(data=[record.to_item() for record in records])


@app.command()
@handle_exceptions
def install(
    modules: str = typer.Argument(..., help="Comma-separated modules to install."),
):
    """Pre-installs modules for Python snippets."""
    settings = load_settings()
    request = ModuleRequest.parse(modules).without_builtins(
        settings.extra_builtin_modules
    )
    if not len(request):
        console.print("[yellow]Nothing to install: every module is built in.[/yellow]")
        return
    installed = asyncio.run(load_interpreter(settings).load_packages(request))
    if installed:
        console.print(f"[green]✓[/green] Installed: {', '.join(installed)}")
    else:
        console.print("[green]✓[/green] Everything was already installed.")
