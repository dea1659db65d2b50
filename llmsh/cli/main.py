"""
CLI interface for llmsh.

Request commands (predict, complete, nl2cmd) speak JSON over stdin/stdout
with the zsh plugin and always exit 0. Maintenance commands (stats, config,
clean) print for humans.
"""

import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from llmsh.cli.adapter import CONFIG_ERRORS, RequestAdapter
from llmsh.config.loader import (
    DEFAULT_CONFIG,
    Settings,
    default_config_path,
    expand_path,
    load_config,
    write_default_config,
)
from llmsh.core.errors import StorageError
from llmsh.core.orchestrator import CommandOrchestrator
from llmsh.core.usage import (
    aggregate_by_day,
    aggregate_by_method,
    aggregate_by_provider_model,
    summarize,
)
from llmsh.llm.client import OpenAICompatibleClient
from llmsh.storage.cache import open_cache
from llmsh.storage.ledger import UsageLedger
from llmsh.utils import setup_logging

app = typer.Typer(help="LLM-powered shell command prediction and completion.")
config_app = typer.Typer(help="Manage llmsh configuration.")
app.add_typer(config_app, name="config")

console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

SQLITE_SIDECARS = ("-wal", "-shm", "-journal")


@dataclass
class CLIState:
    """Options shared by every command."""
    config_path: Optional[str] = None
    report_errors: bool = False


def _state(ctx: typer.Context) -> CLIState:
    return ctx.obj if isinstance(ctx.obj, CLIState) else CLIState()


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file (default: ~/.llmsh/config.yaml)"
    ),
    report_errors: bool = typer.Option(
        False,
        "--report-errors",
        help="Report provider failures as JSON errors instead of staying silent"
    ),
):
    """llmsh - predict, complete and generate shell commands with an LLM."""
    ctx.obj = CLIState(config_path=config, report_errors=report_errors)


def build_orchestrator(settings: Settings) -> CommandOrchestrator:
    """Wire the production collaborators for one request."""
    setup_logging(settings.logging)
    return CommandOrchestrator(settings, OpenAICompatibleClient())


def _read_stdin() -> str:
    """Read the request, replacing invalid UTF-8 (raw bytes in shell history) with U+FFFD."""
    return sys.stdin.buffer.read().decode("utf-8", errors="replace")


def _run_request(ctx: typer.Context, method: str) -> None:
    state = _state(ctx)
    adapter = RequestAdapter(
        load_settings=lambda: load_config(state.config_path),
        build_orchestrator=build_orchestrator,
        silent_provider_errors=not state.report_errors,
    )
    response = adapter.handle(method, _read_stdin())
    if response is not None:
        typer.echo(json.dumps(response, ensure_ascii=False))
    sys.exit(EXIT_CODE_PASS)


@app.command()
def predict(ctx: typer.Context):
    """Predict the next command from the context JSON on stdin."""
    _run_request(ctx, "predict")


@app.command()
def complete(ctx: typer.Context):
    """Complete the partial command in the JSON request on stdin."""
    _run_request(ctx, "complete")


@app.command("nl2cmd")
def nl2cmd(ctx: typer.Context):
    """Convert the natural-language description on stdin into a command."""
    _run_request(ctx, "nl2cmd")


@app.command()
def stats(ctx: typer.Context):
    """Show token usage statistics and prediction cache status."""
    try:
        settings = load_config(_state(ctx).config_path)
    except CONFIG_ERRORS as e:
        console.print(f"[red]Error loading config:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        records = UsageLedger(settings.tracking.db_path).load_records()
    except StorageError as e:
        console.print(f"[red]Error loading records:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    _display_cache_stats(settings)

    if not records:
        console.print("No usage records found.")
        sys.exit(EXIT_CODE_PASS)

    console.print("\n[bold]Token Usage Statistics[/bold]")

    by_provider = Table(title="Usage by Provider/Model")
    for column in ("Provider", "Model", "Requests", "Input Tokens", "Output Tokens", "Cache Read"):
        by_provider.add_column(column)
    for stat in sorted(aggregate_by_provider_model(records), key=lambda s: (s.provider, s.model)):
        by_provider.add_row(
            stat.provider, stat.model, _fmt(stat.count), _fmt(stat.input_tokens),
            _fmt(stat.output_tokens), _fmt(stat.cache_read_tokens),
        )
    console.print(by_provider)

    by_day = Table(title="Usage by Day")
    for column in ("Day", "Requests", "Input Tokens", "Output Tokens", "Cache Read"):
        by_day.add_column(column)
    day_stats = aggregate_by_day(records)
    for day in sorted(day_stats):
        stat = day_stats[day]
        by_day.add_row(
            day, _fmt(stat.count), _fmt(stat.input_tokens),
            _fmt(stat.output_tokens), _fmt(stat.cache_read_tokens),
        )
    console.print(by_day)

    by_method = Table(title="Usage by Method")
    for column in ("Method", "Requests", "Input Tokens", "Output Tokens"):
        by_method.add_column(column)
    method_stats = aggregate_by_method(records)
    for method in sorted(method_stats):
        stat = method_stats[method]
        by_method.add_row(method, _fmt(stat.count), _fmt(stat.input_tokens), _fmt(stat.output_tokens))
    console.print(by_method)

    summary = summarize(records)
    console.print("\n[bold]Total Summary[/bold]")
    console.print(f"Total Requests:      {_fmt(summary.total_requests)}")
    console.print(f"Total Input Tokens:  {_fmt(summary.input_tokens)}")
    console.print(f"Total Output Tokens: {_fmt(summary.output_tokens)}")
    if summary.cache_savings_percent is not None:
        console.print(f"Total Cache Read:    {_fmt(summary.cache_read_tokens)}")
        console.print(f"Cache Savings:       {summary.cache_savings_percent:.1f}%")
    sys.exit(EXIT_CODE_PASS)


def _fmt(value: int) -> str:
    return f"{value:,}"


def _display_cache_stats(settings: Settings) -> None:
    """Show prediction cache size and hits, if a cache exists."""
    if not settings.cache.enabled or not Path(settings.cache.db_path).exists():
        return
    try:
        with open_cache(settings.cache.db_path) as cache:
            entries, hits = cache.stats()
    except StorageError as e:
        console.print(f"[dim]Prediction cache unavailable: {e}[/]")
        return
    console.print("[bold]Prediction Cache[/bold]")
    console.print(f"Entries: {_fmt(entries)}  Hits: {_fmt(hits)}")


@config_app.command("init")
def config_init(
    ctx: typer.Context,
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite an existing configuration file"
    ),
):
    """Create a default configuration file."""
    try:
        path = write_default_config(_state(ctx).config_path, overwrite=force)
    except FileExistsError as e:
        err_console.print(str(e))
        err_console.print("Use --force to overwrite it.")
        sys.exit(EXIT_CODE_PASS)
    except OSError as e:
        err_console.print(f"[red]Error writing config:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    err_console.print(f"[green]✓[/] Configuration file created at: {path}\n")
    err_console.print("Next steps:")
    err_console.print("1. Set your OpenAI API key:")
    err_console.print('   export OPENAI_API_KEY="your-api-key"')
    err_console.print(f"   Or edit {path} and replace ${{OPENAI_API_KEY}}\n")
    err_console.print("2. Alternatively, configure a local LLM provider (like Ollama)")
    err_console.print("   by changing 'default_provider' to 'local' in the config\n")
    err_console.print("3. Load the ZSH plugin by adding to your ~/.zshrc:")
    err_console.print("   source /path/to/llmsh/zsh/llmsh.plugin.zsh")
    sys.exit(EXIT_CODE_PASS)


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Print the current configuration file."""
    config_state = _state(ctx).config_path
    path = Path(config_state).expanduser() if config_state else default_config_path()
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        err_console.print(f"[red]Error reading config file:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    err_console.print("[bold]Current Configuration:[/bold]\n")
    err_console.print(content, markup=False, highlight=False)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def clean(
    ctx: typer.Context,
    all_data: bool = typer.Option(
        False,
        "--all",
        "-a",
        help="Remove all data including token tracking (keeps config)"
    ),
):
    """Remove the debug log and the prediction cache."""
    try:
        settings = load_config(_state(ctx).config_path)
        log_file = settings.logging.file
        cache_db = settings.cache.db_path
        tokens_json = settings.tracking.db_path
    except CONFIG_ERRORS:
        log_file = expand_path(DEFAULT_CONFIG["logging"]["file"])
        cache_db = expand_path(DEFAULT_CONFIG["cache"]["db_path"])
        tokens_json = expand_path(DEFAULT_CONFIG["tracking"]["db_path"])

    cleaned: List[str] = []
    errors: List[str] = []

    def _remove(label: str, *paths: str) -> None:
        removed = False
        for path in paths:
            try:
                Path(path).unlink()
                removed = True
            except FileNotFoundError:
                continue
            except OSError as e:
                errors.append(f"{label}: {e}")
                return
        if removed:
            cleaned.append(label)

    _remove("debug log", log_file)
    _remove("cache database", cache_db, *(cache_db + suffix for suffix in SQLITE_SIDECARS))
    if all_data:
        ledger = UsageLedger(tokens_json)
        try:
            if ledger.path.exists() and ledger.clear():
                cleaned.append("token tracking data")
            ledger.lock_path.unlink(missing_ok=True)
        except (StorageError, OSError) as e:
            errors.append(f"tokens: {e}")

    if cleaned:
        err_console.print("Cleaned:")
        for item in cleaned:
            err_console.print(f"  [green]✓[/] {item}")
    else:
        err_console.print("No files to clean")

    if errors:
        err_console.print("\nErrors:")
        for message in errors:
            err_console.print(f"  [red]✗[/] {message}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
