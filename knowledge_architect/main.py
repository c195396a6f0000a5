"""
Knowledge Architect - CLI Entry Point.

Turns raw text into a polished Obsidian note through the multi-stage
knowledge pipeline. Built with Click and Rich.
"""

import asyncio
import logging
import sys
import time
from functools import wraps
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from knowledge_architect import __version__
from knowledge_architect.config.settings import Settings, get_settings
from knowledge_architect.models.schemas import (
    AppSettings,
    EnhancedError,
    ErrorCode,
    ErrorSeverity,
    ModelTier,
    PipelineConfig,
    PipelineEventType,
    ProviderIdentity,
    StageId,
)
from knowledge_architect.pipeline.orchestrator import KnowledgePipeline, PipelineError
from knowledge_architect.services.error_service import NOTIFICATION_TITLES
from knowledge_architect.services.model_catalog import list_models, test_provider_connection
from knowledge_architect.services.providers import ProviderError, create_provider
from knowledge_architect.services.storage import (
    HistoryRepository,
    JsonFileStore,
    SettingsRepository,
    StorageError,
)
from knowledge_architect.services.title_generator import TitleGenerationError, generate_title
from knowledge_architect.services.validation_service import (
    InputValidationError,
    ValidationService,
    combine_input,
)
from knowledge_architect.utils.logger import setup_logging
from knowledge_architect.utils.observability import ObservabilityContext

# Initialize Rich Consoles
console = Console()
err_console = Console(stderr=True)

SUPPORTED_INPUT_SUFFIXES = {".txt", ".md", ".markdown", ".text"}

STAGE_LABELS = {
    StageId.SYNTHESIZER: "Synthesizing",
    StageId.CONDENSER: "Condensing",
    StageId.ENHANCER: "Enhancing",
    StageId.MERMAID_VALIDATOR: "Validating diagrams",
    StageId.FINALIZER: "Finalizing",
    StageId.HTML_TRANSLATOR: "Translating to HTML",
}


# =============================================================================
# Helper Functions
# =============================================================================

def async_command(f):
    """Decorator to run async click commands."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        return asyncio.run(f(*args, **kwargs))
    return wrapper


def setup_cli_logging(settings: Settings, verbose: bool) -> None:
    """Configure structlog and route stdlib records through Rich."""
    level = "DEBUG" if verbose else settings.log_level
    setup_logging(level=level, json_format=settings.log_json)
    if not settings.log_json:
        root = logging.getLogger()
        root.handlers = [RichHandler(console=err_console, rich_tracebacks=True, show_path=False)]
    # Silence third-party libs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)


def _repositories(settings: Settings) -> tuple[SettingsRepository, HistoryRepository]:
    store = JsonFileStore(settings.data_dir)
    return SettingsRepository(store), HistoryRepository(store)


def _read_inputs(paths: tuple[str, ...], observability: ObservabilityContext) -> str:
    """Read plain-text input files. Rich formats need extraction before this tool."""
    parts = []
    for raw_path in paths:
        path = Path(raw_path)
        if path.suffix.lower() not in SUPPORTED_INPUT_SUFFIXES:
            record = observability.error_manager.create_file_error(
                f"Unsupported format for {path.name}: extract the text first "
                f"(supported: {', '.join(sorted(SUPPORTED_INPUT_SUFFIXES))})",
                metadata={"file": str(path)},
            )
            raise click.ClickException(record.message)
        try:
            parts.append(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            record = observability.error_manager.create_file_error(
                f"Failed to read {path.name}", e, metadata={"file": str(path)}
            )
            raise click.ClickException(record.message) from e
    return "\n\n".join(part.strip() for part in parts if part.strip())


def print_error(record: EnhancedError, stage: Optional[str] = None) -> None:
    """Render a classified error for the user."""
    lines = [f"[bold]{escape(record.message)}[/bold]"]
    if stage:
        lines.append(f"Stage: [cyan]{stage}[/cyan]")
    lines.append(f"Code: {record.code} ({record.code_name})")
    if record.user_action:
        lines.append(f"[yellow]{record.user_action}[/yellow]")
    if record.retryable:
        lines.append("[dim]This error is usually temporary; retrying later may help.[/dim]")
    err_console.print(
        Panel(
            "\n".join(lines),
            title=f"[red]{NOTIFICATION_TITLES[ErrorSeverity(record.severity)]}[/red]",
            border_style="red",
        )
    )


# =============================================================================
# CLI Group
# =============================================================================

@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", is_flag=True, help="Detailed logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool):
    """Knowledge Architect: turn raw text into polished Obsidian notes."""
    settings = get_settings()
    setup_cli_logging(settings, verbose)
    ctx.obj = {"settings": settings, "verbose": verbose}


# =============================================================================
# Commands
# =============================================================================

@cli.command()
@click.argument("topic")
@click.option("--input", "-i", "inputs", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Plain-text or Markdown file to include (repeatable)")
@click.option("--text", "-t", default="", help="Text to include")
@click.option("--html", "generate_html", is_flag=True, help="Also produce an HTML document")
@click.option("--tier", type=click.Choice([t.value for t in ModelTier]), default=ModelTier.FAST.value,
              help="Model quality tier")
@click.option("--provider", type=click.Choice([p.value for p in ProviderIdentity]), default=None,
              help="Override the configured provider for this run")
@click.option("--stream/--no-stream", default=None, help="Stream tokens (defaults to settings)")
@click.option("--output-dir", type=click.Path(file_okay=False), default=None, help="Output directory")
@click.option("--no-history", is_flag=True, help="Do not save this run to history")
@click.pass_context
@async_command
async def generate(
    ctx: click.Context,
    topic: str,
    inputs: tuple[str, ...],
    text: str,
    generate_html: bool,
    tier: str,
    provider: Optional[str],
    stream: Optional[bool],
    output_dir: Optional[str],
    no_history: bool,
):
    """
    Generate a note about TOPIC from files and/or text.

    TOPIC: Main topic of the note (e.g., "Photosynthesis")
    """
    settings: Settings = ctx.obj["settings"]
    observability = ObservabilityContext.create(max_log_entries=settings.max_log_entries)
    settings_repo, history_repo = _repositories(settings)
    app_settings = settings_repo.load()

    overrides = {}
    if provider:
        overrides["provider"] = ProviderIdentity(provider)
    if stream is not None:
        overrides["streaming_enabled"] = stream
    if overrides:
        app_settings = app_settings.model_copy(update=overrides)

    raw_input = combine_input(_read_inputs(inputs, observability), text)
    config = PipelineConfig.from_settings(app_settings, tier, generate_html)

    console.print(Panel.fit(
        f"[bold blue]Knowledge Architect[/bold blue]\n"
        f"Topic: [cyan]{topic}[/cyan]  Provider: [cyan]{config.provider}[/cyan]  Tier: [cyan]{config.model_tier}[/cyan]"
    ))

    client = create_provider(app_settings, settings, observability, provider=config.provider)
    started = time.monotonic()

    async with client, KnowledgePipeline(
        provider=client,
        app_settings=app_settings,
        settings=settings,
        observability=observability,
    ) as pipeline:
        try:
            run = pipeline.start(raw_input, topic, config)
        except InputValidationError as e:
            print_error(observability.error_manager.handle_error(e, "validation", code=e.code))
            sys.exit(1)

        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                TextColumn("[dim]{task.fields[rate]}"),
                TimeElapsedColumn(),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("[cyan]Starting...", total=None, rate="")
                async for event in pipeline.execute(run):
                    stage = StageId(event.stage)
                    if event.type == PipelineEventType.STAGE_START:
                        progress.update(task, description=f"[cyan]{STAGE_LABELS[stage]}...", rate="")
                    elif event.type == PipelineEventType.CHUNK and event.tokens_per_second:
                        progress.update(task, rate=f"{event.tokens_per_second:.1f} tok/s")
                    elif event.type == PipelineEventType.STAGE_END:
                        progress.console.print(
                            f"[green]✓[/green] {stage.value} [dim]({len(event.content or '')} chars)[/dim]"
                        )
                    elif event.type == PipelineEventType.SKIPPED:
                        progress.console.print(f"[dim]- {stage.value} skipped[/dim]")
        except PipelineError as e:
            record = observability.error_manager.handle_error(e, e.stage.value)
            print_error(record, stage=e.stage.value)
            if ctx.obj["verbose"]:
                err_console.print_exception()
            sys.exit(1)

    validator = ValidationService(settings.max_input_chars)
    target_dir = Path(output_dir) if output_dir else settings.output_dir
    target_dir.mkdir(parents=True, exist_ok=True)
    stem = validator.slugify(run.topic)

    note_path = target_dir / f"{stem}.md"
    note_path.write_text(run.final_markdown or "", encoding="utf-8")
    written = [note_path]
    if run.html_document:
        html_path = target_dir / f"{stem}.html"
        html_path.write_text(run.html_document, encoding="utf-8")
        written.append(html_path)

    if not no_history:
        try:
            history_repo.add(run.topic, run.stage_outputs.to_dict())
        except StorageError as e:
            print_error(observability.error_manager.handle_error(
                e, "system", code=ErrorCode.CONFIG_SAVE_FAILED
            ))

    table = Table(title="Run Summary", show_header=False)
    table.add_row("Topic", run.topic)
    table.add_row("Run ID", run.run_id)
    table.add_row("Status", "[green]Success[/green]")
    table.add_row("Duration", f"{time.monotonic() - started:.2f}s")
    for path in written:
        table.add_row("Output", str(path))
    console.print(table)


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--tier", type=click.Choice([t.value for t in ModelTier]), default=ModelTier.FAST.value,
              help="Model quality tier")
@click.pass_context
@async_command
async def title(ctx: click.Context, file_path: str, tier: str):
    """
    Generate a title for the text in FILE_PATH.
    """
    settings: Settings = ctx.obj["settings"]
    observability = ObservabilityContext.create(max_log_entries=settings.max_log_entries)
    settings_repo, _ = _repositories(settings)
    app_settings = settings_repo.load()

    content = _read_inputs((file_path,), observability)
    try:
        result = await generate_title(
            content,
            model_tier=tier,
            app_settings=app_settings,
            settings=settings,
            observability=observability,
        )
    except (TitleGenerationError, ProviderError) as e:
        print_error(observability.error_manager.handle_error(e, "title_generation"))
        sys.exit(1)

    console.print(result, markup=False, highlight=False)


@cli.command()
@click.pass_context
@async_command
async def models(ctx: click.Context):
    """List models available for the configured provider."""
    settings: Settings = ctx.obj["settings"]
    observability = ObservabilityContext.create()
    settings_repo, _ = _repositories(settings)
    app_settings = settings_repo.load()

    try:
        available = await list_models(app_settings, timeout=settings.model_list_timeout_seconds)
    except ProviderError as e:
        print_error(observability.error_manager.handle_error(e, "setup"))
        sys.exit(1)

    selected = app_settings.active_config.selected_model
    table = Table(title=f"Models ({app_settings.provider})")
    table.add_column("Model")
    table.add_column("Selected")
    for model in available:
        table.add_row(model.label, "[green]✓[/green]" if model.id == selected else "")
    console.print(table)


@cli.command()
@click.option("--clear", is_flag=True, help="Delete all saved runs")
@click.option("--delete", "delete_id", default=None, help="Delete one saved run by id")
@click.option("--show", "show_id", default=None, help="Print the final note of a saved run")
@click.pass_context
def history(ctx: click.Context, clear: bool, delete_id: Optional[str], show_id: Optional[str]):
    """List, show or clear saved runs."""
    _, history_repo = _repositories(ctx.obj["settings"])

    if clear:
        history_repo.clear()
        console.print("[green]History cleared.[/green]")
        return
    if delete_id:
        if not history_repo.delete(delete_id):
            raise click.ClickException(f"No history item with id {delete_id}")
        console.print(f"[green]Deleted {delete_id}.[/green]")
        return
    if show_id:
        item = history_repo.get(show_id)
        if item is None:
            raise click.ClickException(f"No history item with id {show_id}")
        console.print(item.outputs.get(StageId.FINALIZER.value, ""), markup=False, highlight=False)
        return

    items = history_repo.load_all()
    if not items:
        console.print("[dim]No saved runs.[/dim]")
        return

    table = Table(title="History")
    table.add_column("ID")
    table.add_column("Topic")
    table.add_column("Date")
    table.add_column("HTML")
    for item in items:
        has_html = item.outputs.get(StageId.HTML_TRANSLATOR.value, "Skipped") != "Skipped"
        table.add_row(item.id, item.topic, item.date.strftime("%Y-%m-%d %H:%M"), "yes" if has_html else "")
    console.print(table)


# =============================================================================
# Config Commands
# =============================================================================

@cli.group()
def config():
    """Inspect and change stored settings."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context):
    """Show the stored settings (API keys masked)."""
    settings: Settings = ctx.obj["settings"]
    settings_repo, _ = _repositories(settings)
    app_settings = settings_repo.load()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Provider")
    table.add_column("Base URL")
    table.add_column("Model")
    table.add_column("API Key")
    for identity in ProviderIdentity:
        provider_config = app_settings.config.for_provider(identity)
        key = provider_config.api_key or settings.get_api_key(identity.value) or ""
        marker = " [green](active)[/green]" if identity.value == app_settings.provider else ""
        table.add_row(
            identity.value + marker,
            provider_config.base_url or "-",
            provider_config.selected_model or "-",
            f"configured ({len(key)} chars)" if key else "[red]missing[/red]",
        )
    console.print(table)
    console.print(
        f"Reasoning mode: {'on' if app_settings.reasoning_mode_enabled else 'off'}  "
        f"Streaming: {'on' if app_settings.streaming_enabled else 'off'}"
    )
    console.print(f"[dim]Data directory: {settings.data_dir}[/dim]")


@config.command("set-provider")
@click.argument("name", type=click.Choice([p.value for p in ProviderIdentity]))
@click.pass_context
def config_set_provider(ctx: click.Context, name: str):
    """Select the active provider."""
    settings_repo, _ = _repositories(ctx.obj["settings"])
    app_settings = settings_repo.load().model_copy(update={"provider": ProviderIdentity(name)})
    settings_repo.save(app_settings)
    console.print(f"[green]✓[/green] Active provider: {name}")


@config.command("set-model")
@click.argument("model")
@click.pass_context
def config_set_model(ctx: click.Context, model: str):
    """Select the model for the active provider."""
    settings_repo, _ = _repositories(ctx.obj["settings"])
    app_settings = settings_repo.load()
    provider_config = app_settings.active_config
    provider_config.selected_model = model
    if model not in provider_config.models:
        provider_config.models.append(model)
    settings_repo.save(app_settings)
    console.print(f"[green]✓[/green] {app_settings.provider} model: {model}")


@config.command("set")
@click.option("--reasoning/--no-reasoning", default=None, help="Toggle reasoning mode")
@click.option("--streaming/--no-streaming", default=None, help="Toggle token streaming")
@click.option("--base-url", default=None, help="Base URL for the active provider")
@click.option("--api-key", default=None, help="API key for the active provider")
@click.pass_context
def config_set(
    ctx: click.Context,
    reasoning: Optional[bool],
    streaming: Optional[bool],
    base_url: Optional[str],
    api_key: Optional[str],
):
    """Change flags and connection details of the active provider."""
    settings_repo, _ = _repositories(ctx.obj["settings"])
    app_settings = settings_repo.load()
    if reasoning is not None:
        app_settings.reasoning_mode_enabled = reasoning
    if streaming is not None:
        app_settings.streaming_enabled = streaming
    if base_url is not None:
        app_settings.active_config.base_url = base_url
    if api_key is not None:
        app_settings.active_config.api_key = api_key
    settings_repo.save(app_settings)
    console.print("[green]✓[/green] Settings saved.")


@config.command("test")
@click.pass_context
@async_command
async def config_test(ctx: click.Context):
    """Check that the active provider is reachable."""
    settings: Settings = ctx.obj["settings"]
    settings_repo, _ = _repositories(settings)
    app_settings = settings_repo.load()
    ok = await test_provider_connection(app_settings, timeout=settings.model_list_timeout_seconds)
    if ok:
        console.print(f"[green]✓[/green] {app_settings.provider} is reachable")
    else:
        console.print(f"[red]✗[/red] Could not reach {app_settings.provider}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
