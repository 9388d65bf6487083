import asyncio
import click
from pathlib import Path
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Config
from .context import ContextAssembler
from .events import EventChannel
from .models.blueprint import Blueprint
from .models.generation import GenerationMode
from .orchestrator import SessionOrchestrator
from .pricing import CostEstimator, ModelSelector
from .providers.base import ProviderType
from .utils.logger import setup_logger
from .utils.progress import ProgressReporter, create_progress

MODE_CHOICES = [m.value for m in GenerationMode if m != GenerationMode.CUSTOM]
PROVIDER_CHOICES = [p.value for p in ProviderType]


def _load_blueprint(path: str) -> Blueprint:
    blueprint = Blueprint.from_yaml(Path(path))
    problems = blueprint.validate()
    if problems:
        raise click.ClickException("Invalid blueprint: " + "; ".join(problems))
    return blueprint


def _session_options(config: Config, mode, provider, model, **overrides):
    if mode:
        overrides["mode"] = GenerationMode(mode)
    if provider:
        overrides["provider"] = ProviderType(provider)
    if model:
        overrides["model"] = model
    return config.generation_options(**overrides)


@click.group()
@click.option('--config', '-c', type=click.Path(), default='config.yaml',
              help='Path to configuration file')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def cli(ctx: click.Context, config: str, verbose: bool):
    """Novel Engine - Generate novel chapters from a story blueprint."""
    ctx.ensure_object(dict)

    config_path = Path(config)
    if config_path.exists():
        ctx.obj['config'] = Config.from_yaml(config_path)
    else:
        ctx.obj['config'] = Config()

    log_level = "DEBUG" if verbose else ctx.obj['config'].log_level
    logger = setup_logger(log_level, ctx.obj['config'].log_file)
    ctx.obj['logger'] = logger

    logger.debug(f"Novel Engine v{__version__}")
    if config_path.exists():
        logger.info(f"Config loaded from: {config_path}")


@cli.command()
@click.argument('blueprint', type=click.Path(exists=True))
@click.option('--output', '-o', type=click.Path(), default='chapters', help='Directory for chapter files')
@click.option('--mode', '-m', type=click.Choice(MODE_CHOICES), help='Generation mode')
@click.option('--provider', '-p', type=click.Choice(PROVIDER_CHOICES), help='AI provider')
@click.option('--model', help='Override the model id')
@click.option('--start', type=int, help='First chapter to generate')
@click.option('--end', type=int, help='Last chapter to generate')
@click.option('--dry-run', is_flag=True, help='Only build contexts and estimate cost')
@click.pass_context
def generate(ctx: click.Context, blueprint: str, output: str, mode, provider, model, start, end, dry_run):
    """Generate chapters for a blueprint YAML file."""
    config = ctx.obj['config']
    logger = ctx.obj['logger']
    story = _load_blueprint(blueprint)

    events = EventChannel()
    orchestrator = SessionOrchestrator.from_config(config, events=events)
    options = _session_options(
        config, mode, provider, model,
        start_from_chapter=start, end_at_chapter=end, dry_run=dry_run,
    )
    created = orchestrator.create_session(story, options)
    if not created.ok:
        raise click.ClickException(str(created.error))
    session_id = created.value.session_id
    logger.info(f"Session {session_id}: estimated cost ${created.value.estimated_cost:.4f}")

    with create_progress() as progress:
        events.add_listener(ProgressReporter(progress, f"Writing '{story.title}'"))
        result = asyncio.run(orchestrator.run(session_id))

    if not result.ok:
        logger.error(f"Generation failed: {result.error}")
        raise click.ClickException(str(result.error))

    state = result.value
    if dry_run:
        logger.success(f"Dry run complete: estimated cost ${state.estimated_cost:.4f}")
        return

    output_dir = Path(output)
    output_dir.mkdir(parents=True, exist_ok=True)
    for chapter in state.finalized_chapters:
        path = output_dir / f"chapter_{chapter.number:02d}.md"
        path.write_text(f"# Chapter {chapter.number}: {chapter.title}\n\n{chapter.content}\n", encoding="utf-8")

    stats = orchestrator.get_statistics(session_id).unwrap()
    logger.success(
        f"Session {state.status.value}: {stats.completed_chapters}/{stats.total_chapters} chapters, "
        f"{stats.total_words} words, avg quality {stats.average_quality_score}, ${stats.total_cost:.4f}"
    )
    for chapter in state.chapters_in_range():
        if chapter.error:
            click.echo(f"Chapter {chapter.number} failed: {chapter.error}")


@cli.command()
@click.argument('blueprint', type=click.Path(exists=True))
@click.option('--mode', '-m', type=click.Choice(MODE_CHOICES), help='Generation mode')
@click.option('--provider', '-p', type=click.Choice(PROVIDER_CHOICES), help='AI provider')
@click.option('--model', help='Override the model id')
@click.pass_context
def estimate(ctx: click.Context, blueprint: str, mode, provider, model):
    """Estimate the cost of generating every chapter."""
    config = ctx.obj['config']
    story = _load_blueprint(blueprint)
    orchestrator = SessionOrchestrator.from_config(config)
    result = orchestrator.estimate_session_cost(story, _session_options(config, mode, provider, model))
    if not result.ok:
        raise click.ClickException(str(result.error))

    table = Table(title=f"Cost estimate: {story.title}")
    table.add_column("Chapter", justify="right")
    table.add_column("Model")
    table.add_column("Input tokens", justify="right")
    table.add_column("Output tokens", justify="right")
    table.add_column("Cost (USD)", justify="right")
    for e in result.value:
        table.add_row(str(e.chapter_number), e.model, str(e.input_tokens), str(e.output_tokens),
                      f"{e.total_cost:.4f}")
    total = sum(e.total_cost for e in result.value)
    table.add_row("Total", "", "", "", f"{total:.4f}", style="bold")
    Console().print(table)


@cli.command()
@click.argument('blueprint', type=click.Path(exists=True))
@click.option('--chapter', '-n', type=int, required=True, help='Chapter number')
@click.option('--mode', '-m', type=click.Choice(MODE_CHOICES), help='Generation mode')
@click.option('--provider', '-p', type=click.Choice(PROVIDER_CHOICES), help='AI provider')
@click.pass_context
def context(ctx: click.Context, blueprint: str, chapter: int, mode, provider):
    """Print the assembled prompts and token ledger for a chapter."""
    config = ctx.obj['config']
    story = _load_blueprint(blueprint)
    selector = ModelSelector(config.catalog.build_catalog())
    model = config.generation.model or selector.select(
        ProviderType(provider) if provider else config.generation.provider,
        GenerationMode(mode) if mode else config.generation.mode,
    )

    result = ContextAssembler().assemble(story, chapter, options=config.context.to_options(model))
    if not result.ok:
        raise click.ClickException(str(result.error))
    assembled = result.value

    click.echo(f"=== SYSTEM PROMPT ===\n{assembled.system_prompt}\n")
    click.echo(f"=== USER PROMPT ===\n{assembled.user_prompt}\n")

    table = Table(title=f"Chapter {chapter} token ledger ({model})")
    table.add_column("Section")
    table.add_column("Tokens", justify="right")
    for section, tokens in assembled.token_ledger.items():
        table.add_row(section, str(tokens))
    table.add_row("Total", f"{assembled.total_tokens}/{assembled.max_tokens}", style="bold")
    table.add_row("Available output", str(assembled.available_output_tokens))
    Console().print(table)


@cli.command()
def modes():
    """List generation modes."""
    table = Table(title="Generation modes")
    table.add_column("Mode")
    table.add_column("Name")
    table.add_column("Cost")
    table.add_column("Time")
    table.add_column("Recommended for")
    for info in CostEstimator.available_modes():
        table.add_row(info.mode.value, info.name, "$" * info.cost_indicator,
                      info.estimated_time, info.recommended_for)
    Console().print(table)


def main():
    cli()

if __name__ == '__main__':
    main()
