import json
import logging
import sys
from pathlib import Path

import click

from castwriter.config import get_settings
from castwriter.db import get_session_factory, init_db
from castwriter.errors import CastwriterError, PhaseFailedError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """castwriter - podcast transcript to blog, social and email content"""
    ctx.ensure_object(dict)

    # Don't initialize database during resilient parsing (help, completion)
    if ctx.resilient_parsing:
        return

    # Allow tests to inject settings, repository and providers via ctx.obj
    if "settings" not in ctx.obj:
        ctx.obj["settings"] = get_settings()
    settings = ctx.obj["settings"]

    if "repository" not in ctx.obj:
        from castwriter.repository import SqlRepository

        init_db(settings.database_url)
        ctx.obj["repository"] = SqlRepository(get_session_factory(settings.database_url))


def _processor(ctx: click.Context):
    from castwriter.core.episode_processor import EpisodeProcessor
    from castwriter.core.stage_runner import StageRunner
    from castwriter.services.llm_service import build_providers

    settings = ctx.obj["settings"]
    providers = ctx.obj.get("providers")
    if providers is None:
        providers = build_providers(settings)
    return EpisodeProcessor(ctx.obj["repository"], StageRunner(providers, settings), settings)


def _parse_context(pairs: tuple[str, ...]) -> dict:
    context = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--context")
        context[key.strip()] = value.strip()
    return context


@cli.command(name="init-db")
@click.pass_context
def init_db_cmd(ctx: click.Context) -> None:
    """Initialize the database (create tables)."""
    click.echo("Database initialized successfully.")


@cli.command()
@click.option(
    "--transcript",
    "transcript_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Transcript text file.",
)
@click.option("--title", default=None, help="Working title for the episode.")
@click.option(
    "--context",
    "context_pairs",
    multiple=True,
    help="Episode notes as KEY=VALUE (repeatable), e.g. guest_name=Jane Doe.",
)
@click.option("--episode-id", default=None, help="Explicit episode ID (default: generated).")
@click.pass_context
def create(
    ctx: click.Context,
    transcript_path: Path,
    title: str | None,
    context_pairs: tuple[str, ...],
    episode_id: str | None,
) -> None:
    """Create a draft episode from a transcript file."""
    transcript = transcript_path.read_text(encoding="utf-8").strip()
    if not transcript:
        raise click.BadParameter("transcript file is empty", param_hint="--transcript")

    episode = ctx.obj["repository"].create_episode(
        transcript,
        episode_context=_parse_context(context_pairs),
        title=title,
        episode_id=episode_id,
    )
    click.echo(f"[OK] {episode.id} created ({len(transcript)} chars)")


@cli.command()
@click.option("--episode-id", required=True, help="Episode to process.")
@click.option(
    "--from-stage",
    "start_from_stage",
    type=int,
    default=0,
    show_default=True,
    help="Resume from this stage (earlier completed stages are reused).",
)
@click.pass_context
def process(ctx: click.Context, episode_id: str, start_from_stage: int) -> None:
    """Run the content pipeline for an episode."""
    from castwriter.core.episode_processor import write_report

    settings = ctx.obj["settings"]

    def on_phase(phase_id: str, stages: list[int]) -> None:
        click.echo(f"  phase {phase_id}: stages {', '.join(map(str, stages))}")

    click.echo(f"Processing: {episode_id} (from stage {start_from_stage})")
    try:
        result = _processor(ctx).process_episode(
            episode_id, start_from_stage, progress_callback=on_phase
        )
    except PhaseFailedError as e:
        first = e.first_failure
        click.echo(f"  -> FAILED at stage {first.stage_number}: {first.reason}", err=True)
        click.echo(
            f"  Fix the cause, then: castwriter process --episode-id {episode_id} "
            f"--from-stage {first.stage_number}",
            err=True,
        )
        sys.exit(1)
    except CastwriterError as e:
        click.echo(f"[FAIL] {episode_id}: {e.message}", err=True)
        sys.exit(1)

    write_report(result, settings.reports_dir)
    for warning in result.warnings:
        click.echo(f"  warning: {warning}", err=True)
    for sr in result.stages:
        label = f"{sr.stage_number}/{sr.sub_stage}" if sr.sub_stage else str(sr.stage_number)
        click.echo(f"  {label:<14} {sr.status:<10} {sr.duration_seconds:6.1f}s  ${sr.cost_usd:.4f}")

    if result.status == "paused":
        click.echo(f"  -> PAUSED (resume with --from-stage {result.resume_from_stage})")
    else:
        click.echo(f"  -> OK (${result.cost_usd:.4f}, {result.duration_seconds:.1f}s)")


@cli.command()
@click.option("--episode-id", required=True, help="Episode whose stage to re-run.")
@click.option("--stage", "stage_number", type=int, required=True, help="Stage number (0-9).")
@click.option("--sub-stage", default=None, help="Sub-stage label, e.g. a social platform.")
@click.pass_context
def regenerate(
    ctx: click.Context, episode_id: str, stage_number: int, sub_stage: str | None
) -> None:
    """Re-run a single stage using the stored outputs of earlier stages."""
    try:
        result = _processor(ctx).regenerate_stage(episode_id, stage_number, sub_stage)
    except PhaseFailedError as e:
        click.echo(f"[FAIL] {e.first_failure.message}", err=True)
        sys.exit(1)
    except CastwriterError as e:
        click.echo(f"[FAIL] {episode_id}: {e.message}", err=True)
        sys.exit(1)

    for warning in result.warnings:
        click.echo(f"  warning: {warning}", err=True)
    click.echo(
        f"[OK] {episode_id} stage {stage_number} regenerated "
        f"({len(result.stages)} record(s), ${result.cost_usd:.4f})"
    )


@cli.command()
@click.option("--episode-id", default=None, help="Show stage progress for one episode.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print raw JSON.")
@click.pass_context
def status(ctx: click.Context, episode_id: str | None, as_json: bool) -> None:
    """Show episodes, or the stage progress of one episode."""
    repository = ctx.obj["repository"]

    if episode_id is None:
        episodes = repository.list_episodes()
        click.echo(f"=== Episodes: {len(episodes)} ===")
        if not episodes:
            click.echo("  (none)")
        for ep in episodes:
            err = f"  !! {ep.error_message[:60]}" if ep.error_message else ""
            click.echo(
                f"  [{ep.status.value:<10}] {ep.id}  stage {ep.current_stage}  "
                f"${ep.total_cost_usd:.4f}  {(ep.title or '')[:40]}{err}"
            )
        return

    try:
        progress = _processor(ctx).get_processing_status(episode_id)
    except CastwriterError as e:
        click.echo(f"[FAIL] {e.message}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(progress.to_dict(), indent=2))
        return

    click.echo(f"Episode:  {progress.episode_id}")
    click.echo(f"Status:   {progress.status}{' (pause requested)' if progress.pause_requested else ''}")
    click.echo(f"Progress: {progress.percent_complete}% (current stage {progress.current_stage})")
    click.echo(f"Cost:     ${progress.total_cost_usd:.4f}")
    for item in progress.in_flight:
        click.echo(f"  running: {item['stage_number']} {item['stage_name']}")
    for item in progress.failed:
        click.echo(f"  failed:  {item['stage_number']} {item['stage_name']}: {item['error_message']}")
    if progress.error_message:
        click.echo(f"Error:    {progress.error_message}")


@cli.command()
@click.option("--episode-id", required=True)
@click.pass_context
def pause(ctx: click.Context, episode_id: str) -> None:
    """Ask a running pipeline to stop after its current phase."""
    try:
        _processor(ctx).pause_episode(episode_id)
    except CastwriterError as e:
        click.echo(f"[FAIL] {e.message}", err=True)
        sys.exit(1)
    click.echo(f"[OK] {episode_id}: pause requested")


@cli.command()
@click.option("--episode-id", required=True)
@click.confirmation_option(prompt="Reset all stage records of this episode to pending?")
@click.pass_context
def reset(ctx: click.Context, episode_id: str) -> None:
    """Return every stage of an episode to pending and the episode to draft."""
    try:
        _processor(ctx).reset_episode(episode_id)
    except CastwriterError as e:
        click.echo(f"[FAIL] {e.message}", err=True)
        sys.exit(1)
    click.echo(f"[OK] {episode_id} reset to draft")


@cli.command()
def stages() -> None:
    """List the pipeline stages, their phases and models."""
    from castwriter.core.stages import list_stages

    for row in list_stages():
        subs = f"  [{', '.join(row['sub_stages'])}]" if row["sub_stages"] else ""
        deps = ",".join(map(str, row["depends_on"])) or "-"
        click.echo(
            f"  {row['number']}  {row['name']:<28} {row['phase']:<11} "
            f"{row['model']:<28} deps={deps}{subs}"
        )


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address (use 0.0.0.0 for LAN).")
@click.option("--port", default=5000, type=int, help="Port number.")
def web(host: str, port: int) -> None:
    """Start the API server."""
    from castwriter.web.app import create_app

    app = create_app()
    click.echo(f"Starting castwriter API at http://{host}:{port}/api")
    app.run(host=host, port=port, debug=False)
