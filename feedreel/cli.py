from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from pathlib import Path
from time import perf_counter
from typing import Awaitable, TypeVar

import typer
from dotenv import load_dotenv

from feedreel.config import Settings, load_settings
from feedreel.ingest.probe import probe_media
from feedreel.logging_config import configure_logging
from feedreel.models import CompilationResult, FeedSelector, SortOrder, TimeWindow
from feedreel.pipeline import list_candidates, run_compilation, summarize

app = typer.Typer(help="Compile short feed videos into one cross-faded video.")
config_app = typer.Typer(help="Configuration commands.")
feed_app = typer.Typer(help="Feed inspection commands.")

app.add_typer(config_app, name="config")
app.add_typer(feed_app, name="feed")

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_OPTION_HELP = "Path to YAML configuration file."


async def _run_stage(step_index: int, total_steps: int, label: str, work: Awaitable[T]) -> T:
    typer.echo(f"[{step_index}/{total_steps}] {label}...", err=True)
    started_at = perf_counter()
    try:
        result = await work
    except Exception:
        elapsed = perf_counter() - started_at
        typer.echo(f"[{step_index}/{total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    typer.echo(f"[{step_index}/{total_steps}] {label} done in {elapsed:.1f}s", err=True)
    return result


def _report_item(message: str) -> None:
    typer.echo(f"    {message}", err=True)


class _ProgressPrinter:
    """Prints ffmpeg progress per output on stderr, once per 10% step."""

    def __init__(self) -> None:
        self._totals: dict[str, float] = {}
        self._steps: dict[str, int] = {}

    def on_start(self, label: str, total_seconds: float) -> None:
        self._totals[label] = total_seconds
        self._steps[label] = -1

    def on_progress(self, label: str, seconds: float) -> None:
        total = self._totals.get(label)
        if not total or total <= 0:
            return
        percent = min(int(seconds / total * 100), 100)
        step = percent // 10
        if step <= self._steps.get(label, -1):
            return
        self._steps[label] = step
        typer.echo(f"    {label}: {percent}%", err=True)


def _bootstrap(config_path: Path, debug: bool = False) -> Settings:
    load_dotenv()
    settings = load_settings(config_path)
    configure_logging(settings.logging, debug=debug)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _build_selector(
    source: str,
    *,
    count: int,
    sort: SortOrder,
    time_window: TimeWindow | None,
    query: str | None,
    user_mode: bool,
) -> FeedSelector:
    source = source.strip().removeprefix("r/").removeprefix("u/").strip("/")
    if not source:
        raise typer.BadParameter("Source must name a subreddit or user.", param_hint="SOURCE")
    if user_mode and query:
        raise typer.BadParameter("--query cannot be combined with --user.", param_hint="--query")
    return FeedSelector(
        source=source,
        target_count=count,
        sort=sort,
        time_window=time_window,
        query=query,
        user_mode=user_mode,
    )


async def _compile(settings: Settings, selector: FeedSelector, debug: bool) -> CompilationResult:
    return await run_compilation(
        settings,
        selector,
        reporter=_report_item,
        observer=_ProgressPrinter(),
        debug=debug,
        stage=_run_stage,
    )


@config_app.command("show")
def show_config(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="FEEDREEL_CONFIG",
        help=CONFIG_OPTION_HELP,
    )
) -> None:
    """Print resolved runtime configuration (credentials masked)."""

    settings = _bootstrap(config_path)
    payload = settings.model_dump(mode="json")
    for secret in ("client_secret", "password"):
        if payload["feed"].get(secret):
            payload["feed"][secret] = "***"
    typer.echo(json.dumps(payload, indent=2))


@app.command()
def probe(
    media_path: str,
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="FEEDREEL_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Probe a local media file and print its metadata as JSON."""

    settings = _bootstrap(config_path)
    try:
        metadata = asyncio.run(probe_media(media_path, settings.media.ffprobe_binary))
    except (RuntimeError, FileNotFoundError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    payload = asdict(metadata)
    payload["streams"] = [dict(stream) for stream in metadata.streams]
    typer.echo(json.dumps(payload, indent=2))


@feed_app.command("list")
def feed_list(
    source: str = typer.Argument(..., help="Subreddit (or user with --user) to walk."),
    count: int = typer.Option(10, "--count", "-n", min=1, help="Number of candidates to list."),
    sort: SortOrder = typer.Option(SortOrder.HOT, "--sort", "-o", help="Listing sort order."),
    time_window: TimeWindow | None = typer.Option(None, "--time", "-t", help="Time window for top/controversial."),
    query: str | None = typer.Option(None, "--query", "-q", help="Free-text search within the subreddit."),
    user_mode: bool = typer.Option(False, "--user", "-u", help="Treat SOURCE as a user name."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="FEEDREEL_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
    debug: bool = typer.Option(False, "--debug", "-d", help="Verbose logging."),
) -> None:
    """List classified candidates without downloading them."""

    selector = _build_selector(
        source, count=count, sort=sort, time_window=time_window, query=query, user_mode=user_mode
    )
    settings = _bootstrap(config_path, debug=debug)
    try:
        candidates = asyncio.run(list_candidates(settings, selector))
    except RuntimeError as exc:
        logger.error("Feed listing failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(json.dumps(candidates, indent=2, ensure_ascii=False))


@app.command("run")
def run_pipeline(
    source: str = typer.Argument(..., help="Subreddit (or user with --user) to compile."),
    count: int = typer.Option(10, "--count", "-n", min=1, help="Number of videos to compile."),
    sort: SortOrder = typer.Option(SortOrder.HOT, "--sort", "-o", help="Listing sort order."),
    time_window: TimeWindow | None = typer.Option(None, "--time", "-t", help="Time window for top/controversial."),
    query: str | None = typer.Option(None, "--query", "-q", help="Free-text search within the subreddit."),
    user_mode: bool = typer.Option(False, "--user", "-u", help="Treat SOURCE as a user name."),
    max_duration: float | None = typer.Option(None, min=0, help="Reject videos longer than this many seconds."),
    min_duration: float | None = typer.Option(None, min=0, help="Reject videos shorter than this many seconds."),
    min_resolution: int | None = typer.Option(None, min=0, help="Reject videos with fewer pixels (width*height)."),
    skip_no_audio: bool = typer.Option(False, "--skip-no-audio", help="Reject videos without audio."),
    vertical: bool = typer.Option(False, "--vertical", help="Only keep vertical (or square) videos."),
    horizontal: bool = typer.Option(False, "--horizontal", help="Only keep horizontal (or square) videos."),
    keep_duplicates: bool = typer.Option(False, "--keep-duplicates", help="Skip the perceptual duplicate check."),
    transition_duration: float | None = typer.Option(None, min=0.1, help="Cross-fade duration in seconds."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="FEEDREEL_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
    debug: bool = typer.Option(False, "--debug", "-d", help="Verbose logging and ffmpeg output; keep overlays."),
) -> None:
    """Fetch, filter, normalize and cross-fade feed videos into one file."""

    if vertical and horizontal:
        raise typer.BadParameter("--vertical and --horizontal are mutually exclusive.", param_hint="--vertical")
    if min_duration is not None and max_duration is not None and min_duration > max_duration:
        raise typer.BadParameter("--min-duration must not exceed --max-duration.", param_hint="--min-duration")
    selector = _build_selector(
        source, count=count, sort=sort, time_window=time_window, query=query, user_mode=user_mode
    )

    settings = _bootstrap(config_path, debug=debug)
    overrides = {
        "max_duration": max_duration,
        "min_duration": min_duration,
        "min_resolution": min_resolution,
    }
    compliance_update = {key: value for key, value in overrides.items() if value is not None}
    if skip_no_audio:
        compliance_update["skip_no_audio"] = True
    if keep_duplicates:
        compliance_update["skip_duplicates"] = False
    if vertical:
        compliance_update.update(vertical_only=True, horizontal_only=False)
    if horizontal:
        compliance_update.update(horizontal_only=True, vertical_only=False)
    settings = settings.model_copy(
        update={"compliance": settings.compliance.model_copy(update=compliance_update)}
    )
    if transition_duration is not None:
        settings = settings.model_copy(
            update={"transitions": settings.transitions.model_copy(update={"duration_seconds": transition_duration})}
        )
    if settings.compliance.vertical_only and settings.compliance.horizontal_only:
        raise typer.BadParameter("Configuration enables both vertical_only and horizontal_only.")

    try:
        result = asyncio.run(_compile(settings, selector, debug))
    except (RuntimeError, ValueError) as exc:
        logger.error("Pipeline failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    if result.output_path is None:
        typer.echo(
            f"Accepted {result.accepted} of {result.requested} requested videos; no compilation produced.",
            err=True,
        )
    elif result.accepted < result.requested:
        typer.echo(f"Accepted {result.accepted} of {result.requested} requested videos.", err=True)
    typer.echo(json.dumps(summarize(result), indent=2, ensure_ascii=False))


if __name__ == "__main__":
    app()
