from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from feedreel.compliance import evaluate
from feedreel.config import Settings
from feedreel.dedup.detector import DuplicateDetector
from feedreel.export.manifest import export_manifest
from feedreel.ingest.acquire import AcquisitionController
from feedreel.ingest.auth import FeedAuthError, get_access_token
from feedreel.ingest.feed import FeedWalker
from feedreel.media.engine import MediaEngine, ProgressObserver
from feedreel.models import CompilationResult, EnrichedItem, FeedSelector
from feedreel.render.normalize import NormalizationPlanner
from feedreel.render.transitions import build_chain, render_compilation

logger = logging.getLogger(__name__)

Reporter = Callable[[str], None]
StageRunner = Callable[[int, int, str, Awaitable[Any]], Awaitable[Any]]


def _log_report(message: str) -> None:
    logger.info(message)


async def _run_plain(step_index: int, total_steps: int, label: str, work: Awaitable[Any]) -> Any:
    return await work


class CompilationPipeline:
    """Walks the feed, filters what it downloads, then renders one compilation."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: httpx.AsyncClient,
        engine: MediaEngine,
        reporter: Reporter | None = None,
        observer: ProgressObserver | None = None,
        debug: bool = False,
    ) -> None:
        self.settings = settings
        self.client = client
        self.engine = engine
        self.report = reporter or _log_report
        self.observer = observer
        cache_dir = settings.pipeline.cache_dir
        self.acquisition = AcquisitionController(
            client,
            engine,
            cache_dir,
            ffprobe_binary=settings.media.ffprobe_binary,
            user_agent=settings.feed.user_agent,
        )
        self.detector = DuplicateDetector(
            engine,
            Path(cache_dir) / "frames",
            ffprobe_binary=settings.media.ffprobe_binary,
            max_concurrency=settings.dedup.max_concurrency,
            frame_offset_ratio=settings.dedup.frame_offset_ratio,
            frame_width=settings.dedup.frame_width,
            frame_height=settings.dedup.frame_height,
            hash_size=settings.dedup.hash_size,
        )
        self.planner = NormalizationPlanner(
            engine,
            cache_dir,
            settings.normalize,
            ffprobe_binary=settings.media.ffprobe_binary,
            keep_overlays=debug,
        )

    async def collect(self, selector: FeedSelector) -> CompilationResult:
        result = CompilationResult(requested=selector.target_count, work_list=[])

        try:
            token = await get_access_token(self.client, self.settings.feed)
        except FeedAuthError as exc:
            logger.error("Feed authentication failed: %s", exc)
            self.report(f"Authentication failed: {exc}")
            return result

        walker = FeedWalker(self.client, selector, self.settings.feed, token)
        work_list = result.work_list

        async for candidate in walker.candidates(accepted_count=lambda: len(work_list)):
            prefix = f"[{candidate.index}] {candidate.title!r}"

            acquired = await self.acquisition.acquire(candidate)
            if acquired is None:
                result.failed_count += 1
                self.report(f"{prefix}: failed to download {candidate.media.url}")
                continue

            try:
                enriched = await self.acquisition.enrich(acquired)
            except (RuntimeError, FileNotFoundError) as exc:
                result.failed_count += 1
                logger.warning("Dropping unreadable download %s: %s", acquired.output_path, exc)
                if acquired.output_path.exists():
                    acquired.output_path.unlink()
                self.report(f"{prefix}: failed to read media ({exc})")
                continue

            verdict = await evaluate(
                enriched,
                self.settings.compliance,
                [item.output_path for item in work_list],
                self.detector,
                known_durations={item.output_path: item.metadata.duration_seconds for item in work_list},
            )
            if not verdict.accepted:
                result.rejected_count += 1
                self.report(f"{prefix}: rejected ({'; '.join(verdict.reasons)})")
                continue

            work_list.append(enriched)
            self.report(f"{prefix}: accepted ({len(work_list)}/{selector.target_count}) {candidate.permalink}")

        return result

    async def normalize(self, result: CompilationResult) -> CompilationResult:
        result.compiled = await self.planner.normalize_all(result.work_list, self.observer)
        return result

    async def render(self, result: CompilationResult, source: str) -> CompilationResult:
        compiled = result.compiled
        if not compiled:
            return result

        output_dir = Path(self.settings.pipeline.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / f"{source}_compilation.mp4"

        if len(compiled) >= 2:
            plan = build_chain(
                [item.metadata.duration_seconds for item in compiled],
                transition_duration=self.settings.transitions.duration_seconds,
                safe_margin=self.settings.transitions.safe_margin_seconds,
            )
            result.offsets = plan.offsets
            await render_compilation(self.engine, compiled, output_path, plan, self.observer)
        else:
            logger.info("Single video compiled; copying %s without transitions.", compiled[0].output_path)
            shutil.copyfile(compiled[0].output_path, output_path)

        result.output_path = output_path
        result.manifest_paths = export_manifest(
            compiled,
            output_dir,
            basename=output_path.stem,
            offsets=result.offsets,
        )
        return result

    async def compile(self, selector: FeedSelector, stage: StageRunner | None = None) -> CompilationResult:
        """Collect, normalize and render, each step wrapped by ``stage`` when given."""

        run_stage = stage or _run_plain
        result = await run_stage(1, 3, "Collect videos", self.collect(selector))
        if not result.work_list:
            self.report(f"No videos accepted out of {selector.target_count} requested.")
            return result

        await run_stage(2, 3, "Normalize videos", self.normalize(result))
        if not result.compiled:
            self.report("No videos survived normalization; nothing to render.")
            return result

        return await run_stage(3, 3, "Render compilation", self.render(result, selector.source))


async def run_compilation(
    settings: Settings,
    selector: FeedSelector,
    *,
    reporter: Reporter | None = None,
    observer: ProgressObserver | None = None,
    debug: bool = False,
    stage: StageRunner | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CompilationResult:
    engine = MediaEngine(settings.media.ffmpeg_binary, debug=debug)
    async with httpx.AsyncClient(transport=transport) as client:
        pipeline = CompilationPipeline(
            settings,
            client=client,
            engine=engine,
            reporter=reporter,
            observer=observer,
            debug=debug,
        )
        return await pipeline.compile(selector, stage)


async def list_candidates(
    settings: Settings,
    selector: FeedSelector,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[dict[str, object]]:
    """Walk the feed without downloading anything."""

    async with httpx.AsyncClient(transport=transport) as client:
        token = await get_access_token(client, settings.feed)
        walker = FeedWalker(client, selector, settings.feed, token)
        return [
            {
                "index": candidate.index,
                "source_id": candidate.source_id,
                "title": candidate.title,
                "author": candidate.author,
                "media_kind": candidate.kind.value,
                "media_url": candidate.media.url,
                "permalink": candidate.permalink,
            }
            async for candidate in walker.candidates()
        ]


def summarize(result: CompilationResult) -> dict[str, object]:
    return {
        "status": "ok" if result.output_path else "partial",
        "requested": result.requested,
        "accepted": result.accepted,
        "compiled": len(result.compiled),
        "rejected": result.rejected_count,
        "failed": result.failed_count,
        "output_path": str(result.output_path) if result.output_path else None,
        "manifest": {key: str(path) for key, path in result.manifest_paths.items()},
        "items": [_describe(item) for item in result.compiled or result.work_list],
    }


def _describe(item: EnrichedItem) -> dict[str, object]:
    return {
        "index": item.candidate.index,
        "source_id": item.candidate.source_id,
        "title": item.candidate.title,
        "duration_seconds": round(item.metadata.duration_seconds, 3),
        "path": str(item.output_path),
    }
