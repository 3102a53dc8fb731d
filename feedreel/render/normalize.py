from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Sequence

from feedreel.config import NormalizeSettings
from feedreel.ingest.probe import probe_media
from feedreel.media.engine import MediaEngine, MediaInput, ProgressObserver
from feedreel.models import AcquiredItem, EnrichedItem, FilterStage, TargetFrame
from feedreel.render.overlay import create_text_image, truncate_title

logger = logging.getLogger(__name__)

MAX_WIDTH = 1920
MAX_HEIGHT = 1080
SILENT_AUDIO_SOURCE = "anullsrc=channel_layout=stereo:sample_rate=48000"

NORMALIZED_OUTPUT_OPTIONS = [
    "-shortest",
    "-c:v",
    "libx264",
    "-profile:v",
    "high",
    "-level:v",
    "4.0",
    "-pix_fmt",
    "yuv420p",
    "-c:a",
    "aac",
    "-b:a",
    "192k",
    "-ar",
    "48000",
    "-movflags",
    "+faststart",
    "-avoid_negative_ts",
    "make_zero",
]


def _even(value: float) -> int:
    return max(int(value) - int(value) % 2, 2)


def solve_target_frame(
    dimensions: Iterable[tuple[int, int] | None],
    max_width: int = MAX_WIDTH,
    max_height: int = MAX_HEIGHT,
) -> TargetFrame:
    """Pick one output frame for the whole work list.

    Width comes from the widest source (capped) at the widest aspect ratio.
    When that leaves the frame shorter than the tallest source, the frame is
    rebuilt from the tallest height instead. The result is then clamped to
    the caps without changing the aspect ratio and floored to even values.
    """

    usable = [(width, height) for width, height in (d for d in dimensions if d) if width > 0 and height > 0]
    if not usable:
        raise ValueError("No item in the work list has a video stream with known dimensions.")

    aspect = max(width / height for width, height in usable)
    widest = max(width for width, _ in usable)
    tallest = max(height for _, height in usable)

    width = float(min(max_width, widest))
    height = float(round(width / aspect))
    if height < tallest:
        height = float(min(max_height, tallest))
        width = float(round(height * aspect))

    if width > max_width:
        width = float(max_width)
        height = float(round(width / aspect))
    if height > max_height:
        height = float(max_height)
        width = float(round(height * aspect))

    return TargetFrame(width=_even(min(width, max_width)), height=_even(min(height, max_height)))


def build_normalize_stages(
    target: TargetFrame,
    *,
    has_audio: bool,
    fps: int = 30,
    title_top: int = 20,
) -> list[FilterStage]:
    """Filter stages for one item; input 0 is the clip, 1 the title image, 2 optional silence."""

    return [
        FilterStage(
            "scale",
            {"w": target.width, "h": target.height, "force_original_aspect_ratio": "decrease"},
            ["0:v"],
            ["scaled"],
        ),
        FilterStage(
            "pad",
            {"w": target.width, "h": target.height, "x": "(ow-iw)/2", "y": "(oh-ih)/2", "color": "black"},
            ["scaled"],
            ["padded"],
        ),
        FilterStage("setsar", "1", ["padded"], ["sar_set"]),
        FilterStage("fps", str(fps), ["sar_set"], ["framed"]),
        FilterStage(
            "overlay",
            {"x": "(main_w-overlay_w)/2", "y": title_top},
            ["framed", "1:v"],
            ["with_overlay"],
        ),
        FilterStage("anull", None, ["0:a" if has_audio else "2:a"], ["audio_out"]),
    ]


def chunked(items: Sequence[EnrichedItem], size: int) -> list[list[EnrichedItem]]:
    size = max(size, 1)
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


class NormalizationPlanner:
    def __init__(
        self,
        engine: MediaEngine,
        cache_dir: str | Path,
        settings: NormalizeSettings,
        *,
        ffprobe_binary: str = "ffprobe",
        keep_overlays: bool = False,
    ) -> None:
        self.engine = engine
        self.cache_root = Path(cache_dir).expanduser()
        self.settings = settings
        self.ffprobe_binary = ffprobe_binary
        self.keep_overlays = keep_overlays

    def output_path(self, item: EnrichedItem, target: TargetFrame) -> Path:
        candidate = item.candidate
        return self.cache_root / "normalized" / candidate.source / f"{candidate.source_id}_{target.label}.mp4"

    def overlay_path(self, item: EnrichedItem) -> Path:
        candidate = item.candidate
        return self.cache_root / "overlays" / candidate.source / f"{candidate.source_id}.png"

    def solve(self, work_list: Sequence[EnrichedItem]) -> TargetFrame:
        return solve_target_frame(
            (item.metadata.dimensions for item in work_list),
            max_width=self.settings.max_width,
            max_height=self.settings.max_height,
        )

    async def normalize_all(
        self,
        work_list: Sequence[EnrichedItem],
        observer: ProgressObserver | None = None,
    ) -> list[EnrichedItem]:
        if not work_list:
            return []

        target = self.solve(work_list)
        logger.info("Normalizing %d videos to %s", len(work_list), target.label)

        normalized: list[EnrichedItem] = []
        for chunk in chunked(work_list, self.settings.chunk_size):
            results = await asyncio.gather(*(self.normalize_item(item, target, observer) for item in chunk))
            normalized.extend(result for result in results if result is not None)
        return normalized

    async def normalize_item(
        self,
        item: EnrichedItem,
        target: TargetFrame,
        observer: ProgressObserver | None = None,
    ) -> EnrichedItem | None:
        candidate = item.candidate
        if item.metadata.dimensions is None:
            logger.warning("Skipping %s: no video stream dimensions.", candidate.source_id)
            return None

        output_path = self.output_path(item, target)
        if not (output_path.is_file() and output_path.stat().st_size > 0):
            output_path.parent.mkdir(parents=True, exist_ok=True)
            if not await self._render(item, target, output_path, observer):
                return None
        else:
            logger.info("Using cached normalized video for %s: %s", candidate.source_id, output_path)

        try:
            metadata = await probe_media(output_path, self.ffprobe_binary)
        except (RuntimeError, FileNotFoundError) as exc:
            logger.warning("Could not probe normalized video %s: %s", output_path, exc)
            return None
        return EnrichedItem(acquired=AcquiredItem(candidate=candidate, output_path=output_path), metadata=metadata)

    async def _render(
        self,
        item: EnrichedItem,
        target: TargetFrame,
        output_path: Path,
        observer: ProgressObserver | None,
    ) -> bool:
        candidate = item.candidate
        overlay_path = self.overlay_path(item)
        await asyncio.to_thread(
            create_text_image,
            truncate_title(candidate.title, self.settings.title_word_limit),
            overlay_path,
            font_path=self.settings.font_path,
        )
        if observer is not None:
            observer.on_start(candidate.source_id, item.metadata.duration_seconds)

        inputs = [MediaInput(str(item.output_path)), MediaInput(str(overlay_path))]
        if not item.metadata.has_audio:
            logger.info("No audio found in %r, adding silent audio.", candidate.title)
            inputs.append(MediaInput(SILENT_AUDIO_SOURCE, input_format="lavfi"))

        try:
            result = await self.engine.render(
                inputs,
                output_path,
                stages=build_normalize_stages(
                    target,
                    has_audio=item.metadata.has_audio,
                    fps=self.settings.fps,
                    title_top=self.settings.title_top,
                ),
                output_labels=["with_overlay", "audio_out"],
                output_options=NORMALIZED_OUTPUT_OPTIONS,
                label=candidate.source_id,
                observer=observer,
            )
        finally:
            if not self.keep_overlays and overlay_path.exists():
                overlay_path.unlink()

        if not result.ok:
            logger.warning("Error normalizing %r: %s", candidate.title, result.reason)
            if output_path.exists():
                output_path.unlink()
            return False
        return True
