from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from feedreel.media.engine import MediaEngine, MediaInput, ProgressObserver
from feedreel.models import EnrichedItem, FilterStage, TransitionPlan

logger = logging.getLogger(__name__)


class RenderError(RuntimeError):
    """Raised when the final compilation render fails."""


def build_chain(
    durations: Sequence[float],
    transition_duration: float = 1.0,
    safe_margin: float = 0.0,
) -> TransitionPlan:
    """Chain N clips with paired video/audio cross-fades.

    Each clip starts one transition earlier than plain concatenation would
    place it, so offsets accumulate ``d[i-1] - transition_duration`` strictly
    in order.
    """

    count = len(durations)
    if count < 2:
        raise ValueError("At least two videos are required for xfade transitions.")

    stages: list[FilterStage] = []
    offsets: list[float] = []

    accumulated = durations[0] - transition_duration
    previous_video, previous_audio = "0:v", "0:a"
    for index in range(1, count):
        if index > 1:
            accumulated += durations[index - 1] - transition_duration
        offset = accumulated - safe_margin
        offsets.append(offset)

        video_label = f"xfade{index - 1}"
        audio_label = f"afade{index - 1}"
        stages.append(
            FilterStage(
                "xfade",
                {"transition": "fade", "duration": transition_duration, "offset": offset},
                [previous_video, f"{index}:v"],
                [video_label],
            )
        )
        stages.append(
            FilterStage(
                "acrossfade",
                {"d": transition_duration, "c1": "tri", "c2": "tri"},
                [previous_audio, f"{index}:a"],
                [audio_label],
            )
        )
        previous_video, previous_audio = video_label, audio_label

    return TransitionPlan(
        stages=stages,
        video_label=previous_video,
        audio_label=previous_audio,
        offsets=offsets,
    )


async def render_compilation(
    engine: MediaEngine,
    items: Sequence[EnrichedItem],
    output_path: str | Path,
    plan: TransitionPlan,
    observer: ProgressObserver | None = None,
) -> Path:
    destination = Path(output_path)
    destination.parent.mkdir(parents=True, exist_ok=True)

    logger.info("Starting ffmpeg with transitions for %d videos...", len(items))
    if observer is not None and plan.offsets and items:
        observer.on_start(destination.name, plan.offsets[-1] + items[-1].metadata.duration_seconds)
    result = await engine.render(
        [MediaInput(str(item.output_path)) for item in items],
        destination,
        stages=plan.stages,
        output_labels=[plan.video_label, plan.audio_label],
        output_options=["-movflags", "+faststart"],
        label=destination.name,
        observer=observer,
    )
    if not result.ok:
        if destination.exists():
            destination.unlink()
        raise RenderError(f"Error during ffmpeg with transitions: {result.reason}")

    logger.info("Final video created: %s", destination)
    return destination
