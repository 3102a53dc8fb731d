from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Sequence

from feedreel.config import ComplianceOptions
from feedreel.dedup.detector import DuplicateDetector, HashingError
from feedreel.models import ComplianceVerdict, EnrichedItem

logger = logging.getLogger(__name__)

REASON_TOO_LONG = "Video is too long"
REASON_TOO_SHORT = "Video is too short"
REASON_NO_DIMENSIONS = "Could not find video dimensions"
REASON_LOW_RESOLUTION = "Video resolution is too low"
REASON_NO_AUDIO = "Video has no audio"
REASON_NOT_VERTICAL = "Video is not vertical"
REASON_NOT_HORIZONTAL = "Video is not horizontal"
REASON_DUPLICATE = "Video is a duplicate"
REASON_HASH_FAILED = "Video could not be checked for duplicates"


def metadata_reasons(item: EnrichedItem, options: ComplianceOptions) -> list[str]:
    """Evaluate the metadata-only rules in their fixed order."""

    reasons: list[str] = []
    metadata = item.metadata
    duration = metadata.duration_seconds
    dimensions = metadata.dimensions

    if options.max_duration and duration > options.max_duration:
        reasons.append(REASON_TOO_LONG)

    if options.min_duration and duration < options.min_duration:
        reasons.append(REASON_TOO_SHORT)

    if options.min_resolution:
        if dimensions is None:
            reasons.append(REASON_NO_DIMENSIONS)
        elif dimensions[0] * dimensions[1] < options.min_resolution:
            reasons.append(REASON_LOW_RESOLUTION)

    if options.skip_no_audio and not metadata.has_audio:
        reasons.append(REASON_NO_AUDIO)

    # Square frames pass both orientation rules.
    if options.vertical_only and dimensions and dimensions[0] > dimensions[1]:
        reasons.append(REASON_NOT_VERTICAL)

    if options.horizontal_only and dimensions and dimensions[0] < dimensions[1]:
        reasons.append(REASON_NOT_HORIZONTAL)

    return reasons


async def evaluate(
    item: EnrichedItem,
    options: ComplianceOptions,
    prior_accepted_paths: Sequence[str | Path],
    detector: DuplicateDetector | None = None,
    known_durations: Mapping[str | Path, float] | None = None,
) -> ComplianceVerdict:
    """Apply the metadata rules, then the duplicate check when nothing else fired.

    ``known_durations`` maps prior paths to probed durations so the detector
    does not probe them again; the item's own duration always comes from its
    metadata.
    """

    reasons = metadata_reasons(item, options)

    if options.skip_duplicates and not reasons and detector is not None:
        try:
            duplicate = await detector.is_duplicate(
                item.output_path,
                prior_accepted_paths,
                threshold=options.duplicate_threshold,
                durations={**(known_durations or {}), item.output_path: item.metadata.duration_seconds},
            )
        except HashingError as exc:
            if options.on_hash_error == "raise":
                raise
            logger.warning(
                "Duplicate check failed for %s (%s); policy=%s",
                item.candidate.source_id,
                exc,
                options.on_hash_error,
            )
            duplicate = False
            if options.on_hash_error == "reject":
                reasons.append(REASON_HASH_FAILED)

        if duplicate:
            reasons.append(REASON_DUPLICATE)

    return ComplianceVerdict(reasons=reasons)
