from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Sequence

from feedreel.models import EnrichedItem

MANIFEST_FIELDS = [
    "position",
    "source_id",
    "title",
    "author",
    "permalink",
    "media_kind",
    "start_seconds",
    "duration_seconds",
]


def build_manifest_rows(
    items: Sequence[EnrichedItem],
    offsets: Sequence[float] = (),
) -> list[dict[str, Any]]:
    """Describe each compiled clip and where it starts in the compilation.

    ``offsets`` are the cross-fade start times; clip ``i`` (i >= 1) begins at
    ``offsets[i - 1]``. Without offsets the clips are laid end to end.
    """

    rows: list[dict[str, Any]] = []
    elapsed = 0.0
    for position, item in enumerate(items):
        if position > 0 and position - 1 < len(offsets):
            start = offsets[position - 1]
        else:
            start = elapsed
        elapsed += item.metadata.duration_seconds
        candidate = item.candidate
        rows.append(
            {
                "position": position + 1,
                "source_id": candidate.source_id,
                "title": candidate.title,
                "author": candidate.author,
                "permalink": candidate.permalink,
                "media_kind": candidate.kind.value,
                "start_seconds": round(max(start, 0.0), 3),
                "duration_seconds": round(item.metadata.duration_seconds, 3),
            }
        )
    return rows


def export_manifest(
    items: Sequence[EnrichedItem],
    output_dir: str | Path,
    *,
    basename: str,
    offsets: Sequence[float] = (),
) -> dict[str, Path]:
    """Write JSON and CSV credits for the compiled clips."""

    resolved_output_dir = Path(output_dir)
    resolved_output_dir.mkdir(parents=True, exist_ok=True)

    rows = build_manifest_rows(items, offsets)
    json_path = resolved_output_dir / f"{basename}.json"
    csv_path = resolved_output_dir / f"{basename}.csv"

    json_path.write_text(json.dumps(rows, indent=2, ensure_ascii=False), encoding="utf-8")
    with csv_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=MANIFEST_FIELDS)
        writer.writeheader()
        for row in rows:
            writer.writerow(
                {
                    **row,
                    "start_seconds": f"{row['start_seconds']:.3f}",
                    "duration_seconds": f"{row['duration_seconds']:.3f}",
                }
            )

    return {
        "json": json_path,
        "csv": csv_path,
    }
