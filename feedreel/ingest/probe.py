from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from feedreel.models import MediaMetadata

SHARED_LIBRARY_MARKER = "error while loading shared libraries"


async def probe_media(media_path: str | Path, ffprobe_binary: str = "ffprobe") -> MediaMetadata:
    """Probe stream-level metadata of a local media file via ffprobe."""

    source_path = Path(media_path).expanduser()
    if not source_path.exists():
        raise FileNotFoundError(f"Media file not found: {source_path}")

    payload = await _run_ffprobe(source_path, ffprobe_binary)
    return normalize_probe_payload(payload)


async def _run_ffprobe(media_path: Path, ffprobe_binary: str = "ffprobe") -> dict[str, Any]:
    command = [
        ffprobe_binary,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(media_path),
    ]

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise RuntimeError(
            "ffprobe executable was not found. Install FFmpeg so ffprobe is available on PATH."
        ) from exc

    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if SHARED_LIBRARY_MARKER in stderr_text:
            raise RuntimeError(
                "ffprobe is installed but failed to start because required shared libraries are missing: "
                f"{stderr_text}"
            )
        details = f" ffprobe stderr: {stderr_text}" if stderr_text else ""
        raise RuntimeError(f"ffprobe failed while probing media file: {media_path}.{details}")

    try:
        return json.loads(stdout.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise RuntimeError("ffprobe returned invalid JSON output.") from exc


def normalize_probe_payload(payload: dict[str, Any]) -> MediaMetadata:
    streams = [_normalize_stream(stream) for stream in payload.get("streams", [])]
    format_entry = payload.get("format", {})

    video = next((stream for stream in streams if stream["codec_type"] == "video"), None)
    duration = _to_float(format_entry.get("duration"))
    if duration is None and video is not None:
        duration = video["duration_seconds"]

    return MediaMetadata(
        duration_seconds=max(duration or 0.0, 0.0),
        width=video["width"] if video else None,
        height=video["height"] if video else None,
        has_audio=any(stream["codec_type"] == "audio" for stream in streams),
        streams=tuple(streams),
    )


def _normalize_stream(stream: dict[str, Any]) -> dict[str, Any]:
    return {
        "index": stream.get("index"),
        "codec_type": stream.get("codec_type"),
        "codec_name": stream.get("codec_name"),
        "width": _to_int(stream.get("width")),
        "height": _to_int(stream.get("height")),
        "avg_frame_rate": stream.get("avg_frame_rate"),
        "duration_seconds": _to_float(stream.get("duration")),
    }


def _to_float(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", ""):
        return None
    return float(raw_value)


def _to_int(raw_value: Any) -> int | None:
    if raw_value in (None, "N/A", ""):
        return None
    return int(raw_value)
