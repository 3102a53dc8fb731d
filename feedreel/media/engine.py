from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

from feedreel.models import FilterStage

logger = logging.getLogger(__name__)

FFMPEG_MISSING_HINT = "ffmpeg executable was not found. Install FFmpeg so ffmpeg is available on PATH."
_ESCAPED_CHARACTERS = (":", ",", "'", ";", "[", "]")


class ProgressObserver(Protocol):
    """Receives ffmpeg progress keyed by output label."""

    def on_start(self, label: str, total_seconds: float) -> None: ...

    def on_progress(self, label: str, seconds: float) -> None: ...


@dataclass(slots=True)
class MediaInput:
    path: str
    input_format: str | None = None
    options: list[str] = field(default_factory=list)

    def to_args(self) -> list[str]:
        args = list(self.options)
        if self.input_format:
            args.extend(["-f", self.input_format])
        args.extend(["-i", self.path])
        return args


@dataclass(slots=True)
class EngineResult:
    ok: bool
    output_path: Path | None = None
    reason: str | None = None


def serialize_filter_graph(stages: Sequence[FilterStage]) -> str:
    """Render filter stages in ffmpeg ``-filter_complex`` syntax."""

    rendered: list[str] = []
    for stage in stages:
        inputs = "".join(f"[{label}]" for label in stage.inputs)
        outputs = "".join(f"[{label}]" for label in stage.outputs)
        options = _format_options(stage.options)
        body = f"{stage.filter}={options}" if options else stage.filter
        rendered.append(f"{inputs}{body}{outputs}")
    return ";".join(rendered)


def _format_options(options: Mapping[str, Any] | str | None) -> str:
    if options is None:
        return ""
    if isinstance(options, str):
        return options
    return ":".join(f"{key}={_format_value(value)}" for key, value in options.items())


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        text = f"{value:.3f}".rstrip("0").rstrip(".")
        return text or "0"
    text = str(value)
    if any(char in text for char in _ESCAPED_CHARACTERS):
        return "'" + text.replace("'", r"'\''") + "'"
    return text


class MediaEngine:
    """Async front for the ffmpeg binary: one awaited call per invocation."""

    def __init__(self, ffmpeg_binary: str = "ffmpeg", debug: bool = False) -> None:
        self.ffmpeg_binary = ffmpeg_binary
        self.debug = debug

    async def run(
        self,
        args: Sequence[str],
        output_path: str | Path,
        *,
        label: str | None = None,
        observer: ProgressObserver | None = None,
    ) -> EngineResult:
        destination = Path(output_path)
        command = [
            self.ffmpeg_binary,
            "-hide_banner",
            "-v",
            "info" if self.debug else "error",
            "-y",
            "-nostats",
            "-progress",
            "pipe:1",
            *args,
            str(destination),
        ]
        logger.debug("Running %s", " ".join(command))

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return EngineResult(ok=False, reason=FFMPEG_MISSING_HINT)

        progress_label = label or destination.name
        _, stderr = await asyncio.gather(
            self._pump_progress(process.stdout, progress_label, observer),
            process.stderr.read() if process.stderr else _empty_bytes(),
        )
        return_code = await process.wait()

        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if self.debug and stderr_text:
            logger.debug("ffmpeg stderr for %s:\n%s", progress_label, stderr_text)

        if return_code != 0:
            last_line = stderr_text.splitlines()[-1] if stderr_text else "no stderr output"
            return EngineResult(ok=False, reason=f"ffmpeg exited with code {return_code}: {last_line}")
        return EngineResult(ok=True, output_path=destination)

    async def render(
        self,
        inputs: Sequence[MediaInput],
        output_path: str | Path,
        *,
        stages: Sequence[FilterStage] = (),
        output_labels: Sequence[str] = (),
        output_options: Sequence[str] = (),
        label: str | None = None,
        observer: ProgressObserver | None = None,
    ) -> EngineResult:
        args: list[str] = []
        for media_input in inputs:
            args.extend(media_input.to_args())
        if stages:
            args.extend(["-filter_complex", serialize_filter_graph(stages)])
            for output_label in output_labels:
                args.extend(["-map", f"[{output_label}]"])
        args.extend(output_options)
        return await self.run(args, output_path, label=label, observer=observer)

    async def extract_frame(
        self,
        source: str | Path,
        output_path: str | Path,
        *,
        timestamp: float,
        width: int,
        height: int,
    ) -> EngineResult:
        args = [
            "-ss",
            f"{max(timestamp, 0.0):.3f}",
            "-i",
            str(source),
            "-frames:v",
            "1",
            "-vf",
            f"scale={width}:{height}",
        ]
        return await self.run(args, output_path)

    async def _pump_progress(
        self,
        stream: asyncio.StreamReader | None,
        label: str,
        observer: ProgressObserver | None,
    ) -> None:
        if stream is None:
            return
        async for raw_line in stream:
            if observer is None:
                continue
            key, _, value = raw_line.decode("utf-8", errors="replace").strip().partition("=")
            if key != "out_time_us" or not value.isdigit():
                continue
            observer.on_progress(label, int(value) / 1_000_000)


async def _empty_bytes() -> bytes:
    return b""
