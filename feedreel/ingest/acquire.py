from __future__ import annotations

import logging
from pathlib import Path

import httpx

from feedreel.ingest.probe import probe_media
from feedreel.media.engine import MediaEngine, MediaInput
from feedreel.models import (
    AcquiredItem,
    AnimatedImageMedia,
    Candidate,
    DirectFileMedia,
    EnrichedItem,
    SegmentedStreamMedia,
)

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_BYTES = 1 << 16


class AcquisitionError(RuntimeError):
    """Raised internally when one candidate cannot be turned into a local file."""


def _is_nonempty(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


def _remove(path: Path) -> None:
    if path.exists():
        path.unlink()


class AcquisitionController:
    """Downloads candidate media into the cache, one candidate at a time."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        engine: MediaEngine,
        cache_dir: str | Path,
        *,
        ffprobe_binary: str = "ffprobe",
        user_agent: str = "feedreel/0.1",
        timeout_seconds: float = 120.0,
    ) -> None:
        self.client = client
        self.engine = engine
        self.cache_root = Path(cache_dir).expanduser()
        self.ffprobe_binary = ffprobe_binary
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds

    def cache_path(self, candidate: Candidate) -> Path:
        return self.cache_root / "originals" / candidate.source / f"{candidate.source_id}.mp4"

    async def acquire(self, candidate: Candidate) -> AcquiredItem | None:
        output_path = self.cache_path(candidate)
        if _is_nonempty(output_path):
            logger.info("Using cached download for %s: %s", candidate.source_id, output_path)
            return AcquiredItem(candidate=candidate, output_path=output_path)

        output_path.parent.mkdir(parents=True, exist_ok=True)
        scratch = [
            output_path.with_name(f"{candidate.source_id}.mp4.part"),
            output_path.with_name(f"{candidate.source_id}.part.mp4"),
            output_path.with_name(f"{candidate.source_id}.gif.part"),
        ]

        try:
            media = candidate.media
            if isinstance(media, SegmentedStreamMedia):
                await self._remux_stream(media.manifest_url, output_path)
            elif isinstance(media, AnimatedImageMedia):
                await self._transcode_animation(media.image_url, output_path)
            elif isinstance(media, DirectFileMedia):
                await self._download(media.file_url, output_path)
            else:
                raise AcquisitionError(f"Unsupported media type: {type(media).__name__}")

            if not _is_nonempty(output_path):
                raise AcquisitionError("acquisition produced an empty file")
        except (AcquisitionError, httpx.HTTPError, OSError) as exc:
            logger.warning(
                "Failed to acquire %s (%s) from %s: %s",
                candidate.source_id,
                candidate.kind.value,
                candidate.media.url,
                exc,
            )
            for path in (output_path, *scratch):
                _remove(path)
            return None
        finally:
            for path in scratch:
                _remove(path)

        logger.debug("Acquired %s -> %s", candidate.permalink, output_path)
        return AcquiredItem(candidate=candidate, output_path=output_path)

    async def enrich(self, item: AcquiredItem) -> EnrichedItem:
        metadata = await probe_media(item.output_path, self.ffprobe_binary)
        return EnrichedItem(acquired=item, metadata=metadata)

    async def _download(self, url: str, output_path: Path) -> None:
        part_path = output_path.with_name(f"{output_path.stem}.mp4.part")
        await self._stream_to_file(url, part_path)
        part_path.replace(output_path)

    async def _remux_stream(self, manifest_url: str, output_path: Path) -> None:
        staged = output_path.with_name(f"{output_path.stem}.part.mp4")
        result = await self.engine.render(
            [MediaInput(manifest_url)],
            staged,
            output_options=["-c", "copy", "-bsf:a", "aac_adtstoasc", "-movflags", "+faststart"],
            label=output_path.name,
        )
        if not result.ok:
            raise AcquisitionError(result.reason or "remux failed")
        staged.replace(output_path)

    async def _transcode_animation(self, image_url: str, output_path: Path) -> None:
        raw_path = output_path.with_name(f"{output_path.stem}.gif.part")
        staged = output_path.with_name(f"{output_path.stem}.part.mp4")
        await self._stream_to_file(image_url, raw_path)
        result = await self.engine.render(
            [MediaInput(str(raw_path), input_format="gif")],
            staged,
            output_options=[
                "-vf",
                "scale=trunc(iw/2)*2:trunc(ih/2)*2",
                "-c:v",
                "libx264",
                "-preset",
                "ultrafast",
                "-pix_fmt",
                "yuv420p",
                "-movflags",
                "+faststart",
            ],
            label=output_path.name,
        )
        if not result.ok:
            raise AcquisitionError(result.reason or "transcode failed")
        staged.replace(output_path)

    async def _stream_to_file(self, url: str, destination: Path) -> None:
        async with self.client.stream(
            "GET",
            url,
            headers={"User-Agent": self.user_agent},
            follow_redirects=True,
            timeout=self.timeout_seconds,
        ) as response:
            response.raise_for_status()
            with destination.open("wb") as handle:
                async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_BYTES):
                    handle.write(chunk)
