from __future__ import annotations

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Mapping, Sequence

from feedreel.dedup.phash import hamming_distance, hash_image_file
from feedreel.ingest.probe import probe_media
from feedreel.media.engine import MediaEngine

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 10


class HashingError(RuntimeError):
    """Raised when a frame cannot be extracted or hashed for a path."""


class DuplicateDetector:
    """Perceptual-hash duplicate check with a per-run hash cache.

    Paths are assumed immutable once hashed, so each path is hashed at most
    once per detector instance.
    """

    def __init__(
        self,
        engine: MediaEngine,
        work_dir: str | Path,
        *,
        ffprobe_binary: str = "ffprobe",
        max_concurrency: int = 4,
        frame_offset_ratio: float = 0.1,
        frame_width: int = 320,
        frame_height: int = 240,
        hash_size: int = 16,
    ) -> None:
        self.engine = engine
        self.work_dir = Path(work_dir).expanduser()
        self.ffprobe_binary = ffprobe_binary
        self.max_concurrency = max(max_concurrency, 1)
        self.frame_offset_ratio = frame_offset_ratio
        self.frame_width = frame_width
        self.frame_height = frame_height
        self.hash_size = hash_size
        self._hashes: dict[Path, str] = {}
        self._semaphore = asyncio.Semaphore(self.max_concurrency)

    async def is_duplicate(
        self,
        candidate_path: str | Path,
        prior_paths: Sequence[str | Path],
        threshold: int = DEFAULT_THRESHOLD,
        durations: Mapping[str | Path, float] | None = None,
    ) -> bool:
        """Return True when any prior path hashes within ``threshold`` of the candidate.

        ``durations`` carries already-probed durations keyed by path; only
        paths missing from it are probed before frame extraction.
        """

        if not prior_paths:
            return False

        known = {Path(path): seconds for path, seconds in (durations or {}).items()}
        candidate_hash = await self.hash_for(candidate_path, known.get(Path(candidate_path)))

        async def compare(prior_path: Path) -> tuple[Path, int]:
            async with self._semaphore:
                prior_hash = await self.hash_for(prior_path, known.get(prior_path))
            return prior_path, hamming_distance(candidate_hash, prior_hash)

        tasks = [asyncio.create_task(compare(Path(path))) for path in prior_paths]
        try:
            for finished in asyncio.as_completed(tasks):
                prior_path, distance = await finished
                if distance <= threshold:
                    logger.info(
                        "%s matches %s (distance %d <= %d)",
                        Path(candidate_path).name,
                        prior_path.name,
                        distance,
                        threshold,
                    )
                    return True
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        return False

    async def hash_for(self, media_path: str | Path, duration_seconds: float | None = None) -> str:
        key = Path(media_path).expanduser().resolve()
        cached = self._hashes.get(key)
        if cached is not None:
            return cached

        try:
            value = await self._compute_hash(key, duration_seconds)
        except HashingError:
            raise
        except (RuntimeError, ValueError, OSError) as exc:
            raise HashingError(f"Could not hash {key}: {exc}") from exc

        self._hashes[key] = value
        return value

    async def _compute_hash(self, media_path: Path, duration_seconds: float | None = None) -> str:
        if duration_seconds is None:
            duration_seconds = (await probe_media(media_path, self.ffprobe_binary)).duration_seconds
        timestamp = duration_seconds * self.frame_offset_ratio

        self.work_dir.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha1(str(media_path).encode("utf-8")).hexdigest()[:16]
        frame_path = self.work_dir / f"{digest}.png"
        try:
            result = await self.engine.extract_frame(
                media_path,
                frame_path,
                timestamp=timestamp,
                width=self.frame_width,
                height=self.frame_height,
            )
            if not result.ok:
                raise HashingError(f"Frame extraction failed for {media_path}: {result.reason}")
            return await asyncio.to_thread(hash_image_file, frame_path, self.hash_size)
        finally:
            if frame_path.exists():
                frame_path.unlink()
