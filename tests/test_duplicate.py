from __future__ import annotations

import asyncio
from pathlib import Path

import cv2
import numpy as np
import pytest

import feedreel.dedup.detector as detector_module
from feedreel.dedup.detector import DuplicateDetector, HashingError
from feedreel.dedup.phash import hamming_distance, perceptual_hash
from feedreel.media.engine import EngineResult, MediaEngine
from feedreel.models import MediaMetadata


class _StubDetector(DuplicateDetector):
    """Detector whose hashes come from a lookup table instead of ffmpeg."""

    def __init__(self, hashes: dict[str, str], tmp_path: Path, **kwargs) -> None:
        super().__init__(MediaEngine(), tmp_path / "frames", **kwargs)
        self.table = hashes
        self.computed: list[str] = []

    async def _compute_hash(self, media_path: Path, duration_seconds: float | None = None) -> str:
        self.computed.append(media_path.name)
        await asyncio.sleep(0)
        value = self.table[media_path.name]
        if value == "boom":
            raise RuntimeError("frame extraction failed")
        return value


def test_hamming_distance_is_symmetric() -> None:
    first, second = "0f3a9c", "0e3b9c"

    assert hamming_distance(first, second) == hamming_distance(second, first) == 2
    assert hamming_distance(first, first) == 0


def test_hamming_distance_rejects_unequal_lengths() -> None:
    with pytest.raises(ValueError, match="Hash lengths differ"):
        hamming_distance("abc", "abcd")


def test_perceptual_hash_has_fixed_length_and_tolerates_noise() -> None:
    rng = np.random.default_rng(7)
    frame = np.tile(np.linspace(0, 255, 320), (240, 1)).astype(np.uint8)
    noisy = np.clip(frame.astype(np.int16) + rng.integers(-3, 4, frame.shape), 0, 255).astype(np.uint8)

    first = perceptual_hash(frame, hash_size=16)
    second = perceptual_hash(noisy, hash_size=16)

    assert len(first) == 64
    assert hamming_distance(first, second) <= 10


def test_perceptual_hash_separates_different_images() -> None:
    horizontal = np.tile(np.linspace(0, 255, 320), (240, 1)).astype(np.uint8)
    checker = (np.indices((240, 320)).sum(axis=0) // 40 % 2 * 255).astype(np.uint8)

    assert hamming_distance(perceptual_hash(horizontal), perceptual_hash(checker)) > 10


def test_is_duplicate_with_no_prior_paths_never_hashes(tmp_path: Path) -> None:
    detector = _StubDetector({}, tmp_path)

    assert asyncio.run(detector.is_duplicate(tmp_path / "a.mp4", [], threshold=64)) is False
    assert detector.computed == []


def test_distance_equal_to_threshold_counts_as_duplicate(tmp_path: Path) -> None:
    candidate = "0" * 64
    prior = "1" * 10 + "0" * 54
    detector = _StubDetector({"new.mp4": candidate, "old.mp4": prior}, tmp_path)

    async def _check() -> tuple[bool, bool]:
        at_threshold = await detector.is_duplicate(tmp_path / "new.mp4", [tmp_path / "old.mp4"], threshold=10)
        below_threshold = await detector.is_duplicate(tmp_path / "new.mp4", [tmp_path / "old.mp4"], threshold=9)
        return at_threshold, below_threshold

    assert asyncio.run(_check()) == (True, False)


def test_hashes_are_cached_per_path(tmp_path: Path) -> None:
    detector = _StubDetector({"new.mp4": "a" * 64, "x.mp4": "b" * 64, "y.mp4": "c" * 64}, tmp_path)

    async def _check() -> None:
        await detector.is_duplicate(tmp_path / "new.mp4", [tmp_path / "x.mp4", tmp_path / "y.mp4"])
        await detector.is_duplicate(tmp_path / "new.mp4", [tmp_path / "x.mp4", tmp_path / "y.mp4"])

    asyncio.run(_check())

    assert sorted(detector.computed) == ["new.mp4", "x.mp4", "y.mp4"]
    assert detector.computed[0] == "new.mp4"


def test_prior_hashing_respects_concurrency_limit(tmp_path: Path) -> None:
    in_flight = 0
    peak = 0

    class _SlowDetector(_StubDetector):
        async def _compute_hash(self, media_path: Path, duration_seconds: float | None = None) -> str:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return self.table[media_path.name]

    table = {"new.mp4": "0" * 64, **{f"p{i}.mp4": "f" * 64 for i in range(8)}}

    async def _check() -> bool:
        detector = _SlowDetector(table, tmp_path, max_concurrency=2)
        return await detector.is_duplicate(tmp_path / "new.mp4", [tmp_path / f"p{i}.mp4" for i in range(8)])

    assert asyncio.run(_check()) is False
    assert peak <= 2


def test_known_durations_skip_metadata_lookup(tmp_path: Path, monkeypatch) -> None:
    looked_up: list[str] = []
    timestamps: list[float] = []

    async def _fake_probe(path, ffprobe_binary: str = "ffprobe"):
        looked_up.append(Path(path).name)
        return MediaMetadata(duration_seconds=20.0, width=320, height=240, has_audio=True)

    class _FrameEngine(MediaEngine):
        async def extract_frame(self, source, output_path, *, timestamp, width, height) -> EngineResult:
            timestamps.append(timestamp)
            frame = np.tile(np.linspace(0, 255, width), (height, 1)).astype(np.uint8)
            cv2.imwrite(str(output_path), frame)
            return EngineResult(ok=True, output_path=Path(output_path))

    monkeypatch.setattr(detector_module, "probe_media", _fake_probe)
    new_path, old_path = tmp_path / "new.mp4", tmp_path / "old.mp4"
    detector = DuplicateDetector(_FrameEngine(), tmp_path / "frames")

    duplicate = asyncio.run(detector.is_duplicate(new_path, [old_path], durations={new_path: 10.0, old_path: 30.0}))

    assert duplicate is True
    assert looked_up == []
    assert sorted(timestamps) == [1.0, 3.0]


def test_unknown_duration_is_looked_up(tmp_path: Path, monkeypatch) -> None:
    looked_up: list[str] = []

    async def _fake_probe(path, ffprobe_binary: str = "ffprobe"):
        looked_up.append(Path(path).name)
        return MediaMetadata(duration_seconds=20.0, width=320, height=240, has_audio=True)

    class _FrameEngine(MediaEngine):
        async def extract_frame(self, source, output_path, *, timestamp, width, height) -> EngineResult:
            cv2.imwrite(str(output_path), np.zeros((height, width), dtype=np.uint8))
            return EngineResult(ok=True, output_path=Path(output_path))

    monkeypatch.setattr(detector_module, "probe_media", _fake_probe)
    detector = DuplicateDetector(_FrameEngine(), tmp_path / "frames")

    new_path = tmp_path / "new.mp4"
    asyncio.run(detector.is_duplicate(new_path, [tmp_path / "old.mp4"], durations={new_path: 4.0}))

    assert looked_up == ["old.mp4"]


def test_hashing_failure_propagates(tmp_path: Path) -> None:
    detector = _StubDetector({"new.mp4": "0" * 64, "bad.mp4": "boom"}, tmp_path)

    with pytest.raises(HashingError, match="frame extraction failed"):
        asyncio.run(detector.is_duplicate(tmp_path / "new.mp4", [tmp_path / "bad.mp4"]))
