from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Mapping, Union


class SortOrder(str, Enum):
    TOP = "top"
    HOT = "hot"
    NEW = "new"
    RISING = "rising"
    BEST = "best"
    CONTROVERSIAL = "controversial"
    RELEVANCE = "relevance"
    COMMENTS = "comments"


class TimeWindow(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    ALL = "all"


class MediaKind(str, Enum):
    DIRECT_FILE = "direct-file"
    SEGMENTED_STREAM = "segmented-stream"
    ANIMATED_IMAGE = "animated-image"


@dataclass(frozen=True, slots=True)
class FeedSelector:
    """What to walk: one subreddit or user listing plus its ordering."""

    source: str
    target_count: int
    sort: SortOrder = SortOrder.HOT
    time_window: TimeWindow | None = None
    query: str | None = None
    user_mode: bool = False

    @property
    def label(self) -> str:
        return f"{'u' if self.user_mode else 'r'}/{self.source}"


@dataclass(frozen=True, slots=True)
class SegmentedStreamMedia:
    manifest_url: str
    kind: ClassVar[MediaKind] = MediaKind.SEGMENTED_STREAM

    @property
    def url(self) -> str:
        return self.manifest_url


@dataclass(frozen=True, slots=True)
class DirectFileMedia:
    file_url: str
    provider: str
    kind: ClassVar[MediaKind] = MediaKind.DIRECT_FILE

    @property
    def url(self) -> str:
        return self.file_url


@dataclass(frozen=True, slots=True)
class AnimatedImageMedia:
    image_url: str
    kind: ClassVar[MediaKind] = MediaKind.ANIMATED_IMAGE

    @property
    def url(self) -> str:
        return self.image_url


Media = Union[SegmentedStreamMedia, DirectFileMedia, AnimatedImageMedia]


@dataclass(frozen=True, slots=True)
class Candidate:
    """A feed entry classified as downloadable media, not yet fetched."""

    source_id: str
    index: int
    title: str
    author: str
    media: Media
    permalink: str
    source: str

    @property
    def kind(self) -> MediaKind:
        return self.media.kind


@dataclass(slots=True)
class AcquiredItem:
    candidate: Candidate
    output_path: Path


@dataclass(frozen=True, slots=True)
class MediaMetadata:
    duration_seconds: float
    width: int | None
    height: int | None
    has_audio: bool
    streams: tuple[Mapping[str, Any], ...] = ()

    @property
    def dimensions(self) -> tuple[int, int] | None:
        if not self.width or not self.height:
            return None
        return self.width, self.height


@dataclass(slots=True)
class EnrichedItem:
    """An acquired item with its probe result attached; never re-probed."""

    acquired: AcquiredItem
    metadata: MediaMetadata

    @property
    def candidate(self) -> Candidate:
        return self.acquired.candidate

    @property
    def output_path(self) -> Path:
        return self.acquired.output_path


@dataclass(slots=True)
class ComplianceVerdict:
    reasons: list[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return not self.reasons


@dataclass(frozen=True, slots=True)
class TargetFrame:
    width: int
    height: int

    @property
    def label(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(slots=True)
class FilterStage:
    """One named filter in a filter graph, wired through pin labels."""

    filter: str
    options: Mapping[str, Any] | str | None = None
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TransitionPlan:
    stages: list[FilterStage]
    video_label: str
    audio_label: str
    offsets: list[float]


@dataclass(slots=True)
class CompilationResult:
    requested: int
    work_list: list[EnrichedItem]
    compiled: list[EnrichedItem] = field(default_factory=list)
    offsets: list[float] = field(default_factory=list)
    output_path: Path | None = None
    manifest_paths: dict[str, Path] = field(default_factory=dict)
    rejected_count: int = 0
    failed_count: int = 0

    @property
    def accepted(self) -> int:
        return len(self.work_list)
