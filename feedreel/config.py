from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "FEEDREEL_"


class PipelineSettings(BaseModel):
    cache_dir: Path = Path("data/cache")
    output_dir: Path = Path("data/output")


class FeedSettings(BaseModel):
    api_base_url: str = "https://oauth.reddit.com"
    token_url: str = "https://www.reddit.com/api/v1/access_token"
    permalink_base_url: str = "https://reddit.com"
    client_id: str = ""
    client_secret: str = ""
    username: str = ""
    password: str = ""
    user_agent: str = "feedreel/0.1"
    page_size: int = 50
    requests_per_minute: int = 100
    request_interval_seconds: float | None = None
    timeout_seconds: float = 30.0

    def page_interval_seconds(self) -> float:
        if self.request_interval_seconds is not None:
            return max(self.request_interval_seconds, 0.0)
        return 60.0 / max(self.requests_per_minute, 1)


class ComplianceOptions(BaseModel):
    max_duration: float | None = None
    min_duration: float | None = None
    min_resolution: int | None = None
    skip_no_audio: bool = False
    vertical_only: bool = False
    horizontal_only: bool = False
    skip_duplicates: bool = True
    duplicate_threshold: int = 10
    on_hash_error: Literal["accept", "reject", "raise"] = "accept"


class DedupSettings(BaseModel):
    max_concurrency: int = 4
    frame_offset_ratio: float = 0.1
    frame_width: int = 320
    frame_height: int = 240
    hash_size: int = 16


class NormalizeSettings(BaseModel):
    max_width: int = 1920
    max_height: int = 1080
    fps: int = 30
    chunk_size: int = 10
    title_top: int = 20
    title_word_limit: int = 15
    font_path: Path | None = None


class TransitionSettings(BaseModel):
    duration_seconds: float = 1.0
    safe_margin_seconds: float = 0.0


class MediaSettings(BaseModel):
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"


class LoggingSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    feed: FeedSettings = Field(default_factory=FeedSettings)
    compliance: ComplianceOptions = Field(default_factory=ComplianceOptions)
    dedup: DedupSettings = Field(default_factory=DedupSettings)
    normalize: NormalizeSettings = Field(default_factory=NormalizeSettings)
    transitions: TransitionSettings = Field(default_factory=TransitionSettings)
    media: MediaSettings = Field(default_factory=MediaSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides.

    A missing file at the default location falls back to built-in defaults;
    an explicitly requested file must exist.
    """

    explicit = config_path or os.getenv(f"{ENV_PREFIX}CONFIG")
    resolved_path = Path(explicit or DEFAULT_CONFIG_PATH)
    if resolved_path.exists() or (explicit and resolved_path != DEFAULT_CONFIG_PATH):
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    else:
        raw_config = {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if existing_value is None:
        return raw_value
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
