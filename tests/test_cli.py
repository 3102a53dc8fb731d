from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

import feedreel.cli as cli
import feedreel.pipeline as pipeline_module
from feedreel.config import Settings
from feedreel.models import AcquiredItem, Candidate, CompilationResult, EnrichedItem, MediaMetadata, SegmentedStreamMedia
from feedreel.pipeline import CompilationPipeline


def _settings(tmp_path: Path) -> Settings:
    return Settings.model_validate(
        {"pipeline": {"cache_dir": str(tmp_path / "cache"), "output_dir": str(tmp_path / "out")}}
    )


def _enriched(source_id: str) -> EnrichedItem:
    candidate = Candidate(
        source_id=source_id,
        index=0,
        title=f"clip {source_id}",
        author="someone",
        media=SegmentedStreamMedia(f"https://v.redd.it/{source_id}/HLSPlaylist.m3u8"),
        permalink=f"https://reddit.com/r/clips/comments/{source_id}",
        source="clips",
    )
    return EnrichedItem(
        acquired=AcquiredItem(candidate=candidate, output_path=Path(f"/tmp/{source_id}.mp4")),
        metadata=MediaMetadata(duration_seconds=5.0, width=1280, height=720, has_audio=True),
    )


class _RecordingPipeline(CompilationPipeline):
    """Real orchestration with the collect, normalize and render steps stubbed out."""

    instances: list["_RecordingPipeline"] = []
    accepted = 2
    drop_all = False
    render_error: str | None = None

    def __init__(self, settings, **kwargs) -> None:
        super().__init__(settings, **kwargs)
        self.selector = None
        type(self).instances.append(self)

    async def collect(self, selector):
        self.selector = selector
        items = [_enriched(f"id{i}") for i in range(self.accepted)]
        for item in items:
            self.report(f"[{item.candidate.index}] {item.candidate.title!r}: accepted")
        return CompilationResult(requested=selector.target_count, work_list=items)

    async def normalize(self, result):
        self.observer.on_start("id0", 10.0)
        self.observer.on_progress("id0", 5.0)
        self.observer.on_progress("id0", 5.5)
        self.observer.on_progress("id0", 10.0)
        result.compiled = [] if self.drop_all else list(result.work_list)
        return result

    async def render(self, result, source):
        if self.render_error:
            raise RuntimeError(self.render_error)
        result.output_path = Path(f"/tmp/{source}_compilation.mp4")
        return result


def _patch(monkeypatch, tmp_path: Path, **pipeline_attrs) -> type[_RecordingPipeline]:
    pipeline_cls = type("_Pipeline", (_RecordingPipeline,), {"instances": [], **pipeline_attrs})
    monkeypatch.setattr(cli, "_bootstrap", lambda *_args, **_kwargs: _settings(tmp_path))
    monkeypatch.setattr(pipeline_module, "CompilationPipeline", pipeline_cls)
    return pipeline_cls


def test_run_command_shows_progress_for_all_stages(tmp_path: Path, monkeypatch) -> None:
    pipeline_cls = _patch(monkeypatch, tmp_path)

    result = CliRunner().invoke(cli.app, ["run", "r/clips", "--count", "2", "--sort", "top", "--time", "week"])

    assert result.exit_code == 0
    assert "[1/3] Collect videos..." in result.output
    assert "[3/3] Render compilation done" in result.output
    assert "'clip id0': accepted" in result.output
    assert '"status": "ok"' in result.output
    selector = pipeline_cls.instances[0].selector
    assert selector.source == "clips"
    assert selector.target_count == 2
    assert selector.time_window.value == "week"


def test_run_command_applies_filter_flags(tmp_path: Path, monkeypatch) -> None:
    pipeline_cls = _patch(monkeypatch, tmp_path)

    result = CliRunner().invoke(
        cli.app,
        [
            "run",
            "clips",
            "--max-duration",
            "30",
            "--min-resolution",
            "921600",
            "--skip-no-audio",
            "--vertical",
            "--keep-duplicates",
            "--transition-duration",
            "0.5",
        ],
    )

    assert result.exit_code == 0
    settings = pipeline_cls.instances[0].settings
    assert settings.compliance.max_duration == 30.0
    assert settings.compliance.min_resolution == 921600
    assert settings.compliance.skip_no_audio is True
    assert settings.compliance.vertical_only is True
    assert settings.compliance.skip_duplicates is False
    assert settings.transitions.duration_seconds == 0.5


def test_conflicting_orientation_flags_fail_before_any_work(tmp_path: Path, monkeypatch) -> None:
    pipeline_cls = _patch(monkeypatch, tmp_path)

    result = CliRunner().invoke(cli.app, ["run", "clips", "--vertical", "--horizontal"])

    assert result.exit_code == 2
    assert pipeline_cls.instances == []


def test_inverted_duration_bounds_fail_before_any_work(tmp_path: Path, monkeypatch) -> None:
    pipeline_cls = _patch(monkeypatch, tmp_path)

    result = CliRunner().invoke(cli.app, ["run", "clips", "--min-duration", "20", "--max-duration", "10"])

    assert result.exit_code == 2
    assert pipeline_cls.instances == []


def test_user_mode_rejects_query(tmp_path: Path, monkeypatch) -> None:
    pipeline_cls = _patch(monkeypatch, tmp_path)

    result = CliRunner().invoke(cli.app, ["run", "someone", "--user", "--query", "cats"])

    assert result.exit_code == 2
    assert pipeline_cls.instances == []


def test_run_command_prints_clean_error_without_traceback(tmp_path: Path, monkeypatch) -> None:
    _patch(monkeypatch, tmp_path, render_error="Error during ffmpeg with transitions: exited with code 1")

    result = CliRunner().invoke(cli.app, ["run", "clips"])

    assert result.exit_code == 1
    assert "[3/3] Render compilation failed" in result.output
    assert "Error: Error during ffmpeg with transitions" in result.output
    assert "Traceback" not in result.output


def test_run_command_reports_short_result(tmp_path: Path, monkeypatch) -> None:
    _patch(monkeypatch, tmp_path, accepted=0)

    result = CliRunner().invoke(cli.app, ["run", "clips", "--count", "3"])

    assert result.exit_code == 0
    assert "[2/3] Normalize videos" not in result.output
    assert "Accepted 0 of 3 requested videos; no compilation produced." in result.output
    assert '"status": "partial"' in result.output


def test_run_command_prints_ffmpeg_progress_percentages(tmp_path: Path, monkeypatch) -> None:
    _patch(monkeypatch, tmp_path)

    result = CliRunner().invoke(cli.app, ["run", "clips"])

    assert result.exit_code == 0
    assert "id0: 50%" in result.output
    assert "id0: 55%" not in result.output
    assert "id0: 100%" in result.output


def test_run_command_stops_when_normalization_drops_everything(tmp_path: Path, monkeypatch) -> None:
    _patch(monkeypatch, tmp_path, drop_all=True)

    result = CliRunner().invoke(cli.app, ["run", "clips", "--count", "2"])

    assert result.exit_code == 0
    assert "[2/3] Normalize videos done" in result.output
    assert "No videos survived normalization; nothing to render." in result.output
    assert "[3/3]" not in result.output
    assert "no compilation produced" in result.output


def test_progress_printer_needs_a_known_total(capsys) -> None:
    printer = cli._ProgressPrinter()

    printer.on_progress("clip", 3.0)
    printer.on_start("clip", 0.0)
    printer.on_progress("clip", 3.0)
    printer.on_start("final.mp4", 20.0)
    printer.on_progress("final.mp4", 1.0)
    printer.on_progress("final.mp4", 25.0)

    assert capsys.readouterr().err.splitlines() == ["    final.mp4: 5%", "    final.mp4: 100%"]


def test_config_show_masks_secrets(tmp_path: Path, monkeypatch) -> None:
    settings = _settings(tmp_path)
    settings.feed.client_secret = "hunter2"
    monkeypatch.setattr(cli, "_bootstrap", lambda *_args, **_kwargs: settings)

    result = CliRunner().invoke(cli.app, ["config", "show"])

    assert result.exit_code == 0
    assert "hunter2" not in result.output
    assert '"client_secret": "***"' in result.output
