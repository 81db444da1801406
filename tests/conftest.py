from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from shorts_agent.config import MediaConfig, PipelineConfig, TranscriptionConfig
from shorts_agent.errors import ConfigurationError, RenderError, SplitError
from shorts_agent.types import SegmentFile
from shorts_agent.video import list_segments


class FakeTranscriber:
    """Returns canned transcripts; ``failures`` maps a segment file name to an error."""

    def __init__(self, api_key: Optional[str] = "test-key", failures: Optional[Dict[str, Exception]] = None):
        self.api_key = api_key
        self.failures = failures or {}
        self.calls: List[str] = []

    def require_credentials(self) -> str:
        if not self.api_key:
            raise ConfigurationError("Missing AssemblyAI API key")
        return self.api_key

    def transcribe(self, media_path: Path) -> str:
        self.calls.append(media_path.name)
        if media_path.name in self.failures:
            raise self.failures[media_path.name]
        return f"caption for {media_path.name}: it's done"


class FakeEngine:
    """Pretends to be ffmpeg: splitting writes N small files, rendering writes the output."""

    def __init__(self, duration: float = 125.0, segment_seconds: int = 60, fail_split: bool = False,
                 fail_render: Optional[str] = None, missing_filters: Sequence[str] = ()):
        self.duration = duration
        self.segment_seconds = segment_seconds
        self.fail_split = fail_split
        self.fail_render = fail_render
        self.missing_filters = list(missing_filters)
        self.split_calls: List[Path] = []
        self.render_calls: List[dict] = []

    def probe_duration(self, video_path: Path) -> float:
        return self.duration

    def require_filters(self) -> None:
        if self.missing_filters:
            raise ConfigurationError(f"ffmpeg lacks the {', '.join(self.missing_filters)} filter(s)")

    def split(self, input_path: Path, output_dir: Path) -> List[SegmentFile]:
        self.split_calls.append(input_path)
        if self.fail_split:
            raise SplitError("Splitting failed", stderr="moov atom not found")
        count = -(-int(self.duration) // self.segment_seconds)
        for idx in range(count):
            (output_dir / f"segment_{idx:03d}.mp4").write_bytes(b"segment")
        return list_segments(output_dir)

    def render(self, primary_path, overlay_path, graph, terminal, output_path: Path) -> Path:
        self.render_calls.append(
            {"primary": primary_path, "overlay": overlay_path, "graph": graph, "terminal": terminal, "output": output_path}
        )
        if self.fail_render == primary_path.name:
            raise RenderError("Rendering failed", stderr="Invalid data found")
        output_path.write_bytes(b"rendered")
        return output_path


@pytest.fixture
def assets(tmp_path: Path) -> Dict[str, Path]:
    overlay = tmp_path / "assets" / "ss.mp4"
    font = tmp_path / "fonts" / "Roboto-Regular.ttf"
    overlay.parent.mkdir()
    font.parent.mkdir()
    overlay.write_bytes(b"overlay")
    font.write_bytes(b"font")
    return {"overlay": overlay, "font": font}


@pytest.fixture
def pipeline_config(tmp_path: Path, assets: Dict[str, Path]) -> PipelineConfig:
    return PipelineConfig(
        transcription=TranscriptionConfig(),
        media=MediaConfig(ffmpeg_binary="ffmpeg", overlay_path=assets["overlay"], font_path=assets["font"]),
        output_root=tmp_path / "artifacts",
    )


@pytest.fixture
def upload(tmp_path: Path) -> Path:
    path = tmp_path / "upload.mp4"
    path.write_bytes(b"\x00" * 64)
    return path
