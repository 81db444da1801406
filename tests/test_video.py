from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import List

import pytest

from shorts_agent import video
from shorts_agent.config import MediaConfig
from shorts_agent.errors import ConfigurationError, RenderError, SplitError
from shorts_agent.filter_graph import build_filter_graph, to_filter_complex
from shorts_agent.video import FFmpegEngine, list_segments, parse_filter_names, segment_pattern


class RecordingRun:
    """Stands in for subprocess.run; ``effect`` may create output files."""

    def __init__(self, returncode: int = 0, stderr: str = "", effect=None, stdout: str = ""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.effect = effect
        self.commands: List[List[str]] = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        if self.effect is not None:
            self.effect(cmd)
        return subprocess.CompletedProcess(cmd, self.returncode, stdout=self.stdout, stderr=self.stderr)


def write_segments(count: int):
    def effect(cmd):
        pattern = cmd[-1]
        for idx in range(count):
            Path(pattern % idx).write_bytes(b"seg")
    return effect


def write_output(cmd):
    Path(cmd[-1]).write_bytes(b"rendered")


@pytest.fixture
def engine() -> FFmpegEngine:
    return FFmpegEngine(MediaConfig(ffmpeg_binary="/opt/ffmpeg/bin/ffmpeg"))


def test_split_uses_stream_copy_segmenting(engine, tmp_path, monkeypatch):
    runner = RecordingRun(effect=write_segments(3))
    monkeypatch.setattr(video.subprocess, "run", runner)
    source = tmp_path / "long.mp4"
    out_dir = tmp_path / "run"

    segments = engine.split(source, out_dir)

    cmd = runner.commands[0]
    assert cmd[0] == "/opt/ffmpeg/bin/ffmpeg"
    assert cmd[cmd.index("-i") + 1] == str(source)
    assert cmd[cmd.index("-c") + 1] == "copy"
    assert cmd[cmd.index("-f") + 1] == "segment"
    assert cmd[cmd.index("-segment_time") + 1] == "60"
    assert cmd[cmd.index("-reset_timestamps") + 1] == "1"
    assert cmd[-1] == str(out_dir / "segment_%03d.mp4")
    assert [s.path.name for s in segments] == ["segment_000.mp4", "segment_001.mp4", "segment_002.mp4"]
    assert [s.index for s in segments] == [0, 1, 2]


def test_split_failure_carries_engine_output(engine, tmp_path, monkeypatch):
    monkeypatch.setattr(video.subprocess, "run", RecordingRun(returncode=1, stderr="moov atom not found\n"))

    with pytest.raises(SplitError) as excinfo:
        engine.split(tmp_path / "broken.mp4", tmp_path / "run")

    assert "moov atom not found" in excinfo.value.stderr
    assert "moov atom not found" in str(excinfo.value)


def test_split_without_segments_is_an_error(engine, tmp_path, monkeypatch):
    monkeypatch.setattr(video.subprocess, "run", RecordingRun())

    with pytest.raises(SplitError):
        engine.split(tmp_path / "empty.mp4", tmp_path / "run")


def test_missing_binary_is_a_split_error(tmp_path, monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(video.subprocess, "run", missing)
    engine = FFmpegEngine(MediaConfig(ffmpeg_binary="/nope/ffmpeg"))

    with pytest.raises(SplitError):
        engine.split(tmp_path / "a.mp4", tmp_path / "run")


def test_list_segments_sorts_and_filters(tmp_path):
    for name in ["segment_010.mp4", "segment_002.mp4", "processed_segment_000.mp4", "segment_001.mkv",
                 "notes.txt", "segment_000.mp4"]:
        (tmp_path / name).write_bytes(b"x")

    segments = list_segments(tmp_path, ".mp4")

    assert [s.path.name for s in segments] == ["segment_000.mp4", "segment_002.mp4", "segment_010.mp4"]
    assert [s.index for s in segments] == [0, 2, 10]
    assert segments[0].processed_name == "processed_segment_000.mp4"


def test_list_segments_orders_by_index_past_three_digits(tmp_path):
    for name in ["segment_1000.mp4", "segment_101.mp4", "segment_999.mp4", "segment_002.mp4"]:
        (tmp_path / name).write_bytes(b"x")

    assert [s.index for s in list_segments(tmp_path)] == [2, 101, 999, 1000]


def test_segment_pattern_is_zero_padded(tmp_path):
    assert segment_pattern(tmp_path).name == "segment_%03d.mp4"
    assert segment_pattern(tmp_path, ".mkv").name == "segment_%03d.mkv"


def test_render_maps_terminal_and_copies_audio(engine, tmp_path, monkeypatch):
    runner = RecordingRun(effect=write_output)
    monkeypatch.setattr(video.subprocess, "run", runner)
    graph, terminal = build_filter_graph("it's here", "/fonts/Roboto.ttf")
    output = tmp_path / "out" / "processed_segment_000.mp4"

    result = engine.render(tmp_path / "segment_000.mp4", tmp_path / "ss.mp4", graph, terminal, output)

    assert result == output and output.read_bytes() == b"rendered"
    cmd = runner.commands[0]
    inputs = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-i"]
    assert inputs == [str(tmp_path / "segment_000.mp4"), str(tmp_path / "ss.mp4")]
    assert cmd[cmd.index("-filter_complex") + 1] == to_filter_complex(graph)
    maps = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-map"]
    assert maps == ["[final]", "0:a?"]
    assert cmd[cmd.index("-c:a") + 1] == "copy"
    assert "-c:v" not in cmd


def test_render_failure_raises_render_error_and_removes_partial_output(engine, tmp_path, monkeypatch):
    runner = RecordingRun(returncode=1, stderr="Error initializing filter 'drawtext'", effect=write_output)
    monkeypatch.setattr(video.subprocess, "run", runner)
    graph, terminal = build_filter_graph("x", "/fonts/Roboto.ttf")
    output = tmp_path / "processed.mp4"

    with pytest.raises(RenderError) as excinfo:
        engine.render(tmp_path / "in.mp4", tmp_path / "ss.mp4", graph, terminal, output)

    assert "drawtext" in excinfo.value.stderr
    assert excinfo.value.command[0] == "/opt/ffmpeg/bin/ffmpeg"
    assert not output.exists()


def test_render_without_output_file_is_an_error(engine, tmp_path, monkeypatch):
    monkeypatch.setattr(video.subprocess, "run", RecordingRun())
    graph, terminal = build_filter_graph("x", "/fonts/Roboto.ttf")

    with pytest.raises(RenderError):
        engine.render(tmp_path / "in.mp4", tmp_path / "ss.mp4", graph, terminal, tmp_path / "processed.mp4")


def test_render_requires_the_graph_terminal(engine, tmp_path):
    graph, _ = build_filter_graph("x", "/fonts/Roboto.ttf")

    with pytest.raises(ValueError):
        engine.render(tmp_path / "in.mp4", tmp_path / "ss.mp4", graph, "main_text", tmp_path / "out.mp4")


def test_probe_duration_uses_moviepy(engine, monkeypatch, tmp_path):
    class FakeClip:
        duration = 125.4

        def __init__(self, path):
            self.path = path

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

    monkeypatch.setattr(video, "VideoFileClip", FakeClip)

    assert engine.probe_duration(tmp_path / "long.mp4") == pytest.approx(125.4)


FILTER_LISTING = """Filters:
  T.. = Timeline support
  .S. = Slice threading
  ..C = Command support
  A = Audio input/output
  V = Video input/output
  N = Dynamic number and/or type of input/output
  | = Source or sink filter
 TSC overlay           VV->V      Overlay a video source on top of the input.
 ..C scale             V->V       Scale the input video size and/or convert the image format.
 T.C drawtext          V->V       Draw text on top of video frames using libfreetype library.
 ... anullsrc          |->A       Null audio source, return empty audio frames.
"""


def test_parse_filter_names_skips_legend():
    assert parse_filter_names(FILTER_LISTING) == {"overlay", "scale", "drawtext", "anullsrc"}


def test_require_filters_accepts_full_build(engine, monkeypatch):
    runner = RecordingRun(stdout=FILTER_LISTING)
    monkeypatch.setattr(video.subprocess, "run", runner)

    engine.require_filters()
    engine.require_filters()

    assert runner.commands == [["/opt/ffmpeg/bin/ffmpeg", "-hide_banner", "-filters"]]


def test_require_filters_rejects_build_without_drawtext(engine, monkeypatch):
    listing = "\n".join(line for line in FILTER_LISTING.splitlines() if "drawtext" not in line)
    monkeypatch.setattr(video.subprocess, "run", RecordingRun(stdout=listing))

    with pytest.raises(ConfigurationError, match="drawtext"):
        engine.require_filters()


def test_require_filters_with_missing_binary(tmp_path, monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(video.subprocess, "run", missing)

    with pytest.raises(ConfigurationError):
        FFmpegEngine(MediaConfig(ffmpeg_binary="/nope/ffmpeg")).require_filters()


SYSTEM_FFMPEG = shutil.which("ffmpeg")
FONT_CANDIDATES = [
    Path("/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf"),
    Path("/usr/share/fonts/dejavu/DejaVuSans.ttf"),
    Path("/usr/share/fonts/TTF/DejaVuSans.ttf"),
    Path("/Library/Fonts/Arial.ttf"),
    Path("C:/Windows/Fonts/arial.ttf"),
]


def make_test_clip(path: Path, seconds: int, size: str) -> Path:
    subprocess.run(
        [
            SYSTEM_FFMPEG, "-hide_banner", "-y",
            "-f", "lavfi", "-i", f"testsrc=duration={seconds}:size={size}:rate=25",
            "-f", "lavfi", "-i", f"sine=frequency=440:duration={seconds}",
            "-g", "25", "-shortest",
            str(path),
        ],
        check=True,
        capture_output=True,
    )
    return path


@pytest.fixture
def system_engine() -> FFmpegEngine:
    if SYSTEM_FFMPEG is None:
        pytest.skip("ffmpeg is not installed")
    return FFmpegEngine(MediaConfig(ffmpeg_binary=SYSTEM_FFMPEG, segment_seconds=1))


def test_default_binary_is_the_system_ffmpeg():
    if SYSTEM_FFMPEG is None:
        pytest.skip("ffmpeg is not installed")
    assert MediaConfig().ffmpeg_binary == SYSTEM_FFMPEG


def test_split_with_system_ffmpeg(system_engine, tmp_path):
    source = make_test_clip(tmp_path / "long.mp4", 3, "320x240")

    segments = system_engine.split(source, tmp_path / "run")

    assert [s.path.name for s in segments] == ["segment_000.mp4", "segment_001.mp4", "segment_002.mp4"]


@pytest.mark.parametrize("caption", ["it's fine", "a: b, [c]; d=e", "100% C:\\path"])
def test_render_with_system_ffmpeg(system_engine, tmp_path, caption):
    font = next((path for path in FONT_CANDIDATES if path.is_file()), None)
    if font is None:
        pytest.skip("no TrueType font available")
    if "drawtext" not in system_engine.available_filters():
        pytest.skip("system ffmpeg was built without drawtext")
    primary = make_test_clip(tmp_path / "main.mp4", 1, "320x240")
    overlay = make_test_clip(tmp_path / "ss.mp4", 1, "160x120")
    media = MediaConfig(ffmpeg_binary=SYSTEM_FFMPEG, width=360, height=640, font_size=24, overlay_height=100)

    graph, terminal = build_filter_graph(caption, font, media)
    output = system_engine.render(primary, overlay, graph, terminal, tmp_path / "processed_main.mp4")

    assert output.stat().st_size > 0
