from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set

from moviepy import VideoFileClip

from .config import MediaConfig
from .errors import ConfigurationError, RenderError, SplitError
from .filter_graph import FilterGraph, to_filter_complex
from .types import SegmentFile

logger = logging.getLogger(__name__)

SEGMENT_PREFIX = "segment_"
REQUIRED_FILTERS = ("scale", "drawtext", "overlay")
_SEGMENT_INDEX = re.compile(r"(\d+)$")


def get_video_duration(video_path: Path) -> float:
    with VideoFileClip(str(video_path)) as clip:
        return float(clip.duration)


def segment_pattern(output_dir: Path, extension: str = ".mp4") -> Path:
    """Zero-padded output pattern so lexicographic and sequence order agree."""
    return output_dir / f"{SEGMENT_PREFIX}%03d{extension}"


def list_segments(output_dir: Path, extension: str = ".mp4") -> List[SegmentFile]:
    segments: List[SegmentFile] = []
    for path in output_dir.iterdir():
        if not path.is_file() or path.suffix.lower() != extension.lower():
            continue
        if not path.name.startswith(SEGMENT_PREFIX):
            continue
        match = _SEGMENT_INDEX.search(path.stem)
        if match is None:
            continue
        segments.append(SegmentFile(index=int(match.group(1)), path=path))
    # The padding widens past segment 999, so names alone do not sort correctly.
    segments.sort(key=lambda segment: segment.index)
    return segments


def parse_filter_names(listing: str) -> Set[str]:
    # Filter rows look like " TSC drawtext   V->V   Draw text ..."; legend rows have no "->".
    names: Set[str] = set()
    for line in listing.splitlines():
        fields = line.split()
        if len(fields) >= 3 and "->" in fields[2]:
            names.add(fields[1])
    return names


class FFmpegEngine:
    """Runs the ffmpeg binary in segmenting and filter-graph modes."""

    def __init__(self, config: Optional[MediaConfig] = None):
        self.config = config or MediaConfig()
        self._filters: Optional[Set[str]] = None

    @property
    def binary(self) -> str:
        return str(self.config.ffmpeg_binary)

    def probe_duration(self, video_path: Path) -> float:
        return get_video_duration(video_path)

    def available_filters(self) -> Set[str]:
        """Names listed by ``ffmpeg -filters``; read once per engine."""
        if self._filters is None:
            cmd = [self.binary, "-hide_banner", "-filters"]
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
            except OSError as exc:
                raise ConfigurationError(f"Cannot run ffmpeg binary {self.binary}: {exc}") from exc
            if result.returncode != 0:
                raise ConfigurationError(
                    f"Listing filters of {self.binary} failed (exit {result.returncode}): {result.stderr.strip()}"
                )
            self._filters = parse_filter_names(result.stdout)
        return self._filters

    def require_filters(self, names: Iterable[str] = REQUIRED_FILTERS) -> None:
        available = self.available_filters()
        missing = [name for name in names if name not in available]
        if missing:
            raise ConfigurationError(
                f"ffmpeg binary {self.binary} lacks the {', '.join(missing)} filter(s). "
                "Use an ffmpeg build with libfreetype and libharfbuzz (SHORTS_FFMPEG_BINARY)."
            )

    def split(self, input_path: Path, output_dir: Path) -> List[SegmentFile]:
        """Cut ``input_path`` into fixed-duration chunks by stream copy.

        Without re-encoding, cuts land on the nearest keyframe after each
        ``segment_seconds`` mark, so segment lengths are approximate.
        """

        output_dir.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.binary, "-hide_banner", "-y",
            "-i", str(input_path),
            "-map", "0",
            "-c", "copy",
            "-f", "segment",
            "-segment_time", str(self.config.segment_seconds),
            "-reset_timestamps", "1",
            str(segment_pattern(output_dir, self.config.segment_extension)),
        ]
        logger.info("Splitting %s into %ss segments", input_path, self.config.segment_seconds)
        self._run(cmd, SplitError, f"Splitting {input_path.name} failed")
        segments = list_segments(output_dir, self.config.segment_extension)
        if not segments:
            raise SplitError(f"Splitting {input_path.name} produced no segments", command=cmd)
        logger.info("Split produced %s segments", len(segments))
        return segments

    def render(
        self,
        primary_path: Path,
        overlay_path: Path,
        graph: FilterGraph,
        terminal: str,
        output_path: Path,
    ) -> Path:
        """Render one output through ``graph``; audio is copied from the primary input."""

        if terminal != graph.terminal:
            raise ValueError(f"Terminal '{terminal}' is not the graph output '{graph.terminal}'")

        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.binary, "-hide_banner", "-y",
            "-i", str(primary_path),
            "-i", str(overlay_path),
            "-filter_complex", to_filter_complex(graph),
            "-map", f"[{terminal}]",
            "-map", "0:a?",
            "-c:a", "copy",
            str(output_path),
        ]
        logger.info("Rendering %s -> %s", primary_path.name, output_path.name)
        try:
            self._run(cmd, RenderError, f"Rendering {primary_path.name} failed")
            if not output_path.exists() or output_path.stat().st_size == 0:
                raise RenderError(f"Rendering {primary_path.name} produced no output", command=cmd)
        except RenderError:
            output_path.unlink(missing_ok=True)
            raise
        return output_path

    def _run(self, cmd: Sequence[str], error_type: type, message: str) -> None:
        logger.debug("Running: %s", subprocess.list2cmdline(list(cmd)))
        try:
            result = subprocess.run(list(cmd), capture_output=True, text=True, errors="replace")
        except OSError as exc:
            logger.error("%s: %s", message, exc)
            raise error_type(f"{message}: {exc}", command=cmd) from exc
        if result.returncode != 0:
            logger.error("%s (exit %s)", message, result.returncode)
            raise error_type(message, stderr=result.stderr or "", command=cmd)
