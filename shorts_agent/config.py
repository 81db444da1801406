import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import imageio_ffmpeg


def _default_ffmpeg_binary() -> str:
    """Prefer the system ffmpeg; the imageio-ffmpeg build has no ``drawtext`` filter."""
    system_binary = shutil.which("ffmpeg")
    if system_binary:
        return system_binary
    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError:
        return "ffmpeg"


@dataclass
class TranscriptionConfig:
    """Configuration for the AssemblyAI transcription service."""

    api_base: str = "https://api.assemblyai.com"
    api_key_env: str = "ASSEMBLYAI_API_KEY"
    poll_interval: float = 5.0
    poll_backoff: float = 1.5  # 1.0 keeps a fixed interval
    max_poll_interval: float = 30.0
    max_wait_seconds: Optional[float] = 1800.0  # None waits forever
    request_timeout: float = 60.0
    max_retries: int = 3
    retry_delay: float = 3.0
    speech_model: Optional[str] = None
    language_code: Optional[str] = None


@dataclass
class MediaConfig:
    """Configuration for the ffmpeg splitter and renderer."""

    ffmpeg_binary: str = field(default_factory=_default_ffmpeg_binary)
    overlay_path: Path = Path("assets/ss.mp4")
    font_path: Path = Path("fonts/Roboto-Regular.ttf")
    width: int = 1080
    height: int = 1920
    font_size: int = 48
    font_color: str = "white"
    text_y: int = 50
    overlay_height: int = 300
    overlay_margin: int = 20
    segment_seconds: int = 60
    segment_extension: str = ".mp4"


@dataclass
class PipelineConfig:
    """Top level configuration for the shorts pipeline."""

    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    output_root: Path = Path("artifacts")
    max_workers: int = 1
    remove_upload: bool = True
    keep_segments: bool = False
    cleanup_on_failure: bool = False
    write_manifest: bool = True
    overwrite: bool = False  # replace a non-empty run directory instead of refusing it

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Create configuration from ``SHORTS_*`` environment variables."""
        transcription = TranscriptionConfig()
        transcription.api_base = os.getenv("ASSEMBLYAI_API_BASE", transcription.api_base)
        transcription.poll_interval = float(os.getenv("SHORTS_POLL_INTERVAL", transcription.poll_interval))
        max_wait = os.getenv("SHORTS_MAX_WAIT_SECONDS")
        if max_wait is not None:
            transcription.max_wait_seconds = float(max_wait) if float(max_wait) > 0 else None

        media = MediaConfig()
        ffmpeg_binary = os.getenv("SHORTS_FFMPEG_BINARY")
        if ffmpeg_binary:
            media.ffmpeg_binary = ffmpeg_binary
        media.overlay_path = Path(os.getenv("SHORTS_OVERLAY_PATH", str(media.overlay_path)))
        media.font_path = Path(os.getenv("SHORTS_FONT_PATH", str(media.font_path)))

        return cls(
            transcription=transcription,
            media=media,
            output_root=Path(os.getenv("SHORTS_OUTPUT_ROOT", str(cls.output_root))),
            max_workers=int(os.getenv("SHORTS_MAX_WORKERS", cls.max_workers)),
            keep_segments=_env_flag("SHORTS_KEEP_SEGMENTS", cls.keep_segments),
            cleanup_on_failure=_env_flag("SHORTS_CLEANUP_ON_FAILURE", cls.cleanup_on_failure),
            overwrite=_env_flag("SHORTS_OVERWRITE", cls.overwrite),
        )


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}
