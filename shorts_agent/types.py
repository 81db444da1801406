from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional


@dataclass(frozen=True)
class SegmentFile:
    """One fixed-duration chunk of the upload, produced by the splitter."""

    index: int
    path: Path

    @property
    def processed_name(self) -> str:
        return f"processed_{self.path.name}"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @classmethod
    def parse(cls, value: Optional[str]) -> "JobStatus":
        try:
            return cls(value)
        except ValueError:
            # Unknown statuses mean the job is still running on the service side.
            return cls.PROCESSING

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


@dataclass
class TranscriptionJob:
    """An in-flight request to the transcription service."""

    id: str
    status: JobStatus = JobStatus.QUEUED
    text: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ProcessedSegment:
    """Rendered output for one segment."""

    index: int
    source_name: str
    output_path: Path
    transcript: str

    @property
    def identifier(self) -> str:
        return self.output_path.name


@dataclass
class PipelineResult:
    """Ordered processed segments for one run."""

    run_dir: Path
    segments: List[ProcessedSegment] = field(default_factory=list)
    manifest_path: Optional[Path] = None

    @property
    def identifiers(self) -> List[str]:
        return [segment.identifier for segment in self.segments]
