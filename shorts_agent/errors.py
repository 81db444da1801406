"""Error taxonomy for the shorts pipeline."""

from __future__ import annotations

from typing import Optional, Sequence


class ShortsAgentError(Exception):
    """Base class for every error surfaced by the pipeline."""


class ConfigurationError(ShortsAgentError):
    """A credential or static asset is missing. Never retried."""


class MissingUploadError(ShortsAgentError):
    """No uploaded video was supplied, or the upload is empty."""


class RunDirectoryExistsError(ShortsAgentError):
    """The run directory already holds files from another run."""


class PipelineCancelledError(ShortsAgentError):
    """The run was cancelled before it could finish."""


class TranscriptionError(ShortsAgentError):
    pass


class UploadError(TranscriptionError):
    pass


class TranscriptionRequestError(TranscriptionError):
    pass


class PollingError(TranscriptionError):
    pass


class TranscriptionFailedError(TranscriptionError):
    """The service reported the transcription job as failed."""

    def __init__(self, job_id: str, message: Optional[str]):
        self.job_id = job_id
        self.service_message = message
        super().__init__(f"Transcription job {job_id} failed: {message or 'unknown error'}")


class TranscriptionTimeoutError(TranscriptionError):
    def __init__(self, job_id: str, waited: float):
        self.job_id = job_id
        self.waited = waited
        super().__init__(f"Transcription job {job_id} did not complete within {waited:.0f}s")


class MediaError(ShortsAgentError):
    """The media engine did not finish successfully."""

    def __init__(self, message: str, stderr: str = "", command: Optional[Sequence[str]] = None):
        self.stderr = stderr
        self.command = list(command) if command else []
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        super().__init__(f"{message}: {detail}" if detail else message)


class SplitError(MediaError):
    pass


class RenderError(MediaError):
    pass


class SegmentProcessingError(ShortsAgentError):
    """Terminal failure of one segment; aborts the remaining ones."""

    def __init__(self, segment, cause: BaseException):
        self.segment = segment
        self.cause = cause
        super().__init__(f"Segment {segment.index} ({segment.path.name}) failed: {cause}")

    @property
    def index(self) -> int:
        return self.segment.index
