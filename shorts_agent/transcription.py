from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import requests

from .config import TranscriptionConfig
from .errors import (
    ConfigurationError,
    PipelineCancelledError,
    PollingError,
    TranscriptionError,
    TranscriptionFailedError,
    TranscriptionRequestError,
    TranscriptionTimeoutError,
    UploadError,
)
from .types import JobStatus, TranscriptionJob

logger = logging.getLogger(__name__)

# Client errors other than these will fail the same way on every retry.
_RETRYABLE_CLIENT_STATUSES = {408, 429}


class AssemblyAITranscriber:
    """Upload media to AssemblyAI, create a transcription job and poll it to completion."""

    def __init__(
        self,
        config: Optional[TranscriptionConfig] = None,
        session: Optional[requests.Session] = None,
        api_key: Optional[str] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Optional[Callable[[], float]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config or TranscriptionConfig()
        self.session = session or requests.Session()
        self.api_key = api_key or (os.getenv(self.config.api_key_env) if self.config.api_key_env else None)
        self.base_url = self.config.api_base.rstrip("/")
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self._clock = clock or time.monotonic

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def require_credentials(self) -> str:
        if not self.api_key:
            raise ConfigurationError(
                f"Missing AssemblyAI API key. Please set environment variable '{self.config.api_key_env}'."
            )
        return self.api_key

    def transcribe(self, media_path: Path) -> str:
        """Return the transcript text for ``media_path``."""
        self.require_credentials()
        logger.info("Uploading %s for transcription", media_path.name)
        upload_url = self.upload(media_path)
        job = self.create_job(upload_url)
        logger.info("Transcription job %s created for %s", job.id, media_path.name)
        job = self.wait_for_completion(job)
        text = job.text or ""
        logger.info("Transcription job %s completed (%s characters)", job.id, len(text))
        return text

    def upload(self, media_path: Path) -> str:
        def _send() -> requests.Response:
            try:
                stream = open(media_path, "rb")
            except OSError as exc:
                raise UploadError(f"Cannot read {media_path.name} for upload: {exc}") from exc
            # The file object makes requests stream the body instead of loading it.
            with stream:
                return self.session.post(
                    f"{self.base_url}/v2/upload",
                    headers=self._headers(),
                    data=stream,
                    timeout=self.config.request_timeout,
                )

        data = self._request(_send, UploadError, f"Upload of {media_path.name}")
        upload_url = data.get("upload_url")
        if not upload_url:
            raise UploadError(f"Upload of {media_path.name} returned no upload_url")
        return upload_url

    def create_job(self, upload_url: str) -> TranscriptionJob:
        payload: Dict[str, Any] = {"audio_url": upload_url}
        if self.config.speech_model:
            payload["speech_model"] = self.config.speech_model
        if self.config.language_code:
            payload["language_code"] = self.config.language_code

        data = self._request(
            lambda: self.session.post(
                f"{self.base_url}/v2/transcript",
                headers=self._headers(),
                json=payload,
                timeout=self.config.request_timeout,
            ),
            TranscriptionRequestError,
            "Transcript request",
        )
        job_id = data.get("id")
        if not job_id:
            raise TranscriptionRequestError("Transcript request returned no job id")
        return self._job_from_payload(job_id, data)

    def get_job(self, job_id: str) -> TranscriptionJob:
        data = self._request(
            lambda: self.session.get(
                f"{self.base_url}/v2/transcript/{job_id}",
                headers=self._headers(),
                timeout=self.config.request_timeout,
            ),
            PollingError,
            f"Polling job {job_id}",
        )
        return self._job_from_payload(job_id, data)

    def wait_for_completion(self, job: TranscriptionJob) -> TranscriptionJob:
        """Poll until the job completes, with backoff and an overall deadline."""
        interval = self.config.poll_interval
        deadline = self.config.max_wait_seconds
        started = self._clock()
        attempt = 0
        while True:
            if deadline is not None:
                remaining = deadline - (self._clock() - started)
                if remaining <= 0:
                    raise TranscriptionTimeoutError(job.id, self._clock() - started)
                self._wait(min(interval, remaining))
            else:
                self._wait(interval)

            attempt += 1
            job = self.get_job(job.id)
            logger.debug("Poll %s for job %s: %s", attempt, job.id, job.status.value)
            if job.status is JobStatus.COMPLETED:
                return job
            if job.status is JobStatus.ERROR:
                raise TranscriptionFailedError(job.id, job.error)
            interval = min(interval * self.config.poll_backoff, self.config.max_poll_interval)

    def _wait(self, seconds: float) -> None:
        if self._sleep is not None:
            if self.cancel_event.is_set():
                raise PipelineCancelledError("Transcription cancelled")
            self._sleep(seconds)
        elif self.cancel_event.wait(seconds):
            raise PipelineCancelledError("Transcription cancelled")

    def _request(
        self,
        send: Callable[[], requests.Response],
        error_type: type,
        description: str,
    ) -> Dict[str, Any]:
        attempts = max(1, self.config.max_retries)
        for attempt in range(1, attempts + 1):
            try:
                response = send()
                if response.status_code >= 400:
                    message = f"{description} failed (HTTP {response.status_code}): {response.text}"
                    retryable = response.status_code >= 500 or response.status_code in _RETRYABLE_CLIENT_STATUSES
                    if not retryable:
                        raise error_type(message)
                    raise requests.HTTPError(message, response=response)
                return response.json()
            except TranscriptionError:
                raise
            except (requests.RequestException, ValueError) as exc:
                logger.warning("%s attempt %s failed: %s", description, attempt, exc)
                if attempt >= attempts:
                    raise error_type(f"{description} failed: {exc}") from exc
                self._wait(self.config.retry_delay)
        raise RuntimeError("Unreachable request retry loop")

    def _headers(self) -> Dict[str, str]:
        return {"authorization": self.require_credentials()}

    @staticmethod
    def _job_from_payload(job_id: str, data: Dict[str, Any]) -> TranscriptionJob:
        return TranscriptionJob(
            id=job_id,
            status=JobStatus.parse(data.get("status")),
            text=data.get("text"),
            error=data.get("error"),
        )
