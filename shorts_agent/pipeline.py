from __future__ import annotations

import json
import logging
import math
import shutil
import threading
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .config import PipelineConfig
from .errors import (
    ConfigurationError,
    MissingUploadError,
    PipelineCancelledError,
    RunDirectoryExistsError,
    SegmentProcessingError,
    ShortsAgentError,
)
from .filter_graph import build_filter_graph
from .transcription import AssemblyAITranscriber
from .types import PipelineResult, ProcessedSegment, SegmentFile
from .video import FFmpegEngine

logger = logging.getLogger(__name__)


class ShortsPipeline:
    """Split an upload, transcribe every segment and render it as a captioned vertical clip."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        transcriber: Optional[AssemblyAITranscriber] = None,
        engine: Optional[FFmpegEngine] = None,
    ):
        self.config = config or PipelineConfig()
        self.transcriber = transcriber or AssemblyAITranscriber(self.config.transcription)
        self.engine = engine or FFmpegEngine(self.config.media)
        self._cancel_event: threading.Event = getattr(self.transcriber, "cancel_event", None) or threading.Event()

    def cancel(self) -> None:
        """Stop the current run; in-flight polls end with ``PipelineCancelledError``."""
        logger.info("Cancellation requested")
        self._cancel_event.set()

    def run(self, upload_path: Optional[Path], run_name: Optional[str] = None) -> PipelineResult:
        self._cancel_event.clear()
        try:
            upload_path = self._validate_upload(upload_path)
            self._check_prerequisites()

            run_dir = self.config.output_root.resolve() / (run_name or self._default_run_name(upload_path))
            logger.info("Starting shorts run '%s' for %s", run_dir.name, upload_path)
            self._prepare_run_dir(run_dir)
            try:
                result = self._process(upload_path, run_dir)
            except ShortsAgentError:
                if self.config.cleanup_on_failure:
                    logger.info("Removing scratch directory %s", run_dir)
                    shutil.rmtree(run_dir, ignore_errors=True)
                raise
        finally:
            self._remove_upload(upload_path)

        logger.info("Shorts run completed: %s", result.identifiers)
        return result

    def run_single(self, upload_path: Optional[Path], output_path: Optional[Path] = None) -> ProcessedSegment:
        """Caption and render the whole upload as one clip, without splitting."""
        self._cancel_event.clear()
        try:
            upload_path = self._validate_upload(upload_path)
            self._check_prerequisites()
            if output_path is None:
                output_path = self.config.output_root.resolve() / f"processed_{self._default_run_name(upload_path)}.mp4"
            segment = SegmentFile(index=0, path=upload_path)
            return self._process_segment(segment, output_path)
        finally:
            self._remove_upload(upload_path)

    def _process(self, upload_path: Path, run_dir: Path) -> PipelineResult:
        self._log_expected_segments(upload_path)

        logger.info("Step 1/3: Splitting upload into segments...")
        segments = self.engine.split(upload_path, run_dir)

        logger.info("Step 2/3: Transcribing and rendering %s segments...", len(segments))
        if self.config.max_workers > 1 and len(segments) > 1:
            processed = self._process_concurrently(segments, run_dir)
        else:
            processed = [self._process_in_run(segment, run_dir) for segment in segments]

        result = PipelineResult(run_dir=run_dir, segments=processed)
        if self.config.write_manifest:
            logger.info("Step 3/3: Writing manifest...")
            result.manifest_path = self._write_manifest(result, run_dir / "manifest.json")
        return result

    def _process_in_run(self, segment: SegmentFile, run_dir: Path) -> ProcessedSegment:
        try:
            if self._cancel_event.is_set():
                raise PipelineCancelledError(f"Run cancelled before segment {segment.index}")
            processed = self._process_segment(segment, run_dir / segment.processed_name)
        except ShortsAgentError as exc:
            logger.error("Segment %s failed: %s", segment.index, exc)
            raise SegmentProcessingError(segment, exc) from exc
        if not self.config.keep_segments:
            segment.path.unlink(missing_ok=True)
        return processed

    def _process_segment(self, segment: SegmentFile, output_path: Path) -> ProcessedSegment:
        logger.info("Segment %s: transcribing %s", segment.index, segment.path.name)
        transcript = self.transcriber.transcribe(segment.path)
        graph, terminal = build_filter_graph(transcript, self.config.media.font_path, self.config.media)
        logger.info("Segment %s: rendering %s", segment.index, output_path.name)
        self.engine.render(segment.path, self.config.media.overlay_path, graph, terminal, output_path)
        return ProcessedSegment(
            index=segment.index,
            source_name=segment.path.name,
            output_path=output_path,
            transcript=transcript,
        )

    def _process_concurrently(self, segments: List[SegmentFile], run_dir: Path) -> List[ProcessedSegment]:
        results: Dict[int, ProcessedSegment] = {}
        failures: List[SegmentProcessingError] = []
        with ThreadPoolExecutor(max_workers=self.config.max_workers, thread_name_prefix="segment") as pool:
            futures: Dict[Future, SegmentFile] = {
                pool.submit(self._process_in_run, segment, run_dir): segment for segment in segments
            }
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            if pending:
                # A failure aborts the rest: drop queued work and stop running polls.
                self._cancel_event.set()
                for future in pending:
                    future.cancel()
                done, _ = wait(futures)
            for future in done:
                if future.cancelled():
                    continue
                exc = future.exception()
                if exc is None:
                    result = future.result()
                    results[result.index] = result
                elif isinstance(exc, SegmentProcessingError):
                    failures.append(exc)
                else:
                    raise exc

        if failures:
            real = [f for f in failures if not isinstance(f.cause, PipelineCancelledError)]
            raise min(real or failures, key=lambda failure: failure.index)
        return [results[segment.index] for segment in segments]

    def _validate_upload(self, upload_path: Optional[Path]) -> Path:
        if upload_path is None:
            raise MissingUploadError("No video file provided")
        upload_path = Path(upload_path).resolve()
        if not upload_path.is_file() or upload_path.stat().st_size == 0:
            raise MissingUploadError(f"Uploaded video not found or empty: {upload_path}")
        return upload_path

    def _check_prerequisites(self) -> None:
        self.transcriber.require_credentials()
        media = self.config.media
        for label, path in (("overlay clip", media.overlay_path), ("font", media.font_path)):
            if not Path(path).is_file():
                raise ConfigurationError(f"Missing {label}: {path}")
        self.engine.require_filters()

    def _prepare_run_dir(self, run_dir: Path) -> None:
        # Splitting enumerates every segment file in the directory, so it must start empty.
        if run_dir.exists() and any(run_dir.iterdir()):
            if not self.config.overwrite:
                raise RunDirectoryExistsError(f"{run_dir} already exists and overwrite=False")
            logger.info("Replacing existing run directory %s", run_dir)
            shutil.rmtree(run_dir)
        run_dir.mkdir(parents=True, exist_ok=True)

    def _log_expected_segments(self, upload_path: Path) -> None:
        try:
            duration = self.engine.probe_duration(upload_path)
        except Exception as e:
            logger.debug("Could not determine upload duration: %s", e)
            return
        expected = max(1, math.ceil(duration / self.config.media.segment_seconds))
        logger.info(
            "Upload duration: %.1fs, expecting about %s segments (cuts follow keyframes)",
            duration,
            expected,
        )

    def _remove_upload(self, upload_path: Optional[Path]) -> None:
        if not self.config.remove_upload or upload_path is None:
            return
        try:
            Path(upload_path).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove upload %s: %s", upload_path, exc)

    def _write_manifest(self, result: PipelineResult, output_path: Path) -> Path:
        payload = [
            {
                "index": segment.index,
                "source": segment.source_name,
                "output": segment.identifier,
                "transcript": segment.transcript,
            }
            for segment in result.segments
        ]
        output_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        return output_path

    def _default_run_name(self, upload_path: Path) -> str:
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        return f"{upload_path.stem}_{timestamp}"
