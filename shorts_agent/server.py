"""FastAPI server exposing the shorts pipeline over HTTP.

Run with:
uvicorn shorts_agent.server:app --host 0.0.0.0 --port 8000

POST /api/segments   multipart field ``video`` -> JSON list of processed segment names
POST /api/segment    multipart field ``video`` -> the captioned clip (video/mp4)
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from .config import PipelineConfig
from .errors import MissingUploadError, ShortsAgentError
from .pipeline import ShortsPipeline

logger = logging.getLogger(__name__)


class PipelineRequestError(Exception):
    def __init__(self, status_code: int, error: ShortsAgentError):
        self.status_code = status_code
        self.error = error


def create_app(config: Optional[PipelineConfig] = None) -> FastAPI:
    app = FastAPI(title="Shorts Pipeline API")
    app.state.config = config or PipelineConfig.from_env()

    @app.exception_handler(PipelineRequestError)
    async def _pipeline_error(request: Request, exc: PipelineRequestError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.error), "type": type(exc.error).__name__},
        )

    @app.post("/api/segments")
    async def process_segments(request: Request, video: Optional[UploadFile] = File(None)) -> List[str]:
        cfg: PipelineConfig = request.app.state.config
        upload_path = await _save_upload(video, cfg)
        pipeline = build_pipeline(cfg)
        try:
            result = await run_in_threadpool(pipeline.run, upload_path)
        except ShortsAgentError as exc:
            logger.error("Pipeline failed: %s", exc)
            raise PipelineRequestError(_status_for(exc), exc) from exc
        return result.identifiers

    @app.post("/api/segment")
    async def process_segment(request: Request, video: Optional[UploadFile] = File(None)) -> Response:
        cfg: PipelineConfig = request.app.state.config
        upload_path = await _save_upload(video, cfg)
        pipeline = build_pipeline(cfg)
        try:
            processed = await run_in_threadpool(pipeline.run_single, upload_path)
        except ShortsAgentError as exc:
            logger.error("Single segment processing failed: %s", exc)
            raise PipelineRequestError(_status_for(exc), exc) from exc
        try:
            content = processed.output_path.read_bytes()
        finally:
            processed.output_path.unlink(missing_ok=True)
        return Response(content=content, media_type="video/mp4")

    return app


def build_pipeline(config: PipelineConfig) -> ShortsPipeline:
    return ShortsPipeline(config)


async def _save_upload(video: Optional[UploadFile], config: PipelineConfig) -> Path:
    if video is None or not video.filename:
        raise PipelineRequestError(400, MissingUploadError("Failed to parse file upload or no file provided"))
    upload_dir = config.output_root.resolve() / "uploads"
    upload_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(video.filename).suffix or ".mp4"
    upload_path = upload_dir / f"{uuid.uuid4().hex}{suffix}"
    with open(upload_path, "wb") as outfile:
        await run_in_threadpool(shutil.copyfileobj, video.file, outfile)
    await video.close()
    logger.info("Saved upload %s to %s", video.filename, upload_path)
    return upload_path


def _status_for(error: ShortsAgentError) -> int:
    return 400 if isinstance(error, MissingUploadError) else 500


def _create_default_app() -> FastAPI:
    load_dotenv()
    logging.basicConfig(level=getattr(logging, os.getenv("SHORTS_LOG_LEVEL", "INFO").upper(), logging.INFO))
    return create_app()


app = _create_default_app()
