"""Split long videos into captioned vertical clips."""

from .config import PipelineConfig
from .pipeline import ShortsPipeline

__all__ = ["ShortsPipeline", "PipelineConfig"]
