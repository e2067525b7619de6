"""
Generation Service

Orchestrates Flow image and video generation on pooled credentials and
reports progress as a stream of chunks.
"""

from .chunks import StreamChunk, final_chunk, progress_chunk, render_artifact, sse_done
from .models import (
    FLOW_MODELS,
    ErrorCode,
    FlowModel,
    GenerationKind,
    GenerationRequest,
    GenerationResult,
    VideoType,
    get_model,
)
from .orchestrator import GenerationHandler

__all__ = [
    "GenerationHandler",
    "GenerationRequest",
    "GenerationResult",
    "GenerationKind",
    "ErrorCode",
    "FlowModel",
    "FLOW_MODELS",
    "VideoType",
    "get_model",
    "StreamChunk",
    "render_artifact",
    "progress_chunk",
    "final_chunk",
    "sse_done",
]
