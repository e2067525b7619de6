"""
Stream chunks for incremental generation output.

Progress narration goes out as `reasoning_content` deltas; the last chunk
carries the artifact reference (or the error text) as `content` with
finish_reason "stop". Rendered as OpenAI-style chat.completion.chunk
frames for SSE clients.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Optional

from .models import GenerationKind, GenerationResult


@dataclass
class StreamChunk:
    """One element of a generation stream."""

    content: str
    final: bool = False
    result: Optional[GenerationResult] = None
    created: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self, model: str = "flow2api") -> dict:
        delta = {"content": self.content} if self.final else {"reasoning_content": self.content}
        return {
            "id": f"chatcmpl-{self.created}",
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": model,
            "choices": [{
                "index": 0,
                "delta": delta,
                "finish_reason": "stop" if self.final else None,
            }],
        }

    def to_sse(self, model: str = "flow2api") -> str:
        """Format as an SSE data frame."""
        return f"data: {json.dumps(self.to_dict(model), ensure_ascii=False)}\n\n"


def sse_done() -> str:
    return "data: [DONE]\n\n"


def render_artifact(result: GenerationResult) -> str:
    """Markdown / HTML reference for a finished artifact, or the error text."""
    if not result.success:
        return result.error
    if result.kind == GenerationKind.VIDEO:
        return f"<video src='{result.url}' controls style='max-width:100%'></video>"
    return f"![Generated Image]({result.url})"


def progress_chunk(message: str) -> StreamChunk:
    return StreamChunk(content=message)


def final_chunk(result: GenerationResult) -> StreamChunk:
    return StreamChunk(content=render_artifact(result), final=True, result=result)
