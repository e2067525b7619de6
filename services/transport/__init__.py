"""
Flow Transport

Thin async client for the Flow API used by the credential pool
(session exchange) and the generation orchestrator (upload, submit, poll).
"""

from .client import FlowClient, sniff_mime_type
from .errors import FlowAPIError, FlowAuthError, FlowResponseError
from .models import AccessToken, Credits, ImageResult, VideoStatus, VideoSubmission

__all__ = [
    "FlowClient",
    "sniff_mime_type",
    "FlowAPIError",
    "FlowAuthError",
    "FlowResponseError",
    "AccessToken",
    "Credits",
    "ImageResult",
    "VideoStatus",
    "VideoSubmission",
]
