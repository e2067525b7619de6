"""
Wire models for the Flow API.

Only the fields the pool and the orchestrator depend on are modelled;
everything else in the responses is ignored.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class AccessToken(BaseModel):
    """Short-lived access material obtained from a session token."""
    access_token: str
    expires: Optional[datetime] = None
    email: str = ""


class Credits(BaseModel):
    """Remaining quota and paygate tier of an account."""
    credits: int = 0
    user_tier: str = ""


class ImageResult(BaseModel):
    """Result of a synchronous image generation call."""
    url: str = ""
    media_id: Optional[str] = None


class VideoSubmission(BaseModel):
    """Handle for an asynchronous video job."""
    task_id: str = ""
    scene_id: str = ""
    status: Optional[str] = None


class VideoStatus(BaseModel):
    """Status of an asynchronous video job."""
    status: str = ""
    video_url: str = ""
    raw: dict[str, Any] = {}
