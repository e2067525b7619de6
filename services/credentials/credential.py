"""
Flow credential entity.

A credential is one Flow account, identified by the MD5 of its session
token. The session token is durable and supplied by an operator; the access
token derived from it is short-lived and refreshed by the pool or on demand
by the orchestrator.

All mutable fields are guarded by the credential's own lock. Helpers that
mutate (apply_access, record_failure, record_success) expect the caller to
hold it.
"""

import asyncio
import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from services.transport.models import AccessToken

SESSION_TOKEN_PATTERN = re.compile(r"__Secure-next-auth\.session-token=([^;\s]+)")

# A bare session token is a long opaque string with no cookie delimiters
BARE_TOKEN_MIN_LENGTH = 100


def extract_session_token(text: str) -> str:
    """Extract the session token from a cookie string or a bare token.

    Returns an empty string when nothing usable is found.
    """
    match = SESSION_TOKEN_PATTERN.search(text)
    if match:
        return match.group(1).strip()

    text = text.strip()
    if "=" not in text and len(text) > BARE_TOKEN_MIN_LENGTH:
        return text

    return ""


def generate_credential_id(session_token: str) -> str:
    """Derive the stable credential ID from a session token."""
    return hashlib.md5(session_token.encode("utf-8")).hexdigest()


def mask_id(credential_id: str) -> str:
    return credential_id[:16] + "..."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Credential:
    """One Flow account and its derived access material."""

    id: str
    session_token: str = field(repr=False)

    # Derived, short-lived
    access_token: str = field(default="", repr=False)
    access_expires: Optional[datetime] = None
    email: str = ""

    # Created lazily on first generation
    project_id: str = ""

    # Quota, refreshed in the background
    credits: int = 0
    user_tier: str = ""

    # Health
    error_count: int = 0
    disabled: bool = False
    last_used: Optional[datetime] = None

    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @classmethod
    def from_session_token(cls, session_token: str) -> "Credential":
        return cls(id=generate_credential_id(session_token), session_token=session_token)

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    @property
    def masked_id(self) -> str:
        return mask_id(self.id)

    def needs_refresh(self, margin: float, now: Optional[datetime] = None) -> bool:
        """True when the access token is missing or expires within `margin` seconds."""
        if not self.access_token or self.access_expires is None:
            return True
        now = now or utcnow()
        return now >= self.access_expires - timedelta(seconds=margin)

    def is_ready(self, threshold: int) -> bool:
        return not self.disabled and self.error_count < threshold

    def apply_access(self, access: AccessToken, reset_health: bool = True):
        """Store fresh access material, clearing the failure state unless told not to."""
        self.access_token = access.access_token
        expires = access.expires
        if expires is not None and expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        self.access_expires = expires
        if access.email:
            self.email = access.email
        if reset_health:
            self.error_count = 0
            self.disabled = False

    def record_failure(self, threshold: Optional[int] = None) -> bool:
        """Count a failure.

        With a threshold, disables the credential once it is reached and
        returns True if this call disabled it.
        """
        self.error_count += 1
        if threshold is not None and self.error_count >= threshold and not self.disabled:
            self.disabled = True
            return True
        return False

    def record_success(self):
        self.last_used = utcnow()
        self.error_count = 0

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.masked_id,
            "email": self.email,
            "credits": self.credits,
            "tier": self.user_tier,
            "disabled": self.disabled,
            "error_count": self.error_count,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "has_project": bool(self.project_id),
        }
