"""Shared fixtures for the Flow Gateway tests."""

import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import Config, FlowAPIConfig, PollingConfig, PoolConfig
from services.transport import AccessToken, Credits, FlowClient


def make_token(seed: str) -> str:
    """A bare session token long enough to be accepted on its own."""
    return f"st-{seed}-" + "x" * 120


def make_cookie(token: str) -> str:
    return f"_ga=GA1.1.123; __Secure-next-auth.session-token={token}; __Host-next-auth.csrf-token=abc"


def fresh_access(email: str = "user@example.com", hours: int = 1) -> AccessToken:
    return AccessToken(
        access_token=f"at-{email}",
        expires=datetime.now(timezone.utc) + timedelta(hours=hours),
        email=email,
    )


@pytest.fixture
def pool_config(tmp_path):
    return PoolConfig(data_dir=str(tmp_path), refresh_interval=0.05, watch_debounce=0.01)


@pytest.fixture
def config(pool_config):
    return Config(
        api=FlowAPIConfig(project_name="Flow2API"),
        pool=pool_config,
        polling=PollingConfig(poll_interval=0.01, max_poll_attempts=10),
    )


@pytest.fixture
def credential_dir(pool_config):
    path = pool_config.credential_dir
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def mock_client():
    """FlowClient stand-in whose calls all succeed."""
    client = AsyncMock(spec=FlowClient)
    client.exchange_session_token.side_effect = lambda st: fresh_access(f"{st[:12]}@example.com")
    client.get_credits.return_value = Credits(credits=100, user_tier="PAYGATE_TIER_TWO")
    client.create_project.return_value = "project-1"
    client.upload_image.return_value = "media-1"
    return client
