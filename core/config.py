"""
Configuration management for Flow Gateway.

Centralizes all configuration including:
- Flow API endpoints and HTTP transport settings
- Credential pool location and refresh schedule
- Video polling budget
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


@dataclass
class FlowAPIConfig:
    """Endpoints and transport settings for the Flow API."""

    # Session exchange and project creation live on the labs frontend
    labs_base_url: str = field(
        default_factory=lambda: os.getenv("FLOW_LABS_BASE_URL", "https://labs.google/fx/api")
    )
    # Generation, upload and status calls go to the sandbox API
    api_base_url: str = field(
        default_factory=lambda: os.getenv("FLOW_API_BASE_URL", "https://aisandbox-pa.googleapis.com/v1")
    )

    timeout: float = field(default_factory=lambda: _env_float("FLOW_TIMEOUT", 120.0))
    proxy: Optional[str] = field(default_factory=lambda: os.getenv("FLOW_PROXY") or None)

    project_name: str = field(default_factory=lambda: os.getenv("FLOW_PROJECT_NAME", "Flow2API"))
    default_tier: str = "PAYGATE_TIER_ONE"


@dataclass
class PoolConfig:
    """Credential pool configuration."""

    data_dir: str = field(default_factory=lambda: os.getenv("FLOW_DATA_DIR", "./data"))
    refresh_interval: float = field(default_factory=lambda: _env_float("FLOW_REFRESH_INTERVAL", 300.0))

    error_threshold: int = 3  # Consecutive failures before a credential is disabled
    expiry_margin: float = 300.0  # Refresh access tokens this many seconds before expiry
    watch_debounce: float = 0.1  # Delay before reading a changed file
    readme_name: str = "README.md"

    @property
    def credential_dir(self) -> Path:
        return Path(self.data_dir) / "at"


@dataclass
class PollingConfig:
    """Polling budget for asynchronous video jobs."""

    poll_interval: float = field(default_factory=lambda: _env_float("FLOW_POLL_INTERVAL", 3.0))
    max_poll_attempts: int = field(default_factory=lambda: _env_int("FLOW_MAX_POLL_ATTEMPTS", 200))
    progress_every: int = 7  # Emit a progress chunk every N attempts

    @property
    def timeout_seconds(self) -> float:
        return self.poll_interval * self.max_poll_attempts


@dataclass
class Config:
    """Main configuration class."""

    api: FlowAPIConfig = field(default_factory=FlowAPIConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls()

    def validate(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if self.polling.poll_interval <= 0:
            issues.append("FLOW_POLL_INTERVAL must be positive")

        if self.polling.max_poll_attempts <= 0:
            issues.append("FLOW_MAX_POLL_ATTEMPTS must be positive")

        if self.pool.refresh_interval <= 0:
            issues.append("FLOW_REFRESH_INTERVAL must be positive")

        if self.api.timeout <= 0:
            issues.append("FLOW_TIMEOUT must be positive")

        parent = Path(self.pool.data_dir).resolve().parent
        if not parent.exists():
            issues.append(f"Parent of FLOW_DATA_DIR does not exist: {parent}")

        return issues


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reload_config():
    """Reload configuration from environment."""
    global _config
    _config = Config.from_env()
