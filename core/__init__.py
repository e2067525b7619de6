"""
Flow Gateway Core Components

Provides foundational infrastructure shared by the credential pool and the
generation orchestrator:
- Environment-driven configuration
"""

from .config import Config, FlowAPIConfig, PollingConfig, PoolConfig, get_config, reload_config

__all__ = ["Config", "FlowAPIConfig", "PollingConfig", "PoolConfig", "get_config", "reload_config"]
