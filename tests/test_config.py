"""
Configuration tests.

Run with:
    python -m pytest tests/test_config.py -v
"""

from pathlib import Path

import pytest

from core import config as config_module
from core.config import Config, PollingConfig, PoolConfig


class TestFromEnv:
    """Environment loading."""

    def test_defaults(self, monkeypatch):
        for name in ("FLOW_DATA_DIR", "FLOW_POLL_INTERVAL", "FLOW_MAX_POLL_ATTEMPTS", "FLOW_PROXY"):
            monkeypatch.delenv(name, raising=False)

        config = Config.from_env()

        assert config.pool.credential_dir == Path("./data") / "at"
        assert config.pool.error_threshold == 3
        assert config.polling.poll_interval == 3.0
        assert config.polling.max_poll_attempts == 200
        assert config.polling.timeout_seconds == 600.0
        assert config.api.proxy is None

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FLOW_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("FLOW_POLL_INTERVAL", "0.5")
        monkeypatch.setenv("FLOW_MAX_POLL_ATTEMPTS", "4")
        monkeypatch.setenv("FLOW_PROXY", "http://127.0.0.1:8080")
        monkeypatch.setenv("FLOW_PROJECT_NAME", "Nightly")

        config = Config.from_env()

        assert config.pool.credential_dir == tmp_path / "at"
        assert config.polling.timeout_seconds == 2.0
        assert config.api.proxy == "http://127.0.0.1:8080"
        assert config.api.project_name == "Nightly"

    def test_blank_numbers_fall_back(self, monkeypatch):
        monkeypatch.setenv("FLOW_MAX_POLL_ATTEMPTS", " ")

        assert Config.from_env().polling.max_poll_attempts == 200

    def test_reload_config(self, monkeypatch):
        monkeypatch.setattr(config_module, "_config", None)
        monkeypatch.setenv("FLOW_POLL_INTERVAL", "1.5")
        assert config_module.get_config().polling.poll_interval == 1.5

        monkeypatch.setenv("FLOW_POLL_INTERVAL", "2.5")
        assert config_module.get_config().polling.poll_interval == 1.5

        config_module.reload_config()
        assert config_module.get_config().polling.poll_interval == 2.5


class TestValidate:
    def test_valid(self, tmp_path):
        config = Config(pool=PoolConfig(data_dir=str(tmp_path / "data")))
        assert config.validate() == []

    @pytest.mark.parametrize("polling, expected", [
        (PollingConfig(poll_interval=0, max_poll_attempts=1), "FLOW_POLL_INTERVAL"),
        (PollingConfig(poll_interval=1, max_poll_attempts=0), "FLOW_MAX_POLL_ATTEMPTS"),
    ])
    def test_non_positive_polling(self, tmp_path, polling, expected):
        config = Config(pool=PoolConfig(data_dir=str(tmp_path)), polling=polling)
        issues = config.validate()
        assert len(issues) == 1
        assert expected in issues[0]

    def test_missing_parent(self, tmp_path):
        config = Config(pool=PoolConfig(data_dir=str(tmp_path / "missing" / "data")))
        assert any("FLOW_DATA_DIR" in issue for issue in config.validate())
