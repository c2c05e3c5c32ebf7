"""
Tests for settings loading.
"""

import json
from pathlib import Path

from zenmoney_mcp.client import BASE_URL
from zenmoney_mcp.config import load_settings


def write_config(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return path


class TestLoadSettings:
    def test_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "missing.json", env={})

        assert settings.token == ""
        assert settings.base_url == BASE_URL
        assert settings.timeout == 60.0
        assert settings.log_level == "INFO"

    def test_config_file(self, tmp_path):
        path = write_config(tmp_path, {"token": "file-token", "timeout": 15, "cache_path": str(tmp_path / "c.json")})

        settings = load_settings(path, env={})

        assert settings.token == "file-token"
        assert settings.timeout == 15.0
        assert settings.cache_path == tmp_path / "c.json"

    def test_env_wins_over_file(self, tmp_path):
        path = write_config(tmp_path, {"token": "file-token", "log_level": "warning"})

        settings = load_settings(path, env={"ZENMONEY_TOKEN": "env-token", "ZENMONEY_LOG_LEVEL": "debug"})

        assert settings.token == "env-token"
        assert settings.log_level == "DEBUG"

    def test_config_path_from_env(self, tmp_path):
        path = write_config(tmp_path, {"token": "via-env-path"})

        settings = load_settings(env={"ZENMONEY_CONFIG": str(path)})

        assert settings.token == "via-env-path"

    def test_unreadable_config_ignored(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")

        settings = load_settings(path, env={"ZENMONEY_TOKEN": "t"})

        assert settings.token == "t"

    def test_invalid_timeout_ignored(self, tmp_path):
        settings = load_settings(tmp_path / "missing.json", env={"ZENMONEY_TIMEOUT": "soon"})

        assert settings.timeout == 60.0

    def test_cache_path_expands_home(self, tmp_path):
        settings = load_settings(tmp_path / "missing.json", env={"ZENMONEY_CACHE_PATH": "~/zm.json"})

        assert settings.cache_path == Path.home() / "zm.json"
