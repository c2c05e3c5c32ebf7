"""
Tests for the command-line entry point.
"""

import json

import pytest

from zenmoney_mcp.cli import main


@pytest.fixture
def config(tmp_path, monkeypatch):
    monkeypatch.setenv("ZENMONEY_TOKEN", "test-token")
    monkeypatch.setenv("ZENMONEY_CACHE_PATH", str(tmp_path / "cache.json"))
    return str(tmp_path / "missing.json")


class TestCall:
    @pytest.mark.parametrize("payload", ["[1]", '"list_accounts"', "null"])
    def test_non_object_payload_is_rejected(self, config, capsys, payload):
        with pytest.raises(SystemExit) as exc:
            main(["--config", config, "--call", payload])

        assert exc.value.code == 1
        err = capsys.readouterr().err.strip().splitlines()[-1]
        assert json.loads(err) == {"error": "Invalid JSON: expected an object"}

    def test_non_object_arguments_are_rejected(self, config, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--config", config, "--call", '{"tool": "list_accounts", "arguments": [1]}'])

        assert exc.value.code == 1
        assert "arguments must be an object" in capsys.readouterr().err

    def test_unknown_tool(self, config, capsys):
        with pytest.raises(SystemExit):
            main(["--config", config, "--call", '{"tool": "launch"}'])

        assert "Unknown tool: launch" in capsys.readouterr().err


class TestList:
    def test_lists_tools_without_token(self, tmp_path, monkeypatch, capsys):
        monkeypatch.delenv("ZENMONEY_TOKEN", raising=False)

        main(["--config", str(tmp_path / "missing.json"), "--list"])

        names = {t["name"] for t in json.loads(capsys.readouterr().out)}
        assert "discard_bulk_operations" in names
