"""Tests for configuration loading and environment overrides."""

import json
from pathlib import Path

import pytest

from trillian.config import (
    ConfigError,
    apply_env_overrides,
    default_agent_config,
    load_agent_config,
    load_env_file,
    manual_agent_config,
    write_agent_config,
)
from trillian.schemas.agent import AgentConfig, UploadMode, WatchRule

SAMPLE = {
    "destination": "/srv/organized",
    "api_upload": {
        "enabled": True,
        "endpoint": "https://docs.example.com/api/documents/post_document/",
        "username": "relay",
        "password": "s3cret",
        "upload_mode": "upload_only",
        "timeout": 10,
    },
    "watch_directories": [
        {"name": "scans", "path": "/srv/scans", "extensions": [".pdf", "PNG"], "tag": "scan"},
        {"path": "/srv/voice", "extensions": ["m4a"], "tag": "voice", "enabled": False},
    ],
}


def _write(tmp_path, payload) -> Path:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(payload))
    return path


class TestLoadAgentConfig:
    def test_loads_document(self, tmp_path):
        config = load_agent_config(_write(tmp_path, SAMPLE), env={})

        assert config.destination == Path("/srv/organized")
        assert config.upload_mode == UploadMode.UPLOAD_ONLY
        assert config.api_upload.timeout_seconds == 10
        assert not config.requires_destination
        scans, voice = config.watch_directories
        assert scans.extensions == frozenset({"pdf", "PNG"})
        assert not voice.enabled
        assert [r.tag for r in config.enabled_rules] == ["scan"]

    def test_defaults(self, tmp_path):
        config = load_agent_config(_write(tmp_path, {}), env={})
        assert config.destination is None
        assert not config.api_upload.enabled
        assert config.upload_mode == UploadMode.COPY_AND_UPLOAD
        assert config.watch_directories == ()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_agent_config(tmp_path / "nope.json", env={})

    def test_invalid_document(self, tmp_path):
        bad = {**SAMPLE, "api_upload": {"upload_mode": "carrier_pigeon"}}
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_agent_config(_write(tmp_path, bad), env={})

    def test_not_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{destination:")
        with pytest.raises(ConfigError):
            load_agent_config(path, env={})

    def test_home_expanded(self, tmp_path):
        payload = {"destination": "~/organized", "watch_directories": []}
        config = load_agent_config(_write(tmp_path, payload), env={})
        assert config.destination == Path.home() / "organized"


class TestEnvOverrides:
    def test_env_wins_over_document(self, tmp_path):
        config = load_agent_config(
            _write(tmp_path, SAMPLE),
            env={
                "TRILLIAN_API_ENDPOINT": "https://other.example.com/upload",
                "TRILLIAN_API_PASSWORD": "from-env",
                "TRILLIAN_API_UPLOAD_MODE": "copy_and_upload",
            },
        )
        upload = config.api_upload
        assert upload.endpoint == "https://other.example.com/upload"
        assert upload.password == "from-env"
        assert upload.username == "relay"
        assert upload.mode == UploadMode.COPY_AND_UPLOAD

    def test_enabled_flag(self):
        config = apply_env_overrides(AgentConfig(), {"TRILLIAN_API_UPLOAD_ENABLED": "yes"})
        assert config.api_upload.enabled

    def test_empty_values_ignored(self):
        config = AgentConfig()
        assert apply_env_overrides(config, {"TRILLIAN_API_ENDPOINT": ""}) is config

    def test_bad_mode(self):
        with pytest.raises(ConfigError, match="Unknown upload mode"):
            apply_env_overrides(AgentConfig(), {"TRILLIAN_API_UPLOAD_MODE": "sometimes"})

    def test_bad_timeout(self):
        with pytest.raises(ConfigError, match="timeout"):
            apply_env_overrides(AgentConfig(), {"TRILLIAN_API_TIMEOUT": "soon"})

    def test_process_environment_used_by_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TRILLIAN_API_USERNAME", "shell-user")
        config = load_agent_config(_write(tmp_path, SAMPLE))
        assert config.api_upload.username == "shell-user"


class TestEnvFile:
    def test_missing_file(self, tmp_path):
        assert load_env_file(tmp_path / "agent.env") == {}

    def test_reads_values(self, tmp_path):
        path = tmp_path / "agent.env"
        path.write_text("TRILLIAN_API_USERNAME=relay\n# comment\nTRILLIAN_POLL_INTERVAL=2\n")
        assert load_env_file(path) == {
            "TRILLIAN_API_USERNAME": "relay",
            "TRILLIAN_POLL_INTERVAL": "2",
        }


class TestDefaultConfig:
    def test_write_and_reload(self, tmp_path):
        path = write_agent_config(default_agent_config(tmp_path / "out"), tmp_path / "cfg" / "config.json")

        raw = json.loads(path.read_text())
        assert raw["api_upload"]["upload_mode"] == "copy_and_upload"
        assert raw["watch_directories"][2]["extensions"] == sorted(raw["watch_directories"][2]["extensions"])

        config = load_agent_config(path, env={})
        assert config.destination == tmp_path / "out"
        assert {r.tag for r in config.enabled_rules} == {"download", "desktop"}

    def test_rule_paths_are_absolute(self):
        for rule in default_agent_config().watch_directories:
            assert rule.path.is_absolute()

    def test_rule_accepts_single_extension(self):
        rule = WatchRule(path="/srv/in", extensions=".pdf", tag="x")
        assert rule.extensions == frozenset({"pdf"})


class TestManualConfig:
    def test_single_rule(self, tmp_path):
        config = manual_agent_config(
            tmp_path / "in", tmp_path / "out", tag="download", extensions=["pdf", ".jpg"], env={}
        )

        (rule,) = config.watch_directories
        assert rule.path == tmp_path / "in"
        assert rule.tag == "download"
        assert rule.extensions == frozenset({"pdf", "jpg"})
        assert config.destination == tmp_path / "out"
        assert not config.api_upload.enabled

    def test_copy_mode_requires_destination(self, tmp_path):
        with pytest.raises(ConfigError, match="destination"):
            manual_agent_config(tmp_path / "in", None, env={})

    def test_upload_only_enables_upload(self, tmp_path):
        config = manual_agent_config(
            tmp_path / "in",
            env={
                "TRILLIAN_API_UPLOAD_MODE": "upload_only",
                "TRILLIAN_API_ENDPOINT": "https://docs.example.com/upload",
            },
        )
        assert config.destination is None
        assert config.api_upload.enabled
        assert config.api_upload.endpoint == "https://docs.example.com/upload"
