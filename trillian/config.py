"""Single source of truth for agent settings and the configuration document.

Agent-level settings (file locations, supervisor session, poll interval) are
module constants read once from the environment, falling back to an optional
dotenv file at ``$TRILLIAN_HOME/agent.env``. The watch/upload configuration is
a JSON document loaded into an immutable ``AgentConfig``.
"""

import json
import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path

from dotenv import dotenv_values
from pydantic import ValidationError

from trillian.schemas.agent import AgentConfig, UploadConfig, UploadMode, WatchRule

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(os.environ.get("TRILLIAN_HOME", "~/.trillian")).expanduser()


class ConfigError(Exception):
    """The configuration document is missing or invalid."""


def load_env_file(dotenv_path: str | Path) -> dict[str, str | None]:
    """Load a plain .env file, or return an empty mapping if there is none."""
    path = Path(dotenv_path)
    if not path.exists():
        return {}
    return dict(dotenv_values(path))


_env_file = load_env_file(CONFIG_DIR / "agent.env")


def _setting(name: str, default: str) -> str:
    value = os.environ.get(name)
    if value is None:
        value = _env_file.get(name)
    return value if value else default


CONFIG_PATH: str = _setting("TRILLIAN_CONFIG_PATH", str(CONFIG_DIR / "config.json"))
LOG_PATH: str = _setting("TRILLIAN_LOG_PATH", str(CONFIG_DIR / "agent.log"))
LEDGER_PATH: str = _setting("TRILLIAN_LEDGER_PATH", str(CONFIG_DIR / "processed_files"))
PID_PATH: str = _setting("TRILLIAN_PID_PATH", str(CONFIG_DIR / "agent.pid"))
AUDIT_LOG_PATH: str = _setting(
    "TRILLIAN_AUDIT_LOG_PATH", str(CONFIG_DIR / "dispatch_audit.jsonl")
)

# --- Supervisor (cron-driven restart guard) ---
SUPERVISOR_STATUS_PATH: str = _setting(
    "TRILLIAN_SUPERVISOR_STATUS_PATH", str(CONFIG_DIR / "supervisor-status")
)
SUPERVISOR_SESSION_NAME: str = _setting("TRILLIAN_SESSION_NAME", "trillian-monitor")

# --- Polling fallback ---
POLL_INTERVAL_SECONDS: float = float(_setting("TRILLIAN_POLL_INTERVAL", "5"))

# --- Manual mode (one directory, no configuration document) ---
MANUAL_SOURCE_DIR: str = _setting("TRILLIAN_SOURCE_DIR", "")
MANUAL_DEST_DIR: str = _setting("TRILLIAN_DEST_DIR", "")
MANUAL_FILE_TAG: str = _setting("TRILLIAN_FILE_TAG", "manual")
MANUAL_EXTENSIONS: str = _setting("TRILLIAN_EXTENSIONS", "pdf,jpg,png,doc,docx,mp3,m4a")

_TRUE_VALUES = {"1", "true", "yes", "on"}


def apply_env_overrides(config: AgentConfig, env: Mapping[str, str | None]) -> AgentConfig:
    """Return a copy of ``config`` with upload settings overridden from ``env``.

    Only variables that are set and non-empty take effect.
    """
    updates: dict[str, object] = {}
    enabled = env.get("TRILLIAN_API_UPLOAD_ENABLED")
    if enabled:
        updates["enabled"] = enabled.strip().lower() in _TRUE_VALUES
    for var, field in (
        ("TRILLIAN_API_ENDPOINT", "endpoint"),
        ("TRILLIAN_API_USERNAME", "username"),
        ("TRILLIAN_API_PASSWORD", "password"),
    ):
        if env.get(var):
            updates[field] = env[var]
    if env.get("TRILLIAN_API_UPLOAD_MODE"):
        try:
            updates["mode"] = UploadMode(env["TRILLIAN_API_UPLOAD_MODE"])
        except ValueError as exc:
            raise ConfigError(f"Unknown upload mode: {env['TRILLIAN_API_UPLOAD_MODE']}") from exc
    if env.get("TRILLIAN_API_TIMEOUT"):
        try:
            updates["timeout_seconds"] = int(env["TRILLIAN_API_TIMEOUT"])
        except ValueError as exc:
            raise ConfigError(f"Invalid upload timeout: {env['TRILLIAN_API_TIMEOUT']}") from exc

    if not updates:
        return config
    api_upload = UploadConfig.model_validate(
        {**config.api_upload.model_dump(), **updates}
    )
    return config.model_copy(update={"api_upload": api_upload})


def load_agent_config(
    path: str | Path = CONFIG_PATH,
    env: Mapping[str, str | None] | None = None,
) -> AgentConfig:
    """Load and validate the configuration document.

    Args:
        path: Path to the JSON configuration file.
        env: Override source for the upload block. Defaults to the dotenv
            file merged with the process environment.

    Raises:
        ConfigError: If the file is missing or does not validate.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")
    try:
        config = AgentConfig.model_validate_json(config_path.read_text())
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {config_path}: {exc}") from exc

    if env is None:
        env = {**_env_file, **os.environ}
    return apply_env_overrides(config, env)


def manual_agent_config(
    source: str | Path,
    destination: str | Path | None = None,
    *,
    tag: str = "manual",
    extensions: Iterable[str] = ("pdf",),
    env: Mapping[str, str | None] | None = None,
) -> AgentConfig:
    """Build a one-rule configuration for monitoring ``source`` without a document.

    Upload settings come from the environment only. Choosing ``upload_only``
    there switches uploads on.

    Raises:
        ConfigError: If a copy mode is selected without a destination.
    """
    if env is None:
        env = {**_env_file, **os.environ}
    rule = WatchRule(name="manual", path=source, extensions=list(extensions), tag=tag)
    config = apply_env_overrides(
        AgentConfig(destination=destination or None, watch_directories=[rule]), env
    )
    if config.upload_mode == UploadMode.UPLOAD_ONLY and not config.api_upload.enabled:
        api_upload = config.api_upload.model_copy(update={"enabled": True})
        config = config.model_copy(update={"api_upload": api_upload})
    if config.requires_destination and config.destination is None:
        raise ConfigError(
            f"A destination directory is required for {config.upload_mode} mode "
            "(or set TRILLIAN_API_UPLOAD_MODE=upload_only)"
        )
    return config


def default_agent_config(destination: str | Path | None = "~/Dropbox/organized-files") -> AgentConfig:
    """The starter document written by ``trillian init``."""
    rules = [
        WatchRule(
            name="voice_memos",
            path="~/Library/Group Containers/group.com.apple.VoiceMemos.shared/Recordings",
            extensions=["m4a", "wav"],
            tag="voice",
            enabled=False,
        ),
        WatchRule(
            name="turboscan_pdfs",
            path="~/Library/Mobile Documents/iCloud~com~novosoft~TurboScan/Documents",
            extensions=["pdf"],
            tag="scan",
            enabled=False,
        ),
        WatchRule(
            name="downloads",
            path="~/Downloads",
            extensions=["pdf", "jpg", "png", "mp4", "mov", "doc", "docx"],
            tag="download",
        ),
        WatchRule(
            name="desktop",
            path="~/Desktop",
            extensions=["pdf", "jpg", "png"],
            tag="desktop",
        ),
        WatchRule(
            name="documents",
            path="~/Documents",
            extensions=["pdf", "doc", "docx"],
            tag="documents",
            enabled=False,
        ),
    ]
    return AgentConfig(destination=destination, watch_directories=rules)


def write_agent_config(config: AgentConfig, path: str | Path = CONFIG_PATH) -> Path:
    """Persist ``config`` as JSON, creating parent directories."""
    config_path = Path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    payload = config.model_dump(mode="json", by_alias=True)
    config_path.write_text(json.dumps(payload, indent=2) + "\n")
    logger.info("Wrote configuration to %s", config_path)
    return config_path
