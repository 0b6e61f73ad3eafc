"""Schemas for the file relay agent.

Covers the configuration document (watch rules, upload settings), ledger
records, upload outcomes and the per-dispatch audit record.
"""

import os
from datetime import datetime
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def expand_path(value: str | Path) -> Path:
    """Expand ``~`` and make a path absolute without resolving symlinks."""
    return Path(os.path.abspath(os.path.expanduser(str(value))))


class UploadMode(StrEnum):
    """Which destinations a dispatched file is relayed to."""

    COPY_ONLY = "copy_only"
    UPLOAD_ONLY = "upload_only"
    COPY_AND_UPLOAD = "copy_and_upload"


class WatchRule(BaseModel):
    """One monitored source directory."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    path: Path = Field(description="Directory whose direct children are watched")
    extensions: frozenset[str] = Field(description="Suffixes without the leading dot")
    tag: str = Field(description="Short label embedded in output filenames")
    enabled: bool = True

    @field_validator("path", mode="before")
    @classmethod
    def _expand(cls, value: str | Path) -> Path:
        return expand_path(value)

    @field_validator("extensions", mode="before")
    @classmethod
    def _strip_dots(cls, value):
        if isinstance(value, str):
            value = [value]
        return frozenset(ext.strip().lstrip(".") for ext in value if ext.strip().lstrip("."))

    @field_serializer("extensions")
    def _sorted_extensions(self, value: frozenset[str]) -> list[str]:
        return sorted(value)

    @field_serializer("path")
    def _path_str(self, value: Path) -> str:
        return str(value)


class UploadConfig(BaseModel):
    """Remote endpoint descriptor (the ``api_upload`` block of the config)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enabled: bool = False
    endpoint: str = ""
    username: str = ""
    password: str = ""
    mode: UploadMode = Field(default=UploadMode.COPY_AND_UPLOAD, alias="upload_mode")
    timeout_seconds: int = Field(default=30, gt=0, alias="timeout")
    extra_fields: dict[str, str] = Field(
        default_factory=dict,
        description="Additional multipart text fields sent with every upload",
    )

    def missing_settings(self) -> list[str]:
        """Names of the settings an upload cannot proceed without."""
        return [
            name
            for name, value in (
                ("endpoint", self.endpoint),
                ("username", self.username),
                ("password", self.password),
            )
            if not value
        ]


class AgentConfig(BaseModel):
    """The resolved configuration document threaded through the pipeline."""

    model_config = ConfigDict(frozen=True)

    destination: Path | None = Field(
        default=None, description="Flat folder receiving local copies"
    )
    api_upload: UploadConfig = Field(default_factory=UploadConfig)
    watch_directories: tuple[WatchRule, ...] = ()

    @field_validator("destination", mode="before")
    @classmethod
    def _expand_destination(cls, value):
        if value is None or value == "":
            return None
        return expand_path(value)

    @field_serializer("destination")
    def _destination_str(self, value: Path | None) -> str | None:
        return str(value) if value is not None else None

    @property
    def upload_mode(self) -> UploadMode:
        return self.api_upload.mode

    @property
    def requires_destination(self) -> bool:
        return self.api_upload.mode != UploadMode.UPLOAD_ONLY

    @property
    def enabled_rules(self) -> list[WatchRule]:
        return [rule for rule in self.watch_directories if rule.enabled]


class LedgerEntry(BaseModel):
    """A single ``(path, modification time)`` fact in the ledger."""

    model_config = ConfigDict(frozen=True)

    path: str
    mod_time: int = Field(description="Epoch seconds from filesystem metadata")


class UploadOutcome(BaseModel):
    """What the remote API said about a successful upload."""

    status_code: int
    task_id: str | None = None
    status: str | None = None


class DispatchStatus(StrEnum):
    """Outcome of dispatching one file."""

    SUCCESS = "success"
    PARTIAL = "partial"
    ALREADY_PROCESSED = "already_processed"
    FAILED = "failed"
    CONFIG_ERROR = "config_error"
    VANISHED = "vanished"


class DispatchEvent(BaseModel):
    """An audit record for a single dispatch."""

    timestamp: datetime
    source_path: str
    file_name: str
    tag: str
    mod_time: int | None = None
    mode: UploadMode
    status: DispatchStatus
    reprocessing: bool = False
    destination: str = Field(default="", description="Local copy path, if copied")
    copied: bool | None = Field(default=None, description="None when no copy was attempted")
    uploaded: bool | None = Field(default=None, description="None when no upload was attempted")
    task_id: str = Field(default="", description="Remote task id returned by the upload API")
    error_message: str = ""

    @property
    def recorded(self) -> bool:
        return self.status in (DispatchStatus.SUCCESS, DispatchStatus.PARTIAL)


class SessionStatus(StrEnum):
    """Supervisor snapshot written to the status file."""

    INSTALLED = "installed"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


class SupervisorStatus(BaseModel):
    """Parsed contents of the supervisor status file."""

    status: SessionStatus
    last_check: int = Field(description="Epoch seconds of the last check")
    session_pid: int | None = None
    install_time: str = ""
