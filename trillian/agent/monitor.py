"""Long-running monitor: start-up checks, event source lifecycle, shutdown.

Start-up problems (no usable watch directory, no usable destination) raise
``StartupError``; everything after start-up is non-fatal and only logged.
SIGINT/SIGTERM stop the event source, then wait for in-flight dispatches to
finish before the upload client is closed; nothing is aborted mid-transfer.
"""

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable
from pathlib import Path

from trillian.agent.audit import DispatchAuditLog
from trillian.agent.ledger import Ledger
from trillian.agent.sources import (
    DEFAULT_POLL_INTERVAL,
    EventSource,
    FileRouter,
    scan_once,
    select_event_source,
)
from trillian.integrations.upload_api import UploadClient
from trillian.schemas.agent import AgentConfig, DispatchEvent, UploadMode, WatchRule

logger = logging.getLogger(__name__)


class StartupError(Exception):
    """The monitor cannot start with this configuration."""


def active_rules(config: AgentConfig) -> list[WatchRule]:
    """Enabled rules whose directory exists and is readable; others are skipped."""
    rules = []
    for rule in config.enabled_rules:
        if not rule.path.is_dir():
            logger.warning("Skipping [%s]: directory does not exist: %s", rule.tag, rule.path)
            continue
        if not os.access(rule.path, os.R_OK | os.X_OK):
            logger.warning("Skipping [%s]: directory is not readable: %s", rule.tag, rule.path)
            continue
        rules.append(rule)
    return rules


def prepare_destination(config: AgentConfig) -> Path | None:
    """Return the destination directory, creating it if needed.

    ``upload_only`` needs no destination and yields None.
    """
    if not config.requires_destination:
        return None
    if config.destination is None:
        raise StartupError(f"A destination directory is required for {config.upload_mode} mode")
    try:
        config.destination.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StartupError(f"Destination directory cannot be created: {config.destination}") from exc
    if not os.access(config.destination, os.W_OK):
        raise StartupError(f"Destination directory is not writable: {config.destination}")
    return config.destination


def _upload_needed(config: AgentConfig) -> bool:
    upload = config.api_upload
    if not (upload.enabled and upload.mode in (UploadMode.UPLOAD_ONLY, UploadMode.COPY_AND_UPLOAD)):
        return False
    missing = upload.missing_settings()
    if missing:
        logger.warning("API upload enabled but missing %s; uploads will fail", ", ".join(missing))
        return False
    return True


def build_router(
    config: AgentConfig,
    *,
    ledger: Ledger,
    audit_log: DispatchAuditLog | None = None,
    upload_client: UploadClient | None = None,
) -> FileRouter:
    """Validate start-up conditions and build the router for the active rules.

    Raises:
        StartupError: If no enabled watch directory is usable or the
            destination is missing and cannot be created.
    """
    rules = active_rules(config)
    if not rules:
        raise StartupError("No valid watch directories found")
    destination_dir = prepare_destination(config)
    return FileRouter(
        rules,
        ledger=ledger,
        destination_dir=destination_dir,
        upload_config=config.api_upload,
        upload_client=upload_client,
        audit_log=audit_log,
    )


def write_pid_file(path: str | Path) -> None:
    pid_path = Path(path)
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(f"{os.getpid()}\n")


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Alive, owned by another user
        return True
    return True


def read_pid_file(path: str | Path) -> int | None:
    """Return the PID in ``path`` if that process is alive."""
    pid_path = Path(path)
    try:
        pid = int(pid_path.read_text().strip())
    except (OSError, ValueError):
        return None
    return pid if _process_alive(pid) else None


def stop_monitor(path: str | Path, *, sig: signal.Signals = signal.SIGTERM) -> int | None:
    """Ask the monitor recorded in ``path`` to shut down.

    The monitor removes its own PID file once in-flight dispatches finish; a
    stale file left by a dead process is removed here.

    Returns:
        The PID that was signalled, or None if no monitor is running.

    Raises:
        PermissionError: If the process belongs to another user.
    """
    pid = read_pid_file(path)
    if pid is None:
        Path(path).unlink(missing_ok=True)
        return None
    os.kill(pid, sig)
    logger.info("Sent %s to monitor (PID %d)", sig.name, pid)
    return pid


def wait_for_exit(
    pid: int,
    *,
    timeout: float = 10.0,
    interval: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll until ``pid`` is gone; False if it is still alive after ``timeout``."""
    deadline = time.monotonic() + timeout
    while _process_alive(pid):
        if time.monotonic() >= deadline:
            return False
        sleep(interval)
    return True


def _install_signal_handlers(stop: asyncio.Event) -> list[int]:
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            pass
    return installed


async def run_monitor(
    config: AgentConfig,
    *,
    ledger: Ledger,
    audit_log: DispatchAuditLog | None = None,
    method: str = "auto",
    interval: float = DEFAULT_POLL_INTERVAL,
    pid_path: str | Path | None = None,
    stop_event: asyncio.Event | None = None,
    source: EventSource | None = None,
) -> None:
    """Run the pipeline until ``stop_event`` is set or a termination signal arrives.

    Raises:
        StartupError: Before any event source is started.
    """
    upload_client = UploadClient.from_config(config.api_upload) if _upload_needed(config) else None
    try:
        router = build_router(
            config, ledger=ledger, audit_log=audit_log, upload_client=upload_client
        )
        router.bind(asyncio.get_running_loop())

        logger.info("Destination: %s", router.destination_dir or "(none, upload only)")
        logger.info("Upload mode: %s", config.upload_mode)
        for rule in router.rules:
            logger.info("Watching [%s] %s (%s)", rule.tag, rule.path, ", ".join(sorted(rule.extensions)))

        stop = stop_event or asyncio.Event()
        signals = _install_signal_handlers(stop)
        if pid_path is not None:
            write_pid_file(pid_path)

        source = source or select_event_source(method, interval=interval)
        source.start(router)
        try:
            await stop.wait()
            logger.info("Shutting down...")
        finally:
            await source.stop()
            await router.drain()
            loop = asyncio.get_running_loop()
            for sig in signals:
                loop.remove_signal_handler(sig)
            if pid_path is not None:
                Path(pid_path).unlink(missing_ok=True)
    finally:
        if upload_client is not None:
            await upload_client.close()


async def run_once(
    config: AgentConfig,
    *,
    ledger: Ledger,
    audit_log: DispatchAuditLog | None = None,
) -> list[DispatchEvent]:
    """Single polling pass over every active rule."""
    upload_client = UploadClient.from_config(config.api_upload) if _upload_needed(config) else None
    try:
        router = build_router(
            config, ledger=ledger, audit_log=audit_log, upload_client=upload_client
        )
        return await scan_once(router)
    finally:
        if upload_client is not None:
            await upload_client.close()
