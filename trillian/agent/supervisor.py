"""Restart guard that keeps a monitor alive in a detached ``screen`` session.

Run once per scheduler tick (e.g. from cron every minute) where the OS service
manager is not allowed to read the watched folders. Each run looks the session
up by name, starts ``trillian monitor`` in it when missing, and writes a small
``key=value`` status file. It never dispatches files itself.
"""

import logging
import subprocess
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path

from dotenv import dotenv_values
from pydantic import ValidationError

from trillian.schemas.agent import SessionStatus, SupervisorStatus

logger = logging.getLogger(__name__)

SETTLE_SECONDS = 2.0


def parse_screen_list(output: str, session_name: str) -> int | None:
    """Find the PID of ``session_name`` in ``screen -list`` output.

    Session lines look like ``\\t12345.trillian-monitor\\t(Detached)``.
    """
    for line in output.splitlines():
        fields = line.split()
        if not fields:
            continue
        pid, dot, name = fields[0].partition(".")
        if dot and name == session_name and pid.isdigit():
            return int(pid)
    return None


class ScreenSessions:
    """Named-session lookup and start-up through GNU ``screen``."""

    def __init__(self, runner: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> None:
        self._run = runner

    def find(self, session_name: str) -> int | None:
        """PID of the running session, or None."""
        try:
            # screen -list exits non-zero when there are no sessions
            result = self._run(["screen", "-list"], capture_output=True, text=True, check=False)
        except FileNotFoundError:
            logger.error("screen is not installed")
            return None
        return parse_screen_list(result.stdout, session_name)

    def start(self, session_name: str, command: Sequence[str]) -> None:
        """Start ``command`` in a new detached session.

        Raises:
            subprocess.CalledProcessError: If screen refuses to start it.
            FileNotFoundError: If screen is not installed.
        """
        self._run(["screen", "-dmS", session_name, *command], check=True)

    def stop(self, session_name: str) -> None:
        """Quit the named session and everything running in it."""
        self._run(["screen", "-S", session_name, "-X", "quit"], check=True)


def write_status(path: str | Path, status: SupervisorStatus) -> None:
    """Overwrite the status file with ``status``."""
    status_path = Path(path)
    status_path.parent.mkdir(parents=True, exist_ok=True)
    lines = [f"status={status.status}", f"last_check={status.last_check}"]
    if status.session_pid is not None:
        lines.append(f"session_pid={status.session_pid}")
    if status.install_time:
        lines.append(f"install_time={status.install_time}")
    status_path.write_text("\n".join(lines) + "\n")


def read_status(path: str | Path) -> SupervisorStatus | None:
    """Parse the status file; None if absent or unreadable."""
    status_path = Path(path)
    if not status_path.exists():
        return None
    values = {k: v for k, v in dotenv_values(status_path).items() if v}
    try:
        return SupervisorStatus.model_validate(values)
    except ValidationError as exc:
        logger.warning("Ignoring malformed supervisor status %s: %s", status_path, exc)
        return None


def mark_installed(path: str | Path) -> SupervisorStatus:
    """Write the initial ``installed`` snapshot."""
    status = SupervisorStatus(
        status=SessionStatus.INSTALLED,
        last_check=int(time.time()),
        install_time=datetime.now().isoformat(timespec="seconds"),
    )
    write_status(path, status)
    return status


def ensure_running(
    *,
    session_name: str,
    command: Sequence[str],
    status_path: str | Path,
    sessions: ScreenSessions | None = None,
    settle_seconds: float = SETTLE_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> SupervisorStatus:
    """Make sure the named monitor session exists, starting it if needed.

    Returns:
        The snapshot written to ``status_path``.
    """
    sessions = sessions or ScreenSessions()
    previous = read_status(status_path)
    install_time = previous.install_time if previous else ""

    pid = sessions.find(session_name)
    if pid is None:
        logger.info("Session %s not found, starting new session", session_name)
        try:
            sessions.start(session_name, command)
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            logger.error("Failed to start session %s: %s", session_name, exc)
        else:
            sleep(settle_seconds)
            pid = sessions.find(session_name)
            if pid is not None:
                logger.info("Started session %s with PID %d", session_name, pid)
            else:
                logger.error("Session %s exited right after start", session_name)
    else:
        logger.debug("Session %s alive (PID %d)", session_name, pid)

    status = SupervisorStatus(
        status=SessionStatus.RUNNING if pid is not None else SessionStatus.FAILED,
        last_check=int(time.time()),
        session_pid=pid,
        install_time=install_time,
    )
    write_status(status_path, status)
    return status


def stop_session(
    *,
    session_name: str,
    status_path: str | Path,
    sessions: ScreenSessions | None = None,
) -> int | None:
    """Quit the named monitor session if it is running.

    Returns:
        The PID of the session that was stopped, or None if none was running.

    Raises:
        subprocess.CalledProcessError: If screen refuses to quit the session.
    """
    sessions = sessions or ScreenSessions()
    pid = sessions.find(session_name)
    if pid is None:
        logger.info("No session %s running", session_name)
        return None
    sessions.stop(session_name)
    logger.info("Stopped session %s (PID %d)", session_name, pid)

    previous = read_status(status_path)
    write_status(
        status_path,
        SupervisorStatus(
            status=SessionStatus.STOPPED,
            last_check=int(time.time()),
            install_time=previous.install_time if previous else "",
        ),
    )
    return pid
