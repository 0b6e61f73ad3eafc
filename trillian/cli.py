"""CLI entry point for the Trillian file relay agent.

Commands:
    trillian init            — write a starter configuration
    trillian monitor         — watch directories and relay new files
    trillian stop / restart  — stop (and rerun) a monitor via its PID file
    trillian ensure-running  — restart guard for scheduler-driven setups (--stop quits it)
    trillian status          — configuration, process and ledger overview
    trillian test-api        — check the upload endpoint and credentials
"""

import asyncio
import logging
import sys

import click

from trillian.config import (
    AUDIT_LOG_PATH,
    CONFIG_PATH,
    LEDGER_PATH,
    LOG_PATH,
    MANUAL_DEST_DIR,
    MANUAL_EXTENSIONS,
    MANUAL_FILE_TAG,
    MANUAL_SOURCE_DIR,
    PID_PATH,
    POLL_INTERVAL_SECONDS,
    SUPERVISOR_SESSION_NAME,
    SUPERVISOR_STATUS_PATH,
    ConfigError,
    load_agent_config,
)

logger = logging.getLogger("trillian")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def _add_file_logging() -> None:
    """Also append log records to the agent log file."""
    from pathlib import Path

    log_path = Path(LOG_PATH)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path)
    except OSError as exc:
        logger.warning("Cannot write log file %s: %s", log_path, exc)
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logging.getLogger().addHandler(handler)


def _load_config_or_exit(config_path: str):
    try:
        return load_agent_config(config_path)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        click.echo("Run 'trillian init' to create a configuration.", err=True)
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option(
    "--config",
    "config_path",
    default=CONFIG_PATH,
    show_default=True,
    help="Path to the JSON configuration document.",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: str) -> None:
    """Trillian — relay new files from watched folders to a folder and/or an API."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ------------------------------------------------------------------
# trillian init
# ------------------------------------------------------------------


@cli.command()
@click.option(
    "--destination",
    default="~/Dropbox/organized-files",
    show_default=True,
    help="Folder receiving local copies.",
)
@click.option("--force", is_flag=True, help="Overwrite an existing configuration.")
@click.pass_context
def init(ctx: click.Context, destination: str, force: bool) -> None:
    """Write a starter configuration document."""
    from pathlib import Path

    from trillian.config import default_agent_config, write_agent_config

    config_path = Path(ctx.obj["config_path"])
    if config_path.exists() and not force:
        click.echo(f"Error: {config_path} already exists (use --force to overwrite).", err=True)
        sys.exit(1)
    write_agent_config(default_agent_config(destination), config_path)
    click.echo(f"Wrote configuration to {config_path}")
    click.echo("Set 'enabled': true for the directories you want to monitor.")


# ------------------------------------------------------------------
# trillian monitor
# ------------------------------------------------------------------


@cli.command()
@click.option(
    "--method",
    type=click.Choice(["auto", "native", "polling"], case_sensitive=False),
    default="auto",
    show_default=True,
    help="Event source: OS notifications, directory polling, or probe.",
)
@click.option(
    "--interval",
    default=POLL_INTERVAL_SECONDS,
    show_default=True,
    type=float,
    help="Polling interval in seconds.",
)
@click.option("--once", is_flag=True, help="Scan existing files once and exit.")
@click.option(
    "--source",
    default=MANUAL_SOURCE_DIR,
    help="Monitor only this directory, ignoring the configuration document.",
)
@click.option(
    "--dest",
    default=MANUAL_DEST_DIR,
    help="Destination folder in --source mode.",
)
@click.option("--tag", default=MANUAL_FILE_TAG, show_default=True, help="Tag in --source mode.")
@click.option(
    "--ext",
    "extensions",
    default=MANUAL_EXTENSIONS,
    show_default=True,
    help="Comma-separated extensions in --source mode.",
)
@click.pass_context
def monitor(
    ctx: click.Context,
    method: str,
    interval: float,
    once: bool,
    source: str,
    dest: str,
    tag: str,
    extensions: str,
) -> None:
    """Watch the configured directories and relay new or modified files."""
    if source:
        from trillian.config import manual_agent_config

        exts = [e.strip() for e in extensions.split(",") if e.strip()]
        try:
            config = manual_agent_config(source, dest or None, tag=tag, extensions=exts)
        except ConfigError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
    else:
        config = _load_config_or_exit(ctx.obj["config_path"])
    if not once:
        _add_file_logging()
    asyncio.run(_monitor_async(config, method.lower(), interval, once))


async def _monitor_async(config, method: str, interval: float, once: bool) -> None:
    from trillian.agent.audit import DispatchAuditLog
    from trillian.agent.ledger import Ledger
    from trillian.agent.monitor import StartupError, run_monitor, run_once
    from trillian.schemas.agent import DispatchStatus

    ledger = Ledger(LEDGER_PATH)
    audit_log = DispatchAuditLog(AUDIT_LOG_PATH)

    try:
        if once:
            results = await run_once(config, ledger=ledger, audit_log=audit_log)
            transferred = sum(
                1 for r in results if r.status in (DispatchStatus.SUCCESS, DispatchStatus.PARTIAL)
            )
            skipped = sum(1 for r in results if r.status == DispatchStatus.ALREADY_PROCESSED)
            errors = sum(
                1
                for r in results
                if r.status in (DispatchStatus.FAILED, DispatchStatus.CONFIG_ERROR)
            )
            click.echo(
                f"Done. Files: {len(results)}, "
                f"Transferred: {transferred}, Already processed: {skipped}, Errors: {errors}"
            )
        else:
            click.echo("Monitoring (Ctrl+C to stop)…")
            click.echo(f"  Mode: {config.upload_mode.value}")
            await run_monitor(
                config,
                ledger=ledger,
                audit_log=audit_log,
                method=method,
                interval=interval,
                pid_path=PID_PATH,
            )
    except StartupError as exc:
        logger.error("Refusing to start: %s", exc)
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


# ------------------------------------------------------------------
# trillian stop / restart
# ------------------------------------------------------------------


def _stop_running_monitor() -> int | None:
    from trillian.agent.monitor import stop_monitor

    try:
        pid = stop_monitor(PID_PATH)
    except PermissionError:
        click.echo("Error: Monitor belongs to another user; cannot stop it.", err=True)
        sys.exit(1)
    if pid is None:
        click.echo("Monitor is not running.")
    else:
        click.echo(f"Stopping monitor (PID {pid})")
    return pid


@cli.command()
def stop() -> None:
    """Stop the monitor started with 'trillian monitor'."""
    _stop_running_monitor()


@cli.command()
@click.option(
    "--method",
    type=click.Choice(["auto", "native", "polling"], case_sensitive=False),
    default="auto",
    show_default=True,
    help="Event source for the new monitor.",
)
@click.pass_context
def restart(ctx: click.Context, method: str) -> None:
    """Stop the running monitor, then monitor in the foreground."""
    from trillian.agent.monitor import wait_for_exit

    pid = _stop_running_monitor()
    if pid is not None and not wait_for_exit(pid):
        click.echo(f"Error: Monitor (PID {pid}) did not exit.", err=True)
        sys.exit(1)
    ctx.invoke(monitor, method=method)


# ------------------------------------------------------------------
# trillian ensure-running
# ------------------------------------------------------------------


@cli.command("ensure-running")
@click.option(
    "--session",
    default=SUPERVISOR_SESSION_NAME,
    show_default=True,
    help="Name of the screen session hosting the monitor.",
)
@click.option(
    "--install",
    is_flag=True,
    help="Record the installed state and print a crontab line instead of checking.",
)
@click.option("--stop", "stop_session_flag", is_flag=True, help="Quit the monitor session instead of checking.")
@click.pass_context
def ensure_running_cmd(ctx: click.Context, session: str, install: bool, stop_session_flag: bool) -> None:
    """Start the monitor in a detached session if it is not running."""
    import subprocess

    from trillian.agent.supervisor import ensure_running, mark_installed, stop_session

    if stop_session_flag:
        try:
            pid = stop_session(session_name=session, status_path=SUPERVISOR_STATUS_PATH)
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            click.echo(f"Error: Could not stop session {session}: {exc}", err=True)
            sys.exit(1)
        if pid is None:
            click.echo(f"No session {session} running.")
        else:
            click.echo(f"Stopped session {session} (PID {pid})")
        return

    if install:
        mark_installed(SUPERVISOR_STATUS_PATH)
        click.echo(f"Recorded install in {SUPERVISOR_STATUS_PATH}")
        click.echo("Add this line to your crontab to check every minute:")
        click.echo(f"  * * * * * {sys.executable} -m trillian.cli --config {ctx.obj['config_path']} ensure-running")
        return

    _add_file_logging()
    command = [sys.executable, "-m", "trillian.cli", "--config", ctx.obj["config_path"], "monitor"]
    status = ensure_running(
        session_name=session,
        command=command,
        status_path=SUPERVISOR_STATUS_PATH,
    )
    click.echo(f"Session {session}: {status.status.value}")
    if status.session_pid is None:
        sys.exit(1)


# ------------------------------------------------------------------
# trillian status
# ------------------------------------------------------------------


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show configuration, process status and recent activity."""
    from datetime import UTC, datetime, timedelta
    from pathlib import Path

    from trillian.agent.audit import DispatchAuditLog
    from trillian.agent.ledger import Ledger
    from trillian.agent.monitor import read_pid_file
    from trillian.agent.supervisor import read_status
    from trillian.schemas.agent import DispatchStatus

    config_path = ctx.obj["config_path"]
    click.echo("Trillian Status")
    click.echo(f"  Config: {config_path}")
    click.echo(f"  Log:    {LOG_PATH}")

    if not Path(config_path).exists():
        click.echo("  Not configured. Run 'trillian init' to set up.")
        return

    config = _load_config_or_exit(config_path)
    click.echo(f"  Destination: {config.destination or '(none)'}")
    upload = config.api_upload
    click.echo(
        f"  Upload: {'enabled' if upload.enabled else 'disabled'} "
        f"(mode={upload.mode.value}, endpoint={upload.endpoint or '-'})"
    )
    click.echo("  Watch directories:")
    for rule in config.watch_directories:
        state = "ENABLED" if rule.enabled else "DISABLED"
        exts = ", ".join(sorted(rule.extensions))
        click.echo(f"    [{rule.tag}] {rule.path} ({exts}) - {state}")

    pid = read_pid_file(PID_PATH)
    click.echo(f"  Monitor: {'running (PID ' + str(pid) + ')' if pid else 'stopped'}")

    supervisor = read_status(SUPERVISOR_STATUS_PATH)
    if supervisor is not None:
        checked = datetime.fromtimestamp(supervisor.last_check).strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"  Supervisor: {supervisor.status.value} (last check {checked})")

    ledger = Ledger(LEDGER_PATH)
    since = datetime.now(UTC) - timedelta(hours=24)
    counts = DispatchAuditLog(AUDIT_LOG_PATH).summarize(since=since)
    delivered = counts[DispatchStatus.SUCCESS] + counts[DispatchStatus.PARTIAL]
    failed = counts[DispatchStatus.FAILED] + counts[DispatchStatus.CONFIG_ERROR]
    click.echo(f"  Ledger entries:     {ledger.count()}")
    click.echo(f"  Delivered (24h):    {delivered}")
    click.echo(f"  Failed (24h):       {failed}")


# ------------------------------------------------------------------
# trillian test-api
# ------------------------------------------------------------------


@cli.command("test-api")
@click.pass_context
def check_api(ctx: click.Context) -> None:
    """Check that the upload endpoint answers with the configured credentials."""
    config = _load_config_or_exit(ctx.obj["config_path"])
    missing = config.api_upload.missing_settings()
    if missing:
        click.echo(f"Error: Missing upload settings: {', '.join(missing)}", err=True)
        sys.exit(1)
    ok = asyncio.run(_check_api_async(config))
    if ok:
        click.echo(f"Endpoint reachable: {config.api_upload.endpoint}")
    else:
        click.echo(f"Error: Endpoint not reachable: {config.api_upload.endpoint}", err=True)
        sys.exit(1)


async def _check_api_async(config) -> bool:
    from trillian.integrations.upload_api import UploadClient

    async with UploadClient.from_config(config.api_upload) as client:
        return await client.check_connection()


if __name__ == "__main__":
    cli()
