"""Per-file decision logic: ledger check, copy and/or upload, ledger update.

``dispatch_file`` holds no state between calls; everything persistent lives in
the ledger. It is safe to run concurrently for different paths (the ledger
serializes its own writes); callers must not run it twice at once for the
same path.

A file is recorded in the ledger when at least one attempted delivery
succeeded, so a failed upload never forces a second local copy, and a failed
copy with a good upload is not repeated either.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path

from trillian.agent.audit import DispatchAuditLog
from trillian.agent.copier import CopyError, copy_file
from trillian.agent.ledger import Ledger
from trillian.agent.naming import destination_name
from trillian.integrations.upload_api import UploadClient, UploadError
from trillian.schemas.agent import (
    DispatchEvent,
    DispatchStatus,
    UploadConfig,
    UploadMode,
    WatchRule,
)

logger = logging.getLogger(__name__)


async def dispatch_file(
    file_path: Path,
    rule: WatchRule,
    *,
    ledger: Ledger,
    destination_dir: Path | None = None,
    upload_config: UploadConfig | None = None,
    upload_client: UploadClient | None = None,
    audit_log: DispatchAuditLog | None = None,
) -> DispatchEvent:
    """Dispatch one discovered file according to the upload mode.

    Args:
        file_path: Absolute path of the discovered file.
        rule: The watch rule the file matched; supplies the tag.
        ledger: Idempotence record, consulted and updated here.
        destination_dir: Flat folder for local copies (copy modes).
        upload_config: Upload settings. Without one the mode is
            ``copy_and_upload`` with uploads disabled, i.e. copy only.
        upload_client: Client used when an upload is attempted.
        audit_log: Receives an event for every dispatch that acted on the file.

    Returns:
        The DispatchEvent describing what happened. Per-file failures are
        reported here and logged, never raised.
    """
    upload_config = upload_config or UploadConfig()
    mode = upload_config.mode

    def _event(status: DispatchStatus, **fields) -> DispatchEvent:
        return DispatchEvent(
            timestamp=datetime.now(UTC),
            source_path=str(file_path),
            file_name=file_path.name,
            tag=rule.tag,
            mode=mode,
            status=status,
            **fields,
        )

    try:
        mod_time = int(file_path.stat().st_mtime)
    except OSError:
        logger.debug("File vanished before dispatch: %s", file_path)
        return _event(DispatchStatus.VANISHED)

    if ledger.has(file_path, mod_time):
        return _event(DispatchStatus.ALREADY_PROCESSED, mod_time=mod_time)

    is_reprocessing = ledger.was_seen_before(file_path)

    # --- Configuration gate ---
    config_error = _check_configuration(mode, upload_config, destination_dir, upload_client)
    if config_error:
        logger.error("Configuration error for %s: %s", file_path.name, config_error)
        event = _event(
            DispatchStatus.CONFIG_ERROR,
            mod_time=mod_time,
            reprocessing=is_reprocessing,
            error_message=config_error,
        )
        if audit_log is not None:
            audit_log.log(event)
        return event

    copy_ok: bool | None = None
    upload_ok: bool | None = None
    destination = ""
    task_id = ""
    errors: list[str] = []

    # --- Local copy ---
    if mode in (UploadMode.COPY_ONLY, UploadMode.COPY_AND_UPLOAD):
        name = destination_name(file_path.name, rule.tag, is_reprocessing)
        try:
            dest_path = copy_file(file_path, destination_dir, name)
            destination = str(dest_path)
            copy_ok = True
            logger.info("Copied: %s -> %s", file_path.name, name)
        except CopyError as exc:
            copy_ok = False
            errors.append(str(exc))
            logger.error("Failed to copy %s: %s", file_path.name, exc)

    # --- Upload ---
    wants_upload = mode == UploadMode.UPLOAD_ONLY or (
        mode == UploadMode.COPY_AND_UPLOAD and upload_config.enabled
    )
    blocker = _upload_blocker(upload_config, upload_client) if wants_upload else ""
    if blocker:
        upload_ok = False
        errors.append(blocker)
        logger.error("Skipping API upload of %s: %s", file_path.name, blocker)
    elif wants_upload:
        try:
            outcome = await upload_client.upload(file_path, tag=rule.tag)
            upload_ok = True
            task_id = outcome.task_id or ""
        except UploadError as exc:
            upload_ok = False
            errors.append(f"upload failed ({exc})")
            if copy_ok:
                logger.warning(
                    "API upload failed: %s (%s); local copy still successful",
                    file_path.name,
                    exc,
                )
            else:
                logger.error("API upload failed: %s (%s)", file_path.name, exc)

    attempted = [ok for ok in (copy_ok, upload_ok) if ok is not None]
    if all(attempted):
        status = DispatchStatus.SUCCESS
    elif any(attempted):
        status = DispatchStatus.PARTIAL
    else:
        status = DispatchStatus.FAILED

    if status == DispatchStatus.FAILED:
        logger.error("All operations failed for %s; will retry on next event", file_path.name)
    elif not ledger.record(file_path, mod_time):
        logger.warning("%s was delivered but not recorded; it may be sent again", file_path.name)

    event = _event(
        status,
        mod_time=mod_time,
        reprocessing=is_reprocessing,
        destination=destination,
        copied=copy_ok,
        uploaded=upload_ok,
        task_id=task_id,
        error_message="; ".join(errors),
    )
    if audit_log is not None:
        audit_log.log(event)
    return event


def _check_configuration(
    mode: UploadMode,
    upload_config: UploadConfig,
    destination_dir: Path | None,
    upload_client: UploadClient | None,
) -> str:
    """Return a description of what blocks this mode, or an empty string.

    Only ``upload_only`` is blocked by incomplete upload settings; in
    ``copy_and_upload`` they fail the upload leg and the copy still runs.
    """
    if mode == UploadMode.UPLOAD_ONLY:
        if not upload_config.enabled:
            return "upload_only mode requires API upload to be enabled"
        return _upload_blocker(upload_config, upload_client)
    if destination_dir is None:
        return f"{mode} mode requires a destination directory"
    return ""


def _upload_blocker(upload_config: UploadConfig, upload_client: UploadClient | None) -> str:
    missing = upload_config.missing_settings()
    if missing:
        return f"API upload is enabled but missing: {', '.join(missing)}"
    if upload_client is None:
        return "API upload is enabled but no upload client was provided"
    return ""

