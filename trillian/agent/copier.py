"""Local copy of a dispatched file into the flat destination folder."""

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


class CopyError(Exception):
    """The source vanished or the destination could not be written."""


def copy_file(source: Path, destination_dir: Path, destination_name: str) -> Path:
    """Copy ``source`` byte-for-byte to ``destination_dir / destination_name``.

    An existing file at the destination is overwritten. The ledger is not
    touched; recording the result is the caller's job.

    Returns:
        The path written.

    Raises:
        CopyError: If the source is gone or the destination is not writable.
    """
    dest = destination_dir / destination_name
    try:
        shutil.copyfile(source, dest)
    except FileNotFoundError as exc:
        if not Path(source).exists():
            raise CopyError(f"Source disappeared before copy: {source}") from exc
        raise CopyError(f"Destination not available: {dest}") from exc
    except OSError as exc:
        raise CopyError(f"Failed to copy {source} -> {dest}: {exc}") from exc
    logger.debug("Copied %s -> %s", source, dest)
    return dest
