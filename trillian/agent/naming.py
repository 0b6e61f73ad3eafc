"""Destination filenames for local copies.

First sight of a path produces ``[tag]_<basename>``. A re-processing (the path
is already in the ledger under an older mtime) gets a timestamp suffix so the
earlier copy is never overwritten: ``[tag]_<stem>_YYYYMMDD_HHMMSS.<ext>``.

Extensions are split on the last dot only. A name with no dot, or whose only
dot is a leading one (``.env``), is treated as having no extension, and the
suffixed name then carries no trailing dot.
"""

from datetime import datetime

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def split_extension(basename: str) -> tuple[str, str]:
    """Split ``basename`` into ``(stem, extension)`` on the last dot.

    >>> split_extension("report.final.pdf")
    ('report.final', 'pdf')
    >>> split_extension("README")
    ('README', '')
    >>> split_extension(".env")
    ('.env', '')
    """
    stem, dot, ext = basename.rpartition(".")
    if not dot or not stem:
        return basename, ""
    return stem, ext


def destination_name(
    basename: str,
    tag: str,
    is_reprocessing: bool,
    *,
    now: datetime | None = None,
) -> str:
    """Compute the output filename for a dispatched file."""
    if not is_reprocessing:
        return f"[{tag}]_{basename}"

    timestamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    stem, ext = split_extension(basename)
    if not ext:
        return f"[{tag}]_{stem}_{timestamp}"
    return f"[{tag}]_{stem}_{timestamp}.{ext}"
