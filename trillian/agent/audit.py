"""History of dispatch outcomes, one JSON object per line.

The ledger only remembers the latest handled version of each path; this file
keeps every dispatch that acted on a file (copy, upload, failure or
configuration error) so ``trillian status`` can report recent activity.
Skips (already processed, vanished) are not written.
"""

import logging
from collections import Counter
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from trillian.schemas.agent import DispatchEvent, DispatchStatus, UploadMode

logger = logging.getLogger(__name__)


class DispatchAuditLog:
    """JSONL file of ``DispatchEvent`` records.

    Writing never fails a dispatch, and reading tolerates lines that no longer
    parse (a truncated write, a record from an incompatible release).
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def log(self, event: DispatchEvent) -> None:
        try:
            with self._path.open("a") as f:
                f.write(event.model_dump_json() + "\n")
        except OSError as exc:
            logger.error("Could not write audit log %s: %s", self._path, exc)
            return
        logger.debug("Audit: [%s] %s -> %s", event.tag, event.file_name, event.status)

    def _events(self):
        if not self._path.exists():
            return
        with self._path.open() as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield DispatchEvent.model_validate_json(line)
                except ValidationError:
                    logger.warning("Skipping unreadable audit record at %s:%d", self._path, lineno)

    def read_entries(
        self,
        *,
        since: datetime | None = None,
        status: DispatchStatus | None = None,
        tag: str | None = None,
        mode: UploadMode | None = None,
        limit: int | None = None,
    ) -> list[DispatchEvent]:
        """Dispatch events matching every given filter, oldest first.

        ``since`` is exclusive. ``limit`` keeps the newest matches.
        """
        entries = [
            event
            for event in self._events()
            if (since is None or event.timestamp > since)
            and (status is None or event.status == status)
            and (tag is None or event.tag == tag)
            and (mode is None or event.mode == mode)
        ]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def summarize(self, *, since: datetime | None = None) -> Counter[DispatchStatus]:
        """Count events per status, e.g. for a "last 24 hours" overview."""
        return Counter(event.status for event in self.read_entries(since=since))
