"""Append-only ledger of already-dispatched ``(path, mtime)`` pairs.

The ledger is the only source of idempotence for the agent: a file whose exact
modification time is recorded is skipped, and a path with any prior entry is
treated as a re-processing. Records are JSON lines; plain ``path:mtime`` lines
written by earlier releases of the agent are still understood.

I/O failures are logged and never raised, so a file may be dispatched again on
the next cycle rather than lost.
"""

import logging
import os
import tempfile
import threading
from pathlib import Path

from pydantic import ValidationError

from trillian.schemas.agent import LedgerEntry

logger = logging.getLogger(__name__)


def _parse_line(line: str) -> LedgerEntry | None:
    if line.startswith("{"):
        try:
            return LedgerEntry.model_validate_json(line)
        except ValidationError:
            return None
    # Legacy "path:mtime" record; paths may themselves contain ':'
    path, sep, mtime = line.rpartition(":")
    if not sep or not path:
        return None
    try:
        return LedgerEntry(path=path, mod_time=int(mtime))
    except ValueError:
        return None


class Ledger:
    """Persistent record of which file versions have been dispatched.

    Usage::

        ledger = Ledger("/path/to/processed_files")
        if not ledger.has("/in/a.pdf", 1700000000):
            ...
            ledger.record("/in/a.pdf", 1700000000)

    Writes are serialized with a lock; reads scan the file each time, so the
    file on disk is always the source of truth.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> list[LedgerEntry]:
        if not self._path.exists():
            return []
        entries: list[LedgerEntry] = []
        with self._path.open() as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = _parse_line(line)
                if entry is None:
                    logger.warning("Skipping malformed ledger line: %r", line)
                    continue
                entries.append(entry)
        return entries

    def entries(self) -> list[LedgerEntry]:
        """All entries, oldest first. Empty if the ledger cannot be read."""
        try:
            return self._read()
        except OSError as exc:
            logger.error("Could not read ledger %s: %s", self._path, exc)
            return []

    def count(self) -> int:
        return len(self.entries())

    def has(self, path: str | Path, mod_time: int) -> bool:
        """True iff exactly this ``(path, mod_time)`` pair is recorded."""
        key = str(path)
        return any(e.path == key and e.mod_time == mod_time for e in self.entries())

    def was_seen_before(self, path: str | Path) -> bool:
        """True iff any entry, at any modification time, exists for ``path``."""
        key = str(path)
        return any(e.path == key for e in self.entries())

    def record(self, path: str | Path, mod_time: int) -> bool:
        """Drop every entry for ``path`` and append ``(path, mod_time)``.

        Returns:
            True if the entry was written, False if the ledger I/O failed.
        """
        key = str(path)
        new_entry = LedgerEntry(path=key, mod_time=mod_time)
        with self._lock:
            try:
                existing = self._read()
                kept = [e for e in existing if e.path != key]
                if len(kept) != len(existing):
                    self._rewrite(kept)
                with self._path.open("a") as f:
                    f.write(new_entry.model_dump_json() + "\n")
            except OSError as exc:
                logger.error("Could not update ledger for %s: %s", key, exc)
                return False
        logger.debug("Ledger: recorded %s mtime=%d", key, mod_time)
        return True

    def _rewrite(self, entries: list[LedgerEntry]) -> None:
        """Atomically replace the ledger file with ``entries``."""
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                for entry in entries:
                    f.write(entry.model_dump_json() + "\n")
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
