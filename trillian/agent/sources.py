"""Event sources feeding discovered files to the dispatcher.

Two interchangeable strategies share one interface (``start(router)`` /
``stop()``):

  - ``NativeEventSource``: OS notifications via the ``watchdog`` library
    (inotify, FSEvents, kqueue). The Observer runs in a background thread and
    hands paths to the router, which schedules dispatches on the asyncio loop.
  - ``PollingEventSource``: lists the direct children of every active rule's
    directory on a fixed interval.

The ``FileRouter`` matches each path against the watch rules and runs the
dispatcher, never more than once at a time for the same path.
"""

import asyncio
import concurrent.futures
import functools
import logging
import sys
import threading
from collections.abc import Iterable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from trillian.agent.audit import DispatchAuditLog
from trillian.agent.dispatcher import dispatch_file
from trillian.agent.ledger import Ledger
from trillian.agent.naming import split_extension
from trillian.integrations.upload_api import UploadClient
from trillian.schemas.agent import DispatchEvent, UploadConfig, WatchRule

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


def rule_matches(rule: WatchRule, path: Path) -> bool:
    """True if ``path`` is a direct child of the rule's directory with a listed extension.

    The extension comparison is case-sensitive. Directories are compared after
    resolving symlinks, since some backends (FSEvents) report real paths.
    """
    if path.parent != rule.path and path.parent.resolve() != rule.path.resolve():
        return False
    _, ext = split_extension(path.name)
    return bool(ext) and ext in rule.extensions


def match_rule(rules: Iterable[WatchRule], path: Path) -> WatchRule | None:
    """Return the first rule that claims ``path``, if any."""
    for rule in rules:
        if rule_matches(rule, path):
            return rule
    return None


class FileRouter:
    """Matches discovered paths to watch rules and runs the dispatcher.

    ``handle`` is awaited from the event loop; ``submit`` is the thread-safe
    entry point used by observer threads. Submitted dispatches are tracked
    until they finish so ``drain`` can wait for them on shutdown.
    """

    def __init__(
        self,
        rules: Iterable[WatchRule],
        *,
        ledger: Ledger,
        destination_dir: Path | None,
        upload_config: UploadConfig,
        upload_client: UploadClient | None = None,
        audit_log: DispatchAuditLog | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._rules = list(rules)
        self._ledger = ledger
        self._destination_dir = destination_dir
        self._upload_config = upload_config
        self._upload_client = upload_client
        self._audit_log = audit_log
        self._loop = loop
        self._in_flight: set[str] = set()
        self._pending: set[concurrent.futures.Future] = set()
        self._pending_lock = threading.Lock()

    @property
    def rules(self) -> list[WatchRule]:
        return list(self._rules)

    @property
    def directories(self) -> list[Path]:
        """Distinct directories of the routed rules, in rule order."""
        return list(dict.fromkeys(rule.path for rule in self._rules))

    @property
    def destination_dir(self) -> Path | None:
        return self._destination_dir

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    async def handle(self, path: Path) -> DispatchEvent | None:
        """Dispatch ``path`` if a rule matches and no dispatch for it is running."""
        rule = match_rule(self._rules, path)
        if rule is None:
            return None
        key = str(path)
        if key in self._in_flight:
            logger.debug("Dispatch already in flight for %s", path.name)
            return None
        self._in_flight.add(key)
        try:
            return await dispatch_file(
                path,
                rule,
                ledger=self._ledger,
                destination_dir=self._destination_dir,
                upload_config=self._upload_config,
                upload_client=self._upload_client,
                audit_log=self._audit_log,
            )
        finally:
            self._in_flight.discard(key)

    def submit(self, path: Path) -> concurrent.futures.Future | None:
        """Schedule ``handle(path)`` on the bound loop from any thread."""
        if self._loop is None:
            raise RuntimeError("FileRouter is not bound to an event loop")
        if match_rule(self._rules, path) is None:
            return None
        logger.info("Detected file: %s", path.name)
        future = asyncio.run_coroutine_threadsafe(self.handle(path), self._loop)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(functools.partial(self._finished, path))
        return future

    def _finished(self, path: Path, future: concurrent.futures.Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        if future.cancelled():
            logger.warning("Dispatch of %s was cancelled", path.name)
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Dispatch of %s failed: %s", path.name, exc, exc_info=exc)

    @property
    def pending(self) -> int:
        """Number of submitted dispatches that have not finished yet."""
        with self._pending_lock:
            return len(self._pending)

    async def drain(self) -> None:
        """Wait for every submitted dispatch to finish."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return
        logger.info("Waiting for %d in-flight dispatches", len(pending))
        await asyncio.gather(*(asyncio.wrap_future(f) for f in pending), return_exceptions=True)


async def scan_once(router: FileRouter) -> list[DispatchEvent]:
    """Dispatch every matching direct child of every routed directory, sequentially."""
    results: list[DispatchEvent] = []
    for directory in router.directories:
        try:
            children = sorted(directory.iterdir())
        except OSError as exc:
            logger.warning("Cannot list %s: %s", directory, exc)
            continue
        for item in children:
            if not item.is_file():
                continue
            event = await router.handle(item)
            if event is not None:
                results.append(event)
    return results


class EventSource:
    """Common interface of the event source strategies."""

    name = "base"

    def start(self, router: FileRouter) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError


class _RuleEventHandler(FileSystemEventHandler):
    """Forwards completed-file watchdog events to the router.

    With ``close_events`` (inotify) only close-after-write and moves into a
    watched directory count, so half-written files are not picked up. Other
    backends do not report closes, so creations and modifications count too.
    """

    def __init__(self, router: FileRouter, *, close_events: bool) -> None:
        super().__init__()
        self._router = router
        self._close_events = close_events

    def _forward(self, src_path: str | bytes) -> None:
        if isinstance(src_path, bytes):
            src_path = src_path.decode()
        path = Path(src_path)
        if not path.is_file():
            return
        self._router.submit(path)

    def on_closed(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._forward(event.dest_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory or self._close_events:
            return
        self._forward(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory or self._close_events:
            return
        self._forward(event.src_path)


class NativeEventSource(EventSource):
    """Filesystem notifications through a watchdog Observer (non-recursive)."""

    name = "native"

    def __init__(self, *, close_events: bool | None = None) -> None:
        if close_events is None:
            close_events = sys.platform.startswith("linux")
        self._close_events = close_events
        self._observer = None

    def start(self, router: FileRouter) -> None:
        handler = _RuleEventHandler(router, close_events=self._close_events)
        observer = Observer()
        for directory in router.directories:
            observer.schedule(handler, str(directory), recursive=False)
        observer.start()
        self._observer = observer
        logger.info("Using native notifications; watching %d directories", len(router.directories))

    async def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        await asyncio.to_thread(self._observer.join)
        self._observer = None


class PollingEventSource(EventSource):
    """Re-examines every matching file on a fixed interval.

    No change detection of its own; the ledger makes repeat visits no-ops.
    ``stop`` lets the tick in progress finish instead of cancelling it.
    """

    name = "polling"

    def __init__(self, interval: float = DEFAULT_POLL_INTERVAL) -> None:
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    def start(self, router: FileRouter) -> None:
        self._stopping.clear()
        self._task = asyncio.get_running_loop().create_task(self._run(router))
        logger.info("Using polling-based monitoring (%g-second intervals)", self._interval)

    async def _run(self, router: FileRouter) -> None:
        while not self._stopping.is_set():
            await scan_once(router)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except TimeoutError:
                pass

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None


def native_events_available() -> bool:
    """True if watchdog has an OS notification backend on this platform."""
    return not issubclass(Observer, PollingObserver)


def select_event_source(method: str = "auto", *, interval: float = DEFAULT_POLL_INTERVAL) -> EventSource:
    """Pick the event source: ``native``, ``polling``, or ``auto`` (probe, prefer native)."""
    if method == "native":
        return NativeEventSource()
    if method == "polling":
        return PollingEventSource(interval)
    if method != "auto":
        raise ValueError(f"Unknown monitoring method: {method}")
    if native_events_available():
        return NativeEventSource()
    logger.warning("Native file notifications not available, falling back to polling")
    return PollingEventSource(interval)
