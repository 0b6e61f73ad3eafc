"""Tests for monitor start-up checks and lifecycle."""

import asyncio
import os
import signal
import subprocess
from unittest.mock import AsyncMock, patch

import pytest

from trillian.agent.monitor import (
    StartupError,
    active_rules,
    build_router,
    prepare_destination,
    read_pid_file,
    run_monitor,
    run_once,
    stop_monitor,
    wait_for_exit,
    write_pid_file,
)
from trillian.agent.sources import PollingEventSource
from trillian.integrations.upload_api import UploadClient
from trillian.schemas.agent import AgentConfig, DispatchStatus, UploadConfig, UploadOutcome, WatchRule


def _config(src, dest, **kwargs) -> AgentConfig:
    return AgentConfig(
        destination=dest,
        watch_directories=[WatchRule(path=src, extensions=["pdf"], tag="x")],
        **kwargs,
    )


class TestStartupChecks:
    def test_active_rules_skip_missing_and_disabled(self, watch_dirs, tmp_path):
        src, dest = watch_dirs
        config = AgentConfig(
            destination=dest,
            watch_directories=[
                WatchRule(path=src, extensions=["pdf"], tag="ok"),
                WatchRule(path=tmp_path / "missing", extensions=["pdf"], tag="missing"),
                WatchRule(path=src, extensions=["jpg"], tag="off", enabled=False),
            ],
        )
        assert [r.tag for r in active_rules(config)] == ["ok"]

    def test_no_valid_directories_is_fatal(self, ledger, tmp_path):
        config = _config(tmp_path / "missing", tmp_path / "out")
        with pytest.raises(StartupError, match="No valid watch directories"):
            build_router(config, ledger=ledger)

    def test_destination_created(self, watch_dirs, tmp_path):
        src, _ = watch_dirs
        dest = tmp_path / "new" / "out"
        assert prepare_destination(_config(src, dest)) == dest
        assert dest.is_dir()

    def test_destination_required_for_copy_modes(self, watch_dirs):
        src, _ = watch_dirs
        with pytest.raises(StartupError, match="destination"):
            prepare_destination(_config(src, None))

    def test_destination_not_creatable(self, watch_dirs, tmp_path):
        src, _ = watch_dirs
        blocker = tmp_path / "file"
        blocker.write_text("not a dir")
        with pytest.raises(StartupError):
            prepare_destination(_config(src, blocker / "out"))

    def test_upload_only_needs_no_destination(self, watch_dirs):
        src, _ = watch_dirs
        config = _config(src, None, api_upload=UploadConfig(enabled=True, upload_mode="upload_only"))
        assert prepare_destination(config) is None


class TestPidFile:
    def test_roundtrip(self, tmp_path):
        pid_path = tmp_path / "agent.pid"
        write_pid_file(pid_path)
        assert read_pid_file(pid_path) == os.getpid()

    def test_missing(self, tmp_path):
        assert read_pid_file(tmp_path / "agent.pid") is None

    def test_garbage(self, tmp_path):
        pid_path = tmp_path / "agent.pid"
        pid_path.write_text("not-a-pid")
        assert read_pid_file(pid_path) is None


class TestStopMonitor:
    def test_signals_recorded_process(self, tmp_path):
        proc = subprocess.Popen(["sleep", "30"])
        pid_path = tmp_path / "agent.pid"
        pid_path.write_text(f"{proc.pid}\n")
        try:
            assert stop_monitor(pid_path) == proc.pid
            assert proc.wait(timeout=5) == -signal.SIGTERM
        finally:
            proc.kill()
            proc.wait()

    def test_not_running_removes_stale_file(self, tmp_path):
        proc = subprocess.Popen(["true"])
        proc.wait()
        pid_path = tmp_path / "agent.pid"
        pid_path.write_text(f"{proc.pid}\n")

        assert stop_monitor(pid_path) is None
        assert not pid_path.exists()

    def test_wait_for_exit(self):
        proc = subprocess.Popen(["true"])
        proc.wait()
        assert wait_for_exit(proc.pid) is True
        assert wait_for_exit(os.getpid(), timeout=0, sleep=lambda s: None) is False


class TestRunOnce:
    async def test_example_scenario(self, watch_dirs, ledger):
        src, dest = watch_dirs
        f = src / "a.pdf"
        f.write_bytes(b"v1")
        os.utime(f, (1_700_000_000, 1_700_000_000))
        config = _config(src, dest)

        results = await run_once(config, ledger=ledger)
        assert [r.status for r in results] == [DispatchStatus.SUCCESS]
        assert (dest / "[x]_a.pdf").exists()
        assert ledger.has(f, 1_700_000_000)

        os.utime(f, (1_700_000_300, 1_700_000_300))
        await run_once(config, ledger=ledger)

        stamped = [p.name for p in dest.iterdir() if p.name != "[x]_a.pdf"]
        assert len(stamped) == 1
        assert stamped[0].startswith("[x]_a_") and stamped[0].endswith(".pdf")
        assert [(e.path, e.mod_time) for e in ledger.entries()] == [(str(f), 1_700_000_300)]


class TestRunMonitor:
    async def test_runs_until_stopped(self, watch_dirs, ledger, tmp_path):
        src, dest = watch_dirs
        (src / "a.pdf").write_bytes(b"v1")
        pid_path = tmp_path / "agent.pid"
        stop = asyncio.Event()

        task = asyncio.create_task(
            run_monitor(
                _config(src, dest),
                ledger=ledger,
                pid_path=pid_path,
                stop_event=stop,
                source=PollingEventSource(interval=0.01),
            )
        )
        for _ in range(200):
            if (dest / "[x]_a.pdf").exists():
                break
            await asyncio.sleep(0.01)

        assert pid_path.exists()
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert (dest / "[x]_a.pdf").exists()
        assert not pid_path.exists()

    async def test_startup_error_before_source_starts(self, ledger, tmp_path):
        source = PollingEventSource()
        with pytest.raises(StartupError):
            await run_monitor(
                _config(tmp_path / "missing", tmp_path / "out"),
                ledger=ledger,
                source=source,
                stop_event=asyncio.Event(),
            )
        assert source._task is None

    async def test_stop_waits_for_running_upload(self, watch_dirs, ledger):
        src, _ = watch_dirs
        f = src / "a.pdf"
        f.write_bytes(b"v1")
        config = _config(
            src,
            None,
            api_upload=UploadConfig(
                enabled=True,
                endpoint="http://api.test/upload",
                username="u",
                password="p",
                upload_mode="upload_only",
            ),
        )
        upload_started = asyncio.Event()
        order = []

        async def slow_upload(path, *, tag):
            upload_started.set()
            await asyncio.sleep(0.5)
            order.append("uploaded")
            return UploadOutcome(status_code=200, task_id="t-1")

        client = AsyncMock(spec=UploadClient)
        client.upload.side_effect = slow_upload
        client.close.side_effect = lambda: order.append("closed")
        stop = asyncio.Event()

        with patch("trillian.agent.monitor.UploadClient.from_config", return_value=client):
            task = asyncio.create_task(
                run_monitor(
                    config,
                    ledger=ledger,
                    stop_event=stop,
                    source=PollingEventSource(interval=0.01),
                )
            )
            await asyncio.wait_for(upload_started.wait(), timeout=5)
            await asyncio.sleep(0.2)
            stop.set()
            await asyncio.wait_for(task, timeout=5)

        assert order == ["uploaded", "closed"]
        assert ledger.count() == 1
