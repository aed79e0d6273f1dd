from __future__ import annotations

import os
import shlex
import signal
import sys
import threading
import time
from pathlib import Path

import pytest

from civitai_downloader import worker
from civitai_downloader.exceptions import SupervisorError

SLEEPING_DOWNLOADER = (
    "import os, pathlib, time; "
    "pathlib.Path(os.environ['DOWNLOADER_PID_FILE']).write_text(str(os.getpid())); "
    "time.sleep(60)"
)


class RaisingPipeline:
    error: BaseException = None

    def __init__(self, settings) -> None:
        self.settings = settings

    def run(self):
        raise self.error


@pytest.fixture
def no_signal_handlers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(worker.signal, "signal", lambda signum, handler: None)


@pytest.fixture
def restore_signal_handlers():
    previous = {signum: signal.getsignal(signum) for signum in (signal.SIGINT, signal.SIGTERM)}
    yield
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def _terminate_when_started(pid_file: Path, timeout: float = 20.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pid_file.exists() and pid_file.read_text():
            os.kill(os.getpid(), signal.SIGTERM)
            return
        time.sleep(0.05)


def _is_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


@pytest.mark.usefixtures("no_signal_handlers")
def test_shutdown_request_ends_loop_quietly(monkeypatch: pytest.MonkeyPatch) -> None:
    RaisingPipeline.error = worker.ShutdownRequested("SIGTERM")
    monkeypatch.setattr(worker, "DownloadPipeline", RaisingPipeline)

    worker.run_worker()


@pytest.mark.usefixtures("no_signal_handlers")
def test_fatal_orchestration_error_exits_one(monkeypatch: pytest.MonkeyPatch) -> None:
    RaisingPipeline.error = SupervisorError("zip failed")
    monkeypatch.setattr(worker, "DownloadPipeline", RaisingPipeline)

    with pytest.raises(SystemExit) as exc_info:
        worker.run_worker()
    assert exc_info.value.code == 1


def test_signal_handler_raises_shutdown() -> None:
    with pytest.raises(worker.ShutdownRequested, match="SIGTERM"):
        worker._request_shutdown(worker.signal.SIGTERM, None)


@pytest.mark.usefixtures("restore_signal_handlers")
def test_sigterm_kills_in_flight_downloader(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    pid_file = tmp_path / "downloader.pid"
    monkeypatch.setenv("DOWNLOADER_PID_FILE", str(pid_file))
    monkeypatch.setenv("CIVITAI_USERNAME", "alice")
    monkeypatch.setenv("CIVITAI_BASE_MODELS", "SD 1.5")
    monkeypatch.setenv("CIVITAI_EXPORT_DIR", str(tmp_path / "export"))
    monkeypatch.setenv("CIVITAI_DOWNLOADER_COMMAND", shlex.join([sys.executable, "-c", SLEEPING_DOWNLOADER]))
    killer = threading.Thread(target=_terminate_when_started, args=(pid_file,), daemon=True)

    started = time.monotonic()
    killer.start()
    worker.run_worker()
    killer.join(timeout=5)

    assert time.monotonic() - started < 30
    downloader_pid = int(pid_file.read_text())
    assert not _is_alive(downloader_pid)
    assert not (tmp_path / "export" / "everything.zip").exists()
