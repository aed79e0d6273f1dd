"""Container entrypoint running the web server and the download loop side by side.

Lifecycle: ``starting`` (pre-flight) -> ``running`` (both children started) ->
``shutting_down`` (on SIGINT/SIGTERM) -> ``exited``. The supervisor is the only component
that signals its children.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from string import Template
from types import FrameType
from typing import Any, Dict, List, Mapping, Optional

from civitai_downloader.config import ContainerSettings, get_container_settings
from civitai_downloader.exceptions import ArchiveError, CivitaiDownloaderError, SupervisorError
from civitai_downloader.storage import ExportStorage

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
WEB_SERVER = "web-server"
DOWNLOAD_LOOP = "download-loop"
HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SupervisorState(str, Enum):
    starting = "starting"
    running = "running"
    shutting_down = "shutting_down"
    exited = "exited"


@dataclass
class SupervisedProcess:
    role: str
    process: subprocess.Popen

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def terminate(self) -> None:
        if not self.running:
            return
        try:
            self.process.terminate()
        except ProcessLookupError:
            pass

    def wait(self, timeout: Optional[float] = None) -> int:
        return self.process.wait(timeout=timeout)


def render_config_template(template: Path, destination: Path, environ: Optional[Mapping[str, str]] = None) -> Path:
    """Replace ``$VAR`` and ``${VAR}`` with environment values; unset variables become empty."""
    values = defaultdict(str, os.environ if environ is None else environ)
    try:
        rendered = Template(template.read_text(encoding="utf-8")).safe_substitute(values)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(rendered, encoding="utf-8")
    except OSError as exc:
        raise SupervisorError(f"Unable to render {template} into {destination}: {exc}") from exc
    logger.info("Rendered configuration %s", destination)
    return destination


class Supervisor:
    def __init__(
        self,
        settings: ContainerSettings,
        *,
        web_command: Optional[List[str]] = None,
        pipeline_command: Optional[List[str]] = None,
        environ: Optional[Mapping[str, str]] = None,
        poll_interval: float = 0.5,
    ) -> None:
        self.settings = settings
        self.storage = ExportStorage(settings.export_dir)
        self.web_command = web_command or [sys.executable, "-m", "civitai_downloader.main"]
        self.pipeline_command = pipeline_command or [sys.executable, "-m", "civitai_downloader.worker"]
        self.environ = dict(os.environ if environ is None else environ)
        # The template and the children see the export directory even when it was left at its default.
        self.environ.setdefault("CIVITAI_EXPORT_DIR", str(settings.export_dir))
        self.poll_interval = poll_interval
        self.state = SupervisorState.starting
        self.children: Dict[str, SupervisedProcess] = {}
        self.received_signal: Optional[int] = None
        self._stop = threading.Event()
        self._previous_handlers: Dict[int, Any] = {}

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def preflight(self) -> None:
        try:
            self.storage.ensure_root()
            self.storage.normalize_permissions()
        except (OSError, ArchiveError) as exc:
            raise SupervisorError(f"Unable to prepare {self.settings.export_dir}: {exc}") from exc
        render_config_template(self.settings.config_template, self.settings.config_path, self.environ)

    def install_signal_handlers(self) -> None:
        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_signal(self, signum: int, frame: Optional[FrameType]) -> None:
        logger.info("Received %s. Cleaning up...", signal.Signals(signum).name)
        self.request_shutdown(signum)

    def request_shutdown(self, signum: int = signal.SIGTERM) -> None:
        self.received_signal = signum
        self._stop.set()

    def start(self) -> None:
        """Start the web server, then the download loop, as independent background processes."""
        for role, command in ((WEB_SERVER, self.web_command), (DOWNLOAD_LOOP, self.pipeline_command)):
            if self.stop_requested:
                return
            try:
                process = subprocess.Popen(command, env=self.environ)
            except OSError as exc:
                raise SupervisorError(f"Unable to start {role}: {exc}") from exc
            self.children[role] = SupervisedProcess(role=role, process=process)
            logger.info("Started %s (pid %d)", role, process.pid)
        self.state = SupervisorState.running

    def wait(self) -> None:
        """Block until every child has exited, switching to shutdown when a signal arrives."""
        reported = set()
        while not self.stop_requested:
            for child in self.children.values():
                if child.role not in reported and not child.running:
                    reported.add(child.role)
                    logger.info("%s exited with code %s", child.role, child.returncode)
            if len(reported) == len(self.children):
                return
            self._stop.wait(self.poll_interval)
        self.shutdown()

    def shutdown(self) -> None:
        """Terminate every live child and wait for it, killing those still alive after the timeout."""
        self.state = SupervisorState.shutting_down
        for child in self.children.values():
            if child.running:
                logger.info("Stopping %s (pid %d)", child.role, child.pid)
                child.terminate()

        timeout = self.settings.shutdown_timeout
        deadline = None if timeout is None else time.monotonic() + timeout
        for child in self.children.values():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                child.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                logger.warning("%s did not stop within %ss, killing it", child.role, timeout)
                child.process.kill()
                child.wait()
            logger.info("%s exited with code %s", child.role, child.returncode)

    def run(self) -> int:
        self.install_signal_handlers()
        try:
            self.preflight()
            self.start()
            self.wait()
        except BaseException:
            if self.children:
                self.shutdown()
            raise
        finally:
            self.restore_signal_handlers()
            self.state = SupervisorState.exited
        return 0


def main() -> None:
    settings = get_container_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT, stream=sys.stderr)
    try:
        code = Supervisor(settings).run()
    except CivitaiDownloaderError as exc:
        logger.error("%s", exc)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
