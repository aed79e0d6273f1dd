from __future__ import annotations

import logging
import signal
import sys
from types import FrameType
from typing import Optional

from civitai_downloader.config import get_container_settings
from civitai_downloader.exceptions import CivitaiDownloaderError
from civitai_downloader.services.download_pipeline import DownloadPipeline

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class ShutdownRequested(Exception):
    """Raised inside the loop when the supervisor asks the download process to stop."""


def _request_shutdown(signum: int, frame: Optional[FrameType]) -> None:
    raise ShutdownRequested(signal.Signals(signum).name)


def run_worker() -> None:
    settings = get_container_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT, stream=sys.stderr)
    # subprocess.run kills the in-flight downloader when the exception unwinds through it.
    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, _request_shutdown)

    try:
        DownloadPipeline(settings).run()
    except ShutdownRequested as exc:
        logger.info("Download loop stopped by %s", exc)
    except CivitaiDownloaderError as exc:
        logger.error("Download loop aborted: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    run_worker()
