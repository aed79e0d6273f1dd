"""Command-line entry point of ``civitai-downloader``.

The configuration is resolved once, before any subcommand runs, and the resulting
:class:`~civitai_downloader.services.runtime_config.AppContext` is handed to the handler.
:func:`cli` is the error boundary translating failures into exit codes.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from civitai_downloader import __version__
from civitai_downloader.commands import run_download, run_images
from civitai_downloader.config import split_csv
from civitai_downloader.exceptions import CivitaiDownloaderError
from civitai_downloader.services.catalog import DEFAULT_BASE_URL
from civitai_downloader.services.runtime_config import FlagConfig, build_context

logger = logging.getLogger(__name__)

SUCCESS = 0
GENERAL_ERROR = 1
UNEXPECTED_ERROR = 2
KEYBOARD_INTERRUPT = 130

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got {value!r}")


def _add_global_options(parser: argparse.ArgumentParser, suppress: bool = False) -> None:
    """Options accepted before or after the subcommand name.

    Copies attached to subcommands use ``SUPPRESS`` defaults so they never hide a value
    given before the subcommand.
    """

    def default(value: object) -> object:
        return argparse.SUPPRESS if suppress else value

    parser.add_argument("--config", type=Path, default=default(None), help="Configuration file path.")
    parser.add_argument(
        "--log-api",
        dest="log_api",
        action="store_true",
        default=default(None),
        help="Log API requests/responses to api.log (overrides config).",
    )
    parser.add_argument(
        "--save-path", dest="save_path", default=default(None), help="Directory to save files (overrides config)."
    )
    parser.add_argument(
        "--api-delay",
        dest="api_delay",
        type=int,
        default=default(None),
        help="Delay between API calls in ms (overrides config, -1 uses config value).",
    )
    parser.add_argument(
        "--api-timeout",
        dest="api_timeout",
        type=int,
        default=default(None),
        help="Timeout for the API HTTP client in seconds (overrides config, -1 uses config value).",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default=default("INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Diagnostic verbosity.",
    )


def _add_catalog_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-u", "--username", action="append", required=True, help="Creator username (repeatable or comma-separated)."
    )
    parser.add_argument("-c", "--concurrency", type=int, default=4, help="Number of parallel file transfers.")
    parser.add_argument("--api-url", dest="api_url", default=DEFAULT_BASE_URL, help=argparse.SUPPRESS)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="civitai-downloader",
        description="Download models and images published by creators on Civitai.",
    )
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    _add_global_options(parser)

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    download = subparsers.add_parser("download", help="Download models published by one or more creators.")
    _add_global_options(download, suppress=True)
    _add_catalog_options(download)
    download.add_argument(
        "--base-models",
        dest="base_models",
        action="append",
        default=[],
        help="Base-model filter passed to the API (repeatable or comma-separated).",
    )
    download.add_argument("--model-info", dest="model_info", action="store_true", help="Save model info JSON.")
    download.add_argument("-y", "--yes", action="store_true", help="Skip the confirmation prompt.")
    download.set_defaults(handler=run_download)

    images = subparsers.add_parser("images", help="Download images published by one or more creators.")
    _add_global_options(images, suppress=True)
    _add_catalog_options(images)
    images.add_argument(
        "--nsfw", type=parse_bool, default=None, help="Only adult (true) or only non-adult (false) images."
    )
    images.add_argument("--metadata", action="store_true", help="Save image metadata JSON.")
    images.set_defaults(handler=run_images)

    return parser


def flags_from_args(args: argparse.Namespace) -> FlagConfig:
    """Turn parsed options into explicit optionals, mapping legacy "unset" sentinels to ``None``."""
    api_delay = args.api_delay if args.api_delay is not None and args.api_delay >= 0 else None
    api_timeout = args.api_timeout if args.api_timeout is not None and args.api_timeout > 0 else None
    return FlagConfig(
        save_path=args.save_path or None,
        log_api_requests=True if args.log_api else None,
        api_delay_ms=api_delay,
        api_client_timeout_sec=api_timeout,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return SUCCESS

    logging.basicConfig(level=args.log_level, format=LOG_FORMAT, stream=sys.stderr)

    args.username = [name for value in args.username for name in split_csv(value)]
    if hasattr(args, "base_models"):
        args.base_models = [name for value in args.base_models for name in split_csv(value)]

    context = build_context(args.config, flags_from_args(args))
    try:
        return args.handler(context, args)
    finally:
        context.close()


def cli() -> None:
    """Console-script entry point; never lets a traceback reach the user for known errors."""
    try:
        code = main()
    except CivitaiDownloaderError as exc:
        logger.error("%s", exc)
        if exc.hint:
            logger.error("Hint: %s", exc.hint)
        sys.exit(GENERAL_ERROR)
    except KeyboardInterrupt:
        logger.warning("Aborted by user.")
        sys.exit(KEYBOARD_INTERRUPT)
    except Exception:
        logger.exception("Unexpected error. Please report this issue.")
        sys.exit(UNEXPECTED_ERROR)
    sys.exit(code)
