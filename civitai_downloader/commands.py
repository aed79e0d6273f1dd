"""Handlers behind the ``download`` and ``images`` subcommands."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List

from civitai_downloader.exceptions import ConfigurationError
from civitai_downloader.services.catalog import CatalogClient, TransferSummary, image_file_jobs, model_file_jobs
from civitai_downloader.services.runtime_config import AppContext

logger = logging.getLogger(__name__)


def _require_save_path(context: AppContext) -> Path:
    if not context.config.save_path:
        raise ConfigurationError(
            "No save path configured.",
            hint="Set 'SavePath' in config.toml, export SAVEPATH or pass --save-path.",
        )
    root = Path(context.config.save_path)
    root.mkdir(parents=True, exist_ok=True)
    return root


def _confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _report(summary: TransferSummary, what: str) -> int:
    logger.info(
        "%s: %d downloaded, %d already present, %d failed",
        what,
        summary.downloaded,
        summary.skipped,
        summary.failed,
    )
    return 0 if summary.ok else 1


def run_download(context: AppContext, args: argparse.Namespace) -> int:
    root = _require_save_path(context)
    base_models: List[str] = args.base_models or []
    exit_code = 0
    with context.http_client() as client:
        catalog = CatalogClient(client, context.config.api_delay_seconds, base_url=args.api_url)
        for username in args.username:
            logger.info("Collecting models for %s (base models: %s)", username, ", ".join(base_models) or "any")
            jobs = model_file_jobs(catalog.iter_models(username, base_models), root, username, args.model_info)
            if not jobs:
                logger.info("No models found for %s", username)
                continue
            if not args.yes and not _confirm(f"Download {len(jobs)} files for {username}?"):
                logger.info("Skipped %s", username)
                continue
            exit_code = max(exit_code, _report(catalog.transfer(jobs, args.concurrency), f"Models for {username}"))
    return exit_code


def run_images(context: AppContext, args: argparse.Namespace) -> int:
    root = _require_save_path(context)
    exit_code = 0
    with context.http_client() as client:
        catalog = CatalogClient(client, context.config.api_delay_seconds, base_url=args.api_url)
        for username in args.username:
            logger.info("Collecting images for %s (nsfw=%s)", username, args.nsfw)
            jobs = image_file_jobs(catalog.iter_images(username, args.nsfw), root, username, args.nsfw, args.metadata)
            exit_code = max(exit_code, _report(catalog.transfer(jobs, args.concurrency), f"Images for {username}"))
    return exit_code
