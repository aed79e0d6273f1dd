"""Thin client for the catalog API used by the ``download`` and ``images`` subcommands.

Filters are forwarded to the API as query parameters and pagination follows the
``metadata.nextPage`` link returned by the API; nothing is filtered locally.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence
from urllib.parse import urlparse

import httpx

from civitai_downloader.exceptions import CatalogError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://civitai.com"
MODELS_ENDPOINT = "/api/v1/models"
IMAGES_ENDPOINT = "/api/v1/images"
CHUNK_SIZE = 1024 * 1024


@dataclass
class FileJob:
    url: str
    destination: Path
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class TransferSummary:
    downloaded: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0


def sanitize_name(name: str) -> str:
    sanitized = name.strip()
    sanitized = sanitized.replace("\\", "_").replace("/", "_")
    sanitized = " ".join(sanitized.split())
    allowed = "".join(char if char.isalnum() or char in ("-", "_", ".", " ") else "_" for char in sanitized)
    condensed = allowed.replace(" ", "_")
    condensed = condensed.strip("_.")
    if len(condensed) > 100:
        condensed = condensed[:100].rstrip("_")
    return condensed or "unnamed"


class CatalogClient:
    """Paginated reads and file transfers against the catalog API."""

    def __init__(self, client: httpx.Client, delay_seconds: float = 0.0, base_url: str = DEFAULT_BASE_URL) -> None:
        self.client = client
        self.delay_seconds = delay_seconds
        self.base_url = base_url.rstrip("/")

    def iter_models(self, username: str, base_models: Sequence[str] = ()) -> Iterator[Dict[str, Any]]:
        params: Dict[str, Any] = {"username": username, "limit": 100}
        if base_models:
            params["baseModels"] = list(base_models)
        yield from self._iter_items(MODELS_ENDPOINT, params)

    def iter_images(self, username: str, nsfw: Optional[bool] = None) -> Iterator[Dict[str, Any]]:
        params: Dict[str, Any] = {"username": username, "limit": 200}
        if nsfw is not None:
            params["nsfw"] = "true" if nsfw else "false"
        yield from self._iter_items(IMAGES_ENDPOINT, params)

    def _iter_items(self, endpoint: str, params: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        url: Optional[str] = f"{self.base_url}{endpoint}"
        page_params: Optional[Dict[str, Any]] = params
        first = True
        while url:
            if not first and self.delay_seconds > 0:
                time.sleep(self.delay_seconds)
            first = False
            payload = self._get_json(url, page_params)
            items = payload.get("items") or []
            logger.debug("Fetched %d items from %s", len(items), url)
            yield from items
            # The next page link already carries every query parameter.
            url = (payload.get("metadata") or {}).get("nextPage")
            page_params = None

    def _get_json(self, url: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        try:
            response = self.client.get(url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise CatalogError(
                f"Catalog request failed with HTTP {exc.response.status_code}: {url}",
                hint="Check the API key in the configuration file." if exc.response.status_code in (401, 403) else None,
            ) from exc
        except httpx.HTTPError as exc:
            raise CatalogError(f"Catalog request failed: {exc}") from exc
        except ValueError as exc:
            raise CatalogError(f"Catalog returned invalid JSON for {url}") from exc
        if not isinstance(payload, dict):
            raise CatalogError(f"Unexpected catalog response for {url}")
        return payload

    def download_file(self, job: FileJob) -> bool:
        """Fetch one file; returns ``False`` when it already exists."""
        if job.metadata is not None:
            _write_metadata(job.destination, job.metadata)
        if job.destination.exists():
            return False
        job.destination.parent.mkdir(parents=True, exist_ok=True)
        partial = job.destination.with_name(f"{job.destination.name}.{threading.get_ident()}.partial")
        try:
            with self.client.stream("GET", job.url) as response:
                response.raise_for_status()
                with partial.open("wb") as handle:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        handle.write(chunk)
            os.replace(partial, job.destination)
        except (httpx.HTTPError, OSError) as exc:
            partial.unlink(missing_ok=True)
            raise CatalogError(f"Failed to download {job.url}: {exc}") from exc
        return True

    def transfer(self, jobs: Sequence[FileJob], concurrency: int) -> TransferSummary:
        summary = TransferSummary()
        if not jobs:
            return summary
        with ThreadPoolExecutor(max_workers=max(1, concurrency)) as pool:
            futures = {pool.submit(self.download_file, job): job for job in jobs}
            for future in as_completed(futures):
                job = futures[future]
                try:
                    if future.result():
                        summary.downloaded += 1
                        logger.info("Downloaded %s", job.destination)
                    else:
                        summary.skipped += 1
                except CatalogError as exc:
                    summary.failed += 1
                    logger.warning("%s", exc)
        return summary


def _write_metadata(destination: Path, metadata: Dict[str, Any]) -> None:
    target = destination.with_name(destination.name + ".json")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(metadata, indent=2, ensure_ascii=False), encoding="utf-8")


def model_file_jobs(
    models: Iterator[Dict[str, Any]], root: Path, username: str, include_info: bool = False
) -> List[FileJob]:
    """Map each model version's primary file to its place under ``<root>/<username>/models``."""
    jobs: List[FileJob] = []
    for model in models:
        model_name = sanitize_name(str(model.get("name") or model.get("id") or "model"))
        for version in model.get("modelVersions") or []:
            files = version.get("files") or []
            primary = next((item for item in files if item.get("primary")), files[0] if files else None)
            if not primary or not primary.get("downloadUrl"):
                continue
            base_model = sanitize_name(str(version.get("baseModel") or "Other"))
            folder = root / sanitize_name(username) / "models" / base_model / model_name
            filename = sanitize_name(str(primary.get("name") or f"{version.get('id')}.safetensors"))
            metadata = {"model": {k: v for k, v in model.items() if k != "modelVersions"}, "version": version}
            jobs.append(
                FileJob(
                    url=primary["downloadUrl"],
                    destination=folder / filename,
                    metadata=metadata if include_info else None,
                )
            )
    return jobs


def image_file_jobs(
    images: Iterator[Dict[str, Any]], root: Path, username: str, nsfw: Optional[bool], include_metadata: bool = False
) -> List[FileJob]:
    bucket = "all" if nsfw is None else ("nsfw" if nsfw else "sfw")
    folder = root / sanitize_name(username) / "images" / bucket
    jobs: List[FileJob] = []
    for image in images:
        url = image.get("url")
        if not url:
            continue
        suffix = Path(urlparse(url).path).suffix or ".jpeg"
        destination = folder / f"{sanitize_name(str(image.get('id') or 'image'))}{suffix}"
        jobs.append(FileJob(url=url, destination=destination, metadata=image if include_metadata else None))
    return jobs
