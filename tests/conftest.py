"""Shared pytest fixtures for the civitai-downloader test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from civitai_downloader.config import ContainerSettings, get_container_settings
from civitai_downloader.services.runtime_config import EffectiveConfig

RESOLVER_ENV = ("SAVEPATH", "LOGAPIREQUESTS", "APIDELAYMS", "APICLIENTTIMEOUTSEC", "APIKEY")


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep the developer's environment and .env files out of every test."""
    for name in RESOLVER_ENV:
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith("CIVITAI_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    get_container_settings.cache_clear()


@pytest.fixture
def make_config():
    def factory(**overrides) -> EffectiveConfig:
        values = {
            "save_path": None,
            "log_api_requests": False,
            "api_delay_ms": 200,
            "api_client_timeout_sec": 60,
        }
        values.update(overrides)
        return EffectiveConfig(**values)

    return factory


@pytest.fixture
def container_settings(tmp_path: Path):
    def factory(**overrides) -> ContainerSettings:
        values = {
            "username": ["alice"],
            "base_models": ["SD 1.5"],
            "export_dir": tmp_path / "export",
            "config_template": tmp_path / "config.template.toml",
            "config_path": tmp_path / "etc" / "config.toml",
            "downloader_command": "civitai-downloader",
            "shutdown_timeout": 5,
        }
        values.update(overrides)
        return ContainerSettings(**values)

    return factory
