from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_BASE_MODELS: List[str] = [
    "SD 1.5",
    "SDXL 1.0",
    "Pony",
    "Flux.1 D",
    "Illustrious",
    "NoobAI",
    "Hunyuan Video",
    "Wan Video",
    "Other",
]


def split_csv(value: object) -> List[str]:
    """Split a comma-separated value, dropping blanks."""
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class EnvConfig(BaseSettings):
    """Environment layer of the CLI configuration.

    Variable names are the upper-cased config file keys (``SAVEPATH``, ``APIDELAYMS``...).
    Every field is optional so that an unset variable never hides a file value.
    """

    model_config = SettingsConfigDict(case_sensitive=False, env_ignore_empty=True, extra="ignore")

    savepath: Optional[str] = None
    logapirequests: Optional[bool] = None
    apidelayms: Optional[int] = Field(None, ge=0)
    apiclienttimeoutsec: Optional[int] = Field(None, gt=0)
    apikey: Optional[str] = None

    @field_validator("savepath", "apikey", mode="before")
    @classmethod
    def blank_as_unset(cls, value: Optional[str]) -> Optional[str]:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ContainerSettings(BaseSettings):
    """Settings of the container runtime, parsed from ``CIVITAI_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="CIVITAI_", env_file=".env", env_file_encoding="utf-8", extra="ignore")

    username: Annotated[List[str], NoDecode] = Field(
        default_factory=list, description="Comma-separated creator usernames, processed in order."
    )
    base_models: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_BASE_MODELS),
        description="Comma-separated base-model filters applied to every username.",
    )

    export_dir: Path = Field(Path("/workspace/civitai-export"), description="Output tree served by the web server.")
    config_template: Path = Field(
        Path("/etc/civitai/config.template.toml"), description="Template rendered with environment values at start."
    )
    config_path: Path = Field(Path("/etc/civitai/config.toml"), description="Rendered config passed to the CLI.")
    downloader_command: str = Field("civitai-downloader", description="Executable invoked for every download task.")

    concurrency: Annotated[int, Field(ge=1)] = Field(4, description="Transfer workers per download invocation.")
    archive_name: str = Field("everything.zip", description="Archive file created inside the export directory.")
    archive_owner: Optional[str] = Field(None, description="Optional 'user[:group]' given ownership of the archive.")

    web_host: str = Field("0.0.0.0", description="Host interface for the web server.")
    web_port: int = Field(8080, description="Port for the web server.")

    shutdown_timeout: Optional[float] = Field(
        30.0, description="Seconds to wait for children after a termination signal. Set to 0 to wait forever."
    )
    log_level: str = Field("INFO", description="Logging level of the supervisor and its children.")

    @field_validator("username", mode="before")
    @classmethod
    def parse_usernames(cls, value: object) -> List[str]:
        return split_csv(value)

    @field_validator("base_models", mode="before")
    @classmethod
    def parse_base_models(cls, value: object) -> List[str]:
        """Fall back to the default base models when the variable is set but empty."""
        return split_csv(value) or list(DEFAULT_BASE_MODELS)

    @field_validator("export_dir", "config_template", "config_path", mode="before")
    @classmethod
    def expand_paths(cls, value: Path) -> Path:
        return Path(value).expanduser()

    @field_validator("shutdown_timeout", mode="before")
    @classmethod
    def normalize_shutdown_timeout(cls, value: Optional[float]) -> Optional[float]:
        """Interpret falsy values as waiting without a bound."""
        if value in (None, "", "None", 0, "0"):
            return None
        return float(value)


@lru_cache(maxsize=1)
def get_container_settings() -> ContainerSettings:
    """Return a cached `ContainerSettings` instance to avoid reparsing the environment."""
    return ContainerSettings()
