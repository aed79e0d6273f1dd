from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
from pydantic import ValidationError

from civitai_downloader.config import EnvConfig
from civitai_downloader.exceptions import ConfigurationError
from civitai_downloader.models.schemas import FileConfig
from civitai_downloader.transport import select_transport

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.toml"
DEFAULT_API_DELAY_MS = 200
DEFAULT_API_CLIENT_TIMEOUT_SEC = 60
USER_AGENT = "civitai-downloader"


@dataclass(frozen=True)
class FlagConfig:
    """Values given explicitly on the command line; ``None`` means the flag was not supplied."""

    save_path: Optional[str] = None
    log_api_requests: Optional[bool] = None
    api_delay_ms: Optional[int] = None
    api_client_timeout_sec: Optional[int] = None


@dataclass(frozen=True)
class EffectiveConfig:
    save_path: Optional[str]
    log_api_requests: bool
    api_delay_ms: int
    api_client_timeout_sec: int
    api_key: Optional[str] = field(default=None, repr=False)
    config_file: Optional[Path] = None
    extra: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def api_delay_seconds(self) -> float:
        return self.api_delay_ms / 1000


@dataclass(frozen=True)
class AppContext:
    """Settings and transport shared by every subcommand of one invocation."""

    config: EffectiveConfig
    transport: httpx.BaseTransport

    def http_client(self, **kwargs: Any) -> httpx.Client:
        headers = {"User-Agent": USER_AGENT}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        headers.update(kwargs.pop("headers", {}))
        return httpx.Client(
            transport=self.transport,
            timeout=self.config.api_client_timeout_sec,
            headers=headers,
            follow_redirects=True,
            **kwargs,
        )

    def close(self) -> None:
        self.transport.close()


def _home_directory() -> Path:
    try:
        return Path.home()
    except (RuntimeError, KeyError) as exc:
        raise ConfigurationError(
            f"Unable to determine the home directory: {exc}",
            hint="Pass --config with an explicit path to the configuration file.",
        ) from exc


def discover_config_file(
    explicit: Optional[Path] = None,
    *,
    home_dir: Optional[Path] = None,
    cwd: Optional[Path] = None,
) -> Optional[Path]:
    """Return the config file to load.

    An explicit path is returned as-is, even when it does not exist. Otherwise the home
    directory and then the working directory are searched for ``config.toml``.
    """
    if explicit is not None:
        return Path(explicit).expanduser()

    search_path = [home_dir if home_dir is not None else _home_directory(), cwd if cwd is not None else Path.cwd()]
    for directory in search_path:
        candidate = Path(directory) / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def _normalize_keys(raw: Mapping[str, Any]) -> Dict[str, Any]:
    known = set(FileConfig.model_fields)
    normalized: Dict[str, Any] = {}
    for key, value in raw.items():
        lowered = key.lower()
        normalized[lowered if lowered in known else key] = value
    return normalized


def load_file_config(path: Optional[Path]) -> Tuple[FileConfig, Optional[Path]]:
    """Load the config file layer, degrading to an empty layer on any read problem.

    Returns the parsed layer and the path actually used (``None`` when nothing was read).
    Values that fail validation are dropped one by one so that the rest of the file
    still applies.
    """
    if path is None:
        logger.warning("Config file not found. Using defaults and flags.")
        return FileConfig(), None
    if not path.is_file():
        logger.warning("Config file %s not found. Using defaults and flags.", path)
        return FileConfig(), None

    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        logger.warning("Error reading config file %s: %s", path, exc)
        return FileConfig(), None

    data = _normalize_keys(raw)
    try:
        file_config = FileConfig.model_validate(data)
    except ValidationError as exc:
        invalid = {error["loc"][0] for error in exc.errors() if error["loc"]}
        logger.warning("Ignoring invalid values in config file %s: %s", path, ", ".join(sorted(map(str, invalid))))
        file_config = FileConfig.model_validate({key: value for key, value in data.items() if key not in invalid})

    logger.info("Using configuration file: %s", path)
    return file_config, path


def load_env_config() -> EnvConfig:
    """Read the environment layer, ignoring only the variables that fail validation."""
    try:
        return EnvConfig()
    except ValidationError as exc:
        invalid = sorted({str(error["loc"][0]) for error in exc.errors() if error["loc"]})
        logger.warning("Ignoring invalid configuration environment variables: %s", ", ".join(invalid).upper())
        # Init values win over the environment, so the invalid variables read as unset.
        return EnvConfig(**{name: None for name in invalid})


def _first_set(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def resolve_config(
    config_path: Optional[Path] = None,
    flags: Optional[FlagConfig] = None,
    *,
    env: Optional[EnvConfig] = None,
    home_dir: Optional[Path] = None,
    cwd: Optional[Path] = None,
) -> EffectiveConfig:
    """Merge flags, environment, config file and defaults, field by field, in that order."""
    flags = flags or FlagConfig()
    if env is None:
        env = load_env_config()
    file_config, used_path = load_file_config(discover_config_file(config_path, home_dir=home_dir, cwd=cwd))

    config = EffectiveConfig(
        save_path=_first_set(flags.save_path, env.savepath, file_config.savepath),
        log_api_requests=_first_set(flags.log_api_requests, env.logapirequests, file_config.logapirequests, False),
        api_delay_ms=_first_set(flags.api_delay_ms, env.apidelayms, file_config.apidelayms, DEFAULT_API_DELAY_MS),
        api_client_timeout_sec=_first_set(
            flags.api_client_timeout_sec,
            env.apiclienttimeoutsec,
            file_config.apiclienttimeoutsec,
            DEFAULT_API_CLIENT_TIMEOUT_SEC,
        ),
        api_key=_first_set(env.apikey, file_config.apikey),
        config_file=used_path,
        extra=MappingProxyType(dict(file_config.model_extra or {})),
    )
    logger.debug("Effective configuration: %s", config)
    return config


def build_context(
    config_path: Optional[Path] = None,
    flags: Optional[FlagConfig] = None,
    *,
    env: Optional[EnvConfig] = None,
    base_transport: Optional[httpx.BaseTransport] = None,
    home_dir: Optional[Path] = None,
    cwd: Optional[Path] = None,
) -> AppContext:
    """Resolve the configuration once and select the transport every API call will use."""
    config = resolve_config(config_path, flags, env=env, home_dir=home_dir, cwd=cwd)
    return AppContext(config=config, transport=select_transport(config, base_transport))
