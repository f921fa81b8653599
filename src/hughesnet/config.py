"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. explicit ``config_path`` argument
2. ./hns-sync.yaml (working directory)
3. ~/.hns-sync/config.yaml (user home)

Environment variables override YAML: HNSYNC_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
When no file is found the built-in defaults are used.
"""

import json
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

_ENV_PREFIX = "HNSYNC_"
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
)


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class PortalConfig(BaseModel):
    """Legacy portal endpoints and the per-invocation crawl limits."""

    base_url: str = "https://dwayinstalls.hns.com"
    login_path: str = "/start/login.jsp?UsrAction=submit"
    home_path: str = "/start/Home.jsp"
    order_path: str = "/forms/viewservice.jsp?snb=SO_EST_SCHD&id={order_id}"
    frame_base_path: str = "/start/"
    request_limit: int = Field(default=35, ge=1)
    session_ttl_seconds: int = 172800
    request_timeout_seconds: float = 30.0
    max_secondary_pages: int = 8
    max_pagination_pages: int = 5
    harvest_start_ceiling: int = 10
    harvest_stop_ceiling: int = 15
    scan_delay_seconds: float = 0.15
    detail_delay_seconds: float = 0.2
    routing_reserve: int = 5
    max_fetch_attempts: int = Field(default=3, ge=1)
    user_modification_buffer_seconds: int = 150

    @model_validator(mode="after")
    def ceilings_ordered(self) -> "PortalConfig":
        """Harvest must be allowed to start before it is forced to stop."""
        if self.harvest_start_ceiling > self.harvest_stop_ceiling:
            raise ValueError("harvest_start_ceiling must not exceed harvest_stop_ceiling")
        return self

    @property
    def login_url(self) -> str:
        return self.base_url.rstrip("/") + self.login_path

    @property
    def home_url(self) -> str:
        return self.base_url.rstrip("/") + self.home_path

    def order_url(self, order_id: str) -> str:
        return self.base_url.rstrip("/") + self.order_path.format(order_id=order_id)


class RoutingProviderConfig(BaseModel):
    """Directions providers used for trip legs."""

    google_api_key: str = ""
    google_directions_url: str = "https://maps.googleapis.com/maps/api/directions/json"
    nominatim_url: str = "https://nominatim.openstreetmap.org/search"
    osrm_url: str = "http://router.project-osrm.org/route/v1/driving"
    geocode_ttl_seconds: int = 30 * 24 * 3600
    user_agent: str = "hns-sync/0.1 (route lookup)"


class StorageConfig(BaseModel):
    """Database location for the key-value and trip stores."""

    database_url: str | None = None


class LoggingConfig(BaseModel):
    """Host-side logging settings applied by ``configure_logging``."""

    level: str = "info"
    format: Literal["text", "json"] = "text"
    file: str | None = None


class HughesNetConfig(BaseModel):
    """Top-level configuration for the HughesNet sync engine."""

    portal: PortalConfig = PortalConfig()
    routing: RoutingProviderConfig = RoutingProviderConfig()
    storage: StorageConfig = StorageConfig()
    logging: LoggingConfig = LoggingConfig()


def _find_config_file() -> Path | None:
    candidates = [
        Path.cwd() / "hns-sync.yaml",
        Path.cwd() / "hns-sync.yml",
        Path.home() / ".hns-sync" / "config.yaml",
        Path.home() / ".hns-sync" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _coerce_env_value(value: str) -> Any:
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply HNSYNC_<SECTION>_<KEY> env var overrides to config data.

    For example, ``HNSYNC_PORTAL_REQUEST_LIMIT=50`` sets
    ``portal.request_limit``. ``HNSYNC_CREDENTIAL_KEY`` and
    ``HNSYNC_DATABASE_URL`` match no section and are left alone.
    """
    known_sections = sorted(HughesNetConfig.model_fields.keys(), key=len, reverse=True)
    for key, value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        suffix = key[len(_ENV_PREFIX):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        section_data = data.setdefault(matched_section, {})
        if isinstance(section_data, dict):
            section_data[matched_field] = _coerce_env_value(value)
    return data


def load_config(config_path: str | None = None) -> HughesNetConfig:
    """Load sync configuration from YAML with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.hns-sync/).

    Returns:
        Parsed and validated HughesNetConfig (defaults when no file exists).

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    data: dict[str, Any] = {}
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            data = _resolve_env_vars_recursive(yaml.safe_load(f) or {})

    data = _apply_env_overrides(data)
    return HughesNetConfig(**data)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(settings: LoggingConfig | None = None) -> None:
    """Install root handlers for a host process.

    The engine itself only emits records through module loggers; hosts call
    this once at startup.
    """
    settings = settings or LoggingConfig()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.file:
        log_path = Path(settings.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    if settings.format == "json":
        formatter: logging.Formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, settings.level.upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )
