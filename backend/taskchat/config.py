"""Task chat relay configuration.

Loads settings from a single YAML file (``taskchat.settings.yaml`` by
default, or the path in ``TASKCHAT_SETTINGS``) into pydantic models.

A few deployment values can be overridden from the environment:
  * PORT          -> server.port
  * APP_BASE_URL  -> server.public_base_url
  * CORS_ORIGIN   -> server.allowed_origins (single origin)
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("taskchat.settings.yaml")
SETTINGS_ENV_VAR = "TASKCHAT_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s (using defaults)", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str            = "0.0.0.0"
    port:            int            = 3001
    public_base_url: Optional[str]  = None
    allowed_origins: List[str]      = Field(default_factory=lambda: ["*"])

    @property
    def base_url(self) -> str:
        """Public base URL used when building attachment links."""
        if self.public_base_url:
            return self.public_base_url.rstrip("/")
        return f"http://localhost:{self.port}"


class UploadSettings(BaseModel):
    dir:                 str = "uploads"
    url_prefix:          str = "uploads"
    max_file_size_bytes: int = 10 * 1024 * 1024
    max_files:           int = 5

    @field_validator("url_prefix")
    @classmethod
    def _strip_slashes(cls, value: str) -> str:
        return value.strip("/")

    @field_validator("max_file_size_bytes", "max_files")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value


class RoomSettings(BaseModel):
    history_limit:             int             = 100
    # None keeps empty rooms forever.
    idle_eviction_seconds:     Optional[float] = None
    eviction_interval_seconds: float           = 300.0

    @field_validator("history_limit")
    @classmethod
    def _limit_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("history_limit must be positive")
        return value


class LoggingSettings(BaseModel):
    level: str = "info"


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    uploads: UploadSettings  = Field(default_factory=UploadSettings)
    rooms:   RoomSettings    = Field(default_factory=RoomSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    server = dict(data.get("server") or {})

    port = os.environ.get("PORT")
    if port:
        server["port"] = int(port)

    base_url = os.environ.get("APP_BASE_URL")
    if base_url:
        server["public_base_url"] = base_url

    origin = os.environ.get("CORS_ORIGIN")
    if origin:
        server["allowed_origins"] = [origin]

    data["server"] = server
    return data


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings from YAML, apply env overrides and resolve paths.

    A relative ``uploads.dir`` is resolved from the settings file's
    directory so the service behaves the same whatever the working
    directory is.
    """
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    settings_path = Path(settings_path)

    data = _apply_env_overrides(_load_yaml(settings_path))
    config = AppConfig(**data)

    upload_dir = Path(config.uploads.dir)
    if not upload_dir.is_absolute():
        config.uploads.dir = str(settings_path.resolve().parent / upload_dir)

    logger.info(
        "Settings loaded (server=%s:%s, base_url=%s, uploads=%s, history_limit=%d)",
        config.server.host,
        config.server.port,
        config.server.base_url,
        config.uploads.dir,
        config.rooms.history_limit,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration (for testing)."""
    global _config
    _config = None
