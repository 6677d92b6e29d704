"""Messenger application configuration.

Loads settings from two YAML files:
  * messenger.settings.yaml - non-secret configuration
  * messenger.secrets.yaml  - secrets (never committed)

The JWT signing secret may also be supplied through the
``MESSENGER_JWT_SECRET`` environment variable, which wins over the file.
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

SETTINGS_FILE = Path("messenger.settings.yaml")
SECRETS_FILE  = Path("messenger.secrets.yaml")

JWT_SECRET_ENV = "MESSENGER_JWT_SECRET"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class StoreSettings(BaseModel):
    """Where the DuckDB database lives. ``:memory:`` keeps it in-process."""
    db_path: str = "messenger.duckdb"


class AuthSettings(BaseModel):
    algorithm:   str = "HS256"
    user_claim:  str = "userId"
    query_param: str = "token"


class RealtimeSettings(BaseModel):
    """Behaviour of the WebSocket channel.

    Attributes:
        report_errors: Send an ``error`` event back to the requesting
            connection when an event is dropped (non-participant, non-sender,
            malformed payload, store failure). Off by default: dropped events
            are silent and only logged server-side.
        deleted_placeholder: Content shown in history for messages deleted
            for everyone.
    """
    report_errors:       bool = False
    deleted_placeholder: str  = "[Message deleted]"


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    store:    StoreSettings    = Field(default_factory=StoreSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_db_path(db_path: str, settings_path: Path) -> str:
    """Resolve a relative store path.

    When the settings file lives in a ``config/`` directory the path is taken
    relative to the project root (the parent of ``config/``); otherwise it is
    relative to the directory holding the settings file.
    """
    if db_path == ":memory:" or Path(db_path).is_absolute():
        return db_path
    settings_dir = settings_path.resolve().parent
    base = settings_dir.parent if settings_dir.name == "config" else settings_dir
    return str(base / db_path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path = Path(secrets_path) if secrets_path else settings_path.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    if settings_path.exists():
        config.store.db_path = _resolve_db_path(config.store.db_path, settings_path)

    env_secret = os.environ.get(JWT_SECRET_ENV)
    if env_secret:
        config.secrets.jwt.secret_key = env_secret

    logger.info(
        "Config loaded (server=%s:%s, store=%s, report_errors=%s)",
        config.server.host,
        config.server.port,
        config.store.db_path,
        config.realtime.report_errors,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace the process-wide config (``None`` forces a reload)."""
    global _config
    _config = config
