"""Cosmic Chat application configuration.

Loads settings from two YAML files:
  * cosmic.settings.yaml  - non-secret configuration
  * cosmic.secrets.yaml   - secrets such as seed account passwords (never committed)

Both files are optional; every field has a default so the backend starts
with an in-memory store when nothing is configured.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("cosmic.settings.yaml")
SECRETS_FILE  = Path("cosmic.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class SeedAccount(BaseModel):
    """A pre-provisioned login, handy for demos and local development."""
    email:        str
    password:     str
    display_name: str
    user_id:      Optional[str] = None
    avatar_ref:   Optional[str] = None


class Secrets(BaseModel):
    seed_accounts: List[SeedAccount] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    """Where the durable message log lives."""
    backend: Literal["memory", "duckdb"] = "memory"
    path:    str                         = "cosmic_chat.duckdb"


class AuthSettings(BaseModel):
    session_ttl_minutes:  int = 24 * 60
    min_password_length:  int = 8
    bcrypt_rounds:        int = 12


class RoomSettings(BaseModel):
    unique_names:           bool = False
    min_name_length:        int  = 3
    max_name_length:        int  = 30
    max_description_length: int  = 100


class MessagingSettings(BaseModel):
    typing_ttl_seconds:             float = 3.0
    # Expired typers are pushed at most this long after their TTL; 0 disables the sweeper
    typing_sweep_interval_seconds:  float = 0.5
    presence_linger_seconds:        float = 5.0
    default_page_size:              int   = 50
    max_page_size:                  int   = 100
    max_body_length:                int   = 4000

    @field_validator("typing_ttl_seconds", "presence_linger_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value


class GatewaySettings(BaseModel):
    max_queue_size:         int   = 256
    delivery_retries:       int   = 3
    retry_backoff_seconds:  float = 0.05
    transient_retry_ms:     int   = 1000
    replay_timeout_seconds: float = 5.0


class AppConfig(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    storage:   StorageSettings   = Field(default_factory=StorageSettings)
    auth:      AuthSettings      = Field(default_factory=AuthSettings)
    rooms:     RoomSettings      = Field(default_factory=RoomSettings)
    messaging: MessagingSettings = Field(default_factory=MessagingSettings)
    gateway:   GatewaySettings   = Field(default_factory=GatewaySettings)
    secrets:   Secrets           = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object.

    A relative ``storage.path`` is resolved against the directory holding the
    settings file, so the database lands next to its configuration no matter
    where the process was started from.
    """
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    storage_path = Path(config.storage.path)
    if not storage_path.is_absolute():
        config.storage.path = str(settings_path.parent.resolve() / storage_path)

    logger.info(
        "Settings loaded (server=%s:%s, storage=%s, seed_accounts=%d)",
        config.server.host,
        config.server.port,
        config.storage.backend,
        len(config.secrets.seed_accounts),
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace the cached configuration (``None`` forces a reload)."""
    global _config
    _config = config
