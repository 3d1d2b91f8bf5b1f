"""
core/config.py -- Runtime settings for the Keygate HTTP service.

Settings is a pydantic-settings model: each field is read from the
environment variable of the same name (upper-cased), then from .env, then
falls back to the default below. Values are coerced and validated on load,
so a typo such as TOKEN_EXPIRE_SECONDS=abc fails at startup.

get_settings() is wrapped in lru_cache and returns one shared instance per
process. Tests either construct Settings(...) directly or call
get_settings.cache_clear() after changing the environment.

The library classes (AdminStore, SessionResolver, ...) never read Settings
themselves; they take explicit arguments. Settings only feeds the HTTP
adapter in api/, which wires the objects together at startup.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("keygate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'keygate_auth.db'}"


class Settings(BaseSettings):
    """Keygate service settings. Every field has a default, so an empty environment works."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL
    # Empty string disables the look-aside cache; every lookup then hits the DB.
    redis_url: str = ""
    # Run install/upgrade on startup. Turn off once the schema is known good
    # to skip the probe query on every boot.
    check_tables: bool = True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    token_name: str = "keygate"
    # Standard session lifetime. Values below 600 are rejected by
    # SessionResolver at startup.
    token_expire_seconds: int = 7200
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    require_email: bool = True
    # POST /byway trusts the client-supplied service name. Only enable it
    # behind a proxy that sets the identity, or for local testing.
    byway_enabled: bool = False

    @field_validator("token_name")
    @classmethod
    def strip_token_name(cls, value: str) -> str:
        return value.strip()


@lru_cache
def get_settings() -> Settings:
    """Process-wide Settings, loaded on first call."""
    settings = Settings()
    logger.debug(
        "Settings loaded (db=%s, cache=%s, token_name=%s)",
        settings.database_url.split(":", 1)[0],
        "on" if settings.redis_url else "off",
        settings.token_name,
    )
    return settings
