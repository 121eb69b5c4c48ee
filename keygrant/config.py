from __future__ import annotations

import os
import re
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

_HEADER_NAME = re.compile(r"^[A-Za-z0-9-]+$")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def parse_allow_list(raw: str | None) -> List[str]:
    """Split a comma separated login list, dropping blanks."""
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime settings for the credential service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/keygrant", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Optional JSON file the memory store persists to between restarts",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    # GitHub OAuth app
    github_client_id: str | None = env_field(None, "GITHUB_CLIENT_ID")
    github_client_secret: str | None = env_field(None, "GITHUB_CLIENT_SECRET")
    github_user_agent: str = env_field("keygrant", "GITHUB_USER_AGENT")
    identity_timeout_seconds: float = env_field(30.0, "IDENTITY_TIMEOUT_SECONDS")
    gh_allow_list: str = env_field(
        "",
        "GH_ALLOW_LIST",
        description="Comma separated GitHub logins allowed to bind tokens; empty allows everyone",
    )
    session_ttl_minutes: int = env_field(60 * 24, "SESSION_TTL_MINUTES")
    session_header: str = env_field("x-bbcp-session-id", "SESSION_HEADER")
    session_purge_interval_seconds: int = env_field(
        600,
        "SESSION_PURGE_INTERVAL_SECONDS",
        description="Interval for deleting expired session rows; 0 disables the sweeper",
    )
    reject_replayed_proofs: bool = env_field(
        False,
        "REJECT_REPLAYED_PROOFS",
        description="Remember (token_id, scope, t) triples and refuse a proof seen twice",
    )
    reactivate_revoked_tokens: bool = env_field(
        True,
        "REACTIVATE_REVOKED_TOKENS",
        description="Let a fresh init on a revoked key make it active again",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def allowed_logins(self) -> List[str]:
        return parse_allow_list(self.gh_allow_list)

    @field_validator("session_ttl_minutes")
    @classmethod
    def _validate_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("SESSION_TTL_MINUTES must be positive")
        return value

    @field_validator("session_purge_interval_seconds")
    @classmethod
    def _validate_purge_interval(cls, value: int) -> int:
        if value < 0:
            raise ValueError("SESSION_PURGE_INTERVAL_SECONDS must not be negative")
        return value

    @field_validator("session_header")
    @classmethod
    def _validate_header(cls, value: str) -> str:
        if not _HEADER_NAME.match(value):
            raise ValueError("SESSION_HEADER must be a plain HTTP header name")
        return value.lower()


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
