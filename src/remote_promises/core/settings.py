"""Settings for remote-promises participants.

Runner and caller processes share the same handful of knobs: where to listen
or connect by default, how eagerly a connector retries after losing its peer,
the largest frame the TCP transport will accept, and how to log.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Type-checked at startup, not runtime
    - **Environment-driven:** ``REMOTE_PROMISES_*`` variables and ``.env`` files
    - **Sensible defaults:** Works out of the box for local development

Examples:
    >>> from remote_promises.core.settings import RemotePromiseSettings
    >>> s = RemotePromiseSettings(reconnect_delay=0.1, reconnect_delay_max=0.1)
    >>> s.reconnect_delay
    0.1

Tags:
    settings, configuration, pydantic, environment, remote-promises
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RemotePromiseSettings(BaseSettings):
    """Settings shared by runners, callers and transports.

    Fields
    ──────
    host                 : Default bind/connect host for TCP targets given as a bare port
    port                 : Default TCP port
    reconnect_delay      : First delay (seconds) before a connector redials
    reconnect_delay_max  : Upper bound for the doubling redial delay
    max_line_bytes       : Largest single JSON frame accepted by the TCP transport
    log_level            : Structlog log level
    log_format           : ``console``, ``json`` or ``auto``
    """

    model_config = SettingsConfigDict(
        env_prefix="REMOTE_PROMISES_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Network ──────────────────────────────────────────────────
    host: str = "127.0.0.1"
    port: int = Field(default=3000, ge=0, le=65535)

    # ── Reconnection ─────────────────────────────────────────────
    reconnect_delay: float = Field(default=1.0, gt=0)
    reconnect_delay_max: float = Field(default=5.0, gt=0)

    # ── Framing ──────────────────────────────────────────────────
    max_line_bytes: int = Field(default=16 * 1024 * 1024, gt=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "console"

    @model_validator(mode="after")
    def _check_reconnect_window(self) -> RemotePromiseSettings:
        if self.reconnect_delay_max < self.reconnect_delay:
            raise ValueError("reconnect_delay_max must be >= reconnect_delay")
        return self


_settings_cache: dict[str, RemotePromiseSettings] = {}


def get_settings(*, _force_reload: bool = False) -> RemotePromiseSettings:
    """Load, validate, and cache the process-wide settings.

    Args:
        _force_reload: Bypass cache and re-read the environment.
    """
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]

    settings = RemotePromiseSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = ["RemotePromiseSettings", "get_settings", "clear_settings_cache"]
