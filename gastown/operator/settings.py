"""Operator configuration loaded from GASTOWN_* environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class GastownSettings(BaseSettings):
    """Gastown operator settings.

    All fields are read from environment variables with the ``GASTOWN_``
    prefix.  For example, ``GASTOWN_LOG_LEVEL=DEBUG`` maps to ``log_level``
    and ``GASTOWN_NAMESPACE`` to ``namespace``.
    """

    model_config = SettingsConfigDict(
        env_prefix="GASTOWN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False
    """Write one JSON object per log record instead of the text format."""

    # -- Child resources -------------------------------------------------------
    namespace: str = "gastown-system"
    """Namespace that receives the Health-Monitor and Merge-Queue of every workspace."""

    # -- Worker pod images -----------------------------------------------------
    git_image: str = "alpine/git:2.43.0"
    claude_image: str = "node:20-slim"
    telemetry_image: str = "alpine:latest"

    ssh_known_hosts: str | None = None
    """Operator-supplied ``known_hosts`` content.

    Consulted before the built-in table of pre-verified host keys.  Lines use
    the OpenSSH format (``host keytype base64key``).
    """

    # -- gt CLI ----------------------------------------------------------------
    gt_path: str = "gt"
    town_root: str = "~/gt"
    gt_timeout: float = 60.0
    gt_circuit_breaker: bool = True

    # -- Reconcile loop --------------------------------------------------------
    backoff_base: float = 5.0
    backoff_max: float = 300.0
    backoff_max_retries: int = 10
    resync_interval: float = 300.0
    """Seconds between full relists of every watched kind."""

    backoff_cleanup_interval: float = 60.0

    # -- Server ----------------------------------------------------------------
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8081

    manifests_dir: str | None = None
    """Directory of JSON manifests loaded into the object store at startup."""


def get_settings() -> GastownSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``get_settings.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> GastownSettings:
    return GastownSettings()


from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
get_settings.cache_clear = _get_settings_cached.cache_clear  # type: ignore[attr-defined]
