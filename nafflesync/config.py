"""
nafflesync.config — Environment + YAML Configuration Loader
============================================================

**Why this file exists:**
Secrets and deployment settings (Discord token, platform API key, webhook
secret, Redis/Postgres URLs) come from the environment, loaded from
``.env`` by the entry points.  Sync engine tuning also comes from the
environment with the defaults in :mod:`nafflesync.constants`.

Per-guild command permission overrides live in an optional
``permissions.yaml`` so server admins can tighten or relax individual
commands without a redeploy::

    guilds:
      "1468816181854081229":
        admin_roles: ["1470000000000000000"]
        commands:
          naffles-create-task:
            max_uses_per_hour: 3
            required_roles: ["creators"]

Usage::

    from nafflesync.config import load_config

    cfg = load_config()
    print(cfg.api_base_url)
    print(cfg.sync.max_retries)          # 3
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from nafflesync import constants as C

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SyncSettings:
    """Sync engine timings and limits."""

    process_interval: float = C.PROCESS_INTERVAL_SECONDS
    pick_batch: int = C.PICK_BATCH
    batch_interval: float = C.BATCH_INTERVAL_SECONDS
    batch_size: int = C.BATCH_SIZE
    cleanup_interval: float = C.CLEANUP_INTERVAL_SECONDS
    max_age: float = C.MAX_OPERATION_AGE_SECONDS
    cooldown: float = C.COOLDOWN_SECONDS
    max_retries: int = C.MAX_RETRIES
    retry_delay_ms: int = C.RETRY_DELAY_MS
    persist_ttl: int = C.SHUTDOWN_PERSIST_TTL_SECONDS
    notify_on_status_change: bool = True


@dataclass(frozen=True, slots=True)
class MonitorSettings:
    """Monitor sampling cadence and alert thresholds."""

    interval: float = C.MONITOR_INTERVAL_SECONDS
    max_history: int = C.MAX_HISTORY_SIZE
    alert_cooldown: float = C.ALERT_COOLDOWN_SECONDS
    thresholds: Mapping[str, float] = field(
        default_factory=lambda: dict(C.ALERT_THRESHOLDS)
    )


@dataclass(frozen=True, slots=True)
class NaffleSyncConfig:
    """Immutable configuration for the bot, webhook ingress, and engine.

    Secrets are required; everything else falls back to the defaults in
    :mod:`nafflesync.constants`.
    """

    # Platform API
    api_base_url: str
    api_key: str

    # Webhook ingress
    webhook_secret: str
    webhook_port: int = C.WEBHOOK_PORT
    webhook_public_url: str | None = None
    webhook_max_requests_per_minute: int = C.WEBHOOK_MAX_REQUESTS_PER_MINUTE

    # Infrastructure
    redis_url: str = "redis://localhost:6379/0"
    platform_timeout: float = C.PLATFORM_TIMEOUT_SECONDS

    # Tuning
    sync: SyncSettings = field(default_factory=SyncSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)

    # Per-guild permission overrides, keyed by guild ID string
    guild_overrides: Mapping[str, dict] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _require(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "").strip()
    if not value:
        raise RuntimeError(
            f"{name} is not set.  "
            "Copy .env.example → .env and fill in the Naffles credentials."
        )
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    return int(raw) if raw not in (None, "") else default


def load_permission_overrides(path: str | Path = "permissions.yaml") -> dict[str, dict]:
    """Read per-guild command overrides from *path*.

    Returns an empty mapping when the file doesn't exist, since overrides
    are optional.  Guild IDs are normalized to strings.
    """
    overrides_path = Path(path)
    if not overrides_path.exists():
        return {}

    with open(overrides_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    guilds = raw.get("guilds") or {}
    result = {str(guild_id): dict(entry or {}) for guild_id, entry in guilds.items()}
    logger.info("Loaded permission overrides for %d guild(s)", len(result))
    return result


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(
    env: Mapping[str, str] | None = None,
    permissions_path: str | Path = "permissions.yaml",
) -> NaffleSyncConfig:
    """Build a :class:`NaffleSyncConfig` from the environment.

    Parameters
    ----------
    env:
        Mapping to read from.  Defaults to ``os.environ`` (call
        ``load_dotenv()`` first so ``.env`` values are visible).
    permissions_path:
        Optional YAML file with per-guild command overrides.

    Raises
    ------
    RuntimeError
        If a required secret is missing.
    """
    env = os.environ if env is None else env

    sync = SyncSettings(
        process_interval=_env_float(env, "SYNC_PROCESS_INTERVAL_SECONDS", C.PROCESS_INTERVAL_SECONDS),
        pick_batch=_env_int(env, "SYNC_PICK_BATCH", C.PICK_BATCH),
        batch_interval=_env_float(env, "SYNC_BATCH_INTERVAL_SECONDS", C.BATCH_INTERVAL_SECONDS),
        batch_size=_env_int(env, "SYNC_BATCH_SIZE", C.BATCH_SIZE),
        cooldown=_env_float(env, "SYNC_COOLDOWN_SECONDS", C.COOLDOWN_SECONDS),
        max_retries=_env_int(env, "SYNC_MAX_RETRIES", C.MAX_RETRIES),
        retry_delay_ms=_env_int(env, "SYNC_RETRY_DELAY_MS", C.RETRY_DELAY_MS),
        notify_on_status_change=env.get("SYNC_NOTIFY_ON_STATUS_CHANGE", "true").lower()
        not in ("0", "false", "no"),
    )
    monitor = MonitorSettings(
        interval=_env_float(env, "MONITOR_INTERVAL_SECONDS", C.MONITOR_INTERVAL_SECONDS),
    )

    return NaffleSyncConfig(
        api_base_url=_require(env, "NAFFLES_API_BASE_URL").rstrip("/"),
        api_key=_require(env, "NAFFLES_API_KEY"),
        webhook_secret=_require(env, "NAFFLES_WEBHOOK_SECRET"),
        webhook_port=_env_int(env, "WEBHOOK_PORT", C.WEBHOOK_PORT),
        webhook_public_url=(env.get("WEBHOOK_PUBLIC_URL") or "").rstrip("/") or None,
        webhook_max_requests_per_minute=_env_int(
            env, "WEBHOOK_MAX_REQUESTS_PER_MINUTE", C.WEBHOOK_MAX_REQUESTS_PER_MINUTE,
        ),
        redis_url=env.get("REDIS_URL") or "redis://localhost:6379/0",
        platform_timeout=_env_float(env, "PLATFORM_TIMEOUT_SECONDS", C.PLATFORM_TIMEOUT_SECONDS),
        sync=sync,
        monitor=monitor,
        guild_overrides=load_permission_overrides(permissions_path),
    )
