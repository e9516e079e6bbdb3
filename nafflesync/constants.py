"""
nafflesync.constants — Shared Defaults & Keys
==============================================

Single source of truth for engine timings, monitor thresholds, KV key
layout, and the per-command permission defaults.  Import from here instead
of repeating literals in services and cogs.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Sync engine defaults
# ---------------------------------------------------------------------------
PROCESS_INTERVAL_SECONDS = 5.0
PICK_BATCH = 10
BATCH_INTERVAL_SECONDS = 10.0
BATCH_SIZE = 50
CLEANUP_INTERVAL_SECONDS = 60.0
MAX_OPERATION_AGE_SECONDS = 5 * 60
COOLDOWN_SECONDS = 60.0
MAX_RETRIES = 3
RETRY_DELAY_MS = 5000
SHUTDOWN_PERSIST_TTL_SECONDS = 3600

# EWMA weight given to the newest observed sync time
SYNC_TIME_EWMA_WEIGHT = 0.1

# ---------------------------------------------------------------------------
# Platform API
# ---------------------------------------------------------------------------
PLATFORM_TIMEOUT_SECONDS = 5.0
PLATFORM_SOURCE = "discord_bot"
SYNC_HEADER = "X-Discord-Bot-Sync"

# ---------------------------------------------------------------------------
# Webhook ingress
# ---------------------------------------------------------------------------
SIGNATURE_HEADER = "X-Naffles-Signature"
WEBHOOK_PORT = 3001
WEBHOOK_MAX_REQUESTS_PER_MINUTE = 100
WEBHOOK_WINDOW_SECONDS = 60
WEBHOOK_BATCH_CONCURRENCY = 10

# ---------------------------------------------------------------------------
# Monitor defaults
# ---------------------------------------------------------------------------
MONITOR_INTERVAL_SECONDS = 30.0
MAX_HISTORY_SIZE = 1000
ALERT_COOLDOWN_SECONDS = 5 * 60
RECOMMENDATION_INTERVAL_SECONDS = 5 * 60
RECOMMENDATION_CACHE_SECONDS = 10 * 60
RECOMMENDATION_WINDOW = 10
WEBHOOK_SILENCE_SECONDS = 10 * 60
TREND_THRESHOLD_PERCENT = 10.0

ALERT_THRESHOLDS: dict[str, float] = {
    "failure_rate": 0.1,
    "avg_sync_time_ms": 5000,
    "queue_size": 100,
    "cooldowns": 10,
}

# ---------------------------------------------------------------------------
# KV cache layout
# ---------------------------------------------------------------------------
SYNC_KEY_PREFIX = "sync:"
PERFORMANCE_KEY = "metrics:performance"
PERFORMANCE_TTL_SECONDS = 300
FINAL_METRICS_KEY = "metrics:final"
FINAL_METRICS_TTL_SECONDS = 86400
ALERT_KEY_PREFIX = "alerts:"
ALERT_TTL_SECONDS = 3600
SYNC_EVENTS_KEY = "events:sync"
BATCH_EVENTS_KEY = "events:batch"
WEBHOOK_EVENTS_KEY = "events:webhook"
EVENT_LIST_MAX = 1000
EVENT_LIST_TTL_SECONDS = 3600

# ---------------------------------------------------------------------------
# Policy layer
# ---------------------------------------------------------------------------
MIN_ACCOUNT_AGE_SECONDS = 7 * 24 * 3600
QUOTA_WINDOW_SECONDS = 3600
FALLBACK_COMMAND = "naffles-help"

# Capability tokens that satisfy the admin-only gate on their own
ADMIN_CAPABILITIES: tuple[str, ...] = ("administrator", "manage_guild")

# Per-command defaults.  Capability tokens are discord.Permissions attribute
# names in PascalCase, matching the names admins type into permissions.yaml.
DEFAULT_COMMAND_PERMISSIONS: dict[str, dict] = {
    "naffles-create-task": {
        "admin_only": False,
        "required_capabilities": ["SendMessages"],
        "required_roles": [],
        "cooldown_seconds": 10,
        "max_uses_per_hour": 10,
    },
    "naffles-list-tasks": {
        "admin_only": False,
        "required_capabilities": ["SendMessages"],
        "required_roles": [],
        "cooldown_seconds": 5,
        "max_uses_per_hour": 20,
    },
    "naffles-connect-allowlist": {
        "admin_only": True,
        "required_capabilities": ["ManageMessages"],
        "required_roles": [],
        "cooldown_seconds": 15,
        "max_uses_per_hour": 5,
    },
    "naffles-link-community": {
        "admin_only": True,
        "required_capabilities": ["Administrator"],
        "required_roles": [],
        "cooldown_seconds": 30,
        "max_uses_per_hour": 2,
    },
    "naffles-status": {
        "admin_only": False,
        "required_capabilities": ["SendMessages"],
        "required_roles": [],
        "cooldown_seconds": 5,
        "max_uses_per_hour": 30,
    },
    "naffles-help": {
        "admin_only": False,
        "required_capabilities": [],
        "required_roles": [],
        "cooldown_seconds": 2,
        "max_uses_per_hour": 50,
    },
    "naffles-security": {
        "admin_only": True,
        "required_capabilities": ["Administrator"],
        "required_roles": [],
        "cooldown_seconds": 30,
        "max_uses_per_hour": 10,
    },
    "naffles-post-task": {
        "admin_only": False,
        "required_capabilities": ["SendMessages"],
        "required_roles": [],
        "cooldown_seconds": 10,
        "max_uses_per_hour": 10,
    },
    "naffles-post-allowlist": {
        "admin_only": False,
        "required_capabilities": ["SendMessages"],
        "required_roles": [],
        "cooldown_seconds": 10,
        "max_uses_per_hour": 10,
    },
    "naffles-task-status": {
        "admin_only": True,
        "required_capabilities": ["ManageMessages"],
        "required_roles": [],
        "cooldown_seconds": 10,
        "max_uses_per_hour": 20,
    },
}

# ---------------------------------------------------------------------------
# Anomaly thresholds: (count, window seconds)
# ---------------------------------------------------------------------------
ANOMALY_THRESHOLDS: dict[str, tuple[int, float]] = {
    "rapid_commands": (10, 60),
    "command_abuse": (5, 300),
    "failed_permissions": (5, 300),
    "new_account_activity": (3, 3600),
    "mass_joins": (10, 300),
}
SUSPICIOUS_PATTERN_SAMPLE = 5
SUSPICIOUS_PATTERN_TOLERANCE_SECONDS = 0.1
SUSPICIOUS_PATTERN_MAX_MEAN_SECONDS = 5.0
ANOMALY_WINDOW_MAXLEN = 100
ANOMALY_RETENTION_SECONDS = 24 * 3600

# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------
STATUS_COLORS: dict[str, int] = {
    "completed": 0x00FF00,
    "active": 0x3498DB,
    "paused": 0xFFAA00,
    "cancelled": 0xE74C3C,
    "expired": 0x95A5A6,
}
DEFAULT_STATUS_COLOR = 0xFFAA00

HEALTH_EMOJI: dict[str, str] = {
    "healthy": "\U0001f7e2",   # 🟢
    "warning": "\U0001f7e1",   # 🟡
    "critical": "\U0001f534",  # 🔴
}
