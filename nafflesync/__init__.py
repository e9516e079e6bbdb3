"""
nafflesync — Real-time Discord ↔ Naffles Platform Synchronization
==================================================================
Keeps Discord messages (task and allowlist embeds) consistent with the
entities owned by the Naffles platform API.  Chat interactions pass a
policy gate before they reach the sync engine, platform webhooks arrive
through a signed HTTP ingress, and a monitor watches the whole pipeline.

Package layout::

    nafflesync/
    ├── config.py          # .env + YAML → typed Python config
    ├── constants.py       # Defaults, KV keys, per-command permissions
    ├── errors.py          # Error taxonomy + HTTP classification
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # Entity→message index, server mappings, audit log
    ├── engine/
    │   ├── clock.py       # Clock + timers facade (deterministic in tests)
    │   ├── operations.py  # SyncOperation, BatchEnvelope, typed payloads
    │   ├── merge.py       # Same-key batch merge rules
    │   ├── sync_engine.py # Queue, retries, cooldowns, batches
    │   ├── policy.py      # Interaction admission checks
    │   └── anomaly.py     # Sliding-window anomaly detection
    ├── services/
    │   ├── platform_client.py # httpx client for the platform API
    │   ├── kv_cache.py        # redis.asyncio KV cache
    │   ├── record_store.py    # Narrow durable-store interface
    │   ├── embeds.py          # Discord embed builders
    │   ├── embed_updates.py   # In-place embed refresh
    │   ├── notifications.py   # Channel notices + admin DMs
    │   ├── throttle.py        # Per-channel notification throttle
    │   ├── monitor.py         # Health, alerts, recommendations
    │   └── webhook_service.py # Event → sync operation mapping
    ├── api/
    │   ├── main.py        # FastAPI webhook app
    │   ├── signature.py   # HMAC-SHA256 verification
    │   ├── rate_limit.py  # Per-peer request limiting
    │   └── routes/        # /webhook, /webhook/batch, /health, /metrics, /register
    └── bot/
        ├── core.py        # Bot subclass, wiring, graceful shutdown
        └── cogs/
            ├── commands.py   # Policy-gated slash commands
            ├── membership.py # Mass-join detection
            └── tasks.py      # Scheduler + monitor loops
"""

__version__ = "0.1.0"
