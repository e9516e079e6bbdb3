"""
nafflesync.bot.core — Bot Instance & Wiring
============================================

**Why this file exists:**
The bot process hosts everything: the discord.py client, the sync engine,
the monitor, the policy layer and the FastAPI webhook ingress (served by
uvicorn on the same event loop).  :class:`NaffleSyncBot` builds each
collaborator once and exposes it as an attribute so every Cog reaches
them via ``self.bot.*``:

- ``bot.sync_engine`` / ``bot.monitor`` / ``bot.webhooks``
- ``bot.policy`` / ``bot.anomalies``
- ``bot.store`` / ``bot.platform`` / ``bot.kv``

Startup order (``setup_hook``): restore persisted sync operations, start
the notification drain, load the cogs, start the ingress, then register
the ingress URL with the platform if one is configured.  ``close()``
unwinds the same steps and lets the engine persist unfinished work.
"""

from __future__ import annotations

import asyncio
import logging
import os

import discord
import uvicorn
from discord.ext import commands
from sqlalchemy import Engine

from nafflesync.api.main import create_app
from nafflesync.api.rate_limit import PeerRateLimiter
from nafflesync.config import NaffleSyncConfig
from nafflesync.engine.anomaly import AnomalyDetector, AnomalyEvent
from nafflesync.engine.policy import PolicyLayer
from nafflesync.engine.sync_engine import SyncEngine
from nafflesync.errors import PlatformError
from nafflesync.services.embed_updates import EmbedRefresher
from nafflesync.services.kv_cache import KVCache
from nafflesync.services.monitor import SyncMonitor
from nafflesync.services.notifications import Notifier
from nafflesync.services.platform_client import PlatformClient
from nafflesync.services.record_store import SqlRecordStore
from nafflesync.services.sync_service import SyncService
from nafflesync.services.throttle import NotificationThrottle
from nafflesync.services.webhook_service import EventType, WebhookService

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "nafflesync.bot.cogs.commands",
    "nafflesync.bot.cogs.membership",
    "nafflesync.bot.cogs.tasks",
]


class NaffleSyncBot(commands.Bot):
    """Custom Bot subclass that carries the sync stack.

    Parameters
    ----------
    cfg:
        The parsed :class:`NaffleSyncConfig`.
    engine:
        A SQLAlchemy :class:`Engine` for the durable record store.
    kv:
        The ephemeral KV cache (Redis in production).
    """

    def __init__(self, cfg: NaffleSyncConfig, engine: Engine, kv: KVCache) -> None:
        intents = discord.Intents.default()
        intents.members = True            # Privileged: join tracking, admin fan-out
        intents.presences = False

        super().__init__(command_prefix=commands.when_mentioned, intents=intents)

        self.cfg = cfg
        self.engine = engine
        self.kv = kv

        # --- I/O collaborators -----------------------------------------------
        self.store = SqlRecordStore(engine)
        self.platform = PlatformClient(cfg.api_base_url, cfg.api_key, timeout=cfg.platform_timeout)
        self.throttle = NotificationThrottle()
        self.notifier = Notifier(self, self.store, self.throttle)

        # --- Sync engine + monitor -------------------------------------------
        executor = SyncService(
            self.platform,
            EmbedRefresher(self, self.store, self.platform),
            self.notifier,
            notify_on_status_change=cfg.sync.notify_on_status_change,
        )
        self.sync_engine = SyncEngine(executor, cfg.sync, kv=kv)
        self.monitor = SyncMonitor(
            self.sync_engine, kv=kv, settings=cfg.monitor, alert_sink=self.notifier.critical_alert,
        )
        self.sync_engine.add_listener(self.monitor.record_event)

        # --- Policy layer ----------------------------------------------------
        self.anomalies = AnomalyDetector()
        self.anomalies.add_listener(self._audit_anomaly)
        self.policy = PolicyLayer(
            self.anomalies,
            guild_overrides=cfg.guild_overrides,
            audit_sink=self.store.record_audit,
        )

        # --- Webhook ingress -------------------------------------------------
        self.webhooks = WebhookService(
            engine=self.sync_engine, notifier=self.notifier, monitor=self.monitor,
        )
        self.rate_limiter = PeerRateLimiter(cfg.webhook_max_requests_per_minute)
        self.ingress = create_app(
            self.webhooks,
            webhook_secret=cfg.webhook_secret,
            rate_limiter=self.rate_limiter,
            kv=kv,
            db_engine=engine,
            discord_ready=self.is_ready,
        )
        self._ingress_server: uvicorn.Server | None = None
        self._ingress_task: asyncio.Task | None = None

    async def _audit_anomaly(self, event: AnomalyEvent) -> None:
        await self.store.record_audit(
            category="anomaly",
            action=event.type.value,
            subject=event.user_id,
            severity=event.severity.value,
            details={"guildId": event.guild_id, **event.details},
        )

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Called once before the bot connects to Discord."""
        restored = await self.sync_engine.restore()
        if restored:
            logger.info("Restored %d pending sync operation(s)", restored)

        self.throttle.start()

        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

        await self._start_ingress()
        await self._register_with_platform()

    async def on_ready(self) -> None:
        assert self.user is not None
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

        dev_guild_id = os.getenv("DEV_GUILD_ID")
        if dev_guild_id:
            guild = discord.Object(id=int(dev_guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("Synced %d commands to dev guild %s", len(synced), dev_guild_id)
        else:
            synced = await self.tree.sync()
            logger.info("Synced %d commands globally", len(synced))

    async def close(self) -> None:
        """Graceful shutdown: drain the engine, persist leftovers, close clients."""
        logger.info("Bot shutting down…")
        await self._stop_ingress()
        try:
            persisted = await self.sync_engine.shutdown()
            logger.info("Persisted %d unfinished sync operation(s)", persisted)
        except Exception:
            logger.exception("Sync engine shutdown failed")
        await self.monitor.shutdown()
        self.throttle.stop()
        await self.platform.close()
        await self.kv.close()
        await super().close()

    # -----------------------------------------------------------------------
    # Webhook ingress
    # -----------------------------------------------------------------------
    async def _start_ingress(self) -> None:
        config = uvicorn.Config(
            self.ingress,
            host="0.0.0.0",
            port=self.cfg.webhook_port,
            log_config=None,
        )
        self._ingress_server = uvicorn.Server(config)
        self._ingress_task = asyncio.create_task(self._ingress_server.serve(), name="webhook-ingress")
        logger.info("Webhook ingress listening on port %d", self.cfg.webhook_port)

    async def _stop_ingress(self) -> None:
        if self._ingress_server is None or self._ingress_task is None:
            return
        self._ingress_server.should_exit = True
        try:
            await asyncio.wait_for(self._ingress_task, timeout=5)
        except (TimeoutError, asyncio.CancelledError):
            self._ingress_task.cancel()
        self._ingress_server = None
        self._ingress_task = None

    async def _register_with_platform(self) -> None:
        """Announce the ingress URL to the platform.  Never fatal."""
        if not self.cfg.webhook_public_url:
            return
        url = f"{self.cfg.webhook_public_url}/webhook"
        try:
            await self.platform.register_webhook(url, [e.value for e in EventType], self.cfg.webhook_secret)
            logger.info("Registered webhook endpoint %s with the platform", url)
        except PlatformError as exc:
            logger.warning("Webhook registration failed: %s", exc)
