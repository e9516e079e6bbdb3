"""
nafflesync.bot.__main__ — Entry point for ``python -m nafflesync.bot``
=======================================================================

Wiring:
1. Load .env (secrets).
2. Load the environment config and optional permissions.yaml.
3. Create the SQLAlchemy engine and ensure tables exist.
4. Connect the Redis KV cache.
5. Create the NaffleSyncBot (it builds the engine, monitor and ingress).
6. Start the bot (blocking — runs the asyncio event loop).

Run with::

    python -m nafflesync.bot
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from nafflesync.bot.core import NaffleSyncBot
from nafflesync.config import load_config
from nafflesync.database.engine import create_db_engine, init_db
from nafflesync.services.kv_cache import RedisKVCache

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("nafflesync")


def main() -> None:
    """Bootstrap and run the Naffles sync bot."""

    # 1. Environment variables (secrets).
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        logger.critical(
            "DISCORD_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # 2. Configuration.
    try:
        cfg = load_config(permissions_path=os.getenv("PERMISSIONS_FILE", "permissions.yaml"))
    except RuntimeError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    logger.info("Config loaded — platform: %s", cfg.api_base_url)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. KV cache.
    kv = RedisKVCache(cfg.redis_url)

    # 5. Bot.
    bot = NaffleSyncBot(cfg=cfg, engine=engine, kv=kv)

    # 6. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting Naffles sync bot…")
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
