from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

import httpx
import structlog

from .browser.pool import BrowserPool
from .config import load_config, load_settings
from .errors import ConfigLoadError
from .notifications.gateway import NotificationGateway
from .notifications.telegram import TelegramConfig, TelegramTransport
from .scheduler import SiteScheduler
from .state import LatchStore

logger = structlog.get_logger(__name__)

CONFIG_LOAD_LATCH = "config:load"


def configure_logging(level_name: str) -> None:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    # Avoid leaking secrets (Telegram token is embedded in the Telegram API URL).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


async def run(config_path: Path, once: bool) -> int:
    settings = load_settings()
    telegram = TelegramConfig(bot_token=settings.telegram_bot_token, chat_id=settings.telegram_chat_id)
    if not telegram.configured:
        logger.warning("TELEGRAM_BOT_TOKEN or TELEGRAM_CHAT_ID is not set; alerts disabled")

    async with httpx.AsyncClient(headers={"User-Agent": "adwatch"}) as http_client:
        gateway = NotificationGateway(
            TelegramTransport(http_client, telegram),
            info_dedup_forever=settings.info_dedup_forever,
        )
        latches = LatchStore(settings.state_path)

        try:
            config = load_config(config_path)
        except ConfigLoadError as exc:
            logger.error("Failed to load site config", path=str(config_path), error=str(exc))
            if latches.mark_once(CONFIG_LOAD_LATCH):
                await gateway.send_plain(f"❌ Failed to load the site config: {exc}")
            return 1
        latches.clear(CONFIG_LOAD_LATCH)
        logger.info("Loaded sites", count=len(config.sites))

        pool = BrowserPool(settings)
        scheduler = SiteScheduler(gateway, latches, pool, config.phones)
        try:
            if once:
                await scheduler.run_once(config.sites)
            else:
                await scheduler.start(config.sites)
                logger.info("Bot started. Press Ctrl+C to stop.")
                await asyncio.Event().wait()
        finally:
            await scheduler.stop()
            await pool.close()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Classified-ad monitor and bump bot")
    parser.add_argument("--config", default=None, help="Path to the sites YAML/JSON file")
    parser.add_argument("--once", action="store_true", help="Run every site once and exit")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    args = parser.parse_args()

    settings = load_settings()
    configure_logging(args.log_level or settings.log_level)
    config_path = Path(args.config or settings.config_path)

    try:
        return asyncio.run(run(config_path, once=bool(args.once)))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
