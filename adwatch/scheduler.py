"""One independent periodic task per configured site."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .browser.pool import BrowserPool
from .bump.runner import run_bump
from .config import BumpSite, MonitorSite, entry_period, is_disabled, parse_site, site_key
from .errors import InvalidConfiguration, SelectorNotFound
from .monitor import MonitorResult, check_top_by_phone
from .notifications.gateway import NotificationGateway, Severity
from .phones import phones_set
from .state import LatchStore

logger = structlog.get_logger(__name__)

MonitorCheck = Callable[[MonitorSite, BrowserPool, Iterable[str]], Awaitable[MonitorResult]]
BumpRun = Callable[[BumpSite, BrowserPool], Awaitable[int]]

TOPIC_INIT = "init"
TOPIC_CHECK = "check"
TOPIC_BUMP = "bump"


def latch_key(site_id: str, kind: str) -> str:
    return f"{site_id}:{kind}"


class SiteScheduler:
    """Runs site ticks on their own interval and turns outcomes into alerts."""

    def __init__(
        self,
        gateway: NotificationGateway,
        latches: LatchStore,
        pool: BrowserPool,
        phones: Iterable[str],
        *,
        monitor_check: MonitorCheck = check_top_by_phone,
        bump_run: BumpRun = run_bump,
    ):
        self.gateway = gateway
        self.latches = latches
        self.pool = pool
        self.roster = phones_set(phones)
        self.monitor_check = monitor_check
        self.bump_run = bump_run
        self.scheduler = AsyncIOScheduler()
        self.jobs: dict[str, dict[str, Any]] = {}
        self.running = False

    async def _recovered_selectors(self, site_id: str) -> None:
        if self.latches.clear(latch_key(site_id, "selector")):
            await self.gateway.notify(
                site_id, TOPIC_INIT, f"✅ Selectors work again on '{site_id}'.", Severity.INFO
            )

    async def _run_monitor(self, site: MonitorSite) -> None:
        result = await self.monitor_check(site, self.pool, self.roster)
        await self._recovered_selectors(site.id)

        if result.ok:
            await self.gateway.notify(
                site.id,
                TOPIC_CHECK,
                f"✅ Top position held on '{site.id}'. Phone: {result.found_phone or 'n/a'}",
                Severity.INFO,
            )
        else:
            await self.gateway.notify(
                site.id,
                TOPIC_CHECK,
                f"⚠️ Top position lost on '{site.id}'. Found phone: {result.found_phone or 'n/a'}",
                Severity.ALERT,
            )

    async def _run_bump(self, site: BumpSite) -> None:
        pressed = await self.bump_run(site, self.pool)
        await self._recovered_selectors(site.id)

        if pressed > 0:
            # Every run reports its count.
            await self.gateway.notify(
                site.id, TOPIC_BUMP, f"🔁 {site.id}: renewed {pressed} listing(s).", Severity.INFO, force=True
            )
        else:
            await self.gateway.notify(
                site.id, TOPIC_BUMP, f"⚠️ {site.id}: no button could be pressed.", Severity.ALERT
            )

    async def tick(self, entry: Any, key: str) -> None:
        """One scheduled run for a site. Never raises."""
        log = logger.bind(site_id=key, phase="config")
        try:
            try:
                site = parse_site(entry)
            except InvalidConfiguration as exc:
                log.warning("Invalid site configuration; skipping", reason=exc.reason)
                if self.latches.mark_once(latch_key(key, "badcfg")):
                    await self.gateway.notify(
                        key, TOPIC_INIT, f"⚠️ Invalid configuration for '{key}': {exc.reason}", Severity.ERROR
                    )
                return
            self.latches.clear(latch_key(key, "badcfg"))

            log = log.bind(phase=site.type)
            if isinstance(site, MonitorSite):
                await self._run_monitor(site)
            else:
                await self._run_bump(site)

            # Next failure is a new episode.
            self.latches.clear(latch_key(key, "error"))
        except SelectorNotFound as exc:
            log.warning("Selector not found", stage=exc.stage, selector=exc.selector)
            if self.latches.mark_once(latch_key(key, "selector")):
                await self.gateway.notify(
                    key,
                    TOPIC_INIT,
                    f"❌ Selector not found on '{exc.site_id}' (stage={exc.stage}): `{exc.selector}`. Will retry.",
                    Severity.ERROR,
                )
        except Exception as exc:
            log.exception("Site tick failed", error=f"{type(exc).__name__}: {exc}")
            if self.latches.mark_once(latch_key(key, "error")):
                await self.gateway.notify(key, TOPIC_INIT, f"❌ Error on '{key}': {exc}", Severity.ERROR)

    def _entries(self, entries: Iterable[Any]) -> list[tuple[str, Any]]:
        out: list[tuple[str, Any]] = []
        seen: set[str] = set()
        for index, entry in enumerate(entries):
            key = site_key(entry, index)
            if key in seen:
                logger.warning("Duplicate site id", site_id=key, index=index)
                key = f"{key}#{index}"
            seen.add(key)
            if is_disabled(entry):
                logger.info("Site disabled; not scheduled", site_id=key)
                continue
            out.append((key, entry))
        return out

    def add_site(self, key: str, entry: Any) -> None:
        seconds = entry_period(entry)
        job = self.scheduler.add_job(
            func=self.tick,
            trigger=IntervalTrigger(seconds=seconds),
            id=key,
            args=(entry, key),
            name=key,
            next_run_time=datetime.now(),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.jobs[key] = {"job": job, "seconds": seconds, "added_at": datetime.utcnow()}
        logger.info("Scheduled site", site_id=key, interval_seconds=seconds)

    async def start(self, entries: Iterable[Any]) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return
        for key, entry in self._entries(entries):
            self.add_site(key, entry)
        self.scheduler.start()
        self.running = True
        logger.info("Site scheduler started", sites=len(self.jobs))

    async def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Site scheduler stopped")

    async def run_once(self, entries: Iterable[Any]) -> None:
        """Run every enabled site's tick once, concurrently."""
        await asyncio.gather(*(self.tick(entry, key) for key, entry in self._entries(entries)))
