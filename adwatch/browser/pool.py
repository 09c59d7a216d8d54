"""Per-site Playwright browser sessions.

Each site gets its own persistent Chromium profile so sessions (cookies,
logins) survive restarts. Ephemeral sessions use a throwaway profile that is
removed when the session ends.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

import structlog
from playwright.async_api import BrowserContext, Error as PlaywrightError, Page, async_playwright

from ..config import RuntimeSettings

logger = structlog.get_logger(__name__)

Launcher = Callable[[str, Path], Awaitable[BrowserContext]]

PROFILE_LOCK_FILES = ("SingletonLock", "SingletonCookie", "SingletonSocket")
NAVIGATION_TIMEOUT_MS = 60_000
ACTION_TIMEOUT_MS = 30_000

# Redirect tasks in flight; the event loop only keeps weak references.
_popup_tasks: set[asyncio.Task] = set()

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",
    "--no-first-run",
    "--no-default-browser-check",
    "--start-maximized",
]


def cleanup_profile_locks(profile_dir: Path) -> None:
    for name in PROFILE_LOCK_FILES:
        lock = profile_dir / name
        try:
            if lock.exists() or lock.is_symlink():
                lock.unlink()
        except OSError as exc:
            logger.warning("Failed to remove profile lock", path=str(lock), error=str(exc))


class BrowserPool:
    """Owns one long-lived browser context per site id."""

    def __init__(self, settings: RuntimeSettings, launcher: Launcher | None = None):
        self.settings = settings
        self._launcher = launcher
        self._playwright = None
        self._playwright_lock = asyncio.Lock()
        self._contexts: dict[str, BrowserContext] = {}
        self._launching: dict[str, asyncio.Task] = {}

    def profile_dir(self, site_id: str) -> Path:
        return Path(f"{self.settings.profile_dir}-{site_id}").resolve()

    async def _default_launcher(self, site_id: str, profile_dir: Path) -> BrowserContext:
        async with self._playwright_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()

        launch_kwargs: dict[str, Any] = {
            "headless": self.settings.browser_headless,
            "args": list(CHROMIUM_ARGS),
            "no_viewport": True,
        }
        if self.settings.chromium_path and os.path.exists(self.settings.chromium_path):
            launch_kwargs["executable_path"] = self.settings.chromium_path
        return await self._playwright.chromium.launch_persistent_context(str(profile_dir), **launch_kwargs)

    async def _launch(self, site_id: str, profile_dir: Path) -> BrowserContext:
        profile_dir.mkdir(parents=True, exist_ok=True)
        cleanup_profile_locks(profile_dir)
        launcher = self._launcher or self._default_launcher
        context = await launcher(site_id, profile_dir)
        logger.info("Browser session started", site_id=site_id, profile=str(profile_dir))
        return context

    async def _create(self, site_id: str) -> BrowserContext:
        context = await self._launch(site_id, self.profile_dir(site_id))

        def _on_close(*_args) -> None:
            # Closed by hand or crashed: the next acquire starts a new one.
            if self._contexts.get(site_id) is context:
                del self._contexts[site_id]
                logger.warning("Browser session closed", site_id=site_id)

        context.on("close", _on_close)
        self._contexts[site_id] = context
        return context

    async def acquire(self, site_id: str) -> BrowserContext:
        """Return the site's session, creating it at most once concurrently."""
        context = self._contexts.get(site_id)
        if context is not None:
            return context

        task = self._launching.get(site_id)
        if task is None:
            task = asyncio.ensure_future(self._create(site_id))
            self._launching[site_id] = task
            task.add_done_callback(lambda _t: self._launching.pop(site_id, None))
        return await asyncio.shield(task)

    async def new_page(self, site_id: str) -> Page:
        context = await self.acquire(site_id)
        page = await context.new_page()
        setup_page(page)
        return page

    @asynccontextmanager
    async def ephemeral(self, site_id: str) -> AsyncIterator[BrowserContext]:
        """A disposable session with its own profile, deleted afterwards."""
        profile_dir = Path(tempfile.mkdtemp(prefix=f"adwatch-{site_id}-"))
        context = None
        try:
            context = await self._launch(site_id, profile_dir)
            yield context
        finally:
            if context is not None:
                try:
                    await context.close()
                except PlaywrightError as exc:
                    logger.warning("Failed to close ephemeral session", site_id=site_id, error=str(exc))
            shutil.rmtree(profile_dir, ignore_errors=True)
            logger.info("Ephemeral session disposed", site_id=site_id)

    @asynccontextmanager
    async def page(self, site_id: str, *, ephemeral: bool = False) -> AsyncIterator[Page]:
        """Borrow a tab; it is closed afterwards, the session is kept."""
        if ephemeral:
            async with self.ephemeral(site_id) as context:
                page = await context.new_page()
                setup_page(page)
                yield page
            return

        page = await self.new_page(site_id)
        try:
            yield page
        finally:
            try:
                await page.close()
            except PlaywrightError:
                pass

    async def release(self, site_id: str) -> None:
        """Close the site's session. The profile directory is kept."""
        context = self._contexts.pop(site_id, None)
        if context is None:
            return
        try:
            await context.close()
        except PlaywrightError as exc:
            logger.warning("Failed to close browser session", site_id=site_id, error=str(exc))

    async def close(self) -> None:
        for site_id in list(self._contexts):
            await self.release(site_id)
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


def setup_page(page: Page) -> None:
    page.set_default_navigation_timeout(NAVIGATION_TIMEOUT_MS)
    page.set_default_timeout(ACTION_TIMEOUT_MS)
    attach_popup_guard(page)


def _popup_done(task: asyncio.Task) -> None:
    _popup_tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.warning("Popup redirect failed", error=str(task.exception()))


def attach_popup_guard(page: Page) -> None:
    """Follow target=_blank popups in the opener tab instead."""

    async def _redirect(popup: Page) -> None:
        url = popup.url
        try:
            await popup.close()
        except PlaywrightError:
            pass
        if url and url != "about:blank":
            try:
                await page.bring_to_front()
                await page.goto(url, wait_until="domcontentloaded")
            except PlaywrightError as exc:
                logger.debug("Popup redirect failed", url=url, error=str(exc))

    def _on_popup(popup: Page) -> None:
        task = asyncio.ensure_future(_redirect(popup))
        _popup_tasks.add(task)
        task.add_done_callback(_popup_done)

    page.on("popup", _on_popup)
