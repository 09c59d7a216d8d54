from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog
from playwright.async_api import Error as PlaywrightError, Page

from ..browser.input import press
from ..browser.page_utils import is_navigation_in_flight, random_delay, wait_maybe_navigation
from ..browser.pool import BrowserPool
from ..config import BumpSite, LoginConfig
from ..errors import SelectorNotFound
from .engine import ConvergenceLoop

logger = structlog.get_logger(__name__)

SELECTOR_TIMEOUT_MS = 20_000
SUBMIT_WAIT_MS = 15_000
TARGET_SELECTOR_PREFIX = "selector:"
# (min, max) seconds
PAUSE_BEFORE_TARGET = (2.0, 2.6)
PAUSE_AFTER_RUN = (1.2, 1.6)

_CLEAR_INPUT_JS = """
el => {
  el.focus();
  el.value = '';
  el.dispatchEvent(new Event('input', {bubbles: true}));
  el.dispatchEvent(new Event('change', {bubbles: true}));
}
"""

_HIDDEN_JS = """
sel => {
  const el = document.querySelector(sel);
  return !el || el.offsetParent === null;
}
"""


async def wait_visible(page: Page, selector: str, site_id: str, stage: str) -> None:
    try:
        await page.wait_for_selector(selector, state="visible", timeout=SELECTOR_TIMEOUT_MS)
    except PlaywrightError:
        raise SelectorNotFound(site_id, selector, stage) from None


async def wait_and_type(page: Page, selector: str, value: str, site_id: str, stage: str) -> None:
    await wait_visible(page, selector, site_id, stage)
    # Masked inputs keep script-set values; clear them the way a toolkit would notice.
    await page.eval_on_selector(selector, _CLEAR_INPUT_JS)
    await page.locator(selector).first.press_sequentially(value, delay=20)


async def click_or_raise(page: Page, selector: str, site_id: str, stage: str, navigates: bool) -> None:
    await wait_visible(page, selector, site_id, stage)

    if navigates:
        try:
            async with page.expect_navigation(wait_until="networkidle"):
                await page.click(selector)
        except PlaywrightError as exc:
            # A modal instead of a navigation is fine; the caller races for it.
            logger.debug("Click did not navigate", site_id=site_id, stage=stage, error=str(exc))
        return

    try:
        await page.click(selector)
    except PlaywrightError:
        raise SelectorNotFound(site_id, selector, stage) from None


async def _wait_gone(page: Page, selector: str) -> None:
    await page.wait_for_function(_HIDDEN_JS, arg=selector, timeout=SUBMIT_WAIT_MS)


async def _submit_and_settle(page: Page, submit: Callable[[], Awaitable[None]], modal_selector: str | None) -> None:
    """Fire the submit, then wait for a navigation or the modal to go away."""

    async def _quiet(coro) -> None:
        try:
            await coro
        except PlaywrightError:
            pass

    # Watchers are armed before the submit so a fast navigation is not missed.
    watchers = {
        asyncio.ensure_future(
            _quiet(
                page.wait_for_event(
                    "framenavigated", predicate=lambda frame: frame == page.main_frame, timeout=SUBMIT_WAIT_MS
                )
            )
        )
    }
    if modal_selector:
        watchers.add(asyncio.ensure_future(_quiet(_wait_gone(page, modal_selector))))
    await asyncio.sleep(0)

    try:
        try:
            await submit()
        except PlaywrightError as exc:
            if not is_navigation_in_flight(exc):
                raise
        await asyncio.wait(watchers, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in watchers:
            task.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)


async def login(page: Page, site: BumpSite) -> None:
    cfg: LoginConfig = site.login
    await page.goto(cfg.url, wait_until="networkidle")

    if cfg.open_selector:
        await click_or_raise(page, cfg.open_selector, site.id, "open", cfg.open_click_navigates)
        if not cfg.open_click_navigates and cfg.modal_selector:
            await wait_visible(page, cfg.modal_selector, site.id, "modal")

    await wait_and_type(page, cfg.username_selector, cfg.username, site.id, "username")
    await wait_and_type(page, cfg.password_selector, cfg.password, site.id, "password")

    if cfg.submit_selector:
        selector = cfg.submit_selector
        await wait_visible(page, selector, site.id, "submit")

        async def submit() -> None:
            try:
                await page.click(selector)
            except PlaywrightError as exc:
                if is_navigation_in_flight(exc):
                    raise
                raise SelectorNotFound(site.id, selector, "submit") from None

    else:
        logger.debug("No submit control; pressing Enter", site_id=site.id)

        async def submit() -> None:
            await page.keyboard.press("Enter")

    await _submit_and_settle(page, submit, cfg.modal_selector)
    logger.info("Logged in", site_id=site.id)


async def open_target(page: Page, site: BumpSite, target: str) -> str:
    """Bring the page to a target and return the URL the loop should hold."""
    if not target.startswith(TARGET_SELECTOR_PREFIX):
        await page.goto(target, wait_until="networkidle")
        return target

    selector = target[len(TARGET_SELECTOR_PREFIX):].strip()
    try:
        handle = await page.wait_for_selector(selector, state="visible", timeout=SELECTOR_TIMEOUT_MS)
    except PlaywrightError:
        handle = None
    if handle is None:
        raise SelectorNotFound(site.id, selector, "target")

    before = page.url
    await press(page, handle)
    outcome = await wait_maybe_navigation(page, before)
    logger.debug("Target control pressed", site_id=site.id, selector=selector, outcome=outcome)
    return page.url


async def run_bump(site: BumpSite, pool: BrowserPool) -> int:
    """Log in and bump every target; returns the number of presses."""
    pressed = 0
    async with pool.page(site.id, ephemeral=site.ephemeral_session) as page:
        await login(page, site)

        for target in site.target_urls:
            remaining = None
            if site.max_total_presses is not None:
                remaining = site.max_total_presses - pressed
                if remaining <= 0:
                    logger.info("Press limit reached", site_id=site.id, limit=site.max_total_presses)
                    break

            await random_delay(*PAUSE_BEFORE_TARGET)
            target_url = await open_target(page, site, target)
            loop = ConvergenceLoop(site, page, site.action_selector, target_url, max_total_presses=remaining)
            pressed += await loop.run()

        await random_delay(*PAUSE_AFTER_RUN)
    return pressed
