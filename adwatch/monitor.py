"""Top-slot check: does the first listing still show one of our phones."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import structlog
from playwright.async_api import Error as PlaywrightError, Page

from .browser.input import PressOptions, press
from .browser.pool import BrowserPool
from .config import MonitorSite
from .errors import SelectorNotFound
from .phones import normalize_phone, phone_matches

logger = structlog.get_logger(__name__)

SELECTOR_TIMEOUT_MS = 20_000

_TEXT_JS = "els => els.map(el => el.textContent || el.innerText || '')"


@dataclass(frozen=True)
class MonitorResult:
    ok: bool
    found_phone: str | None = None


def match_phones(extracted: Iterable[str], roster: Iterable[str]) -> MonitorResult:
    """Compare extracted numbers with ours.

    found_phone is the matching number when there is one, otherwise the first
    number that was extracted.
    """
    roster = list(roster)
    phones = [p for p in (normalize_phone(x) for x in extracted) if p]
    for phone in phones:
        if phone_matches(phone, roster):
            return MonitorResult(ok=True, found_phone=phone)
    return MonitorResult(ok=False, found_phone=phones[0] if phones else None)


async def _wait_for(page: Page, selector: str, site_id: str, stage: str) -> None:
    try:
        await page.wait_for_selector(selector, timeout=SELECTOR_TIMEOUT_MS)
    except PlaywrightError:
        raise SelectorNotFound(site_id, selector, stage) from None


async def _open_first_ad(page: Page, site: MonitorSite) -> None:
    selector = site.ad_link_selector
    await _wait_for(page, selector, site.id, "list")

    href = await page.get_attribute(selector, "href")
    if not href:
        raise SelectorNotFound(site.id, selector, "list")

    if site.ad_click.navigate:
        async with page.expect_navigation(wait_until=site.ad_click.wait_until):
            await page.click(selector)
    else:
        await page.click(selector)


async def _reveal_phone(page: Page, site: MonitorSite) -> None:
    selector = site.show_phone_selector
    await _wait_for(page, selector, site.id, "ad")
    handle = await page.query_selector(selector)
    if handle is None:
        raise SelectorNotFound(site.id, selector, "ad")

    indicators = tuple(site.phone_dialog_selectors)
    options = PressOptions(indicators=indicators, wait_text_revealed=not indicators, result_timeout=1.2)
    report = await press(page, handle, options)
    if not report.succeeded:
        logger.warning("Phone reveal had no visible effect", site_id=site.id, selector=selector)
    else:
        logger.debug("Phone revealed", site_id=site.id, strategy=report.strategy.value)


async def check_top_by_phone(site: MonitorSite, pool: BrowserPool, roster: Iterable[str]) -> MonitorResult:
    async with pool.page(site.id, ephemeral=site.ephemeral_session) as page:
        await page.goto(site.list_url, wait_until="networkidle")

        if site.ad_link_selector:
            await _open_first_ad(page, site)
        if site.show_phone_selector:
            await _reveal_phone(page, site)

        await _wait_for(page, site.phone_selector, site.id, "phone")
        texts = await page.eval_on_selector_all(site.phone_selector, _TEXT_JS)

    result = match_phones(texts, roster)
    logger.info("Top listing checked", site_id=site.id, ok=result.ok, phone=result.found_phone)
    return result
