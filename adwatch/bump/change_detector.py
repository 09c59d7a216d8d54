from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog
from playwright.async_api import Error as PlaywrightError

from ..browser.page_utils import path_of, safe_count

logger = structlog.get_logger(__name__)

_PATH_CHANGED_JS = "prev => `${location.pathname}${location.search}${location.hash}` !== prev"
_COUNT_CHANGED_JS = """
([sel, prev]) => {
  const n = document.querySelectorAll(sel).length;
  return n === 0 || n !== prev;
}
"""


@dataclass(frozen=True)
class SettleBudgets:
    """Timing budgets in seconds for observing the aftermath of a press."""
    nav_timeout: float = 1.2
    min_pause: float = 0.12
    settle_timeout: float = 1.5
    poll_interval: float = 0.06


# Bump controls often trigger a multi-second async update.
PRESS_SETTLE_BUDGETS = SettleBudgets(nav_timeout=1.2, min_pause=0.6, settle_timeout=2.0, poll_interval=0.2)


@dataclass(frozen=True)
class ChangeResult:
    new_count: int
    path_was_restored: bool


async def _wait_path_change(page, before_path: str, budgets: SettleBudgets) -> None:
    async def _path_changed() -> None:
        try:
            await page.wait_for_function(
                _PATH_CHANGED_JS, arg=before_path, timeout=int(budgets.nav_timeout * 1000)
            )
        except PlaywrightError:
            pass

    watch = asyncio.create_task(_path_changed())
    pause = asyncio.create_task(asyncio.sleep(budgets.min_pause))
    _done, pending = await asyncio.wait({watch, pause}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)


async def wait_after_press(
    page,
    selector: str,
    previous_count: int,
    expected_url: str,
    budgets: SettleBudgets | None = None,
) -> ChangeResult:
    """Wait for a path change or a change in the number of matches.

    Absence of change is a valid outcome; this never raises on timeout.
    """
    budgets = budgets or SettleBudgets()

    await _wait_path_change(page, path_of(page.url), budgets)

    restored = False
    expected_path = path_of(expected_url)
    if expected_path and path_of(page.url) != expected_path:
        try:
            await page.goto(
                expected_url, wait_until="domcontentloaded", timeout=int(budgets.nav_timeout * 1000)
            )
        except PlaywrightError as exc:
            logger.debug("Return to target path failed", url=expected_url, error=str(exc))
        restored = True

    try:
        await page.wait_for_function(
            _COUNT_CHANGED_JS,
            arg=[selector, previous_count],
            timeout=int(budgets.settle_timeout * 1000),
            polling=int(budgets.poll_interval * 1000),
        )
    except PlaywrightError:
        pass

    count = await safe_count(page, selector)
    return ChangeResult(new_count=count, path_was_restored=restored)
