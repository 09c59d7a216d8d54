from __future__ import annotations

import asyncio
import enum
import random
import re
from urllib.parse import urlsplit

import structlog
from playwright.async_api import Error as PlaywrightError

logger = structlog.get_logger(__name__)

_NAVIGATION_IN_FLIGHT_RE = re.compile(
    r"execution context was destroyed|cannot find context|target closed"
    r"|target page, context or browser has been closed|frame was detached",
    re.IGNORECASE,
)


class PressOutcome(enum.Enum):
    SUCCEEDED = "succeeded"
    NO_EFFECT = "no_effect"
    NAVIGATION_IN_FLIGHT = "navigation_in_flight"

    @property
    def pressed(self) -> bool:
        return self is not PressOutcome.NO_EFFECT


def is_navigation_in_flight(exc: BaseException) -> bool:
    """True when the error only means the page is being replaced."""
    if type(exc).__name__ == "TargetClosedError":
        return True
    return bool(_NAVIGATION_IN_FLIGHT_RE.search(str(exc or "")))


def path_of(url: str) -> str:
    """Path, query and fragment of a URL without a trailing slash."""
    s = (url or "").strip()
    try:
        parts = urlsplit(s)
    except ValueError:
        return s
    path = parts.path or "/"
    if parts.query:
        path += "?" + parts.query
    if parts.fragment:
        path += "#" + parts.fragment
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return path


async def safe_count(page, selector: str, attempts: int = 3) -> int:
    for attempt in range(attempts):
        try:
            return await page.locator(selector).count()
        except PlaywrightError as exc:
            if not is_navigation_in_flight(exc):
                raise
            # Context is being rebuilt by a navigation.
            await asyncio.sleep(0.1 + attempt * 0.1)

    try:
        return await page.locator(selector).count()
    except PlaywrightError as exc:
        logger.debug("Count failed after retries", selector=selector, error=str(exc))
        return 0


async def random_delay(min_seconds: float, max_seconds: float) -> None:
    await asyncio.sleep(min_seconds + random.random() * max(0.0, max_seconds - min_seconds))


async def wait_maybe_navigation(
    page,
    before_url: str,
    *,
    timeout: float = 5.0,
    fallback_delay: float = 0.8,
    jitter: float = 0.5,
) -> str:
    """Wait for a URL change or a short pause, whichever comes first."""

    async def _navigated() -> bool:
        try:
            await page.wait_for_url(lambda url: url != before_url, timeout=int(timeout * 1000))
            return True
        except PlaywrightError:
            return False

    nav_task = asyncio.create_task(_navigated())
    pause_task = asyncio.create_task(asyncio.sleep(fallback_delay + random.random() * jitter))
    done, pending = await asyncio.wait({nav_task, pause_task}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    if nav_task in done and nav_task.result():
        await asyncio.sleep(0.2)
        return "navigated"
    return "no-nav"
