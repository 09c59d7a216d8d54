"""Human-like activation of a single page element.

One logical press is issued with one of several physical strategies. When
success indicators are supplied the strategies are tried in a fixed order
until one of them produces an observable change.
"""

from __future__ import annotations

import asyncio
import enum
import random
import time
from dataclasses import dataclass, field

import structlog
from playwright.async_api import Error as PlaywrightError

logger = structlog.get_logger(__name__)

_STRIP_BLOCKERS_JS = """
n => {
  n.querySelectorAll('.noClickEvent').forEach(m => m.classList.remove('noClickEvent'));
  n.style.pointerEvents = 'auto';
}
"""

_TEXT_REVEALED_JS = r"""
n => {
  const t = (n.innerText || '').replace(/\s+/g, ' ').trim();
  return !/X/i.test(t) && /[\d()+\-–\s]{7,}/.test(t);
}
"""

_INNER_TEXT_JS = "n => (n.innerText || '').trim()"
_SELECTOR_EXISTS_JS = "sel => !!document.querySelector(sel)"


class PressStrategy(str, enum.Enum):
    POINTER = "pointer"
    ELEMENT_CLICK = "element_click"
    SCRIPT_CLICK = "script_click"
    KEYBOARD_ENTER = "keyboard_enter"
    EDGE_POINTER = "edge_pointer"


STRATEGY_ORDER = (
    PressStrategy.POINTER,
    PressStrategy.ELEMENT_CLICK,
    PressStrategy.SCRIPT_CLICK,
    PressStrategy.KEYBOARD_ENTER,
    PressStrategy.EDGE_POINTER,
)


@dataclass(frozen=True)
class PressOptions:
    strategy: PressStrategy = PressStrategy.POINTER
    # Offset from the center towards the left edge, 0..0.5.
    edge_bias: float = 0.18
    press_ms: int = 80
    jitter: float = 1.5
    strip_blockers: bool = True
    result_timeout: float = 5.0
    edge_result_timeout: float = 5.0
    poll_interval: float = 0.08
    indicators: tuple[str, ...] = field(default_factory=tuple)
    wait_text_revealed: bool = False

    @property
    def observes_result(self) -> bool:
        return bool(self.indicators) or self.wait_text_revealed


@dataclass(frozen=True)
class PressReport:
    succeeded: bool
    strategy: PressStrategy | None = None
    matched_indicator: str | None = None
    revealed_text: str | None = None


async def _prepare(target, options: PressOptions):
    if options.strip_blockers:
        try:
            await target.evaluate(_STRIP_BLOCKERS_JS)
        except PlaywrightError:
            pass
    for step in (target.scroll_into_view_if_needed, target.focus, target.hover):
        try:
            await step()
        except PlaywrightError:
            pass
    try:
        return await target.bounding_box()
    except PlaywrightError:
        return None


def _biased_point(box: dict, options: PressOptions) -> tuple[float, float]:
    x = box["x"] + box["width"] * (0.5 - options.edge_bias) + (random.random() - 0.5) * options.jitter
    y = box["y"] + box["height"] * 0.5 + (random.random() - 0.5) * options.jitter
    return x, y


def _edge_point(box: dict) -> tuple[float, float]:
    x = box["x"] + max(8.0, min(14.0, box["width"] * 0.2))
    y = box["y"] + box["height"] / 2
    return x, y


async def _pointer_press(page, x: float, y: float, press_ms: int) -> None:
    await page.mouse.move(x, y, steps=2)
    await page.mouse.down()
    await asyncio.sleep(press_ms / 1000.0)
    await page.mouse.up()


async def _wait_result(page, target, options: PressOptions, timeout: float) -> PressReport | None:
    deadline = time.monotonic() + timeout
    while True:
        for selector in options.indicators:
            try:
                found = await page.evaluate(_SELECTOR_EXISTS_JS, selector)
            except PlaywrightError:
                found = False
            if found:
                text = await _inner_text(target)
                return PressReport(succeeded=True, matched_indicator=selector, revealed_text=text)

        if options.wait_text_revealed:
            try:
                revealed = await target.evaluate(_TEXT_REVEALED_JS)
            except PlaywrightError:
                revealed = False
            if revealed:
                return PressReport(succeeded=True, revealed_text=await _inner_text(target))

        if time.monotonic() >= deadline:
            return None
        await asyncio.sleep(options.poll_interval)


async def _inner_text(target) -> str:
    try:
        return await target.evaluate(_INNER_TEXT_JS)
    except PlaywrightError:
        return ""


async def _run_strategy(page, target, strategy: PressStrategy, options: PressOptions) -> PressReport:
    box = await _prepare(target, options)
    if not box:
        logger.debug("No bounding box; element hidden or detached", strategy=strategy.value)
        return PressReport(succeeded=False)

    timeout = options.result_timeout
    try:
        if strategy is PressStrategy.POINTER:
            x, y = _biased_point(box, options)
            await _pointer_press(page, x, y, options.press_ms)
        elif strategy is PressStrategy.ELEMENT_CLICK:
            await target.click(delay=20)
        elif strategy is PressStrategy.SCRIPT_CLICK:
            await target.evaluate("n => n.click()")
        elif strategy is PressStrategy.KEYBOARD_ENTER:
            await page.keyboard.press("Enter")
        elif strategy is PressStrategy.EDGE_POINTER:
            x, y = _edge_point(box)
            await _pointer_press(page, x, y, options.press_ms)
            timeout = options.edge_result_timeout
    except PlaywrightError as exc:
        logger.debug("Press strategy failed", strategy=strategy.value, error=str(exc))
        return PressReport(succeeded=False)

    if not options.observes_result:
        return PressReport(succeeded=True, strategy=strategy)

    result = await _wait_result(page, target, options, timeout)
    if result is None:
        return PressReport(succeeded=False)
    return PressReport(
        succeeded=True,
        strategy=strategy,
        matched_indicator=result.matched_indicator,
        revealed_text=result.revealed_text,
    )


async def press(page, target, options: PressOptions | None = None) -> PressReport:
    """Press `target` and report which strategy, if any, had an effect.

    Without indicators a single strategy runs and the press is assumed to
    have worked.
    """
    options = options or PressOptions()
    if not options.observes_result:
        return await _run_strategy(page, target, options.strategy, options)

    for strategy in STRATEGY_ORDER:
        report = await _run_strategy(page, target, strategy, options)
        if report.succeeded:
            logger.debug("Press succeeded", strategy=strategy.value, matched=report.matched_indicator)
            return report
    return PressReport(succeeded=False)
