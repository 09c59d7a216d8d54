"""Bounded press/reassess loop that drives a list of bump controls to exhaustion.

Controls are addressed only by their position in the current match list,
because the page may destroy and recreate them after every press. After each
press the loop looks at how the match count moved:

* count dropped: the list renumbered, start again from index 0;
* count unchanged: the control stayed in place, move to the next index.

The number of iterations is capped at the initial count plus two so the loop
ends even when the page keeps cycling.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

import structlog
from playwright.async_api import Error as PlaywrightError

from ..browser.page_utils import PressOutcome, path_of, safe_count
from ..errors import SelectorNotFound
from .actions import perform_action
from .change_detector import PRESS_SETTLE_BUDGETS, ChangeResult, SettleBudgets, wait_after_press

if TYPE_CHECKING:
    from ..config import BumpSite

logger = structlog.get_logger(__name__)

EXTRA_ITERATIONS = 2
ERROR_BACKOFF_SECONDS = 0.5

PressFn = Callable[[int], Awaitable[PressOutcome]]
CountFn = Callable[[], Awaitable[int]]
DetectFn = Callable[[int], Awaitable[ChangeResult]]


@dataclass
class ConvergenceState:
    previous_count: int
    current_index: int = 0
    total_pressed: int = 0
    iteration_budget: int = 0
    iterations: int = 0

    @property
    def exhausted(self) -> bool:
        return self.iterations >= self.iteration_budget


class ConvergenceLoop:
    def __init__(
        self,
        site: "BumpSite",
        page,
        selector: str,
        target_url: str,
        *,
        press: PressFn | None = None,
        count: CountFn | None = None,
        detect: DetectFn | None = None,
        max_total_presses: int | None = None,
        budgets: SettleBudgets = PRESS_SETTLE_BUDGETS,
        backoff_seconds: float = ERROR_BACKOFF_SECONDS,
    ):
        self.site = site
        self.page = page
        self.selector = selector
        self.target_url = target_url
        self.max_total_presses = max_total_presses
        self.budgets = budgets
        self.backoff_seconds = backoff_seconds
        self._press = press or self._default_press
        self._count = count or self._default_count
        self._detect = detect or self._default_detect
        self.pressed_indices: list[int] = []

    async def _default_press(self, index: int) -> PressOutcome:
        return await perform_action(self.site, self.page, self.selector, index)

    async def _default_count(self) -> int:
        return await safe_count(self.page, self.selector)

    async def _default_detect(self, previous_count: int) -> ChangeResult:
        return await wait_after_press(self.page, self.selector, previous_count, self.target_url, self.budgets)

    def _off_target(self) -> bool:
        expected = path_of(self.target_url)
        return bool(expected) and path_of(self.page.url) != expected

    async def _return_to_target(self) -> None:
        try:
            await self.page.goto(self.target_url, wait_until="domcontentloaded")
        except PlaywrightError as exc:
            logger.debug("Return to target failed", site_id=self.site.id, url=self.target_url, error=str(exc))

    def _budget_left(self, state: ConvergenceState) -> bool:
        if self.max_total_presses is None:
            return True
        return state.total_pressed < self.max_total_presses

    async def run(self) -> int:
        """Press every actionable control once; returns successful presses."""
        if self._off_target():
            await self._return_to_target()

        initial = await self._count()
        if initial <= 0:
            raise SelectorNotFound(self.site.id, self.selector, "bump")

        state = ConvergenceState(previous_count=initial, iteration_budget=initial + EXTRA_ITERATIONS)
        log = logger.bind(site_id=self.site.id, url=self.target_url)
        log.info("Bump loop started", count=initial)

        while state.previous_count > 0 and not state.exhausted and self._budget_left(state):
            state.iterations += 1

            if self._off_target():
                await self._return_to_target()
                current = await self._count()
                if current == 0:
                    state.previous_count = 0
                    break
                state.previous_count = current
                if state.current_index >= current:
                    break

            if state.current_index >= state.previous_count:
                break

            index = state.current_index
            try:
                outcome = await self._press(index)
                if outcome is PressOutcome.NO_EFFECT:
                    log.debug("No element at index; skipping", index=index)
                    state.current_index += 1
                    continue

                self.pressed_indices.append(index)
                state.total_pressed += 1
                if self.site.press_sleep_seconds:
                    await asyncio.sleep(self.site.press_sleep_seconds)

                change = await self._detect(state.previous_count)
                new_count = change.new_count
                log.debug(
                    "Pressed",
                    index=index,
                    outcome=outcome.value,
                    before=state.previous_count,
                    after=new_count,
                    restored=change.path_was_restored,
                )

                if new_count <= 0:
                    state.previous_count = 0
                    break

                if new_count < state.previous_count:
                    state.current_index = 0
                else:
                    state.current_index += 1

                state.previous_count = new_count
                if state.current_index >= new_count:
                    break
            except Exception as exc:
                log.error("Bump press failed", index=index, error=f"{type(exc).__name__}: {exc}")
                await asyncio.sleep(self.backoff_seconds)
                state.current_index += 1

        log.info("Bump loop finished", pressed=state.total_pressed, iterations=state.iterations)
        return state.total_pressed
