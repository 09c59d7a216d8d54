"""Named press actions that sites can select in their configuration."""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING, Awaitable, Callable, Protocol

import structlog
from playwright.async_api import Error as PlaywrightError

from ..browser.input import press
from ..browser.page_utils import PressOutcome, is_navigation_in_flight
from ..errors import UnknownActionFunction

if TYPE_CHECKING:
    from ..config import BumpSite

logger = structlog.get_logger(__name__)

DEFAULT_ACTION = "press"

_SCRIPT_CLICK_JS = """
(els, i) => {
  const el = els[i];
  if (!el) return false;
  el.scrollIntoView({block: 'center'});
  el.click();
  return true;
}
"""

# Finds the select bound to the nth link and fires the link's click handler.
_OPEN_LABEL_JS = r"""
(els, i) => {
  const a = els[i];
  if (!a) return null;
  let m = (a.getAttribute('data-toggle') || '').match(/#label_(\d+)/);
  let id = m && m[1];
  if (!id) {
    m = (a.className || '').match(/current_label_(\d+)/);
    if (m) id = m[1];
  }
  if (!id) return null;
  a.dispatchEvent(new MouseEvent('click', {bubbles: true, cancelable: true}));
  return 'label_' + id;
}
"""

_PICK_OPTION_JS = """
(select, txt) => {
  const t = String(txt).trim().toLowerCase();
  for (const o of Array.from(select.options)) {
    if ((o.textContent || '').trim().toLowerCase() === t) {
      select.value = o.value || '';
      select.dispatchEvent(new Event('change', {bubbles: true}));
      return true;
    }
  }
  return false;
}
"""

_CSS_SPECIAL_RE = re.compile(r"""([ !"#$%&'()*+,./:;<=>?@\[\\\]^`{|}~])""")


class ActionFunction(Protocol):
    def __call__(self, site: "BumpSite", page, selector: str, index: int) -> Awaitable[bool]: ...


class ActionRegistry:
    def __init__(self) -> None:
        self._actions: dict[str, ActionFunction] = {}

    def register(self, name: str) -> Callable[[ActionFunction], ActionFunction]:
        def _decorator(fn: ActionFunction) -> ActionFunction:
            if name in self._actions:
                raise ValueError(f"action function '{name}' already registered")
            self._actions[name] = fn
            return fn

        return _decorator

    def resolve(self, name: str, *, site_id: str | None = None) -> ActionFunction:
        try:
            return self._actions[name]
        except KeyError:
            raise UnknownActionFunction(name, site_id=site_id) from None

    def names(self) -> list[str]:
        return sorted(self._actions)

    def __contains__(self, name: object) -> bool:
        return name in self._actions


ACTIONS = ActionRegistry()


@ACTIONS.register("press")
async def press_nth(site: "BumpSite", page, selector: str, index: int) -> bool:
    """Press the nth match through the input simulator."""
    handles = await page.query_selector_all(selector)
    if index >= len(handles):
        return False
    report = await press(page, handles[index])
    return report.succeeded


@ACTIONS.register("script_click")
async def script_click_nth(site: "BumpSite", page, selector: str, index: int) -> bool:
    return bool(await page.eval_on_selector_all(selector, _SCRIPT_CLICK_JS, index))


@ACTIONS.register("label_select")
async def label_select(site: "BumpSite", page, selector: str, index: int) -> bool:
    """Open the label picker of the nth listing and pick each configured label.

    Options are matched by visible text, case-insensitively. The labels are
    applied in order so that the last one is what the listing ends up with.
    """
    label_id = await page.eval_on_selector_all(selector, _OPEN_LABEL_JS, index)
    if not label_id:
        logger.warning("Label id not found", site_id=site.id, index=index)
        return False

    select_selector = "#" + _CSS_SPECIAL_RE.sub(r"\\\1", label_id)
    try:
        await page.wait_for_selector(select_selector, state="visible", timeout=2000)
    except PlaywrightError:
        pass

    picked = False
    for i, label in enumerate(site.action_labels):
        if i:
            await asyncio.sleep(0.08)
        try:
            picked = bool(await page.eval_on_selector(select_selector, _PICK_OPTION_JS, label)) or picked
        except PlaywrightError as exc:
            if is_navigation_in_flight(exc):
                raise
            logger.debug("Label option not selectable", site_id=site.id, label=label, error=str(exc))

    if not picked:
        logger.warning("No label option matched", site_id=site.id, index=index, labels=site.action_labels)
    return True


async def perform_action(site: "BumpSite", page, selector: str, index: int) -> PressOutcome:
    """Run the site's action on the nth match, as a tri-state outcome."""
    action = site.action or ACTIONS.resolve(DEFAULT_ACTION)
    try:
        ok = await action(site, page, selector, index)
    except PlaywrightError as exc:
        if is_navigation_in_flight(exc):
            return PressOutcome.NAVIGATION_IN_FLIGHT
        raise
    return PressOutcome.SUCCEEDED if ok else PressOutcome.NO_EFFECT
