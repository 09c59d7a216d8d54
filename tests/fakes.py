"""In-memory stand-ins for Playwright pages and the Telegram transport."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from playwright.async_api import Error as PlaywrightError

from adwatch.errors import TelegramDeliveryError


class FakeMouse:
    def __init__(self, page: "FakePage"):
        self.page = page

    async def move(self, x: float, y: float, steps: int = 1) -> None:
        self.page.events.append(("move", round(x, 1), round(y, 1)))
        self.page.pointer = (x, y)

    async def down(self) -> None:
        self.page.events.append(("down",))

    async def up(self) -> None:
        self.page.events.append(("up",))
        self.page.activate("pointer")


class FakeKeyboard:
    def __init__(self, page: "FakePage"):
        self.page = page

    async def press(self, key: str) -> None:
        self.page.events.append(("key", key))
        self.page.activate("keyboard")


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str):
        self.page = page
        self.selector = selector

    @property
    def first(self) -> "FakeLocator":
        return self

    async def count(self) -> int:
        return self.page.next_count(self.selector)

    async def press_sequentially(self, text: str, delay: float = 0) -> None:
        self.page.typed[self.selector] = self.page.typed.get(self.selector, "") + text


class FakeElement:
    """An element whose activation may reveal a selector or text on its page."""

    def __init__(
        self,
        page: "FakePage",
        *,
        box: dict | None = None,
        text: str = "",
        reveals: dict[str, str] | None = None,
    ):
        self.page = page
        self.box = box if box is not None else {"x": 100.0, "y": 50.0, "width": 80.0, "height": 20.0}
        self.text = text
        # activation kind -> selector that appears on the page
        self.reveals = reveals or {}
        self.revealed_text: dict[str, str] = {}
        self.stripped = False

    async def evaluate(self, js: str, *args: Any) -> Any:
        if js == "n => n.click()":
            self.page.events.append(("script_click",))
            self._activate("script")
            return None
        if "noClickEvent" in js:
            self.stripped = True
            return None
        if "/X/i" in js:
            return "X" not in self.text.upper() and sum(c.isdigit() for c in self.text) >= 7
        if "innerText" in js:
            return self.text
        raise AssertionError(f"unexpected script: {js}")

    async def scroll_into_view_if_needed(self) -> None:
        pass

    async def focus(self) -> None:
        self.page.focused = self

    async def hover(self) -> None:
        pass

    async def bounding_box(self) -> dict | None:
        return self.box

    async def click(self, delay: float = 0) -> None:
        self.page.events.append(("element_click",))
        self._activate("element")

    def _activate(self, kind: str) -> None:
        selector = self.reveals.get(kind)
        if selector:
            self.page.present.add(selector)
        text = self.revealed_text.get(kind)
        if text:
            self.text = text

    def activate_pointer(self) -> None:
        # Presses within 20px of the left edge count as edge presses.
        x = self.page.pointer[0] if self.page.pointer else self.box["x"]
        self._activate("edge" if x - self.box["x"] < 20 else "pointer")

    def activate_keyboard(self) -> None:
        self._activate("keyboard")


class FakePage:
    def __init__(self, url: str = "https://example.com/my"):
        self.url = url
        self.events: list[tuple] = []
        self.present: set[str] = set()
        self.pointer: tuple[float, float] | None = None
        self.focused: FakeElement | None = None
        self.mouse = FakeMouse(self)
        self.keyboard = FakeKeyboard(self)
        self.gotos: list[str] = []
        self.counts: dict[str, list[Any]] = {}
        self.elements: dict[str, list[FakeElement]] = {}
        self.script_results: list[Any] = []
        self.closed = False
        self.typed: dict[str, str] = {}
        self.clicks: list[str] = []
        # selectors whose click replaces the document
        self.navigating_clicks: set[str] = set()
        self.main_frame = object()
        self.navigated = asyncio.Event()
        self._handlers: dict[str, list[Callable]] = {}

    def activate(self, kind: str) -> None:
        # Pointer and keyboard events land on the focused element.
        if self.focused is None:
            return
        if kind == "pointer":
            self.focused.activate_pointer()
        else:
            self.focused.activate_keyboard()

    def next_count(self, selector: str) -> int:
        values = self.counts.get(selector)
        if not values:
            return len(self.elements.get(selector, []))
        value = values.pop(0) if len(values) > 1 else values[0]
        if isinstance(value, Exception):
            raise value
        return value

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    async def evaluate(self, js: str, arg: Any = None) -> Any:
        if "document.querySelector" in js:
            return arg in self.present
        raise AssertionError(f"unexpected script: {js}")

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.gotos.append(url)
        self.url = url

    async def wait_for_function(self, js: str, arg: Any = None, timeout: float | None = None, polling: Any = None):
        await asyncio.sleep(0)
        return True

    async def wait_for_selector(self, selector: str, **kwargs: Any) -> FakeElement | None:
        elements = self.elements.get(selector)
        if elements:
            return elements[0]
        if selector in self.present:
            return FakeElement(self)
        raise PlaywrightError(f"Timeout waiting for selector {selector!r}")

    async def query_selector_all(self, selector: str) -> list[FakeElement]:
        return list(self.elements.get(selector, []))

    async def eval_on_selector_all(self, selector: str, js: str, arg: Any = None) -> Any:
        self.events.append(("eval_all", selector, arg))
        value = self.script_results.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    def set_default_navigation_timeout(self, timeout: float) -> None:
        pass

    def set_default_timeout(self, timeout: float) -> None:
        pass

    def on(self, event: str, handler: Callable) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in self._handlers.get(event, []):
            handler(*args)

    async def eval_on_selector(self, selector: str, js: str, arg: Any = None) -> Any:
        if selector not in self.present:
            raise PlaywrightError(f"No element matches {selector!r}")
        self.typed[selector] = ""
        return None

    async def click(self, selector: str, **kwargs: Any) -> None:
        if selector not in self.present:
            raise PlaywrightError(f"Timeout waiting for selector {selector!r}")
        self.clicks.append(selector)
        if selector in self.navigating_clicks:
            self.navigated.set()

    async def wait_for_event(self, event: str, predicate: Callable | None = None, timeout: float | None = None) -> Any:
        try:
            await asyncio.wait_for(self.navigated.wait(), (timeout or 30_000) / 1000)
        except asyncio.TimeoutError:
            raise PlaywrightError(f"Timeout waiting for event {event!r}") from None
        return self.main_frame

    async def bring_to_front(self) -> None:
        pass

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, name: str = "ctx", page: FakePage | None = None):
        self.name = name
        self.page = page
        self.closed = False
        self._handlers: dict[str, list[Callable]] = {}

    def on(self, event: str, handler: Callable) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def close(self) -> None:
        self.closed = True
        for handler in self._handlers.get("close", []):
            handler(self)

    async def new_page(self) -> FakePage:
        return self.page if self.page is not None else FakePage()


class FakeTransport:
    def __init__(self, *, configured: bool = True, fail_deletes: bool = False):
        self._configured = configured
        self.fail_deletes = fail_deletes
        self.sent: list[str] = []
        self.deleted: list[int] = []
        self._next_id = 100

    @property
    def configured(self) -> bool:
        return self._configured

    async def send(self, text: str) -> list[int]:
        self.sent.append(text)
        self._next_id += 1
        return [self._next_id]

    async def delete(self, message_id: int) -> bool:
        if self.fail_deletes:
            raise TelegramDeliveryError("deleteMessage: message to delete not found")
        self.deleted.append(message_id)
        return True
