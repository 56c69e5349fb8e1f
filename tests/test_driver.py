from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from freebie_agent.browser import ElementWaitTimeout, PlaywrightBrowser


class _Locator:
    def __init__(self, page: "_Page") -> None:
        self._page = page

    @property
    def first(self) -> "_Locator":
        return self

    async def click(self, *, timeout: Optional[float] = None) -> None:
        self._page.calls.append(("click", timeout))
        if self._page.stuck:
            raise PlaywrightTimeoutError("Timeout exceeded")

    async def fill(self, value: str, *, timeout: Optional[float] = None) -> None:
        self._page.calls.append(("fill", timeout))

    async def press_sequentially(self, text: str, *, delay: float = 0, timeout: Optional[float] = None) -> None:
        self._page.calls.append(("press", timeout))
        if self._page.stuck:
            raise PlaywrightTimeoutError("Timeout exceeded")


class _Page:
    def __init__(self, *, stuck: bool = False) -> None:
        self.stuck = stuck
        self.calls: list[tuple[str, Any]] = []

    def locator(self, selector: str) -> _Locator:
        return _Locator(self)


def _browser(page: _Page, action_timeout_s: float = 2.5) -> PlaywrightBrowser:
    browser = PlaywrightBrowser(action_timeout_s=action_timeout_s, typing_delay_ms=(0, 0))
    browser._page = page  # type: ignore[assignment]
    return browser


def test_click_and_type_are_bounded_by_the_action_timeout() -> None:
    page = _Page()
    browser = _browser(page)

    asyncio.run(browser.click("#submit"))
    asyncio.run(browser.type("#email", "ab"))

    assert page.calls == [("click", 2500.0), ("fill", 2500.0), ("press", 2500.0), ("press", 2500.0)]


def test_stuck_click_reports_the_configured_timeout() -> None:
    browser = _browser(_Page(stuck=True), action_timeout_s=1.5)

    with pytest.raises(ElementWaitTimeout) as exc:
        asyncio.run(browser.click("#place-order"))
    assert exc.value.timeout_s == 1.5
    assert exc.value.selector == "#place-order"


def test_stuck_typing_reports_the_configured_timeout() -> None:
    browser = _browser(_Page(stuck=True), action_timeout_s=1.5)

    with pytest.raises(ElementWaitTimeout) as exc:
        asyncio.run(browser.type("#password", "x"))
    assert exc.value.timeout_s == 1.5
