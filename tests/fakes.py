from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Optional

from freebie_agent.browser import BrowserError, ElementWaitTimeout
from freebie_agent.models import NavigationResult, Session
from freebie_agent.scanner import LISTING_EXTRACTION_SCRIPT
from freebie_agent.session import SURFACE_PROBE_SCRIPT


LOGIN_URL = "https://shop.example/ap/signin?return_to=home"
SEARCH_URL = "https://shop.example/s?k=free+items"
ITEM_URL_TEMPLATE = "https://shop.example/dp/{item_id}"

PASSWORD_PAGE = {"url": LOGIN_URL, "password": True}
OTP_PAGE = {"url": "https://shop.example/ap/mfa", "otp": True}
CAPTCHA_PAGE = {"url": LOGIN_URL, "password": True, "captcha": True}
HOME_PAGE = {"url": "https://shop.example/", "signOut": True, "greeting": "Hello, Ada"}


class FakeBrowser:
    """
    Scriptable stand-in for the Playwright browser.

    - `probe_state` is what the sign-in probe sees; `on_click[selector]` is a list of states applied one per click.
    - `after_click[selector]` is a list of states the probe then sees one per call (a page still loading).
    - `listings` is a queue of extraction results (the last one repeats); an Exception entry is raised.
    - `nav_results[url]` overrides the default 200 response; an Exception value is raised.
    - `missing` selectors time out in `wait_for_element`.
    """

    def __init__(self) -> None:
        self.probe_state: dict[str, Any] = dict(PASSWORD_PAGE)
        self.on_click: dict[str, list[dict[str, Any]]] = {}
        self.after_click: dict[str, list[dict[str, Any]]] = {}
        self._pending_probes: list[dict[str, Any]] = []
        self.listings: list[Any] = [[]]
        self.nav_results: dict[str, Any] = {}
        self.missing: set[str] = set()
        self.click_errors: dict[str, Exception] = {}

        self.navigations: list[str] = []
        self.clicks: list[str] = []
        self.typed: list[tuple[str, str]] = []
        self.debug_saves: list[str] = []
        self.closed = 0

    async def navigate(self, url: str) -> NavigationResult:
        self.navigations.append(url)
        result = self.nav_results.get(url)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return NavigationResult(url=url, status=200)
        return result

    async def wait_for_element(self, selector: str, timeout_s: float) -> None:
        if selector in self.missing:
            raise ElementWaitTimeout(selector, timeout_s)

    async def click(self, selector: str) -> None:
        if selector in self.click_errors:
            raise self.click_errors[selector]
        self.clicks.append(selector)
        queue = self.on_click.get(selector)
        if queue:
            self.probe_state = dict(queue.pop(0))
        if selector in self.after_click:
            self._pending_probes = list(self.after_click.pop(selector))

    async def type(self, selector: str, text: str) -> None:
        if selector in self.missing:
            raise ElementWaitTimeout(selector, 30)
        self.typed.append((selector, text))

    async def evaluate_extraction(self, script: str, arg: Any = None) -> Any:
        if script == SURFACE_PROBE_SCRIPT:
            if self._pending_probes:
                self.probe_state = dict(self._pending_probes.pop(0))
            return dict(self.probe_state)
        if script == LISTING_EXTRACTION_SCRIPT:
            current = self.listings[0] if len(self.listings) == 1 else self.listings.pop(0)
            if isinstance(current, Exception):
                raise current
            return current
        raise BrowserError(f"unexpected script: {script[:40]!r}")

    async def screenshot(self, selector: str) -> bytes:
        return b"\x89PNG fake"

    async def save_debug(self, name_prefix: str) -> None:
        self.debug_saves.append(name_prefix)

    async def close(self) -> None:
        self.closed += 1

    def item_navigations(self) -> list[str]:
        return [u for u in self.navigations if "/dp/" in u]


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    async def notify(self, subject: str, body: str) -> None:
        self.messages.append((subject, body))

    @property
    def subjects(self) -> list[str]:
        return [s for s, _ in self.messages]


class FixedOtp:
    def __init__(self, code: str = "123456") -> None:
        self.code = code
        self.calls: list[tuple[str, Optional[datetime]]] = []

    def generate(self, secret: str, at: Optional[datetime] = None) -> str:
        self.calls.append((secret, at))
        return self.code


class FakeSolver:
    def __init__(self, answer: str = "XKCD", *, delay_s: float = 0.0, error: Optional[Exception] = None) -> None:
        self.answer = answer
        self.delay_s = delay_s
        self.error = error
        self.images: list[bytes] = []

    async def solve(self, image: bytes) -> str:
        self.images.append(image)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self.answer


class FakeClock:
    """Monotonic clock whose `sleep` advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class StubSession:
    """Session controller stand-in for run loop tests that do not exercise sign-in."""

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.authenticate_calls = 0
        self.invalidated: list[str] = []

    async def authenticate(self) -> Session:
        self.authenticate_calls += 1
        if self.error is not None:
            raise self.error
        return Session(identity="ada@example.com")

    def invalidate(self, reason: str) -> None:
        self.invalidated.append(reason)


def listing_entry(
    item_id: str,
    price: str,
    *,
    shipping: str = "FREE Shipping on orders shipped by Amazon",
    title: Optional[str] = None,
) -> dict[str, str]:
    return {
        "id": item_id,
        "title": title if title is not None else f"Item {item_id}",
        "price": price,
        "shipping": shipping,
        "href": f"https://shop.example/gp/slredirect?asin={item_id}",
    }
