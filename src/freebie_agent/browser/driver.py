from __future__ import annotations

import logging
import random
import re
from pathlib import Path
from typing import Any, Optional, Protocol

from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Page, Playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from ..models import NavigationResult


logger = logging.getLogger(__name__)


class BrowserError(RuntimeError):
    """Any failure reported by the driven browser (detached element, crashed page, bad selector...)."""


class ElementWaitTimeout(BrowserError):
    def __init__(self, selector: str, timeout_s: float) -> None:
        super().__init__(f"timed out after {timeout_s:g}s waiting for {selector!r}")
        self.selector = selector
        self.timeout_s = timeout_s


class DrivenBrowser(Protocol):
    """
    The narrow browser surface the agent core drives.

    Callers never issue overlapping calls; one logical operation owns the page at a time.
    """

    async def navigate(self, url: str) -> NavigationResult: ...

    async def wait_for_element(self, selector: str, timeout_s: float) -> None: ...

    async def click(self, selector: str) -> None: ...

    async def type(self, selector: str, text: str) -> None: ...

    async def evaluate_extraction(self, script: str, arg: Any = None) -> Any: ...

    async def screenshot(self, selector: str) -> bytes: ...

    async def save_debug(self, name_prefix: str) -> None: ...

    async def close(self) -> None: ...


class PlaywrightBrowser:
    """
    `DrivenBrowser` backed by a single Playwright Chromium page.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        slow_mo_ms: int = 0,
        debug_dir: str = "data/debug",
        typing_delay_ms: tuple[int, int] = (50, 150),
        step_debug: bool = False,
        navigation_timeout_s: float = 45.0,
        action_timeout_s: float = 5.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.headless = headless
        self.slow_mo_ms = int(slow_mo_ms or 0)
        self.debug_dir = debug_dir
        self.typing_delay_ms = typing_delay_ms
        self.navigation_timeout_s = navigation_timeout_s
        self.action_timeout_s = action_timeout_s
        self._rng = rng or random.Random()

        self._step_debug_enabled = bool(step_debug)
        self._step_counter = 0

        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._ctx: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    @property
    def page(self) -> Page:
        if self._page is None:
            raise BrowserError("browser not started (call start() first)")
        return self._page

    async def start(self) -> None:
        self._pw = await async_playwright().start()
        try:
            self._browser = await self._pw.chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms)
        except PlaywrightError as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise BrowserError(f"failed to launch Chromium: {msg}") from e

            logger.warning(
                "Playwright Chromium executable missing; falling back to system browser channel. (%s)",
                msg,
            )
            try:
                self._browser = await self._pw.chromium.launch(
                    headless=self.headless, slow_mo=self.slow_mo_ms, channel="chrome"
                )
            except PlaywrightError:
                self._browser = await self._pw.chromium.launch(
                    headless=self.headless, slow_mo=self.slow_mo_ms, channel="msedge"
                )

        self._ctx = await self._browser.new_context(color_scheme="light", locale="en-US")
        self._ctx.set_default_navigation_timeout(self.navigation_timeout_s * 1000)
        self._ctx.set_default_timeout(self.action_timeout_s * 1000)
        self._page = await self._ctx.new_page()

    async def navigate(self, url: str) -> NavigationResult:
        try:
            resp = await self.page.goto(url, wait_until="domcontentloaded")
        except PlaywrightTimeoutError as e:
            raise ElementWaitTimeout(f"navigation:{url}", self.navigation_timeout_s) from e
        except PlaywrightError as e:
            raise BrowserError(f"navigation to {url} failed: {e}") from e

        result = NavigationResult(url=self.page.url, status=resp.status if resp is not None else None)
        logger.debug("Navigated (status=%s url=%s)", result.status, result.url)
        await self._step(name=_url_step_name(result.url))
        return result

    async def wait_for_element(self, selector: str, timeout_s: float) -> None:
        try:
            await self.page.locator(selector).first.wait_for(state="visible", timeout=timeout_s * 1000)
        except PlaywrightTimeoutError as e:
            raise ElementWaitTimeout(selector, timeout_s) from e
        except PlaywrightError as e:
            raise BrowserError(f"waiting for {selector!r} failed: {e}") from e

    async def click(self, selector: str) -> None:
        try:
            await self.page.locator(selector).first.click(timeout=self.action_timeout_s * 1000)
        except PlaywrightTimeoutError as e:
            raise ElementWaitTimeout(selector, self.action_timeout_s) from e
        except PlaywrightError as e:
            raise BrowserError(f"click on {selector!r} failed: {e}") from e

    async def type(self, selector: str, text: str) -> None:
        lo, hi = self.typing_delay_ms
        timeout_ms = self.action_timeout_s * 1000
        loc = self.page.locator(selector).first
        try:
            await loc.fill("", timeout=timeout_ms)
            # One key at a time with a jittered per-key delay.
            for ch in text:
                await loc.press_sequentially(ch, delay=self._rng.uniform(lo, hi), timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise ElementWaitTimeout(selector, self.action_timeout_s) from e
        except PlaywrightError as e:
            raise BrowserError(f"typing into {selector!r} failed: {e}") from e

    async def evaluate_extraction(self, script: str, arg: Any = None) -> Any:
        try:
            return await self.page.evaluate(script, arg)
        except PlaywrightError as e:
            raise BrowserError(f"page script failed: {e}") from e

    async def screenshot(self, selector: str) -> bytes:
        try:
            return await self.page.locator(selector).first.screenshot()
        except PlaywrightError as e:
            raise BrowserError(f"screenshot of {selector!r} failed: {e}") from e

    async def save_debug(self, name_prefix: str) -> None:
        if self._page is None:
            return
        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            await self._page.screenshot(path=str(out_dir / f"{name_prefix}.png"), full_page=True)
            (out_dir / f"{name_prefix}.html").write_text(await self._page.content(), encoding="utf-8")
            # Rendered text makes selector drift easy to diagnose offline.
            try:
                (out_dir / f"{name_prefix}.txt").write_text(await self._page.inner_text("body"), encoding="utf-8")
            except PlaywrightError:
                pass
        except (PlaywrightError, OSError):
            logger.debug("Failed to save debug artifacts.", exc_info=True)

    async def close(self) -> None:
        for closer in (self._ctx, self._browser):
            if closer is None:
                continue
            try:
                await closer.close()
            except PlaywrightError:
                logger.debug("Error while closing browser resource.", exc_info=True)
        if self._pw is not None:
            await self._pw.stop()
        self._page = self._ctx = self._browser = None
        self._pw = None

    async def _step(self, *, name: str) -> None:
        """
        If enabled, save a screenshot after each navigation (step-by-step debugging).
        """
        if not self._step_debug_enabled or self._page is None:
            return

        self._step_counter += 1
        safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", name).strip("_")[:60] or "step"
        prefix = f"step_{self._step_counter:03d}_{safe}"
        logger.info("Step %03d %s (url=%s)", self._step_counter, name, self._page.url)
        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            await self._page.screenshot(path=str(out_dir / f"{prefix}.png"), full_page=True)
        except (PlaywrightError, OSError):
            logger.debug("Failed to save step screenshot (name=%s).", name, exc_info=True)


def _url_step_name(url: str) -> str:
    path = re.sub(r"^[a-z]+://[^/]+", "", url or "")
    return path.split("?", 1)[0] or "root"
