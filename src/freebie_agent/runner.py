from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional

from .browser.driver import DrivenBrowser
from .errors import AuthenticationError, ScanError
from .executor import TransactionExecutor
from .ledger import PurchaseLedger
from .models import AcceptancePredicate, CatalogItem, RunSummary, RunWindow
from .notify import Notifier
from .scanner import CatalogScanner
from .session import SessionController


logger = logging.getLogger(__name__)


class RunLoop:
    """
    Sign in once, then scan and buy in cycles until the run window closes or `stop()` is called.

    - A failed sign-in ends the run before any scan (the session controller has already notified).
    - A failed scan is notified and the next cycle runs after the usual pause.
    - A failed purchase is notified by the executor; the cycle moves on to the next item.
    - A lost session mid-run is notified and ends the run.
    The browser is closed on every exit path.
    """

    def __init__(
        self,
        *,
        browser: DrivenBrowser,
        session: SessionController,
        scanner: CatalogScanner,
        executor: TransactionExecutor,
        ledger: PurchaseLedger,
        notifier: Notifier,
        predicate: AcceptancePredicate,
        duration_s: float,
        interval_s: tuple[float, float] = (120.0, 180.0),
        dry_run: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        lo, hi = interval_s
        if lo < 0 or hi < lo:
            raise ValueError(f"invalid scan interval band {interval_s!r}")

        self._browser = browser
        self._session = session
        self._scanner = scanner
        self._executor = executor
        self._ledger = ledger
        self._notifier = notifier
        self._predicate = predicate
        self.duration_s = duration_s
        self.interval_s = (float(lo), float(hi))
        self.dry_run = dry_run
        self._clock = clock
        self._sleep = sleep or self._interruptible_sleep
        self._rng = rng or random.Random()
        self._stop = asyncio.Event()
        self.window: Optional[RunWindow] = None

    def stop(self) -> None:
        """Ask the loop to finish after the current cycle (safe to call from a signal handler)."""
        if not self._stop.is_set():
            logger.info("Stop requested; finishing after the current cycle.")
        self._stop.set()

    async def run(self) -> RunSummary:
        summary = RunSummary()
        try:
            try:
                await self._session.authenticate()
            except AuthenticationError as e:
                summary.fatal = True
                summary.stop_reason = f"authentication failed: {e}"
                return summary

            self.window = RunWindow(started_at=self._clock(), duration_seconds=self.duration_s)
            logger.info(
                "Run window open (duration_s=%.0f interval_s=%.0f-%.0f quota=%d dry_run=%s)",
                self.duration_s,
                self.interval_s[0],
                self.interval_s[1],
                self._ledger.quota,
                self.dry_run,
            )

            while True:
                if self._stop.is_set():
                    summary.stop_reason = "stop requested"
                    break
                if not self.window.is_open(self._clock()):
                    summary.stop_reason = "run window elapsed"
                    break

                try:
                    await self._cycle(summary)
                except AuthenticationError as e:
                    self._session.invalidate(str(e))
                    await self._notifier.notify("Session Lost", f"Stopping: {e}")
                    summary.fatal = True
                    summary.stop_reason = f"session lost: {e}"
                    break

                if self._stop.is_set() or not self.window.is_open(self._clock()):
                    continue
                delay = self._rng.uniform(*self.interval_s)
                logger.debug("Sleeping %.1fs before next cycle", delay)
                await self._sleep(delay)
        finally:
            await self._browser.close()
            logger.info(
                "Run finished (cycles=%d scan_failures=%d purchased=%d failed=%d reason=%s)",
                summary.cycles,
                summary.scan_failures,
                summary.purchases_succeeded,
                summary.purchases_failed,
                summary.stop_reason,
            )
        return summary

    async def _cycle(self, summary: RunSummary) -> None:
        summary.cycles += 1
        try:
            items = await self._scanner.scan()
        except ScanError as e:
            summary.scan_failures += 1
            logger.warning("Scan failed in cycle %d (%s)", summary.cycles, e)
            await self._notifier.notify("Check Error", f"Error checking for items: {e}")
            return

        qualifying = [item for item in items if self._predicate(item)]
        actionable = [item for item in qualifying if self._ledger.has_quota(item.item_id)]
        if len(actionable) < len(qualifying):
            logger.info("%d qualifying item(s) already at quota", len(qualifying) - len(actionable))
        if not actionable:
            return

        await self._notifier.notify("Free Items Found", _format_found(actionable))

        for item in actionable:
            if self.dry_run:
                logger.info("Dry-run: would purchase %s", item.describe())
                continue
            if not self._ledger.has_quota(item.item_id):
                continue
            try:
                result = await self._executor.purchase(item)
            except AuthenticationError:
                raise
            except Exception as e:
                summary.purchases_failed += 1
                logger.error("Unexpected error purchasing %s", item.item_id, exc_info=True)
                await self._notifier.notify(
                    "Purchase Error",
                    f"Unexpected error purchasing {item.describe()}: {e}\nURL: {item.source_locator}",
                )
                continue
            if result.success:
                summary.purchases_succeeded += 1
            else:
                summary.purchases_failed += 1

    async def _interruptible_sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass


def _format_found(items: list[CatalogItem]) -> str:
    lines = [f"Found {len(items)} qualifying item(s):"]
    for item in items:
        lines.append(f"- {item.describe()} {item.source_locator}")
    return "\n".join(lines)
