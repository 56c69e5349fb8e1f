from __future__ import annotations

import logging
from typing import Callable, Optional

from .browser.driver import BrowserError, DrivenBrowser, ElementWaitTimeout
from .browser.selectors import SiteSelectors
from .errors import TransactionError, TransactionFailure
from .ledger import PurchaseLedger
from .models import CatalogItem, NavigationResult, PurchaseResult
from .notify import Notifier


logger = logging.getLogger(__name__)


class TransactionExecutor:
    """
    Buys one item: product page -> add to cart -> cart -> checkout -> place order -> confirmation.

    Every wait is bounded by `step_timeout_s`. A confirmed order is counted in the ledger before the
    success notification goes out. Session expiry (`AuthenticationError` from the guard) propagates.
    """

    def __init__(
        self,
        *,
        browser: DrivenBrowser,
        ledger: PurchaseLedger,
        notifier: Notifier,
        selectors: Optional[SiteSelectors] = None,
        step_timeout_s: float = 5.0,
        guard: Optional[Callable[[NavigationResult], None]] = None,
    ) -> None:
        self._browser = browser
        self._ledger = ledger
        self._notifier = notifier
        self.selectors = selectors or SiteSelectors()
        self.step_timeout_s = step_timeout_s
        self._guard = guard

    async def purchase(self, item: CatalogItem) -> PurchaseResult:
        # Checked again here: the caller's check may be stale by the time we get the browser.
        if not self._ledger.has_quota(item.item_id):
            err = TransactionError(
                TransactionFailure.QUOTA_EXCEEDED,
                f"item {item.item_id} already purchased {self._ledger.attempts_for(item.item_id)} time(s) "
                f"(quota={self._ledger.quota})",
            )
            logger.info("Skipping purchase (%s)", err)
            return PurchaseResult(item=item, success=False, error=err)

        logger.info("Purchasing %s", item.describe())
        try:
            await self._run_checkout(item)
            count = self._ledger.record_success(item.item_id, title=item.title, price=item.price)
        except TransactionError as e:
            logger.warning("Purchase failed for %s (%s)", item.item_id, e)
            await self._browser.save_debug(f"purchase_failure_{item.item_id}")
            await self._notifier.notify(
                "Purchase Error",
                f"Error purchasing {item.describe()}: {e}\nURL: {item.source_locator}",
            )
            return PurchaseResult(item=item, success=False, error=e)

        body = f"Purchased {item.describe()} ({count}/{self._ledger.quota} for this item)\nURL: {item.source_locator}"
        if item.item_id in self._ledger.unpersisted:
            body += "\nNote: the purchase ledger could not be saved; this count is kept for the current run only."
        await self._notifier.notify("Purchase Successful", body)
        return PurchaseResult(item=item, success=True)

    async def _run_checkout(self, item: CatalogItem) -> None:
        sel = self.selectors

        try:
            result = await self._browser.navigate(item.source_locator)
        except BrowserError as e:
            raise TransactionError(
                TransactionFailure.NAVIGATION_FAILED, f"could not open item page: {e}", step="open_item"
            ) from e
        if self._guard is not None:
            self._guard(result)
        if not result.ok:
            raise TransactionError(
                TransactionFailure.NAVIGATION_FAILED,
                f"item page returned status {result.status}",
                step="open_item",
            )

        await self._wait_and_click(sel.add_to_cart, step="add_to_cart")
        await self._wait_and_click(sel.nav_cart, step="open_cart")
        await self._wait_and_click(sel.proceed_to_checkout, step="proceed_to_checkout")
        await self._wait_and_click(sel.place_order, step="place_order")
        await self._wait(sel.order_confirmation, step="confirm_order")
        logger.info("Order confirmed for %s", item.item_id)

    async def _wait_and_click(self, selector: str, *, step: str) -> None:
        await self._wait(selector, step=step)
        try:
            await self._browser.click(selector)
        except ElementWaitTimeout as e:
            raise TransactionError(TransactionFailure.STEP_TIMEOUT, str(e), step=step) from e
        except BrowserError as e:
            raise TransactionError(TransactionFailure.STEP_FAILED, str(e), step=step) from e
        logger.debug("Purchase step done: %s", step)

    async def _wait(self, selector: str, *, step: str) -> None:
        try:
            await self._browser.wait_for_element(selector, self.step_timeout_s)
        except ElementWaitTimeout as e:
            raise TransactionError(TransactionFailure.STEP_TIMEOUT, str(e), step=step) from e
        except BrowserError as e:
            raise TransactionError(TransactionFailure.STEP_FAILED, str(e), step=step) from e
