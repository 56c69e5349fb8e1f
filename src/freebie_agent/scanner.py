from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional

from .browser.driver import BrowserError, DrivenBrowser
from .browser.selectors import SiteSelectors
from .errors import ScanError, ScanFailure
from .models import CatalogItem, NavigationResult
from .util.money import parse_price


logger = logging.getLogger(__name__)

DEFAULT_FREE_SHIPPING_MARKERS: tuple[str, ...] = ("free shipping", "free delivery")

LISTING_EXTRACTION_SCRIPT = """
(sel) => Array.from(document.querySelectorAll(sel.entry)).map((el) => {
  const txt = (css) => {
    const n = el.querySelector(css);
    return n ? (n.textContent || '').trim() : '';
  };
  const link = el.querySelector(sel.link);
  return {
    id: el.getAttribute('data-asin') || '',
    title: txt(sel.title),
    price: txt(sel.price) || txt(sel.priceFallback),
    shipping: Array.from(el.querySelectorAll(sel.shipping))
      .map((n) => (n.innerText || n.textContent || '').trim())
      .filter(Boolean)
      .join(' | '),
    href: link ? link.href : '',
  };
})
"""


class CatalogScanner:
    """
    Reads the current search listing into `CatalogItem`s. Keeps no state between scans.

    Filtering is left to the caller so the acceptance rule can change without touching extraction.
    """

    def __init__(
        self,
        *,
        browser: DrivenBrowser,
        search_url: str,
        item_url_template: str = "",
        selectors: Optional[SiteSelectors] = None,
        listing_timeout_s: float = 15.0,
        free_shipping_markers: Iterable[str] = DEFAULT_FREE_SHIPPING_MARKERS,
        guard: Optional[Callable[[NavigationResult], None]] = None,
    ) -> None:
        self._browser = browser
        self.search_url = search_url
        self.item_url_template = item_url_template
        self.selectors = selectors or SiteSelectors()
        self.listing_timeout_s = listing_timeout_s
        self.free_shipping_markers = tuple(m.strip().lower() for m in free_shipping_markers if m.strip())
        self._guard = guard

    async def scan(self) -> list[CatalogItem]:
        sel = self.selectors
        try:
            result = await self._browser.navigate(self.search_url)
        except BrowserError as e:
            raise ScanError(ScanFailure.NAVIGATION_FAILED, f"could not open {self.search_url}: {e}") from e
        if self._guard is not None:
            self._guard(result)
        if not result.ok:
            raise ScanError(ScanFailure.NAVIGATION_FAILED, f"search page returned status {result.status}")

        try:
            await self._browser.wait_for_element(sel.listing_container, self.listing_timeout_s)
        except BrowserError as e:
            await self._browser.save_debug("scan_listing_not_ready")
            raise ScanError(
                ScanFailure.LISTING_NOT_READY,
                f"listing did not appear within {self.listing_timeout_s:g}s ({e})",
            ) from e

        arg = {
            "entry": sel.listing_entry,
            "title": sel.entry_title,
            "price": sel.entry_price,
            "priceFallback": sel.entry_price_fallback,
            "shipping": sel.entry_shipping,
            "link": sel.entry_link,
        }
        try:
            raw = await self._browser.evaluate_extraction(LISTING_EXTRACTION_SCRIPT, arg)
        except BrowserError as e:
            raise ScanError(ScanFailure.EXTRACTION_FAILED, f"listing extraction failed: {e}") from e
        if not isinstance(raw, list):
            raise ScanError(ScanFailure.EXTRACTION_FAILED, f"listing extraction returned {type(raw).__name__}")

        items = self.parse_entries(raw)
        logger.info("Scanned listing (entries=%d items=%d)", len(raw), len(items))
        return items

    def parse_entries(self, raw: list[Any]) -> list[CatalogItem]:
        items: list[CatalogItem] = []
        seen: set[str] = set()
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            item = self._parse_entry(entry)
            if item is None or item.item_id in seen:
                continue
            seen.add(item.item_id)
            items.append(item)
        return items

    def _parse_entry(self, entry: dict[str, Any]) -> Optional[CatalogItem]:
        item_id = str(entry.get("id") or "").strip()
        price = parse_price(str(entry.get("price") or ""))
        if not item_id or price is None:
            logger.debug("Skipping listing entry without id/price (id=%r price=%r)", item_id, entry.get("price"))
            return None

        locator = self._locator_for(item_id, str(entry.get("href") or ""))
        if not locator:
            return None

        return CatalogItem(
            item_id=item_id,
            title=str(entry.get("title") or "").strip(),
            price=price,
            shipping_qualifies=self.shipping_qualifies(str(entry.get("shipping") or "")),
            source_locator=locator,
        )

    def shipping_qualifies(self, shipping_text: str) -> bool:
        text = " ".join(shipping_text.lower().split())
        return any(marker in text for marker in self.free_shipping_markers)

    def _locator_for(self, item_id: str, href: str) -> str:
        if self.item_url_template:
            return self.item_url_template.format(item_id=item_id)
        return href.strip()
