from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from fakes import ITEM_URL_TEMPLATE, LOGIN_URL, SEARCH_URL, FakeBrowser, listing_entry
from freebie_agent.browser import BrowserError, SiteSelectors
from freebie_agent.errors import AuthenticationError, AuthFailure, ScanError, ScanFailure
from freebie_agent.models import NavigationResult
from freebie_agent.scanner import CatalogScanner


SEL = SiteSelectors()


def _scanner(browser: FakeBrowser, **kwargs) -> CatalogScanner:
    kwargs.setdefault("item_url_template", ITEM_URL_TEMPLATE)
    return CatalogScanner(browser=browser, search_url=SEARCH_URL, listing_timeout_s=0.1, **kwargs)


def test_scan_parses_listing_entries() -> None:
    browser = FakeBrowser()
    browser.listings = [
        [
            listing_entry("B0FREE0001", "$0.00", title="Sticker pack"),
            listing_entry("B0PAID0002", "$4.99", shipping="Ships to your address"),
            listing_entry("B0FREE0003", "FREE", shipping="FREE delivery Tue, Oct 21"),
        ]
    ]

    items = asyncio.run(_scanner(browser).scan())

    assert browser.navigations == [SEARCH_URL]
    assert [i.item_id for i in items] == ["B0FREE0001", "B0PAID0002", "B0FREE0003"]
    first, paid, free = items
    assert first.title == "Sticker pack"
    assert first.price == Decimal("0.00")
    assert first.shipping_qualifies is True
    assert first.source_locator == "https://shop.example/dp/B0FREE0001"
    assert paid.price == Decimal("4.99")
    assert paid.shipping_qualifies is False
    assert free.price == Decimal("0.00")
    assert free.shipping_qualifies is True


def test_parse_entries_skips_missing_id_or_price_and_duplicates() -> None:
    scanner = _scanner(FakeBrowser())
    raw = [
        listing_entry("", "$0.00"),
        listing_entry("B0NOPRICE1", ""),
        listing_entry("B0NOPRICE2", "See options"),
        listing_entry("B0GOOD0001", "$0.00"),
        listing_entry("B0GOOD0001", "$0.00"),
        "not-a-record",
    ]

    items = scanner.parse_entries(raw)

    assert [i.item_id for i in items] == ["B0GOOD0001"]


def test_locator_falls_back_to_listing_link_without_template() -> None:
    scanner = _scanner(FakeBrowser(), item_url_template="")
    items = scanner.parse_entries([listing_entry("B0LINK0001", "$0.00")])
    assert items[0].source_locator == "https://shop.example/gp/slredirect?asin=B0LINK0001"


def test_shipping_markers_are_configurable_and_case_insensitive() -> None:
    scanner = _scanner(FakeBrowser(), free_shipping_markers=["Free Pickup"])
    assert scanner.shipping_qualifies("FREE   pickup today") is True
    assert scanner.shipping_qualifies("FREE Shipping") is False

    default = _scanner(FakeBrowser())
    assert default.shipping_qualifies("Get it by Friday | FREE Shipping by Amazon") is True
    assert default.shipping_qualifies("") is False


def test_listing_not_ready() -> None:
    browser = FakeBrowser()
    browser.missing.add(SEL.listing_container)

    with pytest.raises(ScanError) as exc:
        asyncio.run(_scanner(browser).scan())

    assert exc.value.kind is ScanFailure.LISTING_NOT_READY
    assert browser.debug_saves == ["scan_listing_not_ready"]


@pytest.mark.parametrize(
    "nav",
    [NavigationResult(url=SEARCH_URL, status=500), BrowserError("net::ERR_CONNECTION_RESET")],
)
def test_search_navigation_failure(nav) -> None:
    browser = FakeBrowser()
    browser.nav_results[SEARCH_URL] = nav

    with pytest.raises(ScanError) as exc:
        asyncio.run(_scanner(browser).scan())

    assert exc.value.kind is ScanFailure.NAVIGATION_FAILED


@pytest.mark.parametrize("listing", [BrowserError("Execution context was destroyed"), {"not": "a list"}])
def test_extraction_failure(listing) -> None:
    browser = FakeBrowser()
    browser.listings = [listing]

    with pytest.raises(ScanError) as exc:
        asyncio.run(_scanner(browser).scan())

    assert exc.value.kind is ScanFailure.EXTRACTION_FAILED


def test_guard_sees_every_navigation_and_can_abort() -> None:
    browser = FakeBrowser()
    browser.nav_results[SEARCH_URL] = NavigationResult(url=LOGIN_URL, status=200)
    seen: list[NavigationResult] = []

    def guard(result: NavigationResult) -> None:
        seen.append(result)
        raise AuthenticationError(AuthFailure.SESSION_EXPIRED, "redirected")

    with pytest.raises(AuthenticationError):
        asyncio.run(_scanner(browser, guard=guard).scan())

    assert [r.url for r in seen] == [LOGIN_URL]


def test_scanner_keeps_no_state_between_scans() -> None:
    browser = FakeBrowser()
    browser.listings = [[listing_entry("B0ONE00001", "$0.00")], [listing_entry("B0TWO00002", "$0.00")]]
    scanner = _scanner(browser)

    first = asyncio.run(scanner.scan())
    second = asyncio.run(scanner.scan())

    assert [i.item_id for i in first] == ["B0ONE00001"]
    assert [i.item_id for i in second] == ["B0TWO00002"]
