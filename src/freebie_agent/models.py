from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import TransactionError


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity: str
    authenticated: bool = True
    established_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CatalogItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    title: str = ""
    price: Decimal
    shipping_qualifies: bool = False
    source_locator: str

    def describe(self) -> str:
        title = self.title or "(untitled)"
        return f"{title} (id={self.item_id} price=${self.price:.2f})"


AcceptancePredicate = Callable[[CatalogItem], bool]


def make_acceptance_predicate(
    *,
    max_price: Decimal = Decimal("0"),
    require_free_shipping: bool = True,
) -> AcceptancePredicate:
    """
    Build the qualifying-item predicate.

    Default: price == 0 AND the listing advertises free shipping. Negative prices never qualify.
    """
    limit = Decimal(max_price)

    def _accepts(item: CatalogItem) -> bool:
        if item.price < 0 or item.price > limit:
            return False
        if require_free_shipping and not item.shipping_qualifies:
            return False
        return True

    return _accepts


class PurchaseRecord(BaseModel):
    item_id: str
    attempts_succeeded: int = Field(default=0, ge=0)


@dataclass(frozen=True)
class RunWindow:
    started_at: float
    duration_seconds: float

    @property
    def ends_at(self) -> float:
        return self.started_at + self.duration_seconds

    def is_open(self, now: float) -> bool:
        return now < self.ends_at


@dataclass(frozen=True)
class NavigationResult:
    url: str
    status: Optional[int] = None

    @property
    def ok(self) -> bool:
        # Some navigations (same-document, about:blank) have no response; treat as not-ok.
        return self.status is not None and 200 <= self.status < 400


@dataclass(frozen=True)
class PurchaseResult:
    item: CatalogItem
    success: bool
    error: Optional[TransactionError] = None


@dataclass
class RunSummary:
    cycles: int = 0
    scan_failures: int = 0
    purchases_succeeded: int = 0
    purchases_failed: int = 0
    stop_reason: str = ""
    fatal: bool = False
