from __future__ import annotations

import logging
import sqlite3
from decimal import Decimal
from typing import Optional

from .errors import TransactionError, TransactionFailure
from .models import PurchaseRecord
from .state import StateStore


logger = logging.getLogger(__name__)


class PurchaseLedger:
    """
    Per-item count of completed purchases, enforcing the per-item quota.

    Counts only ever go up, and only after a purchase is confirmed. With a `StateStore` attached the
    counts survive restarts; without one they live for the process lifetime.

    Not thread-safe: the run loop drives purchases one at a time.
    """

    def __init__(
        self,
        quota: int,
        *,
        store: Optional[StateStore] = None,
        run_id: Optional[int] = None,
    ) -> None:
        if quota < 1:
            raise ValueError(f"quota must be >= 1 (got {quota})")
        self.quota = int(quota)
        self._store = store
        self._run_id = run_id
        self._counts: dict[str, int] = {}
        # Items whose latest count is held in memory only.
        self.unpersisted: set[str] = set()

        if store is not None:
            self._counts.update(store.load_purchase_counts())
            if self._counts:
                logger.info(
                    "Loaded purchase ledger (items=%d at_quota=%d quota=%d)",
                    len(self._counts),
                    sum(1 for n in self._counts.values() if n >= self.quota),
                    self.quota,
                )

    def attempts_for(self, item_id: str) -> int:
        return self._counts.get(item_id, 0)

    def has_quota(self, item_id: str) -> bool:
        return self.attempts_for(item_id) < self.quota

    def record(self, item_id: str) -> PurchaseRecord:
        return PurchaseRecord(item_id=item_id, attempts_succeeded=self.attempts_for(item_id))

    def records(self) -> list[PurchaseRecord]:
        return [PurchaseRecord(item_id=k, attempts_succeeded=v) for k, v in sorted(self._counts.items())]

    def record_success(self, item_id: str, *, title: str = "", price: Decimal = Decimal("0")) -> int:
        """
        Count one confirmed purchase of `item_id` and return the new total.

        Raises `TransactionError(QuotaExceeded)` rather than pushing a record past the quota. A store
        write failure is logged and the count is still taken.
        """
        current = self.attempts_for(item_id)
        if current >= self.quota:
            raise TransactionError(
                TransactionFailure.QUOTA_EXCEEDED,
                f"item {item_id} already purchased {current} time(s) (quota={self.quota})",
            )

        new_count = current + 1
        if self._store is not None:
            try:
                self._store.record_purchase(
                    item_id=item_id,
                    succeeded=new_count,
                    title=title,
                    price=str(price),
                    run_id=self._run_id,
                )
            except sqlite3.Error:
                # The order is already placed: keep counting in memory so the quota holds for this run.
                logger.error("Failed to persist purchase (item_id=%s count=%d)", item_id, new_count, exc_info=True)
                self.unpersisted.add(item_id)
            else:
                self.unpersisted.discard(item_id)
        self._counts[item_id] = new_count
        logger.info("Recorded purchase (item_id=%s count=%d/%d)", item_id, new_count, self.quota)
        return new_count
