from __future__ import annotations

import logging
import shutil
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseCountRow:
    item_id: str
    succeeded: int
    title: str
    first_purchased_at: str
    last_purchased_at: str


class StateStore:
    """
    SQLite-backed state for the agent: per-item purchase counts, a purchase log, and a run log.

    Purchase counts are what keeps the per-item quota honest across restarts, so the DB is
    self-healing: a corrupted file is quarantined and the last-known-good backup restored.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")

        self._conn = self._open_or_restore()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        self._conn.close()

    def _open_or_restore(self) -> sqlite3.Connection:
        if self.db_path.exists():
            try:
                conn = sqlite3.connect(self.db_path)
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except sqlite3.DatabaseError as e:
                logger.warning("State DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = sqlite3.connect(self.db_path)
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored state DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except (OSError, sqlite3.DatabaseError):
                        logger.warning("Failed to restore state DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No state DB backup found; creating a fresh DB (purchase counts reset).")

        return sqlite3.connect(self.db_path)

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            # Touch schema_version to fail fast on "file is not a database".
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except sqlite3.DatabaseError:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except OSError:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return

        try:
            self.backup()
        except (OSError, sqlite3.Error):
            logger.debug("Failed to write state DB backup.", exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup of the state DB at `<db_path>.bak`.
        """
        out = self._backup_path
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        dst = sqlite3.connect(tmp)
        try:
            self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS purchase_counts (
              item_id TEXT PRIMARY KEY,
              succeeded INTEGER NOT NULL,
              title TEXT NOT NULL DEFAULT '',
              first_purchased_at TEXT NOT NULL,
              last_purchased_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS purchases (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              item_id TEXT NOT NULL,
              title TEXT NOT NULL DEFAULT '',
              price TEXT NOT NULL,
              run_id INTEGER,
              created_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              started_at TEXT NOT NULL,
              finished_at TEXT,
              ok INTEGER,
              message TEXT
            );
            """
        )
        self._conn.commit()

    def load_purchase_counts(self) -> dict[str, int]:
        rows = self._conn.execute("SELECT item_id, succeeded FROM purchase_counts;").fetchall()
        return {str(item_id): int(n) for item_id, n in rows}

    def list_purchase_counts(self) -> list[PurchaseCountRow]:
        rows = self._conn.execute(
            """
            SELECT item_id, succeeded, title, first_purchased_at, last_purchased_at
            FROM purchase_counts
            ORDER BY last_purchased_at DESC;
            """
        ).fetchall()
        return [PurchaseCountRow(str(r[0]), int(r[1]), str(r[2] or ""), str(r[3]), str(r[4])) for r in rows]

    def record_purchase(
        self,
        *,
        item_id: str,
        succeeded: int,
        title: str = "",
        price: str = "0.00",
        run_id: Optional[int] = None,
    ) -> None:
        """
        Persist the new success count for an item and append to the purchase log, in one transaction.
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO purchase_counts(item_id, succeeded, title, first_purchased_at, last_purchased_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(item_id) DO UPDATE SET
                  succeeded = excluded.succeeded,
                  title = CASE WHEN excluded.title != '' THEN excluded.title ELSE purchase_counts.title END,
                  last_purchased_at = excluded.last_purchased_at;
                """,
                (item_id, succeeded, title, now, now),
            )
            self._conn.execute(
                "INSERT INTO purchases(item_id, title, price, run_id, created_at) VALUES (?, ?, ?, ?, ?);",
                (item_id, title, price, run_id, now),
            )

    def record_run_start(self) -> int:
        now = datetime.now(timezone.utc).isoformat()
        cur = self._conn.execute("INSERT INTO runs(started_at) VALUES (?);", (now,))
        self._conn.commit()
        return int(cur.lastrowid)

    def record_run_finish(self, run_id: int, *, ok: bool, message: Optional[str] = None) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            "UPDATE runs SET finished_at = ?, ok = ?, message = ? WHERE id = ?;",
            (now, 1 if ok else 0, message, run_id),
        )
        self._conn.commit()

        # Only snapshot after a clean finish so a bad run never overwrites the good backup.
        if ok:
            self._maybe_backup(if_missing=False)
