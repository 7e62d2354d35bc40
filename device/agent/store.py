"""
Local Store: the device's embedded SQLite database.

One LocalStore is opened per process and handed to everything that needs
it (checkout, catalog, ledger, sync). The connection runs in autocommit
mode; multi-statement work goes through `transaction()`, which issues
BEGIN IMMEDIATE / COMMIT / ROLLBACK explicitly so a failure anywhere in
the block leaves no partial rows behind.
"""

import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from shopline.cart import to_money
from shopline.logs import json_log

ROOT = os.path.dirname(os.path.abspath(__file__))
SCHEMA_PATH = os.path.join(ROOT, "sqlite_schema.sql")

SYNC_PENDING = "pending"
SYNC_SYNCED = "synced"
SYNC_FAILED = "failed"

TOKEN_KEY = "token"
LANGUAGE_KEY = "language"
LAST_SYNC_KEY = "last_sync_at"


def _convert_decimal(raw: bytes) -> Decimal:
    return to_money(raw.decode("utf-8"))


sqlite3.register_adapter(Decimal, str)
sqlite3.register_converter("DECIMAL", _convert_decimal)


def iso_now() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class LocalStore:
    def __init__(self, path: str, schema_path: str = SCHEMA_PATH):
        self.path = path
        self.schema_path = schema_path
        self._lock = threading.RLock()
        self._depth = 0
        self.conn = sqlite3.connect(
            path,
            timeout=30,
            detect_types=sqlite3.PARSE_DECLTYPES,
            isolation_level=None,
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys=ON;")
        if path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")

    @classmethod
    def open(cls, path: str, schema_path: str = SCHEMA_PATH) -> "LocalStore":
        store = cls(path, schema_path=schema_path)
        store.init_schema()
        return store

    def init_schema(self) -> None:
        if not os.path.exists(self.schema_path):
            raise RuntimeError(f"Missing schema file: {self.schema_path}")
        with open(self.schema_path, "r", encoding="utf-8") as f:
            schema = f.read()
        with self._lock:
            self.conn.executescript(schema)
            # CREATE TABLE IF NOT EXISTS does not add new columns to an
            # existing device database.
            cols = {r["name"] for r in self.conn.execute("PRAGMA table_info(products)").fetchall()}
            wanted = {
                "deleted": "INTEGER NOT NULL DEFAULT 0",
                "updatedAt": "TEXT NOT NULL DEFAULT ''",
            }
            for col, ddl in wanted.items():
                if col not in cols:
                    self.conn.execute(f"ALTER TABLE products ADD COLUMN {col} {ddl}")
        json_log("info", "store.schema_ready", path=self.path)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self):
        with self._lock:
            outer = self._depth == 0
            if outer:
                self.conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outer:
                    self.conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outer:
                    self.conn.execute("COMMIT")

    @contextmanager
    def savepoint(self, name: str = "row"):
        """Roll back just this block on error; only valid inside transaction()."""
        if not self.in_transaction:
            raise RuntimeError("savepoint() requires an open transaction")
        with self._lock:
            self.conn.execute(f"SAVEPOINT {name}")
            try:
                yield self
            except BaseException:
                self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                self.conn.execute(f"RELEASE SAVEPOINT {name}")
                raise
            else:
                self.conn.execute(f"RELEASE SAVEPOINT {name}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, params)

    def query(self, sql: str, params: tuple = ()) -> list[dict]:
        with self._lock:
            return [dict(r) for r in self.conn.execute(sql, params).fetchall()]

    def query_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        with self._lock:
            row = self.conn.execute(sql, params).fetchone()
            return dict(row) if row else None

    def scalar(self, sql: str, params: tuple = ()) -> Any:
        with self._lock:
            row = self.conn.execute(sql, params).fetchone()
            return row[0] if row else None

    # Settings (key/value, never synced).

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self.query_one("SELECT value FROM settings WHERE key = ?", (key,))
        return row["value"] if row else default

    def set_setting(self, key: str, value: str) -> None:
        self.execute(
            """
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value
            """,
            (key, str(value)),
        )

    def delete_setting(self, key: str) -> None:
        self.execute("DELETE FROM settings WHERE key = ?", (key,))

    def get_token(self) -> Optional[str]:
        token = (self.get_setting(TOKEN_KEY) or "").strip()
        return token or None

    def set_token(self, token: str) -> None:
        token = (token or "").strip()
        if not token:
            raise ValueError("token is required")
        self.set_setting(TOKEN_KEY, token)

    def clear_token(self) -> None:
        self.delete_setting(TOKEN_KEY)

    def get_language(self, default: str = "en") -> str:
        return self.get_setting(LANGUAGE_KEY) or default

    def set_language(self, language: str) -> None:
        self.set_setting(LANGUAGE_KEY, (language or "").strip() or "en")

    def clear(self) -> None:
        # Children before parents; FKs are enforced.
        with self.transaction():
            for table in ("sale_items", "sales", "inventory", "products", "settings"):
                self.execute(f"DELETE FROM {table}")
        json_log("info", "store.cleared", path=self.path)
