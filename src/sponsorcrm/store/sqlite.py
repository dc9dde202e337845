from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sponsorcrm.errors import TransactionError
from sponsorcrm.store.migrations import DEFAULT_SCHEMA_PATH, apply_schema


class SqliteSession:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def execute(self, query: str, params: Iterable[Any] | None = None) -> int:
        cur = self._conn.execute(query, list(params or []))
        return cur.rowcount

    def fetch_all(self, query: str, params: Iterable[Any] | None = None) -> list[sqlite3.Row]:
        cur = self._conn.execute(query, list(params or []))
        return cur.fetchall()

    def fetch_one(self, query: str, params: Iterable[Any] | None = None) -> sqlite3.Row | None:
        cur = self._conn.execute(query, list(params or []))
        return cur.fetchone()

    def insert(self, table: str, values: dict[str, Any]) -> None:
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        self.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", values.values())

    def update(self, table: str, id_field: str, record_id: str, values: dict[str, Any]) -> int:
        if not values:
            return 0
        assignments = ", ".join(f"{column} = ?" for column in values)
        params = [*values.values(), record_id]
        return self.execute(f"UPDATE {table} SET {assignments} WHERE {id_field} = ?", params)

    def delete(self, table: str, id_field: str, ids: Iterable[str]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        return self.execute(f"DELETE FROM {table} WHERE {id_field} IN ({placeholders})", ids)


class SqliteStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def session(self) -> Iterator[SqliteSession]:
        with self.connect() as conn:
            yield SqliteSession(conn)

    @contextmanager
    def transaction(self) -> Iterator[SqliteSession]:
        """One atomic unit of work; any sqlite failure surfaces as TransactionError."""
        try:
            with self.connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                yield SqliteSession(conn)
        except sqlite3.Error as exc:
            raise TransactionError(f"Transaction failed: {exc}") from exc

    def apply_schema(self, schema_path: Path = DEFAULT_SCHEMA_PATH) -> None:
        with self.connect() as conn:
            apply_schema(conn, schema_path)

    def execute(self, query: str, params: Iterable[Any] | None = None) -> None:
        with self.connect() as conn:
            conn.execute(query, list(params or []))

    def fetch_all(self, query: str, params: Iterable[Any] | None = None) -> list[sqlite3.Row]:
        with self.connect() as conn:
            cur = conn.execute(query, list(params or []))
            return cur.fetchall()

    def fetch_one(self, query: str, params: Iterable[Any] | None = None) -> sqlite3.Row | None:
        with self.connect() as conn:
            cur = conn.execute(query, list(params or []))
            return cur.fetchone()
