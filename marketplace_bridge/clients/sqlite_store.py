"""SQLite record store shared by tokens, orders, webhook events and markers.

Records are JSON documents addressed by a partition key (``pk``) and a sort
key (``sk``), mirroring the layout the bridge uses everywhere:
``account#<id>``/``oauth#<platform>``, ``order#<id>``/``order``,
``webhook``/``event#<id>`` and ``webhook``/``applied#...``.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional


class SQLiteStore:
    """(pk, sk) keyed JSON records with an insert-if-absent primitive."""

    def __init__(self, db_path: str, *, busy_timeout_seconds: float = 5.0) -> None:
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = busy_timeout_seconds
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bridge_records (
                    pk TEXT NOT NULL,
                    sk TEXT NOT NULL,
                    body TEXT NOT NULL,
                    written_at TEXT NOT NULL,
                    PRIMARY KEY (pk, sk)
                )
                """
            )

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=self._timeout, check_same_thread=False)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    @staticmethod
    def _encode(item: Dict[str, Any]) -> tuple[str, str, str, str]:
        pk, sk = item.get("pk"), item.get("sk")
        if not pk or not sk:
            raise ValueError("Records need non-empty 'pk' and 'sk' values")
        written_at = datetime.now(timezone.utc).isoformat()
        return str(pk), str(sk), json.dumps(item), written_at

    def put_item(self, item: Dict[str, Any]) -> None:
        """Insert or replace the record at ``(item["pk"], item["sk"])``."""
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO bridge_records (pk, sk, body, written_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(pk, sk) DO UPDATE
                SET body = excluded.body, written_at = excluded.written_at
                """,
                self._encode(item),
            )

    def put_item_if_absent(self, item: Dict[str, Any]) -> bool:
        """Insert only when the key is free; False means someone got there first."""
        with self._connection() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO bridge_records (pk, sk, body, written_at) "
                "VALUES (?, ?, ?, ?)",
                self._encode(item),
            )
            return cursor.rowcount == 1

    def delete_item(self, *, partition_key: str, sort_key: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM bridge_records WHERE pk = ? AND sk = ?",
                (partition_key, sort_key),
            )
            return cursor.rowcount == 1

    def get_item(self, *, partition_key: str, sort_key: str) -> Optional[Dict[str, Any]]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT body FROM bridge_records WHERE pk = ? AND sk = ?",
                (partition_key, sort_key),
            ).fetchone()
        return json.loads(row[0]) if row else None

    def list_items_with_prefix(
        self, *, partition_key: str, sort_key_prefix: str
    ) -> list[Dict[str, Any]]:
        # LIKE wildcards inside ids must match literally.
        pattern = (
            sort_key_prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        )
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT body FROM bridge_records WHERE pk = ? AND sk LIKE ? ESCAPE '\\' "
                "ORDER BY sk",
                (partition_key, pattern),
            ).fetchall()
        return [json.loads(body) for (body,) in rows]


__all__ = ["SQLiteStore"]
