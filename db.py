"""SQLite persistence for subscriber snapshots and analytics events.

This module is the durable backstop behind ``engines.state_store``: the store
keeps subscribers in memory and calls these helpers from worker threads.
"""

import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")
FETCH_TIMEOUT_SECONDS = float(os.getenv("STATE_FETCH_TIMEOUT", "") or 10)

_JSON_COLUMNS = ("context", "preferences", "conversation_history")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10, timeout=FETCH_TIMEOUT_SECONDS)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def init() -> None:
    """Create the ``subscribers`` and ``events`` tables if they don't exist."""
    _exec(
        """
        CREATE TABLE IF NOT EXISTS subscribers (
            id TEXT PRIMARY KEY,
            current_menu TEXT NOT NULL DEFAULT 'welcome',
            context TEXT,
            preferences TEXT,
            conversation_history TEXT,
            last_active TEXT,
            updated_at TEXT
        )
        """
    )
    _exec(
        """
        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            subscriber_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            payload TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    _exec("CREATE INDEX IF NOT EXISTS idx_events_subscriber ON events(subscriber_id, created_at)")


def fetch_subscriber(subscriber_id: str) -> Optional[Dict[str, Any]]:
    """Return the stored snapshot for ``subscriber_id`` or ``None`` if absent."""
    rows = _query("SELECT * FROM subscribers WHERE id = ?", [subscriber_id])
    if not rows:
        return None
    row = dict(rows[0])
    row["context"] = _loads(row.get("context"), {})
    row["preferences"] = _loads(row.get("preferences"), {})
    row["conversation_history"] = _loads(row.get("conversation_history"), [])
    return row


def upsert_subscriber(row: Mapping[str, Any]) -> None:
    """Insert or replace the snapshot keyed by ``row['id']``."""
    if not row.get("id"):
        raise ValueError("subscriber row requires an id")
    encoded = {key: json.dumps(row.get(key), ensure_ascii=False) for key in _JSON_COLUMNS}
    _exec(
        """
        INSERT INTO subscribers
            (id, current_menu, context, preferences, conversation_history, last_active, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            current_menu = excluded.current_menu,
            context = excluded.context,
            preferences = excluded.preferences,
            conversation_history = excluded.conversation_history,
            last_active = excluded.last_active,
            updated_at = excluded.updated_at
        """,
        (
            row["id"],
            row.get("current_menu") or "welcome",
            encoded["context"],
            encoded["preferences"],
            encoded["conversation_history"],
            row.get("last_active"),
            row.get("updated_at") or _now_iso(),
        ),
    )


def delete_subscriber(subscriber_id: str) -> None:
    _exec("DELETE FROM subscribers WHERE id = ?", [subscriber_id])


def insert_event(subscriber_id: str, event_type: str, payload: Optional[Mapping[str, Any]] = None) -> None:
    """Append one analytics event."""
    _exec(
        "INSERT INTO events (subscriber_id, event_type, payload, created_at) VALUES (?, ?, ?, ?)",
        (subscriber_id, event_type, json.dumps(dict(payload or {}), ensure_ascii=False), _now_iso()),
    )


def list_events(subscriber_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    rows = _query(
        """
        SELECT event_type, payload, created_at FROM events
        WHERE subscriber_id = ?
        ORDER BY id ASC
        LIMIT ?
        """,
        [subscriber_id, int(limit)],
    )
    return [
        {
            "event_type": row["event_type"],
            "payload": _loads(row["payload"], {}),
            "created_at": row["created_at"],
        }
        for row in rows
    ]
