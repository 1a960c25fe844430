"""SQLite persistence: users, webapp auth tokens, sessions and message history.

Foreign keys are enforced, so a user row must exist before its sessions and
tokens, and a session row before its messages.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

DEFAULT_TOKEN_QUOTA = 25_000

# Entry keys stored in their own columns; everything else goes into metadata
_MESSAGE_COLUMNS = ("user_id", "session_id", "role", "content")

_FREE_PLAN = "free"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _with_metadata(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    record = dict(row)
    record["metadata"] = json.loads(record.get("metadata") or "{}")
    return record


class MemoryStore:
    """Thread-agnostic store: every call opens its own short-lived connection."""

    def __init__(self, db_path: str = "data/relaybot.db", default_quota: int = DEFAULT_TOKEN_QUOTA):
        self.db_path = db_path
        self.default_quota = default_quota
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._tx() as conn:
            conn.executescript(_SCHEMA)
            _add_missing_columns(conn)
        logger.info(f"MemoryStore ready at {db_path}")

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        """One connection, one transaction: committed on success, rolled back on error."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _fetch_one(self, sql: str, *params: Any) -> sqlite3.Row | None:
        with self._tx() as conn:
            return conn.execute(sql, params).fetchone()

    def _execute(self, sql: str, *params: Any) -> int:
        with self._tx() as conn:
            return conn.execute(sql, params).rowcount

    # ── Users ───────────────────────────────────────────────

    def get_or_create_user(self, user_id: str, name: str | None = None, source: str | None = None) -> str:
        """Insert the user on first sight. An existing record is left untouched."""
        created = self._execute(
            "INSERT OR IGNORE INTO users (user_id, name, source, token_quota) VALUES (?, ?, ?, ?)",
            user_id,
            name,
            source,
            self.default_quota,
        )
        if created:
            logger.info(f"User registered: {user_id} ({source or 'unknown source'})")
        return user_id

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        row = self._fetch_one("SELECT * FROM users WHERE user_id = ?", user_id)
        return dict(row) if row else None

    def user_exists(self, user_id: str) -> bool:
        return self._fetch_one("SELECT 1 FROM users WHERE user_id = ?", user_id) is not None

    def delete_user(self, user_id: str) -> bool:
        """Remove a user and everything that references it."""
        with self._tx() as conn:
            for table in ("messages", "sessions", "auth_tokens"):
                conn.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
            removed = conn.execute("DELETE FROM users WHERE user_id = ?", (user_id,)).rowcount
        if removed:
            logger.info(f"User deleted: {user_id}")
        return removed > 0

    def counts(self) -> dict[str, int]:
        """Row count per table, for status output."""
        with self._tx() as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("users", "sessions", "messages")
            }

    # ── Token usage ─────────────────────────────────────────

    def record_usage(self, user_id: str, tokens: int) -> None:
        self._execute(
            "UPDATE users SET token_usage = token_usage + ?, total_messages = total_messages + 1, "
            "last_active = ? WHERE user_id = ?",
            max(tokens, 0),
            _utcnow().isoformat(),
            user_id,
        )

    def get_token_stats(self, user_id: str) -> dict[str, Any]:
        """``quota``, ``used``, ``remaining``, ``messages`` and ``subscription`` for a user.

        Unknown users get an untouched default allowance.
        """
        user = self.get_user(user_id) or {}
        quota = user.get("token_quota") or self.default_quota
        used = user.get("token_usage") or 0
        return {
            "quota": quota,
            "used": used,
            "remaining": max(quota - used, 0),
            "messages": user.get("total_messages") or 0,
            "subscription": user.get("subscription") or _FREE_PLAN,
        }

    # ── Webapp auth tokens ──────────────────────────────────

    def store_auth_tokens(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: str,
        refresh_expires_at: str | None = None,
    ) -> None:
        """Upsert the user's token pair. A ``None`` refresh token keeps the stored one."""
        self._execute(
            """
            INSERT INTO auth_tokens
                (user_id, access_token, refresh_token, expires_at, refresh_expires_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                access_token = excluded.access_token,
                expires_at = excluded.expires_at,
                refresh_token = COALESCE(excluded.refresh_token, refresh_token),
                refresh_expires_at = COALESCE(excluded.refresh_expires_at, refresh_expires_at),
                updated_at = excluded.updated_at
            """,
            user_id,
            access_token,
            refresh_token,
            expires_at,
            refresh_expires_at,
            _utcnow().isoformat(),
        )

    def get_auth_tokens(self, user_id: str) -> dict[str, Any] | None:
        row = self._fetch_one("SELECT * FROM auth_tokens WHERE user_id = ?", user_id)
        return dict(row) if row else None

    def has_valid_auth_token(self, user_id: str) -> bool:
        tokens = self.get_auth_tokens(user_id)
        if not tokens or not tokens["access_token"]:
            return False
        try:
            expires_at = datetime.fromisoformat(tokens["expires_at"])
        except ValueError:
            logger.warning(f"Unparseable token expiry for {user_id}: {tokens['expires_at']!r}")
            return False
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at > _utcnow()

    def revoke_auth_tokens(self, user_id: str) -> None:
        self._execute("DELETE FROM auth_tokens WHERE user_id = ?", user_id)

    # ── Sessions ────────────────────────────────────────────

    def get_or_create_session(
        self,
        session_id: str,
        user_id: str,
        channel: str = "api",
        chat_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Ensure the session exists.

        For an existing session only ``metadata`` is applied, merged key by key
        over what is stored; channel and chat id keep their first values.
        """
        with self._tx() as conn:
            row = conn.execute("SELECT metadata FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO sessions (session_id, user_id, channel, chat_id, metadata) VALUES (?, ?, ?, ?, ?)",
                    (session_id, user_id, channel, chat_id, json.dumps(metadata or {})),
                )
                logger.info(f"Session opened: {session_id} [{channel}] user={user_id}")
            elif metadata:
                merged = json.loads(row["metadata"] or "{}")
                merged.update(metadata)
                conn.execute(
                    "UPDATE sessions SET metadata = ?, last_active = ? WHERE session_id = ?",
                    (json.dumps(merged), _utcnow().isoformat(), session_id),
                )
        return session_id

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        return _with_metadata(self._fetch_one("SELECT * FROM sessions WHERE session_id = ?", session_id))

    def get_user_sessions(self, user_id: str, limit: int = 10) -> list[dict[str, Any]]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT session_id, channel, chat_id, started_at, last_active FROM sessions "
                "WHERE user_id = ? ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [dict(row) for row in rows]

    # ── Messages ────────────────────────────────────────────

    def append_messages(self, entries: list[dict[str, Any]]) -> int:
        """Write memory entries atomically and return how many were written.

        Parameters
        ----------
        entries
            Dicts with ``user_id``, ``session_id``, ``role`` and ``content``.
            Any further keys are kept in the row's metadata JSON.
        """
        if not entries:
            return 0
        rows = [
            (
                *(entry[column] for column in _MESSAGE_COLUMNS),
                json.dumps({k: v for k, v in entry.items() if k not in _MESSAGE_COLUMNS}, default=str),
            )
            for entry in entries
        ]
        touched = {entry["session_id"] for entry in entries}
        now = _utcnow().isoformat()
        with self._tx() as conn:
            conn.executemany(
                "INSERT INTO messages (user_id, session_id, role, content, metadata) VALUES (?, ?, ?, ?, ?)",
                rows,
            )
            conn.executemany(
                "UPDATE sessions SET last_active = ? WHERE session_id = ?",
                [(now, session_id) for session_id in touched],
            )
        return len(rows)

    def get_messages(self, user_id: str, session_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        """Oldest-first history of one session; with ``limit`` only the newest rows are kept."""
        sql = (
            "SELECT id, role, content, metadata, created_at FROM messages "
            "WHERE user_id = ? AND session_id = ? ORDER BY id DESC"
        )
        params: list[Any] = [user_id, session_id]
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        with self._tx() as conn:
            newest_first = conn.execute(sql, params).fetchall()
        return [_with_metadata(row) for row in reversed(newest_first)]

    def clear_messages(self, user_id: str, session_id: str) -> int:
        removed = self._execute(
            "DELETE FROM messages WHERE user_id = ? AND session_id = ?", user_id, session_id
        )
        logger.info(f"History cleared for {session_id}: {removed} messages")
        return removed


def _add_missing_columns(conn: sqlite3.Connection) -> None:
    """Bring databases created by older releases up to the current users table."""
    present = {row["name"] for row in conn.execute("PRAGMA table_info(users)")}
    for column, ddl in (("source", "TEXT"), ("last_active", "TIMESTAMP")):
        if column not in present:
            conn.execute(f"ALTER TABLE users ADD COLUMN {column} {ddl}")


_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id        TEXT PRIMARY KEY,
    name           TEXT,
    source         TEXT,
    token_quota    INTEGER DEFAULT 25000,
    token_usage    INTEGER DEFAULT 0,
    total_messages INTEGER DEFAULT 0,
    subscription   TEXT DEFAULT 'free',
    created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    last_active    TIMESTAMP
);

CREATE TABLE IF NOT EXISTS auth_tokens (
    user_id            TEXT PRIMARY KEY REFERENCES users(user_id),
    access_token       TEXT NOT NULL,
    refresh_token      TEXT,
    expires_at         TEXT NOT NULL,
    refresh_expires_at TEXT,
    updated_at         TEXT
);

CREATE TABLE IF NOT EXISTS sessions (
    session_id  TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL REFERENCES users(user_id),
    channel     TEXT DEFAULT 'api',
    chat_id     TEXT,
    metadata    TEXT DEFAULT '{}',
    started_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    last_active TIMESTAMP
);

CREATE TABLE IF NOT EXISTS messages (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id    TEXT NOT NULL,
    session_id TEXT NOT NULL REFERENCES sessions(session_id),
    role       TEXT NOT NULL,
    content    TEXT NOT NULL,
    metadata   TEXT DEFAULT '{}',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(user_id, session_id, id);
CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id, started_at DESC);
"""
