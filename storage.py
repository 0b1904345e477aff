"""
storage.py – SQLite persistence for scraped LinkedIn conversations.

Conversations are unique per ``(contact_name, linkedin_account_id)``
whenever the account id is set; rows without one are legacy orphans and
are never listed for an owner.  Every write runs inside ``transaction()``
(``BEGIN IMMEDIATE`` … ``COMMIT``) and is rolled back as a whole on error.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterable, Mapping

from config import DATABASE_PATH
from errors import ConversationNotFound, InboxBotError, PermissionDenied, PersistenceError

logger = logging.getLogger("LinkedInInbox")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    contact_name TEXT NOT NULL,
    last_updated TEXT,
    user_id INTEGER,
    linkedin_account_id TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_conversations_contact_account
    ON conversations(contact_name, linkedin_account_id)
    WHERE linkedin_account_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS idx_conversations_account
    ON conversations(linkedin_account_id);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id INTEGER NOT NULL
        REFERENCES conversations(id) ON DELETE CASCADE,
    sender TEXT,
    receiver TEXT,
    message TEXT NOT NULL,
    time TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id);
"""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# ──────────────────────────────────────────────
# Message Time Parsing
# ──────────────────────────────────────────────

_ABSOLUTE_FORMATS = (
    "%A, %B %d, %Y at %I:%M %p",
    "%A, %B %d, %Y, %I:%M %p",
    "%B %d, %Y, %I:%M %p",
    "%b %d, %Y, %I:%M %p",
    "%B %d, %Y %I:%M %p",
    "%b %d, %Y %I:%M %p",
    "%m/%d/%Y, %I:%M %p",
    "%m/%d/%Y %I:%M %p",
    "%B %d, %Y",
    "%b %d, %Y",
    "%m/%d/%Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
)

_CLOCK_FORMATS = ("%I:%M %p", "%H:%M")
_RELATIVE_DAY = re.compile(r"^(today|yesterday)\b[,\s]*(?:at\s+)?(.*)$", re.IGNORECASE)


def _as_utc(dt: datetime) -> datetime:
    # Naive values come from the browser UI and are local time
    return dt.astimezone(timezone.utc)


def _parse_clock(text: str) -> tuple[int, int] | None:
    for fmt in _CLOCK_FORMATS:
        try:
            parsed = datetime.strptime(text.upper(), fmt)
            return parsed.hour, parsed.minute
        except ValueError:
            continue
    return None


def parse_message_time(text: str | None, now: datetime | None = None) -> datetime | None:
    """Best-effort parse of a message time into an aware UTC datetime.

    Understands ISO 8601 (``datetime`` attributes, stored watermarks),
    LinkedIn's long title formats and ``Today``/``Yesterday`` prefixes
    followed by a clock time.  A bare clock time carries no date, so it is
    unparseable, as is anything that lands after ``now``.  Returns ``None``
    when unparseable.
    """
    if not text:
        return None
    text = " ".join(text.split())
    if not text:
        return None
    now = now or datetime.now(timezone.utc)
    parsed = _parse_dated(text, now)
    if parsed is None or parsed > now:
        return None
    return parsed


def _parse_dated(text: str, now: datetime) -> datetime | None:
    try:
        return _as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass

    for fmt in _ABSOLUTE_FORMATS:
        try:
            return _as_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue

    match = _RELATIVE_DAY.match(text)
    if not match:
        return None
    day = now.astimezone()
    if match.group(1).lower() == "yesterday":
        day = day - timedelta(days=1)
    clock = _parse_clock(match.group(2))
    if clock is None:
        return None
    return _as_utc(day.replace(hour=clock[0], minute=clock[1], second=0, microsecond=0))


# ──────────────────────────────────────────────
# Inbox Store
# ──────────────────────────────────────────────

class InboxStore:
    """Conversation and message storage backed by one SQLite connection."""

    def __init__(self, db_path: str = DATABASE_PATH) -> None:
        self.db_path = db_path
        # Autocommit mode: transactions are opened explicitly
        self.conn = sqlite3.connect(
            str(db_path),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._lock = threading.RLock()
        self._depth = 0
        self.conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self):
        """Atomic unit of work.  Nested calls join the outer transaction."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return

            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise PersistenceError(f"Could not open transaction: {exc}") from exc
            self._depth = 1
            try:
                yield self.conn
            except Exception as exc:
                self._depth = 0
                try:
                    self.conn.execute("ROLLBACK")
                except sqlite3.Error as rb_exc:
                    logger.error("Rollback failed: %s", rb_exc)
                if isinstance(exc, InboxBotError):
                    raise
                raise PersistenceError(f"Transaction rolled back: {exc}") from exc
            self._depth = 0
            try:
                self.conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self.conn.execute("ROLLBACK")
                raise PersistenceError(f"Commit failed: {exc}") from exc

    # ── writes ──
    def upsert_conversation(self, contact_name: str, owner: str | None, user_id: int | None = None) -> int:
        """Return the id of the ``(contact_name, owner)`` conversation,
        creating it on first sight.  Safe to call repeatedly.
        """
        with self.transaction() as conn:
            if owner:
                conn.execute(
                    "INSERT OR IGNORE INTO conversations (contact_name, last_updated, user_id, linkedin_account_id) "
                    "VALUES (?, ?, ?, ?)",
                    (contact_name, utc_now_iso(), user_id, owner),
                )
                row = conn.execute(
                    "SELECT id, user_id FROM conversations WHERE contact_name = ? AND linkedin_account_id = ?",
                    (contact_name, owner),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT id, user_id FROM conversations "
                    "WHERE contact_name = ? AND linkedin_account_id IS NULL ORDER BY id LIMIT 1",
                    (contact_name,),
                ).fetchone()
                if row is None:
                    cur = conn.execute(
                        "INSERT INTO conversations (contact_name, last_updated, user_id) VALUES (?, ?, ?)",
                        (contact_name, utc_now_iso(), user_id),
                    )
                    return cur.lastrowid

            if user_id is not None and row["user_id"] is None:
                conn.execute("UPDATE conversations SET user_id = ? WHERE id = ?", (user_id, row["id"]))
            return row["id"]

    def _insert_messages(self, conn, conversation_id: int, messages: Iterable[Mapping]) -> int:
        count = 0
        for msg in messages:
            conn.execute(
                "INSERT INTO messages (conversation_id, sender, receiver, message, time) VALUES (?, ?, ?, ?, ?)",
                (conversation_id, msg.get("sender"), msg.get("receiver"), msg["message"], msg.get("time")),
            )
            count += 1
        return count

    def _require(self, conn, conversation_id: int) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        if row is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return row

    def replace_messages(self, conversation_id: int, messages: Iterable[Mapping]) -> int:
        """Full scrape: swap the stored messages for *messages* atomically."""
        with self.transaction() as conn:
            self._require(conn, conversation_id)
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            inserted = self._insert_messages(conn, conversation_id, messages)
            conn.execute(
                "UPDATE conversations SET last_updated = ? WHERE id = ?",
                (utc_now_iso(), conversation_id),
            )
        logger.info("Stored %d messages for conversation %d", inserted, conversation_id)
        return inserted

    def append_new_messages(
        self,
        conversation_id: int,
        messages: Iterable[Mapping],
        since_watermark: datetime | str | None = None,
    ) -> int:
        """Incremental sync: insert only messages timed strictly after the
        watermark (the conversation's ``last_updated`` unless given) and
        advance the watermark to the newest inserted time.

        Messages whose time cannot be parsed are never considered newer.
        Returns the number of inserted messages.
        """
        with self.transaction() as conn:
            row = self._require(conn, conversation_id)
            now = datetime.now(timezone.utc)
            watermark = since_watermark if since_watermark is not None else row["last_updated"]
            if isinstance(watermark, str):
                watermark = _parse_dated(" ".join(watermark.split()), now)
            elif isinstance(watermark, datetime):
                watermark = _as_utc(watermark)

            fresh = []
            for msg in messages:
                parsed = parse_message_time(msg.get("time"), now)
                if parsed is None:
                    continue
                if watermark is None or parsed > watermark:
                    fresh.append((parsed, msg))

            if not fresh:
                return 0
            inserted = self._insert_messages(conn, conversation_id, (m for _, m in fresh))
            newest = max(parsed for parsed, _ in fresh)
            conn.execute(
                "UPDATE conversations SET last_updated = ? WHERE id = ?",
                (newest.isoformat(timespec="seconds"), conversation_id),
            )
        logger.info("Synced %d new messages into conversation %d", inserted, conversation_id)
        return inserted

    def add_message(
        self,
        conversation_id: int,
        sender: str,
        receiver: str,
        message: str,
        time: str | None = None,
    ) -> int:
        """Append one message (e.g. a reply just sent) and touch the conversation."""
        time = time or utc_now_iso()
        with self.transaction() as conn:
            self._require(conn, conversation_id)
            cur = conn.execute(
                "INSERT INTO messages (conversation_id, sender, receiver, message, time) VALUES (?, ?, ?, ?, ?)",
                (conversation_id, sender, receiver, message, time),
            )
            conn.execute("UPDATE conversations SET last_updated = ? WHERE id = ?", (time, conversation_id))
            return cur.lastrowid

    def delete_conversation(self, conversation_id: int, owner: str | None = None) -> int:
        """Delete a conversation and (by cascade) its messages.

        Raises ``ConversationNotFound`` or, when *owner* is given and does
        not match, ``PermissionDenied``.  Returns the number of messages removed.
        """
        with self.transaction() as conn:
            row = self._require(conn, conversation_id)
            if owner is not None and row["linkedin_account_id"] != owner:
                raise PermissionDenied(f"Conversation {conversation_id} belongs to another account")
            removed = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ?", (conversation_id,)
            ).fetchone()[0]
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        logger.info("Deleted conversation %d (%d messages)", conversation_id, removed)
        return removed

    # ── reads ──
    def get_conversation(self, conversation_id: int) -> dict | None:
        with self._lock:
            row = self.conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return dict(row) if row else None

    def get_messages(self, conversation_id: int) -> list[dict]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, sender, receiver, message, time FROM messages WHERE conversation_id = ? ORDER BY id",
                (conversation_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def list_conversations(self, owner: str) -> list[dict]:
        """Conversations of *owner*, newest first, with their last message."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT c.id, c.contact_name, c.last_updated,
                       (SELECT message FROM messages m WHERE m.conversation_id = c.id
                        ORDER BY m.id DESC LIMIT 1) AS last_message,
                       (SELECT time FROM messages m WHERE m.conversation_id = c.id
                        ORDER BY m.id DESC LIMIT 1) AS last_message_time,
                       (SELECT sender FROM messages m WHERE m.conversation_id = c.id
                        ORDER BY m.id DESC LIMIT 1) AS last_message_sender,
                       (SELECT COUNT(*) FROM messages m WHERE m.conversation_id = c.id) AS message_count
                FROM conversations c
                WHERE c.linkedin_account_id = ?
                ORDER BY c.last_updated DESC, c.id DESC
                """,
                (owner,),
            ).fetchall()
        return [
            {
                "id": r["id"],
                "contactName": r["contact_name"],
                "lastUpdated": r["last_updated"],
                "lastMessage": {
                    "message": r["last_message"] or "No messages",
                    "time": r["last_message_time"] or "",
                    "sender": r["last_message_sender"] or "",
                },
                "messageCount": r["message_count"],
            }
            for r in rows
        ]

    def orphaned_conversations(self) -> list[dict]:
        """Rows without an owning LinkedIn account (hidden from every owner)."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, contact_name, user_id FROM conversations WHERE linkedin_account_id IS NULL ORDER BY id"
            ).fetchall()
        return [dict(r) for r in rows]

    def report_orphans(self) -> int:
        orphans = self.orphaned_conversations()
        if not orphans:
            logger.info("No orphaned conversations found.")
            return 0
        logger.info("Found %d conversations without a LinkedIn account; they stay hidden.", len(orphans))
        for conv in orphans:
            logger.info("  - Conversation ID %d: %s", conv["id"], conv["contact_name"])
        return len(orphans)
