"""Lifecycle tables for messages, calls, transitions, and webhook attempts."""
import json
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mocktwilio.errors import LifecycleError, NotFoundError
from mocktwilio.models import CallStatus, MessageStatus


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class Storage:
    """SQLite storage for messages, calls, and events.

    One connection is shared by every caller and guarded by a lock, so each
    public method runs as a single transaction that never interleaves with
    another. The default ":memory:" database lives as long as the Storage.
    """

    def __init__(self, db_path: str = ":memory:"):
        """Initialize storage with database path.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._closed = False
        self._init_database()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection]:
        """Hold the connection exclusively for one transaction.

        Commits on success and rolls back if the body raises.

        Yields:
            SQLite connection with row factory configured
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("storage is closed")
            try:
                yield self._conn
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise

    def _init_database(self) -> None:
        """Initialize database schema.

        SIDs restart with every server, so rows left over in a file database
        from an earlier run are dropped.
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_sid TEXT UNIQUE NOT NULL,
                    account_sid TEXT NOT NULL,
                    from_number TEXT NOT NULL,
                    to_number TEXT NOT NULL,
                    body TEXT,
                    media_urls TEXT,
                    messaging_service_sid TEXT,
                    status TEXT NOT NULL,
                    error_code INTEGER,
                    webhook_url TEXT,
                    num_segments INTEGER DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS calls (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    call_sid TEXT UNIQUE NOT NULL,
                    account_sid TEXT NOT NULL,
                    from_number TEXT NOT NULL,
                    to_number TEXT NOT NULL,
                    url TEXT NOT NULL,
                    webhook_url TEXT,
                    status TEXT NOT NULL,
                    duration INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            # One row per state transition
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS delivery_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_sid TEXT,
                    call_sid TEXT,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS callback_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sid TEXT,
                    target_url TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status_code INTEGER,
                    response_body TEXT,
                    attempt_number INTEGER DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

            for table in ("delivery_events", "callback_logs", "messages", "calls"):
                cursor.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()

    # Message operations
    def create_message(
        self,
        message_sid: str,
        account_sid: str,
        from_number: str,
        to_number: str,
        body: str,
        webhook_url: str | None = None,
        messaging_service_sid: str | None = None,
        media_urls: list[str] | None = None,
        num_segments: int = 1,
    ) -> dict[str, Any]:
        """Create a new message record in the queued state.

        Returns:
            The stored message

        Raises:
            LifecycleError: If the SID was already used
        """
        now = _now()
        with self._get_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(
                    """
                    INSERT INTO messages (
                        message_sid, account_sid, from_number, to_number, body, media_urls,
                        messaging_service_sid, status, webhook_url, num_segments,
                        created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message_sid, account_sid, from_number, to_number, body,
                        json.dumps(media_urls or []), messaging_service_sid,
                        MessageStatus.QUEUED, webhook_url, num_segments, now, now,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise LifecycleError(f"message SID {message_sid} reused") from e

            cursor.execute(
                "INSERT INTO delivery_events (message_sid, status, created_at) VALUES (?, ?, ?)",
                (message_sid, MessageStatus.QUEUED, now),
            )
            cursor.execute("SELECT * FROM messages WHERE message_sid = ?", (message_sid,))
            return self._message_row(cursor.fetchone())

    @staticmethod
    def _message_row(row: sqlite3.Row) -> dict[str, Any]:
        message = dict(row)
        message["media_urls"] = json.loads(message["media_urls"] or "[]")
        return message

    def get_message(self, message_sid: str) -> dict[str, Any] | None:
        """Get message by SID.

        Args:
            message_sid: Message SID

        Returns:
            Message dict or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM messages WHERE message_sid = ?", (message_sid,))
            row = cursor.fetchone()
            return self._message_row(row) if row else None

    def transition_message(
        self, message_sid: str, status: str, error_code: int | None = None
    ) -> dict[str, Any]:
        """Move a message to its next state and record the transition.

        Returns:
            The updated message

        Raises:
            NotFoundError: If the message doesn't exist
            LifecycleError: If the transition isn't allowed from the current state
        """
        now = _now()
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT status FROM messages WHERE message_sid = ?", (message_sid,))
            row = cursor.fetchone()
            if row is None:
                raise NotFoundError(f"message {message_sid} not found", sid=message_sid)

            current = row["status"]
            if status not in MessageStatus.TRANSITIONS.get(current, ()):
                raise LifecycleError(f"message {message_sid}: illegal transition {current} -> {status}")

            cursor.execute(
                """
                UPDATE messages
                SET status = ?, error_code = ?, updated_at = ?
                WHERE message_sid = ?
                """,
                (status, error_code, now, message_sid),
            )
            cursor.execute(
                "INSERT INTO delivery_events (message_sid, status, created_at) VALUES (?, ?, ?)",
                (message_sid, status, now),
            )
            cursor.execute("SELECT * FROM messages WHERE message_sid = ?", (message_sid,))
            return self._message_row(cursor.fetchone())

    def get_all_messages(self, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        """Get all messages with pagination, newest first.

        Args:
            limit: Maximum number of messages to return
            offset: Offset for pagination

        Returns:
            List of message dicts
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM messages ORDER BY id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            )
            return [self._message_row(row) for row in cursor.fetchall()]

    # Call operations
    def create_call(
        self,
        call_sid: str,
        account_sid: str,
        from_number: str,
        to_number: str,
        url: str,
        webhook_url: str | None = None,
    ) -> dict[str, Any]:
        """Create a new call record in the queued state.

        Returns:
            The stored call

        Raises:
            LifecycleError: If the SID was already used
        """
        now = _now()
        with self._get_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(
                    """
                    INSERT INTO calls (
                        call_sid, account_sid, from_number, to_number, url, webhook_url,
                        status, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        call_sid, account_sid, from_number, to_number, url, webhook_url,
                        CallStatus.QUEUED, now, now,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise LifecycleError(f"call SID {call_sid} reused") from e

            cursor.execute(
                "INSERT INTO delivery_events (call_sid, status, created_at) VALUES (?, ?, ?)",
                (call_sid, CallStatus.QUEUED, now),
            )
            cursor.execute("SELECT * FROM calls WHERE call_sid = ?", (call_sid,))
            return dict(cursor.fetchone())

    def get_call(self, call_sid: str) -> dict[str, Any] | None:
        """Get call by SID.

        Args:
            call_sid: Call SID

        Returns:
            Call dict or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM calls WHERE call_sid = ?", (call_sid,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def transition_call(
        self, call_sid: str, status: str, duration: int | None = None
    ) -> dict[str, Any]:
        """Move a call to its next state and record the transition.

        Raises:
            NotFoundError: If the call doesn't exist
            LifecycleError: If the transition isn't allowed from the current state
        """
        now = _now()
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT status FROM calls WHERE call_sid = ?", (call_sid,))
            row = cursor.fetchone()
            if row is None:
                raise NotFoundError(f"call {call_sid} not found", sid=call_sid)

            current = row["status"]
            if status not in CallStatus.TRANSITIONS.get(current, ()):
                raise LifecycleError(f"call {call_sid}: illegal transition {current} -> {status}")

            cursor.execute(
                """
                UPDATE calls
                SET status = ?, duration = COALESCE(?, duration), updated_at = ?
                WHERE call_sid = ?
                """,
                (status, duration, now, call_sid),
            )
            cursor.execute(
                "INSERT INTO delivery_events (call_sid, status, created_at) VALUES (?, ?, ?)",
                (call_sid, status, now),
            )
            cursor.execute("SELECT * FROM calls WHERE call_sid = ?", (call_sid,))
            return dict(cursor.fetchone())

    def get_all_calls(self, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        """Get all calls with pagination, newest first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM calls ORDER BY id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            )
            return [dict(row) for row in cursor.fetchall()]

    # Delivery event operations
    def get_delivery_events(
        self, message_sid: str | None = None, call_sid: str | None = None
    ) -> list[dict[str, Any]]:
        """Get the recorded transitions of one message or call, oldest first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            if message_sid is not None:
                cursor.execute(
                    "SELECT * FROM delivery_events WHERE message_sid = ? ORDER BY id",
                    (message_sid,),
                )
            else:
                cursor.execute(
                    "SELECT * FROM delivery_events WHERE call_sid = ? ORDER BY id",
                    (call_sid,),
                )
            return [dict(row) for row in cursor.fetchall()]

    # Callback log operations
    def create_callback_log(
        self,
        target_url: str,
        payload: str,
        status_code: int | None = None,
        response_body: str | None = None,
        attempt_number: int = 1,
        sid: str | None = None,
    ) -> int:
        """Create a callback log entry.

        Args:
            target_url: Callback URL
            payload: Callback payload
            status_code: HTTP status code
            response_body: Response body
            attempt_number: Attempt number
            sid: Message or call SID the callback was about

        Returns:
            Log ID
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO callback_logs (
                    sid, target_url, payload, status_code, response_body, attempt_number, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (sid, target_url, payload, status_code, response_body, attempt_number, _now()),
            )
            return cursor.lastrowid

    def get_all_callback_logs(self, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        """Get all callback logs with pagination, newest first.

        Args:
            limit: Maximum number of logs to return
            offset: Offset for pagination

        Returns:
            List of callback log dicts
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM callback_logs ORDER BY id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            )
            return [dict(row) for row in cursor.fetchall()]

    # Statistics
    def get_statistics(self) -> dict[str, int]:
        """Get database statistics.

        Returns:
            Dict with counts of messages, calls, and callbacks
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("SELECT COUNT(*) as count FROM messages")
            message_count = cursor.fetchone()["count"]

            cursor.execute("SELECT COUNT(*) as count FROM calls")
            call_count = cursor.fetchone()["count"]

            cursor.execute("SELECT COUNT(*) as count FROM callback_logs")
            callback_count = cursor.fetchone()["count"]

            return {
                "messages": message_count,
                "calls": call_count,
                "callbacks": callback_count,
            }
