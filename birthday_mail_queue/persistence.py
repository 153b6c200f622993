"""SQLite backed queue store used by the email queue processor.

Status writes (``mark_sent``, ``mark_retry``, ``mark_failed``) only touch rows
that are still ``pending``. The queue processor is the single writer of the
``status`` column; producers only insert rows and inspectors only read them.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .models import DEFAULT_MAX_RETRIES, TERMINAL_STATUSES, ContactSnapshot, MessageStatus, QueuedMessage

_MESSAGE_COLUMNS = (
    "id, contact_id, contact_name, contact_email, subject, body, status, priority, "
    "retry_count, max_retries, scheduled_at, sent_at, deferred_until, error, created_at"
)


class QueueStore:
    """Helper class responsible for reading and writing queue state."""

    def __init__(self, db_path: str = "birthday_queue.db"):
        """Persist data to the given database path (``:memory:`` is not shared across calls)."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    contact_id TEXT,
                    contact_name TEXT NOT NULL DEFAULT '',
                    contact_email TEXT,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    priority INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    scheduled_at REAL,
                    sent_at REAL,
                    deferred_until REAL,
                    error TEXT,
                    created_at REAL NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_email_queue_eligible "
                "ON email_queue(status, priority DESC, created_at ASC)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS send_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id INTEGER,
                    contact_id TEXT,
                    status TEXT NOT NULL,
                    error TEXT,
                    timestamp REAL NOT NULL
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_send_log_ts ON send_log(timestamp)")
            await db.commit()

    # Queue --------------------------------------------------------------------
    @staticmethod
    def _decode_row(row: Tuple[Any, ...], columns: Sequence[str]) -> QueuedMessage:
        return QueuedMessage.model_validate(dict(zip(columns, row)))

    async def insert_queued(
        self,
        contact: ContactSnapshot,
        subject: str,
        body: str,
        priority: int = 0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        deferred_until: Optional[float] = None,
    ) -> int:
        """Insert a pending message.

        Args:
            contact: Recipient snapshot copied into the row.
            subject: Email subject.
            body: Plain-text email body.
            priority: Higher values are processed first.
            max_retries: Total delivery attempts allowed.
            deferred_until: Optional epoch seconds before which the row is
                not eligible.

        Returns:
            The id assigned by SQLite.
        """
        now = time.time()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO email_queue
                (contact_id, contact_name, contact_email, subject, body, status,
                 priority, retry_count, max_retries, scheduled_at, deferred_until, created_at)
                VALUES (?, ?, ?, ?, ?, 'pending', ?, 0, ?, ?, ?, ?)
                """,
                (
                    contact.id,
                    contact.name,
                    contact.email,
                    subject,
                    body,
                    int(priority),
                    int(max_retries),
                    now,
                    deferred_until,
                    now,
                ),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def select_eligible(self, limit: int, now_ts: Optional[float] = None) -> List[QueuedMessage]:
        """Return pending, retryable messages ordered by priority then age.

        Args:
            limit: Maximum number of messages to return.
            now_ts: Reference time for deferred rows, defaults to now.

        Returns:
            Messages with ``retry_count < max_retries`` whose deferral, if
            any, has elapsed.
        """
        now_ts = time.time() if now_ts is None else now_ts
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM email_queue
                WHERE status = 'pending'
                  AND retry_count < max_retries
                  AND (deferred_until IS NULL OR deferred_until <= ?)
                ORDER BY priority DESC, created_at ASC, id ASC
                LIMIT ?
                """,
                (now_ts, int(limit)),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_row(row, cols) for row in rows]

    async def mark_sent(self, msg_id: int, sent_ts: Optional[float] = None) -> bool:
        """Mark a pending message as sent.

        Returns:
            ``True`` when a pending row was updated.
        """
        sent_ts = time.time() if sent_ts is None else sent_ts
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE email_queue
                SET status='sent', sent_at=?, error=NULL, deferred_until=NULL
                WHERE id=? AND status='pending'
                """,
                (sent_ts, msg_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def mark_retry(self, msg_id: int, error: Optional[str] = None, deferred_until: Optional[float] = None) -> bool:
        """Increment the retry counter of a pending message, keeping it pending.

        Args:
            msg_id: Queue id of the message.
            error: Error of the failed attempt.
            deferred_until: Optional epoch seconds before the next attempt.

        Returns:
            ``True`` when a pending row was updated.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE email_queue
                SET retry_count=retry_count + 1, error=?, deferred_until=?
                WHERE id=? AND status='pending'
                """,
                (error, deferred_until, msg_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def mark_failed(self, msg_id: int, error: str, failed_ts: Optional[float] = None) -> bool:
        """Move a pending message to the terminal ``failed`` state.

        Returns:
            ``True`` when a pending row was updated.
        """
        failed_ts = time.time() if failed_ts is None else failed_ts
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE email_queue
                SET status='failed', error=?, sent_at=?, deferred_until=NULL
                WHERE id=? AND status='pending'
                """,
                (error, failed_ts, msg_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def get_message(self, msg_id: int) -> Optional[QueuedMessage]:
        """Fetch a single message or ``None`` when it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM email_queue WHERE id=?",
                (msg_id,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_row(row, cols)

    async def list_messages(
        self,
        *,
        status: Optional[MessageStatus | str] = None,
        limit: Optional[int] = None,
    ) -> List[QueuedMessage]:
        """Return messages for inspection purposes, in processing order."""
        query = f"SELECT {_MESSAGE_COLUMNS} FROM email_queue"
        params: List[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(MessageStatus(status).value)
        query += " ORDER BY priority DESC, created_at ASC, id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_row(row, cols) for row in rows]

    async def count_by_status(self) -> Dict[str, int]:
        """Return the number of messages per status plus the total."""
        counts = {status.value: 0 for status in MessageStatus}
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT status, COUNT(*) FROM email_queue GROUP BY status") as cur:
                rows = await cur.fetchall()
        for status, count in rows:
            counts[status] = int(count)
        counts["total"] = sum(counts[status.value] for status in MessageStatus)
        return counts

    async def delete_older_than(
        self,
        days: float,
        statuses: Iterable[MessageStatus | str] = TERMINAL_STATUSES,
        *,
        now_ts: Optional[float] = None,
    ) -> int:
        """Delete messages in ``statuses`` whose terminal timestamp is older than ``days``.

        Args:
            days: Age threshold in days.
            statuses: Statuses eligible for deletion, sent and failed by default.
            now_ts: Reference time, defaults to now.

        Returns:
            Number of deleted rows.
        """
        status_values = [MessageStatus(s).value for s in statuses]
        if not status_values:
            return 0
        now_ts = time.time() if now_ts is None else now_ts
        threshold = now_ts - float(days) * 86400
        placeholders = ",".join("?" for _ in status_values)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                DELETE FROM email_queue
                WHERE status IN ({placeholders})
                  AND COALESCE(sent_at, created_at) < ?
                """,
                (*status_values, threshold),
            )
            await db.commit()
            return cursor.rowcount

    # Send log -----------------------------------------------------------------
    async def log_attempt(
        self,
        message_id: Optional[int],
        contact_id: Optional[str],
        status: str,
        error: Optional[str] = None,
        ts: Optional[float] = None,
    ) -> None:
        """Record the outcome of one delivery attempt."""
        ts = time.time() if ts is None else ts
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO send_log (message_id, contact_id, status, error, timestamp) VALUES (?, ?, ?, ?, ?)",
                (message_id, contact_id, status, error, ts),
            )
            await db.commit()

    async def list_send_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Return the most recent delivery attempts, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT l.id, l.message_id, l.contact_id, q.contact_name, l.status, l.error, l.timestamp
                FROM send_log l
                LEFT JOIN email_queue q ON q.id = l.message_id
                ORDER BY l.timestamp DESC, l.id DESC
                LIMIT ?
                """,
                (int(limit),),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def count_attempts_since(self, since_ts: float) -> Dict[str, int]:
        """Count logged attempts per outcome after ``since_ts``.

        Returns:
            A mapping with ``sent``, ``retry`` and ``failed`` counts.
        """
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT status, COUNT(*) FROM send_log WHERE timestamp > ? GROUP BY status",
                (since_ts,),
            ) as cur:
                rows = await cur.fetchall()
        result = {"sent": 0, "retry": 0, "failed": 0}
        for status, count in rows:
            result[status] = int(count)
        return result
