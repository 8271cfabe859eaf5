"""SQLite-backed ledger of processed messages.

One row per (connection_id, message_id), enforced by a UNIQUE constraint.
The existence of a row is what makes processing idempotent; it also doubles
as the human review queue (rows with needs_review set).
Uses stdlib sqlite3 in WAL mode so several runs can share the file.
"""

import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from emailcat.schemas.classification import ClassifiedBy
from emailcat.schemas.email import LabelKind
from emailcat.schemas.processing import ProcessedMessage, ReviewState

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS processed_messages (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    connection_id        TEXT NOT NULL,
    message_id           TEXT NOT NULL,
    thread_id            TEXT,
    internet_message_id  TEXT,
    category_code        TEXT,
    suggested_category   TEXT,
    confidence           REAL NOT NULL DEFAULT 0,
    label_applied        TEXT,
    label_kind           TEXT,
    classified_by        TEXT NOT NULL,
    rationale            TEXT NOT NULL DEFAULT '',
    needs_review         INTEGER NOT NULL DEFAULT 0,
    review_state         TEXT,
    reviewed_at          TEXT,
    email_subject        TEXT NOT NULL DEFAULT '',
    email_from           TEXT NOT NULL DEFAULT '',
    email_date           TEXT,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL,
    UNIQUE (connection_id, message_id)
)
"""

_INSERT = """
INSERT INTO processed_messages
    (connection_id, message_id, thread_id, internet_message_id, category_code,
     suggested_category, confidence, label_applied, label_kind, classified_by,
     rationale, needs_review, review_state, email_subject, email_from, email_date,
     created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_SELECT_BY_ID = "SELECT * FROM processed_messages WHERE id = ?"
_SELECT_BY_KEY = "SELECT * FROM processed_messages WHERE connection_id = ? AND message_id = ?"
_SELECT_IDS = "SELECT message_id FROM processed_messages WHERE connection_id = ?"
_DELETE = "DELETE FROM processed_messages WHERE id = ?"

_UPDATE_REVIEW = """
UPDATE processed_messages
SET category_code = ?, label_applied = ?, label_kind = ?, needs_review = ?,
    review_state = ?, reviewed_at = ?, updated_at = ?
WHERE id = ?
"""


class DuplicateMessageError(Exception):
    """A ledger row already exists for (connection_id, message_id)."""

    def __init__(self, connection_id: str, message_id: str) -> None:
        super().__init__(f"Message {message_id} already recorded for connection {connection_id}")
        self.connection_id = connection_id
        self.message_id = message_id


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_record(row: sqlite3.Row) -> ProcessedMessage:
    """Convert a database row to a ProcessedMessage."""
    return ProcessedMessage(
        id=row["id"],
        connection_id=row["connection_id"],
        message_id=row["message_id"],
        thread_id=row["thread_id"],
        internet_message_id=row["internet_message_id"],
        category_code=row["category_code"],
        suggested_category=row["suggested_category"],
        confidence=row["confidence"],
        label_applied=row["label_applied"],
        label_kind=LabelKind(row["label_kind"]) if row["label_kind"] else None,
        classified_by=ClassifiedBy(row["classified_by"]),
        rationale=row["rationale"],
        needs_review=bool(row["needs_review"]),
        review_state=ReviewState(row["review_state"]) if row["review_state"] else None,
        reviewed_at=_parse_dt(row["reviewed_at"]),
        email_subject=row["email_subject"],
        email_from=row["email_from"],
        email_date=_parse_dt(row["email_date"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


class MessageLedger:
    """SQLite-backed ledger of classification outcomes.

    Usage::

        with MessageLedger("/path/to/emailcat.db") as ledger:
            if ledger.find(conn_id, uid) is None:
                ledger.create(record)

            for item in ledger.list_pending_review():
                print(item.email_subject)
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_CREATE_TABLE)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "MessageLedger":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def find(self, connection_id: str, message_id: str) -> ProcessedMessage | None:
        """Look up the row for a (connection, message) pair."""
        row = self._conn.execute(_SELECT_BY_KEY, (connection_id, message_id)).fetchone()
        return _row_to_record(row) if row else None

    def get(self, record_id: int) -> ProcessedMessage | None:
        row = self._conn.execute(_SELECT_BY_ID, (record_id,)).fetchone()
        return _row_to_record(row) if row else None

    def create(self, record: ProcessedMessage) -> ProcessedMessage:
        """Insert a new row.

        Raises:
            DuplicateMessageError: If a row already exists for the message.
        """
        now = datetime.now(UTC)
        try:
            cursor = self._conn.execute(
                _INSERT,
                (
                    record.connection_id,
                    record.message_id,
                    record.thread_id,
                    record.internet_message_id,
                    record.category_code,
                    record.suggested_category,
                    record.confidence,
                    record.label_applied,
                    record.label_kind.value if record.label_kind else None,
                    record.classified_by.value,
                    record.rationale,
                    int(record.needs_review),
                    record.review_state.value if record.review_state else None,
                    record.email_subject,
                    record.email_from,
                    record.email_date.isoformat() if record.email_date else None,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as exc:
            self._conn.rollback()
            raise DuplicateMessageError(record.connection_id, record.message_id) from exc

        logger.debug(
            "Ledger: recorded message %s for connection %s (id=%d)",
            record.message_id,
            record.connection_id,
            cursor.lastrowid,
        )
        return record.model_copy(update={"id": cursor.lastrowid, "created_at": now, "updated_at": now})

    def delete(self, record_id: int) -> bool:
        """Delete a row. Returns True if a row was removed."""
        cursor = self._conn.execute(_DELETE, (record_id,))
        self._conn.commit()
        return cursor.rowcount > 0

    def list_message_ids(self, connection_id: str) -> set[str]:
        """All message ids already recorded for a connection."""
        rows = self._conn.execute(_SELECT_IDS, (connection_id,)).fetchall()
        return {r["message_id"] for r in rows}

    def list_pending_review(
        self, connection_id: str | None = None, *, limit: int = 50
    ) -> list[ProcessedMessage]:
        """Rows awaiting a human decision, oldest first."""
        sql = "SELECT * FROM processed_messages WHERE needs_review = 1"
        params: tuple = ()
        if connection_id is not None:
            sql += " AND connection_id = ?"
            params = (connection_id,)
        sql += " ORDER BY created_at ASC, id ASC LIMIT ?"
        rows = self._conn.execute(sql, (*params, limit)).fetchall()
        return [_row_to_record(r) for r in rows]

    def count(self, connection_id: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM processed_messages WHERE connection_id = ?",
            (connection_id,),
        ).fetchone()
        return row[0]

    def save_review(self, record: ProcessedMessage) -> ProcessedMessage:
        """Persist the review-related columns of an existing row.

        Raises:
            ValueError: If the record has no id or the row no longer exists.
        """
        if record.id is None:
            raise ValueError("Cannot save review for a record without id")

        now = datetime.now(UTC)
        cursor = self._conn.execute(
            _UPDATE_REVIEW,
            (
                record.category_code,
                record.label_applied,
                record.label_kind.value if record.label_kind else None,
                int(record.needs_review),
                record.review_state.value if record.review_state else None,
                record.reviewed_at.isoformat() if record.reviewed_at else None,
                now.isoformat(),
                record.id,
            ),
        )
        self._conn.commit()
        if cursor.rowcount == 0:
            raise ValueError(f"Ledger record not found: {record.id}")

        logger.info(
            "Ledger record %d reviewed: %s",
            record.id,
            record.review_state.value if record.review_state else None,
        )
        return record.model_copy(update={"updated_at": now})
