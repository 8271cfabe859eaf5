"""Append-only audit log for the classification pipeline.

Writes AuditEntry records as JSON Lines (one JSON object per line).
Recording is fire-and-forget: a failing sink never aborts processing.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from emailcat.schemas.processing import AuditEntry

logger = logging.getLogger(__name__)

EMAIL_CLASSIFIED = "EMAIL_CLASSIFIED"
EMAIL_REVIEWED = "EMAIL_REVIEWED"
CONNECTION_ERROR = "CONNECTION_ERROR"
CRON_RUN_STARTED = "CRON_RUN_STARTED"
CRON_RUN_COMPLETED = "CRON_RUN_COMPLETED"
CRON_RUN_FAILED = "CRON_RUN_FAILED"


class AuditLog:
    """Append-only JSONL audit log.

    Usage::

        audit = AuditLog("/path/to/audit.jsonl")
        audit.record("EMAIL_CLASSIFIED", "message", "4711", {"category": "INVOICE"})

        entries = audit.read_entries(since=some_datetime)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        user_id: str | None = None,
    ) -> AuditEntry | None:
        """Append an entry. Returns None if the sink could not be written."""
        entry = AuditEntry(
            timestamp=datetime.now(UTC),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            details=details or {},
        )
        try:
            with self._path.open("a", encoding="utf-8") as f:
                f.write(entry.model_dump_json() + "\n")
        except OSError:
            logger.warning("Failed to write audit entry %s for %s", action, entity_id, exc_info=True)
            return None

        logger.debug("Audit: %s %s=%s", action, entity_type, entity_id)
        return entry

    def read_entries(
        self,
        *,
        since: datetime | None = None,
        action: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Read audit entries, oldest first.

        Args:
            since: Only return entries after this timestamp.
            action: Only return entries with this action.
            limit: Keep only the newest ``limit`` entries after filtering.
        """
        if not self._path.exists():
            return []

        entries: list[AuditEntry] = []
        with self._path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = AuditEntry.model_validate_json(line)
                if since and entry.timestamp <= since:
                    continue
                if action and entry.action != action:
                    continue
                entries.append(entry)

        if limit is not None:
            entries = entries[-limit:]

        return entries
