"""Human review actions on ledger records: approve, change, reject.

A reviewer's decision is final. Nothing here re-runs classification; the
chosen category is applied as given.
"""

import logging
from datetime import UTC, datetime

from emailcat.audit.logger import EMAIL_REVIEWED, AuditLog
from emailcat.integrations.base import MailboxProvider
from emailcat.integrations.providers import create_provider
from emailcat.orchestrator.processor import ProviderFactory
from emailcat.queue.ledger import MessageLedger
from emailcat.router.labels import apply_label_target, resolve_label
from emailcat.schemas.email import LabelKind
from emailcat.schemas.processing import ProcessedMessage, ReviewState
from emailcat.store.catalog import CatalogStore
from emailcat.store.connections import ConnectionStore

logger = logging.getLogger(__name__)


def _require(ledger: MessageLedger, record_id: int) -> ProcessedMessage:
    record = ledger.get(record_id)
    if record is None:
        raise ValueError(f"Ledger record not found: {record_id}")
    return record


async def _remove_quietly(provider: MailboxProvider, record: ProcessedMessage) -> None:
    """Best-effort removal of the label the pipeline applied earlier."""
    if not record.label_applied:
        return
    try:
        removed = await provider.remove_label(record.message_id, record.label_applied)
    except Exception as exc:
        logger.warning("Removing %s from %s raised: %s", record.label_applied, record.message_id, exc)
        return
    if not removed.success:
        logger.info(
            "Label %s left on message %s: %s",
            record.label_applied,
            record.message_id,
            removed.error,
        )


def _audit(
    audit: AuditLog,
    action: str,
    before: ProcessedMessage,
    after: ProcessedMessage,
    user_id: str | None = None,
) -> None:
    audit.record(
        EMAIL_REVIEWED,
        "message",
        str(before.id),
        {
            "action": action,
            "connection_id": before.connection_id,
            "message_id": before.message_id,
            "original_category": before.category_code,
            "new_category": after.category_code,
            "label_applied": after.label_applied,
        },
        user_id=user_id,
    )


async def approve(record_id: int, *, ledger: MessageLedger, audit: AuditLog) -> ProcessedMessage:
    """Keep the current classification and close the review."""
    record = _require(ledger, record_id)
    updated = ledger.save_review(
        record.model_copy(
            update={
                "needs_review": False,
                "review_state": ReviewState.APPROVED,
                "reviewed_at": datetime.now(UTC),
            }
        )
    )
    _audit(audit, "approve", record, updated)
    return updated


async def change(
    record_id: int,
    new_category_code: str,
    *,
    connections: ConnectionStore,
    catalog: CatalogStore,
    ledger: MessageLedger,
    audit: AuditLog,
    provider_factory: ProviderFactory | None = None,
) -> ProcessedMessage:
    """Refile a message under a reviewer-chosen category.

    The message is looked up where the pipeline left it (the previously
    applied folder, by UID or Message-ID). The new label is applied
    best-effort; the record is updated either way.

    Raises:
        ValueError: If the record or the category does not exist.
    """
    record = _require(ledger, record_id)
    connection = connections.require(record.connection_id)
    code = new_category_code.strip().upper()
    target = resolve_label(code, connection, catalog)
    if target is None:
        raise ValueError(f"Category not found: {new_category_code}")

    # A folder label means the pipeline moved the message out of the inbox.
    source = record.label_applied if record.label_kind == LabelKind.FOLDER else None

    factory = provider_factory or create_provider
    provider = factory(connection, connections)
    try:
        applied = await apply_label_target(
            provider,
            record.message_id,
            target,
            source=source,
            internet_message_id=record.internet_message_id,
        )
        if applied.success and record.label_applied not in (None, applied.label_id):
            await _remove_quietly(provider, record)
    finally:
        await provider.disconnect()

    updated = ledger.save_review(
        record.model_copy(
            update={
                "category_code": code,
                "label_applied": applied.label_id if applied.success else record.label_applied,
                "label_kind": target.label_kind if applied.success else record.label_kind,
                "needs_review": False,
                "review_state": ReviewState.CHANGED,
                "reviewed_at": datetime.now(UTC),
            }
        )
    )
    _audit(audit, "change", record, updated, user_id=connection.user_id)
    return updated


async def reject(
    record_id: int,
    *,
    connections: ConnectionStore,
    ledger: MessageLedger,
    audit: AuditLog,
    provider_factory: ProviderFactory | None = None,
) -> ProcessedMessage:
    """Drop the classification and (best-effort) the applied label."""
    record = _require(ledger, record_id)
    connection = connections.require(record.connection_id)

    if record.label_applied:
        factory = provider_factory or create_provider
        try:
            provider = factory(connection, connections)
        except Exception as exc:
            logger.warning("No provider for %s; label left in place: %s", connection.id, exc)
        else:
            try:
                await _remove_quietly(provider, record)
            finally:
                await provider.disconnect()

    updated = ledger.save_review(
        record.model_copy(
            update={
                "category_code": None,
                "label_applied": None,
                "label_kind": None,
                "needs_review": False,
                "review_state": ReviewState.REJECTED,
                "reviewed_at": datetime.now(UTC),
            }
        )
    )
    _audit(audit, "reject", record, updated, user_id=connection.user_id)
    return updated
