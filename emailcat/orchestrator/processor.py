"""Per-connection processing run: fetch -> dedupe -> classify -> label -> ledger.

One run owns one provider session and handles messages strictly one after
another. Message-scoped failures are collected in the result; anything
that breaks the run itself marks the connection (ERROR or NEEDS_REAUTH)
and is re-raised.

Usage::

    processor = EmailProcessor(
        connection_id,
        connections=connections,
        catalog=catalog,
        ledger=ledger,
        audit=audit,
        options=ProcessingOptions(max_emails=50, dry_run=True),
    )
    result = await processor.process()
"""

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from enum import StrEnum

from emailcat.audit.logger import (
    CONNECTION_ERROR,
    CRON_RUN_COMPLETED,
    CRON_RUN_FAILED,
    CRON_RUN_STARTED,
    EMAIL_CLASSIFIED,
    AuditLog,
)
from emailcat.executors.classifier import EmailClassifier
from emailcat.executors.llm_classifier import resolve_llm_config
from emailcat.integrations.base import MailboxProvider, ProviderAuthError
from emailcat.integrations.providers import create_provider
from emailcat.queue.ledger import MessageLedger
from emailcat.router.labels import apply_label_target, resolve_label
from emailcat.schemas.email import MailboxMessage
from emailcat.schemas.processing import (
    Connection,
    ConnectionStatus,
    ProcessedMessage,
    ProcessingError,
    ProcessingOptions,
    ProcessingResult,
    ReviewState,
)
from emailcat.store.catalog import CatalogStore
from emailcat.store.connections import ConnectionStore

logger = logging.getLogger(__name__)

_AUTH_MARKERS = ("token", "unauthorized", "401", "authentication", "login failed")

ProviderFactory = Callable[[Connection, ConnectionStore], MailboxProvider]


class ProcessingStage(StrEnum):
    INIT = "INIT"
    FETCHING = "FETCHING"
    CLASSIFYING = "CLASSIFYING"
    FINALIZING = "FINALIZING"
    FAILED = "FAILED"
    DONE = "DONE"


class ConnectionInactiveError(Exception):
    """The connection is not ACTIVE; the run was refused without side effects."""

    def __init__(self, connection_id: str, status: ConnectionStatus) -> None:
        super().__init__(f"Connection {connection_id} is not active: {status.value}")
        self.connection_id = connection_id
        self.status = status


def classify_failure(exc: BaseException) -> ConnectionStatus:
    """NEEDS_REAUTH for auth/token-shaped failures, ERROR for everything else."""
    if isinstance(exc, ProviderAuthError):
        return ConnectionStatus.NEEDS_REAUTH
    text = str(exc).lower()
    if any(marker in text for marker in _AUTH_MARKERS):
        return ConnectionStatus.NEEDS_REAUTH
    return ConnectionStatus.ERROR


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class EmailProcessor:
    """Runs the pipeline once for one connection.

    ``stage`` tracks INIT -> FETCHING -> CLASSIFYING -> FINALIZING -> DONE,
    or FAILED from any of them.
    """

    def __init__(
        self,
        connection_id: str,
        *,
        connections: ConnectionStore,
        catalog: CatalogStore,
        ledger: MessageLedger,
        audit: AuditLog,
        options: ProcessingOptions | None = None,
        classifier: EmailClassifier | None = None,
        provider_factory: ProviderFactory | None = None,
        llm_env: Mapping[str, str | None] | None = None,
        llm_fallback_only: bool = True,
        llm_timeout: float = 30.0,
        imap_timeout: float | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self.connection_id = connection_id
        self.stage = ProcessingStage.INIT
        self._connections = connections
        self._catalog = catalog
        self._ledger = ledger
        self._audit = audit
        self._options = options or ProcessingOptions()
        self._classifier = classifier
        self._owns_classifier = classifier is None
        self._provider_factory = provider_factory or (
            lambda conn, store: create_provider(conn, store, timeout=imap_timeout)
        )
        self._llm_env = llm_env or {}
        self._llm_fallback_only = llm_fallback_only
        self._llm_timeout = llm_timeout
        self._on_progress = on_progress

    def _emit(self, msg: str) -> None:
        if self._on_progress:
            self._on_progress(msg)

    def _build_classifier(self, connection: Connection) -> EmailClassifier:
        llm_config = resolve_llm_config(connection.user_id, self._llm_env, self._connections)
        return EmailClassifier.for_user(
            connection.user_id,
            self._catalog,
            llm_config=llm_config,
            llm_fallback_only=self._llm_fallback_only,
            llm_timeout=self._llm_timeout,
        )

    async def process(self) -> ProcessingResult:
        """Run once.

        Raises:
            ConnectionNotFoundError: If the connection does not exist.
            ConnectionInactiveError: If the connection is not ACTIVE.
            TimeoutError: If ``timeout_seconds`` elapsed (status set to ERROR).
            Exception: Any run-level failure, after the status was recorded.
        """
        started = time.monotonic()
        self.stage = ProcessingStage.INIT
        connection = self._connections.require(self.connection_id)
        if connection.status != ConnectionStatus.ACTIVE:
            self.stage = ProcessingStage.FAILED
            raise ConnectionInactiveError(connection.id, connection.status)

        result = ProcessingResult(connection_id=connection.id)
        provider: MailboxProvider | None = None
        try:
            async with asyncio.timeout(self._options.timeout_seconds):
                provider = self._provider_factory(connection, self._connections)
                refreshed = await provider.refresh_token_if_needed()
                if refreshed is not None:
                    self._connections.update_tokens(connection.id, refreshed)
                    logger.info("Refreshed OAuth tokens for connection %s", connection.id)

                if self._classifier is None:
                    self._classifier = self._build_classifier(connection)

                await self._run(connection, provider, result)

            self.stage = ProcessingStage.FINALIZING
            self._connections.mark_synced(connection.id)
            self.stage = ProcessingStage.DONE
        except asyncio.CancelledError:
            self.stage = ProcessingStage.FAILED
            logger.warning("Run for connection %s cancelled", connection.id)
            raise
        except Exception as exc:
            self.stage = ProcessingStage.FAILED
            if isinstance(exc, TimeoutError):
                error = f"Run exceeded {self._options.timeout_seconds}s"
            else:
                error = _describe(exc)
            status = classify_failure(exc)
            logger.error("Run for connection %s failed (%s): %s", connection.id, status.value, error)
            self._connections.set_status(connection.id, status, error)
            self._audit.record(
                CONNECTION_ERROR,
                "connection",
                connection.id,
                {"status": status.value, "error": error},
                user_id=connection.user_id,
            )
            raise
        finally:
            if provider is not None:
                try:
                    await provider.disconnect()
                except Exception:
                    logger.debug("Error disconnecting provider", exc_info=True)
            if self._owns_classifier and self._classifier is not None:
                await self._classifier.close()
                self._classifier = None
            result.duration_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            "Connection %s: processed=%d labeled=%d review=%d errors=%d in %dms",
            connection.id,
            result.messages_processed,
            result.messages_labeled,
            result.messages_review,
            len(result.errors),
            result.duration_ms,
        )
        return result

    async def _run(
        self,
        connection: Connection,
        provider: MailboxProvider,
        result: ProcessingResult,
    ) -> None:
        self.stage = ProcessingStage.FETCHING
        pending, fetched = await self._collect(connection, provider)
        self._emit(f"Fetched {fetched} message(s), {len(pending)} to process.")

        self.stage = ProcessingStage.CLASSIFYING
        for i, message in enumerate(pending, 1):
            try:
                record = await self._process_message(connection, provider, message)
            except Exception as exc:
                logger.exception("Error processing message %s", message.id)
                result.errors.append(ProcessingError(message_id=message.id, error=_describe(exc)))
                self._emit(f"[{i}/{len(pending)}] {message.subject}: ERROR")
                continue

            if record is None:
                continue
            result.messages_processed += 1
            if record.label_applied:
                result.messages_labeled += 1
            if record.needs_review:
                result.messages_review += 1
            self._emit(
                f"[{i}/{len(pending)}] {message.subject}: {record.category_code} "
                f"({record.confidence:.0%})"
                + (f" -> {record.label_applied}" if record.label_applied else "")
            )

    async def _collect(
        self,
        connection: Connection,
        provider: MailboxProvider,
    ) -> tuple[list[MailboxMessage], int]:
        """Page newest-first until ``max_emails`` unprocessed messages are found.

        Messages already in the ledger do not count towards the cap. A forced
        run takes the newest page as fetched.
        """
        limit = self._options.max_emails
        force = self._options.force_reprocess
        known = set() if force else self._ledger.list_message_ids(connection.id)
        pending: list[MailboxMessage] = []
        fetched = 0
        token = None
        while True:
            page = await provider.fetch_messages(max_results=limit, page_token=token)
            fetched += len(page.messages)
            pending.extend(m for m in page.messages if m.id not in known)
            if force or len(pending) >= limit:
                break
            if not page.has_more or not page.next_page_token:
                break
            token = page.next_page_token
        return pending[:limit], fetched

    async def _process_message(
        self,
        connection: Connection,
        provider: MailboxProvider,
        message: MailboxMessage,
    ) -> ProcessedMessage | None:
        """Classify, label and ledger one message. None means it was skipped."""
        existing = self._ledger.find(connection.id, message.id)
        if existing is not None:
            if not self._options.force_reprocess:
                return None
            self._ledger.delete(existing.id)
            logger.debug("Deleted stale ledger row %d for message %s", existing.id, message.id)

        classification = await self._classifier.classify(message)
        target = resolve_label(classification.category, connection, self._catalog)

        label_applied = None
        if target is not None and not self._options.dry_run:
            applied = await apply_label_target(provider, message.id, target)
            if applied.success:
                label_applied = applied.label_id

        needs_review = classification.needs_review
        record = self._ledger.create(
            ProcessedMessage(
                connection_id=connection.id,
                message_id=message.id,
                thread_id=message.thread_id,
                internet_message_id=message.internet_message_id,
                category_code=classification.category,
                suggested_category=classification.suggested_label if needs_review else None,
                confidence=classification.confidence,
                label_applied=label_applied,
                label_kind=target.label_kind if target and label_applied else None,
                classified_by=classification.classified_by,
                rationale=classification.rationale,
                needs_review=needs_review,
                review_state=ReviewState.PENDING if needs_review else None,
                email_subject=message.subject,
                email_from=message.sender,
                email_date=message.date,
            )
        )

        self._audit.record(
            EMAIL_CLASSIFIED,
            "message",
            message.id,
            {
                "connection_id": connection.id,
                "category": classification.category,
                "confidence": classification.confidence,
                "classified_by": classification.classified_by.value,
                "label_applied": label_applied,
                "dry_run": self._options.dry_run,
                "subject": message.subject[:100],
            },
            user_id=connection.user_id,
        )
        return record


async def process_all_connections(
    *,
    connections: ConnectionStore,
    catalog: CatalogStore,
    ledger: MessageLedger,
    audit: AuditLog,
    options: ProcessingOptions | None = None,
    concurrency: int = 4,
    user_id: str | None = None,
    **processor_kwargs,
) -> list[ProcessingResult]:
    """Run every ACTIVE connection, one task per connection.

    At most ``concurrency`` runs are in flight. A failing connection is
    logged and skipped; the others carry on.

    Returns:
        Results of the runs that completed.
    """
    audit.record(CRON_RUN_STARTED, "cron", details={"user_id": user_id})
    started = time.monotonic()
    try:
        active = connections.list_connections(status=ConnectionStatus.ACTIVE, user_id=user_id)
        by_id = {c.id: c for c in active}
        semaphore = asyncio.Semaphore(max(1, concurrency))
        failures: dict[str, str] = {}

        async def _one(connection: Connection) -> ProcessingResult | None:
            async with semaphore:
                processor = EmailProcessor(
                    connection.id,
                    connections=connections,
                    catalog=catalog,
                    ledger=ledger,
                    audit=audit,
                    options=options,
                    **processor_kwargs,
                )
                try:
                    return await processor.process()
                except Exception as exc:
                    logger.error("Connection %s failed: %s", connection.id, _describe(exc))
                    failures[connection.id] = _describe(exc)
                    return None

        outcomes = await asyncio.gather(*(_one(c) for c in by_id.values()))
    except Exception as exc:
        audit.record(CRON_RUN_FAILED, "cron", details={"error": _describe(exc)})
        raise

    results = [r for r in outcomes if r is not None]
    audit.record(
        CRON_RUN_COMPLETED,
        "cron",
        details={
            "connections": len(by_id),
            "failed_connections": failures,
            "messages_processed": sum(r.messages_processed for r in results),
            "messages_labeled": sum(r.messages_labeled for r in results),
            "messages_review": sum(r.messages_review for r in results),
            "errors": sum(len(r.errors) for r in results),
            "duration_ms": int((time.monotonic() - started) * 1000),
        },
    )
    return results
