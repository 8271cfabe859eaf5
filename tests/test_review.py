"""Tests for emailcat.orchestrator.review: approve, change and reject."""

import pytest

from conftest import CONNECTION_ID, FakeProvider, make_message
from emailcat.audit.logger import EMAIL_REVIEWED
from emailcat.orchestrator import review
from emailcat.schemas.classification import ClassifiedBy
from emailcat.schemas.email import LabelKind
from emailcat.schemas.processing import ProcessedMessage, ReviewState

# --- Helpers ---


def _pending(stores, *, label_applied: str | None = "Prüfen") -> ProcessedMessage:
    return stores.ledger.create(
        ProcessedMessage(
            connection_id=CONNECTION_ID,
            message_id="42",
            category_code="REVIEW",
            suggested_category="INVOICE",
            confidence=0.7,
            label_applied=label_applied,
            label_kind=LabelKind.FOLDER if label_applied else None,
            classified_by=ClassifiedBy.RULES,
            rationale="[Review needed] Matched rule: Rechnung",
            needs_review=True,
            review_state=ReviewState.PENDING,
            email_subject="Rechnung?",
            email_from="billing@acme.de",
        )
    )


def _mailbox(folder: str = "Prüfen") -> FakeProvider:
    """Mailbox holding message 42 where the pipeline filed it."""
    provider = FakeProvider([make_message("42", "Rechnung?")])
    provider.folders[folder] = provider.folders.pop("INBOX")
    provider.folders.setdefault("INBOX", [])
    return provider


def _factory(provider: FakeProvider):
    return lambda connection, store: provider


# --- approve ---


class TestApprove:
    async def test_closes_review(self, stores):
        record = _pending(stores)

        updated = await review.approve(record.id, ledger=stores.ledger, audit=stores.audit)

        assert updated.review_state == ReviewState.APPROVED
        assert updated.needs_review is False
        assert updated.reviewed_at is not None
        stored = stores.ledger.get(record.id)
        assert stored.review_state == ReviewState.APPROVED
        assert stored.category_code == "REVIEW"
        assert stores.ledger.list_pending_review() == []

    async def test_writes_audit_entry(self, stores):
        record = _pending(stores)

        await review.approve(record.id, ledger=stores.ledger, audit=stores.audit)

        entry = stores.audit.read_entries(action=EMAIL_REVIEWED)[0]
        assert entry.entity_id == str(record.id)
        assert entry.details["action"] == "approve"
        assert entry.details["message_id"] == "42"

    async def test_unknown_record(self, stores):
        with pytest.raises(ValueError, match="not found"):
            await review.approve(999, ledger=stores.ledger, audit=stores.audit)


# --- change ---


class TestChange:
    async def test_applies_new_label_and_updates_record(self, stores):
        record = _pending(stores)
        provider = _mailbox()

        updated = await review.change(
            record.id,
            "invoice",
            connections=stores.connections,
            catalog=stores.catalog,
            ledger=stores.ledger,
            audit=stores.audit,
            provider_factory=_factory(provider),
        )

        assert provider.apply_calls == [("42", "Rechnung")]
        assert provider.remove_calls == [("42", "Prüfen")]
        assert provider.folders["Rechnung"] == ["42"]
        assert provider.folders["Prüfen"] == []
        assert provider.disconnect_calls == 1
        assert updated.category_code == "INVOICE"
        assert updated.label_applied == "Rechnung"
        assert updated.label_kind == LabelKind.FOLDER
        assert updated.review_state == ReviewState.CHANGED
        assert updated.needs_review is False

        stored = stores.ledger.get(record.id)
        assert stored.category_code == "INVOICE"
        assert stored.label_applied == "Rechnung"

        entry = stores.audit.read_entries(action=EMAIL_REVIEWED)[0]
        assert entry.details["original_category"] == "REVIEW"
        assert entry.details["new_category"] == "INVOICE"

    async def test_failed_apply_keeps_old_label_and_still_records(self, stores):
        record = _pending(stores)
        provider = _mailbox()
        provider.fail_apply.add("42")

        updated = await review.change(
            record.id,
            "INVOICE",
            connections=stores.connections,
            catalog=stores.catalog,
            ledger=stores.ledger,
            audit=stores.audit,
            provider_factory=_factory(provider),
        )

        assert provider.remove_calls == []
        assert updated.category_code == "INVOICE"
        assert updated.label_applied == "Prüfen"
        assert updated.label_kind == LabelKind.FOLDER
        assert updated.review_state == ReviewState.CHANGED

    async def test_message_missing_from_folder_is_not_recorded_as_moved(self, stores):
        record = _pending(stores)
        provider = _mailbox("Archiv")

        updated = await review.change(
            record.id,
            "INVOICE",
            connections=stores.connections,
            catalog=stores.catalog,
            ledger=stores.ledger,
            audit=stores.audit,
            provider_factory=_factory(provider),
        )

        assert provider.folders["Archiv"] == ["42"]
        assert provider.folders["Rechnung"] == []
        assert provider.remove_calls == []
        assert updated.label_applied == "Prüfen"
        assert updated.category_code == "INVOICE"

    async def test_unfiled_message_is_moved_from_inbox(self, stores):
        record = _pending(stores, label_applied=None)
        provider = _mailbox("INBOX")

        updated = await review.change(
            record.id,
            "INVOICE",
            connections=stores.connections,
            catalog=stores.catalog,
            ledger=stores.ledger,
            audit=stores.audit,
            provider_factory=_factory(provider),
        )

        assert provider.folders["INBOX"] == []
        assert updated.label_applied == "Rechnung"

    async def test_same_label_is_not_removed(self, stores):
        record = _pending(stores, label_applied="Rechnung")
        provider = _mailbox("Rechnung")

        await review.change(
            record.id,
            "INVOICE",
            connections=stores.connections,
            catalog=stores.catalog,
            ledger=stores.ledger,
            audit=stores.audit,
            provider_factory=_factory(provider),
        )

        assert provider.remove_calls == []

    async def test_unknown_category(self, stores):
        record = _pending(stores)
        provider = FakeProvider()

        with pytest.raises(ValueError, match="Category not found"):
            await review.change(
                record.id,
                "SHOPPING",
                connections=stores.connections,
                catalog=stores.catalog,
                ledger=stores.ledger,
                audit=stores.audit,
                provider_factory=_factory(provider),
            )

        assert provider.apply_calls == []
        assert stores.ledger.get(record.id).review_state == ReviewState.PENDING

    async def test_provider_disconnected_on_error(self, stores):
        record = _pending(stores)
        provider = FakeProvider()

        async def broken_apply(message_id, label_id, **kwargs):
            raise RuntimeError("socket closed")

        provider.apply_label = broken_apply

        with pytest.raises(RuntimeError):
            await review.change(
                record.id,
                "INVOICE",
                connections=stores.connections,
                catalog=stores.catalog,
                ledger=stores.ledger,
                audit=stores.audit,
                provider_factory=_factory(provider),
            )

        assert provider.disconnect_calls == 1


# --- reject ---


class TestReject:
    async def test_clears_classification(self, stores):
        record = _pending(stores)
        provider = FakeProvider()

        updated = await review.reject(
            record.id,
            connections=stores.connections,
            ledger=stores.ledger,
            audit=stores.audit,
            provider_factory=_factory(provider),
        )

        assert provider.remove_calls == [("42", "Prüfen")]
        assert provider.disconnect_calls == 1
        assert updated.review_state == ReviewState.REJECTED
        assert updated.category_code is None
        assert updated.label_applied is None
        assert updated.label_kind is None

        stored = stores.ledger.get(record.id)
        assert stored.review_state == ReviewState.REJECTED
        assert stored.needs_review is False

    async def test_no_label_means_no_provider(self, stores):
        record = _pending(stores, label_applied=None)

        def factory(connection, store):
            raise AssertionError("provider should not be built")

        updated = await review.reject(
            record.id,
            connections=stores.connections,
            ledger=stores.ledger,
            audit=stores.audit,
            provider_factory=factory,
        )

        assert updated.review_state == ReviewState.REJECTED

    async def test_provider_unavailable_still_rejects(self, stores):
        record = _pending(stores)

        def factory(connection, store):
            raise RuntimeError("credentials missing")

        updated = await review.reject(
            record.id,
            connections=stores.connections,
            ledger=stores.ledger,
            audit=stores.audit,
            provider_factory=factory,
        )

        assert updated.review_state == ReviewState.REJECTED
        assert stores.audit.read_entries(action=EMAIL_REVIEWED)[0].details["action"] == "reject"
