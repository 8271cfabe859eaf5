"""Tests for the SQLite-backed processed-message ledger."""

from datetime import UTC, datetime

import pytest

from emailcat.queue.ledger import DuplicateMessageError, MessageLedger
from emailcat.schemas.classification import ClassifiedBy
from emailcat.schemas.email import LabelKind
from emailcat.schemas.processing import ProcessedMessage, ReviewState


@pytest.fixture()
def ledger(tmp_path):
    """Create a MessageLedger with a temporary database."""
    with MessageLedger(tmp_path / "ledger.db") as led:
        yield led


def _make_record(message_id: str = "42", connection_id: str = "conn-1", **overrides):
    defaults = dict(
        connection_id=connection_id,
        message_id=message_id,
        category_code="INVOICE",
        confidence=0.9,
        label_applied="Rechnung",
        label_kind=LabelKind.FOLDER,
        classified_by=ClassifiedBy.RULES,
        rationale="Matched rule: Rechnung im Betreff",
        email_subject="Ihre Rechnung",
        email_from="billing@acme.de",
        email_date=datetime(2025, 3, 1, 12, 0, tzinfo=UTC),
    )
    defaults.update(overrides)
    return ProcessedMessage(**defaults)


class TestCreate:
    def test_create_assigns_id_and_timestamps(self, ledger: MessageLedger):
        record = ledger.create(_make_record())

        assert record.id is not None
        assert record.created_at is not None
        assert record.updated_at == record.created_at

    def test_round_trip_preserves_fields(self, ledger: MessageLedger):
        created = ledger.create(_make_record())
        stored = ledger.get(created.id)

        assert stored.message_id == "42"
        assert stored.label_kind == LabelKind.FOLDER
        assert stored.classified_by == ClassifiedBy.RULES
        assert stored.email_date == datetime(2025, 3, 1, 12, 0, tzinfo=UTC)
        assert stored.review_state is None

    def test_duplicate_raises(self, ledger: MessageLedger):
        ledger.create(_make_record())

        with pytest.raises(DuplicateMessageError) as excinfo:
            ledger.create(_make_record(category_code="ORDER"))

        assert excinfo.value.message_id == "42"
        assert ledger.count("conn-1") == 1

    def test_same_message_id_on_other_connection(self, ledger: MessageLedger):
        ledger.create(_make_record())
        ledger.create(_make_record(connection_id="conn-2"))

        assert ledger.count("conn-1") == 1
        assert ledger.count("conn-2") == 1


class TestLookup:
    def test_find(self, ledger: MessageLedger):
        ledger.create(_make_record())

        assert ledger.find("conn-1", "42").category_code == "INVOICE"
        assert ledger.find("conn-1", "43") is None
        assert ledger.find("conn-2", "42") is None

    def test_get_missing(self, ledger: MessageLedger):
        assert ledger.get(999) is None

    def test_list_message_ids(self, ledger: MessageLedger):
        for uid in ("1", "2", "3"):
            ledger.create(_make_record(uid))
        ledger.create(_make_record("9", connection_id="conn-2"))

        assert ledger.list_message_ids("conn-1") == {"1", "2", "3"}


class TestDelete:
    def test_delete_then_recreate(self, ledger: MessageLedger):
        first = ledger.create(_make_record())

        assert ledger.delete(first.id) is True
        second = ledger.create(_make_record(category_code="ORDER"))

        assert second.id != first.id
        assert ledger.count("conn-1") == 1
        assert ledger.find("conn-1", "42").category_code == "ORDER"

    def test_delete_missing(self, ledger: MessageLedger):
        assert ledger.delete(999) is False


class TestReview:
    def test_list_pending_review(self, ledger: MessageLedger):
        ledger.create(_make_record("1"))
        ledger.create(
            _make_record("2", needs_review=True, review_state=ReviewState.PENDING)
        )
        ledger.create(
            _make_record(
                "3", connection_id="conn-2", needs_review=True, review_state=ReviewState.PENDING
            )
        )

        assert [r.message_id for r in ledger.list_pending_review()] == ["2", "3"]
        assert [r.message_id for r in ledger.list_pending_review("conn-2")] == ["3"]
        assert len(ledger.list_pending_review(limit=1)) == 1

    def test_save_review(self, ledger: MessageLedger):
        record = ledger.create(
            _make_record(needs_review=True, review_state=ReviewState.PENDING)
        )
        reviewed_at = datetime(2025, 3, 2, 9, 0, tzinfo=UTC)

        ledger.save_review(
            record.model_copy(
                update={
                    "category_code": "ORDER",
                    "label_applied": None,
                    "label_kind": None,
                    "needs_review": False,
                    "review_state": ReviewState.CHANGED,
                    "reviewed_at": reviewed_at,
                }
            )
        )

        stored = ledger.get(record.id)
        assert stored.category_code == "ORDER"
        assert stored.label_applied is None
        assert stored.needs_review is False
        assert stored.review_state == ReviewState.CHANGED
        assert stored.reviewed_at == reviewed_at
        assert stored.rationale == record.rationale

    def test_save_review_requires_id(self, ledger: MessageLedger):
        with pytest.raises(ValueError, match="without id"):
            ledger.save_review(_make_record())

    def test_save_review_missing_row(self, ledger: MessageLedger):
        with pytest.raises(ValueError, match="not found"):
            ledger.save_review(_make_record(id=999))


class TestPersistence:
    def test_rows_survive_reopen(self, tmp_path):
        db = tmp_path / "ledger.db"
        with MessageLedger(db) as ledger:
            ledger.create(_make_record())

        with MessageLedger(db) as ledger:
            assert ledger.list_message_ids("conn-1") == {"42"}
