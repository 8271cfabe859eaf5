"""Tests for emailcat schemas: validation rules and derived properties."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from emailcat.schemas.classification import (
    MAX_RATIONALE_CHARS,
    REVIEW,
    ClassificationResult,
    ClassifiedBy,
    Rule,
    RuleField,
    RuleType,
)
from emailcat.schemas.email import ImapCredentials, MailboxMessage
from emailcat.schemas.processing import ProcessingOptions, ProcessingResult


class TestClassificationResult:
    def _make(self, **overrides) -> ClassificationResult:
        defaults = dict(
            category="INVOICE",
            confidence=0.9,
            rationale="Matched rule: Rechnung",
            classified_by=ClassifiedBy.RULES,
        )
        defaults.update(overrides)
        return ClassificationResult(**defaults)

    @pytest.mark.parametrize("raw, expected", [(1.5, 1.0), (-0.2, 0.0), ("0.75", 0.75)])
    def test_confidence_clamped(self, raw, expected):
        assert self._make(confidence=raw).confidence == expected

    def test_rationale_truncated(self):
        assert len(self._make(rationale="x" * 500).rationale) == MAX_RATIONALE_CHARS

    def test_frozen(self):
        result = self._make()
        with pytest.raises(ValidationError):
            result.category = "ORDER"

    def test_needs_review(self):
        assert self._make(category=REVIEW).needs_review is True
        assert self._make().needs_review is False


class TestRule:
    def test_empty_pattern_rejected(self):
        with pytest.raises(ValidationError):
            Rule(
                category_id=1,
                category_code="INVOICE",
                name="empty",
                type=RuleType.KEYWORD,
                field=RuleField.SUBJECT,
                pattern="",
            )

    def test_confidence_range(self):
        with pytest.raises(ValidationError):
            Rule(
                category_id=1,
                category_code="INVOICE",
                name="too sure",
                type=RuleType.KEYWORD,
                field=RuleField.SUBJECT,
                pattern="x",
                confidence=1.2,
            )


class TestMailboxMessage:
    def test_defaults(self):
        msg = MailboxMessage(
            id="1", sender="a@b.de", date=datetime(2025, 3, 1, tzinfo=UTC)
        )
        assert msg.subject == ""
        assert msg.to == []
        assert msg.body is None
        assert msg.is_read is False


class TestImapCredentials:
    def test_port_range(self):
        with pytest.raises(ValidationError):
            ImapCredentials(host="h", port=0, username="u", password="p")

    def test_defaults(self):
        creds = ImapCredentials(host="h", username="u", password="p")
        assert creds.port == 993
        assert creds.secure is True


class TestProcessingOptions:
    def test_defaults(self):
        options = ProcessingOptions()
        assert options.max_emails == 50
        assert options.dry_run is False
        assert options.force_reprocess is False
        assert options.timeout_seconds is None

    @pytest.mark.parametrize("field, value", [("max_emails", 0), ("timeout_seconds", 0)])
    def test_invalid(self, field, value):
        with pytest.raises(ValidationError):
            ProcessingOptions(**{field: value})

    def test_result_serializes(self):
        result = ProcessingResult(connection_id="c1", messages_processed=3)
        data = result.model_dump()
        assert data["errors"] == []
        assert data["messages_processed"] == 3
