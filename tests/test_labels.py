"""Tests for emailcat.router.labels: category to provider label resolution."""

from unittest.mock import AsyncMock

from conftest import CONNECTION_ID, USER_ID, FakeProvider, make_message
from emailcat.router.labels import (
    LabelTarget,
    apply_label_target,
    default_label_kind,
    resolve_label,
)
from emailcat.schemas.classification import Category
from emailcat.schemas.email import ApplyLabelResult, LabelKind, ProviderType
from emailcat.schemas.processing import Connection, LabelMapping


def _connection(provider=ProviderType.IMAP, **settings) -> Connection:
    return Connection(
        id=CONNECTION_ID,
        user_id=USER_ID,
        provider=provider,
        email="me@example.com",
        settings=settings,
    )


# --- default_label_kind ---


class TestDefaultLabelKind:
    def test_gmail_uses_labels(self):
        assert default_label_kind(_connection(ProviderType.GMAIL)) == LabelKind.LABEL

    def test_outlook_uses_categories_unless_folders_requested(self):
        assert default_label_kind(_connection(ProviderType.OUTLOOK)) == LabelKind.CATEGORY
        assert (
            default_label_kind(_connection(ProviderType.OUTLOOK, use_folders=True))
            == LabelKind.FOLDER
        )

    def test_imap_uses_folders_unless_flags_requested(self):
        assert default_label_kind(_connection()) == LabelKind.FOLDER
        assert default_label_kind(_connection(use_folders=False)) == LabelKind.FLAG


# --- resolve_label ---


class TestResolveLabel:
    def test_default_label_name(self, stores):
        target = resolve_label("INVOICE", _connection(), stores.catalog)

        assert target.label_name == "Rechnung"
        assert target.label_kind == LabelKind.FOLDER
        assert target.category_id == stores.catalog.get_category_by_code(USER_ID, "INVOICE").id

    def test_review_goes_to_review_folder(self, stores):
        target = resolve_label("REVIEW", _connection(), stores.catalog)
        assert target.label_name == "Prüfen"

    def test_explicit_mapping_wins(self, stores):
        category = stores.catalog.get_category_by_code(USER_ID, "INVOICE")
        stores.catalog.set_label_mapping(
            LabelMapping(
                category_id=category.id,
                connection_id=CONNECTION_ID,
                provider_label="Finance/Invoices",
                label_kind=LabelKind.FOLDER,
            )
        )

        target = resolve_label("INVOICE", _connection(), stores.catalog)

        assert target.label_name == "Finance/Invoices"

    def test_mapping_for_other_connection_is_ignored(self, stores):
        category = stores.catalog.get_category_by_code(USER_ID, "INVOICE")
        stores.catalog.set_label_mapping(
            LabelMapping(
                category_id=category.id,
                connection_id="other",
                provider_label="Elsewhere",
                label_kind=LabelKind.FOLDER,
            )
        )

        assert resolve_label("INVOICE", _connection(), stores.catalog).label_name == "Rechnung"

    def test_custom_category_uses_its_name(self, stores):
        stores.catalog.add_category(Category(user_id=USER_ID, code="TAXES", name="Steuern"))

        assert resolve_label("TAXES", _connection(), stores.catalog).label_name == "Steuern"

    def test_unknown_category(self, stores):
        assert resolve_label("NOPE", _connection(), stores.catalog) is None


# --- apply_label_target ---


def _target(name: str = "Rechnung") -> LabelTarget:
    return LabelTarget(category_id=1, label_name=name, label_kind=LabelKind.FOLDER)


def _mailbox() -> FakeProvider:
    return FakeProvider([make_message("42", "Rechnung?")])


class TestApplyLabelTarget:
    async def test_creates_and_moves(self):
        provider = _mailbox()

        result = await apply_label_target(provider, "42", _target())

        assert result.success is True
        assert result.label_id == "Rechnung"
        assert provider.create_calls == ["Rechnung"]
        assert provider.apply_calls == [("42", "Rechnung")]
        assert provider.folders["INBOX"] == []

    async def test_moves_from_source_folder(self):
        provider = _mailbox()
        provider.folders["Prüfen"] = provider.folders.pop("INBOX")

        result = await apply_label_target(provider, "42", _target(), source="Prüfen")

        assert result.success is True
        assert provider.folders["Prüfen"] == []
        assert provider.folders["Rechnung"] == ["42"]

    async def test_passes_message_id_header_through(self):
        provider = _mailbox()
        provider.apply_label = AsyncMock(return_value=ApplyLabelResult(success=True))

        await apply_label_target(
            provider, "42", _target(), source="Prüfen", internet_message_id="<42@example.com>"
        )

        provider.apply_label.assert_awaited_once_with(
            "42", "Rechnung", source="Prüfen", internet_message_id="<42@example.com>"
        )

    async def test_existing_label_is_reused(self):
        provider = _mailbox()
        provider.folders["Rechnung"] = []

        await apply_label_target(provider, "42", _target())

        assert provider.create_calls == []

    async def test_apply_failure_is_returned(self):
        provider = FakeProvider()
        provider.fail_apply.add("42")

        result = await apply_label_target(provider, "42", _target())

        assert result.success is False
        assert result.error == "MOVE failed"

    async def test_label_creation_failure_is_returned(self):
        provider = FakeProvider()
        provider.get_or_create_label = AsyncMock(side_effect=RuntimeError("quota exceeded"))

        result = await apply_label_target(provider, "42", _target())

        assert result.success is False
        assert result.error == "quota exceeded"
        assert provider.apply_calls == []

    async def test_missing_label_id_is_filled_in(self):
        provider = FakeProvider()
        provider.apply_label = AsyncMock(return_value=ApplyLabelResult(success=True))

        result = await apply_label_target(provider, "42", _target())

        assert result.label_id == "Rechnung"
