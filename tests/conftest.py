"""Shared fixtures for emailcat tests."""

import os
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from emailcat.audit.logger import AuditLog
from emailcat.integrations.base import MailboxProvider
from emailcat.queue.ledger import MessageLedger
from emailcat.schemas.email import (
    ApplyLabelResult,
    FetchResult,
    ImapCredentials,
    LabelInfo,
    LabelKind,
    MailboxMessage,
    ProviderType,
)
from emailcat.secrets import PlaintextCipher
from emailcat.store.catalog import CatalogStore
from emailcat.store.connections import ConnectionStore

USER_ID = "user-1"
CONNECTION_ID = "conn-1"


@pytest.fixture(autouse=True)
def _no_sops(monkeypatch):
    """Ensure tests never try to invoke SOPS."""
    monkeypatch.setenv("EMAILCAT_USE_SOPS", "false")


@pytest.fixture()
def project_root():
    """Return the project root path."""
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def make_message(
    uid: str = "1",
    subject: str = "Hello",
    sender: str = "Alice <alice@example.com>",
    *,
    minutes_ago: int = 0,
    **overrides,
) -> MailboxMessage:
    fields = dict(
        id=uid,
        sender=sender,
        to=["me@example.com"],
        subject=subject,
        snippet=None,
        date=datetime(2025, 3, 1, 12, 0, tzinfo=UTC) - timedelta(minutes=minutes_ago),
        internet_message_id=f"<{uid}@example.com>",
    )
    fields.update(overrides)
    return MailboxMessage(**fields)


class FakeProvider(MailboxProvider):
    """In-memory folder-style mailbox.

    Messages live in ``folders`` keyed by folder name; applying a label
    moves the message id out of its source folder (INBOX by default) into
    the label's folder. Pages are decimal offsets, as with IMAP.
    """

    provider_name = "FAKE"

    def __init__(self, messages: list[MailboxMessage] | None = None) -> None:
        self.messages = {m.id: m for m in messages or []}
        self.folders: dict[str, list[str]] = {"INBOX": list(self.messages)}
        self.create_calls: list[str] = []
        self.apply_calls: list[tuple[str, str]] = []
        self.remove_calls: list[tuple[str, str]] = []
        self.fetch_calls: list[dict] = []
        self.disconnect_calls = 0
        self.fail_apply: set[str] = set()
        self.fetch_error: Exception | None = None
        self.refreshed = None

    def add(self, message: MailboxMessage) -> None:
        self.messages[message.id] = message
        self.folders["INBOX"].append(message.id)

    async def fetch_messages(self, *, since=None, max_results=50, page_token=None):
        self.fetch_calls.append(
            {"since": since, "max_results": max_results, "page_token": page_token}
        )
        if self.fetch_error is not None:
            raise self.fetch_error
        inbox = [self.messages[i] for i in self.folders["INBOX"]]
        inbox.sort(key=lambda m: m.date, reverse=True)
        offset = int(page_token) if page_token else 0
        page = inbox[offset : offset + max_results]
        consumed = offset + len(page)
        has_more = consumed < len(inbox)
        return FetchResult(
            messages=page,
            next_page_token=str(consumed) if has_more else None,
            has_more=has_more,
        )

    async def get_labels(self):
        return [LabelInfo(id=name, name=name, kind=LabelKind.FOLDER) for name in self.folders]

    async def create_label(self, name):
        self.create_calls.append(name)
        self.folders.setdefault(name, [])
        return LabelInfo(id=name, name=name, kind=LabelKind.FOLDER)

    async def apply_label(self, message_id, label_id, *, source=None, internet_message_id=None):
        self.apply_calls.append((message_id, label_id))
        if message_id in self.fail_apply:
            return ApplyLabelResult(success=False, label_id=label_id, error="MOVE failed")
        folder = source or "INBOX"
        if message_id not in self.folders.get(folder, []):
            return ApplyLabelResult(
                success=False, label_id=label_id, error=f"not found in {folder}"
            )
        self.folders[folder].remove(message_id)
        self.folders.setdefault(label_id, []).append(message_id)
        return ApplyLabelResult(success=True, label_id=label_id)

    async def remove_label(self, message_id, label_id):
        self.remove_calls.append((message_id, label_id))
        return ApplyLabelResult(success=False, label_id=label_id, error="not supported")

    async def test_connection(self):
        return True

    async def refresh_token_if_needed(self):
        return self.refreshed

    async def disconnect(self):
        self.disconnect_calls += 1


@pytest.fixture()
def stores(tmp_path):
    """Real SQLite stores on one database file, seeded for USER_ID."""
    db = tmp_path / "emailcat.db"
    connections = ConnectionStore(db, PlaintextCipher())
    catalog = CatalogStore(db)
    ledger = MessageLedger(db)
    audit = AuditLog(tmp_path / "audit.jsonl")

    catalog.seed_defaults(USER_ID)
    connections.add_connection(
        USER_ID, ProviderType.IMAP, "me@example.com", connection_id=CONNECTION_ID
    )
    connections.set_imap_credentials(
        CONNECTION_ID,
        ImapCredentials(host="imap.example.com", username="me@example.com", password="secret"),
    )

    yield SimpleNamespace(
        connections=connections,
        catalog=catalog,
        ledger=ledger,
        audit=audit,
        db_path=db,
        audit_path=tmp_path / "audit.jsonl",
    )

    ledger.close()
    catalog.close()
    connections.close()
