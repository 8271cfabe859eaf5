"""Schemas for the mailbox side of the pipeline.

Covers the provider contract:
  fetch -> normalized MailboxMessage -> label lookup/create -> apply/remove
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class ProviderType(StrEnum):
    """Mail backend family a connection is bound to."""

    IMAP = "IMAP"
    GMAIL = "GMAIL"
    OUTLOOK = "OUTLOOK"


class LabelKind(StrEnum):
    """How a backend models a label."""

    LABEL = "LABEL"
    CATEGORY = "CATEGORY"
    FOLDER = "FOLDER"
    FLAG = "FLAG"


# --- Credentials ---


class ImapCredentials(BaseModel):
    """Decrypted IMAP login for one connection."""

    host: str
    port: int = Field(default=993, ge=1, le=65535)
    secure: bool = True
    username: str
    password: str


class OAuthCredentials(BaseModel):
    """Decrypted OAuth token set for API-backed providers."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None


# --- Messages ---


class MailboxMessage(BaseModel):
    """Normalized, ephemeral view of a provider message."""

    id: str  # provider-specific, e.g. IMAP UID as string
    thread_id: str | None = None
    internet_message_id: str | None = None  # RFC 5322 Message-ID header
    provider: ProviderType = ProviderType.IMAP
    sender: str  # "Name <addr>" or bare address
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    subject: str = ""
    snippet: str | None = None
    body: str | None = None
    date: datetime
    labels: list[str] = Field(default_factory=list)
    is_read: bool = False
    has_attachments: bool = False


class FetchResult(BaseModel):
    """One page of fetched messages, newest first."""

    messages: list[MailboxMessage] = Field(default_factory=list)
    next_page_token: str | None = None
    has_more: bool = False


# --- Labels ---


class LabelInfo(BaseModel):
    """A label/folder/flag as reported by the provider."""

    id: str
    name: str
    kind: LabelKind


class ApplyLabelResult(BaseModel):
    """Outcome of applying or removing a label on one message."""

    success: bool
    label_id: str | None = None
    error: str | None = None
