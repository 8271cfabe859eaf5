"""Mailbox provider contract.

Every backend (IMAP, Gmail API, Graph API) implements the same capability
set. Operations are independently retryable and idempotent at this
boundary; pipeline-level idempotence comes from the ledger, not from here.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from emailcat.schemas.email import (
    ApplyLabelResult,
    FetchResult,
    LabelInfo,
    OAuthCredentials,
)


class ProviderError(Exception):
    """Base class for provider failures."""


class ProviderFetchError(ProviderError):
    """Transport or auth failure while fetching. Connection-scoped."""


class ProviderAuthError(ProviderFetchError):
    """The backend rejected the credentials (also a fetch failure)."""


class ProviderConfigError(ProviderError):
    """The connection cannot be served by any available provider."""


def is_already_exists(exc: BaseException) -> bool:
    """True if a provider error reports that the label/folder already exists."""
    text = str(exc)
    return "ALREADYEXISTS" in text.upper() or "already exists" in text.lower()


class MailboxProvider(ABC):
    """Abstract mailbox backend.

    Usage::

        async with provider:
            page = await provider.fetch_messages(max_results=50)
            label = await provider.get_or_create_label("Rechnung")
            await provider.apply_label(page.messages[0].id, label.id)
    """

    provider_name: str = ""

    async def __aenter__(self) -> "MailboxProvider":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.disconnect()

    @abstractmethod
    async def fetch_messages(
        self,
        *,
        since: datetime | None = None,
        max_results: int = 50,
        page_token: str | None = None,
    ) -> FetchResult:
        """Fetch messages newest first.

        Raises:
            ProviderFetchError: On transport or auth failure.
        """

    @abstractmethod
    async def get_labels(self) -> list[LabelInfo]:
        """List labels/folders available on the backend."""

    @abstractmethod
    async def create_label(self, name: str) -> LabelInfo:
        """Create a label; return the existing one if it is already there."""

    async def get_or_create_label(self, name: str) -> LabelInfo:
        """Return the label called ``name``, creating it if missing."""
        for label in await self.get_labels():
            if label.id == name or label.name == name:
                return label
        return await self.create_label(name)

    @abstractmethod
    async def apply_label(
        self,
        message_id: str,
        label_id: str,
        *,
        source: str | None = None,
        internet_message_id: str | None = None,
    ) -> ApplyLabelResult:
        """Apply a label. Folder-style backends move the message.

        ``source`` names the folder the message sits in when it is no longer
        in the inbox. ``internet_message_id`` locates it there when its id
        changed with an earlier move. A message that cannot be found is a
        failed apply, never a silent no-op.
        """

    @abstractmethod
    async def remove_label(self, message_id: str, label_id: str) -> ApplyLabelResult:
        """Best-effort label removal."""

    @abstractmethod
    async def test_connection(self) -> bool:
        """Open the primary mailbox and confirm liveness without mutating it."""

    @abstractmethod
    async def refresh_token_if_needed(self) -> OAuthCredentials | None:
        """Return refreshed credentials, or None if nothing was refreshed."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the session. Safe to call repeatedly."""
