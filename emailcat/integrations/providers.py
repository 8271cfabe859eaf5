"""Select and build the mailbox provider for a stored connection."""

import logging

from emailcat.integrations.base import MailboxProvider, ProviderConfigError
from emailcat.integrations.imap import ImapProvider
from emailcat.schemas.email import ProviderType
from emailcat.schemas.processing import Connection
from emailcat.store.connections import ConnectionStore

logger = logging.getLogger(__name__)


def create_provider(
    connection: Connection,
    store: ConnectionStore,
    *,
    timeout: float | None = None,
) -> MailboxProvider:
    """Build a provider from the connection's decrypted credentials.

    Raises:
        ProviderConfigError: If no provider serves the connection's backend.
        CredentialError: If the stored credentials are missing or undecryptable.
    """
    if connection.provider == ProviderType.IMAP:
        settings = connection.settings
        return ImapProvider(
            store.get_imap_credentials(connection.id),
            use_folders=bool(settings.get("use_folders", True)),
            folder_prefix=str(settings.get("folder_prefix") or ""),
            fetch_body=bool(settings.get("fetch_body", False)),
            timeout=timeout,
        )

    logger.error(
        "No provider available for %s connection %s",
        connection.provider.value,
        connection.id,
    )
    raise ProviderConfigError(
        f"Provider {connection.provider.value} is not supported by this installation"
    )
