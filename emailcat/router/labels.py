"""Deterministic label routing: category -> provider label, then apply it.

No LLM calls. A category resolves to an explicit label mapping when one
exists for the connection, otherwise to its default label name with a
label kind that follows the provider family.
"""

import logging

from pydantic import BaseModel

from emailcat.defaults import DEFAULT_LABEL_NAMES
from emailcat.integrations.base import MailboxProvider
from emailcat.schemas.email import ApplyLabelResult, LabelKind, ProviderType
from emailcat.schemas.processing import Connection
from emailcat.store.catalog import CatalogStore

logger = logging.getLogger(__name__)


class LabelTarget(BaseModel):
    """Where a classified message should be filed."""

    category_id: int
    label_name: str
    label_kind: LabelKind


def default_label_kind(connection: Connection) -> LabelKind:
    if connection.provider == ProviderType.GMAIL:
        return LabelKind.LABEL
    if connection.provider == ProviderType.OUTLOOK:
        return LabelKind.FOLDER if connection.settings.get("use_folders") else LabelKind.CATEGORY
    # IMAP: folders unless the connection opts into keyword flags
    return LabelKind.FOLDER if connection.settings.get("use_folders", True) else LabelKind.FLAG


def resolve_label(
    category_code: str,
    connection: Connection,
    catalog: CatalogStore,
) -> LabelTarget | None:
    """Resolve the label for ``category_code`` on ``connection``.

    Returns None if the user has no such category.
    """
    category = catalog.get_category_by_code(connection.user_id, category_code)
    if category is None:
        logger.warning(
            "Category %s not found for user %s; no label resolved",
            category_code,
            connection.user_id,
        )
        return None

    mapping = catalog.get_label_mapping(category.id, connection.id)
    if mapping is not None:
        return LabelTarget(
            category_id=category.id,
            label_name=mapping.provider_label,
            label_kind=mapping.label_kind,
        )

    return LabelTarget(
        category_id=category.id,
        label_name=DEFAULT_LABEL_NAMES.get(category_code, category.name),
        label_kind=default_label_kind(connection),
    )


async def apply_label_target(
    provider: MailboxProvider,
    message_id: str,
    target: LabelTarget,
    *,
    source: str | None = None,
    internet_message_id: str | None = None,
) -> ApplyLabelResult:
    """Get-or-create the target label and apply it to one message.

    ``source`` and ``internet_message_id`` are passed to
    ``MailboxProvider.apply_label`` for messages already filed elsewhere.
    Failures are returned, never raised.
    """
    try:
        label = await provider.get_or_create_label(target.label_name)
    except Exception as exc:
        logger.warning("Could not get or create label %s: %s", target.label_name, exc)
        return ApplyLabelResult(success=False, error=str(exc))

    result = await provider.apply_label(
        message_id, label.id, source=source, internet_message_id=internet_message_id
    )
    if not result.success:
        logger.warning(
            "Applying %s to message %s failed: %s", label.id, message_id, result.error
        )
    elif result.label_id is None:
        result = result.model_copy(update={"label_id": label.id})
    return result
