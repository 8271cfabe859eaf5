"""IMAP mailbox provider wrapping imap-tools.

imap-tools is synchronous; every call goes through asyncio.to_thread()
under a per-provider lock, since one IMAP session cannot serve two
commands at once.

Labels are modelled either as folders (default; applying a label MOVEs the
message out of the inbox) or as IMAP keywords when ``use_folders`` is off.

Usage::

    async with ImapProvider(credentials, folder_prefix="Mail") as imap:
        page = await imap.fetch_messages(max_results=50)
        label = await imap.get_or_create_label("Rechnung")
        await imap.apply_label(page.messages[0].id, label.id)
"""

import asyncio
import logging
import re
import unicodedata
from datetime import UTC, datetime
from email.utils import formataddr

from imap_tools import AND, H, MailBox, MailBoxUnencrypted, MailboxLoginError, MailMessage
from imap_tools.errors import MailboxFolderCreateError

from emailcat.integrations.base import (
    MailboxProvider,
    ProviderAuthError,
    ProviderError,
    ProviderFetchError,
    is_already_exists,
)
from emailcat.schemas.email import (
    ApplyLabelResult,
    FetchResult,
    ImapCredentials,
    LabelInfo,
    LabelKind,
    MailboxMessage,
    OAuthCredentials,
    ProviderType,
)

logger = logging.getLogger(__name__)

SNIPPET_CHARS = 500
FOLDER_REMOVE_UNSUPPORTED = (
    "Removing a folder label is not supported: the message was moved "
    "and its previous location is unknown"
)

_KEYWORD_UNSAFE = re.compile(r"[^A-Za-z0-9_.\-]")


def flag_keyword(name: str) -> str:
    """Turn a label name into a valid IMAP keyword ("Prüfen" -> "Prufen")."""
    ascii_name = (
        unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    )
    return _KEYWORD_UNSAFE.sub("_", ascii_name.strip()) or "_"


def _normalize_date(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _format_sender(msg: MailMessage) -> str:
    values = msg.from_values
    if values is None:
        return msg.from_ or ""
    if values.name:
        return formataddr((values.name, values.email))
    return values.email


def _header(msg: MailMessage, name: str) -> str | None:
    values = msg.headers.get(name.lower())
    if not values:
        return None
    return values[0].strip() or None


def _thread_id(msg: MailMessage) -> str | None:
    """Root of the References chain, or the message's own Message-ID."""
    references = _header(msg, "references")
    if references:
        return references.split()[0]
    return _header(msg, "message-id")


def _parse_message(msg: MailMessage, *, include_body: bool) -> MailboxMessage:
    """Convert an imap-tools MailMessage to a MailboxMessage."""
    if include_body:
        body = msg.text or msg.html or ""
        has_attachments = len(msg.attachments) > 0
    else:
        body = ""
        content_type = _header(msg, "content-type") or ""
        has_attachments = content_type.lower().startswith("multipart/mixed")

    return MailboxMessage(
        id=msg.uid,
        thread_id=_thread_id(msg),
        internet_message_id=_header(msg, "message-id"),
        provider=ProviderType.IMAP,
        sender=_format_sender(msg),
        to=list(msg.to),
        cc=list(msg.cc),
        subject=msg.subject or "",
        snippet=body[:SNIPPET_CHARS] or None,
        body=body or None,
        date=_normalize_date(msg.date),
        labels=list(msg.flags),
        is_read="\\Seen" in msg.flags,
        has_attachments=has_attachments,
    )


class ImapProvider(MailboxProvider):
    """Mailbox provider for generic IMAP servers.

    The session is opened lazily on first use and released by
    ``disconnect()`` (or leaving ``async with``).
    """

    provider_name = "IMAP"

    def __init__(
        self,
        credentials: ImapCredentials,
        *,
        use_folders: bool = True,
        folder_prefix: str = "",
        fetch_body: bool = False,
        timeout: float | None = None,
        inbox: str = "INBOX",
    ) -> None:
        self._credentials = credentials
        self._use_folders = use_folders
        self._folder_prefix = folder_prefix.strip()
        self._fetch_body = fetch_body
        self._timeout = timeout
        self._inbox = inbox
        self._mailbox: MailBox | None = None
        self._delimiter: str | None = None
        self._lock = asyncio.Lock()

    @property
    def label_kind(self) -> LabelKind:
        return LabelKind.FOLDER if self._use_folders else LabelKind.FLAG

    async def _call(self, fn, *args):
        async with self._lock:
            return await asyncio.to_thread(fn, *args)

    # --- Session ---

    def _connect(self) -> MailBox:
        """Connect and login (sync, called via to_thread)."""
        creds = self._credentials
        if creds.secure:
            mb = MailBox(creds.host, port=creds.port, timeout=self._timeout)
        else:
            mb = MailBoxUnencrypted(creds.host, port=creds.port, timeout=self._timeout)

        try:
            mb.login(creds.username, creds.password, initial_folder=self._inbox)
        except MailboxLoginError as exc:
            logger.error("IMAP login failed for %s", creds.username)
            raise ProviderAuthError(f"IMAP login failed for {creds.username}") from exc

        logger.info("Connected to %s as %s", creds.host, creds.username)
        return mb

    def _ensure(self) -> MailBox:
        if self._mailbox is None:
            self._mailbox = self._connect()
        return self._mailbox

    def _folder_path(self, name: str) -> str:
        if not self._folder_prefix:
            return name
        if self._delimiter is None:
            folders = self._ensure().folder.list()
            self._delimiter = folders[0].delim if folders and folders[0].delim else "/"
        return f"{self._folder_prefix}{self._delimiter}{name}"

    def _create_folder(self, path: str) -> None:
        mailbox = self._ensure()
        try:
            mailbox.folder.create(path)
            logger.info("Created IMAP folder: %s", path)
        except MailboxFolderCreateError as exc:
            if is_already_exists(exc) or mailbox.folder.exists(path):
                return
            raise

    # --- Fetch ---

    async def fetch_messages(
        self,
        *,
        since: datetime | None = None,
        max_results: int = 50,
        page_token: str | None = None,
    ) -> FetchResult:
        offset = int(page_token) if page_token else 0

        def _fetch() -> FetchResult:
            mailbox = self._ensure()
            mailbox.folder.set(self._inbox)
            criteria = AND(date_gte=since.date()) if since else AND(all=True)
            uids = sorted(mailbox.uids(criteria), key=int, reverse=True)
            page = uids[offset : offset + max_results]
            if not page:
                return FetchResult()

            msgs = mailbox.fetch(
                AND(uid=page),
                headers_only=not self._fetch_body,
                mark_seen=False,
                bulk=True,
            )
            messages = [_parse_message(m, include_body=self._fetch_body) for m in msgs]
            if since is not None:
                floor = _normalize_date(since)
                messages = [m for m in messages if m.date >= floor]
            messages.sort(key=lambda m: m.date, reverse=True)

            consumed = offset + len(page)
            has_more = consumed < len(uids)
            return FetchResult(
                messages=messages,
                next_page_token=str(consumed) if has_more else None,
                has_more=has_more,
            )

        try:
            result = await self._call(_fetch)
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderFetchError(f"IMAP fetch failed: {exc}") from exc

        logger.debug("Fetched %d message(s) from %s", len(result.messages), self._inbox)
        return result

    # --- Labels ---

    async def get_labels(self) -> list[LabelInfo]:
        def _list() -> list[LabelInfo]:
            return [
                LabelInfo(
                    id=f.name,
                    name=f.name.rsplit(f.delim or "/", 1)[-1],
                    kind=self.label_kind,
                )
                for f in self._ensure().folder.list()
            ]

        return await self._call(_list)

    async def create_label(self, name: str) -> LabelInfo:
        if not self._use_folders:
            return LabelInfo(id=flag_keyword(name), name=name, kind=LabelKind.FLAG)

        def _create() -> LabelInfo:
            if self._folder_prefix:
                self._create_folder(self._folder_prefix)
            path = self._folder_path(name)
            self._create_folder(path)
            return LabelInfo(id=path, name=name, kind=LabelKind.FOLDER)

        return await self._call(_create)

    async def get_or_create_label(self, name: str) -> LabelInfo:
        if not self._use_folders:
            return await self.create_label(name)

        path = await self._call(self._folder_path, name)
        for label in await self.get_labels():
            if label.id == path:
                return LabelInfo(id=path, name=name, kind=LabelKind.FOLDER)
        return await self.create_label(name)

    def _locate(
        self,
        mailbox: MailBox,
        folder: str,
        message_id: str,
        internet_message_id: str | None,
    ) -> str:
        """Return the UID of the message in ``folder``, which must be selected.

        Raises:
            ProviderError: If neither the UID nor the Message-ID is there.
        """
        if mailbox.uids(AND(uid=message_id)):
            return message_id
        if internet_message_id:
            found = mailbox.uids(AND(header=H("Message-ID", internet_message_id)))
            if found:
                return found[0]
        raise ProviderError(f"Message {message_id} not found in {folder}")

    async def apply_label(
        self,
        message_id: str,
        label_id: str,
        *,
        source: str | None = None,
        internet_message_id: str | None = None,
    ) -> ApplyLabelResult:
        folder = source or self._inbox

        def _apply() -> None:
            mailbox = self._ensure()
            if self._use_folders:
                # The folder may have been deleted since get_or_create_label.
                if not mailbox.folder.exists(label_id):
                    self._create_folder(label_id)
                mailbox.folder.set(folder)
                uid = self._locate(mailbox, folder, message_id, internet_message_id)
                if folder == label_id:
                    logger.debug("UID %s already in %s", uid, label_id)
                    return
                mailbox.move(uid, label_id)
                logger.info("Moved UID %s from %s to %s", uid, folder, label_id)
            else:
                mailbox.folder.set(self._inbox)
                uid = self._locate(mailbox, self._inbox, message_id, internet_message_id)
                mailbox.flag(uid, {label_id}, True)
                logger.info("Set flag %s on UID %s", label_id, uid)

        try:
            await self._call(_apply)
        except Exception as exc:
            logger.warning("Failed to apply %s to UID %s: %s", label_id, message_id, exc)
            return ApplyLabelResult(success=False, label_id=label_id, error=str(exc))
        return ApplyLabelResult(success=True, label_id=label_id)

    async def remove_label(self, message_id: str, label_id: str) -> ApplyLabelResult:
        if self._use_folders:
            return ApplyLabelResult(
                success=False, label_id=label_id, error=FOLDER_REMOVE_UNSUPPORTED
            )

        def _remove() -> None:
            mailbox = self._ensure()
            mailbox.folder.set(self._inbox)
            mailbox.flag(message_id, {label_id}, False)
            logger.info("Cleared flag %s on UID %s", label_id, message_id)

        try:
            await self._call(_remove)
        except Exception as exc:
            return ApplyLabelResult(success=False, label_id=label_id, error=str(exc))
        return ApplyLabelResult(success=True, label_id=label_id)

    # --- Lifecycle ---

    async def test_connection(self) -> bool:
        def _probe() -> None:
            self._ensure().folder.set(self._inbox, readonly=True)

        try:
            await self._call(_probe)
        except Exception as exc:
            logger.warning("IMAP connection test failed: %s", exc)
            return False
        return True

    async def refresh_token_if_needed(self) -> OAuthCredentials | None:
        return None

    async def disconnect(self) -> None:
        def _logout() -> None:
            if self._mailbox is None:
                return
            try:
                self._mailbox.logout()
            except Exception:
                logger.debug("Error during IMAP logout", exc_info=True)
            finally:
                self._mailbox = None
                self._delimiter = None

        await self._call(_logout)
