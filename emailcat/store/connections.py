"""SQLite-backed store of connections, their credentials and LLM providers.

Secrets are encrypted with the injected ``Cipher`` before they touch the
database and decrypted only when a caller asks for usable credentials.
"""

import json
import logging
import sqlite3
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from emailcat.schemas.email import ImapCredentials, OAuthCredentials, ProviderType
from emailcat.schemas.processing import (
    Connection,
    ConnectionStatus,
    LLMProviderName,
    LLMProviderRecord,
)
from emailcat.secrets import Cipher

logger = logging.getLogger(__name__)

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS connections (
    id            TEXT PRIMARY KEY,
    user_id       TEXT NOT NULL,
    provider      TEXT NOT NULL,
    email         TEXT NOT NULL,
    status        TEXT NOT NULL DEFAULT 'ACTIVE',
    settings_json TEXT NOT NULL DEFAULT '{}',
    last_sync_at  TEXT,
    last_error    TEXT
);
CREATE TABLE IF NOT EXISTS imap_credentials (
    connection_id  TEXT PRIMARY KEY REFERENCES connections(id) ON DELETE CASCADE,
    host           TEXT NOT NULL,
    port           INTEGER NOT NULL,
    secure         INTEGER NOT NULL,
    username       TEXT NOT NULL,
    password_enc   TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS oauth_tokens (
    connection_id      TEXT PRIMARY KEY REFERENCES connections(id) ON DELETE CASCADE,
    access_token_enc   TEXT NOT NULL,
    refresh_token_enc  TEXT,
    expires_at         TEXT
);
CREATE TABLE IF NOT EXISTS llm_providers (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id      TEXT NOT NULL,
    provider     TEXT NOT NULL,
    api_key_enc  TEXT NOT NULL,
    model        TEXT,
    is_default   INTEGER NOT NULL DEFAULT 1,
    status       TEXT NOT NULL DEFAULT 'ACTIVE'
);
"""


class ConnectionNotFoundError(LookupError):
    """No connection exists with the given id."""


class CredentialError(Exception):
    """Stored credentials are missing or cannot be decrypted."""


def _row_to_connection(row: sqlite3.Row) -> Connection:
    return Connection(
        id=row["id"],
        user_id=row["user_id"],
        provider=ProviderType(row["provider"]),
        email=row["email"],
        status=ConnectionStatus(row["status"]),
        settings=json.loads(row["settings_json"] or "{}"),
        last_sync_at=(
            datetime.fromisoformat(row["last_sync_at"]) if row["last_sync_at"] else None
        ),
        last_error=row["last_error"],
    )


class ConnectionStore:
    """Connections, credentials and per-user LLM provider records.

    Usage::

        store = ConnectionStore("/path/to/emailcat.db", cipher)
        conn = store.add_connection("user-1", ProviderType.IMAP, "me@example.com")
        store.set_imap_credentials(conn.id, creds)
        store.set_status(conn.id, ConnectionStatus.ERROR, "boom")
    """

    def __init__(self, db_path: str | Path, cipher: Cipher) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._cipher = cipher
        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_CREATE_TABLES)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "ConnectionStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # --- Connections ---

    def add_connection(
        self,
        user_id: str,
        provider: ProviderType,
        email: str,
        *,
        settings: dict[str, Any] | None = None,
        connection_id: str | None = None,
    ) -> Connection:
        connection = Connection(
            id=connection_id or str(uuid.uuid4()),
            user_id=user_id,
            provider=provider,
            email=email,
            settings=settings or {},
        )
        self._conn.execute(
            "INSERT INTO connections (id, user_id, provider, email, status, settings_json) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                connection.id,
                connection.user_id,
                connection.provider.value,
                connection.email,
                connection.status.value,
                json.dumps(connection.settings),
            ),
        )
        self._conn.commit()
        logger.info("Added %s connection %s for %s", provider.value, connection.id, email)
        return connection

    def get(self, connection_id: str) -> Connection | None:
        row = self._conn.execute(
            "SELECT * FROM connections WHERE id = ?", (connection_id,)
        ).fetchone()
        return _row_to_connection(row) if row else None

    def require(self, connection_id: str) -> Connection:
        """Like get(), but raises ConnectionNotFoundError."""
        connection = self.get(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection not found: {connection_id}")
        return connection

    def list_connections(
        self,
        *,
        status: ConnectionStatus | None = None,
        user_id: str | None = None,
    ) -> list[Connection]:
        sql = "SELECT * FROM connections WHERE 1 = 1"
        params: list[str] = []
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        rows = self._conn.execute(sql + " ORDER BY id", params).fetchall()
        return [_row_to_connection(r) for r in rows]

    def set_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        error: str | None = None,
    ) -> None:
        self._conn.execute(
            "UPDATE connections SET status = ?, last_error = ? WHERE id = ?",
            (status.value, error, connection_id),
        )
        self._conn.commit()
        logger.info("Connection %s status -> %s", connection_id, status.value)

    def mark_synced(self, connection_id: str) -> None:
        """Record a successful sync and clear any previous error."""
        self._conn.execute(
            "UPDATE connections SET last_sync_at = ?, status = ?, last_error = NULL WHERE id = ?",
            (datetime.now(UTC).isoformat(), ConnectionStatus.ACTIVE.value, connection_id),
        )
        self._conn.commit()

    # --- IMAP credentials ---

    def set_imap_credentials(self, connection_id: str, credentials: ImapCredentials) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO imap_credentials "
            "(connection_id, host, port, secure, username, password_enc) VALUES (?, ?, ?, ?, ?, ?)",
            (
                connection_id,
                credentials.host,
                credentials.port,
                int(credentials.secure),
                credentials.username,
                self._cipher.encrypt(credentials.password),
            ),
        )
        self._conn.commit()

    def get_imap_credentials(self, connection_id: str) -> ImapCredentials:
        """Return decrypted IMAP credentials.

        Raises:
            CredentialError: If none are stored or the password cannot be decrypted.
        """
        row = self._conn.execute(
            "SELECT * FROM imap_credentials WHERE connection_id = ?", (connection_id,)
        ).fetchone()
        if row is None:
            raise CredentialError(f"No IMAP credentials for connection {connection_id}")
        try:
            password = self._cipher.decrypt(row["password_enc"])
        except Exception as exc:
            raise CredentialError(
                f"Failed to decrypt IMAP credentials for connection {connection_id}: {exc}"
            ) from exc
        return ImapCredentials(
            host=row["host"],
            port=row["port"],
            secure=bool(row["secure"]),
            username=row["username"],
            password=password,
        )

    # --- OAuth tokens ---

    def update_tokens(self, connection_id: str, credentials: OAuthCredentials) -> None:
        """Persist a refreshed token set (encrypted)."""
        self._conn.execute(
            "INSERT OR REPLACE INTO oauth_tokens "
            "(connection_id, access_token_enc, refresh_token_enc, expires_at) VALUES (?, ?, ?, ?)",
            (
                connection_id,
                self._cipher.encrypt(credentials.access_token),
                self._cipher.encrypt(credentials.refresh_token) if credentials.refresh_token else None,
                credentials.expires_at.isoformat() if credentials.expires_at else None,
            ),
        )
        self._conn.commit()
        logger.info("Stored refreshed tokens for connection %s", connection_id)

    def get_oauth_credentials(self, connection_id: str) -> OAuthCredentials:
        row = self._conn.execute(
            "SELECT * FROM oauth_tokens WHERE connection_id = ?", (connection_id,)
        ).fetchone()
        if row is None:
            raise CredentialError(f"No OAuth token for connection {connection_id}")
        try:
            return OAuthCredentials(
                access_token=self._cipher.decrypt(row["access_token_enc"]),
                refresh_token=(
                    self._cipher.decrypt(row["refresh_token_enc"])
                    if row["refresh_token_enc"]
                    else None
                ),
                expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
            )
        except Exception as exc:
            raise CredentialError(
                f"Failed to decrypt OAuth token for connection {connection_id}: {exc}"
            ) from exc

    # --- LLM providers ---

    def add_llm_provider(
        self,
        user_id: str,
        provider: LLMProviderName,
        api_key: str,
        *,
        model: str | None = None,
        is_default: bool = True,
    ) -> LLMProviderRecord:
        record = LLMProviderRecord(
            user_id=user_id,
            provider=provider,
            encrypted_api_key=self._cipher.encrypt(api_key),
            model=model,
            is_default=is_default,
        )
        cursor = self._conn.execute(
            "INSERT INTO llm_providers (user_id, provider, api_key_enc, model, is_default, status) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                record.user_id,
                record.provider.value,
                record.encrypted_api_key,
                record.model,
                int(record.is_default),
                record.status,
            ),
        )
        self._conn.commit()
        return record.model_copy(update={"id": cursor.lastrowid})

    def get_default_llm_provider(self, user_id: str) -> LLMProviderRecord | None:
        """The user's default LLM provider, skipping ones in ERROR state."""
        row = self._conn.execute(
            "SELECT * FROM llm_providers WHERE user_id = ? AND is_default = 1 AND status != 'ERROR' "
            "ORDER BY id DESC LIMIT 1",
            (user_id,),
        ).fetchone()
        if row is None:
            return None
        return LLMProviderRecord(
            id=row["id"],
            user_id=row["user_id"],
            provider=LLMProviderName(row["provider"]),
            encrypted_api_key=row["api_key_enc"],
            model=row["model"],
            is_default=bool(row["is_default"]),
            status=row["status"],
        )

    def decrypt_api_key(self, record: LLMProviderRecord) -> str:
        try:
            return self._cipher.decrypt(record.encrypted_api_key)
        except Exception as exc:
            raise CredentialError(f"Failed to decrypt LLM API key {record.id}: {exc}") from exc
