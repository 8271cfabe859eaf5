"""Schemas for connections, the processed-message ledger, runs and audit."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from emailcat.schemas.classification import ClassifiedBy
from emailcat.schemas.email import LabelKind, ProviderType

# --- Connections ---


class ConnectionStatus(StrEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ERROR = "ERROR"
    NEEDS_REAUTH = "NEEDS_REAUTH"


class Connection(BaseModel):
    """A user's mailbox connection. Owns its credential and its ledger."""

    id: str
    user_id: str
    provider: ProviderType
    email: str
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    settings: dict[str, Any] = Field(default_factory=dict)
    last_sync_at: datetime | None = None
    last_error: str | None = None


class LabelMapping(BaseModel):
    """Explicit provider-label override for a (category, connection) pair."""

    category_id: int
    connection_id: str
    provider_label: str
    label_kind: LabelKind


# --- LLM provider configuration ---


class LLMProviderName(StrEnum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    MISTRAL = "mistral"
    GROQ = "groq"
    OLLAMA = "ollama"


class LLMConfig(BaseModel):
    """Resolved configuration for the LLM oracle."""

    provider: LLMProviderName
    api_key: str = ""
    model: str | None = None
    base_url: str | None = None  # only used by self-hosted backends


class LLMProviderRecord(BaseModel):
    """Per-user stored LLM provider; the API key stays encrypted."""

    id: int | None = None
    user_id: str
    provider: LLMProviderName
    encrypted_api_key: str
    model: str | None = None
    is_default: bool = True
    status: str = "ACTIVE"


# --- Ledger ---


class ReviewState(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    CHANGED = "changed"
    REJECTED = "rejected"


class ProcessedMessage(BaseModel):
    """Ledger row. At most one per (connection_id, message_id)."""

    id: int | None = None
    connection_id: str
    message_id: str
    thread_id: str | None = None
    internet_message_id: str | None = None
    category_code: str | None = None
    suggested_category: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    label_applied: str | None = None
    label_kind: LabelKind | None = None
    classified_by: ClassifiedBy
    rationale: str = ""
    needs_review: bool = False
    review_state: ReviewState | None = None
    reviewed_at: datetime | None = None
    email_subject: str = ""
    email_from: str = ""
    email_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# --- Runs ---


class ProcessingOptions(BaseModel):
    """Options accepted by one orchestrator run."""

    max_emails: int = Field(default=50, ge=1)
    dry_run: bool = False
    force_reprocess: bool = False
    timeout_seconds: float | None = Field(default=None, gt=0)


class ProcessingError(BaseModel):
    message_id: str
    error: str


class ProcessingResult(BaseModel):
    """Produced contract of one orchestrator run."""

    connection_id: str
    messages_processed: int = 0
    messages_labeled: int = 0
    messages_review: int = 0
    errors: list[ProcessingError] = Field(default_factory=list)
    duration_ms: int = 0


# --- Audit ---


class AuditEntry(BaseModel):
    """One append-only audit record."""

    timestamp: datetime
    action: str
    entity_type: str
    entity_id: str | None = None
    user_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
