"""Schemas for categories, rules and classification results.

Classification results are frozen: downstream policy replaces them via
``model_copy(update=...)`` instead of mutating in place.
"""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

REVIEW = "REVIEW"

MAX_RATIONALE_CHARS = 200


class RuleType(StrEnum):
    KEYWORD = "KEYWORD"
    REGEX = "REGEX"
    SENDER = "SENDER"
    SUBJECT = "SUBJECT"
    COMBINED = "COMBINED"


class RuleField(StrEnum):
    FROM = "FROM"
    TO = "TO"
    SUBJECT = "SUBJECT"
    BODY = "BODY"
    ANY = "ANY"


class ClassifiedBy(StrEnum):
    """Origin tag of a classification result."""

    RULES = "rules"
    LLM = "llm"


class Category(BaseModel):
    """User-scoped classification target. Unique per (user_id, code)."""

    id: int | None = None
    user_id: str
    code: str
    name: str
    description: str | None = None
    is_active: bool = True
    is_system: bool = False


class Rule(BaseModel):
    """A pattern rule belonging to exactly one category."""

    id: int | None = None
    category_id: int
    category_code: str
    name: str
    type: RuleType
    field: RuleField
    pattern: str = Field(min_length=1)
    case_sensitive: bool = False
    priority: int = 0
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    is_active: bool = True


class ClassificationResult(BaseModel):
    """Immutable outcome of classifying one message."""

    model_config = ConfigDict(frozen=True)

    category: str
    confidence: float
    suggested_label: str | None = None
    rationale: str
    classified_by: ClassifiedBy
    matched_rule: str | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return min(1.0, max(0.0, float(value)))

    @field_validator("rationale", mode="before")
    @classmethod
    def _truncate_rationale(cls, value: str) -> str:
        return str(value)[:MAX_RATIONALE_CHARS]

    @property
    def needs_review(self) -> bool:
        return self.category == REVIEW
