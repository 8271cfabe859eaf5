"""Unified classifier: rules first, optional LLM, then the confidence gate.

Every message gets a result. When nothing matches the result is REVIEW
with confidence 0, so the orchestrator never has to handle "no answer".
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from emailcat.executors.llm_classifier import LLMClassifier
from emailcat.executors.rule_classifier import RuleClassifier
from emailcat.schemas.classification import (
    MAX_RATIONALE_CHARS,
    REVIEW,
    ClassificationResult,
    ClassifiedBy,
)
from emailcat.schemas.email import MailboxMessage
from emailcat.schemas.processing import LLMConfig

if TYPE_CHECKING:
    from emailcat.store.catalog import CatalogStore

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE = 0.80
MEDIUM_CONFIDENCE = 0.60

REVIEW_MARKER = "[Review needed] "
LOW_CONFIDENCE_MARKER = "[Low confidence] "
NO_MATCH_RATIONALE = "No matching rules or patterns found"


def _downgrade(result: ClassificationResult, marker: str) -> ClassificationResult:
    return result.model_copy(
        update={
            "category": REVIEW,
            "suggested_label": result.category,
            "rationale": (marker + result.rationale)[:MAX_RATIONALE_CHARS],
        }
    )


def apply_confidence_thresholds(result: ClassificationResult) -> ClassificationResult:
    """Accept at HIGH_CONFIDENCE, otherwise downgrade to REVIEW keeping the hint."""
    if result.confidence >= HIGH_CONFIDENCE:
        return result
    if result.confidence >= MEDIUM_CONFIDENCE:
        return _downgrade(result, REVIEW_MARKER)
    return _downgrade(result, LOW_CONFIDENCE_MARKER)


def no_match_result() -> ClassificationResult:
    return ClassificationResult(
        category=REVIEW,
        confidence=0.0,
        suggested_label=REVIEW,
        rationale=NO_MATCH_RATIONALE,
        classified_by=ClassifiedBy.RULES,
    )


class EmailClassifier:
    """Decision policy over a rule classifier and an optional LLM.

    With ``llm_fallback_only`` (the default) the LLM is consulted only when
    no rule matched; otherwise it may also override a rule match below
    HIGH_CONFIDENCE if it is more confident.
    """

    def __init__(
        self,
        rule_classifier: RuleClassifier,
        llm_classifier: LLMClassifier | None = None,
        *,
        llm_fallback_only: bool = True,
    ) -> None:
        self._rules = rule_classifier
        self._llm = llm_classifier
        self._llm_fallback_only = llm_fallback_only

    @classmethod
    def for_user(
        cls,
        user_id: str,
        catalog: CatalogStore,
        *,
        llm_config: LLMConfig | None = None,
        llm_fallback_only: bool = True,
        llm_timeout: float = 30.0,
    ) -> EmailClassifier:
        """Load the user's rules (and categories, if an LLM is configured)."""
        llm = None
        if llm_config is not None:
            llm = LLMClassifier.from_store(llm_config, catalog, user_id, timeout=llm_timeout)
            logger.info("LLM classification enabled via %s", llm_config.provider.value)
        return cls(
            RuleClassifier.from_store(catalog, user_id),
            llm,
            llm_fallback_only=llm_fallback_only,
        )

    @property
    def has_llm(self) -> bool:
        return self._llm is not None

    async def close(self) -> None:
        if self._llm is not None:
            await self._llm.close()

    async def classify(self, message: MailboxMessage) -> ClassificationResult:
        result = self._rules.classify(message)
        if result is not None and result.confidence >= HIGH_CONFIDENCE:
            return result

        if self._llm is not None and (result is None or not self._llm_fallback_only):
            llm_result = await self._llm.classify(message)
            if llm_result is not None and (
                result is None or llm_result.confidence > result.confidence
            ):
                result = llm_result

        if result is None:
            logger.debug("No classifier matched message %s", message.id)
            return no_match_result()
        return apply_confidence_thresholds(result)
