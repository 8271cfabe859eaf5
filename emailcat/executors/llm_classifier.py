"""LLM classifier executor: an optional oracle over the user's categories.

Every failure (network, HTTP status, unparsable reply, unknown category) is
soft: ``classify()`` logs the cause and returns None, and the caller falls
back to rules or REVIEW.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from emailcat.integrations.llm import ChatClient
from emailcat.schemas.classification import (
    MAX_RATIONALE_CHARS,
    Category,
    ClassificationResult,
    ClassifiedBy,
)
from emailcat.schemas.email import MailboxMessage
from emailcat.schemas.processing import LLMConfig, LLMProviderName

if TYPE_CHECKING:
    from emailcat.store.catalog import CatalogStore
    from emailcat.store.connections import ConnectionStore

logger = logging.getLogger(__name__)

# Body characters embedded when the message has no snippet.
PREVIEW_CHARS = 300

SYSTEM_PROMPT = "You are a precise email classifier. Always respond with valid JSON."

USER_PROMPT = """\
You are an email classification assistant. Analyze the following email and \
classify it into exactly one of the provided categories.

EMAIL:
From: {sender}
Subject: {subject}
Preview: {preview}

AVAILABLE CATEGORIES:
{categories}

Respond with a JSON object in this exact format:
{{
  "category": "CATEGORY_CODE",
  "confidence": 0.85,
  "rationale": "Brief explanation (max 100 chars)"
}}

Rules:
- category must be one of the category codes listed above
- confidence must be a number between 0 and 1
- If unsure, use "REVIEW" as category with lower confidence
- Be concise in rationale

JSON Response:"""


def resolve_llm_config(
    user_id: str,
    env: Mapping[str, str | None],
    store: ConnectionStore | None = None,
) -> LLMConfig | None:
    """Decide which LLM backend (if any) serves ``user_id``.

    Process configuration wins. ``LLM_PROVIDER=none`` disables the LLM
    outright. Otherwise the user's default stored provider is used, unless
    it is in ERROR state or its key cannot be decrypted.
    """
    provider = (env.get("LLM_PROVIDER") or "").strip().lower()
    if provider == "none":
        return None

    if provider:
        try:
            name = LLMProviderName(provider)
        except ValueError:
            logger.warning("Unknown LLM_PROVIDER %r; LLM classification disabled", provider)
            return None
        api_key = env.get("LLM_API_KEY") or ""
        if name != LLMProviderName.OLLAMA and not api_key:
            logger.warning("LLM_PROVIDER=%s is set but LLM_API_KEY is empty", provider)
        else:
            return LLMConfig(
                provider=name,
                api_key=api_key,
                model=env.get("LLM_MODEL") or None,
                base_url=env.get("OLLAMA_BASE_URL") if name == LLMProviderName.OLLAMA else None,
            )

    if store is None:
        return None
    record = store.get_default_llm_provider(user_id)
    if record is None:
        return None
    try:
        api_key = store.decrypt_api_key(record)
    except Exception as exc:
        logger.warning("Cannot use stored LLM provider %s for %s: %s", record.id, user_id, exc)
        return None
    return LLMConfig(
        provider=record.provider,
        api_key=api_key,
        model=record.model,
        base_url=env.get("OLLAMA_BASE_URL") if record.provider == LLMProviderName.OLLAMA else None,
    )


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = [line for line in text.splitlines() if not line.strip().startswith("```")]
        text = "\n".join(lines)
    return text


def _first_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` span, ignoring braces inside strings."""
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def parse_response(text: str) -> tuple[str, float, str] | None:
    """Parse a ``{category, confidence, rationale}`` reply.

    Returns:
        Tuple of (upper-cased category, confidence, rationale), or None if
        the reply holds no well-typed JSON object.
    """
    span = _first_json_object(_strip_fences(text))
    if span is None:
        return None
    try:
        data = json.loads(span)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    category = data.get("category")
    confidence = data.get("confidence")
    rationale = data.get("rationale")
    if not isinstance(category, str) or not isinstance(rationale, str):
        return None
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        return None
    return category.strip().upper(), float(confidence), rationale


def build_prompt(message: MailboxMessage, categories: list[Category]) -> str:
    preview = message.snippet or (message.body or "")[:PREVIEW_CHARS] or "No preview available"
    lines = [
        f"- {c.code}: {c.name}" + (f" ({c.description})" if c.description else "")
        for c in categories
    ]
    return USER_PROMPT.format(
        sender=message.sender,
        subject=message.subject,
        preview=preview,
        categories="\n".join(lines),
    )


class LLMClassifier:
    """Classifies one message per call against a fixed category vocabulary.

    Usage::

        llm = LLMClassifier(config, catalog.list_categories(user_id))
        result = await llm.classify(message)  # None on any failure
        await llm.close()
    """

    def __init__(
        self,
        config: LLMConfig,
        categories: list[Category],
        client: ChatClient | None = None,
        *,
        timeout: float = 30.0,
    ) -> None:
        self._config = config
        self._categories = [c for c in categories if c.is_active]
        self._codes = {c.code for c in self._categories}
        self._client = client or ChatClient(config, timeout=timeout)

    @classmethod
    def from_store(
        cls,
        config: LLMConfig,
        catalog: CatalogStore,
        user_id: str,
        *,
        timeout: float = 30.0,
    ) -> LLMClassifier:
        return cls(config, catalog.list_categories(user_id), timeout=timeout)

    async def close(self) -> None:
        await self._client.close()

    async def classify(self, message: MailboxMessage) -> ClassificationResult | None:
        if not self._categories:
            logger.warning("LLM classifier has no categories; skipping message %s", message.id)
            return None

        prompt = build_prompt(message, self._categories)
        try:
            reply = await self._client.complete(SYSTEM_PROMPT, prompt)
        except Exception as exc:
            logger.warning(
                "LLM %s call failed for message %s: %s",
                self._config.provider.value,
                message.id,
                exc,
            )
            return None

        parsed = parse_response(reply)
        if parsed is None:
            logger.warning("Unparsable LLM reply for message %s: %.200r", message.id, reply)
            return None

        category, confidence, rationale = parsed
        if category not in self._codes:
            logger.warning("LLM returned unknown category %r for message %s", category, message.id)
            return None

        return ClassificationResult(
            category=category,
            confidence=confidence,
            suggested_label=category,
            rationale=rationale[:MAX_RATIONALE_CHARS],
            classified_by=ClassifiedBy.LLM,
        )
