"""Rule classifier executor: deterministic pattern matching over user rules.

Stateless per message: rules are loaded and compiled once per run, then
``classify()`` scores every rule against the message and returns the
winner, or None so the caller can defer to the next stage.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from emailcat.schemas.classification import (
    ClassificationResult,
    ClassifiedBy,
    Rule,
    RuleField,
    RuleType,
)
from emailcat.schemas.email import MailboxMessage

if TYPE_CHECKING:
    from emailcat.store.catalog import CatalogStore

logger = logging.getLogger(__name__)

EXACT_MATCH_SCORE = 1.0
PARTIAL_MATCH_SCORE = 0.8

_ADDRESS_IN_BRACKETS = re.compile(r"<([^>]+)>")
_REGEX_TYPES = (RuleType.REGEX, RuleType.COMBINED)


def validate_pattern(rule_type: RuleType, pattern: str) -> None:
    """Check that ``pattern`` is usable under ``rule_type``.

    Raises:
        ValueError: If the pattern is empty or does not compile as a regex.
    """
    if not pattern:
        raise ValueError("Rule pattern must not be empty")
    if rule_type in _REGEX_TYPES:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ValueError(f"Invalid {rule_type.value} pattern {pattern!r}: {exc}") from exc


def extract_address(value: str) -> str:
    """'Name <addr>' -> 'addr'; a bare address is returned unchanged."""
    match = _ADDRESS_IN_BRACKETS.search(value)
    return match.group(1).strip() if match else value.strip()


def field_values(field: RuleField, message: MailboxMessage) -> list[str]:
    """Candidate strings a rule with this field selector is tested against."""
    body = message.body or message.snippet or ""
    if field == RuleField.FROM:
        return [message.sender]
    if field == RuleField.TO:
        return list(message.to)
    if field == RuleField.SUBJECT:
        return [message.subject]
    if field == RuleField.BODY:
        return [body] if body else []
    return [message.sender, *message.to, message.subject, body]


@dataclass(frozen=True)
class _CompiledRule:
    rule: Rule
    regex: re.Pattern[str] | None  # REGEX/COMBINED pattern or KEYWORD word boundary

    def match(self, value: str) -> float | None:
        """Score of this rule against one value, or None."""
        rule = self.rule
        if rule.type in _REGEX_TYPES:
            return EXACT_MATCH_SCORE if self.regex.search(value) else None

        if rule.case_sensitive:
            haystack, needle = value, rule.pattern
        else:
            haystack, needle = value.lower(), rule.pattern.lower()

        if rule.type == RuleType.KEYWORD:
            if needle not in haystack:
                return None
            return EXACT_MATCH_SCORE if self.regex.search(value) else PARTIAL_MATCH_SCORE

        if rule.type == RuleType.SENDER:
            address = extract_address(value)
            if not rule.case_sensitive:
                address = address.lower()
            if needle in address:
                return EXACT_MATCH_SCORE
            if needle.startswith("@") and "@" in address:
                if address.rsplit("@", 1)[1] == needle[1:]:
                    return EXACT_MATCH_SCORE
            return None

        # SUBJECT rules are a plain substring test on whatever field was selected.
        return EXACT_MATCH_SCORE if needle in haystack else None


def _compile(rule: Rule) -> _CompiledRule | None:
    flags = 0 if rule.case_sensitive else re.IGNORECASE
    try:
        if rule.type in _REGEX_TYPES:
            return _CompiledRule(rule, re.compile(rule.pattern, flags))
        if rule.type == RuleType.KEYWORD:
            return _CompiledRule(rule, re.compile(rf"\b{re.escape(rule.pattern)}\b", flags))
    except re.error as exc:
        logger.warning("Skipping rule %r: invalid pattern %r (%s)", rule.name, rule.pattern, exc)
        return None
    return _CompiledRule(rule, None)


class RuleClassifier:
    """Priority-ordered rule matcher.

    Usage::

        classifier = RuleClassifier.from_store(catalog, user_id)
        result = classifier.classify(message)  # None if nothing matched
    """

    def __init__(self, rules: list[Rule]) -> None:
        active = sorted(
            (r for r in rules if r.is_active), key=lambda r: r.priority, reverse=True
        )
        self._rules = [c for c in (_compile(r) for r in active) if c is not None]
        logger.debug("Loaded %d rule(s), %d usable", len(active), len(self._rules))

    @classmethod
    def from_store(cls, catalog: CatalogStore, user_id: str) -> "RuleClassifier":
        return cls(catalog.list_active_rules(user_id))

    def __len__(self) -> int:
        return len(self._rules)

    def classify(self, message: MailboxMessage) -> ClassificationResult | None:
        matches: list[tuple[Rule, float]] = []
        for compiled in self._rules:
            scores = [
                s
                for value in field_values(compiled.rule.field, message)
                if value and (s := compiled.match(value)) is not None
            ]
            if scores:
                matches.append((compiled.rule, max(scores)))

        if not matches:
            return None

        rule, score = min(matches, key=lambda m: (-m[0].priority, -m[1]))
        logger.debug(
            "Message %s matched %d rule(s); winner %r (priority %d, score %.1f)",
            message.id,
            len(matches),
            rule.name,
            rule.priority,
            score,
        )
        return ClassificationResult(
            category=rule.category_code,
            confidence=rule.confidence * score,
            suggested_label=rule.category_code,
            rationale=f"Matched rule: {rule.name}",
            classified_by=ClassifiedBy.RULES,
            matched_rule=rule.name,
        )
