"""Payee normalization rules.

A rule maps raw payee text (as typed, or as it arrives from a bank export)
to a canonical payee. Rules are tried oldest first and the first match wins.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

MATCH_TYPES = ("exact", "contains", "regex")


@dataclass(frozen=True)
class PayeeRule:
    """Map payee text matching ``pattern`` to ``target_payee_id``."""
    id: str
    match_type: str
    pattern: str
    target_payee_id: str
    target_payee_name: Optional[str] = None
    archived: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PayeeRule":
        return cls(
            id=row["id"],
            match_type=row["match_type"],
            pattern=row["pattern"],
            target_payee_id=row["target_payee_id"],
            target_payee_name=row.get("target_payee_name"),
            archived=bool(row.get("archived", False)),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "match": self.match_type,
            "pattern": self.pattern,
            "targetPayeeId": self.target_payee_id,
            "targetPayeeName": self.target_payee_name,
            "archived": self.archived,
        }


def validate_rule(match_type: str, pattern: str) -> str:
    """Check a new rule's match type and pattern; returns the stripped pattern."""
    if match_type not in MATCH_TYPES:
        raise InvalidInputError(f"match must be one of: {', '.join(MATCH_TYPES)}")
    pattern = (pattern or "").strip()
    if not pattern:
        raise InvalidInputError("Pattern is required")
    if match_type == "regex":
        try:
            re.compile(pattern)
        except re.error as exc:
            raise InvalidInputError(f"Invalid regex pattern: {exc}") from None
    return pattern


def rule_matches(match_type: str, pattern: str, text: str) -> bool:
    """Case-sensitive match of ``text`` against one rule.

    Example:
        >>> rule_matches("contains", "GRAB*FOOD", "GRAB*FOOD 1234")
        True
    """
    if match_type == "exact":
        return text == pattern
    if match_type == "contains":
        return pattern in text
    if match_type == "regex":
        return re.search(pattern, text) is not None
    return False


def apply_payee_rules(text: str, rules: Iterable[PayeeRule]) -> Optional[PayeeRule]:
    """Return the first active rule matching ``text``, or ``None``."""
    if not text:
        return None
    for rule in rules:
        if rule.archived:
            continue
        try:
            matched = rule_matches(rule.match_type, rule.pattern, text)
        except re.error as exc:
            # stored patterns are not guaranteed to compile
            logger.warning("Ignoring payee rule %s: %s", rule.id, exc)
            continue
        if matched:
            return rule
    return None
