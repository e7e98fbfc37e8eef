"""Normalization rules for comparing desired attributes with observed ones.

Providers report attributes back in their own shape: lists in a different
order, enum values in a different case, empty collections as missing keys,
numbers as strings. Comparing raw values would report drift on every run.
This module decides when two values differ only syntactically.

Rules are matched on resource kind and attribute name, both of which accept
fnmatch-style wildcards ("*" matches everything).
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # [], {}, "", None and a missing key are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # "true", "True", True are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # "100" == 100
    NUMERIC_STRING = "numeric_string"

    CASE_INSENSITIVE = "case_insensitive"

    # Lists compared as multisets
    ARRAY_UNORDERED = "array_unordered"

    # Missing equals a known provider default
    DEFAULT_VALUE = "default_value"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Resource kind to match, e.g. "FirewallRule" or "*".
        attribute: Attribute name to match, e.g. "sourceRanges" or "*".
        normalization_type: Type of normalization to apply.
        params: Additional parameters for the normalization.
        reason: Human-readable explanation.
    """

    kind: str
    attribute: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict, hash=False)
    reason: str = ""

    def matches(self, kind: str, attribute: str) -> bool:
        return fnmatch.fnmatchcase(kind.lower(), self.kind.lower()) and fnmatch.fnmatchcase(
            attribute.lower(), self.attribute.lower()
        )


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        kind="*",
        attribute="*",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty collections equal null/missing",
    ),
    NormalizationRule(
        kind="*",
        attribute="labels",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Label order doesn't matter",
    ),
    NormalizationRule(
        kind="FirewallRule",
        attribute="*Ranges",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="CIDR range lists are sets",
    ),
    NormalizationRule(
        kind="FirewallRule",
        attribute="*Tags",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Tag selectors are sets",
    ),
    NormalizationRule(
        kind="FirewallRule",
        attribute="direction",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Direction enum case varies by API",
    ),
    NormalizationRule(
        kind="FirewallRule",
        attribute="priority",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Priority may come back as a string",
    ),
    NormalizationRule(
        kind="Instance",
        attribute="tags",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Network tags are a set",
    ),
    NormalizationRule(
        kind="Instance",
        attribute="machineType",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Machine type names are case-insensitive",
    ),
    NormalizationRule(
        kind="IamBinding",
        attribute="members",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Binding members are a set",
    ),
    NormalizationRule(
        kind="Network",
        attribute="routingMode",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": "REGIONAL"},
        reason="Routing mode defaults to REGIONAL",
    ),
    NormalizationRule(
        kind="*",
        attribute="*Access",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Access flags may be string or bool",
    ),
    NormalizationRule(
        kind="*",
        attribute="disabled",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Disabled flag may be string or bool",
    ),
]


class DiffNormalizer:
    """Decides whether desired and observed attribute values are equivalent."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    def normalize_value(self, value: Any, kind: str, attribute: str) -> Any:
        """Apply every matching rule, in order, to a value."""
        normalized = value
        for rule in self._rules:
            if rule.matches(kind, attribute):
                normalized = self._apply_normalization(normalized, rule)
        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return _normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return _normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return _normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return value.lower() if isinstance(value, str) else value
            case NormalizationType.ARRAY_UNORDERED:
                return _normalize_array_order(value)
            case NormalizationType.DEFAULT_VALUE:
                return rule.params.get("default") if value is None else value
            case _:
                return value

    def are_equivalent(self, desired: Any, observed: Any, kind: str, attribute: str) -> tuple[bool, str | None]:
        """Check if two values are semantically equivalent.

        Returns:
            Tuple of (are_equivalent, reason_if_normalized_away).
        """
        if desired == observed:
            return True, None

        if self.normalize_value(desired, kind, attribute) == self.normalize_value(observed, kind, attribute):
            reason = self._equivalence_reason(kind, attribute)
            logger.debug(
                "Difference normalized away",
                extra={"kind": kind, "attribute": attribute, "reason": reason},
            )
            return True, reason

        return False, None

    def _equivalence_reason(self, kind: str, attribute: str) -> str:
        # Most specific rule wins; the catch-all empty rule is listed first
        for rule in reversed(self._rules):
            if rule.matches(kind, attribute):
                return rule.reason or f"Normalized via {rule.normalization_type.value}"
        return "Values are semantically equivalent after normalization"


def _normalize_empty(value: Any) -> Any:
    if value in ("", [], {}, ()):
        return None
    return value


def _normalize_boolean(value: Any) -> Any:
    if isinstance(value, str):
        if value.lower() in ("true", "yes", "1", "on", "enabled"):
            return True
        if value.lower() in ("false", "no", "0", "off", "disabled"):
            return False
    return value


def _normalize_numeric_string(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            return value
    return value


def _normalize_array_order(value: Any) -> Any:
    if isinstance(value, list | tuple):
        return tuple(sorted(value, key=str))
    if isinstance(value, dict):
        return tuple(sorted(value.items(), key=str))
    return value
