"""
Rule matcher.

Rules are compiled once per configuration snapshot into priority order:
header rules first (declaration order), then path-prefix rules (longest prefix
first), then default rules. Evaluation stops at the first satisfied rule.
"""

import logging
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

from .models import DefaultMatch, HeaderMatch, PathPrefixMatch, RoutingRule

logger = logging.getLogger(__name__)

_KIND_PRIORITY = {"header": 0, "path_prefix": 1, "default": 2}


@dataclass(frozen=True)
class RuleMatch:
    """Outcome of a satisfied rule. ``version`` is None for split-deferring default rules."""
    rule: RoutingRule
    version: Optional[str]


class RuleMatcher:
    """Matches requests against a service's routing rules."""

    def __init__(self, rules: List[RoutingRule]):
        self._rules: Tuple[RoutingRule, ...] = tuple(sorted(
            rules,
            key=lambda rule: (_KIND_PRIORITY[rule.kind], -_prefix_length(rule))
        ))

    @property
    def rules(self) -> Tuple[RoutingRule, ...]:
        """Rules in evaluation order."""
        return self._rules

    def match(self, headers: Mapping[str, str], path: str) -> Optional[str]:
        """
        Resolve a backend version from rules alone.

        Returns:
            The target version, or None when no rule pins one and the
            traffic split must decide
        """
        result = self.match_rule(headers, path)
        return result.version if result else None

    def match_rule(self, headers: Mapping[str, str], path: str) -> Optional[RuleMatch]:
        """Return the first satisfied rule in priority order, if any."""
        normalized = {name.lower(): value for name, value in headers.items()}

        for rule in self._rules:
            if _satisfies(rule, normalized, path):
                logger.debug(
                    "Routing rule matched",
                    extra={"rule": rule.label, "version": rule.version, "path": path}
                )
                return RuleMatch(rule=rule, version=rule.version)
        return None


def _satisfies(rule: RoutingRule, headers: Mapping[str, str], path: str) -> bool:
    match = rule.match
    if isinstance(match, HeaderMatch):
        value = headers.get(match.name.lower())
        return value is not None and value.casefold() == match.value.casefold()
    if isinstance(match, PathPrefixMatch):
        return path.startswith(match.prefix)
    if isinstance(match, DefaultMatch):
        return True
    raise TypeError(f"Unsupported rule match type: {type(match).__name__}")


def _prefix_length(rule: RoutingRule) -> int:
    if isinstance(rule.match, PathPrefixMatch):
        return len(rule.match.prefix)
    return 0
