"""
Activation rules evaluated against a ``FeatureContext``.

A rule is a glob string (``*`` matches any run of characters, the match is
not anchored), a compiled regular expression, or a predicate called with the
URL and the full context.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any

from .contracts import FeatureContext


@lru_cache(maxsize=256)
def _glob_to_regex(pattern: str, exact: bool, case_sensitive: bool) -> re.Pattern[str]:
    escaped = re.escape(pattern)
    regex = escaped.replace(r"\*", ".*").replace(r"\?", ".")
    if exact:
        regex = f"^{regex}$"
    return re.compile(regex, 0 if case_sensitive else re.IGNORECASE)


def matches_url_pattern(
    url: str,
    pattern: str | re.Pattern[str],
    *,
    case_sensitive: bool = True,
    exact: bool = False,
) -> bool:
    """Return whether ``url`` matches a glob string or compiled pattern."""
    if isinstance(pattern, re.Pattern):
        return pattern.search(url) is not None
    return _glob_to_regex(pattern, exact, case_sensitive).search(url) is not None


def evaluate_matcher(matcher: Any, context: FeatureContext) -> bool:
    """Evaluate one rule; exceptions raised by predicates propagate."""
    if isinstance(matcher, str | re.Pattern):
        return matches_url_pattern(context.url, matcher)
    if callable(matcher):
        return bool(matcher(context.url, context))
    return False


__all__ = ["evaluate_matcher", "matches_url_pattern"]
