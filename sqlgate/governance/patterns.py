"""Wildcard matching for database and schema allow/deny lists."""
import re
from functools import lru_cache


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    parts = (re.escape(part) for part in pattern.split("*"))
    return re.compile(".*".join(parts), re.IGNORECASE | re.DOTALL)


def matches(value: str, pattern: str) -> bool:
    """Case-insensitive full-string match where ``*`` matches any run of characters.

    >>> matches("audit_log", "audit_*")
    True
    >>> matches("myaudit_log", "audit_*")
    False
    """
    return _compile(pattern).fullmatch(value) is not None


def matches_any(value: str, patterns) -> bool:
    return any(matches(value, p) for p in patterns)
