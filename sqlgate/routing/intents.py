"""Intent and environment inference for free-text requests.

Everything here is a pure function of its inputs. Keywords match on word
boundaries, so ``"update"`` does not fire on ``"updated_at"``.
"""
import re
from enum import Enum
from functools import lru_cache
from typing import Any, Iterable, Optional

from sqlgate.governance.sql_guard import SQLStatementType, leading_statement_type


class Intent(str, Enum):
    SCHEMA_CHANGE = "schema_change"
    DATA_WRITE = "data_write"
    METADATA = "metadata"
    SCHEMA_DISCOVERY = "schema_discovery"
    DATA_READ = "data_read"


# Evaluated in order; the first detector with a keyword hit wins.
INTENT_DETECTORS: tuple[tuple[Intent, tuple[str, ...]], ...] = (
    (
        Intent.SCHEMA_CHANGE,
        ("create table", "drop table", "create index", "drop index", "alter", "ddl"),
    ),
    (
        Intent.DATA_WRITE,
        ("update", "insert", "delete", "fix", "modify", "change", "correct"),
    ),
    (
        Intent.METADATA,
        (
            "profile", "sample", "statistics", "distribution", "quality",
            "relationships", "foreign key", "foreign keys",
        ),
    ),
    (
        Intent.SCHEMA_DISCOVERY,
        ("describe", "columns", "list tables", "show tables", "schema", "search"),
    ),
    (
        Intent.DATA_READ,
        ("select", "query", "fetch", "count", "report", "view"),
    ),
)

ENVIRONMENT_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("prod", ("production", "prod", "live")),
    ("staging", ("staging", "stage", "uat")),
    ("dev", ("development", "dev", "local")),
)

_STATEMENT_INTENTS = {
    SQLStatementType.SELECT: Intent.DATA_READ,
    SQLStatementType.INSERT: Intent.DATA_WRITE,
    SQLStatementType.UPDATE: Intent.DATA_WRITE,
    SQLStatementType.DELETE: Intent.DATA_WRITE,
    SQLStatementType.MERGE: Intent.DATA_WRITE,
    SQLStatementType.CREATE: Intent.SCHEMA_CHANGE,
    SQLStatementType.DROP: Intent.SCHEMA_CHANGE,
    SQLStatementType.ALTER: Intent.SCHEMA_CHANGE,
    SQLStatementType.TRUNCATE: Intent.SCHEMA_CHANGE,
}


@lru_cache(maxsize=512)
def _phrase(phrase: str) -> re.Pattern:
    words = (re.escape(w) for w in phrase.split())
    return re.compile(r"\b" + r"\s+".join(words) + r"\b", re.IGNORECASE)


def contains_phrase(text: str, phrase: str) -> bool:
    """Whole-word, case-insensitive phrase match.

    >>> contains_phrase("show tables in prod", "show tables")
    True
    >>> contains_phrase("reproduce", "prod")
    False
    """
    return _phrase(phrase).search(text) is not None


@lru_cache(maxsize=256)
def _environment_name(name: str) -> re.Pattern:
    parts = (re.escape(p) for p in name.split("-"))
    return re.compile(r"\b" + r"(?:-|\s*)".join(parts) + r"\b", re.IGNORECASE)


def infer_environment(prompt: str, environment_names: Iterable[str]) -> Optional[str]:
    """Pick an environment mentioned in the prompt, or None.

    Exact names (with ``-`` treated as optional whitespace) are tried before
    the prod/staging/dev keyword clusters. Registration order breaks ties.
    """
    names = list(environment_names)
    for name in names:
        if _environment_name(name).search(prompt):
            return name

    for suffix, keywords in ENVIRONMENT_KEYWORDS:
        if any(contains_phrase(prompt, k) for k in keywords):
            for name in names:
                if suffix in name.lower():
                    return name
    return None


def _sql_argument(arguments: dict[str, Any]) -> Optional[str]:
    for key in ("query", "sql"):
        value = arguments.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def infer_intent(prompt: str, arguments: dict[str, Any]) -> Intent:
    for intent, keywords in INTENT_DETECTORS:
        if any(contains_phrase(prompt, k) for k in keywords):
            return intent

    statement = _sql_argument(arguments)
    if statement:
        intent = _STATEMENT_INTENTS.get(leading_statement_type(statement))
        if intent is not None:
            return intent

    if arguments.get("table_pattern") or arguments.get("column_pattern"):
        return Intent.SCHEMA_DISCOVERY
    return Intent.DATA_READ
