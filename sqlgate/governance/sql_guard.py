"""SQL statement classification using sqlglot AST parsing.

Used to keep read_data / explain_query to read statements and by the intent
router to infer intent from an embedded query. Handles:
- CTEs (WITH ... INSERT INTO)
- Multi-statement SQL
- Postgres dialect syntax, with a regex fallback for unparseable input
"""
import re
import logging
from enum import Enum
from typing import Optional
from dataclasses import dataclass, field

import sqlglot
from sqlglot import exp

logger = logging.getLogger(__name__)


class SQLStatementType(str, Enum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    CREATE = "create"
    DROP = "drop"
    ALTER = "alter"
    MERGE = "merge"
    TRUNCATE = "truncate"
    GRANT = "grant"
    REVOKE = "revoke"
    SHOW = "show"
    DESCRIBE = "describe"
    EXPLAIN = "explain"
    SET = "set"
    CALL = "call"


# Map sqlglot expression types to our statement types
# Note: sqlglot v28+ uses exp.Alter (not AlterTable), exp.TruncateTable, exp.Grant
_EXPRESSION_MAP: dict[type, SQLStatementType] = {
    exp.Select: SQLStatementType.SELECT,
    exp.Union: SQLStatementType.SELECT,
    exp.Intersect: SQLStatementType.SELECT,
    exp.Except: SQLStatementType.SELECT,
    exp.Insert: SQLStatementType.INSERT,
    exp.Update: SQLStatementType.UPDATE,
    exp.Delete: SQLStatementType.DELETE,
    exp.Create: SQLStatementType.CREATE,
    exp.Drop: SQLStatementType.DROP,
    exp.Alter: SQLStatementType.ALTER,
    exp.Merge: SQLStatementType.MERGE,
    exp.TruncateTable: SQLStatementType.TRUNCATE,
    exp.Grant: SQLStatementType.GRANT,
}

_COMMAND_MAP: dict[str, SQLStatementType] = {
    "EXPLAIN": SQLStatementType.EXPLAIN,
    "REVOKE": SQLStatementType.REVOKE,
    "SHOW": SQLStatementType.SHOW,
    "SET": SQLStatementType.SET,
    "CALL": SQLStatementType.CALL,
}

_REGEX_FALLBACK: list[tuple[str, SQLStatementType]] = [
    (r"^SELECT\b", SQLStatementType.SELECT),
    (r"^INSERT\b", SQLStatementType.INSERT),
    (r"^UPDATE\b", SQLStatementType.UPDATE),
    (r"^DELETE\b", SQLStatementType.DELETE),
    (r"^CREATE\b", SQLStatementType.CREATE),
    (r"^DROP\b", SQLStatementType.DROP),
    (r"^ALTER\b", SQLStatementType.ALTER),
    (r"^MERGE\b", SQLStatementType.MERGE),
    (r"^TRUNCATE\b", SQLStatementType.TRUNCATE),
    (r"^GRANT\b", SQLStatementType.GRANT),
    (r"^REVOKE\b", SQLStatementType.REVOKE),
    (r"^EXPLAIN\b", SQLStatementType.EXPLAIN),
    (r"^SHOW\b", SQLStatementType.SHOW),
    (r"^DESCRIBE\b", SQLStatementType.DESCRIBE),
    (r"^SET\b", SQLStatementType.SET),
    (r"^CALL\b", SQLStatementType.CALL),
    # CTE detection
    (r"^WITH\b.*\bINSERT\b", SQLStatementType.INSERT),
    (r"^WITH\b.*\bUPDATE\b", SQLStatementType.UPDATE),
    (r"^WITH\b.*\bDELETE\b", SQLStatementType.DELETE),
    (r"^WITH\b.*\bSELECT\b", SQLStatementType.SELECT),
]

READ_TYPES = frozenset(
    {
        SQLStatementType.SELECT,
        SQLStatementType.SHOW,
        SQLStatementType.DESCRIBE,
        SQLStatementType.EXPLAIN,
    }
)


@dataclass
class SQLCheckResult:
    """Result of checking a SQL statement against a set of permitted types."""

    allowed: bool
    statement_type: Optional[SQLStatementType] = None
    error_message: Optional[str] = None
    parsed_types: list[SQLStatementType] = field(default_factory=list)


def classify(sql: str) -> list[SQLStatementType]:
    """Classify a SQL string into statement types, one per statement."""
    types: list[SQLStatementType] = []
    try:
        statements = sqlglot.parse(sql, dialect="postgres")
        for stmt in statements:
            if stmt is None:
                continue
            stmt_type = _classify_expression(stmt)
            if stmt_type is None:
                stmt_type = _regex_fallback(stmt.sql(dialect="postgres"))
            if stmt_type:
                types.append(stmt_type)
    except sqlglot.errors.ParseError:
        stmt_type = _regex_fallback(sql)
        if stmt_type:
            types.append(stmt_type)
        else:
            logger.warning(f"Could not parse SQL: {sql[:100]}")
    return types


def leading_statement_type(sql: str) -> Optional[SQLStatementType]:
    types = classify(sql)
    return types[0] if types else None


def check_read_only(sql: str) -> SQLCheckResult:
    """Allow only read statements (SELECT / SHOW / DESCRIBE / EXPLAIN)."""
    types = classify(sql)
    if not types:
        return SQLCheckResult(
            allowed=False,
            error_message="Could not determine SQL statement type.",
        )
    for stmt_type in types:
        if stmt_type not in READ_TYPES:
            return SQLCheckResult(
                allowed=False,
                statement_type=stmt_type,
                parsed_types=types,
                error_message=(
                    f"Statement type '{stmt_type.value}' is not allowed. "
                    f"Permitted types: {', '.join(sorted(t.value for t in READ_TYPES))}"
                ),
            )
    return SQLCheckResult(allowed=True, statement_type=types[0], parsed_types=types)


def _classify_expression(node: exp.Expression) -> Optional[SQLStatementType]:
    for expr_type, stmt_type in _EXPRESSION_MAP.items():
        if isinstance(node, expr_type):
            return stmt_type

    # EXPLAIN, SHOW, REVOKE, CALL parse as Command nodes in recent sqlglot
    if isinstance(node, exp.Command):
        cmd = node.this.upper() if isinstance(node.this, str) else ""
        return _COMMAND_MAP.get(cmd)

    if isinstance(node, (exp.Set, exp.SetItem)):
        return SQLStatementType.SET
    if isinstance(node, exp.Describe):
        return SQLStatementType.DESCRIBE

    logger.debug(f"Unrecognized expression type: {type(node).__name__}")
    return None


def _regex_fallback(sql: str) -> Optional[SQLStatementType]:
    stripped = sql.strip().upper()
    for pattern, stmt_type in _REGEX_FALLBACK:
        if re.match(pattern, stripped, re.DOTALL):
            return stmt_type
    return None
