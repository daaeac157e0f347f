"""Centralized error handling with actionable messages.

Policy and routing rejections are returned as structured results built by
``failure``. Infrastructure problems below the enforcer are raised as
``SqlGateError`` subclasses and converted by ``handle_error``.
"""
from enum import Enum
from typing import Any, Optional

import psycopg
from psycopg_pool import PoolTimeout


class ErrorCode(str, Enum):
    """Error codes carried in the ``error`` field of failed results."""

    ENVIRONMENT_NOT_FOUND = "ENVIRONMENT_NOT_FOUND"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    TOOL_DENIED = "TOOL_DENIED"
    TOOL_NOT_ALLOWED = "TOOL_NOT_ALLOWED"
    ENVIRONMENT_READONLY = "ENVIRONMENT_READONLY"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    MISSING_ARGUMENTS = "MISSING_ARGUMENTS"
    MISSING_PROMPT = "MISSING_PROMPT"
    CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"
    NO_TOOL_MATCH = "NO_TOOL_MATCH"
    ROUTED_TOOL_FAILED = "ROUTED_TOOL_FAILED"
    DATABASE_ACCESS_DENIED = "DATABASE_ACCESS_DENIED"
    SCHEMA_ACCESS_DENIED = "SCHEMA_ACCESS_DENIED"
    INVALID_ARGUMENTS = "INVALID_ARGUMENTS"
    STATEMENT_NOT_ALLOWED = "STATEMENT_NOT_ALLOWED"
    QUERY_FAILED = "QUERY_FAILED"
    NO_ROWS_MATCHED = "NO_ROWS_MATCHED"
    TOO_MANY_ROWS = "TOO_MANY_ROWS"


class SqlGateError(Exception):
    """Base class for infrastructure errors raised below the enforcer."""

    code: ErrorCode = ErrorCode.CONNECTION_FAILED
    hint: Optional[str] = None

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        if hint is not None:
            self.hint = hint


class ConfigurationError(SqlGateError):
    """The environments document is malformed or violates an invariant."""

    hint = "Run validate_environment_config and fix the reported fields."


class EnvironmentNotFound(SqlGateError):
    code = ErrorCode.ENVIRONMENT_NOT_FOUND
    hint = "Call list_environments to see the configured environment names."


class ConnectionTimeout(SqlGateError):
    code = ErrorCode.CONNECTION_TIMEOUT
    hint = (
        "The server did not accept a connection in time. Check network access "
        "and retry; connections are never retried automatically."
    )


class AuthenticationFailed(SqlGateError):
    code = ErrorCode.AUTHENTICATION_FAILED
    hint = (
        "Check the credentials configured for this environment "
        "(username/password or Azure AD sign-in)."
    )


class RegistryClosed(SqlGateError):
    """The registry has been shut down; no new connections are opened."""

    hint = "The server is shutting down. Retry after it restarts."


def failure(
    code: ErrorCode, message: str, hint: Optional[str] = None, **extra: Any
) -> dict[str, Any]:
    """Build a structured failure result."""
    result: dict[str, Any] = {
        "success": False,
        "error": code.value,
        "message": message,
    }
    if hint:
        result["hint"] = hint
    result.update(extra)
    return result


def handle_error(e: Exception) -> dict[str, Any]:
    """Return a structured, actionable failure for an exception.

    Distinguishes between:
    - Governance infrastructure errors (environment lookup, auth, timeouts)
    - Connection loss / refusal (transient, retry)
    - Permission / missing object / syntax errors reported by PostgreSQL
    """
    if isinstance(e, SqlGateError):
        return failure(e.code, str(e), e.hint)

    if isinstance(e, (PoolTimeout, TimeoutError)):
        return failure(
            ErrorCode.CONNECTION_TIMEOUT,
            f"Connection timed out: {e}",
            ConnectionTimeout.hint,
        )

    if isinstance(e, psycopg.errors.InsufficientPrivilege):
        return failure(
            ErrorCode.QUERY_FAILED,
            "Permission denied by the database.",
            "The database role for this environment lacks the required grant. "
            "Contact the database owner to request access.",
        )

    if isinstance(e, psycopg.errors.UndefinedTable):
        table = str(e).split('"')[1] if '"' in str(e) else "unknown"
        return failure(
            ErrorCode.QUERY_FAILED,
            f"Table '{table}' does not exist.",
            "Use list_tables or search_schema to discover available tables.",
        )

    if isinstance(e, psycopg.errors.SyntaxError):
        return failure(
            ErrorCode.QUERY_FAILED,
            f"SQL syntax error: {str(e).strip()}",
            "Check your query and try again.",
        )

    if isinstance(e, psycopg.errors.QueryCanceled):
        return failure(
            ErrorCode.QUERY_FAILED,
            "Query timed out.",
            "Limit rows with max_rows or simplify the query.",
        )

    if isinstance(e, psycopg.OperationalError):
        msg = str(e).lower()
        if "password authentication failed" in msg or "token" in msg:
            return failure(
                ErrorCode.AUTHENTICATION_FAILED,
                f"Authentication failed: {str(e).strip()}",
                AuthenticationFailed.hint,
            )
        return failure(
            ErrorCode.CONNECTION_FAILED,
            f"Cannot reach the database: {str(e).strip()}",
            "The server may be restarting or unreachable. Use test_connection "
            "to check the environment, then retry.",
        )

    return failure(
        ErrorCode.QUERY_FAILED, f"{type(e).__name__}: {e}"
    )
