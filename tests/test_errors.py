"""Unit tests for error handling and structured failures."""
import psycopg
import pytest
from psycopg_pool import PoolTimeout

from sqlgate.utils.errors import (
    AuthenticationFailed,
    ConnectionTimeout,
    EnvironmentNotFound,
    ErrorCode,
    failure,
    handle_error,
)


class TestFailure:
    def test_shape(self):
        result = failure(ErrorCode.NO_TOOL_MATCH, "no match", "be specific", routed_tool="x")
        assert result == {
            "success": False,
            "error": "NO_TOOL_MATCH",
            "message": "no match",
            "hint": "be specific",
            "routed_tool": "x",
        }

    def test_hint_omitted_when_empty(self):
        assert "hint" not in failure(ErrorCode.QUERY_FAILED, "boom")


class TestErrorHandling:
    def test_governance_error_keeps_code_and_hint(self):
        result = handle_error(EnvironmentNotFound("Environment 'qa' not found."))
        assert result["error"] == "ENVIRONMENT_NOT_FOUND"
        assert "list_environments" in result["hint"]

    def test_custom_hint(self):
        result = handle_error(AuthenticationFailed("no password", hint="set SQL_PASSWORD"))
        assert result["hint"] == "set SQL_PASSWORD"

    @pytest.mark.parametrize(
        "error", [PoolTimeout("pool"), TimeoutError("slow"), ConnectionTimeout("slow")]
    )
    def test_timeouts(self, error):
        assert handle_error(error)["error"] == "CONNECTION_TIMEOUT"

    def test_undefined_table(self):
        result = handle_error(psycopg.errors.UndefinedTable('relation "orders" does not exist'))
        assert result["error"] == "QUERY_FAILED"
        assert "'orders'" in result["message"]
        assert "list_tables" in result["hint"]

    def test_permission_denied(self):
        result = handle_error(psycopg.errors.InsufficientPrivilege("permission denied"))
        assert "Permission denied" in result["message"]

    def test_syntax_error(self):
        result = handle_error(psycopg.errors.SyntaxError('syntax error at or near "SELEC"'))
        assert "SQL syntax error" in result["message"]

    def test_query_canceled(self):
        result = handle_error(psycopg.errors.QueryCanceled("canceling statement"))
        assert result["message"] == "Query timed out."

    def test_auth_failure(self):
        result = handle_error(
            psycopg.OperationalError('password authentication failed for user "bob"')
        )
        assert result["error"] == "AUTHENTICATION_FAILED"

    def test_connection_failure(self):
        result = handle_error(psycopg.OperationalError("server closed the connection"))
        assert result["error"] == "CONNECTION_FAILED"
        assert "test_connection" in result["hint"]

    def test_generic_error(self):
        result = handle_error(ValueError("test error"))
        assert result["error"] == "QUERY_FAILED"
        assert "ValueError" in result["message"]
        assert "test error" in result["message"]
