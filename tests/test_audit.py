"""Tests for the JSON-lines audit logger."""
import json

from sqlgate.audit import AuditLogger
from sqlgate.config import ServerConfig
from sqlgate.environments import AuditLevel


class TestRedaction:
    def test_sensitive_keys(self):
        audit = AuditLogger(enabled=False)
        redacted = audit.redact_args(
            {"password": "x", "api_key": "y", "AccessToken": "z", "query": "SELECT 1"}
        )
        assert redacted == {
            "password": "[REDACTED]",
            "api_key": "[REDACTED]",
            "AccessToken": "[REDACTED]",
            "query": "SELECT 1",
        }

    def test_long_values_truncated(self):
        redacted = AuditLogger(enabled=False).redact_args({"query": "x" * 600})
        assert redacted["query"].endswith("... [TRUNCATED]")
        assert len(redacted["query"]) == 500 + len("... [TRUNCATED]")

    def test_redaction_disabled(self):
        audit = AuditLogger(enabled=False, redact_sensitive=False)
        assert audit.redact_args({"password": "x"}) == {"password": "x"}


class TestLogInvocation:
    def test_basic_summary(self, audit, audit_handler):
        audit.log_invocation(
            "update_data",
            {"where_clause": "id = 1"},
            {"success": True, "rows_affected": 4, "message": "ok"},
            12.6,
            session_id="s1",
            environment="dev",
        )
        (entry,) = audit_handler.entries
        assert entry["tool_name"] == "update_data"
        assert entry["environment"] == "dev"
        assert entry["session_id"] == "s1"
        assert entry["duration_ms"] == 13
        assert entry["result"] == {"success": True, "record_count": 4}
        assert "arguments" not in entry
        assert entry["timestamp"]

    def test_verbose_truncates_large_results(self, audit, audit_handler):
        rows = [{"id": i} for i in range(25)]
        audit.log_invocation(
            "read_data", {"query": "SELECT id FROM t"},
            {"success": True, "record_count": 25, "data": rows}, 1,
            audit_level=AuditLevel.VERBOSE,
        )
        data = audit_handler.entries[0]["result"]["data"]
        assert data["_truncated"] is True
        assert data["_total_count"] == 25
        assert len(data["items"]) == 10

    def test_none_level_skips(self, audit, audit_handler):
        audit.log_invocation("read_data", {}, {"success": True}, 1, audit_level=AuditLevel.NONE)
        assert audit_handler.entries == []

    def test_non_dict_result(self, audit, audit_handler):
        audit.log_invocation("read_data", {}, "oops", 1)
        assert audit_handler.entries[0]["result"] == {"success": False}

    def test_disabled_writes_nothing(self, audit_handler):
        audit = AuditLogger(enabled=False, handler=audit_handler)
        audit.log_invocation("read_data", {}, {"success": True}, 1)
        assert audit_handler.entries == []


class TestFileOutput:
    def test_json_lines_file(self, tmp_path):
        path = tmp_path / "nested" / "audit.jsonl"
        audit = AuditLogger.from_config(
            ServerConfig(audit_log_path=str(path), audit_enabled=True)
        )
        audit.log_invocation("list_tables", {}, {"success": True}, 1, environment="dev")
        audit.log_invocation("read_data", {}, {"success": False, "error": "QUERY_FAILED"}, 2)
        audit.close()

        lines = path.read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["tool_name"] for line in lines] == ["list_tables", "read_data"]
        assert json.loads(lines[1])["result"]["error"] == "QUERY_FAILED"
