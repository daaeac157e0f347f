"""Tests for environment documents: parsing, invariants, secrets and patterns."""
import json
import logging

import pytest
from pydantic import ValidationError

from sqlgate.environments import (
    AccessLevel,
    AuditLevel,
    AuthMode,
    has_unresolved_secret,
    parse_document,
    resolve_secrets,
)
from sqlgate.governance.patterns import matches, matches_any
from sqlgate.utils.errors import ConfigurationError


def _doc(**env):
    base = {"name": "x", "server": "h", "database": "d"}
    base.update(env)
    return {"environments": [base]}


# ── Wildcard patterns ────────────────────────────────────────────────

class TestPatterns:
    def test_prefix_wildcard(self):
        assert matches("audit_log", "audit_*")
        assert not matches("myaudit_log", "audit_*")

    def test_case_insensitive(self):
        assert matches("AUDIT_LOG", "audit_*")

    def test_no_wildcard_is_exact(self):
        assert matches("public", "public")
        assert not matches("public2", "public")

    def test_trailing_newline_does_not_match(self):
        assert not matches("audit\n", "audit")
        assert not matches("audit_log\n", "audit_log")
        assert matches("audit_log\n", "audit_*")

    def test_regex_characters_are_literal(self):
        assert matches("a.b", "a.b")
        assert not matches("axb", "a.b")
        assert matches("sales(eu)", "sales(*)")

    def test_wildcard_in_middle(self):
        assert matches("public.orders", "public.*")
        assert matches("tmp_2024_backup", "tmp_*_backup")

    def test_matches_any(self):
        assert matches_any("staging_db", ["prod*", "staging*"])
        assert not matches_any("dev_db", ["prod*", "staging*"])


# ── Parsing and invariants ───────────────────────────────────────────

class TestParseDocument:
    def test_camel_and_snake_case_keys(self):
        camel = parse_document(_doc(allowedTools=["read_data"], maxRowsDefault=10))
        snake = parse_document(_doc(allowed_tools=["read_data"], max_rows_default=10))
        assert camel.environments[0].allowed_tools == ["read_data"]
        assert snake.environments[0].max_rows_default == 10

    def test_defaults(self):
        env = parse_document(_doc()).environments[0]
        assert env.port == 5432
        assert env.auth_mode == AuthMode.AAD
        assert env.access_level == AccessLevel.DATABASE
        assert env.audit_level == AuditLevel.BASIC
        assert env.readonly is False

    def test_default_environment_aliases(self):
        for key in ("defaultEnvironment", "defaultEnvironmentName", "default_environment"):
            doc = _doc()
            doc[key] = "x"
            assert parse_document(doc).default_environment == "x"

    def test_duplicate_names_rejected(self):
        doc = {"environments": [{"name": "x", "server": "h", "database": "d"}] * 2}
        with pytest.raises(ConfigurationError, match="Duplicate environment name"):
            parse_document(doc)

    def test_unknown_default_rejected(self):
        doc = _doc()
        doc["defaultEnvironment"] = "missing"
        with pytest.raises(ConfigurationError, match="not defined"):
            parse_document(doc)

    def test_database_level_requires_database(self):
        with pytest.raises(ConfigurationError, match="no database configured"):
            parse_document(_doc(database=""))

    def test_server_level_without_database(self):
        env = parse_document(_doc(database="", accessLevel="server")).environments[0]
        assert env.access_level == AccessLevel.SERVER

    def test_tool_in_both_lists_rejected(self):
        with pytest.raises(ConfigurationError, match="both allowedTools and deniedTools"):
            parse_document(_doc(allowedTools=["read_data"], deniedTools=["read_data"]))

    def test_invalid_auth_mode(self):
        with pytest.raises(ConfigurationError):
            parse_document(_doc(authMode="kerberos"))

    def test_no_environments(self):
        with pytest.raises(ConfigurationError):
            parse_document({"environments": []})

    def test_environment_config_is_immutable(self):
        env = parse_document(_doc()).environments[0]
        with pytest.raises(ValidationError):
            env.readonly = True

    def test_reads_json_file(self, tmp_path):
        path = tmp_path / "environments.json"
        path.write_text(json.dumps(_doc(readonly=True)))
        assert parse_document(str(path)).environments[0].readonly is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            parse_document(str(tmp_path / "nope.yaml"))

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "environments.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            parse_document(str(path))


# ── Secret placeholders ──────────────────────────────────────────────

class TestSecrets:
    def test_resolves_from_environment(self):
        assert resolve_secrets("${secret:DB_PASS}", {"DB_PASS": "hunter2"}) == "hunter2"

    def test_unset_secret_preserved(self, caplog):
        with caplog.at_level(logging.WARNING):
            value = resolve_secrets("${secret:DB_PASS}", {})
        assert value == "${secret:DB_PASS}"
        assert "DB_PASS" in caplog.text

    def test_embedded_placeholder(self):
        assert resolve_secrets("user-${secret:SUFFIX}", {"SUFFIX": "ro"}) == "user-ro"

    def test_nested_structures(self):
        resolved = resolve_secrets(
            {"environments": [{"password": "${secret:P}", "port": 5432}]}, {"P": "pw"}
        )
        assert resolved == {"environments": [{"password": "pw", "port": 5432}]}

    def test_parse_document_resolves(self):
        doc = parse_document(_doc(password="${secret:DB_PASS}"), {"DB_PASS": "hunter2"})
        assert doc.environments[0].password == "hunter2"

    def test_parse_document_keeps_unresolved(self):
        doc = parse_document(_doc(password="${secret:DB_PASS}"), {})
        assert doc.environments[0].password == "${secret:DB_PASS}"
        assert has_unresolved_secret(doc.environments[0].password)

    def test_has_unresolved_secret(self):
        assert not has_unresolved_secret(None)
        assert not has_unresolved_secret("plain")
