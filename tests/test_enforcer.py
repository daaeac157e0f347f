"""Tests for policy evaluation and the PolicyEnforcer call pipeline."""
import psycopg
import pytest
from psycopg_pool import PoolTimeout

from sqlgate.audit import AuditLogger
from sqlgate.environments import AuditLevel
from sqlgate.governance.enforcer import PolicyEnforcer
from sqlgate.governance.policy import PolicySnapshot, evaluate_policy, split_table_reference
from sqlgate.registry import EnvironmentRegistry
from sqlgate.tools.base import Operation, OperationCapabilities, OperationInput
from sqlgate.utils.errors import ErrorCode

READ = OperationCapabilities()
WRITE = OperationCapabilities(mutates=True)
DDL = OperationCapabilities(mutates=True, schema_change=True)
EXEMPT = OperationCapabilities(metadata_exempt=True)


class ScopedInput(OperationInput):
    table_name: str = None
    schema_name: str = None
    database: str = None
    password: str = None


class RecordingOperation(Operation):
    input_model = ScopedInput

    def __init__(self, registry, name="read_data", capabilities=READ, result=None, error=None):
        super().__init__(registry)
        self.name = name
        self.capabilities = capabilities
        self.result = result if result is not None else {"success": True, "data": [1, 2]}
        self.error = error
        self.calls: list[ScopedInput] = []

    async def execute(self, params):
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return self.result


# ── Pure policy evaluation ───────────────────────────────────────────

class TestEvaluatePolicy:
    def _eval(self, registry, snapshot, tool="read_data", caps=READ, args=None):
        return evaluate_policy(tool, caps, snapshot, args or {}, registry)

    def test_deny_beats_allow(self, registry):
        snapshot = PolicySnapshot(
            name="dev", allowed_tools=("read_data",), denied_tools=("read_data",)
        )
        assert self._eval(registry, snapshot)["error"] == ErrorCode.TOOL_DENIED.value

    def test_allow_list_beats_readonly(self, registry):
        snapshot = PolicySnapshot(name="dev", readonly=True, allowed_tools=("read_data",))
        result = self._eval(registry, snapshot, tool="update_data", caps=WRITE)
        assert result["error"] == ErrorCode.TOOL_NOT_ALLOWED.value

    def test_readonly_beats_approval(self, registry):
        snapshot = PolicySnapshot(name="dev", readonly=True, require_approval=True)
        result = self._eval(registry, snapshot, tool="update_data", caps=WRITE)
        assert result["error"] == ErrorCode.ENVIRONMENT_READONLY.value

    def test_readonly_blocks_schema_change(self, registry):
        snapshot = PolicySnapshot(name="dev", readonly=True)
        result = self._eval(registry, snapshot, tool="drop_table", caps=DDL)
        assert result["error"] == ErrorCode.ENVIRONMENT_READONLY.value

    def test_readonly_allows_reads(self, registry):
        snapshot = PolicySnapshot(name="dev", readonly=True)
        assert self._eval(registry, snapshot) is None

    def test_empty_allow_list_allows_everything(self, registry):
        snapshot = PolicySnapshot(name="dev")
        assert self._eval(registry, snapshot, tool="insert_data", caps=WRITE) is None

    def test_approval_requires_exact_true(self, registry):
        snapshot = PolicySnapshot(name="dev", require_approval=True)
        for confirm in (None, False, "true", 1):
            result = self._eval(registry, snapshot, args={"confirm": confirm})
            assert result["error"] == ErrorCode.APPROVAL_REQUIRED.value
        assert self._eval(registry, snapshot, args={"confirm": True}) is None

    def test_approval_skipped_for_metadata(self, registry):
        snapshot = PolicySnapshot(name="dev", require_approval=True)
        assert self._eval(registry, snapshot, tool="list_tables", caps=EXEMPT) is None

    def test_every_rejection_has_hint(self, registry):
        snapshots = [
            PolicySnapshot(name="dev", denied_tools=("read_data",)),
            PolicySnapshot(name="dev", allowed_tools=("list_tables",)),
            PolicySnapshot(name="dev", require_approval=True),
        ]
        for snapshot in snapshots:
            result = self._eval(registry, snapshot)
            assert result["success"] is False
            assert result["message"]
            assert result["hint"]


class TestSplitTableReference:
    def test_bare_table_defaults_to_public(self):
        assert split_table_reference("orders") == ("public", "orders")

    def test_schema_qualified(self):
        assert split_table_reference("sales.orders") == ("sales", "orders")

    def test_database_qualified(self):
        assert split_table_reference("app.sales.orders") == ("sales", "orders")


class TestRowLimit:
    def test_requested_capped_by_environment_and_server(self):
        snapshot = PolicySnapshot(name="x", max_rows_default=50)
        assert snapshot.row_limit(None, 1000) == 50
        assert snapshot.row_limit(10, 1000) == 10
        assert snapshot.row_limit(500, 1000) == 50

    def test_server_ceiling_wins(self):
        snapshot = PolicySnapshot(name="x", max_rows_default=5000)
        assert snapshot.row_limit(None, 1000) == 1000
        assert PolicySnapshot(name="x").row_limit(None, 1000) == 1000


# ── Enforcer pipeline ────────────────────────────────────────────────

class TestRejections:
    async def test_tool_not_allowed_never_connects(self, enforcer, registry, connector, audit_handler):
        op = RecordingOperation(registry, name="update_data", capabilities=WRITE)
        result = await enforcer.invoke(op, {"environment": "prod-db"})
        assert result["success"] is False
        assert result["error"] == "TOOL_NOT_ALLOWED"
        assert connector.calls == 0
        assert op.calls == []
        assert audit_handler.entries == []

    async def test_unknown_environment(self, enforcer, registry, connector):
        result = await enforcer.invoke(RecordingOperation(registry), {"environment": "qa"})
        assert result["error"] == "ENVIRONMENT_NOT_FOUND"
        assert "hint" in result
        assert connector.calls == 0

    async def test_schema_scope(self, enforcer, registry, connector):
        op = RecordingOperation(registry, name="describe_table", capabilities=EXEMPT)
        result = await enforcer.invoke(
            op, {"environment": "prod-db", "table_name": "audit_2024.events"}
        )
        assert result["error"] == "SCHEMA_ACCESS_DENIED"
        assert connector.calls == 0

    async def test_schema_name_argument(self, enforcer, registry, connector):
        op = RecordingOperation(registry, name="list_tables", capabilities=EXEMPT)
        result = await enforcer.invoke(op, {"environment": "prod-db", "schema_name": "audit_log"})
        assert result["error"] == "SCHEMA_ACCESS_DENIED"

    async def test_database_scope(self, enforcer, registry, connector):
        result = await enforcer.invoke(RecordingOperation(registry), {"database": "billing"})
        assert result["error"] == "DATABASE_ACCESS_DENIED"
        assert connector.calls == 0

    async def test_approval_required_echoes_arguments(self, enforcer, registry, connector):
        op = RecordingOperation(registry)
        args = {"environment": "staging", "table_name": "orders"}
        result = await enforcer.invoke(op, args)
        assert result["error"] == "APPROVAL_REQUIRED"
        assert result["requires_approval"] is True
        assert result["provided_arguments"] == args
        assert "confirm" in result["hint"]
        assert connector.calls == 0
        assert op.calls == []


class TestExecution:
    async def test_confirmed_call_proceeds(self, enforcer, registry, connector):
        op = RecordingOperation(registry)
        result = await enforcer.invoke(op, {"environment": "staging", "confirm": True})
        assert result["success"] is True
        assert connector.calls == 1
        assert len(op.calls) == 1

    async def test_metadata_exempt_skips_approval(self, enforcer, registry):
        op = RecordingOperation(registry, name="list_tables", capabilities=EXEMPT)
        result = await enforcer.invoke(op, {"environment": "staging"})
        assert result["success"] is True

    async def test_arguments_enriched(self, enforcer, registry):
        op = RecordingOperation(registry)
        await enforcer.invoke(op, {})
        params = op.calls[0]
        assert params.environment == "dev"
        assert params.environment_policy.name == "dev"
        assert params.environment_policy.readonly is False

    async def test_caller_cannot_supply_policy(self, enforcer, registry):
        op = RecordingOperation(registry)
        forged = {"name": "dev", "readonly": False, "max_rows_default": 10**9}
        await enforcer.invoke(op, {"environment_policy": forged})
        assert op.calls[0].environment_policy.max_rows_default is None

    async def test_wrap_exposes_operation(self, enforcer, registry):
        op = RecordingOperation(registry, name="list_tables", capabilities=EXEMPT)
        governed = enforcer.wrap(op)
        assert governed.name == "list_tables"
        assert governed.input_model is ScopedInput
        assert governed.annotations["readOnlyHint"] is True
        assert (await governed.run({}))["success"] is True

    async def test_invalid_arguments(self, enforcer, registry):
        op = RecordingOperation(registry)
        result = await enforcer.invoke(op, {"table_name": ["not", "a", "string"]})
        assert result["error"] == "INVALID_ARGUMENTS"
        assert op.calls == []


class TestConnectionFailures:
    @pytest.mark.parametrize(
        "error, code",
        [
            (PoolTimeout("pool not ready"), "CONNECTION_TIMEOUT"),
            (psycopg.OperationalError("password authentication failed for user"), "AUTHENTICATION_FAILED"),
            (psycopg.OperationalError("could not connect to server"), "CONNECTION_FAILED"),
            (ConnectionRefusedError("refused"), "CONNECTION_FAILED"),
        ],
    )
    async def test_structured_and_audited(self, enforcer, registry, connector, audit_handler, error, code):
        connector.error = error
        op = RecordingOperation(registry)
        result = await enforcer.invoke(op, {})
        assert result["success"] is False
        assert result["error"] == code
        assert op.calls == []
        assert audit_handler.entries[0]["result"]["error"] == code


class TestAudit:
    async def test_basic_omits_arguments(self, enforcer, registry, audit_handler):
        await enforcer.invoke(RecordingOperation(registry), {"table_name": "orders"})
        entry = audit_handler.entries[0]
        assert entry["tool_name"] == "read_data"
        assert entry["environment"] == "dev"
        assert entry["session_id"] == "test-session"
        assert entry["result"] == {"success": True}
        assert "arguments" not in entry

    async def test_verbose_redacts(self, enforcer, registry, audit_handler):
        await enforcer.invoke(
            RecordingOperation(registry),
            {"environment": "staging", "confirm": True, "password": "hunter2"},
        )
        entry = audit_handler.entries[0]
        assert entry["arguments"]["password"] == "[REDACTED]"
        assert entry["result"]["data"] == [1, 2]

    async def test_none_writes_nothing(self, document, connector, token_provider, audit_handler):
        document["environments"][0]["auditLevel"] = "none"
        registry = EnvironmentRegistry.load(document, connector=connector, token_provider=token_provider)
        enforcer = PolicyEnforcer(registry, AuditLogger(handler=audit_handler))
        result = await enforcer.invoke(RecordingOperation(registry), {})
        assert result["success"] is True
        assert audit_handler.entries == []

    async def test_leaf_exception_audited_then_raised(self, enforcer, registry, audit_handler):
        op = RecordingOperation(registry, error=RuntimeError("boom"))
        with pytest.raises(RuntimeError, match="boom"):
            await enforcer.invoke(op, {})
        entry = audit_handler.entries[0]
        assert entry["result"]["success"] is False
        assert entry["result"]["error"] == "QUERY_FAILED"

    async def test_failed_result_audited(self, enforcer, registry, audit_handler):
        op = RecordingOperation(
            registry, result={"success": False, "error": "STATEMENT_NOT_ALLOWED"}
        )
        await enforcer.invoke(op, {})
        assert audit_handler.entries[0]["result"] == {
            "success": False,
            "error": "STATEMENT_NOT_ALLOWED",
        }

    async def test_audit_failure_does_not_break_call(self, registry):
        class BrokenHandler:
            def setFormatter(self, fmt):
                pass

            def handle(self, record):
                raise OSError("disk full")

        enforcer = PolicyEnforcer(registry, AuditLogger(handler=BrokenHandler()))
        result = await enforcer.invoke(RecordingOperation(registry), {})
        assert result["success"] is True
