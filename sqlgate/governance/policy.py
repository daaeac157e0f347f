"""Per-environment policy snapshot and ordered policy evaluation.

Evaluation is pure: it never opens a connection and never runs a tool.
Checks run in a fixed order and the first failure wins:

1. deniedTools      -> TOOL_DENIED
2. allowedTools     -> TOOL_NOT_ALLOWED
3. readonly         -> ENVIRONMENT_READONLY
4. database scope   -> DATABASE_ACCESS_DENIED
5. schema scope     -> SCHEMA_ACCESS_DENIED
6. requireApproval  -> APPROVAL_REQUIRED
"""
import logging
from typing import TYPE_CHECKING, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from sqlgate.environments import AccessLevel, AuditLevel, EnvironmentConfig, Tier
from sqlgate.governance.tool_guard import ToolAccessPolicy
from sqlgate.utils.errors import ErrorCode, failure

if TYPE_CHECKING:
    from sqlgate.registry import EnvironmentRegistry
    from sqlgate.tools.base import OperationCapabilities

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "public"


class PolicySnapshot(BaseModel):
    """Governance rules in effect for one environment at one point in time."""

    model_config = ConfigDict(frozen=True)

    name: str
    readonly: bool = False
    allowed_tools: tuple[str, ...] = ()
    denied_tools: tuple[str, ...] = ()
    max_rows_default: Optional[int] = None
    require_approval: bool = False
    audit_level: AuditLevel = AuditLevel.BASIC
    access_level: AccessLevel = AccessLevel.DATABASE
    allowed_databases: Union[Literal["*"], tuple[str, ...], None] = None
    denied_databases: tuple[str, ...] = ()
    allowed_schemas: Optional[tuple[str, ...]] = None
    denied_schemas: tuple[str, ...] = ()
    tier: Optional[Tier] = None

    @classmethod
    def from_environment(cls, env: EnvironmentConfig) -> "PolicySnapshot":
        allowed_databases = env.allowed_databases
        if isinstance(allowed_databases, list):
            allowed_databases = tuple(allowed_databases)
        return cls(
            name=env.name,
            readonly=env.readonly,
            allowed_tools=tuple(env.allowed_tools),
            denied_tools=tuple(env.denied_tools),
            max_rows_default=env.max_rows_default,
            require_approval=env.require_approval,
            audit_level=env.audit_level,
            access_level=env.access_level,
            allowed_databases=allowed_databases,
            denied_databases=tuple(env.denied_databases),
            allowed_schemas=(
                tuple(env.allowed_schemas) if env.allowed_schemas is not None else None
            ),
            denied_schemas=tuple(env.denied_schemas),
            tier=env.tier,
        )

    @property
    def tool_policy(self) -> ToolAccessPolicy:
        return ToolAccessPolicy(
            allowed_tools=set(self.allowed_tools),
            denied_tools=set(self.denied_tools),
        )

    def row_limit(self, requested: Optional[int], ceiling: int) -> int:
        """Effective row cap: requested, bounded by maxRowsDefault and the server ceiling."""
        limit = min(self.max_rows_default or ceiling, ceiling)
        if requested:
            limit = min(requested, limit)
        return limit


def split_table_reference(
    reference: str, default_schema: str = DEFAULT_SCHEMA
) -> tuple[str, str]:
    """Split ``schema.table`` (or bare ``table``) into (schema, table)."""
    parts = reference.split(".")
    schema = parts[-2] if len(parts) > 1 else default_schema
    return schema, parts[-1]


def evaluate_policy(
    tool_name: str,
    capabilities: "OperationCapabilities",
    snapshot: PolicySnapshot,
    args: dict[str, Any],
    registry: "EnvironmentRegistry",
) -> Optional[dict[str, Any]]:
    """Return a structured rejection, or None if the call may proceed."""
    decision = snapshot.tool_policy.check(tool_name)
    if decision.code == ErrorCode.TOOL_DENIED:
        return failure(
            ErrorCode.TOOL_DENIED,
            f"Tool '{tool_name}' is explicitly denied in environment '{snapshot.name}'.",
            "Use a different tool or an environment whose policy permits it.",
        )
    if decision.code == ErrorCode.TOOL_NOT_ALLOWED:
        return failure(
            ErrorCode.TOOL_NOT_ALLOWED,
            f"Tool '{tool_name}' is not permitted in environment '{snapshot.name}'. "
            f"Allowed tools: {', '.join(snapshot.allowed_tools)}.",
            "Use one of the allowed tools, or ask an administrator to extend allowedTools.",
        )

    if snapshot.readonly and (capabilities.mutates or capabilities.schema_change):
        return failure(
            ErrorCode.ENVIRONMENT_READONLY,
            f"Environment '{snapshot.name}' is read-only. "
            f"Tool '{tool_name}' cannot be executed.",
            "Run this operation against a writable environment.",
        )

    database = args.get("database")
    if isinstance(database, str) and database:
        access = registry.is_database_allowed(snapshot.name, database)
        if not access.allowed:
            return failure(
                ErrorCode.DATABASE_ACCESS_DENIED,
                access.reason,
                "Call list_databases to see the databases this environment may access.",
            )

    scope = _schema_reference(args)
    if scope is not None:
        access = registry.is_schema_allowed(snapshot.name, *scope)
        if not access.allowed:
            return failure(
                ErrorCode.SCHEMA_ACCESS_DENIED,
                access.reason,
                "Call list_tables to see the schemas and tables this environment exposes.",
            )

    if (
        snapshot.require_approval
        and not capabilities.metadata_exempt
        and args.get("confirm") is not True
    ):
        return failure(
            ErrorCode.APPROVAL_REQUIRED,
            f"Environment '{snapshot.name}' requires explicit approval for "
            f"'{tool_name}'. Review the operation and re-run with confirm: true to proceed.",
            "Add 'confirm: true' to your arguments after reviewing this operation.",
            requires_approval=True,
            tool=tool_name,
            environment=snapshot.name,
            provided_arguments=dict(args),
        )

    return None


def _schema_reference(args: dict[str, Any]) -> Optional[tuple[str, Optional[str]]]:
    table_name = args.get("table_name")
    if isinstance(table_name, str) and table_name.strip():
        schema, table = split_table_reference(table_name.strip())
        return schema, table
    schema_name = args.get("schema_name")
    if isinstance(schema_name, str) and schema_name.strip():
        return schema_name.strip(), None
    return None
