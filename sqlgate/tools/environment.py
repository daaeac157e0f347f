"""Environment discovery and health tools."""
import time
from typing import Any, Optional

from pydantic import Field

from sqlgate.environments import (
    AccessLevel,
    AuditLevel,
    AuthMode,
    EnvironmentConfig,
    Tier,
    has_unresolved_secret,
)
from sqlgate.governance.tool_guard import SCHEMA_TOOLS, WRITE_TOOLS
from sqlgate.tools.base import Operation, OperationCapabilities, OperationInput, success
from sqlgate.utils.errors import EnvironmentNotFound, handle_error

HIGH_ROW_LIMIT = 100000


class ListEnvironmentsInput(OperationInput):
    include_details: bool = Field(
        default=False,
        description="Include full policy details (allowed/denied tools, schemas, databases)",
    )


class ValidateEnvironmentConfigInput(OperationInput):
    target: Optional[str] = Field(
        default=None,
        description="Validate only this environment. Omit to validate all environments.",
    )


class TestConnectionInput(OperationInput):
    verbose: bool = Field(default=False, description="Also return the server version")


def describe_environment(env: EnvironmentConfig, include_details: bool = False) -> dict:
    info: dict[str, Any] = {
        "name": env.name,
        "description": env.description,
        "server": env.server,
        "database": env.database or None,
        "access_level": env.access_level.value,
        "readonly": env.readonly,
        "tier": env.tier.value if env.tier else None,
    }
    if include_details:
        info.update(
            auth_mode=env.auth_mode.value,
            port=env.port,
            allowed_tools=env.allowed_tools or None,
            denied_tools=env.denied_tools or None,
            allowed_databases=env.allowed_databases,
            denied_databases=env.denied_databases or None,
            allowed_schemas=env.allowed_schemas,
            denied_schemas=env.denied_schemas or None,
            max_rows_default=env.max_rows_default,
            require_approval=env.require_approval,
            audit_level=env.audit_level.value,
        )
    return info


class ListEnvironments(Operation):
    name = "list_environments"
    title = "List Environments"
    description = (
        "List configured database environments with their access level, readonly "
        "flag and tier. Use this to discover environments before running queries."
    )
    capabilities = OperationCapabilities(metadata_exempt=True)
    input_model = ListEnvironmentsInput

    async def execute(self, params: ListEnvironmentsInput) -> dict:
        environments = self.registry.list_environments()
        return success(
            f"Found {len(environments)} configured environment(s)",
            default_environment=self.registry.default_environment,
            environment_count=len(environments),
            data=[describe_environment(e, params.include_details) for e in environments],
        )


def validate_environment(env: EnvironmentConfig) -> dict:
    """Semantic checks on a loaded environment. Structural checks happen at load time."""
    errors: list[str] = []
    warnings: list[str] = []
    writing = WRITE_TOOLS | SCHEMA_TOOLS

    if env.auth_mode in (AuthMode.SQL, AuthMode.WINDOWS):
        if not env.username:
            errors.append(f"Missing username for {env.auth_mode.value} authentication")
        if not env.password:
            errors.append(f"Missing password for {env.auth_mode.value} authentication")
        if env.auth_mode == AuthMode.WINDOWS and not env.domain:
            warnings.append(
                "Windows authentication typically requires a domain. Consider adding 'domain'."
            )
    elif env.auth_mode == AuthMode.AAD and not env.username:
        errors.append("Missing username (Azure AD principal) for aad authentication")

    for field_name in ("server", "database", "username", "password"):
        if has_unresolved_secret(getattr(env, field_name)):
            errors.append(
                f"Secret placeholder in '{field_name}' could not be resolved from the "
                "process environment"
            )

    if env.access_level == AccessLevel.SERVER and not (
        env.allowed_databases or env.denied_databases
    ):
        warnings.append(
            "Server-level access without allowedDatabases or deniedDatabases allows "
            "access to all databases."
        )

    if env.audit_level == AuditLevel.NONE:
        warnings.append("Audit logging is disabled. Consider enabling it for compliance.")

    if env.readonly:
        conflicting = sorted(t for t in env.allowed_tools if t in writing)
        if conflicting:
            errors.append(
                "readonly=true conflicts with allowedTools containing write operations: "
                + ", ".join(conflicting)
            )

    if env.tier == Tier.READER:
        if not env.readonly:
            warnings.append("Tier 'reader' typically has readonly=true.")
        writers = sorted(t for t in env.allowed_tools if t in writing)
        if writers:
            warnings.append(f"Tier 'reader' should not include write tools: {', '.join(writers)}")
    elif env.tier == Tier.WRITER:
        schema_changes = sorted(t for t in env.allowed_tools if t in SCHEMA_TOOLS)
        if schema_changes:
            warnings.append(
                "Tier 'writer' should not include schema modification tools: "
                + ", ".join(schema_changes)
            )

    if env.allowed_schemas:
        overlap = sorted(set(env.allowed_schemas) & set(env.denied_schemas))
        if overlap:
            warnings.append(
                "Schema patterns appear in both allowedSchemas and deniedSchemas: "
                + ", ".join(overlap)
            )

    if isinstance(env.allowed_databases, list):
        overlap = sorted(set(env.allowed_databases) & set(env.denied_databases))
        if overlap:
            errors.append(
                "Databases appear in both allowedDatabases and deniedDatabases: "
                + ", ".join(overlap)
            )

    if env.max_rows_default and env.max_rows_default > HIGH_ROW_LIMIT:
        warnings.append(
            f"maxRowsDefault of {env.max_rows_default} is very high. "
            "Consider limiting it for performance."
        )

    return {
        "environment": env.name,
        "valid": not errors,
        "errors": errors,
        "warnings": warnings,
    }


class ValidateEnvironmentConfig(Operation):
    name = "validate_environment_config"
    title = "Validate Environment Config"
    description = (
        "Check the environments configuration for credential problems, unresolved "
        "secret placeholders and contradictory policies (e.g. readonly with write "
        "tools allowed). Returns errors and warnings per environment."
    )
    capabilities = OperationCapabilities(metadata_exempt=True)
    input_model = ValidateEnvironmentConfigInput

    async def execute(self, params: ValidateEnvironmentConfigInput) -> dict:
        environments = self.registry.list_environments()
        if params.target:
            try:
                environments = [self.registry.resolve(params.target)]
            except EnvironmentNotFound as e:
                return handle_error(e)

        results = [validate_environment(env) for env in environments]
        invalid = sum(1 for r in results if not r["valid"])
        return {
            "success": invalid == 0,
            "message": (
                f"Validated {len(results)} environment(s): {invalid} invalid"
                if invalid
                else f"All {len(results)} environment(s) are valid"
            ),
            "summary": {
                "total_environments": len(results),
                "valid_count": len(results) - invalid,
                "invalid_count": invalid,
                "warning_count": sum(1 for r in results if r["warnings"]),
            },
            "data": results,
        }


class TestConnection(Operation):
    __test__ = False

    name = "test_connection"
    title = "Test Connection"
    description = (
        "Connect to an environment and run SELECT 1. Returns connection and query "
        "latency, plus the server version when verbose is set."
    )
    capabilities = OperationCapabilities(metadata_exempt=True)
    input_model = TestConnectionInput

    async def execute(self, params: TestConnectionInput) -> dict:
        env = self.registry.resolve(params.environment)
        started = time.perf_counter()
        await self.registry.get_connection(env.name)
        connected_at = time.perf_counter()
        await self.registry.execute_readonly(
            env.name, "SELECT 1 AS connected", tool_name=self.name
        )
        finished = time.perf_counter()

        server_info = {
            "environment": env.name,
            "server": env.server,
            "database": env.database or None,
            "auth_mode": env.auth_mode.value,
            "readonly": env.readonly,
        }
        if params.verbose:
            rows = await self.registry.execute_readonly(
                env.name, "SELECT version() AS version", tool_name=self.name
            )
            if rows:
                server_info["version"] = rows[0]["version"]

        return success(
            f"Successfully connected to '{env.name}' ({env.server}/{env.database})",
            connected=True,
            latency={
                "connection_ms": round((connected_at - started) * 1000),
                "query_ms": round((finished - connected_at) * 1000),
                "total_ms": round((time.perf_counter() - started) * 1000),
            },
            data=server_info,
        )
