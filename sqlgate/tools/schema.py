"""Schema and metadata discovery tools.

Listing results are filtered through the environment's schema and database
scope so callers only see objects they are allowed to touch.
"""
from typing import Optional

from pydantic import Field, model_validator

from sqlgate.environments import AccessLevel
from sqlgate.governance.policy import split_table_reference
from sqlgate.tools.base import Operation, OperationCapabilities, OperationInput, success
from sqlgate.utils.errors import ErrorCode, failure

SYSTEM_SCHEMA_FILTER = (
    "table_schema NOT LIKE 'pg\\_%' AND table_schema != 'information_schema'"
)


def _like(pattern: str) -> str:
    """Translate a * wildcard pattern into an ILIKE pattern."""
    escaped = pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped.replace("*", "%")


class ListTablesInput(OperationInput):
    schema_name: Optional[str] = Field(
        default=None, description="Only list tables in this schema"
    )


class DescribeTableInput(OperationInput):
    table_name: str = Field(
        ...,
        description="Table to describe: schema.table or just table (defaults to public)",
        min_length=1,
    )


class SearchSchemaInput(OperationInput):
    table_pattern: Optional[str] = Field(
        default=None, description="Table name pattern, * as wildcard (e.g. 'order*')"
    )
    column_pattern: Optional[str] = Field(
        default=None, description="Column name pattern, * as wildcard (e.g. '*_id')"
    )
    limit: int = Field(default=200, ge=1, le=1000)

    @model_validator(mode="after")
    def _require_pattern(self) -> "SearchSchemaInput":
        if not self.table_pattern and not self.column_pattern:
            raise ValueError("Provide table_pattern and/or column_pattern")
        return self


class ListDatabasesInput(OperationInput):
    include_templates: bool = Field(
        default=False, description="Include template databases"
    )


class ListTables(Operation):
    name = "list_tables"
    title = "List Tables"
    description = (
        "List tables and views visible in an environment, optionally limited to "
        "one schema. Objects outside the environment's schema scope are hidden."
    )
    capabilities = OperationCapabilities(metadata_exempt=True)
    input_model = ListTablesInput

    async def execute(self, params: ListTablesInput) -> dict:
        if params.schema_name:
            rows = await self.registry.execute_readonly(
                params.environment,
                "SELECT table_schema, table_name, table_type "
                "FROM information_schema.tables WHERE table_schema = %s "
                "ORDER BY table_schema, table_name",
                (params.schema_name,),
                tool_name=self.name,
            )
        else:
            rows = await self.registry.execute_readonly(
                params.environment,
                "SELECT table_schema, table_name, table_type "
                f"FROM information_schema.tables WHERE {SYSTEM_SCHEMA_FILTER} "
                "ORDER BY table_schema, table_name",
                tool_name=self.name,
            )
        tables = [
            r
            for r in rows
            if self.registry.is_schema_allowed(
                params.environment, r["table_schema"], r["table_name"]
            ).allowed
        ]
        return success(
            f"Found {len(tables)} table(s)",
            record_count=len(tables),
            hidden=len(rows) - len(tables),
            data=tables,
        )


class DescribeTable(Operation):
    name = "describe_table"
    title = "Describe Table"
    description = (
        "Get the columns (name, type, nullability, default) and indexes of a table."
    )
    capabilities = OperationCapabilities(metadata_exempt=True)
    input_model = DescribeTableInput

    async def execute(self, params: DescribeTableInput) -> dict:
        schema, table = split_table_reference(params.table_name)
        columns = await self.registry.execute_readonly(
            params.environment,
            """SELECT column_name, data_type, is_nullable, column_default,
                   character_maximum_length, numeric_precision, numeric_scale
            FROM information_schema.columns
            WHERE table_schema = %s AND table_name = %s
            ORDER BY ordinal_position""",
            (schema, table),
            tool_name=self.name,
        )
        if not columns:
            return failure(
                ErrorCode.QUERY_FAILED,
                f"Table '{schema}.{table}' does not exist or has no visible columns.",
                "Use list_tables or search_schema to find the table name.",
            )
        indexes = await self.registry.execute_readonly(
            params.environment,
            "SELECT indexname, indexdef FROM pg_indexes "
            "WHERE schemaname = %s AND tablename = %s",
            (schema, table),
            tool_name=self.name,
        )
        return success(
            f"Table '{schema}.{table}' has {len(columns)} column(s)",
            table=f"{schema}.{table}",
            data={"columns": columns, "indexes": indexes},
        )


class SearchSchema(Operation):
    name = "search_schema"
    title = "Search Schema"
    description = (
        "Find tables and columns by name pattern (* wildcard) across the schemas "
        "an environment may access."
    )
    capabilities = OperationCapabilities(metadata_exempt=True)
    input_model = SearchSchemaInput

    async def execute(self, params: SearchSchemaInput) -> dict:
        conditions = [SYSTEM_SCHEMA_FILTER]
        args: list = []
        if params.table_pattern:
            conditions.append("table_name ILIKE %s")
            args.append(_like(params.table_pattern))
        if params.column_pattern:
            conditions.append("column_name ILIKE %s")
            args.append(_like(params.column_pattern))
            sql = (
                "SELECT table_schema, table_name, column_name, data_type "
                "FROM information_schema.columns WHERE "
                + " AND ".join(conditions)
                + " ORDER BY table_schema, table_name, ordinal_position"
            )
        else:
            sql = (
                "SELECT table_schema, table_name, table_type "
                "FROM information_schema.tables WHERE "
                + " AND ".join(conditions)
                + " ORDER BY table_schema, table_name"
            )
        rows = await self.registry.execute_readonly(
            params.environment,
            sql,
            tuple(args),
            max_rows=params.limit,
            tool_name=self.name,
        )
        matches = [
            r
            for r in rows
            if self.registry.is_schema_allowed(
                params.environment, r["table_schema"], r["table_name"]
            ).allowed
        ]
        return success(
            f"Found {len(matches)} match(es)",
            record_count=len(matches),
            data=matches,
        )


class ListDatabases(Operation):
    name = "list_databases"
    title = "List Databases"
    description = (
        "List databases on the environment's server and whether each is accessible "
        "under its policy. Requires accessLevel 'server'."
    )
    capabilities = OperationCapabilities(metadata_exempt=True)
    input_model = ListDatabasesInput

    async def execute(self, params: ListDatabasesInput) -> dict:
        env = self.registry.resolve(params.environment)
        if env.access_level != AccessLevel.SERVER:
            return failure(
                ErrorCode.DATABASE_ACCESS_DENIED,
                f"Environment '{env.name}' has database-level access only. "
                "list_databases requires accessLevel 'server'.",
                f"This environment is restricted to database '{env.database}'.",
            )

        sql = "SELECT datname AS database_name FROM pg_database"
        if not params.include_templates:
            sql += " WHERE NOT datistemplate"
        rows = await self.registry.execute_readonly(
            env.name, sql + " ORDER BY datname", tool_name=self.name
        )
        databases = []
        for row in rows:
            access = self.registry.is_database_allowed(env.name, row["database_name"])
            databases.append(
                {
                    "database_name": row["database_name"],
                    "accessible": access.allowed,
                    "restriction_reason": access.reason,
                }
            )
        accessible = sum(1 for d in databases if d["accessible"])
        return success(
            f"Found {len(databases)} database(s), {accessible} accessible",
            environment=env.name,
            record_count=len(databases),
            data=databases,
        )
