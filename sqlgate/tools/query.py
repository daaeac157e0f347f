"""Read-only query tools: read_data and explain_query.

Both refuse anything but read statements, classified with sqlglot. Row caps
come from the environment policy (maxRowsDefault) bounded by the server-wide
SQLGATE_MAX_ROWS.
"""
import json
from typing import Optional

from pydantic import Field, field_validator

from sqlgate.config import config
from sqlgate.governance.sql_guard import check_read_only
from sqlgate.tools.base import Operation, OperationInput, success
from sqlgate.utils.errors import ErrorCode, failure

BLOCKED_FUNCTIONS = ("pg_terminate_backend", "pg_cancel_backend", "pg_reload_conf")


class ReadDataInput(OperationInput):
    query: str = Field(
        ...,
        description="SELECT statement to run against the environment's database",
        min_length=1,
        max_length=50000,
    )
    max_rows: Optional[int] = Field(
        default=None,
        description="Maximum rows to return. Capped by the environment's maxRowsDefault.",
        ge=1,
        le=100000,
    )

    @field_validator("query")
    @classmethod
    def validate_no_dangerous(cls, v: str) -> str:
        for name in BLOCKED_FUNCTIONS:
            if name in v.lower():
                raise ValueError(f"Query contains blocked function: {name}")
        return v


class ExplainQueryInput(OperationInput):
    query: str = Field(
        ..., description="SELECT statement to explain (not executed)", min_length=1
    )


def _refuse_non_read(tool_name: str, query: str) -> Optional[dict]:
    check = check_read_only(query)
    if check.allowed:
        return None
    return failure(
        ErrorCode.STATEMENT_NOT_ALLOWED,
        f"{tool_name} only runs read statements. {check.error_message}",
        "Use insert_data, update_data or delete_data for changes.",
    )


class ReadData(Operation):
    name = "read_data"
    title = "Read Data"
    description = (
        "Run a read-only SELECT query against an environment. The query runs in a "
        "READ ONLY transaction and returns at most the environment's row limit."
    )
    input_model = ReadDataInput

    def __init__(self, registry, max_rows: Optional[int] = None):
        super().__init__(registry)
        self.max_rows = max_rows or config.max_rows

    async def execute(self, params: ReadDataInput) -> dict:
        refused = _refuse_non_read(self.name, params.query)
        if refused:
            return refused

        limit = self.policy_for(params).row_limit(params.max_rows, self.max_rows)
        # one extra row tells us whether the result was truncated
        rows = await self.registry.execute_readonly(
            params.environment, params.query, max_rows=limit + 1, tool_name=self.name
        )
        truncated = len(rows) > limit
        rows = rows[:limit]
        return success(
            f"Query returned {len(rows)} row(s)"
            + (f" (truncated at {limit})" if truncated else ""),
            record_count=len(rows),
            truncated=truncated,
            data=rows,
        )


class ExplainQuery(Operation):
    name = "explain_query"
    title = "Explain Query Plan"
    description = (
        "Show the PostgreSQL execution plan (EXPLAIN, FORMAT JSON) for a SELECT "
        "query without running it."
    )
    input_model = ExplainQueryInput

    async def execute(self, params: ExplainQueryInput) -> dict:
        refused = _refuse_non_read(self.name, params.query)
        if refused:
            return refused

        rows = await self.registry.execute_readonly(
            params.environment,
            f"EXPLAIN (FORMAT JSON) {params.query}",
            tool_name=self.name,
        )
        plan = rows[0].get("QUERY PLAN") if rows else None
        if isinstance(plan, str):
            plan = json.loads(plan)
        return success("Execution plan retrieved", data=plan)
