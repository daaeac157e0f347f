"""Table profiling and foreign-key relationship inspection.

Both operations only read, and both are scoped by ``table_name`` so the
environment's schema allow/deny lists apply before anything runs.
"""
import logging
from datetime import date, datetime
from typing import Any, Optional

from psycopg import sql
from pydantic import Field

from sqlgate.governance.policy import split_table_reference
from sqlgate.tools.base import Operation, OperationCapabilities, OperationInput, success
from sqlgate.utils.errors import ErrorCode, failure

logger = logging.getLogger(__name__)

SAMPLE_RETURN_LIMIT = 10

SKIP_TYPES = frozenset(
    {
        "bytea", "json", "xml", "tsvector", "tsquery",
        "point", "line", "lseg", "box", "path", "polygon", "circle",
    }
)
NUMERIC_TYPES = frozenset(
    {"smallint", "integer", "bigint", "numeric", "real", "double precision"}
)
STRING_TYPES = frozenset({"character varying", "character", "text"})
DATE_TYPES = frozenset(
    {"date", "timestamp without time zone", "timestamp with time zone"}
)

REFERENTIAL_ACTIONS = {
    "a": "NO ACTION",
    "r": "RESTRICT",
    "c": "CASCADE",
    "n": "SET NULL",
    "d": "SET DEFAULT",
}


def classify_cardinality(distinct_count: int, row_count: int) -> str:
    if row_count == 0:
        return "low"
    ratio = distinct_count / row_count
    if ratio > 0.95:
        return "unique"
    if ratio > 0.5:
        return "high"
    if ratio > 0.1:
        return "medium"
    return "low"


def describe_span(earliest: date, latest: date) -> str:
    """Human-readable distance between two dates or timestamps.

    >>> describe_span(date(2024, 1, 1), date(2024, 1, 15))
    '14 days'
    >>> describe_span(date(2022, 1, 1), date(2024, 3, 1))
    '2 years, 2 months'
    """
    days = (latest - earliest).days
    if days < 1:
        return "less than 1 day"
    if days < 30:
        return f"{days} day{'s' if days > 1 else ''}"
    months = days // 30
    if months < 12:
        return f"{months} month{'s' if months > 1 else ''}"
    years, months = divmod(months, 12)
    text = f"{years} year{'s' if years > 1 else ''}"
    if months:
        text += f", {months} month{'s' if months > 1 else ''}"
    return text


def _number(value: Any, digits: int) -> Optional[float]:
    if value is None:
        return None
    return round(float(value), digits)


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, (date, datetime)) else value


class ProfileTableInput(OperationInput):
    table_name: str = Field(
        ...,
        description="Table to profile: schema.table or just table (defaults to public)",
        min_length=1,
    )
    columns_to_profile: Optional[list[str]] = Field(
        default=None, description="Only profile these columns (default: all)"
    )
    include_distributions: bool = Field(
        default=True, description="Include the most frequent values per column"
    )
    top_values_limit: int = Field(default=10, ge=1, le=50)
    include_samples: bool = Field(
        default=False, description="Also return up to 10 randomly sampled rows"
    )
    sample_size: int = Field(default=50, ge=1, le=1000)


class InspectRelationshipsInput(OperationInput):
    table_name: str = Field(
        ...,
        description="Table to inspect: schema.table or just table (defaults to public)",
        min_length=1,
    )
    include_outbound: bool = Field(
        default=True, description="Foreign keys on this table that reference other tables"
    )
    include_inbound: bool = Field(
        default=True, description="Foreign keys on other tables that reference this table"
    )


class ProfileTable(Operation):
    name = "profile_table"
    title = "Profile Table"
    description = (
        "Profile a table: row count and, per column, null and distinct counts, "
        "cardinality, numeric/string/date statistics and the most frequent values. "
        "Binary and geometric columns are skipped."
    )
    capabilities = OperationCapabilities(metadata_exempt=True)
    input_model = ProfileTableInput

    async def execute(self, params: ProfileTableInput) -> dict:
        schema, table_name = split_table_reference(params.table_name)
        columns = await self.registry.execute_readonly(
            params.environment,
            """SELECT column_name, data_type, is_nullable
            FROM information_schema.columns
            WHERE table_schema = %s AND table_name = %s
            ORDER BY ordinal_position""",
            (schema, table_name),
            tool_name=self.name,
        )
        if not columns:
            return failure(
                ErrorCode.QUERY_FAILED,
                f"Table '{schema}.{table_name}' does not exist or has no visible columns.",
                "Use list_tables or search_schema to find the table name.",
            )

        if params.columns_to_profile:
            wanted = {c.strip().lower() for c in params.columns_to_profile}
            columns = [c for c in columns if c["column_name"].lower() in wanted]
            if not columns:
                return failure(
                    ErrorCode.INVALID_ARGUMENTS,
                    f"None of the requested columns exist in '{schema}.{table_name}'.",
                    "Call describe_table to see the column names.",
                )

        skipped = [c["column_name"] for c in columns if c["data_type"] in SKIP_TYPES]
        columns = [c for c in columns if c["data_type"] not in SKIP_TYPES]
        table = sql.Identifier(schema, table_name)

        counted = await self.registry.execute_readonly(
            params.environment,
            sql.SQL("SELECT COUNT(*) AS row_count FROM {}").format(table),
            tool_name=self.name,
        )
        row_count = counted[0]["row_count"] if counted else 0

        samples = None
        if params.include_samples and row_count:
            rows = await self.registry.execute_readonly(
                params.environment,
                sql.SQL("SELECT * FROM {} ORDER BY random() LIMIT %s").format(table),
                (params.sample_size,),
                max_rows=SAMPLE_RETURN_LIMIT,
                tool_name=self.name,
            )
            samples = [{k: _iso(v) for k, v in row.items()} for row in rows]

        profiles = []
        for column in columns:
            if row_count:
                profiles.append(await self._profile_column(params, table, column, row_count))
            else:
                profiles.append(self._empty_profile(column))

        logger.info(f"Profiled {len(profiles)} column(s) of {schema}.{table_name}")
        payload: dict[str, Any] = {
            "table": f"{schema}.{table_name}",
            "row_count": row_count,
            "column_count": len(profiles),
            "skipped_columns": skipped,
            "data": profiles,
        }
        if params.include_samples:
            payload["samples"] = samples or []
        return success(
            f"Profiled {len(profiles)} column(s) of '{schema}.{table_name}' ({row_count} rows)",
            **payload,
        )

    @staticmethod
    def _empty_profile(column: dict) -> dict:
        return {
            "column_name": column["column_name"],
            "data_type": column["data_type"],
            "is_nullable": column["is_nullable"] == "YES",
            "null_count": 0,
            "null_percentage": 0,
            "distinct_count": 0,
            "cardinality": "low",
        }

    async def _profile_column(
        self, params: ProfileTableInput, table: sql.Composable, column: dict, row_count: int
    ) -> dict:
        col = sql.Identifier(column["column_name"])
        data_type = column["data_type"]

        expressions = [
            sql.SQL("COUNT(*) - COUNT({}) AS null_count").format(col),
            sql.SQL("COUNT(DISTINCT {}) AS distinct_count").format(col),
        ]
        if data_type in NUMERIC_TYPES:
            expressions += [
                sql.SQL("MIN({}) AS min_value").format(col),
                sql.SQL("MAX({}) AS max_value").format(col),
                sql.SQL("AVG({}::float8) AS avg_value").format(col),
                sql.SQL("percentile_cont(0.5) WITHIN GROUP (ORDER BY {}::float8) AS median").format(col),
                sql.SQL("percentile_cont(0.9) WITHIN GROUP (ORDER BY {}::float8) AS p90").format(col),
            ]
        elif data_type in STRING_TYPES:
            expressions += [
                sql.SQL("MIN(length({})) AS min_length").format(col),
                sql.SQL("MAX(length({})) AS max_length").format(col),
                sql.SQL("AVG(length({})) AS avg_length").format(col),
                sql.SQL("COUNT(*) FILTER (WHERE {} = '') AS empty_count").format(col),
            ]
        elif data_type in DATE_TYPES:
            expressions += [
                sql.SQL("MIN({}) AS earliest").format(col),
                sql.SQL("MAX({}) AS latest").format(col),
            ]

        (stats,) = await self.registry.execute_readonly(
            params.environment,
            sql.SQL("SELECT {} FROM {}").format(sql.SQL(", ").join(expressions), table),
            tool_name=self.name,
        )

        profile = self._empty_profile(column)
        profile["null_count"] = stats["null_count"]
        profile["null_percentage"] = round(stats["null_count"] / row_count * 100, 2)
        profile["distinct_count"] = stats["distinct_count"]
        profile["cardinality"] = classify_cardinality(stats["distinct_count"], row_count)

        if data_type in NUMERIC_TYPES and stats.get("min_value") is not None:
            profile["numeric_stats"] = {
                "min": stats["min_value"],
                "max": stats["max_value"],
                "avg": _number(stats["avg_value"], 4),
                "median": _number(stats["median"], 4),
                "p90": _number(stats["p90"], 4),
            }
        elif data_type in STRING_TYPES and stats.get("min_length") is not None:
            profile["string_stats"] = {
                "min_length": stats["min_length"],
                "max_length": stats["max_length"],
                "avg_length": _number(stats["avg_length"], 2),
                "empty_count": stats["empty_count"],
            }
        elif data_type in DATE_TYPES and stats.get("earliest") is not None:
            profile["date_stats"] = {
                "earliest": _iso(stats["earliest"]),
                "latest": _iso(stats["latest"]),
                "range": describe_span(stats["earliest"], stats["latest"]),
            }

        if params.include_distributions and profile["distinct_count"]:
            top = await self.registry.execute_readonly(
                params.environment,
                sql.SQL(
                    "SELECT {col} AS value, COUNT(*) AS count FROM {table} "
                    "WHERE {col} IS NOT NULL GROUP BY {col} ORDER BY count DESC LIMIT %s"
                ).format(col=col, table=table),
                (params.top_values_limit,),
                tool_name=self.name,
            )
            profile["top_values"] = [
                {
                    "value": _iso(r["value"]),
                    "count": r["count"],
                    "percentage": round(r["count"] / row_count * 100, 2),
                }
                for r in top
            ]
        return profile


class InspectRelationships(Operation):
    name = "inspect_relationships"
    title = "Inspect Relationships"
    description = (
        "List the foreign keys on a table (outbound) and the foreign keys on other "
        "tables that reference it (inbound), with column mappings and ON UPDATE / "
        "ON DELETE actions."
    )
    capabilities = OperationCapabilities(metadata_exempt=True)
    input_model = InspectRelationshipsInput

    RELATIONSHIP_SQL = """SELECT c.conname AS constraint_name,
               src_ns.nspname AS from_schema, src.relname AS from_table,
               dst_ns.nspname AS to_schema, dst.relname AS to_table,
               src_col.attname AS from_column, dst_col.attname AS to_column,
               c.confupdtype AS update_rule, c.confdeltype AS delete_rule
        FROM pg_constraint c
        JOIN pg_class src ON src.oid = c.conrelid
        JOIN pg_namespace src_ns ON src_ns.oid = src.relnamespace
        JOIN pg_class dst ON dst.oid = c.confrelid
        JOIN pg_namespace dst_ns ON dst_ns.oid = dst.relnamespace
        CROSS JOIN LATERAL unnest(c.conkey, c.confkey) WITH ORDINALITY AS k(src_attnum, dst_attnum, ord)
        JOIN pg_attribute src_col ON src_col.attrelid = c.conrelid AND src_col.attnum = k.src_attnum
        JOIN pg_attribute dst_col ON dst_col.attrelid = c.confrelid AND dst_col.attnum = k.dst_attnum
        WHERE c.contype = 'f' AND {side}_ns.nspname = %s AND {side}.relname = %s
        ORDER BY c.conname, k.ord"""

    async def execute(self, params: InspectRelationshipsInput) -> dict:
        if not (params.include_outbound or params.include_inbound):
            return failure(
                ErrorCode.INVALID_ARGUMENTS,
                "At least one of include_outbound or include_inbound must be true.",
            )

        schema, table = split_table_reference(params.table_name)
        found = await self.registry.execute_readonly(
            params.environment,
            "SELECT 1 AS found FROM information_schema.tables "
            "WHERE table_schema = %s AND table_name = %s",
            (schema, table),
            tool_name=self.name,
        )
        if not found:
            return failure(
                ErrorCode.QUERY_FAILED,
                f"Table '{schema}.{table}' was not found.",
                "Use list_tables or search_schema to find the table name.",
            )

        outbound = (
            await self._relationships(params.environment, schema, table, "src", "to")
            if params.include_outbound
            else []
        )
        inbound = (
            await self._relationships(params.environment, schema, table, "dst", "from")
            if params.include_inbound
            else []
        )
        message = (
            f"Found {len(outbound)} outbound and {len(inbound)} inbound "
            f"relationship(s) for '{schema}.{table}'"
            if outbound or inbound
            else "No foreign key relationships found for the specified table."
        )
        return success(
            message,
            table=f"{schema}.{table}",
            outbound=outbound,
            inbound=inbound,
        )

    async def _relationships(
        self, environment: Optional[str], schema: str, table: str, side: str, other: str
    ) -> list[dict]:
        rows = await self.registry.execute_readonly(
            environment,
            self.RELATIONSHIP_SQL.format(side=side),
            (schema, table),
            tool_name=self.name,
        )
        grouped: dict[str, dict] = {}
        for row in rows:
            # hide the far end of a relationship when the environment may not see it
            if not self.registry.is_schema_allowed(
                environment, row[f"{other}_schema"], row[f"{other}_table"]
            ).allowed:
                continue
            rel = grouped.setdefault(
                row["constraint_name"],
                {
                    "constraint_name": row["constraint_name"],
                    "from": f"{row['from_schema']}.{row['from_table']}",
                    "to": f"{row['to_schema']}.{row['to_table']}",
                    "column_mapping": [],
                    "update_rule": REFERENTIAL_ACTIONS.get(row["update_rule"], row["update_rule"]),
                    "delete_rule": REFERENTIAL_ACTIONS.get(row["delete_rule"], row["delete_rule"]),
                },
            )
            rel["column_mapping"].append(
                {"from_column": row["from_column"], "to_column": row["to_column"]}
            )
        return list(grouped.values())
