"""Data-changing tools: insert, update and delete, plus table and index DDL.

Identifiers are quoted with ``psycopg.sql``; values are always bound as
parameters. Update and delete count the matching rows first and refuse when
nothing matches or more than ``max_rows`` would change.
"""
import logging
import re
from typing import Any, Optional, Union

from psycopg import sql
from pydantic import BaseModel, Field, field_validator, model_validator

from sqlgate.governance.policy import split_table_reference
from sqlgate.tools.base import Operation, OperationCapabilities, OperationInput, success
from sqlgate.utils.errors import ErrorCode, failure

logger = logging.getLogger(__name__)

MAX_AFFECTED_ROWS_DEFAULT = 1000
PREVIEW_ROWS = 10

# Column types are spliced into DDL, so only plain type names are accepted:
# "integer", "varchar(255)", "numeric(10, 2)", "timestamp with time zone", "text[]".
COLUMN_TYPE = re.compile(r"[A-Za-z][A-Za-z0-9_ ]*(\(\s*\d+\s*(,\s*\d+\s*)?\))?(\[\])?")


def _table(reference: str) -> sql.Composable:
    schema, table = split_table_reference(reference)
    return sql.Identifier(schema, table)


def _condition(where_clause: str) -> sql.Composable:
    """Raw WHERE text for a statement that is always executed with parameters.

    A literal ``%`` must be doubled or psycopg reads it as a placeholder.
    """
    return sql.SQL(where_clause.replace("%", "%%"))


class _TableInput(OperationInput):
    table_name: str = Field(
        ..., description="Target table: schema.table or just table (defaults to public)", min_length=1
    )


class _FilteredInput(_TableInput):
    where_clause: str = Field(
        ...,
        description="WHERE condition without the WHERE keyword, e.g. \"status = 'stale'\". "
        "Use '1=1' to target every row (not recommended).",
        min_length=1,
    )
    max_rows: int = Field(
        default=MAX_AFFECTED_ROWS_DEFAULT,
        description="Refuse the change if more rows than this would be affected",
        ge=1,
    )
    preview: bool = Field(
        default=False,
        description="Only count and show up to 10 matching rows; change nothing",
    )

    @field_validator("where_clause")
    @classmethod
    def single_condition(cls, v: str) -> str:
        if ";" in v:
            raise ValueError("where_clause must be a single condition without ';'")
        return v


class InsertDataInput(_TableInput):
    data: Union[dict[str, Any], list[dict[str, Any]]] = Field(
        ...,
        description="One record (object) or several records (array of objects with identical keys)",
    )


class UpdateDataInput(_FilteredInput):
    updates: dict[str, Any] = Field(
        ..., description="Column/value pairs to set, e.g. {\"status\": \"active\"}"
    )

    @field_validator("updates")
    @classmethod
    def not_empty(cls, v: dict[str, Any]) -> dict[str, Any]:
        if not v:
            raise ValueError("updates must name at least one column")
        return v


class DeleteDataInput(_FilteredInput):
    pass


class DropTableInput(_TableInput):
    if_exists: bool = Field(default=False, description="Do not fail if the table is missing")
    cascade: bool = Field(default=False, description="Also drop dependent objects")


class ColumnDefinition(BaseModel):
    name: str = Field(..., min_length=1)
    type: str = Field(..., description="PostgreSQL type, e.g. 'integer', 'varchar(255)', 'numeric(10, 2)'")
    nullable: bool = True
    primary_key: bool = False

    @field_validator("type")
    @classmethod
    def plain_type(cls, v: str) -> str:
        v = v.strip()
        if not COLUMN_TYPE.fullmatch(v):
            raise ValueError(f"unsupported column type '{v}'")
        return v


class CreateTableInput(_TableInput):
    columns: list[ColumnDefinition] = Field(
        ...,
        description="Column definitions: [{\"name\": \"id\", \"type\": \"bigint\", \"primary_key\": true}, ...]",
        min_length=1,
    )
    if_not_exists: bool = Field(default=False, description="Do nothing if the table already exists")

    @model_validator(mode="after")
    def _unique_columns(self) -> "CreateTableInput":
        names = [c.name.lower() for c in self.columns]
        if len(names) != len(set(names)):
            raise ValueError("column names must be unique")
        return self


class CreateIndexInput(_TableInput):
    index_name: str = Field(..., description="Name of the new index", min_length=1)
    columns: list[str] = Field(..., description="Columns to index, in order", min_length=1)
    unique: bool = Field(default=False, description="Create a UNIQUE index")
    if_not_exists: bool = Field(default=False, description="Do nothing if the index already exists")


class DropIndexInput(_TableInput):
    index_name: str = Field(..., description="Index to drop; it lives in the table's schema", min_length=1)
    if_exists: bool = Field(default=False, description="Do not fail if the index is missing")


class InsertData(Operation):
    name = "insert_data"
    title = "Insert Data"
    description = (
        "Insert one record (object) or many records (array of objects with the same "
        "columns) into a table using parameterised values."
    )
    capabilities = OperationCapabilities(mutates=True)
    input_model = InsertDataInput

    async def execute(self, params: InsertDataInput) -> dict:
        records = params.data if isinstance(params.data, list) else [params.data]
        if not records:
            return failure(ErrorCode.INVALID_ARGUMENTS, "No data provided for insertion")

        columns = sorted(records[0])
        for i, record in enumerate(records[1:], start=2):
            if sorted(record) != columns:
                return failure(
                    ErrorCode.INVALID_ARGUMENTS,
                    f"Column mismatch: record {i} has different columns than the first "
                    f"record. Expected [{', '.join(columns)}], got [{', '.join(sorted(record))}].",
                    "Give every record the same set of keys.",
                )

        row = sql.SQL("({})").format(sql.SQL(", ").join(sql.Placeholder() * len(columns)))
        query = sql.SQL("INSERT INTO {} ({}) VALUES {}").format(
            _table(params.table_name),
            sql.SQL(", ").join(map(sql.Identifier, columns)),
            sql.SQL(", ").join([row] * len(records)),
        )
        values = tuple(record[c] for record in records for c in columns)

        async with self.registry.connection(params.environment) as conn:
            cur = await conn.execute(query, values)
            inserted = cur.rowcount

        logger.info(f"Inserted {inserted} row(s) into {params.table_name}")
        return success(
            f"Inserted {inserted} record(s) into {params.table_name}",
            rows_affected=inserted,
        )


class _FilteredChange(Operation):
    """Shared count-then-change flow for update and delete."""

    verb = ""
    capabilities = OperationCapabilities(mutates=True)

    def change_statement(self, params: _FilteredInput) -> tuple[sql.Composable, tuple]:
        raise NotImplementedError

    async def execute(self, params: _FilteredInput) -> dict:
        table = _table(params.table_name)
        where = _condition(params.where_clause)

        async with self.registry.connection(params.environment) as conn:
            async with conn.transaction():
                cur = await conn.execute(
                    sql.SQL("SELECT COUNT(*) AS affected FROM {} WHERE {}").format(table, where),
                    (),
                )
                affected = (await cur.fetchone())["affected"]

                if affected == 0:
                    return failure(
                        ErrorCode.NO_ROWS_MATCHED,
                        f"No rows match the WHERE clause. Nothing will be {self.verb}d.",
                        "Check the condition with read_data first.",
                        rows_affected=0,
                    )
                if affected > params.max_rows:
                    return failure(
                        ErrorCode.TOO_MANY_ROWS,
                        f"This {self.verb} would affect {affected} rows, which exceeds "
                        f"the maximum of {params.max_rows}.",
                        "Refine the WHERE clause or raise max_rows.",
                        rows_affected=affected,
                        max_allowed=params.max_rows,
                    )

                if params.preview:
                    cur = await conn.execute(
                        sql.SQL("SELECT * FROM {} WHERE {} LIMIT {}").format(
                            table, where, sql.Literal(PREVIEW_ROWS)
                        ),
                        (),
                    )
                    return success(
                        f"Preview: {affected} row(s) would be {self.verb}d. "
                        "Nothing was changed.",
                        rows_affected=affected,
                        preview=[dict(r) for r in await cur.fetchall()],
                    )

                statement, values = self.change_statement(params)
                cur = await conn.execute(statement, values)
                changed = cur.rowcount

        logger.info(f"{self.name}: {changed} row(s) in {params.table_name}")
        return success(
            f"Successfully {self.verb}d {changed} row(s) in table '{params.table_name}'",
            rows_affected=changed,
        )


class UpdateData(_FilteredChange):
    name = "update_data"
    title = "Update Data"
    description = (
        "Update rows matching a WHERE clause. Counts matching rows first and refuses "
        "when none match or more than max_rows would change. Use preview to inspect "
        "matching rows without changing anything."
    )
    verb = "update"
    input_model = UpdateDataInput

    def change_statement(self, params: UpdateDataInput):
        columns = list(params.updates)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(c), sql.Placeholder()) for c in columns
        )
        statement = sql.SQL("UPDATE {} SET {} WHERE {}").format(
            _table(params.table_name), assignments, _condition(params.where_clause)
        )
        return statement, tuple(params.updates[c] for c in columns)


class DeleteData(_FilteredChange):
    name = "delete_data"
    title = "Delete Data"
    description = (
        "Delete rows matching a WHERE clause. Counts matching rows first and refuses "
        "when none match or more than max_rows would be removed."
    )
    verb = "delete"
    input_model = DeleteDataInput

    def change_statement(self, params: DeleteDataInput):
        statement = sql.SQL("DELETE FROM {} WHERE {}").format(
            _table(params.table_name), _condition(params.where_clause)
        )
        return statement, ()


class DropTable(Operation):
    name = "drop_table"
    title = "Drop Table"
    description = "Drop a table. Irreversible; dependent objects are dropped only with cascade."
    capabilities = OperationCapabilities(mutates=True, schema_change=True)
    input_model = DropTableInput

    async def execute(self, params: DropTableInput) -> dict:
        statement = sql.SQL("DROP TABLE {}{}{}").format(
            sql.SQL("IF EXISTS ") if params.if_exists else sql.SQL(""),
            _table(params.table_name),
            sql.SQL(" CASCADE") if params.cascade else sql.SQL(""),
        )
        async with self.registry.connection(params.environment) as conn:
            await conn.execute(statement)

        schema, table = split_table_reference(params.table_name)
        logger.warning(f"Dropped table {schema}.{table}")
        return success(f"Table '{schema}.{table}' dropped", table=f"{schema}.{table}")


class CreateTable(Operation):
    name = "create_table"
    title = "Create Table"
    description = (
        "Create a table from column definitions (name, type, nullable, primary_key). "
        "Types must be plain PostgreSQL type names such as 'integer' or 'varchar(255)'."
    )
    capabilities = OperationCapabilities(mutates=True, schema_change=True)
    input_model = CreateTableInput

    def statement(self, params: CreateTableInput) -> sql.Composable:
        definitions = [
            sql.SQL("{} {}{}").format(
                sql.Identifier(c.name),
                sql.SQL(c.type),
                sql.SQL("") if c.nullable else sql.SQL(" NOT NULL"),
            )
            for c in params.columns
        ]
        keys = [c.name for c in params.columns if c.primary_key]
        if keys:
            definitions.append(
                sql.SQL("PRIMARY KEY ({})").format(
                    sql.SQL(", ").join(map(sql.Identifier, keys))
                )
            )
        return sql.SQL("CREATE TABLE {}{} ({})").format(
            sql.SQL("IF NOT EXISTS ") if params.if_not_exists else sql.SQL(""),
            _table(params.table_name),
            sql.SQL(", ").join(definitions),
        )

    async def execute(self, params: CreateTableInput) -> dict:
        async with self.registry.connection(params.environment) as conn:
            await conn.execute(self.statement(params))

        schema, table = split_table_reference(params.table_name)
        logger.info(f"Created table {schema}.{table} with {len(params.columns)} column(s)")
        return success(
            f"Table '{schema}.{table}' created with {len(params.columns)} column(s)",
            table=f"{schema}.{table}",
            columns=[c.name for c in params.columns],
        )


class CreateIndex(Operation):
    name = "create_index"
    title = "Create Index"
    description = "Create an index (optionally UNIQUE) on one or more columns of a table."
    capabilities = OperationCapabilities(mutates=True, schema_change=True)
    input_model = CreateIndexInput

    def statement(self, params: CreateIndexInput) -> sql.Composable:
        return sql.SQL("CREATE {}INDEX {}{} ON {} ({})").format(
            sql.SQL("UNIQUE ") if params.unique else sql.SQL(""),
            sql.SQL("IF NOT EXISTS ") if params.if_not_exists else sql.SQL(""),
            sql.Identifier(params.index_name),
            _table(params.table_name),
            sql.SQL(", ").join(map(sql.Identifier, params.columns)),
        )

    async def execute(self, params: CreateIndexInput) -> dict:
        async with self.registry.connection(params.environment) as conn:
            await conn.execute(self.statement(params))

        schema, table = split_table_reference(params.table_name)
        logger.info(f"Created index {params.index_name} on {schema}.{table}")
        return success(
            f"Index '{params.index_name}' created on '{schema}.{table}'",
            index=f"{schema}.{params.index_name}",
            table=f"{schema}.{table}",
            unique=params.unique,
        )


class DropIndex(Operation):
    name = "drop_index"
    title = "Drop Index"
    description = "Drop an index from a table's schema. The table name scopes the request."
    capabilities = OperationCapabilities(mutates=True, schema_change=True)
    input_model = DropIndexInput

    async def execute(self, params: DropIndexInput) -> dict:
        schema, _ = split_table_reference(params.table_name)
        statement = sql.SQL("DROP INDEX {}{}").format(
            sql.SQL("IF EXISTS ") if params.if_exists else sql.SQL(""),
            sql.Identifier(schema, params.index_name),
        )
        async with self.registry.connection(params.environment) as conn:
            await conn.execute(statement)

        logger.warning(f"Dropped index {schema}.{params.index_name}")
        return success(
            f"Index '{schema}.{params.index_name}' dropped",
            index=f"{schema}.{params.index_name}",
        )
