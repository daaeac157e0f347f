"""The default operation set and its routing metadata."""
from typing import Optional

from sqlgate.config import ServerConfig, config
from sqlgate.registry import EnvironmentRegistry
from sqlgate.routing.intents import Intent
from sqlgate.routing.router import OperationRoute
from sqlgate.tools.base import Operation
from sqlgate.tools.data import (
    CreateIndex,
    CreateTable,
    DeleteData,
    DropIndex,
    DropTable,
    InsertData,
    UpdateData,
)
from sqlgate.tools.environment import (
    ListEnvironments,
    TestConnection,
    ValidateEnvironmentConfig,
)
from sqlgate.tools.metadata import InspectRelationships, ProfileTable
from sqlgate.tools.query import ExplainQuery, ReadData
from sqlgate.tools.schema import DescribeTable, ListDatabases, ListTables, SearchSchema

# name -> (intents, keywords, required_args, base_score)
ROUTE_METADATA: dict[str, tuple[tuple[Intent, ...], tuple[str, ...], tuple[str, ...], float]] = {
    "read_data": (
        (Intent.DATA_READ,),
        ("select", "query", "fetch", "report", "count"),
        ("query",),
        2,
    ),
    "list_tables": (
        (Intent.SCHEMA_DISCOVERY,),
        ("list tables", "show tables", "tables"),
        (),
        1.5,
    ),
    "describe_table": (
        (Intent.SCHEMA_DISCOVERY,),
        ("describe", "columns", "structure"),
        ("table_name",),
        1.5,
    ),
    "search_schema": (
        (Intent.SCHEMA_DISCOVERY,),
        ("search", "find", "look up"),
        (),
        1.5,
    ),
    "profile_table": (
        (Intent.METADATA,),
        ("profile", "sample", "distribution", "statistics", "quality"),
        ("table_name",),
        1.5,
    ),
    "inspect_relationships": (
        (Intent.METADATA, Intent.SCHEMA_DISCOVERY),
        ("relationships", "foreign key", "foreign keys", "references", "dependencies"),
        ("table_name",),
        1.5,
    ),
    "insert_data": (
        (Intent.DATA_WRITE,),
        ("insert", "add", "create record"),
        ("table_name", "data"),
        0.5,
    ),
    "delete_data": (
        (Intent.DATA_WRITE,),
        ("delete", "remove", "purge"),
        ("table_name", "where_clause"),
        0.5,
    ),
    "update_data": (
        (Intent.DATA_WRITE,),
        ("update", "modify", "fix"),
        ("table_name", "updates", "where_clause"),
        0.5,
    ),
    "create_table": (
        (Intent.SCHEMA_CHANGE,),
        ("create table", "new table"),
        ("table_name", "columns"),
        0.5,
    ),
    "create_index": (
        (Intent.SCHEMA_CHANGE,),
        ("create index", "add index", "index"),
        ("table_name", "columns", "index_name"),
        0.5,
    ),
    "drop_index": (
        (Intent.SCHEMA_CHANGE,),
        ("drop index", "remove index", "index"),
        ("table_name", "index_name"),
        0.5,
    ),
    "drop_table": (
        (Intent.SCHEMA_CHANGE,),
        ("drop table", "remove table", "delete table"),
        ("table_name",),
        0.5,
    ),
    "test_connection": (
        (Intent.METADATA,),
        ("test", "connection", "ping", "health"),
        (),
        1,
    ),
    "explain_query": (
        (Intent.METADATA,),
        ("plan", "explain", "showplan", "estimate"),
        ("query",),
        1,
    ),
    "list_databases": (
        (Intent.SCHEMA_DISCOVERY, Intent.METADATA),
        ("databases", "list databases", "show databases", "dbs"),
        (),
        1.5,
    ),
    "list_environments": (
        (Intent.METADATA,),
        ("environments", "list environments", "connections", "configs"),
        (),
        1.5,
    ),
    "validate_environment_config": (
        (Intent.METADATA,),
        ("validate", "check", "config", "configuration", "health"),
        (),
        1.5,
    ),
}


def build_operations(
    registry: EnvironmentRegistry, settings: Optional[ServerConfig] = None
) -> list[Operation]:
    """Instantiate every operation. Server-wide READONLY leaves out writers."""
    settings = settings or config
    operations: list[Operation] = [
        ReadData(registry, max_rows=settings.max_rows),
        ExplainQuery(registry),
        ListTables(registry),
        DescribeTable(registry),
        SearchSchema(registry),
        ProfileTable(registry),
        InspectRelationships(registry),
        ListDatabases(registry),
        TestConnection(registry),
        ListEnvironments(registry),
        ValidateEnvironmentConfig(registry),
        InsertData(registry),
        UpdateData(registry),
        DeleteData(registry),
        CreateTable(registry),
        CreateIndex(registry),
        DropIndex(registry),
        DropTable(registry),
    ]
    if settings.readonly:
        operations = [
            op
            for op in operations
            if not (op.capabilities.mutates or op.capabilities.schema_change)
        ]
    return operations


def build_routes(operations: list[Operation]) -> list[OperationRoute]:
    """Attach routing metadata to each operation that has an entry."""
    routes = []
    for op in operations:
        meta = ROUTE_METADATA.get(op.name)
        if meta is None:
            continue
        intents, keywords, required_args, base_score = meta
        routes.append(
            OperationRoute(
                operation=op,
                intents=intents,
                keywords=keywords,
                required_args=required_args,
                base_score=base_score,
            )
        )
    return routes
