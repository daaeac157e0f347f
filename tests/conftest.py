"""Shared test fixtures for sqlgate tests.

No live database is needed: pools, connections, tokens and the clock are
all fakes.
"""
import asyncio
import copy
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from sqlgate.audit import AuditLogger
from sqlgate.auth import AccessToken
from sqlgate.governance.enforcer import PolicyEnforcer
from sqlgate.registry import EnvironmentRegistry

DOCUMENT = {
    "defaultEnvironment": "dev",
    "environments": [
        {
            "name": "dev",
            "server": "dev.example.com",
            "database": "app",
            "authMode": "sql",
            "username": "dev_user",
            "password": "dev_pw",
        },
        {
            "name": "staging",
            "server": "staging.example.com",
            "database": "app",
            "authMode": "aad",
            "username": "svc@contoso.com",
            "requireApproval": True,
            "auditLevel": "verbose",
        },
        {
            "name": "prod-db",
            "server": "prod.example.com",
            "database": "app",
            "authMode": "aad",
            "username": "svc@contoso.com",
            "readonly": True,
            "tier": "reader",
            "maxRowsDefault": 50,
            "allowedTools": [
                "read_data",
                "list_tables",
                "describe_table",
                "search_schema",
                "test_connection",
                "list_environments",
            ],
            "deniedSchemas": ["audit_*"],
        },
    ],
}


class FakeClock:
    def __init__(self, start=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeTokenProvider:
    def __init__(self, clock: FakeClock, lifetime=timedelta(minutes=60)):
        self.clock = clock
        self.lifetime = lifetime
        self.calls = 0
        self.scopes: list[str] = []

    async def get_token(self, scope: str) -> AccessToken:
        self.calls += 1
        self.scopes.append(scope)
        return AccessToken(f"token-{self.calls}", self.clock() + self.lifetime)


class FakeCursor:
    def __init__(self, rows=None, rowcount=None):
        self.rows = list(rows or [])
        self.rowcount = len(self.rows) if rowcount is None else rowcount
        self.description = [("col",)] if rows is not None else None
        self.executed: list = []

    async def execute(self, query, params=None):
        self.executed.append((query, params))

    async def fetchone(self):
        return self.rows[0] if self.rows else None

    async def fetchall(self):
        return list(self.rows)

    async def fetchmany(self, size):
        return list(self.rows[:size])

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeConnection:
    """Scripted connection.

    ``execute`` returns ``results`` in order; ``cursor`` returns ``cursors`` in
    order. Statements passed to ``execute`` are recorded.
    """

    def __init__(self, results=None, cursors=None):
        self.results = list(results or [])
        self.cursors = list(cursors or [])
        self.statements: list = []
        self.transactions = 0

    async def execute(self, query, params=None):
        self.statements.append((query, params))
        if self.results:
            return self.results.pop(0)
        return FakeCursor()

    def cursor(self):
        return self.cursors.pop(0) if self.cursors else FakeCursor([])

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, params, connection=None):
        self.params = params
        self.closed = False
        self.conn = connection or FakeConnection()

    @asynccontextmanager
    async def connection(self):
        yield self.conn

    async def close(self):
        self.closed = True


class FakeConnector:
    """Stands in for open_pool. ``gate`` lets a test hold attempts in flight."""

    def __init__(self):
        self.calls = 0
        self.pools: list[FakePool] = []
        self.error: Exception = None
        self.gate: asyncio.Event = None
        self.connection = None

    async def __call__(self, params):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        pool = FakePool(params, self.connection)
        self.pools.append(pool)
        return pool


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.entries: list[dict] = []

    def emit(self, record):
        self.entries.append(json.loads(record.getMessage()))


@pytest.fixture
def document():
    return copy.deepcopy(DOCUMENT)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_provider(clock):
    return FakeTokenProvider(clock)


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def registry(document, connector, token_provider, clock):
    return EnvironmentRegistry.load(
        document, connector=connector, token_provider=token_provider, clock=clock
    )


@pytest.fixture
def audit_handler():
    return ListHandler()


@pytest.fixture
def audit(audit_handler):
    return AuditLogger(handler=audit_handler)


@pytest.fixture
def enforcer(registry, audit):
    return PolicyEnforcer(registry, audit, session_id="test-session")


@pytest.fixture
def sample_columns():
    return [
        {
            "column_name": "id",
            "data_type": "integer",
            "is_nullable": "NO",
            "column_default": "nextval('id_seq')",
        },
        {
            "column_name": "name",
            "data_type": "character varying",
            "is_nullable": "YES",
            "column_default": None,
        },
    ]


@pytest.fixture
def sample_rows():
    return [
        {"id": 1, "name": "Alice", "email": "alice@example.com"},
        {"id": 2, "name": "Bob", "email": "bob@example.com"},
    ]
