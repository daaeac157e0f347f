"""Environment registry: immutable environment configs plus live connection handles.

Each environment gets at most one psycopg async pool, opened lazily on first
use and owned exclusively by the registry. Handles authenticated with Azure AD
tokens carry an expiry; a handle within ``EXPIRY_MARGIN`` of expiry is treated
as stale and replaced on the next request.

Per environment the connection moves through::

    Absent -> Connecting -> Ready -> Expiring -> Connecting (replace) -> ... -> Closed

Concurrent ``get_connection`` calls for one environment share a single
in-flight connect attempt. A failed attempt leaves nothing cached.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from types import MappingProxyType
from typing import Any, AsyncGenerator, Awaitable, Callable, Mapping, Optional, Union

import psycopg
from psycopg.rows import dict_row
from psycopg.sql import SQL, Composable
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from sqlgate.auth import AzureTokenProvider, ConnectionParams, build_connection_params
from sqlgate.config import ServerConfig, config
from sqlgate.environments import (
    AccessLevel,
    EnvironmentConfig,
    EnvironmentsDocument,
    parse_document,
)
from sqlgate.governance.patterns import matches, matches_any
from sqlgate.utils.errors import (
    ConfigurationError,
    ConnectionTimeout,
    EnvironmentNotFound,
    RegistryClosed,
)

logger = logging.getLogger(__name__)

EXPIRY_MARGIN = timedelta(minutes=2)

Clock = Callable[[], datetime]
Connector = Callable[[ConnectionParams], Awaitable[Any]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _tagged(query: Union[str, Composable], tool_name: Optional[str]):
    """Prefix a statement with a comment naming the tool that issued it."""
    if not tool_name:
        return query
    tag = f"/* sqlgate:{tool_name} */ "
    if isinstance(query, Composable):
        return SQL(tag) + query
    return tag + query


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[str] = None


@dataclass
class ConnectionHandle:
    """A pooled connection for one environment."""

    environment: str
    pool: Any
    opened_at: datetime
    expires_on: Optional[datetime] = None
    _closed: bool = field(default=False, repr=False)

    @property
    def connected(self) -> bool:
        return not self._closed and not getattr(self.pool, "closed", False)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await self.pool.close()


async def open_pool(
    params: ConnectionParams, settings: ServerConfig = config
) -> AsyncConnectionPool:
    """Open a psycopg pool and wait until its first connection is established."""
    pool = AsyncConnectionPool(
        conninfo=params.conninfo,
        min_size=1,
        max_size=settings.pool_max_size,
        open=False,
        name=f"sqlgate-{params.environment}",
        kwargs={"row_factory": dict_row, "autocommit": True},
        check=AsyncConnectionPool.check_connection,
        max_lifetime=settings.pool_max_lifetime,
        max_idle=settings.pool_max_idle,
        reconnect_timeout=params.timeout,
    )
    try:
        await pool.open(wait=True, timeout=params.timeout)
    except BaseException:
        await pool.close()
        raise
    return pool


class EnvironmentRegistry:
    """Owns environment configurations and their connection lifecycle."""

    def __init__(
        self,
        document: EnvironmentsDocument,
        *,
        connector: Optional[Connector] = None,
        token_provider: Optional[AzureTokenProvider] = None,
        clock: Clock = utc_now,
        expiry_margin: timedelta = EXPIRY_MARGIN,
        settings: Optional[ServerConfig] = None,
    ):
        self._environments: Mapping[str, EnvironmentConfig] = MappingProxyType(
            {env.name: env for env in document.environments}
        )
        self._default = document.default_environment
        self._connector = connector or partial(open_pool, settings=settings or config)
        self._token_provider = token_provider or AzureTokenProvider()
        self._clock = clock
        self._expiry_margin = expiry_margin

        self._handles: dict[str, ConnectionHandle] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._closed = False

        logger.info(f"Loaded {len(self._environments)} environment(s)")

    @classmethod
    def load(
        cls, source: Union[Mapping[str, Any], str], **kwargs
    ) -> "EnvironmentRegistry":
        """Build a registry from a mapping or a YAML/JSON file path."""
        return cls(parse_document(source), **kwargs)

    @classmethod
    def from_config(cls, settings: ServerConfig = config, **kwargs) -> "EnvironmentRegistry":
        """Build a registry from process configuration.

        Uses ENVIRONMENTS_CONFIG_PATH when set, otherwise a single ``default``
        environment from SERVER_NAME / DATABASE_NAME.
        """
        kwargs.setdefault("settings", settings)
        if settings.environments_config_path:
            return cls.load(settings.environments_config_path, **kwargs)
        fallback = settings.fallback_document()
        if fallback is None:
            raise ConfigurationError(
                "No environment config file provided and SERVER_NAME/DATABASE_NAME "
                "env vars not set"
            )
        logger.info("Loading default environment from environment variables")
        return cls.load(fallback, **kwargs)

    # ── Configuration lookups ──────────────────────────────────────────

    @property
    def default_environment(self) -> Optional[str]:
        if self._default:
            return self._default
        if "default" in self._environments:
            return "default"
        return None

    @property
    def clock(self) -> Clock:
        return self._clock

    def list_environments(self) -> list[EnvironmentConfig]:
        return list(self._environments.values())

    def resolve(self, name: Optional[str] = None) -> EnvironmentConfig:
        """Return the named environment, falling back to the default."""
        target = name or self._default or "default"
        env = self._environments.get(target)
        if env is None:
            raise EnvironmentNotFound(
                f"Environment '{target}' not found. "
                f"Available: {', '.join(self._environments)}"
            )
        return env

    def is_database_allowed(
        self, environment: Optional[str], database: str
    ) -> AccessDecision:
        """Check database scope.

        database-level access: only the configured database.
        server-level access: deny list first, then allow list ("*" or names).
        """
        env = self.resolve(environment)
        requested = database.lower()

        if env.access_level == AccessLevel.DATABASE:
            if requested != env.database.lower():
                return AccessDecision(
                    False,
                    f"Environment '{env.name}' has database-level access and is "
                    f"restricted to database '{env.database}'. Cannot access '{database}'.",
                )
            return AccessDecision(True)

        if any(db.lower() == requested for db in env.denied_databases):
            return AccessDecision(
                False,
                f"Database '{database}' is in the denied list for environment '{env.name}'.",
            )

        allowed = env.allowed_databases
        if allowed == "*" or not allowed:
            return AccessDecision(True)
        if not any(db.lower() == requested for db in allowed):
            return AccessDecision(
                False,
                f"Database '{database}' is not in the allowed list for environment "
                f"'{env.name}'. Allowed: {', '.join(allowed)}.",
            )
        return AccessDecision(True)

    def is_schema_allowed(
        self, environment: Optional[str], schema: str, table: Optional[str] = None
    ) -> AccessDecision:
        """Check a schema (or schema.table) reference against wildcard patterns."""
        env = self.resolve(environment)
        full_ref = f"{schema}.{table}" if table else schema

        for pattern in env.denied_schemas:
            if matches(full_ref, pattern) or matches(schema, pattern):
                return AccessDecision(
                    False,
                    f"Schema/table '{full_ref}' matches denied pattern '{pattern}' "
                    f"in environment '{env.name}'.",
                )

        if env.allowed_schemas:
            if not (
                matches_any(full_ref, env.allowed_schemas)
                or matches_any(schema, env.allowed_schemas)
            ):
                return AccessDecision(
                    False,
                    f"Schema/table '{full_ref}' does not match any allowed pattern in "
                    f"environment '{env.name}'. Allowed: {', '.join(env.allowed_schemas)}.",
                )
        return AccessDecision(True)

    # ── Connection lifecycle ───────────────────────────────────────────

    def _is_fresh(self, handle: ConnectionHandle) -> bool:
        if not handle.connected:
            return False
        if handle.expires_on is None:
            return True
        return handle.expires_on > self._clock() + self._expiry_margin

    async def get_connection(self, name: Optional[str] = None) -> ConnectionHandle:
        """Return a live handle for the environment, connecting if needed.

        Callers arriving while a connect is in flight await the same attempt
        and observe the same handle or the same exception.
        """
        env = self.resolve(name)
        async with self._lock:
            if self._closed:
                raise RegistryClosed("Environment registry is closed")
            cached = self._handles.get(env.name)
            if cached is not None and self._is_fresh(cached):
                return cached
            task = self._inflight.get(env.name)
            if task is None:
                task = asyncio.create_task(
                    self._connect(env), name=f"sqlgate-connect-{env.name}"
                )
                self._inflight[env.name] = task
        # shield: one caller being cancelled must not abort the shared attempt
        return await asyncio.shield(task)

    async def _connect(self, env: EnvironmentConfig) -> ConnectionHandle:
        try:
            params = await build_connection_params(env, self._token_provider, self._clock)
            try:
                pool = await asyncio.wait_for(
                    self._connector(params), timeout=params.timeout
                )
            except (asyncio.TimeoutError, PoolTimeout) as e:
                raise ConnectionTimeout(
                    f"Timed out after {params.timeout}s connecting to environment "
                    f"'{env.name}' ({env.server}/{env.database})"
                ) from e
            handle = ConnectionHandle(
                environment=env.name,
                pool=pool,
                opened_at=self._clock(),
                expires_on=params.expires_on,
            )
        except BaseException:
            async with self._lock:
                self._inflight.pop(env.name, None)
                stale = self._handles.pop(env.name, None)
            if stale is not None:
                await self._close_quietly(stale)
            logger.warning(f"Connection attempt for environment '{env.name}' failed")
            raise

        async with self._lock:
            self._inflight.pop(env.name, None)
            shutting_down = self._closed
            previous = None
            if not shutting_down:
                previous = self._handles.get(env.name)
                self._handles[env.name] = handle

        if shutting_down:
            await self._close_quietly(handle)
            raise RegistryClosed("Environment registry closed while connecting")
        if previous is not None:
            await self._close_quietly(previous)
            logger.info(f"Replaced stale connection for environment '{env.name}'")
        else:
            logger.info(f"Connected to environment '{env.name}'")
        return handle

    async def _close_quietly(self, handle: ConnectionHandle):
        try:
            await handle.close()
        except Exception as e:
            logger.warning(
                f"Error closing connection for environment '{handle.environment}': {e}"
            )

    async def close_all(self):
        """Close every cached handle. The registry refuses new connections afterwards."""
        async with self._lock:
            self._closed = True
            handles = list(self._handles.values())
            self._handles.clear()
            pending = list(self._inflight.values())

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for handle in handles:
            await self._close_quietly(handle)
            logger.info(f"Closed connection for environment '{handle.environment}'")

    # ── Query helpers for leaf operations ──────────────────────────────

    @asynccontextmanager
    async def connection(
        self, name: Optional[str] = None
    ) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow one connection from the environment's pool."""
        handle = await self.get_connection(name)
        async with handle.pool.connection() as conn:
            yield conn

    async def execute_query(
        self,
        environment: Optional[str],
        sql: Union[str, Composable],
        params: Optional[Union[tuple, dict]] = None,
        max_rows: Optional[int] = None,
        tool_name: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Execute a statement (read-write) and return rows as dicts."""
        tagged_sql = _tagged(sql, tool_name)
        async with self.connection(environment) as conn:
            async with conn.cursor() as cur:
                await cur.execute(tagged_sql, params)
                if cur.description:
                    rows = (
                        await cur.fetchmany(max_rows) if max_rows else await cur.fetchall()
                    )
                    return [dict(row) for row in rows]
                return [{"affected_rows": cur.rowcount}]

    async def execute_readonly(
        self,
        environment: Optional[str],
        sql: Union[str, Composable],
        params: Optional[Union[tuple, dict]] = None,
        max_rows: Optional[int] = None,
        tool_name: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Execute a query inside a READ ONLY transaction."""
        tagged_sql = _tagged(sql, tool_name)
        async with self.connection(environment) as conn:
            async with conn.transaction():
                await conn.execute("SET TRANSACTION READ ONLY")
                async with conn.cursor() as cur:
                    await cur.execute(tagged_sql, params)
                    if cur.description:
                        rows = (
                            await cur.fetchmany(max_rows)
                            if max_rows
                            else await cur.fetchall()
                        )
                        return [dict(row) for row in rows]
                    return []
