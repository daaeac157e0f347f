"""Policy enforcement around every operation call.

``PolicyEnforcer.wrap(operation)`` returns a ``GovernedOperation`` with the
same name, description and input model. Each call runs, in order:

1. resolve the environment (explicit argument, else the registry default)
2. snapshot its policy
3. evaluate the policy (deny, allow, readonly, scope, approval)
4. enrich the arguments with the environment name and snapshot
5. acquire a connection handle
6. invoke the operation
7. audit the outcome (skipped for auditLevel ``none``)

Rejections in steps 1-3 are returned as structured results. They never open
a connection, never reach the operation and are not audited. Connection
failures in step 5 become structured results and are audited. An unexpected
exception from the operation is audited and then re-raised.
"""
import logging
import time
import uuid
from typing import Any, Optional

import psycopg
from psycopg_pool import PoolTimeout

from sqlgate.audit import AuditLogger
from sqlgate.governance.policy import PolicySnapshot, evaluate_policy
from sqlgate.registry import EnvironmentRegistry
from sqlgate.tools.base import Operation
from sqlgate.utils.errors import (
    EnvironmentNotFound,
    ErrorCode,
    SqlGateError,
    failure,
    handle_error,
)

logger = logging.getLogger(__name__)


class GovernedOperation:
    """An operation whose calls go through a PolicyEnforcer."""

    def __init__(self, operation: Operation, enforcer: "PolicyEnforcer"):
        self.operation = operation
        self.enforcer = enforcer

    @property
    def name(self) -> str:
        return self.operation.name

    @property
    def description(self) -> str:
        return self.operation.description

    @property
    def capabilities(self):
        return self.operation.capabilities

    @property
    def input_model(self):
        return self.operation.input_model

    @property
    def annotations(self) -> dict[str, Any]:
        return self.operation.annotations

    async def run(self, args: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        return await self.enforcer.invoke(self.operation, args)


class PolicyEnforcer:
    def __init__(
        self,
        registry: EnvironmentRegistry,
        audit: AuditLogger,
        session_id: Optional[str] = None,
    ):
        self.registry = registry
        self.audit = audit
        self.session_id = session_id or str(uuid.uuid4())

    def wrap(self, operation: Operation) -> GovernedOperation:
        return GovernedOperation(operation, self)

    async def invoke(
        self, operation: Operation, args: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        args = dict(args or {})

        try:
            env = self.registry.resolve(args.get("environment"))
        except EnvironmentNotFound as e:
            return failure(e.code, str(e), e.hint)

        snapshot = PolicySnapshot.from_environment(env)
        rejection = evaluate_policy(
            operation.name, operation.capabilities, snapshot, args, self.registry
        )
        if rejection is not None:
            logger.info(
                f"Rejected '{operation.name}' in environment '{env.name}': "
                f"{rejection['error']}"
            )
            return rejection

        enriched = {**args, "environment": env.name, "environment_policy": snapshot}
        started = time.perf_counter()

        try:
            await self.registry.get_connection(env.name)
        except Exception as e:
            result = connection_failure(e, env.name)
            logger.warning(
                f"Connection for '{operation.name}' in environment '{env.name}' "
                f"failed: {result['error']}"
            )
            self._audit(operation, args, result, started, snapshot)
            return result

        try:
            result = await operation.run(enriched)
        except Exception as e:
            self._audit(
                operation,
                args,
                failure(ErrorCode.QUERY_FAILED, f"{type(e).__name__}: {e}"),
                started,
                snapshot,
            )
            logger.exception(f"Operation '{operation.name}' raised")
            raise

        self._audit(operation, args, result, started, snapshot)
        return result

    def _audit(
        self,
        operation: Operation,
        args: dict[str, Any],
        result: Any,
        started: float,
        snapshot: PolicySnapshot,
    ) -> None:
        self.audit.log_invocation(
            operation.name,
            args,
            result,
            (time.perf_counter() - started) * 1000,
            session_id=self.session_id,
            environment=snapshot.name,
            audit_level=snapshot.audit_level,
        )


def connection_failure(e: Exception, environment: str) -> dict[str, Any]:
    """Structured failure for an exception raised while acquiring a connection."""
    if isinstance(
        e, (SqlGateError, PoolTimeout, TimeoutError, psycopg.OperationalError)
    ):
        return handle_error(e)
    return failure(
        ErrorCode.CONNECTION_FAILED,
        f"Could not connect to environment '{environment}': {type(e).__name__}: {e}",
        "Use test_connection to check the environment, then retry.",
    )
