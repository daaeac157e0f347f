"""Operation interface shared by every leaf tool.

An operation declares its name, its capabilities (does it mutate data, change
schema, or is it a metadata-only call exempt from approval), and a pydantic
model describing its arguments. ``run(args)`` validates the raw argument dict
and returns a result dict ``{success, message?, error?, data?, ...}``.

Expected failures (bad arguments, statements the tool refuses, database
errors) come back as ``success: False``. Anything else propagates to the
policy enforcer.
"""
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import psycopg
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.json_schema import SkipJsonSchema

from sqlgate.governance.policy import PolicySnapshot
from sqlgate.utils.errors import ErrorCode, failure, handle_error

if TYPE_CHECKING:
    from sqlgate.registry import EnvironmentRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationCapabilities:
    mutates: bool = False
    schema_change: bool = False
    metadata_exempt: bool = False


class OperationInput(BaseModel):
    """Arguments every operation accepts."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    environment: Optional[str] = Field(
        default=None,
        description="Environment name. Defaults to the configured default environment.",
    )
    confirm: bool = Field(
        default=False,
        description="Set to true after reviewing the operation when the environment requires approval.",
    )
    # Filled in by the policy enforcer; never taken from the caller.
    environment_policy: SkipJsonSchema[Optional[PolicySnapshot]] = Field(
        default=None, exclude=True
    )


class Operation:
    """Base class for leaf operations."""

    name: str = ""
    title: str = ""
    description: str = ""
    capabilities = OperationCapabilities()
    input_model: type[OperationInput] = OperationInput

    def __init__(self, registry: "EnvironmentRegistry"):
        self.registry = registry

    @property
    def annotations(self) -> dict[str, Any]:
        writes = self.capabilities.mutates or self.capabilities.schema_change
        return {
            "title": self.title or self.name,
            "readOnlyHint": not writes,
            "destructiveHint": writes,
            "idempotentHint": not writes,
            "openWorldHint": False,
        }

    async def run(self, args: Optional[dict[str, Any]]) -> dict[str, Any]:
        try:
            params = self.input_model.model_validate(args or {})
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors(include_url=False)
            )
            return failure(
                ErrorCode.INVALID_ARGUMENTS,
                f"Invalid arguments for '{self.name}': {details}",
                "Fix the listed arguments and try again.",
            )
        try:
            return await self.execute(params)
        except psycopg.Error as e:
            logger.warning(f"{self.name} failed: {e}")
            return handle_error(e)

    async def execute(self, params: OperationInput) -> dict[str, Any]:
        raise NotImplementedError

    def policy_for(self, params: OperationInput) -> PolicySnapshot:
        """The enforcer's snapshot, or one built directly from the registry."""
        if params.environment_policy is not None:
            return params.environment_policy
        return PolicySnapshot.from_environment(self.registry.resolve(params.environment))


def success(message: str, **payload: Any) -> dict[str, Any]:
    return {"success": True, "message": message, **payload}
