"""sqlgate MCP server entry point.

One MCP tool per governed operation, plus route_request for free-text
requests and a few workflow prompts. Every tool call goes through the
policy enforcer; connections are opened lazily per environment and closed
on shutdown.
"""
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from mcp.server.fastmcp import FastMCP

from sqlgate.audit import AuditLogger
from sqlgate.config import ServerConfig, config
from sqlgate.governance.enforcer import GovernedOperation, PolicyEnforcer
from sqlgate.prompts.templates import register_prompts
from sqlgate.registry import EnvironmentRegistry
from sqlgate.routing.router import IntentRouter, RouteRequest
from sqlgate.tools.catalog import build_operations, build_routes
from sqlgate.utils.errors import handle_error

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _dump(result: dict) -> str:
    return json.dumps(result, indent=2, default=str)


def _tool_handler(governed: GovernedOperation):
    async def handler(params) -> str:
        try:
            result = await governed.run(params.model_dump(exclude_unset=True))
        except Exception as e:
            result = handle_error(e)
        return _dump(result)

    handler.__name__ = governed.name
    handler.__doc__ = governed.description
    handler.__annotations__ = {"params": governed.input_model, "return": str}
    return handler


def register_operation_tools(mcp: FastMCP, operations: list[GovernedOperation]):
    for governed in operations:
        mcp.add_tool(
            _tool_handler(governed),
            name=governed.name,
            description=governed.description,
            annotations=governed.annotations,
        )


def register_routing_tool(mcp: FastMCP, router: IntentRouter):

    @mcp.tool(
        name="route_request",
        annotations={
            "title": "Route Natural-Language Request",
            "readOnlyHint": False,
            "destructiveHint": router.allow_mutations,
            "idempotentHint": False,
            "openWorldHint": False,
        },
    )
    async def route_request(params: RouteRequest) -> str:
        """Pick and run the best operation for a plain-language request.

        The environment is taken from `environment` or inferred from the
        prompt ("in staging", "prod-db"). Structured inputs such as query,
        table_name, data, updates or where_clause go in tool_arguments.
        Operations that modify data need confirm_intent=true.
        """
        return _dump(await router.route(params))


def create_server(
    settings: Optional[ServerConfig] = None,
    registry: Optional[EnvironmentRegistry] = None,
    audit: Optional[AuditLogger] = None,
) -> FastMCP:
    settings = settings or config
    registry = registry or EnvironmentRegistry.from_config(settings)
    audit = audit or AuditLogger.from_config(settings)
    enforcer = PolicyEnforcer(registry, audit)

    operations = build_operations(registry, settings)
    router = IntentRouter(
        registry,
        enforcer,
        build_routes(operations),
        allow_mutations=not settings.readonly,
        require_confirmation=settings.require_mutation_confirmation,
    )

    @asynccontextmanager
    async def app_lifespan(server: FastMCP):
        logger.info(
            f"sqlgate started with {len(registry.list_environments())} environment(s), "
            f"default '{registry.default_environment}'"
        )
        try:
            yield {"registry": registry}
        finally:
            await registry.close_all()
            audit.close()
            logger.info("sqlgate stopped")

    mcp = FastMCP(
        "sqlgate",
        lifespan=app_lifespan,
        stateless_http=True,
        host="0.0.0.0",
        port=settings.app_port,
    )
    register_operation_tools(mcp, [enforcer.wrap(op) for op in operations])
    register_routing_tool(mcp, router)
    register_prompts(mcp)
    logger.info(
        f"Registered {len(operations)} governed tool(s)"
        + (" (server READONLY)" if settings.readonly else "")
    )
    return mcp


def main():
    mcp = create_server()
    mcp.run(transport=config.transport)


if __name__ == "__main__":
    main()
