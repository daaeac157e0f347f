"""Reusable prompt templates for common governed-database workflows."""
from mcp.server.fastmcp import FastMCP


def register_prompts(mcp: FastMCP):

    @mcp.prompt("sqlgate_explore_environment")
    async def explore_environment() -> str:
        """Step-by-step guide for exploring a configured environment."""
        return """You are exploring a PostgreSQL database through sqlgate. Follow these steps:

1. **Pick an environment**: Call list_environments and note which are readonly
2. **Check connectivity**: Call test_connection for the environment you chose
3. **List tables**: Call list_tables (optionally with schema_name)
4. **Describe key tables**: Call describe_table for important tables
5. **Find related objects**: Use search_schema with table_pattern or column_pattern (e.g. '*_id')
6. **Follow foreign keys**: Call inspect_relationships for a table's inbound and outbound links
7. **Profile data**: Call profile_table for null rates, cardinality and frequent values

Objects outside the environment's schema scope are hidden from listings and
rejected with SCHEMA_ACCESS_DENIED. Do not try to work around that."""

    @mcp.prompt("sqlgate_safe_data_change")
    async def safe_data_change() -> str:
        """Guide for changing rows without surprises."""
        return """You are about to change data through sqlgate. Follow this workflow:

1. **Confirm the target**: Call list_environments. Never change data in an
   environment you did not mean to use; pass environment explicitly.
2. **Inspect first**: Use read_data to SELECT the rows your WHERE clause matches
3. **Preview**: Call update_data or delete_data with preview=true
   - NO_ROWS_MATCHED means the condition is wrong
   - TOO_MANY_ROWS means the condition is too broad; refine it before raising max_rows
4. **Apply**: Re-run without preview
   - If the result is APPROVAL_REQUIRED, show the provided_arguments to the user
     and only re-run with confirm=true after they agree
5. **Verify**: Use read_data again to check the result

ENVIRONMENT_READONLY is final for that environment. Do not retry elsewhere
unless the user asks for it."""

    @mcp.prompt("sqlgate_routing_guide")
    async def routing_guide() -> str:
        """How to phrase requests for route_request."""
        return """route_request maps a plain-language request onto one operation.

- Name the environment in the prompt ("in staging", "on prod-db") or pass environment
- Say the action plainly: "list tables", "describe table orders", "profile orders",
  "create index on orders"
- Put structured inputs in tool_arguments: query, table_name, data,
  updates, where_clause, columns, index_name
- Writes need confirm_intent=true; without it you get CONFIRMATION_REQUIRED
- NO_TOOL_MATCH means the request was too vague. Rephrase rather than guess
- MISSING_ARGUMENTS lists exactly what to add to tool_arguments

The response includes routed_tool, intent and reasoning so you can check the choice."""
