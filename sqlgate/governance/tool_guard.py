"""Tool-level access control with per-environment allow/deny lists.

Tool groups are used by validate_environment_config to flag policies that
contradict themselves (e.g. a readonly environment allowing write tools).
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlgate.utils.errors import ErrorCode

logger = logging.getLogger(__name__)


TOOL_GROUPS: dict[str, list[str]] = {
    "data_read": [
        "read_data",
        "explain_query",
    ],
    "schema_read": [
        "list_tables",
        "describe_table",
        "search_schema",
        "list_databases",
        "profile_table",
        "inspect_relationships",
    ],
    "environment": [
        "list_environments",
        "validate_environment_config",
        "test_connection",
    ],
    "data_write": [
        "insert_data",
        "update_data",
        "delete_data",
    ],
    "schema_write": [
        "create_table",
        "create_index",
        "drop_index",
        "drop_table",
    ],
}

WRITE_TOOLS = frozenset(TOOL_GROUPS["data_write"])
SCHEMA_TOOLS = frozenset(TOOL_GROUPS["schema_write"])


@dataclass(frozen=True)
class ToolAccessDecision:
    allowed: bool
    code: Optional[ErrorCode] = None


@dataclass
class ToolAccessPolicy:
    """Resolved tool access policy for one environment."""

    allowed_tools: set[str] = field(default_factory=set)
    denied_tools: set[str] = field(default_factory=set)

    def check(self, tool_name: str) -> ToolAccessDecision:
        """Check if a specific tool is allowed.

        Logic:
        1. Tool in deny list -> TOOL_DENIED (deny wins over allow)
        2. Allow list has entries and tool is NOT in it -> TOOL_NOT_ALLOWED
        3. Otherwise -> allowed
        """
        if tool_name in self.denied_tools:
            return ToolAccessDecision(False, ErrorCode.TOOL_DENIED)
        if self.allowed_tools and tool_name not in self.allowed_tools:
            return ToolAccessDecision(False, ErrorCode.TOOL_NOT_ALLOWED)
        return ToolAccessDecision(True)

    def is_tool_allowed(self, tool_name: str) -> bool:
        return self.check(tool_name).allowed
