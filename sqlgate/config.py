"""Configuration for the sqlgate MCP server.

Process-level settings come from environment variables. Per-environment
connection targets and governance rules live in the environments document
(see sqlgate/environments.py); when no document is configured a single
``default`` environment is built from ``SERVER_NAME`` / ``DATABASE_NAME``.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Optional


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass
class ServerConfig:
    """Server configuration loaded from environment variables."""

    # Environments document (YAML or JSON)
    environments_config_path: str = field(
        default_factory=lambda: os.environ.get("ENVIRONMENTS_CONFIG_PATH", "")
    )

    # Single-environment fallback
    server_name: str = field(default_factory=lambda: os.environ.get("SERVER_NAME", ""))
    database_name: str = field(
        default_factory=lambda: os.environ.get("DATABASE_NAME", "")
    )
    port: int = field(default_factory=lambda: int(os.environ.get("SQL_PORT", "5432")))
    auth_mode: str = field(
        default_factory=lambda: os.environ.get("SQL_AUTH_MODE", "aad").lower()
    )
    username: str = field(default_factory=lambda: os.environ.get("SQL_USERNAME", ""))
    password: str = field(default_factory=lambda: os.environ.get("SQL_PASSWORD", ""))
    domain: str = field(default_factory=lambda: os.environ.get("SQL_DOMAIN", ""))
    connection_timeout: int = field(
        default_factory=lambda: int(os.environ.get("CONNECTION_TIMEOUT", "30"))
    )
    readonly: bool = field(default_factory=lambda: _env_flag("READONLY"))

    # Routing
    require_mutation_confirmation: bool = field(
        default_factory=lambda: _env_flag("REQUIRE_MUTATION_CONFIRMATION", "true")
    )

    # Audit
    audit_enabled: bool = field(
        default_factory=lambda: _env_flag("AUDIT_LOGGING", "true")
    )
    audit_log_path: str = field(
        default_factory=lambda: os.environ.get(
            "AUDIT_LOG_PATH", os.path.join("logs", "audit.jsonl")
        )
    )
    audit_redact_sensitive: bool = field(
        default_factory=lambda: _env_flag("AUDIT_REDACT_SENSITIVE", "true")
    )

    # Safety
    max_rows: int = field(
        default_factory=lambda: int(os.environ.get("SQLGATE_MAX_ROWS", "1000"))
    )

    # Pool settings (one pool per environment)
    pool_max_size: int = field(
        default_factory=lambda: int(os.environ.get("SQLGATE_POOL_MAX", "5"))
    )
    pool_max_lifetime: int = field(
        default_factory=lambda: int(os.environ.get("SQLGATE_POOL_MAX_LIFETIME", "3600"))
    )
    pool_max_idle: int = field(
        default_factory=lambda: int(os.environ.get("SQLGATE_POOL_MAX_IDLE", "300"))
    )

    # Server transport
    app_port: int = field(default_factory=lambda: int(os.environ.get("APP_PORT", "8000")))
    transport: str = field(
        default_factory=lambda: os.environ.get("SQLGATE_TRANSPORT", "stdio")
    )

    def fallback_document(self) -> Optional[dict[str, Any]]:
        """Build a one-environment document from env vars, or None if unset."""
        if not self.server_name or not self.database_name:
            return None
        env: dict[str, Any] = {
            "name": "default",
            "server": self.server_name,
            "database": self.database_name,
            "port": self.port,
            "authMode": self.auth_mode,
            "connectionTimeout": self.connection_timeout,
            "readonly": self.readonly,
        }
        if self.username:
            env["username"] = self.username
        if self.password:
            env["password"] = self.password
        if self.domain:
            env["domain"] = self.domain
        return {"defaultEnvironment": "default", "environments": [env]}


config = ServerConfig()
