"""Environment configuration models and loading.

An environments document lists named connection targets together with the
governance rules for each. Documents are YAML or JSON; keys may be written in
camelCase (``allowedTools``) or snake_case (``allowed_tools``).

Secret placeholders of the form ``${secret:NAME}`` are resolved from process
environment variables when the document is loaded. Unknown names are left in
place verbatim and logged, so a missing secret fails visibly at connect time
instead of turning into an empty password.
"""
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Mapping, Optional, Union

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from sqlgate.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

SECRET_PATTERN = re.compile(r"\$\{secret:([^}]+)\}")

AAD_POSTGRES_SCOPE = "https://ossrdbms-aad.database.windows.net/.default"


class AuthMode(str, Enum):
    SQL = "sql"
    WINDOWS = "windows"
    AAD = "aad"


class AccessLevel(str, Enum):
    SERVER = "server"
    DATABASE = "database"


class AuditLevel(str, Enum):
    NONE = "none"
    BASIC = "basic"
    VERBOSE = "verbose"


class Tier(str, Enum):
    READER = "reader"
    WRITER = "writer"
    ADMIN = "admin"


class EnvironmentConfig(BaseModel):
    """A named connection target plus the governance rules applied to it."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        use_enum_values=False,
    )

    name: str = Field(..., min_length=1)
    description: Optional[str] = None

    # Connection
    server: str = Field(..., min_length=1)
    database: str = ""
    port: int = Field(default=5432, ge=1, le=65535)
    auth_mode: AuthMode = AuthMode.AAD
    username: Optional[str] = None
    password: Optional[str] = None
    domain: Optional[str] = None
    ssl_mode: str = "require"
    connection_timeout: int = Field(default=30, ge=1)
    token_scope: str = AAD_POSTGRES_SCOPE

    # Governance
    readonly: bool = False
    allowed_tools: list[str] = Field(default_factory=list)
    denied_tools: list[str] = Field(default_factory=list)
    max_rows_default: Optional[int] = Field(default=None, ge=1)
    require_approval: bool = False
    audit_level: AuditLevel = AuditLevel.BASIC

    # Server / database scope
    access_level: AccessLevel = AccessLevel.DATABASE
    allowed_databases: Union[Literal["*"], list[str], None] = None
    denied_databases: list[str] = Field(default_factory=list)

    # Schema scope (wildcard patterns matched against schema and schema.table)
    allowed_schemas: Optional[list[str]] = None
    denied_schemas: list[str] = Field(default_factory=list)

    tier: Optional[Tier] = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "EnvironmentConfig":
        if self.access_level == AccessLevel.DATABASE and not self.database.strip():
            raise ValueError(
                f"Environment '{self.name}' has accessLevel 'database' "
                "but no database configured"
            )
        overlap = sorted(set(self.allowed_tools) & set(self.denied_tools))
        if overlap:
            raise ValueError(
                f"Environment '{self.name}' lists tools in both allowedTools "
                f"and deniedTools: {', '.join(overlap)}"
            )
        return self


class EnvironmentsDocument(BaseModel):
    """Top-level environments document."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    default_environment: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "default_environment", "defaultEnvironment", "defaultEnvironmentName"
        ),
    )
    environments: list[EnvironmentConfig] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _check_names(self) -> "EnvironmentsDocument":
        seen: set[str] = set()
        for env in self.environments:
            if env.name in seen:
                raise ValueError(f"Duplicate environment name: '{env.name}'")
            seen.add(env.name)
        if self.default_environment and self.default_environment not in seen:
            raise ValueError(
                f"Default environment '{self.default_environment}' is not defined"
            )
        return self


def resolve_secrets(value: Any, environ: Optional[Mapping[str, str]] = None) -> Any:
    """Recursively replace ``${secret:NAME}`` placeholders in strings, dicts and lists."""
    if environ is None:
        environ = os.environ

    if isinstance(value, str):

        def _substitute(match: re.Match) -> str:
            secret_name = match.group(1)
            resolved = environ.get(secret_name)
            if resolved is None:
                logger.warning(
                    f"Secret '{secret_name}' not found in environment variables; "
                    "leaving placeholder in place"
                )
                return match.group(0)
            return resolved

        return SECRET_PATTERN.sub(_substitute, value)
    if isinstance(value, Mapping):
        return {k: resolve_secrets(v, environ) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_secrets(v, environ) for v in value]
    return value


def has_unresolved_secret(value: Optional[str]) -> bool:
    return bool(value) and SECRET_PATTERN.search(value) is not None


def read_document(path: Union[str, Path]) -> dict:
    """Read a YAML or JSON environments file (JSON is valid YAML)."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Environment config file not found: {config_path}")
    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Environment config {config_path} must contain a mapping at the top level"
        )
    return data


def parse_document(
    source: Union[Mapping[str, Any], str, Path],
    environ: Optional[Mapping[str, str]] = None,
) -> EnvironmentsDocument:
    """Parse a mapping or file into a validated document, resolving secrets first."""
    raw = read_document(source) if isinstance(source, (str, Path)) else dict(source)
    resolved = resolve_secrets(raw, environ)
    try:
        return EnvironmentsDocument.model_validate(resolved)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid environments configuration: {e}") from e
