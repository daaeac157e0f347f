"""Audit logging of tool invocations as JSON lines.

Entries are written through a ``logging`` handler so each record is emitted
under the handler lock (no interleaved partial lines between concurrent
writers). Nothing here raises into the caller: serialization or I/O problems
are reported through the module logger and the entry is dropped.
"""
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel

from sqlgate.environments import AuditLevel

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = (
    "password",
    "secret",
    "token",
    "key",
    "authorization",
    "auth",
    "credential",
)
MAX_ARGUMENT_LENGTH = 500
MAX_RESULT_ITEMS = 10
MAX_RESULT_CHARS = 10000


@dataclass
class AuditEntry:
    timestamp: str
    tool_name: str
    environment: Optional[str]
    result: dict[str, Any]
    duration_ms: int
    session_id: Optional[str] = None
    arguments: Optional[dict[str, Any]] = None

    def to_json(self) -> str:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(data, default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class AuditLogger:
    """Writes one JSON line per tool invocation to an audit file."""

    def __init__(
        self,
        path: Optional[str] = None,
        enabled: bool = True,
        redact_sensitive: bool = True,
        handler: Optional[logging.Handler] = None,
    ):
        self.enabled = enabled
        self.redact_sensitive = redact_sensitive
        self._handler = handler
        if self.enabled and self._handler is None and path:
            log_path = Path(path).resolve()
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._handler = logging.FileHandler(log_path, encoding="utf-8", delay=True)
        if self._handler is not None:
            self._handler.setFormatter(logging.Formatter("%(message)s"))

    @classmethod
    def from_config(cls, settings) -> "AuditLogger":
        return cls(
            path=settings.audit_log_path,
            enabled=settings.audit_enabled,
            redact_sensitive=settings.audit_redact_sensitive,
        )

    def redact_args(self, args: dict[str, Any]) -> dict[str, Any]:
        """Replace sensitive values with [REDACTED] and truncate very long strings."""
        if not self.redact_sensitive:
            return dict(args)
        redacted = {}
        for key, value in args.items():
            if any(s in key.lower() for s in SENSITIVE_KEYS):
                redacted[key] = "[REDACTED]"
            elif isinstance(value, str) and len(value) > MAX_ARGUMENT_LENGTH:
                redacted[key] = value[:MAX_ARGUMENT_LENGTH] + "... [TRUNCATED]"
            else:
                redacted[key] = value
        return redacted

    def write(self, entry: AuditEntry) -> None:
        if not self.enabled or self._handler is None:
            return
        try:
            record = logging.LogRecord(
                name=__name__,
                level=logging.INFO,
                pathname=__file__,
                lineno=0,
                msg=entry.to_json(),
                args=None,
                exc_info=None,
            )
            # Handler.handle takes the handler lock; emit errors go to handleError
            self._handler.handle(record)
        except Exception:
            logger.exception(f"Failed to write audit entry for '{entry.tool_name}'")

    def log_invocation(
        self,
        tool_name: str,
        args: Optional[dict[str, Any]],
        result: Any,
        duration_ms: float,
        *,
        session_id: Optional[str] = None,
        environment: Optional[str] = None,
        audit_level: AuditLevel = AuditLevel.BASIC,
    ) -> None:
        """Record one invocation. ``none`` skips, ``basic`` omits arguments/data."""
        if audit_level == AuditLevel.NONE:
            return
        try:
            result = result if isinstance(result, dict) else {}
            summary: dict[str, Any] = {
                "success": bool(result.get("success", False)),
            }
            record_count = result.get("record_count", result.get("rows_affected"))
            if record_count is not None:
                summary["record_count"] = record_count
            if result.get("error"):
                summary["error"] = result["error"]

            arguments = None
            if audit_level == AuditLevel.VERBOSE:
                arguments = self.redact_args(args or {})
                data = _truncate_result_data(result.get("data"))
                if data is not None:
                    summary["data"] = data

            entry = AuditEntry(
                timestamp=datetime.now(timezone.utc).isoformat(),
                tool_name=tool_name,
                environment=environment,
                arguments=arguments,
                result=summary,
                duration_ms=round(duration_ms),
                session_id=session_id,
            )
        except Exception:
            logger.exception(f"Failed to build audit entry for '{tool_name}'")
            return
        self.write(entry)

    def close(self):
        if self._handler is not None:
            self._handler.close()


def _truncate_result_data(data: Any) -> Any:
    if not data:
        return None
    if isinstance(data, list):
        if len(data) > MAX_RESULT_ITEMS:
            return {
                "_truncated": True,
                "_total_count": len(data),
                "items": data[:MAX_RESULT_ITEMS],
            }
        return data
    serialized = json.dumps(data, default=_json_default)
    if len(serialized) > MAX_RESULT_CHARS:
        return {
            "_truncated": True,
            "_original_size": len(serialized),
            "preview": serialized[:1000] + "...",
        }
    return data
