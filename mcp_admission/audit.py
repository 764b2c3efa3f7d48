"""
Execution audit trail.

Every attempted tool call produces one AuditEntry. AuditRecorder.record_async
hands the entry to a detached asyncio task and returns immediately:

- The task is not a child of the request: cancelling the request (client
  disconnect, server timeout) does not cancel the write.
- The task opens its own tenant session. The request's session may already
  be closed by the time the write runs.
- The write is bounded by `audit_timeout_seconds`. A write that fails or
  times out is logged and dropped; it is never retried and never reported
  back to the caller.

Entries for data-modifying tools are also sent to the compliance sink, the
`security_audit` logger that SIEM pipelines collect. The sink and the
database write are independent: one failing does not affect the other.
"""

import asyncio
import hashlib
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from mcp_admission.config import settings
from mcp_admission.database import AuditLogRecord, open_tenant_session

logger = logging.getLogger(__name__)

EVENT_TOOL_CALL = "tool_call"
EVENT_TOOL_ERROR = "tool_error"
EVENT_SQL_INJECTION_ATTEMPT = "sql_injection_attempt"

SECURITY_NORMAL = "normal"
SECURITY_WARNING = "warning"
SECURITY_CRITICAL = "critical"

# Admission denials: the caller asked for something it may not have.
UNAUTHORIZED_CODES = frozenset(
    {"authentication_required", "invalid_project_id", "tool_not_enabled", "app_not_installed"}
)


@dataclass
class AuditEntry:
    tenant_id: uuid.UUID | None
    tool_name: str
    user_id: str = ""
    user_email: str | None = None
    query_id: uuid.UUID | None = None
    request_params: dict[str, Any] | None = None
    row_count: int | None = None
    rows_affected: int | None = None
    duration_ms: int = 0
    is_modifying: bool = False
    was_successful: bool = True
    error_code: str | None = None
    error_message: str | None = None
    event_type: str = EVENT_TOOL_CALL
    security_level: str = SECURITY_NORMAL
    security_flags: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_record(self) -> AuditLogRecord:
        return AuditLogRecord(
            project_id=self.tenant_id,
            user_id=self.user_id,
            user_email=self.user_email,
            tool_name=self.tool_name,
            query_id=self.query_id,
            request_params=self.request_params,
            row_count=self.row_count,
            rows_affected=self.rows_affected,
            duration_ms=self.duration_ms,
            is_modifying=self.is_modifying,
            was_successful=self.was_successful,
            error_code=self.error_code,
            error_message=self.error_message,
            event_type=self.event_type,
            security_level=self.security_level,
            security_flags=list(self.security_flags),
            created_at=self.created_at,
        )


def classify_security(error_code: str | None, error_message: str | None) -> tuple[str, str, list[str]]:
    """
    Security classification of one call outcome.

    Returns (event_type, security_level, security_flags). Injection markers
    in the error are critical; admission denials and authentication
    failures are warnings flagged so that policy probing stands out from
    ordinary failures.
    """
    if error_code is None:
        return EVENT_TOOL_CALL, SECURITY_NORMAL, []

    text = f"{error_code} {error_message or ''}".lower()
    if "injection" in text or "security_violation" in text:
        return EVENT_SQL_INJECTION_ATTEMPT, SECURITY_CRITICAL, ["sql_injection_attempt"]
    if error_code in UNAUTHORIZED_CODES:
        return EVENT_TOOL_ERROR, SECURITY_WARNING, ["unauthorized_access"]
    if "authentication" in text or "unauthorized" in text:
        return EVENT_TOOL_ERROR, SECURITY_WARNING, ["auth_failure"]
    if "rate limit" in text:
        return EVENT_TOOL_ERROR, SECURITY_WARNING, ["rate_limit"]
    return EVENT_TOOL_ERROR, SECURITY_NORMAL, []


# ---------------------------------------------------------------------------
# Parameter sanitization
# ---------------------------------------------------------------------------

_SENSITIVE_KEY = re.compile(
    r"password|passwd|secret|token|api_?key|credential|private_?key|(^|_)ssn($|_)|credit_?card",
    re.IGNORECASE,
)

# SQL string literals, including '' escapes inside them.
_SQL_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")


def _is_sql_param(key: str) -> bool:
    lower = key.lower()
    return lower in ("sql", "query") or lower.endswith("_sql") or lower.endswith("_query")


def hash_sensitive_value(value: Any) -> str:
    digest = hashlib.sha256(str(value).encode("utf-8")).hexdigest()
    return "sha256:" + digest[:16]


def redact_sql_literals(sql: str) -> str:
    return _SQL_STRING_LITERAL.sub("'***'", sql)


def _sanitize_value(key: str, value: Any, max_length: int) -> Any:
    if _SENSITIVE_KEY.search(key):
        return hash_sensitive_value(value)
    if isinstance(value, str):
        if len(value) > max_length:
            value = value[:max_length] + "...[truncated]"
        if _is_sql_param(key):
            value = redact_sql_literals(value)
        return value
    if isinstance(value, dict):
        return {k: _sanitize_value(k, v, max_length) for k, v in value.items()}
    return value


def sanitize_params(params: Any, max_length: int | None = None) -> dict[str, Any] | None:
    """
    Prepare request arguments for storage.

    Sensitive keys are hashed, long strings truncated, and string literals in
    SQL-bearing keys replaced with '***'. Nested dicts keep their structure.
    """
    if not isinstance(params, dict) or not params:
        return None
    limit = max_length if max_length is not None else settings.audit_max_param_length
    return {key: _sanitize_value(key, value, limit) for key, value in params.items()}


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class AuditWriter(Protocol):
    async def write(self, entry: AuditEntry) -> None: ...


class ComplianceSink(Protocol):
    def record(self, entry: AuditEntry) -> None: ...


class DatabaseAuditWriter:
    """Persists entries to mcp_audit_log through a fresh tenant session."""

    def __init__(self, open_session=open_tenant_session):
        self._open_session = open_session

    async def write(self, entry: AuditEntry) -> None:
        tenant = await self._open_session(entry.tenant_id)
        try:
            tenant.session.add(entry.to_record())
            await tenant.session.commit()
        finally:
            await tenant.close()


class SecurityAuditor:
    """Compliance sink: structured events on the `security_audit` logger."""

    def __init__(self, audit_logger: logging.Logger | None = None):
        self.logger = audit_logger or logging.getLogger("security_audit")

    def record(self, entry: AuditEntry) -> None:
        self.logger.log(
            logging.INFO if entry.was_successful else logging.WARNING,
            "modifying_query_execution",
            extra={
                "log_data": {
                    "event_type": "modifying_query_execution",
                    "severity": "info" if entry.was_successful else "warning",
                    "timestamp": entry.created_at.isoformat(),
                    "project_id": str(entry.tenant_id),
                    "user_id": entry.user_id,
                    "user_email": entry.user_email,
                    "tool": entry.tool_name,
                    "query_id": str(entry.query_id) if entry.query_id else None,
                    "parameters": entry.request_params,
                    "rows_affected": entry.rows_affected,
                    "row_count": entry.row_count,
                    "success": entry.was_successful,
                    "error_message": entry.error_message,
                    "execution_time_ms": entry.duration_ms,
                    "security_level": entry.security_level,
                    "security_flags": entry.security_flags,
                }
            },
        )


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------


class AuditRecorder:
    def __init__(
        self,
        writer: AuditWriter | None = None,
        sink: ComplianceSink | None = None,
        timeout: float | None = None,
    ):
        self._writer = writer or DatabaseAuditWriter()
        self._sink = sink or SecurityAuditor()
        self._timeout = timeout if timeout is not None else settings.audit_timeout_seconds
        # Strong references: the event loop only keeps weak ones to tasks.
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def record_async(self, entry: AuditEntry) -> None:
        """Schedule the entry for writing and return immediately."""
        if entry.tenant_id is None:
            logger.warning(
                "Skipping audit entry: no project ID",
                extra={"log_data": {"tool": entry.tool_name, "user_id": entry.user_id}},
            )
            return

        task = asyncio.create_task(self._record(entry), name=f"audit:{entry.tool_name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _record(self, entry: AuditEntry) -> None:
        if entry.is_modifying:
            try:
                self._sink.record(entry)
            except Exception:
                logger.exception(
                    "Failed to send audit entry to compliance sink",
                    extra={"log_data": {"project_id": str(entry.tenant_id), "tool": entry.tool_name}},
                )

        try:
            await asyncio.wait_for(self._writer.write(entry), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Audit write timed out",
                extra={
                    "log_data": {
                        "project_id": str(entry.tenant_id),
                        "tool": entry.tool_name,
                        "timeout_seconds": self._timeout,
                    }
                },
            )
        except Exception:
            logger.exception(
                "Failed to record audit entry",
                extra={"log_data": {"project_id": str(entry.tenant_id), "tool": entry.tool_name}},
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for pending writes, cancelling whatever outlives the timeout."""
        if not self._tasks:
            return
        _, still_running = await asyncio.wait(
            set(self._tasks), timeout=timeout if timeout is not None else self._timeout
        )
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(
                "Abandoned pending audit writes at shutdown",
                extra={"log_data": {"count": len(still_running)}},
            )
