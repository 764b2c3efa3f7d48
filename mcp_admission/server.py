"""
MCP server with per-project tool admission, using FastMCP v2.

This module creates and runs the MCP server with:
- AdmissionMiddleware: every tools/list and tools/call goes through the
  admission gateway, so the catalog a caller sees and the calls it may make
  come from the same decision
- Error classification: user-actionable SQL errors come back as structured
  JSON, infrastructure failures as an opaque "internal error"
- An audit entry for every attempted call, written in the background
- Health and readiness HTTP endpoints (for Kubernetes probes)
- Structured JSON logging
- Streamable HTTP transport

Architecture:
    The flow for a tools/call:

    1. Client sends HTTP request with "Authorization: Bearer <jwt>" header
    2. AdmissionMiddleware validates the JWT into Claims (or None)
    3. AdmissionGateway.admit() resolves the project, opens a tenant session,
       reads the tool configuration and asks the policy resolver
    4. On admission, the handler runs with the granted ToolAccess available
       through current_access()
    5. Failures are classified; the tenant session is released
    6. An AuditEntry is handed to the AuditRecorder, which writes it from a
       detached task with its own session and timeout

    tools/list runs steps 2-3 through AdmissionGateway.resolve_catalog() and
    filters the registered tools by the result.

Running the server:
    python -m mcp_admission.server

    This starts the server on http://0.0.0.0:8080 with:
    - MCP endpoint at /mcp (Streamable HTTP)
    - Health check at /health
    - Readiness check at /ready
"""

import asyncio
import json
import logging
import re
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Sequence

from fastmcp import FastMCP
from fastmcp.exceptions import NotFoundError, ToolError
from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import CallToolRequestParams, ListToolsRequest
from sqlalchemy import select, text
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from mcp_admission.access import AdmissionGateway, ToolAccess, parse_tenant_id
from mcp_admission.audit import AuditEntry, AuditRecorder, classify_security, sanitize_params
from mcp_admission.auth import AuthError, Claims, validate_token
from mcp_admission.config import settings
from mcp_admission.database import (
    ApprovedQuery,
    AuditLogRecord,
    create_schema,
    dispose_engine,
    get_engine,
)
from mcp_admission.datasource import DatasourceExecutor
from mcp_admission.errors import (
    AccessError,
    InvalidTenant,
    UserActionableBackendError,
    UserInputError,
    classify,
)
from mcp_admission.tools import get_tool

# ---------------------------------------------------------------------------
# Structured JSON Logging
# ---------------------------------------------------------------------------
# Logs go to stdout as one JSON object per line, so the cluster's logging
# agent can index fields like tenant_id, tool, decision and reason.


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "INFO",
         "logger": "mcp_admission.access", "message": "Tool call admitted",
         "tenant_id": "8d2e...", "tool": "query", "decision": "allowed"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Structured fields passed via logger.info("msg", extra={"log_data": {...}})
        if hasattr(record, "log_data"):
            log_entry.update(record.log_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(JSONLogFormatter())

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    handlers=[handler],
)
logger = logging.getLogger("mcp-server")


# ---------------------------------------------------------------------------
# Admission Middleware
# ---------------------------------------------------------------------------

_current_access: ContextVar[ToolAccess | None] = ContextVar("tool_access", default=None)


def current_access() -> ToolAccess:
    """The admission granted to the tool call being handled."""
    access = _current_access.get()
    if access is None:
        raise RuntimeError("tool handler called without an admission")
    return access


class AdmissionMiddleware(Middleware):
    """
    Tool admission, error classification and audit for every MCP tool request.

    - tools/list responses contain exactly the tools a tools/call would admit
    - tools/call requests go through AdmissionGateway.admit() before the
      handler runs, and every attempt (admitted or not) is audited
    """

    def __init__(self, gateway: AdmissionGateway | None = None, recorder: AuditRecorder | None = None):
        self.gateway = gateway or AdmissionGateway()
        self.recorder = recorder or AuditRecorder()

    def _get_auth_header(self) -> str | None:
        """
        Extract the Authorization header from the current HTTP request.

        Returns None if no HTTP request is available (e.g., stdio transport).
        """
        try:
            request = get_http_request()
            return request.headers.get("authorization")
        except RuntimeError:
            return None

    def _authenticate(self, request_id: str) -> Claims | None:
        """
        Validate the JWT and return its claims, or None when the caller
        could not be identified. An unidentified caller is not rejected
        here: it gets the unresolved-identity catalog.
        """
        try:
            claims = validate_token(self._get_auth_header())
        except AuthError as e:
            logger.warning(
                "Authentication failed",
                extra={
                    "log_data": {
                        "request_id": request_id,
                        "decision": "unresolved",
                        "reason": e.message,
                    }
                },
            )
            return None

        logger.debug(
            "Authentication successful",
            extra={
                "log_data": {
                    "request_id": request_id,
                    "subject": claims.subject,
                    "tenant_id": claims.tenant_id,
                    "decision": "authenticated",
                }
            },
        )
        return claims

    async def on_list_tools(
        self,
        context: MiddlewareContext[ListToolsRequest],
        call_next: CallNext[ListToolsRequest, Sequence[Tool]],
    ) -> Sequence[Tool]:
        """
        Intercept tools/list requests to show only admissible tools.

        When a client asks "what tools are available?", we:
        1. Authenticate the request (validate JWT, or fall back to no claims)
        2. Get the full list of registered tools from the server
        3. Resolve the caller's catalog through the admission gateway
        4. Keep only the registered tools that are in the catalog

        The catalog comes from the same policy decision that on_call_tool
        uses, so a listed tool is always callable and an unlisted one never
        is. If the project can't be resolved, the caller sees only health.
        """
        request_id = str(uuid.uuid4())[:8]

        # Step 1: Authenticate
        claims = self._authenticate(request_id)

        # Step 2: Get full tool list from the server
        all_tools = await call_next(context)

        # Steps 3-4: Filter by the caller's catalog
        allowed = set(await self.gateway.resolve_catalog(claims))
        visible = [tool for tool in all_tools if tool.name in allowed]

        logger.info(
            "Tool list filtered by admission policy",
            extra={
                "log_data": {
                    "request_id": request_id,
                    "subject": claims.subject if claims else None,
                    "tenant_id": claims.tenant_id if claims else None,
                    "total_tools": len(all_tools),
                    "visible_tools": [t.name for t in visible],
                    "decision": "filtered",
                }
            },
        )
        return visible

    async def on_call_tool(
        self,
        context: MiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        """
        Intercept tools/call requests to admit, classify and audit them.

        When a client invokes a tool, we:
        1. Authenticate the request (validate JWT, or fall back to no claims)
        2. Admit the call through AdmissionGateway.admit(), which opens the
           tenant session (health skips this step)
        3. Run the handler with the granted ToolAccess in current_access()
        4. Turn failures into responses: access denials and classified SQL
           errors as JSON payloads, anything else as an opaque
           "internal error" that is logged with its traceback
        5. Schedule one audit entry, then release the tenant session

        Step 5 runs on every path, including denial and cancellation.
        """
        request_id = str(uuid.uuid4())[:8]
        tool_name = context.message.name
        arguments = context.message.arguments or {}
        claims = self._authenticate(request_id)

        started = time.monotonic()
        access: ToolAccess | None = None
        error_code: str | None = None
        error_message: str | None = None
        log_data = {"request_id": request_id, "tool": tool_name}

        try:
            tool = get_tool(tool_name)
            if tool is None or not tool.always:
                access = await self.gateway.admit(claims, tool_name)
            token = _current_access.set(access)
            try:
                return await call_next(context)
            finally:
                _current_access.reset(token)

        except AccessError as e:
            error_code, error_message = e.code, e.message
            logger.info(
                "Tool call rejected",
                extra={"log_data": {**log_data, "code": e.code, "reason": e.message}},
            )
            raise ToolError(json.dumps(e.to_payload())) from e

        except UserInputError as e:
            error_code, error_message = e.code, e.message
            logger.info(
                "Tool call failed with invalid input",
                extra={"log_data": {**log_data, "code": e.code, "reason": e.message}},
            )
            raise

        except NotFoundError as e:
            error_code, error_message = "unknown_tool", str(e)
            raise

        except Exception as e:
            classified = classify(e)
            if classified is not None:
                error_code, error_message = classified.code, classified.message
                logger.info(
                    "Tool call failed with user-actionable error",
                    extra={"log_data": {**log_data, "code": classified.code, "reason": classified.message}},
                )
                actionable = UserActionableBackendError(classified.code, classified.message)
                raise ToolError(json.dumps(actionable.to_payload())) from e

            error_code, error_message = "internal_error", str(e)
            logger.exception("Tool call failed", extra={"log_data": log_data})
            raise ToolError("internal error") from e

        except asyncio.CancelledError:
            error_code, error_message = "cancelled", "request cancelled"
            raise

        finally:
            # Scheduled before the release below so that a cancelled release
            # can't skip it.
            self.recorder.record_async(
                self._audit_entry(
                    tool_name,
                    claims,
                    access,
                    arguments,
                    started,
                    error_code,
                    error_message,
                )
            )
            if access is not None:
                await access.release()

    def _audit_entry(
        self,
        tool_name: str,
        claims: Claims | None,
        access: ToolAccess | None,
        arguments: dict[str, Any],
        started: float,
        error_code: str | None,
        error_message: str | None,
    ) -> AuditEntry:
        if access is not None:
            tenant_id = access.tenant_id
        else:
            tenant_id = _tenant_or_none(claims)

        tool = get_tool(tool_name)
        is_modifying = access.modifies_data if access else bool(tool and tool.modifies_data)
        event_type, security_level, security_flags = classify_security(error_code, error_message)

        return AuditEntry(
            tenant_id=tenant_id,
            tool_name=tool_name,
            user_id=claims.subject if claims else "",
            user_email=claims.email if claims else None,
            query_id=access.query_id if access else None,
            request_params=sanitize_params(arguments),
            row_count=access.row_count if access else None,
            rows_affected=access.rows_affected if access else None,
            duration_ms=int((time.monotonic() - started) * 1000),
            is_modifying=is_modifying,
            was_successful=error_code is None,
            error_code=error_code,
            error_message=error_message,
            event_type=event_type,
            security_level=security_level,
            security_flags=security_flags,
        )


def _tenant_or_none(claims: Claims | None) -> uuid.UUID | None:
    if claims is None:
        return None
    try:
        return parse_tenant_id(claims)
    except InvalidTenant:
        return None


# ---------------------------------------------------------------------------
# Create the MCP server with the admission middleware
# ---------------------------------------------------------------------------

gateway = AdmissionGateway()
recorder = AuditRecorder()
executor = DatasourceExecutor()
admission = AdmissionMiddleware(gateway=gateway, recorder=recorder)

mcp = FastMCP(
    name="mcp-admission",
    instructions=(
        "Data access tools for one project's database. Which tools are "
        "available depends on the project's tool configuration and on who "
        "is calling. Errors come back as JSON with a stable 'code' field."
    ),
    middleware=[admission],
)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

_READ_ONLY_PREFIX = re.compile(r"^\s*(select|with)\b", re.IGNORECASE)
_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


def _clamp_limit(limit: int | None) -> int:
    if limit is None or limit <= 0:
        return settings.sample_row_limit
    return min(limit, settings.sample_row_limit)


@mcp.tool(description=get_tool("health").description)
async def health() -> dict:
    access = _current_access.get()
    return {
        "status": "healthy",
        "server": mcp.name,
        "authenticated": access is not None,
    }


@mcp.tool(description=get_tool("echo").description)
async def echo(message: str) -> dict:
    return {"echo": message}


@mcp.tool(description=get_tool("query").description)
async def query(sql: str, limit: int = 100) -> dict:
    if not _READ_ONLY_PREFIX.match(sql):
        raise UserInputError("invalid_query", "query only accepts SELECT or WITH statements; use execute for changes")

    access = current_access()
    result = await executor.query(access, sql, limit=_clamp_limit(limit))
    access.row_count = result.row_count
    return {
        "columns": result.columns,
        "rows": result.rows,
        "row_count": result.row_count,
        "truncated": result.truncated,
    }


@mcp.tool(description=get_tool("sample").description)
async def sample(table: str, limit: int = 10) -> dict:
    if not _TABLE_NAME.match(table):
        raise UserInputError("invalid_parameters", f"invalid table name: {table!r}")

    access = current_access()
    result = await executor.query(access, f"SELECT * FROM {table}", limit=_clamp_limit(limit))
    access.row_count = result.row_count
    return {"table": table, "columns": result.columns, "rows": result.rows}


@mcp.tool(description=get_tool("execute").description)
async def execute(sql: str) -> dict:
    if not sql.strip():
        raise UserInputError("invalid_parameters", "sql must not be empty")

    access = current_access()
    result = await executor.execute(access, sql)
    access.rows_affected = result.rows_affected
    return {
        "rows_affected": result.rows_affected,
        "columns": result.columns,
        "rows": result.rows,
    }


@mcp.tool(description=get_tool("list_approved_queries").description)
async def list_approved_queries() -> dict:
    access = current_access()
    records = await access.tenant.session.scalars(
        select(ApprovedQuery)
        .where(ApprovedQuery.project_id == access.tenant_id, ApprovedQuery.enabled.is_(True))
        .order_by(ApprovedQuery.name)
    )
    queries = [
        {
            "id": str(record.id),
            "name": record.name,
            "sql": record.sql,
            "is_modifying": record.is_modifying,
        }
        for record in records
    ]
    access.row_count = len(queries)
    return {"queries": queries}


@mcp.tool(description=get_tool("execute_approved_query").description)
async def execute_approved_query(query_id: str, parameters: dict | None = None) -> dict:
    try:
        parsed_id = uuid.UUID(query_id)
    except ValueError:
        raise UserInputError("invalid_parameters", f"invalid query ID: {query_id!r}")

    access = current_access()
    access.query_id = parsed_id
    record = await access.tenant.session.get(ApprovedQuery, parsed_id)
    if record is None or record.project_id != access.tenant_id or not record.enabled:
        raise UserInputError("query_not_found", f"approved query {query_id} not found")

    if record.is_modifying:
        access.modifies_data = True
        result = await executor.execute(access, record.sql, parameters)
        access.rows_affected = result.rows_affected
        return {"query": record.name, "rows_affected": result.rows_affected, "rows": result.rows}

    rows = await executor.query(access, record.sql, parameters, limit=_clamp_limit(None))
    access.row_count = rows.row_count
    return {
        "query": record.name,
        "columns": rows.columns,
        "rows": rows.rows,
        "row_count": rows.row_count,
        "truncated": rows.truncated,
    }


_HISTORY_TOOLS = ("query", "execute", "execute_approved_query")


@mcp.tool(description=get_tool("get_query_history").description)
async def get_query_history(limit: int = 20) -> dict:
    access = current_access()
    records = await access.tenant.session.scalars(
        select(AuditLogRecord)
        .where(
            AuditLogRecord.project_id == access.tenant_id,
            AuditLogRecord.user_id == access.claims.subject,
            AuditLogRecord.tool_name.in_(_HISTORY_TOOLS),
        )
        .order_by(AuditLogRecord.created_at.desc(), AuditLogRecord.id.desc())
        .limit(_clamp_limit(limit))
    )
    history = [
        {
            "tool": record.tool_name,
            "query_id": str(record.query_id) if record.query_id else None,
            "params": record.request_params,
            "row_count": record.row_count,
            "rows_affected": record.rows_affected,
            "duration_ms": record.duration_ms,
            "success": record.was_successful,
            "error_code": record.error_code,
            "created_at": record.created_at.isoformat() if record.created_at else None,
        }
        for record in records
    ]
    access.row_count = len(history)
    return {"history": history}


# ---------------------------------------------------------------------------
# Health and Readiness Endpoints
# ---------------------------------------------------------------------------
# Plain HTTP endpoints for Kubernetes probes, not MCP. No authentication.


@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> Response:
    """Liveness probe: is the server process alive and responsive?"""
    return JSONResponse({"status": "healthy"})


@mcp.custom_route("/ready", methods=["GET"])
async def readiness_check(request: Request) -> Response:
    """Readiness probe: can the engine database be reached?"""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Readiness check failed")
        return JSONResponse(
            {"status": "not_ready", "reason": "database unavailable"},
            status_code=503,
        )

    return JSONResponse({"status": "ready"})


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------


async def serve() -> None:
    await create_schema()
    logger.info(
        "Starting MCP server on %s:%d (transport=streamable-http)",
        settings.host,
        settings.port,
    )
    try:
        await mcp.run_async(
            transport="streamable-http",
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level,
        )
    finally:
        await recorder.drain()
        await executor.dispose()
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(serve())
