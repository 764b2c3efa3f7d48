"""
Tests for the execution audit trail (mcp_admission/audit.py) and for the
audit behaviour of AdmissionMiddleware.

FakeWriter / FakeSink stand in for the database and the compliance logger
where a test needs to control timing or inject failures.
"""

import asyncio
import logging
import uuid
from types import SimpleNamespace

import pytest
from fastmcp.exceptions import ToolError
from mcp.types import CallToolRequestParams
from sqlalchemy import select

from mcp_admission.access import AdmissionGateway
from mcp_admission.audit import (
    AuditEntry,
    AuditRecorder,
    SecurityAuditor,
    classify_security,
    hash_sensitive_value,
    sanitize_params,
)
from mcp_admission.database import AuditLogRecord, get_session_factory
from mcp_admission.server import AdmissionMiddleware
from conftest import TEST_PROJECT_ID

PROJECT_UUID = uuid.UUID(TEST_PROJECT_ID)


class FakeWriter:
    def __init__(self, gate: asyncio.Event | None = None, fail: bool = False, hang: bool = False):
        self.gate = gate
        self.fail = fail
        self.hang = hang
        self.attempts = 0
        self.entries: list[AuditEntry] = []

    async def write(self, entry: AuditEntry) -> None:
        self.attempts += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("audit table unavailable")
        self.entries.append(entry)


class FakeSink:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.entries: list[AuditEntry] = []

    def record(self, entry: AuditEntry) -> None:
        if self.fail:
            raise RuntimeError("SIEM forwarder down")
        self.entries.append(entry)


def entry(**overrides) -> AuditEntry:
    values = {"tenant_id": PROJECT_UUID, "tool_name": "query", "user_id": "alice"}
    values.update(overrides)
    return AuditEntry(**values)


class TestSanitizeParams:
    def test_sensitive_keys_are_hashed(self):
        result = sanitize_params({"password": "hunter2", "api_key": "abc", "name": "orders"})

        assert result["password"] == hash_sensitive_value("hunter2")
        assert result["password"].startswith("sha256:")
        assert len(result["password"]) == len("sha256:") + 16
        assert result["api_key"] != "abc"
        assert result["name"] == "orders"

    def test_sql_literals_are_redacted(self):
        result = sanitize_params({"sql": "SELECT * FROM users WHERE email = 'bob@example.com' AND id = 4"})

        assert result["sql"] == "SELECT * FROM users WHERE email = '***' AND id = 4"

    def test_escaped_quotes_stay_inside_one_literal(self):
        result = sanitize_params({"custom_sql": "UPDATE t SET note = 'it''s fine'"})

        assert result["custom_sql"] == "UPDATE t SET note = '***'"

    def test_long_strings_are_truncated(self):
        result = sanitize_params({"message": "x" * 50}, max_length=10)

        assert result["message"] == "x" * 10 + "...[truncated]"

    def test_nested_dicts_are_sanitized(self):
        result = sanitize_params({"parameters": {"token": "t0k3n", "limit": 5}})

        assert result["parameters"]["token"].startswith("sha256:")
        assert result["parameters"]["limit"] == 5

    def test_empty_params_are_stored_as_null(self):
        assert sanitize_params({}) is None
        assert sanitize_params(None) is None


class TestSecurityClassification:
    def test_success_is_normal(self):
        assert classify_security(None, None) == ("tool_call", "normal", [])

    @pytest.mark.parametrize(
        "code", ["tool_not_enabled", "authentication_required", "app_not_installed", "invalid_project_id"]
    )
    def test_admission_denials_flag_unauthorized_access(self, code):
        assert classify_security(code, "denied") == ("tool_error", "warning", ["unauthorized_access"])

    def test_injection_marker_is_critical(self):
        event_type, level, flags = classify_security("security_violation", "possible SQL injection detected")

        assert event_type == "sql_injection_attempt"
        assert level == "critical"
        assert flags == ["sql_injection_attempt"]

    def test_rate_limit_is_a_warning(self):
        assert classify_security("internal_error", "rate limit exceeded") == ("tool_error", "warning", ["rate_limit"])

    def test_ordinary_failure_stays_normal(self):
        assert classify_security("unique_violation", "duplicate key value") == ("tool_error", "normal", [])


class TestAuditRecorder:
    async def test_entry_is_persisted_with_own_session(self, seed_project):
        await seed_project()
        recorder = AuditRecorder()

        recorder.record_async(
            entry(row_count=3, request_params={"sql": "SELECT 1"}, user_email="alice@example.com")
        )
        await recorder.drain()

        async with get_session_factory()() as session:
            records = (await session.scalars(select(AuditLogRecord))).all()

        assert len(records) == 1
        assert records[0].project_id == PROJECT_UUID
        assert records[0].tool_name == "query"
        assert records[0].row_count == 3
        assert records[0].was_successful is True
        assert records[0].request_params == {"sql": "SELECT 1"}
        assert records[0].user_email == "alice@example.com"
        assert records[0].event_type == "tool_call"
        assert records[0].security_level == "normal"
        assert records[0].security_flags == []

    async def test_record_async_returns_before_write_completes(self):
        gate = asyncio.Event()
        writer = FakeWriter(gate=gate)
        recorder = AuditRecorder(writer=writer, sink=FakeSink())

        recorder.record_async(entry())

        assert writer.entries == []
        assert recorder.pending == 1
        gate.set()
        await recorder.drain()
        assert len(writer.entries) == 1

    async def test_write_survives_cancellation_of_caller(self):
        gate = asyncio.Event()
        writer = FakeWriter(gate=gate)
        recorder = AuditRecorder(writer=writer, sink=FakeSink())
        scheduled = asyncio.Event()

        async def request():
            recorder.record_async(entry())
            scheduled.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(request())
        await scheduled.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        gate.set()
        await recorder.drain()

        assert writer.attempts == 1
        assert len(writer.entries) == 1

    async def test_entry_without_tenant_is_skipped(self, caplog):
        writer = FakeWriter()
        recorder = AuditRecorder(writer=writer, sink=FakeSink())

        with caplog.at_level(logging.WARNING):
            recorder.record_async(entry(tenant_id=None))

        assert recorder.pending == 0
        assert writer.attempts == 0
        assert "Skipping audit entry" in caplog.text

    async def test_timeout_is_logged_not_raised(self, caplog):
        recorder = AuditRecorder(writer=FakeWriter(hang=True), sink=FakeSink(), timeout=0.05)

        with caplog.at_level(logging.WARNING):
            recorder.record_async(entry())
            await recorder.drain(timeout=1.0)

        assert "Audit write timed out" in caplog.text
        assert recorder.pending == 0

    async def test_write_failure_is_logged_not_raised(self, caplog):
        recorder = AuditRecorder(writer=FakeWriter(fail=True), sink=FakeSink())

        with caplog.at_level(logging.ERROR):
            recorder.record_async(entry())
            await recorder.drain()

        assert "Failed to record audit entry" in caplog.text

    async def test_sink_failure_does_not_block_primary_write(self):
        writer = FakeWriter()
        recorder = AuditRecorder(writer=writer, sink=FakeSink(fail=True))

        recorder.record_async(entry(is_modifying=True, tool_name="execute"))
        await recorder.drain()

        assert len(writer.entries) == 1

    async def test_primary_failure_does_not_block_sink(self):
        sink = FakeSink()
        recorder = AuditRecorder(writer=FakeWriter(fail=True), sink=sink)

        recorder.record_async(entry(is_modifying=True, tool_name="execute"))
        await recorder.drain()

        assert len(sink.entries) == 1

    async def test_only_modifying_entries_reach_the_sink(self):
        sink = FakeSink()
        recorder = AuditRecorder(writer=FakeWriter(), sink=sink)

        recorder.record_async(entry(tool_name="query"))
        recorder.record_async(entry(tool_name="execute", is_modifying=True))
        await recorder.drain()

        assert [e.tool_name for e in sink.entries] == ["execute"]

    async def test_drain_cancels_stragglers(self):
        writer = FakeWriter(hang=True)
        recorder = AuditRecorder(writer=writer, sink=FakeSink(), timeout=60)

        recorder.record_async(entry())
        await recorder.drain(timeout=0.05)

        assert recorder.pending == 0


class TestSecurityAuditor:
    def test_emits_structured_event_on_security_audit_logger(self, caplog):
        with caplog.at_level(logging.INFO, logger="security_audit"):
            SecurityAuditor().record(
                entry(tool_name="execute", is_modifying=True, rows_affected=2, user_email="alice@example.com")
            )

        record = next(r for r in caplog.records if r.name == "security_audit")
        assert record.log_data["event_type"] == "modifying_query_execution"
        assert record.log_data["rows_affected"] == 2
        assert record.log_data["project_id"] == TEST_PROJECT_ID
        assert record.log_data["user_email"] == "alice@example.com"

    def test_failed_execution_is_a_warning(self, caplog):
        with caplog.at_level(logging.INFO, logger="security_audit"):
            SecurityAuditor().record(entry(tool_name="execute", is_modifying=True, was_successful=False))

        record = next(r for r in caplog.records if r.name == "security_audit")
        assert record.levelno == logging.WARNING


# ---------------------------------------------------------------------------
# Middleware: one audit attempt per tools/call, whatever happens
# ---------------------------------------------------------------------------


@pytest.fixture
def middleware_for(make_auth_header):
    def _middleware_for(writer: FakeWriter, **token_claims) -> AdmissionMiddleware:
        middleware = AdmissionMiddleware(
            gateway=AdmissionGateway(),
            recorder=AuditRecorder(writer=writer, sink=FakeSink()),
        )
        token_claims.setdefault("roles", ["admin"])
        header = make_auth_header(**token_claims)
        middleware._get_auth_header = lambda: header
        return middleware

    return _middleware_for


def call_context(name: str, arguments: dict | None = None) -> SimpleNamespace:
    return SimpleNamespace(message=CallToolRequestParams(name=name, arguments=arguments or {}))


class TestMiddlewareAudit:
    async def test_cancelled_call_is_audited_once(self, seed_project, middleware_for):
        await seed_project(groups={"developer": {"enabled": True}})
        writer = FakeWriter()
        middleware = middleware_for(writer, sub="alice")
        handler_started = asyncio.Event()

        async def call_next(context):
            handler_started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(
            middleware.on_call_tool(call_context("query", {"sql": "SELECT pg_sleep(60)"}), call_next)
        )
        await handler_started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await middleware.recorder.drain()

        assert writer.attempts == 1
        assert writer.entries[0].error_code == "cancelled"
        assert writer.entries[0].was_successful is False

    async def test_denied_call_is_audited(self, seed_project, middleware_for):
        await seed_project(groups={"developer": {"enabled": True}})
        writer = FakeWriter()
        middleware = middleware_for(writer, sub="alice")

        async def call_next(context):
            raise AssertionError("handler must not run for a denied call")

        with pytest.raises(ToolError, match="tool_not_enabled"):
            await middleware.on_call_tool(call_context("execute", {"sql": "DELETE FROM t"}), call_next)

        await middleware.recorder.drain()

        assert writer.attempts == 1
        audited = writer.entries[0]
        assert audited.error_code == "tool_not_enabled"
        assert audited.is_modifying is True
        assert audited.tenant_id == PROJECT_UUID
        assert audited.event_type == "tool_error"
        assert audited.security_level == "warning"
        assert audited.security_flags == ["unauthorized_access"]

    async def test_successful_call_is_audited(self, seed_project, middleware_for):
        await seed_project(groups={"developer": {"enabled": True}})
        writer = FakeWriter()
        middleware = middleware_for(writer, sub="alice", extra_claims={"email": "alice@example.com"})

        async def call_next(context):
            return "ok"

        assert await middleware.on_call_tool(call_context("echo", {"message": "hi"}), call_next) == "ok"
        await middleware.recorder.drain()

        assert writer.attempts == 1
        assert writer.entries[0].was_successful is True
        assert writer.entries[0].user_id == "alice"
        assert writer.entries[0].request_params == {"message": "hi"}
        assert writer.entries[0].user_email == "alice@example.com"
        assert writer.entries[0].security_level == "normal"
        assert writer.entries[0].security_flags == []

    async def test_system_error_is_opaque_and_audited(self, seed_project, middleware_for, caplog):
        await seed_project(groups={"developer": {"enabled": True}})
        writer = FakeWriter()
        middleware = middleware_for(writer, sub="alice")

        async def call_next(context):
            raise ConnectionResetError("connection reset by peer")

        with caplog.at_level(logging.ERROR):
            with pytest.raises(ToolError, match="^internal error$"):
                await middleware.on_call_tool(call_context("query", {"sql": "SELECT 1"}), call_next)

        await middleware.recorder.drain()

        assert "Tool call failed" in caplog.text
        assert writer.entries[0].error_code == "internal_error"

    async def test_user_role_probing_execute_is_flagged(self, seed_project, middleware_for):
        await seed_project(groups={"developer": {"enabled": True, "options": ["enable_execute"]}})
        writer = FakeWriter()
        middleware = middleware_for(writer, sub="bob", roles=["user"])

        async def call_next(context):
            raise AssertionError("handler must not run for a denied call")

        with pytest.raises(ToolError, match="tool_not_enabled"):
            await middleware.on_call_tool(call_context("execute", {"sql": "DROP TABLE customers"}), call_next)

        await middleware.recorder.drain()

        audited = writer.entries[0]
        assert audited.security_level == "warning"
        assert audited.security_flags == ["unauthorized_access"]
        assert audited.request_params == {"sql": "DROP TABLE customers"}
