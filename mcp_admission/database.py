"""
Engine database: tables, async engine, and tenant-scoped sessions.

Every request that touches project data opens its own TenantSession. On
PostgreSQL the session sets `app.current_project_id`, which row-level
security policies use to scope every statement to one project. SQLite (used
for local development and tests) has no RLS; the tenant id is still carried
on the session and used in every query's WHERE clause.

Sessions are owned by exactly one request and closed exactly once. The
background audit writer opens its own session instead of reusing the
request's, because the request may have finished and closed its session
before the write runs.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from mcp_admission.config import settings
from mcp_admission.errors import SessionUnavailable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    default_datasource_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)


class Datasource(Base):
    __tablename__ = "datasources"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), index=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    # SQLAlchemy async URL of the customer database.
    url: Mapped[str] = mapped_column(Text)


class ToolGroupRecord(Base):
    __tablename__ = "mcp_tool_groups"

    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), primary_key=True)
    group_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    force_mode: Mapped[bool] = mapped_column(Boolean, default=False)
    options: Mapped[list] = mapped_column(JSON, default=list)
    custom_tools: Mapped[list] = mapped_column(JSON, default=list)


class InstalledApp(Base):
    __tablename__ = "installed_apps"

    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), primary_key=True)
    app_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    installed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ApprovedQuery(Base):
    __tablename__ = "approved_queries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    sql: Mapped[str] = mapped_column(Text)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    is_modifying: Mapped[bool] = mapped_column(Boolean, default=False)


class AuditLogRecord(Base):
    """One append-only row per attempted tool invocation."""

    __tablename__ = "mcp_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    user_id: Mapped[str] = mapped_column(String(255), default="")
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tool_name: Mapped[str] = mapped_column(String(128))
    query_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    request_params: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    row_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rows_affected: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    is_modifying: Mapped[bool] = mapped_column(Boolean, default=False)
    was_successful: Mapped[bool] = mapped_column(Boolean)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_type: Mapped[str] = mapped_column(String(32), default="tool_call")
    security_level: Mapped[str] = mapped_column(String(16), default="normal", index=True)
    security_flags: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)


# ---------------------------------------------------------------------------
# Engine lifecycle
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(database_url: str | None = None) -> AsyncEngine:
    """Create the process-wide engine. Replaces any previous one."""
    global _engine, _session_factory
    url = database_url or settings.database_url
    _engine = create_async_engine(url, pool_pre_ping=True)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    logger.info("Engine database configured", extra={"log_data": {"dialect": _engine.dialect.name}})
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        return init_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_engine()
    return _session_factory


async def create_schema() -> None:
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


# ---------------------------------------------------------------------------
# Tenant sessions
# ---------------------------------------------------------------------------


class TenantSession:
    """An AsyncSession bound to one project. close() is idempotent."""

    def __init__(self, session: AsyncSession, tenant_id: uuid.UUID):
        self.session = session
        self.tenant_id = tenant_id
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Finish closing even when the owning request is being cancelled.
        await asyncio.shield(self.session.close())


async def open_tenant_session(tenant_id: uuid.UUID) -> TenantSession:
    """
    Acquire a pooled connection scoped to one project.

    Raises:
        SessionUnavailable: the pool or the database could not hand out a
                            connection. This is a system error.
    """
    session = get_session_factory()()
    try:
        conn = await session.connection()
        if conn.dialect.name == "postgresql":
            await session.execute(
                text("SELECT set_config('app.current_project_id', :pid, false)"),
                {"pid": str(tenant_id)},
            )
    except BaseException as e:
        await asyncio.shield(session.close())
        if isinstance(e, Exception):
            raise SessionUnavailable(f"failed to acquire database connection: {e}") from e
        raise
    return TenantSession(session, tenant_id)
