"""
Statement execution against a project's default datasource.

The engine database only stores where a project's data lives (the
`datasources` table). DatasourceExecutor turns that URL into a SQLAlchemy
async engine, cached per datasource id, and runs tool statements on it.

Driver errors are not caught here. They travel up to the admission
middleware, where errors.classify() decides whether the caller gets to see
them.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from mcp_admission.access import ToolAccess
from mcp_admission.database import Datasource
from mcp_admission.errors import SystemBackendError

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    columns: list[str]
    rows: list[dict[str, Any]] = field(default_factory=list)
    truncated: bool = False

    @property
    def row_count(self) -> int:
        return len(self.rows)


@dataclass
class ExecuteResult:
    rows_affected: int
    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)


class DatasourceExecutor:
    def __init__(self):
        self._engines: dict[uuid.UUID, AsyncEngine] = {}

    async def _engine_for(self, access: ToolAccess) -> AsyncEngine:
        datasource_id = access.default_datasource_id
        if datasource_id is None:
            raise SystemBackendError("no default datasource configured for project")

        engine = self._engines.get(datasource_id)
        if engine is not None:
            return engine

        datasource = await access.tenant.session.get(Datasource, datasource_id)
        if datasource is None or datasource.project_id != access.tenant_id:
            raise SystemBackendError(f"datasource {datasource_id} not found")

        engine = create_async_engine(datasource.url, pool_pre_ping=True)
        existing = self._engines.setdefault(datasource_id, engine)
        if existing is not engine:
            # Another call created one while we were reading the datasource.
            await engine.dispose()
            return existing

        logger.info(
            "Datasource engine created",
            extra={
                "log_data": {
                    "datasource_id": str(datasource_id),
                    "dialect": engine.dialect.name,
                }
            },
        )
        return engine

    async def query(
        self,
        access: ToolAccess,
        sql: str,
        params: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> QueryResult:
        """Run a read-only statement, returning at most `limit` rows."""
        engine = await self._engine_for(access)
        async with engine.connect() as conn:
            result = await conn.execute(text(sql), params or {})
            columns = list(result.keys())
            if limit is None:
                rows = result.fetchall()
                truncated = False
            else:
                rows = result.fetchmany(limit + 1)
                truncated = len(rows) > limit
                rows = rows[:limit]
        return QueryResult(
            columns=columns,
            rows=[dict(zip(columns, row)) for row in rows],
            truncated=truncated,
        )

    async def execute(
        self, access: ToolAccess, sql: str, params: dict[str, Any] | None = None
    ) -> ExecuteResult:
        """Run a statement in its own transaction and commit it."""
        engine = await self._engine_for(access)
        async with engine.begin() as conn:
            result = await conn.execute(text(sql), params or {})
            if result.returns_rows:
                columns = list(result.keys())
                rows = [dict(zip(columns, row)) for row in result.fetchall()]
                return ExecuteResult(rows_affected=len(rows), columns=columns, rows=rows)
            return ExecuteResult(rows_affected=max(result.rowcount, 0))

    async def dispose(self) -> None:
        engines, self._engines = self._engines, {}
        for engine in engines.values():
            await engine.dispose()
