"""
Read-only access to per-project tool configuration.

The admission path reads three things through the request's tenant session:
tool group configuration, installed apps, and whether a default datasource
is configured. Writes to these tables belong to the admin API, not to this
layer.
"""

import uuid

from sqlalchemy import select

from mcp_admission.database import InstalledApp, Project, TenantSession, ToolGroupRecord
from mcp_admission.policy import GroupConfig


def _to_config(record: ToolGroupRecord) -> GroupConfig:
    return GroupConfig(
        enabled=bool(record.enabled),
        force_mode=bool(record.force_mode),
        options=frozenset(record.options or ()),
        custom_tools=frozenset(record.custom_tools or ()),
    )


class ConfigStore:
    """Tool group configuration per project and group."""

    async def get(self, tenant: TenantSession, group: str) -> GroupConfig | None:
        record = await tenant.session.get(ToolGroupRecord, (tenant.tenant_id, group))
        return _to_config(record) if record is not None else None

    async def get_all(self, tenant: TenantSession) -> dict[str, GroupConfig]:
        result = await tenant.session.scalars(
            select(ToolGroupRecord).where(ToolGroupRecord.project_id == tenant.tenant_id)
        )
        return {record.group_name: _to_config(record) for record in result}


class AppStore:
    """Optional apps installed per project."""

    async def is_installed(self, tenant: TenantSession, app_id: str) -> bool:
        record = await tenant.session.get(InstalledApp, (tenant.tenant_id, app_id))
        return record is not None

    async def installed(self, tenant: TenantSession) -> frozenset[str]:
        result = await tenant.session.scalars(
            select(InstalledApp.app_id).where(InstalledApp.project_id == tenant.tenant_id)
        )
        return frozenset(result)


async def get_default_datasource_id(tenant: TenantSession) -> uuid.UUID | None:
    return await tenant.session.scalar(
        select(Project.default_datasource_id).where(Project.id == tenant.tenant_id)
    )
