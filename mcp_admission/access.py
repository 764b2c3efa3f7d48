"""
Admission gateway: the first thing every tool call goes through.

admit() turns validated claims plus a tool name into a ToolAccess:

    1. No claims                      -> AuthenticationRequired (user-facing)
    2. pid claim is not a UUID        -> InvalidTenant          (user-facing)
    3. Tenant session can't be opened -> SessionUnavailable     (system)
    4. Load group config, installed apps and default datasource
    5. policy.decide(tool, context)
    6. Denied                         -> release session, PolicyDenied (user-facing)

The tenant session belongs to the calling request and is released exactly
once on every path: each denial branch, any failure while loading
configuration, and cancellation of the caller while admission is in flight.

resolve_catalog() is the tools/list side of the same decision. It never
raises: anything that prevents resolving the caller degrades to the
always-admissible tools.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from mcp_admission.auth import Claims, IdentityClass, identity_class
from mcp_admission.database import TenantSession, open_tenant_session
from mcp_admission.errors import (
    AuthenticationRequired,
    InvalidTenant,
    PolicyDenied,
    SystemBackendError,
)
from mcp_admission.policy import PolicyContext, decide, resolve_catalog
from mcp_admission.store import AppStore, ConfigStore, get_default_datasource_id
from mcp_admission.tools import ToolSpec, get_tool

logger = logging.getLogger(__name__)

SessionOpener = Callable[[uuid.UUID], Awaitable[TenantSession]]


@dataclass
class ToolAccess:
    """
    A granted admission. Handlers use `tenant` for their queries and fill in
    the outcome fields (row counts, query id) that end up in the audit entry.
    """

    tenant_id: uuid.UUID
    tenant: TenantSession
    claims: Claims
    tool: ToolSpec
    default_datasource_id: uuid.UUID | None
    release: Callable[[], Awaitable[None]]
    row_count: int | None = None
    rows_affected: int | None = None
    query_id: uuid.UUID | None = None
    modifies_data: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


def parse_tenant_id(claims: Claims) -> uuid.UUID:
    try:
        return uuid.UUID(claims.tenant_id)
    except (ValueError, TypeError, AttributeError):
        raise InvalidTenant(f"invalid project ID: {claims.tenant_id!r}")


class AdmissionGateway:
    def __init__(
        self,
        open_session: SessionOpener = open_tenant_session,
        config_store: ConfigStore | None = None,
        app_store: AppStore | None = None,
    ):
        self._open_session = open_session
        self._config_store = config_store or ConfigStore()
        self._app_store = app_store or AppStore()

    async def load_context(
        self, tenant: TenantSession, identity: IdentityClass
    ) -> tuple[PolicyContext, uuid.UUID | None]:
        """Read the configuration snapshot for one decision."""
        try:
            groups = await self._config_store.get_all(tenant)
            installed = await self._app_store.installed(tenant)
            datasource_id = await get_default_datasource_id(tenant)
        except Exception as e:
            raise SystemBackendError(f"failed to check tool configuration: {e}") from e

        context = PolicyContext(
            identity=identity,
            groups=groups,
            installed_apps=installed,
            has_default_datasource=datasource_id is not None,
        )
        return context, datasource_id

    async def admit(self, claims: Claims | None, tool_name: str) -> ToolAccess:
        """
        Admit one tool call or raise.

        Raises:
            AuthenticationRequired, InvalidTenant, PolicyDenied: user-facing
            SessionUnavailable, SystemBackendError: system errors
        """
        if claims is None:
            raise AuthenticationRequired("authentication required")

        tenant_id = parse_tenant_id(claims)
        tenant = await self._open_session(tenant_id)

        try:
            context, datasource_id = await self.load_context(tenant, identity_class(claims))
            decision = decide(tool_name, context)
        except BaseException:
            await tenant.close()
            raise

        log_data = {
            "tenant_id": str(tenant_id),
            "subject": claims.subject,
            "tool": tool_name,
        }

        if not decision.admitted:
            await tenant.close()
            logger.warning(
                "Tool call denied",
                extra={
                    "log_data": {
                        **log_data,
                        "decision": "denied",
                        "reason": decision.reason.value,
                        "detail": decision.detail,
                    }
                },
            )
            raise PolicyDenied(tool_name, decision.reason.value, decision.detail)

        logger.info("Tool call admitted", extra={"log_data": {**log_data, "decision": "allowed"}})

        tool = get_tool(tool_name)
        return ToolAccess(
            tenant_id=tenant_id,
            tenant=tenant,
            claims=claims,
            tool=tool,
            default_datasource_id=datasource_id,
            release=tenant.close,
            modifies_data=tool.modifies_data,
        )

    async def resolve_catalog(self, claims: Claims | None) -> list[str]:
        """Tool names the caller may see. Degrades to the always-admissible set."""
        unresolved = resolve_catalog(PolicyContext(identity=IdentityClass.UNRESOLVED))
        if claims is None:
            return unresolved

        try:
            tenant_id = parse_tenant_id(claims)
        except InvalidTenant:
            logger.warning(
                "Tool list: invalid project ID in claims",
                extra={"log_data": {"subject": claims.subject, "tenant_id": claims.tenant_id}},
            )
            return unresolved

        try:
            tenant = await self._open_session(tenant_id)
        except Exception:
            logger.exception(
                "Tool list: failed to acquire tenant session",
                extra={"log_data": {"tenant_id": str(tenant_id)}},
            )
            return unresolved

        try:
            context, _ = await self.load_context(tenant, identity_class(claims))
        except SystemBackendError:
            logger.exception(
                "Tool list: failed to load tool configuration",
                extra={"log_data": {"tenant_id": str(tenant_id)}},
            )
            return unresolved
        finally:
            await tenant.close()

        return resolve_catalog(context)
