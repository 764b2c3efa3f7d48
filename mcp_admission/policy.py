"""
Tool policy resolution.

One pure function, `decide`, answers "may this caller use this tool right
now?" from four independent inputs:

    identity class   (agent, user, developer, or unresolved)
    group config     (per-project tool group toggles and sub-options)
    installed apps   (optional apps some tools depend on)
    datasource       (whether the project has a default datasource)

`resolve_catalog` is nothing more than `decide` applied to every known tool,
so a tool shows up in tools/list exactly when a tools/call for it would be
admitted.

Resolution order:
    1. Unresolved identity: only the always-admissible health probe.
    2. Agents: health, plus the agent_limited tools when agent_tools is
       enabled (and the ai-agents app is installed). Never developer tools.
    3. Users whose highest role is "user" never get developer tools. They
       keep the sub-option loadouts (approved queries, ontology) below.
    4. Developer-tier users (data or admin role): when the custom group is
       enabled, exactly the tools in its selection. Otherwise developer base
       tools if developer is enabled, execute only with enable_execute.
       Sub-option tools are unlocked when their sub-option is set on any
       group record, even if the owning group is disabled: a project may
       switch a group off while keeping a narrower loadout.
    5. Force mode narrows the result to the forcing group plus health. A
       forcing custom group narrows to its selection.
    6. Tools needing an app that isn't installed are dropped.
    7. Tools needing a default datasource are dropped when there is none.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from mcp_admission.auth import IdentityClass
from mcp_admission.tools import (
    APP_AI_AGENTS,
    GROUP_AGENT_TOOLS,
    GROUP_CUSTOM,
    GROUP_DEVELOPER,
    TOOLS,
    ToolSpec,
    get_tool,
    group_tools,
)


class DenialReason(str, Enum):
    IDENTITY_UNRESOLVED = "identity_unresolved"
    CONFIGURATION_DENIES = "configuration_denies"
    CAPABILITY_MISSING = "capability_missing"


@dataclass(frozen=True)
class GroupConfig:
    """Configuration of one tool group for one project."""

    enabled: bool = False
    force_mode: bool = False
    options: frozenset[str] = frozenset()
    # Individual tool selection; only read for the custom group.
    custom_tools: frozenset[str] = frozenset()

    def option(self, name: str) -> bool:
        return name in self.options


@dataclass(frozen=True)
class PolicyContext:
    """Point-in-time inputs for one admission decision."""

    identity: IdentityClass
    groups: Mapping[str, GroupConfig] = field(default_factory=dict)
    installed_apps: frozenset[str] = frozenset()
    has_default_datasource: bool = False

    def group(self, name: str) -> GroupConfig:
        # A missing record means the group is disabled.
        return self.groups.get(name) or GroupConfig()

    def option_set_anywhere(self, option: str) -> bool:
        return any(config.option(option) for config in self.groups.values())

    @property
    def forced_group(self) -> str | None:
        """
        The group whose force mode applies, if any.

        When several groups set force mode, the lexicographically smallest
        group name wins.
        """
        forced = sorted(name for name, config in self.groups.items() if config.force_mode)
        return forced[0] if forced else None

    def forced_tools(self, group: str) -> frozenset[str]:
        if group == GROUP_CUSTOM:
            return self.group(GROUP_CUSTOM).custom_tools
        return group_tools(group)


@dataclass(frozen=True)
class AdmissionDecision:
    admitted: bool
    reason: DenialReason | None = None
    detail: str = ""

    @classmethod
    def allow(cls) -> "AdmissionDecision":
        return cls(admitted=True)

    @classmethod
    def deny(cls, reason: DenialReason, detail: str) -> "AdmissionDecision":
        return cls(admitted=False, reason=reason, detail=detail)


def _loadout_denial(tool: ToolSpec, context: PolicyContext) -> str | None:
    """Steps 2-4: is the tool part of the caller's loadout at all?"""
    if context.identity is IdentityClass.AGENT:
        if not context.group(GROUP_AGENT_TOOLS).enabled:
            return "agent tools are not enabled for this project"
        if not tool.agent_limited:
            return f"{tool.name} is not available to agents"
        return None

    if context.identity is IdentityClass.USER:
        if tool.group == GROUP_DEVELOPER:
            return f"{tool.name} is not available to the user role"
    else:
        custom = context.group(GROUP_CUSTOM)
        if custom.enabled:
            if tool.name in custom.custom_tools:
                return None
            return f"{tool.name} is not selected in custom tools"

    if tool.group == GROUP_DEVELOPER:
        developer = context.group(GROUP_DEVELOPER)
        if not developer.enabled:
            return "developer tools are not enabled for this project"
        if tool.sub_option and not developer.option(tool.sub_option):
            return f"{tool.name} is not enabled: {tool.sub_option} sub-option disabled"
        return None

    if tool.sub_option:
        if context.option_set_anywhere(tool.sub_option):
            return None
        return f"{tool.name} is not enabled: {tool.sub_option} sub-option disabled"

    return f"{tool.name} is not enabled for this project"


def decide(name: str, context: PolicyContext) -> AdmissionDecision:
    """Decide whether the named tool is admissible under the given context."""
    tool = get_tool(name)
    if tool is None:
        return AdmissionDecision.deny(DenialReason.CONFIGURATION_DENIES, f"unknown tool {name}")

    if tool.always:
        return AdmissionDecision.allow()

    if context.identity is IdentityClass.UNRESOLVED:
        return AdmissionDecision.deny(DenialReason.IDENTITY_UNRESOLVED, "authentication required")

    denial = _loadout_denial(tool, context)
    if denial:
        return AdmissionDecision.deny(DenialReason.CONFIGURATION_DENIES, denial)

    forced = context.forced_group
    if forced is not None and tool.name not in context.forced_tools(forced):
        return AdmissionDecision.deny(
            DenialReason.CONFIGURATION_DENIES,
            f"{tool.name} is not enabled: force mode is on for {forced}",
        )

    required_apps = [tool.requires_app] if tool.requires_app else []
    if context.identity is IdentityClass.AGENT:
        required_apps.append(APP_AI_AGENTS)
    for app in required_apps:
        if app not in context.installed_apps:
            return AdmissionDecision.deny(
                DenialReason.CAPABILITY_MISSING,
                f"{app} app is not installed for this project",
            )

    if tool.requires_datasource and not context.has_default_datasource:
        return AdmissionDecision.deny(
            DenialReason.CONFIGURATION_DENIES,
            "no default datasource configured for project",
        )

    return AdmissionDecision.allow()


def is_admissible(name: str, context: PolicyContext) -> bool:
    return decide(name, context).admitted


def resolve_catalog(context: PolicyContext) -> list[str]:
    """All admissible tool names, in canonical order."""
    return [tool.name for tool in TOOLS if decide(tool.name, context).admitted]
