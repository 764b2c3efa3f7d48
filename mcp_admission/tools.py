"""
Tool definitions and group membership.

This module is the central registry for tool access control. Every MCP tool
the engine knows about is described exactly once in TOOLS:

    ToolSpec(name, description, group, sub_option, requires_app, ...)

The policy resolver (policy.py) reads these descriptors for both the
tools/list filter and the tools/call check, so the two paths can't drift
apart. The server registers handler functions by name; a tool without a
descriptor here is never admissible.

Groups and sub-options:
- "default":              health, always admissible
- "developer":            base developer tools, gated by the group's `enabled`
                          flag; `execute` additionally needs `enable_execute`
- "approved_queries":     query/discovery tools, unlocked by `add_query_tools`
- "ontology_maintenance": ontology edit and question tools, unlocked by
                          `add_ontology_maintenance`
- "agent_tools":          owns no tools itself; when enabled, agents get the
                          tools flagged `agent_limited`
- "custom":               owns no tools itself; when enabled, developer-tier
                          users get exactly the tools named in the record's
                          `custom_tools` selection, plus health
"""

from dataclasses import dataclass

GROUP_DEFAULT = "default"
GROUP_DEVELOPER = "developer"
GROUP_APPROVED_QUERIES = "approved_queries"
GROUP_AGENT_TOOLS = "agent_tools"
GROUP_ONTOLOGY_MAINTENANCE = "ontology_maintenance"
GROUP_CUSTOM = "custom"

KNOWN_GROUPS = frozenset(
    {
        GROUP_DEVELOPER,
        GROUP_APPROVED_QUERIES,
        GROUP_AGENT_TOOLS,
        GROUP_ONTOLOGY_MAINTENANCE,
        GROUP_CUSTOM,
    }
)

OPTION_ENABLE_EXECUTE = "enable_execute"
OPTION_ADD_QUERY_TOOLS = "add_query_tools"
OPTION_ADD_ONTOLOGY_MAINTENANCE = "add_ontology_maintenance"

APP_AI_AGENTS = "ai-agents"
APP_AI_DATA_LIAISON = "ai-data-liaison"

HEALTH_TOOL = "health"


@dataclass(frozen=True)
class ToolSpec:
    """
    Static metadata for one MCP tool.

    Attributes:
        name: MCP tool name
        description: Shown in tools/list
        group: Owning tool group
        sub_option: Sub-option flag that unlocks this tool, if any
        requires_app: Installed app the tool needs, if any
        always: Admissible for every caller, configuration notwithstanding
        agent_limited: Part of the narrow loadout agents get via agent_tools
        requires_datasource: Needs a default datasource configured for the project
        modifies_data: Writes to the customer datasource (compliance audited)
    """

    name: str
    description: str
    group: str
    sub_option: str | None = None
    requires_app: str | None = None
    always: bool = False
    agent_limited: bool = False
    requires_datasource: bool = True
    modifies_data: bool = False


def _dev(name: str, description: str, **kwargs) -> ToolSpec:
    return ToolSpec(name, description, GROUP_DEVELOPER, **kwargs)


def _query(name: str, description: str, **kwargs) -> ToolSpec:
    return ToolSpec(
        name, description, GROUP_APPROVED_QUERIES, sub_option=OPTION_ADD_QUERY_TOOLS, **kwargs
    )


def _ontology(name: str, description: str, **kwargs) -> ToolSpec:
    return ToolSpec(
        name,
        description,
        GROUP_ONTOLOGY_MAINTENANCE,
        sub_option=OPTION_ADD_ONTOLOGY_MAINTENANCE,
        **kwargs,
    )


# Canonical order: tools/list output follows this sequence.
TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec(
        HEALTH_TOOL,
        "Server health check",
        GROUP_DEFAULT,
        always=True,
        requires_datasource=False,
    ),
    # Developer
    _dev("echo", "Echo back input message for testing", requires_datasource=False),
    _dev("query", "Execute read-only SQL SELECT statements"),
    _dev("sample", "Quick data preview from a table"),
    _dev("validate", "Check SQL syntax without executing"),
    _dev("explain_query", "Analyze SQL query performance using EXPLAIN"),
    _dev("get_schema", "Get database schema with entity semantics"),
    _dev(
        "execute",
        "Execute DDL/DML statements",
        sub_option=OPTION_ENABLE_EXECUTE,
        modifies_data=True,
    ),
    # Approved queries and discovery
    _query("list_approved_queries", "List pre-approved SQL queries", agent_limited=True),
    _query(
        "execute_approved_query",
        "Execute a pre-approved query by ID",
        agent_limited=True,
    ),
    _query(
        "suggest_approved_query",
        "Suggest a reusable parameterized query for approval",
        requires_app=APP_AI_DATA_LIAISON,
    ),
    _query("get_query_history", "Get recent query execution history"),
    _query("get_context", "Get unified database context with progressive depth"),
    _query("get_ontology", "Get business ontology for query generation"),
    _query("get_glossary_sql", "Get SQL definition for a business term"),
    _query("list_glossary", "List all business glossary terms"),
    _query("search_schema", "Full-text search across tables, columns, and entities"),
    _query("probe_column", "Deep-dive into a column with statistics and semantics"),
    _query("probe_relationship", "Deep-dive into relationships between entities"),
    # Ontology questions
    _ontology("list_ontology_questions", "List ontology questions with filtering"),
    _ontology("resolve_ontology_question", "Mark an ontology question as resolved"),
    _ontology("skip_ontology_question", "Mark a question as skipped for later"),
    _ontology("dismiss_ontology_question", "Mark a question as not worth pursuing"),
    _ontology("escalate_ontology_question", "Mark a question as needing human input"),
    # Ontology maintenance
    _ontology("update_entity", "Create or update entity metadata"),
    _ontology("update_column", "Add or update semantic information about a column"),
    _ontology("update_relationship", "Create or update a relationship between entities"),
    _ontology("update_glossary_term", "Create or update a business glossary term"),
    _ontology("update_project_knowledge", "Create or update domain facts"),
    _ontology("delete_entity", "Remove an incorrectly identified entity"),
    _ontology("delete_relationship", "Remove an incorrect relationship"),
    _ontology("delete_glossary_term", "Delete a business glossary term"),
    _ontology("delete_project_knowledge", "Remove incorrect or outdated domain facts"),
    _ontology("refresh_schema", "Refresh schema from datasource and detect changes"),
    _ontology("list_pending_changes", "List pending ontology changes awaiting review"),
    _ontology("approve_change", "Approve a pending ontology change"),
    _ontology("reject_change", "Reject a pending ontology change"),
)

# Lookup tables derived once at import; read-only afterwards.
TOOLS_BY_NAME: dict[str, ToolSpec] = {tool.name: tool for tool in TOOLS}

ALWAYS_TOOLS: frozenset[str] = frozenset(t.name for t in TOOLS if t.always)

AGENT_LIMITED_TOOLS: frozenset[str] = frozenset(t.name for t in TOOLS if t.agent_limited)


def _group_members(group: str) -> frozenset[str]:
    if group == GROUP_AGENT_TOOLS:
        return AGENT_LIMITED_TOOLS
    return frozenset(t.name for t in TOOLS if t.group == group)


GROUP_TOOLS: dict[str, frozenset[str]] = {group: _group_members(group) for group in KNOWN_GROUPS}


def get_tool(name: str) -> ToolSpec | None:
    return TOOLS_BY_NAME.get(name)


def group_tools(group: str) -> frozenset[str]:
    """Tools owned by a group; empty for unknown groups."""
    return GROUP_TOOLS.get(group, frozenset())
