"""
Error taxonomy and SQL error classification.

Two kinds of failures reach an MCP client:

- User-facing errors: the caller can act on them (authenticate, pick another
  tool, fix the SQL). They carry a short stable code plus a message and are
  returned as a JSON payload inside an isError tool result, so the model can
  read them and retry.
- System errors: connection failures, timeouts, cancellations, anything
  unrecognised. They surface as an opaque "internal error" and are logged at
  ERROR level, so infrastructure incidents stay visible to alerting instead
  of hiding among ordinary tool failures.

classify() decides which side a backend exception falls on. It only ever
promotes errors whose SQLSTATE class is one of:

    22  Data Exception              (invalid input, division by zero)
    23  Integrity Constraint Violation (unique, foreign key, check)
    42  Syntax Error or Access Rule Violation
    44  WITH CHECK OPTION Violation
"""

import json
import re
from dataclasses import dataclass
from typing import Any

from fastmcp.exceptions import ToolError

# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


class AccessError(Exception):
    """Base for user-facing errors. Subclasses set a stable `code`."""

    code = "access_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        return error_payload(self.code, self.message, self.details)


class AuthenticationRequired(AccessError):
    code = "authentication_required"


class InvalidTenant(AccessError):
    code = "invalid_project_id"


class PolicyDenied(AccessError):
    """The caller's loadout does not include the tool."""

    code = "tool_not_enabled"

    def __init__(self, tool: str, reason: str, message: str):
        self.tool = tool
        self.reason = reason
        if reason == "capability_missing":
            self.code = "app_not_installed"
        super().__init__(message, details={"tool": tool, "reason": reason})


class UserActionableBackendError(AccessError):
    """A backend failure the caller can fix by changing its request."""

    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(message)


class SessionUnavailable(Exception):
    """Could not acquire a tenant-scoped database session. System error."""


class SystemBackendError(Exception):
    """Opaque backend failure. Never shown to the caller in detail."""


class UserInputError(ToolError):
    """Raised by tool handlers for invalid parameters; shown to the caller."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(json.dumps(error_payload(code, message)))


def error_payload(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": True, "code": code, "message": message}
    if details:
        payload["details"] = details
    return payload


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassifiedError:
    code: str
    message: str


USER_ERROR_CLASSES = frozenset({"22", "23", "42", "44"})

SQLSTATE_CODES: dict[str, str] = {
    "42601": "syntax_error",
    "42703": "undefined_column",
    "42P01": "undefined_table",
    "42P02": "undefined_parameter",
    "23505": "unique_violation",
    "23503": "foreign_key_violation",
    "23502": "not_null_violation",
    "23514": "check_violation",
    "22001": "value_too_long",
    "22003": "numeric_out_of_range",
    "22007": "invalid_datetime",
    "22012": "division_by_zero",
    "22P02": "invalid_input",
}

CLASS_FALLBACK_CODES: dict[str, str] = {
    "22": "data_exception",
    "23": "constraint_violation",
    "42": "sql_error",
    "44": "check_option_violation",
}

# Matches "(SQLSTATE 42601)" in stringified driver errors.
_SQLSTATE_PATTERN = re.compile(r"\(SQLSTATE ([0-9A-Z]{5})\)")

_WRAPPING_PREFIXES = (
    "execution failed: ",
    "query execution failed: ",
    "failed to execute statement: ",
    "error during execution: ",
    "failed to execute query: ",
    "ERROR: ",
)


def _error_chain(exc: BaseException):
    """Yield exc, SQLAlchemy's `orig`, and the cause/context chain, once each."""
    seen: set[int] = set()
    pending: list[BaseException] = [exc]
    while pending:
        current = pending.pop(0)
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        for linked in (getattr(current, "orig", None), current.__cause__, current.__context__):
            if isinstance(linked, BaseException):
                pending.append(linked)


def _structured_sqlstate(exc: BaseException) -> tuple[str, str] | None:
    """Find (sqlstate, message) on a driver exception anywhere in the chain."""
    for err in _error_chain(exc):
        # asyncpg exposes `sqlstate`, psycopg2 `pgcode`, psycopg 3 `sqlstate`.
        state = getattr(err, "sqlstate", None) or getattr(err, "pgcode", None)
        if isinstance(state, str) and len(state) == 5:
            message = getattr(err, "message", None)
            diag = getattr(err, "diag", None)
            if not isinstance(message, str) and diag is not None:
                message = getattr(diag, "message_primary", None)
            if not isinstance(message, str) or not message:
                message = clean_message(str(err))
            return state, message
    return None


def sqlstate_code(state: str) -> str:
    """Map a SQLSTATE to a short code, falling back to the class family."""
    if state in SQLSTATE_CODES:
        return SQLSTATE_CODES[state]
    return CLASS_FALLBACK_CODES.get(state[:2], "sql_error")


def clean_message(message: str) -> str:
    """Strip the SQLSTATE suffix and known wrapping prefixes from an error string."""
    index = message.find(" (SQLSTATE")
    if index != -1:
        message = message[:index]
    for prefix in _WRAPPING_PREFIXES:
        if message.startswith(prefix):
            message = message[len(prefix):]
    return message


def classify(exc: BaseException | None) -> ClassifiedError | None:
    """
    Classify a backend failure.

    Returns a ClassifiedError for user-actionable SQL errors, or None when the
    failure is a system error that must propagate opaquely.

    Only PostgreSQL-style drivers (asyncpg, psycopg) report a SQLSTATE.
    Errors from drivers without one, such as sqlite, are system errors.
    """
    if exc is None:
        return None
    if any(isinstance(err, (SessionUnavailable, SystemBackendError)) for err in _error_chain(exc)):
        return None

    structured = _structured_sqlstate(exc)
    if structured is not None:
        state, message = structured
    else:
        state = None
        for err in _error_chain(exc):
            match = _SQLSTATE_PATTERN.search(str(err))
            if match:
                state = match.group(1)
                message = clean_message(str(err))
                break
        if state is None:
            return None

    if state[:2] not in USER_ERROR_CLASSES:
        return None
    return ClassifiedError(code=sqlstate_code(state), message=message)
