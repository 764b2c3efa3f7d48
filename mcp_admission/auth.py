"""
JWT token validation and claim extraction.

This module handles the Authentication (AuthN) layer:
- Extracts Bearer tokens from the HTTP Authorization header
- Validates the JWT signature and expiration
- Extracts the claims the admission layer needs: who is calling, for which
  project (tenant), with which roles, and whether the caller is an
  autonomous agent or a human/service user

Token structure (JWT payload):
    {
        "sub": "3f0c...-user-uuid",     # Who is making the request ("agent" for API-key agents)
        "pid": "8d2e...-project-uuid",  # The tenant (project) the token is scoped to
        "roles": ["admin"],             # Optional role list
        "email": "alice@example.com",   # Optional
        "exp": 1738800000
    }

Authorization (which tools the caller may see or call) is not decided here.
The claims are handed to the admission gateway, which combines them with the
project's tool configuration.
"""

from dataclasses import dataclass
from enum import Enum

import jwt

from mcp_admission.config import settings

# Subject used by API-key authenticated agents.
AGENT_SUBJECT = "agent"


class AuthError(Exception):
    """
    Raised when token validation fails for any reason.

    A single exception type covers every failure (missing token, bad
    signature, expired, malformed claims). The detailed reason is logged
    server-side only.

    Attributes:
        message: Human-readable error description (logged server-side)
        status_code: HTTP status code to return (401 for auth failures)
    """

    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


ROLE_ADMIN = "admin"
ROLE_DATA = "data"
ROLE_USER = "user"

# Privilege order; roles not listed here grant nothing.
ROLE_PRIORITY = {ROLE_USER: 0, ROLE_DATA: 1, ROLE_ADMIN: 2}


class IdentityClass(str, Enum):
    """
    Caller classes the tool policy distinguishes.

    USER is a human caller whose highest role is "user" (or who has no
    roles): a narrow loadout without developer tools. DEVELOPER is a human
    caller holding "data" or "admin".
    """

    UNRESOLVED = "unresolved"
    AGENT = "agent"
    USER = "user"
    DEVELOPER = "developer"


@dataclass(frozen=True)
class Claims:
    """
    Validated claims extracted from a JWT.

    Frozen so the validated values can't be changed after extraction.

    Attributes:
        subject: The "sub" claim; "agent" for API-key agents, a user id otherwise
        tenant_id: The raw "pid" claim. Parsed (and rejected if malformed)
                   by the admission gateway, not here.
        roles: Role names from the "roles" claim
        email: Optional email, kept for audit provenance
    """

    subject: str
    tenant_id: str
    roles: tuple[str, ...] = ()
    email: str | None = None

    @property
    def is_agent(self) -> bool:
        return self.subject == AGENT_SUBJECT

    @property
    def effective_role(self) -> str:
        """The highest-privilege known role; "user" when there is none."""
        return max(
            (role for role in self.roles if role in ROLE_PRIORITY),
            key=ROLE_PRIORITY.__getitem__,
            default=ROLE_USER,
        )


def identity_class(claims: Claims | None) -> IdentityClass:
    """Map optional claims to the identity class used by the tool policy."""
    if claims is None:
        return IdentityClass.UNRESOLVED
    if claims.is_agent:
        return IdentityClass.AGENT
    if claims.effective_role == ROLE_USER:
        return IdentityClass.USER
    return IdentityClass.DEVELOPER


def validate_token(authorization_header: str | None) -> Claims:
    """
    Validate a Bearer token from the Authorization header.

    Steps:
    1. Check that a header is present
    2. Extract the token from "Bearer <token>" format
    3. Decode and verify the JWT (signature + expiration)
    4. Extract and validate the claims (sub, pid, roles)

    Args:
        authorization_header: The raw Authorization header value,
                              expected format: "Bearer <jwt-token>"

    Returns:
        Claims with the validated subject, tenant and roles

    Raises:
        AuthError: If any validation step fails
    """
    if not authorization_header:
        raise AuthError("Missing Authorization header")

    parts = authorization_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError("Invalid Authorization header format, expected 'Bearer <token>'")

    token = parts[1]

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise AuthError(f"Invalid token: {e}")

    subject = payload.get("sub", "")

    tenant_claim = payload.get("pid", "")
    if not isinstance(tenant_claim, str):
        raise AuthError("Invalid pid claim: must be a string")

    roles_claim = payload.get("roles", [])
    if not isinstance(roles_claim, list):
        raise AuthError("Invalid roles claim: must be a list")
    if not all(isinstance(r, str) for r in roles_claim):
        raise AuthError("Invalid roles claim: all entries must be strings")

    email = payload.get("email")
    if email is not None and not isinstance(email, str):
        email = None

    return Claims(
        subject=subject,
        tenant_id=tenant_claim,
        roles=tuple(roles_claim),
        email=email,
    )
