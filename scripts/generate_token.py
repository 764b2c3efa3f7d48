"""
CLI utility to generate JWT tokens for a local MCP admission server.

In production, tokens are issued by the platform's auth service. Locally,
this script stands in for it: it mints tokens scoped to one project (the
"pid" claim) that the server will validate.

Usage examples:

    # User token for a project (no roles: the narrow user loadout)
    python -m scripts.generate_token --sub alice --project 8d2e7c1a-0a51-4bfc-9d3e-6a1f0c2b9e11

    # Agent token (subject "agent"), which only ever sees the agent loadout
    python -m scripts.generate_token --agent --project 8d2e7c1a-0a51-4bfc-9d3e-6a1f0c2b9e11

    # Developer-tier token (data or admin role) with a custom expiration (2 hours)
    python -m scripts.generate_token --sub alice --project <uuid> --roles admin analyst --exp-hours 2

    # Expired token (for testing rejection)
    python -m scripts.generate_token --sub alice --project <uuid> --exp-hours -1
"""

import argparse
import datetime

import jwt

AGENT_SUBJECT = "agent"


def generate_token(
    subject: str,
    project_id: str,
    secret: str,
    roles: list[str] | None = None,
    email: str | None = None,
    algorithm: str = "HS256",
    exp_hours: float = 8.0,
) -> str:
    """
    Generate a signed JWT for one project.

    Args:
        subject: The "sub" claim; "agent" marks an autonomous agent
        project_id: The "pid" claim: the project (tenant) the token is for
        secret: The signing key (must match the server's MCP_JWT_SECRET_KEY)
        roles: Optional role names
        email: Optional email claim
        algorithm: JWT signing algorithm (default: HS256)
        exp_hours: Hours until expiration (negative = already expired)
    """
    now = datetime.datetime.now(datetime.timezone.utc)

    payload = {
        "sub": subject,
        "pid": project_id,
        "roles": roles or [],
        "iat": now,
        "exp": now + datetime.timedelta(hours=exp_hours),
    }
    if email:
        payload["email"] = email

    return jwt.encode(payload, secret, algorithm=algorithm)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate JWT tokens for the MCP admission server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  User token:
    %(prog)s --sub alice --project <uuid>

  Agent token:
    %(prog)s --agent --project <uuid>

  Expired token (for testing):
    %(prog)s --sub alice --project <uuid> --exp-hours -1
        """,
    )

    identity = parser.add_mutually_exclusive_group(required=True)
    identity.add_argument("--sub", help="Subject claim: the user id (e.g., 'alice')")
    identity.add_argument(
        "--agent",
        action="store_true",
        help=f"Mint an agent token (sub={AGENT_SUBJECT!r})",
    )
    parser.add_argument("--project", required=True, help="Project UUID for the 'pid' claim")
    parser.add_argument("--roles", nargs="+", default=[], help="Space-separated role names; data or admin unlocks developer tools")
    parser.add_argument("--email", default=None, help="Optional email claim")
    parser.add_argument(
        "--secret",
        default="dev-secret-change-me",
        help="JWT signing secret (must match server's MCP_JWT_SECRET_KEY)",
    )
    parser.add_argument("--algorithm", default="HS256", help="JWT signing algorithm (default: HS256)")
    parser.add_argument(
        "--exp-hours",
        type=float,
        default=8.0,
        help="Hours until token expires (negative = already expired, default: 8)",
    )

    args = parser.parse_args()
    subject = AGENT_SUBJECT if args.agent else args.sub

    token = generate_token(
        subject=subject,
        project_id=args.project,
        secret=args.secret,
        roles=args.roles,
        email=args.email,
        algorithm=args.algorithm,
        exp_hours=args.exp_hours,
    )

    print(f"Subject:    {subject}")
    print(f"Project:    {args.project}")
    print(f"Roles:      {args.roles}")
    print(f"Algorithm:  {args.algorithm}")
    print()
    print(f"Token: {token}")


if __name__ == "__main__":
    main()
