"""
Shared test fixtures for the MCP admission test suite.

Key fixtures:
- make_token / make_auth_header: factories for JWTs with any claims
- engine_db: a fresh SQLite engine database (aiosqlite) per test, with the
  schema created
- seed_project: a factory that writes a project's tool configuration,
  installed apps and (optionally) a default datasource backed by its own
  SQLite file with a small `customers` table

Testing approach:
- test_auth.py, test_policy.py, test_errors.py: pure unit tests
- test_access.py, test_audit.py: the gateway and the recorder against a
  real per-test database
- test_tools.py: the full HTTP -> FastMCP -> middleware -> handler pipeline
"""

import datetime
import uuid

import jwt
import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from mcp_admission.config import settings
from mcp_admission.database import (
    ApprovedQuery,
    Datasource,
    InstalledApp,
    Project,
    ToolGroupRecord,
    create_schema,
    dispose_engine,
    get_session_factory,
    init_engine,
)

# Must match settings.jwt_secret_key so that test tokens validate.
TEST_SECRET = settings.jwt_secret_key
TEST_ALGORITHM = settings.jwt_algorithm

TEST_PROJECT_ID = "8d2e7c1a-0a51-4bfc-9d3e-6a1f0c2b9e11"


# ---------------------------------------------------------------------------
# Token factory fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def make_token():
    """
    Factory fixture to generate JWT tokens for testing.

    Usage in tests:
        def test_something(make_token):
            token = make_token(sub="alice", project_id=TEST_PROJECT_ID)
            # token is a raw JWT string (not "Bearer ..." prefixed)
    """

    def _make_token(
        sub: str = "test-user",
        project_id: str | None = TEST_PROJECT_ID,
        roles: list[str] | None = None,
        secret: str = TEST_SECRET,
        algorithm: str = TEST_ALGORITHM,
        exp_hours: float = 1.0,
        extra_claims: dict | None = None,
        include_exp: bool = True,
        include_sub: bool = True,
    ) -> str:
        """
        Args:
            sub: Subject claim ("agent" for agent tokens)
            project_id: pid claim (None means omit the claim entirely)
            roles: roles claim (None means omit the claim entirely)
            exp_hours: Hours until expiration (negative = already expired)
            extra_claims: Additional or overriding claims
        """
        now = datetime.datetime.now(datetime.timezone.utc)
        payload: dict = {}

        if include_sub:
            payload["sub"] = sub

        if project_id is not None:
            payload["pid"] = project_id

        if roles is not None:
            payload["roles"] = roles

        if include_exp:
            payload["exp"] = now + datetime.timedelta(hours=exp_hours)

        payload["iat"] = now

        if extra_claims:
            payload.update(extra_claims)

        return jwt.encode(payload, secret, algorithm=algorithm)

    return _make_token


@pytest.fixture
def make_auth_header(make_token):
    """Returns a factory for full "Bearer <token>" strings."""

    def _make_auth_header(**kwargs) -> str:
        return f"Bearer {make_token(**kwargs)}"

    return _make_auth_header


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def engine_db(tmp_path):
    """A fresh engine database for one test."""
    init_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")
    await create_schema()
    yield
    await dispose_engine()


async def _create_customer_database(url: str) -> None:
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.execute(
            text("CREATE TABLE customers (id INTEGER PRIMARY KEY, name TEXT NOT NULL UNIQUE, city TEXT)")
        )
        await conn.execute(
            text(
                "INSERT INTO customers (id, name, city) VALUES "
                "(1, 'Acme', 'Berlin'), (2, 'Globex', 'Paris'), (3, 'Initech', 'Austin')"
            )
        )
    await engine.dispose()


@pytest.fixture
def seed_project(engine_db, tmp_path):
    """
    Factory fixture that stores one project's configuration.

    Usage in tests:
        project_id = await seed_project(
            groups={"developer": {"enabled": True, "options": ["enable_execute"]}},
            apps=["ai-agents"],
        )
    """

    async def _seed_project(
        project_id: str = TEST_PROJECT_ID,
        groups: dict[str, dict] | None = None,
        apps: list[str] | None = None,
        with_datasource: bool = True,
        approved_queries: list[dict] | None = None,
    ) -> uuid.UUID:
        pid = uuid.UUID(project_id)
        datasource_id = None

        async with get_session_factory()() as session:
            session.add(Project(id=pid, name="test project"))
            await session.flush()

            if with_datasource:
                customer_url = f"sqlite+aiosqlite:///{tmp_path / f'customer-{pid.hex}.db'}"
                await _create_customer_database(customer_url)
                datasource_id = uuid.uuid4()
                session.add(Datasource(id=datasource_id, project_id=pid, name="customers", url=customer_url))

            for name, config in (groups or {}).items():
                session.add(
                    ToolGroupRecord(
                        project_id=pid,
                        group_name=name,
                        enabled=config.get("enabled", False),
                        force_mode=config.get("force_mode", False),
                        options=list(config.get("options", [])),
                        custom_tools=list(config.get("custom_tools", [])),
                    )
                )

            for app_id in apps or []:
                session.add(InstalledApp(project_id=pid, app_id=app_id))

            for query in approved_queries or []:
                session.add(ApprovedQuery(project_id=pid, **query))

            await session.flush()
            if datasource_id is not None:
                project = await session.get(Project, pid)
                project.default_datasource_id = datasource_id

            await session.commit()

        return pid

    return _seed_project
