"""
Application configuration loaded from environment variables.

Uses pydantic-settings so every knob can be injected by the deployment
(ConfigMap for plain values, a secret store for the JWT key and database URL)
or read from a local .env file during development.

All variables carry the MCP_ prefix, e.g. MCP_DATABASE_URL or
MCP_AUDIT_TIMEOUT_SECONDS.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Server configuration with environment variable bindings.

    Each field maps to an environment variable with the MCP_ prefix.
    For example, `database_url` reads from MCP_DATABASE_URL.
    """

    # --- Server settings ---

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # --- Authentication settings ---

    # Default is for local development only. Production injects the real key.
    jwt_secret_key: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"

    # --- Engine database ---

    # SQLAlchemy async URL of the engine database that holds tool group
    # configuration, installed apps, approved queries and the audit log.
    # PostgreSQL deployments use postgresql+asyncpg://...
    database_url: str = "sqlite+aiosqlite:///./mcp_admission.db"

    # --- Audit settings ---

    # Upper bound for one background audit write, including acquiring its
    # own tenant session.
    audit_timeout_seconds: float = 5.0

    # String parameters longer than this are truncated before they are stored.
    audit_max_param_length: int = 10240

    # --- Tool settings ---

    sample_row_limit: int = 100

    model_config = {
        "env_prefix": "MCP_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


# Singleton instance: import this from other modules.
settings = Settings()
