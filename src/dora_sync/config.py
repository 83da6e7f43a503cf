"""Configuration management with pydantic-settings for dora-sync.

- Automatic .env file loading with proper precedence
- SecretStr for upstream credentials
- Frozen config (immutable after load)
- Per-job schedule (interval + staggered initial delay)

References:
- Pydantic Settings: https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

import json
from datetime import timedelta
from functools import lru_cache
from typing import Annotated

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

__all__ = [
    "JOB_COMMITS",
    "JOB_DEPLOYMENTS",
    "JOB_INCIDENTS",
    "JOB_NAMES",
    "JOB_PULL_REQUESTS",
    "JOB_REPOSITORIES",
    "JOB_USERS",
    "SyncConfig",
    "get_config",
    "reset_config",
]

# Job names (scheduler trigger names, metric labels, CLI choices)
JOB_COMMITS = "commits"
JOB_PULL_REQUESTS = "pull_requests"
JOB_DEPLOYMENTS = "deployments"
JOB_INCIDENTS = "incidents"
JOB_REPOSITORIES = "repositories"
JOB_USERS = "users"

JOB_NAMES = [
    JOB_COMMITS,
    JOB_PULL_REQUESTS,
    JOB_DEPLOYMENTS,
    JOB_INCIDENTS,
    JOB_REPOSITORIES,
    JOB_USERS,
]

# Repository sync is admin-triggered only; it has no timer by default
SCHEDULED_JOBS = [
    JOB_COMMITS,
    JOB_PULL_REQUESTS,
    JOB_DEPLOYMENTS,
    JOB_INCIDENTS,
    JOB_USERS,
]


class SyncConfig(BaseSettings):
    """Sync engine configuration.

    Every field maps to an upper-case environment variable of the same name
    (GITHUB_TOKEN, DATABASE_URL, COMMIT_SYNC_INTERVAL, ...).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        validate_default=True,
        frozen=True,
        extra="ignore",
    )

    # Source control host
    github_token: SecretStr = Field(
        default=SecretStr(""),
        description="GitHub token used by every GitHub collector",
    )

    github_api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL",
    )

    github_org: str = Field(
        default="",
        description="Organization whose member roster feeds the user sync",
    )

    # Observability platform
    datadog_api_key: SecretStr = Field(default=SecretStr(""), description="DD-API-KEY")

    datadog_app_key: SecretStr = Field(
        default=SecretStr(""), description="DD-APPLICATION-KEY"
    )

    datadog_base_url: str = Field(
        default="https://us5.datadoghq.com",
        description="Datadog site base URL",
    )

    # Storage
    database_url: str = Field(
        default="sqlite:///dora_sync.db",
        description="SQLAlchemy database URL",
    )

    # Schedule (seconds). Initial delays are staggered so jobs never fire together.
    commit_sync_interval: int = Field(default=3600, ge=1)
    commit_sync_initial_delay: int = Field(default=10, ge=0)
    pull_request_sync_interval: int = Field(default=300, ge=1)
    pull_request_sync_initial_delay: int = Field(default=20, ge=0)
    deployment_sync_interval: int = Field(default=300, ge=1)
    deployment_sync_initial_delay: int = Field(default=30, ge=0)
    incident_sync_interval: int = Field(default=3600, ge=1)
    incident_sync_initial_delay: int = Field(default=40, ge=0)
    user_sync_interval: int = Field(default=3600, ge=1)
    user_sync_initial_delay: int = Field(default=50, ge=0)

    enabled_jobs: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(SCHEDULED_JOBS),
        description="Jobs registered with the scheduler (comma-separated)",
    )

    # Cursor bootstrap windows
    default_lookback_days: int = Field(
        default=365,
        ge=1,
        le=3650,
        description="First-run window for commit, pull request and deployment jobs",
    )

    incident_lookback_days: int = Field(
        default=30,
        ge=1,
        le=3650,
        description="First-run window for incident jobs",
    )

    deployment_success_only: bool = Field(
        default=True,
        description="Only record workflow runs whose conclusion is 'success'",
    )

    # Collector pacing
    request_delay_ms: int = Field(
        default=100,
        ge=0,
        le=10000,
        description="Minimum delay between upstream requests in milliseconds",
    )

    max_pages: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Upper bound on pages followed in a single pagination walk",
    )

    # Monitoring
    pushgateway_url: str = Field(default="localhost:29091")
    pushgateway_enabled: bool = Field(default=False)
    health_file: str = Field(default="/tmp/dora_sync.health")

    @field_validator("github_api_url", "datadog_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("enabled_jobs", mode="before")
    @classmethod
    def parse_enabled_jobs(cls, v):
        """Parse comma-separated string into list for ENABLED_JOBS env var."""
        if isinstance(v, str):
            if v.startswith("["):
                return json.loads(v)
            return [j.strip() for j in v.split(",") if j.strip()]
        return v

    @model_validator(mode="after")
    def validate_enabled_jobs(self) -> "SyncConfig":
        unknown = [j for j in self.enabled_jobs if j not in JOB_NAMES]
        if unknown:
            raise ValueError(
                f"Unknown job(s) in ENABLED_JOBS: {', '.join(unknown)}. "
                f"Valid jobs: {', '.join(JOB_NAMES)}"
            )
        return self

    @property
    def github_enabled(self) -> bool:
        return bool(self.github_token.get_secret_value())

    @property
    def datadog_enabled(self) -> bool:
        return bool(
            self.datadog_api_key.get_secret_value()
            and self.datadog_app_key.get_secret_value()
        )

    @property
    def database_url_masked(self) -> str:
        """Database URL safe to log, with any password replaced by ***."""
        try:
            return make_url(self.database_url).render_as_string(hide_password=True)
        except ArgumentError:
            return "<unparseable database URL>"

    @property
    def default_lookback(self) -> timedelta:
        return timedelta(days=self.default_lookback_days)

    @property
    def incident_lookback(self) -> timedelta:
        return timedelta(days=self.incident_lookback_days)

    def schedule_for(self, job: str) -> tuple[int, int]:
        """Return ``(interval, initial_delay)`` in seconds for a job name."""
        prefix = {
            JOB_COMMITS: "commit",
            JOB_PULL_REQUESTS: "pull_request",
            JOB_DEPLOYMENTS: "deployment",
            JOB_INCIDENTS: "incident",
            JOB_USERS: "user",
        }.get(job)
        if prefix is None:
            raise ValueError(f"Job '{job}' has no schedule")
        return (
            getattr(self, f"{prefix}_sync_interval"),
            getattr(self, f"{prefix}_sync_initial_delay"),
        )


@lru_cache(maxsize=1)
def get_config() -> SyncConfig:
    """Get global configuration singleton.

    First call loads from environment + .env file, subsequent calls return
    the cached instance.

    Raises:
        ValidationError: If configuration values are invalid.
    """
    return SyncConfig()


def reset_config() -> None:
    """Reset configuration singleton for testing.

    Warning:
        Only use in test code. Production code should not reset config.
    """
    get_config.cache_clear()
