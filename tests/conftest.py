"""Shared pytest fixtures for dora-sync tests.

Fixture Organization:
    - Storage fixtures: in-memory SQLite database with all tables created
    - Sample data fixtures: repository configs and users inserted up front
    - Config fixtures: isolated SyncConfig without the developer's .env
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

from dora_sync.config import reset_config
from dora_sync.storage.store import Database
from dora_sync.storage.tables import RepositoryConfig, User
from dora_sync.sync.orchestrator import RepositoryTarget

# Add tests directory to sys.path so test modules can import the helpers below
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest.fixture
def database():
    """Fresh in-memory database (one shared connection via StaticPool)."""
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def unit_of_work(database):
    return database.unit_of_work


def add_repository(
    database: Database,
    url: str,
    service_name: str | None = None,
    workflow_file: str | None = None,
) -> RepositoryTarget:
    """Insert a RepositoryConfig and return its target snapshot."""
    with database.unit_of_work() as store:
        config = RepositoryConfig.from_url(url)
        config.datadog_service_name = service_name
        config.deployment_workflow_file_name = workflow_file
        store.add_all([config])
        return RepositoryTarget.from_config(config)


def add_user(database: Database, github_id: int, login: str, **fields) -> None:
    with database.unit_of_work() as store:
        store.add_all(
            [User(github_id=github_id, github_username=login, active=True, **fields)]
        )


@pytest.fixture
def now():
    return NOW


# =============================================================================
# Config Fixtures
# =============================================================================


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run from an empty directory with no dora-sync variables set."""
    for var in (
        "GITHUB_TOKEN",
        "GITHUB_ORG",
        "GITHUB_API_URL",
        "DATADOG_API_KEY",
        "DATADOG_APP_KEY",
        "DATABASE_URL",
        "ENABLED_JOBS",
        "COMMIT_SYNC_INTERVAL",
        "DEPLOYMENT_SUCCESS_ONLY",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_config()
    yield monkeypatch
    reset_config()
