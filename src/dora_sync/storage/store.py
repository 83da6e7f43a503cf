"""Storage access for the sync engine.

``Database`` owns the engine and hands out units of work; ``SyncStore`` wraps
one session and exposes the bulk lookups reconcilers need (one query per
batch of incoming identities, never one per record).
"""

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Any, Optional

from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dora_sync.cursors import CursorStore
from dora_sync.storage.tables import (
    Base,
    Commit,
    CommitParent,
    Deployment,
    Incident,
    PullRequest,
    RepositoryConfig,
    User,
)

logger = logging.getLogger("dora_sync.storage")

# Fields an administrator may change on a RepositoryConfig
ADMIN_REPOSITORY_FIELDS = ("datadog_service_name", "deployment_workflow_file_name")

# Keep IN (...) lists well under SQLite's bound-parameter limit
_LOOKUP_CHUNK = 500


def _chunks(values: list, size: int = _LOOKUP_CHUNK) -> Iterator[list]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


class SyncStore:
    """Storage operations bound to one session (one unit of work)."""

    def __init__(self, session: Session):
        self.session = session
        self.cursors = CursorStore(session)

    # -- Repository configs ---------------------------------------------

    def list_repository_configs(self) -> list[RepositoryConfig]:
        return list(
            self.session.scalars(select(RepositoryConfig).order_by(RepositoryConfig.id))
        )

    def get_repository_config(self, repository_id: int) -> Optional[RepositoryConfig]:
        return self.session.get(RepositoryConfig, repository_id)

    def existing_repository_urls(self) -> set[str]:
        return set(self.session.scalars(select(RepositoryConfig.repository_url)))

    def count_repository_configs(self) -> int:
        return self.session.scalar(select(func.count()).select_from(RepositoryConfig))

    def update_repository_config(
        self, repository_id: int, **fields: Any
    ) -> RepositoryConfig:
        """Apply an administrator edit to admin-owned fields.

        Raises:
            KeyError: If the repository does not exist
            ValueError: If a field outside the admin-owned set is passed
        """
        invalid = set(fields) - set(ADMIN_REPOSITORY_FIELDS)
        if invalid:
            raise ValueError(f"Fields not editable: {', '.join(sorted(invalid))}")
        config = self.get_repository_config(repository_id)
        if config is None:
            raise KeyError(f"Repository config {repository_id} not found")
        for name, value in fields.items():
            setattr(config, name, value)
        self.session.flush()
        return config

    # -- Bulk identity lookups ------------------------------------------

    def _existing(self, column, values: Iterable) -> set:
        unique = list(dict.fromkeys(values))
        found: set = set()
        for chunk in _chunks(unique):
            found.update(self.session.scalars(select(column).where(column.in_(chunk))))
        return found

    def existing_commit_shas(self, shas: Iterable[str]) -> set[str]:
        return self._existing(Commit.sha, shas)

    def existing_pull_request_ids(self, ids: Iterable[int]) -> set[int]:
        return self._existing(PullRequest.id, ids)

    def existing_deployment_ids(self, ids: Iterable[int]) -> set[int]:
        return self._existing(Deployment.github_id, ids)

    def incidents_by_id(self, ids: Iterable[str]) -> dict[str, Incident]:
        unique = list(dict.fromkeys(ids))
        found: dict[str, Incident] = {}
        for chunk in _chunks(unique):
            for incident in self.session.scalars(
                select(Incident).where(Incident.id.in_(chunk))
            ):
                found[incident.id] = incident
        return found

    def existing_parent_links(self, commit_shas: Iterable[str]) -> set[tuple[str, str]]:
        unique = list(dict.fromkeys(commit_shas))
        links: set[tuple[str, str]] = set()
        for chunk in _chunks(unique):
            rows = self.session.execute(
                select(CommitParent.commit_sha, CommitParent.parent_sha).where(
                    CommitParent.commit_sha.in_(chunk)
                )
            )
            links.update((row.commit_sha, row.parent_sha) for row in rows)
        return links

    # -- Users ----------------------------------------------------------

    def all_users(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.github_id)))

    # -- Writes ---------------------------------------------------------

    def add_all(self, rows: Iterable[Base]) -> int:
        rows = list(rows)
        if rows:
            self.session.add_all(rows)
            self.session.flush()
        return len(rows)


class Database:
    """Engine and session factory.

    Example:
        >>> db = Database("sqlite:///dora_sync.db")
        >>> db.create_all()
        >>> with db.unit_of_work() as store:
        ...     repos = store.list_repository_configs()
    """

    def __init__(self, url: str, engine: Optional[Engine] = None):
        self.url = url
        if engine is None:
            engine = self._create_engine(url)
        self.engine = engine
        self._session_factory = sessionmaker(engine, expire_on_commit=False)

    @staticmethod
    def _create_engine(url: str) -> Engine:
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, or every session sees an empty database
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(url, pool_pre_ping=True)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def unit_of_work(self) -> Iterator[SyncStore]:
        """Yield a SyncStore whose writes commit together on clean exit.

        Any exception rolls the whole unit back (records and cursor alike)
        and propagates.
        """
        session = self._session_factory()
        try:
            yield SyncStore(session)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
