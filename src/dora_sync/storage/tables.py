"""SQLAlchemy table definitions for the sync engine.

Rows reference each other through foreign-key columns only; there are no
ORM relationships, so reading a related row is always an explicit query
through SyncStore.
"""

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_repository_url(url: str) -> tuple[Optional[str], Optional[str]]:
    """Split ``https://github.com/<owner>/<repo>`` into owner and repo name.

    Returns ``(None, None)`` when the path does not have at least two segments.
    """
    try:
        path = urlparse(url).path
    except ValueError:
        return None, None
    segments = [s for s in path.split("/") if s]
    if len(segments) < 2:
        return None, None
    repo = segments[1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    return segments[0], repo


class RepositoryConfig(Base):
    """A tracked repository.

    Created by repository sync from the canonical URL. The Datadog service name
    and deployment workflow file are admin-owned and never written by sync.
    """

    __tablename__ = "repository_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_url = Column(Text, nullable=False, unique=True)
    owner = Column(Text, nullable=True)
    repo_name = Column(Text, nullable=True)
    datadog_service_name = Column(Text, nullable=True)
    deployment_workflow_file_name = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    @classmethod
    def from_url(cls, url: str) -> "RepositoryConfig":
        owner, repo_name = parse_repository_url(url)
        return cls(repository_url=url, owner=owner, repo_name=repo_name)

    def __repr__(self) -> str:
        return f"<RepositoryConfig {self.repository_url}>"


class Commit(Base):
    __tablename__ = "commits"

    sha = Column(String(64), primary_key=True)
    repository_id = Column(
        Integer, ForeignKey("repository_configs.id"), nullable=False, index=True
    )
    author = Column(Text, nullable=True)
    message = Column(Text, nullable=False, default="")
    date = Column(DateTime(timezone=True), nullable=True)


class CommitParent(Base):
    __tablename__ = "commit_parents"

    commit_sha = Column(String(64), ForeignKey("commits.sha"), primary_key=True)
    parent_sha = Column(String(64), ForeignKey("commits.sha"), primary_key=True)


class PullRequest(Base):
    __tablename__ = "pull_requests"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    repository_id = Column(
        Integer, ForeignKey("repository_configs.id"), nullable=False, index=True
    )
    number = Column(Integer, nullable=True)
    state = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    merged_at = Column(DateTime(timezone=True), nullable=True)
    first_commit_sha = Column(String(64), nullable=True)


class Deployment(Base):
    __tablename__ = "deployments"

    github_id = Column(BigInteger, primary_key=True, autoincrement=False)
    repository_id = Column(
        Integer, ForeignKey("repository_configs.id"), nullable=False, index=True
    )
    name = Column(Text, nullable=True)
    head_branch = Column(Text, nullable=True)
    sha = Column(String(64), nullable=False)
    service_name = Column(Text, nullable=True)
    environment = Column(Text, nullable=True)
    status = Column(Text, nullable=True)
    conclusion = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class Incident(Base):
    """An observability incident; state, severity and resolution change over time."""

    __tablename__ = "incidents"

    id = Column(String(64), primary_key=True)
    repository_id = Column(
        Integer, ForeignKey("repository_configs.id"), nullable=False, index=True
    )
    title = Column(Text, nullable=True)
    state = Column(String(16), nullable=False)
    severity = Column(String(8), nullable=False)
    service_name = Column(Text, nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    resolved_time = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(BigInteger, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class User(Base):
    __tablename__ = "users"

    github_id = Column(BigInteger, primary_key=True, autoincrement=False)
    github_username = Column(Text, nullable=False, index=True)
    email = Column(Text, nullable=True)
    name = Column(Text, nullable=True)
    avatar_url = Column(Text, nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<User {self.github_username}>"


class SyncStatus(Base):
    """Cursor row: the last successful run of one job key."""

    __tablename__ = "sync_status"

    job_key = Column(String(255), primary_key=True)
    last_successful_run = Column(DateTime(timezone=True), nullable=False)
