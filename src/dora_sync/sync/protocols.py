"""Collector capabilities, one protocol per entity kind.

Orchestrators depend on these protocols only. ``GitHubClient`` implements
every GitHub capability and ``DatadogClient`` implements ``IncidentSource``;
tests substitute any object with the same methods.
"""

from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Optional, Protocol

from dora_sync.models import (
    CommitRecord,
    IncidentBatch,
    MemberRecord,
    PullRequestRecord,
    RepositoryRecord,
    WorkflowRunRecord,
)
from dora_sync.storage.store import SyncStore

UnitOfWork = Callable[[], AbstractContextManager[SyncStore]]


class CommitSource(Protocol):
    async def get_commits(
        self, owner: str, repo: str, since: datetime
    ) -> list[CommitRecord]: ...


class PullRequestSource(Protocol):
    async def get_pull_requests(
        self, owner: str, repo: str, since: datetime
    ) -> list[PullRequestRecord]: ...

    async def get_pull_request_first_commit(
        self, owner: str, repo: str, number: int
    ) -> Optional[str]: ...


class DeploymentSource(Protocol):
    async def get_workflow_runs(
        self, owner: str, repo: str, workflow_file: str, since: datetime
    ) -> list[WorkflowRunRecord]: ...


class IncidentSource(Protocol):
    async def get_incidents(
        self, since: datetime, service_name: Optional[str] = None
    ) -> IncidentBatch: ...


class RepositorySource(Protocol):
    async def get_user_repositories(self) -> list[RepositoryRecord]: ...


class MemberSource(Protocol):
    async def get_organization_members(self, org: str) -> list[MemberRecord]: ...


class MembershipChecker(Protocol):
    async def is_user_member_of_organization(self, username: str, org: str) -> bool: ...
