"""Reconciliation of fetched upstream records against local storage.

Each function is pure: it receives the incoming batch plus the result of one
bulk identity lookup and returns a plan. Jobs turn plans into rows and
persist them inside the source's unit of work.

Identity and merge rules per entity:
    commits, pull requests, deployments, repositories -- insert-only
    incidents -- upsert; only the mutable fields are replaced
    users -- create / refresh-and-activate / deactivate against the roster
"""

from collections.abc import Callable, Hashable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, Optional, TypeVar

from dora_sync.models import (
    CommitRecord,
    IncidentRecord,
    MemberRecord,
    PullRequestRecord,
    RepositoryRecord,
    WorkflowRunRecord,
    ensure_utc,
)
from dora_sync.storage.tables import Incident, User

R = TypeVar("R")
K = TypeVar("K", bound=Hashable)

# Incident columns sync may overwrite; identity and creation fields are never touched
INCIDENT_MUTABLE_FIELDS = (
    "state",
    "severity",
    "resolved_time",
    "duration_seconds",
    "updated_at",
)


@dataclass
class ReconcilePlan(Generic[R]):
    to_insert: list[R] = field(default_factory=list)
    to_update: list = field(default_factory=list)
    unchanged: list = field(default_factory=list)


def _unique(records: Iterable[R], key: Callable[[R], K]) -> list[R]:
    """Drop repeated identities within one batch, keeping the first occurrence."""
    seen: set = set()
    unique = []
    for record in records:
        k = key(record)
        if k in seen:
            continue
        seen.add(k)
        unique.append(record)
    return unique


def _insert_only(
    records: Iterable[R], existing: set, key: Callable[[R], K]
) -> ReconcilePlan[R]:
    plan: ReconcilePlan[R] = ReconcilePlan()
    for record in _unique(records, key):
        if key(record) in existing:
            plan.unchanged.append(record)
        else:
            plan.to_insert.append(record)
    return plan


def reconcile_commits(
    records: Iterable[CommitRecord], existing_shas: set[str]
) -> ReconcilePlan[CommitRecord]:
    return _insert_only(records, existing_shas, lambda c: c.sha)


def reconcile_pull_requests(
    records: Iterable[PullRequestRecord], existing_ids: set[int]
) -> ReconcilePlan[PullRequestRecord]:
    return _insert_only(records, existing_ids, lambda pr: pr.id)


def reconcile_deployments(
    records: Iterable[WorkflowRunRecord], existing_ids: set[int]
) -> ReconcilePlan[WorkflowRunRecord]:
    # A run seen once is never refreshed, even if it was still in progress
    return _insert_only(records, existing_ids, lambda run: run.id)


def reconcile_repositories(
    records: Iterable[RepositoryRecord], existing_urls: set[str]
) -> ReconcilePlan[RepositoryRecord]:
    return _insert_only(records, existing_urls, lambda repo: repo.html_url)


def incident_changes(existing: Incident, record: IncidentRecord) -> dict[str, object]:
    """Mutable-field values from ``record`` that differ from the stored row."""
    incoming = {
        "state": record.state.value,
        "severity": record.severity.value,
        "resolved_time": record.resolved,
        "duration_seconds": record.duration_seconds,
        "updated_at": record.updated_at,
    }
    changes = {}
    for name in INCIDENT_MUTABLE_FIELDS:
        current = getattr(existing, name)
        new = incoming[name]
        if isinstance(current, datetime):
            # SQLite hands back naive datetimes
            current = ensure_utc(current)
        if current != new:
            changes[name] = new
    return changes


def reconcile_incidents(
    records: Iterable[IncidentRecord], existing: Mapping[str, Incident]
) -> ReconcilePlan[IncidentRecord]:
    """Split incidents into new ones and ``(row, changes)`` pairs to update."""
    plan: ReconcilePlan[IncidentRecord] = ReconcilePlan()
    for record in _unique(records, lambda i: i.id):
        row = existing.get(record.id)
        if row is None:
            plan.to_insert.append(record)
            continue
        changes = incident_changes(row, record)
        if changes:
            plan.to_update.append((row, changes))
        else:
            plan.unchanged.append(record)
    return plan


def apply_incident_changes(row: Incident, changes: Mapping[str, object]) -> None:
    for name, value in changes.items():
        if name not in INCIDENT_MUTABLE_FIELDS:
            raise ValueError(f"Incident field '{name}' is not sync-mutable")
        setattr(row, name, value)


@dataclass
class UserPlan:
    to_create: list[MemberRecord] = field(default_factory=list)
    to_refresh: list[tuple[User, MemberRecord]] = field(default_factory=list)
    to_deactivate: list[User] = field(default_factory=list)
    unchanged: list[User] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_refresh or self.to_deactivate)


def reconcile_users(
    roster: Iterable[MemberRecord], local_users: Iterable[User]
) -> UserPlan:
    """Three-way diff of the organization roster against every local user.

    Members absent locally are created. Members present locally are refreshed
    and forced active when login, avatar or active flag differ, and reported
    as unchanged otherwise. Active local users missing from the roster are
    deactivated. Already-inactive users outside the roster are left alone.
    """
    members = _unique(roster, lambda m: m.id)
    roster_ids = {m.id for m in members}
    local_by_id: dict[int, User] = {u.github_id: u for u in local_users}

    plan = UserPlan()
    for member in members:
        user: Optional[User] = local_by_id.get(member.id)
        if user is None:
            plan.to_create.append(member)
        elif (
            user.active
            and user.github_username == member.login
            and user.avatar_url == member.avatar_url
        ):
            plan.unchanged.append(user)
        else:
            plan.to_refresh.append((user, member))

    for github_id, user in local_by_id.items():
        if user.active and github_id not in roster_ids:
            plan.to_deactivate.append(user)
    return plan
