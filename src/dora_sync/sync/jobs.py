"""Sync jobs: one async run per entity kind.

Every job follows the same per-source shape:

    1. read the source's cursor (or bootstrap it from the lookback window)
    2. fetch everything upstream changed since then
    3. in one unit of work: reconcile against storage, write rows, advance
       the cursor to the invocation start time

A source that raises anywhere in 2-3 leaves its cursor and rows untouched.
Commit, pull request, incident and user jobs continue with the next source;
deployment and repository sync abort the invocation instead.
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Optional

from dora_sync.config import (
    JOB_COMMITS,
    JOB_DEPLOYMENTS,
    JOB_INCIDENTS,
    JOB_PULL_REQUESTS,
    JOB_REPOSITORIES,
    JOB_USERS,
)
from dora_sync.cursors import (
    commit_job_key,
    deployment_job_key,
    incident_job_key,
    pull_request_job_key,
)
from dora_sync.models import (
    NOREPLY_DOMAIN,
    CommitRecord,
    IncidentRecord,
    WorkflowRunRecord,
    utcnow,
)
from dora_sync.storage.tables import (
    Commit,
    CommitParent,
    Deployment,
    Incident,
    PullRequest,
    RepositoryConfig,
    User,
)
from dora_sync.sync.orchestrator import (
    RepositoryTarget,
    missing_coordinates,
    run_sources,
)
from dora_sync.sync.protocols import (
    CommitSource,
    DeploymentSource,
    IncidentSource,
    MemberSource,
    PullRequestSource,
    RepositorySource,
    UnitOfWork,
)
from dora_sync.sync.reconcile import (
    apply_incident_changes,
    reconcile_commits,
    reconcile_deployments,
    reconcile_incidents,
    reconcile_pull_requests,
    reconcile_repositories,
    reconcile_users,
)
from dora_sync.sync.results import JobResult, SourceOutcome

logger = logging.getLogger("dora_sync.sync.jobs")

DEFAULT_LOOKBACK = timedelta(days=365)
INCIDENT_LOOKBACK = timedelta(days=30)

PRODUCTION_BRANCH = "main"
PRODUCTION_ENVIRONMENT = "production"
SUCCESS_CONCLUSION = "success"

UNKNOWN_AUTHOR = "N/A"


def _read_cursor(
    unit_of_work: UnitOfWork, job_key: str, lookback: timedelta, now: datetime
) -> datetime:
    with unit_of_work() as store:
        return store.cursors.since(job_key, lookback, now)


# -- Commits ------------------------------------------------------------


class AuthorDirectory:
    """Case-insensitive lookups over the local user table."""

    def __init__(self, users: Iterable[User]):
        self._by_id: dict[int, str] = {}
        self._by_login: dict[str, str] = {}
        self._by_email: dict[str, str] = {}
        for user in users:
            self._by_id[user.github_id] = user.github_username
            self._by_login[user.github_username.lower()] = user.github_username
            if user.email:
                self._by_email[user.email.lower()] = user.github_username

    def by_id(self, github_id: int) -> Optional[str]:
        return self._by_id.get(github_id)

    def by_login(self, login: str) -> Optional[str]:
        return self._by_login.get(login.lower())

    def by_email(self, email: str) -> Optional[str]:
        return self._by_email.get(email.lower())


def resolve_commit_author(record: CommitRecord, directory: AuthorDirectory) -> str:
    """Pick the GitHub username credited with a commit.

    The git author email wins over the GitHub account attached to the commit,
    so squash-merges and bot pushes are credited to whoever wrote the change.
    """
    email = record.author_email
    if email:
        if email.lower().endswith(NOREPLY_DOMAIN):
            local_part = email.split("@", 1)[0]
            if "+" in local_part:
                # <github_id>+<login>@users.noreply.github.com
                id_part, login = local_part.split("+", 1)
                if not id_part.isdigit():
                    return login
                return directory.by_id(int(id_part)) or login
            return directory.by_login(local_part) or local_part

        username = directory.by_email(email)
        if username:
            return username

    return record.author_name or UNKNOWN_AUTHOR


async def _sync_repository_commits(
    source: CommitSource,
    unit_of_work: UnitOfWork,
    target: RepositoryTarget,
    now: datetime,
    lookback: timedelta,
) -> SourceOutcome:
    job_key = commit_job_key(target.owner, target.repo_name)
    since = _read_cursor(unit_of_work, job_key, lookback, now)
    records = await source.get_commits(target.owner, target.repo_name, since)

    with unit_of_work() as store:
        plan = reconcile_commits(records, store.existing_commit_shas(r.sha for r in records))
        directory = AuthorDirectory(store.all_users())
        store.add_all(
            Commit(
                sha=record.sha,
                repository_id=target.id,
                author=resolve_commit_author(record, directory),
                message=record.message or "",
                date=record.date or now,
            )
            for record in plan.to_insert
        )

        # Parent links only between commits we actually hold
        parent_shas = {p for r in plan.to_insert for p in r.parent_shas}
        present = store.existing_commit_shas(parent_shas)
        linked = store.existing_parent_links(r.sha for r in plan.to_insert)
        links = [
            CommitParent(commit_sha=r.sha, parent_sha=p)
            for r in plan.to_insert
            for p in dict.fromkeys(r.parent_shas)
            if p in present and (r.sha, p) not in linked
        ]
        store.add_all(links)
        store.cursors.set(job_key, now)

    logger.debug(
        "Stored %d commits and %d parent links for %s",
        len(plan.to_insert),
        len(links),
        target.label,
    )
    return SourceOutcome(
        inserted=len(plan.to_insert), unchanged=len(plan.unchanged), cursor=now
    )


async def run_commit_sync(
    source: CommitSource,
    unit_of_work: UnitOfWork,
    targets: Iterable[RepositoryTarget],
    now: Optional[datetime] = None,
    lookback: timedelta = DEFAULT_LOOKBACK,
) -> JobResult:
    now = now or utcnow()
    return await run_sources(
        JOB_COMMITS,
        targets,
        lambda t: _sync_repository_commits(source, unit_of_work, t, now, lookback),
        label=lambda t: t.label,
        skip_reason=missing_coordinates,
        started_at=now,
    )


# -- Pull requests ------------------------------------------------------


async def _sync_repository_pull_requests(
    source: PullRequestSource,
    unit_of_work: UnitOfWork,
    target: RepositoryTarget,
    now: datetime,
    lookback: timedelta,
) -> SourceOutcome:
    job_key = pull_request_job_key(target.owner, target.repo_name)
    since = _read_cursor(unit_of_work, job_key, lookback, now)
    records = await source.get_pull_requests(target.owner, target.repo_name, since)

    with unit_of_work() as store:
        known = store.existing_pull_request_ids(r.id for r in records)
    candidates = reconcile_pull_requests(records, known).to_insert

    # Upstream lookups happen outside any open transaction
    first_shas = {}
    for record in candidates:
        first_shas[record.id] = record.first_commit_sha
        if first_shas[record.id] is None:
            first_shas[record.id] = await source.get_pull_request_first_commit(
                target.owner, target.repo_name, record.number
            )

    with unit_of_work() as store:
        plan = reconcile_pull_requests(
            records, store.existing_pull_request_ids(r.id for r in records)
        )
        rows = []
        for record in plan.to_insert:
            first_sha = first_shas.get(record.id, record.first_commit_sha)
            rows.append(
                PullRequest(
                    id=record.id,
                    repository_id=target.id,
                    number=record.number,
                    state=record.state,
                    created_at=record.created_at,
                    merged_at=record.merged_at,
                    first_commit_sha=first_sha,
                )
            )
        store.add_all(rows)
        # An empty page still moves the cursor forward
        store.cursors.set(job_key, now)

    return SourceOutcome(
        inserted=len(plan.to_insert), unchanged=len(plan.unchanged), cursor=now
    )


async def run_pull_request_sync(
    source: PullRequestSource,
    unit_of_work: UnitOfWork,
    targets: Iterable[RepositoryTarget],
    now: Optional[datetime] = None,
    lookback: timedelta = DEFAULT_LOOKBACK,
) -> JobResult:
    now = now or utcnow()
    return await run_sources(
        JOB_PULL_REQUESTS,
        targets,
        lambda t: _sync_repository_pull_requests(source, unit_of_work, t, now, lookback),
        label=lambda t: t.label,
        skip_reason=missing_coordinates,
        started_at=now,
    )


# -- Deployments --------------------------------------------------------


def deployment_skip_reason(target: RepositoryTarget) -> Optional[str]:
    reason = missing_coordinates(target)
    if reason:
        return reason
    if not target.workflow_file:
        return "no deployment workflow file configured"
    return None


def _deployment_row(run: WorkflowRunRecord, target: RepositoryTarget) -> Deployment:
    return Deployment(
        github_id=run.id,
        repository_id=target.id,
        name=run.name,
        head_branch=run.head_branch,
        sha=run.head_sha,
        service_name=target.service_name,
        environment=PRODUCTION_ENVIRONMENT if run.head_branch == PRODUCTION_BRANCH else None,
        status=run.status,
        conclusion=run.conclusion,
        created_at=run.created_at,
        updated_at=run.updated_at,
    )


async def _sync_repository_deployments(
    source: DeploymentSource,
    unit_of_work: UnitOfWork,
    target: RepositoryTarget,
    now: datetime,
    lookback: timedelta,
    success_only: bool,
) -> SourceOutcome:
    job_key = deployment_job_key(target.owner, target.repo_name, target.workflow_file)
    since = _read_cursor(unit_of_work, job_key, lookback, now)
    runs = await source.get_workflow_runs(
        target.owner, target.repo_name, target.workflow_file, since
    )

    accepted: list[WorkflowRunRecord] = []
    skipped = 0
    for run in runs:
        if not (run.head_sha or "").strip():
            logger.warning(
                "Skipping workflow run %s of %s: no head SHA", run.id, target.label
            )
            skipped += 1
            continue
        if success_only and run.conclusion != SUCCESS_CONCLUSION:
            skipped += 1
            continue
        accepted.append(run)

    with unit_of_work() as store:
        plan = reconcile_deployments(
            accepted, store.existing_deployment_ids(r.id for r in accepted)
        )
        store.add_all(_deployment_row(run, target) for run in plan.to_insert)
        store.cursors.set(job_key, now)

    return SourceOutcome(
        inserted=len(plan.to_insert),
        unchanged=len(plan.unchanged),
        skipped=skipped,
        cursor=now,
    )


async def run_deployment_sync(
    source: DeploymentSource,
    unit_of_work: UnitOfWork,
    targets: Iterable[RepositoryTarget],
    now: Optional[datetime] = None,
    lookback: timedelta = DEFAULT_LOOKBACK,
    success_only: bool = True,
) -> JobResult:
    """Import workflow runs as deployments.

    Stops at the first failing repository; repositories after it are not
    attempted in this invocation.
    """
    now = now or utcnow()
    return await run_sources(
        JOB_DEPLOYMENTS,
        targets,
        lambda t: _sync_repository_deployments(
            source, unit_of_work, t, now, lookback, success_only
        ),
        label=lambda t: t.label,
        skip_reason=deployment_skip_reason,
        fail_fast=True,
        started_at=now,
    )


# -- Incidents ----------------------------------------------------------


def _incident_row(record: IncidentRecord, target: RepositoryTarget) -> Incident:
    return Incident(
        id=record.id,
        repository_id=target.id,
        title=record.title,
        state=record.state.value,
        severity=record.severity.value,
        service_name=target.service_name,
        start_time=record.created,
        created_at=record.created,
        resolved_time=record.resolved,
        duration_seconds=record.duration_seconds,
        updated_at=record.updated_at,
    )


async def _sync_service_incidents(
    source: IncidentSource,
    unit_of_work: UnitOfWork,
    target: RepositoryTarget,
    now: datetime,
    lookback: timedelta,
) -> SourceOutcome:
    job_key = incident_job_key(target.service_name)
    since = _read_cursor(unit_of_work, job_key, lookback, now)
    batch = await source.get_incidents(since, target.service_name)
    failed = len(batch.rejected)

    with unit_of_work() as store:
        plan = reconcile_incidents(
            batch.incidents, store.incidents_by_id(i.id for i in batch.incidents)
        )

        rows = []
        for record in plan.to_insert:
            try:
                rows.append(_incident_row(record, target))
            except Exception as e:
                failed += 1
                logger.error("Failed to map incident %s: %s", record.id, e)
        store.add_all(rows)

        updated = 0
        for row, changes in plan.to_update:
            try:
                apply_incident_changes(row, changes)
                updated += 1
            except Exception as e:
                failed += 1
                logger.error("Failed to update incident %s: %s", row.id, e)
        store.session.flush()
        store.cursors.set(job_key, now)

    return SourceOutcome(
        inserted=len(rows),
        updated=updated,
        unchanged=len(plan.unchanged),
        failed=failed,
        cursor=now,
    )


async def run_incident_sync(
    source: IncidentSource,
    unit_of_work: UnitOfWork,
    targets: Iterable[RepositoryTarget],
    now: Optional[datetime] = None,
    lookback: timedelta = INCIDENT_LOOKBACK,
) -> JobResult:
    """Upsert incidents for every repository mapped to a Datadog service."""
    now = now or utcnow()
    mapped = [t for t in targets if t.service_name]
    return await run_sources(
        JOB_INCIDENTS,
        mapped,
        lambda t: _sync_service_incidents(source, unit_of_work, t, now, lookback),
        label=lambda t: t.service_name,
        started_at=now,
    )


# -- Repositories -------------------------------------------------------

USER_REPOSITORIES_SOURCE = "github:user-repositories"


async def _sync_user_repositories(
    source: RepositorySource, unit_of_work: UnitOfWork
) -> SourceOutcome:
    repositories = await source.get_user_repositories()
    with unit_of_work() as store:
        plan = reconcile_repositories(repositories, store.existing_repository_urls())
        store.add_all(RepositoryConfig.from_url(r.html_url) for r in plan.to_insert)
        total = store.count_repository_configs()
    return SourceOutcome(
        inserted=len(plan.to_insert), unchanged=len(plan.unchanged), total=total
    )


async def run_repository_sync(
    source: RepositorySource,
    unit_of_work: UnitOfWork,
    now: Optional[datetime] = None,
) -> JobResult:
    """Register every repository visible to the token that is not tracked yet.

    Existing RepositoryConfig rows are never modified.
    """
    return await run_sources(
        JOB_REPOSITORIES,
        [USER_REPOSITORIES_SOURCE],
        lambda _: _sync_user_repositories(source, unit_of_work),
        label=lambda s: s,
        fail_fast=True,
        started_at=now,
    )


# -- Users --------------------------------------------------------------


async def _sync_organization_users(
    source: MemberSource, unit_of_work: UnitOfWork, org: str
) -> SourceOutcome:
    roster = await source.get_organization_members(org)
    with unit_of_work() as store:
        plan = reconcile_users(roster, store.all_users())
        if plan.is_empty:
            return SourceOutcome(unchanged=len(plan.unchanged))

        store.add_all(
            User(
                github_id=m.id,
                github_username=m.login,
                avatar_url=m.avatar_url,
                active=True,
            )
            for m in plan.to_create
        )
        for user, member in plan.to_refresh:
            user.github_username = member.login
            user.avatar_url = member.avatar_url
            user.active = True
        for user in plan.to_deactivate:
            user.active = False
        store.session.flush()

    logger.info(
        "Organization %s roster: %d created, %d refreshed, %d deactivated",
        org,
        len(plan.to_create),
        len(plan.to_refresh),
        len(plan.to_deactivate),
    )
    return SourceOutcome(
        inserted=len(plan.to_create),
        updated=len(plan.to_refresh) + len(plan.to_deactivate),
        unchanged=len(plan.unchanged),
    )


async def run_user_sync(
    source: MemberSource,
    unit_of_work: UnitOfWork,
    org: Optional[str],
    now: Optional[datetime] = None,
) -> JobResult:
    """Mirror the organization roster into the local user table."""
    if not org:
        logger.warning("No GitHub organization configured, skipping user sync")
        started = now or utcnow()
        return JobResult(job=JOB_USERS, started_at=started, finished_at=started)
    return await run_sources(
        JOB_USERS,
        [org],
        lambda o: _sync_organization_users(source, unit_of_work, o),
        label=lambda o: f"org:{o}",
        started_at=now,
    )
