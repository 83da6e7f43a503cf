"""Wiring between configuration, storage, collectors and the sync jobs.

``SyncService`` is what the entrypoints and admin operations talk to: it
loads repository targets, runs one job against them, and records the
outcome in metrics.
"""

import logging
from datetime import datetime
from typing import Optional

from dora_sync.config import (
    JOB_COMMITS,
    JOB_DEPLOYMENTS,
    JOB_INCIDENTS,
    JOB_PULL_REQUESTS,
    JOB_REPOSITORIES,
    JOB_USERS,
    SCHEDULED_JOBS,
    SyncConfig,
)
from dora_sync.connectors.datadog import DatadogClient
from dora_sync.connectors.github import GitHubClient
from dora_sync.metrics import push_job_metrics, record_job_result
from dora_sync.scheduler import Trigger
from dora_sync.storage.store import Database
from dora_sync.sync.jobs import (
    run_commit_sync,
    run_deployment_sync,
    run_incident_sync,
    run_pull_request_sync,
    run_repository_sync,
    run_user_sync,
)
from dora_sync.sync.orchestrator import RepositoryTarget, load_repository_targets
from dora_sync.sync.results import JobResult

logger = logging.getLogger("dora_sync.service")


class SyncService:
    """Runs sync jobs with the configured collectors and database.

    Attributes:
        config: Loaded SyncConfig
        database: Database providing units of work
        github: GitHub collector, or None when no token is configured
        datadog: Datadog collector, or None when keys are missing
    """

    def __init__(
        self,
        config: SyncConfig,
        database: Database,
        github: Optional[GitHubClient] = None,
        datadog: Optional[DatadogClient] = None,
    ) -> None:
        self.config = config
        self.database = database
        self.github = github
        self.datadog = datadog

    @classmethod
    def from_config(cls, config: SyncConfig) -> "SyncService":
        """Build collectors from the credentials present in ``config``."""
        database = Database(config.database_url)
        database.create_all()

        github = None
        if config.github_enabled:
            github = GitHubClient(
                token=config.github_token.get_secret_value(),
                base_url=config.github_api_url,
                min_delay_ms=config.request_delay_ms,
                max_pages=config.max_pages,
            )
        else:
            logger.warning("GITHUB_TOKEN not set, GitHub jobs are disabled")

        datadog = None
        if config.datadog_enabled:
            datadog = DatadogClient(
                api_key=config.datadog_api_key.get_secret_value(),
                app_key=config.datadog_app_key.get_secret_value(),
                base_url=config.datadog_base_url,
                delay_ms=config.request_delay_ms,
            )
        else:
            logger.warning("Datadog keys not set, incident sync is disabled")

        return cls(config, database, github=github, datadog=datadog)

    async def close(self) -> None:
        if self.github is not None:
            await self.github.close()
        if self.datadog is not None:
            await self.datadog.close()
        self.database.dispose()

    async def __aenter__(self) -> "SyncService":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    # -- Helpers ----------------------------------------------------------

    def targets(self) -> list[RepositoryTarget]:
        return load_repository_targets(self.database.unit_of_work)

    def _require_github(self) -> GitHubClient:
        if self.github is None:
            raise RuntimeError("GitHub credentials not configured (GITHUB_TOKEN)")
        return self.github

    def _require_datadog(self) -> DatadogClient:
        if self.datadog is None:
            raise RuntimeError(
                "Datadog credentials not configured (DATADOG_API_KEY / DATADOG_APP_KEY)"
            )
        return self.datadog

    def _finish(self, result: JobResult) -> JobResult:
        record_job_result(result)
        if self.config.pushgateway_enabled:
            push_job_metrics(result, self.config.pushgateway_url)
        if self.github is not None and result.job != JOB_INCIDENTS:
            logger.debug(
                "GitHub rate limit after %s sync", result.job,
                extra=self.github.get_rate_limit_status(),
            )
        return result

    def job_available(self, job: str) -> bool:
        """Whether the collector a job depends on is configured."""
        if job == JOB_INCIDENTS:
            return self.datadog is not None
        if job == JOB_USERS:
            return self.github is not None and bool(self.config.github_org)
        return self.github is not None

    # -- Jobs -------------------------------------------------------------

    async def sync_commits(self, now: Optional[datetime] = None) -> JobResult:
        result = await run_commit_sync(
            self._require_github(),
            self.database.unit_of_work,
            self.targets(),
            now=now,
            lookback=self.config.default_lookback,
        )
        return self._finish(result)

    async def sync_pull_requests(self, now: Optional[datetime] = None) -> JobResult:
        result = await run_pull_request_sync(
            self._require_github(),
            self.database.unit_of_work,
            self.targets(),
            now=now,
            lookback=self.config.default_lookback,
        )
        return self._finish(result)

    async def sync_deployments(
        self, repository_id: Optional[int] = None, now: Optional[datetime] = None
    ) -> JobResult:
        """Sync deployments for every repository, or only ``repository_id``.

        Raises:
            KeyError: If ``repository_id`` is given but not tracked
        """
        targets = self.targets()
        if repository_id is not None:
            targets = [t for t in targets if t.id == repository_id]
            if not targets:
                raise KeyError(f"Repository config {repository_id} not found")
        result = await run_deployment_sync(
            self._require_github(),
            self.database.unit_of_work,
            targets,
            now=now,
            lookback=self.config.default_lookback,
            success_only=self.config.deployment_success_only,
        )
        return self._finish(result)

    async def sync_incidents(self, now: Optional[datetime] = None) -> JobResult:
        result = await run_incident_sync(
            self._require_datadog(),
            self.database.unit_of_work,
            self.targets(),
            now=now,
            lookback=self.config.incident_lookback,
        )
        return self._finish(result)

    async def sync_repositories(self, now: Optional[datetime] = None) -> JobResult:
        result = await run_repository_sync(
            self._require_github(), self.database.unit_of_work, now=now
        )
        return self._finish(result)

    async def sync_users(self, now: Optional[datetime] = None) -> JobResult:
        result = await run_user_sync(
            self._require_github(),
            self.database.unit_of_work,
            self.config.github_org,
            now=now,
        )
        return self._finish(result)

    async def run_job(self, job: str) -> JobResult:
        """Run one job by name.

        Raises:
            ValueError: If the job name is unknown
        """
        runners = {
            JOB_COMMITS: self.sync_commits,
            JOB_PULL_REQUESTS: self.sync_pull_requests,
            JOB_DEPLOYMENTS: self.sync_deployments,
            JOB_INCIDENTS: self.sync_incidents,
            JOB_REPOSITORIES: self.sync_repositories,
            JOB_USERS: self.sync_users,
        }
        if job not in runners:
            raise ValueError(f"Unknown job '{job}'")
        return await runners[job]()

    def scheduled_triggers(self) -> list[Trigger]:
        """Triggers for every enabled, schedulable job whose collector exists."""
        triggers = []
        for job in SCHEDULED_JOBS:
            if job not in self.config.enabled_jobs:
                continue
            if not self.job_available(job):
                logger.warning("Job %s is enabled but not configured, not scheduling", job)
                continue
            interval, delay = self.config.schedule_for(job)

            async def _run(job: str = job) -> JobResult:
                return await self.run_job(job)

            triggers.append(Trigger(job, interval, delay, _run))
        return triggers

    def cursor_status(self) -> dict[str, datetime]:
        with self.database.unit_of_work() as store:
            return store.cursors.all()
