"""Per-source loop shared by every sync job.

A job is a list of sources (repositories, services, an organization) and one
async step per source. The step owns its unit of work; this module only turns
whatever the step raises into a ``Result.failure`` and decides whether the
next source still runs.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, TypeVar

from dora_sync.models import utcnow
from dora_sync.storage.tables import RepositoryConfig
from dora_sync.sync.protocols import UnitOfWork
from dora_sync.sync.results import JobResult, Result, SourceOutcome, SyncError

logger = logging.getLogger("dora_sync.sync")

S = TypeVar("S")

Step = Callable[[S], Awaitable[SourceOutcome]]


@dataclass(frozen=True)
class RepositoryTarget:
    """Snapshot of a RepositoryConfig row, safe to use outside its session."""

    id: int
    url: str
    owner: Optional[str] = None
    repo_name: Optional[str] = None
    service_name: Optional[str] = None
    workflow_file: Optional[str] = None

    @classmethod
    def from_config(cls, config: RepositoryConfig) -> "RepositoryTarget":
        return cls(
            id=config.id,
            url=config.repository_url,
            owner=config.owner or None,
            repo_name=config.repo_name or None,
            service_name=(config.datadog_service_name or "").strip() or None,
            workflow_file=(config.deployment_workflow_file_name or "").strip() or None,
        )

    @property
    def label(self) -> str:
        if self.owner and self.repo_name:
            return f"{self.owner}/{self.repo_name}"
        return self.url


def load_repository_targets(unit_of_work: UnitOfWork) -> list[RepositoryTarget]:
    with unit_of_work() as store:
        return [RepositoryTarget.from_config(c) for c in store.list_repository_configs()]


def missing_coordinates(target: RepositoryTarget) -> Optional[str]:
    if not target.owner or not target.repo_name:
        return "owner/repo could not be parsed from the repository URL"
    return None


async def process_source(
    label: str, step: Callable[[], Awaitable[SourceOutcome]]
) -> Result[SourceOutcome]:
    """Run one source step, converting any exception into a failure result."""
    try:
        outcome = await step()
    except Exception as e:
        logger.error(
            "Sync of %s failed: %s",
            label,
            e,
            exc_info=True,
            extra={"source": label, "error_type": type(e).__name__},
        )
        return Result.failure(SyncError.from_exception(label, e))
    return Result.success(outcome)


async def run_sources(
    job: str,
    sources: Iterable[S],
    step: Step,
    *,
    label: Callable[[S], str],
    skip_reason: Optional[Callable[[S], Optional[str]]] = None,
    fail_fast: bool = False,
    started_at: Optional[datetime] = None,
) -> JobResult:
    """Process each source in order and collect a JobResult.

    Args:
        job: Job name for logging and the result
        sources: Sources in processing order
        step: Coroutine function taking one source
        label: Human-readable identifier of a source
        skip_reason: Returns why a source cannot be processed, or None
        fail_fast: Stop at the first failing source and mark the run aborted
        started_at: Invocation start time (defaults to now)
    """
    result = JobResult(job=job, started_at=started_at or utcnow())
    sources = list(sources)
    if not sources:
        logger.warning("No sources configured for %s sync", job)

    for source in sources:
        name = label(source)
        reason = skip_reason(source) if skip_reason else None
        if reason:
            logger.warning("Skipping %s for %s sync: %s", name, job, reason)
            result.skipped_sources.append(name)
            continue

        logger.debug("Syncing %s for %s", name, job)
        outcome = await process_source(name, lambda: step(source))
        result.record(name, outcome)

        if outcome.ok:
            value = outcome.value
            logger.info(
                "%s sync of %s: %d inserted, %d updated, %d unchanged",
                job,
                name,
                value.inserted,
                value.updated,
                value.unchanged,
            )
        elif fail_fast:
            result.aborted = True
            logger.error("Aborting %s sync after failure of %s", job, name)
            break

    result.finished_at = utcnow()
    logger.info(
        "%s sync complete",
        job,
        extra={"event": "sync_job_complete", **result.to_dict()},
    )
    return result
