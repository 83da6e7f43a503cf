"""Per-job sync cursors.

A cursor is the start time of the last run of a job key that completed
without error. Jobs read it once before fetching and write it once, in the
same unit of work as the records it covers, after reconciliation succeeds.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from dora_sync.models import ensure_utc
from dora_sync.storage.tables import SyncStatus

COMMIT_SYNC_PREFIX = "COMMIT_SYNC_"
PULL_REQUEST_SYNC_PREFIX = "PULL_REQUEST_SYNC_"
DEPLOYMENT_SYNC_PREFIX = "DEPLOYMENT_SYNC_"
INCIDENT_SYNC_PREFIX = "DATADOG_INCIDENT_SYNC_"


def commit_job_key(owner: str, repo: str) -> str:
    return f"{COMMIT_SYNC_PREFIX}{owner}/{repo}"


def pull_request_job_key(owner: str, repo: str) -> str:
    return f"{PULL_REQUEST_SYNC_PREFIX}{owner}/{repo}"


def deployment_job_key(owner: str, repo: str, workflow_file: str) -> str:
    # Changing the workflow file starts a fresh cursor for the new workflow
    return f"{DEPLOYMENT_SYNC_PREFIX}{owner}/{repo}_{workflow_file}"


def incident_job_key(service_name: str) -> str:
    return f"{INCIDENT_SYNC_PREFIX}{service_name}"


class CursorStore:
    """Read and write SyncStatus rows through an open session.

    The store never commits; the caller's unit of work decides whether the
    cursor write is kept.
    """

    def __init__(self, session: Session):
        self.session = session

    def get(self, job_key: str) -> Optional[datetime]:
        row = self.session.get(SyncStatus, job_key)
        if row is None:
            return None
        return ensure_utc(row.last_successful_run)

    def set(self, job_key: str, timestamp: datetime) -> None:
        row = self.session.get(SyncStatus, job_key)
        if row is None:
            self.session.add(
                SyncStatus(job_key=job_key, last_successful_run=ensure_utc(timestamp))
            )
        else:
            row.last_successful_run = ensure_utc(timestamp)
        self.session.flush()

    def since(self, job_key: str, lookback: timedelta, now: datetime) -> datetime:
        """Lower bound of the fetch window: the cursor, or ``now - lookback`` on first run."""
        last = self.get(job_key)
        if last is None:
            return ensure_utc(now) - lookback
        return last

    def all(self) -> dict[str, datetime]:
        rows = self.session.query(SyncStatus).order_by(SyncStatus.job_key).all()
        return {row.job_key: ensure_utc(row.last_successful_run) for row in rows}
