"""Sync engine: reconcilers, per-source orchestration and the six jobs."""

from .jobs import (
    run_commit_sync,
    run_deployment_sync,
    run_incident_sync,
    run_pull_request_sync,
    run_repository_sync,
    run_user_sync,
)
from .orchestrator import RepositoryTarget, load_repository_targets
from .results import (
    JobResult,
    OperationResult,
    RepositorySyncResult,
    Result,
    SourceOutcome,
    SyncError,
)

__all__ = [
    "JobResult",
    "OperationResult",
    "RepositorySyncResult",
    "RepositoryTarget",
    "Result",
    "SourceOutcome",
    "SyncError",
    "load_repository_targets",
    "run_commit_sync",
    "run_deployment_sync",
    "run_incident_sync",
    "run_pull_request_sync",
    "run_repository_sync",
    "run_user_sync",
]
