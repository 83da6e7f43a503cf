"""dora-sync - incremental collection of DORA metrics source data.

Pulls commits, pull requests, deployments (workflow runs), repositories and
organization members from GitHub, and incidents from Datadog, into a
relational store. Every job is incremental: a per-source cursor records the
last successful run and the next run only asks upstream for what changed
since then.

Python Version: 3.10+ required
"""

# Configure logging before other imports
from .logging_config import StructuredFormatter, configure_logging

configure_logging()

from .__version__ import __version__
from .config import JOB_NAMES, SyncConfig, get_config, reset_config
from .service import SyncService
from .storage.store import Database, SyncStore
from .sync.results import JobResult, OperationResult

__all__ = [
    "Database",
    "JOB_NAMES",
    "JobResult",
    "OperationResult",
    "StructuredFormatter",
    "SyncConfig",
    "SyncService",
    "SyncStore",
    "__version__",
    "configure_logging",
    "get_config",
    "reset_config",
]
