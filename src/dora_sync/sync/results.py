"""Result types returned by sync jobs and admin operations.

Per-source processing returns ``Result[SourceOutcome]``; the orchestrator
branches on ``result.ok`` instead of relying on exceptions to decide whether
to continue with the next source.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class SyncError:
    """Why one source failed."""

    source: str
    message: str
    error_type: str = "Exception"

    @classmethod
    def from_exception(cls, source: str, exc: BaseException) -> "SyncError":
        return cls(source=source, message=str(exc), error_type=type(exc).__name__)


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[SyncError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: SyncError) -> "Result[T]":
        return cls(error=error)


@dataclass
class SourceOutcome:
    """Counts for one successfully processed source."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    cursor: Optional[datetime] = None
    # Rows of this kind stored after the run, for jobs that report it
    total: Optional[int] = None


@dataclass
class SourceReport:
    source: str
    result: Result[SourceOutcome]


@dataclass
class JobResult:
    """Outcome of one job invocation across all of its sources."""

    job: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    sources: list[SourceReport] = field(default_factory=list)
    skipped_sources: list[str] = field(default_factory=list)
    aborted: bool = False

    def record(self, source: str, result: Result[SourceOutcome]) -> None:
        self.sources.append(SourceReport(source, result))

    @property
    def ok(self) -> bool:
        return not self.aborted and all(r.result.ok for r in self.sources)

    @property
    def succeeded(self) -> list[str]:
        return [r.source for r in self.sources if r.result.ok]

    @property
    def errors(self) -> list[SyncError]:
        return [r.result.error for r in self.sources if not r.result.ok]

    def _total(self, attr: str) -> int:
        return sum(getattr(r.result.value, attr) for r in self.sources if r.result.ok)

    @property
    def inserted(self) -> int:
        return self._total("inserted")

    @property
    def updated(self) -> int:
        return self._total("updated")

    @property
    def unchanged(self) -> int:
        return self._total("unchanged")

    @property
    def skipped(self) -> int:
        return self._total("skipped")

    @property
    def failed(self) -> int:
        """Records rejected inside otherwise successful sources."""
        return self._total("failed")

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "ok": self.ok,
            "aborted": self.aborted,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "failed": self.failed,
            "sources_succeeded": len(self.succeeded),
            "sources_failed": len(self.errors),
            "sources_skipped": len(self.skipped_sources),
            "errors": [f"{e.source}: {e.error_type}: {e.message}" for e in self.errors],
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(frozen=True)
class RepositorySyncResult:
    new_repositories: int
    total_repositories: int
    unchanged: int

    @classmethod
    def from_outcome(cls, outcome: SourceOutcome) -> "RepositorySyncResult":
        return cls(
            new_repositories=outcome.inserted,
            total_repositories=outcome.total or 0,
            unchanged=outcome.unchanged,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "new": self.new_repositories,
            "total": self.total_repositories,
            "unchanged": self.unchanged,
        }


@dataclass(frozen=True)
class OperationResult:
    """Response of an administrator-triggered operation."""

    success: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)
