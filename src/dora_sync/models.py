"""Upstream record types for dora-sync collectors.

Collectors translate raw API payloads into these dataclasses; orchestrators
and reconcilers never see upstream JSON. Each record exposes a ``from_api``
constructor that raises ``ValueError``/``KeyError`` on payloads that cannot
be mapped.

Python 3.10 compatible: uses (str, Enum) rather than StrEnum.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

NOREPLY_DOMAIN = "@users.noreply.github.com"


class IncidentState(str, Enum):
    """Lifecycle state of an incident."""

    ACTIVE = "ACTIVE"
    STABLE = "STABLE"
    RESOLVED = "RESOLVED"

    @classmethod
    def from_upstream(cls, value: Optional[str]) -> "IncidentState":
        if value is None:
            return cls.ACTIVE
        return {
            "resolved": cls.RESOLVED,
            "stable": cls.STABLE,
        }.get(value.lower(), cls.ACTIVE)


class IncidentSeverity(str, Enum):
    """Incident severity, SEV1 (highest) to SEV5 (unknown/lowest)."""

    SEV1 = "SEV1"
    SEV2 = "SEV2"
    SEV3 = "SEV3"
    SEV4 = "SEV4"
    SEV5 = "SEV5"

    @classmethod
    def from_upstream(cls, value: Optional[str]) -> "IncidentSeverity":
        if value is None:
            return cls.SEV5
        # Datadog reports "SEV-1", "SEV-2", ...
        normalized = value.upper().replace("-", "")
        if normalized in ("SEV1", "SEV2", "SEV3", "SEV4"):
            return cls(normalized)
        return cls.SEV5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Python 3.10 compat: fromisoformat() doesn't support "Z" suffix until 3.11.
    """
    if not value:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Expected an ISO 8601 string, got {value!r}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return ensure_utc(parsed)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and normalize aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime the way GitHub and Datadog filters expect (``...Z``)."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class CommitRecord:
    sha: str
    message: str
    date: Optional[datetime]
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    author_login: Optional[str] = None
    parent_shas: tuple[str, ...] = ()

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "CommitRecord":
        commit = data.get("commit") or {}
        git_author = commit.get("author") or {}
        return cls(
            sha=data["sha"],
            message=commit.get("message") or "",
            date=parse_timestamp(git_author.get("date")),
            author_name=git_author.get("name"),
            author_email=git_author.get("email"),
            author_login=(data.get("author") or {}).get("login"),
            parent_shas=tuple(p["sha"] for p in data.get("parents") or [] if p.get("sha")),
        )


@dataclass(frozen=True)
class PullRequestRecord:
    id: int
    number: int
    state: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None
    first_commit_sha: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "PullRequestRecord":
        return cls(
            id=int(data["id"]),
            number=int(data["number"]),
            state=data["state"],
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data.get("updated_at")),
            merged_at=parse_timestamp(data.get("merged_at")),
        )


@dataclass(frozen=True)
class WorkflowRunRecord:
    id: int
    name: Optional[str]
    head_branch: Optional[str]
    head_sha: Optional[str]
    status: Optional[str]
    conclusion: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "WorkflowRunRecord":
        return cls(
            id=int(data["id"]),
            name=data.get("name"),
            head_branch=data.get("head_branch"),
            head_sha=data.get("head_sha"),
            status=data.get("status"),
            conclusion=data.get("conclusion"),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass(frozen=True)
class IncidentRecord:
    id: str
    title: Optional[str]
    state: IncidentState
    severity: IncidentSeverity
    created: datetime
    modified: Optional[datetime] = None
    resolved: Optional[datetime] = None

    @property
    def updated_at(self) -> datetime:
        return self.modified or self.created

    @property
    def duration_seconds(self) -> Optional[int]:
        if self.resolved is None:
            return None
        return int((self.resolved - self.created).total_seconds())

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "IncidentRecord":
        """Map one element of the Datadog ``data`` array.

        State and severity live under ``attributes.fields.<name>.value`` in the
        v2 API; older payloads carry them as flat attributes.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Incident item is not an object: {data!r}")
        attributes = data.get("attributes")
        if not isinstance(attributes, dict):
            raise ValueError(f"Incident {data.get('id')} has no attributes object")
        fields = attributes.get("fields")
        if not isinstance(fields, dict):
            fields = {}

        def _field(name: str) -> Optional[str]:
            nested = fields.get(name)
            if isinstance(nested, dict) and nested.get("value") is not None:
                return nested["value"]
            return attributes.get(name)

        created = parse_timestamp(attributes.get("created"))
        if created is None:
            raise ValueError(f"Incident {data.get('id')} has no creation time")

        return cls(
            id=str(data["id"]),
            title=attributes.get("title"),
            state=IncidentState.from_upstream(_field("state")),
            severity=IncidentSeverity.from_upstream(_field("severity")),
            created=created,
            modified=parse_timestamp(attributes.get("modified")),
            resolved=parse_timestamp(attributes.get("resolved")),
        )


@dataclass
class IncidentBatch:
    """Incidents returned for one query, plus raw items that failed to map."""

    incidents: list[IncidentRecord] = field(default_factory=list)
    rejected: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class RepositoryRecord:
    id: int
    name: str
    full_name: str
    html_url: str
    private: bool = False
    owner_login: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RepositoryRecord":
        return cls(
            id=int(data["id"]),
            name=data["name"],
            full_name=data.get("full_name") or data["name"],
            html_url=data["html_url"],
            private=bool(data.get("private", False)),
            owner_login=(data.get("owner") or {}).get("login"),
        )


@dataclass(frozen=True)
class MemberRecord:
    id: int
    login: str
    avatar_url: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "MemberRecord":
        return cls(
            id=int(data["id"]),
            login=data["login"],
            avatar_url=data.get("avatar_url"),
        )
