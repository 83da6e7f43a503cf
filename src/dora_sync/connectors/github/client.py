"""GitHub REST API collector.

Provides an async httpx-based client for the GitHub REST API with token auth,
implementing the commit, pull request, workflow run, repository and
organization-member collectors. Pagination goes through the shared Link-header
walker; retries cover primary/secondary rate limits, 5xx and timeouts.

Reference: https://docs.github.com/en/rest
Rate limits: https://docs.github.com/en/rest/using-the-rest-api/rate-limits-for-the-rest-api
"""

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from dora_sync.connectors.pagination import walk_pages
from dora_sync.models import (
    CommitRecord,
    MemberRecord,
    PullRequestRecord,
    RepositoryRecord,
    WorkflowRunRecord,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger("dora_sync.github.client")


class GitHubClientError(Exception):
    """Raised when a GitHub API request fails.

    Wraps httpx errors and HTTP errors for consistent error handling.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimitExceeded(GitHubClientError):
    """Raised when GitHub rate limit is exhausted."""

    def __init__(self, reset_at: datetime, message: str = "Rate limit exceeded"):
        self.reset_at = reset_at
        super().__init__(f"{message}. Resets at {reset_at.isoformat()}", 429)


class GitHubClient:
    """Async collector for the GitHub REST API (Bearer token).

    Holds one pooled httpx.AsyncClient. Requests are spaced by ``min_delay_ms``
    and, when the hourly quota drops below ``QUOTA_LOW_WATER``, held back until
    the window resets.

    Example:
        >>> async with GitHubClient("ghp_token") as client:
        ...     commits = await client.get_commits("owner", "repo", since)
    """

    BASE_URL = "https://api.github.com"
    USER_AGENT = "dora-sync/1.0"

    MIN_REQUEST_DELAY_MS = 100
    QUOTA_LOW_WATER = 100  # of 5000 requests/hour for a PAT

    TIMEOUT = httpx.Timeout(connect=5.0, read=30.0, write=5.0, pool=5.0)

    MAX_RETRIES = 3
    BASE_BACKOFF = 2  # seconds; attempt n waits min(MAX_BACKOFF, 2 ** n)
    MAX_BACKOFF = 60

    DEFAULT_PER_PAGE = 100

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        min_delay_ms: int = MIN_REQUEST_DELAY_MS,
        max_pages: int = 100,
    ) -> None:
        """
        Args:
            token: Personal access or installation token
            base_url: API root, e.g. a GitHub Enterprise ``/api/v3`` URL
            min_delay_ms: Minimum spacing between two requests
            max_pages: Page limit for a single pagination walk
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.max_pages = max_pages
        self._min_delay_s = min_delay_ms / 1000.0

        self._quota_remaining: Optional[int] = None
        self._quota_reset: Optional[float] = None
        self._last_request_time = 0.0

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": self.USER_AGENT,
            },
            timeout=self.TIMEOUT,
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # --- Collectors ---

    async def get_commits(
        self, owner: str, repo: str, since: datetime
    ) -> list[CommitRecord]:
        """List commits on the default branch created after ``since``."""
        logger.info(
            "Collecting commits for %s/%s since %s", owner, repo, format_timestamp(since)
        )
        items = await self._paginate(
            f"/repos/{owner}/{repo}/commits",
            params={"since": format_timestamp(since)},
        )
        return [CommitRecord.from_api(item) for item in items]

    async def get_pull_requests(
        self, owner: str, repo: str, since: datetime
    ) -> list[PullRequestRecord]:
        """List pull requests updated at or after ``since``.

        Pages are sorted by update time, newest first, so the walk stops at the
        first pull request older than the window.
        """

        def _older_than_window(item: dict[str, Any]) -> bool:
            updated = parse_timestamp(item.get("updated_at"))
            return updated is not None and updated < since

        items = await self._paginate(
            f"/repos/{owner}/{repo}/pulls",
            params={"state": "all", "sort": "updated", "direction": "desc"},
            stop_when=_older_than_window,
        )
        logger.info("Collected %d pull requests for %s/%s", len(items), owner, repo)
        return [PullRequestRecord.from_api(item) for item in items]

    async def get_pull_request_first_commit(
        self, owner: str, repo: str, number: int
    ) -> Optional[str]:
        """Return the SHA of the earliest commit of a pull request, if any."""
        response = await self._raw_request(
            "GET",
            f"/repos/{owner}/{repo}/pulls/{number}/commits",
            params={"per_page": "1"},
        )
        commits = response.json()
        if not commits:
            return None
        return commits[0].get("sha")

    async def get_workflow_runs(
        self, owner: str, repo: str, workflow_file: str, since: datetime
    ) -> list[WorkflowRunRecord]:
        """List runs of one workflow created at or after ``since``.

        Runs come back newest first; the walk stops at the first older run.
        """

        def _older_than_window(item: dict[str, Any]) -> bool:
            created = parse_timestamp(item.get("created_at"))
            return created is not None and created < since

        items = await self._paginate(
            f"/repos/{owner}/{repo}/actions/workflows/{workflow_file}/runs",
            items_key="workflow_runs",
            stop_when=_older_than_window,
        )
        logger.info(
            "Collected %d workflow runs for %s/%s (%s)",
            len(items),
            owner,
            repo,
            workflow_file,
        )
        return [WorkflowRunRecord.from_api(item) for item in items]

    async def get_user_repositories(self) -> list[RepositoryRecord]:
        """List repositories visible to the authenticated user."""
        items = await self._paginate(
            "/user/repos",
            params={"affiliation": "owner,collaborator,organization_member"},
        )
        return [RepositoryRecord.from_api(item) for item in items]

    async def get_organization_members(self, org: str) -> list[MemberRecord]:
        """List the current member roster of an organization."""
        items = await self._paginate(f"/orgs/{org}/members")
        return [MemberRecord.from_api(item) for item in items]

    async def is_user_member_of_organization(self, username: str, org: str) -> bool:
        """Check organization membership.

        GitHub answers 204 for members and 404 for non-members. Any other
        failure is logged and treated as "not a member".
        """
        try:
            response = await self._raw_request("GET", f"/orgs/{org}/members/{username}")
        except GitHubClientError as e:
            if e.status_code == 404:
                return False
            logger.error(
                "Failed to check membership of %s in %s: %s", username, org, e
            )
            return False
        return response.status_code == 204

    # --- Pacing ---

    async def _pace(self) -> None:
        """Space requests out, and sit out the reset window once quota is nearly gone."""
        if (
            self._quota_remaining is not None
            and self._quota_remaining < self.QUOTA_LOW_WATER
            and self._quota_reset is not None
        ):
            until_reset = self._quota_reset - time.time()
            if until_reset > 0:
                pause = min(until_reset, self.MAX_BACKOFF)
                logger.warning(
                    "Only %d requests left in this window, pausing %.1fs",
                    self._quota_remaining,
                    pause,
                )
                await asyncio.sleep(pause)

        since_last = time.monotonic() - self._last_request_time
        if since_last < self._min_delay_s:
            await asyncio.sleep(self._min_delay_s - since_last)

    def _track_quota(self, response: httpx.Response) -> None:
        for header, attr, cast in (
            ("X-RateLimit-Remaining", "_quota_remaining", int),
            ("X-RateLimit-Reset", "_quota_reset", float),
        ):
            raw = response.headers.get(header)
            if raw is None:
                continue
            try:
                setattr(self, attr, cast(raw))
            except ValueError:
                logger.warning("Ignoring malformed %s header: %r", header, raw)

    def _backoff(self, attempt: int, jitter: bool = True) -> float:
        delay = float(min(self.MAX_BACKOFF, self.BASE_BACKOFF ** (attempt + 1)))
        if jitter:
            delay += random.uniform(0, 1)
        return delay

    # --- Requests ---

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json() if response.content else {}
        except (ValueError, UnicodeDecodeError):
            body = {}
        if isinstance(body, dict) and body.get("message"):
            return body["message"]
        return response.text

    @staticmethod
    def _parse_retry_after(value: Optional[str]) -> int:
        """Retry-After as whole seconds; it may be delta-seconds or an HTTP-date."""
        if not value:
            return 60
        try:
            return max(0, int(value))
        except ValueError:
            pass
        try:
            retry_at = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return 60
        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=timezone.utc)
        return max(0, int(retry_at.timestamp() - time.time()))

    def _retry_after(self, response: httpx.Response, attempt: int) -> Optional[float]:
        """Seconds to wait before retrying ``response``, or None if it is final.

        Raises:
            RateLimitExceeded: Quota or secondary limit still hit on the last attempt
        """
        status = response.status_code
        last_attempt = attempt >= self.MAX_RETRIES

        if status == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
            reset = float(response.headers.get("X-RateLimit-Reset", "0"))
            if last_attempt:
                raise RateLimitExceeded(datetime.fromtimestamp(reset, tz=timezone.utc))
            wait = min(max(1.0, reset - time.time()), self.MAX_BACKOFF)
            logger.warning(
                "Rate limit exhausted, retrying in %.0fs (attempt %d)", wait, attempt + 1
            )
            return wait

        if status == 429:
            wait = self._parse_retry_after(response.headers.get("Retry-After"))
            if last_attempt:
                raise RateLimitExceeded(
                    datetime.fromtimestamp(time.time() + wait, tz=timezone.utc),
                    "Secondary rate limit exceeded",
                )
            logger.warning(
                "Secondary rate limit, retrying in %ds (attempt %d)", wait, attempt + 1
            )
            return wait

        if status >= 500 and not last_attempt:
            wait = self._backoff(attempt)
            logger.warning(
                "GitHub returned %d, retrying in %.1fs (attempt %d)", status, wait, attempt + 1
            )
            return wait
        return None

    async def _raw_request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        """Send one API request, retrying rate limits, 5xx and timeouts.

        Args:
            method: HTTP method
            path: Path relative to base_url (may carry its own query string)
            params: Query parameters

        Returns:
            The 2xx response

        Raises:
            GitHubClientError: On any other 4xx, or once retries run out
            RateLimitExceeded: When the rate limit outlasts the retries
        """
        attempt = 0
        while True:
            await self._pace()
            self._last_request_time = time.monotonic()
            try:
                response = await self._client.request(method, path, params=params)
            except httpx.TimeoutException as e:
                if attempt >= self.MAX_RETRIES:
                    raise GitHubClientError(
                        f"Request timeout after {self.MAX_RETRIES} retries: {e}"
                    ) from e
                wait = self._backoff(attempt, jitter=False)
                logger.warning(
                    "Timeout on %s, retrying in %.1fs (attempt %d)", path, wait, attempt + 1
                )
                await asyncio.sleep(wait)
                attempt += 1
                continue
            except httpx.HTTPError as e:
                raise GitHubClientError(f"HTTP error: {e}") from e

            self._track_quota(response)
            wait = self._retry_after(response, attempt)
            if wait is not None:
                await asyncio.sleep(wait)
                attempt += 1
                continue

            status = response.status_code
            if status >= 500:
                raise GitHubClientError(
                    f"GitHub server error {status} after {self.MAX_RETRIES} retries", status
                )
            if status >= 400:
                raise GitHubClientError(
                    f"GitHub API error {status}: {self._error_message(response)}", status
                )
            return response

    async def _fetch_page(
        self, path: str, params: Optional[dict[str, str]]
    ) -> httpx.Response:
        return await self._raw_request("GET", path, params=params)

    async def _paginate(
        self,
        path: str,
        params: Optional[dict[str, str]] = None,
        items_key: Optional[str] = None,
        stop_when=None,
    ) -> list[dict[str, Any]]:
        """Walk all pages of an endpoint with ``per_page`` set to the maximum."""
        first_params = dict(params or {})
        first_params["per_page"] = str(self.DEFAULT_PER_PAGE)
        return await walk_pages(
            self._fetch_page,
            path,
            first_params,
            base_url=self.base_url,
            items_key=items_key,
            stop_when=stop_when,
            max_pages=self.max_pages,
        )

    def get_rate_limit_status(self) -> dict[str, Any]:
        """Last seen quota headers, for logging."""
        return {
            "primary_remaining": self._quota_remaining,
            "primary_reset": self._quota_reset,
        }
