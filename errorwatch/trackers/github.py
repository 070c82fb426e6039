"""
GitHub Issues implementation of the issue tracker capability.

Talks to the GitHub REST API with httpx. Transient failures (timeouts,
connection errors, 5xx, rate limiting) are retried with backoff, and a
circuit breaker stops hammering GitHub while it is down.
"""

from typing import Any, Dict, List, Optional

import httpx

from errorwatch.exceptions import (
    TrackerNotFoundError,
    TrackerPermanentError,
    TrackerTransientError,
)
from errorwatch.models.issue import TrackerIssue
from errorwatch.trackers.base import IssueTracker
from errorwatch.utils.logging import get_logger
from errorwatch.utils.metrics import track_api_call
from errorwatch.utils.resilience import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    create_tracker_circuit_breaker,
    retry_with_backoff,
)

logger = get_logger(__name__)

GITHUB_API_VERSION = "2022-11-28"


class GitHubIssueTracker(IssueTracker):
    """Issue tracker backed by one GitHub repository."""

    def __init__(
        self,
        repo: str,
        token: str,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        max_retries: int = 3,
        retry_base_delay: float = 1.0
    ):
        """
        Initialize the tracker.

        Args:
            repo: Repository as ``owner/name``
            token: GitHub token with issues read/write access
            api_url: API base URL. If None, will load from settings.
            timeout: Request timeout in seconds. If None, will load from settings.
            client: Preconfigured httpx client (mainly for tests)
            circuit_breaker: Breaker shared across calls to this repository
            max_retries: Attempts per call for transient failures
            retry_base_delay: Initial backoff delay in seconds
        """
        owner, _, name = repo.partition("/")
        if not owner or not name or "/" in name:
            raise ValueError(f"Tracker repository must be 'owner/repo', got {repo!r}")

        if api_url is None or timeout is None:
            from errorwatch.config import settings
            api_url = api_url or settings.github_api_url
            timeout = timeout if timeout is not None else settings.tracker_timeout_seconds

        self.repo = repo
        self._client = client or httpx.AsyncClient(
            base_url=api_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            },
        )
        self._circuit_breaker = circuit_breaker or create_tracker_circuit_breaker(
            tracked_exceptions=(TrackerTransientError,)
        )
        self._send = retry_with_backoff(
            max_retries=max_retries,
            base_delay=retry_base_delay,
            max_delay=30.0,
            exceptions=(TrackerTransientError,)
        )(self._send_once)

    async def close(self) -> None:
        await self._client.aclose()

    # ========== Issue Operations ==========

    async def create_issue(self, title: str, body: str, labels: List[str]) -> TrackerIssue:
        data = await self._request(
            "POST",
            f"/repos/{self.repo}/issues",
            json={"title": title, "body": body, "labels": labels}
        )
        issue = self._parse_issue(data)
        logger.info(
            f"Created issue #{issue.number} in {self.repo}",
            extra={"issue_number": issue.number}
        )
        return issue

    async def get_issue(self, number: int) -> TrackerIssue:
        data = await self._request("GET", f"/repos/{self.repo}/issues/{number}")
        return self._parse_issue(data)

    async def update_issue_state(self, number: int, state: str) -> TrackerIssue:
        if state not in ("open", "closed"):
            raise ValueError(f"Invalid issue state: {state}")

        data = await self._request(
            "PATCH",
            f"/repos/{self.repo}/issues/{number}",
            json={"state": state}
        )
        return self._parse_issue(data)

    async def add_comment(self, number: int, body: str) -> None:
        await self._request(
            "POST",
            f"/repos/{self.repo}/issues/{number}/comments",
            json={"body": body}
        )

    async def search_issues(
        self,
        text: Optional[str] = None,
        labels: Optional[List[str]] = None,
        state: Optional[str] = None,
        sort: str = "updated",
        limit: int = 10
    ) -> List[TrackerIssue]:
        data = await self._request(
            "GET",
            "/search/issues",
            params={
                "q": self.build_search_query(text, labels, state),
                "sort": sort,
                "order": "desc",
                "per_page": limit,
            }
        )
        return [self._parse_issue(item) for item in data.get("items", [])]

    def build_search_query(
        self,
        text: Optional[str] = None,
        labels: Optional[List[str]] = None,
        state: Optional[str] = None
    ) -> str:
        """Build a GitHub search qualifier string scoped to this repository."""
        terms = [f"repo:{self.repo}", "is:issue"]
        if state:
            terms.append(f"is:{state}")
        for label in labels or []:
            terms.append(f'label:"{label}"')
        if text:
            terms.append(f'"{text}"')
        return " ".join(terms)

    # ========== HTTP Plumbing ==========

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        try:
            return await self._circuit_breaker.call(
                lambda: self._send(method, path, json=json, params=params)
            )
        except CircuitBreakerOpenError as e:
            raise TrackerTransientError(str(e))

    async def _send_once(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        async with track_api_call(None, "github", path, method, logger):
            try:
                response = await self._client.request(method, path, json=json, params=params)
            except httpx.TimeoutException as e:
                raise TrackerTransientError(f"GitHub request timed out: {method} {path}") from e
            except httpx.TransportError as e:
                raise TrackerTransientError(f"GitHub connection failed: {e}") from e

            self._raise_for_status(response, method, path)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    @staticmethod
    def _raise_for_status(response: httpx.Response, method: str, path: str) -> None:
        status = response.status_code
        if status < 400:
            return

        message = f"GitHub API {method} {path} returned {status}"
        try:
            detail = response.json().get("message")
        except ValueError:
            detail = None
        if detail:
            message = f"{message}: {detail}"

        if status in (404, 410):
            raise TrackerNotFoundError(message, status_code=status)
        if status == 429 or status >= 500:
            raise TrackerTransientError(message, status_code=status)
        if status == 403 and response.headers.get("x-ratelimit-remaining") == "0":
            raise TrackerTransientError(message, status_code=status)
        raise TrackerPermanentError(message, status_code=status)

    @staticmethod
    def _parse_issue(data: Dict[str, Any]) -> TrackerIssue:
        return TrackerIssue(
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body"),
            state=data["state"],
            html_url=data.get("html_url") or "",
            labels=[
                label["name"] if isinstance(label, dict) else str(label)
                for label in data.get("labels", [])
            ],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            closed_at=data.get("closed_at"),
        )
