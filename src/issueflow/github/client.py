"""GitHub API client for the issue and pull request side of a run.

This module provides an async wrapper around the GitHub REST API (and one
GraphQL mutation) covering what the orchestrator needs:
- Reading issue context and branch SHAs
- Finding the open pull request linked to an issue
- Evaluating required check runs and human approvals on a PR
- Approving, requesting changes and enabling auto-merge
- Commenting on issues

Transport-level resilience (rate limits, 5xx, timeouts) is handled inside
_request; callers only see GitHubAPIError once those retries are spent.

Source:
- src/issueflow/config.py (github_token, github_base_url)
"""

import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx


logger = logging.getLogger(__name__)


ENABLE_AUTO_MERGE_MUTATION = """
mutation EnableAutoMerge($pullRequestId: ID!) {
  enablePullRequestAutoMerge(input: {pullRequestId: $pullRequestId, mergeMethod: SQUASH}) {
    pullRequest {
      number
    }
  }
}
"""


class GitHubAPIError(Exception):
    """Raised when a GitHub API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response, if any.
        response_body: Response body from GitHub.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(GitHubAPIError):
    """Raised when the GitHub API rate limit is exceeded.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


@dataclass(frozen=True)
class RepoRef:
    """Owner/name pair identifying a repository."""

    owner: str
    repo: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @classmethod
    def parse(cls, full_name: str) -> Optional["RepoRef"]:
        owner, _, repo = full_name.partition("/")
        if not owner or not repo:
            return None
        return cls(owner=owner, repo=repo)


@dataclass(frozen=True)
class IssueContext:
    owner: str
    repo: str
    issue_number: int
    title: str
    body: str
    labels: List[str]


def issue_reference_pattern(issue_number: int) -> "re.Pattern[str]":
    """Regex matching "closes #N" style links or a bare "#N" reference."""
    return re.compile(
        rf"(?:(?:closes|fixes|resolves)\s+#{issue_number}\b|#{issue_number}\b)",
        re.IGNORECASE,
    )


class GitHubClient:
    """Async GitHub API client with rate limit handling and retries.

    Attributes:
        token: GitHub API token (PAT or GitHub App token).
        base_url: Base URL for the GitHub API; set it for GitHub Enterprise.
        max_retries: Retries for transient transport failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "issueflow-orchestrator/1.0",
        }

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter (attempt is 0-indexed)."""
        capped_delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return random.uniform(0, capped_delay)

    @staticmethod
    def _parse_int_header(headers: httpx.Headers, name: str) -> Optional[int]:
        value = headers.get(name)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                pass
        return None

    def _raise_rate_limit(self, response: httpx.Response) -> None:
        """Translate a rate-limited response into RateLimitError.

        Raises:
            RateLimitError: Always.
        """
        reset_at = self._parse_int_header(response.headers, "x-ratelimit-reset")
        retry_after = None
        if reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        retry_after_header = self._parse_int_header(response.headers, "retry-after")
        if retry_after_header is not None:
            retry_after = retry_after_header

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={"reset_at": reset_at, "retry_after": retry_after},
        )
        raise RateLimitError(
            message="GitHub API rate limit exceeded",
            status_code=response.status_code,
            reset_at=reset_at,
            retry_after=retry_after,
            request_url=str(response.url),
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Args:
            method: HTTP method.
            path: API path, e.g. /repos/{owner}/{repo}/pulls.
            json_data: Optional JSON body.
            params: Optional query parameters.

        Returns:
            The successful HTTP response.

        Raises:
            RateLimitError: If the rate limit is exceeded.
            GitHubAPIError: On non-retryable errors or after all retries.
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method=method,
                    url=path,
                    json=json_data,
                    params=params,
                )
            except httpx.TransportError as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "GitHub request transport error, retrying",
                        extra={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                    continue
                break

            if response.status_code == 403:
                remaining = self._parse_int_header(
                    response.headers, "x-ratelimit-remaining"
                )
                if remaining == 0:
                    self._raise_rate_limit(response)

            if response.status_code == 429:
                self._raise_rate_limit(response)

            if (
                response.status_code in self.RETRYABLE_STATUS_CODES
                and attempt < self.max_retries
            ):
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Retryable error from GitHub API",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                error_body = response.text
                logger.error(
                    "GitHub API error",
                    extra={
                        "status_code": response.status_code,
                        "path": path,
                        "method": method,
                        "response_body": error_body[:500],
                    },
                )
                raise GitHubAPIError(
                    message=f"GitHub API error: {response.status_code}",
                    status_code=response.status_code,
                    response_body=error_body,
                    request_url=str(response.url),
                )

            return response

        raise GitHubAPIError(
            message=(
                f"Request failed after {self.max_retries} retries: {last_exception}"
            ),
            request_url=f"{self.base_url}{path}",
        )

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    async def get_issue_context(self, issue_number: int, ref: RepoRef) -> IssueContext:
        response = await self._request(
            "GET", f"/repos/{ref.owner}/{ref.repo}/issues/{issue_number}"
        )
        data = response.json()
        return IssueContext(
            owner=ref.owner,
            repo=ref.repo,
            issue_number=issue_number,
            title=data.get("title") or "",
            body=data.get("body") or "",
            labels=[
                label["name"] if isinstance(label, dict) else str(label)
                for label in data.get("labels", [])
            ],
        )

    async def get_branch_sha(self, branch: str, ref: RepoRef) -> str:
        response = await self._request(
            "GET", f"/repos/{ref.owner}/{ref.repo}/branches/{branch}"
        )
        return response.json()["commit"]["sha"]

    async def add_issue_comment(self, issue_number: int, body: str, ref: RepoRef) -> None:
        logger.info(
            "Commenting on issue",
            extra={"repository": ref.full_name, "issue_number": issue_number},
        )
        await self._request(
            "POST",
            f"/repos/{ref.owner}/{ref.repo}/issues/{issue_number}/comments",
            json_data={"body": body},
        )

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------

    async def find_open_pull_request_for_issue(
        self, issue_number: int, ref: RepoRef
    ) -> Optional[int]:
        """Find the most recently updated open PR that references an issue.

        A PR matches when its title or body references ``#N`` (optionally
        as "closes/fixes/resolves #N") or its head branch contains
        ``issue-N``. Only the 50 most recently updated open PRs are scanned.

        Returns:
            The PR number, or None when no open PR references the issue.
        """
        response = await self._request(
            "GET",
            f"/repos/{ref.owner}/{ref.repo}/pulls",
            params={
                "state": "open",
                "sort": "updated",
                "direction": "desc",
                "per_page": 50,
            },
        )
        pattern = issue_reference_pattern(issue_number)
        branch_marker = f"issue-{issue_number}"

        for pr in response.json():
            head_ref = (pr.get("head") or {}).get("ref") or ""
            if (
                pattern.search(pr.get("body") or "")
                or pattern.search(pr.get("title") or "")
                or branch_marker in head_ref
            ):
                return pr["number"]
        return None

    async def get_pull_request(self, pr_number: int, ref: RepoRef) -> Dict[str, Any]:
        response = await self._request(
            "GET", f"/repos/{ref.owner}/{ref.repo}/pulls/{pr_number}"
        )
        return response.json()

    async def has_required_checks_passed(
        self,
        pr_number: int,
        required_checks: List[str],
        ref: RepoRef,
    ) -> bool:
        """Check whether the PR head's required check runs succeeded.

        With an empty ``required_checks`` list every reported check run
        must be completed with conclusion success.
        """
        pr = await self.get_pull_request(pr_number, ref)
        head_sha = pr["head"]["sha"]

        response = await self._request(
            "GET",
            f"/repos/{ref.owner}/{ref.repo}/commits/{head_sha}/check-runs",
            params={"per_page": 100},
        )
        check_runs = response.json().get("check_runs", [])

        def passed(run: Optional[Dict[str, Any]]) -> bool:
            return (
                run is not None
                and run.get("status") == "completed"
                and run.get("conclusion") == "success"
            )

        if not required_checks:
            return all(passed(run) for run in check_runs)

        by_name = {run.get("name"): run for run in check_runs}
        return all(passed(by_name.get(name)) for name in required_checks)

    async def has_human_approval(self, pr_number: int, ref: RepoRef) -> bool:
        """Whether any non-bot reviewer's latest review is APPROVED."""
        response = await self._request(
            "GET",
            f"/repos/{ref.owner}/{ref.repo}/pulls/{pr_number}/reviews",
            params={"per_page": 100},
        )
        latest: Dict[str, str] = {}
        for review in response.json():
            user = review.get("user") or {}
            login = user.get("login") or ""
            if not login or user.get("type") == "Bot" or login.endswith("[bot]"):
                continue
            latest[login] = review.get("state", "")
        return any(state == "APPROVED" for state in latest.values())

    async def _create_review(
        self, pr_number: int, event: str, body: str, ref: RepoRef
    ) -> None:
        logger.info(
            "Submitting pull request review",
            extra={
                "repository": ref.full_name,
                "pr_number": pr_number,
                "event": event,
            },
        )
        await self._request(
            "POST",
            f"/repos/{ref.owner}/{ref.repo}/pulls/{pr_number}/reviews",
            json_data={"event": event, "body": body},
        )

    async def approve_pull_request(self, pr_number: int, body: str, ref: RepoRef) -> None:
        await self._create_review(pr_number, "APPROVE", body, ref)

    async def request_changes(self, pr_number: int, body: str, ref: RepoRef) -> None:
        await self._create_review(pr_number, "REQUEST_CHANGES", body, ref)

    async def enable_auto_merge(self, pr_number: int, ref: RepoRef) -> None:
        """Enable squash auto-merge on a PR through the GraphQL API.

        Raises:
            GitHubAPIError: If the mutation fails or returns errors.
        """
        pr = await self.get_pull_request(pr_number, ref)
        response = await self._request(
            "POST",
            "/graphql",
            json_data={
                "query": ENABLE_AUTO_MERGE_MUTATION,
                "variables": {"pullRequestId": pr["node_id"]},
            },
        )
        errors = response.json().get("errors")
        if errors:
            raise GitHubAPIError(
                message=f"enablePullRequestAutoMerge failed: {errors[0].get('message')}",
                status_code=response.status_code,
                response_body=response.text,
                request_url=str(response.url),
            )
        logger.info(
            "Auto-merge enabled",
            extra={"repository": ref.full_name, "pr_number": pr_number},
        )

    async def health_check(self) -> bool:
        """Check connectivity to the GitHub API."""
        try:
            response = await self.client.get("/rate_limit")
            return response.status_code == 200
        except httpx.HTTPError:
            return False
