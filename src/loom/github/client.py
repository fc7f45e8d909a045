"""Async client for the parts of the GitHub REST API the engine uses.

Issue discovery (labelled issue listing), issue feedback (comments and
labels), remote branch creation and pull request submission all go
through GitHubClient. One instance is built at startup and shared by
the orchestrator.

Source:
- src/loom/github/models.py (GitHubIssue, GitHubPullRequest, PRCreateRequest)
- src/loom/config.py (github_token, github_base_url, github_max_retries)
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from src.loom.github.models import (
    GitHubIssue,
    GitHubPullRequest,
    GitHubRepository,
    PRCreateRequest,
)


logger = logging.getLogger(__name__)

ISSUES_PAGE_SIZE = 100
USER_AGENT = "Loom-Engine/1.0"
API_VERSION = "2022-11-28"

# Response codes worth another attempt when retries are enabled
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class GitHubAPIError(Exception):
    """A GitHub call failed.

    ``status_code`` is None when no response arrived (timeout or
    transport error). ``response_body`` holds the raw error payload.
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
    """GitHub refused the call because the token's quota is spent.

    Attributes:
        reset_at: Epoch seconds at which the quota refills, if reported.
        retry_after: Seconds until a call may succeed, if known.
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


def _int_header(response: httpx.Response, name: str) -> Optional[int]:
    try:
        return int(response.headers[name])
    except (KeyError, ValueError):
        return None


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    return (
        response.status_code == 403
        and _int_header(response, "x-ratelimit-remaining") == 0
    )


def _rate_limit_error(response: httpx.Response) -> RateLimitError:
    reset_at = _int_header(response, "x-ratelimit-reset")
    retry_after = _int_header(response, "retry-after")
    if retry_after is None and reset_at is not None:
        retry_after = max(0, reset_at - int(time.time()))

    logger.warning(
        "GitHub API rate limit exceeded",
        extra={
            "reset_at": reset_at,
            "retry_after": retry_after,
            "limit": _int_header(response, "x-ratelimit-limit"),
        },
    )
    return RateLimitError(
        "GitHub API rate limit exceeded",
        reset_at=reset_at,
        retry_after=retry_after,
        status_code=response.status_code,
        request_url=str(response.url),
    )


def _api_error(response: httpx.Response, method: str, path: str) -> GitHubAPIError:
    """Build an error whose message carries GitHub's own explanation."""
    body = response.text
    detail = ""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("message"):
        detail = f": {payload['message']}"

    logger.error(
        "GitHub API error",
        extra={
            "status_code": response.status_code,
            "method": method,
            "path": path,
            "response_body": body[:500],
        },
    )
    return GitHubAPIError(
        f"GitHub API {response.status_code} on {method} {path}{detail}",
        status_code=response.status_code,
        response_body=body,
        request_url=str(response.url),
    )


class GitHubClient:
    """GitHub REST client bound to one token.

    ``max_retries`` defaults to 0: a failed call fails the current task
    attempt, and the next poll cycle retries the task as a whole. When
    raised, 408/429/5xx responses and transport errors are retried with
    capped, fully jittered exponential backoff. Rate limiting is never
    retried here; it surfaces as RateLimitError.

    Pass ``transport`` to route requests somewhere other than the
    network (tests use httpx.MockTransport).

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as client:
        ...     issues = await client.list_issues("acme", "widgets", "loom")
    """

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        max_retries: int = 0,
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
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """The underlying httpx client, reopened after close()."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": API_VERSION,
                    "User-Agent": USER_AGENT,
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
        self._http = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Seconds to sleep before retry number ``attempt + 1``."""
        ceiling = min(self.base_delay * (2 ** attempt), self.max_delay)
        return random.uniform(0, ceiling)

    async def _backoff(self, attempt: int, path: str, reason: str) -> None:
        delay = self._calculate_backoff(attempt)
        logger.warning(
            "Retrying GitHub request",
            extra={
                "path": path,
                "error": reason,
                "attempt": attempt + 1,
                "max_retries": self.max_retries,
                "delay": delay,
            },
        )
        await asyncio.sleep(delay)

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one API call, retrying transient failures if enabled.

        Returns:
            The successful (< 400) response.

        Raises:
            RateLimitError: On 429, or 403 with no remaining quota.
            GitHubAPIError: On any other error response, or when every
                attempt failed to get a response.
        """
        attempts = self.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                response = await self.client.request(
                    method, path, json=json_data, params=params
                )
            except httpx.HTTPError as e:
                last_error = e
                if attempt < self.max_retries:
                    await self._backoff(attempt, path, str(e))
                continue

            if _is_rate_limited(response):
                raise _rate_limit_error(response)

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                await self._backoff(attempt, path, f"HTTP {response.status_code}")
                continue

            if response.status_code >= 400:
                raise _api_error(response, method, path)

            return response

        logger.error(
            "GitHub request gave up",
            extra={"path": path, "method": method, "last_error": str(last_error)},
        )
        raise GitHubAPIError(
            f"Request to {path} failed after {attempts} attempt(s): {last_error}",
            request_url=f"{self.base_url}{path}",
        )

    async def list_issues(
        self,
        owner: str,
        repo: str,
        label: str,
        state: str = "open",
    ) -> List[GitHubIssue]:
        """List issues carrying a label.

        The issues endpoint also returns pull requests; those are
        filtered out. Only the first page (100 issues) is read.

        Args:
            owner: Repository owner (user or organization).
            repo: Repository name.
            label: Label the issues must carry.
            state: "open", "closed" or "all".

        Returns:
            Issues in the order GitHub returns them.

        Raises:
            GitHubAPIError: If the request fails.
        """
        response = await self._request(
            method="GET",
            path=f"/repos/{owner}/{repo}/issues",
            params={"labels": label, "state": state, "per_page": ISSUES_PAGE_SIZE},
        )

        issues = [
            GitHubIssue.from_github_response(item)
            for item in response.json()
            if "pull_request" not in item
        ]

        logger.debug(
            "Listed issues",
            extra={"owner": owner, "repo": repo, "label": label, "count": len(issues)},
        )
        return issues

    async def create_comment(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        body: str,
    ) -> Dict[str, Any]:
        """Create a comment on an issue.

        Args:
            owner: Repository owner (user or organization).
            repo: Repository name.
            issue_number: Issue number to comment on.
            body: Comment body in markdown format.

        Returns:
            The created comment data from GitHub API.

        Raises:
            GitHubAPIError: If the request fails.
        """
        logger.info(
            "Creating comment on issue",
            extra={
                "owner": owner,
                "repo": repo,
                "issue_number": issue_number,
                "body_length": len(body),
            },
        )

        response = await self._request(
            method="POST",
            path=f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            json_data={"body": body},
        )
        return response.json()

    async def add_label(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        label: str,
    ) -> List[Dict[str, Any]]:
        """Add a label to an issue.

        Returns:
            List of all labels on the issue after adding.

        Raises:
            GitHubAPIError: If the request fails.
        """
        logger.info(
            "Adding label to issue",
            extra={
                "owner": owner,
                "repo": repo,
                "issue_number": issue_number,
                "label": label,
            },
        )

        response = await self._request(
            method="POST",
            path=f"/repos/{owner}/{repo}/issues/{issue_number}/labels",
            json_data={"labels": [label]},
        )
        return response.json()

    async def remove_label(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        label: str,
    ) -> None:
        """Remove a label from an issue.

        A 404 (label not on the issue) is ignored.

        Raises:
            GitHubAPIError: If the request fails for any other reason.
        """
        path = (
            f"/repos/{owner}/{repo}/issues/{issue_number}/labels/"
            f"{quote(label, safe='')}"
        )

        try:
            await self._request(method="DELETE", path=path)
        except GitHubAPIError as e:
            if e.status_code == 404:
                logger.debug(
                    "Label not found on issue (already removed)",
                    extra={"issue_number": issue_number, "label": label},
                )
                return
            raise

    async def get_repository(self, owner: str, repo: str) -> GitHubRepository:
        """Get repository metadata (default branch, clone URL).

        Raises:
            GitHubAPIError: If the request fails.
        """
        response = await self._request(method="GET", path=f"/repos/{owner}/{repo}")
        return GitHubRepository.from_github_response(response.json())

    async def create_branch(
        self,
        owner: str,
        repo: str,
        branch: str,
        from_branch: Optional[str] = None,
    ) -> str:
        """Create a remote branch pointing at the tip of another branch.

        Args:
            owner: Repository owner.
            repo: Repository name.
            branch: Name of the branch to create.
            from_branch: Source branch; the repository default when None.

        Returns:
            The commit SHA the new branch points at.

        Raises:
            GitHubAPIError: If the request fails, including 422 when the
                branch already exists.
        """
        source_branch = from_branch
        if source_branch is None:
            source_branch = (await self.get_repository(owner, repo)).default_branch

        ref_response = await self._request(
            method="GET",
            path=f"/repos/{owner}/{repo}/git/ref/heads/{source_branch}",
        )
        sha = ref_response.json()["object"]["sha"]

        await self._request(
            method="POST",
            path=f"/repos/{owner}/{repo}/git/refs",
            json_data={"ref": f"refs/heads/{branch}", "sha": sha},
        )

        logger.info(
            "Created branch",
            extra={
                "owner": owner,
                "repo": repo,
                "branch": branch,
                "from_branch": source_branch,
                "sha": sha,
            },
        )
        return sha

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        request: PRCreateRequest,
    ) -> GitHubPullRequest:
        """Create a pull request.

        Args:
            owner: Repository owner (user or organization).
            repo: Repository name.
            request: Pull request creation request with title, body, branches.

        Returns:
            The created pull request.

        Raises:
            GitHubAPIError: If the request fails.
        """
        logger.info(
            "Creating pull request",
            extra={
                "owner": owner,
                "repo": repo,
                "title": request.title,
                "head": request.head_branch,
                "base": request.base_branch,
            },
        )

        response = await self._request(
            method="POST",
            path=f"/repos/{owner}/{repo}/pulls",
            json_data={
                "title": request.title,
                "body": request.body,
                "head": request.head_branch,
                "base": request.base_branch,
            },
        )

        pull_request = GitHubPullRequest.from_github_response(response.json())

        logger.info(
            "Pull request created successfully",
            extra={
                "owner": owner,
                "repo": repo,
                "pr_number": pull_request.number,
                "pr_url": pull_request.html_url,
            },
        )
        return pull_request

    async def health_check(self) -> bool:
        """Check if the GitHub API is accessible with the configured token."""
        try:
            response = await self.client.get("/user")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(
                "GitHub API health check failed",
                extra={"error": str(e)},
            )
            return False
