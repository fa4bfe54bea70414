"""Async GitHub REST client for the issue labels that mirror workflow phases.

Only the label endpoints the sync adapter needs are covered. Requests that
fail with a retryable status or a network error are retried with jittered
backoff. An exhausted rate limit is raised at once so that the caller
decides when to come back.
"""

import asyncio
import logging
import time
from typing import Any, List, Optional

import httpx
from urllib.parse import quote

from agent_pipeline.backoff import Backoff


logger = logging.getLogger(__name__)


API_VERSION = "2022-11-28"
USER_AGENT = "AgentPipeline-Ledger/1.0"

# Body of the 404 GitHub returns when removing a label the issue does not carry
MISSING_LABEL_MESSAGE = "Label does not exist"


class GitHubAPIError(Exception):
    """A GitHub request failed.

    Attributes:
        message: What went wrong.
        status_code: Response status, or None when no response arrived.
        response_body: Raw response text, if any.
        request_url: URL of the failed request.
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
    """GitHub refused the request because the rate limit is used up.

    Attributes:
        reset_at: Unix time at which the quota resets, if reported.
        retry_after: Seconds to wait, from Retry-After or derived from reset_at.
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


def _header_int(headers: httpx.Headers, name: str) -> Optional[int]:
    try:
        return int(headers[name])
    except (KeyError, ValueError):
        return None


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    return (
        response.status_code == 403
        and _header_int(response.headers, "x-ratelimit-remaining") == 0
    )


def _label_names(response: httpx.Response) -> List[str]:
    try:
        return [item["name"] for item in response.json()]
    except (ValueError, KeyError, TypeError) as e:
        raise GitHubAPIError(
            f"Unexpected label payload from {response.url.path}: {e}",
            status_code=response.status_code,
            response_body=response.text,
            request_url=str(response.url),
        ) from e


class GitHubClient:
    """Issue label operations against github.com or GitHub Enterprise Server.

    Attributes:
        token: Token with write access to the repository's issues.
        base_url: REST API root, e.g. https://github.example.com/api/v3.
        max_retries: Retries after the first attempt for retryable failures.
        backoff: Delay policy between retries.
        timeout: Per-request timeout in seconds.

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as github:
        ...     await github.add_label("acme", "widgets", 42, "agent:intake")
    """

    RETRYABLE_STATUS_CODES = frozenset({408, 500, 502, 503, 504})

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
        self.backoff = Backoff(base_delay, max_delay)
        self.timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def http(self) -> httpx.AsyncClient:
        """The underlying httpx client, created on first use."""
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

    @staticmethod
    def _labels_path(
        owner: str,
        repo: str,
        issue_number: int,
        label: Optional[str] = None,
    ) -> str:
        path = f"/repos/{owner}/{repo}/issues/{issue_number}/labels"
        if label is not None:
            path += "/" + quote(label, safe="")
        return path

    def _rate_limit_error(self, response: httpx.Response) -> RateLimitError:
        reset_at = _header_int(response.headers, "x-ratelimit-reset")
        retry_after = _header_int(response.headers, "retry-after")
        if retry_after is None and reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        logger.warning(
            "GitHub rate limit exhausted",
            extra={
                "url": str(response.url),
                "reset_at": reset_at,
                "retry_after": retry_after,
            },
        )
        return RateLimitError(
            f"Rate limit exhausted for {response.request.method} "
            f"{response.url.path}",
            status_code=response.status_code,
            reset_at=reset_at,
            retry_after=retry_after,
            response_body=response.text,
            request_url=str(response.url),
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Any] = None,
    ) -> httpx.Response:
        """Send a request, retrying network errors and retryable statuses.

        Raises:
            RateLimitError: As soon as GitHub reports an exhausted quota.
            GitHubAPIError: For any other error status, or when retries
                run out.
        """
        attempt = 0
        while True:
            try:
                response = await self.http.request(method, path, json=json_data)
            except httpx.RequestError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "GitHub request failed",
                        extra={
                            "method": method,
                            "path": path,
                            "attempts": attempt + 1,
                            "error": str(e),
                        },
                    )
                    raise GitHubAPIError(
                        f"{method} {path} failed after {attempt + 1} "
                        f"attempts: {e}",
                        request_url=f"{self.base_url}{path}",
                    ) from e
                failure = str(e)
            else:
                if _is_rate_limited(response):
                    raise self._rate_limit_error(response)
                if response.status_code < 400:
                    return response
                if (
                    response.status_code not in self.RETRYABLE_STATUS_CODES
                    or attempt >= self.max_retries
                ):
                    logger.error(
                        "GitHub rejected request",
                        extra={
                            "method": method,
                            "path": path,
                            "status_code": response.status_code,
                            "response_body": response.text[:500],
                        },
                    )
                    raise GitHubAPIError(
                        f"{method} {path} returned {response.status_code}",
                        status_code=response.status_code,
                        response_body=response.text,
                        request_url=str(response.url),
                    )
                failure = f"status {response.status_code}"

            delay = self.backoff.delay(attempt)
            logger.warning(
                "Retrying GitHub request",
                extra={
                    "method": method,
                    "path": path,
                    "attempt": attempt + 1,
                    "max_retries": self.max_retries,
                    "delay": delay,
                    "failure": failure,
                },
            )
            await asyncio.sleep(delay)
            attempt += 1

    async def add_label(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        label: str,
    ) -> List[str]:
        """Add a label to an issue. A label already present is left as is.

        Returns:
            The issue's label names after the change.
        """
        logger.info(
            "Adding issue label",
            extra={
                "repository": f"{owner}/{repo}",
                "issue_number": issue_number,
                "label": label,
            },
        )
        response = await self._request(
            "POST",
            self._labels_path(owner, repo, issue_number),
            {"labels": [label]},
        )
        return _label_names(response)

    async def remove_label(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        label: str,
    ) -> None:
        """Remove a label from an issue.

        GitHub answers 404 both when the label is missing and when the issue
        is gone; only the first counts as success.
        """
        logger.info(
            "Removing issue label",
            extra={
                "repository": f"{owner}/{repo}",
                "issue_number": issue_number,
                "label": label,
            },
        )
        try:
            await self._request(
                "DELETE", self._labels_path(owner, repo, issue_number, label)
            )
        except GitHubAPIError as e:
            if e.status_code != 404 or MISSING_LABEL_MESSAGE not in (
                e.response_body or ""
            ):
                raise
            logger.debug(
                "Label already absent",
                extra={"issue_number": issue_number, "label": label},
            )

    async def list_labels(
        self,
        owner: str,
        repo: str,
        issue_number: int,
    ) -> List[str]:
        """Names of the labels on an issue (first 100)."""
        response = await self._request(
            "GET", self._labels_path(owner, repo, issue_number) + "?per_page=100"
        )
        return _label_names(response)
