"""GitHub API bridge for posting security escalations to issues and pull requests."""

import os
from typing import Any, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


class GitHubRepositoryClient:
    """Comments on and labels issues/PRs of a single repository.

    Implements the repository client interface used by the watch mode
    handler. Pull request comments go through the issues endpoint, which is
    how GitHub exposes the PR conversation thread.
    """

    BASE_URL = "https://api.github.com"

    def __init__(
        self,
        owner: str,
        repo: str,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 15.0,
    ):
        self.owner = owner
        self.repo = repo
        self.token = token or os.getenv("AIDP_GITHUB_TOKEN", "")
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.token)

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _issue_url(self, number: int, suffix: str) -> str:
        return f"{self.base_url}/repos/{self.owner}/{self.repo}/issues/{number}/{suffix}"

    def _post(self, url: str, payload: Any) -> Any:
        resp = self._get_client().post(url, json=payload, headers=self._headers())
        if resp.status_code >= 400:
            logger.warning(
                "github_request_failed",
                url=url,
                status=resp.status_code,
            )
        resp.raise_for_status()
        return resp.json()

    def add_issue_comment(self, number: int, body: str) -> dict[str, Any]:
        """Post a comment on an issue.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response
        """
        data = self._post(self._issue_url(number, "comments"), {"body": body})
        logger.info("github_issue_comment_added", repo=f"{self.owner}/{self.repo}", number=number)
        return data

    def add_pr_comment(self, number: int, body: str) -> dict[str, Any]:
        """Post a comment on a pull request's conversation thread."""
        data = self._post(self._issue_url(number, "comments"), {"body": body})
        logger.info("github_pr_comment_added", repo=f"{self.owner}/{self.repo}", number=number)
        return data

    def add_labels(self, number: int, labels: list[str]) -> list[dict[str, Any]]:
        """Add labels to an issue or pull request."""
        data = self._post(self._issue_url(number, "labels"), {"labels": list(labels)})
        logger.info(
            "github_labels_added",
            repo=f"{self.owner}/{self.repo}",
            number=number,
            labels=labels,
        )
        return data

    def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            self._client.close()

    def __enter__(self) -> "GitHubRepositoryClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
