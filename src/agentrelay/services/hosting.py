"""Code hosting API client (pull requests and issues)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from agentrelay.errors import HostingError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = "agentrelay/0.3"


@dataclass(slots=True)
class PullRequest:
    number: int
    url: str
    head_sha: str | None = None
    state: str = "open"


@dataclass(slots=True)
class Issue:
    number: int
    url: str


class ReviewHost(Protocol):
    async def find_open_pull_request(
        self, repo_full_name: str, head: str, token: str | None
    ) -> PullRequest | None: ...

    async def create_pull_request(
        self,
        repo_full_name: str,
        *,
        head: str,
        base: str,
        title: str,
        body: str,
        token: str | None,
    ) -> PullRequest: ...

    async def create_issue(
        self,
        repo_full_name: str,
        *,
        title: str,
        body: str,
        labels: list[str] | None,
        token: str | None,
    ) -> Issue: ...


class GitHubClient:
    """Thin async wrapper over the GitHub REST API.

    Tokens are passed per call and only ever placed in the Authorization
    header; they never appear in URLs or log lines.
    """

    def __init__(
        self,
        base_url: str = "https://api.github.com",
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Accept": "application/vnd.github+json",
                "User-Agent": DEFAULT_USER_AGENT,
                "X-GitHub-Api-Version": "2022-11-28",
            },
            transport=transport,
        )

    async def find_open_pull_request(
        self, repo_full_name: str, head: str, token: str | None
    ) -> PullRequest | None:
        owner = repo_full_name.split("/", 1)[0]
        data = await self._request(
            "GET",
            f"/repos/{repo_full_name}/pulls",
            token,
            params={"state": "open", "head": f"{owner}:{head}"},
        )
        if not data:
            return None
        return _pull_request(data[0])

    async def create_pull_request(
        self,
        repo_full_name: str,
        *,
        head: str,
        base: str,
        title: str,
        body: str,
        token: str | None,
    ) -> PullRequest:
        data = await self._request(
            "POST",
            f"/repos/{repo_full_name}/pulls",
            token,
            json={"title": title, "body": body, "head": head, "base": base},
        )
        pr = _pull_request(data)
        logger.info("Opened pull request #%d on %s", pr.number, repo_full_name)
        return pr

    async def create_issue(
        self,
        repo_full_name: str,
        *,
        title: str,
        body: str,
        labels: list[str] | None = None,
        token: str | None,
    ) -> Issue:
        payload: dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = labels
        data = await self._request("POST", f"/repos/{repo_full_name}/issues", token, json=payload)
        logger.info("Opened issue #%d on %s", data["number"], repo_full_name)
        return Issue(number=data["number"], url=data["html_url"])

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def _request(
        self, method: str, path: str, token: str | None, **kwargs: Any
    ) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Hosting API %s %s failed: %s", method, path, exc)
            raise HostingError(f"{method} {path} failed: {exc}") from exc
        if not response.is_success:
            message = _error_message(response)
            logger.warning(
                "Hosting API %s %s returned %d: %s", method, path, response.status_code, message
            )
            raise HostingError(
                f"{method} {path} returned {response.status_code}: {message}",
                status_code=response.status_code,
            )
        return response.json()


def _pull_request(data: dict[str, Any]) -> PullRequest:
    return PullRequest(
        number=data["number"],
        url=data["html_url"],
        head_sha=(data.get("head") or {}).get("sha"),
        state=data.get("state", "open"),
    )


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict) and "message" in data:
        return str(data["message"])
    return response.text[:200]
