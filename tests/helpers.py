"""Shared test doubles and git helpers."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Any

import pytest

from agentrelay.services.hosting import Issue, PullRequest

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


class FakeReviewHost:
    """In-memory hosting API that records what it was asked to do."""

    def __init__(self, fail_with: Exception | None = None):
        self.fail_with = fail_with
        self.open_pulls: dict[str, PullRequest] = {}
        self.created_pulls: list[dict[str, Any]] = []
        self.created_issues: list[dict[str, Any]] = []
        self.next_number = 42

    async def find_open_pull_request(
        self, repo_full_name: str, head: str, token: str | None
    ) -> PullRequest | None:
        return self.open_pulls.get(head)

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
        if self.fail_with is not None:
            raise self.fail_with
        number = self.next_number
        self.next_number += 1
        pr = PullRequest(
            number=number, url=f"https://github.com/{repo_full_name}/pull/{number}"
        )
        self.open_pulls[head] = pr
        self.created_pulls.append(
            {"repo": repo_full_name, "head": head, "base": base, "title": title, "body": body}
        )
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
        if self.fail_with is not None:
            raise self.fail_with
        number = self.next_number
        self.next_number += 1
        self.created_issues.append({"repo": repo_full_name, "title": title, "labels": labels})
        return Issue(number=number, url=f"https://github.com/{repo_full_name}/issues/{number}")


def git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return proc.stdout.strip()
