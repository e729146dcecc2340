from __future__ import annotations

import asyncio
import logging
import os
import re
import secrets
import shutil
import signal
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path

from agentrelay.errors import WorkspaceError
from agentrelay.services.audit import redact_secrets
from agentrelay.utils.clock import utc_now

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 300.0
TOKEN_ENV_VAR = "AGENTRELAY_GIT_TOKEN"

# Answers git's credential prompts from the child environment, so the token
# never appears in argv, remote URLs or .git/config.
_ASKPASS_SCRIPT = f"""#!/bin/sh
case "$1" in
  *sername*) printf '%s\\n' x-access-token ;;
  *) printf '%s\\n' "${TOKEN_ENV_VAR}" ;;
esac
"""


def branch_name_for(agent_key: str, now=None, suffix: str | None = None) -> str:
    """``agent/<slug>-<YYYYmmdd-HHMMSS>-<suffix>`` for a fresh attempt.

    The random suffix keeps two attempts started in the same second by the
    same agent on separate branches.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", agent_key.lower()).strip("-") or "agent"
    stamp = (now or utc_now()).strftime("%Y%m%d-%H%M%S")
    return f"agent/{slug}-{stamp}-{suffix or secrets.token_hex(3)}"


@dataclass(slots=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Workspace:
    """One isolated working directory holding one clone.

    Layout: ``<root>/<unique>/repo`` for the checkout and
    ``<root>/<unique>/git-askpass.sh`` next to it, outside the repository.
    """

    def __init__(
        self,
        path: Path,
        *,
        token: str | None = None,
        author_name: str = "agentrelay",
        author_email: str = "agentrelay@users.noreply.github.com",
        git_timeout: float = GIT_TIMEOUT_SECONDS,
    ):
        self.path = path
        self.repo_dir = path / "repo"
        self._token = token
        self._author_name = author_name
        self._author_email = author_email
        self._git_timeout = git_timeout
        self._askpass = path / "git-askpass.sh"

    @classmethod
    def provision(
        cls,
        root: Path,
        label: str,
        *,
        token: str | None = None,
        author_name: str = "agentrelay",
        author_email: str = "agentrelay@users.noreply.github.com",
    ) -> Workspace:
        try:
            root.mkdir(parents=True, exist_ok=True)
            path = Path(tempfile.mkdtemp(prefix=f"{label}-", dir=root))
        except OSError as exc:
            raise WorkspaceError("provision", f"could not create workspace: {exc}") from exc
        workspace = cls(path, token=token, author_name=author_name, author_email=author_email)
        if token:
            try:
                workspace._askpass.write_text(_ASKPASS_SCRIPT)
                workspace._askpass.chmod(stat.S_IRWXU)
            except OSError as exc:
                workspace.cleanup()
                raise WorkspaceError(
                    "provision", f"could not write credential helper: {exc}"
                ) from exc
        logger.debug("Provisioned workspace %s", path)
        return workspace

    # ------------------------------------------------------------------
    # Git steps
    # ------------------------------------------------------------------

    async def clone(self, url: str, branch: str) -> None:
        await self.git(
            "clone", "--depth", "1", "--branch", branch, url, str(self.repo_dir),
            step="obtain_source", cwd=self.path,
        )

    async def remote_branch_exists(self, branch: str) -> bool:
        result = await self.git(
            "ls-remote", "--exit-code", "--heads", "origin", branch, step="branch", check=False
        )
        return result.ok and bool(result.stdout.strip())

    async def create_branch(self, branch: str) -> None:
        await self.git("checkout", "-b", branch, step="branch")

    async def checkout_remote_branch(self, branch: str) -> None:
        """Fetch an existing remote branch with full history and check it out."""
        await self.git(
            "fetch", "--unshallow", "origin", f"+refs/heads/{branch}:refs/remotes/origin/{branch}",
            step="branch",
        )
        await self.git("checkout", "-B", branch, f"origin/{branch}", step="branch")

    async def merge_upstream(self, default_branch: str) -> None:
        """Merge the latest default branch into the current branch.

        A conflict aborts the merge and raises a retryable WorkspaceError.
        """
        await self.git("fetch", "origin", default_branch, step="merge_upstream")
        result = await self.git(
            "merge", "--no-edit", "FETCH_HEAD", step="merge_upstream", check=False
        )
        if result.ok:
            return
        conflicted = await self.git(
            "diff", "--name-only", "--diff-filter=U", step="merge_upstream", check=False
        )
        await self.git("merge", "--abort", step="merge_upstream", check=False)
        files = conflicted.stdout.split()
        raise WorkspaceError(
            "merge_upstream",
            f"merge conflict with {default_branch}"
            + (f" in {', '.join(files)}" if files else f": {_tail(result.stderr)}"),
            retryable=True,
        )

    def apply_changes(self, files: dict[str, str]) -> list[str]:
        repo = self.repo_dir.resolve()
        written: list[str] = []
        for rel_path, content in files.items():
            target = (repo / rel_path).resolve()
            if target == repo or not target.is_relative_to(repo) or ".git" in target.relative_to(repo).parts:
                raise WorkspaceError("apply_changes", f"path escapes repository: {rel_path}")
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content)
            except OSError as exc:
                raise WorkspaceError("apply_changes", f"could not write {rel_path}: {exc}") from exc
            written.append(rel_path)
        return written

    async def has_changes(self) -> bool:
        result = await self.git("status", "--porcelain", step="commit")
        return bool(result.stdout.strip())

    async def commit(self, message: str) -> str:
        await self.git("add", "-A", step="commit")
        await self.git("commit", "-m", message, step="commit")
        return await self.head_sha()

    async def head_sha(self) -> str:
        result = await self.git("rev-parse", "HEAD", step="commit")
        return result.stdout.strip()

    async def push(self, branch: str) -> None:
        await self.git("push", "-u", "origin", branch, step="publish")

    def cleanup(self) -> None:
        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to clean up workspace %s: %s", self.path, exc)
        else:
            logger.debug("Removed workspace %s", self.path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def git(
        self, *args: str, step: str, cwd: Path | None = None, check: bool = True
    ) -> GitResult:
        argv = [
            "git",
            "-c", f"user.name={self._author_name}",
            "-c", f"user.email={self._author_email}",
            *args,
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd or self.repo_dir),
                env=self._child_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise WorkspaceError(step, f"git {args[0]} could not start: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self._git_timeout)
        except asyncio.TimeoutError:
            await _terminate(proc)
            raise WorkspaceError(step, f"git {args[0]} timed out") from None
        except BaseException:
            # Cancelled from outside (e.g. the worker's execution timeout):
            # the process group must be gone before the directory is removed.
            await _terminate(proc)
            raise

        result = GitResult(
            proc.returncode or 0,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )
        if check and not result.ok:
            raise WorkspaceError(
                step, f"git {args[0]} failed ({result.returncode}): {_tail(result.stderr)}"
            )
        return result

    def _child_env(self) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if not k.startswith("GIT_")}
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.pop(TOKEN_ENV_VAR, None)
        if self._token:
            env["GIT_ASKPASS"] = str(self._askpass)
            env[TOKEN_ENV_VAR] = self._token
        return env


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """Kill git and anything it spawned (hooks, helpers, aliases)."""
    if proc.returncode is None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    await asyncio.shield(proc.wait())


def _tail(text: str, limit: int = 400) -> str:
    return redact_secrets(text.strip())[-limit:]
