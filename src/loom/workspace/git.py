"""Git operations for per-task workspaces.

Each task gets its own directory under the configured work dir, named
``{owner}-{repo}-{issue_number}``. The repository is shallow-cloned into
it with a token-authenticated HTTPS URL, a working branch is checked out,
and after the agent finishes the changes are committed and pushed.

All git invocations run through asyncio subprocesses so the event loop
stays responsive while clones and pushes are in flight.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional, Sequence


logger = logging.getLogger(__name__)

WORKSPACE_DIR_PERMISSIONS = 0o755
GIT_COMMAND_TIMEOUT_SECONDS = 300
REDACTED = "***"


class GitCommandError(Exception):
    """Raised when a git command fails or cannot be executed.

    Attributes:
        command: The git arguments that were run (token redacted).
        exit_code: Process exit code, None if the process never completed.
        stderr: Captured standard error (token redacted).
    """

    def __init__(
        self,
        command: Sequence[str],
        exit_code: Optional[int],
        stderr: str,
    ):
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr or f"exit code {exit_code}"
        super().__init__(f"git {' '.join(self.command)} failed: {detail}")


class GitWorkspace:
    """Clones repositories and publishes branches for agent runs.

    Attributes:
        token: GitHub token used for clone and push authentication.
        base_path: Directory under which task workspaces are created.
        timeout_seconds: Upper bound for any single git command.
    """

    def __init__(
        self,
        token: str,
        base_path: Path,
        timeout_seconds: float = GIT_COMMAND_TIMEOUT_SECONDS,
    ):
        self.token = token
        self.base_path = Path(base_path)
        self.timeout_seconds = timeout_seconds

    def authenticated_clone_url(self, owner: str, repo: str) -> str:
        return f"https://{self.token}@github.com/{owner}/{repo}.git"

    def workspace_path(self, owner: str, repo: str, issue_number: int) -> Path:
        return self.base_path / f"{owner}-{repo}-{issue_number}"

    async def prepare_directory(self, owner: str, repo: str, issue_number: int) -> Path:
        """Return an empty-slot path for a task's clone.

        The base directory is created if needed. A directory left behind
        by an earlier attempt on the same issue is removed, so the clone
        target never exists.

        Returns:
            Path the repository should be cloned into.
        """
        self.base_path.mkdir(
            mode=WORKSPACE_DIR_PERMISSIONS, parents=True, exist_ok=True
        )

        target = self.workspace_path(owner, repo, issue_number)
        if target.exists():
            logger.info(
                "Removing stale workspace",
                extra={"workspace": str(target)},
            )
            await asyncio.to_thread(shutil.rmtree, target)

        return target

    def _redact(self, text: str) -> str:
        if self.token:
            return text.replace(self.token, REDACTED)
        return text

    async def _run_git(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
    ) -> str:
        """Run a git command and return its stripped stdout.

        Raises:
            GitCommandError: On non-zero exit, timeout or spawn failure.
        """
        redacted_args = [self._redact(arg) for arg in args]

        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=str(cwd) if cwd is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise GitCommandError(
                redacted_args, None, f"Failed to execute git: {exc}"
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            raise GitCommandError(
                redacted_args,
                None,
                f"Timed out after {self.timeout_seconds}s",
            ) from exc

        if process.returncode != 0:
            error_output = self._redact(stderr.decode(errors="replace").strip())
            raise GitCommandError(redacted_args, process.returncode, error_output)

        return stdout.decode(errors="replace").strip()

    async def clone(
        self,
        clone_url: str,
        target_dir: Path,
        branch: Optional[str] = None,
    ) -> None:
        """Shallow-clone a repository.

        Args:
            clone_url: Repository URL (may embed credentials).
            target_dir: Directory to clone into; must not exist.
            branch: Branch to clone instead of the remote default.

        Raises:
            GitCommandError: If the clone fails.
        """
        args = ["clone", "--depth", "1"]
        if branch:
            args.extend(["--branch", branch])
        args.extend([clone_url, str(target_dir)])

        await self._run_git(args)

        logger.info(
            "Cloned repository",
            extra={"url": self._redact(clone_url), "target": str(target_dir)},
        )

    async def checkout(
        self,
        repo_dir: Path,
        branch: str,
        create: bool = False,
    ) -> None:
        """Switch the working tree to a branch.

        With ``create`` the branch is created, or reset if it already
        exists locally. If origin already has the branch (left by an
        earlier attempt), the local branch starts from its tip so the
        later push is a fast-forward; otherwise it starts from HEAD.
        """
        if not create:
            await self._run_git(["checkout", branch], cwd=repo_dir)
            return

        args = ["checkout", "-B", branch]
        if await self._fetch_remote_branch(repo_dir, branch):
            args.append("FETCH_HEAD")
        await self._run_git(args, cwd=repo_dir)

    async def _fetch_remote_branch(self, repo_dir: Path, branch: str) -> bool:
        """Fetch ``branch`` from origin into FETCH_HEAD.

        Returns:
            False if origin has no such branch or the fetch failed.
        """
        try:
            await self._run_git(
                ["fetch", "--depth", "1", "origin", branch], cwd=repo_dir
            )
        except GitCommandError as exc:
            logger.debug(
                "Remote branch not fetched, starting from HEAD",
                extra={"branch": branch, "error": str(exc)},
            )
            return False
        return True

    async def has_changes(self, repo_dir: Path) -> bool:
        status = await self._run_git(["status", "--porcelain"], cwd=repo_dir)
        return bool(status)

    async def commit_and_push(
        self,
        repo_dir: Path,
        message: str,
        branch: str,
    ) -> bool:
        """Stage everything, commit and push the branch to origin.

        The commit is skipped when the working tree is clean (the agent
        may already have committed its work); the push always happens.

        Returns:
            True if a commit was created.

        Raises:
            GitCommandError: If any git step fails.
        """
        committed = False
        if await self.has_changes(repo_dir):
            await self._run_git(["add", "-A"], cwd=repo_dir)
            await self._run_git(["commit", "-m", message], cwd=repo_dir)
            committed = True

        await self._run_git(["push", "origin", branch], cwd=repo_dir)

        logger.info(
            "Pushed branch",
            extra={
                "repo_dir": str(repo_dir),
                "branch": branch,
                "committed": committed,
            },
        )
        return committed
