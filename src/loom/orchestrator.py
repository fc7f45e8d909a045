"""Poll-loop orchestrator turning labelled issues into pull requests.

Every poll cycle walks the configured repositories, lists the open
issues that carry each repository's watch label, and reconciles each
issue against stored task state:

- no task yet: create one (in_progress) and dispatch
- failed task: reuse it (in_progress again) and dispatch
- in_progress or completed task: skip

Dispatching runs the per-task pipeline to completion before the next
issue is looked at: workspace → branch → agent → submit. Whatever step
fails, the task ends failed, never in_progress.

Source:
- src/loom/state/store.py (TaskStore)
- src/loom/github/client.py (GitHubClient)
- src/loom/workspace/git.py (GitWorkspace)
- src/loom/runner/agent.py (AgentRunner)
- src/loom/events/emitter.py (EventEmitter)
- src/loom/formatting.py (comment, commit and PR text)
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional

from src.loom.config import AgentSettings, RepoWatchConfig
from src.loom.events.emitter import EventEmitter, NullEventEmitter
from src.loom.events.models import EventType, TaskEvent
from src.loom.formatting import (
    branch_name,
    format_commit_message,
    format_failure_comment,
    format_pr_body,
    format_pr_title,
    format_started_comment,
    format_success_comment,
)
from src.loom.github.client import GitHubClient
from src.loom.github.models import GitHubIssue, GitHubPullRequest, PRCreateRequest
from src.loom.runner.agent import AgentRunInput, AgentRunner, AgentRunResult
from src.loom.state.models import (
    AgentRun,
    AgentRunStatus,
    Repo,
    Task,
    TaskLogLevel,
    TaskStatus,
    utc_now,
)
from src.loom.state.store import TaskStore
from src.loom.workspace.git import GitWorkspace

logger = logging.getLogger(__name__)

SKIP_STATUSES = (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED)


class PipelineError(Exception):
    """A task pipeline step failed.

    Attributes:
        stage: Step that failed (setup, workspace, branch, agent, submit).
        message: Failure description.
    """

    def __init__(self, stage: str, message: str):
        self.stage = stage
        self.message = message
        super().__init__(f"{stage}: {message}")


def _issue_id(repo_config: RepoWatchConfig, issue_number: int) -> str:
    return f"{repo_config.full_name}#{issue_number}"


class Orchestrator:
    """Polls GitHub for labelled issues and drives each through the agent.

    Accepts all dependencies via constructor injection. The loop runs as
    a single asyncio task, and every pipeline step is awaited in
    sequence, so two pipelines never run at the same time.

    Attributes:
        store: Task, agent run and task log persistence.
        github_client: GitHub API client for issues, labels, branches and PRs.
        git: Workspace preparation, checkout and push.
        agent_runner: Executes the coding agent.
        repos: Repositories to poll.
        agent: Agent invocation settings.
        poll_interval_seconds: Sleep between the end of one cycle and the next.
        working_label: Label added while a task is being worked on.
        base_branch: PR base and remote branch source.
        event_emitter: Receives task events for observability.
    """

    def __init__(
        self,
        store: TaskStore,
        github_client: GitHubClient,
        git: GitWorkspace,
        agent_runner: AgentRunner,
        repos: List[RepoWatchConfig],
        agent: AgentSettings,
        poll_interval_seconds: float = 60.0,
        working_label: str = "loom:working",
        base_branch: str = "main",
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.store = store
        self.github_client = github_client
        self.git = git
        self.agent_runner = agent_runner
        self.repos = repos
        self.agent = agent
        self.poll_interval_seconds = poll_interval_seconds
        self.working_label = working_label
        self.base_branch = base_branch
        self.event_emitter = event_emitter or NullEventEmitter()

        self._loop_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        """Schedule the poll loop on the running event loop.

        Returns immediately. Calling start() while the loop is running
        does nothing.
        """
        if self.is_running:
            return

        self._stop_event = asyncio.Event()
        self._loop_task = asyncio.get_running_loop().create_task(
            self._run_loop(), name="loom-poll-loop"
        )
        logger.info(
            "Orchestrator started",
            extra={
                "poll_interval_seconds": self.poll_interval_seconds,
                "repositories": [repo.full_name for repo in self.repos],
            },
        )

    def stop(self) -> None:
        """Ask the loop to exit.

        The cycle in flight runs to completion; the sleep after it is cut
        short and no new cycle starts.
        """
        self._stop_event.set()
        logger.info("Orchestrator stopping")

    async def wait_stopped(self) -> None:
        if self._loop_task is not None:
            await self._loop_task
        logger.info("Orchestrator stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poll()
            except Exception:
                logger.exception("Poll cycle failed")

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.poll_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Polling and reconciliation
    # ------------------------------------------------------------------

    async def poll(self) -> None:
        """Run one poll cycle over every configured repository.

        A failure in one repository is logged and the next repository
        is still processed.
        """
        logger.info("Polling repositories", extra={"count": len(self.repos)})

        for repo_config in self.repos:
            try:
                await self._process_repo(repo_config)
            except Exception:
                logger.exception(
                    "Failed to process repository",
                    extra={"owner": repo_config.owner, "repo": repo_config.repo},
                )

    async def _process_repo(self, repo_config: RepoWatchConfig) -> None:
        repo_record = await self.store.upsert_repo(
            repo_config.owner, repo_config.repo, repo_config.label
        )

        issues = await self.github_client.list_issues(
            repo_config.owner, repo_config.repo, repo_config.label, state="open"
        )
        logger.info(
            "Found labelled issues",
            extra={
                "owner": repo_config.owner,
                "repo": repo_config.repo,
                "label": repo_config.label,
                "count": len(issues),
            },
        )

        for issue in issues:
            try:
                await self.reconcile(issue, repo_record, repo_config)
            except Exception:
                logger.exception(
                    "Failed to reconcile issue",
                    extra={
                        "owner": repo_config.owner,
                        "repo": repo_config.repo,
                        "issue_number": issue.number,
                    },
                )

    async def reconcile(
        self,
        issue: GitHubIssue,
        repo_record: Repo,
        repo_config: RepoWatchConfig,
    ) -> Optional[Task]:
        """Decide whether an issue needs work and dispatch it if so.

        Args:
            issue: Live issue from GitHub.
            repo_record: Stored repository row.
            repo_config: Watch configuration for the repository.

        Returns:
            The dispatched task (as it was when dispatched), or None
            when the issue was skipped.
        """
        existing = await self.store.find_task_by_issue(repo_record.id, issue.number)

        if existing is not None and existing.status in SKIP_STATUSES:
            logger.debug(
                "Issue already has a task, skipping",
                extra={
                    "issue_number": issue.number,
                    "task_id": existing.id,
                    "status": existing.status.value,
                },
            )
            return None

        if existing is None:
            task = await self.store.create_task(
                repo_id=repo_record.id,
                title=issue.title,
                description=issue.body,
                github_issue_id=issue.number,
                status=TaskStatus.IN_PROGRESS,
            )
            kind = "new"
        else:
            task = await self.store.update_task_status(
                existing.id,
                TaskStatus.IN_PROGRESS,
                repo_id=repo_record.id,
                title=issue.title,
                description=issue.body,
            )
            kind = "retry" if existing.status == TaskStatus.FAILED else "queued"

        logger.info(
            "Dispatching task",
            extra={
                "owner": repo_config.owner,
                "repo": repo_config.repo,
                "issue_number": issue.number,
                "task_id": task.id,
                "kind": kind,
                "attempt": task.attempt_count,
            },
        )

        await self._add_task_log(
            task.id,
            "Task dispatched",
            metadata={"kind": kind, "attempt": task.attempt_count},
        )
        await self._safe_emit(
            TaskEvent(
                event_type=EventType.DISPATCHED,
                issue_id=_issue_id(repo_config, issue.number),
                repository=repo_config.full_name,
                task_id=task.id,
                details={"kind": kind, "attempt": task.attempt_count},
            )
        )

        await self._notify(
            "add working label",
            self.github_client.add_label(
                repo_config.owner, repo_config.repo, issue.number, self.working_label
            ),
            task.id,
        )
        await self._notify(
            "post start comment",
            self.github_client.create_comment(
                repo_config.owner,
                repo_config.repo,
                issue.number,
                format_started_comment(task.id),
            ),
            task.id,
        )

        await self.run_task(task, issue, repo_config)
        return task

    # ------------------------------------------------------------------
    # Per-task pipeline
    # ------------------------------------------------------------------

    async def run_task(
        self,
        task: Task,
        issue: GitHubIssue,
        repo_config: RepoWatchConfig,
    ) -> None:
        """Run the pipeline for an in_progress task.

        Never raises. On return the task is completed or failed.
        """
        start_time = time.monotonic()
        branch = branch_name(issue.number)
        run: Optional[AgentRun] = None
        result: Optional[AgentRunResult] = None
        pull_request: Optional[GitHubPullRequest] = None

        try:
            run = await self._create_agent_run(task)
            repo_dir = await self._prepare_workspace(repo_config, issue)
            await self._prepare_branch(repo_config, repo_dir, branch)
            result = await self._execute_agent(task, issue, repo_config, repo_dir, branch)
            pull_request = await self._submit_pull_request(
                issue, repo_config, repo_dir, branch, result
            )
            await self._record_success(task, run, result, pull_request)
        except Exception as exc:
            # Once COMPLETED is stored the task is final; only the run is left
            if pull_request is None or not await self._is_completed(task.id):
                await self._record_failure(
                    task, run, result, issue, repo_config, exc, start_time
                )
                return
            await self._close_completed_run(task, run, result, exc)

        duration = time.monotonic() - start_time
        logger.info(
            "Task completed",
            extra={
                "task_id": task.id,
                "issue_number": issue.number,
                "pr_number": pull_request.number,
                "pr_url": pull_request.html_url,
                "duration": round(duration, 1),
            },
        )

        await self._add_task_log(
            task.id,
            "Pull request opened",
            metadata={"pr_number": pull_request.number, "pr_url": pull_request.html_url},
        )
        await self._notify(
            "post success comment",
            self.github_client.create_comment(
                repo_config.owner,
                repo_config.repo,
                issue.number,
                format_success_comment(pull_request.html_url),
            ),
            task.id,
        )
        await self._remove_working_label(repo_config, issue, task.id)
        await self._safe_emit(
            TaskEvent(
                event_type=EventType.COMPLETION,
                issue_id=_issue_id(repo_config, issue.number),
                repository=repo_config.full_name,
                task_id=task.id,
                details={
                    "pr_number": pull_request.number,
                    "pr_url": pull_request.html_url,
                    "duration_seconds": duration,
                },
            )
        )

    async def _create_agent_run(self, task: Task) -> AgentRun:
        try:
            return await self.store.create_agent_run(
                task.id, self.agent.provider.value, self.agent.model
            )
        except Exception as exc:
            raise PipelineError("setup", str(exc)) from exc

    async def _prepare_workspace(
        self,
        repo_config: RepoWatchConfig,
        issue: GitHubIssue,
    ) -> Path:
        """Clone the repository into the task's workspace directory."""
        try:
            repo_dir = await self.git.prepare_directory(
                repo_config.owner, repo_config.repo, issue.number
            )
            await self.git.clone(
                self.git.authenticated_clone_url(repo_config.owner, repo_config.repo),
                repo_dir,
            )
            return repo_dir
        except Exception as exc:
            raise PipelineError("workspace", str(exc)) from exc

    async def _prepare_branch(
        self,
        repo_config: RepoWatchConfig,
        repo_dir: Path,
        branch: str,
    ) -> None:
        """Create the working branch remotely, then check it out locally.

        The remote branch usually exists already on a retry, so its
        creation failing is only logged. The local checkout resets the
        branch if present and is the step that must succeed.
        """
        try:
            await self.github_client.create_branch(
                repo_config.owner,
                repo_config.repo,
                branch,
                from_branch=self.base_branch,
            )
        except Exception as exc:
            logger.warning(
                "Remote branch creation failed, continuing",
                extra={"branch": branch, "error": str(exc)},
            )

        try:
            await self.git.checkout(repo_dir, branch, create=True)
        except Exception as exc:
            raise PipelineError("branch", str(exc)) from exc

    async def _execute_agent(
        self,
        task: Task,
        issue: GitHubIssue,
        repo_config: RepoWatchConfig,
        repo_dir: Path,
        branch: str,
    ) -> AgentRunResult:
        """Run the agent and require a zero exit.

        Raises:
            PipelineError: If the agent failed, timed out or could not start.
        """
        try:
            result = await self.agent_runner.run(
                AgentRunInput(
                    task_id=task.id,
                    issue_title=issue.title,
                    issue_body=issue.body,
                    workspace_path=repo_dir,
                    branch=branch,
                    config=self.agent,
                )
            )
        except Exception as exc:
            raise PipelineError("agent", str(exc)) from exc

        if result.timed_out:
            await self._safe_emit(
                TaskEvent(
                    event_type=EventType.TIMEOUT,
                    issue_id=_issue_id(repo_config, issue.number),
                    repository=repo_config.full_name,
                    task_id=task.id,
                    details={
                        "stage": "agent",
                        "timeout_seconds": self.agent.timeout_seconds,
                    },
                )
            )

        if not result.success:
            raise PipelineError(
                "agent", result.error or f"Exit code {result.exit_code}"
            )
        return result

    async def _submit_pull_request(
        self,
        issue: GitHubIssue,
        repo_config: RepoWatchConfig,
        repo_dir: Path,
        branch: str,
        result: AgentRunResult,
    ) -> GitHubPullRequest:
        try:
            await self.git.commit_and_push(
                repo_dir, format_commit_message(issue.number), branch
            )
            return await self.github_client.create_pull_request(
                repo_config.owner,
                repo_config.repo,
                PRCreateRequest(
                    title=format_pr_title(issue),
                    body=format_pr_body(issue, result.output),
                    head_branch=branch,
                    base_branch=self.base_branch,
                ),
            )
        except Exception as exc:
            raise PipelineError("submit", str(exc)) from exc

    async def _record_success(
        self,
        task: Task,
        run: AgentRun,
        result: AgentRunResult,
        pull_request: GitHubPullRequest,
    ) -> None:
        await self.store.update_task_status(
            task.id,
            TaskStatus.COMPLETED,
            pr_number=pull_request.number,
            pr_url=pull_request.html_url,
        )
        await self.store.update_agent_run(
            run.id,
            status=AgentRunStatus.COMPLETED,
            output=result.output,
            completed_at=utc_now(),
        )

    async def _is_completed(self, task_id: int) -> bool:
        try:
            current = await self.store.get_task(task_id)
        except Exception:
            logger.exception("Failed to read task status", extra={"task_id": task_id})
            return False
        return current is not None and current.status == TaskStatus.COMPLETED

    async def _close_completed_run(
        self,
        task: Task,
        run: AgentRun,
        result: AgentRunResult,
        exc: Exception,
    ) -> None:
        """Retry closing the run of a task already marked completed."""
        logger.warning(
            "Agent run update failed after task completed, retrying",
            extra={"task_id": task.id, "run_id": run.id, "error": str(exc)},
        )
        try:
            await self.store.update_agent_run(
                run.id,
                status=AgentRunStatus.COMPLETED,
                output=result.output,
                completed_at=utc_now(),
            )
        except Exception:
            logger.exception(
                "Failed to close agent run",
                extra={"task_id": task.id, "run_id": run.id},
            )

    async def _record_failure(
        self,
        task: Task,
        run: Optional[AgentRun],
        result: Optional[AgentRunResult],
        issue: GitHubIssue,
        repo_config: RepoWatchConfig,
        exc: Exception,
        start_time: float,
    ) -> None:
        """Mark the task and run failed and tell the issue. Never raises."""
        stage = exc.stage if isinstance(exc, PipelineError) else "record"
        error_message = str(exc) if isinstance(exc, PipelineError) else f"record: {exc}"
        duration = time.monotonic() - start_time

        logger.error(
            "Task failed",
            extra={
                "task_id": task.id,
                "issue_number": issue.number,
                "stage": stage,
                "error": error_message,
                "duration": round(duration, 1),
            },
        )

        try:
            await self.store.update_task_status(task.id, TaskStatus.FAILED)
        except Exception:
            logger.exception(
                "Failed to mark task failed",
                extra={"task_id": task.id},
            )

        if run is not None:
            run_fields: Dict[str, Any] = {
                "status": AgentRunStatus.FAILED,
                "error": error_message,
                "completed_at": utc_now(),
            }
            if result is not None:
                run_fields["output"] = result.output
            try:
                await self.store.update_agent_run(run.id, **run_fields)
            except Exception:
                logger.exception(
                    "Failed to mark agent run failed",
                    extra={"task_id": task.id, "run_id": run.id},
                )

        await self._add_task_log(
            task.id,
            "Task failed",
            level=TaskLogLevel.ERROR,
            metadata={"stage": stage, "error": error_message},
        )
        await self._notify(
            "post failure comment",
            self.github_client.create_comment(
                repo_config.owner,
                repo_config.repo,
                issue.number,
                format_failure_comment(error_message),
            ),
            task.id,
        )
        await self._remove_working_label(repo_config, issue, task.id)
        await self._safe_emit(
            TaskEvent(
                event_type=EventType.ERROR,
                issue_id=_issue_id(repo_config, issue.number),
                repository=repo_config.full_name,
                task_id=task.id,
                details={
                    "stage": stage,
                    "error_message": error_message,
                    "duration_seconds": duration,
                },
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _remove_working_label(
        self,
        repo_config: RepoWatchConfig,
        issue: GitHubIssue,
        task_id: int,
    ) -> None:
        await self._notify(
            "remove working label",
            self.github_client.remove_label(
                repo_config.owner, repo_config.repo, issue.number, self.working_label
            ),
            task_id,
        )

    async def _notify(
        self,
        action: str,
        call: Awaitable[Any],
        task_id: int,
    ) -> None:
        """Await a best-effort GitHub call, logging instead of raising."""
        try:
            await call
        except Exception as exc:
            logger.warning(
                "Best-effort GitHub call failed",
                extra={"action": action, "task_id": task_id, "error": str(exc)},
            )

    async def _add_task_log(
        self,
        task_id: int,
        text: str,
        level: TaskLogLevel = TaskLogLevel.INFO,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            await self.store.add_task_log(task_id, text, level=level, metadata=metadata)
        except Exception:
            logger.exception(
                "Failed to write task log",
                extra={"task_id": task_id},
            )

    async def _safe_emit(self, event: TaskEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the pipeline."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit task event",
                extra={
                    "event_type": event.event_type.value,
                    "issue_id": event.issue_id,
                },
            )
