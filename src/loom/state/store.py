"""Task store interface and in-memory implementation.

The orchestrator depends on persistence only through the TaskStore
protocol defined here. Two implementations exist:

- InMemoryTaskStore (this module): local development and tests
- PostgresTaskStore (repository.py): production persistence via asyncpg

Both enforce the same rules: task status changes must follow
VALID_TRANSITIONS, and an agent run may be closed only once.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from src.loom.state.models import (
    AgentRun,
    AgentRunStatus,
    Repo,
    Task,
    TaskLog,
    TaskLogLevel,
    TaskStatus,
    is_valid_transition,
    utc_now,
)


logger = logging.getLogger(__name__)


class TaskStoreError(Exception):
    """Base class for task store failures."""


class TaskNotFoundError(TaskStoreError):
    """Raised when a task id does not exist.

    Attributes:
        task_id: The task id that was not found.
    """

    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class AgentRunNotFoundError(TaskStoreError):
    """Raised when an agent run id does not exist."""

    def __init__(self, run_id: int):
        self.run_id = run_id
        super().__init__(f"Agent run not found: {run_id}")


class InvalidTransitionError(TaskStoreError):
    """Raised when a task status change violates VALID_TRANSITIONS.

    Attributes:
        task_id: The task being updated.
        from_status: The current status.
        to_status: The rejected target status.
    """

    def __init__(
        self,
        task_id: int,
        from_status: TaskStatus,
        to_status: TaskStatus,
    ):
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition for task {task_id} "
            f"from {from_status.value} to {to_status.value}"
        )


class AgentRunClosedError(TaskStoreError):
    """Raised when updating an agent run that is no longer running."""

    def __init__(self, run_id: int, status: AgentRunStatus):
        self.run_id = run_id
        self.status = status
        super().__init__(
            f"Agent run {run_id} is already closed ({status.value})"
        )


@runtime_checkable
class TaskStore(Protocol):
    """Persistence operations the orchestrator requires."""

    async def upsert_repo(self, owner: str, name: str, watch_label: str) -> Repo:
        """Return the repo row for (owner, name), inserting it if absent."""
        ...

    async def find_task_by_issue(
        self, repo_id: int, issue_number: int
    ) -> Optional[Task]:
        """Return the most recent task for an issue, or None."""
        ...

    async def get_task(self, task_id: int) -> Optional[Task]:
        ...

    async def create_task(
        self,
        repo_id: int,
        title: str,
        description: Optional[str],
        github_issue_id: Optional[int],
        status: TaskStatus = TaskStatus.TODO,
    ) -> Task:
        ...

    async def update_task_status(
        self,
        task_id: int,
        status: TaskStatus,
        **fields: Any,
    ) -> Task:
        """Change a task's status, validating the transition.

        Raises:
            TaskNotFoundError: If the task does not exist.
            InvalidTransitionError: If the transition is not allowed.
        """
        ...

    async def create_agent_run(
        self, task_id: int, provider: str, model: Optional[str] = None
    ) -> AgentRun:
        ...

    async def update_agent_run(self, run_id: int, **fields: Any) -> AgentRun:
        """Close or amend a running agent run.

        Raises:
            AgentRunNotFoundError: If the run does not exist.
            AgentRunClosedError: If the run is no longer running.
        """
        ...

    async def list_agent_runs(self, task_id: int) -> List[AgentRun]:
        ...

    async def add_task_log(
        self,
        task_id: int,
        message: str,
        level: TaskLogLevel = TaskLogLevel.INFO,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TaskLog:
        ...

    async def list_task_logs(self, task_id: int) -> List[TaskLog]:
        ...


# Fields callers may set alongside a status change.
TASK_UPDATE_FIELDS = frozenset({"pr_number", "pr_url", "repo_id", "title", "description"})

# Fields callers may set on an agent run.
AGENT_RUN_UPDATE_FIELDS = frozenset({"status", "output", "error", "completed_at"})


def check_update_fields(fields: Dict[str, Any], allowed: frozenset) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unsupported fields: {', '.join(sorted(unknown))}")


class InMemoryTaskStore:
    """TaskStore kept in process memory.

    All mutations are serialised through an asyncio.Lock so the
    read-then-write sequences below behave like the single-writer
    database the orchestrator assumes.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._repos: Dict[int, Repo] = {}
        self._tasks: Dict[int, Task] = {}
        self._runs: Dict[int, AgentRun] = {}
        self._logs: Dict[int, TaskLog] = {}
        self._next_ids = {"repo": 1, "task": 1, "run": 1, "log": 1}

    def _next_id(self, kind: str) -> int:
        value = self._next_ids[kind]
        self._next_ids[kind] = value + 1
        return value

    async def upsert_repo(self, owner: str, name: str, watch_label: str) -> Repo:
        async with self._lock:
            for repo in self._repos.values():
                if repo.owner == owner and repo.name == name:
                    return repo

            repo = Repo(
                id=self._next_id("repo"),
                owner=owner,
                name=name,
                github_url=f"https://github.com/{owner}/{name}",
                watch_label=watch_label,
            )
            self._repos[repo.id] = repo
            logger.info(
                "Registered repository",
                extra={"owner": owner, "repo": name, "repo_id": repo.id},
            )
            return repo

    async def find_task_by_issue(
        self, repo_id: int, issue_number: int
    ) -> Optional[Task]:
        matches = [
            task
            for task in self._tasks.values()
            if task.repo_id == repo_id and task.github_issue_id == issue_number
        ]
        if not matches:
            return None
        return max(matches, key=lambda task: task.id)

    async def get_task(self, task_id: int) -> Optional[Task]:
        return self._tasks.get(task_id)

    async def create_task(
        self,
        repo_id: int,
        title: str,
        description: Optional[str],
        github_issue_id: Optional[int],
        status: TaskStatus = TaskStatus.TODO,
    ) -> Task:
        async with self._lock:
            task = Task(
                id=self._next_id("task"),
                repo_id=repo_id,
                title=title,
                description=description,
                github_issue_id=github_issue_id,
                status=status,
            )
            self._tasks[task.id] = task
            return task

    async def update_task_status(
        self,
        task_id: int,
        status: TaskStatus,
        **fields: Any,
    ) -> Task:
        check_update_fields(fields, TASK_UPDATE_FIELDS)
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if not is_valid_transition(task.status, status):
                raise InvalidTransitionError(task_id, task.status, status)

            changes: Dict[str, Any] = {
                "status": status,
                "updated_at": utc_now(),
                **fields,
            }
            if task.status == TaskStatus.FAILED and status == TaskStatus.IN_PROGRESS:
                changes["attempt_count"] = task.attempt_count + 1

            updated = task.model_copy(update=changes)
            self._tasks[task_id] = updated
            return updated

    async def create_agent_run(
        self, task_id: int, provider: str, model: Optional[str] = None
    ) -> AgentRun:
        async with self._lock:
            if task_id not in self._tasks:
                raise TaskNotFoundError(task_id)
            run = AgentRun(
                id=self._next_id("run"),
                task_id=task_id,
                provider=provider,
                model=model,
            )
            self._runs[run.id] = run
            return run

    async def update_agent_run(self, run_id: int, **fields: Any) -> AgentRun:
        check_update_fields(fields, AGENT_RUN_UPDATE_FIELDS)
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise AgentRunNotFoundError(run_id)
            if run.status != AgentRunStatus.RUNNING:
                raise AgentRunClosedError(run_id, run.status)

            updated = run.model_copy(update=fields)
            self._runs[run_id] = updated
            return updated

    async def list_agent_runs(self, task_id: int) -> List[AgentRun]:
        return sorted(
            (run for run in self._runs.values() if run.task_id == task_id),
            key=lambda run: run.id,
        )

    async def add_task_log(
        self,
        task_id: int,
        message: str,
        level: TaskLogLevel = TaskLogLevel.INFO,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TaskLog:
        async with self._lock:
            if task_id not in self._tasks:
                raise TaskNotFoundError(task_id)
            entry = TaskLog(
                id=self._next_id("log"),
                task_id=task_id,
                level=level,
                message=message,
                metadata=metadata or {},
            )
            self._logs[entry.id] = entry
            return entry

    async def list_task_logs(self, task_id: int) -> List[TaskLog]:
        return sorted(
            (entry for entry in self._logs.values() if entry.task_id == task_id),
            key=lambda entry: entry.id,
        )

    async def list_tasks(self) -> List[Task]:
        """Return every task ordered by id."""
        return [self._tasks[task_id] for task_id in sorted(self._tasks)]

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        """Nothing to release; present for parity with PostgresTaskStore."""
