"""Task state models.

This module defines the persisted records the orchestrator works with:
- Repo: a watched GitHub repository
- Task: the unit of work bound to one GitHub issue
- AgentRun: one execution attempt of the coding agent for a task
- TaskLog: an append-only milestone note attached to a task
- VALID_TRANSITIONS: map of allowed task status transitions

The models use Pydantic for validation, consistent with the engine's
approach in config.py and github/models.py.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Lifecycle status of a task.

    Status Flow:
        todo → in_progress → completed
        todo → in_progress → failed
        failed → in_progress (retry)

    Tasks are created directly in IN_PROGRESS by the orchestrator because
    creation and dispatch happen in one step; TODO exists for rows created
    by other tools.

    Attributes:
        TODO: Task recorded but not yet dispatched.
        IN_PROGRESS: Pipeline is running (or about to run) for the task.
        COMPLETED: Pull request opened; terminal.
        FAILED: Last attempt failed; re-enterable on the next poll.
    """

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentRunStatus(str, Enum):
    """Status of a single agent execution attempt."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskLogLevel(str, Enum):
    """Severity of a task log entry."""

    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class Repo(BaseModel):
    """A watched GitHub repository.

    Attributes:
        id: Store-assigned identifier.
        owner: Repository owner (user or organization).
        name: Repository name.
        github_url: Canonical https URL of the repository.
        watch_label: Label that marks issues eligible for automation.
        created_at: When the repository was first seen (UTC).
    """

    id: int = Field(..., ge=1)
    owner: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    github_url: str = Field(..., min_length=1)
    watch_label: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class Task(BaseModel):
    """Unit of work bound to exactly one GitHub issue.

    The pair (repo_id, github_issue_id) is the dedup key: at most one
    non-terminal task exists per pair.

    Attributes:
        id: Store-assigned identifier.
        title: Issue title at creation time.
        description: Issue body at creation time, if any.
        github_issue_id: Issue number within the repository.
        repo_id: Owning repository identifier.
        status: Current lifecycle status.
        attempt_count: Number of times the pipeline was dispatched.
        pr_number: Pull request number once completed.
        pr_url: Pull request URL once completed.
        created_at: When the task was created (UTC).
        updated_at: When the task was last updated (UTC).
    """

    id: int = Field(..., ge=1)
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    github_issue_id: Optional[int] = None
    repo_id: int = Field(..., ge=1)
    status: TaskStatus = TaskStatus.TODO
    attempt_count: int = Field(default=1, ge=1)
    pr_number: Optional[int] = Field(default=None, gt=0)
    pr_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class AgentRun(BaseModel):
    """One execution attempt of the coding agent for a task.

    Created in RUNNING at the start of a pipeline run and closed exactly
    once, as COMPLETED or FAILED, at its end.

    Attributes:
        id: Store-assigned identifier.
        task_id: Owning task identifier.
        provider: Agent provider name (e.g. "claude").
        model: Agent model, if configured.
        status: Run status.
        output: Captured agent output (completed runs).
        error: Error message (failed runs).
        started_at: When the run started (UTC).
        completed_at: When the run was closed (UTC).
    """

    id: int = Field(..., ge=1)
    task_id: int = Field(..., ge=1)
    provider: str = Field(..., min_length=1)
    model: Optional[str] = None
    status: AgentRunStatus = AgentRunStatus.RUNNING
    output: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class TaskLog(BaseModel):
    """Milestone note attached to a task."""

    id: int = Field(..., ge=1)
    task_id: int = Field(..., ge=1)
    level: TaskLogLevel = TaskLogLevel.INFO
    message: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


# Allowed task status transitions.
#
# - COMPLETED has no outgoing transitions
# - FAILED re-enters IN_PROGRESS on retry, keeping the same task id
VALID_TRANSITIONS: Dict[TaskStatus, List[TaskStatus]] = {
    TaskStatus.TODO: [TaskStatus.IN_PROGRESS],
    TaskStatus.IN_PROGRESS: [TaskStatus.COMPLETED, TaskStatus.FAILED],
    TaskStatus.COMPLETED: [],
    TaskStatus.FAILED: [TaskStatus.IN_PROGRESS],
}


def is_valid_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """Check if a task status transition is allowed.

    Example:
        >>> is_valid_transition(TaskStatus.FAILED, TaskStatus.IN_PROGRESS)
        True
        >>> is_valid_transition(TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS)
        False
    """
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def allowed_sources(to_status: TaskStatus) -> List[TaskStatus]:
    """Return the statuses from which ``to_status`` may be entered."""
    return [
        source
        for source, targets in VALID_TRANSITIONS.items()
        if to_status in targets
    ]


def is_terminal_status(status: TaskStatus) -> bool:
    """Check if a status ends a pipeline attempt.

    COMPLETED and FAILED both end an attempt; FAILED can still be
    re-entered by a later poll.
    """
    return status in (TaskStatus.COMPLETED, TaskStatus.FAILED)
