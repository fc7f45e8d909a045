"""Task state models and persistence.

This module tracks issues as tasks moving through:
- todo → in_progress → completed | failed
- failed → in_progress (retry, same task id)

State is persisted through the TaskStore protocol, backed by PostgreSQL
in production and process memory for local development.
"""

from src.loom.state.models import (
    VALID_TRANSITIONS,
    AgentRun,
    AgentRunStatus,
    Repo,
    Task,
    TaskLog,
    TaskLogLevel,
    TaskStatus,
    allowed_sources,
    is_terminal_status,
    is_valid_transition,
)
from src.loom.state.repository import DatabaseError, PostgresTaskStore
from src.loom.state.store import (
    AgentRunClosedError,
    AgentRunNotFoundError,
    InMemoryTaskStore,
    InvalidTransitionError,
    TaskNotFoundError,
    TaskStore,
    TaskStoreError,
)

__all__ = [
    # Models
    "VALID_TRANSITIONS",
    "AgentRun",
    "AgentRunStatus",
    "Repo",
    "Task",
    "TaskLog",
    "TaskLogLevel",
    "TaskStatus",
    "allowed_sources",
    "is_terminal_status",
    "is_valid_transition",
    # Stores
    "InMemoryTaskStore",
    "PostgresTaskStore",
    "TaskStore",
    # Errors
    "AgentRunClosedError",
    "AgentRunNotFoundError",
    "DatabaseError",
    "InvalidTransitionError",
    "TaskNotFoundError",
    "TaskStoreError",
]
