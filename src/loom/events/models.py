"""Task event models for observability.

This module defines the data models for engine events:
- EventType: Enum of all event types emitted by the orchestrator
- TaskEvent: Structured event with all required metadata

Events are emitted for monitoring, alerting, and debugging purposes.
They provide visibility into engine health and task progression.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the orchestrator.

    Event Categories:
        DISPATCHED: A task entered in_progress, either newly created or
            retried after a failure.

        COMPLETION: A task's pipeline finished and a PR was opened.

        ERROR: A task's pipeline failed at some stage.

        TIMEOUT: The agent exceeded its time limit. An ERROR event for
            the same task follows.
    """

    DISPATCHED = "dispatched"
    COMPLETION = "completion"
    ERROR = "error"
    TIMEOUT = "timeout"


class TaskEvent(BaseModel):
    """Structured event emitted by the orchestrator.

    Attributes:
        event_type: The category of event.
        issue_id: Canonical identifier in format "{owner}/{repo}#{number}".
        repository: Full repository path in format "{owner}/{repo}".
        task_id: Stored task id, when one exists.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        For DISPATCHED events:
            - kind: "new", "retry" or "queued"
            - attempt: Attempt number of this run

        For COMPLETION events:
            - pr_number: Created pull request number
            - pr_url: URL to the pull request
            - duration_seconds: Pipeline wall-clock time

        For ERROR events:
            - stage: Pipeline stage where the failure happened
            - error_message: Human-readable error description
            - duration_seconds: Pipeline wall-clock time

        For TIMEOUT events:
            - stage: Always "agent"
            - timeout_seconds: Configured agent timeout
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    issue_id: str = Field(
        ...,
        min_length=1,
        description='Canonical issue identifier in format "{owner}/{repo}#{number}"',
    )

    repository: str = Field(
        ...,
        min_length=1,
        description='Full repository path in format "{owner}/{repo}"',
    )

    task_id: Optional[int] = Field(
        default=None,
        description="Stored task id",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event into a dict suitable for logging ``extra``.

        Detail keys are merged in after the fixed fields.
        """
        return {
            "event_type": self.event_type.value,
            "issue_id": self.issue_id,
            "repository": self.repository,
            "task_id": self.task_id,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
