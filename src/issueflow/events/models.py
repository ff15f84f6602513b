"""Workflow event models for observability.

This module defines the data models for orchestrator events:
- EventType: Enum of all event types emitted while driving a run
- PipelineEvent: Structured event with the run id, repository and details

Events are emitted for monitoring and debugging. Emission never affects
the outcome of a run.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the orchestrator.

    Attributes:
        RUN_STARTED: A workflow run was created for an admitted event.
        STAGE_TRANSITION: A run moved from one stage to another.
        TASK_RESULT: A task finished an execution attempt sequence.
        COMPLETION: A run reached MergeDecision.
        DEAD_LETTER: A run was moved to DeadLetter after a failure.
    """

    RUN_STARTED = "run_started"
    STAGE_TRANSITION = "stage_transition"
    TASK_RESULT = "task_result"
    COMPLETION = "completion"
    DEAD_LETTER = "dead_letter"


class PipelineEvent(BaseModel):
    """Structured event emitted while driving a workflow run.

    Details Field Conventions:
        STAGE_TRANSITION: from_stage, to_stage
        TASK_RESULT: task_key, status, attempt_number
        COMPLETION: status, pending_tasks, pr_number, duration_seconds
        DEAD_LETTER: reason, duration_seconds

    Example:
        >>> event = PipelineEvent(
        ...     event_type=EventType.STAGE_TRANSITION,
        ...     run_id="3f1c...",
        ...     repository="org/repo",
        ...     details={"from_stage": "TaskRequested", "to_stage": "SpecGenerated"},
        ... )
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    run_id: str = Field(
        ...,
        min_length=1,
        description="Workflow run the event belongs to",
    )

    repository: str = Field(
        default="",
        description='Repository in format "{owner}/{repo}", if known',
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
        """Flatten the event for structured logging.

        Example:
            >>> event.to_log_dict()["event_type"]
            'stage_transition'
        """
        return {
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "repository": self.repository,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
