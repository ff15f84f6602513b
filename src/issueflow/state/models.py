"""Workflow state models.

This module defines the persistent data model of the orchestrator:
- WorkflowStage: stages a workflow run passes through
- VALID_TRANSITIONS: legal stage progression
- RunStatus / TaskStatus: lifecycle statuses of runs and tasks
- Event, WorkflowRun, Task, AgentAttempt, Artifact, MergeDecision,
  StageTransition: persisted records
- RunView: read model returned by the run query API

Stage Flow:
    TaskRequested → SpecGenerated → SubtasksDispatched → PRReviewed
    → MergeDecision

Every stage may also move to DeadLetter, which has no way out.

The models use Pydantic for validation, consistent with the rest of the
package.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowStage(str, Enum):
    """Stages of a workflow run.

    Attributes:
        TASK_REQUESTED: Run created from an admitted event.
        SPEC_GENERATED: Formal spec produced and tasks materialized.
        SUBTASKS_DISPATCHED: Scheduler is executing tasks.
        PR_REVIEWED: Review summary produced.
        MERGE_DECISION: Merge verdict recorded and applied.
        DEAD_LETTER: Run failed terminally.
    """

    TASK_REQUESTED = "TaskRequested"
    SPEC_GENERATED = "SpecGenerated"
    SUBTASKS_DISPATCHED = "SubtasksDispatched"
    PR_REVIEWED = "PRReviewed"
    MERGE_DECISION = "MergeDecision"
    DEAD_LETTER = "DeadLetter"


# Each stage advances exactly one step or dead-letters. DeadLetter is a sink.
VALID_TRANSITIONS: Dict[WorkflowStage, List[WorkflowStage]] = {
    WorkflowStage.TASK_REQUESTED: [
        WorkflowStage.SPEC_GENERATED,
        WorkflowStage.DEAD_LETTER,
    ],
    WorkflowStage.SPEC_GENERATED: [
        WorkflowStage.SUBTASKS_DISPATCHED,
        WorkflowStage.DEAD_LETTER,
    ],
    WorkflowStage.SUBTASKS_DISPATCHED: [
        WorkflowStage.PR_REVIEWED,
        WorkflowStage.DEAD_LETTER,
    ],
    WorkflowStage.PR_REVIEWED: [
        WorkflowStage.MERGE_DECISION,
        WorkflowStage.DEAD_LETTER,
    ],
    WorkflowStage.MERGE_DECISION: [
        WorkflowStage.DEAD_LETTER,
    ],
    WorkflowStage.DEAD_LETTER: [],
}


def is_valid_transition(from_stage: WorkflowStage, to_stage: WorkflowStage) -> bool:
    """Check if a stage transition is legal.

    Example:
        >>> is_valid_transition(WorkflowStage.TASK_REQUESTED, WorkflowStage.SPEC_GENERATED)
        True
        >>> is_valid_transition(WorkflowStage.TASK_REQUESTED, WorkflowStage.PR_REVIEWED)
        False
    """
    return to_stage in VALID_TRANSITIONS.get(from_stage, [])


def is_terminal_stage(stage: WorkflowStage) -> bool:
    """Check if a stage has no outgoing transitions."""
    return len(VALID_TRANSITIONS.get(stage, [])) == 0


class RunStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class TaskStatus(str, Enum):
    """Task lifecycle statuses.

    Only QUEUED tasks are picked up by the scheduler. RETRY marks a task
    whose retry budget was spent; it is not re-driven automatically.
    """

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    RETRY = "retry"
    NEEDS_REVIEW = "needs_review"


class Event(BaseModel):
    """An admitted webhook delivery."""

    id: str = Field(default_factory=new_id)
    delivery_id: str = Field(..., min_length=1, description="Unique GitHub delivery id")
    event_type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    workflow_run_id: Optional[str] = None
    processed: bool = False
    error: Optional[str] = None
    received_at: datetime = Field(default_factory=_utcnow)
    processed_at: Optional[datetime] = None


class WorkflowRun(BaseModel):
    """One end-to-end execution for a single admitted event."""

    id: str = Field(default_factory=new_id)
    external_task_ref: str = Field(..., description="Envelope event id that started the run")
    issue_number: int = Field(..., ge=0)
    repository: Optional[str] = Field(
        default=None, description="owner/repo the run acted on"
    )
    pr_number: Optional[int] = Field(default=None, gt=0)
    status: RunStatus = RunStatus.PENDING
    current_stage: WorkflowStage = WorkflowStage.TASK_REQUESTED
    spec_id: Optional[str] = None
    spec_content: Optional[str] = None
    dead_letter_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class TaskSpec(BaseModel):
    """Input for creating a task from a plan work item."""

    task_key: str = Field(..., min_length=1)
    title: str
    owner_role: str
    definition_of_done: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)


class Task(BaseModel):
    id: str = Field(default_factory=new_id)
    workflow_run_id: str
    task_key: str = Field(..., min_length=1, description="Work item id from the plan")
    title: str
    owner_role: str
    definition_of_done: List[str] = Field(default_factory=list)
    status: TaskStatus = TaskStatus.QUEUED
    attempt_count: int = Field(default=0, ge=0)
    depends_on: List[str] = Field(default_factory=list)
    last_result: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class AgentAttempt(BaseModel):
    """Append-only record of one task execution attempt."""

    id: str = Field(default_factory=new_id)
    task_id: str
    agent_role: str
    attempt_number: int = Field(..., ge=1)
    status: str = Field(..., description="Resulting task status, 'failed' or 'skipped'")
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    backoff_delay_ms: Optional[int] = None
    duration_ms: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)


class Artifact(BaseModel):
    id: str = Field(default_factory=new_id)
    workflow_run_id: str
    task_id: Optional[str] = None
    kind: str = Field(..., min_length=1)
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class MergeDecision(BaseModel):
    id: str = Field(default_factory=new_id)
    workflow_run_id: str
    pr_number: Optional[int] = None
    decision: str
    rationale: str
    blocking_findings: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


class StageTransition(BaseModel):
    """Append-only record of one stage change of a run."""

    workflow_run_id: str
    from_stage: WorkflowStage
    to_stage: WorkflowStage
    transitioned_at: datetime = Field(default_factory=_utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TaskView(BaseModel):
    """Task as shown in a run view, with its attempt count."""

    task: Task
    attempts: int


class RunView(BaseModel):
    run: WorkflowRun
    tasks: List[TaskView] = Field(default_factory=list)
    artifacts: List[Artifact] = Field(default_factory=list)
    merge_decisions: List[MergeDecision] = Field(default_factory=list)
    transitions: List[StageTransition] = Field(default_factory=list)
