"""Workflow state: stages, records and persistence.

Runs move through:
- TaskRequested → SpecGenerated → SubtasksDispatched
- → PRReviewed → MergeDecision

with DeadLetter reachable from every stage. State is persisted through
the WorkflowRepository protocol (PostgreSQL or in-memory).
"""

from src.issueflow.state.machine import (
    InvalidTransitionError,
    RunNotFoundError,
    StageMachine,
    WorkflowRepository,
)
from src.issueflow.state.memory import InMemoryWorkflowRepository
from src.issueflow.state.models import (
    VALID_TRANSITIONS,
    AgentAttempt,
    Artifact,
    Event,
    MergeDecision,
    RunStatus,
    RunView,
    StageTransition,
    Task,
    TaskSpec,
    TaskStatus,
    TaskView,
    WorkflowRun,
    WorkflowStage,
    is_terminal_stage,
    is_valid_transition,
)
from src.issueflow.state.repository import DatabaseError, PostgresWorkflowRepository

__all__ = [
    # Models
    "VALID_TRANSITIONS",
    "AgentAttempt",
    "Artifact",
    "Event",
    "MergeDecision",
    "RunStatus",
    "RunView",
    "StageTransition",
    "Task",
    "TaskSpec",
    "TaskStatus",
    "TaskView",
    "WorkflowRun",
    "WorkflowStage",
    "is_terminal_stage",
    "is_valid_transition",
    # State machine
    "InvalidTransitionError",
    "RunNotFoundError",
    "StageMachine",
    "WorkflowRepository",
    # Repositories
    "DatabaseError",
    "InMemoryWorkflowRepository",
    "PostgresWorkflowRepository",
]
