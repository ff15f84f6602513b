"""Workflow stage state machine and persistence protocol.

This module implements the StageMachine that advances a workflow run's
stage, validating each move against VALID_TRANSITIONS and recording an
append-only StageTransition for it. It also defines the WorkflowRepository
protocol: every persistence operation the orchestrator, scheduler, intake
and API layer rely on.

Implementations:
- src/issueflow/state/memory.py (InMemoryWorkflowRepository)
- src/issueflow/state/repository.py (PostgresWorkflowRepository)
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from src.issueflow.state.models import (
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
    WorkflowRun,
    WorkflowStage,
    is_valid_transition,
)


logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when an illegal stage transition is attempted.

    Attributes:
        from_stage: The current stage.
        to_stage: The attempted target stage.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_stage: WorkflowStage,
        to_stage: WorkflowStage,
        message: Optional[str] = None,
    ):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.message = message or (
            f"Invalid transition from {from_stage.value} to {to_stage.value}"
        )
        super().__init__(self.message)


class RunNotFoundError(Exception):
    """Raised when a workflow run does not exist.

    Attributes:
        run_id: The run id that was not found.
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Workflow run not found: {run_id}")


@runtime_checkable
class WorkflowRepository(Protocol):
    """Persistence contract for workflow state.

    All methods are async. Writes to unknown ids are no-ops unless
    documented otherwise; reads of unknown ids return None.
    """

    # Events

    async def record_event_if_new(
        self, delivery_id: str, event_type: str, payload: Dict[str, Any]
    ) -> Tuple[str, bool]:
        """Insert an event unless its delivery id exists.

        Returns:
            (event_id, inserted). On a repeat delivery the original
            event id is returned with inserted=False.
        """
        ...

    async def get_event(self, event_id: str) -> Optional[Event]:
        ...

    async def link_event_to_run(self, event_id: str, run_id: str) -> None:
        ...

    async def mark_event_processed(self, event_id: str, error: Optional[str] = None) -> None:
        ...

    # Runs

    async def create_workflow_run(
        self,
        issue_number: int,
        external_task_ref: str,
        repository: Optional[str] = None,
    ) -> WorkflowRun:
        """Create a run in status in_progress at stage TaskRequested."""
        ...

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        ...

    async def update_run_stage(self, transition: StageTransition) -> None:
        """Set the run's current stage and append the transition record."""
        ...

    async def list_transitions(self, run_id: str) -> List[StageTransition]:
        ...

    async def store_spec(self, run_id: str, spec_id: str, content: str) -> None:
        ...

    async def set_run_pr_number(self, run_id: str, pr_number: int) -> None:
        ...

    async def mark_run_status(
        self, run_id: str, status: RunStatus, reason: Optional[str] = None
    ) -> None:
        """Set run status; ``reason`` is stored as the dead-letter reason."""
        ...

    # Tasks

    async def create_tasks(self, run_id: str, tasks: List[TaskSpec]) -> List[Task]:
        ...

    async def list_tasks(self, run_id: str) -> List[Task]:
        ...

    async def get_task(self, task_id: str) -> Optional[Task]:
        ...

    async def list_runnable_tasks(self, run_id: str) -> List[Task]:
        """Queued tasks of the run whose dependencies are all completed.

        Returned in creation order.
        """
        ...

    async def mark_task_running(self, task_id: str) -> None:
        ...

    async def mark_task_result(
        self, task_id: str, result: Dict[str, Any], status: TaskStatus
    ) -> None:
        """Store a result and status and increment the task's attempt count."""
        ...

    async def count_pending_tasks(self, run_id: str) -> int:
        """Number of the run's tasks whose status is not completed."""
        ...

    # Audit records

    async def add_agent_attempt(self, attempt: AgentAttempt) -> None:
        ...

    async def list_attempts(self, task_id: str) -> List[AgentAttempt]:
        ...

    async def add_artifact(self, artifact: Artifact) -> None:
        ...

    async def add_merge_decision(self, decision: MergeDecision) -> None:
        ...

    async def get_run_view(self, run_id: str) -> Optional[RunView]:
        ...

    async def health_check(self) -> bool:
        ...


class StageMachine:
    """Advances workflow runs through their stages.

    The machine enforces:
    - Only transitions in VALID_TRANSITIONS are applied
    - Every applied transition is persisted with a timestamp and metadata
    - DeadLetter is terminal

    Example:
        >>> machine = StageMachine(repository)
        >>> await machine.advance(run_id, WorkflowStage.SPEC_GENERATED,
        ...                       {"spec_id": "spec_42"})
    """

    def __init__(self, repository: WorkflowRepository):
        self.repository = repository

    async def advance(
        self,
        run_id: str,
        to_stage: WorkflowStage,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StageTransition:
        """Move a run to ``to_stage``.

        Args:
            run_id: The workflow run id.
            to_stage: Target stage.
            metadata: Optional details stored with the transition.

        Returns:
            The persisted StageTransition.

        Raises:
            RunNotFoundError: If the run does not exist.
            InvalidTransitionError: If the move is not legal.
        """
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)

        from_stage = run.current_stage
        if not is_valid_transition(from_stage, to_stage):
            logger.warning(
                "Invalid stage transition attempted",
                extra={
                    "run_id": run_id,
                    "from_stage": from_stage.value,
                    "to_stage": to_stage.value,
                },
            )
            raise InvalidTransitionError(from_stage, to_stage)

        transition = StageTransition(
            workflow_run_id=run_id,
            from_stage=from_stage,
            to_stage=to_stage,
            metadata=metadata or {},
        )
        await self.repository.update_run_stage(transition)

        logger.info(
            "Stage transition",
            extra={
                "run_id": run_id,
                "from_stage": from_stage.value,
                "to_stage": to_stage.value,
            },
        )
        return transition

    async def can_advance(self, run_id: str, to_stage: WorkflowStage) -> bool:
        run = await self.repository.get_run(run_id)
        return run is not None and is_valid_transition(run.current_stage, to_stage)
