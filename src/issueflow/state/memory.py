"""In-memory WorkflowRepository.

Used when no database is configured (local development and dry runs) and
by the test suite. State lives for the lifetime of the process only.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

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
    TaskView,
    WorkflowRun,
    WorkflowStage,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryWorkflowRepository:
    """Dict-backed implementation of the WorkflowRepository protocol."""

    def __init__(self) -> None:
        self.events: Dict[str, Event] = {}
        self._event_ids_by_delivery: Dict[str, str] = {}
        self.runs: Dict[str, WorkflowRun] = {}
        self.tasks: Dict[str, Task] = {}
        self.attempts: List[AgentAttempt] = []
        self.artifacts: List[Artifact] = []
        self.merge_decisions: List[MergeDecision] = []
        self.transitions: List[StageTransition] = []

    # Events

    async def record_event_if_new(
        self, delivery_id: str, event_type: str, payload: Dict[str, Any]
    ) -> Tuple[str, bool]:
        existing = self._event_ids_by_delivery.get(delivery_id)
        if existing is not None:
            return existing, False

        event = Event(delivery_id=delivery_id, event_type=event_type, payload=payload)
        self.events[event.id] = event
        self._event_ids_by_delivery[delivery_id] = event.id
        return event.id, True

    async def get_event(self, event_id: str) -> Optional[Event]:
        return self.events.get(event_id)

    async def link_event_to_run(self, event_id: str, run_id: str) -> None:
        event = self.events.get(event_id)
        if event is not None:
            self.events[event_id] = event.model_copy(update={"workflow_run_id": run_id})

    async def mark_event_processed(self, event_id: str, error: Optional[str] = None) -> None:
        event = self.events.get(event_id)
        if event is not None:
            self.events[event_id] = event.model_copy(
                update={"processed": True, "error": error, "processed_at": _now()}
            )

    # Runs

    async def create_workflow_run(
        self,
        issue_number: int,
        external_task_ref: str,
        repository: Optional[str] = None,
    ) -> WorkflowRun:
        run = WorkflowRun(
            issue_number=issue_number,
            external_task_ref=external_task_ref,
            repository=repository,
            status=RunStatus.IN_PROGRESS,
            current_stage=WorkflowStage.TASK_REQUESTED,
        )
        self.runs[run.id] = run
        return run

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        return self.runs.get(run_id)

    def _update_run(self, run_id: str, **changes: Any) -> None:
        run = self.runs.get(run_id)
        if run is not None:
            changes["updated_at"] = _now()
            self.runs[run_id] = run.model_copy(update=changes)

    async def update_run_stage(self, transition: StageTransition) -> None:
        self._update_run(transition.workflow_run_id, current_stage=transition.to_stage)
        self.transitions.append(transition)

    async def list_transitions(self, run_id: str) -> List[StageTransition]:
        return [t for t in self.transitions if t.workflow_run_id == run_id]

    async def store_spec(self, run_id: str, spec_id: str, content: str) -> None:
        self._update_run(run_id, spec_id=spec_id, spec_content=content)

    async def set_run_pr_number(self, run_id: str, pr_number: int) -> None:
        self._update_run(run_id, pr_number=pr_number)

    async def mark_run_status(
        self, run_id: str, status: RunStatus, reason: Optional[str] = None
    ) -> None:
        changes: Dict[str, Any] = {"status": status}
        if reason is not None:
            changes["dead_letter_reason"] = reason
        self._update_run(run_id, **changes)

    # Tasks

    async def create_tasks(self, run_id: str, tasks: List[TaskSpec]) -> List[Task]:
        created = []
        for spec in tasks:
            task = Task(
                workflow_run_id=run_id,
                task_key=spec.task_key,
                title=spec.title,
                owner_role=spec.owner_role,
                definition_of_done=list(spec.definition_of_done),
                depends_on=list(spec.depends_on),
            )
            self.tasks[task.id] = task
            created.append(task)
        return created

    async def list_tasks(self, run_id: str) -> List[Task]:
        return [t for t in self.tasks.values() if t.workflow_run_id == run_id]

    async def get_task(self, task_id: str) -> Optional[Task]:
        return self.tasks.get(task_id)

    async def list_runnable_tasks(self, run_id: str) -> List[Task]:
        run_tasks = await self.list_tasks(run_id)
        status_by_key = {t.task_key: t.status for t in run_tasks}
        return [
            t
            for t in run_tasks
            if t.status == TaskStatus.QUEUED
            and all(
                status_by_key.get(dep) == TaskStatus.COMPLETED for dep in t.depends_on
            )
        ]

    def _update_task(self, task_id: str, **changes: Any) -> None:
        task = self.tasks.get(task_id)
        if task is not None:
            changes["updated_at"] = _now()
            self.tasks[task_id] = task.model_copy(update=changes)

    async def mark_task_running(self, task_id: str) -> None:
        self._update_task(task_id, status=TaskStatus.RUNNING)

    async def mark_task_result(
        self, task_id: str, result: Dict[str, Any], status: TaskStatus
    ) -> None:
        task = self.tasks.get(task_id)
        if task is not None:
            self._update_task(
                task_id,
                status=status,
                last_result=result,
                attempt_count=task.attempt_count + 1,
            )

    async def count_pending_tasks(self, run_id: str) -> int:
        return sum(
            1 for t in await self.list_tasks(run_id) if t.status != TaskStatus.COMPLETED
        )

    # Audit records

    async def add_agent_attempt(self, attempt: AgentAttempt) -> None:
        self.attempts.append(attempt)

    async def list_attempts(self, task_id: str) -> List[AgentAttempt]:
        return [a for a in self.attempts if a.task_id == task_id]

    async def add_artifact(self, artifact: Artifact) -> None:
        self.artifacts.append(artifact)

    async def add_merge_decision(self, decision: MergeDecision) -> None:
        self.merge_decisions.append(decision)

    async def get_run_view(self, run_id: str) -> Optional[RunView]:
        run = self.runs.get(run_id)
        if run is None:
            return None

        task_views = []
        for task in await self.list_tasks(run_id):
            attempts = await self.list_attempts(task.id)
            task_views.append(TaskView(task=task, attempts=len(attempts)))

        return RunView(
            run=run,
            tasks=task_views,
            artifacts=[a for a in self.artifacts if a.workflow_run_id == run_id],
            merge_decisions=[
                d for d in self.merge_decisions if d.workflow_run_id == run_id
            ],
            transitions=await self.list_transitions(run_id),
        )

    async def health_check(self) -> bool:
        return True
