"""Dependency-aware sequential task execution.

The TaskScheduler drains a run's task graph one task at a time:
- Only queued tasks whose dependencies are all completed are picked up
- Each task is executed under the retry engine
- Every execution sequence leaves exactly one AgentAttempt record
- A task whose retries are exhausted is parked in ``retry`` and not
  picked up again, so its dependents stay queued and the run ends failed

Every processed task leaves ``queued``, so the runnable set shrinks and
the loop terminates even for cyclic or unsatisfiable dependencies.

Source:
- src/issueflow/state/machine.py (WorkflowRepository)
- src/issueflow/retry/engine.py (with_retry, RetryExhaustedError)
- src/issueflow/autonomy/policy.py (can_execute_subtask)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from src.issueflow.agents.contracts import AgentResult, AgentResultStatus, FormalSpec
from src.issueflow.agents.executor import ExecutorAgent
from src.issueflow.autonomy.manager import AutonomyManager
from src.issueflow.autonomy.policy import can_execute_subtask
from src.issueflow.events.emitter import EventEmitter, NullEventEmitter
from src.issueflow.events.metrics import OrchestratorMetrics
from src.issueflow.events.models import EventType, PipelineEvent
from src.issueflow.retry.classifier import classify_error
from src.issueflow.retry.engine import RetryExhaustedError, with_retry
from src.issueflow.state.machine import WorkflowRepository
from src.issueflow.state.models import AgentAttempt, Artifact, Task, TaskStatus


logger = logging.getLogger(__name__)


EXECUTE_RETRIES = 2
EXECUTE_BASE_DELAY_MS = 1000
EXECUTE_MAX_DELAY_MS = 6000

RETRY_OPERATION = "executor.execute_task"

SKIPPED_SUMMARY = "execution skipped by autonomy policy (dry_run)"


@dataclass
class SchedulerSummary:
    """Counts for one scheduler pass over a run."""

    executed: int = 0
    completed: int = 0
    failed: int = 0


class TaskScheduler:
    """Executes a run's tasks in dependency order.

    Example:
        >>> scheduler = TaskScheduler(repository, executor, autonomy)
        >>> summary = await scheduler.run(run_id, spec)
        >>> summary.completed
        3
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        executor: ExecutorAgent,
        autonomy: AutonomyManager,
        metrics: Optional[OrchestratorMetrics] = None,
        emitter: Optional[EventEmitter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.repository = repository
        self.executor = executor
        self.autonomy = autonomy
        self.metrics = metrics
        self.emitter = emitter or NullEventEmitter()
        self._sleep = sleep

    async def run(self, run_id: str, spec: FormalSpec) -> SchedulerSummary:
        """Execute every reachable task of the run.

        Args:
            run_id: The workflow run whose tasks to execute.
            spec: The run's formal spec, passed to the executor as context.

        Returns:
            SchedulerSummary of what was executed.
        """
        summary = SchedulerSummary()

        runnable = await self.repository.list_runnable_tasks(run_id)
        while runnable:
            for task in runnable:
                status = await self._execute(run_id, task, spec)
                summary.executed += 1
                if status == TaskStatus.COMPLETED:
                    summary.completed += 1
                elif status == TaskStatus.RETRY:
                    summary.failed += 1

            runnable = await self.repository.list_runnable_tasks(run_id)

        logger.info(
            "Scheduler finished",
            extra={
                "run_id": run_id,
                "executed": summary.executed,
                "completed": summary.completed,
                "failed": summary.failed,
            },
        )
        return summary

    async def _execute(self, run_id: str, task: Task, spec: FormalSpec) -> TaskStatus:
        await self.repository.mark_task_running(task.id)
        attempt_number = task.attempt_count + 1
        started = time.monotonic()

        if not can_execute_subtask(self.autonomy.mode).allowed:
            result = AgentResult(
                task_id=task.task_key,
                status=AgentResultStatus.COMPLETED,
                summary=SKIPPED_SUMMARY,
            )
            await self._record_success(
                run_id, task, result, attempt_number, started,
                repo_name=spec.source.github.repo, attempt_status="skipped",
            )
            return TaskStatus.COMPLETED

        def on_retry(attempt: int, error: BaseException, backoff_ms: int) -> None:
            if self.metrics is not None:
                self.metrics.record_retry(RETRY_OPERATION)
            logger.warning(
                "Task execution failed, retrying",
                extra={
                    "run_id": run_id,
                    "task_key": task.task_key,
                    "attempt": attempt,
                    "backoff_ms": backoff_ms,
                    "error": str(error),
                },
            )

        async def execute(_attempt: int) -> AgentResult:
            return await self.executor.execute_task(
                task.task_key, task.title, task.owner_role, spec
            )

        try:
            outcome = await with_retry(
                execute,
                retries=EXECUTE_RETRIES,
                base_delay_ms=EXECUTE_BASE_DELAY_MS,
                max_delay_ms=EXECUTE_MAX_DELAY_MS,
                classify=classify_error,
                on_retry=on_retry,
                sleep=self._sleep,
            )
        except RetryExhaustedError as exc:
            await self._record_failure(
                run_id, task, exc, attempt_number, started, spec.source.github.repo
            )
            return TaskStatus.RETRY

        return await self._record_success(
            run_id, task, outcome.value, attempt_number, started,
            repo_name=spec.source.github.repo,
        )

    async def _record_success(
        self,
        run_id: str,
        task: Task,
        result: AgentResult,
        attempt_number: int,
        started: float,
        repo_name: str = "",
        attempt_status: Optional[str] = None,
    ) -> TaskStatus:
        status = TaskStatus(result.status.value)
        output = result.model_dump(mode="json")

        await self.repository.mark_task_result(task.id, output, status)
        await self.repository.add_agent_attempt(
            AgentAttempt(
                task_id=task.id,
                agent_role=task.owner_role,
                attempt_number=attempt_number,
                status=attempt_status or status.value,
                output=output,
                duration_ms=_elapsed_ms(started),
            )
        )
        await self.repository.add_artifact(
            Artifact(
                workflow_run_id=run_id,
                task_id=task.id,
                kind="agent_result",
                content=result.model_dump_json(indent=2),
                metadata={"owner_role": task.owner_role},
            )
        )

        await self._emit_result(run_id, task, status.value, attempt_number, repo_name)
        return status

    async def _record_failure(
        self,
        run_id: str,
        task: Task,
        error: RetryExhaustedError,
        attempt_number: int,
        started: float,
        repo_name: str = "",
    ) -> None:
        message = str(error)
        category = classify_error(error)

        logger.error(
            "Task execution exhausted retries",
            extra={
                "run_id": run_id,
                "task_key": task.task_key,
                "attempts": error.attempts,
                "error_category": category.value,
                "error": message,
            },
        )

        await self.repository.add_agent_attempt(
            AgentAttempt(
                task_id=task.id,
                agent_role=task.owner_role,
                attempt_number=attempt_number,
                status="failed",
                error=message,
                error_category=category.value,
                backoff_delay_ms=error.last_backoff_ms,
                duration_ms=_elapsed_ms(started),
            )
        )
        blocked: Dict[str, Any] = AgentResult(
            task_id=task.task_key,
            status=AgentResultStatus.BLOCKED,
            summary=message,
        ).model_dump(mode="json")
        await self.repository.mark_task_result(task.id, blocked, TaskStatus.RETRY)

        await self._emit_result(
            run_id, task, TaskStatus.RETRY.value, attempt_number, repo_name
        )

    async def _emit_result(
        self,
        run_id: str,
        task: Task,
        status: str,
        attempt_number: int,
        repo_name: str,
    ) -> None:
        try:
            await self.emitter.emit(
                PipelineEvent(
                    event_type=EventType.TASK_RESULT,
                    run_id=run_id,
                    repository=repo_name,
                    details={
                        "task_key": task.task_key,
                        "status": status,
                        "attempt_number": attempt_number,
                    },
                )
            )
        except Exception as e:
            logger.error(
                "Failed to emit task result event",
                extra={"run_id": run_id, "task_key": task.task_key, "error": str(e)},
            )


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))
