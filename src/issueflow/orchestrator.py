"""Pipeline orchestrator: single queue consumer driving workflow runs.

Admitted events are queued in memory and drained one at a time. Each
event drives one workflow run through:
TaskRequested → SpecGenerated → SubtasksDispatched → PRReviewed → MergeDecision

Any exception escaping a run moves it to DeadLetter with a readable
reason, and the queue keeps draining.

Source:
- src/issueflow/webhook/intake.py (EventIntake, QueueItem producer)
- src/issueflow/state/machine.py (StageMachine, WorkflowRepository)
- src/issueflow/scheduler.py (TaskScheduler)
- src/issueflow/agents/planner.py (PlannerAgent)
- src/issueflow/github/client.py (GitHubClient)
- src/issueflow/autonomy/policy.py (can_create_pr, can_auto_merge)
- src/issueflow/events/emitter.py (EventEmitter)
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from pydantic import ValidationError

from src.issueflow.agents.contracts import (
    MergeDecisionPayload,
    MergeVerdict,
    StructuredOutputError,
)
from src.issueflow.agents.executor import ExecutorAgent
from src.issueflow.agents.planner import PlannerAgent, PlanResult
from src.issueflow.autonomy.manager import AutonomyManager
from src.issueflow.autonomy.models import AutonomyMode
from src.issueflow.autonomy.policy import PolicyDecision, can_auto_merge, can_create_pr
from src.issueflow.events.emitter import EventEmitter, NullEventEmitter
from src.issueflow.events.metrics import OrchestratorMetrics
from src.issueflow.events.models import EventType, PipelineEvent
from src.issueflow.github.client import GitHubClient, IssueContext, RepoRef
from src.issueflow.retry.classifier import classify_error
from src.issueflow.retry.engine import RetryExhaustedError, with_retry
from src.issueflow.scheduler import TaskScheduler
from src.issueflow.state.machine import StageMachine, WorkflowRepository
from src.issueflow.state.models import (
    Artifact,
    MergeDecision,
    RunStatus,
    TaskSpec,
    WorkflowStage,
)
from src.issueflow.webhook.models import QueueItem

logger = logging.getLogger(__name__)


PLAN_RETRIES = 2
PLAN_BASE_DELAY_MS = 500
PLAN_MAX_DELAY_MS = 2500

CI_SUMMARY = (
    "CI summary unavailable in orchestrator context; use live checks at merge time."
)


def format_dead_letter_reason(error: BaseException) -> str:
    """Render a failure as the run's dead-letter reason.

    Retry wrappers are unwrapped. Schema validation failures, raised
    directly or carried by a StructuredOutputError, become one line per
    offending field.
    """
    if isinstance(error, RetryExhaustedError):
        error = error.last_error

    validation: Optional[ValidationError] = None
    if isinstance(error, ValidationError):
        validation = error
    elif isinstance(error, StructuredOutputError) and isinstance(
        error.cause, ValidationError
    ):
        validation = error.cause

    if validation is not None:
        lines = ["Spec validation failed:"]
        for issue in validation.errors():
            location = ".".join(str(part) for part in issue.get("loc", ())) or "(root)"
            lines.append(f"  - {location}: {issue.get('msg', 'invalid value')}")
        return "\n".join(lines)

    return str(error) or type(error).__name__


class PipelineOrchestrator:
    """Consumes the event queue and drives each event's workflow run.

    Accepts all dependencies via constructor injection. The queue is
    drained by at most one task at a time; enqueue() starts a drain when
    none is running.

    Attributes:
        repository: Workflow state persistence.
        github: GitHub API client.
        planner: Planning, review and merge-decision model adapter.
        autonomy: Current autonomy mode and its audit trail.
        scheduler: Task graph executor.
        stage_machine: Validated stage transitions.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        github: GitHubClient,
        planner: PlannerAgent,
        executor: ExecutorAgent,
        autonomy: AutonomyManager,
        default_repo: RepoRef,
        base_branch: str = "main",
        required_checks: Optional[List[str]] = None,
        auto_merge_enabled: bool = True,
        metrics: Optional[OrchestratorMetrics] = None,
        emitter: Optional[EventEmitter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.repository = repository
        self.github = github
        self.planner = planner
        self.autonomy = autonomy
        self.default_repo = default_repo
        self.base_branch = base_branch
        self.required_checks = list(required_checks or [])
        self.auto_merge_enabled = auto_merge_enabled
        self.metrics = metrics
        self.emitter = emitter or NullEventEmitter()
        self._sleep = sleep

        self.stage_machine = StageMachine(repository)
        self.scheduler = TaskScheduler(
            repository,
            executor,
            autonomy,
            metrics=metrics,
            emitter=self.emitter,
            sleep=sleep,
        )

        self._queue: Deque[QueueItem] = deque()
        self._processing = False
        self._drain_task: Optional["asyncio.Task[None]"] = None

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def processing(self) -> bool:
        return self._processing

    def enqueue(self, item: QueueItem) -> None:
        """Append an item and start draining if no drain is running.

        Must be called from within a running event loop.
        """
        self._queue.append(item)
        logger.info(
            "Event queued",
            extra={"event_id": item.event_id, "queue_length": len(self._queue)},
        )
        if not self._processing:
            self._processing = True
            self._drain_task = asyncio.create_task(self._process_queue())

    async def _process_queue(self) -> None:
        try:
            while self._queue:
                item = self._queue.popleft()
                try:
                    await self.handle_event(item)
                except Exception:
                    logger.exception(
                        "Failed to process queued event",
                        extra={"event_id": item.event_id},
                    )
        finally:
            self._processing = False

    async def join(self) -> None:
        """Wait until the queue is empty and no drain is running."""
        while self._drain_task is not None and not self._drain_task.done():
            await self._drain_task

    # ------------------------------------------------------------------
    # Run driver
    # ------------------------------------------------------------------

    async def handle_event(self, item: QueueItem) -> None:
        """Drive one admitted event through a full workflow run.

        Never raises for run failures: they are recorded as dead letters.
        """
        envelope = item.envelope
        started = time.monotonic()
        issue_number = envelope.task_ref.id
        ref = self._resolve_repo(envelope.source.repo)
        run_id: Optional[str] = None

        try:
            run = await self.repository.create_workflow_run(
                issue_number, envelope.event_id, ref.full_name
            )
            run_id = run.id
            await self.repository.link_event_to_run(item.event_id, run_id)

            logger.info(
                "Starting workflow run",
                extra={
                    "run_id": run_id,
                    "event_id": item.event_id,
                    "repository": ref.full_name,
                    "issue_number": issue_number,
                },
            )
            await self._safe_emit(
                PipelineEvent(
                    event_type=EventType.RUN_STARTED,
                    run_id=run_id,
                    repository=ref.full_name,
                    details={"issue_number": issue_number, "event_id": item.event_id},
                )
            )

            issue = await self.github.get_issue_context(issue_number, ref)
            baseline_commit = await self.github.get_branch_sha(self.base_branch, ref)

            plan = await self._generate_plan(issue, baseline_commit)
            spec = plan.spec
            await self.repository.store_spec(run_id, spec.spec_id, plan.raw_yaml)
            await self.repository.add_artifact(
                Artifact(
                    workflow_run_id=run_id,
                    kind="formal_spec",
                    content=plan.raw_yaml,
                    metadata={"spec_id": spec.spec_id},
                )
            )
            await self.repository.create_tasks(
                run_id,
                [
                    TaskSpec(
                        task_key=work.id,
                        title=work.title,
                        owner_role=work.owner_role,
                        definition_of_done=work.definition_of_done,
                        depends_on=work.depends_on,
                    )
                    for work in spec.work_breakdown
                ],
            )
            await self._transition(
                run_id, ref, WorkflowStage.SPEC_GENERATED, {"spec_id": spec.spec_id}
            )

            await self._transition(
                run_id,
                ref,
                WorkflowStage.SUBTASKS_DISPATCHED,
                {"task_count": len(spec.work_breakdown)},
            )
            summary = await self.scheduler.run(run_id, spec)

            view = await self.repository.get_run_view(run_id)
            agent_outputs = [
                f"{tv.task.task_key} ({tv.task.status.value}, attempts={tv.attempts})"
                for tv in (view.tasks if view is not None else [])
            ]
            review_summary = await self.planner.summarize_review(
                spec, agent_outputs, CI_SUMMARY
            )
            await self.repository.add_artifact(
                Artifact(
                    workflow_run_id=run_id,
                    kind="review_summary",
                    content=review_summary,
                )
            )
            await self._transition(
                run_id,
                ref,
                WorkflowStage.PR_REVIEWED,
                {
                    "tasks_executed": summary.executed,
                    "tasks_completed": summary.completed,
                    "tasks_failed": summary.failed,
                },
            )

            pr_number = await self.github.find_open_pull_request_for_issue(
                issue.issue_number, ref
            )
            if pr_number is not None:
                await self.repository.set_run_pr_number(run_id, pr_number)
            checks_passed = pr_number is not None and await self.github.has_required_checks_passed(
                pr_number, self.required_checks, ref
            )

            decision = await self.planner.generate_merge_decision(
                review_summary, checks_passed
            )
            await self.repository.add_merge_decision(
                MergeDecision(
                    workflow_run_id=run_id,
                    pr_number=pr_number,
                    decision=decision.decision.value,
                    rationale=decision.rationale,
                    blocking_findings=decision.blocking_findings,
                )
            )

            await self._apply_merge_decision(
                run_id, issue, pr_number, decision, checks_passed, ref
            )

            await self._transition(
                run_id,
                ref,
                WorkflowStage.MERGE_DECISION,
                {"decision": decision.decision.value, "pr_number": pr_number},
            )
            pending = await self.repository.count_pending_tasks(run_id)
            status = RunStatus.COMPLETED if pending == 0 else RunStatus.FAILED
            await self.repository.mark_run_status(run_id, status)
            await self.repository.mark_event_processed(item.event_id)

            logger.info(
                "Workflow run finished",
                extra={
                    "run_id": run_id,
                    "status": status.value,
                    "pending_tasks": pending,
                    "decision": decision.decision.value,
                },
            )
            await self._safe_emit(
                PipelineEvent(
                    event_type=EventType.COMPLETION,
                    run_id=run_id,
                    repository=ref.full_name,
                    details={
                        "status": status.value,
                        "pending_tasks": pending,
                        "pr_number": pr_number,
                        "duration_seconds": time.monotonic() - started,
                    },
                )
            )
        except Exception as exc:
            await self._dead_letter(item, run_id, ref, exc, started)

    async def _generate_plan(self, issue: IssueContext, baseline_commit: str) -> PlanResult:
        async def attempt(_attempt: int) -> PlanResult:
            return await self.planner.generate_plan(
                repo=f"{issue.owner}/{issue.repo}",
                issue_number=issue.issue_number,
                issue_title=issue.title,
                issue_body=issue.body,
                baseline_commit=baseline_commit,
            )

        outcome = await with_retry(
            attempt,
            retries=PLAN_RETRIES,
            base_delay_ms=PLAN_BASE_DELAY_MS,
            max_delay_ms=PLAN_MAX_DELAY_MS,
            classify=classify_error,
            on_retry=self._count_retry("planner.generate_plan"),
            sleep=self._sleep,
        )
        return outcome.value

    async def _apply_merge_decision(
        self,
        run_id: str,
        issue: IssueContext,
        pr_number: Optional[int],
        decision: MergeDecisionPayload,
        checks_passed: bool,
        ref: RepoRef,
    ) -> None:
        """Carry the verdict out on GitHub, subject to the autonomy mode."""
        pr_gate = can_create_pr(self.autonomy.mode)
        if not pr_gate.allowed:
            await self._record_policy_decision(
                run_id, pr_gate, {"decision": decision.decision.value, "pr_number": pr_number}
            )
            return

        if pr_number is None:
            await self.github.add_issue_comment(
                issue.issue_number,
                f"Orchestrator run {run_id} completed planning/execution but no "
                "linked open PR was found.\n\n"
                "Open or link a PR with `Closes #<issue>` for automated review/merge.",
                ref,
            )
            return

        if decision.decision == MergeVerdict.APPROVE:
            await self.github.approve_pull_request(
                pr_number,
                f"Automated review approval for run {run_id}.\n\n{decision.rationale}",
                ref,
            )
            if self.auto_merge_enabled:
                await self._maybe_enable_auto_merge(run_id, pr_number, checks_passed, ref)
            return

        findings = "\n".join(f"- {finding}" for finding in decision.blocking_findings)
        await self.github.request_changes(
            pr_number,
            f"Automated review requests changes for run {run_id}.\n\n"
            f"{decision.rationale}\n\n{findings}",
            ref,
        )

    async def _maybe_enable_auto_merge(
        self,
        run_id: str,
        pr_number: int,
        checks_passed: bool,
        ref: RepoRef,
    ) -> None:
        mode = self.autonomy.mode
        human_approved: Optional[bool] = None
        if mode == AutonomyMode.LIMITED_AUTO_MERGE and checks_passed:
            human_approved = await self.github.has_human_approval(pr_number, ref)

        merge_gate = can_auto_merge(mode, checks_passed, human_approved)
        if merge_gate.allowed:
            await self.github.enable_auto_merge(pr_number, ref)
        else:
            await self._record_policy_decision(
                run_id, merge_gate, {"pr_number": pr_number}
            )

    async def _record_policy_decision(
        self,
        run_id: str,
        decision: PolicyDecision,
        context: Dict[str, Any],
    ) -> None:
        logger.info(
            "Automated action skipped by autonomy policy",
            extra={
                "run_id": run_id,
                "action": decision.action.value,
                "mode": decision.mode.value,
                "reason": decision.reason,
            },
        )
        await self.repository.add_artifact(
            Artifact(
                workflow_run_id=run_id,
                kind="policy_decision",
                content=decision.reason,
                metadata={
                    "action": decision.action.value,
                    "mode": decision.mode.value,
                    "allowed": decision.allowed,
                    **context,
                },
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_repo(self, full_name: str) -> RepoRef:
        ref = RepoRef.parse(full_name)
        if ref is None or "unknown" in (ref.owner, ref.repo):
            return self.default_repo
        return ref

    def _count_retry(self, operation: str) -> Callable[[int, BaseException, int], None]:
        def on_retry(attempt: int, error: BaseException, backoff_ms: int) -> None:
            if self.metrics is not None:
                self.metrics.record_retry(operation)
            logger.warning(
                "Operation failed, retrying",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "backoff_ms": backoff_ms,
                    "error": str(error),
                },
            )

        return on_retry

    async def _transition(
        self,
        run_id: str,
        ref: RepoRef,
        to_stage: WorkflowStage,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Advance the stage and emit a stage-transition event."""
        transition = await self.stage_machine.advance(run_id, to_stage, details)
        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.STAGE_TRANSITION,
                run_id=run_id,
                repository=ref.full_name,
                details={
                    "from_stage": transition.from_stage.value,
                    "to_stage": transition.to_stage.value,
                },
            )
        )

    async def _dead_letter(
        self,
        item: QueueItem,
        run_id: Optional[str],
        ref: RepoRef,
        exc: Exception,
        started: float,
    ) -> None:
        """Record a failed run. Each write is attempted independently."""
        reason = format_dead_letter_reason(exc)
        logger.error(
            "Workflow run failed",
            exc_info=exc,
            extra={
                "run_id": run_id,
                "event_id": item.event_id,
                "issue_number": item.envelope.task_ref.id,
            },
        )

        if run_id is not None:
            try:
                await self.repository.mark_run_status(
                    run_id, RunStatus.DEAD_LETTER, reason
                )
            except Exception:
                logger.exception(
                    "Failed to mark run as dead letter", extra={"run_id": run_id}
                )

            try:
                if await self.stage_machine.can_advance(run_id, WorkflowStage.DEAD_LETTER):
                    await self._transition(
                        run_id, ref, WorkflowStage.DEAD_LETTER, {"reason": reason}
                    )
            except Exception:
                logger.exception(
                    "Failed to move run to DeadLetter", extra={"run_id": run_id}
                )

        try:
            await self.repository.mark_event_processed(item.event_id, reason)
        except Exception:
            logger.exception(
                "Failed to mark event processed", extra={"event_id": item.event_id}
            )

        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.DEAD_LETTER,
                run_id=run_id or item.event_id,
                repository=ref.full_name,
                details={
                    "reason": reason,
                    "duration_seconds": time.monotonic() - started,
                },
            )
        )

    async def _safe_emit(self, event: PipelineEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the run."""
        try:
            await self.emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit workflow event",
                extra={"event_type": event.event_type.value, "run_id": event.run_id},
            )
