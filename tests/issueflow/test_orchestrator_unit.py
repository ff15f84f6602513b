"""Unit tests for PipelineOrchestrator.

Drives complete workflow runs against the in-memory repository with
dry-run planning/execution agents and an AsyncMock GitHub client.

Testing Configuration:
- In-memory repository
- PlannerAgent/ExecutorAgent without a model endpoint (synthetic payloads)
- GitHub client replaced with AsyncMock
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage
from pydantic import BaseModel, ValidationError

from src.issueflow.agents.contracts import StructuredOutputError
from src.issueflow.agents.executor import ExecutorAgent
from src.issueflow.agents.planner import PlannerAgent
from src.issueflow.autonomy import AutonomyManager, AutonomyMode
from src.issueflow.events.emitter import EventEmitter
from src.issueflow.events.models import EventType
from src.issueflow.github.client import GitHubAPIError, IssueContext, RepoRef
from src.issueflow.orchestrator import PipelineOrchestrator, format_dead_letter_reason
from src.issueflow.retry.engine import RetryExhaustedError
from src.issueflow.state import (
    InMemoryWorkflowRepository,
    RunStatus,
    TaskStatus,
    WorkflowStage,
)
from src.issueflow.webhook import QueueItem, build_envelope


def run_async(coro):
    return asyncio.run(coro)


async def _no_sleep(seconds: float) -> None:
    return None


DEFAULT_REPO = RepoRef(owner="acme", repo="widgets")


def _make_github(pr_number=12, checks_passed=True, human_approved=True):
    github = MagicMock()
    github.get_issue_context = AsyncMock(
        return_value=IssueContext(
            owner="acme",
            repo="widgets",
            issue_number=7,
            title="Add health endpoint",
            body="We need /health",
            labels=["enhancement"],
        )
    )
    github.get_branch_sha = AsyncMock(return_value="abc123")
    github.find_open_pull_request_for_issue = AsyncMock(return_value=pr_number)
    github.has_required_checks_passed = AsyncMock(return_value=checks_passed)
    github.has_human_approval = AsyncMock(return_value=human_approved)
    github.add_issue_comment = AsyncMock()
    github.approve_pull_request = AsyncMock()
    github.request_changes = AsyncMock()
    github.enable_auto_merge = AsyncMock()
    return github


def _make_orchestrator(
    repository, github, mode=AutonomyMode.PR_ONLY, planner=None, executor=None, **kwargs
):
    return PipelineOrchestrator(
        repository=repository,
        github=github,
        planner=planner or PlannerAgent(llm_url=None, model_name="test-model"),
        executor=executor or ExecutorAgent(llm_url=None, model_name="test-model"),
        autonomy=AutonomyManager(mode),
        default_repo=DEFAULT_REPO,
        required_checks=["CI / Tests"],
        sleep=_no_sleep,
        **kwargs,
    )


def _issue_payload(number=7):
    return {
        "action": "opened",
        "issue": {"number": number},
        "repository": {"name": "widgets", "owner": {"login": "acme"}},
        "sender": {"login": "octocat"},
    }


async def _admit(repository, delivery_id="d1", payload=None, event_type="issues"):
    envelope = build_envelope(event_type, delivery_id, payload or _issue_payload())
    event_id, _ = await repository.record_event_if_new(
        delivery_id, envelope.event_type, envelope.payload
    )
    return QueueItem(event_id=event_id, envelope=envelope)


def _only_run(repository):
    assert len(repository.runs) == 1
    return next(iter(repository.runs.values()))


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


# =============================================================================
# Happy path
# =============================================================================


class TestHandleEvent:
    def test_run_reaches_merge_decision(self, repository):
        github = _make_github()
        orchestrator = _make_orchestrator(repository, github)

        async def scenario():
            item = await _admit(repository)
            await orchestrator.handle_event(item)
            return item

        item = run_async(scenario())
        run = _only_run(repository)

        assert run.current_stage == WorkflowStage.MERGE_DECISION
        assert run.status == RunStatus.COMPLETED
        assert run.pr_number == 12
        assert run.external_task_ref == "gh_d1"
        assert run.repository == "acme/widgets"
        assert run.spec_id is not None
        assert run.spec_content

        assert [t.to_stage for t in repository.transitions] == [
            WorkflowStage.SPEC_GENERATED,
            WorkflowStage.SUBTASKS_DISPATCHED,
            WorkflowStage.PR_REVIEWED,
            WorkflowStage.MERGE_DECISION,
        ]
        reviewed = repository.transitions[2]
        assert reviewed.metadata == {
            "tasks_executed": 1,
            "tasks_completed": 1,
            "tasks_failed": 0,
        }
        kinds = [a.kind for a in repository.artifacts]
        assert kinds[0] == "formal_spec"
        assert "agent_result" in kinds
        assert "review_summary" in kinds

        event = repository.events[item.event_id]
        assert event.processed is True
        assert event.error is None
        assert event.workflow_run_id == run.id

        assert [d.decision for d in repository.merge_decisions] == ["approve"]
        github.approve_pull_request.assert_awaited_once()
        github.has_required_checks_passed.assert_awaited_once_with(
            12, ["CI / Tests"], DEFAULT_REPO
        )

    def test_pr_only_records_policy_decision_instead_of_merging(self, repository):
        github = _make_github()
        orchestrator = _make_orchestrator(repository, github, AutonomyMode.PR_ONLY)

        async def scenario():
            await orchestrator.handle_event(await _admit(repository))

        run_async(scenario())

        github.enable_auto_merge.assert_not_awaited()
        github.has_human_approval.assert_not_awaited()
        policy = [a for a in repository.artifacts if a.kind == "policy_decision"]
        assert len(policy) == 1
        assert policy[0].content == "pr_only mode blocks auto-merge"
        assert policy[0].metadata["allowed"] is False

    def test_full_merge_queue_enables_auto_merge(self, repository):
        github = _make_github()
        orchestrator = _make_orchestrator(
            repository, github, AutonomyMode.FULL_MERGE_QUEUE
        )

        async def scenario():
            await orchestrator.handle_event(await _admit(repository))

        run_async(scenario())

        github.enable_auto_merge.assert_awaited_once_with(12, DEFAULT_REPO)

    def test_limited_mode_requires_human_approval(self, repository):
        github = _make_github(human_approved=False)
        orchestrator = _make_orchestrator(
            repository, github, AutonomyMode.LIMITED_AUTO_MERGE
        )

        async def scenario():
            await orchestrator.handle_event(await _admit(repository))

        run_async(scenario())

        github.has_human_approval.assert_awaited_once_with(12, DEFAULT_REPO)
        github.enable_auto_merge.assert_not_awaited()

    def test_failing_checks_request_changes(self, repository):
        github = _make_github(checks_passed=False)
        orchestrator = _make_orchestrator(
            repository, github, AutonomyMode.FULL_MERGE_QUEUE
        )

        async def scenario():
            await orchestrator.handle_event(await _admit(repository))

        run_async(scenario())

        assert [d.decision for d in repository.merge_decisions] == ["request_changes"]
        github.request_changes.assert_awaited_once()
        github.approve_pull_request.assert_not_awaited()
        github.enable_auto_merge.assert_not_awaited()

    def test_no_pull_request_comments_on_issue(self, repository):
        github = _make_github(pr_number=None)
        orchestrator = _make_orchestrator(repository, github)

        async def scenario():
            await orchestrator.handle_event(await _admit(repository))

        run_async(scenario())
        run = _only_run(repository)

        github.has_required_checks_passed.assert_not_awaited()
        github.add_issue_comment.assert_awaited_once()
        assert github.add_issue_comment.await_args.args[0] == 7
        assert run.pr_number is None
        assert repository.merge_decisions[0].decision == "request_changes"

    def test_dry_run_makes_no_github_writes(self, repository):
        github = _make_github()
        orchestrator = _make_orchestrator(repository, github, AutonomyMode.DRY_RUN)

        async def scenario():
            await orchestrator.handle_event(await _admit(repository))

        run_async(scenario())
        run = _only_run(repository)

        for write in (
            github.add_issue_comment,
            github.approve_pull_request,
            github.request_changes,
            github.enable_auto_merge,
        ):
            write.assert_not_awaited()
        assert run.current_stage == WorkflowStage.MERGE_DECISION
        assert all(a.status == "skipped" for a in repository.attempts)
        assert any(a.kind == "policy_decision" for a in repository.artifacts)

    def test_failed_task_marks_run_failed(self, repository):
        github = _make_github()
        executor = MagicMock()
        executor.execute_task = AsyncMock(
            side_effect=StructuredOutputError("Output task_id mismatch")
        )
        orchestrator = _make_orchestrator(repository, github, executor=executor)

        async def scenario():
            await orchestrator.handle_event(await _admit(repository))

        run_async(scenario())
        run = _only_run(repository)

        assert run.current_stage == WorkflowStage.MERGE_DECISION
        assert run.status == RunStatus.FAILED
        task = next(iter(repository.tasks.values()))
        assert task.status == TaskStatus.RETRY

    def test_attempt_numbers_follow_task_attempt_count(self, repository):
        github = _make_github()
        orchestrator = _make_orchestrator(repository, github)

        async def scenario():
            await orchestrator.handle_event(await _admit(repository))

        run_async(scenario())

        assert [a.attempt_number for a in repository.attempts] == [1]
        task = next(iter(repository.tasks.values()))
        assert task.attempt_count == 1
        assert task.status == TaskStatus.COMPLETED

    def test_unknown_repository_falls_back_to_default(self, repository):
        github = _make_github()
        orchestrator = _make_orchestrator(repository, github)

        async def scenario():
            item = await _admit(
                repository,
                payload={"inputs": {"issue_number": "7"}},
                event_type="workflow_dispatch",
            )
            await orchestrator.handle_event(item)

        run_async(scenario())

        github.get_issue_context.assert_awaited_once_with(7, DEFAULT_REPO)
        assert _only_run(repository).repository == "acme/widgets"

    def test_events_emitted_in_order(self, repository):
        github = _make_github()
        emitter = MagicMock(spec=EventEmitter)
        emitter.emit = AsyncMock()
        orchestrator = _make_orchestrator(repository, github, emitter=emitter)

        async def scenario():
            await orchestrator.handle_event(await _admit(repository))

        run_async(scenario())

        types = [call.args[0].event_type for call in emitter.emit.await_args_list]
        assert types[0] == EventType.RUN_STARTED
        assert types[-1] == EventType.COMPLETION
        assert types.count(EventType.STAGE_TRANSITION) == 4
        assert EventType.TASK_RESULT in types


# =============================================================================
# Dead letters
# =============================================================================


class TestDeadLetter:
    def test_invalid_plan_dead_letters_with_field_reasons(self, repository):
        github = _make_github()
        planner = PlannerAgent(llm_url="http://llm.local/v1", model_name="test-model")
        planner._llm = MagicMock()
        planner._llm.ainvoke = AsyncMock(
            return_value=AIMessage(content="spec_version: 1\nspec_id: broken\n")
        )
        orchestrator = _make_orchestrator(repository, github, planner=planner)

        async def scenario():
            item = await _admit(repository)
            await orchestrator.handle_event(item)
            return item

        item = run_async(scenario())
        run = _only_run(repository)

        planner._llm.ainvoke.assert_awaited_once()
        assert run.status == RunStatus.DEAD_LETTER
        assert run.current_stage == WorkflowStage.DEAD_LETTER
        assert run.dead_letter_reason.startswith("Spec validation failed:")
        assert "objective" in run.dead_letter_reason
        assert repository.events[item.event_id].error == run.dead_letter_reason
        assert repository.events[item.event_id].processed is True

    def test_github_failure_dead_letters(self, repository):
        github = _make_github()
        github.get_issue_context = AsyncMock(
            side_effect=GitHubAPIError("Not Found", status_code=404)
        )
        orchestrator = _make_orchestrator(repository, github)

        async def scenario():
            await orchestrator.handle_event(await _admit(repository))

        run_async(scenario())
        run = _only_run(repository)

        assert run.status == RunStatus.DEAD_LETTER
        assert run.dead_letter_reason == "Not Found"
        assert [t.to_stage for t in repository.transitions] == [
            WorkflowStage.DEAD_LETTER
        ]

    def test_dead_letter_event_emitted(self, repository):
        github = _make_github()
        github.get_branch_sha = AsyncMock(side_effect=RuntimeError("boom"))
        emitter = MagicMock(spec=EventEmitter)
        emitter.emit = AsyncMock()
        orchestrator = _make_orchestrator(repository, github, emitter=emitter)

        async def scenario():
            await orchestrator.handle_event(await _admit(repository))

        run_async(scenario())

        last = emitter.emit.await_args_list[-1].args[0]
        assert last.event_type == EventType.DEAD_LETTER
        assert last.details["reason"] == "boom"


class TestFormatDeadLetterReason:
    def test_plain_error(self):
        assert format_dead_letter_reason(RuntimeError("boom")) == "boom"

    def test_empty_message_uses_type_name(self):
        assert format_dead_letter_reason(RuntimeError()) == "RuntimeError"

    def test_unwraps_retry_exhausted(self):
        error = RetryExhaustedError(ConnectionError("ECONNRESET"), 3, 1000)
        assert format_dead_letter_reason(error) == "ECONNRESET"

    def test_validation_error_lists_fields(self):
        class Sample(BaseModel):
            title: str

        with pytest.raises(ValidationError) as exc_info:
            Sample.model_validate({})

        wrapped = StructuredOutputError("bad", cause=exc_info.value)
        reason = format_dead_letter_reason(wrapped)

        assert reason.splitlines()[0] == "Spec validation failed:"
        assert reason.splitlines()[1].startswith("  - title:")


# =============================================================================
# Queue
# =============================================================================


class TestQueue:
    def test_enqueue_drains_in_order(self, repository):
        github = _make_github()
        orchestrator = _make_orchestrator(repository, github)

        async def scenario():
            first = await _admit(repository, "d1", _issue_payload(7))
            second = await _admit(repository, "d2", _issue_payload(8))
            orchestrator.enqueue(first)
            orchestrator.enqueue(second)
            assert orchestrator.processing is True
            await orchestrator.join()
            return first, second

        first, second = run_async(scenario())

        assert orchestrator.queue_length == 0
        assert orchestrator.processing is False
        assert len(repository.runs) == 2
        refs = [run.external_task_ref for run in repository.runs.values()]
        assert refs == ["gh_d1", "gh_d2"]
        assert all(repository.events[i.event_id].processed for i in (first, second))

    def test_handler_crash_does_not_stop_queue(self, repository):
        github = _make_github()
        orchestrator = _make_orchestrator(repository, github)
        original = orchestrator.handle_event
        calls = []

        async def flaky(item):
            calls.append(item.event_id)
            if len(calls) == 1:
                raise RuntimeError("unexpected")
            await original(item)

        orchestrator.handle_event = flaky

        async def scenario():
            orchestrator.enqueue(await _admit(repository, "d1"))
            orchestrator.enqueue(await _admit(repository, "d2"))
            await orchestrator.join()

        run_async(scenario())

        assert len(calls) == 2
        assert len(repository.runs) == 1
