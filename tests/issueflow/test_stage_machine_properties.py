"""Property-based tests for the workflow stage machine.

Verifies the legal stage progression, the terminal DeadLetter stage and
that StageMachine persists every applied transition.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

import asyncio

import pytest
from hypothesis import given, settings, strategies as st

from src.issueflow.state import (
    VALID_TRANSITIONS,
    InMemoryWorkflowRepository,
    InvalidTransitionError,
    RunNotFoundError,
    StageMachine,
    WorkflowRepository,
    WorkflowStage,
    is_terminal_stage,
    is_valid_transition,
)


def run_async(coro):
    return asyncio.run(coro)


FORWARD_ORDER = [
    WorkflowStage.TASK_REQUESTED,
    WorkflowStage.SPEC_GENERATED,
    WorkflowStage.SUBTASKS_DISPATCHED,
    WorkflowStage.PR_REVIEWED,
    WorkflowStage.MERGE_DECISION,
]

stages = st.sampled_from(list(WorkflowStage))


def _expected_valid(from_stage: WorkflowStage, to_stage: WorkflowStage) -> bool:
    if from_stage == WorkflowStage.DEAD_LETTER:
        return False
    if to_stage == WorkflowStage.DEAD_LETTER:
        return True
    index = FORWARD_ORDER.index(from_stage)
    return index + 1 < len(FORWARD_ORDER) and FORWARD_ORDER[index + 1] == to_stage


class TestTransitionTable:
    @given(from_stage=stages, to_stage=stages)
    @settings(max_examples=100)
    def test_only_next_stage_or_dead_letter_is_valid(self, from_stage, to_stage):
        assert is_valid_transition(from_stage, to_stage) == _expected_valid(
            from_stage, to_stage
        )

    @given(to_stage=stages)
    @settings(max_examples=50)
    def test_dead_letter_has_no_outgoing_transition(self, to_stage):
        assert not is_valid_transition(WorkflowStage.DEAD_LETTER, to_stage)

    def test_every_stage_has_an_entry(self):
        assert set(VALID_TRANSITIONS) == set(WorkflowStage)

    def test_merge_decision_only_reaches_dead_letter(self):
        assert VALID_TRANSITIONS[WorkflowStage.MERGE_DECISION] == [
            WorkflowStage.DEAD_LETTER
        ]

    def test_only_dead_letter_is_terminal(self):
        assert [s for s in WorkflowStage if is_terminal_stage(s)] == [
            WorkflowStage.DEAD_LETTER
        ]


class TestStageMachine:
    def test_in_memory_repository_satisfies_protocol(self):
        assert isinstance(InMemoryWorkflowRepository(), WorkflowRepository)

    def test_forward_path_records_each_transition(self):
        async def scenario():
            repo = InMemoryWorkflowRepository()
            machine = StageMachine(repo)
            run = await repo.create_workflow_run(7, "gh_d1")

            for stage in FORWARD_ORDER[1:]:
                await machine.advance(run.id, stage, {"note": stage.value})

            return repo, run.id

        repo, run_id = run_async(scenario())

        transitions = run_async(repo.list_transitions(run_id))
        assert [t.to_stage for t in transitions] == FORWARD_ORDER[1:]
        assert [t.from_stage for t in transitions] == FORWARD_ORDER[:-1]
        assert transitions[0].metadata == {"note": "SpecGenerated"}
        assert repo.runs[run_id].current_stage == WorkflowStage.MERGE_DECISION

    @given(to_stage=stages)
    @settings(max_examples=100)
    def test_invalid_transition_raises_and_leaves_stage(self, to_stage):
        async def scenario():
            repo = InMemoryWorkflowRepository()
            machine = StageMachine(repo)
            run = await repo.create_workflow_run(1, "gh_x")
            await machine.advance(run.id, WorkflowStage.DEAD_LETTER)
            with pytest.raises(InvalidTransitionError) as excinfo:
                await machine.advance(run.id, to_stage)
            return repo, run.id, excinfo.value

        repo, run_id, error = run_async(scenario())

        assert error.from_stage == WorkflowStage.DEAD_LETTER
        assert error.to_stage == to_stage
        assert repo.runs[run_id].current_stage == WorkflowStage.DEAD_LETTER
        assert len(repo.transitions) == 1

    def test_unknown_run_raises(self):
        machine = StageMachine(InMemoryWorkflowRepository())

        with pytest.raises(RunNotFoundError):
            run_async(machine.advance("missing", WorkflowStage.SPEC_GENERATED))

    def test_can_advance(self):
        async def scenario():
            repo = InMemoryWorkflowRepository()
            machine = StageMachine(repo)
            run = await repo.create_workflow_run(1, "gh_x")
            return (
                await machine.can_advance(run.id, WorkflowStage.SPEC_GENERATED),
                await machine.can_advance(run.id, WorkflowStage.PR_REVIEWED),
                await machine.can_advance("missing", WorkflowStage.DEAD_LETTER),
            )

        assert run_async(scenario()) == (True, False, False)
