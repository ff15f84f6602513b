"""Property-based tests for the autonomy ladder and policy gates.

Covers the mode transition table, the audited AutonomyManager and the
can_auto_merge / can_create_pr / can_execute_subtask predicates.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

import pytest
from hypothesis import given, settings, strategies as st

from src.issueflow.autonomy import (
    MODE_ORDER,
    AutonomyManager,
    AutonomyMode,
    AutonomyTransitionError,
    PolicyAction,
    can_auto_merge,
    can_create_pr,
    can_execute_subtask,
    is_valid_mode_transition,
    list_allowed_transitions,
)


modes = st.sampled_from(list(AutonomyMode))


def _expected_valid(from_mode: AutonomyMode, to_mode: AutonomyMode) -> bool:
    if from_mode == to_mode:
        return False
    if to_mode == AutonomyMode.DRY_RUN:
        return True
    return abs(MODE_ORDER.index(from_mode) - MODE_ORDER.index(to_mode)) == 1


# =============================================================================
# Transition table
# =============================================================================


class TestModeTransitions:
    @given(from_mode=modes, to_mode=modes)
    @settings(max_examples=100)
    def test_one_rung_or_emergency_stop(self, from_mode, to_mode):
        assert is_valid_mode_transition(from_mode, to_mode) == _expected_valid(
            from_mode, to_mode
        )

    @given(mode=modes)
    @settings(max_examples=50)
    def test_same_mode_is_never_valid(self, mode):
        assert not is_valid_mode_transition(mode, mode)

    def test_dry_run_can_only_step_up(self):
        assert list_allowed_transitions(AutonomyMode.DRY_RUN) == [AutonomyMode.PR_ONLY]

    def test_skipping_rungs_upward_is_rejected(self):
        assert not is_valid_mode_transition(
            AutonomyMode.DRY_RUN, AutonomyMode.LIMITED_AUTO_MERGE
        )
        assert not is_valid_mode_transition(
            AutonomyMode.PR_ONLY, AutonomyMode.FULL_MERGE_QUEUE
        )

    def test_full_merge_queue_can_drop_to_dry_run(self):
        assert is_valid_mode_transition(
            AutonomyMode.FULL_MERGE_QUEUE, AutonomyMode.DRY_RUN
        )


# =============================================================================
# AutonomyManager
# =============================================================================


class TestAutonomyManager:
    def test_defaults_to_pr_only(self):
        assert AutonomyManager().mode == AutonomyMode.PR_ONLY

    def test_transition_appends_history(self):
        manager = AutonomyManager(AutonomyMode.PR_ONLY)

        first = manager.transition(
            AutonomyMode.LIMITED_AUTO_MERGE, changed_by="alice", reason="pilot"
        )
        manager.transition(AutonomyMode.DRY_RUN, changed_by="bob", reason="incident")

        assert manager.mode == AutonomyMode.DRY_RUN
        assert len(manager.history) == 2
        assert manager.history[0] == first
        assert first.from_mode == AutonomyMode.PR_ONLY
        assert first.to_mode == AutonomyMode.LIMITED_AUTO_MERGE
        assert manager.history[1].changed_by == "bob"

    def test_history_is_a_copy(self):
        manager = AutonomyManager(AutonomyMode.PR_ONLY)
        manager.transition(AutonomyMode.DRY_RUN, changed_by="alice", reason="stop")

        manager.history.clear()

        assert len(manager.history) == 1

    @given(start=modes, target=modes)
    @settings(max_examples=100)
    def test_illegal_transition_leaves_mode_unchanged(self, start, target):
        manager = AutonomyManager(start)

        if _expected_valid(start, target):
            manager.transition(target, changed_by="ops", reason="change")
            assert manager.mode == target
            assert len(manager.history) == 1
        else:
            with pytest.raises(AutonomyTransitionError) as exc_info:
                manager.transition(target, changed_by="ops", reason="change")
            assert exc_info.value.from_mode == start
            assert exc_info.value.to_mode == target
            assert exc_info.value.allowed == list_allowed_transitions(start)
            assert manager.mode == start
            assert manager.history == []

    @pytest.mark.parametrize("reason", ["", "   "])
    def test_blank_reason_is_rejected(self, reason):
        manager = AutonomyManager(AutonomyMode.PR_ONLY)

        with pytest.raises(ValueError):
            manager.transition(AutonomyMode.DRY_RUN, changed_by="alice", reason=reason)

        assert manager.mode == AutonomyMode.PR_ONLY
        assert manager.history == []

    def test_blank_changed_by_is_rejected(self):
        manager = AutonomyManager(AutonomyMode.PR_ONLY)

        with pytest.raises(ValueError):
            manager.transition(AutonomyMode.DRY_RUN, changed_by=" ", reason="stop")

    def test_status_shape(self):
        manager = AutonomyManager(AutonomyMode.PR_ONLY)
        manager.transition(
            AutonomyMode.LIMITED_AUTO_MERGE, changed_by="alice", reason=" pilot "
        )

        status = manager.status()

        assert status["mode"] == "limited_auto_merge"
        assert "generated_at" in status
        assert status["history"] == [
            {
                "from": "pr_only",
                "to": "limited_auto_merge",
                "changed_by": "alice",
                "changed_at": manager.history[0].changed_at.isoformat(),
                "reason": "pilot",
            }
        ]


# =============================================================================
# Policy predicates
# =============================================================================


class TestCanAutoMerge:
    @given(checks=st.booleans(), approved=st.one_of(st.none(), st.booleans()))
    @settings(max_examples=100)
    def test_dry_run_and_pr_only_never_merge(self, checks, approved):
        for mode in (AutonomyMode.DRY_RUN, AutonomyMode.PR_ONLY):
            decision = can_auto_merge(mode, checks, approved)
            assert decision.allowed is False
            assert decision.action == PolicyAction.AUTO_MERGE

    def test_dry_run_reason(self):
        assert (
            can_auto_merge(AutonomyMode.DRY_RUN, True, True).reason
            == "dry_run mode blocks all merges"
        )

    def test_limited_requires_human_approval(self):
        decision = can_auto_merge(AutonomyMode.LIMITED_AUTO_MERGE, True, False)
        assert decision.allowed is False
        assert decision.reason == "human approval required but not granted"

        assert can_auto_merge(AutonomyMode.LIMITED_AUTO_MERGE, True, None).allowed is False

    def test_limited_with_checks_and_approval_merges(self):
        assert can_auto_merge(AutonomyMode.LIMITED_AUTO_MERGE, True, True).allowed is True

    def test_full_merge_queue_needs_only_checks(self):
        decision = can_auto_merge(AutonomyMode.FULL_MERGE_QUEUE, True)
        assert decision.allowed is True
        assert decision.reason == "auto-merge allowed"

    @given(approved=st.one_of(st.none(), st.booleans()))
    @settings(max_examples=50)
    def test_failing_checks_block_upper_modes(self, approved):
        for mode in (AutonomyMode.LIMITED_AUTO_MERGE, AutonomyMode.FULL_MERGE_QUEUE):
            decision = can_auto_merge(mode, False, approved)
            assert decision.allowed is False
            assert decision.reason == "required checks have not passed"


class TestExecutionGates:
    @given(mode=modes)
    @settings(max_examples=50)
    def test_only_dry_run_blocks_execution_and_pr_writes(self, mode):
        expected = mode != AutonomyMode.DRY_RUN
        assert can_execute_subtask(mode).allowed is expected
        assert can_create_pr(mode).allowed is expected
