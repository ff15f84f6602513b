"""Autonomy mode ladder and transition audit records.

Autonomy is a single process-wide policy level that controls which
automated actions the orchestrator may take:

    dry_run < pr_only < limited_auto_merge < full_merge_queue

Modes move one rung at a time in either direction. Any mode may drop
straight to dry_run as an emergency stop.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field


class AutonomyMode(str, Enum):
    """Progressive autonomy levels, lowest first.

    Attributes:
        DRY_RUN: Plan and record only. No subtask execution, no GitHub writes.
        PR_ONLY: Execute subtasks and review PRs; never auto-merge.
        LIMITED_AUTO_MERGE: Auto-merge only with passing checks AND a
            human approval on the PR.
        FULL_MERGE_QUEUE: Auto-merge whenever required checks pass.
    """

    DRY_RUN = "dry_run"
    PR_ONLY = "pr_only"
    LIMITED_AUTO_MERGE = "limited_auto_merge"
    FULL_MERGE_QUEUE = "full_merge_queue"


MODE_ORDER: List[AutonomyMode] = [
    AutonomyMode.DRY_RUN,
    AutonomyMode.PR_ONLY,
    AutonomyMode.LIMITED_AUTO_MERGE,
    AutonomyMode.FULL_MERGE_QUEUE,
]


def _build_transitions() -> Dict[AutonomyMode, List[AutonomyMode]]:
    transitions: Dict[AutonomyMode, List[AutonomyMode]] = {}
    for index, mode in enumerate(MODE_ORDER):
        targets: List[AutonomyMode] = []
        if index > 0:
            targets.append(MODE_ORDER[index - 1])
        if index < len(MODE_ORDER) - 1:
            targets.append(MODE_ORDER[index + 1])
        if mode != AutonomyMode.DRY_RUN and AutonomyMode.DRY_RUN not in targets:
            targets.append(AutonomyMode.DRY_RUN)
        transitions[mode] = targets
    return transitions


# One rung up or down, plus the emergency drop to dry_run from anywhere
VALID_MODE_TRANSITIONS: Dict[AutonomyMode, List[AutonomyMode]] = _build_transitions()


def is_valid_mode_transition(from_mode: AutonomyMode, to_mode: AutonomyMode) -> bool:
    """Check whether ``from_mode -> to_mode`` is a legal autonomy change.

    Example:
        >>> is_valid_mode_transition(AutonomyMode.FULL_MERGE_QUEUE, AutonomyMode.DRY_RUN)
        True
        >>> is_valid_mode_transition(AutonomyMode.DRY_RUN, AutonomyMode.LIMITED_AUTO_MERGE)
        False
    """
    return to_mode in VALID_MODE_TRANSITIONS.get(from_mode, [])


def list_allowed_transitions(from_mode: AutonomyMode) -> List[AutonomyMode]:
    return list(VALID_MODE_TRANSITIONS.get(from_mode, []))


class TransitionRecord(BaseModel):
    """Immutable audit entry for one autonomy mode change."""

    model_config = ConfigDict(frozen=True)

    from_mode: AutonomyMode = Field(..., description="Mode in effect before the change")
    to_mode: AutonomyMode = Field(..., description="Mode in effect after the change")
    changed_by: str = Field(..., min_length=1, description="User who made the change")
    changed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the change was applied (UTC)",
    )
    reason: str = Field(..., min_length=1, description="Operator-supplied justification")

    def to_api_dict(self) -> Dict[str, str]:
        return {
            "from": self.from_mode.value,
            "to": self.to_mode.value,
            "changed_by": self.changed_by,
            "changed_at": self.changed_at.isoformat(),
            "reason": self.reason,
        }
