"""Progressive autonomy: mode ladder, audited transitions, policy gates."""

from src.issueflow.autonomy.manager import AutonomyManager, AutonomyTransitionError
from src.issueflow.autonomy.models import (
    MODE_ORDER,
    VALID_MODE_TRANSITIONS,
    AutonomyMode,
    TransitionRecord,
    is_valid_mode_transition,
    list_allowed_transitions,
)
from src.issueflow.autonomy.policy import (
    PolicyAction,
    PolicyDecision,
    can_auto_merge,
    can_create_pr,
    can_execute_subtask,
)

__all__ = [
    "MODE_ORDER",
    "VALID_MODE_TRANSITIONS",
    "AutonomyManager",
    "AutonomyMode",
    "AutonomyTransitionError",
    "PolicyAction",
    "PolicyDecision",
    "TransitionRecord",
    "can_auto_merge",
    "can_create_pr",
    "can_execute_subtask",
    "is_valid_mode_transition",
    "list_allowed_transitions",
]
