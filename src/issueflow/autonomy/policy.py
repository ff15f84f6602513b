"""Policy predicates deciding which automated actions a mode permits.

Each predicate returns a PolicyDecision carrying the verdict and a
human-readable reason, and logs it so every gate outcome is auditable.
"""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from src.issueflow.autonomy.models import AutonomyMode


logger = logging.getLogger(__name__)


class PolicyAction(str, Enum):
    CREATE_PR = "create_pr"
    AUTO_MERGE = "auto_merge"
    EXECUTE_SUBTASK = "execute_subtask"


class PolicyDecision(BaseModel):
    """Outcome of a policy check."""

    allowed: bool
    mode: AutonomyMode
    action: PolicyAction
    reason: str = Field(..., description="Why the action was allowed or denied")


def _decide(
    mode: AutonomyMode,
    action: PolicyAction,
    allowed: bool,
    reason: str,
) -> PolicyDecision:
    decision = PolicyDecision(allowed=allowed, mode=mode, action=action, reason=reason)
    logger.info(
        "Policy decision",
        extra={
            "mode": mode.value,
            "action": action.value,
            "allowed": allowed,
            "reason": reason,
        },
    )
    return decision


def can_execute_subtask(mode: AutonomyMode) -> PolicyDecision:
    """Subtask execution is allowed in every mode except dry_run."""
    if mode == AutonomyMode.DRY_RUN:
        return _decide(
            mode,
            PolicyAction.EXECUTE_SUBTASK,
            False,
            "dry_run mode blocks subtask execution",
        )
    return _decide(mode, PolicyAction.EXECUTE_SUBTASK, True, "subtask execution allowed")


def can_create_pr(mode: AutonomyMode) -> PolicyDecision:
    """GitHub PR writes (reviews, comments) are allowed except in dry_run."""
    if mode == AutonomyMode.DRY_RUN:
        return _decide(
            mode,
            PolicyAction.CREATE_PR,
            False,
            "dry_run mode blocks pull request actions",
        )
    return _decide(mode, PolicyAction.CREATE_PR, True, "pull request actions allowed")


def can_auto_merge(
    mode: AutonomyMode,
    required_checks_passed: bool,
    human_approved: Optional[bool] = None,
) -> PolicyDecision:
    """Decide whether a PR may be auto-merged.

    - dry_run and pr_only never auto-merge.
    - limited_auto_merge needs passing checks and a human approval.
    - full_merge_queue needs passing checks only.
    """
    if mode == AutonomyMode.DRY_RUN:
        return _decide(mode, PolicyAction.AUTO_MERGE, False, "dry_run mode blocks all merges")

    if mode == AutonomyMode.PR_ONLY:
        return _decide(mode, PolicyAction.AUTO_MERGE, False, "pr_only mode blocks auto-merge")

    if not required_checks_passed:
        return _decide(
            mode, PolicyAction.AUTO_MERGE, False, "required checks have not passed"
        )

    if mode == AutonomyMode.LIMITED_AUTO_MERGE and not human_approved:
        return _decide(
            mode,
            PolicyAction.AUTO_MERGE,
            False,
            "human approval required but not granted",
        )

    return _decide(mode, PolicyAction.AUTO_MERGE, True, "auto-merge allowed")
