"""Owner of the process-wide autonomy mode.

A single AutonomyManager is built at startup from configuration and handed
to the API layer, the orchestrator and the scheduler. It validates every
mode change against the ladder and keeps an append-only history of
changes for the lifetime of the process.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.issueflow.autonomy.models import (
    AutonomyMode,
    TransitionRecord,
    is_valid_mode_transition,
    list_allowed_transitions,
)


logger = logging.getLogger(__name__)


class AutonomyTransitionError(Exception):
    """Raised when a requested autonomy change is not on the ladder.

    Attributes:
        from_mode: Mode in effect when the change was requested.
        to_mode: The requested mode.
        allowed: Modes that would have been legal targets.
    """

    def __init__(
        self,
        from_mode: AutonomyMode,
        to_mode: AutonomyMode,
        allowed: Optional[List[AutonomyMode]] = None,
    ):
        self.from_mode = from_mode
        self.to_mode = to_mode
        self.allowed = allowed if allowed is not None else list_allowed_transitions(from_mode)
        allowed_str = ", ".join(mode.value for mode in self.allowed) or "none"
        super().__init__(
            f"Invalid autonomy transition from {from_mode.value} to {to_mode.value} "
            f"(allowed: {allowed_str})"
        )


class AutonomyManager:
    """Holds the current autonomy mode and its change history.

    Attributes:
        mode: The mode currently in effect.
        history: Copy of all transition records, oldest first.

    Example:
        >>> manager = AutonomyManager(AutonomyMode.PR_ONLY)
        >>> record = manager.transition(
        ...     AutonomyMode.LIMITED_AUTO_MERGE, changed_by="alice", reason="pilot"
        ... )
        >>> manager.mode
        <AutonomyMode.LIMITED_AUTO_MERGE: 'limited_auto_merge'>
    """

    def __init__(self, initial_mode: AutonomyMode = AutonomyMode.PR_ONLY):
        self._mode = AutonomyMode(initial_mode)
        self._history: List[TransitionRecord] = []

    @property
    def mode(self) -> AutonomyMode:
        return self._mode

    @property
    def history(self) -> List[TransitionRecord]:
        return list(self._history)

    def transition(
        self,
        to_mode: AutonomyMode,
        changed_by: str,
        reason: str,
    ) -> TransitionRecord:
        """Move to ``to_mode`` and append an audit record.

        Args:
            to_mode: Target mode.
            changed_by: Identity of the caller making the change.
            reason: Non-empty justification.

        Returns:
            The appended TransitionRecord.

        Raises:
            ValueError: If reason or changed_by is blank.
            AutonomyTransitionError: If the change is not legal. The mode
                is left unchanged.
        """
        if not reason or not reason.strip():
            raise ValueError("reason is required for autonomy transitions")
        if not changed_by or not changed_by.strip():
            raise ValueError("changed_by is required for autonomy transitions")

        from_mode = self._mode
        if not is_valid_mode_transition(from_mode, to_mode):
            logger.warning(
                "Rejected autonomy transition",
                extra={"from_mode": from_mode.value, "to_mode": to_mode.value},
            )
            raise AutonomyTransitionError(from_mode, to_mode)

        record = TransitionRecord(
            from_mode=from_mode,
            to_mode=to_mode,
            changed_by=changed_by.strip(),
            reason=reason.strip(),
        )
        self._history.append(record)
        self._mode = to_mode

        logger.warning(
            "Autonomy mode changed",
            extra={
                "from_mode": from_mode.value,
                "to_mode": to_mode.value,
                "changed_by": record.changed_by,
                "reason": record.reason,
            },
        )
        return record

    def status(self) -> Dict[str, Any]:
        """Snapshot used by the autonomy status endpoint."""
        return {
            "mode": self._mode.value,
            "history": [record.to_api_dict() for record in self._history],
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }
