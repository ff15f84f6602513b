"""GitHub webhook intake: signature check, allow-list, envelope, admission."""

from src.issueflow.webhook.handler import (
    build_envelope,
    extract_issue_number,
    is_actionable,
    verify_signature,
)
from src.issueflow.webhook.intake import AdmissionResult, EventIntake
from src.issueflow.webhook.models import (
    Actor,
    ActorType,
    EventEnvelope,
    EventSource,
    QueueItem,
    TaskRef,
    TaskRefKind,
)

__all__ = [
    "Actor",
    "ActorType",
    "AdmissionResult",
    "EventEnvelope",
    "EventIntake",
    "EventSource",
    "QueueItem",
    "TaskRef",
    "TaskRefKind",
    "build_envelope",
    "extract_issue_number",
    "is_actionable",
    "verify_signature",
]
