"""Webhook event models for the orchestrator.

This module defines the normalized envelope every admitted GitHub delivery
is converted into before it is persisted and queued, plus the queue item
the orchestrator consumes.

The models use Pydantic for validation, consistent with state/models.py.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal

from pydantic import BaseModel, Field


class ActorType(str, Enum):
    USER = "user"
    BOT = "bot"


class TaskRefKind(str, Enum):
    """What the delivery refers to."""

    ISSUE = "issue"
    PULL_REQUEST = "pull_request"
    WORKFLOW_DISPATCH = "workflow_dispatch"


class EventSource(BaseModel):
    system: Literal["github"] = Field(
        default="github",
        description="Originating system",
    )

    repo: str = Field(
        ...,
        min_length=1,
        description='Repository in format "{owner}/{repo}"',
    )

    delivery_id: str = Field(
        ...,
        min_length=1,
        description="GitHub delivery id (X-GitHub-Delivery)",
    )


class Actor(BaseModel):
    type: ActorType = Field(..., description="Kind of account that triggered the event")
    login: str = Field(..., min_length=1, description="Account login")


class TaskRef(BaseModel):
    kind: TaskRefKind = Field(..., description="Kind of object the event refers to")
    id: int = Field(..., ge=0, description="Issue or pull request number")
    url: str = Field(default="", description="HTML URL of the referenced object")


class EventEnvelope(BaseModel):
    """Normalized form of an admitted webhook delivery.

    Attributes:
        schema_version: Envelope schema version, always "1.0".
        event_type: "github.<event>", e.g. "github.issues".
        event_id: "gh_<delivery id>"; used as the run's external task ref.
        timestamp: When the envelope was built (UTC).
        source: Originating repository and delivery id.
        actor: Account that triggered the event.
        task_ref: Issue or pull request the event refers to.
        payload: The raw webhook payload.
    """

    schema_version: Literal["1.0"] = Field(default="1.0")

    event_type: str = Field(..., min_length=1)

    event_id: str = Field(..., min_length=1)

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    source: EventSource

    actor: Actor

    task_ref: TaskRef

    payload: Dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class QueueItem:
    """Unit of work on the orchestrator queue."""

    event_id: str
    envelope: EventEnvelope
