"""Idempotent admission of webhook events.

EventIntake persists each envelope keyed by its delivery id and hands
first-seen events to the orchestrator queue. Replays return the original
event id and are never queued twice.

Source:
- src/issueflow/state/machine.py (WorkflowRepository.record_event_if_new)
- src/issueflow/orchestrator.py (PipelineOrchestrator.enqueue)
"""

import logging
from dataclasses import dataclass
from typing import Protocol

from src.issueflow.state.machine import WorkflowRepository
from src.issueflow.webhook.models import EventEnvelope, QueueItem


logger = logging.getLogger(__name__)


class QueueConsumer(Protocol):
    def enqueue(self, item: QueueItem) -> None:
        ...


@dataclass(frozen=True)
class AdmissionResult:
    inserted: bool
    event_id: str


class EventIntake:
    """Admits envelopes into persistence and the processing queue.

    Example:
        >>> intake = EventIntake(repository, orchestrator)
        >>> result = await intake.admit(envelope)
        >>> result.inserted
        True
    """

    def __init__(self, repository: WorkflowRepository, consumer: QueueConsumer):
        self.repository = repository
        self.consumer = consumer

    async def admit(self, envelope: EventEnvelope) -> AdmissionResult:
        event_id, inserted = await self.repository.record_event_if_new(
            envelope.source.delivery_id,
            envelope.event_type,
            envelope.payload,
        )

        if not inserted:
            logger.info(
                "Duplicate delivery ignored",
                extra={
                    "delivery_id": envelope.source.delivery_id,
                    "event_id": event_id,
                },
            )
            return AdmissionResult(inserted=False, event_id=event_id)

        self.consumer.enqueue(QueueItem(event_id=event_id, envelope=envelope))
        logger.info(
            "Event admitted",
            extra={
                "delivery_id": envelope.source.delivery_id,
                "event_id": event_id,
                "event_type": envelope.event_type,
                "issue_number": envelope.task_ref.id,
            },
        )
        return AdmissionResult(inserted=True, event_id=event_id)
