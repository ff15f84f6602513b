"""Event emitter implementations for orchestrator observability.

- EventEmitter: abstract interface
- LoggingEventEmitter: structured log entries
- CompositeEventEmitter: fan-out to several sinks
- NullEventEmitter: discards events

Source:
- src/issueflow/events/models.py (PipelineEvent, EventType)
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from src.issueflow.events.models import EventType, PipelineEvent


logger = logging.getLogger(__name__)


class EventEmitter(ABC):
    """Abstract base class for event emitters.

    Implementations should be async-safe and should not raise from emit();
    the orchestrator additionally guards every call.
    """

    @abstractmethod
    async def emit(self, event: PipelineEvent) -> None:
        """Publish the event to the sink."""

    async def close(self) -> None:
        """Release resources. The default implementation does nothing."""


class LoggingEventEmitter(EventEmitter):
    """Writes events as structured log entries.

    DEAD_LETTER is logged at ERROR, everything else at INFO.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            EventType.DEAD_LETTER: logging.ERROR,
        }

    async def emit(self, event: PipelineEvent) -> None:
        self._logger.log(
            self._log_level_map.get(event.event_type, logging.INFO),
            "Workflow event: %s for run %s",
            event.event_type.value,
            event.run_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Delegates to multiple child emitters.

    A failing child is logged and skipped; the others still receive the
    event.

    Example:
        >>> composite = CompositeEventEmitter(
        ...     [LoggingEventEmitter(), MetricsEventEmitter(metrics)]
        ... )
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = list(emitters or [])

    async def emit(self, event: PipelineEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Failed to emit event to %s: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "run_id": event.run_id,
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter %s: %s",
                    type(emitter).__name__,
                    str(e),
                )


class NullEventEmitter(EventEmitter):
    """Discards all events. Used in tests."""

    async def emit(self, event: PipelineEvent) -> None:
        pass
