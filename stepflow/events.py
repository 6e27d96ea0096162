"""Domain events emitted by execution state transitions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Type

from pydantic import BaseModel, ConfigDict, Field

from .constants import EVENT_TOPIC_PREFIX


class EventType(str, Enum):
    EXECUTION_STARTED = "started"
    STEP_SUCCEEDED = "step_succeeded"
    STEP_FAILED = "step_failed"
    EXECUTION_COMPLETED = "completed"
    EXECUTION_FAILED = "failed"
    EXECUTION_CANCELLED = "cancelled"
    NOTIFICATION = "notification"


class DomainEvent(BaseModel):
    """Envelope published to notification and analytics consumers."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    execution_id: str
    workflow_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def topic(self) -> str:
        return f"{EVENT_TOPIC_PREFIX}.{self.event_type.value}"

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "DomainEvent":
        event = DomainEvent.model_validate_json(data)
        event_cls = EVENT_CLASSES.get(event.event_type, DomainEvent)
        return event_cls.model_validate(event.model_dump())


class ExecutionStarted(DomainEvent):
    event_type: EventType = EventType.EXECUTION_STARTED


class StepSucceeded(DomainEvent):
    event_type: EventType = EventType.STEP_SUCCEEDED


class StepFailed(DomainEvent):
    event_type: EventType = EventType.STEP_FAILED


class ExecutionCompleted(DomainEvent):
    event_type: EventType = EventType.EXECUTION_COMPLETED


class ExecutionFailed(DomainEvent):
    event_type: EventType = EventType.EXECUTION_FAILED


class ExecutionCancelled(DomainEvent):
    event_type: EventType = EventType.EXECUTION_CANCELLED


class NotificationRequested(DomainEvent):
    """Message handed to notification consumers by a notification step."""

    event_type: EventType = EventType.NOTIFICATION

    @property
    def topic(self) -> str:
        return f"notification.{self.payload.get('channel', 'default')}"


EVENT_CLASSES: Dict[EventType, Type[DomainEvent]] = {
    EventType.EXECUTION_STARTED: ExecutionStarted,
    EventType.STEP_SUCCEEDED: StepSucceeded,
    EventType.STEP_FAILED: StepFailed,
    EventType.EXECUTION_COMPLETED: ExecutionCompleted,
    EventType.EXECUTION_FAILED: ExecutionFailed,
    EventType.EXECUTION_CANCELLED: ExecutionCancelled,
    EventType.NOTIFICATION: NotificationRequested,
}
