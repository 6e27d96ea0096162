"""Notification step executor and dispatchers."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from ..contracts import Step, StepType
from ..errors import StepflowError, TransportError
from ..events import NotificationRequested
from ..transports import BaseTransport
from .base import StepExecutor

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    """Port to the notification delivery service."""

    async def send(
        self,
        channel: str,
        message: Any,
        recipients: Optional[list] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Hand off ``message`` and return a delivery receipt."""


class TransportNotificationDispatcher:
    """Publishes notification requests on the event transport."""

    def __init__(self, transport: BaseTransport) -> None:
        self._transport = transport

    async def send(
        self,
        channel: str,
        message: Any,
        recipients: Optional[list] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        metadata = metadata or {}
        event = NotificationRequested(
            execution_id=str(metadata.get("id", "")),
            workflow_id=str(metadata.get("workflow_id", "")),
            payload={
                "channel": channel,
                "message": message,
                "recipients": list(recipients or []),
            },
        )
        await self._transport.publish_event(event)
        logger.info(f"Queued notification {event.event_id} on {event.topic}")
        return {"notification_id": event.event_id, "channel": channel, "status": "queued"}


class NotificationExecutor(StepExecutor):
    """Send ``message`` on ``channel`` through the notification dispatcher."""

    step_type = StepType.NOTIFICATION

    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        self._dispatcher = dispatcher

    async def execute(self, step: Step, context: Mapping[str, Any]) -> Dict[str, Any]:
        try:
            return await self._dispatcher.send(
                str(step.config["channel"]),
                step.config["message"],
                recipients=step.config.get("recipients"),
                metadata=dict(context.get("execution") or {}),
            )
        except StepflowError:
            raise
        except Exception as exc:
            raise TransportError(
                f"Notification on {step.config['channel']} failed: {type(exc).__name__}: {exc}"
            ) from exc
