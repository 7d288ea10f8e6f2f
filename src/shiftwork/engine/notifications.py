"""Notification side channel.

Delivery integrations (chat, webhook, mail) live outside shiftwork; they
implement :class:`Notifier`.  The lifecycle controller calls notifiers
best-effort: an exception is logged and never fails the processor.
"""

from __future__ import annotations

from enum import Enum
from typing import Protocol, runtime_checkable

from shiftwork.core.logging import get_logger
from shiftwork.core.orm.tables import JobDefinitionTable, JobInstanceTable

logger = get_logger(__name__)


class InstanceEvent(str, Enum):
    FINISHED = "finished"
    FAILED = "failed"
    CANCELED = "canceled"


@runtime_checkable
class Notifier(Protocol):
    def notify(
        self,
        event: InstanceEvent,
        instance: JobInstanceTable,
        definition: JobDefinitionTable,
        message: str,
    ) -> None: ...


class LogNotifier:
    """Default notifier: emits a structured log event."""

    def notify(
        self,
        event: InstanceEvent,
        instance: JobInstanceTable,
        definition: JobDefinitionTable,
        message: str,
    ) -> None:
        log = logger.warning if event is InstanceEvent.FAILED else logger.info
        log(
            "instance_notification",
            notification=event.value,
            job_definition_id=definition.id,
            job_definition=definition.name,
            job_instance_id=instance.id,
            slack_channel=definition.slack_channel or None,
            webhook_url=definition.webhook_url,
            message=message,
        )


__all__ = ["InstanceEvent", "Notifier", "LogNotifier"]
