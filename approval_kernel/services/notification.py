"""
Notification dispatch.

``LoggingNotificationDispatcher`` is the default ``NotificationDispatcher``:
it writes one structured log line per stage event.  Hosts that send
e-mail plug in their own dispatcher; the kernel only guarantees events
are dispatched after the transition committed.
"""

from approval_kernel.domain.workflow import StageEvent
from approval_kernel.logging_config import get_logger

logger = get_logger("services.notification")


class LoggingNotificationDispatcher:
    def dispatch(self, event: StageEvent) -> None:
        logger.info(
            "stage_notification",
            extra={
                "event_kind": event.kind.value,
                "workflow_number": event.workflow_number,
                "stage_order": event.stage_order,
                "stage_name": event.stage_name,
                "recipients": list(event.notify_emails),
            },
        )


class RecordingNotificationDispatcher:
    """Keeps dispatched events in memory, in order."""

    def __init__(self):
        self.events: list[StageEvent] = []

    def dispatch(self, event: StageEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind.value for e in self.events]
