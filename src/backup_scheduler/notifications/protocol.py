import logging
from enum import Enum
from typing import Iterable, List, Optional, Protocol

from backup_scheduler.domain.job import BackupJob, NotificationRule

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class Notifier(Protocol):
    """
    Protocol class for notification channels (email, SMS, WhatsApp gateways...).
    """

    async def notify(self, event: NotificationEvent, job: BackupJob, recipients: List[str]) -> None:
        """
        Deliver a notification about ``job`` to ``recipients``.
        """
        ...


class LoggingNotifier(Notifier):
    """
    Notifier that only writes to the log.
    """

    async def notify(self, event: NotificationEvent, job: BackupJob, recipients: List[str]) -> None:
        logger.info("Backup job %s %s, notifying %s", job.id, event.value, ", ".join(recipients) or "nobody")


class NotificationDispatcher:
    """
    Fans job events out to notifiers according to the job's notification rules.

    Delivery failures are logged and never affect job status.
    """

    def __init__(self, notifiers: Optional[Iterable[Notifier]] = None):
        self.notifiers: List[Notifier] = list(notifiers) if notifiers is not None else [LoggingNotifier()]

    @staticmethod
    def rule_for(job: BackupJob, event: NotificationEvent) -> NotificationRule:
        return {
            NotificationEvent.SUCCESS: job.notifications.on_success,
            NotificationEvent.FAILURE: job.notifications.on_failure,
            NotificationEvent.WARNING: job.notifications.on_warning,
        }[event]

    async def dispatch(self, event: NotificationEvent, job: BackupJob) -> int:
        """
        Returns:
            int: Number of notifiers that delivered successfully.
        """
        rule = self.rule_for(job, event)
        if not rule.enabled:
            return 0
        delivered = 0
        for notifier in self.notifiers:
            try:
                await notifier.notify(event, job, list(rule.recipients))
                delivered += 1
            except Exception:
                logger.exception("Notifier %s failed for job %s (%s)", type(notifier).__name__, job.id, event.value)
        return delivered
