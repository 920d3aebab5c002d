from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import BaseModel, Field

from backup_scheduler.config import Settings
from backup_scheduler.domain.job import BackupJob, format_duration
from backup_scheduler.notifications.protocol import LoggingNotifier, NotificationDispatcher, NotificationEvent, Notifier


class WebhookPayload(BaseModel):
    event: NotificationEvent
    job_id: str
    tenant_id: str
    job_name: str
    status: str
    recipients: List[str] = Field(default_factory=list)
    execution_id: Optional[str] = None
    duration: str = "N/A"
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def from_job(cls, event: NotificationEvent, job: BackupJob, recipients: List[str]) -> "WebhookPayload":
        error = job.execution.error
        return cls(
            event=event,
            job_id=job.id,
            tenant_id=job.tenant_id,
            job_name=job.name,
            status=job.status.value,
            recipients=recipients,
            execution_id=job.execution.execution_id,
            duration=format_duration(job.execution.duration),
            error=error.model_dump(mode="json", exclude={"stack"}) if error else None,
        )


class WebhookNotifier(Notifier):
    """
    Notifier that posts job events to an HTTP endpoint (e.g. the lab's
    messaging gateway) using aiohttp.
    """

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None, timeout: float = 10.0):
        self.url = url
        self.headers: Dict[str, str] = headers or {}
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def notify(self, event: NotificationEvent, job: BackupJob, recipients: List[str]) -> None:
        """
        Post the event and raise for non-2xx responses.
        """
        payload = WebhookPayload.from_job(event, job, recipients)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(
                self.url,
                headers=self.headers,
                json=payload.model_dump(mode="json"),
            ) as response:
                response.raise_for_status()


def dispatcher_from_settings(settings: Settings) -> NotificationDispatcher:
    """
    Log every event, and post it to the configured webhook when there is one.
    """
    notifiers: List[Notifier] = [LoggingNotifier()]
    if settings.notification_webhook_url:
        notifiers.append(WebhookNotifier(settings.notification_webhook_url,
                                         timeout=settings.notification_timeout_seconds))
    return NotificationDispatcher(notifiers)
