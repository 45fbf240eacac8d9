"""
Run summary notifications.

Delivery is best effort: a failing notifier is logged and never changes the
outcome of the run it reports.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from core.config import settings
from models.base import RunStatus
from sync.execution_log import RunSummary

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Receives the summary of every run that wrote an execution log entry"""

    @abstractmethod
    async def notify(self, summary: RunSummary) -> None:
        pass


class LoggingNotifier(Notifier):
    async def notify(self, summary: RunSummary) -> None:
        message = (
            f"Sync {summary.correlation_id} for {summary.tenant_id}: {summary.status.value} "
            f"({summary.records_success}/{summary.records_total} records, {summary.records_failed} failed)"
        )
        if summary.status in (RunStatus.SUCCESS, RunStatus.CANCELLED):
            logger.info(message)
        else:
            logger.warning(message)


class WebhookNotifier(Notifier):
    """POST the run summary as JSON to a webhook"""

    def __init__(
        self,
        url: str,
        timeout: float = settings.NOTIFY_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def notify(self, summary: RunSummary) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.url, json=summary.as_dict())
            response.raise_for_status()
        logger.debug(f"Delivered summary of {summary.correlation_id} to webhook")


def build_notifier(webhook_url: Optional[str] = None) -> Notifier:
    url = webhook_url or settings.NOTIFY_WEBHOOK_URL
    if url:
        return WebhookNotifier(url)
    return LoggingNotifier()


async def notify_safely(notifier: Optional[Notifier], summary: RunSummary) -> bool:
    """Invoke the notifier; failures are logged and swallowed."""
    if notifier is None:
        return False
    try:
        await notifier.notify(summary)
        return True
    except Exception as e:
        logger.error(
            f"Notification for {summary.tenant_id} run {summary.correlation_id} failed: {e}",
            extra={"error_context": {"tenant_id": summary.tenant_id, "log_id": summary.log_id}}
        )
        return False
