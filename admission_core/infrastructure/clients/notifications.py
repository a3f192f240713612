"""Notification port implementations and the fire-and-forget publisher"""

import asyncio
import logging
from typing import Optional, Protocol, Set

import httpx

from admission_core.config import settings
from admission_core.infrastructure.observability.metrics import (
    notification_failure_counter,
    notification_latency_histogram,
)

logger = logging.getLogger(__name__)


class NotificationPort(Protocol):
    async def notify(self, tenant_id: str, application_number: str, event_type: str) -> None:
        ...


class LoggingNotifier:
    """Default port: records events in the log only"""

    async def notify(self, tenant_id: str, application_number: str, event_type: str) -> None:
        logger.info(
            "Notification",
            extra={"tenant_id": tenant_id, "application_number": application_number, "event_type": event_type},
        )


class WebhookNotifier:
    """Posts admission events to an external notification service"""

    def __init__(self, webhook_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.max_retries = settings.webhook_max_retries
        self.backoff_base = settings.webhook_backoff_base
        self.timeout = settings.http_timeout_seconds
        self._client = client

    async def notify(self, tenant_id: str, application_number: str, event_type: str) -> None:
        """
        Send one event with retry logic.

        Retry strategy:
        - Exponential backoff: base, 2*base, 4*base, ...
        - Retries on 5xx errors and network failures
        - Tracks latency histogram and failure counter

        Raises:
            httpx.HTTPError: After the last failed attempt
        """
        if not self.webhook_url:
            raise ValueError("notification_webhook_url is not configured")

        payload = {
            "tenant_id": tenant_id,
            "application_number": application_number,
            "event_type": event_type,
        }
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            attempt = 0
            while attempt < self.max_retries:
                try:
                    with notification_latency_histogram.time():
                        response = await client.post(self.webhook_url, json=payload)
                        response.raise_for_status()
                        return  # Success

                except (httpx.HTTPStatusError, httpx.RequestError):
                    attempt += 1
                    notification_failure_counter.inc()

                    if attempt >= self.max_retries:
                        raise

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)
        finally:
            if self._client is None:
                await client.aclose()


class NotificationPublisher:
    """
    Schedules notifications as background tasks after a transaction commits.

    Delivery failures are logged and counted, never raised to the command
    that produced the event.
    """

    def __init__(self, port: Optional[NotificationPort] = None):
        self.port = port or LoggingNotifier()
        self._pending: Set[asyncio.Task] = set()

    def publish(self, tenant_id: str, application_number: str, event_type: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self._deliver(tenant_id, application_number, event_type)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, tenant_id: str, application_number: str, event_type: str) -> None:
        try:
            await self.port.notify(tenant_id, application_number, event_type)
        except Exception as e:
            notification_failure_counter.inc()
            logger.warning(
                f"Notification delivery failed: {e}",
                extra={"tenant_id": tenant_id, "application_number": application_number, "event_type": event_type},
            )

    async def drain(self) -> None:
        """Wait for scheduled deliveries (shutdown and tests)"""
        while True:
            pending = [task for task in self._pending if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
