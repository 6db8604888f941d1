"""
Alert model and delivery channels.

Alerts produced by the monitor and by error thresholds are handed to an
AlertDispatcher, which fans them out to every registered channel. Delivery
failures are logged and never propagate to the pipeline.
"""

import asyncio
import enum
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from core.timeutils import utcnow
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


class AlertSeverity(str, enum.Enum):
    """Alert severity levels"""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Alert(BaseModel):
    type: str  # error_rate, execution_time, data_freshness, error_threshold, ...
    severity: AlertSeverity
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    table_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AlertChannel:
    """Delivery target for alerts"""

    name = "channel"

    async def send(self, alert: Alert) -> bool:
        raise NotImplementedError


class LogAlertChannel(AlertChannel):
    """Write alerts to the application log"""

    name = "log"

    async def send(self, alert: Alert) -> bool:
        level = logging.ERROR if alert.severity == AlertSeverity.CRITICAL else logging.WARNING
        logger.log(level, f"ALERT [{alert.severity.value}] {alert.type}: {alert.message}")
        return True


class WebhookAlertChannel(AlertChannel):
    """
    POST alerts as JSON to a webhook (Slack-compatible ``text`` field).

    Retries with exponential backoff on transport errors and 5xx responses.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.url = url
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = client

    def _payload(self, alert: Alert) -> Dict[str, Any]:
        return {
            "text": f"[{alert.severity.value.upper()}] {alert.message}",
            "alert": alert.model_dump(mode="json"),
        }

    async def send(self, alert: Alert) -> bool:
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            for attempt in range(self.max_retries):
                try:
                    response = await client.post(self.url, json=self._payload(alert))
                    if response.status_code < 500:
                        response.raise_for_status()
                        logger.info(f"Webhook alert delivered: {alert.type}")
                        return True
                    logger.warning(
                        f"Webhook returned {response.status_code} "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                except httpx.HTTPStatusError as e:
                    logger.error(f"Webhook rejected alert: {e}")
                    return False
                except httpx.TransportError as e:
                    logger.warning(f"Webhook error (attempt {attempt + 1}/{self.max_retries}): {e}")

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))
        finally:
            if self._client is None:
                await client.aclose()

        logger.error(f"Failed to deliver webhook alert after {self.max_retries} attempts: {alert.type}")
        return False


class AlertDispatcher:
    """Registry of named alert channels"""

    def __init__(self, channels: Optional[List[AlertChannel]] = None):
        self.channels: Dict[str, AlertChannel] = {}
        self.sent: List[Alert] = []
        for channel in channels or []:
            self.register(channel)

    def register(self, channel: AlertChannel, name: Optional[str] = None):
        self.channels[name or channel.name] = channel

    def unregister(self, name: str):
        self.channels.pop(name, None)

    async def dispatch(self, alert: Alert) -> Dict[str, bool]:
        """Send to every channel; returns delivery status per channel"""
        self.sent.append(alert)
        del self.sent[:-100]
        results = {}
        for name, channel in self.channels.items():
            try:
                results[name] = await channel.send(alert)
            except Exception as e:
                logger.error(f"Alert channel {name} failed: {e}")
                results[name] = False
        return results
