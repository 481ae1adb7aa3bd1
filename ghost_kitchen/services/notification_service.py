"""Staff notification service - best-effort template messages."""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, Optional

import httpx

from ghost_kitchen.core.config import settings

logger = logging.getLogger(__name__)


class NotificationTemplate(str, Enum):
    GHOST_KITCHEN_STARTED = "GHOST_KITCHEN_STARTED"
    GHOST_KITCHEN_OPPORTUNITY = "GHOST_KITCHEN_OPPORTUNITY"


@dataclass
class NotificationResult:
    """Result of a notification attempt."""
    success: bool
    user_id: int
    template_key: str
    error: Optional[str] = None
    sent_at: Optional[datetime] = None


class NotificationService:
    """
    Sends template notifications to users through a webhook.

    Without a webhook URL the message is only logged. Failures are logged
    and returned in the result, never raised.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self.timeout = timeout or settings.http_timeout_seconds
        self._http_client = http_client
        # Recent attempts, for diagnostics
        self.history: Deque[NotificationResult] = deque(maxlen=500)

    def _get_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=self.timeout)
        return self._http_client

    def send(self, user_id: int, template_key: str, payload: Dict[str, Any]) -> NotificationResult:
        template = template_key.value if isinstance(template_key, Enum) else template_key
        now = datetime.now(timezone.utc)

        if not self.webhook_url:
            logger.info(f"[notification] user {user_id} {template}: {payload}")
            result = NotificationResult(success=True, user_id=user_id, template_key=template, sent_at=now)
            self.history.append(result)
            return result

        try:
            response = self._get_client().post(
                self.webhook_url,
                json={"user_id": user_id, "template": template, "payload": payload},
            )
            response.raise_for_status()
            result = NotificationResult(success=True, user_id=user_id, template_key=template, sent_at=now)
        except httpx.HTTPError as e:
            logger.error(f"Notification {template} to user {user_id} failed: {e}")
            result = NotificationResult(success=False, user_id=user_id, template_key=template, error=str(e))

        self.history.append(result)
        return result

    def close(self):
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None
