"""Delivery platform gateway - tells aggregators whether to send orders.

Talks to a KitchenHub-style aggregation API over httpx. When no API URL is
configured the gateway runs in log-only mode, which is what local
development and tests use.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from ghost_kitchen.core.config import settings
from ghost_kitchen.models.ghost_kitchen import DeliveryPlatform

logger = logging.getLogger(__name__)


class PlatformGatewayError(Exception):
    """Raised when the aggregator rejects or cannot be reached."""

    def __init__(self, message: str, platforms: Optional[List[DeliveryPlatform]] = None):
        self.platforms = platforms or []
        super().__init__(message)


@dataclass
class GatewayResult:
    """Outcome of one accepting-orders notification."""
    restaurant_id: int
    accepting: bool
    platforms: List[DeliveryPlatform]
    mode: str  # "api" or "log"
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PlatformGateway:
    """Sync client for the delivery aggregator."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.api_url = api_url if api_url is not None else settings.kitchenhub_api_url
        self.api_key = api_key if api_key is not None else settings.kitchenhub_api_key
        self.timeout = timeout or settings.http_timeout_seconds
        self._http_client = http_client

    def _get_client(self) -> httpx.Client:
        if self._http_client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._http_client = httpx.Client(base_url=self.api_url, timeout=self.timeout, headers=headers)
        return self._http_client

    def set_accepting_orders(
        self,
        restaurant_id: int,
        accepting: bool,
        platforms: List[DeliveryPlatform],
    ) -> GatewayResult:
        """Turn order intake on or off for the given platforms."""
        platform_values = [DeliveryPlatform(p).value for p in platforms]

        if not self.api_url:
            logger.info(
                f"[platform gateway] restaurant {restaurant_id} accepting={accepting} "
                f"platforms={platform_values}"
            )
            return GatewayResult(restaurant_id, accepting, list(platforms), mode="log")

        try:
            response = self._get_client().post(
                f"/stores/{restaurant_id}/availability",
                json={"accepting_orders": accepting, "platforms": platform_values},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise PlatformGatewayError(
                f"Failed to set accepting={accepting} for restaurant {restaurant_id}: {e}",
                platforms=list(platforms),
            ) from e

        logger.info(f"Restaurant {restaurant_id} accepting={accepting} on {platform_values}")
        return GatewayResult(restaurant_id, accepting, list(platforms), mode="api")

    def close(self):
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None
