"""
Capacity Service
================
Kitchen load against the session's order capacity.

The live count is owned by GhostModeService; this service only reads it
to answer "can we take another order" and to band utilization. History
is rebuilt from order timestamps in 15-minute buckets.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ghost_kitchen.core.cache import CacheKeys, RedisCacheClient, redis_cache
from ghost_kitchen.core.clock import Clock, system_clock
from ghost_kitchen.core.config import Settings, settings as default_settings
from ghost_kitchen.core.exceptions import InvalidStateError, NotFoundError
from ghost_kitchen.core.rounding import round_half_up
from ghost_kitchen.models.ghost_kitchen import GhostKitchenSession, SessionStatus
from ghost_kitchen.models.restaurant import Restaurant
from ghost_kitchen.schemas.ghost_kitchen import (
    CapacityHistoryPoint, CapacityLevel, CapacitySnapshot,
)

logger = logging.getLogger(__name__)


class CapacityService:
    """Order capacity checks, utilization bands and capacity history."""

    LOW_UTILIZATION_PERCENT = 50
    BUCKET = timedelta(minutes=15)
    MAX_CAPACITY_RANGE = (1, 100)

    def __init__(
        self,
        db: Session,
        cache: Optional[RedisCacheClient] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.cache = cache or redis_cache
        self.clock = clock or system_clock
        self.settings = settings or default_settings

    def get_current_capacity(self, restaurant_id: int) -> CapacitySnapshot:
        restaurant = self._get_restaurant(restaurant_id)
        cached = self.cache.get(CacheKeys.ghost_session(restaurant_id))

        if not cached:
            max_orders = restaurant.max_concurrent_orders or self.settings.ghost_default_max_orders
            return CapacitySnapshot(
                restaurant_id=restaurant_id,
                current_orders=0,
                max_orders=max_orders,
                utilization_percent=0,
                level=CapacityLevel.LOW,
                can_accept_orders=False,
                available_slots=0,
            )

        current = cached.get("current_orders") or 0
        max_orders = cached["max_orders"]
        utilization = round_half_up(current / max_orders * 100)
        return CapacitySnapshot(
            restaurant_id=restaurant_id,
            session_id=cached["session_id"],
            current_orders=current,
            max_orders=max_orders,
            utilization_percent=utilization,
            level=self.classify_utilization(utilization, restaurant),
            can_accept_orders=cached.get("status") == SessionStatus.ACTIVE.value and current < max_orders,
            available_slots=max(0, max_orders - current),
        )

    def can_accept_order(self, restaurant_id: int, order_size: int = 1) -> Dict:
        """Whether ``order_size`` more orders fit, with a reason when they don't."""
        cached = self.cache.get(CacheKeys.ghost_session(restaurant_id))
        if not cached:
            return {"can_accept": False, "reason": "Ghost kitchen session not active",
                    "current_utilization": 0, "available_capacity": 0}

        current = cached.get("current_orders") or 0
        max_orders = cached["max_orders"]
        utilization = round_half_up(current / max_orders * 100)
        available = max(0, max_orders - current)

        if cached.get("status") == SessionStatus.PAUSED.value:
            return {"can_accept": False, "reason": "Orders are paused",
                    "current_utilization": utilization, "available_capacity": 0}
        if current + order_size > max_orders:
            return {"can_accept": False, "reason": "At maximum capacity",
                    "current_utilization": utilization, "available_capacity": available}
        return {"can_accept": True, "reason": None,
                "current_utilization": utilization, "available_capacity": available}

    def classify_utilization(self, utilization_percent: float, restaurant: Optional[Restaurant] = None) -> CapacityLevel:
        warning = self.settings.ghost_capacity_warning_threshold
        critical = self.settings.ghost_auto_disable_threshold
        if restaurant is not None:
            if restaurant.capacity_warning_threshold is not None:
                warning = restaurant.capacity_warning_threshold
            if restaurant.auto_disable_threshold is not None:
                critical = restaurant.auto_disable_threshold

        if utilization_percent < self.LOW_UTILIZATION_PERCENT:
            return CapacityLevel.LOW
        if utilization_percent < warning:
            return CapacityLevel.NORMAL
        if utilization_percent < critical:
            return CapacityLevel.WARNING
        return CapacityLevel.CRITICAL

    def set_max_capacity(self, restaurant_id: int, max_orders: int) -> Restaurant:
        """Restaurant default for future sessions; running sessions keep their snapshot."""
        low, high = self.MAX_CAPACITY_RANGE
        if max_orders < low or max_orders > high:
            raise InvalidStateError(f"Max orders must be between {low} and {high}")

        restaurant = self._get_restaurant(restaurant_id)
        restaurant.max_concurrent_orders = max_orders
        self.db.commit()
        logger.info(f"Set max capacity to {max_orders} for restaurant {restaurant_id}")
        return restaurant

    def get_capacity_history(
        self, restaurant_id: int, start: datetime, end: datetime
    ) -> List[CapacityHistoryPoint]:
        """Concurrent orders per 15-minute bucket for sessions started in the range."""
        sessions = (
            self.db.query(GhostKitchenSession)
            .filter(
                GhostKitchenSession.restaurant_id == restaurant_id,
                GhostKitchenSession.started_at >= start,
                GhostKitchenSession.started_at <= end,
            )
            .all()
        )

        history = []
        for session in sessions:
            session_end = session.ended_at or self.clock.now()
            bucket_start = session.started_at
            while bucket_start <= session_end:
                bucket_end = bucket_start + self.BUCKET
                active = 0
                for order in session.orders:
                    finished = order.picked_up_at or order.cancelled_at
                    if order.received_at <= bucket_end and (finished is None or finished >= bucket_start):
                        active += 1
                history.append(CapacityHistoryPoint(
                    timestamp=bucket_start,
                    concurrent_orders=active,
                    utilization_percent=round_half_up(active / session.max_orders * 100),
                ))
                bucket_start = bucket_end

        history.sort(key=lambda p: p.timestamp)
        return history

    def get_peak_utilization(self, restaurant_id: int, start: datetime, end: datetime) -> Dict:
        history = self.get_capacity_history(restaurant_id, start, end)
        if not history:
            return {"peak_utilization": 0, "peak_time": None, "average_utilization": 0}

        peak = max(history, key=lambda p: p.utilization_percent)
        return {
            "peak_utilization": peak.utilization_percent,
            "peak_time": peak.timestamp,
            "average_utilization": round_half_up(
                sum(p.utilization_percent for p in history) / len(history)
            ),
        }

    def _get_restaurant(self, restaurant_id: int) -> Restaurant:
        restaurant = self.db.get(Restaurant, restaurant_id)
        if not restaurant:
            raise NotFoundError("Restaurant", restaurant_id)
        return restaurant
