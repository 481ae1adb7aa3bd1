"""
Session Service
===============
Read side and running statistics of ghost kitchen sessions:
- active session lookup with the live order count
- paginated history of ended sessions
- per-session metrics rebuilt from orders
- counter updates as orders arrive, complete or get cancelled
"""

import copy
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ghost_kitchen.core.cache import CacheKeys, RedisCacheClient, redis_cache
from ghost_kitchen.core.clock import Clock, system_clock
from ghost_kitchen.core.exceptions import NotFoundError
from ghost_kitchen.core.locks import RestaurantLocks, restaurant_locks
from ghost_kitchen.core.rounding import round_half_up, round_to
from ghost_kitchen.models.ghost_kitchen import (
    OPEN_SESSION_STATUSES, DeliveryPlatform, GhostKitchenOrder, GhostKitchenSession,
    GhostOrderStatus, SessionStatus,
)
from ghost_kitchen.schemas.ghost_kitchen import (
    PlatformStats, SessionHistoryPage, SessionMetrics, SessionSummary,
)
from ghost_kitchen.services.realtime import EventPublisher, EventType, event_publisher

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20


def duration_minutes(started_at: datetime, ended_at: Optional[datetime]) -> Optional[int]:
    if ended_at is None:
        return None
    return round_half_up((ended_at - started_at).total_seconds() / 60)


class SessionService:
    """Session lookups, history and live statistics."""

    def __init__(
        self,
        db: Session,
        cache: Optional[RedisCacheClient] = None,
        publisher: Optional[EventPublisher] = None,
        clock: Optional[Clock] = None,
        locks: Optional[RestaurantLocks] = None,
    ):
        self.db = db
        self.cache = cache or redis_cache
        self.publisher = publisher or event_publisher
        self.clock = clock or system_clock
        self.locks = locks or restaurant_locks

    def get_active_session(self, restaurant_id: int) -> Optional[Dict]:
        """The ACTIVE or PAUSED session with its live order count, or None."""
        session = (
            self.db.query(GhostKitchenSession)
            .filter(
                GhostKitchenSession.restaurant_id == restaurant_id,
                GhostKitchenSession.status.in_(OPEN_SESSION_STATUSES),
            )
            .first()
        )
        if not session:
            return None

        cached = self.cache.get(CacheKeys.ghost_session(restaurant_id)) or {}
        return {"session": session, "current_orders": cached.get("current_orders") or 0}

    def get_session_by_id(self, session_id: int) -> GhostKitchenSession:
        session = self.db.get(GhostKitchenSession, session_id)
        if not session:
            raise NotFoundError("Session", session_id)
        return session

    def get_session_history(
        self,
        restaurant_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
    ) -> SessionHistoryPage:
        """Ended sessions, newest first."""
        query = self.db.query(GhostKitchenSession).filter(
            GhostKitchenSession.restaurant_id == restaurant_id,
            GhostKitchenSession.status == SessionStatus.ENDED,
        )
        if start is not None:
            query = query.filter(GhostKitchenSession.started_at >= start)
        if end is not None:
            query = query.filter(GhostKitchenSession.started_at <= end)

        total = query.count()
        sessions = (
            query.order_by(GhostKitchenSession.started_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

        return SessionHistoryPage(
            sessions=[
                SessionSummary(
                    id=s.id,
                    status=s.status,
                    started_at=s.started_at,
                    ended_at=s.ended_at,
                    end_reason=s.end_reason,
                    duration_minutes=duration_minutes(s.started_at, s.ended_at),
                    total_orders=s.total_orders,
                    total_revenue=float(s.total_revenue),
                    avg_prep_time=s.avg_prep_time,
                    peak_utilization=s.peak_utilization,
                )
                for s in sessions
            ],
            total=total,
            limit=limit,
            offset=offset,
        )

    def get_session_metrics(self, session_id: int) -> SessionMetrics:
        """Metrics rebuilt from the session's orders."""
        session = self.get_session_by_id(session_id)
        orders = session.orders

        completed = [o for o in orders if o.is_completed]
        cancelled = [o for o in orders if o.status == GhostOrderStatus.CANCELLED]
        prep_times = [o.prep_seconds for o in completed if o.prep_seconds is not None]

        ended_at = session.ended_at or self.clock.now()
        minutes = max(0, round_half_up((ended_at - session.started_at).total_seconds() / 60))
        revenue = float(session.total_revenue)

        return SessionMetrics(
            session_id=session.id,
            status=session.status,
            duration_minutes=minutes,
            total_orders=session.total_orders,
            completed_orders=len(completed),
            cancelled_orders=len(cancelled),
            total_revenue=revenue,
            avg_order_value=round_to(revenue / session.total_orders) if session.total_orders else 0,
            avg_prep_time=round_to(sum(prep_times) / len(prep_times)) if prep_times else None,
            peak_concurrent_orders=session.peak_concurrent_orders,
            peak_utilization=session.peak_utilization,
            orders_per_hour=round_to(session.total_orders / (minutes / 60)) if minutes > 0 else 0,
            platform_breakdown=self.calculate_platform_breakdown(orders),
        )

    @staticmethod
    def calculate_platform_breakdown(orders: List[GhostKitchenOrder]) -> List[PlatformStats]:
        by_platform: Dict[DeliveryPlatform, Dict] = defaultdict(
            lambda: {"orders": 0, "revenue": 0.0, "prep_times": [], "cancellations": 0}
        )
        for order in orders:
            entry = by_platform[order.platform]
            entry["orders"] += 1
            entry["revenue"] += float(order.total_amount)
            if order.status == GhostOrderStatus.CANCELLED:
                entry["cancellations"] += 1
            if order.is_completed and order.prep_seconds is not None:
                entry["prep_times"].append(order.prep_seconds)

        return [
            PlatformStats(
                platform=platform,
                orders=entry["orders"],
                revenue=round_to(entry["revenue"]),
                avg_prep_time=(
                    round_to(sum(entry["prep_times"]) / len(entry["prep_times"]))
                    if entry["prep_times"] else None
                ),
                cancellations=entry["cancellations"],
            )
            for platform, entry in by_platform.items()
        ]

    # ------------------------------------------------------------------
    # Live statistics
    # ------------------------------------------------------------------

    def order_received(self, session_id: int, platform: DeliveryPlatform, revenue: float) -> bool:
        return self._update_stats(session_id, platform, received_revenue=revenue)

    def order_completed(self, session_id: int, platform: DeliveryPlatform, prep_seconds: int) -> bool:
        return self._update_stats(session_id, platform, prep_seconds=prep_seconds)

    def order_cancelled(self, session_id: int, platform: DeliveryPlatform) -> bool:
        return self._update_stats(session_id, platform, cancelled=True)

    def _update_stats(
        self,
        session_id: int,
        platform: DeliveryPlatform,
        received_revenue: Optional[float] = None,
        prep_seconds: Optional[int] = None,
        cancelled: bool = False,
    ) -> bool:
        """Apply one order event to the session counters. False on ENDED or unknown sessions."""
        session = self.db.get(GhostKitchenSession, session_id)
        if not session:
            return False

        with self.locks.get(session.restaurant_id):
            self.db.refresh(session)
            if session.status == SessionStatus.ENDED:
                logger.debug(f"Stats update ignored for ended session {session_id}")
                return False

            platform_key = DeliveryPlatform(platform).value
            breakdown = copy.deepcopy(session.platform_breakdown or {})
            entry = breakdown.setdefault(
                platform_key, {"orders": 0, "revenue": 0.0, "prep_times": [], "cancellations": 0}
            )

            if received_revenue is not None:
                session.total_orders += 1
                session.total_revenue = float(session.total_revenue) + received_revenue
                entry["orders"] += 1
                entry["revenue"] = round_to(entry["revenue"] + received_revenue)
            if prep_seconds is not None:
                session.total_prep_time += int(prep_seconds)
                entry.setdefault("prep_times", []).append(int(prep_seconds))
            if cancelled:
                entry["cancellations"] = entry.get("cancellations", 0) + 1

            # Reassign so the JSON column is flagged dirty
            session.platform_breakdown = breakdown
            self.db.commit()

            self.publisher.publish(session.restaurant_id, EventType.SESSION_STATS, {
                "session_id": session.id,
                "total_orders": session.total_orders,
                "total_revenue": float(session.total_revenue),
                "total_prep_time": session.total_prep_time,
                "platform_breakdown": breakdown,
            })
            return True
