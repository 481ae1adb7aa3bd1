"""
Ghost Mode Service
==================
Session lifecycle for a restaurant's ghost kitchen.

States: ACTIVE, PAUSED, ENDED (terminal). No open session means ghost
mode is off. Every mutation for a restaurant runs under that restaurant's
lock; the persisted session decides whether a session has truly ended,
the cache entry ``ghost:{restaurant_id}`` holds the live order count.

Platform gateway calls, notifications and events are best-effort: a
failure is logged and reported in ``warnings`` but never rolls back a
transition that has been committed. Deadline checks (scheduled end,
pause auto-resume) are plain functions of the clock and stored state,
driven by an external poller.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ghost_kitchen.core.cache import CacheKeys, RedisCacheClient, redis_cache
from ghost_kitchen.core.clock import Clock, system_clock
from ghost_kitchen.core.config import Settings, settings as default_settings
from ghost_kitchen.core.exceptions import InvalidStateError, NotFoundError
from ghost_kitchen.core.locks import RestaurantLocks, restaurant_locks
from ghost_kitchen.core.rounding import round_half_up
from ghost_kitchen.models.ghost_kitchen import (
    OPEN_SESSION_STATUSES, DeliveryPlatform, GhostKitchenSession,
    SessionEndReason, SessionStatus,
)
from ghost_kitchen.models.restaurant import Restaurant
from ghost_kitchen.models.staff import WorkerCertification, WorkerProfile, WorkerStatus
from ghost_kitchen.schemas.ghost_kitchen import (
    CapacityUpdate, GhostModeConfig, GhostModeConfigOverrides, GhostModeStatus,
    SessionEndResult, SessionStats,
)
from ghost_kitchen.services.notification_service import NotificationService, NotificationTemplate
from ghost_kitchen.services.platform_gateway import PlatformGateway
from ghost_kitchen.services.realtime import EventPublisher, EventType, event_publisher

logger = logging.getLogger(__name__)

SYSTEM_USER = "SYSTEM"
DELIVERY_CERTIFICATION = "DELIVERY"


def empty_platform_breakdown(platforms: List[DeliveryPlatform]) -> Dict[str, Dict[str, Any]]:
    return {
        DeliveryPlatform(p).value: {"orders": 0, "revenue": 0.0, "prep_times": [], "cancellations": 0}
        for p in platforms
    }


class GhostModeService:
    """Enable, pause, resume and end ghost kitchen sessions."""

    def __init__(
        self,
        db: Session,
        cache: Optional[RedisCacheClient] = None,
        gateway: Optional[PlatformGateway] = None,
        publisher: Optional[EventPublisher] = None,
        notifications: Optional[NotificationService] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        locks: Optional[RestaurantLocks] = None,
    ):
        self.db = db
        self.cache = cache or redis_cache
        self.gateway = gateway or PlatformGateway()
        self.publisher = publisher or event_publisher
        self.notifications = notifications or NotificationService()
        self.clock = clock or system_clock
        self.settings = settings or default_settings
        self.locks = locks or restaurant_locks

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def enable_ghost_mode(
        self,
        restaurant_id: int,
        overrides: Optional[GhostModeConfigOverrides] = None,
        user_id: Optional[str] = None,
    ) -> GhostModeStatus:
        """NONE -> ACTIVE."""
        with self.locks.get(restaurant_id):
            restaurant = self.db.get(Restaurant, restaurant_id)
            if not restaurant:
                raise NotFoundError("Restaurant", restaurant_id)
            if not restaurant.ghost_kitchen_enabled:
                raise InvalidStateError("Ghost kitchen is not enabled for this restaurant")
            if self._get_open_session(restaurant_id):
                raise InvalidStateError("Ghost mode is already active")

            now = self.clock.now()
            config = self._merge_config(restaurant, overrides or GhostModeConfigOverrides())
            if config.end_time is not None and config.end_time <= now:
                raise InvalidStateError("Scheduled end time must be in the future")

            session = GhostKitchenSession(
                restaurant_id=restaurant_id,
                status=SessionStatus.ACTIVE,
                started_at=now,
                scheduled_end_at=config.end_time,
                started_by=user_id,
                config=config.model_dump(mode="json"),
                platforms=[p.value for p in config.platforms],
                max_orders=config.max_orders,
                total_orders=0,
                total_revenue=0,
                total_prep_time=0,
                peak_concurrent_orders=0,
                peak_utilization=0,
                platform_breakdown=empty_platform_breakdown(config.platforms),
            )
            self.db.add(session)
            try:
                self.db.commit()
            except IntegrityError:
                # Another process opened a session first
                self.db.rollback()
                raise InvalidStateError("Ghost mode is already active")
            self.db.refresh(session)

            warnings: List[str] = []
            self._set_accepting_orders(restaurant_id, True, config.platforms, warnings)
            self._write_live_state(session, current_orders=0)
            self._notify_delivery_certified_staff(restaurant_id, session.id)
            self.publisher.publish(restaurant_id, EventType.SESSION_STARTED, {
                "session_id": session.id,
                "started_at": session.started_at.isoformat(),
                "scheduled_end_at": session.scheduled_end_at.isoformat() if session.scheduled_end_at else None,
                "max_orders": config.max_orders,
                "platforms": session.platforms,
            })

            logger.info(
                f"Ghost mode enabled for restaurant {restaurant_id} (session {session.id}, "
                f"max_orders={config.max_orders}, platforms={session.platforms})"
            )
            status = self._build_status(session, current_orders=0)
            status.warnings = warnings
            return status

    def disable_ghost_mode(
        self,
        restaurant_id: int,
        user_id: Optional[str] = None,
        reason: SessionEndReason = SessionEndReason.MANUAL,
    ) -> SessionEndResult:
        """{ACTIVE, PAUSED} -> ENDED."""
        with self.locks.get(restaurant_id):
            session = self._get_open_session(restaurant_id)
            if not session:
                raise InvalidStateError("Ghost mode is not currently active")

            now = self.clock.now()
            avg_prep_time = (
                round_half_up(session.total_prep_time / session.total_orders)
                if session.total_orders > 0 else None
            )
            session.status = SessionStatus.ENDED
            session.ended_at = now
            session.end_reason = reason
            session.ended_by = user_id
            session.avg_prep_time = avg_prep_time
            self.db.commit()

            warnings: List[str] = []
            self._set_accepting_orders(restaurant_id, False, session.platforms, warnings)
            self.cache.delete(CacheKeys.ghost_session(restaurant_id))
            # A new ended session changes the weekday/hour averages
            self.cache.delete(CacheKeys.forecast_patterns(restaurant_id))

            stats = SessionStats(
                total_orders=session.total_orders,
                total_revenue=float(session.total_revenue),
                avg_prep_time=avg_prep_time,
            )
            self.publisher.publish(restaurant_id, EventType.SESSION_ENDED, {
                "session_id": session.id,
                "reason": reason.value,
                "ended_at": now.isoformat(),
                "stats": stats.model_dump(),
            })

            logger.info(
                f"Ghost mode disabled for restaurant {restaurant_id} (session {session.id}, "
                f"reason={reason.value}, orders={session.total_orders})"
            )
            return SessionEndResult(
                session_id=session.id,
                end_reason=reason,
                ended_at=now,
                stats=stats,
                warnings=warnings,
            )

    def pause_ghost_mode(
        self,
        restaurant_id: int,
        user_id: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> GhostModeStatus:
        """ACTIVE -> PAUSED, indefinitely or until now + duration."""
        if duration_minutes is not None and duration_minutes <= 0:
            raise InvalidStateError(f"Pause duration must be positive, got {duration_minutes}")

        with self.locks.get(restaurant_id):
            session = self._get_open_session(restaurant_id)
            if not session or session.status != SessionStatus.ACTIVE:
                raise InvalidStateError("Ghost mode is not currently active")

            now = self.clock.now()
            session.status = SessionStatus.PAUSED
            session.paused_at = now
            session.pause_end_time = now + timedelta(minutes=duration_minutes) if duration_minutes else None
            session.pause_reason = reason or "Manual pause"
            self.db.commit()

            warnings: List[str] = []
            # In-flight orders are unaffected, only new intake stops
            self._set_accepting_orders(restaurant_id, False, session.platforms, warnings)
            current_orders = self._read_current_orders(restaurant_id)
            self._write_live_state(session, current_orders)
            self.publisher.publish(restaurant_id, EventType.SESSION_PAUSED, {
                "session_id": session.id,
                "paused_at": now.isoformat(),
                "pause_end_time": session.pause_end_time.isoformat() if session.pause_end_time else None,
                "reason": session.pause_reason,
                "paused_by": user_id,
            })

            logger.info(
                f"Ghost mode paused for restaurant {restaurant_id} "
                f"({duration_minutes or 'indefinite'} min): {session.pause_reason}"
            )
            status = self._build_status(session, current_orders)
            status.warnings = warnings
            return status

    def resume_ghost_mode(self, restaurant_id: int, user_id: Optional[str] = None) -> GhostModeStatus:
        """PAUSED -> ACTIVE."""
        with self.locks.get(restaurant_id):
            session = self._get_open_session(restaurant_id)
            if not session or session.status != SessionStatus.PAUSED:
                raise InvalidStateError("Ghost mode is not currently paused")

            session.status = SessionStatus.ACTIVE
            session.paused_at = None
            session.pause_end_time = None
            session.pause_reason = None
            self.db.commit()

            warnings: List[str] = []
            self._set_accepting_orders(restaurant_id, True, session.platforms, warnings)
            current_orders = self._read_current_orders(restaurant_id)
            self._write_live_state(session, current_orders)
            self.publisher.publish(restaurant_id, EventType.SESSION_RESUMED, {
                "session_id": session.id,
                "resumed_at": self.clock.now().isoformat(),
                "resumed_by": user_id,
            })

            logger.info(f"Ghost mode resumed for restaurant {restaurant_id} by {user_id or 'unknown'}")
            status = self._build_status(session, current_orders)
            status.warnings = warnings
            return status

    # ------------------------------------------------------------------
    # Status and automatic rules
    # ------------------------------------------------------------------

    def get_status(self, restaurant_id: int) -> GhostModeStatus:
        """Live status; disabled when the cache is cold or the session has ended."""
        cached = self.cache.get(CacheKeys.ghost_session(restaurant_id))
        if not cached or cached.get("status") == SessionStatus.ENDED.value:
            return GhostModeStatus.disabled()

        session = self.db.get(GhostKitchenSession, cached["session_id"], populate_existing=True)
        if not session or session.status == SessionStatus.ENDED:
            return GhostModeStatus.disabled()

        return self._build_status(session, cached.get("current_orders") or 0)

    def auto_disable(self, restaurant_id: int, reason: SessionEndReason) -> bool:
        """End the open session for an automatic rule. False if nothing was open."""
        with self.locks.get(restaurant_id):
            if not self._get_open_session(restaurant_id):
                logger.debug(f"Auto-disable ({reason.value}) skipped for {restaurant_id}: no open session")
                return False
            logger.warning(f"Auto-disabling ghost mode for restaurant {restaurant_id}, reason: {reason.value}")
            self.disable_ghost_mode(restaurant_id, SYSTEM_USER, reason)
            return True

    def check_scheduled_end(self, restaurant_id: int) -> bool:
        """End the session if its scheduled end has passed."""
        with self.locks.get(restaurant_id):
            session = self._get_open_session(restaurant_id)
            if session and session.scheduled_end_at and self.clock.now() >= session.scheduled_end_at:
                return self.auto_disable(restaurant_id, SessionEndReason.SCHEDULED)
            return False

    def check_auto_resume(self, restaurant_id: int) -> bool:
        """Resume a timed pause whose deadline has passed."""
        with self.locks.get(restaurant_id):
            session = self._get_open_session(restaurant_id)
            if (
                session
                and session.status == SessionStatus.PAUSED
                and session.pause_end_time
                and self.clock.now() >= session.pause_end_time
            ):
                self.resume_ghost_mode(restaurant_id, SYSTEM_USER)
                return True
            return False

    def update_current_order_count(self, restaurant_id: int, delta: int) -> Optional[CapacityUpdate]:
        """
        Apply an order-count delta to the live counter.

        Returns None (and changes nothing) unless a session is ACTIVE. On
        increments, tracks peaks and ends the session once utilization
        reaches the restaurant's auto-disable threshold.
        """
        with self.locks.get(restaurant_id):
            cached = self.cache.get(CacheKeys.ghost_session(restaurant_id))
            if not cached or cached.get("status") != SessionStatus.ACTIVE.value:
                logger.debug(f"Order count update ignored for {restaurant_id}: ghost mode not active")
                return None

            session = self.db.get(GhostKitchenSession, cached["session_id"], populate_existing=True)
            if not session or session.status != SessionStatus.ACTIVE:
                logger.debug(f"Order count update ignored for {restaurant_id}: session not active")
                return None

            max_orders = cached.get("max_orders") or session.max_orders
            current_orders = max(0, (cached.get("current_orders") or 0) + delta)
            cached["current_orders"] = current_orders
            self.cache.set(CacheKeys.ghost_session(restaurant_id), cached, ttl_seconds=None)

            utilization = current_orders / max_orders * 100
            if delta > 0 and current_orders > session.peak_concurrent_orders:
                session.peak_concurrent_orders = current_orders
                session.peak_utilization = round_half_up(utilization)
                self.db.commit()

            update = CapacityUpdate(
                restaurant_id=restaurant_id,
                session_id=session.id,
                current_orders=current_orders,
                max_orders=max_orders,
                utilization_percent=round_half_up(utilization),
            )
            self.publisher.publish(restaurant_id, EventType.CAPACITY_UPDATE, {
                "current_orders": current_orders,
                "max_orders": max_orders,
                "utilization_percent": update.utilization_percent,
            })

            if delta > 0:
                restaurant = self.db.get(Restaurant, restaurant_id)
                auto_threshold = self._auto_disable_threshold(restaurant)
                warning_threshold = self._warning_threshold(restaurant)
                if utilization >= auto_threshold:
                    update.auto_disabled = self.auto_disable(restaurant_id, SessionEndReason.CAPACITY)
                elif utilization >= warning_threshold:
                    self.publisher.publish(restaurant_id, EventType.CAPACITY_WARNING, {
                        "utilization_percent": update.utilization_percent,
                        "threshold": warning_threshold,
                    })

            if not update.auto_disabled and delta != 0:
                update.auto_disabled = self.check_scheduled_end(restaurant_id)

            return update

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_open_session(self, restaurant_id: int) -> Optional[GhostKitchenSession]:
        return (
            self.db.query(GhostKitchenSession)
            .populate_existing()
            .filter(
                GhostKitchenSession.restaurant_id == restaurant_id,
                GhostKitchenSession.status.in_(OPEN_SESSION_STATUSES),
            )
            .order_by(GhostKitchenSession.started_at.desc())
            .first()
        )

    def _merge_config(self, restaurant: Restaurant, overrides: GhostModeConfigOverrides) -> GhostModeConfig:
        platforms = overrides.platforms or [
            DeliveryPlatform(p) for p in (restaurant.enabled_platforms or [])
        ] or list(DeliveryPlatform)
        return GhostModeConfig(
            max_orders=overrides.max_orders or restaurant.max_concurrent_orders or self.settings.ghost_default_max_orders,
            auto_accept=(
                overrides.auto_accept if overrides.auto_accept is not None
                else self.settings.ghost_default_auto_accept
            ),
            min_prep_time=(
                overrides.min_prep_time if overrides.min_prep_time is not None
                else self.settings.ghost_default_min_prep_time
            ),
            platforms=platforms,
            supply_packaging_cost=(
                overrides.supply_packaging_cost if overrides.supply_packaging_cost is not None
                else self.settings.ghost_default_packaging_cost
            ),
            platform_fees=overrides.platform_fees,
            end_time=overrides.end_time,
        )

    def _auto_disable_threshold(self, restaurant: Optional[Restaurant]) -> float:
        if restaurant is not None and restaurant.auto_disable_threshold is not None:
            return restaurant.auto_disable_threshold
        return self.settings.ghost_auto_disable_threshold

    def _warning_threshold(self, restaurant: Optional[Restaurant]) -> float:
        if restaurant is not None and restaurant.capacity_warning_threshold is not None:
            return restaurant.capacity_warning_threshold
        return self.settings.ghost_capacity_warning_threshold

    def _read_current_orders(self, restaurant_id: int) -> int:
        cached = self.cache.get(CacheKeys.ghost_session(restaurant_id))
        return (cached or {}).get("current_orders") or 0

    def _write_live_state(self, session: GhostKitchenSession, current_orders: int) -> None:
        # No TTL: the entry lives until the session ends
        self.cache.set(
            CacheKeys.ghost_session(session.restaurant_id),
            {
                "session_id": session.id,
                "status": session.status.value,
                "max_orders": session.max_orders,
                "current_orders": current_orders,
                "config": session.config,
            },
            ttl_seconds=None,
        )

    def _build_status(self, session: GhostKitchenSession, current_orders: int) -> GhostModeStatus:
        return GhostModeStatus(
            enabled=True,
            status=session.status,
            session_id=session.id,
            started_at=session.started_at,
            scheduled_end_at=session.scheduled_end_at,
            paused_at=session.paused_at,
            pause_end_time=session.pause_end_time,
            pause_reason=session.pause_reason,
            current_orders=current_orders,
            max_orders=session.max_orders,
            utilization_percent=round_half_up(current_orders / session.max_orders * 100),
            platforms=[DeliveryPlatform(p) for p in session.platforms],
            config=GhostModeConfig.model_validate(session.config),
        )

    def _set_accepting_orders(
        self,
        restaurant_id: int,
        accepting: bool,
        platforms: List[Any],
        warnings: List[str],
    ) -> None:
        try:
            self.gateway.set_accepting_orders(
                restaurant_id, accepting, [DeliveryPlatform(p) for p in platforms]
            )
        except Exception as e:
            message = f"Platform gateway failed (accepting={accepting}): {e}"
            logger.error(f"Restaurant {restaurant_id}: {message}")
            warnings.append(message)

    def _notify_delivery_certified_staff(self, restaurant_id: int, session_id: int) -> None:
        now = self.clock.now()
        try:
            workers = (
                self.db.query(WorkerProfile)
                .join(WorkerCertification, WorkerCertification.worker_profile_id == WorkerProfile.id)
                .filter(
                    WorkerProfile.restaurant_id == restaurant_id,
                    WorkerProfile.status == WorkerStatus.ACTIVE,
                    WorkerCertification.type == DELIVERY_CERTIFICATION,
                    or_(WorkerCertification.expires_at.is_(None), WorkerCertification.expires_at > now),
                )
                .distinct()
                .all()
            )
            for worker in workers:
                self.notifications.send(
                    worker.user_id,
                    NotificationTemplate.GHOST_KITCHEN_STARTED,
                    {"restaurant_id": restaurant_id, "session_id": session_id, "worker_name": worker.first_name},
                )
            logger.info(f"Notified {len(workers)} delivery-certified workers for session {session_id}")
        except Exception as e:
            logger.error(f"Failed to notify workers for session {session_id}: {e}")
