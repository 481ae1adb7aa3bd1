"""
Opportunity Detector Service
============================
Finds windows where the dining room is forecast to be quiet while
delivery demand is high, scores them 0-100 and manages the manager
accept/decline flow for the ones that get surfaced.

Score weights: delivery volume 40 (max at 15 orders/h), low dine-in 25,
window length 15 (max at 4 h), forecast confidence 20.
"""

import logging
import math
from datetime import date, timedelta
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from ghost_kitchen.core.clock import Clock, system_clock
from ghost_kitchen.core.exceptions import InvalidStateError, NotFoundError
from ghost_kitchen.core.rounding import round_half_up, round_to
from ghost_kitchen.models.ghost_kitchen import OpportunityStatus, OpportunityWindow
from ghost_kitchen.models.restaurant import Restaurant
from ghost_kitchen.models.staff import WorkerProfile, WorkerRole, WorkerStatus
from ghost_kitchen.schemas.forecast import HourlyForecast
from ghost_kitchen.schemas.staffing import (
    OpportunityCandidate, OpportunityCriteria, OpportunityMetrics,
)
from ghost_kitchen.services.demand_forecaster_service import DemandForecasterService
from ghost_kitchen.services.notification_service import NotificationService, NotificationTemplate

logger = logging.getLogger(__name__)


class OpportunityDetectorService:
    """Detect, score and track ghost kitchen opportunity windows."""

    DELIVERY_SCORE_MAX = 40
    DELIVERY_SCORE_SATURATION = 15  # orders per hour
    DINE_IN_SCORE_MAX = 25
    DURATION_SCORE_MAX = 15
    DURATION_SCORE_SATURATION = 4  # hours
    CONFIDENCE_SCORE_MAX = 20

    ORDERS_PER_STAFF_HOUR = 8
    STAFF_RANGE = (1, 5)
    UPCOMING_DAYS = 7
    METRICS_DAYS = 30

    def __init__(
        self,
        db: Session,
        forecaster: Optional[DemandForecasterService] = None,
        notifications: Optional[NotificationService] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.clock = clock or system_clock
        self.forecaster = forecaster or DemandForecasterService(db, clock=self.clock)
        self.notifications = notifications or NotificationService()

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect_opportunities(
        self,
        restaurant_id: int,
        start_date: date,
        end_date: date,
        criteria: Optional[OpportunityCriteria] = None,
    ) -> List[OpportunityCandidate]:
        """Qualifying windows for each open day in the range, best score first."""
        restaurant = self.db.get(Restaurant, restaurant_id)
        if not restaurant:
            raise NotFoundError("Restaurant", restaurant_id)
        if not restaurant.ghost_kitchen_enabled:
            logger.debug(f"Ghost kitchen not enabled for {restaurant_id}")
            return []

        criteria = criteria or OpportunityCriteria()
        closed_days = set(restaurant.closed_days or [])
        opportunities = []

        current = start_date
        while current <= end_date:
            if current.weekday() not in closed_days:
                forecasts = self.forecaster.forecast_demand(restaurant_id, current, store=False)
                for hours in self.find_opportunity_windows(forecasts, restaurant, criteria):
                    opportunities.append(self._candidate(restaurant_id, current, hours, criteria))
            current += timedelta(days=1)

        opportunities.sort(key=lambda o: o.score, reverse=True)
        return opportunities

    def find_opportunity_windows(
        self,
        forecasts: Sequence[HourlyForecast],
        restaurant: Restaurant,
        criteria: OpportunityCriteria,
    ) -> List[List[HourlyForecast]]:
        """Runs of consecutive qualifying hours at least ``min_window_hours`` long."""
        windows: List[List[HourlyForecast]] = []
        run: List[HourlyForecast] = []

        for forecast in forecasts:
            if self._qualifies(forecast, restaurant, criteria) and (not run or forecast.hour == run[-1].hour + 1):
                run.append(forecast)
                continue
            if len(run) >= criteria.min_window_hours:
                windows.append(run)
            run = [forecast] if self._qualifies(forecast, restaurant, criteria) else []

        if len(run) >= criteria.min_window_hours:
            windows.append(run)
        return windows

    @staticmethod
    def _qualifies(forecast: HourlyForecast, restaurant: Restaurant, criteria: OpportunityCriteria) -> bool:
        if forecast.hour < restaurant.open_hour or forecast.hour >= restaurant.close_hour:
            return False
        if forecast.confidence < criteria.min_confidence:
            return False
        if forecast.dine_in_forecast / restaurant.seating_capacity * 100 > criteria.max_dine_in_capacity_percent:
            return False
        return forecast.delivery_forecast >= criteria.min_delivery_orders_per_hour

    def _candidate(
        self,
        restaurant_id: int,
        day: date,
        hours: List[HourlyForecast],
        criteria: OpportunityCriteria,
    ) -> OpportunityCandidate:
        total_dine_in = sum(h.dine_in_forecast for h in hours)
        total_delivery = sum(h.delivery_forecast for h in hours)
        avg_confidence = sum(h.confidence for h in hours) / len(hours)
        return OpportunityCandidate(
            restaurant_id=restaurant_id,
            date=day,
            start_hour=hours[0].hour,
            end_hour=hours[0].hour + len(hours),
            score=self.score_opportunity(total_delivery, total_dine_in, len(hours), avg_confidence),
            forecasted_dine_in=total_dine_in,
            forecasted_delivery=total_delivery,
            recommended_staff=self.calculate_recommended_staff(total_delivery, len(hours)),
            potential_revenue=round_to(total_delivery * criteria.avg_delivery_order_revenue),
            confidence=round_to(avg_confidence),
        )

    def score_opportunity(self, total_delivery: int, total_dine_in: int, hours: int, avg_confidence: float) -> int:
        delivery_per_hour = total_delivery / hours
        dine_in_per_hour = total_dine_in / hours
        score = min(self.DELIVERY_SCORE_MAX, delivery_per_hour / self.DELIVERY_SCORE_SATURATION * self.DELIVERY_SCORE_MAX)
        score += max(0, self.DINE_IN_SCORE_MAX - dine_in_per_hour)
        score += min(self.DURATION_SCORE_MAX, hours / self.DURATION_SCORE_SATURATION * self.DURATION_SCORE_MAX)
        score += avg_confidence * self.CONFIDENCE_SCORE_MAX
        return round_half_up(score)

    def calculate_recommended_staff(self, total_orders: int, hours: int) -> int:
        low, high = self.STAFF_RANGE
        needed = math.ceil(total_orders / hours / self.ORDERS_PER_STAFF_HOUR)
        return max(low, min(high, needed))

    def get_upcoming_opportunities(self, restaurant_id: int) -> List[OpportunityCandidate]:
        """Stored open suggestions for the next week, or fresh detections if there are none."""
        today = self.clock.now().date()
        stored = (
            self.db.query(OpportunityWindow)
            .filter(
                OpportunityWindow.restaurant_id == restaurant_id,
                OpportunityWindow.date >= today,
                OpportunityWindow.status.in_((OpportunityStatus.SUGGESTED, OpportunityStatus.ACCEPTED)),
            )
            .order_by(OpportunityWindow.date, OpportunityWindow.start_hour)
            .all()
        )
        if stored:
            return [self._from_row(row) for row in stored]
        return self.detect_opportunities(restaurant_id, today, today + timedelta(days=self.UPCOMING_DAYS))

    # ------------------------------------------------------------------
    # Manager flow
    # ------------------------------------------------------------------

    def create_opportunity_alert(self, candidate: OpportunityCandidate) -> OpportunityWindow:
        """Persist a detected window and notify the restaurant's managers."""
        now = self.clock.now()
        row = OpportunityWindow(
            restaurant_id=candidate.restaurant_id,
            date=candidate.date,
            start_hour=candidate.start_hour,
            end_hour=candidate.end_hour,
            score=candidate.score,
            status=OpportunityStatus.SUGGESTED,
            forecasted_dine_in=candidate.forecasted_dine_in,
            forecasted_orders=candidate.forecasted_delivery,
            recommended_staff=candidate.recommended_staff,
            potential_revenue=candidate.potential_revenue,
            confidence=candidate.confidence,
            notified_at=now,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)

        self._notify_managers(row)
        logger.info(
            f"Created opportunity alert {row.id} for {row.restaurant_id} "
            f"on {row.date} {row.start_hour}:00-{row.end_hour}:00"
        )
        return row

    def accept_opportunity(self, opportunity_id: int, user_id: str) -> OpportunityWindow:
        row = self._get_suggested(opportunity_id)
        row.status = OpportunityStatus.ACCEPTED
        row.responded_at = self.clock.now()
        row.responded_by = user_id
        self.db.commit()
        logger.info(f"Opportunity {opportunity_id} accepted by user {user_id}")
        return row

    def decline_opportunity(self, opportunity_id: int, user_id: str, reason: Optional[str] = None) -> OpportunityWindow:
        row = self._get_suggested(opportunity_id)
        row.status = OpportunityStatus.DECLINED
        row.responded_at = self.clock.now()
        row.responded_by = user_id
        row.decline_reason = reason
        self.db.commit()
        logger.info(f"Opportunity {opportunity_id} declined by user {user_id}")
        return row

    def mark_expired_opportunities(self) -> int:
        """SUGGESTED windows dated before today become EXPIRED."""
        today = self.clock.now().date()
        count = (
            self.db.query(OpportunityWindow)
            .filter(
                OpportunityWindow.status == OpportunityStatus.SUGGESTED,
                OpportunityWindow.date < today,
            )
            .update({OpportunityWindow.status: OpportunityStatus.EXPIRED}, synchronize_session=False)
        )
        self.db.commit()
        if count:
            logger.info(f"Marked {count} opportunities as expired")
        return count

    def update_actual_results(self, opportunity_id: int, actual_orders: int) -> OpportunityWindow:
        row = self.db.get(OpportunityWindow, opportunity_id)
        if not row:
            raise NotFoundError("Opportunity", opportunity_id)
        row.actual_orders = actual_orders
        row.status = OpportunityStatus.COMPLETED
        self.db.commit()
        return row

    def get_performance_metrics(
        self,
        restaurant_id: int,
        days_back: int = METRICS_DAYS,
        avg_order_revenue: Optional[float] = None,
    ) -> OpportunityMetrics:
        since = self.clock.now().date() - timedelta(days=days_back)
        revenue_per_order = avg_order_revenue or OpportunityCriteria().avg_delivery_order_revenue
        rows = (
            self.db.query(OpportunityWindow)
            .filter(OpportunityWindow.restaurant_id == restaurant_id, OpportunityWindow.date >= since)
            .all()
        )

        total = len(rows)
        accepted = [r for r in rows if r.status == OpportunityStatus.ACCEPTED]
        completed = [r for r in rows if r.status == OpportunityStatus.COMPLETED and r.actual_orders is not None]

        forecast_accuracy = 0.0
        if completed:
            mape = sum(
                abs(r.forecasted_orders - r.actual_orders) / r.actual_orders
                for r in completed if r.actual_orders > 0
            ) / len(completed)
            forecast_accuracy = max(0.0, 100 - mape * 100)

        return OpportunityMetrics(
            total_opportunities=total,
            accepted_count=len(accepted),
            acceptance_rate=round_to(len(accepted) / total * 100) if total else 0,
            avg_score=round_to(sum(r.score for r in rows) / total) if total else 0,
            avg_forecasted_orders=round_to(sum(r.forecasted_orders for r in rows) / total) if total else 0,
            avg_actual_orders=(
                round_to(sum(r.actual_orders for r in completed) / len(completed)) if completed else 0
            ),
            forecast_accuracy=round_to(forecast_accuracy),
            total_revenue=round_to(sum(r.actual_orders for r in completed) * revenue_per_order),
        )

    def _get_suggested(self, opportunity_id: int) -> OpportunityWindow:
        row = self.db.get(OpportunityWindow, opportunity_id)
        if not row:
            raise NotFoundError("Opportunity", opportunity_id)
        if row.status != OpportunityStatus.SUGGESTED:
            raise InvalidStateError("Opportunity is not in SUGGESTED status")
        return row

    @staticmethod
    def _from_row(row: OpportunityWindow) -> OpportunityCandidate:
        return OpportunityCandidate(
            id=row.id,
            restaurant_id=row.restaurant_id,
            date=row.date,
            start_hour=row.start_hour,
            end_hour=row.end_hour,
            score=row.score,
            status=row.status,
            forecasted_dine_in=row.forecasted_dine_in,
            forecasted_delivery=row.forecasted_orders,
            recommended_staff=row.recommended_staff,
            potential_revenue=float(row.potential_revenue),
            confidence=row.confidence,
        )

    def _notify_managers(self, row: OpportunityWindow) -> None:
        managers = (
            self.db.query(WorkerProfile)
            .filter(
                WorkerProfile.restaurant_id == row.restaurant_id,
                WorkerProfile.role.in_((WorkerRole.OWNER, WorkerRole.MANAGER)),
                WorkerProfile.status == WorkerStatus.ACTIVE,
            )
            .all()
        )
        for manager in managers:
            self.notifications.send(manager.user_id, NotificationTemplate.GHOST_KITCHEN_OPPORTUNITY, {
                "opportunity_id": row.id,
                "restaurant_id": row.restaurant_id,
                "date": row.date.isoformat(),
                "time": f"{row.start_hour}:00 - {row.end_hour}:00",
                "score": str(row.score),
                "forecasted_orders": str(row.forecasted_orders),
                "potential_revenue": f"${float(row.potential_revenue):.2f}",
            })
