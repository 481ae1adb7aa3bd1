"""
Ghost kitchen scheduled jobs.

Plain functions meant to be called by an external scheduler (cron, a
worker queue). They own no threads or timers: each run evaluates the
stored deadlines against the clock and acts once. A failure for one
restaurant is logged and recorded, and the sweep moves on.
"""

import logging
import traceback
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from ghost_kitchen.models.ghost_kitchen import OPEN_SESSION_STATUSES, GhostKitchenSession
from ghost_kitchen.models.restaurant import Restaurant
from ghost_kitchen.services.demand_forecaster_service import DemandForecasterService
from ghost_kitchen.services.ghost_mode_service import GhostModeService
from ghost_kitchen.services.opportunity_detector_service import OpportunityDetectorService

logger = logging.getLogger(__name__)

FORECAST_DAYS = 7
MIN_ALERT_SCORE = 60


@dataclass
class LifecycleCheckResult:
    sessions_checked: int = 0
    resumed: List[int] = field(default_factory=list)
    ended: List[int] = field(default_factory=list)
    opportunities_expired: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class ForecastJobResult:
    restaurants_processed: int = 0
    forecasts_generated: int = 0
    opportunities_detected: int = 0
    errors: List[str] = field(default_factory=list)


def run_lifecycle_checks(
    db: Session,
    ghost_mode: Optional[GhostModeService] = None,
    opportunities: Optional[OpportunityDetectorService] = None,
) -> LifecycleCheckResult:
    """Auto-resume expired pauses, end sessions past their scheduled end, expire stale opportunities."""
    ghost_mode = ghost_mode or GhostModeService(db)
    opportunities = opportunities or OpportunityDetectorService(db, clock=ghost_mode.clock)
    result = LifecycleCheckResult()

    restaurant_ids = [
        row.restaurant_id
        for row in db.query(GhostKitchenSession.restaurant_id)
        .filter(GhostKitchenSession.status.in_(OPEN_SESSION_STATUSES))
        .distinct()
    ]

    for restaurant_id in restaurant_ids:
        result.sessions_checked += 1
        try:
            if ghost_mode.check_auto_resume(restaurant_id):
                result.resumed.append(restaurant_id)
            if ghost_mode.check_scheduled_end(restaurant_id):
                result.ended.append(restaurant_id)
        except Exception as e:
            db.rollback()
            logger.error(f"Lifecycle check failed for restaurant {restaurant_id}: {e}\n{traceback.format_exc()}")
            result.errors.append(f"Restaurant {restaurant_id}: {e}")

    result.opportunities_expired = opportunities.mark_expired_opportunities()

    if result.resumed or result.ended:
        logger.info(
            f"Lifecycle checks: {len(result.resumed)} resumed, {len(result.ended)} ended "
            f"of {result.sessions_checked} open sessions"
        )
    return result


def run_daily_forecast(
    db: Session,
    forecaster: Optional[DemandForecasterService] = None,
    opportunities: Optional[OpportunityDetectorService] = None,
    restaurant_id: Optional[int] = None,
    days: int = FORECAST_DAYS,
    generate_opportunities: bool = True,
) -> ForecastJobResult:
    """Store forecasts for the coming days and raise alerts for strong opportunities."""
    forecaster = forecaster or DemandForecasterService(db)
    opportunities = opportunities or OpportunityDetectorService(db, forecaster=forecaster, clock=forecaster.clock)
    result = ForecastJobResult()
    today = forecaster.clock.now().date()

    query = db.query(Restaurant).filter(Restaurant.ghost_kitchen_enabled.is_(True))
    if restaurant_id is not None:
        query = query.filter(Restaurant.id == restaurant_id)

    for restaurant in query.all():
        for offset in range(days):
            target = today + timedelta(days=offset)
            try:
                forecaster.forecast_demand(restaurant.id, target)
                result.forecasts_generated += 1
            except Exception as e:
                db.rollback()
                logger.error(f"Failed to generate forecast for {restaurant.id} on {target}: {e}")
                result.errors.append(f"Forecast error for {restaurant.name}: {e}")

        if generate_opportunities:
            try:
                detected = opportunities.detect_opportunities(
                    restaurant.id, today, today + timedelta(days=days - 1)
                )
                for candidate in detected:
                    if candidate.score >= MIN_ALERT_SCORE:
                        opportunities.create_opportunity_alert(candidate)
                        result.opportunities_detected += 1
            except Exception as e:
                db.rollback()
                logger.error(f"Failed to detect opportunities for {restaurant.id}: {e}")
                result.errors.append(f"Opportunity error for {restaurant.name}: {e}")

        metrics = forecaster.get_accuracy_metrics(restaurant.id)
        if metrics.sample_count > 0:
            logger.debug(
                f"Accuracy for {restaurant.name}: dine-in MAPE={metrics.dine_in_mape:.1f}%, "
                f"delivery MAPE={metrics.delivery_mape:.1f}%, samples={metrics.sample_count}"
            )

        result.restaurants_processed += 1

    opportunities.mark_expired_opportunities()
    logger.info(
        f"Daily forecast: {result.restaurants_processed} restaurants, "
        f"{result.forecasts_generated} forecasts, {result.opportunities_detected} opportunities"
    )
    return result
