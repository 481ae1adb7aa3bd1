"""
Demand Forecaster Service
=========================
Predicts hourly dine-in covers and delivery orders for a restaurant.

Forecast = historical weekday/hour baseline x (1 + weather + events),
rounded and floored at zero. Historical patterns come from ended ghost
kitchen sessions in a trailing lookback window and are cached per
restaurant. Dine-in is not measured: it is estimated from a fixed lunch /
dinner curve damped by delivery volume, and that estimate is what the
accuracy metrics are scored against, so its shape must stay as is.
"""

import logging
import math
import statistics
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session, selectinload

from ghost_kitchen.core.cache import CacheKeys, RedisCacheClient, redis_cache
from ghost_kitchen.core.clock import Clock, system_clock
from ghost_kitchen.core.config import Settings, settings as default_settings
from ghost_kitchen.core.exceptions import NotFoundError
from ghost_kitchen.core.rounding import round_half_up, round_to
from ghost_kitchen.models.ghost_kitchen import (
    DemandForecast, GhostKitchenSession, SessionStatus,
)
from ghost_kitchen.models.restaurant import Restaurant
from ghost_kitchen.schemas.forecast import (
    AccuracyMetrics, DailyForecast, DemandAdjustment, HistoricalPattern,
    HourlyForecast, HourlyPattern, LocalEvent, LocalEventType,
    WeatherBucket, WeatherConditions,
)
from ghost_kitchen.services.local_events import LocalEventService
from ghost_kitchen.services.weather_service import WeatherService

logger = logging.getLogger(__name__)


class DemandForecasterService:
    """Hourly demand forecasts from history, weather and local events."""

    # Fractional (dine-in, delivery) change per weather bucket
    WEATHER_IMPACT: Dict[WeatherBucket, DemandAdjustment] = {
        WeatherBucket.EXTREME: DemandAdjustment(dine_in=-0.7, delivery=-0.2),
        WeatherBucket.HEAVY_RAIN: DemandAdjustment(dine_in=-0.4, delivery=0.5),
        WeatherBucket.RAIN: DemandAdjustment(dine_in=-0.2, delivery=0.3),
        WeatherBucket.SNOW: DemandAdjustment(dine_in=-0.5, delivery=0.4),
        WeatherBucket.SUNNY: DemandAdjustment(dine_in=0.1, delivery=-0.05),
        WeatherBucket.CLOUDY: DemandAdjustment(dine_in=0.0, delivery=0.0),
    }

    # Impact per 1,000 attendees at zero distance
    EVENT_IMPACT_PER_THOUSAND: Dict[LocalEventType, DemandAdjustment] = {
        LocalEventType.SPORTS: DemandAdjustment(dine_in=0.15, delivery=0.25),
        LocalEventType.CONCERT: DemandAdjustment(dine_in=0.1, delivery=0.2),
        LocalEventType.FESTIVAL: DemandAdjustment(dine_in=0.2, delivery=0.15),
        LocalEventType.CONVENTION: DemandAdjustment(dine_in=0.25, delivery=0.1),
        LocalEventType.HOLIDAY: DemandAdjustment(dine_in=-0.1, delivery=0.2),
        LocalEventType.OTHER: DemandAdjustment(dine_in=0.05, delivery=0.1),
    }

    DISTANCE_DECAY_MILES = 10
    EVENT_LEAD = timedelta(hours=2)
    EVENT_TAIL = timedelta(hours=1)
    DINE_IN_EVENT_BOUNDS = (-0.5, 0.5)
    DELIVERY_EVENT_BOUNDS = (-0.3, 0.8)

    # Dine-in curve, lunch and dinner peaks
    DINE_IN_HOUR_MULTIPLIERS = {
        11: 1.0, 12: 1.5, 13: 1.2, 14: 0.6,
        17: 0.8, 18: 1.3, 19: 1.5, 20: 1.2, 21: 0.8,
    }
    DEFAULT_DINE_IN_MULTIPLIER = 0.3
    BASE_COVERS_PER_HOUR = 20

    NO_HISTORY_CONFIDENCE = 0.3
    MAX_WEATHER_DAYS = 7

    def __init__(
        self,
        db: Session,
        cache: Optional[RedisCacheClient] = None,
        weather: Optional[WeatherService] = None,
        events: Optional[LocalEventService] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.cache = cache or redis_cache
        self.clock = clock or system_clock
        self.weather = weather or WeatherService(cache=self.cache, clock=self.clock)
        self.events = events or LocalEventService()
        self.settings = settings or default_settings

    # ------------------------------------------------------------------
    # Forecasts
    # ------------------------------------------------------------------

    def forecast_demand(
        self,
        restaurant_id: int,
        target_date: date,
        hours: Optional[Iterable[int]] = None,
        store: bool = True,
    ) -> List[HourlyForecast]:
        """One forecast per requested hour (default all 24), ascending by hour."""
        restaurant = self.db.get(Restaurant, restaurant_id)
        if not restaurant:
            raise NotFoundError("Restaurant", restaurant_id)

        hour_list = sorted(set(range(24) if hours is None else hours))
        for hour in hour_list:
            if hour < 0 or hour > 23:
                raise ValueError(f"Hour must be between 0 and 23, got {hour}")

        patterns = self.get_historical_patterns(restaurant_id)
        day_pattern = next((p for p in patterns if p.day_of_week == target_date.weekday()), None)
        weather_by_hour = self._weather_for_date(restaurant, target_date)
        local_events = self.events.get_events(restaurant_id, target_date)

        forecasts = []
        for hour in hour_list:
            hourly_pattern = day_pattern.for_hour(hour) if day_pattern else None
            base_dine_in = hourly_pattern.avg_dine_in if hourly_pattern else 0
            base_delivery = hourly_pattern.avg_delivery if hourly_pattern else 0

            hour_weather = weather_by_hour.get(hour)
            weather_adj = self.calculate_weather_impact(hour_weather) if hour_weather else DemandAdjustment()
            event_adj = self.calculate_event_impact(local_events, target_date, hour)

            forecasts.append(HourlyForecast(
                hour=hour,
                dine_in_forecast=max(0, round_half_up(
                    base_dine_in * (1 + weather_adj.dine_in + event_adj.dine_in)
                )),
                delivery_forecast=max(0, round_half_up(
                    base_delivery * (1 + weather_adj.delivery + event_adj.delivery)
                )),
                confidence=self.calculate_confidence(hourly_pattern),
                weather_adjustment=weather_adj.average,
                event_adjustment=event_adj.average,
            ))

        if store:
            self._store_forecast(restaurant_id, target_date, forecasts)

        return forecasts

    def get_daily_forecasts(
        self,
        restaurant_id: int,
        start_date: date,
        end_date: date,
    ) -> List[DailyForecast]:
        """Full-day forecasts for each date in [start_date, end_date]."""
        results = []
        current = start_date
        while current <= end_date:
            hourly = self.forecast_demand(restaurant_id, current)
            peak_dine_in = hourly[0]
            peak_delivery = hourly[0]
            for h in hourly:
                if h.dine_in_forecast > peak_dine_in.dine_in_forecast:
                    peak_dine_in = h
                if h.delivery_forecast > peak_delivery.delivery_forecast:
                    peak_delivery = h

            results.append(DailyForecast(
                date=current,
                day_of_week=current.weekday(),
                hourly_forecasts=hourly,
                total_dine_in=sum(h.dine_in_forecast for h in hourly),
                total_delivery=sum(h.delivery_forecast for h in hourly),
                peak_dine_in_hour=peak_dine_in.hour,
                peak_delivery_hour=peak_delivery.hour,
            ))
            current += timedelta(days=1)
        return results

    # ------------------------------------------------------------------
    # Historical patterns
    # ------------------------------------------------------------------

    def get_historical_patterns(self, restaurant_id: int) -> List[HistoricalPattern]:
        """Cached per-weekday hourly averages; weekdays with no sessions are absent."""
        cache_key = CacheKeys.forecast_patterns(restaurant_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return [HistoricalPattern.model_validate(p) for p in cached]

        patterns = self.build_historical_patterns(restaurant_id)
        self.cache.set(
            cache_key,
            [p.model_dump() for p in patterns],
            self.settings.forecast_pattern_cache_ttl,
        )
        return patterns

    def build_historical_patterns(self, restaurant_id: int) -> List[HistoricalPattern]:
        lookback_weeks = self.settings.forecast_lookback_weeks
        since = self.clock.now() - timedelta(weeks=lookback_weeks)

        sessions = (
            self.db.query(GhostKitchenSession)
            .options(selectinload(GhostKitchenSession.orders))
            .filter(
                GhostKitchenSession.restaurant_id == restaurant_id,
                GhostKitchenSession.status == SessionStatus.ENDED,
                GhostKitchenSession.started_at >= since,
            )
            .all()
        )

        # weekday -> hour -> one entry per order received in that hour
        orders_by_slot: Dict[int, Dict[int, List[int]]] = defaultdict(lambda: defaultdict(list))
        weekdays_seen = set()
        for session in sessions:
            weekday = session.started_at.weekday()
            weekdays_seen.add(weekday)
            for order in session.orders:
                orders_by_slot[weekday][order.received_at.hour].append(1)

        patterns = []
        for weekday in sorted(weekdays_seen):
            hourly = []
            for hour in range(24):
                delivery = orders_by_slot[weekday][hour]
                samples = math.ceil(len(delivery) / lookback_weeks) or 1
                avg_delivery = len(delivery) / samples
                est_dine_in = self.estimate_dine_in_from_delivery(hour, avg_delivery)
                hourly.append(HourlyPattern(
                    hour=hour,
                    avg_dine_in=est_dine_in,
                    avg_delivery=avg_delivery,
                    # Dine-in has no observations, so its spread is always the fallback
                    std_dev_dine_in=est_dine_in * 0.3,
                    std_dev_delivery=(statistics.pstdev(delivery) if delivery else 0) or avg_delivery * 0.3,
                    sample_count=samples,
                ))
            patterns.append(HistoricalPattern(day_of_week=weekday, hourly_averages=hourly))

        logger.debug(
            f"Built patterns for restaurant {restaurant_id}: {len(sessions)} sessions, "
            f"weekdays {sorted(weekdays_seen)}"
        )
        return patterns

    def invalidate_patterns(self, restaurant_id: int) -> None:
        self.cache.delete(CacheKeys.forecast_patterns(restaurant_id))

    @classmethod
    def estimate_dine_in_from_delivery(cls, hour: int, avg_delivery: float) -> int:
        base_multiplier = cls.DINE_IN_HOUR_MULTIPLIERS.get(hour, cls.DEFAULT_DINE_IN_MULTIPLIER)
        # Busy delivery hours tend to be quiet in the dining room
        inverse_multiplier = max(0.5, 1.5 - avg_delivery * 0.1)
        return round_half_up(base_multiplier * inverse_multiplier * cls.BASE_COVERS_PER_HOUR)

    @classmethod
    def calculate_confidence(cls, pattern: Optional[HourlyPattern]) -> float:
        if pattern is None:
            return cls.NO_HISTORY_CONFIDENCE
        sample_score = min(1, pattern.sample_count / 10)
        avg_std_dev = (pattern.std_dev_dine_in + pattern.std_dev_delivery) / 2
        variance_score = max(0, 1 - avg_std_dev / 50)
        return round_to(sample_score * 0.6 + variance_score * 0.4, 2)

    # ------------------------------------------------------------------
    # Weather and events
    # ------------------------------------------------------------------

    @staticmethod
    def classify_weather(conditions: WeatherConditions) -> WeatherBucket:
        """First matching bucket wins, in this order."""
        if conditions.temperature < 0 or conditions.temperature > 40:
            return WeatherBucket.EXTREME
        if conditions.precipitation > 50:
            return WeatherBucket.HEAVY_RAIN
        if conditions.precipitation > 20:
            return WeatherBucket.RAIN
        if conditions.snowfall and conditions.snowfall > 0:
            return WeatherBucket.SNOW
        if conditions.cloud_cover < 30:
            return WeatherBucket.SUNNY
        return WeatherBucket.CLOUDY

    def calculate_weather_impact(self, conditions: WeatherConditions) -> DemandAdjustment:
        return self.WEATHER_IMPACT[self.classify_weather(conditions)]

    def calculate_event_impact(
        self,
        events: List[LocalEvent],
        target_date: date,
        hour: int,
    ) -> DemandAdjustment:
        target_time = datetime.combine(target_date, time(hour))
        dine_in = 0.0
        delivery = 0.0

        for event in events:
            impact_start = event.start_time - self.EVENT_LEAD
            impact_end = event.end_time + self.EVENT_TAIL
            if not (impact_start <= target_time <= impact_end):
                continue

            distance_multiplier = max(0.0, 1 - event.distance_miles / self.DISTANCE_DECAY_MILES)
            attendance_multiplier = event.expected_attendance / 1000
            per_thousand = self.EVENT_IMPACT_PER_THOUSAND.get(
                event.type, self.EVENT_IMPACT_PER_THOUSAND[LocalEventType.OTHER]
            )
            dine_in += per_thousand.dine_in * distance_multiplier * attendance_multiplier
            delivery += per_thousand.delivery * distance_multiplier * attendance_multiplier

        return DemandAdjustment(
            dine_in=min(self.DINE_IN_EVENT_BOUNDS[1], max(self.DINE_IN_EVENT_BOUNDS[0], dine_in)),
            delivery=min(self.DELIVERY_EVENT_BOUNDS[1], max(self.DELIVERY_EVENT_BOUNDS[0], delivery)),
        )

    def _weather_for_date(self, restaurant: Restaurant, target_date: date) -> Dict[int, WeatherConditions]:
        if restaurant.lat is None or restaurant.lng is None:
            return {}

        days_ahead = (target_date - self.clock.now().date()).days
        if days_ahead < 0 or days_ahead >= self.MAX_WEATHER_DAYS:
            return {}

        readings = self.weather.get_forecast(restaurant.lat, restaurant.lng, days_ahead + 1)
        by_hour: Dict[int, WeatherConditions] = {}
        for reading in readings:
            if reading.timestamp.date() == target_date:
                by_hour.setdefault(reading.timestamp.hour, reading)
        return by_hour

    # ------------------------------------------------------------------
    # Accuracy tracking
    # ------------------------------------------------------------------

    def _store_forecast(self, restaurant_id: int, target_date: date, forecasts: List[HourlyForecast]) -> None:
        existing = {
            row.hour_slot: row
            for row in self.db.query(DemandForecast).filter(
                DemandForecast.restaurant_id == restaurant_id,
                DemandForecast.date == target_date,
            )
        }
        for forecast in forecasts:
            row = existing.get(forecast.hour)
            if row is None:
                row = DemandForecast(restaurant_id=restaurant_id, date=target_date, hour_slot=forecast.hour)
                self.db.add(row)
            row.dine_in_forecast = forecast.dine_in_forecast
            row.delivery_forecast = forecast.delivery_forecast
            row.weather_adjustment = forecast.weather_adjustment
            row.event_adjustment = forecast.event_adjustment
            row.confidence = forecast.confidence
        self.db.commit()

    def update_actuals(
        self,
        restaurant_id: int,
        target_date: date,
        hour_slot: int,
        actual_dine_in: int,
        actual_delivery: int,
    ) -> int:
        """Record observed demand against a stored forecast. Returns rows updated."""
        updated = (
            self.db.query(DemandForecast)
            .filter(
                DemandForecast.restaurant_id == restaurant_id,
                DemandForecast.date == target_date,
                DemandForecast.hour_slot == hour_slot,
            )
            .update(
                {"actual_dine_in": actual_dine_in, "actual_delivery": actual_delivery},
                synchronize_session="fetch",
            )
        )
        self.db.commit()
        logger.debug(
            f"Updated actuals for {restaurant_id} {target_date} hour {hour_slot}: "
            f"dine_in={actual_dine_in}, delivery={actual_delivery}"
        )
        return updated

    def get_accuracy_metrics(self, restaurant_id: int, days_back: Optional[int] = None) -> AccuracyMetrics:
        """MAPE and signed bias, in percent, over forecasts that have actuals."""
        days_back = days_back if days_back is not None else self.settings.forecast_accuracy_days
        since = self.clock.now().date() - timedelta(days=days_back)

        rows = (
            self.db.query(DemandForecast)
            .filter(
                DemandForecast.restaurant_id == restaurant_id,
                DemandForecast.date >= since,
                DemandForecast.actual_dine_in.isnot(None),
                DemandForecast.actual_delivery.isnot(None),
            )
            .all()
        )
        if not rows:
            return AccuracyMetrics(dine_in_mape=0, delivery_mape=0, dine_in_bias=0, delivery_bias=0, sample_count=0)

        dine_in_ape, dine_in_bias = self._error_sums((r.dine_in_forecast, r.actual_dine_in) for r in rows)
        delivery_ape, delivery_bias = self._error_sums((r.delivery_forecast, r.actual_delivery) for r in rows)
        n = len(rows)
        # Zero-actual rows add no error but still count in the denominator
        return AccuracyMetrics(
            dine_in_mape=dine_in_ape / n * 100,
            delivery_mape=delivery_ape / n * 100,
            dine_in_bias=dine_in_bias / n * 100,
            delivery_bias=delivery_bias / n * 100,
            sample_count=n,
        )

    @staticmethod
    def _error_sums(pairs: Iterable[Tuple[int, int]]) -> Tuple[float, float]:
        ape = 0.0
        bias = 0.0
        for predicted, actual in pairs:
            if actual and actual > 0:
                ape += abs(predicted - actual) / actual
                bias += (predicted - actual) / actual
        return ape, bias
