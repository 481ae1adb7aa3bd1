"""
Ghost Kitchen Analytics Service
===============================
P&L and reporting over ended and running sessions.

Revenue counts completed orders only (picked up or completed). Platform
fees use the session's fee overrides, then the default fee table. Labor
is the completed ghost kitchen shifts overlapping the reporting window,
at the assigned worker's rate or the default hourly rate.
"""

import logging
from collections import Counter, OrderedDict, defaultdict
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ghost_kitchen.core.clock import Clock, system_clock
from ghost_kitchen.core.config import Settings, settings as default_settings
from ghost_kitchen.core.exceptions import NotFoundError
from ghost_kitchen.core.rounding import round_half_up, round_to
from ghost_kitchen.models.ghost_kitchen import (
    COMPLETED_ORDER_STATUSES, GhostKitchenOrder, GhostKitchenSession,
    GhostOrderStatus, SessionStatus,
)
from ghost_kitchen.models.staff import Shift, ShiftStatus, ShiftType
from ghost_kitchen.schemas.analytics import (
    DailyLabor, DailyRevenue, DayBreakdown, DeliveryCosts, DeliveryRevenue,
    ForecastComparison, ForecastEstimate, ForecastVariance, HourVolume,
    MonthComparison, MonthlyReport, PerformanceMetrics, PeriodSummary,
    PeriodTotals, PlatformFeeTotal, PlatformReport, PlatformRevenue,
    PlatformTotals, WeekTrend, WeeklyReport,
)
from ghost_kitchen.schemas.ghost_kitchen import GhostModeConfig, SessionPnL

logger = logging.getLogger(__name__)

DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


class GhostAnalyticsService:
    """Session P&L, revenue/cost breakdowns and weekly/monthly reports."""

    # Recommendation rules
    MIN_WEEKLY_SESSIONS = 5
    TARGET_MARGIN_PERCENT = 15
    MIN_ORDERS_PER_SESSION = 10
    SLOW_DAY_ORDERS = 5
    MAX_SLOW_DAYS = 2

    PEAK_HOURS_LIMIT = 5
    COMPARISON_HOUR_TOLERANCE = 1
    WEEKS_PER_MONTH = 5

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.clock = clock or system_clock
        self.settings = settings or default_settings
        self._configs: Dict[int, GhostModeConfig] = {}

    # ------------------------------------------------------------------
    # Session P&L
    # ------------------------------------------------------------------

    def calculate_session_pnl(self, session_id: int) -> SessionPnL:
        session = self._get_session(session_id)
        config = self._config(session)
        completed = [o for o in session.orders if o.is_completed]

        revenue = sum(float(o.total_amount) for o in completed)
        platform_fees = round_to(sum(self._order_fee(o, config) for o in completed))
        labor_cost = self._labor_cost(
            session.restaurant_id, session.started_at, session.ended_at or self.clock.now()
        )
        supply_cost = len(completed) * config.supply_packaging_cost

        gross_profit = revenue - platform_fees
        net_profit = gross_profit - labor_cost - supply_cost
        margin = net_profit / revenue * 100 if revenue > 0 else 0

        return SessionPnL(
            session_id=session.id,
            revenue=round_to(revenue),
            platform_fees=platform_fees,
            labor_cost=labor_cost,
            supply_cost=round_to(supply_cost),
            gross_profit=round_to(gross_profit),
            net_profit=round_to(net_profit),
            profit_margin=round_to(margin),
        )

    def compare_to_forecast(self, session_id: int) -> ForecastComparison:
        """Compare a session with past ended sessions on the same weekday and start hour (+/- 1)."""
        actual = self.calculate_session_pnl(session_id)
        session = self._get_session(session_id)
        since = self.clock.now() - timedelta(days=self.settings.forecast_comparison_days)

        history = (
            self.db.query(GhostKitchenSession)
            .filter(
                GhostKitchenSession.restaurant_id == session.restaurant_id,
                GhostKitchenSession.status == SessionStatus.ENDED,
                GhostKitchenSession.id != session.id,
                GhostKitchenSession.started_at >= since,
            )
            .all()
        )
        similar = [
            s for s in history
            if s.started_at.weekday() == session.started_at.weekday()
            and abs(s.started_at.hour - session.started_at.hour) <= self.COMPARISON_HOUR_TOLERANCE
        ]

        if not similar:
            return ForecastComparison(actual=actual, actual_orders=session.total_orders)

        avg_orders = sum(s.total_orders for s in similar) / len(similar)
        avg_revenue = sum(float(s.total_revenue) for s in similar) / len(similar)
        orders_variance = session.total_orders - avg_orders
        revenue_variance = actual.revenue - avg_revenue

        return ForecastComparison(
            actual=actual,
            actual_orders=session.total_orders,
            forecast=ForecastEstimate(
                predicted_orders=round_half_up(avg_orders),
                predicted_revenue=round_to(avg_revenue),
                comparable_sessions=len(similar),
            ),
            variance=ForecastVariance(
                orders_variance=round_half_up(orders_variance),
                revenue_variance=round_to(revenue_variance),
                orders_variance_percent=round_half_up(orders_variance / avg_orders * 100) if avg_orders > 0 else 0,
                revenue_variance_percent=(
                    round_half_up(revenue_variance / avg_revenue * 100) if avg_revenue > 0 else 0
                ),
            ),
        )

    # ------------------------------------------------------------------
    # Date-range breakdowns
    # ------------------------------------------------------------------

    def get_delivery_revenue(self, restaurant_id: int, start: datetime, end: datetime) -> DeliveryRevenue:
        orders = self._completed_orders(restaurant_id, start, end)

        by_day: Dict[date, List] = defaultdict(lambda: [0.0, 0])
        for order in orders:
            bucket = by_day[order.received_at.date()]
            bucket[0] += float(order.total_amount)
            bucket[1] += 1

        return DeliveryRevenue(
            total=round_to(sum(float(o.total_amount) for o in orders)),
            by_day=[
                DailyRevenue(date=day, revenue=round_to(revenue), orders=count)
                for day, (revenue, count) in sorted(by_day.items())
            ],
            by_platform=self._aggregate_by_platform(orders),
        )

    def get_delivery_costs(self, restaurant_id: int, start: datetime, end: datetime) -> DeliveryCosts:
        orders = self._completed_orders(restaurant_id, start, end)

        supplies = 0.0
        fees_by_platform: Dict = OrderedDict()
        for order in orders:
            config = self._config(order.session)
            supplies += config.supply_packaging_cost
            fees_by_platform[order.platform] = fees_by_platform.get(order.platform, 0.0) + self._order_fee(order, config)

        labor_by_day: Dict[date, List[float]] = defaultdict(lambda: [0.0, 0.0])
        for shift in self._labor_shifts(restaurant_id, start, end):
            bucket = labor_by_day[shift.start_time.date()]
            bucket[0] += self._shift_cost(shift)
            bucket[1] += shift.hours

        labor = round_to(sum(cost for cost, _ in labor_by_day.values()))
        platform_fees = round_to(sum(fees_by_platform.values()))
        supplies = round_to(supplies)

        return DeliveryCosts(
            labor=labor,
            supplies=supplies,
            platform_fees=platform_fees,
            total=round_to(labor + supplies + platform_fees),
            labor_by_day=[
                DailyLabor(date=day, cost=round_to(cost), hours=round_to(hours, 1))
                for day, (cost, hours) in sorted(labor_by_day.items())
            ],
            fees_by_platform=[
                PlatformFeeTotal(platform=platform, fees=round_to(fees))
                for platform, fees in fees_by_platform.items()
            ],
        )

    def get_platform_breakdown(self, restaurant_id: int, start: datetime, end: datetime) -> PlatformReport:
        orders = self._completed_orders(restaurant_id, start, end)
        platforms = self._aggregate_by_platform(orders)

        revenue = sum(p.revenue for p in platforms)
        fees = sum(p.fees for p in platforms)
        return PlatformReport(
            platforms=platforms,
            totals=PlatformTotals(
                orders=len(orders),
                revenue=round_to(revenue),
                fees=round_to(fees),
                net_revenue=round_to(revenue - fees),
            ),
        )

    def get_performance_metrics(self, restaurant_id: int, start: datetime, end: datetime) -> PerformanceMetrics:
        sessions = (
            self.db.query(GhostKitchenSession)
            .filter(
                GhostKitchenSession.restaurant_id == restaurant_id,
                GhostKitchenSession.status == SessionStatus.ENDED,
                GhostKitchenSession.started_at >= start,
                GhostKitchenSession.started_at <= end,
            )
            .all()
        )
        if not sessions:
            return PerformanceMetrics(
                order_accuracy=100,
                avg_orders_per_session=0,
                avg_revenue_per_session=0,
                avg_session_duration=0,
                peak_hours=[],
                completion_rate=0,
                cancellation_rate=0,
            )

        orders = [o for s in sessions for o in s.orders]
        completed = [o for o in orders if o.is_completed]
        cancelled = [o for o in orders if o.status == GhostOrderStatus.CANCELLED]
        prep_times = [o.prep_seconds for o in completed if o.prep_seconds is not None]
        durations = [
            (s.ended_at - s.started_at).total_seconds() / 60 for s in sessions if s.ended_at
        ]

        hour_counts = Counter(o.received_at.hour for o in orders)
        peak_hours = [
            HourVolume(hour=hour, orders=count)
            for hour, count in hour_counts.most_common(self.PEAK_HOURS_LIMIT)
        ]

        completion_rate = len(completed) / len(orders) * 100 if orders else 0
        cancellation_rate = len(cancelled) / len(orders) * 100 if orders else 0

        return PerformanceMetrics(
            avg_prep_time=round_to(sum(prep_times) / len(prep_times)) if prep_times else None,
            order_accuracy=round_to(100 - cancellation_rate, 1),
            avg_orders_per_session=round_to(len(orders) / len(sessions), 1),
            avg_revenue_per_session=round_to(sum(float(s.total_revenue) for s in sessions) / len(sessions)),
            avg_session_duration=round_half_up(sum(durations) / len(durations)) if durations else 0,
            peak_hours=peak_hours,
            completion_rate=round_to(completion_rate, 1),
            cancellation_rate=round_to(cancellation_rate, 1),
        )

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def get_weekly_report(self, restaurant_id: int, week_start: Optional[date] = None) -> WeeklyReport:
        """Monday-to-Sunday report; defaults to the current week."""
        if week_start is None:
            today = self.clock.now().date()
            week_start = today - timedelta(days=today.weekday())
        start = datetime.combine(week_start, time.min)
        end = start + timedelta(days=7)

        sessions = self._sessions_between(restaurant_id, start, end)
        total_orders = sum(s.total_orders for s in sessions)
        total_revenue = sum(float(s.total_revenue) for s in sessions)
        costs = self.get_delivery_costs(restaurant_id, start, end)
        net_profit = total_revenue - costs.total
        margin = net_profit / total_revenue * 100 if total_revenue > 0 else 0

        days = OrderedDict(
            (week_start + timedelta(days=i), {"sessions": 0, "orders": 0, "revenue": 0.0}) for i in range(7)
        )
        for session in sessions:
            bucket = days.get(session.started_at.date())
            if bucket is not None:
                bucket["sessions"] += 1
                bucket["orders"] += session.total_orders
                bucket["revenue"] += float(session.total_revenue)

        daily = [
            DayBreakdown(
                date=day,
                day_of_week=DAY_NAMES[day.weekday()],
                sessions=data["sessions"],
                orders=data["orders"],
                revenue=round_to(data["revenue"]),
            )
            for day, data in days.items()
        ]

        top_day = None
        for row in daily:
            if row.revenue > 0 and (top_day is None or row.revenue > top_day.revenue):
                top_day = row

        completed = [o for s in sessions for o in s.orders if o.is_completed]
        return WeeklyReport(
            week_start=week_start,
            week_end=week_start + timedelta(days=7),
            summary=PeriodSummary(
                total_sessions=len(sessions),
                total_orders=total_orders,
                total_revenue=round_to(total_revenue),
                total_costs=costs.total,
                net_profit=round_to(net_profit),
                profit_margin=round_to(margin, 1),
            ),
            daily_breakdown=daily,
            platform_breakdown=self._aggregate_by_platform(completed),
            top_performing_day=top_day.day_of_week if top_day else None,
            recommendations=self.generate_recommendations(
                total_sessions=len(sessions),
                avg_orders_per_session=total_orders / len(sessions) if sessions else 0,
                profit_margin=margin,
                daily=daily,
            ),
        )

    def get_monthly_report(self, restaurant_id: int, year: int, month: int) -> MonthlyReport:
        if month < 1 or month > 12:
            raise ValueError(f"Month must be between 1 and 12, got {month}")

        month_start = datetime(year, month, 1)
        month_end = _next_month(month_start)
        orders, profit, session_count = self._period_totals(restaurant_id, month_start, month_end)
        revenue = sum(float(o.total_amount) for o in orders)
        costs = self.get_delivery_costs(restaurant_id, month_start, month_end)
        margin = profit / revenue * 100 if revenue > 0 else 0

        weekly_trend = []
        for week in range(1, self.WEEKS_PER_MONTH + 1):
            week_start = month_start + timedelta(days=(week - 1) * 7)
            if week_start >= month_end:
                break
            week_end = min(week_start + timedelta(days=7), month_end)
            week_orders, week_profit, _ = self._period_totals(restaurant_id, week_start, week_end)
            weekly_trend.append(WeekTrend(
                week_number=week,
                orders=len(week_orders),
                revenue=round_to(sum(float(o.total_amount) for o in week_orders)),
                profit=round_to(week_profit),
            ))

        comparison = None
        prev_start = _previous_month(month_start)
        prev_orders, prev_profit, prev_sessions = self._period_totals(restaurant_id, prev_start, month_start)
        if prev_sessions:
            prev_revenue = sum(float(o.total_amount) for o in prev_orders)
            comparison = MonthComparison(
                previous_month=PeriodTotals(
                    orders=len(prev_orders),
                    revenue=round_to(prev_revenue),
                    profit=round_to(prev_profit),
                ),
                orders_growth=_growth(len(orders), len(prev_orders)),
                revenue_growth=_growth(revenue, prev_revenue),
                profit_growth=_growth(profit, prev_profit),
            )

        platform_counts = Counter(o.platform for o in orders)
        top_platform = platform_counts.most_common(1)[0][0] if platform_counts else None

        return MonthlyReport(
            year=year,
            month=month,
            summary=PeriodSummary(
                total_sessions=session_count,
                total_orders=len(orders),
                total_revenue=round_to(revenue),
                total_costs=costs.total,
                net_profit=round_to(profit),
                profit_margin=round_to(margin, 1),
            ),
            weekly_trend=weekly_trend,
            comparison=comparison,
            top_platform=top_platform,
            avg_order_value=round_to(revenue / len(orders)) if orders else 0,
        )

    def generate_recommendations(
        self,
        total_sessions: int,
        avg_orders_per_session: float,
        profit_margin: float,
        daily: List[DayBreakdown],
    ) -> List[str]:
        recommendations = []
        if total_sessions < self.MIN_WEEKLY_SESSIONS:
            recommendations.append(
                "Consider running more ghost kitchen sessions to increase revenue opportunities."
            )
        if profit_margin < self.TARGET_MARGIN_PERCENT:
            recommendations.append(
                "Profit margin is below target. Review labor scheduling and platform fee negotiations."
            )
        if avg_orders_per_session < self.MIN_ORDERS_PER_SESSION:
            recommendations.append(
                "Order volume per session is low. Consider extending session hours "
                "or improving visibility on platforms."
            )

        slow_days = [d for d in daily if d.sessions == 0 or d.orders < self.SLOW_DAY_ORDERS]
        if len(slow_days) > self.MAX_SLOW_DAYS:
            recommendations.append(
                f"Consider running promotions on slower days: {', '.join(d.day_of_week for d in slow_days)}."
            )
        return recommendations

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_session(self, session_id: int) -> GhostKitchenSession:
        session = self.db.get(GhostKitchenSession, session_id)
        if not session:
            raise NotFoundError("Session", session_id)
        return session

    def _config(self, session: GhostKitchenSession) -> GhostModeConfig:
        if session.id not in self._configs:
            self._configs[session.id] = GhostModeConfig.model_validate(session.config)
        return self._configs[session.id]

    @staticmethod
    def _order_fee(order: GhostKitchenOrder, config: GhostModeConfig) -> float:
        fee = config.fee_for(order.platform)
        return float(order.total_amount) * fee.commission_percent / 100 + fee.flat_fee

    def _completed_orders(self, restaurant_id: int, start: datetime, end: datetime) -> List[GhostKitchenOrder]:
        return (
            self.db.query(GhostKitchenOrder)
            .join(GhostKitchenSession, GhostKitchenOrder.session_id == GhostKitchenSession.id)
            .filter(
                GhostKitchenSession.restaurant_id == restaurant_id,
                GhostKitchenOrder.status.in_(COMPLETED_ORDER_STATUSES),
                GhostKitchenOrder.received_at >= start,
                GhostKitchenOrder.received_at < end,
            )
            .order_by(GhostKitchenOrder.received_at)
            .all()
        )

    def _sessions_between(self, restaurant_id: int, start: datetime, end: datetime) -> List[GhostKitchenSession]:
        return (
            self.db.query(GhostKitchenSession)
            .filter(
                GhostKitchenSession.restaurant_id == restaurant_id,
                GhostKitchenSession.started_at >= start,
                GhostKitchenSession.started_at < end,
            )
            .order_by(GhostKitchenSession.started_at)
            .all()
        )

    def _period_totals(
        self, restaurant_id: int, start: datetime, end: datetime
    ) -> Tuple[List[GhostKitchenOrder], float, int]:
        """Completed orders of sessions started in [start, end), their net profit and the session count."""
        sessions = self._sessions_between(restaurant_id, start, end)
        orders = [o for s in sessions for o in s.orders if o.is_completed]
        revenue = sum(float(o.total_amount) for o in orders)
        costs = self.get_delivery_costs(restaurant_id, start, end)
        return orders, revenue - costs.total, len(sessions)

    def _labor_shifts(self, restaurant_id: int, start: datetime, end: datetime) -> List[Shift]:
        return (
            self.db.query(Shift)
            .filter(
                Shift.restaurant_id == restaurant_id,
                Shift.type == ShiftType.GHOST_KITCHEN,
                Shift.status == ShiftStatus.COMPLETED,
                Shift.start_time < end,
                Shift.end_time > start,
            )
            .all()
        )

    def _shift_cost(self, shift: Shift) -> float:
        rate = self.settings.ghost_default_hourly_rate
        if shift.assigned_to is not None and shift.assigned_to.hourly_rate is not None:
            rate = float(shift.assigned_to.hourly_rate)
        return shift.hours * rate

    def _labor_cost(self, restaurant_id: int, start: datetime, end: datetime) -> float:
        return round_to(sum(self._shift_cost(s) for s in self._labor_shifts(restaurant_id, start, end)))

    def _aggregate_by_platform(self, orders: Iterable[GhostKitchenOrder]) -> List[PlatformRevenue]:
        grouped: Dict = OrderedDict()
        for order in orders:
            entry = grouped.setdefault(order.platform, {"orders": 0, "revenue": 0.0, "fees": 0.0, "prep": []})
            entry["orders"] += 1
            entry["revenue"] += float(order.total_amount)
            entry["fees"] += self._order_fee(order, self._config(order.session))
            if order.prep_seconds is not None:
                entry["prep"].append(order.prep_seconds)

        total_revenue = sum(e["revenue"] for e in grouped.values())
        return [
            PlatformRevenue(
                platform=platform,
                orders=e["orders"],
                revenue=round_to(e["revenue"]),
                fees=round_to(e["fees"]),
                net_revenue=round_to(e["revenue"] - e["fees"]),
                avg_order_value=round_to(e["revenue"] / e["orders"]),
                avg_prep_time=round_to(sum(e["prep"]) / len(e["prep"])) if e["prep"] else None,
                percent_of_total=round_half_up(e["revenue"] / total_revenue * 100) if total_revenue > 0 else 0,
            )
            for platform, e in grouped.items()
        ]


def _next_month(month_start: datetime) -> datetime:
    if month_start.month == 12:
        return month_start.replace(year=month_start.year + 1, month=1)
    return month_start.replace(month=month_start.month + 1)


def _previous_month(month_start: datetime) -> datetime:
    if month_start.month == 1:
        return month_start.replace(year=month_start.year - 1, month=12)
    return month_start.replace(month=month_start.month - 1)


def _growth(current: float, previous: float) -> int:
    if previous <= 0:
        return 0
    return round_half_up((current - previous) / previous * 100)
