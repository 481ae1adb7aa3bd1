"""
Tests for ghost kitchen P&L and reporting.

Covers:
- Session P&L with platform fees, labor and packaging
- Forecast comparison against similar past sessions
- Revenue, cost and platform breakdowns for a date range
- Weekly and monthly reports with recommendations
"""

import pytest
from datetime import datetime, timedelta

from ghost_kitchen.core.exceptions import NotFoundError
from ghost_kitchen.models import (
    DeliveryPlatform, GhostOrderStatus, Position, SessionStatus, ShiftStatus, ShiftType,
)
from ghost_kitchen.services.ghost_analytics_service import GhostAnalyticsService

from tests.conftest import NOW

DD = DeliveryPlatform.DOORDASH
UE = DeliveryPlatform.UBEREATS

# Tuesday 14:00-18:00
START = NOW - timedelta(hours=4)


@pytest.fixture
def analytics(db_session, clock) -> GhostAnalyticsService:
    return GhostAnalyticsService(db_session, clock=clock)


@pytest.fixture
def busy_session(make_session, make_shift, make_worker):
    """Four hour session: three completed orders, one cancelled, two paid shifts."""
    session = make_session(START, ended_at=NOW, orders=[
        {"platform": DD, "amount": 100},
        {"platform": DD, "amount": 100},
        {"platform": UE, "amount": 50},
        {"platform": DD, "amount": 40, "status": GhostOrderStatus.CANCELLED},
    ])
    packer = make_worker("Pat", hourly_rate=20)
    make_shift(START, NOW, assigned_to=packer)
    make_shift(START + timedelta(hours=1), START + timedelta(hours=3))
    # Not labor for the session
    make_shift(START, NOW, status=ShiftStatus.CONFIRMED)
    make_shift(START, NOW, position=Position.SERVER, shift_type=ShiftType.DINE_IN)
    make_shift(NOW + timedelta(hours=1), NOW + timedelta(hours=3))
    return session


class TestSessionPnL:
    """Test per-session profit and loss."""

    def test_pnl(self, analytics, busy_session):
        pnl = analytics.calculate_session_pnl(busy_session.id)

        assert pnl.revenue == 250
        assert pnl.platform_fees == 45
        assert pnl.labor_cost == 110
        assert pnl.supply_cost == 4.5
        assert pnl.gross_profit == 205
        assert pnl.net_profit == 90.5
        assert pnl.profit_margin == 36.2

    def test_session_fee_override(self, analytics, make_session):
        session = make_session(START, orders=[
            {"platform": DD, "amount": 100},
            {"platform": UE, "amount": 50},
        ], platform_fees=[{"platform": "DOORDASH", "commission_percent": 10, "flat_fee": 1}])

        # 10% + $1 on DoorDash, default 30% on Uber Eats
        assert analytics.calculate_session_pnl(session.id).platform_fees == 26

    def test_no_orders(self, analytics, make_session):
        pnl = analytics.calculate_session_pnl(make_session(START).id)

        assert pnl.revenue == 0
        assert pnl.platform_fees == 0
        assert pnl.net_profit == 0
        assert pnl.profit_margin == 0

    def test_running_session_counts_labor_until_now(self, analytics, make_session, make_shift):
        session = make_session(START, status=SessionStatus.ACTIVE)
        make_shift(START, START + timedelta(hours=2))

        assert analytics.calculate_session_pnl(session.id).labor_cost == 30

    def test_unknown_session(self, analytics):
        with pytest.raises(NotFoundError):
            analytics.calculate_session_pnl(404)


class TestCompareToForecast:
    """Test comparison with sessions on the same weekday and start hour."""

    def test_with_similar_sessions(self, analytics, make_session):
        session = make_session(START, orders=[{"platform": DD, "amount": 100}] * 3)
        make_session(START - timedelta(days=7) + timedelta(hours=1), orders=[{"amount": 100}] * 2)
        # Different hour, different weekday, too old
        make_session(START - timedelta(days=7) - timedelta(hours=5), orders=[{"amount": 500}])
        make_session(START - timedelta(days=6), orders=[{"amount": 500}])
        make_session(START - timedelta(days=105), orders=[{"amount": 500}])

        comparison = analytics.compare_to_forecast(session.id)

        assert comparison.actual_orders == 3
        assert comparison.forecast.predicted_orders == 2
        assert comparison.forecast.predicted_revenue == 200
        assert comparison.forecast.comparable_sessions == 1
        assert comparison.variance.orders_variance == 1
        assert comparison.variance.revenue_variance == 100
        assert comparison.variance.orders_variance_percent == 50
        assert comparison.variance.revenue_variance_percent == 50

    def test_without_history(self, analytics, make_session):
        session = make_session(START, orders=[{"amount": 30}])

        comparison = analytics.compare_to_forecast(session.id)

        assert comparison.actual.revenue == 30
        assert comparison.forecast is None
        assert comparison.variance is None


class TestBreakdowns:
    """Test date-range revenue, cost and platform breakdowns."""

    def test_delivery_revenue(self, analytics, restaurant, busy_session):
        revenue = analytics.get_delivery_revenue(restaurant.id, START, NOW)

        assert revenue.total == 250
        assert [(d.date, d.revenue, d.orders) for d in revenue.by_day] == [(NOW.date(), 250, 3)]
        assert {p.platform: p.revenue for p in revenue.by_platform} == {DD: 200, UE: 50}

    def test_delivery_costs(self, analytics, restaurant, busy_session):
        costs = analytics.get_delivery_costs(restaurant.id, START, NOW)

        assert costs.labor == 110
        assert costs.supplies == 4.5
        assert costs.platform_fees == 45
        assert costs.total == 159.5
        assert [(d.cost, d.hours) for d in costs.labor_by_day] == [(110, 6.0)]
        assert {f.platform: f.fees for f in costs.fees_by_platform} == {DD: 30, UE: 15}

    def test_platform_breakdown(self, analytics, restaurant, busy_session):
        report = analytics.get_platform_breakdown(restaurant.id, START, NOW)

        doordash, ubereats = report.platforms
        assert (doordash.platform, doordash.orders, doordash.fees, doordash.net_revenue) == (DD, 2, 30, 170)
        assert doordash.avg_order_value == 100
        assert doordash.percent_of_total == 80
        assert (ubereats.platform, ubereats.percent_of_total) == (UE, 20)
        assert report.totals.orders == 3
        assert report.totals.net_revenue == 205

    def test_empty_range(self, analytics, restaurant):
        report = analytics.get_platform_breakdown(restaurant.id, START, NOW)
        assert report.platforms == []
        assert report.totals.revenue == 0

    def test_performance_metrics(self, analytics, restaurant, busy_session):
        metrics = analytics.get_performance_metrics(restaurant.id, START - timedelta(days=1), NOW)

        assert metrics.completion_rate == 75
        assert metrics.cancellation_rate == 25
        assert metrics.order_accuracy == 75
        assert metrics.avg_orders_per_session == 4
        assert metrics.avg_revenue_per_session == 290
        assert metrics.avg_session_duration == 240
        assert [(h.hour, h.orders) for h in metrics.peak_hours] == [(14, 4)]
        assert metrics.avg_prep_time is None

    def test_performance_metrics_without_sessions(self, analytics, restaurant):
        metrics = analytics.get_performance_metrics(restaurant.id, START, NOW)
        assert metrics.order_accuracy == 100
        assert metrics.peak_hours == []


class TestWeeklyReport:
    """Test the Monday-to-Sunday report."""

    def test_empty_week(self, analytics, restaurant):
        report = analytics.get_weekly_report(restaurant.id)

        assert report.week_start == datetime(2026, 3, 9).date()
        assert report.week_end == datetime(2026, 3, 16).date()
        assert [d.day_of_week for d in report.daily_breakdown] == ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
        assert report.summary.total_sessions == 0
        assert report.top_performing_day is None
        assert len(report.recommendations) == 4
        assert report.recommendations[-1] == (
            "Consider running promotions on slower days: Mon, Tue, Wed, Thu, Fri, Sat, Sun."
        )

    def test_week_with_sessions(self, analytics, restaurant, make_session):
        make_session(datetime(2026, 3, 9, 12), orders=[{"platform": DD, "amount": 20}] * 6)
        make_session(datetime(2026, 3, 10, 12), orders=[{"platform": UE, "amount": 50}])
        # Previous week
        make_session(datetime(2026, 3, 8, 12), orders=[{"amount": 999}])

        report = analytics.get_weekly_report(restaurant.id)

        assert report.summary.total_sessions == 2
        assert report.summary.total_orders == 7
        assert report.summary.total_revenue == 170
        assert report.summary.total_costs == 43.5
        assert report.summary.net_profit == 126.5
        assert report.summary.profit_margin == 74.4
        assert report.top_performing_day == "Mon"
        assert not any(r.startswith("Profit margin") for r in report.recommendations)
        assert report.recommendations[-1].endswith("Tue, Wed, Thu, Fri, Sat, Sun.")

    def test_recommendations_when_on_target(self, analytics):
        assert analytics.generate_recommendations(
            total_sessions=6, avg_orders_per_session=12, profit_margin=20, daily=[],
        ) == []


class TestMonthlyReport:
    """Test the calendar month report."""

    def test_invalid_month(self, analytics, restaurant):
        with pytest.raises(ValueError):
            analytics.get_monthly_report(restaurant.id, 2026, 13)

    def test_month_with_comparison(self, analytics, restaurant, make_session):
        make_session(datetime(2026, 3, 3, 12), orders=[
            {"platform": DD, "amount": 100},
            {"platform": UE, "amount": 50},
        ])
        make_session(datetime(2026, 3, 10, 12), orders=[{"platform": DD, "amount": 100}])
        make_session(datetime(2026, 2, 10, 12), orders=[{"platform": DD, "amount": 100}])

        report = analytics.get_monthly_report(restaurant.id, 2026, 3)

        assert report.summary.total_sessions == 2
        assert report.summary.total_orders == 3
        assert report.summary.total_revenue == 250
        assert report.summary.net_profit == 200.5
        assert report.top_platform == DD
        assert report.avg_order_value == 83.33
        assert [(w.week_number, w.orders, w.revenue, w.profit) for w in report.weekly_trend[:3]] == [
            (1, 2, 150, 117),
            (2, 1, 100, 83.5),
            (3, 0, 0, 0),
        ]
        assert len(report.weekly_trend) == 5
        assert report.comparison.previous_month.profit == 83.5
        assert report.comparison.orders_growth == 200
        assert report.comparison.revenue_growth == 150
        assert report.comparison.profit_growth == 140

    def test_month_without_previous(self, analytics, restaurant):
        report = analytics.get_monthly_report(restaurant.id, 2026, 1)

        assert report.comparison is None
        assert report.top_platform is None
        assert report.avg_order_value == 0
