"""Ghost kitchen reporting schemas - revenue, costs, performance and periodic reports."""

from datetime import date
from typing import List, Optional

from pydantic import BaseModel

from ghost_kitchen.models.ghost_kitchen import DeliveryPlatform
from ghost_kitchen.schemas.ghost_kitchen import SessionPnL


class DailyRevenue(BaseModel):
    date: date
    revenue: float
    orders: int


class PlatformRevenue(BaseModel):
    platform: DeliveryPlatform
    orders: int
    revenue: float
    fees: float
    net_revenue: float
    avg_order_value: float
    avg_prep_time: Optional[float] = None  # seconds
    percent_of_total: int = 0


class DeliveryRevenue(BaseModel):
    total: float
    by_day: List[DailyRevenue]
    by_platform: List[PlatformRevenue]


class DailyLabor(BaseModel):
    date: date
    cost: float
    hours: float


class PlatformFeeTotal(BaseModel):
    platform: DeliveryPlatform
    fees: float


class DeliveryCosts(BaseModel):
    labor: float
    supplies: float
    platform_fees: float
    total: float
    labor_by_day: List[DailyLabor]
    fees_by_platform: List[PlatformFeeTotal]


class PlatformTotals(BaseModel):
    orders: int
    revenue: float
    fees: float
    net_revenue: float


class PlatformReport(BaseModel):
    platforms: List[PlatformRevenue]
    totals: PlatformTotals


class HourVolume(BaseModel):
    hour: int
    orders: int


class PerformanceMetrics(BaseModel):
    avg_prep_time: Optional[float] = None  # seconds
    order_accuracy: float  # percent
    avg_orders_per_session: float
    avg_revenue_per_session: float
    avg_session_duration: int  # minutes
    peak_hours: List[HourVolume]
    completion_rate: float
    cancellation_rate: float


class ForecastEstimate(BaseModel):
    predicted_orders: int
    predicted_revenue: float
    comparable_sessions: int


class ForecastVariance(BaseModel):
    orders_variance: int
    revenue_variance: float
    orders_variance_percent: int
    revenue_variance_percent: int


class ForecastComparison(BaseModel):
    """Actual session P&L next to the average of comparable past sessions."""
    actual: SessionPnL
    actual_orders: int
    forecast: Optional[ForecastEstimate] = None
    variance: Optional[ForecastVariance] = None


class PeriodSummary(BaseModel):
    total_sessions: int
    total_orders: int
    total_revenue: float
    total_costs: float
    net_profit: float
    profit_margin: float


class DayBreakdown(BaseModel):
    date: date
    day_of_week: str
    sessions: int
    orders: int
    revenue: float


class WeeklyReport(BaseModel):
    week_start: date
    week_end: date  # exclusive
    summary: PeriodSummary
    daily_breakdown: List[DayBreakdown]
    platform_breakdown: List[PlatformRevenue]
    top_performing_day: Optional[str] = None
    recommendations: List[str]


class WeekTrend(BaseModel):
    week_number: int
    orders: int
    revenue: float
    profit: float


class PeriodTotals(BaseModel):
    orders: int
    revenue: float
    profit: float


class MonthComparison(BaseModel):
    previous_month: PeriodTotals
    orders_growth: int
    revenue_growth: int
    profit_growth: int


class MonthlyReport(BaseModel):
    year: int
    month: int
    summary: PeriodSummary
    weekly_trend: List[WeekTrend]
    comparison: Optional[MonthComparison] = None
    top_platform: Optional[DeliveryPlatform] = None
    avg_order_value: float
