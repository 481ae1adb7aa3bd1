"""Ghost kitchen models - sessions, delivery orders, forecasts, opportunity windows."""

from enum import Enum

from sqlalchemy import (
    Column, Date, DateTime, Enum as SQLEnum, Float, ForeignKey, Index, Integer,
    JSON, Numeric, String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship, validates

from ghost_kitchen.db.base import Base, TimestampMixin
from ghost_kitchen.models.validators import (
    hour_of_day, non_negative, percentage, positive, unit_interval,
    validate_dict, validate_list,
)


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ENDED = "ENDED"


OPEN_SESSION_STATUSES = (SessionStatus.ACTIVE, SessionStatus.PAUSED)


class SessionEndReason(str, Enum):
    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"
    CAPACITY = "CAPACITY"
    SYSTEM = "SYSTEM"
    ERROR = "ERROR"


class DeliveryPlatform(str, Enum):
    DOORDASH = "DOORDASH"
    UBEREATS = "UBEREATS"
    GRUBHUB = "GRUBHUB"


class GhostOrderStatus(str, Enum):
    RECEIVED = "RECEIVED"
    ACCEPTED = "ACCEPTED"
    PREPARING = "PREPARING"
    READY = "READY"
    PICKED_UP = "PICKED_UP"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


# Orders that count toward revenue
COMPLETED_ORDER_STATUSES = (GhostOrderStatus.PICKED_UP, GhostOrderStatus.COMPLETED)

ORDER_STATUS_TRANSITIONS = {
    GhostOrderStatus.RECEIVED: (GhostOrderStatus.ACCEPTED, GhostOrderStatus.REJECTED, GhostOrderStatus.CANCELLED),
    GhostOrderStatus.ACCEPTED: (GhostOrderStatus.PREPARING, GhostOrderStatus.CANCELLED),
    GhostOrderStatus.PREPARING: (GhostOrderStatus.READY, GhostOrderStatus.CANCELLED),
    GhostOrderStatus.READY: (GhostOrderStatus.PICKED_UP, GhostOrderStatus.CANCELLED),
    GhostOrderStatus.PICKED_UP: (GhostOrderStatus.COMPLETED,),
    GhostOrderStatus.COMPLETED: (),
    GhostOrderStatus.CANCELLED: (),
    GhostOrderStatus.REJECTED: (),
}


class OpportunityStatus(str, Enum):
    SUGGESTED = "SUGGESTED"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class GhostKitchenSession(TimestampMixin, Base):
    """One bounded window during which a restaurant accepts delivery orders."""
    __tablename__ = "ghost_kitchen_sessions"
    __table_args__ = (
        # At most one ACTIVE/PAUSED session per restaurant
        Index(
            "uq_ghost_session_open_per_restaurant",
            "restaurant_id",
            unique=True,
            sqlite_where=text("status IN ('ACTIVE', 'PAUSED')"),
            postgresql_where=text("status IN ('ACTIVE', 'PAUSED')"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    status = Column(SQLEnum(SessionStatus), nullable=False, default=SessionStatus.ACTIVE)

    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    paused_at = Column(DateTime, nullable=True)
    pause_end_time = Column(DateTime, nullable=True)  # auto-resume deadline
    pause_reason = Column(Text, nullable=True)
    scheduled_end_at = Column(DateTime, nullable=True)
    end_reason = Column(SQLEnum(SessionEndReason), nullable=True)
    started_by = Column(String(100), nullable=True)
    ended_by = Column(String(100), nullable=True)

    # Config snapshot taken at enable time, never rewritten afterwards
    config = Column(JSON, nullable=False)
    platforms = Column(JSON, nullable=False)
    max_orders = Column(Integer, nullable=False)

    # Running counters
    total_orders = Column(Integer, default=0, nullable=False)
    total_revenue = Column(Numeric(12, 2), default=0, nullable=False)
    total_prep_time = Column(Integer, default=0, nullable=False)  # seconds
    avg_prep_time = Column(Integer, nullable=True)  # seconds, set at end
    peak_concurrent_orders = Column(Integer, default=0, nullable=False)
    peak_utilization = Column(Float, default=0, nullable=False)
    platform_breakdown = Column(JSON, nullable=True)

    restaurant = relationship("Restaurant", back_populates="sessions")
    orders = relationship("GhostKitchenOrder", back_populates="session", cascade="all, delete-orphan")

    @validates("total_orders", "total_revenue", "total_prep_time", "peak_concurrent_orders")
    def _validate_counters(self, key, value):
        return non_negative(key, value)

    @validates("max_orders")
    def _validate_max_orders(self, key, value):
        return positive(key, value)

    @validates("peak_utilization")
    def _validate_utilization(self, key, value):
        return non_negative(key, value)

    @validates("config", "platform_breakdown")
    def _validate_dicts(self, key, value):
        return validate_dict(key, value)

    @validates("platforms")
    def _validate_platforms(self, key, value):
        return validate_list(key, value)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_SESSION_STATUSES


class GhostKitchenOrder(Base):
    """Delivery order received through a platform during a session."""
    __tablename__ = "ghost_kitchen_orders"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("ghost_kitchen_sessions.id"), nullable=False, index=True)
    external_order_id = Column(String(100), nullable=True)
    platform = Column(SQLEnum(DeliveryPlatform), nullable=False)
    status = Column(SQLEnum(GhostOrderStatus), nullable=False, default=GhostOrderStatus.RECEIVED)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    items = Column(JSON, nullable=True)

    received_at = Column(DateTime, nullable=False)
    accepted_at = Column(DateTime, nullable=True)
    prep_started_at = Column(DateTime, nullable=True)
    ready_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)

    session = relationship("GhostKitchenSession", back_populates="orders")

    @validates("total_amount")
    def _validate_amount(self, key, value):
        return non_negative(key, value)

    @validates("status")
    def _validate_status(self, key, value):
        current = self.status
        if current is not None and value != current and value not in ORDER_STATUS_TRANSITIONS[current]:
            raise ValueError(f"Order cannot move from {current.value} to {GhostOrderStatus(value).value}")
        return value

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_ORDER_STATUSES

    @property
    def prep_seconds(self):
        if self.prep_started_at and self.ready_at:
            return (self.ready_at - self.prep_started_at).total_seconds()
        return None


class DemandForecast(TimestampMixin, Base):
    """Stored hourly prediction, later joined with actuals for accuracy."""
    __tablename__ = "demand_forecasts"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "date", "hour_slot", name="uq_demand_forecast_slot"),
    )

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    hour_slot = Column(Integer, nullable=False)
    dine_in_forecast = Column(Integer, nullable=False, default=0)
    delivery_forecast = Column(Integer, nullable=False, default=0)
    weather_adjustment = Column(Float, nullable=False, default=0)
    event_adjustment = Column(Float, nullable=False, default=0)
    confidence = Column(Float, nullable=False, default=0)
    actual_dine_in = Column(Integer, nullable=True)
    actual_delivery = Column(Integer, nullable=True)

    @validates("hour_slot")
    def _validate_hour(self, key, value):
        return hour_of_day(key, value)

    @validates("confidence")
    def _validate_confidence(self, key, value):
        return unit_interval(key, value)

    @validates("dine_in_forecast", "delivery_forecast", "actual_dine_in", "actual_delivery")
    def _validate_counts(self, key, value):
        return non_negative(key, value)


class OpportunityWindow(TimestampMixin, Base):
    """Forecasted high-demand slot surfaced to managers for accept/decline."""
    __tablename__ = "opportunity_windows"

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    start_hour = Column(Integer, nullable=False)
    end_hour = Column(Integer, nullable=False)
    score = Column(Integer, nullable=False, default=0)
    status = Column(SQLEnum(OpportunityStatus), nullable=False, default=OpportunityStatus.SUGGESTED)
    forecasted_dine_in = Column(Integer, nullable=False, default=0)
    forecasted_orders = Column(Integer, nullable=False, default=0)
    recommended_staff = Column(Integer, nullable=False, default=1)
    potential_revenue = Column(Numeric(10, 2), nullable=False, default=0)
    confidence = Column(Float, nullable=False, default=0)
    actual_orders = Column(Integer, nullable=True)
    notified_at = Column(DateTime, nullable=True)
    responded_at = Column(DateTime, nullable=True)
    responded_by = Column(String(100), nullable=True)
    decline_reason = Column(Text, nullable=True)

    @validates("start_hour", "end_hour")
    def _validate_hours(self, key, value):
        return hour_of_day(key, value)

    @validates("score")
    def _validate_score(self, key, value):
        return percentage(key, value)
