"""Restaurant model - ghost kitchen capability and capacity settings."""

from sqlalchemy import Boolean, Column, Float, Integer, JSON, String
from sqlalchemy.orm import relationship, validates

from ghost_kitchen.db.base import Base, TimestampMixin
from ghost_kitchen.models.validators import (
    hour_of_day, percentage, positive, validate_list,
)


class Restaurant(TimestampMixin, Base):
    """A dine-in restaurant that can switch into ghost kitchen mode."""
    __tablename__ = "restaurants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)

    # Ghost kitchen capability
    ghost_kitchen_enabled = Column(Boolean, default=False, nullable=False)
    max_concurrent_orders = Column(Integer, default=20, nullable=False)
    auto_disable_threshold = Column(Float, default=90.0, nullable=False)  # percent
    capacity_warning_threshold = Column(Float, default=75.0, nullable=False)  # percent
    enabled_platforms = Column(JSON, nullable=True)  # ["DOORDASH", "UBEREATS"]

    # Dine-in side, used to judge idle capacity
    seating_capacity = Column(Integer, default=50, nullable=False)
    open_hour = Column(Integer, default=11, nullable=False)
    close_hour = Column(Integer, default=22, nullable=False)
    closed_days = Column(JSON, nullable=True)  # weekday numbers, Monday=0

    sessions = relationship("GhostKitchenSession", back_populates="restaurant")
    workers = relationship("WorkerProfile", back_populates="restaurant")

    @validates("max_concurrent_orders", "seating_capacity")
    def _validate_positive(self, key, value):
        return positive(key, value)

    @validates("auto_disable_threshold", "capacity_warning_threshold")
    def _validate_threshold(self, key, value):
        return percentage(key, value)

    @validates("open_hour", "close_hour")
    def _validate_hours(self, key, value):
        return hour_of_day(key, value)

    @validates("enabled_platforms", "closed_days")
    def _validate_lists(self, key, value):
        return validate_list(key, value)
