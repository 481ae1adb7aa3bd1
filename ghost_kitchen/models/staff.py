"""Staff scheduling models - worker profiles, availability, time off, shifts."""

from enum import Enum

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Enum as SQLEnum, Float, ForeignKey, Integer,
    JSON, Numeric, String, Text,
)
from sqlalchemy.orm import relationship, validates

from ghost_kitchen.db.base import Base, TimestampMixin
from ghost_kitchen.models.validators import non_negative, validate_list


class Position(str, Enum):
    SERVER = "SERVER"
    BARTENDER = "BARTENDER"
    HOST = "HOST"
    LINE_COOK = "LINE_COOK"
    PREP_COOK = "PREP_COOK"
    DISHWASHER = "DISHWASHER"
    BUSSER = "BUSSER"
    EXPO = "EXPO"
    DELIVERY_PACK = "DELIVERY_PACK"
    MANAGER = "MANAGER"
    GENERAL_MANAGER = "GENERAL_MANAGER"


class ShiftType(str, Enum):
    DINE_IN = "DINE_IN"
    GHOST_KITCHEN = "GHOST_KITCHEN"
    HYBRID = "HYBRID"


class ShiftStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED_UNASSIGNED = "PUBLISHED_UNASSIGNED"
    PUBLISHED_OFFERED = "PUBLISHED_OFFERED"
    PUBLISHED_CLAIMED = "PUBLISHED_CLAIMED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class WorkerStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class WorkerRole(str, Enum):
    WORKER = "WORKER"
    MANAGER = "MANAGER"
    OWNER = "OWNER"


class TimeOffStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class WorkerProfile(TimestampMixin, Base):
    """A worker's membership of one restaurant."""
    __tablename__ = "worker_profiles"

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False, default="")
    role = Column(SQLEnum(WorkerRole), nullable=False, default=WorkerRole.WORKER)
    status = Column(SQLEnum(WorkerStatus), nullable=False, default=WorkerStatus.ACTIVE)
    positions = Column(JSON, nullable=False, default=list)  # Position values
    reliability_score = Column(Float, nullable=False, default=0)  # 0-5
    shifts_completed = Column(Integer, nullable=False, default=0)
    hourly_rate = Column(Numeric(8, 2), nullable=True)

    restaurant = relationship("Restaurant", back_populates="workers")
    certifications = relationship("WorkerCertification", back_populates="worker", cascade="all, delete-orphan")
    availability = relationship("WorkerAvailability", back_populates="worker", cascade="all, delete-orphan")
    time_off_requests = relationship("TimeOffRequest", back_populates="worker", cascade="all, delete-orphan")

    @validates("positions")
    def _validate_positions(self, key, value):
        return validate_list(key, value)

    @validates("hourly_rate", "shifts_completed", "reliability_score")
    def _validate_non_negative(self, key, value):
        return non_negative(key, value)

    def has_position(self, position: Position) -> bool:
        return position.value in (self.positions or [])


class WorkerCertification(Base):
    __tablename__ = "worker_certifications"

    id = Column(Integer, primary_key=True, index=True)
    worker_profile_id = Column(Integer, ForeignKey("worker_profiles.id"), nullable=False, index=True)
    type = Column(String(50), nullable=False)  # DELIVERY, FOOD_HANDLER, ...
    expires_at = Column(DateTime, nullable=True)

    worker = relationship("WorkerProfile", back_populates="certifications")


class WorkerAvailability(Base):
    """Recurring weekly availability preference (weekday Monday=0)."""
    __tablename__ = "worker_availability"

    id = Column(Integer, primary_key=True, index=True)
    worker_profile_id = Column(Integer, ForeignKey("worker_profiles.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(String(5), nullable=False)  # "HH:MM"
    end_time = Column(String(5), nullable=False)
    effective_from = Column(Date, nullable=False)
    effective_until = Column(Date, nullable=True)

    worker = relationship("WorkerProfile", back_populates="availability")

    @property
    def start_hour(self) -> int:
        return int(self.start_time.split(":")[0])

    @property
    def end_hour(self) -> int:
        return int(self.end_time.split(":")[0])


class TimeOffRequest(Base):
    __tablename__ = "time_off_requests"

    id = Column(Integer, primary_key=True, index=True)
    worker_profile_id = Column(Integer, ForeignKey("worker_profiles.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(SQLEnum(TimeOffStatus), nullable=False, default=TimeOffStatus.PENDING)
    reason = Column(Text, nullable=True)

    worker = relationship("WorkerProfile", back_populates="time_off_requests")


class Shift(TimestampMixin, Base):
    __tablename__ = "shifts"

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    position = Column(SQLEnum(Position), nullable=False)
    type = Column(SQLEnum(ShiftType), nullable=False, default=ShiftType.DINE_IN)
    status = Column(SQLEnum(ShiftStatus), nullable=False, default=ShiftStatus.DRAFT)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)
    break_minutes = Column(Integer, nullable=False, default=0)
    auto_approve = Column(Boolean, nullable=False, default=False)
    assigned_to_id = Column(Integer, ForeignKey("worker_profiles.id"), nullable=True, index=True)
    created_by_id = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)

    assigned_to = relationship("WorkerProfile")
    status_history = relationship("ShiftStatusHistory", back_populates="shift", cascade="all, delete-orphan")

    @validates("break_minutes")
    def _validate_break(self, key, value):
        return non_negative(key, value)

    @property
    def hours(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 3600

    def covers_hour(self, hour: int) -> bool:
        """True if the hour falls within [start, end) by clock hour."""
        return self.start_time.hour <= hour < self.end_hour

    @property
    def end_hour(self) -> int:
        # A shift ending at midnight the next day covers through 23:00
        if self.end_time.date() > self.start_time.date():
            return 24
        return self.end_time.hour


class ShiftStatusHistory(Base):
    __tablename__ = "shift_status_history"

    id = Column(Integer, primary_key=True, index=True)
    shift_id = Column(Integer, ForeignKey("shifts.id"), nullable=False, index=True)
    from_status = Column(String(30), nullable=False)  # "NONE" for creation
    to_status = Column(String(30), nullable=False)
    changed_by = Column(String(100), nullable=False)
    reason = Column(Text, nullable=True)
    changed_at = Column(DateTime, nullable=False)

    shift = relationship("Shift", back_populates="status_history")
