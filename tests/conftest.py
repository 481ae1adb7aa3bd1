"""Pytest configuration and fixtures."""

import pytest
from datetime import date, datetime, timedelta
from typing import Generator, List

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ghost_kitchen.core.cache import CacheKeys, RedisCacheClient, SimpleCache
from ghost_kitchen.core.clock import FrozenClock
from ghost_kitchen.core.locks import RestaurantLocks
from ghost_kitchen.db.base import Base
# Import all models to ensure they're registered with Base.metadata
from ghost_kitchen.models import *
from ghost_kitchen.schemas.forecast import HistoricalPattern, HourlyPattern
from ghost_kitchen.services.ghost_mode_service import GhostModeService
from ghost_kitchen.services.platform_gateway import PlatformGatewayError
from ghost_kitchen.services.realtime import EventPublisher

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

# Tuesday evening
NOW = datetime(2026, 3, 10, 18, 0)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class RecordingGateway:
    """Platform gateway that records calls and can be told to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def set_accepting_orders(self, restaurant_id, accepting, platforms):
        self.calls.append((restaurant_id, accepting, list(platforms)))
        if self.fail:
            raise PlatformGatewayError("Platform API returned 503", platforms)


class RecordingNotifications:
    def __init__(self):
        self.sent = []

    def send(self, user_id, template_key, payload):
        self.sent.append((user_id, template_key, payload))


class RecordingPublisher(EventPublisher):
    """Real publisher that also keeps every message it fans out."""

    def __init__(self):
        super().__init__()
        self.messages = []

    def publish(self, restaurant_id, event, data):
        message = super().publish(restaurant_id, event, data)
        self.messages.append(message)
        return message

    def events(self) -> List[str]:
        return [m.event for m in self.messages]


class StubWeather:
    """Weather provider returning fixed readings."""

    def __init__(self, readings=None):
        self.readings = readings or []
        self.calls = []

    def get_forecast(self, lat, lng, days=1):
        self.calls.append((lat, lng, days))
        return list(self.readings)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def cache() -> RedisCacheClient:
    """Cache client with no Redis connection, backed by a private in-memory store."""
    return RedisCacheClient(fallback=SimpleCache())


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def notifications() -> RecordingNotifications:
    return RecordingNotifications()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def locks() -> RestaurantLocks:
    return RestaurantLocks()


@pytest.fixture
def ghost_mode(db_session, cache, gateway, publisher, notifications, clock, locks) -> GhostModeService:
    return GhostModeService(
        db_session,
        cache=cache,
        gateway=gateway,
        publisher=publisher,
        notifications=notifications,
        clock=clock,
        locks=locks,
    )


# ---------------------------------------------------------------------------
# Data fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def restaurant(db_session: Session) -> Restaurant:
    """Create a ghost-kitchen-capable restaurant with capacity 10."""
    restaurant = Restaurant(
        name="Test Kitchen",
        ghost_kitchen_enabled=True,
        max_concurrent_orders=10,
        auto_disable_threshold=90,
        capacity_warning_threshold=75,
        enabled_platforms=["DOORDASH", "UBEREATS"],
        seating_capacity=50,
        open_hour=11,
        close_hour=22,
    )
    db_session.add(restaurant)
    db_session.commit()
    db_session.refresh(restaurant)
    return restaurant


@pytest.fixture
def make_worker(db_session: Session, restaurant: Restaurant):
    """Factory for worker profiles at the test restaurant."""
    counter = {"user_id": 100}

    def _make(first_name="Worker", positions=None, role=WorkerRole.WORKER, reliability_score=4.0,
              hourly_rate=None, status=WorkerStatus.ACTIVE, certifications=None):
        counter["user_id"] += 1
        worker = WorkerProfile(
            restaurant_id=restaurant.id,
            user_id=counter["user_id"],
            first_name=first_name,
            last_name="Test",
            role=role,
            status=status,
            positions=positions if positions is not None else [Position.DELIVERY_PACK.value],
            reliability_score=reliability_score,
            hourly_rate=hourly_rate,
        )
        for cert_type, expires_at in certifications or []:
            worker.certifications.append(WorkerCertification(type=cert_type, expires_at=expires_at))
        db_session.add(worker)
        db_session.commit()
        db_session.refresh(worker)
        return worker

    return _make


@pytest.fixture
def make_session(db_session: Session, restaurant: Restaurant):
    """Factory for stored sessions with orders; ended one hour after start by default."""

    def _make(started_at, ended_at=None, status=SessionStatus.ENDED, orders=None,
              platform_fees=None, packaging_cost=1.5, max_orders=10):
        if ended_at is None and status == SessionStatus.ENDED:
            ended_at = started_at + timedelta(hours=1)
        orders = orders or []
        session = GhostKitchenSession(
            restaurant_id=restaurant.id,
            status=status,
            started_at=started_at,
            ended_at=ended_at,
            end_reason=SessionEndReason.MANUAL if status == SessionStatus.ENDED else None,
            config={
                "max_orders": max_orders,
                "auto_accept": True,
                "min_prep_time": 15,
                "platforms": ["DOORDASH", "UBEREATS", "GRUBHUB"],
                "supply_packaging_cost": packaging_cost,
                "platform_fees": platform_fees,
                "end_time": None,
            },
            platforms=["DOORDASH", "UBEREATS", "GRUBHUB"],
            max_orders=max_orders,
            total_orders=len(orders),
            total_revenue=sum(o.get("amount", 0) for o in orders),
            total_prep_time=0,
            peak_concurrent_orders=0,
            peak_utilization=0,
            platform_breakdown={},
        )
        for order in orders:
            received_at = order.get("received_at", started_at + timedelta(minutes=10))
            session.orders.append(GhostKitchenOrder(
                platform=order.get("platform", DeliveryPlatform.DOORDASH),
                status=order.get("status", GhostOrderStatus.COMPLETED),
                total_amount=order.get("amount", 0),
                received_at=received_at,
                prep_started_at=order.get("prep_started_at"),
                ready_at=order.get("ready_at"),
                picked_up_at=order.get("picked_up_at"),
                cancelled_at=order.get("cancelled_at"),
            ))
        db_session.add(session)
        db_session.commit()
        db_session.refresh(session)
        return session

    return _make


@pytest.fixture
def make_shift(db_session: Session, restaurant: Restaurant):
    """Factory for stored shifts."""

    def _make(start_time, end_time, position=Position.DELIVERY_PACK, shift_type=ShiftType.GHOST_KITCHEN,
              status=ShiftStatus.COMPLETED, assigned_to=None):
        shift = Shift(
            restaurant_id=restaurant.id,
            position=position,
            type=shift_type,
            status=status,
            start_time=start_time,
            end_time=end_time,
            assigned_to_id=assigned_to.id if assigned_to is not None else None,
        )
        db_session.add(shift)
        db_session.commit()
        db_session.refresh(shift)
        return shift

    return _make


@pytest.fixture
def today() -> date:
    return NOW.date()


def seed_patterns(cache, restaurant_id, *patterns):
    """Put weekday/hour patterns straight into the forecaster's cache."""
    cache.set(
        CacheKeys.forecast_patterns(restaurant_id),
        [p.model_dump() for p in patterns],
        ttl_seconds=None,
    )


def tuesday_pattern(hour=18, avg_dine_in=20.0, avg_delivery=10.0, sample_count=8, std_dev=0.0):
    return HistoricalPattern(day_of_week=1, hourly_averages=[
        HourlyPattern(
            hour=hour,
            avg_dine_in=avg_dine_in,
            avg_delivery=avg_delivery,
            std_dev_dine_in=std_dev,
            std_dev_delivery=std_dev,
            sample_count=sample_count,
        ),
    ])


def afternoon_pattern(dine_in_by_hour=None, delivery=12, hours=range(14, 18)):
    """Tuesday history with a quiet dining room and steady delivery."""
    dine_in_by_hour = dine_in_by_hour or {}
    return HistoricalPattern(day_of_week=1, hourly_averages=[
        HourlyPattern(
            hour=h,
            avg_dine_in=dine_in_by_hour.get(h, 10),
            avg_delivery=delivery,
            std_dev_dine_in=0,
            std_dev_delivery=0,
            sample_count=10,
        )
        for h in hours
    ])
