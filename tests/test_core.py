"""
Tests for shared infrastructure: cache, clock, locks, rounding, settings,
event fan-out and the outbound HTTP adapters.
"""

import json
import logging
import threading
import time

import httpx
import pytest
from datetime import datetime
from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from ghost_kitchen.core.cache import CacheKeys, RedisCacheClient, SimpleCache
from ghost_kitchen.core.clock import FrozenClock, system_clock
from ghost_kitchen.core.config import Settings
from ghost_kitchen.core.exceptions import GhostKitchenError, InvalidStateError, NotFoundError
from ghost_kitchen.core.locks import RestaurantLocks
from ghost_kitchen.core.logging_config import JSONFormatter, configure_logging
from ghost_kitchen.core.rounding import round_half_up, round_to
from ghost_kitchen.db import session as db_session_module
from ghost_kitchen.models import DeliveryPlatform, Restaurant
from ghost_kitchen.services.notification_service import NotificationService, NotificationTemplate
from ghost_kitchen.services.platform_gateway import PlatformGateway, PlatformGatewayError
from ghost_kitchen.services.realtime import EventPublisher, EventType, restaurant_channel


class TestSimpleCache:
    """Test the in-process cache."""

    def test_set_get_delete(self):
        cache = SimpleCache()
        cache.set("ghost:1", {"current_orders": 3})
        assert cache.get("ghost:1") == {"current_orders": 3}

        cache.delete("ghost:1")
        assert cache.get("ghost:1") is None

    def test_returns_copies(self):
        cache = SimpleCache()
        cache.set("ghost:1", {"current_orders": 3})
        cache.get("ghost:1")["current_orders"] = 99
        assert cache.get("ghost:1") == {"current_orders": 3}

    def test_expiry(self):
        cache = SimpleCache()
        cache.set("short", [1], ttl_seconds=0)
        cache.set("forever", [2], ttl_seconds=None)
        time.sleep(0.01)

        assert cache.get("short") is None
        assert cache.get("forever") == [2]

    def test_clear_prefix_and_stats(self):
        cache = SimpleCache()
        cache.set("forecast:patterns:1", [])
        cache.set("forecast:patterns:2", [])
        cache.set("ghost:1", {})

        cache.clear_prefix("forecast:")

        assert cache.stats() == {"total_keys": 1, "valid_keys": 1, "expired_keys": 0}
        cache.clear()
        assert cache.stats()["total_keys"] == 0

    def test_datetimes_serialised_as_strings(self):
        cache = SimpleCache()
        cache.set("k", {"at": datetime(2026, 3, 10, 18, 0)})
        assert cache.get("k") == {"at": "2026-03-10 18:00:00"}


class TestRedisCacheClient:
    """Test the client without a Redis server."""

    def test_falls_back_to_memory(self):
        fallback = SimpleCache()
        client = RedisCacheClient(fallback=fallback)
        client.initialize(None)

        client.set("ghost:7", {"x": 1}, ttl_seconds=None)

        assert client.connected is False
        assert fallback.get("ghost:7") == {"x": 1}
        client.invalidate_pattern("ghost:*")
        assert client.get("ghost:7") is None

    def test_unreachable_redis(self):
        client = RedisCacheClient(fallback=SimpleCache())
        client.initialize("redis://127.0.0.1:1/0")
        assert client.connected is False

    def test_keys(self):
        assert CacheKeys.ghost_session(5) == "ghost:5"
        assert CacheKeys.forecast_patterns(5) == "forecast:patterns:5"
        assert CacheKeys.weather_forecast(40.7128, -73.99, 2) == "weather:forecast:40.71:-73.99:2"


class TestClockAndLocks:

    def test_frozen_clock(self):
        clock = FrozenClock(datetime(2026, 3, 10, 18, 0))
        assert clock.advance(minutes=30) == datetime(2026, 3, 10, 18, 30)
        clock.set(datetime(2026, 1, 1))
        assert clock.now() == datetime(2026, 1, 1)

    def test_system_clock_is_naive(self):
        assert system_clock.now().tzinfo is None

    def test_one_lock_per_restaurant(self):
        locks = RestaurantLocks()
        assert locks.get(1) is locks.get(1)
        assert locks.get(1) is not locks.get(2)
        assert len(locks) == 2

    def test_lock_is_reentrant(self):
        lock = RestaurantLocks().get(1)
        with lock:
            with lock:
                pass

    def test_lock_excludes_other_threads(self):
        locks = RestaurantLocks()
        acquired = []

        with locks.get(1):
            thread = threading.Thread(target=lambda: acquired.append(locks.get(1).acquire(timeout=0.05)))
            thread.start()
            thread.join()

        assert acquired == [False]


class TestRounding:

    @pytest.mark.parametrize("value,expected", [(12.5, 13), (12.49, 12), (2.5, 3), (0.0, 0), (-0.5, 0)])
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected

    def test_round_to(self):
        assert round_to(33.3333) == 33.33
        assert round_to(0.125) == 0.13
        assert round_to(74.41176, 1) == 74.4


class TestErrors:

    def test_not_found_message(self):
        error = NotFoundError("Session", 404)
        assert str(error) == "Session not found: 404"
        assert error.entity == "Session"
        assert isinstance(error, GhostKitchenError)

    def test_invalid_state(self):
        error = InvalidStateError("Ghost mode is already active")
        assert error.message == "Ghost mode is already active"
        assert not isinstance(error, NotFoundError)


class TestSettings:

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.ghost_default_max_orders == 20
        assert settings.ghost_default_packaging_cost == 1.5
        assert settings.ghost_default_hourly_rate == 15
        assert settings.forecast_lookback_weeks == 8

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("GHOST_DEFAULT_MAX_ORDERS", "35")
        assert Settings(_env_file=None).ghost_default_max_orders == 35

    @pytest.mark.parametrize("field,value", [
        ("ghost_auto_disable_threshold", 120),
        ("ghost_capacity_warning_threshold", -1),
        ("forecast_pattern_cache_ttl", 0),
    ])
    def test_validation(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})


class TestLogging:

    def test_json_formatter(self):
        record = logging.LogRecord("ghost_kitchen.jobs", logging.INFO, __file__, 10, "Ended %s", (3,), None)
        payload = json.loads(JSONFormatter().format(record))
        assert payload["level"] == "INFO"
        assert payload["msg"] == "Ended 3"
        assert payload["logger"] == "ghost_kitchen.jobs"

    def test_configure_logging(self):
        root = logging.getLogger()
        saved = (root.level, list(root.handlers))
        try:
            configure_logging(Settings(_env_file=None, log_level="WARNING"))
            assert root.level == logging.WARNING
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
        finally:
            root.setLevel(saved[0])
            root.handlers[:] = saved[1]


class TestSessionScope:

    def test_commit_and_rollback(self, db_engine, monkeypatch):
        monkeypatch.setattr(db_session_module, "SessionLocal", sessionmaker(bind=db_engine, autoflush=False))

        with db_session_module.session_scope() as db:
            db.add(Restaurant(name="Committed"))

        with pytest.raises(RuntimeError):
            with db_session_module.session_scope() as db:
                db.add(Restaurant(name="Rolled Back"))
                raise RuntimeError("job failed")

        db = next(db_session_module.get_db())
        assert [r.name for r in db.query(Restaurant).all()] == ["Committed"]
        db.close()


class TestEventPublisher:
    """Test channel fan-out."""

    def test_publish_to_channel(self):
        publisher = EventPublisher()
        received, other = [], []
        publisher.subscribe(restaurant_channel(1), received.append)
        publisher.subscribe(restaurant_channel(2), other.append)

        message = publisher.publish(1, EventType.SESSION_STARTED, {"session_id": 9})

        assert received == [message]
        assert other == []
        assert message.event == "session:started"
        assert json.loads(message.to_json())["data"] == {"session_id": 9}

    def test_failing_subscriber_is_skipped(self):
        publisher = EventPublisher()
        received = []

        def broken(message):
            raise RuntimeError("socket closed")

        publisher.subscribe("restaurant:1", broken)
        publisher.subscribe("restaurant:1", received.append)
        publisher.publish(1, EventType.CAPACITY_UPDATE, {})

        assert len(received) == 1
        assert publisher.get_stats()["failures"] == 1

    def test_unsubscribe(self):
        publisher = EventPublisher()
        received = []
        publisher.subscribe("restaurant:1", received.append)
        publisher.unsubscribe("restaurant:1", received.append)

        publisher.publish(1, EventType.SESSION_ENDED, {})

        assert received == []
        assert publisher.get_stats() == {"channels": 0, "subscribers": 0, "published": 1, "failures": 0}


class TestPlatformGateway:
    """Test the aggregator client over a mock transport."""

    def test_log_only_without_url(self):
        result = PlatformGateway(api_url="").set_accepting_orders(1, True, [DeliveryPlatform.DOORDASH])
        assert result.mode == "log"

    def test_posts_availability(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        client = httpx.Client(base_url="https://hub.test", transport=httpx.MockTransport(handler))
        gateway = PlatformGateway(api_url="https://hub.test", http_client=client)

        result = gateway.set_accepting_orders(3, False, [DeliveryPlatform.UBEREATS])

        assert result.mode == "api"
        assert requests[0].url.path == "/stores/3/availability"
        assert json.loads(requests[0].content) == {"accepting_orders": False, "platforms": ["UBEREATS"]}

    def test_error_raised(self):
        client = httpx.Client(
            base_url="https://hub.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        gateway = PlatformGateway(api_url="https://hub.test", http_client=client)

        with pytest.raises(PlatformGatewayError) as exc_info:
            gateway.set_accepting_orders(3, True, [DeliveryPlatform.DOORDASH])
        assert exc_info.value.platforms == [DeliveryPlatform.DOORDASH]


class TestNotificationService:
    """Test best-effort webhook notifications."""

    def test_log_only_without_webhook(self):
        service = NotificationService(webhook_url="")
        result = service.send(101, NotificationTemplate.GHOST_KITCHEN_STARTED, {"session_id": 1})
        assert result.success is True
        assert result.template_key == "GHOST_KITCHEN_STARTED"

    def test_failure_is_returned_not_raised(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        service = NotificationService(webhook_url="https://hooks.test/notify", http_client=client)

        result = service.send(101, NotificationTemplate.GHOST_KITCHEN_OPPORTUNITY, {})

        assert result.success is False
        assert result.error
        assert list(service.history) == [result]
