"""
Real-time Event Publisher
Lifecycle, capacity and stats events scoped to a restaurant channel.

Transport (websocket, SSE, redis pub/sub) lives outside this package; it
subscribes a callable per channel and receives RealtimeMessage objects.
"""
import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Ghost kitchen event names"""
    SESSION_STARTED = "session:started"
    SESSION_PAUSED = "session:paused"
    SESSION_RESUMED = "session:resumed"
    SESSION_ENDED = "session:ended"
    SESSION_STATS = "session:stats"
    CAPACITY_UPDATE = "capacity:update"
    CAPACITY_WARNING = "capacity:warning"


@dataclass
class RealtimeMessage:
    """Standard event envelope"""
    event: str
    data: Dict[str, Any]
    restaurant_id: Optional[int] = None
    timestamp: Optional[str] = None

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).replace(tzinfo=None).isoformat()

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


Subscriber = Callable[[RealtimeMessage], None]


def restaurant_channel(restaurant_id: int) -> str:
    return f"restaurant:{restaurant_id}"


class EventPublisher:
    """
    In-process fan-out to channel subscribers.

    Publishing never raises: a failing subscriber is logged and skipped so
    a broken consumer cannot undo a state transition that already happened.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._lock = threading.Lock()
        self._published = 0
        self._failures = 0

    def subscribe(self, channel: str, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.setdefault(channel, []).append(callback)

    def unsubscribe(self, channel: str, callback: Subscriber) -> None:
        with self._lock:
            callbacks = self._subscribers.get(channel, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(channel, None)

    def publish(self, restaurant_id: int, event: EventType, data: Dict[str, Any]) -> RealtimeMessage:
        message = RealtimeMessage(event=event.value, data=data, restaurant_id=restaurant_id)
        channel = restaurant_channel(restaurant_id)
        with self._lock:
            callbacks = list(self._subscribers.get(channel, []))
            self._published += 1

        for callback in callbacks:
            try:
                callback(message)
            except Exception as e:
                with self._lock:
                    self._failures += 1
                logger.warning(f"Subscriber failed on {channel} for {event.value}: {e}")

        logger.debug(f"Published {event.value} to {channel} ({len(callbacks)} subscribers)")
        return message

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                "channels": len(self._subscribers),
                "subscribers": sum(len(v) for v in self._subscribers.values()),
                "published": self._published,
                "failures": self._failures,
            }


# Global publisher instance
event_publisher = EventPublisher()
