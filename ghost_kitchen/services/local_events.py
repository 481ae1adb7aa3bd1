"""Local events and US holiday detection for demand forecasting."""

import logging
from datetime import date, datetime, time
from typing import Callable, List, Optional

from ghost_kitchen.core.config import settings
from ghost_kitchen.schemas.forecast import LocalEvent, LocalEventType

logger = logging.getLogger(__name__)

# Supplies nearby events for a restaurant and date (ticketing feed, manual entries)
EventSource = Callable[[int, date], List[LocalEvent]]

NOVEMBER = 11
THURSDAY = 3
SUNDAY = 6


def get_holidays(day: date) -> List[str]:
    """US holidays (simplified) falling on the given date."""
    holidays = []
    if day.month == 1 and day.day == 1:
        holidays.append("New Year's Day")
    if day.month == 7 and day.day == 4:
        holidays.append("Independence Day")
    if day.month == 12 and day.day == 25:
        holidays.append("Christmas")
    if day.month == 12 and day.day == 31:
        holidays.append("New Year's Eve")

    # Fourth Thursday of November
    if day.month == NOVEMBER and day.weekday() == THURSDAY and 22 <= day.day <= 28:
        holidays.append("Thanksgiving")

    # First Sunday of February
    if day.month == 2 and day.weekday() == SUNDAY and day.day <= 7:
        holidays.append("Super Bowl Sunday")

    return holidays


class LocalEventService:
    """Combines computed holidays with events from an optional external source."""

    def __init__(self, source: Optional[EventSource] = None, holiday_attendance: Optional[int] = None):
        self.source = source
        self.holiday_attendance = (
            holiday_attendance if holiday_attendance is not None
            else settings.holiday_expected_attendance
        )

    def get_events(self, restaurant_id: int, day: date) -> List[LocalEvent]:
        events = [
            LocalEvent(
                id=f"holiday-{name}",
                name=name,
                type=LocalEventType.HOLIDAY,
                start_time=datetime.combine(day, time.min),
                end_time=datetime.combine(day, time(23, 59, 59)),
                expected_attendance=self.holiday_attendance,
                distance_miles=0,
            )
            for name in get_holidays(day)
        ]

        if self.source is not None:
            try:
                events.extend(self.source(restaurant_id, day))
            except Exception as e:
                # Forecasts degrade to holidays only
                logger.warning(f"Event source failed for restaurant {restaurant_id} on {day}: {e}")

        return events
