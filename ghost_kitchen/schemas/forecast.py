"""Demand forecasting schemas - weather, local events, patterns and hourly forecasts."""

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class WeatherConditions(BaseModel):
    """One time-stamped weather reading, normalised across providers."""
    timestamp: datetime
    temperature: float  # Celsius
    precipitation: float = Field(default=0, ge=0)  # probability, percent
    cloud_cover: float = Field(default=0, ge=0)  # percent
    snowfall: float = Field(default=0, ge=0)  # mm
    condition: Optional[str] = None
    source: str = "openweathermap"


class WeatherBucket(str, Enum):
    EXTREME = "extreme"
    HEAVY_RAIN = "heavyRain"
    RAIN = "rain"
    SNOW = "snow"
    SUNNY = "sunny"
    CLOUDY = "cloudy"


class LocalEventType(str, Enum):
    SPORTS = "SPORTS"
    CONCERT = "CONCERT"
    FESTIVAL = "FESTIVAL"
    CONVENTION = "CONVENTION"
    HOLIDAY = "HOLIDAY"
    OTHER = "OTHER"


class LocalEvent(BaseModel):
    id: str
    name: str
    type: LocalEventType
    start_time: datetime
    end_time: datetime
    expected_attendance: int = Field(ge=0)
    distance_miles: float = Field(ge=0)


class DemandAdjustment(BaseModel):
    """Fractional change applied to the dine-in and delivery baselines."""
    dine_in: float = 0
    delivery: float = 0

    @property
    def average(self) -> float:
        return (self.dine_in + self.delivery) / 2


class HourlyPattern(BaseModel):
    hour: int = Field(ge=0, le=23)
    avg_dine_in: float
    avg_delivery: float
    std_dev_dine_in: float
    std_dev_delivery: float
    sample_count: int


class HistoricalPattern(BaseModel):
    day_of_week: int = Field(ge=0, le=6)  # Monday=0
    hourly_averages: List[HourlyPattern]

    def for_hour(self, hour: int) -> Optional[HourlyPattern]:
        for pattern in self.hourly_averages:
            if pattern.hour == hour:
                return pattern
        return None


class HourlyForecast(BaseModel):
    hour: int = Field(ge=0, le=23)
    dine_in_forecast: int = Field(ge=0)
    delivery_forecast: int = Field(ge=0)
    confidence: float = Field(ge=0, le=1)
    weather_adjustment: float = 0
    event_adjustment: float = 0


class DailyForecast(BaseModel):
    date: date
    day_of_week: int
    hourly_forecasts: List[HourlyForecast]
    total_dine_in: int
    total_delivery: int
    peak_dine_in_hour: Optional[int] = None
    peak_delivery_hour: Optional[int] = None


class AccuracyMetrics(BaseModel):
    dine_in_mape: float
    delivery_mape: float
    dine_in_bias: float
    delivery_bias: float
    sample_count: int
