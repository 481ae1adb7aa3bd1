"""
Weather Service
Hourly weather forecasts from OpenWeatherMap One Call.

Forecasts are cached per rounded coordinate for an hour. Without an API
key, or when the provider fails, a neutral mock forecast (mild and
overcast, so no demand adjustment) is returned instead.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from ghost_kitchen.core.cache import CacheKeys, RedisCacheClient, redis_cache
from ghost_kitchen.core.clock import Clock, system_clock
from ghost_kitchen.core.config import settings
from ghost_kitchen.schemas.forecast import WeatherConditions

logger = logging.getLogger(__name__)


class WeatherService:
    """OpenWeatherMap client with caching and a mock fallback"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        cache: Optional[RedisCacheClient] = None,
        clock: Optional[Clock] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openweather_api_key
        self.base_url = settings.openweather_base_url
        self.cache = cache or redis_cache
        self.clock = clock or system_clock
        self._http_client = http_client

        if not self.api_key:
            logger.warning("OpenWeatherMap API key not configured - using mock forecasts")

    def _get_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=settings.http_timeout_seconds)
        return self._http_client

    def get_forecast(self, lat: float, lng: float, days: int = 1) -> List[WeatherConditions]:
        """Hourly conditions starting now, covering ``days`` days."""
        cache_key = CacheKeys.weather_forecast(lat, lng, days)
        cached = self.cache.get(cache_key)
        if cached:
            logger.debug(f"Forecast cache hit for {lat}, {lng}")
            return [WeatherConditions.model_validate(w) for w in cached]

        if not self.api_key:
            return self._mock_forecast(days)

        try:
            response = self._get_client().get(
                f"{self.base_url}/onecall",
                params={
                    "lat": lat,
                    "lon": lng,
                    "exclude": "minutely,alerts",
                    "units": "metric",
                    "appid": self.api_key,
                },
            )
            response.raise_for_status()
            hourly = self._parse_hourly(response.json().get("hourly", []), days)
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error(f"Failed to fetch forecast for {lat}, {lng}: {e}")
            return self._mock_forecast(days)

        self.cache.set(
            cache_key,
            [w.model_dump(mode="json") for w in hourly],
            settings.weather_forecast_cache_ttl,
        )
        return hourly

    def _parse_hourly(self, data: List[Dict[str, Any]], days: int) -> List[WeatherConditions]:
        conditions = []
        for hour in data[: days * 24]:
            snow = (hour.get("snow") or {}).get("1h", 0)
            weather = (hour.get("weather") or [{}])[0]
            conditions.append(WeatherConditions(
                # Provider timestamps are UTC epoch seconds
                timestamp=datetime.fromtimestamp(hour["dt"], tz=timezone.utc).replace(tzinfo=None),
                temperature=hour["temp"],
                precipitation=round((hour.get("pop") or 0) * 100),
                cloud_cover=hour.get("clouds", 0),
                snowfall=snow,
                condition=weather.get("description"),
                source="openweathermap",
            ))
        return conditions

    def _mock_forecast(self, days: int) -> List[WeatherConditions]:
        start = self.clock.now().replace(minute=0, second=0, microsecond=0)
        return [
            WeatherConditions(
                timestamp=start + timedelta(hours=i),
                temperature=18,
                precipitation=10,
                cloud_cover=50,
                snowfall=0,
                condition="overcast clouds",
                source="mock",
            )
            for i in range(days * 24)
        ]

    def close(self):
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None
