import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, Field

from trip_assistant.errors import SkillError, TransientSkillError
from trip_assistant.skills.base import SkillRequest

logger = logging.getLogger(__name__)

USER_AGENT = "TripAssistant/1.0"
GEOCODE_URL = "https://nominatim.openstreetmap.org/search"
FORECAST_URL = "https://api.met.no/weatherapi/locationforecast/2.0/compact"
GEOCODE_INTERVAL = 1.05
FORECAST_DAYS = 7


class ForecastDay(BaseModel):
    """One day of forecast aggregated in UTC."""
    date_utc: str = Field(..., description="Date in UTC, ISO format YYYY-MM-DD.")
    tmin_c: float = Field(..., description="Minimum air temperature (°C) in the day's timeseries.")
    tmax_c: float = Field(..., description="Maximum air temperature (°C) in the day's timeseries.")


class WeatherForecast(BaseModel):
    query: str = Field(..., description="The destination string that was geocoded.")
    place: str = Field(..., description="Resolved display name from geocoding.")
    lat: float
    lon: float
    timezone: str = "UTC"
    days: List[ForecastDay] = Field(default_factory=list, description="Up to 7 days of daily min/max temps.")


def aggregate_daily(timeseries: List[Dict[str, Any]], limit: int = FORECAST_DAYS) -> List[ForecastDay]:
    """Group forecast points by UTC date and keep the min/max air temperature per day."""
    daily: Dict[str, List[float]] = {}
    for item in timeseries:
        day = (
            datetime.fromisoformat(item["time"].replace("Z", "+00:00"))
            .astimezone(timezone.utc)
            .date()
            .isoformat()
        )
        temp = item["data"]["instant"]["details"].get("air_temperature")
        if isinstance(temp, (int, float)):
            if day not in daily:
                daily[day] = [float(temp), float(temp)]
            else:
                daily[day][0] = min(daily[day][0], float(temp))
                daily[day][1] = max(daily[day][1], float(temp))

    days = sorted(daily.keys())[:limit]
    return [ForecastDay(date_utc=d, tmin_c=daily[d][0], tmax_c=daily[d][1]) for d in days]


class WeatherForecastSkill:
    """7-day forecast for the trip destination (no API key required).

    Geocodes the destination with OpenStreetMap Nominatim, then fetches the MET
    Norway compact forecast. Geocoding is throttled to about one request per
    second. Timeouts, connection errors and 5xx responses are transient; an
    unknown place or a 4xx response is not.
    """

    name = "weather_forecast"
    intents: Tuple[str, ...] = ("travel_planning", "destination_info")

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        geocode_interval: float = GEOCODE_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client or httpx.AsyncClient(
            timeout=15.0,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        )
        self._geocode_interval = geocode_interval
        self._sleep = sleep
        self._geocode_lock = asyncio.Lock()
        self._last_geocode = 0.0

    def applies(self, request: SkillRequest) -> bool:
        return bool(request.requirements.destination)

    async def run(self, request: SkillRequest) -> Dict[str, Any]:
        destination = request.requirements.destination
        try:
            place, lat, lon = await self._geocode(destination)
            days = await self._forecast(place, lat, lon)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientSkillError(f"weather lookup for '{destination}' failed: {type(exc).__name__}") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status >= 500 or status == 429:
                raise TransientSkillError(f"weather service returned {status}") from exc
            raise SkillError(f"weather service returned {status}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise SkillError(str(exc)) from exc
        forecast = WeatherForecast(query=destination, place=place, lat=lat, lon=lon, days=days)
        return forecast.model_dump()

    async def _geocode(self, city: str) -> Tuple[str, float, float]:
        async with self._geocode_lock:
            elapsed = time.monotonic() - self._last_geocode
            if elapsed < self._geocode_interval:
                await self._sleep(self._geocode_interval - elapsed)
            self._last_geocode = time.monotonic()

        logger.info("Geocoding destination: %s", city)
        r = await self._client.get(GEOCODE_URL, params={"q": city, "format": "jsonv2", "limit": 1})
        r.raise_for_status()
        results = r.json()
        if not results:
            raise ValueError(f"Could not find '{city}'. Try 'City, Country' (e.g. 'Paris, France').")
        top = results[0]
        return top.get("display_name", city), float(top["lat"]), float(top["lon"])

    async def _forecast(self, place: str, lat: float, lon: float) -> List[ForecastDay]:
        logger.info("Fetching forecast for %s (%.4f, %.4f)", place, lat, lon)
        r = await self._client.get(FORECAST_URL, params={"lat": lat, "lon": lon})
        r.raise_for_status()
        return aggregate_daily(r.json()["properties"]["timeseries"])

    async def aclose(self) -> None:
        await self._client.aclose()
