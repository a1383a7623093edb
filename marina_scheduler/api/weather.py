# marina_scheduler/api/weather.py
#
#   Weather fact providers: return the observation recorded (or forecast) for a
#   site on a given date.
#   - DatabaseWeatherProvider: observations already recorded in the database
#   - OpenMeteoWeatherProvider: live daily forecast from the Open-Meteo API
#   get_observation returns None when no fact exists for that day and raises
#   DataUnavailable when the source itself fails.

import logging
import sqlite3
from datetime import date, timedelta
from typing import List, Optional

import requests

from config.settings import OPEN_METEO_URL
from marina_scheduler.api.retry import retry_sync
from marina_scheduler.errors import DataUnavailable
from marina_scheduler.models import Site, WeatherObservation

logger = logging.getLogger(__name__)

DAILY_FIELDS = "temperature_2m_max,temperature_2m_min,precipitation_sum,windspeed_10m_max,weathercode"
FORECAST_DAYS = 7

# WMO weather interpretation codes used by Open-Meteo
WEATHER_CODES = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    56: "Light freezing drizzle",
    57: "Dense freezing drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    66: "Light freezing rain",
    67: "Heavy freezing rain",
    71: "Slight snow fall",
    73: "Moderate snow fall",
    75: "Heavy snow fall",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with slight hail",
    99: "Thunderstorm with heavy hail",
}


def weather_description(code) -> str:
    try:
        return WEATHER_CODES.get(int(code), "Unknown")
    except (TypeError, ValueError):
        return "Unknown"


class DatabaseWeatherProvider:
    """Reads recorded observations from the weather store."""

    def __init__(self, weather_store):
        self.weather_store = weather_store

    def get_observation(self, site_id: str, day: date) -> Optional[WeatherObservation]:
        try:
            return self.weather_store.get_observation(site_id, day)
        except sqlite3.Error as e:
            logger.warning(f"Observation lookup failed for {site_id} on {day}: {e}")
            raise DataUnavailable(
                f"Weather store unavailable: {e}",
                details={"site_id": site_id, "date": day.isoformat()},
            ) from e


class _RetryableStatus(requests.HTTPError):
    """5xx from Open-Meteo; worth another attempt."""


class OpenMeteoWeatherProvider:
    """
    Fetches daily forecasts for a site's coordinates.

    Args:
        weather_store: resolves site ids to coordinates
        url: Open-Meteo forecast endpoint
        http_timeout: seconds allowed per HTTP attempt
        max_retries: retries on connection errors, timeouts and 5xx
    """

    def __init__(self, weather_store, url: str = OPEN_METEO_URL, http_timeout: float = 5.0,
                 max_retries: int = 2):
        self.weather_store = weather_store
        self.url = url
        self.http_timeout = http_timeout
        self._request = retry_sync(
            max_retries=max_retries,
            retry_on=(requests.ConnectionError, requests.Timeout, _RetryableStatus),
        )(self._request_once)

    def _request_once(self, params: dict):
        response = requests.get(self.url, params=params, timeout=self.http_timeout)
        if response.status_code >= 500:
            raise _RetryableStatus(f"Open-Meteo returned {response.status_code}", response=response)
        return response

    def fetch_daily(self, site: Site, start: date, end: date) -> List[WeatherObservation]:
        """
        Daily observations for site between start and end (inclusive).
        Dates outside the forecast range yield an empty list.

        Raises:
            DataUnavailable: network failure, timeout, or unusable response
        """
        params = {
            "latitude": site.latitude,
            "longitude": site.longitude,
            "daily": DAILY_FIELDS,
            "timezone": "auto",
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
        }
        details = {"site_id": site.id, "start": start.isoformat(), "end": end.isoformat()}

        try:
            response = self._request(params)
        except requests.RequestException as e:
            raise DataUnavailable(f"Open-Meteo request failed: {e}", details=details) from e

        if response.status_code == 400:
            # Open-Meteo answers 400 for dates outside its forecast window
            reason = _safe_json(response).get("reason", "bad request")
            logger.info(f"No Open-Meteo data for {site.id} {start}..{end}: {reason}")
            return []
        if response.status_code != 200:
            raise DataUnavailable(f"Open-Meteo returned {response.status_code}", details=details)

        daily = _safe_json(response).get("daily")
        if not isinstance(daily, dict) or "time" not in daily:
            raise DataUnavailable("Open-Meteo response has no daily data", details=details)

        try:
            return [
                WeatherObservation(
                    site_id=site.id,
                    date=date.fromisoformat(day),
                    condition=weather_description(daily["weathercode"][i]),
                    temperature_min=float(daily["temperature_2m_min"][i]),
                    temperature_max=float(daily["temperature_2m_max"][i]),
                    wind_speed=_optional_float(daily.get("windspeed_10m_max"), i),
                    precipitation=_optional_float(daily.get("precipitation_sum"), i),
                )
                for i, day in enumerate(daily["time"])
                if daily["temperature_2m_min"][i] is not None and daily["temperature_2m_max"][i] is not None
            ]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise DataUnavailable(f"Malformed Open-Meteo response: {e}", details=details) from e

    def get_observation(self, site_id: str, day: date) -> Optional[WeatherObservation]:
        site = self.weather_store.get_site(site_id)
        if site is None or site.latitude is None or site.longitude is None:
            logger.debug(f"Site {site_id} has no coordinates; no observation for {day}")
            return None
        for observation in self.fetch_daily(site, day, day):
            if observation.date == day:
                return observation
        return None


def _safe_json(response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _optional_float(values, index):
    if not values or values[index] is None:
        return None
    return float(values[index])


def sync_site_forecast(provider: OpenMeteoWeatherProvider, weather_store, site: Site,
                       start: date, days: int = FORECAST_DAYS) -> dict:
    """
    Fetch the coming days' forecast for a site and record it as observations.
    Already recorded (site, date) observations are kept as they are.

    Returns:
        dict: {'site_id', 'fetched', 'recorded'}
    """
    observations = provider.fetch_daily(site, start, start + timedelta(days=days - 1))
    recorded = sum(1 for obs in observations if weather_store.record_observation(obs))
    logger.info(f"Weather sync for {site.id}: {len(observations)} fetched, {recorded} new")
    return {"site_id": site.id, "fetched": len(observations), "recorded": recorded}
