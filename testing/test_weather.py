# testing/test_weather.py
"""
Tests for weather fact providers, forecast sync, retry and the expiring cache.
HTTP calls to Open-Meteo are mocked.
"""
import sqlite3
from datetime import date
from unittest import mock
from unittest.mock import MagicMock

import pytest
import requests

from marina_scheduler.api.cache import ExpiringCache
from marina_scheduler.api.retry import retry_sync
from marina_scheduler.api.weather import (
    DatabaseWeatherProvider,
    OpenMeteoWeatherProvider,
    sync_site_forecast,
    weather_description,
)
from marina_scheduler.db import SqliteWeatherStore
from marina_scheduler.errors import DataUnavailable
from marina_scheduler.models import Site
from testing.mock_data import generate_open_meteo_daily, make_observation

SITE = Site("base-nord", "Port Nord", 43.3, 5.37)


def mock_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    return response


@pytest.fixture
def weather_store(tmp_path):
    store = SqliteWeatherStore(str(tmp_path / "test.db"))
    store.add_site(SITE)
    return store


@pytest.fixture
def client(weather_store):
    return OpenMeteoWeatherProvider(weather_store, url="https://meteo.test/v1/forecast",
                                    http_timeout=1.0, max_retries=2)


class TestWeatherCodes:

    def test_known_codes(self):
        assert weather_description(0) == "Clear sky"
        assert weather_description("95") == "Thunderstorm"

    def test_unknown_code(self):
        assert weather_description(42) == "Unknown"
        assert weather_description(None) == "Unknown"


class TestDatabaseWeatherProvider:

    def test_recorded_observation(self, weather_store):
        weather_store.record_observation(make_observation(day=date(2024, 6, 10), wind_speed=35))
        provider = DatabaseWeatherProvider(weather_store)

        observation = provider.get_observation("base-nord", date(2024, 6, 10))

        assert observation.wind_speed == 35

    def test_no_observation(self, weather_store):
        provider = DatabaseWeatherProvider(weather_store)
        assert provider.get_observation("base-nord", date(2024, 6, 10)) is None

    def test_storage_failure_is_data_unavailable(self):
        broken_store = MagicMock()
        broken_store.get_observation.side_effect = sqlite3.OperationalError("disk I/O error")
        provider = DatabaseWeatherProvider(broken_store)

        with pytest.raises(DataUnavailable):
            provider.get_observation("base-nord", date(2024, 6, 10))


class TestOpenMeteoWeatherProvider:

    def test_fetch_daily_parses_forecast(self, client):
        with mock.patch('marina_scheduler.api.weather.requests.get',
                        return_value=mock_response(200, generate_open_meteo_daily())) as get:
            observations = client.fetch_daily(SITE, date(2024, 6, 10), date(2024, 6, 12))

        params = get.call_args.kwargs["params"]
        assert params["latitude"] == 43.3
        assert params["start_date"] == "2024-06-10"
        assert get.call_args.kwargs["timeout"] == 1.0

        assert [o.date for o in observations] == [date(2024, 6, 10), date(2024, 6, 11), date(2024, 6, 12)]
        assert observations[1].condition == "Moderate rain"
        assert observations[1].precipitation == 12.5
        assert observations[2].condition == "Thunderstorm"
        assert observations[2].wind_speed == 60.0

    def test_get_observation_for_one_day(self, client):
        payload = generate_open_meteo_daily(start="2024-06-11", days=1)
        with mock.patch('marina_scheduler.api.weather.requests.get', return_value=mock_response(200, payload)):
            observation = client.get_observation("base-nord", date(2024, 6, 11))

        assert observation.date == date(2024, 6, 11)
        assert observation.site_id == "base-nord"

    def test_out_of_range_date_has_no_observation(self, client):
        response = mock_response(400, {"error": True, "reason": "start_date is out of allowed range"})
        with mock.patch('marina_scheduler.api.weather.requests.get', return_value=response):
            assert client.get_observation("base-nord", date(2030, 1, 1)) is None

    def test_unknown_site_has_no_observation(self, client):
        with mock.patch('marina_scheduler.api.weather.requests.get') as get:
            assert client.get_observation("base-inconnue", date(2024, 6, 10)) is None
        get.assert_not_called()

    @mock.patch('marina_scheduler.api.retry.time.sleep')
    def test_server_errors_retried_then_unavailable(self, _sleep, client):
        with mock.patch('marina_scheduler.api.weather.requests.get', return_value=mock_response(503)) as get:
            with pytest.raises(DataUnavailable):
                client.fetch_daily(SITE, date(2024, 6, 10), date(2024, 6, 10))

        assert get.call_count == 3

    def test_connection_errors_retried(self, client):
        responses = [requests.ConnectionError("reset"), mock_response(200, generate_open_meteo_daily(days=1))]
        with mock.patch('marina_scheduler.api.retry.time.sleep'), \
                mock.patch('marina_scheduler.api.weather.requests.get', side_effect=responses) as get:
            observations = client.fetch_daily(SITE, date(2024, 6, 10), date(2024, 6, 10))

        assert get.call_count == 2
        assert len(observations) == 1

    def test_timeout_exhausts_retries(self, client):
        with mock.patch('marina_scheduler.api.retry.time.sleep'), \
                mock.patch('marina_scheduler.api.weather.requests.get',
                           side_effect=requests.Timeout("read timed out")) as get:
            with pytest.raises(DataUnavailable):
                client.fetch_daily(SITE, date(2024, 6, 10), date(2024, 6, 10))

        assert get.call_count == 3

    def test_malformed_response(self, client):
        with mock.patch('marina_scheduler.api.weather.requests.get',
                        return_value=mock_response(200, {"daily": {"time": ["2024-06-10"]}})):
            with pytest.raises(DataUnavailable):
                client.fetch_daily(SITE, date(2024, 6, 10), date(2024, 6, 10))


class TestSyncSiteForecast:

    def test_records_new_observations_only(self, client, weather_store):
        weather_store.record_observation(make_observation(day=date(2024, 6, 10), condition="Fog"))

        with mock.patch('marina_scheduler.api.weather.requests.get',
                        return_value=mock_response(200, generate_open_meteo_daily(days=3))):
            result = sync_site_forecast(client, weather_store, SITE, date(2024, 6, 10), days=3)

        assert result == {"site_id": "base-nord", "fetched": 3, "recorded": 2}
        # recorded observations are immutable
        assert weather_store.get_observation("base-nord", date(2024, 6, 10)).condition == "Fog"
        assert weather_store.get_observation("base-nord", date(2024, 6, 12)).condition == "Thunderstorm"


class TestRetry:

    def test_returns_first_success(self):
        calls = []

        @retry_sync(max_retries=2, sleep=lambda _: None, retry_on=(ValueError,))
        def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ValueError("not yet")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 2

    def test_other_exceptions_not_retried(self):
        calls = []

        @retry_sync(max_retries=2, sleep=lambda _: None, retry_on=(ValueError,))
        def broken():
            calls.append(1)
            raise KeyError("nope")

        with pytest.raises(KeyError):
            broken()
        assert len(calls) == 1

    def test_backoff_delays(self):
        delays = []

        @retry_sync(max_retries=3, initial_delay=0.5, max_delay=1.5, sleep=delays.append)
        def always_fails():
            raise RuntimeError("down")

        with pytest.raises(RuntimeError):
            always_fails()
        assert delays == [0.5, 1.0, 1.5]


class TestExpiringCache:

    def test_entries_expire(self):
        now = [100.0]
        cache = ExpiringCache(ttl=10, clock=lambda: now[0])
        cache.set("k", "v")

        assert cache.get("k") == "v"
        now[0] = 110.0
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_none_is_a_value(self):
        cache = ExpiringCache()
        cache.set("k", None)
        assert "k" in cache
        assert cache.get("k", "default") is None

    def test_invalidate_where(self):
        cache = ExpiringCache()
        for key in [("a", 1), ("a", 2), ("b", 1)]:
            cache.set(key, True)

        assert cache.invalidate_where(lambda key, _: key[0] == "a") == 2
        assert cache.keys() == [("b", 1)]
