#testing/mock_data.py
import threading
import time
from datetime import date

from marina_scheduler.errors import DataUnavailable
from marina_scheduler.models import Task, TaskStatus, WeatherObservation


def make_task(task_id="1", scheduled_date=date(2024, 6, 10), site_id="base-nord", **kwargs):
    """
    Build an intervention
    params:
     - task_id (str): id, numeric strings sort numerically
     - scheduled_date (date): day of the intervention
     - site_id (str): marina base
    returns:
     - Task
    """
    kwargs.setdefault("title", f"Intervention {task_id}")
    kwargs.setdefault("status", TaskStatus.SCHEDULED)
    return Task(id=str(task_id), scheduled_date=scheduled_date, site_id=site_id, **kwargs)


def make_observation(day=date(2024, 6, 10), site_id="base-nord", condition="Clear sky",
                     temperature_min=14.0, temperature_max=22.0, wind_speed=10.0, precipitation=0.0):
    return WeatherObservation(
        site_id=site_id,
        date=day,
        condition=condition,
        temperature_min=temperature_min,
        temperature_max=temperature_max,
        wind_speed=wind_speed,
        precipitation=precipitation,
    )


def generate_open_meteo_daily(start="2024-06-10", days=3):
    """Open-Meteo style daily forecast payload for `days` consecutive days"""
    first = date.fromisoformat(start)
    times = [date.fromordinal(first.toordinal() + i).isoformat() for i in range(days)]
    return {
        "latitude": 43.3,
        "longitude": 5.37,
        "daily": {
            "time": times,
            "temperature_2m_max": [24.0 + i for i in range(days)],
            "temperature_2m_min": [15.0 + i for i in range(days)],
            "precipitation_sum": [0.0, 12.5, 0.4][:days] + [0.0] * max(0, days - 3),
            "windspeed_10m_max": [12.0, 20.0, 60.0][:days] + [5.0] * max(0, days - 3),
            "weathercode": [0, 63, 95][:days] + [1] * max(0, days - 3),
        },
    }


class FakeWeatherProvider:
    """In-memory provider: observations keyed by (site_id, date), counts calls"""

    def __init__(self, observations=()):
        self.observations = {(o.site_id, o.date): o for o in observations}
        self.calls = []
        self._lock = threading.Lock()

    def add(self, observation):
        self.observations[(observation.site_id, observation.date)] = observation

    def get_observation(self, site_id, day):
        with self._lock:
            self.calls.append((site_id, day))
        return self.observations.get((site_id, day))


class FailingWeatherProvider:
    def __init__(self, error=None):
        self.error = error or DataUnavailable("weather service down")
        self.calls = 0

    def get_observation(self, site_id, day):
        self.calls += 1
        raise self.error


class SlowWeatherProvider:
    def __init__(self, delay=0.5):
        self.delay = delay

    def get_observation(self, site_id, day):
        time.sleep(self.delay)
        return None


class CountingSlowProvider:
    """Slow provider recording how many calls were running at the same time"""

    def __init__(self, delay=0.3):
        self.delay = delay
        self.running = 0
        self.peak = 0
        self._lock = threading.Lock()

    def get_observation(self, site_id, day):
        with self._lock:
            self.running += 1
            self.peak = max(self.peak, self.running)
        try:
            time.sleep(self.delay)
        finally:
            with self._lock:
                self.running -= 1
        return None


def static_rules(*definitions):
    """Rule source returning fixed definitions"""
    return lambda: [dict(d) for d in definitions]
