# config/settings.py
#
#   loading environment variables such as the database path and weather settings from .env

import os
from dotenv import load_dotenv

load_dotenv()  # loads .env into environment


def _number_from_env(name, default, cast):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise RuntimeError(f"{name} must not be negative, got {raw!r}")
    return value


# storage
DB_PATH = os.getenv("MARINA_DB_PATH", "marina_schedule.db")

# rules (unset = built-in defaults)
WEATHER_RULES_FILE = os.getenv("WEATHER_RULES_FILE")

# weather facts
WEATHER_SOURCE = os.getenv("WEATHER_SOURCE", "database").lower()
WEATHER_TIMEOUT_SECONDS = _number_from_env("WEATHER_TIMEOUT_SECONDS", 5.0, float)
WEATHER_CACHE_TTL_SECONDS = _number_from_env("WEATHER_CACHE_TTL_SECONDS", 900.0, float)
WEATHER_MAX_CONCURRENCY = _number_from_env("WEATHER_MAX_CONCURRENCY", 4, int)
WEATHER_MAX_RETRIES = _number_from_env("WEATHER_MAX_RETRIES", 2, int)
OPEN_METEO_URL = os.getenv("OPEN_METEO_URL", "https://api.open-meteo.com/v1/forecast")

# change feed webhook
CHANGE_FEED_SECRET = os.getenv("CHANGE_FEED_SECRET")

# checks
if WEATHER_SOURCE not in ("database", "open-meteo"):
    raise RuntimeError("WEATHER_SOURCE must be 'database' or 'open-meteo'")
if WEATHER_MAX_CONCURRENCY < 1:
    raise RuntimeError("WEATHER_MAX_CONCURRENCY must be at least 1")
