# marina_scheduler/engine.py
#
# Builds the scheduling engine from settings: stores, weather provider, rules,
# evaluator, week planner, rescheduler and the live sync listener.

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from config import settings
from marina_scheduler.api.evaluator import SuitabilityEvaluator
from marina_scheduler.api.live_sync import ChangeFeed, LiveSyncListener
from marina_scheduler.api.rescheduler import Rescheduler
from marina_scheduler.api.rules import RuleBook, json_rule_source
from marina_scheduler.api.scheduler import WeekPlanner
from marina_scheduler.api.weather import DatabaseWeatherProvider, OpenMeteoWeatherProvider
from marina_scheduler.db import SqliteTaskStore, SqliteWeatherStore

logger = logging.getLogger(__name__)


@dataclass
class SchedulingEngine:
    task_store: SqliteTaskStore
    weather_store: SqliteWeatherStore
    forecast_client: OpenMeteoWeatherProvider
    rule_book: RuleBook
    evaluator: SuitabilityEvaluator
    planner: WeekPlanner
    rescheduler: Rescheduler
    feed: ChangeFeed
    listener: LiveSyncListener


def build_engine(db_path: str = None, rule_source: Optional[Callable[[], List[dict]]] = None,
                 provider=None, weather_source: str = None) -> SchedulingEngine:
    """
    Args:
        db_path: SQLite file (default MARINA_DB_PATH)
        rule_source: callable returning rule definitions (default WEATHER_RULES_FILE or built-ins)
        provider: weather fact provider overriding WEATHER_SOURCE
        weather_source: 'database' or 'open-meteo' (default WEATHER_SOURCE)

    Raises:
        ConfigurationError: the rule set is malformed (fatal at startup)
    """
    feed = ChangeFeed()
    task_store = SqliteTaskStore(db_path, feed=feed)
    weather_store = SqliteWeatherStore(db_path)

    attempts = settings.WEATHER_MAX_RETRIES + 1
    forecast_client = OpenMeteoWeatherProvider(
        weather_store,
        url=settings.OPEN_METEO_URL,
        http_timeout=settings.WEATHER_TIMEOUT_SECONDS / attempts,
        max_retries=settings.WEATHER_MAX_RETRIES,
    )

    if provider is None:
        source = (weather_source or settings.WEATHER_SOURCE).lower()
        provider = forecast_client if source == "open-meteo" else DatabaseWeatherProvider(weather_store)

    rule_book = RuleBook(rule_source or json_rule_source(settings.WEATHER_RULES_FILE))

    evaluator = SuitabilityEvaluator(
        provider,
        timeout=settings.WEATHER_TIMEOUT_SECONDS,
        cache_ttl=settings.WEATHER_CACHE_TTL_SECONDS,
        max_concurrency=settings.WEATHER_MAX_CONCURRENCY,
    )
    planner = WeekPlanner(task_store, evaluator, rule_book,
                          view_ttl=settings.WEATHER_CACHE_TTL_SECONDS)
    rule_book.on_refresh(planner.invalidate_all)

    rescheduler = Rescheduler(task_store, evaluator, rule_book, planner)
    listener = LiveSyncListener(planner).attach(feed)

    logger.info(
        f"Scheduling engine ready: db={task_store.db_path}, provider={type(provider).__name__}, "
        f"rules={len(rule_book.rules)}"
    )
    return SchedulingEngine(
        task_store=task_store,
        weather_store=weather_store,
        forecast_client=forecast_client,
        rule_book=rule_book,
        evaluator=evaluator,
        planner=planner,
        rescheduler=rescheduler,
        feed=feed,
        listener=listener,
    )
