import logging
import sqlite3
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import List, Optional

from config.settings import DB_PATH
from marina_scheduler.errors import ConcurrentModification, InvalidState, NotFound
from marina_scheduler.models import (
    ChangeKind,
    InterventionType,
    Site,
    Task,
    TaskChange,
    TaskStatus,
    WeatherObservation,
    statuses_leading_to,
)
from marina_scheduler.timezone_utils import utc_timestamp, week_start_for

logger = logging.getLogger(__name__)

TASK_COLUMNS = (
    "id, title, description, scheduled_date, status, intervention_type, "
    "site_id, technician_id, boat_id, updated_at"
)


def init_db(db_path: str = None):
    """
    Initialize the database and ensure the tables exist.
    Tables:
      - interventions: scheduled tasks (scheduled_date is YYYY-MM-DD, never null)
      - sites: marina bases with coordinates for weather lookups
      - weather_observations: one immutable row per (site_id, observation_date)
    """
    with sqlite3.connect(db_path or DB_PATH) as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS interventions (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                scheduled_date TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'scheduled',
                intervention_type TEXT NOT NULL DEFAULT 'preventive',
                site_id TEXT NOT NULL,
                technician_id TEXT,
                boat_id TEXT,
                updated_at TEXT
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_interventions_site_date
            ON interventions (site_id, scheduled_date)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sites (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                latitude REAL,
                longitude REAL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS weather_observations (
                site_id TEXT NOT NULL,
                observation_date TEXT NOT NULL,
                condition TEXT NOT NULL,
                temperature_min REAL NOT NULL,
                temperature_max REAL NOT NULL,
                wind_speed REAL,
                precipitation REAL,
                recorded_at TEXT NOT NULL,
                PRIMARY KEY (site_id, observation_date)
            )
        """)


def calendar_day(value) -> str:
    """YYYY-MM-DD of a calendar date. A datetime (a date subclass) is refused."""
    if isinstance(value, datetime) or not isinstance(value, date):
        raise InvalidState(f"Scheduled date must be a calendar date, got {value!r}")
    return value.isoformat()


def _row_to_task(row) -> Task:
    (task_id, title, description, scheduled_date, status, intervention_type,
     site_id, technician_id, boat_id, updated_at) = row
    return Task(
        id=task_id,
        title=title,
        description=description or "",
        scheduled_date=date.fromisoformat(scheduled_date),
        status=TaskStatus(status),
        intervention_type=InterventionType(intervention_type),
        site_id=site_id,
        technician_id=technician_id,
        boat_id=boat_id,
        updated_at=updated_at,
    )


class SqliteTaskStore:
    """
    Task store over the interventions table.

    scheduled_date only changes through compare_and_swap_date. Every write is
    published on the optional change feed after it commits.
    """

    def __init__(self, db_path: str = None, feed=None):
        self.db_path = db_path or DB_PATH
        self.feed = feed
        init_db(self.db_path)

    def _connect(self):
        return sqlite3.connect(self.db_path)

    def _publish(self, change: TaskChange):
        if self.feed is not None:
            self.feed.publish(change)

    def add_task(self, task: Task) -> Task:
        """
        Create a task (planning staff).

        Raises:
            sqlite3.IntegrityError: duplicate id
            InvalidState: scheduled_date is not a calendar date
        """
        scheduled_day = calendar_day(task.scheduled_date)
        stamped = replace(task, updated_at=utc_timestamp())
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO interventions ({TASK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    stamped.id, stamped.title, stamped.description,
                    scheduled_day, stamped.status.value,
                    stamped.intervention_type.value, stamped.site_id,
                    stamped.technician_id, stamped.boat_id, stamped.updated_at,
                ),
            )
        self._publish(TaskChange(stamped.id, ChangeKind.INSERT, stamped.site_id,
                                 new_date=stamped.scheduled_date))
        return stamped

    def get(self, task_id: str) -> Task:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {TASK_COLUMNS} FROM interventions WHERE id = ?", (task_id,)
            ).fetchone()
        if row is None:
            raise NotFound(task_id)
        return _row_to_task(row)

    def list_by_week(self, site_id: str, week_start: date) -> List[Task]:
        """Tasks of a site scheduled Monday..Sunday of the given week, cancelled ones excluded."""
        start = week_start_for(week_start)
        end = start + timedelta(days=6)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                SELECT {TASK_COLUMNS} FROM interventions
                WHERE site_id = ? AND scheduled_date BETWEEN ? AND ? AND status != ?
                ORDER BY scheduled_date, id
                """,
                (site_id, start.isoformat(), end.isoformat(), TaskStatus.CANCELLED.value),
            )
            return [_row_to_task(row) for row in cursor.fetchall()]

    def compare_and_swap_date(self, task_id: str, expected_date: date, new_date: date) -> Task:
        """
        Atomically move a scheduled task from expected_date to new_date.

        Raises:
            NotFound: no such task
            InvalidState: the task is no longer scheduled, or a date is not a calendar date
            ConcurrentModification: the stored date is not expected_date anymore
        """
        new_day = calendar_day(new_date)
        expected_day = calendar_day(expected_date)
        updated_at = utc_timestamp()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE interventions SET scheduled_date = ?, updated_at = ?
                WHERE id = ? AND scheduled_date = ? AND status = ?
                """,
                (new_day, updated_at, task_id, expected_day, TaskStatus.SCHEDULED.value),
            )
            swapped = cursor.rowcount == 1
            if not swapped:
                row = conn.execute(
                    "SELECT scheduled_date, status FROM interventions WHERE id = ?", (task_id,)
                ).fetchone()

        if not swapped:
            if row is None:
                raise NotFound(task_id)
            actual_date, status = row
            if status != TaskStatus.SCHEDULED.value:
                raise InvalidState(
                    f"Task {task_id} is {status} and cannot be rescheduled",
                    details={"task_id": task_id, "status": status},
                )
            logger.warning(
                f"Date swap rejected for task {task_id}: expected {expected_date}, found {actual_date}"
            )
            raise ConcurrentModification(task_id, expected_date, actual_date)

        task = self.get(task_id)
        self._publish(TaskChange(task_id, ChangeKind.UPDATE, task.site_id,
                                 old_date=expected_date, new_date=new_date))
        return task

    def set_status(self, task_id: str, status: TaskStatus) -> Task:
        """
        Lifecycle transition (start, complete, cancel). Never touches scheduled_date.
        Only forward moves are allowed: completed and cancelled tasks stay that way.

        Raises:
            NotFound: no such task
            InvalidState: the transition goes backwards
        """
        status = TaskStatus(status)
        sources = [s.value for s in statuses_leading_to(status)]
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE interventions SET status = ?, updated_at = ?
                WHERE id = ? AND status IN ({", ".join("?" * len(sources))})
                """,
                (status.value, utc_timestamp(), task_id, *sources),
            )
            if cursor.rowcount == 0:
                row = conn.execute("SELECT status FROM interventions WHERE id = ?", (task_id,)).fetchone()
                if row is None:
                    raise NotFound(task_id)
                raise InvalidState(
                    f"Task {task_id} is {row[0]} and cannot become {status.value}",
                    details={"task_id": task_id, "status": row[0], "requested": status.value},
                )
        task = self.get(task_id)
        self._publish(TaskChange(task_id, ChangeKind.UPDATE, task.site_id,
                                 old_date=task.scheduled_date, new_date=task.scheduled_date))
        return task


class SqliteWeatherStore:
    """Sites and recorded weather observations."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path or DB_PATH
        init_db(self.db_path)

    def _connect(self):
        return sqlite3.connect(self.db_path)

    def add_site(self, site: Site) -> Site:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sites (id, name, latitude, longitude) VALUES (?, ?, ?, ?)",
                (site.id, site.name, site.latitude, site.longitude),
            )
        return site

    def get_site(self, site_id: str) -> Optional[Site]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, latitude, longitude FROM sites WHERE id = ?", (site_id,)
            ).fetchone()
        return Site(*row) if row else None

    def list_sites(self) -> List[Site]:
        with self._connect() as conn:
            cursor = conn.execute("SELECT id, name, latitude, longitude FROM sites ORDER BY id")
            return [Site(*row) for row in cursor.fetchall()]

    def record_observation(self, observation: WeatherObservation) -> bool:
        """
        Record an observation. An existing (site, date) row is never overwritten.
        Returns: True if a new row was inserted.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO weather_observations
                    (site_id, observation_date, condition, temperature_min, temperature_max,
                     wind_speed, precipitation, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    observation.site_id, observation.date.isoformat(), observation.condition,
                    observation.temperature_min, observation.temperature_max,
                    observation.wind_speed, observation.precipitation, utc_timestamp(),
                ),
            )
            return cursor.rowcount == 1

    def get_observation(self, site_id: str, day: date) -> Optional[WeatherObservation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT condition, temperature_min, temperature_max, wind_speed, precipitation
                FROM weather_observations WHERE site_id = ? AND observation_date = ?
                """,
                (site_id, day.isoformat()),
            ).fetchone()
        if row is None:
            return None
        condition, temperature_min, temperature_max, wind_speed, precipitation = row
        return WeatherObservation(
            site_id=site_id,
            date=day,
            condition=condition,
            temperature_min=temperature_min,
            temperature_max=temperature_max,
            wind_speed=wind_speed,
            precipitation=precipitation,
        )
