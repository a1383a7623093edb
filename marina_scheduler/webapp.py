import asyncio
import json
import logging
import sqlite3
from datetime import date
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from config import settings
from marina_scheduler.api.weather import sync_site_forecast
from marina_scheduler.api.webhook_verify import (
    SIGNATURE_HEADER,
    parse_change_payload,
    verify_change_signature,
)
from marina_scheduler.engine import SchedulingEngine, build_engine
from marina_scheduler.errors import (
    ConcurrentModification,
    ConfigurationError,
    DataUnavailable,
    InvalidState,
    NotFound,
    SchedulingError,
)
from marina_scheduler.logging_config import setup_logging
from marina_scheduler.models import InterventionType, Site, Task, TaskStatus
from marina_scheduler.timezone_utils import today, week_start_for

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = {
    NotFound: 404,
    InvalidState: 409,
    ConcurrentModification: 409,
    DataUnavailable: 503,
    ConfigurationError: 500,
}


# -------------------
# REQUEST BODIES
# -------------------
class RescheduleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_date: date = Field(alias="newDate")
    # date the caller saw the task on; a mismatch is a concurrent modification
    expected_date: Optional[date] = Field(default=None, alias="expectedDate")


class TaskCreate(BaseModel):
    id: str
    title: str
    scheduled_date: date
    site_id: str
    status: TaskStatus = TaskStatus.SCHEDULED
    intervention_type: InterventionType = InterventionType.PREVENTIVE
    description: str = ""
    technician_id: Optional[str] = None
    boat_id: Optional[str] = None


class StatusUpdate(BaseModel):
    status: TaskStatus


class SiteIn(BaseModel):
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None


def site_to_dict(site: Site) -> dict:
    return {"id": site.id, "name": site.name, "latitude": site.latitude, "longitude": site.longitude}


def week_response(site_id: str, week_start: date, days) -> dict:
    return {
        "site_id": site_id,
        "week_start": week_start.isoformat(),
        "days": [group.to_dict() for group in days.values()],
    }


def create_app(engine: SchedulingEngine = None, change_feed_secret: Optional[str] = None) -> FastAPI:
    """
    Build the caller-facing API.

    Args:
        engine: scheduling engine (default: built from settings)
        change_feed_secret: HMAC secret for /webhooks/task-changes (default CHANGE_FEED_SECRET)
    """
    setup_logging()
    engine = engine or build_engine()
    secret = change_feed_secret if change_feed_secret is not None else settings.CHANGE_FEED_SECRET

    app = FastAPI(title="Marina maintenance scheduler")
    app.state.engine = engine

    @app.exception_handler(SchedulingError)
    async def scheduling_error_handler(request: Request, exc: SchedulingError):
        status_code = STATUS_BY_ERROR.get(type(exc), 400)
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.get("/health")
    async def health():
        return {"status": "ok", "rules": len(engine.rule_book.rules)}

    # -------------------
    # WEEK CALENDAR
    # -------------------
    @app.get("/weeks/current")
    async def current_week(site_id: str = Query(..., description="Marina base id")):
        week_start = week_start_for(today())
        days = await engine.planner.week(site_id, week_start)
        return week_response(site_id, week_start, days)

    @app.get("/weeks/{week_start}")
    async def get_week(week_start: date, site_id: str = Query(..., description="Marina base id")):
        """Day groups with severities for the week containing week_start (normalised to Monday)."""
        monday = week_start_for(week_start)
        days = await engine.planner.week(site_id, monday)
        return week_response(site_id, monday, days)

    @app.post("/weeks/{week_start}/sweep")
    async def sweep_week(week_start: date, site_id: str = Query(..., description="Marina base id")):
        """Apply every weather recommendation of the week; conflicts are reported, not retried."""
        monday = week_start_for(week_start)
        result = await engine.rescheduler.sweep_week(site_id, monday)
        return {"site_id": site_id, "week_start": monday.isoformat(), **result}

    # -------------------
    # TASKS
    # -------------------
    @app.post("/tasks", status_code=201)
    async def create_task(body: TaskCreate):
        try:
            task = engine.task_store.add_task(Task(**body.model_dump()))
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail=f"Task {body.id} already exists")
        return task.to_dict()

    @app.get("/tasks/{task_id}")
    async def get_task(task_id: str):
        return engine.task_store.get(task_id).to_dict()

    @app.get("/tasks/{task_id}/evaluation")
    async def evaluate_task(task_id: str):
        task = engine.task_store.get(task_id)
        evaluation = await engine.evaluator.evaluate(task, engine.rule_book.rules)
        return {"task": task.to_dict(), "evaluation": evaluation.to_dict()}

    @app.post("/tasks/{task_id}/reschedule")
    async def reschedule_task(task_id: str, body: RescheduleRequest):
        """Drag-and-drop move. Response is authoritative: reconcile local state from it."""
        result = await engine.rescheduler.reschedule(task_id, body.new_date, body.expected_date)
        return result.to_dict()

    @app.post("/tasks/{task_id}/apply-recommendation")
    async def apply_recommendation(task_id: str):
        result = await engine.rescheduler.apply_recommendation(task_id)
        return result.to_dict()

    @app.post("/tasks/{task_id}/status")
    async def update_status(task_id: str, body: StatusUpdate):
        return engine.task_store.set_status(task_id, body.status).to_dict()

    # -------------------
    # RULES
    # -------------------
    @app.get("/rules")
    async def list_rules():
        return {"rules": [rule.to_dict() for rule in engine.rule_book.rules]}

    @app.post("/rules/refresh")
    async def refresh_rules():
        rules = engine.rule_book.refresh()
        return {"status": "refreshed", "count": len(rules)}

    # -------------------
    # SITES / WEATHER
    # -------------------
    @app.get("/sites")
    async def list_sites():
        return {"sites": [site_to_dict(site) for site in engine.weather_store.list_sites()]}

    @app.put("/sites/{site_id}")
    async def put_site(site_id: str, body: SiteIn):
        site = engine.weather_store.add_site(Site(site_id, body.name, body.latitude, body.longitude))
        return site_to_dict(site)

    @app.post("/sites/{site_id}/weather/sync")
    async def sync_weather(site_id: str):
        site = engine.weather_store.get_site(site_id)
        if site is None:
            raise HTTPException(status_code=404, detail=f"Site {site_id} not found")
        if site.latitude is None or site.longitude is None:
            raise HTTPException(status_code=400, detail=f"Site {site_id} has no coordinates")

        result = await asyncio.to_thread(
            sync_site_forecast, engine.forecast_client, engine.weather_store, site, today()
        )
        # cached "no observation" answers for this site may now be wrong
        engine.evaluator.forget(site_id=site_id)
        engine.planner.invalidate_all()
        return result

    # -------------------
    # LIVE SYNC WEBHOOK
    # -------------------
    @app.post("/webhooks/task-changes")
    async def task_changes(request: Request):
        """Database change events for interventions; invalidates cached week views."""
        payload = await request.body()
        if not verify_change_signature(payload, request.headers.get(SIGNATURE_HEADER), secret):
            logger.warning("Rejected change event with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            change = parse_change_payload(json.loads(payload or b"null"))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid change payload: {e}")

        if change is None:
            return {"status": "ignored"}

        logger.info(f"Change event {change.kind.value} for task {change.task_id}")
        engine.feed.publish(change)
        return {"status": "accepted", "task_id": change.task_id, "kind": change.kind.value}

    return app
