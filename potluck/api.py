"""FastAPI application for Potluck."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import calendar_feed, crud
from .aggregator import ATTENDANCE_STATUSES, EventBoard, EventGroup, aggregate_events
from .calendar_feed import FeedError
from .database import get_db
from .gateway import Gateway, make_gateway
from .ics import generate_ics
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .templating import STATIC_DIR, templates
from .uploads import UploadTooLargeError, read_upload
from .utils import parse_datetime, utcnow
from .config import settings

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


def _no_cache(response: Response) -> Response:
    """Prevent clients from caching dynamic pages so fresh data is shown."""
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"
    return response


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("potluck")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="Potluck", version=APP_VERSION, lifespan=lifespan)
app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")
templates.env.globals["app_version"] = APP_VERSION


def get_gateway(db: Session = Depends(get_db)) -> Gateway:
    return make_gateway(db)


def _wants_json(request: Request) -> bool:
    accept = (request.headers.get("accept") or "").lower()
    return request.url.path.startswith("/api/") or (
        "application/json" in accept and "text/html" not in accept
    )


def _render_error(request: Request, status_code: int, message: str | None):
    context = {
        "request": request,
        "status_code": status_code,
        "error_message": message or "Something went wrong.",
    }
    return templates.TemplateResponse(
        request, "error.html", context, status_code=status_code
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render HTTP errors as friendly pages unless JSON was requested."""
    if _wants_json(request):
        return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)
    detail = exc.detail if isinstance(exc.detail, str) else "Something went wrong."
    return _render_error(request, exc.status_code, detail)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    if _wants_json(request):
        return JSONResponse({"detail": detail}, status_code=status)
    return _render_error(request, status, detail)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    if _wants_json(request):
        return JSONResponse({"detail": jsonable_errors(exc)}, status_code=422)
    return _render_error(
        request,
        422,
        "Some of the fields were invalid. Please double-check and try again.",
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    if _wants_json(request):
        return JSONResponse({"detail": "Internal server error"}, status_code=500)
    return _render_error(
        request,
        500,
        "We hit a snag while processing that request. Please try again.",
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {key: value for key, value in error.items() if key in {"loc", "msg", "type"}}
        for error in exc.errors()
    ]


def _local_input_to_utc(raw: str, offset_minutes: str | None) -> datetime:
    """Turn a ``datetime-local`` form value into an aware UTC datetime.

    Browsers send the offset from ``Date.getTimezoneOffset()``; without it the
    value is read in the configured display time zone.
    """
    parsed = parse_datetime(raw)
    if parsed.tzinfo is not None:
        return parsed
    if offset_minutes not in (None, ""):
        try:
            offset = int(offset_minutes)
        except (TypeError, ValueError) as exc:
            raise ValueError("Invalid time zone offset") from exc
        return (parsed + timedelta(minutes=offset)).replace(
            tzinfo=UTC
        )
    return parsed.replace(tzinfo=calendar_feed.resolve_zone())


def _build_board(gateway: Gateway, now: datetime | None = None) -> tuple[EventBoard, list]:
    events = list(gateway.list_events())
    board = aggregate_events(events, gateway.list_rsvps(), now or utcnow())
    return board, events


def _render_home(
    request: Request,
    gateway: Gateway,
    *,
    message: str | None = None,
    message_class: str = "alert-danger",
    status_code: int = 200,
):
    board, events = _build_board(gateway)
    response = templates.TemplateResponse(
        request,
        "home.html",
        {
            "request": request,
            "board": board,
            "events": events,
            "attendance_choices": ATTENDANCE_STATUSES,
            "message": message,
            "message_class": message_class,
        },
        status_code=status_code,
    )
    return _no_cache(response)


def _redirect_home() -> RedirectResponse:
    return RedirectResponse(url="/", status_code=303)


def _serialize_event(event) -> dict:
    return {
        "id": event.id,
        "name": event.name,
        "date": event.date.isoformat(),
    }


def _serialize_rsvp(rsvp) -> dict:
    return {
        "id": rsvp.id,
        "event_id": rsvp.event_id,
        "name": rsvp.name,
        "food": rsvp.food,
        "content": rsvp.content,
        "attendance": rsvp.attendance,
        "created_at": rsvp.created_at.isoformat(),
    }


def _serialize_group(group: EventGroup) -> dict:
    return {
        "event": _serialize_event(group.event),
        "rsvps": [_serialize_rsvp(rsvp) for rsvp in group.rsvps],
        "tally": {
            "total": group.tally.total,
            "yes": group.tally.yes,
            "maybe": group.tally.maybe,
            "no": group.tally.no,
        },
    }


def _serialize_attachment(record, *, kind: str) -> dict:
    payload = {
        "id": record.id,
        "file_name": record.file_name,
        "file_url": record.file_url,
        "download_url": f"/files/{kind}/{record.id}",
        "content_type": record.content_type,
        "file_size": record.file_size,
        "upload_date": record.upload_date.isoformat(),
    }
    if kind == "recipes":
        payload["name"] = record.name
    else:
        payload["title"] = record.title
        payload["description"] = record.description or ""
    return payload


@app.get("/")
def homepage(request: Request, gateway: Gateway = Depends(get_gateway)):
    return _render_home(request, gateway)


@app.post("/events")
def submit_event(
    request: Request,
    name: str = Form(...),
    date: str = Form(...),
    timezone_offset_minutes: str | None = Form(None),
    gateway: Gateway = Depends(get_gateway),
):
    try:
        event_date = _local_input_to_utc(date, timezone_offset_minutes)
        event = gateway.create_event(name=name, date=event_date)
    except ValueError as exc:
        return _render_home(request, gateway, message=str(exc), status_code=400)
    logger.info("Created event %s (%s)", event.id, event.name)
    return _redirect_home()


@app.post("/events/{event_id}/delete")
def delete_event_view(event_id: str, gateway: Gateway = Depends(get_gateway)):
    if not gateway.delete_event(event_id):
        raise HTTPException(status_code=404, detail="Event not found")
    logger.info("Deleted event %s and its RSVPs", event_id)
    return _redirect_home()


@app.post("/rsvps")
def submit_rsvp(
    request: Request,
    event_id: str = Form(...),
    name: str = Form(...),
    attendance: str = Form("yes"),
    food: str | None = Form(None),
    content: str | None = Form(None),
    gateway: Gateway = Depends(get_gateway),
):
    try:
        rsvp = gateway.create_rsvp(
            event_id=event_id,
            name=name,
            attendance=attendance,
            food=food,
            content=content,
        )
    except ValueError as exc:
        return _render_home(request, gateway, message=str(exc), status_code=400)
    logger.info("Recorded RSVP %s for event %s", rsvp.id, rsvp.event_id)
    return _redirect_home()


@app.get("/rsvps/{rsvp_id}/edit")
def edit_rsvp_page(
    rsvp_id: str, request: Request, gateway: Gateway = Depends(get_gateway)
):
    rsvp = gateway.get_rsvp(rsvp_id)
    if rsvp is None:
        raise HTTPException(status_code=404, detail="RSVP not found")
    return templates.TemplateResponse(
        request,
        "rsvp_edit.html",
        {
            "request": request,
            "rsvp": rsvp,
            "event": gateway.get_event(rsvp.event_id),
            "attendance_choices": ATTENDANCE_STATUSES,
        },
    )


@app.post("/rsvps/{rsvp_id}")
def save_rsvp(
    rsvp_id: str,
    request: Request,
    name: str = Form(...),
    attendance: str = Form(...),
    food: str | None = Form(None),
    content: str | None = Form(None),
    gateway: Gateway = Depends(get_gateway),
):
    try:
        rsvp = gateway.update_rsvp(
            rsvp_id, name=name, attendance=attendance, food=food or "", content=content or ""
        )
    except ValueError as exc:
        current = gateway.get_rsvp(rsvp_id)
        if current is None:
            raise HTTPException(status_code=404, detail="RSVP not found") from exc
        return templates.TemplateResponse(
            request,
            "rsvp_edit.html",
            {
                "request": request,
                "rsvp": current,
                "event": gateway.get_event(current.event_id),
                "attendance_choices": ATTENDANCE_STATUSES,
                "message": str(exc),
            },
            status_code=400,
        )
    if rsvp is None:
        raise HTTPException(status_code=404, detail="RSVP not found")
    return _redirect_home()


@app.post("/rsvps/{rsvp_id}/delete")
def delete_rsvp_view(rsvp_id: str, gateway: Gateway = Depends(get_gateway)):
    if not gateway.delete_rsvp(rsvp_id):
        raise HTTPException(status_code=404, detail="RSVP not found")
    logger.info("Deleted RSVP %s", rsvp_id)
    return _redirect_home()


@app.get("/healthz")
def healthz(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok", "version": APP_VERSION}


class EventCreatePayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=crud.EVENT_NAME_MAX)
    date: datetime


class EventUpdatePayload(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=crud.EVENT_NAME_MAX)
    date: datetime | None = None


class EventDeletePayload(BaseModel):
    id: str = Field(..., min_length=1)


class RSVPCreatePayload(BaseModel):
    event_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=crud.RSVP_NAME_MAX)
    attendance: str = "yes"
    food: str | None = None
    content: str | None = None


class RSVPUpdatePayload(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=crud.RSVP_NAME_MAX)
    attendance: str | None = None
    food: str | None = None
    content: str | None = None


@app.get("/api/v1/events")
def api_list_events(gateway: Gateway = Depends(get_gateway)):
    board, _ = _build_board(gateway)
    return {
        "upcoming": [_serialize_group(group) for group in board.upcoming],
        "past": [_serialize_group(group) for group in board.past],
    }


@app.post("/api/v1/events", status_code=201)
def api_create_event(payload: EventCreatePayload, gateway: Gateway = Depends(get_gateway)):
    try:
        event = gateway.create_event(name=payload.name, date=payload.date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Created event %s (%s) via API", event.id, event.name)
    return _serialize_event(event)


@app.delete("/api/v1/events")
def api_delete_event_by_body(
    payload: EventDeletePayload, gateway: Gateway = Depends(get_gateway)
):
    if not gateway.delete_event(payload.id):
        raise HTTPException(status_code=404, detail="Event not found")
    logger.info("Deleted event %s via API", payload.id)
    return {"message": "Event deleted successfully"}


@app.get("/api/v1/events/{event_id}")
def api_get_event(event_id: str, gateway: Gateway = Depends(get_gateway)):
    event = gateway.get_event(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    rsvps = [rsvp for rsvp in gateway.list_rsvps() if rsvp.event_id == event.id]
    payload = _serialize_event(event)
    payload["rsvps"] = [_serialize_rsvp(rsvp) for rsvp in rsvps]
    return payload


@app.patch("/api/v1/events/{event_id}")
def api_update_event(
    event_id: str, payload: EventUpdatePayload, gateway: Gateway = Depends(get_gateway)
):
    try:
        event = gateway.update_event(event_id, name=payload.name, date=payload.date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return _serialize_event(event)


@app.delete("/api/v1/events/{event_id}", status_code=204)
def api_delete_event(event_id: str, gateway: Gateway = Depends(get_gateway)):
    if not gateway.delete_event(event_id):
        raise HTTPException(status_code=404, detail="Event not found")
    logger.info("Deleted event %s via API", event_id)
    return Response(status_code=204)


@app.get("/api/v1/events/{event_id}/event.ics")
def api_get_event_ics(event_id: str, gateway: Gateway = Depends(get_gateway)):
    event = gateway.get_event(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    rsvps = [rsvp for rsvp in gateway.list_rsvps() if rsvp.event_id == event.id]
    body = generate_ics(event, rsvps=rsvps)
    headers = {"Content-Disposition": f'attachment; filename="event_{event.id}.ics"'}
    return Response(content=body, media_type="text/calendar", headers=headers)


@app.get("/api/v1/rsvps")
def api_list_rsvps(
    event_id: str | None = Query(default=None),
    gateway: Gateway = Depends(get_gateway),
):
    rsvps = gateway.list_rsvps()
    if event_id:
        rsvps = [rsvp for rsvp in rsvps if rsvp.event_id == event_id]
    return [_serialize_rsvp(rsvp) for rsvp in rsvps]


@app.post("/api/v1/rsvps", status_code=201)
def api_create_rsvp(payload: RSVPCreatePayload, gateway: Gateway = Depends(get_gateway)):
    try:
        rsvp = gateway.create_rsvp(
            event_id=payload.event_id,
            name=payload.name,
            attendance=payload.attendance,
            food=payload.food,
            content=payload.content,
        )
    except ValueError as exc:
        status = 404 if str(exc) == "Event not found" else 400
        raise HTTPException(status_code=status, detail=str(exc)) from exc
    logger.info("Recorded RSVP %s for event %s via API", rsvp.id, rsvp.event_id)
    return _serialize_rsvp(rsvp)


@app.patch("/api/v1/rsvps/{rsvp_id}")
def api_update_rsvp(
    rsvp_id: str, payload: RSVPUpdatePayload, gateway: Gateway = Depends(get_gateway)
):
    try:
        rsvp = gateway.update_rsvp(rsvp_id, **payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if rsvp is None:
        raise HTTPException(status_code=404, detail="RSVP not found")
    return _serialize_rsvp(rsvp)


@app.delete("/api/v1/rsvps")
def api_delete_rsvp(
    id: str | None = Query(default=None),
    gateway: Gateway = Depends(get_gateway),
):
    if not id:
        raise HTTPException(status_code=400, detail="RSVP ID is required")
    if not gateway.delete_rsvp(id):
        raise HTTPException(status_code=404, detail="RSVP not found")
    logger.info("Deleted RSVP %s via API", id)
    return {"success": True}


@app.get("/api/v1/recipes")
def api_list_recipes(db: Session = Depends(get_db)):
    return [_serialize_attachment(item, kind="recipes") for item in crud.list_recipes(db)]


@app.post("/api/v1/recipes", status_code=201)
def api_upload_recipe(
    name: str = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    try:
        recipe = crud.create_recipe(
            db,
            name=name,
            file_name=file.filename or "",
            data=read_upload(file, settings.recipe_max_bytes),
            content_type=file.content_type,
        )
    except UploadTooLargeError as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Uploaded recipe %s (%s)", recipe.id, recipe.file_name)
    return _serialize_attachment(recipe, kind="recipes")


@app.delete("/api/v1/recipes")
def api_delete_recipe(
    id: str | None = Query(default=None), db: Session = Depends(get_db)
):
    if not id:
        raise HTTPException(status_code=400, detail="Recipe ID is required")
    recipe = crud.get_recipe(db, id)
    if recipe is None:
        raise HTTPException(status_code=404, detail="Recipe not found")
    crud.delete_attachment(db, recipe)
    logger.info("Deleted recipe %s", id)
    return {"success": True}


@app.get("/api/v1/shared-content")
def api_list_shared_content(db: Session = Depends(get_db)):
    return [
        _serialize_attachment(item, kind="shared-content")
        for item in crud.list_shared_content(db)
    ]


@app.post("/api/v1/shared-content", status_code=201)
def api_upload_shared_content(
    title: str = Form(...),
    description: str | None = Form(None),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    try:
        item = crud.create_shared_content(
            db,
            title=title,
            description=description,
            file_name=file.filename or "",
            data=read_upload(file, settings.shared_content_max_bytes),
            content_type=file.content_type,
        )
    except UploadTooLargeError as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Uploaded shared content %s (%s)", item.id, item.file_name)
    return _serialize_attachment(item, kind="shared-content")


@app.delete("/api/v1/shared-content")
def api_delete_shared_content(
    id: str | None = Query(default=None), db: Session = Depends(get_db)
):
    if not id:
        raise HTTPException(status_code=400, detail="Content ID is required")
    item = crud.get_shared_content(db, id)
    if item is None:
        raise HTTPException(status_code=404, detail="Shared content not found")
    crud.delete_attachment(db, item)
    logger.info("Deleted shared content %s", id)
    return {"success": True}


@app.get("/api/v1/calendar")
def api_calendar():
    if not calendar_feed.settings.calendar_feed_url:
        raise HTTPException(status_code=503, detail="Calendar feed is not configured")
    try:
        occurrences = calendar_feed.load_occurrences()
    except FeedError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    window = calendar_feed.display_window(years=calendar_feed.settings.calendar_window_years)
    return {
        "window": {"start": window.start.isoformat(), "end": window.end.isoformat()},
        "occurrences": [occurrence.as_dict() for occurrence in occurrences],
    }


from .partials import register_partial_routes  # noqa: E402
from .web import register_web_routes  # noqa: E402

register_web_routes(app)
register_partial_routes(app)
