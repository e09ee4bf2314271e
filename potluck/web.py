"""Web route handlers for the shared-file pages and the community calendar."""

from __future__ import annotations

import logging
from calendar import Calendar
from datetime import date, datetime
from urllib.parse import quote

from dateutil.relativedelta import relativedelta
from fastapi import Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from sqlalchemy.orm import Session

from . import calendar_feed, crud
from .aggregator import events_by_day
from .calendar_feed import FeedError
from .config import settings
from .database import get_db
from .gateway import Gateway, make_gateway
from .templating import templates
from .uploads import UploadTooLargeError, read_file, read_upload
from .utils import ensure_utc, utcnow

logger = logging.getLogger("uvicorn.error")


def _recipes_page(
    request: Request, db: Session, *, message: str | None = None, status_code: int = 200
):
    return templates.TemplateResponse(
        request,
        "recipes.html",
        {
            "request": request,
            "recipes": crud.list_recipes(db),
            "max_bytes": settings.recipe_max_bytes,
            "message": message,
        },
        status_code=status_code,
    )


def _shared_content_page(
    request: Request, db: Session, *, message: str | None = None, status_code: int = 200
):
    return templates.TemplateResponse(
        request,
        "shared_content.html",
        {
            "request": request,
            "items": crud.list_shared_content(db),
            "max_bytes": settings.shared_content_max_bytes,
            "message": message,
        },
        status_code=status_code,
    )


def recipes_index(request: Request, db: Session = Depends(get_db)):
    """Render the recipe list with its upload form."""
    return _recipes_page(request, db)


def upload_recipe(
    request: Request,
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
        return _recipes_page(request, db, message=str(exc), status_code=413)
    except ValueError as exc:
        return _recipes_page(request, db, message=str(exc), status_code=400)
    logger.info("Uploaded recipe %s (%s)", recipe.id, recipe.file_name)
    return RedirectResponse(url="/recipes", status_code=303)


def delete_recipe(recipe_id: str, db: Session = Depends(get_db)):
    recipe = crud.get_recipe(db, recipe_id)
    if recipe is None:
        raise HTTPException(status_code=404, detail="Recipe not found")
    crud.delete_attachment(db, recipe)
    logger.info("Deleted recipe %s", recipe_id)
    return RedirectResponse(url="/recipes", status_code=303)


def shared_content_index(request: Request, db: Session = Depends(get_db)):
    """Render the shared-content list with its upload form."""
    return _shared_content_page(request, db)


def upload_shared_content(
    request: Request,
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
        return _shared_content_page(request, db, message=str(exc), status_code=413)
    except ValueError as exc:
        return _shared_content_page(request, db, message=str(exc), status_code=400)
    logger.info("Uploaded shared content %s (%s)", item.id, item.file_name)
    return RedirectResponse(url="/shared-content", status_code=303)


def delete_shared_content(content_id: str, db: Session = Depends(get_db)):
    item = crud.get_shared_content(db, content_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Shared content not found")
    crud.delete_attachment(db, item)
    logger.info("Deleted shared content %s", content_id)
    return RedirectResponse(url="/shared-content", status_code=303)


def _file_response(record) -> Response:
    try:
        body = read_file(record)
    except FileNotFoundError as exc:
        logger.warning("Attachment %s has no readable data: %s", record.id, exc)
        raise HTTPException(status_code=404, detail="File not found") from exc
    disposition = f"inline; filename*=UTF-8''{quote(record.file_name)}"
    return Response(
        content=body,
        media_type=record.content_type or "application/octet-stream",
        headers={"Content-Disposition": disposition},
    )


def download_recipe(recipe_id: str, db: Session = Depends(get_db)):
    recipe = crud.get_recipe(db, recipe_id)
    if recipe is None:
        raise HTTPException(status_code=404, detail="Recipe not found")
    return _file_response(recipe)


def download_shared_content(content_id: str, db: Session = Depends(get_db)):
    item = crud.get_shared_content(db, content_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Shared content not found")
    return _file_response(item)


def calendar_context() -> dict:
    """Load the feed and return template context for the calendar view.

    A missing or broken feed becomes an ``error`` message rather than an
    exception so the rest of the page still renders.
    """
    if not calendar_feed.settings.calendar_feed_url:
        return {"months": [], "error": "No calendar feed is configured.", "count": 0}
    try:
        occurrences = calendar_feed.load_occurrences()
    except FeedError:
        return {
            "months": [],
            "error": "The community calendar could not be loaded right now.",
            "count": 0,
        }
    return {
        "months": calendar_feed.group_by_month(occurrences),
        "error": None,
        "count": len(occurrences),
    }


def events_calendar_context(
    gateway: Gateway, day: date | None = None, *, now: datetime | None = None
) -> dict:
    """Month grid of our own events with the events of one selected day.

    Days are taken in the display time zone; ``day`` defaults to today there.
    """
    zone = calendar_feed.resolve_zone()
    today = ensure_utc(now or utcnow()).astimezone(zone).date()
    selected = day or today
    by_day = events_by_day(gateway.list_events(), zone)
    weeks = [
        [
            {
                "day": cell,
                "in_month": cell.month == selected.month,
                "has_events": cell in by_day,
                "is_selected": cell == selected,
                "is_today": cell == today,
            }
            for cell in week
        ]
        for week in Calendar(firstweekday=6).monthdatescalendar(
            selected.year, selected.month
        )
    ]
    first = selected.replace(day=1)
    return {
        "selected_day": selected,
        "day_events": by_day.get(selected, ()),
        "weeks": weeks,
        "month_label": first.strftime("%B %Y"),
        "previous_month": first - relativedelta(months=1),
        "next_month": first + relativedelta(months=1),
    }


def _parse_day(raw: str | None) -> date | None:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid day; use YYYY-MM-DD") from exc


def calendar_page(
    request: Request,
    day: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    """Render our own events by day next to the community feed."""
    context = {
        "request": request,
        **events_calendar_context(make_gateway(db), _parse_day(day)),
        **calendar_context(),
    }
    return templates.TemplateResponse(request, "calendar.html", context)


def register_web_routes(app):
    """Register web routes on the FastAPI app."""
    app.get("/recipes", response_class=HTMLResponse)(recipes_index)
    app.post("/recipes")(upload_recipe)
    app.post("/recipes/{recipe_id}/delete")(delete_recipe)
    app.get("/shared-content", response_class=HTMLResponse)(shared_content_index)
    app.post("/shared-content")(upload_shared_content)
    app.post("/shared-content/{content_id}/delete")(delete_shared_content)
    app.get("/files/recipes/{recipe_id}")(download_recipe)
    app.get("/files/shared-content/{content_id}")(download_shared_content)
    app.get("/calendar", response_class=HTMLResponse)(calendar_page)
