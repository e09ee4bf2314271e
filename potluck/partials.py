"""HTMX partial route handlers for Potluck."""

from __future__ import annotations

from fastapi import Depends, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from .aggregator import aggregate_events
from .database import get_db
from .gateway import make_gateway
from .templating import templates
from .utils import utcnow
from .web import calendar_context


def event_board(request: Request, db: Session = Depends(get_db)):
    """Render the upcoming and past event lists."""
    gateway = make_gateway(db)
    board = aggregate_events(gateway.list_events(), gateway.list_rsvps(), utcnow())
    return templates.TemplateResponse(
        request,
        "partials/event_board.html",
        {"request": request, "board": board},
    )


def calendar_occurrences(request: Request):
    """Render the month-grouped calendar occurrence list."""
    return templates.TemplateResponse(
        request,
        "partials/calendar_occurrences.html",
        {"request": request, **calendar_context()},
    )


def register_partial_routes(app):
    """Register all partial routes on the FastAPI app."""
    app.get("/partials/events", response_class=HTMLResponse)(event_board)
    app.get("/partials/calendar", response_class=HTMLResponse)(calendar_occurrences)
