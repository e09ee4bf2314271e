"""CRUD helpers for events, RSVPs, recipes and shared content."""

from __future__ import annotations

import uuid
from datetime import datetime
from functools import partial
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .aggregator import ATTENDANCE_STATUSES
from .database import on_commit, on_rollback
from .models import RSVP, Event, Recipe, SharedContent
from .uploads import remove_file, store_file
from .utils import parse_datetime, to_naive_utc, utcnow
from .config import settings

VALID_ATTENDANCE_STATUSES = set(ATTENDANCE_STATUSES)
# Earlier revisions stored "unsure" for the third state.
ATTENDANCE_ALIASES = {"unsure": "maybe"}

EVENT_NAME_MAX = 255
RSVP_NAME_MAX = 120
TITLE_MAX = 255


def _now() -> datetime:
    return utcnow()


def normalize_attendance(status: str | None) -> str:
    normalized = (status or "").strip().lower()
    normalized = ATTENDANCE_ALIASES.get(normalized, normalized)
    if normalized not in VALID_ATTENDANCE_STATUSES:
        raise ValueError(
            f"Invalid attendance {status!r}; expected one of: yes, no, maybe"
        )
    return normalized


def require_text(value: str | None, field: str, *, max_length: int) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValueError(f"{field} is required")
    if len(cleaned) > max_length:
        raise ValueError(f"{field} must be at most {max_length} characters")
    return cleaned


def optional_text(value: str | None) -> str:
    return (value or "").strip()


def normalize_event_date(value: str | datetime | None) -> datetime:
    """Return a naive UTC datetime for storage."""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError("Event date is required")
    return to_naive_utc(parse_datetime(value))


def list_events(session: Session) -> Sequence[Event]:
    stmt = (
        select(Event)
        .options(selectinload(Event.rsvps))
        .order_by(Event.date.asc())
    )
    return session.scalars(stmt).all()


def get_event(session: Session, event_id: str) -> Event | None:
    if not event_id:
        return None
    return session.get(Event, event_id)


def create_event(
    session: Session,
    *,
    name: str,
    date: str | datetime,
) -> Event:
    """Create and persist a new event."""
    event = Event(
        name=require_text(name, "Event name", max_length=EVENT_NAME_MAX),
        date=normalize_event_date(date),
        created_at=_now(),
    )
    session.add(event)
    session.flush()
    return event


def update_event(
    session: Session,
    event: Event,
    *,
    name: str | None = None,
    date: str | datetime | None = None,
) -> Event:
    if name is not None:
        event.name = require_text(name, "Event name", max_length=EVENT_NAME_MAX)
    if date is not None:
        event.date = normalize_event_date(date)
    session.add(event)
    session.flush()
    return event


def delete_event(session: Session, event: Event) -> None:
    """Delete an event; its RSVPs go with it."""
    session.delete(event)
    session.flush()


def list_rsvps(session: Session, event_id: str | None = None) -> Sequence[RSVP]:
    stmt = select(RSVP).order_by(RSVP.created_at.desc())
    if event_id:
        stmt = stmt.where(RSVP.event_id == event_id)
    return session.scalars(stmt).all()


def get_rsvp(session: Session, rsvp_id: str) -> RSVP | None:
    if not rsvp_id:
        return None
    return session.get(RSVP, rsvp_id)


def create_rsvp(
    session: Session,
    *,
    event_id: str,
    name: str,
    attendance: str,
    food: str | None = None,
    content: str | None = None,
) -> RSVP:
    """Create an RSVP for an existing event."""
    event = get_event(session, event_id)
    if event is None:
        raise ValueError("Event not found")
    rsvp = RSVP(
        event=event,
        name=require_text(name, "Name", max_length=RSVP_NAME_MAX),
        food=optional_text(food),
        content=optional_text(content),
        attendance=normalize_attendance(attendance),
        created_at=_now(),
        last_modified=_now(),
    )
    session.add(rsvp)
    session.flush()
    return rsvp


def update_rsvp(
    session: Session,
    rsvp: RSVP,
    *,
    name: str | None = None,
    food: str | None = None,
    content: str | None = None,
    attendance: str | None = None,
) -> RSVP:
    """Update the provided RSVP fields; ``created_at`` never changes."""
    if name is not None:
        rsvp.name = require_text(name, "Name", max_length=RSVP_NAME_MAX)
    if food is not None:
        rsvp.food = optional_text(food)
    if content is not None:
        rsvp.content = optional_text(content)
    if attendance is not None:
        rsvp.attendance = normalize_attendance(attendance)
    rsvp.last_modified = _now()
    session.add(rsvp)
    session.flush()
    return rsvp


def delete_rsvp(session: Session, rsvp: RSVP) -> None:
    session.delete(rsvp)
    session.flush()


def list_recipes(session: Session) -> Sequence[Recipe]:
    stmt = select(Recipe).order_by(Recipe.upload_date.desc())
    return session.scalars(stmt).all()


def get_recipe(session: Session, recipe_id: str) -> Recipe | None:
    if not recipe_id:
        return None
    return session.get(Recipe, recipe_id)


def create_recipe(
    session: Session,
    *,
    name: str,
    file_name: str,
    data: bytes,
    content_type: str | None = None,
) -> Recipe:
    """Store the uploaded bytes and persist a recipe record."""
    cleaned_name = require_text(name, "Recipe name", max_length=TITLE_MAX)
    record_id = str(uuid.uuid4())
    stored = store_file(
        record_id=record_id,
        file_name=file_name,
        data=data,
        content_type=content_type,
        max_bytes=settings.recipe_max_bytes,
    )
    _discard_on_rollback(session, stored.file_url)
    recipe = Recipe(
        id=record_id,
        name=cleaned_name,
        upload_date=_now(),
        **stored.as_columns(),
    )
    session.add(recipe)
    session.flush()
    return recipe


def list_shared_content(session: Session) -> Sequence[SharedContent]:
    stmt = select(SharedContent).order_by(SharedContent.upload_date.desc())
    return session.scalars(stmt).all()


def get_shared_content(session: Session, content_id: str) -> SharedContent | None:
    if not content_id:
        return None
    return session.get(SharedContent, content_id)


def create_shared_content(
    session: Session,
    *,
    title: str,
    description: str | None,
    file_name: str,
    data: bytes,
    content_type: str | None = None,
) -> SharedContent:
    """Store the uploaded bytes and persist a shared-content record."""
    cleaned_title = require_text(title, "Title", max_length=TITLE_MAX)
    record_id = str(uuid.uuid4())
    stored = store_file(
        record_id=record_id,
        file_name=file_name,
        data=data,
        content_type=content_type,
        max_bytes=settings.shared_content_max_bytes,
        prefix="shared-",
    )
    _discard_on_rollback(session, stored.file_url)
    item = SharedContent(
        id=record_id,
        title=cleaned_title,
        description=optional_text(description),
        upload_date=_now(),
        **stored.as_columns(),
    )
    session.add(item)
    session.flush()
    return item


def _discard_on_rollback(session: Session, file_url: str | None) -> None:
    if file_url:
        on_rollback(session, partial(remove_file, file_url))


def delete_attachment(session: Session, record: Recipe | SharedContent) -> None:
    """Delete a recipe or shared-content record.

    A file on disk is unlinked only after the deletion commits, so a rolled
    back request leaves both the row and its file in place.
    """
    file_url = record.file_url
    session.delete(record)
    session.flush()
    if file_url:
        on_commit(session, partial(remove_file, file_url))
