"""Persistence gateways for events and RSVPs.

The relational store and the single-file JSON store both satisfy
:class:`Gateway`, so the aggregation and page rendering code never knows which
one is active.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, Sequence

from sqlalchemy.orm import Session

from . import crud
from .config import settings
from .utils import utcnow


class Gateway(Protocol):
    def list_events(self) -> Sequence[Any]: ...

    def list_rsvps(self) -> Sequence[Any]: ...

    def get_event(self, event_id: str) -> Any | None: ...

    def create_event(self, *, name: str, date: str | datetime) -> Any: ...

    def update_event(
        self, event_id: str, *, name: str | None = None, date: str | datetime | None = None
    ) -> Any | None: ...

    def delete_event(self, event_id: str) -> bool: ...

    def get_rsvp(self, rsvp_id: str) -> Any | None: ...

    def create_rsvp(
        self,
        *,
        event_id: str,
        name: str,
        attendance: str,
        food: str | None = None,
        content: str | None = None,
    ) -> Any: ...

    def update_rsvp(self, rsvp_id: str, **fields: Any) -> Any | None: ...

    def delete_rsvp(self, rsvp_id: str) -> bool: ...


class SqlGateway:
    """Gateway over a SQLAlchemy session; the caller owns commit/rollback."""

    def __init__(self, session: Session):
        self.session = session

    def list_events(self):
        return crud.list_events(self.session)

    def list_rsvps(self):
        return crud.list_rsvps(self.session)

    def get_event(self, event_id):
        return crud.get_event(self.session, event_id)

    def create_event(self, *, name, date):
        return crud.create_event(self.session, name=name, date=date)

    def update_event(self, event_id, *, name=None, date=None):
        event = self.get_event(event_id)
        if event is None:
            return None
        return crud.update_event(self.session, event, name=name, date=date)

    def delete_event(self, event_id):
        event = self.get_event(event_id)
        if event is None:
            return False
        crud.delete_event(self.session, event)
        return True

    def get_rsvp(self, rsvp_id):
        return crud.get_rsvp(self.session, rsvp_id)

    def create_rsvp(self, *, event_id, name, attendance, food=None, content=None):
        return crud.create_rsvp(
            self.session,
            event_id=event_id,
            name=name,
            attendance=attendance,
            food=food,
            content=content,
        )

    def update_rsvp(self, rsvp_id, **fields):
        rsvp = self.get_rsvp(rsvp_id)
        if rsvp is None:
            return None
        return crud.update_rsvp(self.session, rsvp, **fields)

    def delete_rsvp(self, rsvp_id):
        rsvp = self.get_rsvp(rsvp_id)
        if rsvp is None:
            return False
        crud.delete_rsvp(self.session, rsvp)
        return True


@dataclass
class EventRecord:
    id: str
    name: str
    date: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RsvpRecord:
    id: str
    event_id: str
    name: str
    food: str
    content: str
    attendance: str
    created_at: datetime = field(default_factory=utcnow)
    last_modified: datetime = field(default_factory=utcnow)


def _dump(record: Any) -> dict[str, Any]:
    payload = asdict(record)
    for key, value in payload.items():
        if isinstance(value, datetime):
            payload[key] = value.isoformat()
    return payload


def _load_event(raw: dict[str, Any]) -> EventRecord:
    return EventRecord(
        id=raw["id"],
        name=raw["name"],
        date=crud.normalize_event_date(raw["date"]),
        created_at=datetime.fromisoformat(raw.get("created_at") or raw["date"]),
    )


def _load_rsvp(raw: dict[str, Any]) -> RsvpRecord:
    created = datetime.fromisoformat(raw["created_at"]) if raw.get("created_at") else utcnow()
    return RsvpRecord(
        id=raw["id"],
        event_id=raw["event_id"],
        name=raw["name"],
        food=raw.get("food") or "",
        content=raw.get("content") or "",
        attendance=crud.normalize_attendance(raw.get("attendance")),
        created_at=created,
        last_modified=(
            datetime.fromisoformat(raw["last_modified"])
            if raw.get("last_modified")
            else created
        ),
    )


class JsonFileGateway:
    """Gateway keeping every event and RSVP in one JSON document.

    Writes go to a temporary file that then replaces the document, so readers
    never see a half-written store.
    """

    _lock = threading.Lock()

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> tuple[list[EventRecord], list[RsvpRecord]]:
        if not self.path.exists():
            return [], []
        raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        events = [_load_event(item) for item in raw.get("events", [])]
        rsvps = [_load_rsvp(item) for item in raw.get("rsvps", [])]
        return events, rsvps

    def _write(self, events: list[EventRecord], rsvps: list[RsvpRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        document = {
            "events": [_dump(event) for event in events],
            "rsvps": [_dump(rsvp) for rsvp in rsvps],
        }
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def list_events(self):
        events, _ = self._read()
        return sorted(events, key=lambda event: event.date)

    def list_rsvps(self):
        _, rsvps = self._read()
        return sorted(rsvps, key=lambda rsvp: rsvp.created_at, reverse=True)

    def get_event(self, event_id):
        events, _ = self._read()
        return next((event for event in events if event.id == event_id), None)

    def create_event(self, *, name, date):
        record = EventRecord(
            id=str(uuid.uuid4()),
            name=crud.require_text(name, "Event name", max_length=crud.EVENT_NAME_MAX),
            date=crud.normalize_event_date(date),
        )
        with self._lock:
            events, rsvps = self._read()
            events.append(record)
            self._write(events, rsvps)
        return record

    def update_event(self, event_id, *, name=None, date=None):
        with self._lock:
            events, rsvps = self._read()
            event = next((item for item in events if item.id == event_id), None)
            if event is None:
                return None
            if name is not None:
                event.name = crud.require_text(
                    name, "Event name", max_length=crud.EVENT_NAME_MAX
                )
            if date is not None:
                event.date = crud.normalize_event_date(date)
            self._write(events, rsvps)
        return event

    def delete_event(self, event_id):
        with self._lock:
            events, rsvps = self._read()
            remaining = [event for event in events if event.id != event_id]
            if len(remaining) == len(events):
                return False
            kept_rsvps = [rsvp for rsvp in rsvps if rsvp.event_id != event_id]
            self._write(remaining, kept_rsvps)
        return True

    def get_rsvp(self, rsvp_id):
        _, rsvps = self._read()
        return next((rsvp for rsvp in rsvps if rsvp.id == rsvp_id), None)

    def create_rsvp(self, *, event_id, name, attendance, food=None, content=None):
        with self._lock:
            events, rsvps = self._read()
            if not any(event.id == event_id for event in events):
                raise ValueError("Event not found")
            now = utcnow()
            record = RsvpRecord(
                id=str(uuid.uuid4()),
                event_id=event_id,
                name=crud.require_text(name, "Name", max_length=crud.RSVP_NAME_MAX),
                food=crud.optional_text(food),
                content=crud.optional_text(content),
                attendance=crud.normalize_attendance(attendance),
                created_at=now,
                last_modified=now,
            )
            rsvps.append(record)
            self._write(events, rsvps)
        return record

    def update_rsvp(self, rsvp_id, **fields):
        with self._lock:
            events, rsvps = self._read()
            rsvp = next((item for item in rsvps if item.id == rsvp_id), None)
            if rsvp is None:
                return None
            if fields.get("name") is not None:
                rsvp.name = crud.require_text(
                    fields["name"], "Name", max_length=crud.RSVP_NAME_MAX
                )
            if fields.get("food") is not None:
                rsvp.food = crud.optional_text(fields["food"])
            if fields.get("content") is not None:
                rsvp.content = crud.optional_text(fields["content"])
            if fields.get("attendance") is not None:
                rsvp.attendance = crud.normalize_attendance(fields["attendance"])
            rsvp.last_modified = utcnow()
            self._write(events, rsvps)
        return rsvp

    def delete_rsvp(self, rsvp_id):
        with self._lock:
            events, rsvps = self._read()
            remaining = [rsvp for rsvp in rsvps if rsvp.id != rsvp_id]
            if len(remaining) == len(rsvps):
                return False
            self._write(events, remaining)
        return True


def make_gateway(session: Session, *, backend: str | None = None) -> Gateway:
    """Return the gateway for the configured ``store_backend``."""
    selected = backend or settings.store_backend
    if selected == "json":
        return JsonFileGateway(settings.json_store_path)
    return SqlGateway(session)
