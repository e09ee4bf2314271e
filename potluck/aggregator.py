"""Group RSVPs under their events and split the board into upcoming and past.

Everything here is a pure function of its arguments: callers pass the current
events, RSVPs and "now" on every render, and nothing is cached between calls.
Events and RSVPs are duck-typed so ORM rows and JSON-store records both work;
an event needs ``id`` and ``date``, an RSVP needs ``event_id`` and
``attendance``.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from typing import Any

from .utils import ensure_utc

ATTENDANCE_YES = "yes"
ATTENDANCE_NO = "no"
ATTENDANCE_MAYBE = "maybe"
ATTENDANCE_STATUSES = (ATTENDANCE_YES, ATTENDANCE_MAYBE, ATTENDANCE_NO)


class AggregationError(ValueError):
    """Raised when an event is missing the fields needed to place it."""


@dataclass(frozen=True)
class RsvpTally:
    total: int = 0
    yes: int = 0
    maybe: int = 0
    no: int = 0

    @classmethod
    def from_rsvps(cls, rsvps: Iterable[Any]) -> "RsvpTally":
        counts = {status: 0 for status in ATTENDANCE_STATUSES}
        total = 0
        for rsvp in rsvps:
            total += 1
            status = getattr(rsvp, "attendance", None)
            if status in counts:
                counts[status] += 1
        return cls(
            total=total,
            yes=counts[ATTENDANCE_YES],
            maybe=counts[ATTENDANCE_MAYBE],
            no=counts[ATTENDANCE_NO],
        )


@dataclass(frozen=True)
class EventGroup:
    event: Any
    rsvps: tuple[Any, ...]
    tally: RsvpTally

    @property
    def has_rsvps(self) -> bool:
        return bool(self.rsvps)


@dataclass(frozen=True)
class EventBoard:
    upcoming: tuple[EventGroup, ...] = ()
    past: tuple[EventGroup, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.upcoming and not self.past

    def as_dict(self) -> dict[str, list[EventGroup]]:
        return {"upcoming": list(self.upcoming), "past": list(self.past)}


def _event_instant(event: Any) -> datetime:
    event_id = getattr(event, "id", None)
    if event_id is None:
        raise AggregationError("Event is missing an id")
    value = getattr(event, "date", None)
    if value is None:
        raise AggregationError(f"Event {event_id} is missing a date")
    if not isinstance(value, datetime):
        raise AggregationError(
            f"Event {event_id} has a non-datetime date: {value!r}"
        )
    return ensure_utc(value)


def group_rsvps(rsvps: Iterable[Any]) -> dict[Any, list[Any]]:
    """Index RSVPs by ``event_id``, keeping their input order."""
    grouped: dict[Any, list[Any]] = defaultdict(list)
    for rsvp in rsvps:
        grouped[getattr(rsvp, "event_id", None)].append(rsvp)
    return grouped


def aggregate_events(
    events: Sequence[Any], rsvps: Iterable[Any], now: datetime
) -> EventBoard:
    """Build the upcoming/past board from events and a flat RSVP list.

    An event is upcoming when its date is at or after ``now``. Upcoming groups
    are ordered soonest first, past groups most recent first. RSVPs whose
    ``event_id`` matches no event are dropped.
    """
    reference = ensure_utc(now)
    by_event = group_rsvps(rsvps)

    upcoming: list[tuple[datetime, EventGroup]] = []
    past: list[tuple[datetime, EventGroup]] = []
    for event in events:
        instant = _event_instant(event)
        matched = tuple(by_event.get(event.id, ()))
        group = EventGroup(event=event, rsvps=matched, tally=RsvpTally.from_rsvps(matched))
        if instant >= reference:
            upcoming.append((instant, group))
        else:
            past.append((instant, group))

    upcoming.sort(key=lambda item: item[0])
    past.sort(key=lambda item: item[0], reverse=True)
    return EventBoard(
        upcoming=tuple(group for _, group in upcoming),
        past=tuple(group for _, group in past),
    )


def aggregate_event_rsvps(events: Sequence[Any], now: datetime) -> EventBoard:
    """Same as :func:`aggregate_events` for events that carry their own ``rsvps``."""
    rsvps = [
        rsvp
        for event in events
        for rsvp in (getattr(event, "rsvps", None) or ())
        if getattr(rsvp, "event_id", None) == getattr(event, "id", None)
    ]
    return aggregate_events(events, rsvps, now)


def events_by_day(events: Iterable[Any], zone: tzinfo) -> dict[date, tuple[Any, ...]]:
    """Bucket events under their calendar day in ``zone``.

    Days come back in date order and each day's events in start order.
    """
    placed = sorted(
        ((_event_instant(event).astimezone(zone), event) for event in events),
        key=lambda item: item[0],
    )
    days: dict[date, list[Any]] = {}
    for local, event in placed:
        days.setdefault(local.date(), []).append(event)
    return {day: tuple(items) for day, items in days.items()}
