"""iCalendar (.ics) export for a single event."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from .utils import ensure_utc

# Events only carry a start, so exports get a nominal length.
DEFAULT_EVENT_LENGTH = timedelta(hours=2)


def _format_utc(dt: datetime) -> str:
    """Format a datetime as an RFC5545 UTC timestamp."""

    return ensure_utc(dt).replace(microsecond=0).strftime("%Y%m%dT%H%M%SZ")


def _escape_text(value: str | None) -> str:
    """Escape reserved characters for ICS text fields."""

    if not value:
        return ""
    normalized = value.replace("\r\n", "\n").replace("\r", "\n")
    return (
        normalized.replace("\\", "\\\\")
        .replace(";", r"\;")
        .replace(",", r"\,")
        .replace("\n", "\\n")
    )


def _rsvp_summary(rsvps: list[Any]) -> str:
    lines = []
    for rsvp in rsvps:
        line = f"{rsvp.name} ({rsvp.attendance})"
        if rsvp.food:
            line += f": bringing {rsvp.food}"
        lines.append(line)
    return "\n".join(lines)


def generate_ics(
    event: Any,
    *,
    rsvps: list[Any] | None = None,
    now: datetime | None = None,
) -> str:
    """Return ICS text for an event, listing RSVPs in the description."""

    dtstamp = _format_utc(now or datetime.now(UTC))
    start = _format_utc(event.date)
    end = _format_utc(ensure_utc(event.date) + DEFAULT_EVENT_LENGTH)
    summary = _escape_text(event.name)
    description = _escape_text(_rsvp_summary(rsvps or []))

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Potluck//EN",
        "BEGIN:VEVENT",
        f"UID:{event.id}@potluck",
        f"DTSTAMP:{dtstamp}",
        f"DTSTART:{start}",
        f"DTEND:{end}",
        f"SUMMARY:{summary}",
    ]
    if description:
        lines.append(f"DESCRIPTION:{description}")
    lines += ["END:VEVENT", "END:VCALENDAR"]
    return "\r\n".join(lines) + "\r\n"
