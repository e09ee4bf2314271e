"""Fetch an external iCalendar feed and expand it into displayable occurrences."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from dateutil.relativedelta import relativedelta
from dateutil.rrule import rruleset, rrulestr
from icalendar import Calendar
from icalendar.prop import vRecur

from .config import settings

logger = logging.getLogger("uvicorn.error")

PLACEHOLDER_TITLE = "No Title"
PLACEHOLDER_DESCRIPTION = "No description available"
PLACEHOLDER_LOCATION = "No location provided"
DEFAULT_WINDOW_YEARS = 13


class FeedError(Exception):
    """Base class for calendar feed failures."""


class FeedFetchError(FeedError):
    """Raised when the feed cannot be downloaded."""


class FeedParseError(FeedError):
    """Raised when the feed text is not a usable iCalendar document."""


@dataclass(frozen=True)
class CalendarOccurrence:
    title: str
    start: datetime
    end: datetime | None
    description: str
    location: str
    uid: str | None = None
    all_day: bool = False

    @property
    def location_is_link(self) -> bool:
        return self.location.lower().startswith(("http://", "https://"))

    def as_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat() if self.end else None,
            "description": self.description,
            "location": self.location,
            "all_day": self.all_day,
        }


@dataclass(frozen=True)
class DisplayWindow:
    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        moment = instant.astimezone(UTC)
        return self.start.astimezone(UTC) <= moment <= self.end.astimezone(UTC)


def resolve_zone(name: str | None = None) -> ZoneInfo:
    zone_name = name or settings.display_timezone
    try:
        return ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone {zone_name!r}") from exc


def display_window(
    now: datetime | None = None,
    *,
    zone: ZoneInfo | None = None,
    years: int | None = None,
) -> DisplayWindow:
    """Return the range from the start of this month to the end of the month
    ``years`` years from now, in local display time.

    Computed on every call so a long-running server never serves a stale range.
    """
    tz = zone or resolve_zone()
    span = DEFAULT_WINDOW_YEARS if years is None else years
    reference = now or datetime.now(UTC)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=UTC)
    local_now = reference.astimezone(tz)

    start = local_now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    later = local_now + relativedelta(years=span)
    next_month = later.replace(
        day=1, hour=0, minute=0, second=0, microsecond=0
    ) + relativedelta(months=1)
    end = next_month - timedelta(microseconds=1)
    return DisplayWindow(start=start, end=end)


def fetch_feed(
    url: str,
    *,
    timeout: float | None = None,
    client: httpx.Client | None = None,
) -> str:
    """Download raw feed text, raising :class:`FeedFetchError` on any failure."""
    cleaned = (url or "").strip()
    if not cleaned:
        raise FeedFetchError("No calendar feed URL is configured")
    if cleaned.lower().startswith("webcal://"):
        cleaned = "https://" + cleaned[len("webcal://") :]

    try:
        if client is None:
            with httpx.Client(
                timeout=timeout or settings.feed_timeout_seconds,
                follow_redirects=True,
            ) as http:
                response = http.get(cleaned)
                response.raise_for_status()
        else:
            response = client.get(cleaned)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise FeedFetchError(f"Could not fetch calendar feed {cleaned}: {exc}") from exc
    return response.text


def parse_feed(text: str | bytes) -> Calendar:
    """Parse feed text into a calendar, rejecting partially broken documents."""
    raw = text.decode("utf-8", errors="replace") if isinstance(text, bytes) else text
    if not raw or not raw.strip():
        raise FeedParseError("Calendar feed is empty")
    try:
        calendar = Calendar.from_ical(raw)
    except (ValueError, TypeError, KeyError, IndexError) as exc:
        raise FeedParseError(f"Malformed calendar feed: {exc}") from exc

    if getattr(calendar, "name", None) != "VCALENDAR":
        raise FeedParseError("Calendar feed does not contain a VCALENDAR")
    for component in calendar.walk():
        errors = getattr(component, "errors", None)
        if errors:
            prop, message = errors[0]
            raise FeedParseError(
                f"Malformed {component.name} property {prop}: {message}"
            )
    return calendar


def _as_aware(value: date | datetime, zone: ZoneInfo) -> tuple[datetime, bool]:
    """Return ``(instant, all_day)``; floating times and dates use ``zone``."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=zone), False
        return value, False
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=zone), True
    raise FeedParseError(f"Unsupported date value {value!r}")


def _text(component: Any, key: str, placeholder: str) -> str:
    value = component.get(key)
    cleaned = str(value).strip() if value is not None else ""
    return cleaned or placeholder


def _uid(component: Any) -> str | None:
    value = component.get("UID")
    return str(value) if value is not None else None


def _start(component: Any, zone: ZoneInfo) -> tuple[datetime, bool]:
    prop = component.get("DTSTART")
    if prop is None:
        summary = component.get("SUMMARY") or _uid(component) or "event"
        raise FeedParseError(f"Calendar event {summary!s} has no DTSTART")
    return _as_aware(prop.dt, zone)


def _duration(component: Any, start: datetime, zone: ZoneInfo) -> timedelta | None:
    end_prop = component.get("DTEND")
    if end_prop is not None:
        end, _ = _as_aware(end_prop.dt, zone)
        return end - start
    duration_prop = component.get("DURATION")
    if duration_prop is not None:
        return duration_prop.dt
    return None


def _listify(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _date_list(component: Any, key: str, start: datetime, zone: ZoneInfo) -> Iterator[datetime]:
    for prop in _listify(component.get(key)):
        for item in getattr(prop, "dts", ()):
            value = item.dt
            if isinstance(value, tuple):
                # PERIOD values: the occurrence starts at the period start.
                value = value[0]
            if isinstance(value, datetime):
                yield _as_aware(value, zone)[0]
            elif isinstance(value, date):
                yield datetime.combine(value, start.astimezone(zone).timetz())


def _normalized_rule(rule: vRecur, zone: ZoneInfo) -> str:
    """Serialize a rule with UNTIL in UTC so it matches an aware DTSTART."""
    adjusted = vRecur(dict(rule))
    untils = adjusted.get("UNTIL")
    if untils:
        until = untils[0]
        if isinstance(until, datetime):
            aware = until if until.tzinfo else until.replace(tzinfo=zone)
        else:
            aware = datetime.combine(until, time(23, 59, 59), tzinfo=zone)
        adjusted["UNTIL"] = [aware.astimezone(UTC)]
    return adjusted.to_ical().decode("utf-8")


def _recurrence_set(component: Any, start: datetime, zone: ZoneInfo) -> rruleset:
    rule_set = rruleset()
    if component.get("RRULE") is None:
        rule_set.rdate(start)
    for rule in _listify(component.get("RRULE")):
        text = _normalized_rule(rule, zone)
        try:
            rule_set.rrule(rrulestr(text, dtstart=start))
        except (ValueError, TypeError) as exc:
            raise FeedParseError(f"Invalid recurrence rule {text!r}: {exc}") from exc
    for extra in _date_list(component, "RDATE", start, zone):
        rule_set.rdate(extra)
    for excluded in _date_list(component, "EXDATE", start, zone):
        rule_set.exdate(excluded)
    return rule_set


def _overridden_instances(components: Iterable[Any], zone: ZoneInfo) -> set[tuple[str | None, datetime]]:
    overridden: set[tuple[str | None, datetime]] = set()
    for component in components:
        recurrence_id = component.get("RECURRENCE-ID")
        if recurrence_id is None:
            continue
        instant, _ = _as_aware(recurrence_id.dt, zone)
        overridden.add((_uid(component), instant.astimezone(UTC)))
    return overridden


def _is_recurring(component: Any) -> bool:
    if component.get("RECURRENCE-ID") is not None:
        return False
    return component.get("RRULE") is not None or component.get("RDATE") is not None


def _is_cancelled(component: Any) -> bool:
    return str(component.get("STATUS", "")).upper() == "CANCELLED"


def _occurrence(
    component: Any, start: datetime, end: datetime | None, all_day: bool
) -> CalendarOccurrence:
    return CalendarOccurrence(
        title=_text(component, "SUMMARY", PLACEHOLDER_TITLE),
        start=start,
        end=end,
        description=_text(component, "DESCRIPTION", PLACEHOLDER_DESCRIPTION),
        location=_text(component, "LOCATION", PLACEHOLDER_LOCATION),
        uid=_uid(component),
        all_day=all_day,
    )


def iter_recurring(
    component: Any,
    window: DisplayWindow,
    *,
    zone: ZoneInfo,
    skip: set[tuple[str | None, datetime]] | frozenset = frozenset(),
) -> Iterator[CalendarOccurrence]:
    """Yield occurrences of a recurring component that start inside ``window``.

    The recurrence generator is pulled lazily and abandoned at the first start
    past the window end, so rules without COUNT or UNTIL still terminate.
    """
    start, all_day = _start(component, zone)
    duration = _duration(component, start, zone) or timedelta(0)
    window_start = window.start.astimezone(UTC)
    window_end = window.end.astimezone(UTC)
    uid = _uid(component)

    for occurrence_start in _recurrence_set(component, start, zone):
        instant = occurrence_start.astimezone(UTC)
        if instant > window_end:
            break
        if instant < window_start:
            continue
        if (uid, instant) in skip:
            continue
        yield _occurrence(component, occurrence_start, occurrence_start + duration, all_day)


def expand_occurrences(
    calendar: Calendar,
    *,
    now: datetime | None = None,
    zone: ZoneInfo | None = None,
    years: int | None = None,
) -> list[CalendarOccurrence]:
    """Flatten a parsed calendar into concrete occurrences ordered by start.

    Single events pass through unfiltered with their own start and end (``end``
    stays ``None`` when the event has neither DTEND nor DURATION). Recurring
    events are bounded by :func:`display_window`.
    """
    tz = zone or resolve_zone()
    window = display_window(now, zone=tz, years=years)
    components = list(calendar.walk("VEVENT"))
    overridden = _overridden_instances(components, tz)

    occurrences: list[CalendarOccurrence] = []
    for component in components:
        if _is_recurring(component):
            occurrences.extend(iter_recurring(component, window, zone=tz, skip=overridden))
            continue
        if component.get("RECURRENCE-ID") is not None and _is_cancelled(component):
            continue
        start, all_day = _start(component, tz)
        duration = _duration(component, start, tz)
        end = start + duration if duration is not None else None
        occurrences.append(_occurrence(component, start, end, all_day))

    occurrences.sort(key=lambda occurrence: occurrence.start.astimezone(UTC))
    return occurrences


def load_occurrences(
    url: str | None = None,
    *,
    now: datetime | None = None,
    client: httpx.Client | None = None,
) -> list[CalendarOccurrence]:
    """Fetch, parse and expand the configured feed as one all-or-nothing step."""
    feed_url = url if url is not None else settings.calendar_feed_url
    try:
        text = fetch_feed(feed_url, client=client)
        calendar = parse_feed(text)
        occurrences = expand_occurrences(
            calendar,
            now=now,
            years=settings.calendar_window_years,
        )
    except FeedError as exc:
        logger.warning("Calendar feed unavailable: %s", exc)
        raise
    logger.info("Expanded %d calendar occurrences from %s", len(occurrences), feed_url)
    return occurrences


def group_by_month(
    occurrences: Iterable[CalendarOccurrence], *, zone: ZoneInfo | None = None
) -> list[tuple[str, list[CalendarOccurrence]]]:
    """Bucket occurrences under "Month YYYY" headings in display time."""
    tz = zone or resolve_zone()
    buckets: dict[tuple[int, int], list[CalendarOccurrence]] = {}
    for occurrence in occurrences:
        local = occurrence.start.astimezone(tz)
        buckets.setdefault((local.year, local.month), []).append(occurrence)
    return [
        (date(year, month, 1).strftime("%B %Y"), items)
        for (year, month), items in sorted(buckets.items())
    ]
