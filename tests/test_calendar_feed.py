from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import httpx
import pytest

from potluck import calendar_feed
from potluck.calendar_feed import (
    PLACEHOLDER_DESCRIPTION,
    PLACEHOLDER_LOCATION,
    PLACEHOLDER_TITLE,
    FeedFetchError,
    FeedParseError,
    display_window,
    expand_occurrences,
    fetch_feed,
    group_by_month,
    load_occurrences,
    parse_feed,
)

EASTERN = ZoneInfo("America/New_York")
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _calendar(*events: str) -> str:
    body = "\r\n".join(events)
    return (
        "BEGIN:VCALENDAR\r\n"
        "VERSION:2.0\r\n"
        "PRODID:-//Test//EN\r\n"
        f"{body}\r\n"
        "END:VCALENDAR\r\n"
    )


def _event(*lines: str) -> str:
    return "\r\n".join(["BEGIN:VEVENT", *lines, "END:VEVENT"])


def _expand(text: str, *, years: int | None = None):
    return expand_occurrences(parse_feed(text), now=NOW, zone=EASTERN, years=years)


def test_display_window_spans_month_start_to_month_end_years_later():
    window = display_window(
        datetime(2026, 1, 31, 3, 0, tzinfo=UTC), zone=EASTERN, years=13
    )
    assert window.start == datetime(2026, 1, 1, tzinfo=EASTERN)
    assert window.end.replace(tzinfo=None) == datetime(2039, 1, 31, 23, 59, 59, 999999)
    assert window.contains(datetime(2030, 6, 1, tzinfo=UTC))
    assert not window.contains(datetime(2025, 12, 31, 12, tzinfo=UTC))


def test_single_event_passes_through_with_its_fields():
    text = _calendar(
        _event(
            "UID:solo@example.com",
            "SUMMARY:Board meeting",
            "DESCRIPTION:Budget review",
            "LOCATION:Library",
            "DTSTART:20010101T170000Z",
            "DTEND:20010101T180000Z",
        )
    )

    [occurrence] = _expand(text)

    assert occurrence.title == "Board meeting"
    assert occurrence.description == "Budget review"
    assert occurrence.location == "Library"
    assert occurrence.start == datetime(2001, 1, 1, 17, 0, tzinfo=UTC)
    assert occurrence.end - occurrence.start == timedelta(hours=1)
    assert occurrence.uid == "solo@example.com"
    assert not occurrence.all_day


def test_missing_text_fields_use_placeholders_and_end_stays_empty():
    [occurrence] = _expand(_calendar(_event("UID:bare", "DTSTART:20260305T150000Z")))

    assert occurrence.title == PLACEHOLDER_TITLE
    assert occurrence.description == PLACEHOLDER_DESCRIPTION
    assert occurrence.location == PLACEHOLDER_LOCATION
    assert occurrence.end is None


def test_duration_property_sets_end():
    [occurrence] = _expand(
        _calendar(_event("UID:d", "DTSTART:20260305T150000Z", "DURATION:PT90M"))
    )
    assert occurrence.end - occurrence.start == timedelta(minutes=90)


def test_weekly_rule_keeps_local_wall_clock_across_dst():
    text = _calendar(
        _event(
            "UID:weekly",
            "SUMMARY:Choir",
            "DTSTART;TZID=America/New_York:20260302T180000",
            "DTEND;TZID=America/New_York:20260302T193000",
            "RRULE:FREQ=WEEKLY;COUNT=3",
        )
    )

    occurrences = _expand(text)

    assert [item.start.astimezone(EASTERN).hour for item in occurrences] == [18, 18, 18]
    assert [item.start.astimezone(UTC).hour for item in occurrences] == [23, 22, 22]
    assert all(item.end - item.start == timedelta(minutes=90) for item in occurrences)
    assert all(item.title == "Choir" for item in occurrences)


def test_unbounded_rule_is_limited_to_the_window():
    text = _calendar(
        _event(
            "UID:yearly",
            "SUMMARY:Anniversary",
            "DTSTART:20200601T160000Z",
            "RRULE:FREQ=YEARLY",
        )
    )

    occurrences = _expand(text, years=2)

    assert [item.start.date().isoformat() for item in occurrences] == [
        "2026-06-01",
        "2027-06-01",
    ]


def test_exdate_removes_an_instance():
    text = _calendar(
        _event(
            "UID:exdate",
            "DTSTART:20260302T180000",
            "RRULE:FREQ=WEEKLY;COUNT=4",
            "EXDATE:20260309T180000",
        )
    )

    occurrences = _expand(text)

    assert [item.start.day for item in occurrences] == [2, 16, 23]
    assert all(item.start.tzinfo is not None for item in occurrences)


def test_until_in_local_time_is_inclusive():
    text = _calendar(
        _event(
            "UID:until",
            "DTSTART;TZID=America/New_York:20260302T180000",
            "RRULE:FREQ=DAILY;UNTIL=20260304T180000",
        )
    )

    assert len(_expand(text)) == 3


def test_override_replaces_master_instance_and_cancelled_override_hides_it():
    master = _event(
        "UID:club",
        "SUMMARY:Book club",
        "DTSTART;TZID=America/New_York:20260302T180000",
        "RRULE:FREQ=WEEKLY;COUNT=3",
    )
    moved = _event(
        "UID:club",
        "SUMMARY:Book club (moved)",
        "RECURRENCE-ID;TZID=America/New_York:20260309T180000",
        "DTSTART;TZID=America/New_York:20260309T200000",
    )

    occurrences = _expand(_calendar(master, moved))
    assert [item.title for item in occurrences] == [
        "Book club",
        "Book club (moved)",
        "Book club",
    ]
    assert occurrences[1].start.astimezone(EASTERN).hour == 20

    cancelled = moved.replace("END:VEVENT", "STATUS:CANCELLED\r\nEND:VEVENT")
    occurrences = _expand(_calendar(master, cancelled))
    assert [item.start.day for item in occurrences] == [2, 16]


def test_all_day_events_are_flagged():
    [occurrence] = _expand(
        _calendar(
            _event(
                "UID:allday",
                "SUMMARY:Cleanup day",
                "DTSTART;VALUE=DATE:20260310",
                "DTEND;VALUE=DATE:20260311",
            )
        )
    )

    assert occurrence.all_day
    assert occurrence.start == datetime(2026, 3, 10, tzinfo=EASTERN)
    assert occurrence.end - occurrence.start == timedelta(days=1)


def test_occurrences_are_sorted_by_start():
    text = _calendar(
        _event("UID:b", "SUMMARY:Second", "DTSTART:20260320T120000Z"),
        _event("UID:a", "SUMMARY:First", "DTSTART:20260305T120000Z"),
    )
    assert [item.title for item in _expand(text)] == ["First", "Second"]


def test_location_link_detection():
    [occurrence] = _expand(
        _calendar(
            _event(
                "UID:link",
                "DTSTART:20260305T120000Z",
                "LOCATION:https://meet.example.com/room",
            )
        )
    )
    assert occurrence.location_is_link
    assert occurrence.as_dict()["location"] == "https://meet.example.com/room"


@pytest.mark.parametrize("text", ["", "   ", "this is not a calendar"])
def test_parse_feed_rejects_unusable_text(text):
    with pytest.raises(FeedParseError):
        parse_feed(text)


def test_event_without_start_fails_the_whole_expansion():
    text = _calendar(
        _event("UID:ok", "DTSTART:20260305T120000Z"),
        _event("UID:broken", "SUMMARY:No start"),
    )
    with pytest.raises(FeedParseError, match="no DTSTART"):
        _expand(text)


def test_fetch_feed_rewrites_webcal_and_returns_text():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, text="BEGIN:VCALENDAR")

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        body = fetch_feed("webcal://calendar.example.com/feed.ics", client=client)

    assert body == "BEGIN:VCALENDAR"
    assert seen == ["https://calendar.example.com/feed.ics"]


def test_fetch_feed_wraps_http_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(FeedFetchError):
            fetch_feed("https://calendar.example.com/feed.ics", client=client)

    with pytest.raises(FeedFetchError, match="No calendar feed URL"):
        fetch_feed("  ")


def test_load_occurrences_fetches_parses_and_expands():
    feed = _calendar(
        _event(
            "UID:weekly",
            "SUMMARY:Garden shift",
            "DTSTART;TZID=America/New_York:20260302T090000",
            "RRULE:FREQ=WEEKLY;COUNT=2",
        )
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=feed)

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        occurrences = load_occurrences(
            "https://calendar.example.com/feed.ics", now=NOW, client=client
        )

    assert [item.title for item in occurrences] == ["Garden shift", "Garden shift"]


def test_load_occurrences_propagates_parse_errors(monkeypatch):
    monkeypatch.setattr(calendar_feed, "fetch_feed", lambda url, client=None: "garbage")
    with pytest.raises(FeedParseError):
        load_occurrences("https://calendar.example.com/feed.ics", now=NOW)


def test_group_by_month_uses_display_zone():
    text = _calendar(
        # 03:00 UTC on April 1 is still March 31 in New York.
        _event("UID:a", "SUMMARY:Late", "DTSTART:20260401T030000Z"),
        _event("UID:b", "SUMMARY:April", "DTSTART:20260402T150000Z"),
    )

    months = group_by_month(_expand(text), zone=EASTERN)

    assert [(heading, [item.title for item in items]) for heading, items in months] == [
        ("March 2026", ["Late"]),
        ("April 2026", ["April"]),
    ]


def test_single_potluck_event_without_end():
    text = _calendar(_event("UID:p", "SUMMARY:Potluck", "DTSTART:20250601T180000Z"))

    occurrences = _expand(text)

    assert len(occurrences) == 1
    assert occurrences[0].title == "Potluck"
    assert occurrences[0].start == datetime(2025, 6, 1, 18, 0, tzinfo=UTC)
    assert occurrences[0].end is None


def test_rdate_without_rule_adds_extra_instances():
    text = _calendar(
        _event(
            "UID:rdates",
            "SUMMARY:Soup kitchen",
            "DTSTART:20260305T150000Z",
            "DTEND:20260305T170000Z",
            "RDATE:20260312T150000Z,20260319T150000Z",
        )
    )

    occurrences = _expand(text)

    assert [item.start.day for item in occurrences] == [5, 12, 19]
    assert all(item.end - item.start == timedelta(hours=2) for item in occurrences)


def test_period_rdate_starts_at_the_period_start():
    text = _calendar(
        _event(
            "UID:period",
            "DTSTART:20260305T150000Z",
            "RDATE;VALUE=PERIOD:20260320T150000Z/PT1H",
        )
    )

    occurrences = _expand(text)

    assert [item.start for item in occurrences] == [
        datetime(2026, 3, 5, 15, 0, tzinfo=UTC),
        datetime(2026, 3, 20, 15, 0, tzinfo=UTC),
    ]
