from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from potluck.aggregator import (
    AggregationError,
    RsvpTally,
    aggregate_event_rsvps,
    aggregate_events,
    events_by_day,
)

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=UTC)


def _event(event_id: str, date: datetime, name: str | None = None):
    return SimpleNamespace(id=event_id, name=name or event_id, date=date)


def _rsvp(rsvp_id: str, event_id: str, attendance: str = "yes"):
    return SimpleNamespace(id=rsvp_id, event_id=event_id, name=rsvp_id, attendance=attendance)


def test_events_split_and_ordered_by_date():
    events = [
        _event("later", NOW + timedelta(days=10)),
        _event("old", NOW - timedelta(days=30)),
        _event("soon", NOW + timedelta(days=1)),
        _event("recent", NOW - timedelta(days=1)),
    ]

    board = aggregate_events(events, [], NOW)

    assert [group.event.id for group in board.upcoming] == ["soon", "later"]
    assert [group.event.id for group in board.past] == ["recent", "old"]


def test_event_at_exactly_now_is_upcoming():
    board = aggregate_events([_event("now", NOW)], [], NOW)
    assert [group.event.id for group in board.upcoming] == ["now"]
    assert board.past == ()


def test_naive_dates_are_read_as_utc():
    naive_future = (NOW + timedelta(minutes=5)).replace(tzinfo=None)
    board = aggregate_events([_event("naive", naive_future)], [], NOW)
    assert len(board.upcoming) == 1


def test_rsvps_attach_to_their_event_and_orphans_drop():
    events = [_event("a", NOW + timedelta(days=1)), _event("b", NOW - timedelta(days=1))]
    rsvps = [
        _rsvp("r1", "a"),
        _rsvp("r2", "b", "no"),
        _rsvp("r3", "a", "maybe"),
        _rsvp("ghost", "missing"),
    ]

    board = aggregate_events(events, rsvps, NOW)

    upcoming = board.upcoming[0]
    assert [rsvp.id for rsvp in upcoming.rsvps] == ["r1", "r3"]
    assert upcoming.tally == RsvpTally(total=2, yes=1, maybe=1, no=0)
    assert [rsvp.id for rsvp in board.past[0].rsvps] == ["r2"]
    all_ids = {
        rsvp.id for group in board.upcoming + board.past for rsvp in group.rsvps
    }
    assert "ghost" not in all_ids


def test_event_without_rsvps_still_listed():
    board = aggregate_events([_event("quiet", NOW + timedelta(days=2))], [], NOW)
    group = board.upcoming[0]
    assert group.rsvps == ()
    assert not group.has_rsvps
    assert group.tally.total == 0


def test_empty_inputs_give_empty_board():
    board = aggregate_events([], [], NOW)
    assert board.is_empty
    assert board.as_dict() == {"upcoming": [], "past": []}


def test_event_missing_date_is_rejected():
    with pytest.raises(AggregationError, match="missing a date"):
        aggregate_events([_event("broken", None)], [], NOW)


def test_aggregate_event_rsvps_uses_nested_rsvps():
    event = _event("a", NOW + timedelta(hours=3))
    event.rsvps = [_rsvp("r1", "a"), _rsvp("r2", "a", "no")]

    board = aggregate_event_rsvps([event], NOW)

    assert board.upcoming[0].tally.no == 1
    assert len(board.upcoming[0].rsvps) == 2


def test_yesterday_and_tomorrow_scenario():
    e1 = _event("E1", NOW - timedelta(days=1))
    e2 = _event("E2", NOW + timedelta(days=1))
    r1 = _rsvp("R1", "E1", "yes")
    r2 = _rsvp("R2", "E2", "maybe")
    r3 = _rsvp("R3", "E2", "yes")

    board = aggregate_events([e1, e2], [r1, r2, r3], NOW)

    assert [(group.event, list(group.rsvps)) for group in board.upcoming] == [(e2, [r2, r3])]
    assert board.upcoming[0].tally == RsvpTally(total=2, yes=1, maybe=1, no=0)
    assert [(group.event, list(group.rsvps)) for group in board.past] == [(e1, [r1])]
    assert board.past[0].tally == RsvpTally(total=1, yes=1, maybe=0, no=0)


def test_aggregation_is_repeatable():
    events = [_event("a", NOW + timedelta(days=1)), _event("b", NOW - timedelta(days=2))]
    rsvps = [_rsvp("r1", "a"), _rsvp("r2", "b", "no")]

    assert aggregate_events(events, rsvps, NOW) == aggregate_events(events, rsvps, NOW)


def test_tallies_always_add_up():
    rsvps = [_rsvp(str(i), "a", status) for i, status in enumerate(["yes", "no", "maybe", "yes"])]
    board = aggregate_events([_event("a", NOW)], rsvps, NOW)
    tally = board.upcoming[0].tally
    assert tally.total == tally.yes + tally.maybe + tally.no == 4


def test_events_by_day_uses_local_calendar_days():
    eastern = ZoneInfo("America/New_York")
    late = _event("late", datetime(2026, 7, 5, 2, 30, tzinfo=UTC))
    noon = _event("noon", datetime(2026, 7, 4, 16, 0, tzinfo=UTC))
    next_day = _event("next", datetime(2026, 7, 5, 14, 0))

    days = events_by_day([next_day, late, noon], eastern)

    assert list(days) == [date(2026, 7, 4), date(2026, 7, 5)]
    assert [event.id for event in days[date(2026, 7, 4)]] == ["noon", "late"]
    assert [event.id for event in days[date(2026, 7, 5)]] == ["next"]
    assert events_by_day([], eastern) == {}
