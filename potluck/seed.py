"""Development helpers for populating fake events and RSVPs."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from faker import Faker

from .database import get_session
from .gateway import Gateway, make_gateway
from .storage import init_db
from .utils import utcnow

_event_types = [
    "Potluck",
    "Picnic",
    "Game Night",
    "Cookout",
    "Bake-Off",
    "Brunch",
    "Chili Cook-Off",
    "Soup Swap",
]
_dishes = [
    "lasagna",
    "fruit salad",
    "cornbread",
    "lemonade",
    "brownies",
    "veggie tray",
    "mac and cheese",
    "",
]
_rsvp_statuses = ["yes", "yes", "yes", "maybe", "maybe", "no"]


def seed_fake_data(
    *,
    event_count: int = 6,
    max_rsvps_per_event: int = 5,
    backend: str | None = None,
) -> dict[str, int]:
    """Populate the configured store with synthetic events and RSVPs.

    Roughly a third of the events land in the past so both halves of the
    event board have something to show.
    """
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if max_rsvps_per_event < 0:
        raise ValueError("max_rsvps_per_event must be >= 0")

    init_db()
    fake = Faker()
    stats = {"events": 0, "rsvps": 0}

    with get_session() as session:
        gateway = make_gateway(session, backend=backend)
        for _ in range(event_count):
            event = gateway.create_event(
                name=_event_name(fake), date=_random_start_time()
            )
            stats["events"] += 1
            stats["rsvps"] += _create_rsvps(gateway, fake, event.id, max_rsvps_per_event)
    return stats


def _random_start_time() -> datetime:
    day_offset = random.randint(-20, 45)
    hour = random.choice([11, 12, 17, 18, 19])
    start = utcnow() + timedelta(days=day_offset)
    return start.replace(hour=hour, minute=0, second=0, microsecond=0)


def _event_name(fake: Faker) -> str:
    return f"{fake.city()} {random.choice(_event_types)}"


def _create_rsvps(gateway: Gateway, fake: Faker, event_id: str, max_rsvps: int) -> int:
    if max_rsvps <= 0:
        return 0
    total = random.randint(0, max_rsvps)
    for _ in range(total):
        gateway.create_rsvp(
            event_id=event_id,
            name=fake.name_nonbinary(),
            attendance=random.choice(_rsvp_statuses),
            food=random.choice(_dishes),
            content=fake.sentence() if random.random() < 0.3 else None,
        )
    return total
