"""Shared Jinja2 environment for pages and partials."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from fastapi.templating import Jinja2Templates

from .calendar_feed import resolve_zone
from .config import settings
from .utils import duration_between, ensure_utc, format_file_size, humanize_time, render_markdown

TEMPLATE_DIR = Path(__file__).parent / "templates"
STATIC_DIR = Path(__file__).parent / "static"

ATTENDANCE_LABELS = {
    "yes": "Attending",
    "no": "Not Attending",
    "maybe": "Maybe",
}

templates = Jinja2Templates(directory=str(TEMPLATE_DIR))


def local_time(value: datetime | None, fmt: str = "%a, %b %d %Y %I:%M %p") -> str:
    """Render a stored instant in the display time zone."""
    if not value:
        return ""
    return ensure_utc(value).astimezone(resolve_zone(settings.display_timezone)).strftime(fmt)


def local_date(value: datetime | None) -> str:
    return local_time(value, "%b %d, %Y")


templates.env.globals["attendance_labels"] = ATTENDANCE_LABELS
templates.env.globals["display_timezone"] = settings.display_timezone
templates.env.filters["relative_time"] = humanize_time
templates.env.filters["duration"] = duration_between
templates.env.filters["markdown"] = render_markdown
templates.env.filters["filesize"] = format_file_size
templates.env.filters["localtime"] = local_time
templates.env.filters["localdate"] = local_date
