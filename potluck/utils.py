"""Utility helpers for Potluck."""

from __future__ import annotations

from datetime import UTC, datetime
import html
import re

from markupsafe import Markup

_INLINE_RULES = (
    (re.compile(r"`([^`]+)`"), r"<code>\1</code>"),
    (re.compile(r"\*\*(.+?)\*\*"), r"<strong>\1</strong>"),
    (re.compile(r"(?<!\*)\*(?!\*)([^*]+?)(?<!\*)\*(?!\*)"), r"<em>\1</em>"),
)
_LINK = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_SAFE_SCHEMES = ("http://", "https://", "mailto:")
_BULLETS = ("- ", "* ")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def ensure_utc(dt: datetime) -> datetime:
    """Return a timezone-aware UTC datetime, treating naive values as UTC."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_naive_utc(dt: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC; naive values pass through."""

    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def parse_datetime(raw: str | datetime | None) -> datetime:
    """Parse an ISO 8601 timestamp (``Z`` suffix allowed) or raise ``ValueError``."""

    if isinstance(raw, datetime):
        return raw
    cleaned = (raw or "").strip()
    if not cleaned:
        raise ValueError("A date is required")
    try:
        return datetime.fromisoformat(cleaned)
    except ValueError as exc:
        raise ValueError(f"Invalid date {cleaned!r}; use ISO 8601 format") from exc


def _safe_href(raw: str) -> str | None:
    target = raw.strip()
    if target.lower().startswith(_SAFE_SCHEMES) or target.startswith(("/", "#")):
        return html.escape(target, quote=True)
    return None


def _inline(text: str) -> str:
    for pattern, replacement in _INLINE_RULES:
        text = pattern.sub(replacement, text)

    def link(match: re.Match[str]) -> str:
        href = _safe_href(html.unescape(match.group(2)))
        if href is None:
            return match.group(0)
        return f'<a href="{href}" rel="nofollow noopener noreferrer">{match.group(1)}</a>'

    return _LINK.sub(link, text)


def _blocks(lines: list[str]) -> list[tuple[str, list[str]]]:
    """Split stripped lines into ``("p" | "ul", lines)`` runs; blank lines separate."""
    runs: list[tuple[str, list[str]]] = []
    for line in lines:
        if not line:
            runs.append(("", []))
            continue
        kind = "ul" if line.startswith(_BULLETS) else "p"
        body = line[2:].strip() if kind == "ul" else line
        if runs and runs[-1][0] == kind:
            runs[-1][1].append(body)
        else:
            runs.append((kind, [body]))
    return [run for run in runs if run[0]]


def render_markdown(value: str | None) -> Markup:
    """Render RSVP notes and shared-content descriptions as sanitized HTML.

    Only paragraphs, ``-``/``*`` bullets, emphasis, inline code and http(s),
    mailto or relative links are recognised; the input is escaped first.
    """
    escaped = html.escape((value or "").strip())
    if not escaped:
        return Markup("")

    rendered = []
    for kind, lines in _blocks([line.strip() for line in escaped.splitlines()]):
        if kind == "ul":
            items = "".join(f"<li>{_inline(item)}</li>" for item in lines)
            rendered.append(f"<ul>{items}</ul>")
        else:
            rendered.append(f"<p>{_inline(' '.join(lines))}</p>")
    return Markup("\n".join(rendered))


_TIME_UNITS = (
    ("year", 365 * 86400),
    ("month", 30 * 86400),
    ("week", 7 * 86400),
    ("day", 86400),
    ("hour", 3600),
    ("minute", 60),
)


def humanize_time(value: datetime | None, *, now: datetime | None = None) -> str:
    """Describe ``value`` relative to ``now``, e.g. "in 3 days" or "1 hour ago"."""
    if not value:
        return ""
    delta = (to_naive_utc(value) - to_naive_utc(now or utcnow())).total_seconds()
    seconds = abs(delta)
    for unit, size in _TIME_UNITS:
        count = int(seconds // size)
        if count:
            label = unit if count == 1 else unit + "s"
            return f"{count} {label} ago" if delta < 0 else f"in {count} {label}"
    return "moments ago" if delta < 0 else "in moments"


def duration_between(start: datetime | None, end: datetime | None) -> str:
    """Return a short "2h 30m" style duration string."""
    if not start or not end:
        return ""
    seconds = max(int((end - start).total_seconds()), 0)
    if seconds == 0:
        return ""
    minutes, _ = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    parts: list[str] = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if not parts:
        parts.append("<1m")
    return " ".join(parts)


def format_file_size(size: int | None) -> str:
    """Return a size such as '12.5 KB' for display next to attachments."""
    if size is None:
        return ""
    if size < 1024:
        return f"{size} B"
    kilobytes = size / 1024
    if kilobytes < 1024:
        return f"{kilobytes:.1f} KB"
    return f"{kilobytes / 1024:.1f} MB"
