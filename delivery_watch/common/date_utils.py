"""Shared helpers for timezone-aware order time calculations."""
from __future__ import annotations

import re
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TIMEZONE = "America/New_York"

_DISPLAY_TIME_RE = re.compile(r"(\d{1,2}):(\d{2})\s*([AaPp][Mm])")


def get_timezone(name: str | None = None) -> ZoneInfo:
    """Return the pipeline timezone.

    Dashboard times are rendered in the monitored system's local zone, so all
    window comparisons must happen in that zone regardless of the host locale.
    Unknown names fall back to :data:`DEFAULT_TIMEZONE`.
    """

    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def aware_now(tz: ZoneInfo | None = None) -> datetime:
    """Return ``datetime.now`` in the pipeline timezone."""

    return datetime.now(tz or get_timezone())


def parse_display_time(text: str | None, reference: datetime) -> datetime | None:
    """Parse ``"12:00 PM"`` / ``"12:00 PM EST"`` onto the reference day.

    Returns ``None`` when the text carries no recognisable clock time.
    """

    if not text:
        return None
    match = _DISPLAY_TIME_RE.search(text)
    if not match:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2))
    if not 1 <= hours <= 12 or minutes > 59:
        return None
    period = match.group(3).upper()
    if period == "PM" and hours != 12:
        hours += 12
    elif period == "AM" and hours == 12:
        hours = 0
    return reference.replace(hour=hours, minute=minutes, second=0, microsecond=0)


def parse_iso_time(text: str | None, tz: ZoneInfo | None = None) -> datetime | None:
    """Parse an ISO-8601 timestamp and convert it to the pipeline timezone."""

    if not text:
        return None
    raw = text.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    zone = tz or get_timezone()
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=zone)
    return parsed.astimezone(zone)


def parse_order_time(text: str | None, reference: datetime) -> datetime | None:
    """Parse either an ISO timestamp or a dashboard clock time."""

    tz = reference.tzinfo if isinstance(reference.tzinfo, ZoneInfo) else None
    return parse_iso_time(text, tz) or parse_display_time(text, reference)


def format_display_time(value: datetime) -> str:
    hours = value.hour % 12 or 12
    period = "PM" if value.hour >= 12 else "AM"
    return f"{hours}:{value.minute:02d} {period}"
