"""Utility helpers for congregate."""

from __future__ import annotations

from datetime import UTC, date, datetime, time


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def combine(day: date | None, at: time | None) -> datetime | None:
    """Join a calendar date and an optional wall time into a naive datetime."""
    if day is None:
        return None
    return datetime.combine(day, at or time.min)


def truncate_text(text: str | None, max_length: int = 100) -> str:
    """Shorten text for notification bodies, adding an ellipsis when cut."""
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def parse_coordinate(raw: object) -> float | None:
    """Return a float coordinate or ``None`` for blank/invalid values."""
    if raw is None:
        return None
    if isinstance(raw, str) and not raw.strip():
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None
