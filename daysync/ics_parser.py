from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Iterable

from icalendar import Calendar as ICalendar

from daysync.errors import ValidationError
from daysync.models import CalendarEvent, date_key, start_of_day


@dataclass
class ParsedEvent:
    uid: str
    summary: str
    start: datetime
    end: datetime
    all_day: bool
    status: str | None = None


def _fallback_uid(summary: str, raw_start: Any) -> str:
    seed = f"{summary}|{raw_start}"
    return hashlib.sha1(seed.encode("utf-8")).hexdigest()  # nosec B324


def _decoded(component: Any, key: str) -> Any:
    if component.get(key) is None:
        return None
    try:
        return component.decoded(key)
    except (ValueError, TypeError, KeyError):
        return None


def _to_instant(value: Any, tz: tzinfo | None) -> datetime | None:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            # Floating time: wall clock in the viewer's zone.
            if tz is None:
                return value.astimezone()
            return value.replace(tzinfo=tz)
        return value
    if isinstance(value, date):
        return start_of_day(value, tz)
    return None


def parse_ics(text: str, tz: tzinfo | None = None, now: datetime | None = None) -> list[ParsedEvent]:
    """Parse feed text into events.

    Date-only values become local midnight in ``tz`` (system zone when
    ``None``). End falls back to DTSTART + DURATION, then to start; a missing
    start degrades to ``now``.
    """
    try:
        calendar_obj = ICalendar.from_ical(text)
    except ValueError as exc:
        raise ValidationError(f"Invalid calendar feed: {exc}") from exc

    fallback_now = now or datetime.now(timezone.utc)
    events: list[ParsedEvent] = []
    for component in calendar_obj.walk("VEVENT"):
        summary = str(component.get("SUMMARY", "") or "").strip() or "Untitled"
        raw_start = _decoded(component, "DTSTART")
        start = _to_instant(raw_start, tz)
        all_day = isinstance(raw_start, date) and not isinstance(raw_start, datetime)

        end = _to_instant(_decoded(component, "DTEND"), tz)
        if end is None and start is not None:
            duration = _decoded(component, "DURATION")
            if isinstance(duration, timedelta):
                end = start + duration
        if start is None:
            start = fallback_now
        if end is None:
            # RFC 5545: a date-valued DTSTART with no end lasts the whole day
            end = start + timedelta(days=1) if all_day else start

        uid = str(component.get("UID", "") or "").strip() or _fallback_uid(summary, raw_start)
        status_value = component.get("STATUS")
        events.append(
            ParsedEvent(
                uid=uid,
                summary=summary,
                start=start,
                end=end,
                all_day=all_day,
                status=str(status_value) if status_value is not None else None,
            )
        )
    return events


def normalize_events(events: Iterable[ParsedEvent], source_id: str) -> list[CalendarEvent]:
    normalized: list[CalendarEvent] = []
    for event in events:
        if (event.status or "").strip().lower() == "cancelled":
            continue
        normalized.append(
            CalendarEvent(
                id=f"{source_id}-{event.uid}",
                title=event.summary,
                start=event.start,
                end=event.end,
                all_day=event.all_day,
                source_id=source_id,
            )
        )
    return normalized


def bucket_events_by_date(
    events: Iterable[CalendarEvent], tz: tzinfo | None = None
) -> dict[str, list[CalendarEvent]]:
    """Group events by the local day of their start; all-day first, then by start."""
    buckets: dict[str, list[CalendarEvent]] = {}
    for event in events:
        buckets.setdefault(date_key(event.start, tz), []).append(event)
    for items in buckets.values():
        items.sort(key=lambda item: (not item.all_day, item.start))
    return dict(sorted(buckets.items()))
