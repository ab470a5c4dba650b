from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Iterable, Protocol

import requests

from daysync.errors import DaySyncError, UpstreamFetchError
from daysync.ics_parser import bucket_events_by_date, normalize_events, parse_ics
from daysync.ics_proxy import IcsProxy
from daysync.models import CalendarEvent, CalendarSource, serialize_datetime, utc_now
from daysync.sync_client import AUTH_COOKIE

logger = logging.getLogger(__name__)


class FeedFetcher(Protocol):
    def fetch_text(self, url: str) -> str:
        ...


class ProxyFeedFetcher:
    """Fetch feeds through the ``/ics-proxy`` endpoint.

    When the proxy call fails and a direct fetcher is configured, the feed is
    fetched directly instead.
    """

    def __init__(
        self,
        proxy_url: str,
        *,
        session: requests.Session | None = None,
        timeout_seconds: float = 15.0,
        password: str = "",
        fallback: IcsProxy | None = None,
    ) -> None:
        self.proxy_url = proxy_url
        self.password = password
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds
        self.fallback = fallback

    def _via_proxy(self, url: str) -> str:
        cookies = {AUTH_COOKIE: self.password} if self.password else {}
        try:
            response = self.session.get(
                self.proxy_url,
                params={"url": url},
                cookies=cookies,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise UpstreamFetchError(f"Proxy request failed: {type(exc).__name__}") from exc
        if not response.ok:
            raise UpstreamFetchError(f"Proxy returned HTTP {response.status_code}")
        return response.text

    def fetch_text(self, url: str) -> str:
        try:
            return self._via_proxy(url)
        except UpstreamFetchError as exc:
            if self.fallback is None:
                raise
            logger.info("ICS proxy failed (%s); fetching feed directly", exc.message)
            return self.fallback.fetch_text(url)


@dataclass
class SourceResult:
    source_id: str
    name: str
    ok: bool
    event_count: int = 0
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "name": self.name,
            "ok": self.ok,
            "eventCount": self.event_count,
            "reason": self.reason,
        }


@dataclass
class IngestionReport:
    events: list[CalendarEvent] = field(default_factory=list)
    by_date: dict[str, list[CalendarEvent]] = field(default_factory=dict)
    results: list[SourceResult] = field(default_factory=list)
    completed_at: datetime = field(default_factory=utc_now)

    @property
    def failures(self) -> list[SourceResult]:
        return [result for result in self.results if not result.ok]

    def to_dict(self) -> dict[str, Any]:
        return {
            "byDate": {key: [event.to_dict() for event in items] for key, items in self.by_date.items()},
            "results": [result.to_dict() for result in self.results],
            "completedAt": serialize_datetime(self.completed_at),
        }


class CalendarIngestor:
    def __init__(self, fetcher: FeedFetcher, tz: tzinfo | None = None) -> None:
        self.fetcher = fetcher
        self.tz = tz

    def ingest_source(self, source: CalendarSource) -> list[CalendarEvent]:
        text = self.fetcher.fetch_text(source.ics_url)
        return normalize_events(parse_ics(text, self.tz), source.id)

    def ingest(self, sources: Iterable[CalendarSource]) -> IngestionReport:
        """Fetch enabled sources one after another; failed sources are reported, not raised."""
        events: list[CalendarEvent] = []
        results: list[SourceResult] = []
        for source in sources:
            if not source.enabled:
                continue
            try:
                source_events = self.ingest_source(source)
            except DaySyncError as exc:
                logger.warning("Calendar source %s skipped: %s", source.id, exc.message)
                results.append(SourceResult(source_id=source.id, name=source.name, ok=False, reason=exc.message))
                continue
            except Exception as exc:
                reason = f"{type(exc).__name__}: {exc}"
                logger.warning("Calendar source %s skipped: %s", source.id, reason)
                results.append(SourceResult(source_id=source.id, name=source.name, ok=False, reason=reason))
                continue
            events.extend(source_events)
            results.append(
                SourceResult(source_id=source.id, name=source.name, ok=True, event_count=len(source_events))
            )
        return IngestionReport(
            events=events,
            by_date=bucket_events_by_date(events, self.tz),
            results=results,
        )
