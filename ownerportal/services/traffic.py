from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterable
from urllib.parse import urlsplit

from ownerportal.domain.records import AnalyticsEvent
from ownerportal.services.timeseries import build_day_points, day_range, utc_day


PAGE_VIEW_EVENT = "page_view"
ONLINE_WINDOW = timedelta(minutes=5)
TOP_N = 12

DIRECT_SOURCE = "Direct"
UNKNOWN_COUNTRY = "Unknown"
OTHER_DEVICE = "Other"
_DEVICE_CLASSES = {"desktop": "Desktop", "mobile": "Mobile", "tablet": "Tablet"}


def parse_source(referrer: str | None) -> str:
    """Reduce a referrer URL to its host, or ``Direct`` when there is none."""
    if not referrer or not referrer.strip():
        return DIRECT_SOURCE
    try:
        host = (urlsplit(referrer.strip()).hostname or "").lower()
    except ValueError:
        return DIRECT_SOURCE
    if not host:
        return DIRECT_SOURCE
    if host.startswith("www."):
        host = host[4:]
    return host


def parse_country(properties: dict[str, Any]) -> str:
    value = str(properties.get("country") or "").strip()
    if len(value) == 2 and value.isalpha() and value.isascii():
        return value.upper()
    return UNKNOWN_COUNTRY


def parse_device(properties: dict[str, Any]) -> str:
    value = str(properties.get("device_type") or "").strip().lower()
    return _DEVICE_CLASSES.get(value, OTHER_DEVICE)


def _page_label(path: str | None) -> str:
    if not path:
        return "/"
    return path.split("?", 1)[0].split("#", 1)[0] or "/"


@dataclass
class TrafficSession:
    session_id: str
    first_seen: datetime
    last_seen: datetime
    source: str
    country: str
    device: str
    page_views: int = 0
    user_id: str | None = None

    @property
    def duration_seconds(self) -> float:
        return (self.last_seen - self.first_seen).total_seconds()

    def absorb(self, event: AnalyticsEvent, country: str, device: str) -> None:
        if event.occurred_at < self.first_seen:
            self.first_seen = event.occurred_at
        if event.occurred_at > self.last_seen:
            self.last_seen = event.occurred_at
        if self.country == UNKNOWN_COUNTRY and country != UNKNOWN_COUNTRY:
            self.country = country
        if self.device == OTHER_DEVICE and device != OTHER_DEVICE:
            self.device = device
        if self.user_id is None and event.user_id:
            self.user_id = event.user_id


@dataclass(frozen=True)
class WebsiteAnalytics:
    range_days: int
    unique_visitors: int = 0
    page_views: int = 0
    signed_in_visitors: int = 0
    online_now: int = 0
    views_per_visit: float = 0.0
    bounce_rate: float = 0.0
    avg_visit_duration_sec: float = 0.0
    top_sources: list[dict[str, Any]] = field(default_factory=list)
    top_pages: list[dict[str, Any]] = field(default_factory=list)
    top_countries: list[dict[str, Any]] = field(default_factory=list)
    top_devices: list[dict[str, Any]] = field(default_factory=list)
    trend: list[dict[str, Any]] = field(default_factory=list)
    event_sample_rows: int = 0
    warning: str | None = None

    @classmethod
    def empty(cls, *, range_days: int, end: date, warning: str | None = None) -> "WebsiteAnalytics":
        days = day_range(range_days=range_days, end=end)
        trend = build_day_points(days, build=lambda _day: {"visitors": 0, "pageViews": 0})
        return cls(range_days=max(1, int(range_days)), trend=trend, warning=warning)

    def to_payload(self) -> dict[str, Any]:
        return {
            "rangeDays": self.range_days,
            "uniqueVisitors": self.unique_visitors,
            "pageViews": self.page_views,
            "signedInVisitors": self.signed_in_visitors,
            "onlineNow": self.online_now,
            "viewsPerVisit": self.views_per_visit,
            "bounceRate": self.bounce_rate,
            "avgVisitDurationSec": self.avg_visit_duration_sec,
            "topSources": self.top_sources,
            "topPages": self.top_pages,
            "topCountries": self.top_countries,
            "topDevices": self.top_devices,
            "eventSampleRows": self.event_sample_rows,
            "warning": self.warning,
        }


def top_counts(counter: Counter[str], limit: int = TOP_N) -> list[dict[str, Any]]:
    ranked = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    return [{"label": label, "count": count} for label, count in ranked[:limit]]


def _event_sort_key(event: AnalyticsEvent) -> tuple[Any, ...]:
    return (event.occurred_at, event.session_id, event.event_name, event.path or "")


def reconstruct_sessions(events: Iterable[AnalyticsEvent]) -> dict[str, TrafficSession]:
    # Chronological pass so each session's source comes from its landing event.
    sessions: dict[str, TrafficSession] = {}
    for event in sorted(events, key=_event_sort_key):
        if not event.session_id:
            continue
        props = event.properties or {}
        country = parse_country(props)
        device = parse_device(props)
        current = sessions.get(event.session_id)
        if current is None:
            current = TrafficSession(
                session_id=event.session_id,
                first_seen=event.occurred_at,
                last_seen=event.occurred_at,
                source=parse_source(event.referrer),
                country=country,
                device=device,
                user_id=event.user_id or None,
            )
            sessions[event.session_id] = current
        else:
            current.absorb(event, country, device)
        if event.event_name == PAGE_VIEW_EVENT:
            current.page_views += 1
    return sessions


def reconstruct_traffic(
    events: Iterable[AnalyticsEvent],
    *,
    range_days: int,
    now: datetime,
) -> WebsiteAnalytics:
    """Aggregate raw analytics events into session-level website metrics.

    Visits, bounce rate and durations only consider sessions with at least one
    page view; a session with exactly one page view is a bounce. The trend has
    one point per day in range, zero-filled.
    """
    event_list = [event for event in events if event.session_id]
    sessions = reconstruct_sessions(event_list)

    page_view_events = [event for event in event_list if event.event_name == PAGE_VIEW_EVENT]
    viewing = [session for session in sessions.values() if session.page_views >= 1]
    viewing_page_views = sum(session.page_views for session in viewing)
    bounced = sum(1 for session in viewing if session.page_views == 1)

    views_per_visit = round(viewing_page_views / len(viewing), 2) if viewing else 0.0
    bounce_rate = round(100.0 * bounced / len(viewing), 1) if viewing else 0.0
    avg_duration = (
        round(sum(session.duration_seconds for session in viewing) / len(viewing), 1) if viewing else 0.0
    )

    online_cutoff = now - ONLINE_WINDOW
    online_now = sum(1 for session in sessions.values() if session.last_seen >= online_cutoff)
    signed_in = {event.user_id for event in event_list if event.user_id}

    days = day_range(range_days=range_days, end=utc_day(now))
    sessions_by_day: dict[date, set[str]] = {}
    views_by_day: Counter[date] = Counter()
    for event in event_list:
        day = utc_day(event.occurred_at)
        sessions_by_day.setdefault(day, set()).add(event.session_id)
        if event.event_name == PAGE_VIEW_EVENT:
            views_by_day[day] += 1
    trend = build_day_points(
        days,
        build=lambda day: {
            "visitors": len(sessions_by_day.get(day, ())),
            "pageViews": int(views_by_day.get(day, 0)),
        },
    )

    return WebsiteAnalytics(
        range_days=max(1, int(range_days)),
        unique_visitors=len(sessions),
        page_views=len(page_view_events),
        signed_in_visitors=len(signed_in),
        online_now=online_now,
        views_per_visit=views_per_visit,
        bounce_rate=bounce_rate,
        avg_visit_duration_sec=avg_duration,
        top_sources=top_counts(Counter(session.source for session in sessions.values())),
        top_pages=top_counts(Counter(_page_label(event.path) for event in page_view_events)),
        top_countries=top_counts(Counter(session.country for session in sessions.values())),
        top_devices=top_counts(Counter(session.device for session in sessions.values())),
        trend=trend,
        event_sample_rows=len(event_list),
    )
