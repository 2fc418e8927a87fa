"""Dashboard metrics derived from an origin's recent event window."""
from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from .codec import EventCodec, Number
from .models import Event
from .storage import DEFAULT_WINDOW, EventStore

logger = logging.getLogger(__name__)

# Share of sessions reported as unique visitors. A fixed heuristic, not a
# measurement of uniqueness.
VISITOR_RATIO = 0.7
TIME_SERIES_DAYS = 7
TOP_PAGES_LIMIT = 5
SUMMED_EVENT_TYPES = ("pageview", "session", "conversion")


@dataclass(frozen=True)
class Metrics:
    visitors: int
    pageviews: Number
    sessions: Number
    avg_session: int
    bounce_rate: int
    conversions: Number


@dataclass(frozen=True)
class TimeSeriesPoint:
    date: str
    visitors: int
    pageviews: int


@dataclass(frozen=True)
class TopPage:
    page: str
    views: int


@dataclass(frozen=True)
class Report:
    metrics: Metrics
    time_series: List[TimeSeriesPoint]
    top_pages: List[TopPage]


class AggregationEngine:
    """Derive totals, a daily series and top pages for one origin.

    Every computation reads at most ``window`` of the origin's newest events.
    Totals for busier origins are therefore approximations over that window.
    """

    def __init__(
        self,
        events: EventStore,
        codec: EventCodec,
        *,
        window: int = DEFAULT_WINDOW,
        visitor_ratio: float = VISITOR_RATIO,
    ) -> None:
        self._events = events
        self._codec = codec
        self._window = window
        self._visitor_ratio = visitor_ratio

    def compute_metrics(self, origin_id: str) -> Metrics:
        return self.metrics_for(self._recent(origin_id))

    def compute_time_series(self, origin_id: str, today: Optional[date] = None) -> List[TimeSeriesPoint]:
        return self.time_series_for(self._recent(origin_id), today)

    def compute_top_pages(self, origin_id: str) -> List[TopPage]:
        return self.top_pages_for(self._recent(origin_id))

    def report(self, origin_id: str, today: Optional[date] = None) -> Report:
        events = self._recent(origin_id)
        return Report(
            metrics=self.metrics_for(events),
            time_series=self.time_series_for(events, today),
            top_pages=self.top_pages_for(events),
        )

    def _recent(self, origin_id: str) -> List[Event]:
        return self._events.recent_window(origin_id, self._window)

    def sum_values(self, blobs: Sequence[bytes]) -> Number:
        """Sum encoded values, decoding only the aggregated blob."""

        if not blobs:
            return 0
        total = self._codec.decode(self._codec.aggregate(blobs))
        try:
            finite = math.isfinite(total)
        except OverflowError:
            finite = False
        if not finite:
            logger.warning("Sum of %d encoded values is out of range; treating it as 0", len(blobs))
            return 0
        return total

    def metrics_for(self, events: Iterable[Event]) -> Metrics:
        partitions: Dict[str, List[bytes]] = {event_type: [] for event_type in SUMMED_EVENT_TYPES}
        for event in events:
            if event.event_type in partitions:
                partitions[event.event_type].append(event.value_blob)

        pageviews = self.sum_values(partitions["pageview"])
        sessions = self.sum_values(partitions["session"])
        conversions = self.sum_values(partitions["conversion"])

        avg_session = math.floor(pageviews / sessions) if sessions > 0 else 0
        if sessions > 0 and pageviews > 0:
            bounce_rate = math.floor((1 - avg_session / pageviews) * 100)
        else:
            bounce_rate = 0

        return Metrics(
            visitors=self._visitors(sessions),
            pageviews=pageviews,
            sessions=sessions,
            avg_session=avg_session,
            bounce_rate=bounce_rate,
            conversions=conversions,
        )

    def time_series_for(self, events: Iterable[Event], today: Optional[date] = None) -> List[TimeSeriesPoint]:
        if today is None:
            today = datetime.now(timezone.utc).date()

        pageviews: Counter = Counter()
        sessions: Counter = Counter()
        for event in events:
            day = _utc_day(event.timestamp)
            if event.event_type == "pageview":
                pageviews[day] += 1
            elif event.event_type == "session":
                sessions[day] += 1

        points = []
        for offset in range(TIME_SERIES_DAYS - 1, -1, -1):
            day = today - timedelta(days=offset)
            points.append(
                TimeSeriesPoint(
                    date=day.isoformat(),
                    visitors=self._visitors(sessions[day]),
                    pageviews=pageviews[day],
                )
            )
        return points

    @staticmethod
    def top_pages_for(events: Iterable[Event], limit: int = TOP_PAGES_LIMIT) -> List[TopPage]:
        # Counter keeps first-seen order, so sorted() leaves ties in that order.
        counts = Counter(event.page for event in events)
        ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
        return [TopPage(page=page, views=views) for page, views in ranked[:limit]]

    def _visitors(self, sessions: Number) -> int:
        return math.floor(sessions * self._visitor_ratio)


def _utc_day(timestamp: datetime) -> date:
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    return timestamp.date()
