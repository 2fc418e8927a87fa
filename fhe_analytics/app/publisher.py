"""Recompute-and-publish step run after each accepted event."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict
from typing import Any, Callable, ContextManager, Dict, Set

from sqlalchemy.orm import Session

from .aggregation import AggregationEngine, Report
from .broker import SubscriptionBroker
from .codec import EventCodec
from .storage import EventStore

logger = logging.getLogger(__name__)


def snapshot_from_report(report: Report) -> Dict[str, Any]:
    metrics = report.metrics
    return {
        "metrics": {
            "visitors": metrics.visitors,
            "pageviews": metrics.pageviews,
            "sessions": metrics.sessions,
            "avgSession": metrics.avg_session,
            "bounceRate": metrics.bounce_rate,
            "conversions": metrics.conversions,
            "encrypted": True,
        },
        "timeSeries": [asdict(point) for point in report.time_series],
        "topPages": [{**asdict(page), "encrypted": True} for page in report.top_pages],
        "timestamp": int(time.time() * 1000),
    }


class LivePublisher:
    """Recomputes an origin's report and pushes it to the broker.

    Runs are coalesced per origin: while one recompute is in flight, further
    requests only mark the origin dirty, and the running loop does one more
    pass afterwards. Snapshots for an origin are therefore published in the
    order they were computed.
    """

    def __init__(
        self,
        broker: SubscriptionBroker,
        codec: EventCodec,
        session_factory: Callable[[], ContextManager[Session]],
        *,
        window: int,
        visitor_ratio: float,
    ) -> None:
        self._broker = broker
        self._codec = codec
        self._session_factory = session_factory
        self._window = window
        self._visitor_ratio = visitor_ratio
        self._running: Set[str] = set()
        self._dirty: Set[str] = set()

    def compute_snapshot(self, origin_id: str) -> Dict[str, Any]:
        with self._session_factory() as session:
            engine = AggregationEngine(
                EventStore(session),
                self._codec,
                window=self._window,
                visitor_ratio=self._visitor_ratio,
            )
            return snapshot_from_report(engine.report(origin_id))

    async def recompute_and_publish(self, origin_id: str) -> None:
        if origin_id in self._running:
            self._dirty.add(origin_id)
            return

        self._running.add(origin_id)
        try:
            while True:
                self._dirty.discard(origin_id)
                if self._broker.subscriber_count(origin_id) == 0:
                    break
                snapshot = await asyncio.to_thread(self.compute_snapshot, origin_id)
                self._broker.publish(origin_id, snapshot)
                if origin_id not in self._dirty:
                    break
        except Exception:
            # The event is already committed; only this live update is lost.
            logger.exception("Failed to publish metrics update for origin %s", origin_id)
        finally:
            self._running.discard(origin_id)
            self._dirty.discard(origin_id)
