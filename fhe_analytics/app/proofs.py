"""Per-day aggregate maps and digests handed to on-chain anchoring."""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import Dict, Optional

from .aggregation import AggregationEngine
from .storage import Storage

logger = logging.getLogger(__name__)

PROOF_METRICS = ("pageviews", "sessions", "conversions", "visitors")


def derive_day_totals(storage: Storage, engine: AggregationEngine, origin_id: str, day: date) -> Dict[str, int]:
    start = datetime.combine(day, time.min)
    end = datetime.combine(day, time.max)
    metrics = engine.metrics_for(storage.get_events_by_date_range(origin_id, start, end))
    return {metric: int(getattr(metrics, metric)) for metric in PROOF_METRICS}


def day_aggregates(
    storage: Storage,
    engine: AggregationEngine,
    origin_id: str,
    day: date,
    today: Optional[date] = None,
) -> Dict[str, int]:
    """Return ``{metric: total}`` for ``day``.

    Totals for days that have ended (UTC) are stored as Aggregate rows on first
    request and reused afterwards. The current day, or any later one, can still
    receive events, so its totals are derived fresh and never stored.
    """

    if today is None:
        today = datetime.now(timezone.utc).date()
    if day >= today:
        return derive_day_totals(storage, engine, origin_id, day)

    rows = storage.get_aggregates_by_day(origin_id, day)
    if not rows:
        totals = derive_day_totals(storage, engine, origin_id, day)
        for metric, value in totals.items():
            storage.create_aggregate(origin_id=origin_id, day=day, metric=metric, value_plain=str(value))
        rows = storage.get_aggregates_by_day(origin_id, day)
        logger.info("Stored %d aggregates for origin %s on %s", len(rows), origin_id, day)

    return {row.metric: int(row.value_plain) for row in rows if row.value_plain}
