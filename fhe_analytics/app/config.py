"""Environment driven settings for the analytics service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class Settings:
    event_window: int
    visitor_ratio: float
    collect_rate_limit: int
    collect_rate_window: int
    stream_heartbeat_seconds: float
    subscriber_queue_size: int


def _get_int(name: str, default: int) -> int:
    value = int(os.environ.get(name, str(default)))
    if value <= 0:
        raise RuntimeError(f"{name} must be a positive integer, got {value}")
    return value


def _get_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        event_window=_get_int("FHE_ANALYTICS_EVENT_WINDOW", 1000),
        visitor_ratio=_get_float("FHE_ANALYTICS_VISITOR_RATIO", 0.7),
        collect_rate_limit=_get_int("FHE_ANALYTICS_COLLECT_RATE_LIMIT", 600),
        collect_rate_window=_get_int("FHE_ANALYTICS_COLLECT_RATE_WINDOW", 60),
        stream_heartbeat_seconds=_get_float("FHE_ANALYTICS_STREAM_HEARTBEAT_SECONDS", 15.0),
        subscriber_queue_size=_get_int("FHE_ANALYTICS_SUBSCRIBER_QUEUE_SIZE", 100),
    )
