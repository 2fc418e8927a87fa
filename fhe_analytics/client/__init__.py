"""Client-side tracker for the FHE Analytics collection API."""
from __future__ import annotations

from .tracker import (
    Delivery,
    DeliveryState,
    HttpTransport,
    Tracker,
    TransportError,
    endpoint_from_script_url,
)

__all__ = [
    "Delivery",
    "DeliveryState",
    "HttpTransport",
    "Tracker",
    "TransportError",
    "endpoint_from_script_url",
]
