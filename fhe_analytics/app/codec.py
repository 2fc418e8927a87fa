"""Value codecs used to store and sum per-event metric values.

Callers only depend on :class:`EventCodec`. The bundled
:class:`PlaceholderCodec` provides no confidentiality at all: blobs are JSON
documents and decoding needs no secret. It exists so the aggregation path can
be written against a homomorphic-style ``encode``/``aggregate``/``decode``
contract and a real scheme can be swapped in later.
"""
from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Sequence, Union

logger = logging.getLogger(__name__)

Number = Union[int, float]


class EventCodec(ABC):
    """Strategy interface for encoding values and summing encoded values."""

    @abstractmethod
    def encode(self, value: Number) -> bytes:
        """Return an opaque blob carrying ``value``."""

    @abstractmethod
    def aggregate(self, blobs: Sequence[bytes]) -> bytes:
        """Combine ``blobs`` into one blob whose decoded value is their sum."""

    @abstractmethod
    def decode(self, blob: bytes) -> Number:
        """Recover the value carried by ``blob``."""


class PlaceholderCodec(EventCodec):
    """JSON stand-in for a homomorphic scheme.

    ``decode`` is lossy on purpose: malformed blobs decode to ``0`` instead of
    raising, so one corrupt row cannot break a dashboard. This does not
    preserve data integrity.
    """

    def encode(self, value: Number) -> bytes:
        payload = {"value": value, "encrypted": True, "timestamp": int(time.time() * 1000)}
        return json.dumps(payload).encode("utf-8")

    def aggregate(self, blobs: Sequence[bytes]) -> bytes:
        total: Number = 0
        for blob in blobs:
            total += self.decode(blob)
        return self.encode(total)

    def decode(self, blob: bytes) -> Number:
        try:
            data = json.loads(bytes(blob).decode("utf-8"))
        except (TypeError, ValueError):
            logger.warning("Failed to decode value blob; treating it as 0")
            return 0
        value = data.get("value") if isinstance(data, dict) else None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0
        return value
