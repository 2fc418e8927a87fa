"""Validation and persistence of events submitted by tracked sites."""
from __future__ import annotations

import logging
import math
from datetime import timezone

from . import schemas
from .codec import EventCodec
from .errors import AuthError, ConfigError, ValidationError
from .keys import is_valid_origin_token
from .models import Event
from .storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_EVENT_VALUE = 1
# Largest accepted magnitude for a single event value. Window sums of values
# within this bound stay finite.
MAX_EVENT_VALUE = 1e12
INVALID_TOKEN_MESSAGE = "Invalid origin token"


def accept_event(storage: Storage, codec: EventCodec, event_in: schemas.CollectIn) -> Event:
    """Authenticate, encode and append one event.

    Raises :class:`AuthError` for malformed or unknown tokens (with the same
    message in both cases), :class:`ConfigError` when the origin has no
    active key and :class:`ValidationError` for values that are not finite or
    exceed :data:`MAX_EVENT_VALUE` in magnitude.
    """

    if not is_valid_origin_token(event_in.origin_token):
        raise AuthError(INVALID_TOKEN_MESSAGE)
    origin = storage.get_origin_by_token(event_in.origin_token)
    if origin is None:
        raise AuthError(INVALID_TOKEN_MESSAGE)

    if storage.get_active_key(origin.id) is None:
        logger.error("Origin %s has no active encryption key", origin.id)
        raise ConfigError("No encryption key configured")

    value = event_in.value if event_in.value is not None else DEFAULT_EVENT_VALUE
    # Magnitude first: math.isfinite cannot convert very large ints.
    if abs(value) > MAX_EVENT_VALUE:
        raise ValidationError(f"value must not exceed {MAX_EVENT_VALUE:g} in magnitude")
    if not math.isfinite(value):
        raise ValidationError("value must be a finite number")
    timestamp = event_in.timestamp
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)

    return storage.events.append(
        origin_id=origin.id,
        timestamp=timestamp,
        page=event_in.page,
        event_type=event_in.event_type,
        value_blob=codec.encode(value),
        metadata=event_in.metadata,
    )
