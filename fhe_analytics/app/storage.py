"""Persistence operations used by the collection pipeline."""
from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, Callable, List, Optional, Tuple

from sqlalchemy import Select, delete, select
from sqlalchemy.orm import Session

from .errors import NotFoundError
from .keys import KeyPair, generate_key_pair, generate_origin_token
from .models import Aggregate, EncryptionKey, Event, Origin, Role

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 1000


class EventStore:
    """Append-only log of encoded events, partitioned by origin.

    Reads are bounded: :meth:`recent_window` never returns more than ``limit``
    rows, so anything computed from it approximates the most recent events
    once an origin outgrows the window.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def append(
        self,
        *,
        origin_id: str,
        timestamp: datetime,
        page: str,
        event_type: str,
        value_blob: bytes,
        metadata: Optional[Any] = None,
    ) -> Event:
        if self._session.get(Origin, origin_id) is None:
            raise NotFoundError(f"Origin {origin_id} does not exist")
        event = Event(
            origin_id=origin_id,
            timestamp=timestamp,
            page=page,
            event_type=event_type,
            value_blob=value_blob,
            metadata_json=json.dumps(metadata) if metadata is not None else None,
        )
        self._session.add(event)
        self._session.flush()
        return event

    def recent_window(self, origin_id: str, limit: int = DEFAULT_WINDOW) -> List[Event]:
        stmt: Select[Tuple[Event]] = (
            select(Event)
            .where(Event.origin_id == origin_id)
            .order_by(Event.timestamp.desc(), Event.id.desc())
            .limit(limit)
        )
        return list(self._session.execute(stmt).scalars().all())

    def by_date_range(self, origin_id: str, start: datetime, end: datetime) -> List[Event]:
        stmt: Select[Tuple[Event]] = (
            select(Event)
            .where(
                Event.origin_id == origin_id,
                Event.timestamp >= start,
                Event.timestamp <= end,
            )
            .order_by(Event.timestamp.desc(), Event.id.desc())
        )
        return list(self._session.execute(stmt).scalars().all())

    def delete_all_for_origin(self, origin_id: str) -> int:
        result = self._session.execute(delete(Event).where(Event.origin_id == origin_id))
        return result.rowcount or 0


class Storage:
    """Origin, key, role and aggregate records plus the event log."""

    def __init__(self, session: Session) -> None:
        self._session = session
        self.events = EventStore(session)

    def commit(self) -> None:
        self._session.commit()

    # Origins

    def create_origin(self, *, domain: str, owner_address: str, token: str) -> Origin:
        origin = Origin(domain=domain, owner_address=owner_address, token=token)
        self._session.add(origin)
        self._session.flush()
        return origin

    def register_origin(
        self,
        *,
        domain: str,
        owner_address: str,
        key_factory: Optional[Callable[[], KeyPair]] = None,
    ) -> Tuple[Origin, EncryptionKey]:
        """Create an origin together with its active key and owner role."""

        origin = self.create_origin(
            domain=domain,
            owner_address=owner_address,
            token=generate_origin_token(),
        )
        key_pair = (key_factory or generate_key_pair)()
        key = self.create_key(
            origin_id=origin.id,
            public_key=key_pair.public_key,
            fingerprint=key_pair.fingerprint,
        )
        self.create_role(origin_id=origin.id, address=owner_address, role="owner")
        logger.info("Registered origin %s for domain %s", origin.id, domain)
        return origin, key

    def get_origin_by_id(self, origin_id: str) -> Optional[Origin]:
        return self._session.get(Origin, origin_id)

    def get_origin_by_token(self, token: str) -> Optional[Origin]:
        return self._session.execute(select(Origin).where(Origin.token == token)).scalar_one_or_none()

    def get_origins_by_owner(self, owner_address: str) -> List[Origin]:
        stmt = select(Origin).where(Origin.owner_address == owner_address).order_by(Origin.created_at.asc())
        return list(self._session.execute(stmt).scalars().all())

    def delete_origin(self, origin_id: str) -> None:
        origin = self.get_origin_by_id(origin_id)
        if origin is None:
            raise NotFoundError(f"Origin {origin_id} does not exist")
        removed = self.events.delete_all_for_origin(origin_id)
        self._session.delete(origin)
        self._session.flush()
        logger.info("Deleted origin %s and %d events", origin_id, removed)

    # Events

    def create_event(self, **fields: Any) -> Event:
        return self.events.append(**fields)

    def get_recent_events(self, origin_id: str, limit: int = DEFAULT_WINDOW) -> List[Event]:
        return self.events.recent_window(origin_id, limit)

    def get_events_by_date_range(self, origin_id: str, start: datetime, end: datetime) -> List[Event]:
        return self.events.by_date_range(origin_id, start, end)

    # Aggregates

    def create_aggregate(self, *, origin_id: str, day: date, metric: str, value_plain: Optional[str]) -> Aggregate:
        aggregate = Aggregate(origin_id=origin_id, day=day, metric=metric, value_plain=value_plain)
        self._session.add(aggregate)
        self._session.flush()
        return aggregate

    def get_aggregates_by_origin(self, origin_id: str) -> List[Aggregate]:
        stmt = select(Aggregate).where(Aggregate.origin_id == origin_id).order_by(Aggregate.day.desc())
        return list(self._session.execute(stmt).scalars().all())

    def get_aggregates_by_day(self, origin_id: str, day: date) -> List[Aggregate]:
        stmt = (
            select(Aggregate)
            .where(Aggregate.origin_id == origin_id, Aggregate.day == day)
            .order_by(Aggregate.id.asc())
        )
        return list(self._session.execute(stmt).scalars().all())

    # Roles

    def create_role(
        self,
        *,
        origin_id: str,
        role: str,
        address: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Role:
        record = Role(origin_id=origin_id, address=address, email=email, role=role)
        self._session.add(record)
        self._session.flush()
        return record

    def get_roles_by_origin(self, origin_id: str) -> List[Role]:
        return list(self._session.execute(select(Role).where(Role.origin_id == origin_id)).scalars().all())

    def check_user_role(
        self,
        origin_id: str,
        address: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Role]:
        if not address and not email:
            return None
        stmt = select(Role).where(Role.origin_id == origin_id)
        if address:
            stmt = stmt.where(Role.address == address)
        if email:
            stmt = stmt.where(Role.email == email)
        return self._session.execute(stmt.limit(1)).scalars().first()

    # Keys

    def create_key(self, *, origin_id: str, public_key: str, fingerprint: str, is_active: bool = True) -> EncryptionKey:
        key = EncryptionKey(
            origin_id=origin_id,
            public_key=public_key,
            fingerprint=fingerprint,
            is_active=is_active,
        )
        self._session.add(key)
        self._session.flush()
        return key

    def get_active_key(self, origin_id: str) -> Optional[EncryptionKey]:
        stmt = (
            select(EncryptionKey)
            .where(EncryptionKey.origin_id == origin_id, EncryptionKey.is_active.is_(True))
            .order_by(EncryptionKey.created_at.desc())
            .limit(1)
        )
        return self._session.execute(stmt).scalars().first()

    def get_keys_by_origin(self, origin_id: str) -> List[EncryptionKey]:
        stmt = (
            select(EncryptionKey)
            .where(EncryptionKey.origin_id == origin_id)
            .order_by(EncryptionKey.created_at.desc())
        )
        return list(self._session.execute(stmt).scalars().all())
