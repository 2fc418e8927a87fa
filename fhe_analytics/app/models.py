"""SQLAlchemy models for origins, keys, encoded events and aggregates."""
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, LargeBinary, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class Origin(Base):
    __tablename__ = "origins"

    id = Column(String(36), primary_key=True, default=_new_id)
    domain = Column(String(255), nullable=False)
    owner_address = Column(String(255), index=True, nullable=False)
    token = Column(String(64), unique=True, index=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    keys = relationship("EncryptionKey", cascade="all, delete-orphan", passive_deletes=True)
    roles = relationship("Role", cascade="all, delete-orphan", passive_deletes=True)
    aggregates = relationship("Aggregate", cascade="all, delete-orphan", passive_deletes=True)


class EncryptionKey(Base):
    __tablename__ = "encryption_keys"

    id = Column(String(36), primary_key=True, default=_new_id)
    origin_id = Column(String(36), ForeignKey("origins.id", ondelete="CASCADE"), index=True, nullable=False)
    public_key = Column(Text, nullable=False)
    fingerprint = Column(String(64), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    origin_id = Column(String(36), ForeignKey("origins.id", ondelete="CASCADE"), index=True, nullable=False)
    timestamp = Column(DateTime, index=True, nullable=False)
    page = Column(String(2048), nullable=False)
    event_type = Column(String(32), index=True, nullable=False)
    value_blob = Column(LargeBinary, nullable=False)
    metadata_json = Column("metadata", Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Aggregate(Base):
    __tablename__ = "aggregates"

    id = Column(Integer, primary_key=True, index=True)
    origin_id = Column(String(36), ForeignKey("origins.id", ondelete="CASCADE"), index=True, nullable=False)
    day = Column(Date, index=True, nullable=False)
    metric = Column(String(64), nullable=False)
    value_plain = Column(String(64), nullable=True)


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, index=True)
    origin_id = Column(String(36), ForeignKey("origins.id", ondelete="CASCADE"), index=True, nullable=False)
    address = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    role = Column(String(32), default="owner", nullable=False)
