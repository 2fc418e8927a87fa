"""Pydantic models for request and response bodies."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

EventType = Literal["pageview", "session", "conversion", "event"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class OriginIn(CamelModel):
    domain: str = Field(..., min_length=1, description="Domain of the tracked site")
    owner_address: str = Field(..., min_length=1, description="Wallet address of the site owner")


class OriginOut(CamelModel):
    id: str
    domain: str
    owner_address: str
    token: str
    created_at: datetime
    updated_at: datetime


class OriginCreated(CamelModel):
    origin: OriginOut
    token: str
    public_key_fingerprint: str


class DemoOriginOut(CamelModel):
    origin: OriginOut
    token: str


class DeleteResult(CamelModel):
    success: bool
    message: str


class KeyOut(CamelModel):
    public_key: str
    fingerprint: str
    id: str


class CollectIn(CamelModel):
    origin_token: str
    timestamp: datetime = Field(..., description="ISO-8601 capture time")
    page: str
    event_type: EventType
    value: Optional[Union[int, float]] = None
    metadata: Optional[Any] = None


class CollectAccepted(CamelModel):
    accepted: bool = True
    encrypted: bool = True
    realtime: bool = True
    message: str = "Event encrypted and processed"


class MetricsOut(CamelModel):
    visitors: int
    pageviews: Union[int, float]
    sessions: Union[int, float]
    avg_session: int
    bounce_rate: int
    conversions: Union[int, float]
    encrypted: bool = True


class TimeSeriesPointOut(CamelModel):
    date: str
    visitors: int
    pageviews: int


class TopPageOut(CamelModel):
    page: str
    views: int
    encrypted: bool = True


class MetricsReportOut(CamelModel):
    metrics: MetricsOut
    time_series: List[TimeSeriesPointOut]
    top_pages: List[TopPageOut]


class ProofIn(CamelModel):
    day: date


class ProofOut(CamelModel):
    digest: str
    cid: str
    aggregates: Dict[str, int]
    verified: bool = True


class HealthOut(CamelModel):
    status: str
    fhe: str
    realtime: str
    database: str
