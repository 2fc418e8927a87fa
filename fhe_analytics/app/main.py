"""FastAPI application entrypoint for the analytics collection API."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import AsyncIterator, Callable, Dict, Iterator, List, Tuple, Type

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from . import schemas
from .aggregation import AggregationEngine
from .broker import QueueConnection, SubscriptionBroker
from .codec import EventCodec, PlaceholderCodec
from .collector import accept_event
from .config import get_settings
from .database import SessionLocal, init_db, session_scope
from .errors import AnalyticsError, AuthError, ConfigError, NotFoundError, ValidationError
from .keys import generate_mock_cid, generate_proof_digest
from .proofs import day_aggregates
from .publisher import LivePublisher
from .storage import Storage

logger = logging.getLogger(__name__)

DEMO_ORIGIN_DOMAIN = "demo.fhe-analytics.app"
DEMO_OWNER_ADDRESS = "0x0000000000000000000000000000000000000000"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}
_ERROR_STATUS: Dict[Type[AnalyticsError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthError: status.HTTP_401_UNAUTHORIZED,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConfigError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

init_db()

app = FastAPI(
    title="FHE Analytics API",
    description="API for collecting encoded site events and streaming aggregate metrics.",
    version="0.1.0",
)


class RateLimitError(Exception):
    """Raised when a client submits more events than the collect window allows."""


class FixedWindowRateLimiter:
    """In-memory fixed window limiter keyed by client address.

    Expired windows are evicted at most once per window length, so the
    counter table only holds clients seen during the last window.
    """

    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.monotonic) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._last_eviction = clock()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)

    def check(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            if now - self._last_eviction >= self._window_seconds:
                self._evict_expired(now)
            count, window_start = self._counters.get(key, (0, now))
            if now - window_start >= self._window_seconds:
                count = 0
                window_start = now
            if count >= self._max_requests:
                raise RateLimitError(f"Collect rate limit exceeded for {key}")
            self._counters[key] = (count + 1, window_start)

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (_, start) in self._counters.items() if now - start >= self._window_seconds]
        for key in expired:
            del self._counters[key]
        self._last_eviction = now


def _configure_state(application: FastAPI) -> None:
    settings = get_settings()
    codec = PlaceholderCodec()
    broker = SubscriptionBroker()
    application.state.codec = codec
    application.state.broker = broker
    application.state.publisher = LivePublisher(
        broker,
        codec,
        session_scope,
        window=settings.event_window,
        visitor_ratio=settings.visitor_ratio,
    )
    application.state.collect_rate_limiter = FixedWindowRateLimiter(
        settings.collect_rate_limit, settings.collect_rate_window
    )


_configure_state(app)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_storage(db: Session = Depends(get_db)) -> Storage:
    return Storage(db)


def get_codec(request: Request) -> EventCodec:
    return request.app.state.codec


def get_broker(request: Request) -> SubscriptionBroker:
    return request.app.state.broker


def get_publisher(request: Request) -> LivePublisher:
    return request.app.state.publisher


def get_engine(storage: Storage = Depends(get_storage), codec: EventCodec = Depends(get_codec)) -> AggregationEngine:
    settings = get_settings()
    return AggregationEngine(
        storage.events,
        codec,
        window=settings.event_window,
        visitor_ratio=settings.visitor_ratio,
    )


def _http_error(exc: AnalyticsError) -> HTTPException:
    status_code = _ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=status_code, detail=str(exc))


@app.exception_handler(RequestValidationError)
async def invalid_request_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected invalid request body: %s", exc.errors())
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid request"})


@app.get("/api/health", response_model=schemas.HealthOut)
def health(storage: Storage = Depends(get_storage)) -> schemas.HealthOut:
    try:
        storage.get_origins_by_owner("health-check")
    except Exception:
        logger.exception("Health check failed to reach the database")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable")
    return schemas.HealthOut(status="ok", fhe="enabled", realtime="sse", database="connected")


@app.post("/api/origins", response_model=schemas.OriginCreated)
def create_origin(origin_in: schemas.OriginIn, storage: Storage = Depends(get_storage)) -> schemas.OriginCreated:
    origin, key = storage.register_origin(domain=origin_in.domain, owner_address=origin_in.owner_address)
    storage.commit()
    return schemas.OriginCreated(
        origin=schemas.OriginOut.model_validate(origin),
        token=origin.token,
        public_key_fingerprint=key.fingerprint,
    )


@app.get("/api/origins/owner/{address}", response_model=List[schemas.OriginOut])
def list_origins(address: str, storage: Storage = Depends(get_storage)) -> List[schemas.OriginOut]:
    return [schemas.OriginOut.model_validate(origin) for origin in storage.get_origins_by_owner(address)]


@app.delete("/api/origins/{origin_id}", response_model=schemas.DeleteResult)
def delete_origin(origin_id: str, storage: Storage = Depends(get_storage)) -> schemas.DeleteResult:
    try:
        storage.delete_origin(origin_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Origin not found")
    storage.commit()
    return schemas.DeleteResult(success=True, message="Origin deleted")


@app.get("/api/keys/{origin_id}/current", response_model=schemas.KeyOut)
def current_key(origin_id: str, storage: Storage = Depends(get_storage)) -> schemas.KeyOut:
    key = storage.get_active_key(origin_id)
    if key is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active key found")
    return schemas.KeyOut(public_key=key.public_key, fingerprint=key.fingerprint, id=key.id)


@app.post("/api/collect", response_model=schemas.CollectAccepted, status_code=status.HTTP_202_ACCEPTED)
def collect_event(
    event_in: schemas.CollectIn,
    request: Request,
    background_tasks: BackgroundTasks,
    storage: Storage = Depends(get_storage),
    codec: EventCodec = Depends(get_codec),
    publisher: LivePublisher = Depends(get_publisher),
) -> schemas.CollectAccepted:
    client_identifier = "anonymous"
    if request.client:
        client_identifier = request.client.host or client_identifier

    try:
        request.app.state.collect_rate_limiter.check(client_identifier)
    except RateLimitError:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")

    try:
        event = accept_event(storage, codec, event_in)
    except AnalyticsError as exc:
        raise _http_error(exc) from exc
    origin_id = event.origin_id
    storage.commit()

    # Runs after the response has been sent.
    background_tasks.add_task(publisher.recompute_and_publish, origin_id)
    return schemas.CollectAccepted()


async def stream_frames(
    request: Request,
    broker: SubscriptionBroker,
    origin_id: str,
    connection: QueueConnection,
    heartbeat_seconds: float,
) -> AsyncIterator[str]:
    """Subscribe ``connection`` and yield its frames until the client leaves or the broker closes it."""

    try:
        broker.subscribe(origin_id, connection)
        while True:
            try:
                frame = await asyncio.wait_for(connection.receive(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    break
                yield ": keep-alive\n\n"
                continue
            if frame is None:
                break
            yield frame
    finally:
        broker.unsubscribe(origin_id, connection)
        connection.close()


@app.get("/api/metrics/{origin_id}/stream")
async def stream_metrics(
    origin_id: str,
    request: Request,
    broker: SubscriptionBroker = Depends(get_broker),
) -> StreamingResponse:
    settings = get_settings()
    connection = QueueConnection(maxsize=settings.subscriber_queue_size)
    return StreamingResponse(
        stream_frames(request, broker, origin_id, connection, settings.stream_heartbeat_seconds),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/api/metrics/{origin_id}", response_model=schemas.MetricsReportOut)
def get_metrics(origin_id: str, engine: AggregationEngine = Depends(get_engine)) -> schemas.MetricsReportOut:
    report = engine.report(origin_id)
    return schemas.MetricsReportOut(
        metrics=schemas.MetricsOut.model_validate(report.metrics),
        time_series=[schemas.TimeSeriesPointOut.model_validate(point) for point in report.time_series],
        top_pages=[schemas.TopPageOut.model_validate(page) for page in report.top_pages],
    )


@app.post("/api/proofs/{origin_id}", response_model=schemas.ProofOut)
def generate_proof(
    origin_id: str,
    proof_in: schemas.ProofIn,
    storage: Storage = Depends(get_storage),
    engine: AggregationEngine = Depends(get_engine),
) -> schemas.ProofOut:
    if storage.get_origin_by_id(origin_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Origin not found")
    aggregates = day_aggregates(storage, engine, origin_id, proof_in.day)
    storage.commit()
    return schemas.ProofOut(
        digest=generate_proof_digest(aggregates),
        cid=generate_mock_cid(),
        aggregates=aggregates,
    )


@app.get("/api/demo/origin", response_model=schemas.DemoOriginOut)
def demo_origin(storage: Storage = Depends(get_storage)) -> schemas.DemoOriginOut:
    existing = storage.get_origins_by_owner(DEMO_OWNER_ADDRESS)
    origin = next((item for item in existing if item.domain == DEMO_ORIGIN_DOMAIN), None)
    if origin is None:
        origin, _ = storage.register_origin(domain=DEMO_ORIGIN_DOMAIN, owner_address=DEMO_OWNER_ADDRESS)
        storage.commit()
        logger.info("Created demo origin %s", origin.id)
    return schemas.DemoOriginOut(origin=schemas.OriginOut.model_validate(origin), token=origin.token)


@app.on_event("shutdown")
async def close_subscribers() -> None:
    app.state.broker.close_all()


def reset_application_state() -> None:
    """Reset mutable application state for test isolation."""

    app.state.broker.close_all()
    _configure_state(app)
