"""Batching event tracker for sites reporting to the analytics API.

Events are queued and flushed when the queue reaches ``batch_size`` or after
``batch_timeout`` seconds without a new event, whichever comes first. Each
flushed event is delivered on its own and retried with a linearly growing
delay. Events that still fail are dropped: delivery is best effort.
"""
from __future__ import annotations

import enum
import logging
import random
import string
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlsplit

import requests

logger = logging.getLogger(__name__)

COLLECT_PATH = "/api/collect"


class TransportError(Exception):
    """Raised when an event could not be delivered to the collection API."""


class Timer(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], Timer]


def _thread_timer(interval: float, callback: Callable[[], None]) -> Timer:
    timer = threading.Timer(interval, callback)
    timer.daemon = True
    return timer


def endpoint_from_script_url(script_url: str) -> str:
    """Derive the collection endpoint from the URL the tracker was loaded from."""

    parts = urlsplit(script_url)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"Cannot derive an endpoint from {script_url!r}")
    return f"{parts.scheme}://{parts.netloc}{COLLECT_PATH}"


def generate_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=13))
    return f"sess_{int(time.time() * 1000)}_{suffix}"


class HttpTransport:
    """Posts single events to the collection endpoint."""

    def __init__(self, endpoint: str, session: Optional[requests.Session] = None, timeout: float = 10.0) -> None:
        self.endpoint = endpoint
        self._session = session or requests.Session()
        self._timeout = timeout

    def send(self, event: Dict[str, Any]) -> None:
        try:
            response = self._session.post(
                self.endpoint,
                json=event,
                headers={"Connection": "keep-alive"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(str(exc)) from exc
        if not response.ok:
            raise TransportError(f"HTTP {response.status_code}")


class DeliveryState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    RETRYING = "retrying"
    SUCCESS = "success"
    DROPPED = "dropped"


class Delivery:
    """Retry bookkeeping for one event.

    ``IDLE -> SENDING -> SUCCESS``, or ``SENDING -> RETRYING -> SENDING`` until
    ``max_attempts`` is used up, then ``DROPPED``.
    """

    def __init__(self, event: Dict[str, Any], *, max_attempts: int, base_delay: float) -> None:
        self.event = event
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.attempt = 0
        self.state = DeliveryState.IDLE

    @property
    def finished(self) -> bool:
        return self.state in (DeliveryState.SUCCESS, DeliveryState.DROPPED)

    def begin_attempt(self) -> None:
        if self.state not in (DeliveryState.IDLE, DeliveryState.RETRYING):
            raise RuntimeError(f"Cannot send from state {self.state.value}")
        self.attempt += 1
        self.state = DeliveryState.SENDING

    def succeeded(self) -> None:
        self.state = DeliveryState.SUCCESS

    def failed(self) -> Optional[float]:
        """Record a failed attempt and return the delay before the next one.

        Returns ``None`` once the event has been dropped.
        """

        if self.attempt < self.max_attempts:
            self.state = DeliveryState.RETRYING
            return self.base_delay * self.attempt
        self.state = DeliveryState.DROPPED
        return None


class Tracker:
    """Queues analytics events for one visitor session and delivers them."""

    def __init__(
        self,
        origin_token: str,
        transport: Any,
        *,
        page: str = "/",
        referrer: str = "",
        user_agent: str = "fhe-analytics-python",
        batch_size: int = 5,
        batch_timeout: float = 3.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        timer_factory: TimerFactory = _thread_timer,
        executor: Optional[Executor] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.origin_token = origin_token
        self.transport = transport
        self.page = page
        self.referrer = referrer
        self.user_agent = user_agent
        self.session_id = generate_session_id()
        self.batch_size = batch_size
        self.batch_timeout = batch_timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._timer_factory = timer_factory
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="fhe-analytics")
        self._sleep = sleep
        self._queue: List[Dict[str, Any]] = []
        self._timer: Optional[Timer] = None
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_script_url(cls, script_url: str, origin_token: str, **kwargs: Any) -> "Tracker":
        return cls(origin_token, HttpTransport(endpoint_from_script_url(script_url)), **kwargs)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def start(self) -> None:
        """Record the initial page view and session start."""

        self.track_pageview()
        self.track_session()

    def track_event(self, event_type: str, value: float = 1, metadata: Optional[Dict[str, Any]] = None) -> None:
        event = {
            "originToken": self.origin_token,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "page": self.page,
            "eventType": event_type,
            "value": value,
            "metadata": {
                **(metadata or {}),
                "sessionId": self.session_id,
                "referrer": self.referrer,
                "userAgent": self.user_agent,
            },
        }

        with self._lock:
            if self._closed:
                logger.info("Tracker is closed; dropping %s event", event_type)
                return
            self._queue.append(event)
            self._cancel_timer()
            flush_now = len(self._queue) >= self.batch_size
            if not flush_now:
                self._timer = self._timer_factory(self.batch_timeout, self.flush)
                self._timer.start()

        if flush_now:
            self.flush()

    def track_pageview(self) -> None:
        self.track_event("pageview", 1)

    def track_session(self) -> None:
        self.track_event("session", 1)

    def track(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.track_event("event", 1, {"eventName": name, **(metadata or {})})

    def conversion(self, value: float = 1, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.track_event("conversion", value, metadata)

    def track_click(self, tracking_name: Optional[str], element: str) -> None:
        """Record a click on an element carrying a tracking name."""

        if tracking_name:
            self.track(tracking_name, {"element": element})

    def flush(self) -> int:
        """Hand every queued event to the executor; return how many were sent."""

        with self._lock:
            events, self._queue = self._queue, []
            self._cancel_timer()
            if self._closed:
                if events:
                    logger.info("Tracker is closed; dropping %d queued events", len(events))
                return 0
            # on_unload must not shut the executor down between the check and the submits.
            for event in events:
                self._executor.submit(self.deliver, event)
        return len(events)

    def deliver(self, event: Dict[str, Any]) -> Delivery:
        delivery = Delivery(event, max_attempts=self.retry_attempts, base_delay=self.retry_delay)
        while not delivery.finished:
            delivery.begin_attempt()
            try:
                self.transport.send(event)
            except TransportError as exc:
                delay = delivery.failed()
                if delay is None:
                    logger.warning(
                        "Dropping %s event after %d attempts: %s",
                        event.get("eventType"),
                        delivery.attempt,
                        exc,
                    )
                else:
                    logger.info("Send failed (%s); retrying in %.1fs", exc, delay)
                    self._sleep(delay)
            else:
                delivery.succeeded()
        return delivery

    def on_visibility_change(self, hidden: bool) -> None:
        if hidden:
            self.flush()

    def on_unload(self) -> None:
        """Flush and wait for in-flight deliveries before the process exits."""

        self.flush()
        with self._lock:
            self._closed = True
            self._cancel_timer()
        self._executor.shutdown(wait=True)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
