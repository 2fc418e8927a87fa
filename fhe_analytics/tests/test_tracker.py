import logging

import pytest

from fhe_analytics.client.tracker import (
    Delivery,
    DeliveryState,
    HttpTransport,
    Tracker,
    TransportError,
    endpoint_from_script_url,
)


class FakeTimer:
    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.started and not self.cancelled:
            self.callback()


class TimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, callback):
        timer = FakeTimer(interval, callback)
        self.timers.append(timer)
        return timer

    def fire_all(self):
        for timer in list(self.timers):
            timer.fire()


class InlineExecutor:
    def __init__(self):
        self.submissions = 0
        self.shut_down = False

    def submit(self, fn, *args):
        self.submissions += 1
        fn(*args)

    def shutdown(self, wait=True):
        self.shut_down = True


class FakeTransport:
    def __init__(self, failures=0):
        self.failures = failures
        self.attempts = []
        self.sent = []

    def send(self, event):
        self.attempts.append(event)
        if self.failures:
            self.failures -= 1
            raise TransportError("HTTP 503")
        self.sent.append(event)


@pytest.fixture
def timers():
    return TimerFactory()


@pytest.fixture
def executor():
    return InlineExecutor()


@pytest.fixture
def sleeps():
    return []


def _tracker(transport, timers, executor, sleeps, **kwargs):
    return Tracker(
        "fhe_sk_" + "a" * 48,
        transport,
        page="/pricing",
        timer_factory=timers,
        executor=executor,
        sleep=sleeps.append,
        **kwargs,
    )


def test_five_tracks_flush_once_without_timer_flush(timers, executor, sleeps):
    transport = FakeTransport()
    tracker = _tracker(transport, timers, executor, sleeps)

    for _ in range(5):
        tracker.track_pageview()
    timers.fire_all()

    assert len(transport.sent) == 5
    assert executor.submissions == 5
    assert tracker.pending == 0
    assert all(timer.cancelled for timer in timers.timers)


def test_inactivity_timer_flushes_partial_batch(timers, executor, sleeps):
    transport = FakeTransport()
    tracker = _tracker(transport, timers, executor, sleeps)

    tracker.track_pageview()
    tracker.track_session()

    assert transport.sent == []
    assert [timer.cancelled for timer in timers.timers] == [True, False]
    assert timers.timers[-1].interval == 3.0

    timers.fire_all()

    assert [event["eventType"] for event in transport.sent] == ["pageview", "session"]
    assert tracker.pending == 0


def test_flush_with_empty_queue_sends_nothing(timers, executor, sleeps):
    tracker = _tracker(FakeTransport(), timers, executor, sleeps)

    assert tracker.flush() == 0
    assert executor.submissions == 0


def test_events_carry_token_page_and_session_metadata(timers, executor, sleeps):
    transport = FakeTransport()
    tracker = _tracker(transport, timers, executor, sleeps)

    tracker.track("signup_click", {"element": "BUTTON"})
    tracker.conversion(49, {"plan": "pro"})
    tracker.flush()

    click, conversion = transport.sent
    assert click["originToken"] == tracker.origin_token
    assert click["page"] == "/pricing"
    assert click["eventType"] == "event"
    assert click["metadata"]["eventName"] == "signup_click"
    assert click["metadata"]["element"] == "BUTTON"
    assert click["metadata"]["sessionId"] == tracker.session_id
    assert conversion["eventType"] == "conversion"
    assert conversion["value"] == 49
    assert conversion["metadata"]["plan"] == "pro"


def test_start_tracks_pageview_and_session(timers, executor, sleeps):
    transport = FakeTransport()
    tracker = _tracker(transport, timers, executor, sleeps)

    tracker.start()
    tracker.flush()

    assert [event["eventType"] for event in transport.sent] == ["pageview", "session"]


def test_click_without_tracking_name_is_ignored(timers, executor, sleeps):
    tracker = _tracker(FakeTransport(), timers, executor, sleeps)

    tracker.track_click(None, "DIV")
    tracker.track_click("cta", "A")

    assert tracker.pending == 1


def test_failed_send_is_retried_with_linear_backoff(timers, executor, sleeps):
    transport = FakeTransport(failures=2)
    tracker = _tracker(transport, timers, executor, sleeps)

    delivery = tracker.deliver({"eventType": "pageview"})

    assert delivery.state is DeliveryState.SUCCESS
    assert delivery.attempt == 3
    assert sleeps == [1.0, 2.0]
    assert len(transport.sent) == 1


def test_event_is_dropped_after_exhausting_retries(timers, executor, sleeps, caplog):
    transport = FakeTransport(failures=10)
    tracker = _tracker(transport, timers, executor, sleeps)

    delivery = tracker.deliver({"eventType": "session"})

    assert delivery.state is DeliveryState.DROPPED
    assert len(transport.attempts) == 3
    assert sleeps == [1.0, 2.0]
    assert "Dropping session event after 3 attempts" in caplog.text


def test_one_failing_event_does_not_block_others(timers, executor, sleeps):
    transport = FakeTransport(failures=3)
    tracker = _tracker(transport, timers, executor, sleeps)

    tracker.track_pageview()
    tracker.track_session()
    tracker.flush()

    assert [event["eventType"] for event in transport.sent] == ["session"]


def test_hidden_page_and_unload_force_a_flush(timers, executor, sleeps):
    transport = FakeTransport()
    tracker = _tracker(transport, timers, executor, sleeps)

    tracker.track_pageview()
    tracker.on_visibility_change(hidden=False)
    assert transport.sent == []

    tracker.on_visibility_change(hidden=True)
    assert len(transport.sent) == 1

    tracker.track_session()
    tracker.on_unload()
    assert len(transport.sent) == 2
    assert executor.shut_down


def test_delivery_state_machine_transitions():
    delivery = Delivery({}, max_attempts=2, base_delay=0.5)
    assert delivery.state is DeliveryState.IDLE

    delivery.begin_attempt()
    assert delivery.state is DeliveryState.SENDING
    assert delivery.failed() == 0.5
    assert delivery.state is DeliveryState.RETRYING

    delivery.begin_attempt()
    assert delivery.failed() is None
    assert delivery.state is DeliveryState.DROPPED
    with pytest.raises(RuntimeError):
        delivery.begin_attempt()


def test_endpoint_is_derived_from_script_origin():
    assert (
        endpoint_from_script_url("https://analytics.example.com:8443/static/fhe-analytics.js?v=2")
        == "https://analytics.example.com:8443/api/collect"
    )
    with pytest.raises(ValueError):
        endpoint_from_script_url("/fhe-analytics.js")


class StubResponse:
    def __init__(self, status_code):
        self.status_code = status_code
        self.ok = status_code < 400


class StubSession:
    def __init__(self, status_code):
        self.status_code = status_code
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return StubResponse(self.status_code)


def test_http_transport_posts_json_with_keep_alive():
    session = StubSession(202)
    transport = HttpTransport("https://analytics.example.com/api/collect", session=session)

    transport.send({"eventType": "pageview"})

    url, kwargs = session.calls[0]
    assert url == "https://analytics.example.com/api/collect"
    assert kwargs["json"] == {"eventType": "pageview"}
    assert kwargs["headers"]["Connection"] == "keep-alive"


def test_http_transport_raises_on_error_status():
    transport = HttpTransport("https://analytics.example.com/api/collect", session=StubSession(401))

    with pytest.raises(TransportError):
        transport.send({"eventType": "pageview"})


def test_tracking_after_unload_drops_events_quietly(timers, sleeps, caplog):
    caplog.set_level(logging.INFO)
    transport = FakeTransport()
    tracker = Tracker(
        "fhe_sk_" + "a" * 48,
        transport,
        batch_size=1,
        timer_factory=timers,
        sleep=sleeps.append,
    )
    tracker.track_pageview()
    tracker.on_unload()

    tracker.track_pageview()
    tracker.conversion(5)
    timers.fire_all()

    assert [event["eventType"] for event in transport.sent] == ["pageview"]
    assert tracker.pending == 0
    assert tracker.flush() == 0
    assert "Tracker is closed" in caplog.text


def test_unload_cancels_pending_timer(timers, executor, sleeps):
    transport = FakeTransport()
    tracker = _tracker(transport, timers, executor, sleeps)

    tracker.track_pageview()
    tracker.on_unload()

    assert all(timer.cancelled for timer in timers.timers)
    assert len(transport.sent) == 1
