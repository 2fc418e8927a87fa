import asyncio

import pytest
from conftest import RecordingConnection

from fhe_analytics.app.broker import QueueConnection, SubscriptionBroker, format_frame
from fhe_analytics.app.errors import StreamError


@pytest.fixture
def broker():
    return SubscriptionBroker()


def test_format_frame_is_an_sse_data_frame():
    assert format_frame({"a": 1}) == 'data: {"a":1}\n\n'


def test_subscribe_sends_connection_notice(broker):
    connection = RecordingConnection()

    broker.subscribe("origin-1", connection)

    assert connection.payloads() == [{"connected": True, "originId": "origin-1"}]
    assert broker.subscriber_count("origin-1") == 1


def test_publish_reaches_every_subscriber_of_the_origin(broker):
    first, second, other = RecordingConnection(), RecordingConnection(), RecordingConnection()
    broker.subscribe("origin-1", first)
    broker.subscribe("origin-1", second)
    broker.subscribe("origin-2", other)

    delivered = broker.publish("origin-1", {"metrics": {"pageviews": 1}})

    assert delivered == 2
    assert first.payloads()[-1] == {"metrics": {"pageviews": 1}}
    assert second.payloads()[-1] == {"metrics": {"pageviews": 1}}
    assert len(other.frames) == 1


def test_failed_subscriber_is_dropped_without_affecting_others(broker):
    healthy = RecordingConnection()
    broken = RecordingConnection()
    broker.subscribe("origin-1", healthy)
    broker.subscribe("origin-1", broken)
    broken.fail = True

    delivered = broker.publish("origin-1", {"n": 1})

    assert delivered == 1
    assert broken.closed
    assert broker.subscriber_count("origin-1") == 1
    broker.publish("origin-1", {"n": 2})
    assert [payload.get("n") for payload in healthy.payloads()[1:]] == [1, 2]


def test_subscriber_failing_on_notice_is_not_registered(broker):
    broker.subscribe("origin-1", RecordingConnection(fail=True))

    assert broker.subscriber_count("origin-1") == 0


def test_unsubscribe_prunes_empty_origins(broker):
    connection = RecordingConnection()
    broker.subscribe("origin-1", connection)

    broker.unsubscribe("origin-1", connection)
    broker.unsubscribe("origin-1", connection)

    assert broker.subscriber_count("origin-1") == 0
    assert broker.publish("origin-1", {"n": 1}) == 0


def test_close_all_closes_connections(broker):
    connections = [RecordingConnection() for _ in range(3)]
    for index, connection in enumerate(connections):
        broker.subscribe(f"origin-{index}", connection)

    broker.close_all()

    assert all(connection.closed for connection in connections)
    assert broker.subscriber_count("origin-0") == 0


def test_queue_connection_delivers_frames_then_end_marker():
    async def scenario():
        connection = QueueConnection(maxsize=2)
        connection.send("data: 1\n\n")
        connection.close()
        return [await connection.receive(), await connection.receive()]

    assert asyncio.run(scenario()) == ["data: 1\n\n", None]


def test_queue_connection_rejects_writes_when_full_or_closed():
    async def scenario():
        connection = QueueConnection(maxsize=1)
        connection.send("first")
        with pytest.raises(StreamError):
            connection.send("second")
        connection.close()
        with pytest.raises(StreamError):
            connection.send("third")

    asyncio.run(scenario())
