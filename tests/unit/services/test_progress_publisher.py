"""
Tests for the in-memory progress publisher.
"""

import asyncio

from ingestflow.models.events import EventType, ProgressEvent
from ingestflow.services.progress_publisher import InMemoryProgressPublisher, ProgressPublisher


def test_events_reach_every_subscriber_of_the_upload():
    publisher = InMemoryProgressPublisher()
    first, second, other = [], [], []
    publisher.subscribe("u1", first.append)
    publisher.subscribe("u1", second.append)
    publisher.subscribe("u2", other.append)

    publisher.publish("u1", EventType.CHUNK_PROGRESS, {"chunkIndex": 0})

    assert [e.data for e in first] == [{"chunkIndex": 0}]
    assert [e.data for e in second] == [{"chunkIndex": 0}]
    assert other == []


def test_unsubscribe_removes_only_that_subscriber():
    publisher = InMemoryProgressPublisher()
    kept, dropped = [], []
    publisher.subscribe("u1", kept.append)
    subscription = publisher.subscribe("u1", dropped.append)

    publisher.unsubscribe(subscription)
    publisher.publish("u1", "file_progress", {"status": "chunked"})

    assert len(kept) == 1
    assert dropped == []
    assert publisher.subscriber_count("u1") == 1

    publisher.unsubscribe(subscription)
    assert publisher.subscriber_count("u1") == 1


def test_late_subscriber_misses_earlier_events():
    publisher = InMemoryProgressPublisher()
    publisher.publish("u1", EventType.FILE_PROGRESS, {"status": "uploaded"})

    received = []
    publisher.subscribe("u1", received.append)

    assert received == []


def test_failing_subscriber_does_not_block_others():
    publisher = InMemoryProgressPublisher()
    received = []

    def broken(event):
        raise RuntimeError("socket closed")

    publisher.subscribe("u1", broken)
    publisher.subscribe("u1", received.append)

    publisher.publish("u1", EventType.ERROR, {"message": "boom"})

    assert len(received) == 1


def test_publish_never_raises_when_transport_fails():
    class BrokenTransport(ProgressPublisher):
        def _deliver(self, event: ProgressEvent) -> None:
            raise ConnectionError("redis down")

    BrokenTransport().publish("u1", EventType.FILE_PROGRESS, {"status": "chunking"})


def test_stream_yields_events_and_unsubscribes_on_close():
    publisher = InMemoryProgressPublisher()

    async def consume():
        stream = publisher.stream("u1")
        first = asyncio.ensure_future(stream.__anext__())
        while publisher.subscriber_count("u1") == 0:
            await asyncio.sleep(0)
        publisher.publish("u1", EventType.PROCESSING_PROGRESS, {"processedRows": 10})
        event = await asyncio.wait_for(first, timeout=2)
        await stream.aclose()
        return event

    event = asyncio.run(consume())

    assert event.type == "processing_progress"
    assert event.data == {"processedRows": 10}
    assert publisher.subscriber_count("u1") == 0
