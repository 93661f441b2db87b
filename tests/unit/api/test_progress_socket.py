"""
Tests for the progress channel WebSocket.
"""

import pytest
from fastapi.testclient import TestClient

from ingestflow.api.main import create_app
from ingestflow.models.events import EventType
from ingestflow.services.progress_publisher import InMemoryProgressPublisher


@pytest.fixture
def hub():
    return InMemoryProgressPublisher()


@pytest.fixture
def client(hub):
    with TestClient(create_app(progress_source=hub)) as client:
        yield client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_subscriber_receives_events_for_its_upload(client, hub, wait_until):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "subscribe", "uploadId": "u1"})
        assert wait_until(lambda: hub.subscriber_count("u1") == 1)

        hub.publish("u2", EventType.FILE_PROGRESS, {"status": "chunking"})
        hub.publish("u1", EventType.CHUNK_PROGRESS, {"chunkIndex": 0, "totalRows": 1000})

        assert ws.receive_json() == {
            "type": "chunk_progress",
            "uploadId": "u1",
            "data": {"chunkIndex": 0, "totalRows": 1000},
        }


def test_one_socket_can_follow_several_uploads(client, hub, wait_until):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "subscribe", "uploadId": "u1"})
        ws.send_json({"type": "subscribe", "uploadId": "u2"})
        ws.send_json({"type": "subscribe", "uploadId": "u2"})
        assert wait_until(lambda: hub.subscriber_count("u1") == 1 and hub.subscriber_count("u2") == 1)

        hub.publish("u1", EventType.PROCESSING_PROGRESS, {"processedRows": 10})
        first = ws.receive_json()
        hub.publish("u2", EventType.ERROR, {"message": "File not found"})
        second = ws.receive_json()

    assert (first["uploadId"], first["type"]) == ("u1", "processing_progress")
    assert (second["uploadId"], second["type"]) == ("u2", "error")


def test_invalid_messages_are_ignored(client, hub, wait_until):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        ws.send_json({"type": "unsubscribe", "uploadId": "u1"})
        ws.send_json({"type": "subscribe", "uploadId": "u1"})
        assert wait_until(lambda: hub.subscriber_count("u1") == 1)

        hub.publish("u1", EventType.FILE_PROGRESS, {"status": "chunked"})
        assert ws.receive_json()["data"] == {"status": "chunked"}


def test_disconnect_drops_subscriptions(client, hub, wait_until):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "subscribe", "uploadId": "u1"})
        assert wait_until(lambda: hub.subscriber_count("u1") == 1)

    assert wait_until(lambda: hub.subscriber_count("u1") == 0)
