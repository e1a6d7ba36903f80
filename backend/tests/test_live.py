"""Tests for the live dashboard hub and the /ws channel."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from pipewatch.main import create_app
from pipewatch.services import events
from pipewatch.services.live_hub import LiveHub


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.closed = False
        self.fail = fail

    async def send_json(self, message: dict) -> None:
        if self.fail:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]


async def _status() -> dict:
    return {"status": "running"}


@pytest.fixture
def hub(engine, bus) -> LiveHub:
    h = LiveHub(engine, bus, _status)
    h.attach()
    yield h
    h.detach()


@pytest.mark.asyncio
class TestLiveHub:
    async def test_connect_greets_client(self, hub, engine):
        await engine.create_pipeline_run({"type": "manual", "source": "cli", "timestamp": "2025-01-01T10:00:00Z"})
        ws = FakeWebSocket()

        await hub.connect(ws)

        assert hub.client_count == 1
        assert ws.sent[0]["type"] == "connection"
        assert ws.sent[0]["data"]["active_runs"] == 1

    async def test_unsubscribed_client_gets_everything(self, hub, bus):
        ws = FakeWebSocket()
        await hub.connect(ws)

        await bus.publish(events.ALERT, {"id": "alert_1"})
        await bus.publish(events.WEBHOOK_RECEIVED, {"webhook_id": "webhook_1"})

        assert ws.types() == ["connection", events.ALERT, events.WEBHOOK_RECEIVED]

    async def test_subscriptions_filter_events(self, hub):
        alerts_only = FakeWebSocket()
        everything = FakeWebSocket()
        await hub.connect(alerts_only)
        await hub.connect(everything)
        await hub.handle_message(alerts_only, {"type": "subscribe", "events": [events.ALERT]})
        await hub.handle_message(everything, {"type": "subscribe", "events": ["all"]})

        assert await hub.broadcast(events.PIPELINE_STARTED, {"run_id": "r"}) == 1
        assert await hub.broadcast(events.ALERT, {"id": "a"}) == 2

        assert alerts_only.types() == ["connection", "subscribed", events.ALERT]
        assert alerts_only.sent[1]["data"] == {"events": [events.ALERT]}

        await hub.handle_message(alerts_only, {"type": "unsubscribe", "events": [events.ALERT]})
        assert alerts_only.sent[-1]["data"] == {"events": []}

    async def test_non_list_events_rejected(self, hub):
        ws = FakeWebSocket()
        await hub.connect(ws)

        await hub.handle_message(ws, {"type": "subscribe", "events": "alert"})
        await hub.handle_message(ws, {"type": "unsubscribe", "events": {"alert": True}})
        await hub.handle_message(ws, {"type": "subscribe"})

        assert ws.types() == ["connection", "error", "error", "subscribed"]
        assert ws.sent[1]["data"]["message"] == "events must be a list"
        assert ws.sent[3]["data"] == {"events": []}
        assert await hub.broadcast(events.PIPELINE_STARTED, {"run_id": "r"}) == 1

    async def test_requests(self, hub, engine):
        for _ in range(3):
            await engine.create_pipeline_run({"type": "git", "source": "commit", "timestamp": "2025-01-01T10:00:00Z"})
        ws = FakeWebSocket()
        await hub.connect(ws)

        await hub.handle_message(ws, {"type": "ping"})
        await hub.handle_message(ws, {"type": "get_status"})
        await hub.handle_message(ws, {"type": "get_recent_runs", "limit": 2})
        await hub.handle_message(ws, {"type": "get_recent_runs", "limit": 0})
        await hub.handle_message(ws, {"type": "dance"})
        await hub.handle_message(ws, ["ping"])

        assert ws.types() == ["connection", "pong", "status", "recent_runs", "recent_runs", "error", "error"]
        assert ws.sent[2]["data"] == {"status": "running"}
        assert len(ws.sent[3]["data"]) == 2
        assert len(ws.sent[4]["data"]) == 1
        assert ws.sent[5]["data"]["message"] == "Unknown message type: dance"

    async def test_failed_send_drops_client(self, hub):
        good, broken = FakeWebSocket(), FakeWebSocket()
        await hub.connect(good)
        await hub.connect(broken)
        broken.fail = True

        assert await hub.broadcast(events.ALERT, {"id": "a"}) == 1
        assert hub.client_count == 1

    async def test_close_all(self, hub):
        ws = FakeWebSocket()
        await hub.connect(ws)

        await hub.close_all()

        assert ws.closed
        assert hub.client_count == 0


def test_websocket_channel(test_settings):
    with TestClient(create_app(test_settings)) as client:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connection"

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

            ws.send_text("{broken")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["data"]["message"] == "Invalid JSON"

            ws.send_json({"type": "subscribe", "events": [events.PIPELINE_COMPLETED]})
            assert ws.receive_json()["type"] == "subscribed"

            response = client.post(
                "/api/webhooks/content-platform",
                json={"event": "campaign.sent", "data": {"campaign": {"id": 7}}},
                headers={"X-Webhook-Token": "guess"},
            )
            assert response.status_code == 401

            completed = ws.receive_json()
            assert completed["type"] == events.PIPELINE_COMPLETED
            assert completed["data"]["status"] == "failed"
            assert completed["data"]["run_id"] == response.json()["run_id"]


def test_websocket_refused_without_system(test_settings):
    client = TestClient(create_app(test_settings))
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws"):
            pass
    assert exc_info.value.code == 1013
