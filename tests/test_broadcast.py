import asyncio
import json
from typing import List

import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from gateway.broadcast import WebSocketBroadcaster
from tracker import BackgroundPublisher


class FakeWebSocket:
    def __init__(self, fail: bool = False) -> None:
        self.accepted = False
        self.sent: List[str] = []
        self.fail = fail

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)


@pytest.mark.asyncio
async def test_publish_reaches_every_connected_client():
    hub = WebSocketBroadcaster()
    a, b = FakeWebSocket(), FakeWebSocket()
    await hub.connect(a)
    await hub.connect(b)

    await hub.publish("usage_update", {"id": "r1", "status": "success"})

    assert a.accepted and b.accepted
    for ws in (a, b):
        assert json.loads(ws.sent[0]) == {"type": "usage_update", "data": {"id": "r1", "status": "success"}}


@pytest.mark.asyncio
async def test_failed_clients_are_dropped():
    hub = WebSocketBroadcaster()
    good, bad = FakeWebSocket(), FakeWebSocket(fail=True)
    await hub.connect(good)
    await hub.connect(bad)

    await hub.publish("usage_update", {"id": "r1"})
    assert hub.client_count == 1

    await hub.disconnect(good)
    assert hub.client_count == 0


@pytest.mark.asyncio
async def test_background_publisher_swallows_port_errors():
    class Exploding(WebSocketBroadcaster):
        async def publish(self, event_type, payload):
            raise RuntimeError("boom")

    publisher = BackgroundPublisher(Exploding())
    publisher.fire("usage_update", {"id": "r1"})
    await publisher.drain()


def test_fire_without_running_loop_is_dropped():
    publisher = BackgroundPublisher(WebSocketBroadcaster())
    publisher.fire("usage_update", {"id": "r1"})
    assert asyncio.run(publisher.drain()) is None
