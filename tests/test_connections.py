from __future__ import annotations

import asyncio
from typing import Any

import pytest

from gekto.server.connections import Connection, ConnectionRegistry


class FakeSocket:
    def __init__(self, fail_after: int | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.fail_after = fail_after

    async def send_json(self, message: dict[str, Any]) -> None:
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise ConnectionResetError("peer gone")
        await asyncio.sleep(0)
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_messages_are_sent_in_post_order() -> None:
    ws = FakeSocket()
    connection = Connection(ws)
    sender = asyncio.create_task(connection.run_sender())

    for i in range(50):
        assert connection.post({"type": "output", "seq": i}) is True
    connection.close()
    await asyncio.wait_for(sender, 5)

    assert [m["seq"] for m in ws.sent] == list(range(50))
    assert connection.is_open is False
    assert connection.post({"type": "late"}) is False


@pytest.mark.asyncio
async def test_full_queue_drops_instead_of_blocking() -> None:
    connection = Connection(FakeSocket(), queue_size=2)
    assert connection.post({"type": "a"}) is True
    assert connection.post({"type": "b"}) is True
    assert connection.post({"type": "c"}) is False

    # close() still lands when the backlog is full
    connection.close()
    sender = asyncio.create_task(connection.run_sender())
    await asyncio.wait_for(sender, 5)


@pytest.mark.asyncio
async def test_send_failure_stops_sender() -> None:
    ws = FakeSocket(fail_after=1)
    connection = Connection(ws)
    sender = asyncio.create_task(connection.run_sender())
    connection.post({"type": "one"})
    connection.post({"type": "two"})
    await asyncio.wait_for(sender, 5)

    assert ws.sent == [{"type": "one"}]
    assert connection.is_open is False


@pytest.mark.asyncio
async def test_registry_broadcast_skips_closed() -> None:
    registry = ConnectionRegistry()
    live, dead = Connection(FakeSocket()), Connection(FakeSocket())
    registry.add(live)
    registry.add(dead)
    dead.ws.closed = True

    assert len(registry) == 2
    assert registry.broadcast({"type": "gekto_state", "state": "ready"}) == 1

    registry.remove(dead)
    registry.remove(dead)
    assert registry.snapshot() == [live]

    await registry.close_all()
    assert len(registry) == 0
    assert live.ws.closed is True
    assert live.is_open is False


def test_connection_ids_are_unique() -> None:
    first, second = Connection(FakeSocket()), Connection(FakeSocket())
    assert first.id != second.id
    assert repr(first) == f"<Connection #{first.id}>"
