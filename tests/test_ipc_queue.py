import asyncio
import inspect
import sys
from pathlib import Path

# Ensure repo root on sys.path so local imports resolve
ROOT_DIR = Path(inspect.getfile(inspect.currentframe())).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from ipc import IPCQueue  # noqa: E402
from ipc.messages import TRANSPORT, Command, CommandReply, ErrorValue  # noqa: E402


def test_fifo_order_is_preserved():
    async def scenario():
        q: IPCQueue[Command] = IPCQueue()
        for text in ("a", "b", "c"):
            q.put_nowait(Command(text))
        return [(await q.get()).text for _ in range(3)]

    assert asyncio.run(scenario()) == ["a", "b", "c"]


def test_get_waits_for_next_item():
    async def scenario():
        q: IPCQueue[int] = IPCQueue()
        waiter = asyncio.ensure_future(q.get())
        await asyncio.sleep(0.01)
        assert not waiter.done()
        q.put_nowait(42)
        return await asyncio.wait_for(waiter, 1)

    assert asyncio.run(scenario()) == 42


def test_drain_empties_queue():
    async def scenario():
        q: IPCQueue[int] = IPCQueue()
        for i in range(4):
            q.put_nowait(i)
        assert len(q) == 4
        items = q.drain()
        assert len(q) == 0
        assert q.drain() == []
        return items

    assert asyncio.run(scenario()) == [0, 1, 2, 3]


def test_error_value_serialisation():
    reply = CommandReply.failure(TRANSPORT, "Failed to reach backend")
    assert reply.ok is False
    assert isinstance(reply.payload, ErrorValue)
    assert reply.payload.to_dict() == {"error": "Failed to reach backend", "kind": "transport"}
    assert '"kind": "transport"' in reply.payload.to_json()

    ok = CommandReply.success('{"status":"ok"}')
    assert ok.ok and ok.payload == '{"status":"ok"}'
