import asyncio
import inspect
import json
import socket
import sys
from pathlib import Path

import zmq
import zmq.asyncio

ROOT_DIR = Path(inspect.getfile(inspect.currentframe())).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from ipc.messages import TIMEOUT, TRANSPORT, ErrorValue  # noqa: E402
from WorkerLink.command_channel import CommandChannel  # noqa: E402


def _free_endpoint() -> str:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return f"tcp://127.0.0.1:{s.getsockname()[1]}"


def _echo(text: str) -> str:
    return json.dumps({"status": "ok", "echo": text}, separators=(",", ":"))


async def _router_server(sock, seen, *, ignore=(), delay=0.0):
    """ROUTER-based worker stand-in: echoes every command except those in *ignore*."""
    while True:
        identity, empty, body = await sock.recv_multipart()
        command = body.decode()
        seen.append(command)
        if command in ignore:
            continue
        if delay:
            await asyncio.sleep(delay)
        await sock.send_multipart([identity, empty, _echo(command).encode()])


def _run_with_server(scenario, **server_kwargs):
    """Run *scenario(channel_endpoint, ctx, seen)* against a background ROUTER server."""

    async def main():
        ctx = zmq.asyncio.Context()
        server = ctx.socket(zmq.ROUTER)
        port = server.bind_to_random_port("tcp://127.0.0.1")
        seen = []
        task = asyncio.ensure_future(_router_server(server, seen, **server_kwargs))
        try:
            return await scenario(f"tcp://127.0.0.1:{port}", ctx, seen)
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            ctx.destroy(linger=0)

    return asyncio.run(main())


def test_echo_round_trip_returns_exact_reply():
    async def scenario(endpoint, ctx, _seen):
        channel = CommandChannel(endpoint, context=ctx, timeout=5)
        channel.connect()
        try:
            return await channel.send("Start-Analysis")
        finally:
            await channel.close()

    reply = _run_with_server(scenario)
    assert reply.ok
    assert reply.payload == '{"status":"ok","echo":"Start-Analysis"}'


def test_unreachable_endpoint_returns_error_value():
    async def scenario():
        ctx = zmq.asyncio.Context()
        channel = CommandChannel(_free_endpoint(), context=ctx, timeout=0.2)
        channel.connect()
        try:
            return await channel.send("ping")
        finally:
            await channel.close()
            ctx.destroy(linger=0)

    reply = asyncio.run(scenario())
    assert not reply.ok
    assert isinstance(reply.payload, ErrorValue)
    assert reply.payload.kind == TIMEOUT


def test_invalid_endpoint_returns_transport_error():
    async def scenario():
        ctx = zmq.asyncio.Context()
        channel = CommandChannel("not-an-endpoint", context=ctx, timeout=1)
        channel.connect()
        try:
            return await channel.send("ping")
        finally:
            await channel.close()
            ctx.destroy(linger=0)

    reply = asyncio.run(scenario())
    assert not reply.ok
    assert reply.payload.kind == TRANSPORT


def test_send_before_connect_returns_transport_error():
    async def scenario():
        ctx = zmq.asyncio.Context()
        try:
            return await CommandChannel("tcp://127.0.0.1:1", context=ctx).send("ping")
        finally:
            ctx.destroy(linger=0)

    reply = asyncio.run(scenario())
    assert reply.payload.kind == TRANSPORT


def test_concurrent_sends_are_serialised_in_fifo_order():
    commands = [f"cmd-{i}" for i in range(6)]

    async def scenario(endpoint, ctx, seen):
        channel = CommandChannel(endpoint, context=ctx, timeout=5)
        channel.connect()
        try:
            replies = await asyncio.gather(*(channel.send(c) for c in commands))
            return replies, list(seen)
        finally:
            await channel.close()

    replies, seen = _run_with_server(scenario, delay=0.01)
    assert [r.payload for r in replies] == [_echo(c) for c in commands]
    assert seen == commands


def test_close_aborts_pending_and_queued_requests():
    async def scenario(endpoint, ctx, _seen):
        channel = CommandChannel(endpoint, context=ctx)  # no timeout: would block forever
        channel.connect()
        first = asyncio.ensure_future(channel.send("hang"))
        second = asyncio.ensure_future(channel.send("queued"))
        await asyncio.sleep(0.2)
        assert channel.pending == 2
        await channel.close()
        after = await channel.send("late")
        return await first, await second, after, channel

    first, second, after, channel = _run_with_server(scenario, ignore={"hang"})
    for reply in (first, second, after):
        assert not reply.ok
        assert reply.payload.kind == TRANSPORT
    assert channel.closed
    assert channel.pending == 0


def test_channel_recovers_after_timeout():
    async def scenario(endpoint, ctx, _seen):
        channel = CommandChannel(endpoint, context=ctx, timeout=0.3)
        channel.connect()
        try:
            lost = await channel.send("swallowed")
            ok = await channel.send("answered")
            return lost, ok
        finally:
            await channel.close()

    lost, ok = _run_with_server(scenario, ignore={"swallowed"})
    assert lost.payload.kind == TIMEOUT
    assert ok.ok
    assert ok.payload == _echo("answered")


def test_close_is_idempotent():
    async def scenario():
        ctx = zmq.asyncio.Context()
        channel = CommandChannel(_free_endpoint(), context=ctx)
        channel.connect()
        await channel.close()
        await channel.close()
        ctx.destroy(linger=0)
        return channel.connected

    assert asyncio.run(scenario()) is False


def test_unencodable_command_fails_without_stalling_the_channel():
    async def scenario(endpoint, ctx, seen):
        channel = CommandChannel(endpoint, context=ctx, timeout=1.0)
        channel.connect()
        try:
            bad = await asyncio.wait_for(channel.send("\ud800"), 3)
            good = await asyncio.wait_for(channel.send("ping"), 3)
            return bad, good, list(seen)
        finally:
            await channel.close()

    bad, good, seen = _run_with_server(scenario)
    assert not bad.ok
    assert bad.payload.kind == TRANSPORT
    assert good.ok
    assert good.payload == _echo("ping")
    assert seen == ["ping"]


def test_unexpected_round_trip_error_is_reported_and_drain_continues(monkeypatch):
    async def scenario(endpoint, ctx, _seen):
        channel = CommandChannel(endpoint, context=ctx, timeout=2.0)
        real_round_trip = channel._round_trip
        calls = []

        async def flaky(command):
            calls.append(command.text)
            if len(calls) == 1:
                raise RuntimeError("unexpected bug")
            return await real_round_trip(command)

        monkeypatch.setattr(channel, "_round_trip", flaky)
        channel.connect()
        try:
            first = await asyncio.wait_for(channel.send("first"), 3)
            second = await asyncio.wait_for(channel.send("second"), 3)
            return first, second
        finally:
            await channel.close()

    first, second = _run_with_server(scenario)
    assert first.payload.kind == TRANSPORT
    assert "unexpected bug" in first.payload.message
    assert second.payload == _echo("second")
