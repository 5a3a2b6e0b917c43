import asyncio
import inspect
import sys
from pathlib import Path

ROOT_DIR = Path(inspect.getfile(inspect.currentframe())).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from ipc.messages import TRANSPORT, CommandReply, ErrorValue, UpdateMessage  # noqa: E402
from WorkerLink.forwarder import Forwarder  # noqa: E402
from WorkerLink.ui_gateway import UIGateway  # noqa: E402


class _StubChannel:
    """Stand-in for CommandChannel returning canned replies."""

    def __init__(self, reply: CommandReply):
        self.reply = reply
        self.sent = []

    async def send(self, command):
        self.sent.append(command)
        return self.reply


def test_subscriber_receives_decoded_progress_frame():
    gateway = UIGateway()
    forwarder = Forwarder(gateway, allowed_topics=["progress", "result"])
    calls = []
    gateway.subscribe(lambda topic, payload: calls.append((topic, payload)))

    forwarder.forward(b'progress {"value": 50}')

    assert calls == [("progress", '{"value": 50}')]


def test_unsubscribe_stops_delivery():
    gateway = UIGateway()
    calls = []
    unsubscribe = gateway.subscribe(lambda t, p: calls.append(p))

    gateway.deliver(UpdateMessage("progress", "1"))
    unsubscribe()
    unsubscribe()  # second call is harmless
    gateway.deliver(UpdateMessage("progress", "2"))

    assert calls == ["1"]
    assert gateway.subscriber_count == 0


def test_no_replay_for_late_subscribers():
    gateway = UIGateway()
    gateway.deliver(UpdateMessage("result", ""))
    calls = []
    gateway.subscribe(lambda t, p: calls.append(t))
    assert calls == []


def test_unsubscribe_during_delivery_is_honoured():
    gateway = UIGateway()
    calls = []
    handles = {}

    def first(topic, payload):
        calls.append("first")
        handles["second"]()

    gateway.subscribe(first)
    handles["second"] = gateway.subscribe(lambda t, p: calls.append("second"))

    gateway.deliver(UpdateMessage("progress", "1"))
    assert calls == ["first"]


def test_raising_subscriber_does_not_block_others(caplog):
    gateway = UIGateway()
    calls = []

    def broken(topic, payload):
        raise RuntimeError("render failed")

    gateway.subscribe(broken)
    gateway.subscribe(lambda t, p: calls.append(p))

    gateway.deliver(UpdateMessage("progress", "7"))

    assert calls == ["7"]
    assert any("subscriber raised" in r.getMessage() for r in caplog.records)


def test_send_command_without_channel_returns_error_value():
    result = asyncio.run(UIGateway().send_command("Start-Analysis"))
    assert isinstance(result, ErrorValue)
    assert result.kind == TRANSPORT


def test_send_command_returns_reply_text_or_error():
    ok = _StubChannel(CommandReply.success('{"status":"started","id":"1"}'))
    gateway = UIGateway(ok)
    assert asyncio.run(gateway.send_command("Start-Analysis")) == '{"status":"started","id":"1"}'
    assert ok.sent == ["Start-Analysis"]

    gateway.bind_channel(_StubChannel(CommandReply.failure(TRANSPORT, "gone")))
    result = asyncio.run(gateway.send_command("Start-Analysis"))
    assert result == ErrorValue(kind=TRANSPORT, message="gone")
