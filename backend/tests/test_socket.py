"""Tests for the tabletop command channel."""

import pytest

from tumulte.realtime.socket import APPLY_EFFECT_EVENT, VTT_NAMESPACE, ConnectionRegistry, SocketIOCommandChannel


class FakeSocketIO:
    def __init__(self, ack=None, error=None):
        self.ack = ack
        self.error = error
        self.calls = []

    def call(self, event, data, to=None, namespace=None, timeout=None):
        self.calls.append({"event": event, "data": data, "to": to, "namespace": namespace, "timeout": timeout})
        if self.error:
            raise self.error
        return self.ack


@pytest.fixture
def connections():
    reg = ConnectionRegistry()
    reg.register("vtt-1", "sid-abc")
    return reg


class TestConnectionRegistry:
    def test_register_and_drop(self, connections):
        assert connections.sid_for("vtt-1") == "sid-abc"
        assert connections.unregister_sid("sid-abc") == "vtt-1"
        assert connections.sid_for("vtt-1") is None

    def test_unknown_sid(self, connections):
        assert connections.unregister_sid("sid-zzz") is None
        assert connections.sid_for("vtt-1") == "sid-abc"


class TestSocketIOCommandChannel:
    def test_ack_is_returned(self, app, connections):
        sio = FakeSocketIO(ack={"success": True})
        channel = SocketIOCommandChannel(sio, connections, timeout=3)

        assert channel.is_connected("vtt-1") is True
        res = channel.apply_effect("vtt-1", {"type": "chat"}, {"type": "chat_message", "content": "hi"})

        assert res == {"success": True, "error": None}
        call = sio.calls[0]
        assert call["event"] == APPLY_EFFECT_EVENT
        assert call["to"] == "sid-abc"
        assert call["namespace"] == VTT_NAMESPACE
        assert call["timeout"] == 3

    def test_offline_connection(self, app, connections):
        sio = FakeSocketIO(ack={"success": True})
        channel = SocketIOCommandChannel(sio, connections)
        assert channel.is_connected("vtt-2") is False
        res = channel.apply_effect("vtt-2", {}, {})
        assert res["success"] is False
        assert sio.calls == []

    def test_timeout_becomes_failure(self, app, connections):
        channel = SocketIOCommandChannel(FakeSocketIO(error=TimeoutError("no ack")), connections)
        res = channel.apply_effect("vtt-1", {}, {})
        assert res == {"success": False, "error": "no ack"}

    def test_malformed_ack(self, app, connections):
        channel = SocketIOCommandChannel(FakeSocketIO(ack="ok"), connections)
        assert channel.apply_effect("vtt-1", {}, {})["success"] is False

    def test_config_timeout_default(self, app, connections):
        app.config["VTT_COMMAND_TIMEOUT"] = 7
        sio = FakeSocketIO(ack={"success": False, "error": "actor missing"})
        res = SocketIOCommandChannel(sio, connections).apply_effect("vtt-1", {}, {})
        assert res == {"success": False, "error": "actor missing"}
        assert sio.calls[0]["timeout"] == 7
