"""Socket.IO side of the tabletop command channel.

Tabletop modules connect to the ``/vtt`` namespace with a ``connection_id``
query argument. The registry maps that id to the live socket so completion
actions can ``call`` into it and wait for an acknowledgement.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from flask import current_app, request
from flask_socketio import join_room

from tumulte.extensions import socketio


VTT_NAMESPACE = "/vtt"
APPLY_EFFECT_EVENT = "apply_effect"


class ConnectionRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._by_connection: Dict[str, str] = {}

    def register(self, connection_id: str, sid: str) -> None:
        with self._lock:
            self._by_connection[str(connection_id)] = sid

    def unregister_sid(self, sid: str) -> Optional[str]:
        with self._lock:
            for connection_id, known in list(self._by_connection.items()):
                if known == sid:
                    del self._by_connection[connection_id]
                    return connection_id
        return None

    def sid_for(self, connection_id: str) -> Optional[str]:
        with self._lock:
            return self._by_connection.get(str(connection_id))

    def clear(self) -> None:
        with self._lock:
            self._by_connection.clear()


registry = ConnectionRegistry()
_initialised = set()


def init_vtt_namespace(sio=None) -> None:
    sio = sio or socketio
    if id(sio) in _initialised:
        return
    _initialised.add(id(sio))

    @sio.on("connect", namespace=VTT_NAMESPACE)
    def on_vtt_connect(auth=None):
        connection_id = request.args.get("connection_id") or (auth or {}).get("connection_id")
        if not connection_id:
            return False
        registry.register(connection_id, request.sid)
        join_room(f"vtt:{connection_id}")
        current_app.logger.info("vtt connection %s online", connection_id)
        return True

    @sio.on("disconnect", namespace=VTT_NAMESPACE)
    def on_vtt_disconnect(*args):
        connection_id = registry.unregister_sid(request.sid)
        if connection_id:
            current_app.logger.info("vtt connection %s offline", connection_id)

    @sio.on("join_campaign")
    def on_join_campaign(data=None):
        campaign_id = (data or {}).get("campaign_id")
        if campaign_id is None:
            return {"ok": False, "error": "campaign_id required"}
        join_room(f"campaign:{campaign_id}")
        return {"ok": True}


class SocketIOCommandChannel:
    """Command channel port over Flask-SocketIO acknowledgements."""

    def __init__(self, sio=None, connections: ConnectionRegistry | None = None, timeout: int | None = None):
        self.sio = sio or socketio
        self.connections = connections or registry
        self.timeout = timeout

    def is_connected(self, connection_id: str) -> bool:
        return bool(connection_id) and self.connections.sid_for(connection_id) is not None

    def apply_effect(self, connection_id: str, target: dict, effect: dict) -> dict:
        sid = self.connections.sid_for(connection_id)
        if sid is None:
            return {"success": False, "error": f"connection {connection_id} is offline"}
        timeout = self.timeout or int(current_app.config.get("VTT_COMMAND_TIMEOUT", 15))
        try:
            ack = self.sio.call(
                APPLY_EFFECT_EVENT,
                {"target": target, "effect": effect},
                to=sid,
                namespace=VTT_NAMESPACE,
                timeout=timeout,
            )
        except Exception as e:
            current_app.logger.warning("apply_effect to %s failed: %s", connection_id, e)
            return {"success": False, "error": str(e) or "no acknowledgement"}
        if not isinstance(ack, dict):
            return {"success": False, "error": "malformed acknowledgement"}
        return {"success": bool(ack.get("success")), "error": ack.get("error")}


def broadcast_instance_update(instance: Dict[str, Any], event: str = "gamification:instance") -> bool:
    """Push an instance snapshot to the campaign overlay room.

    Returns False when SocketIO is not serving (tests, CLI jobs).
    """
    if socketio is None or getattr(socketio, "server", None) is None:
        return False
    try:
        socketio.emit(event, instance, to=f"campaign:{instance.get('campaign_id')}")
        return True
    except Exception:
        return False
