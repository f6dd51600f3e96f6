"""Gekto HTTP layer: control-plane WebSocket and injection proxy."""
from .server import GektoServer

__all__ = ["GektoServer"]
