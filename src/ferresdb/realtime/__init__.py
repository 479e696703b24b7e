"""Real-time streaming over WebSocket."""

from ferresdb.realtime.channels import Channel
from ferresdb.realtime.client import RealtimeClient, SessionState, build_ws_url
from ferresdb.realtime.messages import AckFrame, ErrorFrame, EventFrame

__all__ = [
    "AckFrame",
    "Channel",
    "ErrorFrame",
    "EventFrame",
    "RealtimeClient",
    "SessionState",
    "build_ws_url",
]
