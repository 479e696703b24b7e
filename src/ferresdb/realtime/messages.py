"""WebSocket frame models for the streaming session.

Every frame is a JSON object tagged by ``type``. One transport message
carries exactly one frame.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ferresdb.schemas import Point


class _Frame(BaseModel):
    model_config = ConfigDict(extra="ignore")


class AckFrame(_Frame):
    """Server acknowledgement of an upsert or subscribe."""

    type: Literal["ack"] = "ack"
    upserted: int = 0
    failed: int = 0
    took_ms: int = 0


class PongFrame(_Frame):
    type: Literal["pong"] = "pong"


class PingFrame(_Frame):
    type: Literal["ping"] = "ping"


class EventFrame(_Frame):
    """A change to a subscribed collection."""

    type: Literal["event"] = "event"
    collection: str
    action: str
    point_ids: list[str] = Field(default_factory=list)
    timestamp: int


class ErrorFrame(_Frame):
    """Server-reported failure. ``code`` is 0 for local socket errors."""

    type: Literal["error"] = "error"
    message: str = "Unknown error"
    code: int = 0
    error: str | None = None


InboundFrame = Annotated[
    AckFrame | PongFrame | PingFrame | EventFrame | ErrorFrame,
    Field(discriminator="type"),
]

_INBOUND = TypeAdapter(InboundFrame)


def parse_frame(raw: str | bytes) -> InboundFrame | None:
    """Decode one inbound frame.

    Returns:
        The typed frame, or None for malformed JSON, unknown ``type`` tags or
        frames missing required fields.
    """
    try:
        return _INBOUND.validate_json(raw)
    except ValidationError:
        return None


class OutboundFrame(BaseModel):
    model_config = ConfigDict(extra="forbid")

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)


class UpsertFrame(OutboundFrame):
    type: Literal["upsert"] = "upsert"
    collection: str
    points: list[Point]


class SubscribeFrame(OutboundFrame):
    type: Literal["subscribe"] = "subscribe"
    collection: str
    events: list[str] | None = None


class OutboundPing(OutboundFrame):
    type: Literal["ping"] = "ping"


class OutboundPong(OutboundFrame):
    type: Literal["pong"] = "pong"
