"""WebSocket streaming session for real-time ingestion and change events."""

import asyncio
import contextlib
from collections.abc import Sequence
from enum import Enum
from types import TracebackType
from typing import Any
from urllib.parse import quote, urlsplit

import aiohttp
import structlog
from pydantic import SecretStr, ValidationError

from ferresdb.config import DEFAULT_MAX_MESSAGE_BYTES, ClientConfig, Settings, get_settings
from ferresdb.exceptions import FerresDBError, RealtimeStateError, error_from_response
from ferresdb.realtime.channels import Channel
from ferresdb.realtime.messages import (
    AckFrame,
    ErrorFrame,
    EventFrame,
    OutboundFrame,
    OutboundPing,
    OutboundPong,
    PingFrame,
    PongFrame,
    SubscribeFrame,
    UpsertFrame,
    parse_frame,
)
from ferresdb.schemas import Point

logger = structlog.get_logger()

WS_PATH = "/api/v1/ws"


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


def build_ws_url(base_url: str, api_key: SecretStr | None = None) -> str:
    """Derive the streaming endpoint from the HTTP base URL.

    ``https`` maps to ``wss`` and anything else to ``ws``. The key, when
    given, travels URL-encoded in the ``token`` query parameter.
    """
    parsed = urlsplit(base_url)
    scheme = "wss" if parsed.scheme == "https" else "ws"
    url = f"{scheme}://{parsed.netloc}{WS_PATH}"
    if api_key is not None:
        url += f"?token={quote(api_key.get_secret_value(), safe='')}"
    return url


def _log_reader_failure(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(
            "ferresdb_ws_reader_failed",
            error=str(error),
            error_type=type(error).__name__,
        )


class RealtimeClient:
    """Long-lived WebSocket session with a FerresDB server.

    Supports point ingestion acknowledged by the server, subscriptions to
    collection change events, and an application-level heartbeat. At most
    one acknowledgement and one pong can be awaited at a time; starting a
    second correlated call while one is pending raises ``RealtimeStateError``.

    Notifications are delivered on typed channels:
    - ``events``: change events, in arrival order, unfiltered
    - ``errors``: error frames from the server and socket errors
    - ``closed``: the connection went away

    Example:
        async with RealtimeClient("http://localhost:8080", api_key="sk-...") as rt:
            rt.events.subscribe(lambda evt: print(evt.action, evt.point_ids))
            await rt.subscribe("docs", ["upsert"])
            ack = await rt.upsert("docs", [Point(id="1", vector=[0.1, 0.2])])
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | SecretStr | None = None,
        ack_timeout_seconds: float = 30.0,
        ping_timeout_seconds: float = 10.0,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
    ) -> None:
        """Initialize the session. No connection is opened until ``connect``.

        Args:
            base_url: HTTP base URL of the server, e.g. "http://localhost:8080".
            api_key: API key passed as the ``token`` query parameter.
            ack_timeout_seconds: How long upsert/subscribe wait for an ack.
            ping_timeout_seconds: How long ping waits for a pong.
            max_message_bytes: Largest inbound message accepted.

        Raises:
            ClientConfigurationError: If the configuration is invalid.
        """
        config = ClientConfig.build(
            base_url=base_url,
            api_key=api_key,
            ack_timeout_seconds=ack_timeout_seconds,
            ping_timeout_seconds=ping_timeout_seconds,
            max_message_bytes=max_message_bytes,
        )
        self._setup(config)

    def _setup(self, config: ClientConfig) -> None:
        self._config = config
        self._state = SessionState.DISCONNECTED
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._pending_ack: asyncio.Future[AckFrame] | None = None
        self._pending_pong: asyncio.Future[None] | None = None
        self._subscriptions: dict[str, tuple[str, ...] | None] = {}

        self.events: Channel[EventFrame] = Channel("events")
        self.errors: Channel[ErrorFrame] = Channel("errors")
        self.closed: Channel[None] = Channel("closed")

    @classmethod
    def from_config(cls, config: ClientConfig) -> "RealtimeClient":
        client = cls.__new__(cls)
        client._setup(config)
        return client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RealtimeClient":
        settings = settings or get_settings()
        return cls.from_config(settings.to_client_config())

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED and self._ws is not None

    @property
    def subscriptions(self) -> dict[str, tuple[str, ...] | None]:
        """Acknowledged subscriptions: collection -> event filter (None means all)."""
        return dict(self._subscriptions)

    @property
    def url(self) -> str:
        return build_ws_url(self._config.base_url, self._config.api_key)

    async def connect(self) -> None:
        """Open the WebSocket and start reading frames.

        Raises:
            RealtimeStateError: If the session is not disconnected.
            FerresDBError: ``connection`` if the socket cannot be opened or
                ``close()`` was called before the handshake finished.
        """
        if self._state is not SessionState.DISCONNECTED:
            raise RealtimeStateError(f"Cannot connect while {self._state.value}")

        self._state = SessionState.CONNECTING
        host = urlsplit(self._config.base_url).netloc

        try:
            session, ws = await self._open_socket(self.url)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            self._state = SessionState.DISCONNECTED
            logger.warning("ferresdb_ws_connect_failed", host=host, error=str(e))
            raise FerresDBError.connection(f"Failed to connect to WebSocket: {e}") from e

        # close() ran while the socket was opening
        if self._state is not SessionState.CONNECTING:
            await ws.close()
            await session.close()
            logger.info("ferresdb_ws_connect_aborted", host=host)
            raise FerresDBError.connection("Connection aborted by close()")

        self._session, self._ws = session, ws
        self._state = SessionState.CONNECTED
        self._reader = asyncio.create_task(self._read_loop(ws))
        self._reader.add_done_callback(_log_reader_failure)
        logger.info("ferresdb_ws_connected", host=host)

    async def _open_socket(
        self, url: str
    ) -> tuple[aiohttp.ClientSession, aiohttp.ClientWebSocketResponse]:
        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(url, max_msg_size=self._config.max_message_bytes)
        except BaseException:
            await session.close()
            raise
        return session, ws

    async def close(self) -> None:
        """Close the connection.

        Pending upsert/subscribe/ping calls fail with a connection error and
        the subscription registry is cleared. Closing a disconnected session
        is a no-op.
        """
        if self._state in (SessionState.DISCONNECTED, SessionState.CLOSING):
            return

        self._state = SessionState.CLOSING
        self._reject_pending("WebSocket connection closed by client")

        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None

        if ws is not None:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        await self._release()
        logger.info("ferresdb_ws_closed", initiated_by="client")
        self.closed.publish(None)

    async def _release(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()
        self._subscriptions.clear()
        self._state = SessionState.DISCONNECTED

    async def __aenter__(self) -> "RealtimeClient":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def upsert(
        self, collection: str, points: Sequence[Point | dict[str, Any]]
    ) -> AckFrame:
        """Stream points and wait for the server's acknowledgement.

        Returns:
            Ack with upserted/failed counts and server time.

        Raises:
            RealtimeStateError: If not connected or an ack is already pending.
            FerresDBError: ``connection`` on timeout or disconnect, or the
                server's error when it answers with an error frame.
        """
        self._ensure_connected()
        try:
            frame = UpsertFrame(collection=collection, points=list(points))
        except ValidationError as e:
            raise FerresDBError.invalid_payload(str(e)) from e
        return await self._send_and_wait_ack(frame)

    async def subscribe(
        self, collection: str, events: Sequence[str] | None = None
    ) -> AckFrame:
        """Subscribe to change events of a collection.

        Args:
            collection: Collection to watch.
            events: Optional action filter, e.g. ``["upsert", "delete"]``.
                Omitted from the frame when empty.

        Returns:
            Ack confirming the subscription.
        """
        self._ensure_connected()
        event_filter = tuple(events) if events else None
        frame = SubscribeFrame(
            collection=collection,
            events=list(event_filter) if event_filter else None,
        )
        ack = await self._send_and_wait_ack(frame)
        self._subscriptions[collection] = event_filter
        logger.info(
            "ferresdb_ws_subscribed",
            collection=collection,
            events=list(event_filter) if event_filter else None,
        )
        return ack

    async def ping(self) -> None:
        """Send a heartbeat and wait for the pong.

        Raises:
            RealtimeStateError: If not connected or a ping is already pending.
            FerresDBError: ``connection`` if no pong arrives in time.
        """
        self._ensure_connected()
        if self._pending_pong is not None:
            raise RealtimeStateError("A ping is already awaiting its pong")

        timeout = self._config.ping_timeout_seconds
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending_pong = future
        try:
            await self._send(OutboundPing())
            await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise FerresDBError.connection(
                f"Pong not received within {timeout} seconds"
            ) from None
        finally:
            if self._pending_pong is future:
                self._pending_pong = None

    def _ensure_connected(self) -> None:
        if not self.is_connected:
            raise RealtimeStateError("RealtimeClient is not connected. Call connect() first.")

    async def _send(self, frame: OutboundFrame) -> None:
        if self._ws is None:
            raise FerresDBError.connection("WebSocket is not open")
        try:
            await self._ws.send_str(frame.to_wire())
        except (aiohttp.ClientError, ConnectionError) as e:
            raise FerresDBError.connection(f"Failed to send frame: {e}") from e

    async def _send_and_wait_ack(self, frame: OutboundFrame) -> AckFrame:
        if self._pending_ack is not None:
            raise RealtimeStateError("An acknowledgement is already pending")

        timeout = self._config.ack_timeout_seconds
        future: asyncio.Future[AckFrame] = asyncio.get_running_loop().create_future()
        self._pending_ack = future
        try:
            await self._send(frame)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise FerresDBError.connection(
                f"Server did not acknowledge within {timeout} seconds"
            ) from None
        finally:
            if self._pending_ack is future:
                self._pending_ack = None

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for message in ws:
                if message.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self._handle_message(message.data)
                elif message.type is aiohttp.WSMsgType.ERROR:
                    error = ws.exception()
                    logger.warning("ferresdb_ws_error", error=str(error))
                    self.errors.publish(ErrorFrame(message=str(error), code=0))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("ferresdb_ws_read_failed", error=str(e), error_type=type(e).__name__)

        await self._handle_transport_closed()

    async def _handle_transport_closed(self) -> None:
        if self._state is not SessionState.CONNECTED:
            return

        self._state = SessionState.CLOSING
        self._ws = None
        self._reader = None
        self._reject_pending("WebSocket connection closed")
        await self._release()
        logger.info("ferresdb_ws_closed", initiated_by="server")
        self.closed.publish(None)

    async def _handle_message(self, raw: str | bytes) -> None:
        frame = parse_frame(raw)
        if frame is None:
            logger.debug("ferresdb_ws_frame_dropped", size=len(raw))
            return

        if isinstance(frame, AckFrame):
            if self._pending_ack is not None and not self._pending_ack.done():
                self._pending_ack.set_result(frame)

        elif isinstance(frame, PongFrame):
            if self._pending_pong is not None and not self._pending_pong.done():
                self._pending_pong.set_result(None)

        elif isinstance(frame, EventFrame):
            self.events.publish(frame)

        elif isinstance(frame, ErrorFrame):
            logger.warning("ferresdb_ws_server_error", message=frame.message, code=frame.code)
            if self._pending_ack is not None and not self._pending_ack.done():
                self._pending_ack.set_exception(
                    error_from_response(
                        frame.error or "unknown", frame.message, frame.code or None
                    )
                )
            self.errors.publish(frame)

        elif isinstance(frame, PingFrame):
            if self.is_connected:
                await self._send(OutboundPong())

    def _reject_pending(self, reason: str) -> None:
        for future in (self._pending_ack, self._pending_pong):
            if future is not None and not future.done():
                future.set_exception(FerresDBError.connection(reason))
        self._pending_ack = None
        self._pending_pong = None
