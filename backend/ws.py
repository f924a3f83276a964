"""Live chat broadcast hub.

Every open connection receives every chat message, whatever room it was
posted to; clients filter by room themselves. A message is broadcast only
after the store has accepted it.
"""
import json
import logging
import uuid
from enum import Enum
from typing import Dict, Optional, Union

import anyio
from fastapi import WebSocket, status
from fastapi.concurrency import run_in_threadpool
from fastapi.websockets import WebSocketState
from pydantic import ValidationError

from schemas import CHAT, ChatBroadcast, ChatMessageOut, ChatPostIn, ChatRejected, OutboundEvent, dump_event
from store import MessageRejected

logger = logging.getLogger(__name__)

# Events a connection may fall behind by before it is dropped
OUTBOX_SIZE = 64


class MalformedEvent(ValueError):
    """An inbound frame that is not a well-formed event."""


def parse_event(raw: Union[str, bytes, None]) -> Optional[ChatPostIn]:
    """Parse one inbound frame.

    Returns None for events of any type other than chat so newer clients can
    send things this hub does not know about. Raises MalformedEvent otherwise.
    """
    if raw is None:
        raise MalformedEvent("empty frame")
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEvent("binary frame is not UTF-8") from e
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise MalformedEvent(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedEvent("event must be a JSON object")
    if data.get("type") != CHAT:
        return None
    try:
        return ChatPostIn.model_validate(data)
    except ValidationError as e:
        raise MalformedEvent(f"invalid chat event: {e.error_count()} error(s)") from e


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Connection:
    """One client socket and the queue of events waiting to be written to it."""

    def __init__(self, ws: WebSocket, outbox_size: int = OUTBOX_SIZE):
        self.id = uuid.uuid4().hex
        self.ws = ws
        self.state = ConnectionState.CONNECTING
        self.outbox, self.pending = anyio.create_memory_object_stream(outbox_size)

    def offer(self, payload: dict) -> bool:
        """Queue ``payload`` without waiting; False if the queue is full or closed."""
        try:
            self.outbox.send_nowait(payload)
        except (anyio.WouldBlock, anyio.ClosedResourceError, anyio.BrokenResourceError):
            return False
        return True

    def __repr__(self):
        return f"<Connection {self.id[:8]} {self.state.value}>"


class Hub:
    def __init__(self, store, reject_notices: bool = False, outbox_size: int = OUTBOX_SIZE):
        self.store = store
        self.reject_notices = reject_notices
        self.outbox_size = outbox_size
        self.connections: Dict[str, Connection] = {}

    @property
    def connection_count(self) -> int:
        return len(self.connections)

    async def connect(self, ws: WebSocket) -> Connection:
        conn = Connection(ws, self.outbox_size)
        await ws.accept()
        conn.state = ConnectionState.OPEN
        self.connections[conn.id] = conn
        logger.info("connection %s opened (%d live)", conn.id, self.connection_count)
        return conn

    def disconnect(self, conn: Connection) -> None:
        conn.state = ConnectionState.CLOSED
        conn.outbox.close()
        if self.connections.pop(conn.id, None) is not None:
            logger.info("connection %s closed (%d live)", conn.id, self.connection_count)

    async def handle(self, conn: Connection, raw: Union[str, bytes, None]) -> Optional[ChatMessageOut]:
        """Process one inbound frame; returns the stored message if one was broadcast."""
        if conn.state is not ConnectionState.OPEN:
            return None
        try:
            post = parse_event(raw)
        except MalformedEvent as e:
            logger.warning("malformed event on %s: %s", conn.id, e)
            self._reject(conn, str(e))
            return None
        if post is None:
            logger.debug("ignoring non-chat event on %s", conn.id)
            return None

        try:
            record = await run_in_threadpool(self.store.persist, post.username, post.message, post.room_id)
        except MessageRejected as e:
            logger.warning("store rejected message on %s: %s", conn.id, e)
            self._reject(conn, f"message rejected: {e}")
            return None
        except Exception:
            logger.exception("could not persist message on %s", conn.id)
            self._reject(conn, "message could not be saved")
            return None

        self.broadcast(ChatBroadcast(message=record, room_id=record.room_id))
        return record

    def broadcast(self, event: OutboundEvent) -> int:
        """Queue ``event`` for every open connection; returns how many accepted it.

        Never waits on a client. A connection whose queue is full is too far
        behind to catch up and is dropped.
        """
        payload = dump_event(event)
        queued = 0
        for conn in list(self.connections.values()):
            if conn.state is not ConnectionState.OPEN:
                continue
            if conn.offer(payload):
                queued += 1
            else:
                logger.warning("outbox for %s is full or closed, dropping it", conn.id)
                self.disconnect(conn)
        return queued

    def _reject(self, conn: Connection, reason: str) -> None:
        if not self.reject_notices or conn.state is not ConnectionState.OPEN:
            return
        if not conn.offer(dump_event(ChatRejected(reason=reason))):
            logger.warning("could not notify %s of rejection, dropping it", conn.id)
            self.disconnect(conn)

    async def pump(self, conn: Connection) -> None:
        """Write queued events to one socket until the connection closes."""
        try:
            async with conn.pending:
                async for payload in conn.pending:
                    if conn.state is not ConnectionState.OPEN:
                        break
                    await conn.ws.send_json(payload)
        except Exception:
            logger.warning("send to %s failed, dropping it", conn.id, exc_info=True)
        finally:
            self.disconnect(conn)

    async def serve(self, ws: WebSocket) -> None:
        """Run one connection from handshake to close."""
        conn = await self.connect(ws)
        try:
            async with anyio.create_task_group() as tg:

                async def write():
                    await self.pump(conn)
                    # Writer gone: stop waiting on the socket too
                    tg.cancel_scope.cancel()

                tg.start_soon(write)
                while conn.state is ConnectionState.OPEN:
                    msg = await ws.receive()
                    if msg["type"] == "websocket.disconnect":
                        break
                    text = msg.get("text")
                    await self.handle(conn, text if text is not None else msg.get("bytes"))
                tg.cancel_scope.cancel()
        finally:
            self.disconnect(conn)
            await _close_quietly(ws)

    async def close_all(self) -> None:
        """Close every open connection; used at server shutdown."""
        for conn in list(self.connections.values()):
            self.disconnect(conn)
            await _close_quietly(conn.ws, code=status.WS_1001_GOING_AWAY)


async def _close_quietly(ws: WebSocket, code: int = status.WS_1000_NORMAL_CLOSURE) -> None:
    if getattr(ws, "application_state", None) is not WebSocketState.CONNECTED:
        return
    if getattr(ws, "client_state", None) is not WebSocketState.CONNECTED:
        return
    try:
        await ws.close(code=code)
    except Exception:
        logger.debug("close failed", exc_info=True)
