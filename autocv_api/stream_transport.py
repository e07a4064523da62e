"""Server-sent event channels bridging generation passes and HTTP clients."""

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import structlog
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

logger = structlog.get_logger()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

HEARTBEAT_FRAME = ": keep-alive\n\n"

_CLOSE = object()


def format_sse(event: str | None, data: BaseModel | dict[str, Any]) -> str:
    """Encode one SSE frame. ``event=None`` uses the default message type."""
    if isinstance(data, BaseModel):
        payload = data.model_dump_json(by_alias=True, exclude_none=True)
    else:
        payload = json.dumps(data)
    if event:
        return f"event: {event}\ndata: {payload}\n\n"
    return f"data: {payload}\n\n"


DisconnectCallback = Callable[["SSEChannel"], None]


class SSEChannel:
    """One-way event channel to a single connected client.

    Producers call ``send``/``close``; the HTTP response drains ``events()``.
    Once closed, further sends are dropped. If the client goes away first,
    the channel closes itself and fires the disconnect callbacks.
    """

    def __init__(self, operation_id: str, heartbeat_seconds: float | None = None):
        self.operation_id = operation_id
        self._heartbeat = heartbeat_seconds
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._client_disconnected = False
        self._disconnect_callbacks: list[DisconnectCallback] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def client_disconnected(self) -> bool:
        return self._client_disconnected

    def send(self, event: str | None, data: BaseModel | dict[str, Any]) -> bool:
        """Queue one event. Returns False (and logs) if the channel is closed."""
        if self._closed:
            logger.debug(
                "Dropped event on closed channel",
                operation_id=self.operation_id,
                sse_event=event or "message",
            )
            return False
        self._queue.put_nowait(format_sse(event, data))
        return True

    def close(self, discard_pending: bool = False) -> None:
        """Close the channel. Idempotent.

        Args:
            discard_pending: Drop frames the client has not received yet.
        """
        if self._closed:
            return
        self._closed = True
        if discard_pending:
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(_CLOSE)

    def on_client_disconnect(self, callback: DisconnectCallback) -> None:
        """Register a callback fired if the remote end goes away first."""
        self._disconnect_callbacks.append(callback)

    def mark_disconnected(self) -> None:
        """Record that the client went away before the channel was closed."""
        if self._closed:
            return
        self._client_disconnected = True
        self.close(discard_pending=True)
        logger.info("SSE client disconnected", operation_id=self.operation_id)
        for callback in self._disconnect_callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.error(
                    "Disconnect callback failed",
                    operation_id=self.operation_id,
                    error=str(e),
                )

    async def events(self) -> AsyncIterator[str]:
        """Yield formatted frames until the channel is closed."""
        try:
            while True:
                if self._heartbeat:
                    try:
                        item = await asyncio.wait_for(self._queue.get(), timeout=self._heartbeat)
                    except asyncio.TimeoutError:
                        yield HEARTBEAT_FRAME
                        continue
                else:
                    item = await self._queue.get()
                if item is _CLOSE:
                    break
                yield item
        finally:
            # Reached without a close only when the response was torn down early
            self.mark_disconnected()

    def as_response(self, status_code: int = 200) -> StreamingResponse:
        """Wrap the channel in a streaming HTTP response with SSE framing."""
        return StreamingResponse(
            self.events(),
            status_code=status_code,
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )


def open_channel(operation_id: str, heartbeat_seconds: float | None = None) -> SSEChannel:
    """Create a channel for one streaming connection."""
    return SSEChannel(operation_id, heartbeat_seconds=heartbeat_seconds)
