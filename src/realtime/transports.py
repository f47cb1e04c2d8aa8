"""The two connections a relay owns: the caller's media socket and the model's."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol
from urllib.parse import urlencode

import websockets
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from realtime.errors import TransportClosed

LOGGER = logging.getLogger(__name__)


class InboundTransport(Protocol):
    """Caller-facing socket: PCM16 frames and JSON notices in, frames and controls out."""

    async def receive(self) -> bytes:
        """Return the next frame; raise TransportClosed once the peer is gone."""

    async def send_audio(self, frame: bytes) -> None: ...

    async def send_control(self, message: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class AiTransport(Protocol):
    """Model-facing socket carrying JSON events both ways."""

    async def receive(self) -> str | bytes:
        """Return the next message; raise TransportClosed once the peer is gone."""

    async def send_json(self, event: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class StarletteInbound:
    """InboundTransport over an accepted FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    @property
    def connected(self) -> bool:
        return (
            self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    async def receive(self) -> bytes:
        try:
            message = await self._ws.receive()
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise TransportClosed("Caller socket closed") from exc

        if message["type"] == "websocket.disconnect":
            raise TransportClosed(f"Caller socket closed (code={message.get('code')})")
        data = message.get("bytes")
        if data is not None:
            return data
        text = message.get("text")
        return text.encode("utf-8") if text is not None else b""

    async def send_audio(self, frame: bytes) -> None:
        if not self.connected:
            raise TransportClosed("Caller socket closed")
        await self._ws.send_bytes(frame)

    async def send_control(self, message: dict[str, Any]) -> None:
        if not self.connected:
            raise TransportClosed("Caller socket closed")
        await self._ws.send_text(json.dumps(message))

    async def close(self) -> None:
        if not self.connected:
            return
        try:
            await self._ws.close()
        except RuntimeError:
            LOGGER.debug("Caller socket already closed", exc_info=True)


def realtime_url(base_url: str, model: str) -> str:
    return f"{base_url.rstrip('/')}?{urlencode({'model': model})}"


class RealtimeConnection:
    """AiTransport over a ``websockets`` client connection."""

    def __init__(self, ws: websockets.ClientConnection) -> None:
        self._ws = ws

    @classmethod
    async def connect(cls, base_url: str, *, model: str, api_key: str) -> RealtimeConnection:
        url = realtime_url(base_url, model)
        LOGGER.info("Connecting to OpenAI Realtime: %s", url)
        ws = await websockets.connect(
            url,
            additional_headers={
                "Authorization": f"Bearer {api_key}",
                "OpenAI-Beta": "realtime=v1",
            },
            max_size=16 * 1024 * 1024,
            ping_interval=20,
            ping_timeout=20,
        )
        return cls(ws)

    async def receive(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except websockets.ConnectionClosed as exc:
            raise TransportClosed(f"Realtime socket closed: {exc}") from exc

    async def send_json(self, event: dict[str, Any]) -> None:
        try:
            await self._ws.send(json.dumps(event))
        except websockets.ConnectionClosed as exc:
            raise TransportClosed(f"Realtime socket closed: {exc}") from exc

    async def close(self) -> None:
        await self._ws.close()
