"""Vonage Voice integration.

This module provides:
- Answer webhook (NCCO) connecting the call to the media WebSocket.
- Event webhook, health and metrics probes.
- The media WebSocket itself, bridged to the OpenAI Realtime API.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse

from api.dependencies import get_ai_connector, get_relay_config, get_tool_registry
from config.settings import get_settings
from realtime.relay import AiConnector, RelayConfig, SessionRelay
from realtime.transports import StarletteInbound
from tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

router = APIRouter()

MEDIA_STREAM_PATH = "/media-stream"
MEDIA_CONTENT_TYPE = "audio/l16;rate=16000"


def _host(server_url: str) -> str:
    for scheme in ("https://", "http://", "wss://", "ws://"):
        if server_url.startswith(scheme):
            return server_url.removeprefix(scheme).rstrip("/")
    return server_url.rstrip("/")


def _ncco_connect(*, talk_text: str, language: str, stream_uri: str) -> list[dict[str, Any]]:
    return [
        {
            "action": "talk",
            "text": talk_text,
            "language": language,
        },
        {
            "action": "connect",
            "endpoint": [
                {
                    "type": "websocket",
                    "uri": stream_uri,
                    "contentType": MEDIA_CONTENT_TYPE,
                }
            ],
        },
    ]


@router.get("/")
async def index() -> dict[str, str]:
    return {"message": "Vonage Voice server is running."}


@router.get("/_/health", response_class=PlainTextResponse)
async def health() -> str:
    return "OK"


@router.get("/_/metrics", response_class=PlainTextResponse)
async def metrics() -> str:
    return "OK"


@router.api_route("/event", methods=["GET", "POST"], response_class=PlainTextResponse)
async def vonage_event(request: Request) -> str:
    body = await request.body()
    if body:
        try:
            LOGGER.info("Vonage event: %s", json.dumps(json.loads(body), ensure_ascii=False))
        except ValueError:
            LOGGER.info("Vonage event (non-JSON): %r", body[:512])
    else:
        LOGGER.info("Vonage event: %s", dict(request.query_params))
    return "OK"


@router.api_route("/answer", methods=["GET", "POST"])
async def vonage_answer() -> JSONResponse:
    settings = get_settings()
    stream_uri = f"wss://{_host(settings.server_url or '')}{MEDIA_STREAM_PATH}"
    LOGGER.info("Answering call, media stream at %s", stream_uri)
    return JSONResponse(
        _ncco_connect(
            talk_text=settings.answer_greeting_text,
            language=settings.answer_language,
            stream_uri=stream_uri,
        )
    )


@router.websocket(MEDIA_STREAM_PATH)
async def media_stream(
    websocket: WebSocket,
    connect_ai: AiConnector = Depends(get_ai_connector),
    config: RelayConfig = Depends(get_relay_config),
    tools: ToolRegistry = Depends(get_tool_registry),
) -> None:
    await websocket.accept()
    relay = SessionRelay(StarletteInbound(websocket), connect_ai, config=config, tools=tools)
    await relay.run()
