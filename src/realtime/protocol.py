"""Messages exchanged with the OpenAI Realtime API and the Vonage media socket."""

from __future__ import annotations

import base64
import json
from typing import Any

from realtime.errors import UnhandledMessage

# AI events worth an INFO line; audio deltas are deliberately absent.
LOG_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "response.content.done",
        "response.created",
        "response.done",
        "response.audio_transcript.done",
        "response.function_call_arguments.done",
        "input_audio_buffer.committed",
        "input_audio_buffer.speech_stopped",
        "input_audio_buffer.speech_started",
        "session.created",
        "session.updated",
        "session.deleted",
        "conversation.item.created",
        "conversation.item.truncated",
        "conversation.item.input_audio_transcription.completed",
        "error",
    }
)

CLEAR_ACTION: dict[str, str] = {"action": "clear"}


def session_update(
    *,
    instructions: str,
    voice: str,
    temperature: float,
    tools: list[dict[str, Any]],
    transcription_model: str,
) -> dict[str, Any]:
    return {
        "type": "session.update",
        "session": {
            "turn_detection": {"type": "server_vad"},
            "input_audio_transcription": {"model": transcription_model},
            "input_audio_format": "pcm16",
            "output_audio_format": "pcm16",
            "voice": voice,
            "instructions": instructions,
            "modalities": ["text", "audio"],
            "temperature": temperature,
            "tools": tools,
            "tool_choice": "auto",
        },
    }


def audio_append(pcm: bytes) -> dict[str, Any]:
    return {
        "type": "input_audio_buffer.append",
        "audio": base64.b64encode(pcm).decode("ascii"),
    }


def item_truncate(item_id: str, audio_end_ms: int) -> dict[str, Any]:
    return {
        "type": "conversation.item.truncate",
        "item_id": item_id,
        "content_index": 0,
        "audio_end_ms": int(audio_end_ms),
    }


def function_call_output(call_id: str, output: str) -> dict[str, Any]:
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "function_call_output",
            "call_id": call_id,
            "output": json.dumps(output, ensure_ascii=False),
        },
    }


def response_create() -> dict[str, Any]:
    return {"type": "response.create"}


def parse_ai_event(raw: str | bytes) -> dict[str, Any]:
    """Decode one AI transport message.

    Raises:
        UnhandledMessage: if the payload is not a JSON object with a ``type``.
    """

    try:
        event = json.loads(raw)
    except ValueError as exc:
        raise UnhandledMessage(raw, f"Invalid JSON from realtime API: {exc}") from exc
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise UnhandledMessage(raw, "Realtime message without a type")
    return event


def decode_audio_delta(event: dict[str, Any]) -> bytes:
    delta = event.get("delta")
    if not isinstance(delta, str) or not delta:
        return b""
    return base64.b64decode(delta)


def classify_inbound(message: bytes) -> dict[str, Any] | None:
    """Return the lifecycle notice carried by ``message``, or None for audio.

    Vonage sends JSON notices (``{"event": "websocket:connected", ...}``) on the
    same socket as raw PCM frames. Anything that is not a JSON object with an
    ``event`` field is audio.
    """

    try:
        data = json.loads(message)
    except ValueError:
        return None
    if isinstance(data, dict) and "event" in data:
        return data
    return None
