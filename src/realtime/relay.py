from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from audio.framing import DeliveryPolicy, FramePaginator, frame_size_bytes
from audio.resample import ResampleMethod
from config.settings import Settings
from prompts.loader import load_system_message
from realtime import protocol
from realtime.errors import TransportClosed, UnhandledMessage
from realtime.scheduler import BufferScheduler
from realtime.session import AiConnectionState, RelaySession, new_session_id
from realtime.transports import AiTransport, InboundTransport
from realtime.turns import TruncationPolicy, TurnManager, monotonic_ms
from tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

AiConnector = Callable[[], Awaitable[AiTransport]]


@dataclass(frozen=True)
class RelayConfig:
    instructions: str
    voice: str = "alloy"
    temperature: float = 0.8
    transcription_model: str = "whisper-1"
    inbound_sample_rate: int = 16000
    ai_sample_rate: int = 24000
    frame_ms: int = 20
    resample_method: ResampleMethod = "decimate"
    delivery_policy: DeliveryPolicy = "immediate"
    flush_interval_ms: int = 1000
    session_update_delay_ms: int = 250
    greeting_delay_ms: int = 1000
    send_initial_greeting: bool = True
    truncation: TruncationPolicy = field(default_factory=TruncationPolicy)

    @classmethod
    def from_settings(cls, settings: Settings) -> RelayConfig:
        return cls(
            instructions=load_system_message(settings.system_message_path),
            voice=settings.openai_voice,
            temperature=settings.openai_temperature,
            transcription_model=settings.openai_transcription_model,
            inbound_sample_rate=settings.inbound_sample_rate,
            ai_sample_rate=settings.ai_sample_rate,
            frame_ms=settings.frame_ms,
            resample_method=settings.resample_method,
            delivery_policy=settings.delivery_policy,
            flush_interval_ms=settings.flush_interval_ms,
            session_update_delay_ms=settings.session_update_delay_ms,
            greeting_delay_ms=settings.greeting_delay_ms,
            send_initial_greeting=settings.send_initial_greeting,
            truncation=TruncationPolicy(
                floor_ms=settings.truncate_min_ms,
                ceiling_ms=settings.truncate_max_ms,
                default_ms=settings.truncate_default_ms,
            ),
        )


@dataclass(frozen=True, slots=True)
class RelayEvent:
    kind: str
    payload: Any = None


class SessionRelay:
    """Bridges one caller media socket to one OpenAI Realtime session.

    Readers for both sockets, the startup sequence, the delivery timer and
    tool calls only ever put events on a queue; ``run`` takes them off one at
    a time, so every state change of the session happens in arrival order.
    """

    def __init__(
        self,
        inbound: InboundTransport,
        connect_ai: AiConnector,
        *,
        config: RelayConfig,
        tools: ToolRegistry,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self._inbound = inbound
        self._connect_ai = connect_ai
        self._config = config
        self._tools = tools
        self._ai: AiTransport | None = None
        self._events: asyncio.Queue[RelayEvent] = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

        session_id = new_session_id()
        paginator = FramePaginator(
            frame_size_bytes(config.inbound_sample_rate, config.frame_ms),
            config.delivery_policy,
        )
        scheduler = BufferScheduler(
            paginator,
            inbound.send_audio,
            interval_ms=config.flush_interval_ms,
            on_tick=lambda: self._post(RelayEvent("tick")),
        )
        turns = TurnManager(
            scheduler,
            self._send_ai,
            inbound.send_control,
            src_rate=config.ai_sample_rate,
            dst_rate=config.inbound_sample_rate,
            resample_method=config.resample_method,
            truncation=config.truncation,
            clock=clock,
            session_id=session_id,
        )
        self.session = RelaySession(turns=turns, scheduler=scheduler, session_id=session_id)

        self._event_handlers: dict[str, Callable[[Any], Awaitable[None]]] = {
            "inbound": self._on_inbound_message,
            "ai": self._on_ai_message,
            "tick": self._on_tick,
            "configure": self._on_configure,
            "greet": self._on_greet,
            "tool_result": self._on_tool_result,
        }
        self._ai_handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "session.updated": self._on_session_updated,
            "conversation.item.created": self._on_item_created,
            "response.audio.delta": self._on_audio_delta,
            "input_audio_buffer.speech_started": self._on_speech_started,
            "conversation.item.truncated": self._on_item_truncated,
            "response.done": self._on_response_done,
            "response.function_call_arguments.done": self._on_function_call,
            "conversation.item.input_audio_transcription.completed": self._on_caller_transcript,
            "response.audio_transcript.done": self._on_assistant_transcript,
            "error": self._on_error,
        }

    @property
    def sid(self) -> str:
        return self.session.session_id

    @property
    def closed(self) -> bool:
        return self._closed

    async def run(self) -> None:
        LOGGER.info("Session %s: caller connected", self.sid)
        try:
            self._ai = await self._connect_ai()
        except Exception:
            LOGGER.exception("Session %s: could not connect to the realtime API", self.sid)
            await self.close()
            return

        LOGGER.info("Session %s: realtime API connected", self.sid)
        self._spawn(self._read_inbound(), "inbound-reader")
        self._spawn(self._read_ai(), "ai-reader")
        self._spawn(self._startup(), "startup")

        try:
            while True:
                event = await self._events.get()
                if event.kind == "closed":
                    LOGGER.info("Session %s: %s side closed", self.sid, event.payload)
                    break
                try:
                    await self._event_handlers[event.kind](event.payload)
                except TransportClosed as exc:
                    LOGGER.info("Session %s: %s", self.sid, exc.detail)
                    break
                except UnhandledMessage as exc:
                    LOGGER.error("Session %s: %s. Raw message: %r", self.sid, exc.detail, exc.raw)
                except Exception:
                    LOGGER.exception("Session %s: failed to process %s event", self.sid, event.kind)
        finally:
            await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.session.ai_state = AiConnectionState.CLOSED
        self.session.scheduler.close()

        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if self._ai is not None:
            try:
                await self._ai.close()
            except Exception:
                LOGGER.warning("Session %s: error closing realtime socket", self.sid, exc_info=True)
        try:
            await self._inbound.close()
        except Exception:
            LOGGER.warning("Session %s: error closing caller socket", self.sid, exc_info=True)
        LOGGER.info("Session %s: closed", self.sid)

    # -- background producers -------------------------------------------------

    def _post(self, event: RelayEvent) -> None:
        if not self._closed:
            self._events.put_nowait(event)

    def _spawn(self, coro: Awaitable[None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{name}-{self.sid}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _read_inbound(self) -> None:
        try:
            while True:
                self._post(RelayEvent("inbound", await self._inbound.receive()))
        except TransportClosed as exc:
            LOGGER.debug("Session %s: %s", self.sid, exc.detail)
        except Exception:
            LOGGER.exception("Session %s: caller socket failed", self.sid)
        self._post(RelayEvent("closed", "caller"))

    async def _read_ai(self) -> None:
        assert self._ai is not None
        try:
            while True:
                self._post(RelayEvent("ai", await self._ai.receive()))
        except TransportClosed as exc:
            LOGGER.debug("Session %s: %s", self.sid, exc.detail)
        except Exception:
            LOGGER.exception("Session %s: realtime socket failed", self.sid)
        self._post(RelayEvent("closed", "realtime"))

    async def _startup(self) -> None:
        # The realtime API may ignore configuration sent right after the handshake.
        await asyncio.sleep(self._config.session_update_delay_ms / 1000)
        self._post(RelayEvent("configure"))
        if self._config.send_initial_greeting:
            await asyncio.sleep(self._config.greeting_delay_ms / 1000)
            self._post(RelayEvent("greet"))

    async def _run_tool(self, call_id: str, name: str, arguments: str | None) -> None:
        output = await self._tools.call(name, arguments)
        LOGGER.info("Session %s: tool %s finished", self.sid, name)
        self._post(RelayEvent("tool_result", (call_id, output)))

    # -- event handlers -------------------------------------------------------

    async def _send_ai(self, event: dict[str, Any]) -> None:
        if self._ai is None or self.session.ai_state is AiConnectionState.CLOSED:
            raise TransportClosed("Realtime socket closed")
        await self._ai.send_json(event)

    async def _on_configure(self, _: Any) -> None:
        update = protocol.session_update(
            instructions=self._config.instructions,
            voice=self._config.voice,
            temperature=self._config.temperature,
            tools=self._tools.schemas(),
            transcription_model=self._config.transcription_model,
        )
        await self._send_ai(update)
        self.session.ai_state = AiConnectionState.OPEN
        LOGGER.info("Session %s: session configuration sent", self.sid)

    async def _on_greet(self, _: Any) -> None:
        LOGGER.info("Session %s: requesting initial greeting", self.sid)
        await self._send_ai(protocol.response_create())

    async def _on_tick(self, _: Any) -> None:
        await self.session.turns.on_tick()

    async def _on_tool_result(self, payload: tuple[str, str]) -> None:
        call_id, output = payload
        await self._send_ai(protocol.function_call_output(call_id, output))
        await self._send_ai(protocol.response_create())

    async def _on_inbound_message(self, message: bytes) -> None:
        notice = protocol.classify_inbound(message)
        if notice is not None:
            if notice.get("event") == "websocket:connected":
                LOGGER.info("Session %s: media stream started: %s", self.sid, notice)
            else:
                LOGGER.info("Session %s: media notice: %s", self.sid, notice)
            return

        if not self.session.accepts_audio or not message:
            return
        await self._send_ai(protocol.audio_append(message))

    async def _on_ai_message(self, raw: str | bytes) -> None:
        event = protocol.parse_ai_event(raw)
        event_type = event["type"]
        if event_type in protocol.LOG_EVENT_TYPES:
            LOGGER.info("Session %s: received %s", self.sid, event_type)
        handler = self._ai_handlers.get(event_type)
        if handler is not None:
            await handler(event)

    async def _on_session_updated(self, event: dict[str, Any]) -> None:
        LOGGER.debug("Session %s: session updated: %s", self.sid, event.get("session"))

    async def _on_item_created(self, event: dict[str, Any]) -> None:
        item = event.get("item") or {}
        if item.get("role") != "assistant" or not item.get("id"):
            return
        await self.session.turns.on_item_created(str(item["id"]))

    async def _on_audio_delta(self, event: dict[str, Any]) -> None:
        pcm = protocol.decode_audio_delta(event)
        if pcm:
            await self.session.turns.on_audio_delta(pcm, item_id=event.get("item_id"))

    async def _on_speech_started(self, event: dict[str, Any]) -> None:
        await self.session.turns.on_speech_started(event.get("audio_start_ms"))

    async def _on_item_truncated(self, event: dict[str, Any]) -> None:
        await self.session.turns.on_item_truncated()

    async def _on_response_done(self, event: dict[str, Any]) -> None:
        await self.session.turns.on_response_done()

    async def _on_function_call(self, event: dict[str, Any]) -> None:
        name = str(event.get("name") or "")
        call_id = str(event.get("call_id") or "")
        if name not in self._tools:
            LOGGER.warning("Session %s: model called unknown tool %r", self.sid, name)
            return
        LOGGER.info("Session %s: running tool %s (call %s)", self.sid, name, call_id)
        self._spawn(self._run_tool(call_id, name, event.get("arguments")), f"tool-{name}")

    async def _on_caller_transcript(self, event: dict[str, Any]) -> None:
        if event.get("transcript"):
            LOGGER.info("Session %s: caller said: %s", self.sid, event["transcript"])

    async def _on_assistant_transcript(self, event: dict[str, Any]) -> None:
        if event.get("transcript"):
            LOGGER.info("Session %s: assistant said: %s", self.sid, event["transcript"])

    async def _on_error(self, event: dict[str, Any]) -> None:
        error = event.get("error") or {}
        LOGGER.error("Session %s: realtime API error: %s", self.sid, error.get("message") or error)
        await self.session.turns.on_ai_error()
