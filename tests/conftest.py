from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from realtime.errors import TransportClosed  # noqa: E402


class FakeInbound:
    """Caller side of a call, driven from the test."""

    def __init__(self) -> None:
        self.frames: list[bytes] = []
        self.controls: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue[bytes | None] | None = None

    @property
    def incoming(self) -> asyncio.Queue[bytes | None]:
        if self._incoming is None:
            self._incoming = asyncio.Queue()
        return self._incoming

    def feed(self, message: bytes) -> None:
        self.incoming.put_nowait(message)

    def hang_up(self) -> None:
        self.incoming.put_nowait(None)

    async def receive(self) -> bytes:
        message = await self.incoming.get()
        if message is None:
            raise TransportClosed("caller hung up")
        return message

    async def send_audio(self, frame: bytes) -> None:
        if self.closed:
            raise TransportClosed("caller gone")
        self.frames.append(frame)

    async def send_control(self, message: dict) -> None:
        if self.closed:
            raise TransportClosed("caller gone")
        self.controls.append(message)

    async def close(self) -> None:
        self.closed = True
        if self._incoming is not None:
            self._incoming.put_nowait(None)


class FakeAi:
    """Realtime API side of a call, driven from the test."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self.close_calls = 0
        self._incoming: asyncio.Queue[str | None] | None = None

    @property
    def incoming(self) -> asyncio.Queue[str | None]:
        if self._incoming is None:
            self._incoming = asyncio.Queue()
        return self._incoming

    def emit(self, event: dict | str) -> None:
        self.incoming.put_nowait(event if isinstance(event, str) else json.dumps(event))

    def disconnect(self) -> None:
        self.incoming.put_nowait(None)

    async def receive(self) -> str:
        message = await self.incoming.get()
        if message is None:
            raise TransportClosed("realtime gone")
        return message

    async def send_json(self, event: dict) -> None:
        if self.closed:
            raise TransportClosed("realtime gone")
        self.sent.append(event)

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True
        if self._incoming is not None:
            self._incoming.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [event["type"] for event in self.sent]


@pytest.fixture(scope="session")
def app(tmp_path_factory: pytest.TempPathFactory):
    tmp_dir = tmp_path_factory.mktemp("runtime")

    # Must be set before importing modules that read settings.
    os.environ["OPENAI_API_KEY"] = "sk-test"
    os.environ["OPENAI_MODEL"] = "gpt-4o-realtime-preview"
    os.environ["SERVER_URL"] = "relay.example.com"
    os.environ["SYSTEM_MESSAGE_PATH"] = str(tmp_dir / "missing-system-message.txt")

    import importlib

    # Ensure clean import with the test settings.
    for module_name in [
        "api.dependencies",
        "api.routes",
        "main",
    ]:
        sys.modules.pop(module_name, None)

    from config.settings import get_settings

    get_settings.cache_clear()
    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
