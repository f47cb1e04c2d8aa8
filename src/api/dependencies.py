"""Shared FastAPI dependencies.

Separated so tests can override the realtime connector and the tools
without touching the route module.
"""

from __future__ import annotations

from functools import lru_cache

from config.settings import get_settings
from realtime.relay import AiConnector, RelayConfig
from realtime.transports import AiTransport, RealtimeConnection
from tools.registry import ToolRegistry, build_tool_registry


def get_ai_connector() -> AiConnector:
    settings = get_settings()

    async def connect() -> AiTransport:
        return await RealtimeConnection.connect(
            settings.openai_realtime_url,
            model=settings.openai_model or "",
            api_key=settings.openai_api_key or "",
        )

    return connect


@lru_cache(maxsize=1)
def _relay_config_factory() -> RelayConfig:
    return RelayConfig.from_settings(get_settings())


def get_relay_config() -> RelayConfig:
    return _relay_config_factory()


@lru_cache(maxsize=1)
def _tool_registry_factory() -> ToolRegistry:
    return build_tool_registry()


def get_tool_registry() -> ToolRegistry:
    return _tool_registry_factory()
