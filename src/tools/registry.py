"""Function tools offered to the realtime model."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from realtime.errors import ToolLookupFailure
from tools.weather import WeatherClient

LOGGER = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[str]]


@dataclass(frozen=True, slots=True)
class Tool:
    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler

    def schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def schemas(self) -> list[dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    async def call(self, name: str, arguments: str | None) -> str:
        """Run a tool and return its output text; failures become the output."""

        tool = self._tools.get(name)
        if tool is None:
            return f"Unknown tool: {name}"
        try:
            args = _parse_arguments(arguments)
            return await tool.handler(args)
        except ToolLookupFailure as exc:
            LOGGER.error("Tool %s failed: %s", name, exc.detail)
            return f"The {name} tool failed: {exc.detail}"
        except Exception:
            LOGGER.exception("Tool %s raised", name)
            return f"An error occurred while running {name}."


def _parse_arguments(arguments: str | None) -> dict[str, Any]:
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except ValueError as exc:
        raise ToolLookupFailure(f"arguments are not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ToolLookupFailure("arguments must be a JSON object")
    return parsed


async def put_name(args: dict[str, Any]) -> str:
    name = args.get("name")
    if not isinstance(name, str) or not name.strip():
        LOGGER.warning("put_name: no usable name in %r", args)
        return "The name could not be recorded."
    LOGGER.info("Caller name recorded: %s", name.strip())
    return f"Recorded the name {name.strip()}."


def build_tool_registry(weather: WeatherClient | None = None) -> ToolRegistry:
    weather = weather or WeatherClient.from_settings()

    async def get_weather(args: dict[str, Any]) -> str:
        location = args.get("location")
        if not isinstance(location, str) or not location.strip():
            raise ToolLookupFailure("a location is required")
        return await weather.lookup(location.strip())

    return ToolRegistry(
        [
            Tool(
                name="get_weather",
                description="Get the current weather for a location.",
                parameters={
                    "type": "object",
                    "properties": {
                        "location": {
                            "type": "string",
                            "description": "Prefecture or city name, e.g. 東京都, 大阪, 北海道",
                        }
                    },
                    "required": ["location"],
                },
                handler=get_weather,
            ),
            Tool(
                name="put_name",
                description="Record the caller's name once they have said it.",
                parameters={
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "description": "The caller's name."}
                    },
                    "required": ["name"],
                },
                handler=put_name,
            ),
        ]
    )
