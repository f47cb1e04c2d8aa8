"""Current-weather lookup backing the ``get_weather`` tool."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx

from config.settings import get_settings
from realtime.errors import ToolLookupFailure

LOGGER = logging.getLogger(__name__)

OPEN_WEATHER_URL = "https://api.openweathermap.org/data/2.5/weather"


class WeatherClient:
    """OpenWeatherMap client that never raises across its boundary."""

    def __init__(
        self,
        api_key: str | None,
        *,
        country_code: str = "JP",
        language: str = "ja",
        units: str = "metric",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._country_code = country_code
        self._language = language
        self._units = units
        self._transport = transport
        self._timeout = timeout

    @classmethod
    def from_settings(cls) -> WeatherClient:
        settings = get_settings()
        return cls(
            settings.open_weather_api_key,
            country_code=settings.weather_country_code,
            language=settings.weather_language,
            units=settings.weather_units,
        )

    async def lookup(self, location: str) -> str:
        """Return a one-sentence weather summary, or a sentence describing the failure."""

        LOGGER.info("Weather lookup for %r", location)
        try:
            return await self._fetch(location)
        except ToolLookupFailure as exc:
            LOGGER.error("Weather lookup failed for %r: %s", location, exc.detail)
            return f"Could not get the weather for {location}: {exc.detail}"

    async def _fetch(self, location: str) -> str:
        if not self._api_key:
            raise ToolLookupFailure("OPEN_WEATHER_API_KEY is not configured")

        params = {
            "q": f"{location},{self._country_code}" if self._country_code else location,
            "appid": self._api_key,
            "units": self._units,
            "lang": self._language,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(OPEN_WEATHER_URL, params=params)
        except httpx.HTTPError as exc:
            raise ToolLookupFailure(f"request failed: {exc}") from exc

        if response.status_code == 404:
            return f"No weather information was found for {location}. Please name a valid prefecture."
        if response.is_error:
            raise ToolLookupFailure(f"API error {response.status_code} {response.reason_phrase}")

        try:
            return format_weather(location, response.json())
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ToolLookupFailure(f"unexpected response: {exc!r}") from exc


def format_weather(location: str, data: dict[str, Any], *, today: date | None = None) -> str:
    day = today or date.today()
    main = data["main"]
    return (
        f"Weather for {location} on {day.year}/{day.month}/{day.day}: "
        f"{data['weather'][0]['description']}, currently {main['temp']}°C "
        f"(low {main['temp_min']}°C, high {main['temp_max']}°C), "
        f"humidity {main['humidity']}%, wind {data['wind']['speed']}m/s."
    )
