"""Exceptions raised by the realtime relay.

Safe to import from the API layer and the audio helpers without pulling in
any transport code.
"""

from __future__ import annotations


class RelayError(Exception):
    default_detail: str = "Relay error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class InvalidBufferLength(RelayError, ValueError):
    default_detail = "PCM16 buffer length must be a whole number of samples."


class TransportClosed(RelayError):
    default_detail = "Transport closed."


class UnhandledMessage(RelayError):
    default_detail = "Unparseable realtime message."

    def __init__(self, raw: str | bytes, detail: str | None = None) -> None:
        super().__init__(detail)
        self.raw = raw


class ToolLookupFailure(RelayError):
    default_detail = "Tool lookup failed."


class ConfigurationMissing(RelayError):
    default_detail = "Required configuration is missing."

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Missing required settings: {', '.join(missing)}")
        self.missing = list(missing)
