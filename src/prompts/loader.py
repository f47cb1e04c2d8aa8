from __future__ import annotations

import logging
from pathlib import Path

LOGGER = logging.getLogger(__name__)

DEFAULT_SYSTEM_MESSAGE_FILE = "system_message.txt"


def load_prompt(filename: str) -> str:
    """Load a prompt text file shipped with the codebase."""

    prompt_dir = Path(__file__).resolve().parent
    path = prompt_dir / filename
    if not path.exists():
        raise RuntimeError(f"Prompt file not found: {filename}")
    return path.read_text(encoding="utf-8").strip()


def load_system_message(override_path: Path | None = None) -> str:
    """Instructions for the realtime session.

    An operator-provided file wins when it exists and is not empty; otherwise
    the bundled prompt is used.
    """

    if override_path is not None:
        try:
            content = override_path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            LOGGER.info("No system message at %s (%s); using the bundled prompt", override_path, exc)
        else:
            if content:
                return content
            LOGGER.warning("System message file %s is empty; using the bundled prompt", override_path)

    return load_prompt(DEFAULT_SYSTEM_MESSAGE_FILE)
