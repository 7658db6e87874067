"""Persist the bot's presence text across restarts."""

from __future__ import annotations

import json
import time as _time
from pathlib import Path

from loguru import logger


class StatusStore:
    """Keeps the last custom status in ``{data_dir}/bot-status.json``.

    Failures are logged and swallowed: losing the saved status only means
    the bot starts without one.
    """

    def __init__(self, data_dir: Path) -> None:
        self._path = data_dir / "bot-status.json"

    @property
    def path(self) -> Path:
        return self._path

    async def save(self, message: str) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            data = {"message": message, "timestamp": int(_time.time() * 1000)}
            tmp = self._path.with_suffix(".tmp")
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(self._path)
            logger.info(f"Status saved: {message}")
        except Exception as e:
            logger.error(f"Failed to save status: {e}")

    async def load(self) -> str | None:
        if not self._path.exists():
            logger.info("No saved status found")
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception as e:
            logger.error(f"Failed to load status: {e}")
            return None
        message = data.get("message") if isinstance(data, dict) else None
        if message:
            logger.info(f"Status loaded: {message}")
        return message or None

    async def clear(self) -> None:
        try:
            self._path.unlink()
            logger.info("Status file cleared")
        except FileNotFoundError:
            logger.info("No status file to clear")
        except OSError as e:
            logger.error(f"Failed to clear status: {e}")
