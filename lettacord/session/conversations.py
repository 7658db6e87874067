"""Channel → Letta conversation mapping.

Each Discord channel talks to the agent in its own conversation so
parallel channels don't interleave in one context window. Mappings are
created on first use and kept in ``{data_dir}/conversation-mappings.json``.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Awaitable, Callable

from loguru import logger

ConversationFactory = Callable[[], Awaitable[str]]


class ConversationMappings:
    """Lazily creates and remembers one conversation id per channel."""

    def __init__(self, data_dir: Path, create_conversation: ConversationFactory) -> None:
        self._path = data_dir / "conversation-mappings.json"
        self._create = create_conversation
        self._mappings: dict[str, str] = {}
        self._creating: dict[str, asyncio.Task[str]] = {}

    def load(self) -> None:
        if not self._path.exists():
            logger.info("No saved conversation mappings found, starting fresh")
            self._mappings = {}
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            self._mappings = {str(k): str(v) for k, v in raw.items()}
            logger.info(f"Loaded {len(self._mappings)} conversation mappings")
        except Exception as e:
            logger.error(f"Failed to load conversation mappings: {e}")
            self._mappings = {}

    def _save(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(".tmp")
            tmp.write_text(json.dumps(self._mappings, indent=2), encoding="utf-8")
            tmp.replace(self._path)
            logger.debug("Conversation mappings saved")
        except Exception as e:
            logger.error(f"Failed to save conversation mappings: {e}")

    def get(self, channel_id: str) -> str | None:
        return self._mappings.get(channel_id)

    async def get_or_create(self, channel_id: str) -> str:
        """Return the channel's conversation id, creating it on first use.

        Creation runs as its own task behind ``asyncio.shield``: a caller
        cancelled mid-create (an aborted batch) leaves the task running, and
        the retry awaits that same task instead of creating a second
        conversation on the server.
        """
        existing = self._mappings.get(channel_id)
        if existing:
            logger.debug(f"Using existing conversation for channel {channel_id}: {existing}")
            return existing

        task = self._creating.get(channel_id)
        if task is None:
            logger.info(f"Creating new conversation for channel {channel_id}")
            task = asyncio.create_task(self._create_for(channel_id))
            task.add_done_callback(self._creation_done)
            self._creating[channel_id] = task
        return await asyncio.shield(task)

    async def _create_for(self, channel_id: str) -> str:
        try:
            conversation_id = await self._create()
        finally:
            self._creating.pop(channel_id, None)
        self._mappings[channel_id] = conversation_id
        self._save()
        logger.info(f"Created conversation {conversation_id} for channel {channel_id}")
        return conversation_id

    @staticmethod
    def _creation_done(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Failed to create conversation: {task.exception()}")
