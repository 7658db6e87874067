"""Reduce a backend event stream to the text the bot should post.

Two tools are contracted with the agent:
    - send_response(message, is_responding): user-visible reply fragment
    - set_status(message): update the bot's presence (side effect only)

Everything else is logged and dropped.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterable, Awaitable, Callable

import json_repair
from loguru import logger

from lettacord.providers.base import (
    AssistantTextEvent,
    ReasoningEvent,
    StopEvent,
    StreamEvent,
    ToolCallEvent,
    ToolReturnEvent,
    UsageEvent,
)

SEND_RESPONSE_TOOL = "send_response"
SET_STATUS_TOOL = "set_status"

PresenceCallback = Callable[[str], Awaitable[None]]


def parse_tool_arguments(raw: str) -> dict[str, Any]:
    """Best-effort decode of a tool call's JSON arguments."""
    if not raw:
        return {}
    try:
        parsed = json_repair.loads(raw)
    except Exception as e:
        logger.warning(f"Unparseable tool arguments {raw[:80]!r}: {e}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "no", "")
    return bool(value)


class ResponseStreamInterpreter:
    """Drains one response stream and fires presence side effects."""

    def __init__(
        self,
        set_presence: PresenceCallback | None = None,
        persist_presence: PresenceCallback | None = None,
    ):
        self._set_presence = set_presence
        self._persist_presence = persist_presence
        self._presence_tasks: set[asyncio.Task] = set()

    async def interpret(self, events: AsyncIterable[StreamEvent]) -> str:
        """Return the accumulated reply text. Stream failures propagate."""
        parts: list[str] = []

        async for event in events:
            if isinstance(event, AssistantTextEvent):
                self._append(parts, event.text)
            elif isinstance(event, ToolCallEvent):
                self._handle_tool_call(event, parts)
            elif isinstance(event, ReasoningEvent):
                logger.debug(f"Agent reasoning: {event.text[:200]}")
            elif isinstance(event, StopEvent):
                logger.debug(f"Agent stream stopped: {event.reason}")
            elif isinstance(event, UsageEvent):
                logger.debug(f"Agent usage: {event.usage}")
            elif isinstance(event, ToolReturnEvent):
                logger.debug(f"Tool {event.name} returned ({event.status})")

        result = "\n\n".join(parts).strip()
        if result:
            logger.info(f"Letta response: {result}")
        else:
            logger.info("Letta chose not to respond")
        return result

    @staticmethod
    def _append(parts: list[str], text: str) -> None:
        text = (text or "").strip()
        if text:
            parts.append(text)

    def _handle_tool_call(self, event: ToolCallEvent, parts: list[str]) -> None:
        if event.name == SEND_RESPONSE_TOOL:
            args = parse_tool_arguments(event.arguments)
            if not _as_bool(args.get("is_responding", True)):
                logger.debug("send_response called with is_responding=false")
                return
            self._append(parts, str(args.get("message") or ""))
        elif event.name == SET_STATUS_TOOL:
            args = parse_tool_arguments(event.arguments)
            status = str(args.get("message") or "").strip()
            if status:
                self._update_presence(status)
        else:
            logger.debug(f"Agent called tool {event.name}")

    def _update_presence(self, status: str) -> None:
        # Presence is a side effect; the reply never waits on the gateway
        task = asyncio.create_task(self._apply_presence(status))
        self._presence_tasks.add(task)
        task.add_done_callback(self._presence_tasks.discard)

    async def _apply_presence(self, status: str) -> None:
        if self._set_presence:
            try:
                await self._set_presence(status)
                logger.info(f"Discord status set to: {status}")
            except Exception as e:
                logger.error(f"Failed to set Discord status: {e}")
        if self._persist_presence:
            try:
                await self._persist_presence(status)
            except Exception as e:
                logger.error(f"Failed to persist Discord status: {e}")

    async def drain(self) -> None:
        """Wait for presence updates still in progress."""
        if self._presence_tasks:
            await asyncio.gather(*self._presence_tasks, return_exceptions=True)
