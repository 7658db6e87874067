"""Queue manager: routes events to per-channel queues and tracks typing.

Owns two registries, both keyed by channel id and filled lazily:
    - queues: channel id -> ChannelQueue (plus one system queue)
    - typing: channel id -> TypingState

Timers and membership events have no channel affinity and share the
system queue, keyed by a reserved id that can never be a Discord channel.
"""

from __future__ import annotations

import asyncio
import math
import re
import time as _time
from dataclasses import dataclass, field

from loguru import logger

from lettacord.agent.channel_queue import ChannelQueue, ConversationResolver, QueueStatus
from lettacord.agent.formatter import MessageFormatter
from lettacord.agent.stream import ResponseStreamInterpreter
from lettacord.bus.events import ChatMessage, MembershipEvent, TimerHeartbeat
from lettacord.config.schema import QueueConfig
from lettacord.providers.base import BackendStreamClient

SYSTEM_QUEUE_ID = "__system__"

# Discord channel ids are numeric snowflakes
_SNOWFLAKE = re.compile(r"^\d+$")


@dataclass
class TypingState:
    """Who is typing in one channel."""
    users: set[str] = field(default_factory=set)
    stopped_at: float | None = None  # last transition to nobody typing

    @property
    def active(self) -> bool:
        return bool(self.users)


class QueueManager:
    """Demultiplexes inbound events onto independent channel queues."""

    def __init__(
        self,
        backend: BackendStreamClient,
        formatter: MessageFormatter | None = None,
        interpreter: ResponseStreamInterpreter | None = None,
        config: QueueConfig | None = None,
        conversation_resolver: ConversationResolver | None = None,
        system_queue_id: str = SYSTEM_QUEUE_ID,
    ):
        if not system_queue_id or _SNOWFLAKE.match(system_queue_id):
            raise ValueError(
                f"System queue id {system_queue_id!r} could collide with a real channel id"
            )
        self._backend = backend
        self._formatter = formatter or MessageFormatter()
        self._interpreter = interpreter or ResponseStreamInterpreter()
        self._config = config or QueueConfig()
        self._conversation_resolver = conversation_resolver
        self.system_queue_id = system_queue_id

        self._queues: dict[str, ChannelQueue] = {}
        self._typing: dict[str, TypingState] = {}

    # ── Routing ───────────────────────────────────────────────────────

    def route_chat_message(self, event: ChatMessage) -> asyncio.Future[str]:
        if event.channel_id == self.system_queue_id:
            raise ValueError(f"Channel id {event.channel_id!r} is reserved for system events")
        return self._get_queue(event.channel_id).enqueue(event)

    def route_timer(self, reason: str = "timer") -> asyncio.Future[str]:
        logger.info(f"Heartbeat ({reason}) queued on system queue")
        return self._system_queue().enqueue(TimerHeartbeat(reason=reason))

    def route_membership(self, event: MembershipEvent) -> asyncio.Future[str]:
        logger.info(f"Member join queued for {event.display_name}")
        return self._system_queue().enqueue(event)

    def _get_queue(self, channel_id: str) -> ChannelQueue:
        queue = self._queues.get(channel_id)
        if queue is None:
            logger.info(f"Creating new message queue for channel: {channel_id}")
            state = self._typing.get(channel_id)
            queue = ChannelQueue(
                channel_id,
                backend=self._backend,
                formatter=self._formatter,
                interpreter=self._interpreter,
                config=self._config,
                conversation_resolver=self._conversation_resolver,
                typing=bool(state and state.active),
                typing_stopped_at=state.stopped_at if state else None,
            )
            self._queues[channel_id] = queue
        return queue

    def _system_queue(self) -> ChannelQueue:
        queue = self._queues.get(self.system_queue_id)
        if queue is None:
            # System events run in the agent's default conversation
            queue = ChannelQueue(
                self.system_queue_id,
                backend=self._backend,
                formatter=self._formatter,
                interpreter=self._interpreter,
                config=self._config,
            )
            self._queues[self.system_queue_id] = queue
        return queue

    # ── Typing ────────────────────────────────────────────────────────

    def on_typing_start(self, channel_id: str, user_id: str) -> None:
        state = self._typing.setdefault(channel_id, TypingState())
        was_active = state.active
        state.users.add(user_id)
        if not was_active:
            logger.debug(f"Typing started in channel {channel_id}")
            self._notify(channel_id, True, None)

    def on_typing_stop(self, channel_id: str, user_id: str) -> None:
        state = self._typing.get(channel_id)
        if state is None or user_id not in state.users:
            return
        state.users.discard(user_id)
        if not state.active:
            state.stopped_at = _time.monotonic()
            logger.debug(f"Typing stopped in channel {channel_id}")
            self._notify(channel_id, False, state.stopped_at)

    def _notify(self, channel_id: str, is_typing: bool, stopped_at: float | None) -> None:
        queue = self._queues.get(channel_id)
        if queue is not None:
            queue.set_typing(is_typing, stopped_at)

    def is_typing(self, channel_id: str) -> bool:
        state = self._typing.get(channel_id)
        return bool(state and state.active)

    def time_since_typing_stopped(self, channel_id: str) -> float:
        """Seconds since typing last stopped; inf if never typed or still typing."""
        state = self._typing.get(channel_id)
        if state is None or state.active or state.stopped_at is None:
            return math.inf
        return _time.monotonic() - state.stopped_at

    # ── Introspection / lifecycle ─────────────────────────────────────

    def get_queue(self, channel_id: str) -> ChannelQueue | None:
        return self._queues.get(channel_id)

    def status(self) -> dict[str, QueueStatus]:
        return {cid: q.snapshot() for cid, q in self._queues.items()}

    async def close(self) -> None:
        for queue in list(self._queues.values()):
            await queue.close()
        self._queues.clear()
