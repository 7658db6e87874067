"""PendingRequest: one queued event plus the future its caller awaits.

The completion future is a single-assignment cell. Settling twice is a
bug in the queue, so it raises instead of being silently ignored. A caller
that stops waiting (its task was cancelled, which cancels the future) does
not count as a settlement.
"""

from __future__ import annotations

import asyncio
import time as _time

from loguru import logger

from lettacord.bus.events import ChatMessage, InboundEvent, TimerHeartbeat


class AlreadySettledError(RuntimeError):
    """A PendingRequest was resolved or rejected a second time."""


class QueueClosedError(RuntimeError):
    """The queue shut down before the request could be processed."""


class PendingRequest:
    """An inbound event waiting for a backend reply."""

    __slots__ = ("event", "arrived_at", "future", "_settled")

    def __init__(self, event: InboundEvent, arrived_at: float | None = None) -> None:
        self.event = event
        self.arrived_at = _time.monotonic() if arrived_at is None else arrived_at
        self.future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._settled = False

    @property
    def settled(self) -> bool:
        return self._settled

    @property
    def is_chat(self) -> bool:
        return isinstance(self.event, ChatMessage)

    @property
    def is_timer(self) -> bool:
        return isinstance(self.event, TimerHeartbeat)

    def _claim(self) -> bool:
        if self._settled:
            raise AlreadySettledError(f"request for {self.event!r} already settled")
        self._settled = True
        if self.future.cancelled():
            logger.debug(f"Caller stopped waiting for {type(self.event).__name__}, dropping result")
            return False
        return True

    def resolve(self, response: str) -> None:
        if self._claim():
            self.future.set_result(response)

    def reject(self, error: BaseException) -> None:
        if self._claim():
            self.future.set_exception(error)

    def __repr__(self) -> str:
        return f"PendingRequest({type(self.event).__name__}, settled={self._settled})"
