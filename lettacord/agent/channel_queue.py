"""Per-channel queue: debounce, batching, typing deferral and interruption.

One ChannelQueue owns the traffic of exactly one channel (or the system
pseudo-channel). It turns bursty arrivals into an ordered stream of
backend calls with at most one call in flight:

    Idle ──chat──▶ Debouncing ──arrival──▶ Batching ──window closes──▶ Processing
      ▲                │ timer                ▲  │                        │
      │                └──────────────────────┼──┘ (typing: defer)        │
      └───────────────────────────────────────┴───── settle / re-batch ◀──┘

    1. The first chat message after idle waits out the initial debounce.
    2. Any arrival while debouncing, batching or processing joins the batch
       buffer and restarts the (shorter) batch window.
    3. A chat arrival during processing aborts the in-flight call; its
       requests go back to the front of the buffer and are retried together
       with the newcomer.
    4. When a window closes while the human is typing, processing waits for
       typing to stop plus the typing pause.
    5. The emergency ceiling bounds 2 and 4: once a batch has been open that
       long it is processed regardless, and that call is not aborted.

All state changes run synchronously on the event loop, so no locking.
"""

from __future__ import annotations

import asyncio
import time as _time
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from lettacord.agent.formatter import MessageFormatter, combine_batch
from lettacord.agent.pending import PendingRequest, QueueClosedError
from lettacord.agent.stream import ResponseStreamInterpreter
from lettacord.bus.events import ChatMessage, InboundEvent
from lettacord.config.schema import QueueConfig
from lettacord.providers.base import (
    BackendCancelledError,
    BackendStreamClient,
    BackendTimeoutError,
)

ConversationResolver = Callable[[str], Awaitable["str | None"]]


@dataclass(frozen=True)
class QueueStatus:
    """Read-only view of a queue, for logs and tests."""
    channel_id: str
    debouncing: bool
    buffered: int
    in_flight: bool
    typing: bool


class ChannelQueue:
    """Scheduling state machine for one channel's events."""

    def __init__(
        self,
        channel_id: str,
        backend: BackendStreamClient,
        formatter: MessageFormatter,
        interpreter: ResponseStreamInterpreter,
        config: QueueConfig | None = None,
        conversation_resolver: ConversationResolver | None = None,
        typing: bool = False,
        typing_stopped_at: float | None = None,
    ):
        self.channel_id = channel_id
        self._backend = backend
        self._formatter = formatter
        self._interpreter = interpreter
        self._config = config or QueueConfig()
        self._resolve_conversation = conversation_resolver

        self._slot: PendingRequest | None = None  # debouncing singleton
        self._buffer: list[PendingRequest] = []  # chronological batch
        self._batch_opened_at: float | None = None

        self._in_flight = False
        self._in_flight_batch: list[PendingRequest] = []
        self._call: asyncio.Task | None = None  # abort handle
        self._call_abortable = False
        self._runner: asyncio.Task | None = None
        self._flush_when_idle = False

        self._timer: asyncio.Task | None = None
        self._timer_kind: str | None = None  # "debounce" | "batch" | "typing"

        self._typing = typing
        self._typing_stopped_at = typing_stopped_at
        self._closed = False

    # ── Public API ────────────────────────────────────────────────────

    def enqueue(self, event: InboundEvent) -> asyncio.Future[str]:
        """Accept one event; the returned future settles exactly once."""
        if self._closed:
            raise QueueClosedError(f"queue {self.channel_id} is closed")

        request = PendingRequest(event)
        if isinstance(event, ChatMessage):
            self._accept_chat(request)
        else:
            self._accept_system(request)
        return request.future

    def set_typing(self, is_typing: bool, stopped_at: float | None = None) -> None:
        """Typing transition pushed by the queue manager."""
        self._typing = is_typing
        if is_typing:
            return
        self._typing_stopped_at = _time.monotonic() if stopped_at is None else stopped_at
        if self._timer_kind == "typing":
            # Typing just ended: retry once the pause has elapsed
            self._arm("typing", self._clamp(self._typing_wait()))

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def snapshot(self) -> QueueStatus:
        return QueueStatus(
            channel_id=self.channel_id,
            debouncing=self._slot is not None,
            buffered=len(self._buffer),
            in_flight=self._in_flight,
            typing=self._typing,
        )

    async def close(self) -> None:
        """Stop timers and the in-flight call; reject everything outstanding."""
        if self._closed:
            return
        self._closed = True
        self._cancel_timer()

        tasks = [t for t in (self._call, self._runner) if t and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        outstanding = list(self._in_flight_batch) + self._buffer
        if self._slot is not None:
            outstanding.append(self._slot)
        for request in outstanding:
            if not request.settled:
                request.reject(QueueClosedError(f"queue {self.channel_id} closed"))

        self._slot = None
        self._buffer = []
        self._in_flight_batch = []
        self._in_flight = False
        logger.debug(f"Queue {self.channel_id}: closed ({len(outstanding)} requests rejected)")

    # ── Arrival ───────────────────────────────────────────────────────

    def _is_idle(self) -> bool:
        return self._slot is None and not self._buffer and not self._in_flight

    def _accept_chat(self, request: PendingRequest) -> None:
        if self._is_idle():
            self._slot = request
            logger.info(
                f"Queue {self.channel_id}: message queued, debouncing "
                f"{self._config.initial_debounce}s"
            )
            self._arm("debounce", self._config.initial_debounce)
            return

        if self._in_flight:
            self._abort_in_flight()
        self._add_to_batch(request)

    def _accept_system(self, request: PendingRequest) -> None:
        # Timer and membership events never debounce and never interrupt
        if self._is_idle():
            logger.info(f"Queue {self.channel_id}: {type(request.event).__name__} dispatched")
            self._dispatch([request])
            return
        self._add_to_batch(request)

    def _add_to_batch(self, request: PendingRequest) -> None:
        if self._slot is not None:
            self._buffer.append(self._slot)
            self._slot = None
        self._buffer.append(request)
        self._open_batch()
        logger.info(f"Queue {self.channel_id}: batched message ({len(self._buffer)} in buffer)")
        # The fresh window owns the flush now, even if an older one closed mid-call
        self._flush_when_idle = False
        self._arm("batch", self._clamp(self._config.batch_window))

    def _abort_in_flight(self) -> None:
        call = self._call
        if call is None or call.done() or not self._call_abortable:
            return
        logger.info(f"Queue {self.channel_id}: new message arrived, aborting in-flight call")
        call.cancel()

    # ── Timers ────────────────────────────────────────────────────────

    def _open_batch(self) -> None:
        if self._batch_opened_at is None:
            self._batch_opened_at = _time.monotonic()

    def _ceiling_deadline(self) -> float | None:
        if self._batch_opened_at is None:
            return None
        return self._batch_opened_at + self._config.emergency_ceiling

    def _ceiling_reached(self) -> bool:
        deadline = self._ceiling_deadline()
        return deadline is not None and _time.monotonic() >= deadline

    def _clamp(self, delay: float) -> float:
        """Never schedule past the emergency ceiling of the open batch."""
        deadline = self._ceiling_deadline()
        if deadline is None:
            return delay
        return max(0.0, min(delay, deadline - _time.monotonic()))

    def _typing_wait(self) -> float:
        """Seconds still to wait before the human counts as done typing."""
        pause = self._config.typing_pause
        if self._typing:
            return pause
        if self._typing_stopped_at is None:
            return 0.0
        return max(0.0, pause - (_time.monotonic() - self._typing_stopped_at))

    def _arm(self, kind: str, delay: float) -> None:
        self._cancel_timer()
        self._timer_kind = kind
        self._timer = asyncio.create_task(self._fire_after(delay))

    def _cancel_timer(self) -> None:
        if self._timer is not None and self._timer is not asyncio.current_task():
            self._timer.cancel()
        self._timer = None
        self._timer_kind = None

    async def _fire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timer = None
        self._timer_kind = None
        try:
            self._on_timer()
        except Exception as e:
            logger.exception(f"Queue {self.channel_id}: timer handling failed: {e}")

    def _on_timer(self) -> None:
        if self._closed:
            return
        if self._in_flight:
            # Window closed mid-call (abort pending or not abortable): go right after
            self._flush_when_idle = True
            return
        self._flush()

    # ── Dispatch ──────────────────────────────────────────────────────

    def _flush(self) -> None:
        """Process whatever is waiting, unless the human is still typing."""
        if self._slot is None and not self._buffer:
            return

        wait = self._typing_wait()
        if wait > 0:
            if self._ceiling_reached():
                logger.warning(
                    f"Queue {self.channel_id}: emergency ceiling reached, processing despite typing"
                )
            else:
                if self._slot is not None:
                    self._buffer.append(self._slot)
                    self._slot = None
                self._open_batch()
                logger.debug(f"Queue {self.channel_id}: user typing, deferring {wait:.2f}s")
                self._arm("typing", self._clamp(wait))
                return

        forced = self._ceiling_reached()
        if self._slot is not None:
            batch = [self._slot]
            self._slot = None
        else:
            batch = self._buffer
            self._buffer = []
        self._batch_opened_at = None
        self._dispatch(batch, forced=forced)

    def _dispatch(self, batch: list[PendingRequest], forced: bool = False) -> None:
        self._cancel_timer()
        self._in_flight = True
        self._in_flight_batch = batch
        self._flush_when_idle = False
        self._call_abortable = not forced and any(r.is_chat for r in batch)
        self._call = asyncio.create_task(self._process(batch))
        self._runner = asyncio.create_task(self._run(batch, self._call))

    async def _run(self, batch: list[PendingRequest], call: asyncio.Task) -> None:
        try:
            await asyncio.wait({call})
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            self._call = None

        try:
            self._settle(batch, call)
        finally:
            self._in_flight = False
            self._in_flight_batch = []
            self._runner = None
            self._after_call()

    def _settle(self, batch: list[PendingRequest], call: asyncio.Task) -> None:
        if call.cancelled():
            self._requeue(batch)
            return

        error = call.exception()
        if isinstance(error, BackendCancelledError):
            self._requeue(batch)
        elif error is not None:
            logger.error(f"Queue {self.channel_id}: error processing batch of {len(batch)}: {error}")
            for request in batch:
                request.reject(error)
        else:
            response = call.result()
            # Only the most recent message gets the reply; the rest resolve
            # empty so the platform shows one answer per batch.
            for request in batch[:-1]:
                request.resolve("")
            batch[-1].resolve(response)

    def _requeue(self, batch: list[PendingRequest]) -> None:
        logger.info(
            f"Queue {self.channel_id}: batch of {len(batch)} aborted to accommodate "
            f"new messages, re-batching"
        )
        self._buffer[:0] = batch
        self._open_batch()
        if self._timer is None:
            self._arm("batch", self._clamp(self._config.batch_window))

    def _after_call(self) -> None:
        if self._closed:
            return
        if self._flush_when_idle or (self._buffer and self._timer is None):
            self._flush_when_idle = False
            self._flush()

    # ── Backend call ──────────────────────────────────────────────────

    async def _process(self, batch: list[PendingRequest]) -> str:
        """Format, send and interpret one batch. Cancelled on abort."""
        if not self._backend.agent_id:
            logger.error("Error: LETTA_AGENT_ID is not set")
            return ""

        contents = await self._format_batch(batch)
        if not contents:
            logger.info(f"Queue {self.channel_id}: nothing to send for batch of {len(batch)}")
            return ""

        text = combine_batch(contents)
        conversation_id = None
        if self._resolve_conversation is not None:
            conversation_id = await self._resolve_conversation(self.channel_id)

        logger.info(
            f"Queue {self.channel_id}: sending batch of {len(contents)} "
            f"message{'s' if len(contents) != 1 else ''} to agent"
        )
        timeout = self._config.backend_timeout
        try:
            return await asyncio.wait_for(self._stream(text, conversation_id), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise BackendTimeoutError(f"agent call timed out after {timeout}s") from e

    async def _stream(self, text: str, conversation_id: str | None) -> str:
        events = self._backend.stream(text, conversation_id)
        try:
            return await self._interpreter.interpret(events)
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _format_batch(self, batch: list[PendingRequest]) -> list[str]:
        if len(batch) == 1:
            return [await self._formatter.format(batch[0].event)]
        # Heartbeats only make sense alone; inside a batch they add nothing
        return [
            await self._formatter.format(request.event)
            for request in batch
            if not request.is_timer
        ]
