"""Random autonomous heartbeat.

Every so often the agent gets a turn nobody asked for: a timer event goes
through the system queue and any reply is posted to the default channel.
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable

from loguru import logger

from lettacord.agent.queue_manager import QueueManager
from lettacord.config.schema import HeartbeatConfig

Deliver = Callable[[str, "str | None"], Awaitable[None]]


class HeartbeatScheduler:
    """Sleeps a random number of minutes, then maybe fires a heartbeat."""

    def __init__(
        self,
        config: HeartbeatConfig,
        manager: QueueManager,
        deliver: Deliver,
        rng: random.Random | None = None,
    ):
        self.config = config
        self._manager = manager
        self._deliver = deliver
        self._rng = rng or random.Random()
        self._running = False
        self._task: asyncio.Task | None = None

    def next_delay(self) -> float:
        """Seconds until the next roll: a whole number of minutes, at least one."""
        upper = max(1, self.config.interval_minutes - 1)
        return self._rng.randint(1, upper) * 60.0

    def start(self) -> None:
        if not self.config.enabled:
            logger.info("Timer feature is disabled.")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            try:
                delay = self.next_delay()
                logger.info(f"⏰ Timer scheduled to fire in {delay / 60:.0f} minutes")
                await asyncio.sleep(delay)
                await self.tick()
                await asyncio.sleep(1)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Heartbeat timer error: {e}")

    async def tick(self) -> bool:
        """Roll against the firing probability; returns whether it fired."""
        probability = self.config.firing_probability
        if self._rng.random() >= probability:
            logger.info(f"⏰ Random event not triggered ({(1 - probability) * 100:.0f}% chance)")
            return False
        logger.info(f"⏰ Random event triggered ({probability * 100:.0f}% chance)")
        await self._fire("timer", None)
        return True

    async def fire_manual(self, channel_id: str | None = None) -> None:
        """Fire right away; the reply goes to ``channel_id`` or the default channel.

        Raises whatever the backend call raised so the caller can report it.
        """
        await self._fire("manual", channel_id)

    async def _fire(self, reason: str, channel_id: str | None) -> None:
        response = await self._manager.route_timer(reason)
        if response:
            await self._deliver(response, channel_id)
            logger.info(f"Heartbeat reply delivered: {response[:80]}")
        else:
            logger.info("Heartbeat produced no reply")
