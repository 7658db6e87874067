"""Wire configuration, backend, queues and Discord together."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import httpx
from loguru import logger

from lettacord.agent.formatter import MessageFormatter
from lettacord.agent.queue_manager import QueueManager
from lettacord.agent.stream import ResponseStreamInterpreter
from lettacord.channels.discord import DiscordChannel
from lettacord.config.schema import Config
from lettacord.heartbeat import HeartbeatScheduler
from lettacord.media import AttachmentDescriber, LinkDescriber
from lettacord.providers.letta import LettaStreamClient
from lettacord.session.conversations import ConversationMappings
from lettacord.utils.status import StatusStore


@dataclass
class App:
    config: Config
    http: httpx.AsyncClient
    backend: LettaStreamClient
    manager: QueueManager
    interpreter: ResponseStreamInterpreter
    channel: DiscordChannel
    heartbeat: HeartbeatScheduler

    async def run(self) -> None:
        self.heartbeat.start()
        try:
            await self.channel.start()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        logger.info("Shutting down")
        await self.heartbeat.stop()
        await self.manager.close()
        await self.interpreter.drain()
        await self.channel.stop()
        await self.backend.aclose()
        await self.http.aclose()


def build_app(config: Config) -> App:
    """Construct every component; nothing touches the network yet."""
    http = httpx.AsyncClient(timeout=config.media.fetch_timeout, follow_redirects=True)
    backend = LettaStreamClient(
        agent_id=config.letta.agent_id,
        token=config.letta.token,
        base_url=config.letta.base_url,
        timeout=config.queue.backend_timeout,
    )

    status_store = StatusStore(config.data_dir)
    channel = DiscordChannel(config.discord, status_store=status_store, http=http)

    resolver = None
    if config.letta.use_conversations:
        mappings = ConversationMappings(config.data_dir, backend.create_conversation)
        mappings.load()
        resolver = mappings.get_or_create
        logger.info("Per-channel Letta conversations enabled")

    formatter = MessageFormatter(
        describe_attachments=AttachmentDescriber(http, config.media.elevenlabs_api_key),
        describe_links=LinkDescriber(http),
        fetch_original=channel.fetch_original,
    )
    interpreter = ResponseStreamInterpreter(
        set_presence=channel.set_presence,
        persist_presence=status_store.save,
    )
    manager = QueueManager(
        backend,
        formatter=formatter,
        interpreter=interpreter,
        config=config.queue,
        conversation_resolver=resolver,
    )
    channel.manager = manager

    heartbeat = HeartbeatScheduler(config.heartbeat, manager, deliver=channel.send_reply)
    channel.on_manual_heartbeat = heartbeat.fire_manual

    return App(
        config=config,
        http=http,
        backend=backend,
        manager=manager,
        interpreter=interpreter,
        channel=channel,
        heartbeat=heartbeat,
    )


async def run(config: Config) -> None:
    app = build_app(config)
    try:
        await app.run()
    except asyncio.CancelledError:
        logger.info("Cancelled")
