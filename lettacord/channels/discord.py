"""Discord channel implementation using Discord Gateway websocket."""

from __future__ import annotations

import asyncio
import json
import random
from datetime import datetime
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import httpx
import websockets
from loguru import logger

from lettacord.agent.formatter import OriginalMessage
from lettacord.agent.queue_manager import QueueManager
from lettacord.bus.events import AttachmentRef, ChatMessage, MembershipEvent, MessageType
from lettacord.config.schema import DiscordConfig
from lettacord.utils.status import StatusStore

DISCORD_API_BASE = "https://discord.com/api/v10"
MESSAGE_LIMIT = 2000
MANUAL_HEARTBEAT_COMMAND = "!heartbeat"

# MESSAGE_CREATE types that carry user content: DEFAULT and REPLY
_USER_MESSAGE_TYPES = (0, 19)
# Preferred split points, best first
_SPLIT_SEPARATORS = ("\n\n", "\n", ". ", " ")

ManualHeartbeat = Callable[[str], Awaitable[None]]


def chunk_message(content: str, limit: int = MESSAGE_LIMIT) -> list[str]:
    """Split a message into chunks that fit Discord's character limit.

    Cuts at the best separator found in the back three quarters of each
    window, hard-cutting only when none is found.
    """
    if len(content) <= limit:
        return [content]

    chunks: list[str] = []
    remaining = content
    while len(remaining) > limit:
        for sep in _SPLIT_SEPARATORS:
            cut = remaining.rfind(sep, 0, limit)
            if cut > limit // 4:
                cut += len(sep.rstrip())  # keep the period, drop the whitespace
                break
        else:
            cut = limit
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        chunks.append(remaining)
    return [c for c in chunks if c.strip()]


def classify_message(payload: dict[str, Any], bot_user_id: str | None) -> MessageType:
    """DM, then mention, then reply, then generic."""
    if payload.get("guild_id") is None:
        return MessageType.DM
    mentioned = {str(u.get("id")) for u in payload.get("mentions") or []}
    if bot_user_id and bot_user_id in mentioned:
        return MessageType.MENTION
    if payload.get("message_reference"):
        return MessageType.REPLY
    return MessageType.GENERIC


class DiscordChannel:
    """Discord channel using Gateway websocket.

    ``manager`` and ``on_manual_heartbeat`` are attached after construction
    because the queue manager's interpreter needs this channel's presence
    setter first.
    """

    name = "discord"
    reply_delay: tuple[float, float] = (1.0, 3.0)  # simulated typing before a reply

    def __init__(
        self,
        config: DiscordConfig,
        status_store: StatusStore | None = None,
        manager: QueueManager | None = None,
        http: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.manager = manager
        self.on_manual_heartbeat: ManualHeartbeat | None = None
        self._status_store = status_store
        self._http = http
        self._owns_http = http is None
        self._running = False
        self._ws: Any = None
        self._seq: int | None = None
        self._session_id: str | None = None  # For RESUME
        self._resume_url: str | None = None  # Gateway URL for resume
        self._heartbeat_task: asyncio.Task | None = None
        self._bot_user_id: str | None = None
        self._consecutive_failures: int = 0  # For exponential backoff
        self._presence: str | None = None
        self._guild_names: dict[str, str] = {}
        self._channel_names: dict[str, str] = {}
        self._channel_guilds: dict[str, str] = {}
        self._typing_timeouts: dict[tuple[str, str], asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the Discord gateway connection."""
        if not self.config.token:
            logger.error("Discord bot token not configured")
            return

        self._running = True
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=30.0)

        while self._running:
            try:
                url = self._resume_url or self.config.gateway_url
                logger.info("Connecting to Discord gateway...")
                async with websockets.connect(url) as ws:
                    self._ws = ws
                    self._consecutive_failures = 0
                    await self._gateway_loop()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._consecutive_failures += 1
                # Exponential backoff: 5s, 10s, 20s, 40s, 60s max
                delay = min(5 * (2 ** (self._consecutive_failures - 1)), 60)
                logger.warning(f"Discord gateway error: {e}")
                if self._running:
                    logger.info(
                        f"Reconnecting in {delay}s "
                        f"(attempt {self._consecutive_failures})..."
                    )
                    await asyncio.sleep(delay)

    async def stop(self) -> None:
        """Stop the Discord channel."""
        self._running = False
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        for task in [*self._typing_timeouts.values(), *self._tasks]:
            task.cancel()
        self._typing_timeouts.clear()
        self._tasks.clear()
        if self._ws:
            await self._ws.close()
            self._ws = None
        if self._http and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Gateway ───────────────────────────────────────────────────────

    async def _gateway_loop(self) -> None:
        """Main gateway loop: identify, heartbeat, dispatch events."""
        if not self._ws:
            return

        async for raw in self._ws:
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON from Discord gateway: {raw[:100]}")
                continue

            op = data.get("op")
            seq = data.get("s")
            if seq is not None:
                self._seq = seq

            if op == 10:
                interval_ms = (data.get("d") or {}).get("heartbeat_interval", 45000)
                await self._start_heartbeat(interval_ms / 1000)
                if self._session_id and self._seq is not None:
                    await self._resume()
                else:
                    await self._identify()
            elif op == 0:
                await self._dispatch(data.get("t"), data.get("d") or {})
            elif op == 7:
                # RECONNECT: keep the session for RESUME
                logger.info("Discord gateway requested reconnect")
                break
            elif op == 9:
                resumable = data.get("d") is True
                if not resumable:
                    logger.warning("Discord gateway invalid session (not resumable)")
                    self._session_id = None
                    self._resume_url = None
                    self._seq = None
                else:
                    logger.info("Discord gateway invalid session (resumable)")
                break
            elif op == 1:
                await self._ws.send(json.dumps({"op": 1, "d": self._seq}))
            elif op != 11:
                logger.debug(f"Discord gateway unknown op={op}")

    async def _dispatch(self, event_type: str | None, payload: dict[str, Any]) -> None:
        if event_type == "READY":
            self._session_id = payload.get("session_id")
            self._resume_url = payload.get("resume_gateway_url")
            self._bot_user_id = (payload.get("user") or {}).get("id")
            logger.info(f"Discord gateway READY (bot user ID: {self._bot_user_id})")
            await self._restore_presence()
        elif event_type == "RESUMED":
            logger.info("Discord gateway RESUMED successfully")
        elif event_type == "GUILD_CREATE":
            self._cache_guild(payload)
        elif event_type == "CHANNEL_CREATE" or event_type == "CHANNEL_UPDATE":
            self._cache_channel(payload, payload.get("guild_id"))
        elif event_type == "MESSAGE_CREATE":
            await self._handle_message_create(payload)
        elif event_type == "TYPING_START":
            self._handle_typing_start(payload)
        elif event_type == "GUILD_MEMBER_ADD":
            self._handle_member_add(payload)
        else:
            logger.debug(f"Discord gateway event: t={event_type}")

    async def _identify(self) -> None:
        """Send IDENTIFY payload."""
        if not self._ws:
            return
        identify = {
            "op": 2,
            "d": {
                "token": self.config.token,
                "intents": self.config.intents,
                "properties": {"os": "lettacord", "browser": "lettacord", "device": "lettacord"},
            },
        }
        logger.info(f"Discord IDENTIFY sent with intents={self.config.intents}")
        await self._ws.send(json.dumps(identify))

    async def _resume(self) -> None:
        """Send RESUME payload to reconnect without losing events."""
        if not self._ws:
            return
        resume = {
            "op": 6,
            "d": {"token": self.config.token, "session_id": self._session_id, "seq": self._seq},
        }
        logger.info(f"Discord RESUME sent (session={self._session_id}, seq={self._seq})")
        await self._ws.send(json.dumps(resume))

    async def _start_heartbeat(self, interval_s: float) -> None:
        """Start or restart the heartbeat loop."""
        if self._heartbeat_task:
            self._heartbeat_task.cancel()

        async def heartbeat_loop() -> None:
            while self._running and self._ws:
                try:
                    await self._ws.send(json.dumps({"op": 1, "d": self._seq}))
                except Exception as e:
                    logger.warning(f"Discord heartbeat failed: {e}")
                    break
                await asyncio.sleep(interval_s)

        self._heartbeat_task = asyncio.create_task(heartbeat_loop())

    # ── Presence ──────────────────────────────────────────────────────

    async def set_presence(self, text: str) -> None:
        """Show ``text`` as the bot's custom status."""
        self._presence = text
        if not self._ws:
            logger.warning("Discord gateway not connected, status will apply on connect")
            return
        payload = {
            "op": 3,
            "d": {
                "since": None,
                "activities": [{"name": "Custom Status", "type": 4, "state": text}],
                "status": "online",
                "afk": False,
            },
        }
        await self._ws.send(json.dumps(payload))
        logger.info(f"Discord status set: {text}")

    async def _restore_presence(self) -> None:
        text = self._presence
        if text is None and self._status_store is not None:
            text = await self._status_store.load()
        if not text:
            return
        try:
            await self.set_presence(text)
            logger.info(f"Restored Discord status: {text}")
        except Exception as e:
            logger.error(f"Failed to restore Discord status: {e}")

    # ── Guild cache ───────────────────────────────────────────────────

    def _cache_guild(self, payload: dict[str, Any]) -> None:
        guild_id = str(payload.get("id", ""))
        self._guild_names[guild_id] = payload.get("name") or guild_id
        for channel in payload.get("channels") or []:
            self._cache_channel(channel, guild_id)
        logger.debug(f"Cached guild {self._guild_names[guild_id]} ({guild_id})")

    def _cache_channel(self, channel: dict[str, Any], guild_id: str | None) -> None:
        channel_id = str(channel.get("id", ""))
        if not channel_id:
            return
        self._channel_names[channel_id] = channel.get("name") or channel_id
        if guild_id:
            self._channel_guilds[channel_id] = str(guild_id)

    def channel_name(self, channel_id: str) -> str:
        return self._channel_names.get(channel_id, channel_id)

    # ── Inbound ───────────────────────────────────────────────────────

    def _ignored_channel(self, channel_id: str) -> bool:
        return bool(self.config.ignore_channel_id) and channel_id == self.config.ignore_channel_id

    async def _handle_message_create(self, payload: dict[str, Any]) -> None:
        author = payload.get("author") or {}
        sender_id = str(author.get("id", ""))
        channel_id = str(payload.get("channel_id", ""))
        content = payload.get("content") or ""

        if not sender_id or sender_id == self._bot_user_id:
            return
        if self._ignored_channel(channel_id):
            logger.info(f"Ignoring message in channel {channel_id}")
            return
        if payload.get("type", 0) not in _USER_MESSAGE_TYPES:
            logger.info("Received system message, ignoring.")
            return
        if not content and payload.get("sticker_items"):
            logger.info("Ignoring sticker message.")
            return

        if content.strip().lower() == MANUAL_HEARTBEAT_COMMAND:
            logger.info(
                f"Manual heartbeat command triggered by {author.get('username', '?')} ({sender_id})"
            )
            self._spawn(self._manual_heartbeat(channel_id, str(payload.get("id", ""))))
            return

        if self.manager is None:
            logger.warning("Discord: no queue manager attached, dropping message")
            return

        message = self._chat_message(payload)
        logger.debug(
            f"Discord {message.message_type.value} from {message.display_name} in {channel_id}: "
            f"{content[:80]!r}"
        )
        response = self.manager.route_chat_message(message)
        self._spawn(self._deliver(response, channel_id))

    def _chat_message(self, payload: dict[str, Any]) -> ChatMessage:
        author = payload.get("author") or {}
        channel_id = str(payload.get("channel_id", ""))
        reference = payload.get("message_reference") or {}
        attachments = tuple(
            AttachmentRef(
                name=a.get("filename") or "attachment",
                url=a.get("url") or "",
                size=int(a.get("size") or 0),
                content_type=a.get("content_type"),
            )
            for a in payload.get("attachments") or []
        )
        return ChatMessage(
            channel_id=channel_id,
            sender_id=str(author.get("id", "")),
            sender_name=author.get("global_name") or author.get("username") or str(author.get("id", "")),
            content=payload.get("content") or "",
            message_type=classify_message(payload, self._bot_user_id),
            message_id=str(payload.get("id", "")),
            channel_name=self.channel_name(channel_id),
            sender_nickname=(payload.get("member") or {}).get("nick"),
            attachments=attachments,
            reply_to=reference.get("message_id"),
        )

    def _handle_typing_start(self, payload: dict[str, Any]) -> None:
        channel_id = str(payload.get("channel_id", ""))
        user_id = str(payload.get("user_id", ""))
        if not user_id or user_id == self._bot_user_id or self._ignored_channel(channel_id):
            return
        if self.manager is None:
            return

        self.manager.on_typing_start(channel_id, user_id)

        # Discord never sends a typing stop; the indicator lapses after ~10s
        key = (channel_id, user_id)
        existing = self._typing_timeouts.pop(key, None)
        if existing:
            existing.cancel()
        self._typing_timeouts[key] = asyncio.create_task(self._typing_timeout(channel_id, user_id))

    async def _typing_timeout(self, channel_id: str, user_id: str) -> None:
        await asyncio.sleep(self.config.typing_timeout)
        self._typing_timeouts.pop((channel_id, user_id), None)
        logger.debug(f"User {user_id} stopped typing in channel {channel_id} (timeout)")
        if self.manager is not None:
            self.manager.on_typing_stop(channel_id, user_id)

    def _handle_member_add(self, payload: dict[str, Any]) -> None:
        if self.manager is None:
            return
        user = payload.get("user") or {}
        guild_id = str(payload.get("guild_id", ""))
        joined_at = None
        if payload.get("joined_at"):
            try:
                joined_at = datetime.fromisoformat(payload["joined_at"])
            except ValueError:
                logger.warning(f"Unparseable joined_at: {payload['joined_at']}")
        event = MembershipEvent(
            member_id=str(user.get("id", "")),
            display_name=payload.get("nick") or user.get("global_name") or user.get("username") or "",
            guild_id=guild_id,
            guild_name=self._guild_names.get(guild_id, guild_id),
            joined_at=joined_at,
        )
        logger.info(f"New member joined: {user.get('username', '?')} ({event.member_id})")
        response = self.manager.route_membership(event)
        self._spawn(self._deliver(response, None))

    async def _manual_heartbeat(self, channel_id: str, message_id: str) -> None:
        try:
            await self.trigger_typing(channel_id)
            if self.on_manual_heartbeat is None:
                raise RuntimeError("Manual heartbeat is not configured")
            await self.on_manual_heartbeat(channel_id)
            await self.react(channel_id, message_id, "❤️")
        except Exception as e:
            logger.error(f"Failed to execute manual heartbeat: {e}")
            try:
                await self.react(channel_id, message_id, "❌")
            except Exception as reaction_error:
                logger.error(f"Failed to react to manual heartbeat command: {reaction_error}")

    # ── Outbound ──────────────────────────────────────────────────────

    async def _deliver(self, response: asyncio.Future[str], channel_id: str | None) -> None:
        """Wait for the queued reply and post it; channel None means the default channel."""
        try:
            text = await response
        except Exception as e:
            logger.error(f"Request failed: {e}")
            return
        if not text:
            return
        await self.send_reply(text, channel_id)

    async def send_reply(self, text: str, channel_id: str | None = None) -> None:
        """Post ``text`` with a short typing pause, falling back to the default channel."""
        target = channel_id or self.config.channel_id
        if not target:
            logger.error("No target channel available for response")
            return

        try:
            await self.trigger_typing(target)
        except Exception as e:
            logger.error(f"Failed to send typing indicator: {e}")
        await asyncio.sleep(random.uniform(*self.reply_delay))

        try:
            await self.send(target, text)
        except Exception as e:
            logger.error(f"Failed to send message to channel {target}: {e}")
            fallback = self.config.channel_id
            if not fallback or fallback == target or target not in self._channel_guilds:
                return
            try:
                await self.send(fallback, text)
                logger.info("Successfully sent message to default channel as fallback")
            except Exception as fallback_error:
                logger.error(f"Failed to send message to default channel as fallback: {fallback_error}")

    async def send(self, channel_id: str, content: str) -> None:
        """Send a message through the REST API, split at the length limit."""
        chunks = chunk_message(content)
        for i, chunk in enumerate(chunks):
            await self._request("POST", f"/channels/{channel_id}/messages", json={"content": chunk})
            if len(chunks) > 1 and i < len(chunks) - 1:
                await asyncio.sleep(0.5)

    async def trigger_typing(self, channel_id: str) -> None:
        await self._request("POST", f"/channels/{channel_id}/typing")

    async def react(self, channel_id: str, message_id: str, emoji: str) -> None:
        await self._request(
            "PUT", f"/channels/{channel_id}/messages/{message_id}/reactions/{quote(emoji)}/@me",
        )

    async def fetch_original(self, channel_id: str, message_id: str) -> OriginalMessage | None:
        """Look up the message a reply points at."""
        response = await self._request("GET", f"/channels/{channel_id}/messages/{message_id}")
        data = response.json()
        author = data.get("author") or {}
        return OriginalMessage(
            sender_id=str(author.get("id", "")),
            sender_name=author.get("global_name") or author.get("username") or "",
            content=data.get("content") or "",
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._http is None:
            raise RuntimeError("Discord HTTP client not initialized")
        headers = {"Authorization": f"Bot {self.config.token}"}
        for attempt in range(3):
            response = await self._http.request(
                method, f"{DISCORD_API_BASE}{path}", headers=headers, **kwargs,
            )
            if response.status_code == 429 and attempt < 2:
                retry_after = float(response.json().get("retry_after", 1.0))
                logger.warning(f"Discord rate limited, retrying in {retry_after}s")
                await asyncio.sleep(retry_after)
                continue
            response.raise_for_status()
            return response
        raise RuntimeError("unreachable")
