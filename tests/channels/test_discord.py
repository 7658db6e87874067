"""Tests for DiscordChannel — gateway handling, routing, REST delivery."""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from lettacord.agent.formatter import OriginalMessage
from lettacord.bus.events import MessageType
from lettacord.channels.discord import DiscordChannel, chunk_message, classify_message
from lettacord.config.schema import DiscordConfig
from lettacord.utils.status import StatusStore


# ── Helpers ──────────────────────────────────────────────────────────────


BOT_ID = "999"


class FakeWS:
    """Gateway socket stand-in: replays frames, records what was sent."""

    def __init__(self, frames=()):
        self.frames = [json.dumps(f) for f in frames]
        self.sent: list[dict] = []

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        pass

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.frames:
            yield frame


class Rest:
    """MockTransport handler recording Discord REST calls."""

    def __init__(self, fail_channels=()):
        self.calls: list[tuple[str, str, dict | None]] = []
        self.fail_channels = set(fail_channels)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.raw_path.decode().removeprefix("/api/v10")
        self.calls.append((request.method, path, body))
        channel = path.split("/")[2] if path.startswith("/channels/") else ""
        if channel in self.fail_channels and path.endswith("/messages"):
            return httpx.Response(403, json={"message": "Missing Access"})
        if request.method == "GET":
            return httpx.Response(200, json={
                "id": "555",
                "content": "the original",
                "author": {"id": "7", "username": "bo", "global_name": "Bo"},
            })
        return httpx.Response(200, json={})

    def posts(self, suffix: str = "/messages") -> list[tuple[str, dict | None]]:
        return [(p, b) for m, p, b in self.calls if m == "POST" and p.endswith(suffix)]


def resolved(value: str) -> asyncio.Future:
    fut = asyncio.get_running_loop().create_future()
    fut.set_result(value)
    return fut


def make_manager(reply: str = "hi back") -> MagicMock:
    manager = MagicMock()
    manager.route_chat_message = MagicMock(side_effect=lambda m: resolved(reply))
    manager.route_membership = MagicMock(side_effect=lambda e: resolved("welcome!"))
    return manager


def make_channel(rest: Rest | None = None, manager=None, status_store=None, **config) -> DiscordChannel:
    cfg = DiscordConfig(token="bot-token", channel_id="1", typing_timeout=0.05, **config)
    http = httpx.AsyncClient(transport=httpx.MockTransport(rest or Rest()))
    channel = DiscordChannel(cfg, status_store=status_store, manager=manager, http=http)
    channel.reply_delay = (0.0, 0.0)
    channel._bot_user_id = BOT_ID
    return channel


def message_payload(content: str = "hello", **overrides) -> dict:
    payload = {
        "id": "m1",
        "type": 0,
        "channel_id": "100",
        "guild_id": "g1",
        "content": content,
        "author": {"id": "42", "username": "ash", "global_name": "Ash"},
        "member": {"nick": None},
        "mentions": [],
        "attachments": [],
    }
    payload.update(overrides)
    return payload


async def drain(channel: DiscordChannel) -> None:
    while channel._tasks:
        await asyncio.gather(*list(channel._tasks))


# ── Pure helpers ─────────────────────────────────────────────────────────


class TestChunking:
    def test_short_message_untouched(self):
        assert chunk_message("hi") == ["hi"]

    def test_splits_on_paragraphs(self):
        text = "a" * 1500 + "\n\n" + "b" * 1500
        assert chunk_message(text) == ["a" * 1500, "b" * 1500]

    def test_sentence_boundary_keeps_period(self):
        text = "x" * 1200 + ". " + "y" * 1200
        chunks = chunk_message(text)
        assert chunks[0].endswith(".")
        assert chunks[1] == "y" * 1200

    def test_hard_cut(self):
        chunks = chunk_message("z" * 4500)
        assert [len(c) for c in chunks] == [2000, 2000, 500]


class TestClassify:
    def test_dm(self):
        assert classify_message(message_payload(guild_id=None), BOT_ID) is MessageType.DM

    def test_mention_beats_reply(self):
        payload = message_payload(mentions=[{"id": BOT_ID}], message_reference={"message_id": "5"})
        assert classify_message(payload, BOT_ID) is MessageType.MENTION

    def test_reply(self):
        payload = message_payload(message_reference={"message_id": "5"})
        assert classify_message(payload, BOT_ID) is MessageType.REPLY

    def test_generic(self):
        assert classify_message(message_payload(), BOT_ID) is MessageType.GENERIC


# ── Gateway ──────────────────────────────────────────────────────────────


class TestGateway:
    @pytest.mark.asyncio
    async def test_hello_identifies_and_ready_restores_status(self, tmp_path: Path):
        store = StatusStore(tmp_path)
        await store.save("on a walk")
        channel = make_channel(status_store=store)
        channel._bot_user_id = None
        ws = FakeWS([
            {"op": 10, "d": {"heartbeat_interval": 45000}},
            {"op": 0, "t": "READY", "s": 1, "d": {
                "session_id": "sess", "resume_gateway_url": "wss://resume", "user": {"id": BOT_ID},
            }},
        ])
        channel._ws = ws

        await channel._gateway_loop()

        assert ws.sent[0]["op"] == 2
        assert ws.sent[0]["d"]["token"] == "bot-token"
        assert channel._bot_user_id == BOT_ID
        assert channel._session_id == "sess"
        presence = ws.sent[-1]
        assert presence["op"] == 3
        assert presence["d"]["activities"][0] == {"name": "Custom Status", "type": 4, "state": "on a walk"}
        await channel.stop()

    @pytest.mark.asyncio
    async def test_resume_when_session_known(self):
        channel = make_channel()
        channel._session_id = "sess"
        channel._seq = 41
        ws = FakeWS([{"op": 10, "d": {"heartbeat_interval": 45000}}])
        channel._ws = ws

        await channel._gateway_loop()

        assert ws.sent[0] == {"op": 6, "d": {"token": "bot-token", "session_id": "sess", "seq": 41}}
        await channel.stop()

    @pytest.mark.asyncio
    async def test_invalid_session_clears_state(self):
        channel = make_channel()
        channel._session_id = "sess"
        channel._seq = 3
        channel._ws = FakeWS([{"op": 9, "d": False}])

        await channel._gateway_loop()

        assert channel._session_id is None
        assert channel._seq is None

    @pytest.mark.asyncio
    async def test_guild_create_caches_names(self):
        channel = make_channel()
        channel._ws = FakeWS([{"op": 0, "t": "GUILD_CREATE", "s": 2, "d": {
            "id": "g1", "name": "Zion", "channels": [{"id": "100", "name": "general"}],
        }}])
        await channel._gateway_loop()
        assert channel.channel_name("100") == "general"
        assert channel._guild_names["g1"] == "Zion"


# ── Inbound messages ─────────────────────────────────────────────────────


class TestMessageCreate:
    @pytest.mark.asyncio
    async def test_routes_and_replies(self):
        rest = Rest()
        manager = make_manager()
        channel = make_channel(rest, manager)
        channel._channel_names["100"] = "general"

        await channel._handle_message_create(message_payload("hello", member={"nick": "Ashy"}))
        await drain(channel)

        msg = manager.route_chat_message.call_args.args[0]
        assert msg.channel_id == "100"
        assert msg.sender_name == "Ash"
        assert msg.display_name == "Ashy"
        assert msg.channel_name == "general"
        assert msg.message_type is MessageType.GENERIC
        assert rest.posts() == [("/channels/100/messages", {"content": "hi back"})]
        assert rest.posts("/typing") == [("/channels/100/typing", None)]

    @pytest.mark.asyncio
    async def test_attachments_and_reply_reference(self):
        manager = make_manager()
        channel = make_channel(manager=manager)
        payload = message_payload(
            "look",
            message_reference={"message_id": "555"},
            attachments=[{"filename": "cat.png", "url": "https://cdn/cat.png", "size": 2048, "content_type": "image/png"}],
        )

        await channel._handle_message_create(payload)
        await drain(channel)

        msg = manager.route_chat_message.call_args.args[0]
        assert msg.message_type is MessageType.REPLY
        assert msg.reply_to == "555"
        assert msg.attachments[0].name == "cat.png"
        assert msg.attachments[0].size == 2048

    @pytest.mark.asyncio
    async def test_empty_reply_sends_nothing(self):
        rest = Rest()
        channel = make_channel(rest, make_manager(reply=""))
        await channel._handle_message_create(message_payload())
        await drain(channel)
        assert rest.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"author": {"id": BOT_ID, "username": "me"}},
        {"channel_id": "666"},
        {"type": 7},
        {"content": "", "sticker_items": [{"id": "s1"}]},
    ])
    async def test_ignored(self, overrides):
        manager = make_manager()
        channel = make_channel(manager=manager, ignore_channel_id="666")
        await channel._handle_message_create(message_payload(**overrides))
        manager.route_chat_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_manual_heartbeat_reacts_heart(self):
        rest = Rest()
        manager = make_manager()
        channel = make_channel(rest, manager)
        channel.on_manual_heartbeat = AsyncMock()

        await channel._handle_message_create(message_payload("  !Heartbeat "))
        await drain(channel)

        channel.on_manual_heartbeat.assert_awaited_once_with("100")
        manager.route_chat_message.assert_not_called()
        puts = [p for m, p, _ in rest.calls if m == "PUT"]
        assert puts == ["/channels/100/messages/m1/reactions/%E2%9D%A4%EF%B8%8F/@me"]

    @pytest.mark.asyncio
    async def test_manual_heartbeat_failure_reacts_cross(self):
        rest = Rest()
        channel = make_channel(rest, make_manager())
        channel.on_manual_heartbeat = AsyncMock(side_effect=RuntimeError("agent down"))

        await channel._handle_message_create(message_payload("!heartbeat"))
        await drain(channel)

        puts = [p for m, p, _ in rest.calls if m == "PUT"]
        assert puts == ["/channels/100/messages/m1/reactions/%E2%9D%8C/@me"]


class TestTyping:
    @pytest.mark.asyncio
    async def test_start_then_timeout_stop(self):
        manager = make_manager()
        channel = make_channel(manager=manager)

        channel._handle_typing_start({"channel_id": "100", "user_id": "42"})
        manager.on_typing_start.assert_called_once_with("100", "42")
        manager.on_typing_stop.assert_not_called()

        await asyncio.sleep(0.15)
        manager.on_typing_stop.assert_called_once_with("100", "42")

    @pytest.mark.asyncio
    async def test_repeat_start_extends_timeout(self):
        manager = make_manager()
        channel = make_channel(manager=manager)

        channel._handle_typing_start({"channel_id": "100", "user_id": "42"})
        await asyncio.sleep(0.03)
        channel._handle_typing_start({"channel_id": "100", "user_id": "42"})
        await asyncio.sleep(0.03)
        manager.on_typing_stop.assert_not_called()

        await asyncio.sleep(0.1)
        manager.on_typing_stop.assert_called_once()

    @pytest.mark.asyncio
    async def test_own_typing_ignored(self):
        manager = make_manager()
        channel = make_channel(manager=manager)
        channel._handle_typing_start({"channel_id": "100", "user_id": BOT_ID})
        manager.on_typing_start.assert_not_called()


class TestMemberAdd:
    @pytest.mark.asyncio
    async def test_routes_membership_and_replies_in_default_channel(self):
        rest = Rest()
        manager = make_manager()
        channel = make_channel(rest, manager)
        channel._guild_names["g1"] = "Zion"

        channel._handle_member_add({
            "guild_id": "g1",
            "user": {"id": "9", "username": "neo"},
            "joined_at": "2024-05-01T12:00:00+00:00",
        })
        await drain(channel)

        event = manager.route_membership.call_args.args[0]
        assert event.guild_name == "Zion"
        assert event.display_name == "neo"
        assert event.joined_at.year == 2024
        assert rest.posts() == [("/channels/1/messages", {"content": "welcome!"})]


# ── Outbound ─────────────────────────────────────────────────────────────


class TestOutbound:
    @pytest.mark.asyncio
    async def test_long_reply_is_split(self):
        rest = Rest()
        channel = make_channel(rest)
        await channel.send("100", "a" * 1500 + "\n\n" + "b" * 1500)
        assert [len(b["content"]) for _, b in rest.posts()] == [1500, 1500]

    @pytest.mark.asyncio
    async def test_fallback_to_default_channel(self):
        rest = Rest(fail_channels={"100"})
        channel = make_channel(rest)
        channel._channel_guilds["100"] = "g1"

        await channel.send_reply("hello", "100")

        assert [p for p, _ in rest.posts()] == ["/channels/100/messages", "/channels/1/messages"]

    @pytest.mark.asyncio
    async def test_no_fallback_for_dm(self):
        rest = Rest(fail_channels={"100"})
        channel = make_channel(rest)
        await channel.send_reply("hello", "100")
        assert [p for p, _ in rest.posts()] == ["/channels/100/messages"]

    @pytest.mark.asyncio
    async def test_fetch_original(self):
        channel = make_channel()
        original = await channel.fetch_original("100", "555")
        assert original == OriginalMessage(sender_id="7", sender_name="Bo", content="the original")

    @pytest.mark.asyncio
    async def test_presence_before_connect_is_kept(self):
        channel = make_channel()
        await channel.set_presence("busy")
        ws = FakeWS()
        channel._ws = ws
        await channel._restore_presence()
        assert ws.sent[0]["d"]["activities"][0]["state"] == "busy"
