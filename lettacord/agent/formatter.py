"""Turn inbound events into the text payload sent to the agent.

Each chat message becomes one bracketed line naming the sender (nickname
plus stable id) and, where it applies, the channel. System events carry an
explicit [EVENT] marker so the agent can tell them apart from humans.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from loguru import logger

from lettacord.bus.events import (
    AttachmentRef,
    ChatMessage,
    InboundEvent,
    MembershipEvent,
    MessageType,
    TimerHeartbeat,
)

REPLY_EXCERPT_LIMIT = 100

HEARTBEAT_TEXT = (
    "[EVENT] This is an automated timed heartbeat (visible to yourself only). "
    "Use this event to send a message, to set a Discord status, to reflect on recent "
    "events, or anything else. It's up to you! Consider though that this is an "
    "opportunity for you to think for yourself - since your circuit will not be "
    "activated until the next automated/timed heartbeat or incoming message event."
)


@dataclass(frozen=True)
class OriginalMessage:
    """The message a reply points at."""
    sender_id: str
    sender_name: str
    content: str


AttachmentDescriber = Callable[[Sequence[AttachmentRef]], Awaitable[str]]
LinkDescriber = Callable[[str], Awaitable[str]]
OriginalFetcher = Callable[[str, str], Awaitable["OriginalMessage | None"]]


def truncate_message(message: str, max_length: int) -> str:
    """Cap ``message`` at ``max_length`` characters, ellipsis included."""
    if len(message) > max_length:
        return message[: max_length - 3] + "..."
    return message


def sender_receipt(name: str, sender_id: str) -> str:
    return f"{name} (id={sender_id})"


def format_member_join(event: MembershipEvent) -> str:
    joined_at = event.joined_at.isoformat() if event.joined_at else "unknown"
    return (
        f'[EVENT] A new member has joined the Discord server "{event.guild_name}": '
        f"{sender_receipt(event.display_name, event.member_id)}. They joined at {joined_at}."
    )


def combine_batch(contents: list[str]) -> str:
    """Join formatted texts; more than one gets the batch marker."""
    if len(contents) == 1:
        return contents[0]
    return (
        f"[BATCH: {len(contents)} messages received in quick succession]\n\n"
        + "\n\n".join(contents)
    )


async def _no_description(_: object) -> str:
    return ""


async def _no_original(_channel_id: str, _message_id: str) -> None:
    return None


class MessageFormatter:
    """Formats events, pulling enrichment from the injected collaborators.

    Collaborator failures never propagate: a failed describer contributes
    nothing and a failed reply lookup drops the quoted excerpt.
    """

    def __init__(
        self,
        describe_attachments: AttachmentDescriber | None = None,
        describe_links: LinkDescriber | None = None,
        fetch_original: OriginalFetcher | None = None,
    ):
        self._describe_attachments = describe_attachments or _no_description
        self._describe_links = describe_links or _no_description
        self._fetch_original = fetch_original or _no_original

    async def format(self, event: InboundEvent) -> str:
        if isinstance(event, ChatMessage):
            return await self.format_chat(event)
        if isinstance(event, MembershipEvent):
            return format_member_join(event)
        if isinstance(event, TimerHeartbeat):
            return HEARTBEAT_TEXT
        raise TypeError(f"Unsupported event type: {type(event).__name__}")

    async def format_chat(self, msg: ChatMessage) -> str:
        receipt = sender_receipt(msg.display_name, msg.sender_id)
        channel = msg.channel_name

        original = ""
        if msg.message_type is MessageType.REPLY and msg.reply_to:
            original = await self._quote_original(msg)

        links = await self._safe_describe(self._describe_links, msg.content, "links")
        attachments = ""
        if msg.attachments:
            attachments = await self._safe_describe(
                self._describe_attachments, msg.attachments, "attachments",
            )
        body = f"{msg.content}{links}{attachments}"

        if msg.message_type is MessageType.DM:
            return f"[{receipt} sent you a direct message] {body}"
        if msg.message_type is MessageType.MENTION:
            return f"[{receipt} sent a message mentioning you in channel {channel}] {body}"
        if msg.message_type is MessageType.REPLY:
            if original:
                return f"[{receipt} replied to message: {original} in channel {channel}] {body}"
            return f"[{receipt} replied to a message in channel {channel}] {body}"
        return f"[{receipt} sent a message to channel {channel}] {body}"

    async def _quote_original(self, msg: ChatMessage) -> str:
        try:
            original = await self._fetch_original(msg.channel_id, msg.reply_to or "")
        except Exception as e:
            logger.warning(f"Could not fetch replied-to message {msg.reply_to}: {e}")
            return ""
        if original is None:
            return ""
        excerpt = truncate_message(original.content, REPLY_EXCERPT_LIMIT)
        return f"{sender_receipt(original.sender_name, original.sender_id)}: {excerpt}"

    @staticmethod
    async def _safe_describe(describer, value, what: str) -> str:
        try:
            return await describer(value) or ""
        except Exception as e:
            logger.error(f"Failed to describe {what}: {e}")
            return ""
