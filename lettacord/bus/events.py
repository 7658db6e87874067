"""Inbound event types for the message queues."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class MessageType(str, Enum):
    """How a chat message reached the bot."""
    DM = "DM"
    MENTION = "MENTION"
    REPLY = "REPLY"
    GENERIC = "GENERIC"


@dataclass(frozen=True)
class AttachmentRef:
    """A file attached to a chat message, as reported by the platform."""
    name: str
    url: str
    size: int = 0
    content_type: str | None = None


@dataclass(frozen=True)
class ChatMessage:
    """A human message posted in a channel or DM."""

    channel_id: str
    sender_id: str
    sender_name: str
    content: str
    message_type: MessageType = MessageType.GENERIC
    message_id: str = ""
    channel_name: str = ""
    sender_nickname: str | None = None
    attachments: tuple[AttachmentRef, ...] = field(default_factory=tuple)
    reply_to: str | None = None  # message id being replied to

    @property
    def display_name(self) -> str:
        """Server nickname when set, otherwise the account display name."""
        return self.sender_nickname or self.sender_name


@dataclass(frozen=True)
class TimerHeartbeat:
    """A system-generated prompt for the agent to act on its own."""
    reason: str = "timer"  # "timer" | "manual"


@dataclass(frozen=True)
class MembershipEvent:
    """A new member joined a guild."""
    member_id: str
    display_name: str
    guild_id: str
    guild_name: str
    joined_at: datetime | None = None


InboundEvent = ChatMessage | TimerHeartbeat | MembershipEvent
