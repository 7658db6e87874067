"""Inbound event definitions shared by the channel adapter and the queues."""

from lettacord.bus.events import (
    AttachmentRef,
    ChatMessage,
    InboundEvent,
    MembershipEvent,
    MessageType,
    TimerHeartbeat,
)

__all__ = [
    "AttachmentRef",
    "ChatMessage",
    "InboundEvent",
    "MembershipEvent",
    "MessageType",
    "TimerHeartbeat",
]
