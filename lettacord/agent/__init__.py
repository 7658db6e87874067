"""Message scheduling core: formatter, stream interpreter, queues."""

from lettacord.agent.channel_queue import ChannelQueue, QueueStatus
from lettacord.agent.formatter import MessageFormatter, OriginalMessage
from lettacord.agent.pending import AlreadySettledError, PendingRequest, QueueClosedError
from lettacord.agent.queue_manager import SYSTEM_QUEUE_ID, QueueManager
from lettacord.agent.stream import ResponseStreamInterpreter

__all__ = [
    "AlreadySettledError",
    "ChannelQueue",
    "MessageFormatter",
    "OriginalMessage",
    "PendingRequest",
    "QueueClosedError",
    "QueueManager",
    "QueueStatus",
    "ResponseStreamInterpreter",
    "SYSTEM_QUEUE_ID",
]
