"""Agent backend clients."""

from lettacord.providers.base import (
    BackendCancelledError,
    BackendError,
    BackendStreamClient,
    BackendTimeoutError,
    StreamEvent,
)
from lettacord.providers.letta import LettaStreamClient

__all__ = [
    "BackendCancelledError",
    "BackendError",
    "BackendStreamClient",
    "BackendTimeoutError",
    "LettaStreamClient",
    "StreamEvent",
]
