"""Backend stream interface: typed response events and failures.

A backend call takes one combined user payload and yields an ordered,
finite sequence of events. The queue only depends on this module; the
concrete Letta client lives in providers/letta.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol


# ── Events ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ReasoningEvent:
    """Internal monologue. Never shown to users."""
    text: str


@dataclass(frozen=True)
class ToolCallEvent:
    """A tool invocation. ``arguments`` is the raw JSON string."""
    name: str
    arguments: str = ""


@dataclass(frozen=True)
class ToolReturnEvent:
    name: str
    status: str = ""


@dataclass(frozen=True)
class AssistantTextEvent:
    """Free text the agent addressed to the user."""
    text: str


@dataclass(frozen=True)
class StopEvent:
    reason: str = ""


@dataclass(frozen=True)
class UsageEvent:
    usage: dict[str, Any] = field(default_factory=dict)


StreamEvent = (
    ReasoningEvent
    | ToolCallEvent
    | ToolReturnEvent
    | AssistantTextEvent
    | StopEvent
    | UsageEvent
)


# ── Failures ──────────────────────────────────────────────────────────


class BackendError(Exception):
    """Transport or protocol failure talking to the agent backend."""


class BackendCancelledError(BackendError):
    """The call was aborted before completion. Callers re-batch, never surface."""


class BackendTimeoutError(BackendError):
    """The call exceeded its absolute deadline. Treated as a normal failure."""


# ── Client protocol ───────────────────────────────────────────────────


class BackendStreamClient(Protocol):
    """Anything that can stream a reply for one combined payload."""

    agent_id: str | None

    def stream(
        self,
        text: str,
        conversation_id: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        ...
