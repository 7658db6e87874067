"""Tests for ResponseStreamInterpreter — tool contract and text accumulation."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from lettacord.agent.stream import ResponseStreamInterpreter, parse_tool_arguments
from lettacord.providers.base import (
    AssistantTextEvent,
    BackendError,
    ReasoningEvent,
    StopEvent,
    ToolCallEvent,
    ToolReturnEvent,
    UsageEvent,
)


# ── Helpers ──────────────────────────────────────────────────────────────


async def events_of(*events):
    for event in events:
        yield event


async def failing_stream():
    yield AssistantTextEvent("partial")
    raise BackendError("connection reset")


def send_response(message: str, is_responding=True) -> ToolCallEvent:
    return ToolCallEvent(
        name="send_response",
        arguments=json.dumps({"message": message, "is_responding": is_responding}),
    )


# ── Interpretation ───────────────────────────────────────────────────────


class TestInterpret:
    @pytest.mark.asyncio
    async def test_assistant_text(self):
        out = await ResponseStreamInterpreter().interpret(events_of(AssistantTextEvent("  hey  ")))
        assert out == "hey"

    @pytest.mark.asyncio
    async def test_send_response_fragments_joined(self):
        out = await ResponseStreamInterpreter().interpret(
            events_of(send_response("one"), ReasoningEvent("hmm"), send_response("two"))
        )
        assert out == "one\n\ntwo"

    @pytest.mark.asyncio
    async def test_not_responding_is_dropped(self):
        out = await ResponseStreamInterpreter().interpret(
            events_of(send_response("secret", is_responding=False))
        )
        assert out == ""

    @pytest.mark.asyncio
    async def test_is_responding_string_false(self):
        out = await ResponseStreamInterpreter().interpret(
            events_of(send_response("secret", is_responding="false"))
        )
        assert out == ""

    @pytest.mark.asyncio
    async def test_bookkeeping_events_ignored(self):
        out = await ResponseStreamInterpreter().interpret(
            events_of(
                ReasoningEvent("thinking"),
                ToolCallEvent(name="archival_memory_search", arguments='{"query": "x"}'),
                ToolReturnEvent(name="archival_memory_search", status="success"),
                StopEvent("end_turn"),
                UsageEvent({"total_tokens": 10}),
            )
        )
        assert out == ""

    @pytest.mark.asyncio
    async def test_malformed_arguments_are_repaired(self):
        event = ToolCallEvent(name="send_response", arguments='{"message": "hi there"')
        out = await ResponseStreamInterpreter().interpret(events_of(event))
        assert out == "hi there"

    @pytest.mark.asyncio
    async def test_stream_error_propagates(self):
        with pytest.raises(BackendError):
            await ResponseStreamInterpreter().interpret(failing_stream())


class TestSetStatus:
    @pytest.mark.asyncio
    async def test_sets_and_persists_presence(self):
        set_presence = AsyncMock()
        persist = AsyncMock()
        interp = ResponseStreamInterpreter(set_presence=set_presence, persist_presence=persist)

        out = await interp.interpret(
            events_of(ToolCallEvent(name="set_status", arguments='{"message": "napping"}'))
        )

        assert out == ""
        await interp.drain()
        set_presence.assert_awaited_once_with("napping")
        persist.assert_awaited_once_with("napping")

    @pytest.mark.asyncio
    async def test_presence_failure_still_persists_and_replies(self):
        set_presence = AsyncMock(side_effect=RuntimeError("gateway down"))
        persist = AsyncMock()
        interp = ResponseStreamInterpreter(set_presence=set_presence, persist_presence=persist)

        out = await interp.interpret(
            events_of(
                ToolCallEvent(name="set_status", arguments='{"message": "away"}'),
                send_response("brb"),
            )
        )

        assert out == "brb"
        await interp.drain()
        persist.assert_awaited_once_with("away")

    @pytest.mark.asyncio
    async def test_reply_does_not_wait_for_presence(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_presence(status: str) -> None:
            started.set()
            await release.wait()

        persist = AsyncMock()
        interp = ResponseStreamInterpreter(set_presence=slow_presence, persist_presence=persist)

        out = await asyncio.wait_for(
            interp.interpret(
                events_of(
                    ToolCallEvent(name="set_status", arguments='{"message": "busy"}'),
                    send_response("on it"),
                )
            ),
            1.0,
        )

        assert out == "on it"
        await asyncio.wait_for(started.wait(), 1.0)
        persist.assert_not_awaited()
        release.set()
        await interp.drain()
        persist.assert_awaited_once_with("busy")

    @pytest.mark.asyncio
    async def test_empty_status_ignored(self):
        set_presence = AsyncMock()
        interp = ResponseStreamInterpreter(set_presence=set_presence)
        await interp.interpret(events_of(ToolCallEvent(name="set_status", arguments="{}")))
        await interp.drain()
        set_presence.assert_not_awaited()


class TestParseArguments:
    def test_empty(self):
        assert parse_tool_arguments("") == {}

    def test_valid(self):
        assert parse_tool_arguments('{"message": "x"}') == {"message": "x"}

    def test_non_object(self):
        assert parse_tool_arguments("[1, 2]") == {}
