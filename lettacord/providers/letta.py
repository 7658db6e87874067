"""Letta agent backend client over the REST streaming API.

Sends one user message per call and decodes the server-sent event stream
into the typed events from providers/base.py.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx
from loguru import logger

from lettacord.providers.base import (
    AssistantTextEvent,
    BackendError,
    BackendTimeoutError,
    ReasoningEvent,
    StopEvent,
    StreamEvent,
    ToolCallEvent,
    ToolReturnEvent,
    UsageEvent,
)

DEFAULT_BASE_URL = "https://api.letta.com"


def parse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Map one decoded SSE payload to a StreamEvent (None = not interesting)."""
    kind = data.get("message_type")

    if kind == "reasoning_message":
        return ReasoningEvent(text=data.get("reasoning") or "")
    if kind == "tool_call_message":
        call = data.get("tool_call") or {}
        return ToolCallEvent(
            name=call.get("name") or "",
            arguments=call.get("arguments") or "",
        )
    if kind == "tool_return_message":
        return ToolReturnEvent(name=data.get("name") or "", status=data.get("status") or "")
    if kind == "assistant_message":
        content = data.get("content")
        # Content may arrive as a list of {"type": "text", "text": ...} parts
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") for part in content if isinstance(part, dict)
            )
        return AssistantTextEvent(text=content or "")
    if kind == "stop_reason":
        return StopEvent(reason=data.get("stop_reason") or "")
    if kind == "usage_statistics":
        usage = {k: v for k, v in data.items() if k != "message_type"}
        return UsageEvent(usage=usage)
    return None


class LettaStreamClient:
    """Streams agent replies from a Letta server.

    The client owns a long-lived ``httpx.AsyncClient``; pass ``transport``
    to swap the network layer in tests.
    """

    def __init__(
        self,
        agent_id: str | None,
        token: str | None = None,
        base_url: str | None = None,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.agent_id = agent_id
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        headers = {"Accept": "text/event-stream"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=30.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _stream_request(self, text: str, conversation_id: str | None) -> tuple[str, dict[str, Any]]:
        body: dict[str, Any] = {
            "messages": [{"role": "user", "content": text}],
            "stream_tokens": False,
        }
        if conversation_id:
            return f"/v1/conversations/{conversation_id}/messages", body
        return f"/v1/agents/{self.agent_id}/messages/stream", body

    async def stream(
        self,
        text: str,
        conversation_id: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Send ``text`` and yield response events until the stream ends."""
        if not self.agent_id:
            raise BackendError("Letta agent id is not configured")

        path, body = self._stream_request(text, conversation_id)
        logger.info(
            f"🛜 Sending message to Letta (agent={self.agent_id}, "
            f"conversation={conversation_id or 'default'}): {json.dumps(body['messages'][0])}"
        )

        try:
            async with self._http.stream("POST", path, json=body) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", "replace")[:300]
                    raise BackendError(f"Letta returned HTTP {response.status_code}: {detail}")

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    payload = line[len("data:"):].strip()
                    if not payload:
                        continue
                    if payload == "[DONE]":
                        break
                    try:
                        data = json.loads(payload)
                    except json.JSONDecodeError as e:
                        raise BackendError(f"Malformed event from Letta: {payload[:100]!r}") from e
                    if not isinstance(data, dict):
                        continue
                    event = parse_event(data)
                    if event is not None:
                        yield event
        except httpx.TimeoutException as e:
            raise BackendTimeoutError(f"Letta request timed out: {e!r}") from e
        except httpx.HTTPError as e:
            raise BackendError(f"Letta request failed: {e}") from e

    async def create_conversation(self, agent_id: str | None = None) -> str:
        """Create a new conversation for the agent and return its id."""
        agent = agent_id or self.agent_id
        if not agent:
            raise BackendError("Letta agent id is not configured")
        try:
            response = await self._http.post("/v1/conversations/", json={"agent_id": agent})
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise BackendError(f"Failed to create Letta conversation: {e}") from e
        conversation_id = (response.json() or {}).get("id")
        if not conversation_id:
            raise BackendError("Letta conversation response had no id")
        return conversation_id
