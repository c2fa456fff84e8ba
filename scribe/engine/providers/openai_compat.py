"""OpenAI-compatible streaming chat transport.

Talks to any ``/chat/completions`` endpoint that supports
``stream: true`` with function tools (OpenAI, OpenRouter, local
gateways). Server-Sent Events are parsed line by line; tool-call
argument fragments are accumulated by index and emitted as complete
ToolCallChunk objects when the choice finishes.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator

import aiohttp

from scribe.engine.errors import ProviderError
from scribe.shared.models.message import (
    Message,
    MessageRole,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)

from .base import (
    ChatRequest,
    ChatTransport,
    FinishChunk,
    StreamChunk,
    TextDelta,
    ToolCallChunk,
)

if TYPE_CHECKING:
    from scribe.engine.cancellation import CancellationToken

logger = logging.getLogger(__name__)

_DONE = "[DONE]"


def to_chat_messages(
    messages: list[Message],
    system_prompt: str | None = None,
) -> list[dict[str, Any]]:
    """Convert conversation history to chat-completions wire messages.

    An assistant message becomes one ``assistant`` entry carrying its text
    and ``tool_calls``, followed by one ``tool`` entry per result.
    """
    wire: list[dict[str, Any]] = []
    if system_prompt:
        wire.append({"role": "system", "content": system_prompt})
    for msg in messages:
        if msg.role == MessageRole.USER:
            wire.append({"role": "user", "content": msg.text})
            continue
        text = "".join(p.text for p in msg.parts if isinstance(p, TextPart))
        entry: dict[str, Any] = {"role": "assistant", "content": text}
        calls = [p for p in msg.parts if isinstance(p, ToolCallPart)]
        if calls:
            entry["tool_calls"] = [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {
                        "name": c.name,
                        "arguments": (
                            c.args if isinstance(c.args, str) else json.dumps(c.args)
                        ),
                    },
                }
                for c in calls
            ]
        wire.append(entry)
        for part in msg.parts:
            if isinstance(part, ToolResultPart):
                wire.append({
                    "role": "tool",
                    "tool_call_id": part.tool_call_id,
                    "content": part.output,
                })
    return wire


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)

    def to_chunk(self) -> ToolCallChunk:
        raw = "".join(self.arguments).strip()
        try:
            args: Any = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            logger.warning(
                "Tool call %s (%s) has non-JSON arguments (%d chars)",
                self.id, self.name, len(raw),
            )
            args = raw
        return ToolCallChunk(id=self.id, name=self.name, args=args)


class OpenAICompatibleTransport(ChatTransport):
    """Streaming transport for OpenAI-compatible chat completion APIs."""

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        api_key: str | None = None,
        api_key_env: str | None = None,
        request_timeout_seconds: float = 300.0,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        self._name = name
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._api_key_env = api_key_env
        self._timeout = request_timeout_seconds
        self._extra_headers = dict(extra_headers or {})
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def base_url(self) -> str:
        return self._base_url

    def _resolve_api_key(self) -> str | None:
        if self._api_key:
            return self._api_key
        if self._api_key_env:
            return os.getenv(self._api_key_env) or None
        return None

    def is_available(self) -> bool:
        return bool(self._base_url)

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            **self._extra_headers,
        }
        api_key = self._resolve_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=self._timeout if self._timeout > 0 else None,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def build_payload(self, request: ChatRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": to_chat_messages(request.messages, request.system_prompt),
            "stream": True,
        }
        if request.tools:
            payload["tools"] = request.tools
            payload["tool_choice"] = "auto"
        return payload

    async def stream(
        self,
        request: ChatRequest,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        url = f"{self._base_url}/chat/completions"
        payload = self.build_payload(request)
        logger.debug(
            "POST %s model=%s messages=%d tools=%d",
            url, request.model, len(payload["messages"]), len(request.tools),
        )
        pending: dict[int, _PendingToolCall] = {}
        finish_reason: str | None = None
        try:
            session = self._get_session()
            async with session.post(url, json=payload, headers=self._headers()) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise ProviderError(
                        self._name, _error_text(body), status=resp.status,
                    )
                async for raw_line in resp.content:
                    if cancel_token is not None and cancel_token.cancelled:
                        return
                    line = raw_line.decode("utf-8", errors="replace").strip()
                    if not line or line.startswith(":"):
                        continue
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == _DONE:
                        break
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError as exc:
                        raise ProviderError(
                            self._name, f"malformed stream chunk: {data[:200]}",
                        ) from exc
                    if "error" in event:
                        raise ProviderError(self._name, _error_text(event))
                    for chunk in self._parse_event(event, pending):
                        yield chunk
                    reason = _finish_reason(event)
                    if reason:
                        finish_reason = reason
        except aiohttp.ClientError as exc:
            raise ProviderError(self._name, f"network error: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise ProviderError(
                self._name, f"request timed out after {self._timeout}s",
            ) from exc

        for index in sorted(pending):
            yield pending[index].to_chunk()
        yield FinishChunk(reason=finish_reason)

    @staticmethod
    def _parse_event(
        event: dict[str, Any],
        pending: dict[int, _PendingToolCall],
    ) -> list[StreamChunk]:
        chunks: list[StreamChunk] = []
        choices = event.get("choices") or []
        if not choices:
            return chunks
        delta = choices[0].get("delta") or {}
        content = delta.get("content")
        if content:
            chunks.append(TextDelta(content))
        for tc in delta.get("tool_calls") or []:
            index = tc.get("index", len(pending))
            call = pending.setdefault(index, _PendingToolCall())
            if tc.get("id"):
                call.id = tc["id"]
            function = tc.get("function") or {}
            if function.get("name"):
                call.name = function["name"]
            if function.get("arguments"):
                call.arguments.append(function["arguments"])
        return chunks

    async def shutdown(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def _finish_reason(event: dict[str, Any]) -> str | None:
    choices = event.get("choices") or []
    if not choices:
        return None
    return choices[0].get("finish_reason")


def _error_text(body: Any) -> str:
    """Extract a human-readable message from an API error payload."""
    data = body
    if isinstance(body, str):
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            return body.strip()[:500] or "empty error response"
    if isinstance(data, dict):
        err = data.get("error", data)
        if isinstance(err, dict):
            return str(err.get("message") or err)[:500]
        return str(err)[:500]
    return str(data)[:500]
