"""OpenRouter model client: tool-use turns, text streaming and structured decoding."""
from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from deepresearch.config import settings
from deepresearch.errors import StructuredOutputError
from deepresearch.services import logger as log_service
from deepresearch.services.env_safety import require_setting, sanitize_ssl_keylogfile

SchemaT = TypeVar("SchemaT", bound=BaseModel)

CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class TextBlock:
    type: str
    text: str


@dataclass
class ToolUseBlock:
    type: str
    id: str
    name: str
    input: dict[str, Any]


@dataclass
class MessageResponse:
    content: list[Any]
    usage: Usage

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if b.type == "text")

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if b.type == "tool_use"]


def _usage_from(raw: Any) -> Usage:
    return Usage(
        input_tokens=getattr(raw, "prompt_tokens", 0) or 0,
        output_tokens=getattr(raw, "completion_tokens", 0) or 0,
    )


def _block_attr(block: Any, name: str) -> Any:
    if isinstance(block, dict):
        return block.get(name)
    return getattr(block, name, None)


class OpenRouterStream:
    """Async context manager over a streamed chat completion."""

    def __init__(self, stream_coro: Any):
        self._stream_coro = stream_coro
        self._stream: Any | None = None
        self._usage = Usage()
        self._finished = False

    async def __aenter__(self) -> "OpenRouterStream":
        self._stream = await self._stream_coro
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._stream is not None:
            await self._stream.close()

    async def _iter_text(self) -> AsyncIterator[str]:
        if self._stream is None:
            return
        async for chunk in self._stream:
            usage = getattr(chunk, "usage", None)
            if usage:
                self._usage = _usage_from(usage)
            choices = getattr(chunk, "choices", None) or []
            if not choices:
                continue
            delta = getattr(choices[0], "delta", None)
            text = getattr(delta, "content", None) if delta else None
            if text:
                yield text
        self._finished = True

    @property
    def text_stream(self) -> AsyncIterator[str]:
        return self._iter_text()

    @property
    def usage(self) -> Usage:
        return self._usage


class LanguageModelInvoker(Protocol):
    async def create(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
    ) -> MessageResponse: ...

    def stream(self, *, model: str, max_tokens: int, system: str, prompt: str) -> OpenRouterStream: ...

    async def parse(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        prompt: str,
        schema: type[SchemaT],
    ) -> SchemaT: ...


class OpenRouterMessagesAdapter:
    """Anthropic-style message blocks on top of the OpenAI chat completions API."""

    def __init__(self, openai_client: Any):
        self._client = openai_client

    @staticmethod
    def _temperature_for_model(model: str) -> int:
        # Some GPT-5-compatible gateways reject temperature=0.
        if "gpt-5" in (model or "").lower():
            return 1
        return 0

    def _to_openai_messages(self, system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        openai_messages: list[dict[str, Any]] = [{"role": "system", "content": system}]

        for message in messages:
            role = message["role"]
            content = message["content"]

            if isinstance(content, str):
                openai_messages.append({"role": role, "content": content})
                continue

            if role == "assistant" and isinstance(content, list):
                text_parts: list[str] = []
                tool_calls: list[dict[str, Any]] = []
                for block in content:
                    block_type = _block_attr(block, "type")
                    if block_type == "text" and _block_attr(block, "text"):
                        text_parts.append(_block_attr(block, "text"))
                    elif block_type == "tool_use":
                        tool_calls.append(
                            {
                                "id": _block_attr(block, "id"),
                                "type": "function",
                                "function": {
                                    "name": _block_attr(block, "name"),
                                    "arguments": json.dumps(_block_attr(block, "input") or {}),
                                },
                            }
                        )
                msg: dict[str, Any] = {"role": "assistant", "content": "\n".join(text_parts) or None}
                if tool_calls:
                    msg["tool_calls"] = tool_calls
                openai_messages.append(msg)
                continue

            if role == "user" and isinstance(content, list):
                for tool_result in content:
                    if tool_result.get("type") != "tool_result":
                        continue
                    tool_content = str(tool_result.get("content", ""))
                    if tool_result.get("is_error"):
                        tool_content = f"ERROR: {tool_content}"
                    openai_messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": tool_result.get("tool_use_id", ""),
                            "content": tool_content,
                        }
                    )
                continue

            openai_messages.append({"role": role, "content": str(content)})

        return openai_messages

    def _to_openai_tools(self, tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t.get("input_schema", {"type": "object", "properties": {}}),
                },
            }
            for t in tools
        ]

    def _from_openai_response(self, response: Any) -> MessageResponse:
        choice = response.choices[0].message
        content: list[Any] = []

        text = getattr(choice, "content", None)
        if text:
            content.append(TextBlock(type="text", text=text))

        for tc in getattr(choice, "tool_calls", None) or []:
            args = getattr(tc.function, "arguments", "{}") or "{}"
            try:
                parsed_args = json.loads(args)
            except json.JSONDecodeError:
                parsed_args = {}
            if not isinstance(parsed_args, dict):
                parsed_args = {}
            content.append(ToolUseBlock(type="tool_use", id=tc.id, name=tc.function.name, input=parsed_args))

        return MessageResponse(content=content, usage=_usage_from(getattr(response, "usage", None)))

    async def create(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
    ) -> MessageResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": self._to_openai_messages(system, messages),
            "max_tokens": max_tokens,
            "temperature": self._temperature_for_model(model),
        }
        if tools:
            kwargs["tools"] = self._to_openai_tools(tools)
            kwargs["tool_choice"] = tool_choice or "auto"

        response = await self._client.chat.completions.create(**kwargs)
        return self._from_openai_response(response)

    def stream(self, *, model: str, max_tokens: int, system: str, prompt: str) -> OpenRouterStream:
        stream = self._client.chat.completions.create(
            model=model,
            messages=self._to_openai_messages(system, [{"role": "user", "content": prompt}]),
            max_tokens=max_tokens,
            temperature=self._temperature_for_model(model),
            stream=True,
            stream_options={"include_usage": True},
        )
        return OpenRouterStream(stream)

    async def parse(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        prompt: str,
        schema: type[SchemaT],
    ) -> SchemaT:
        """Decode one completion into ``schema``. A single attempt; failures raise."""
        schema_name = schema.__name__
        t0 = time.monotonic()
        response = await self._client.chat.completions.create(
            model=model,
            messages=self._to_openai_messages(system, [{"role": "user", "content": prompt}]),
            max_tokens=max_tokens,
            temperature=self._temperature_for_model(model),
            response_format={
                "type": "json_schema",
                "json_schema": {
                    "name": schema_name,
                    "schema": schema.model_json_schema(by_alias=True),
                    "strict": False,
                },
            },
        )
        usage = _usage_from(getattr(response, "usage", None))
        elapsed_ms = int((time.monotonic() - t0) * 1000)
        raw = (getattr(response.choices[0].message, "content", None) or "").strip()
        fenced = CODE_FENCE_RE.match(raw)
        if fenced:
            raw = fenced.group(1)
        try:
            parsed = schema.model_validate_json(raw)
        except ValidationError as exc:
            log_service.log_llm_call(
                model=model,
                caller=f"parse:{schema_name}",
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                duration_ms=elapsed_ms,
                status="failed",
                error=str(exc),
            )
            raise StructuredOutputError(schema_name, str(exc)) from exc
        log_service.log_llm_call(
            model=model,
            caller=f"parse:{schema_name}",
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            duration_ms=elapsed_ms,
        )
        return parsed


def get_client() -> OpenRouterMessagesAdapter:
    """Build the OpenRouter adapter via the OpenAI-compatible SDK."""
    from openai import AsyncOpenAI

    api_key = require_setting("OPENROUTER_API_KEY", settings.openrouter_api_key)
    sanitize_ssl_keylogfile()
    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = AsyncOpenAI(api_key=api_key, base_url=base_url)
    return OpenRouterMessagesAdapter(openai_client)


def get_model(role: str | None = None) -> str:
    """Model id for a subagent role (``search``, ``extract``) or the default."""
    override = ""
    if role == "search":
        override = settings.search_model
    elif role == "extract":
        override = settings.extract_model
    if override:
        return override
    if settings.openrouter_model:
        return settings.openrouter_model
    return settings.default_model


_client: OpenRouterMessagesAdapter | None = None


def client() -> OpenRouterMessagesAdapter:
    """Get or create the shared model client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
