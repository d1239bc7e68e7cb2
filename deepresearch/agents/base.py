from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from deepresearch.config import settings
from deepresearch.llm_client import LanguageModelInvoker, ToolUseBlock, client as llm_client, get_model
from deepresearch.services import logger as log_service

ToolHandler = Callable[[Any], Awaitable[Any]]
MessageCallback = Callable[[list[dict[str, Any]]], Awaitable[None]]


@dataclass
class Tool:
    """A named tool: input schema plus an async handler receiving the validated input."""

    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler

    def schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_model.model_json_schema(),
        }


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    async def dispatch(self, name: str, raw_input: dict[str, Any]) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(f"Unknown tool: {name}")
        return await tool.handler(tool.input_model.model_validate(raw_input or {}))


@dataclass
class ToolLoopResult:
    final_text: str
    transcript: list[dict[str, Any]] = field(default_factory=list)
    turns: int = 0


def _serialize_output(output: Any) -> str:
    if isinstance(output, str):
        return output
    if isinstance(output, BaseModel):
        return output.model_dump_json(by_alias=True)
    return json.dumps(output, ensure_ascii=False, default=str)


class BaseAgent:
    """Base agent that wraps the model tool-use loop.

    Subclasses set ``name`` and ``role`` and build a ``ToolRegistry`` per run.
    The loop is open-ended: it ends when the model answers without calling a
    tool. Tool calls issued in the same turn run concurrently, and a failing
    tool is reported back to the model as an error result.
    """

    name: str = "base"
    role: str | None = None

    def __init__(self, llm: LanguageModelInvoker | None = None, model: str | None = None):
        self.llm = llm
        self.model = model or get_model(self.role)

    @property
    def client(self) -> LanguageModelInvoker:
        return self.llm or llm_client()

    async def _execute_tool(self, tools: ToolRegistry, block: ToolUseBlock) -> dict[str, Any]:
        t0 = time.monotonic()
        try:
            output = await tools.dispatch(block.name, block.input)
        except Exception as e:
            log_service.log_tool_call(
                tool_name=block.name,
                status="failed",
                duration_ms=int((time.monotonic() - t0) * 1000),
                error=str(e),
                agent=self.name,
            )
            return {
                "type": "tool_result",
                "tool_use_id": block.id,
                "content": f"Error: {e}",
                "is_error": True,
            }
        log_service.log_tool_call(
            tool_name=block.name,
            status="success",
            duration_ms=int((time.monotonic() - t0) * 1000),
            agent=self.name,
        )
        return {"type": "tool_result", "tool_use_id": block.id, "content": _serialize_output(output)}

    async def run_tool_loop(
        self,
        *,
        system: str,
        prompt: str,
        tools: ToolRegistry,
        on_message: MessageCallback | None = None,
        max_turns: int | None = None,
    ) -> ToolLoopResult:
        messages: list[dict[str, Any]] = [{"role": "user", "content": prompt}]
        transcript: list[dict[str, Any]] = []
        turns = 0
        tool_schemas = tools.schemas()

        while max_turns is None or turns < max_turns:
            turns += 1
            t0 = time.monotonic()
            response = await self.client.create(
                model=self.model,
                max_tokens=settings.llm_max_tokens,
                system=system,
                messages=messages,
                tools=tool_schemas or None,
                tool_choice="auto" if tool_schemas else None,
            )
            log_service.log_llm_call(
                model=self.model,
                caller=self.name,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                duration_ms=int((time.monotonic() - t0) * 1000),
            )

            tool_uses = response.tool_uses
            entry: dict[str, Any] = {
                "id": f"{self.name}-turn-{turns}",
                "role": "assistant",
                "text": response.text,
                "tool_calls": [{"id": b.id, "name": b.name, "input": b.input} for b in tool_uses],
            }

            if not tool_uses:
                transcript.append(entry)
                if on_message is not None:
                    await on_message(transcript)
                return ToolLoopResult(final_text=response.text, transcript=transcript, turns=turns)

            messages.append({"role": "assistant", "content": response.content})
            tool_results = list(
                await asyncio.gather(*(self._execute_tool(tools, block) for block in tool_uses))
            )
            messages.append({"role": "user", "content": tool_results})

            entry["tool_results"] = [
                {"id": r["tool_use_id"], "content": r["content"], "is_error": bool(r.get("is_error"))}
                for r in tool_results
            ]
            transcript.append(entry)
            if on_message is not None:
                await on_message(transcript)

        log_service.log_event(
            event_type="tool_loop_turn_limit",
            message=f"{self.name} stopped after {turns} turns",
        )
        return ToolLoopResult(final_text="", transcript=transcript, turns=turns)
