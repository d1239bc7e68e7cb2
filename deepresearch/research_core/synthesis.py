"""Answer synthesis as a producer task feeding a bounded delta channel."""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import AsyncIterator

from deepresearch.config import settings
from deepresearch.llm_client import LanguageModelInvoker, client as llm_client, get_model
from deepresearch.models.research import SearchResult
from deepresearch.services import logger as log_service
from deepresearch.services.prompt_store import render_prompt

NO_CONCLUSION = "No conclusion generated."


@dataclass
class _ChannelClosed:
    error: BaseException | None = None


def collect_result_errors(results: list[SearchResult]) -> list[str]:
    return list(dict.fromkeys(r.error.strip() for r in results if r.error and r.error.strip()))


def build_no_evidence_prompt(query: str, errors: list[str], *, fatal_tool_failure: bool = False) -> str:
    lines = [
        f"Question: {query}",
        "",
        "No validated references are currently available.",
        "Explain the current evidence status and what additional search directions would help.",
    ]
    if fatal_tool_failure:
        lines.append("Every search or extract call in this run failed.")
    if errors:
        lines.extend(["", "Observed tool errors:"])
        lines.extend(f"{index}. {error}" for index, error in enumerate(errors, start=1))
        lines.append("Explain these failures in user language and suggest practical next steps.")
    return "\n".join(lines)


class SynthesisStreamer:
    """Streams the final answer through a bounded ``asyncio.Queue``.

    The model stream runs in a producer task; ``stream`` is the consumer.
    Closing the consumer (or cancelling it) cancels the producer, which in
    turn closes the underlying HTTP stream.
    """

    name = "synthesis"

    def __init__(
        self,
        llm: LanguageModelInvoker | None = None,
        model: str | None = None,
        *,
        channel_size: int | None = None,
    ):
        self.llm = llm
        self.model = model or get_model()
        self.channel_size = channel_size or settings.synthesis_channel_size

    @property
    def client(self) -> LanguageModelInvoker:
        return self.llm or llm_client()

    async def _produce(self, system: str, prompt: str, channel: asyncio.Queue) -> None:
        t0 = time.monotonic()
        closing = _ChannelClosed()
        try:
            async with self.client.stream(
                model=self.model,
                max_tokens=settings.llm_max_tokens,
                system=system,
                prompt=prompt,
            ) as stream:
                async for delta in stream.text_stream:
                    await channel.put(delta)
                usage = stream.usage
            log_service.log_llm_call(
                model=self.model,
                caller=self.name,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                duration_ms=int((time.monotonic() - t0) * 1000),
            )
        except Exception as e:
            log_service.log_llm_call(
                model=self.model,
                caller=self.name,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="failed",
                error=str(e),
            )
            closing.error = e
        await channel.put(closing)

    async def stream(self, *, prompt: str, has_evidence: bool = True) -> AsyncIterator[str]:
        system = render_prompt("synthesis.system_prompt" if has_evidence else "synthesis.no_evidence_system")
        channel: asyncio.Queue = asyncio.Queue(maxsize=self.channel_size)
        producer = asyncio.create_task(self._produce(system, prompt, channel))
        try:
            while True:
                item = await channel.get()
                if isinstance(item, _ChannelClosed):
                    if item.error is not None:
                        raise item.error
                    break
                yield item
        finally:
            if not producer.done():
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer
