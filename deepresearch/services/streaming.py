from __future__ import annotations

import asyncio
from typing import AsyncIterator

from deepresearch.errors import StreamProtocolError
from deepresearch.models.events import SearchStatus, StreamEvent, StreamSink, SubagentStreamEvent
from deepresearch.models.research import Reference, SearchSession, Source


def session_running(
    query: str,
    session: SearchSession | None = None,
    *,
    sources: list[Source] | None = None,
    references: list[Reference] | None = None,
    prompt: str | None = None,
    conclusion: str | None = None,
) -> StreamEvent:
    return StreamEvent(
        status=SearchStatus.RUNNING,
        query=query,
        session_id=session.session_id if session else None,
        project_id=session.project_id if session else None,
        sources=sources,
        references=references,
        prompt=prompt,
        conclusion=conclusion,
    )


def session_complete(
    query: str,
    session: SearchSession,
    *,
    sources: list[Source],
    references: list[Reference],
    prompt: str,
    conclusion: str,
) -> StreamEvent:
    return StreamEvent(
        status=SearchStatus.COMPLETE,
        query=query,
        session_id=session.session_id,
        project_id=session.project_id,
        sources=sources,
        references=references,
        prompt=prompt,
        conclusion=conclusion,
        complete=True,
    )


def session_failed(query: str, error: str, session: SearchSession | None = None) -> StreamEvent:
    return StreamEvent(
        status=SearchStatus.FAILED,
        query=query,
        session_id=session.session_id if session else None,
        project_id=session.project_id if session else None,
        error=error,
        complete=True,
    )


class OrderedEventWriter:
    """Forwards events to a sink in submission order, refusing anything after a terminal event."""

    def __init__(self, sink: StreamSink | None):
        self._sink = sink
        self._lock = asyncio.Lock()
        self.terminal: StreamEvent | None = None
        self.written = 0

    @property
    def closed(self) -> bool:
        return self.terminal is not None

    async def write(self, event: StreamEvent | SubagentStreamEvent) -> None:
        async with self._lock:
            if self.terminal is not None:
                raise StreamProtocolError(
                    f"event written after terminal status {self.terminal.status.value}"
                )
            if isinstance(event, StreamEvent) and event.is_terminal:
                self.terminal = event
            self.written += 1
            if self._sink is not None:
                await self._sink.write(event)


class QueueStreamSink:
    """Sink backed by an ``asyncio.Queue``; ``events()`` drains it until the terminal event."""

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def write(self, event: StreamEvent | SubagentStreamEvent) -> None:
        await self._queue.put(event)

    async def events(self) -> AsyncIterator[StreamEvent | SubagentStreamEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, StreamEvent) and event.is_terminal:
                return


class CollectingSink:
    """Keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[StreamEvent | SubagentStreamEvent] = []

    async def write(self, event: StreamEvent | SubagentStreamEvent) -> None:
        self.events.append(event)

    @property
    def stream_events(self) -> list[StreamEvent]:
        return [e for e in self.events if isinstance(e, StreamEvent)]
