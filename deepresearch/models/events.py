from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from deepresearch.models.research import Reference, Source


class SearchStatus(str, Enum):
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class StreamEvent:
    """Progress snapshot of one deep search session."""

    status: SearchStatus
    query: str
    session_id: str | None = None
    project_id: str | None = None
    sources: list[Source] | None = None
    references: list[Reference] | None = None
    prompt: str | None = None
    conclusion: str | None = None
    error: str | None = None
    complete: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in (SearchStatus.COMPLETE, SearchStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value, "query": self.query}
        if self.session_id is not None:
            data["session_id"] = self.session_id
        if self.project_id is not None:
            data["project_id"] = self.project_id
        if self.sources is not None:
            data["sources"] = [s.to_dict() for s in self.sources]
        if self.references is not None:
            data["references"] = [r.to_dict() for r in self.references]
        if self.prompt is not None:
            data["prompt"] = self.prompt
        if self.conclusion is not None:
            data["conclusion"] = self.conclusion
        if self.error is not None:
            data["error"] = self.error
        if self.complete:
            data["complete"] = True
        return data


@dataclass
class SubagentStreamEvent:
    """Accumulated transcript of a subagent, keyed by the outer tool call."""

    tool_call_id: str
    tool_name: str
    messages: list[dict[str, Any]] = field(default_factory=list)


class StreamSink(Protocol):
    async def write(self, event: StreamEvent | SubagentStreamEvent) -> None: ...
