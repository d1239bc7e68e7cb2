"""DeepResearch - cited web research

Simple CLI for running one deep search.
"""

import argparse
import asyncio
import signal
import sys

from deepresearch.agents.orchestrator import SearchOrchestrator
from deepresearch.errors import DeepResearchError
from deepresearch.models.events import StreamEvent, SubagentStreamEvent
from deepresearch.research_core.store import DeepResearchRepository, project_id_for_path
from deepresearch.services.database import PostgresPersistenceAdapter
from deepresearch.services.logger import setup_logging
from deepresearch.services.streaming import QueueStreamSink


def build_persistence(backend: str, project: str):
    if backend == "file":
        return DeepResearchRepository(project_path=project)
    if backend == "postgres":
        return PostgresPersistenceAdapter(project_id=project_id_for_path(project))
    return None


async def print_events(sink: QueueStreamSink, verbose: bool) -> None:
    printed = 0
    async for event in sink.events():
        if isinstance(event, SubagentStreamEvent):
            if verbose:
                last = event.messages[-1] if event.messages else {}
                calls = ", ".join(c["name"] for c in last.get("tool_calls", []))
                print(f"  [~] subagent turn {len(event.messages)}: {calls or 'final answer'}")
            continue

        if not isinstance(event, StreamEvent):
            continue
        data = event.to_dict()
        status = data["status"]
        if status == "running" and event.conclusion is None:
            if event.references is not None:
                print(f"\n[+] {len(event.references)} references from {len(event.sources or [])} sources")
            else:
                print(f"[*] Session {event.session_id} started")
        elif status == "running":
            print(event.conclusion[printed:], end="", flush=True)
            printed = len(event.conclusion)
        elif status == "complete":
            print(f"\n\n{'=' * 50}\nANSWER\n{'=' * 50}")
            print(event.conclusion)
            for ref in event.references or []:
                print(f"  [{ref.ref_id}] {ref.title or ref.url} (lines {ref.start_line}-{ref.end_line})")
        elif status == "failed":
            print(f"\n[!] Error: {event.error}")


async def run_search(query: str, backend: str, project: str, verbose: bool) -> int:
    persistence = build_persistence(backend, project)
    if isinstance(persistence, PostgresPersistenceAdapter):
        await persistence.ensure_schema()

    orchestrator = SearchOrchestrator(persistence=persistence)
    sink = QueueStreamSink()
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
    except NotImplementedError:
        pass

    printer = asyncio.create_task(print_events(sink, verbose))
    try:
        await orchestrator.run(query, sink, cancel=cancel)
        return 0
    except (DeepResearchError, asyncio.CancelledError):
        return 1
    except Exception:
        # The failed event already carries the error.
        return 1
    finally:
        await printer
        if isinstance(persistence, PostgresPersistenceAdapter):
            await persistence.close()


def main():
    parser = argparse.ArgumentParser(description="DeepResearch deep search")
    parser.add_argument("--query", "-q", required=True, help="Research question")
    parser.add_argument(
        "--store",
        choices=("none", "file", "postgres"),
        default="file",
        help="Persistence backend (default: file)",
    )
    parser.add_argument("--project", default=".", help="Project path used to scope stored searches")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show subagent turns")

    args = parser.parse_args()
    if args.verbose:
        setup_logging(level="DEBUG")

    sys.exit(asyncio.run(run_search(args.query, args.store, args.project, args.verbose)))


if __name__ == "__main__":
    main()
