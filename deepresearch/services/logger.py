"""Loguru setup and structured log helpers for deep search runs."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from deepresearch.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"

# Third-party loggers that flood DEBUG output with transport details.
NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "openai._base_client", "asyncpg", "asyncio")


def setup_logging(log_dir: Optional[str] = None, level: Optional[str] = None) -> Path:
    """Replace loguru's default sink with a console sink and a daily rotating file."""
    directory = Path(log_dir or settings.log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=(level or settings.app_log_level).upper(), colorize=True)
    logger.add(
        directory / "deepresearch_{time:YYYY-MM-DD}.log",
        format=FILE_FORMAT,
        level="DEBUG",
        rotation="00:00",
        retention="7 days",
        compression="zip",
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(settings.noisy_log_level.upper())
    return directory


setup_logging()


def _emit(tag: str, payload: dict[str, Any], *, failed: bool = False, level: str = "INFO", failed_level: str = "ERROR") -> None:
    record = {"timestamp": datetime.now(timezone.utc).isoformat(), **payload}
    if failed:
        logger.opt(depth=2).log(failed_level, f"{tag}_FAILED: {record}")
    else:
        logger.opt(depth=2).log(level, f"{tag}: {record}")


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    _emit(
        "LLM_CALL",
        {
            "model": model,
            "caller": caller,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
            "duration_ms": duration_ms,
            "status": status,
            "error": error,
        },
        failed=bool(error),
    )


def log_research_step(
    session_id: str,
    step_type: str,
    status: str,
    data: Optional[dict[str, Any]] = None,
) -> None:
    """One step of a deep search session (started, search_subagent, completed, failed, cancelled)."""
    _emit(
        "RESEARCH_STEP",
        {"session_id": session_id, "step_type": step_type, "status": status, "data": data},
        level="WARNING" if status in ("failed", "cancelled", "fatal_tool_failure") else "INFO",
    )


def log_tool_call(
    tool_name: str,
    status: str,
    duration_ms: int = 0,
    error: Optional[str] = None,
    **details: Any,
) -> None:
    _emit(
        "TOOL_CALL",
        {"tool": tool_name, "status": status, "duration_ms": duration_ms, "error": error, **details},
        failed=bool(error),
        level="DEBUG",
        failed_level="WARNING",
    )


def log_db_operation(
    operation: str,
    table: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    _emit(
        "DB_OPERATION",
        {"operation": operation, "table": table, "status": status, "details": details, "error": error},
        failed=bool(error),
    )


def log_event(event_type: str, message: str, **kwargs) -> None:
    _emit("EVENT", {"event_type": event_type, "message": message, **kwargs})
