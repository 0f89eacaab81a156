"""Diagnostic snapshots captured when the loop body raises.

The snapshot holds the error, git status, recent log, diff stat and the
tail of the progress log. It is written to <state_dir>/error_context.txt
and handed to the automated-fix agent as its prompt context.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

from src.core.exceptions import RepairLoopError
from src.tools import git_ops

logger = logging.getLogger("repairloop.orchestrator.diagnostics")

ERROR_CONTEXT_FILENAME = "error_context.txt"
LOG_TAIL_LINES = 50


@dataclass
class ErrorContext:
    error: str
    error_type: str
    iteration: int
    traceback: str = ""
    git_status: str = ""
    git_log: str = ""
    diff_stat: str = ""
    log_tail: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_text(self) -> str:
        sections = [
            ("Timestamp", self.timestamp.isoformat()),
            ("Iteration", str(self.iteration)),
            ("Error", f"{self.error_type}: {self.error}"),
            ("Traceback", self.traceback),
            ("Git status", self.git_status),
            ("Recent commits", self.git_log),
            ("Diff stat", self.diff_stat),
            (f"Last {LOG_TAIL_LINES} log lines", self.log_tail),
        ]
        return "\n\n".join(f"=== {title} ===\n{body.strip() or '(empty)'}" for title, body in sections)


def capture_error_context(
    repo_path: str,
    error: BaseException,
    iteration: int,
    log_tail: str = "",
) -> ErrorContext:
    """Snapshot repository state around an uncaught error.

    Git failures while snapshotting are recorded in the context rather
    than raised, so a broken repository still yields diagnostics.
    """
    context = ErrorContext(
        error=str(error),
        error_type=type(error).__name__,
        iteration=iteration,
        traceback="".join(traceback.format_exception(type(error), error, error.__traceback__)),
        log_tail=log_tail,
    )
    try:
        context.git_status = git_ops.get_status(repo_path)
        context.git_log = git_ops.recent_log(repo_path, 5)
        context.diff_stat = git_ops.diff_stat(repo_path)
    except RepairLoopError as e:
        context.git_status = f"(unavailable: {e})"
    return context


def write_error_context(context: ErrorContext, state_dir: Path) -> Optional[Path]:
    path = Path(state_dir) / ERROR_CONTEXT_FILENAME
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(context.to_text(), encoding="utf-8")
    except OSError as e:
        logger.warning("Failed to write error context: %s", e)
        return None
    logger.info("Error context written to %s", path)
    return path
