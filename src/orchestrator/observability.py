"""Run log, status file and JSONL event stream for the repair loop."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger("repairloop.orchestrator.observability")


@dataclass
class LoopObservability:
    """Writes JSONL events, aggregate counters, a progress log and a status line."""

    state_dir: Path
    counters: dict[str, int] = field(default_factory=dict)

    @property
    def jsonl_path(self) -> Path:
        return self.state_dir / "events.jsonl"

    @property
    def metrics_path(self) -> Path:
        return self.state_dir / "metrics.json"

    @property
    def log_path(self) -> Path:
        return self.state_dir / "repair-loop.log"

    @property
    def status_path(self) -> Path:
        return self.state_dir / "status.txt"

    def emit_event(self, event_type: str, payload: dict[str, Any]) -> None:
        self.counters[event_type] = self.counters.get(event_type, 0) + 1
        record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with self.jsonl_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")

    def flush_metrics(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        snapshot = {
            "timestamp": datetime.now(UTC).isoformat(),
            "counters": dict(sorted(self.counters.items())),
        }
        self.metrics_path.write_text(
            json.dumps(snapshot, indent=2, ensure_ascii=True),
            encoding="utf-8",
        )

    def log(self, message: str) -> None:
        """Append a timestamped progress line and mirror it to the logger."""
        logger.info(message)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
        with self.log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{stamp}] {message}\n")

    def set_status(self, status: str) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.status_path.write_text(status + "\n", encoding="utf-8")

    def tail(self, lines: int = 50) -> str:
        if not self.log_path.exists():
            return ""
        content = self.log_path.read_text(encoding="utf-8").splitlines()
        return "\n".join(content[-lines:])
