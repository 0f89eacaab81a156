"""File-backed memory collaborator for the repair loop.

Persists the latest IterationRecord, a bounded attempt history and
co-failure heuristics (which files keep failing alongside which tests)
under the state directory. The pipeline reads the prior record at the
start of each iteration and asks for a suggested fix built from the
heuristics.

Layout under <state_dir>/memory/:
    iteration.json     latest IterationRecord (wire shape, camelCase keys)
    history.jsonl      one record per iteration, compacted periodically
    heuristics.json    failure counts, co-failures, known resolutions
    code_intel.json    snapshot refreshed after build failures
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

from src.core.models import IterationRecord
from src.llm.response_parser import normalize_error_signature

logger = logging.getLogger("repairloop.memory.store")

DEFAULT_HISTORY_KEEP = 20
MIN_OCCURRENCES_FOR_HINT = 2


class MemoryStore:
    def __init__(self, state_dir: str | Path):
        self.root = Path(state_dir) / "memory"
        self.record_path = self.root / "iteration.json"
        self.history_path = self.root / "history.jsonl"
        self.heuristics_path = self.root / "heuristics.json"
        self.code_intel_path = self.root / "code_intel.json"

    # -- collaborator interface ---------------------------------------------

    def read_prior_state(self) -> Optional[IterationRecord]:
        if not self.record_path.exists():
            return None
        try:
            return IterationRecord.from_json(self.record_path.read_text(encoding="utf-8"))
        except ValueError as e:
            logger.warning("Ignoring unreadable iteration record: %s", e)
            return None

    def suggest_fix(self, failed_tests: list[str], failed_files: list[str]) -> Optional[str]:
        """Build a hint from recurring failures and past resolutions, if any apply."""
        if not failed_tests and not failed_files:
            return None
        heuristics = self._load_heuristics()
        resolutions: dict[str, str] = heuristics["resolutions"]
        failure_counts: dict[str, int] = heuristics["failure_counts"]
        co_failures: dict[str, dict[str, int]] = heuristics["co_failures"]

        lines: list[str] = []
        for test in failed_tests:
            if test in resolutions:
                lines.append(f"- {test} was previously fixed by: {resolutions[test]}")
                continue
            count = failure_counts.get(test, 0)
            if count < MIN_OCCURRENCES_FOR_HINT:
                continue
            related = Counter(co_failures.get(test, {})).most_common(3)
            files = ", ".join(path for path, _ in related) or "unknown files"
            lines.append(f"- {test} has failed {count} times, usually together with {files}")

        hot_files = [
            path for path, count in Counter(heuristics["file_counts"]).most_common()
            if path in failed_files and count >= MIN_OCCURRENCES_FOR_HINT
        ]
        if hot_files:
            lines.append(f"- Files failing repeatedly: {', '.join(hot_files[:5])}")

        if not lines:
            return None
        return "Suggested focus from previous iterations:\n" + "\n".join(lines)

    def record_outcome(self, record: IterationRecord) -> None:
        prior = self.read_prior_state()
        self.root.mkdir(parents=True, exist_ok=True)
        self.record_path.write_text(record.to_json(), encoding="utf-8")
        with open(self.history_path, "a", encoding="utf-8") as f:
            f.write(record.model_dump_json(by_alias=True) + "\n")

        if record.build_ok and record.test_ok and prior is not None and prior.failing_tests:
            heuristics = self._load_heuristics()
            for test in prior.failing_tests:
                heuristics["resolutions"][test] = record.diff_summary or "(patch with no summary)"
            self._save_heuristics(heuristics)
        logger.info(
            "Recorded iteration %d (build_ok=%s test_ok=%s failures=%d)",
            record.iteration, record.build_ok, record.test_ok, len(record.failing_tests),
        )

    # -- heuristics ----------------------------------------------------------

    def update_heuristics(
        self,
        failed_tests: list[str],
        failed_files: list[str],
        error_text: str = "",
    ) -> None:
        """Count failures and which files fail alongside each test."""
        heuristics = self._load_heuristics()
        for test in failed_tests:
            heuristics["failure_counts"][test] = heuristics["failure_counts"].get(test, 0) + 1
            related = heuristics["co_failures"].setdefault(test, {})
            for path in failed_files:
                related[path] = related.get(path, 0) + 1
        for path in failed_files:
            heuristics["file_counts"][path] = heuristics["file_counts"].get(path, 0) + 1
        if error_text.strip():
            signature = normalize_error_signature(error_text)[:300]
            heuristics["signatures"][signature] = heuristics["signatures"].get(signature, 0) + 1
        self._save_heuristics(heuristics)

    def refresh_code_intel(self, tracked_files: list[str], build_output: str = "") -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        snapshot = {
            "refreshed_at": datetime.now(UTC).isoformat(),
            "file_count": len(tracked_files),
            "files": tracked_files[:500],
            "last_build_output": build_output[-4000:],
        }
        self.code_intel_path.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
        logger.info("Code intelligence refreshed (%d files)", len(tracked_files))

    def compact(self, keep: int = DEFAULT_HISTORY_KEEP) -> int:
        """Trim history to the newest `keep` records. Returns lines dropped."""
        if not self.history_path.exists():
            return 0
        lines = [line for line in self.history_path.read_text(encoding="utf-8").splitlines() if line]
        dropped = max(0, len(lines) - keep)
        if dropped:
            self.history_path.write_text("\n".join(lines[-keep:]) + "\n", encoding="utf-8")
            logger.info("Compacted memory history (dropped %d records)", dropped)
        return dropped

    def history(self) -> list[IterationRecord]:
        if not self.history_path.exists():
            return []
        return [
            IterationRecord.model_validate_json(line)
            for line in self.history_path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]

    def _load_heuristics(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.heuristics_path.exists():
            try:
                data = json.loads(self.heuristics_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                logger.warning("Ignoring unreadable heuristics: %s", e)
        for key in ("failure_counts", "co_failures", "file_counts", "signatures", "resolutions"):
            data.setdefault(key, {})
        return data

    def _save_heuristics(self, data: dict[str, Any]) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.heuristics_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
