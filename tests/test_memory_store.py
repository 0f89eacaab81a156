"""Tests for src/memory/store.py — file-backed iteration memory."""

import json

from src.core.models import IterationRecord
from src.memory.store import MemoryStore


def _record(iteration: int, **kwargs) -> IterationRecord:
    return IterationRecord(iteration=iteration, **kwargs)


class TestPriorState:
    def test_empty_store(self, tmp_path):
        assert MemoryStore(tmp_path).read_prior_state() is None

    def test_round_trip(self, tmp_path):
        store = MemoryStore(tmp_path)
        record = _record(
            3, failing_tests=["t::a", "t::b"], failing_files=["src/a.py"],
            build_ok=True, test_ok=False, failure_kind="test",
        )
        store.record_outcome(record)
        restored = store.read_prior_state()
        assert restored.iteration == 3
        assert restored.failing_tests == ["t::a", "t::b"]
        assert restored.failing_files == ["src/a.py"]
        assert (restored.build_ok, restored.test_ok) == (True, False)

    def test_wire_format_on_disk(self, tmp_path):
        store = MemoryStore(tmp_path)
        store.record_outcome(_record(1, failing_tests=["x"]))
        data = json.loads((tmp_path / "memory" / "iteration.json").read_text())
        assert data["iteration"] == 1
        assert data["lastFailures"] == ["x"]
        assert data["lastBuildOk"] is False

    def test_corrupt_record_ignored(self, tmp_path):
        store = MemoryStore(tmp_path)
        store.root.mkdir(parents=True)
        store.record_path.write_text("{broken")
        assert store.read_prior_state() is None


class TestSuggestFix:
    def test_nothing_failing(self, tmp_path):
        assert MemoryStore(tmp_path).suggest_fix([], []) is None

    def test_single_failure_gives_no_hint(self, tmp_path):
        store = MemoryStore(tmp_path)
        store.update_heuristics(["t::a"], ["src/a.py"])
        assert store.suggest_fix(["t::a"], ["src/a.py"]) is None

    def test_recurring_failure_names_co_failing_files(self, tmp_path):
        store = MemoryStore(tmp_path)
        store.update_heuristics(["t::a"], ["src/a.py", "src/b.py"])
        store.update_heuristics(["t::a"], ["src/a.py"])
        hint = store.suggest_fix(["t::a"], ["src/a.py"])
        assert hint.startswith("Suggested focus")
        assert "t::a has failed 2 times, usually together with src/a.py, src/b.py" in hint
        assert "Files failing repeatedly: src/a.py" in hint

    def test_resolution_reused(self, tmp_path):
        store = MemoryStore(tmp_path)
        store.record_outcome(_record(1, failing_tests=["t::a"], test_ok=False))
        store.record_outcome(_record(2, build_ok=True, test_ok=True, diff_summary="1 file(s) changed: src/a.py"))
        hint = store.suggest_fix(["t::a"], [])
        assert "t::a was previously fixed by: 1 file(s) changed: src/a.py" in hint


class TestHousekeeping:
    def test_history_and_compact(self, tmp_path):
        store = MemoryStore(tmp_path)
        for i in range(1, 8):
            store.record_outcome(_record(i))
        assert [r.iteration for r in store.history()] == list(range(1, 8))
        assert store.compact(keep=3) == 4
        assert [r.iteration for r in store.history()] == [5, 6, 7]
        assert store.compact(keep=3) == 0

    def test_compact_without_history(self, tmp_path):
        assert MemoryStore(tmp_path).compact() == 0

    def test_error_signatures_counted(self, tmp_path):
        store = MemoryStore(tmp_path)
        store.update_heuristics([], [], 'File "/a/x.py", line 3: boom')
        store.update_heuristics([], [], 'File "/b/y.py", line 9: boom')
        data = json.loads(store.heuristics_path.read_text())
        assert list(data["signatures"].values()) == [2]

    def test_code_intel_snapshot(self, tmp_path):
        store = MemoryStore(tmp_path)
        store.refresh_code_intel(["a.py", "b.py"], "error CS1002")
        data = json.loads(store.code_intel_path.read_text())
        assert data["file_count"] == 2
        assert data["last_build_output"] == "error CS1002"
