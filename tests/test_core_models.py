"""Tests for src/core/models.py — Pydantic data models."""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import TypeAdapter, ValidationError

from src.core.models import (
    TOOL_CALL_ADAPTER,
    AgentRole,
    ConvergenceState,
    IterationRecord,
    LoopStatus,
    NoChanges,
    PatchCandidate,
    ProviderTierState,
    SearchFilesCall,
    SessionOutcome,
    StructuredError,
    TokenCostRecord,
    UnifiedDiff,
    WriteFileCall,
)


class TestEnums:
    def test_agent_roles(self):
        assert {r.value for r in AgentRole} == {"builder", "reviewer", "judge"}

    def test_success_statuses(self):
        assert LoopStatus.SUCCEEDED.is_success
        assert LoopStatus.CONVERGED.is_success
        assert not LoopStatus.EXHAUSTED.is_success
        assert not LoopStatus.TIMED_OUT.is_success
        assert not LoopStatus.MANUAL_INTERVENTION.is_success
        assert not LoopStatus.BUDGET_EXHAUSTED.is_success


class TestSessionOutcome:
    def test_discriminated_by_kind(self):
        adapter = TypeAdapter(SessionOutcome)
        assert isinstance(adapter.validate_python({"kind": "diff", "text": "--- a"}), UnifiedDiff)
        assert isinstance(adapter.validate_python({"kind": "no_changes"}), NoChanges)
        err = adapter.validate_python(
            {"kind": "error", "type": "parse_error", "role": "builder", "message": "bad"}
        )
        assert isinstance(err, StructuredError)
        assert err.timestamp.tzinfo is not None

    def test_candidate_render(self):
        diff = PatchCandidate(hypothesis="Fix tests", outcome=UnifiedDiff(text="--- a/x\n+++ b/x"))
        none = PatchCandidate(hypothesis="Fix core", outcome=NoChanges())
        err = PatchCandidate(
            hypothesis="Fix mocks",
            outcome=StructuredError(type="llm_error", role="builder", message="timeout"),
        )
        assert diff.render(1) == "### Candidate 1: Fix tests\n--- a/x\n+++ b/x"
        assert none.render(2).endswith("NO_CHANGES")
        assert "ERROR (llm_error): timeout" in err.render(3)


class TestToolCalls:
    def test_validate_search(self):
        call = TOOL_CALL_ADAPTER.validate_python({"tool": "search_files", "pattern": "*.py"})
        assert isinstance(call, SearchFilesCall)
        assert call.pattern == "*.py"

    def test_validate_write(self):
        call = TOOL_CALL_ADAPTER.validate_python({"tool": "write_file", "path": "a.py", "content": "x"})
        assert isinstance(call, WriteFileCall)

    def test_missing_parameter_rejected(self):
        with pytest.raises(ValidationError):
            TOOL_CALL_ADAPTER.validate_python({"tool": "write_file", "path": "a.py"})

    def test_unknown_tag_rejected(self):
        with pytest.raises(ValidationError):
            TOOL_CALL_ADAPTER.validate_python({"tool": "rm_rf"})


class TestIterationRecord:
    def test_round_trip(self):
        record = IterationRecord(
            iteration=7,
            failing_tests=["tests/test_a.py::test_one", "tests/test_b.py::test_two"],
            failing_files=["src/a.py"],
            build_ok=True,
            test_ok=False,
            diff_summary="src/a.py",
            attempts=["Fix the failing tests: diff"],
            failure_kind="test",
        )
        restored = IterationRecord.from_json(record.to_json())
        assert restored.iteration == 7
        assert restored.failing_tests == record.failing_tests
        assert restored.failing_files == ["src/a.py"]
        assert restored.build_ok is True
        assert restored.test_ok is False
        assert restored == record

    def test_serialized_field_names(self):
        text = IterationRecord(iteration=1, failing_tests=["t"]).to_json()
        for key in ("lastFailures", "recentFiles", "lastDiffSummary", "lastAttempts", "lastBuildOk", "lastTestOk"):
            assert f'"{key}"' in text

    def test_accepts_field_names(self):
        record = IterationRecord.model_validate({"iteration": 2, "lastFailures": ["x"]})
        assert record.failing_tests == ["x"]


class TestProviderTierState:
    def test_cooldown_elapsed(self):
        then = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        state = ProviderTierState(name="free", exhausted=True, exhausted_at=then, cooldown_minutes=60)
        assert not state.cooldown_elapsed(then + timedelta(minutes=59))
        assert state.cooldown_elapsed(then + timedelta(minutes=60))

    def test_no_cooldown_never_elapses(self):
        then = datetime(2026, 1, 1, tzinfo=UTC)
        state = ProviderTierState(name="primary", exhausted=True, exhausted_at=then)
        assert not state.cooldown_elapsed(then + timedelta(days=2))


class TestMisc:
    def test_convergence_defaults(self):
        s = ConvergenceState()
        assert s.last_content_hash is None
        assert s.stagnant_count == 0

    def test_token_cost_record_ids_unique(self):
        assert TokenCostRecord().id != TokenCostRecord().id
