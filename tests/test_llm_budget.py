"""Tests for src/llm/budget.py — token and cost budget ledger."""

import json
import math
import random
from decimal import Decimal
from pathlib import Path

import pytest

from src.core.config import BudgetConfig
from src.core.exceptions import CostBudgetExceeded, IterationBudgetExceeded, TotalBudgetExceeded
from src.core.models import TokenCostRecord
from src.llm.budget import BudgetLedger


def _ledger(**overrides) -> BudgetLedger:
    settings = dict(max_iteration_tokens=100, max_total_tokens=1_000, max_cost_gbp=100.0)
    settings.update(overrides)
    return BudgetLedger(**settings)


class TestAddUsage:
    def test_returns_record(self):
        ledger = _ledger(prompt_cost_per_1k=1.0, completion_cost_per_1k=2.0)
        record = ledger.add_usage(1000, 500, role="builder", deployment="dep")
        assert isinstance(record, TokenCostRecord)
        assert record.total_tokens == 1500
        assert record.cost_gbp == pytest.approx(2.0)
        assert record.agent_role == "builder"

    @pytest.mark.parametrize("bad", [-1, -0.5, "10", None, [1], True, math.nan, math.inf])
    def test_rejects_bad_prompt(self, bad):
        ledger = _ledger()
        with pytest.raises(ValueError):
            ledger.add_usage(bad, 1)
        assert ledger.total_tokens == 0

    @pytest.mark.parametrize("bad", [-3, "x", None, False, -math.inf])
    def test_rejects_bad_completion(self, bad):
        ledger = _ledger()
        with pytest.raises(ValueError):
            ledger.add_usage(1, bad)
        assert ledger.total_tokens == 0

    def test_accepts_zero(self):
        ledger = _ledger()
        ledger.add_usage(0, 0)
        assert ledger.total_tokens == 0

    def test_total_is_sum_in_any_order(self):
        rng = random.Random(1234)
        pairs = [(rng.randint(0, 500), rng.randint(0, 500)) for _ in range(50)]
        expected = sum(p + c for p, c in pairs)
        for _ in range(5):
            rng.shuffle(pairs)
            ledger = _ledger(max_total_tokens=10**9)
            for p, c in pairs:
                ledger.add_usage(p, c)
            assert ledger.total_tokens == expected
            assert ledger.prompt_tokens == sum(p for p, _ in pairs)

    def test_rejects_decimal(self):
        ledger = _ledger()
        with pytest.raises(ValueError, match="Decimal"):
            ledger.add_usage(Decimal(3), 2)
        assert ledger.total_tokens == 0
        assert ledger.estimated_cost == 0


class TestEnforce:
    def test_iteration_budget_message_names_counts(self):
        ledger = _ledger(max_iteration_tokens=100)
        ledger.add_usage(80, 30)
        with pytest.raises(IterationBudgetExceeded) as exc_info:
            ledger.enforce(0)
        assert "110" in str(exc_info.value)
        assert "100" in str(exc_info.value)

    def test_equal_to_limit_is_allowed(self):
        ledger = _ledger(max_iteration_tokens=100)
        ledger.add_usage(60, 40)
        ledger.enforce(0)

    def test_iteration_measured_from_start(self):
        ledger = _ledger(max_iteration_tokens=100, max_total_tokens=10_000)
        ledger.add_usage(500, 0)
        start = ledger.total_tokens
        ledger.add_usage(50, 40)
        ledger.enforce(start)
        ledger.add_usage(20, 0)
        with pytest.raises(IterationBudgetExceeded):
            ledger.enforce(start)

    def test_iteration_checked_regardless_of_total(self):
        ledger = _ledger(max_iteration_tokens=100, max_total_tokens=50)
        ledger.add_usage(200, 0)
        with pytest.raises(IterationBudgetExceeded):
            ledger.enforce(0)

    def test_total_budget(self):
        ledger = _ledger(max_iteration_tokens=100, max_total_tokens=150)
        ledger.add_usage(100, 0)
        start = ledger.total_tokens
        ledger.add_usage(60, 0)
        with pytest.raises(TotalBudgetExceeded):
            ledger.enforce(start)

    def test_cost_budget(self):
        ledger = _ledger(
            max_iteration_tokens=10_000, max_total_tokens=10_000, max_cost_gbp=0.5,
            prompt_cost_per_1k=1.0,
        )
        ledger.add_usage(1000, 0)
        with pytest.raises(CostBudgetExceeded) as exc_info:
            ledger.enforce(0)
        assert exc_info.value.prompt_tokens == 1000

    def test_enforce_is_repeatable(self):
        ledger = _ledger(max_iteration_tokens=10)
        ledger.add_usage(20, 0)
        for _ in range(3):
            with pytest.raises(IterationBudgetExceeded):
                ledger.enforce(0)
        assert ledger.total_tokens == 20


class TestLifecycle:
    def test_reset_and_snapshot(self):
        ledger = _ledger()
        ledger.add_usage(10, 5)
        snap = ledger.snapshot()
        assert snap["total_tokens"] == 15
        assert snap["call_count"] == 1
        ledger.reset()
        assert ledger.total_tokens == 0

    def test_from_config_puts_jsonl_under_state_dir(self, tmp_path):
        ledger = BudgetLedger.from_config(BudgetConfig(), state_dir=tmp_path)
        assert ledger.jsonl_path == tmp_path / "token_usage.jsonl"
        assert ledger.max_total_tokens == 2_000_000

    def test_jsonl_shadow_log(self, tmp_path):
        path = tmp_path / "usage.jsonl"
        ledger = _ledger(jsonl_path=path)
        ledger.add_usage(3, 4, role="judge", deployment="dep-j")
        ledger.add_usage(1, 1, role="builder")
        lines = path.read_text().splitlines()
        assert len(lines) == 2
        entry = json.loads(lines[0])
        assert entry["agent_role"] == "judge"
        assert entry["total_tokens"] == 7
