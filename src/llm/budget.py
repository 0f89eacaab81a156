"""Token and cost budget ledger for LLM calls.

Every adapter call reports its usage here; the pipeline calls enforce()
after each LLM call and at the end of each outer iteration. Counters only
ever grow for the lifetime of a run. A JSONL shadow log of per-call usage
is written when a path is configured.
"""

from __future__ import annotations

import json
import logging
import math
import numbers
from pathlib import Path
from typing import Any, Optional

from src.core.config import BudgetConfig
from src.core.exceptions import (
    CostBudgetExceeded,
    IterationBudgetExceeded,
    TotalBudgetExceeded,
)
from src.core.models import TokenCostRecord

logger = logging.getLogger("repairloop.llm.budget")


class BudgetLedger:
    """Process-wide token counters with iteration, total and cost ceilings.

    Usage:
        ledger = BudgetLedger.from_config(config.budget)
        start = ledger.total_tokens
        ledger.add_usage(prompt=120, completion=40)
        ledger.enforce(start)   # raises a BudgetExceededError subclass

    The ledger is not synchronized. Callers that share one instance must
    not record usage from several threads at once.
    """

    def __init__(
        self,
        max_iteration_tokens: int,
        max_total_tokens: int,
        max_cost_gbp: float,
        prompt_cost_per_1k: float = 0.0,
        completion_cost_per_1k: float = 0.0,
        jsonl_path: Optional[str | Path] = None,
    ):
        self.max_iteration_tokens = max_iteration_tokens
        self.max_total_tokens = max_total_tokens
        self.max_cost_gbp = max_cost_gbp
        self.prompt_cost_per_1k = prompt_cost_per_1k
        self.completion_cost_per_1k = completion_cost_per_1k
        self.jsonl_path = Path(jsonl_path) if jsonl_path else None
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._call_count = 0

    @classmethod
    def from_config(cls, config: BudgetConfig, state_dir: Optional[Path] = None) -> "BudgetLedger":
        jsonl_path: Optional[Path] = None
        if config.jsonl_path:
            jsonl_path = Path(config.jsonl_path)
            if state_dir is not None and not jsonl_path.is_absolute():
                jsonl_path = state_dir / jsonl_path
        return cls(
            max_iteration_tokens=config.max_iteration_tokens,
            max_total_tokens=config.max_total_tokens,
            max_cost_gbp=config.max_cost_gbp,
            prompt_cost_per_1k=config.prompt_cost_per_1k,
            completion_cost_per_1k=config.completion_cost_per_1k,
            jsonl_path=jsonl_path,
        )

    @property
    def prompt_tokens(self) -> int:
        return self._prompt_tokens

    @property
    def completion_tokens(self) -> int:
        return self._completion_tokens

    @property
    def total_tokens(self) -> int:
        return self._prompt_tokens + self._completion_tokens

    @property
    def estimated_cost(self) -> float:
        return (
            self._prompt_tokens / 1000.0 * self.prompt_cost_per_1k
            + self._completion_tokens / 1000.0 * self.completion_cost_per_1k
        )

    def add_usage(
        self,
        prompt: Any,
        completion: Any,
        role: str = "",
        deployment: str = "",
    ) -> TokenCostRecord:
        """Record one call's usage.

        Raises:
            ValueError: If either count is negative, non-finite or not a number.
        """
        _validate_count("prompt", prompt)
        _validate_count("completion", completion)

        self._prompt_tokens += prompt
        self._completion_tokens += completion
        self._call_count += 1

        record = TokenCostRecord(
            agent_role=role,
            deployment=deployment,
            prompt_tokens=int(prompt),
            completion_tokens=int(completion),
            total_tokens=int(prompt + completion),
            cost_gbp=(
                prompt / 1000.0 * self.prompt_cost_per_1k
                + completion / 1000.0 * self.completion_cost_per_1k
            ),
        )
        self._persist_to_jsonl(record)
        logger.debug(
            "Usage recorded: role=%s prompt=%s completion=%s total=%s",
            role, prompt, completion, self.total_tokens,
        )
        return record

    def enforce(self, iteration_start_tokens: int = 0) -> None:
        """Check the three ceilings in order: iteration, total, cost.

        Pure with respect to ledger state, so repeated calls with the same
        argument give the same verdict.
        """
        used = self.total_tokens - iteration_start_tokens
        if used > self.max_iteration_tokens:
            raise IterationBudgetExceeded(used, self.max_iteration_tokens)

        if self.total_tokens > self.max_total_tokens:
            raise TotalBudgetExceeded(self.total_tokens, self.max_total_tokens)

        cost = self.estimated_cost
        if cost > self.max_cost_gbp:
            raise CostBudgetExceeded(
                cost, self.max_cost_gbp, self._prompt_tokens, self._completion_tokens,
            )

    def reset(self) -> None:
        """Start a new run. Only the driver calls this, never mid-run."""
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._call_count = 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "prompt_tokens": self._prompt_tokens,
            "completion_tokens": self._completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost_gbp": round(self.estimated_cost, 6),
            "call_count": self._call_count,
        }

    def _persist_to_jsonl(self, record: TokenCostRecord) -> None:
        if self.jsonl_path is None:
            return
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            entry = {
                "id": str(record.id),
                "agent_role": record.agent_role,
                "deployment": record.deployment,
                "prompt_tokens": record.prompt_tokens,
                "completion_tokens": record.completion_tokens,
                "total_tokens": record.total_tokens,
                "cost_gbp": record.cost_gbp,
                "created_at": record.created_at.isoformat(),
            }
            with open(self.jsonl_path, "a") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.warning("Failed to write token usage to JSONL: %s", e)


def _validate_count(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ValueError(f"{name} token count must be numeric, got {type(value).__name__}")
    if not math.isfinite(value):
        raise ValueError(f"{name} token count must be finite, got {value}")
    if value < 0:
        raise ValueError(f"{name} token count must be non-negative, got {value}")
