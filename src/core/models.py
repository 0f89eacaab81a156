"""All Pydantic data models for the repair loop.

Defines the data contracts shared by agent sessions, the patch pipeline,
the provider supervisor and the outer loop. Persisted shapes (iteration
records, tier state, convergence state) round-trip through these models.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime, timedelta
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def _new_uuid() -> uuid.UUID:
    return uuid.uuid4()


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AgentRole(str, enum.Enum):
    BUILDER = "builder"
    REVIEWER = "reviewer"
    JUDGE = "judge"


class LoopStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    TIMED_OUT = "timed_out"
    MANUAL_INTERVENTION = "manual_intervention"
    BUDGET_EXHAUSTED = "budget_exhausted"

    @property
    def is_success(self) -> bool:
        return self in (LoopStatus.SUCCEEDED, LoopStatus.CONVERGED)


class IterationMode(str, enum.Enum):
    """Focus of one outer iteration. Idle skips the builder phase entirely."""
    NORMAL = "normal"
    BUGHUNT = "bughunt"
    STABILITY = "stability"
    IDLE = "idle"


# ---------------------------------------------------------------------------
# Session outcomes
# ---------------------------------------------------------------------------

class UnifiedDiff(BaseModel):
    kind: Literal["diff"] = "diff"
    text: str


class NoChanges(BaseModel):
    kind: Literal["no_changes"] = "no_changes"
    reason: str = ""


class StructuredError(BaseModel):
    kind: Literal["error"] = "error"
    type: str
    role: str
    message: str
    timestamp: datetime = Field(default_factory=_now)


SessionOutcome = Annotated[
    Union[UnifiedDiff, NoChanges, StructuredError],
    Field(discriminator="kind"),
]


class PatchCandidate(BaseModel):
    """One builder session's result, kept for the judge whatever it is."""
    hypothesis: str
    outcome: SessionOutcome

    def render(self, index: int) -> str:
        header = f"### Candidate {index}: {self.hypothesis}"
        if isinstance(self.outcome, UnifiedDiff):
            return f"{header}\n{self.outcome.text}"
        if isinstance(self.outcome, NoChanges):
            return f"{header}\nNO_CHANGES"
        return f"{header}\nERROR ({self.outcome.type}): {self.outcome.message}"


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------

class SearchFilesCall(BaseModel):
    tool: Literal["search_files"] = "search_files"
    pattern: str


class WriteFileCall(BaseModel):
    tool: Literal["write_file"] = "write_file"
    path: str
    content: str


class RunTestsCall(BaseModel):
    tool: Literal["run_tests"] = "run_tests"


class GetCoverageCall(BaseModel):
    tool: Literal["get_coverage"] = "get_coverage"


class GetSymbolsCall(BaseModel):
    tool: Literal["get_symbols"] = "get_symbols"
    path: str


class ShowDiffCall(BaseModel):
    tool: Literal["show_diff"] = "show_diff"


ToolCall = Annotated[
    Union[SearchFilesCall, WriteFileCall, RunTestsCall, GetCoverageCall, GetSymbolsCall, ShowDiffCall],
    Field(discriminator="tool"),
]

TOOL_CALL_ADAPTER: TypeAdapter = TypeAdapter(ToolCall)


# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------

class IterationRecord(BaseModel):
    """Outcome of one outer iteration, read back to seed the next one."""
    model_config = ConfigDict(populate_by_name=True)

    iteration: int
    chosen_patch: str = Field(default="", alias="chosenPatch")
    build_ok: bool = Field(default=False, alias="lastBuildOk")
    test_ok: bool = Field(default=False, alias="lastTestOk")
    failing_tests: list[str] = Field(default_factory=list, alias="lastFailures")
    failing_files: list[str] = Field(default_factory=list, alias="recentFiles")
    diff_summary: str = Field(default="", alias="lastDiffSummary")
    attempts: list[str] = Field(default_factory=list, alias="lastAttempts")
    failure_kind: Optional[str] = Field(default=None, alias="failureKind")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, text: str) -> "IterationRecord":
        return cls.model_validate_json(text)


class ProviderTierState(BaseModel):
    name: str
    exhausted: bool = False
    exhausted_at: Optional[datetime] = None
    cooldown_minutes: Optional[int] = None

    def cooldown_elapsed(self, now: datetime) -> bool:
        """True when a cooldown-bearing tier has waited long enough to retry."""
        if not self.exhausted or self.cooldown_minutes is None or self.exhausted_at is None:
            return False
        return now - self.exhausted_at >= timedelta(minutes=self.cooldown_minutes)


class ConvergenceState(BaseModel):
    last_content_hash: Optional[str] = None
    stagnant_count: int = 0


# ---------------------------------------------------------------------------
# Token cost tracking
# ---------------------------------------------------------------------------

class TokenCostRecord(BaseModel):
    """Per-call token usage record for the budget ledger."""
    id: uuid.UUID = Field(default_factory=_new_uuid)
    agent_role: str = ""
    deployment: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_gbp: float = 0.0
    created_at: datetime = Field(default_factory=_now)
