"""Outer convergence and recovery loop.

Repeats the patch pipeline until one of:
  - an iteration passes build and tests (succeeded);
  - the tree stops changing for max_stagnant_iters iterations (converged);
  - max_loops iterations have run (exhausted);
  - the wall-clock limit passes (timed_out);
  - automated recovery fails too many times in a row (manual_intervention);
  - the run-wide token or cost budget is spent (budget_exhausted).

Each iteration runs in a mode (see modes.py). Idle iterations skip the
pipeline and converge after loop.idle_converge_iters of them.

Any exception escaping an iteration goes to the RecoverySupervisor, which
commits in-progress work, captures diagnostics, asks a coding agent to
fix the breakage and lets the loop carry on.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from src.agents.prompts import system_prompt
from src.agents.session import AgentSession
from src.agents.tool_registry import ToolRegistry
from src.core.config import AgentConfig, LoopConfig
from src.core.exceptions import AutoFixExhaustedError, BudgetExceededError, RepairLoopError
from src.core.models import AgentRole, IterationMode, LoopStatus, UnifiedDiff
from src.llm.budget import BudgetLedger
from src.memory.store import MemoryStore
from src.orchestrator.convergence import ConvergenceTracker, backlog_complete
from src.orchestrator.diagnostics import capture_error_context, write_error_context
from src.orchestrator.modes import force_mode, select_mode, write_mode
from src.orchestrator.observability import LoopObservability
from src.orchestrator.pipeline import PatchPipeline
from src.tools import git_ops
from src.tools.workspace import RepositoryTools

logger = logging.getLogger("repairloop.orchestrator.loop")


@dataclass
class LoopResult:
    status: LoopStatus
    iterations: int
    reason: str = ""

    @property
    def success(self) -> bool:
        return self.status.is_success


class AutoFixer(Protocol):
    def attempt(self, error_context: str) -> bool: ...


class AgentAutoFixer:
    """Asks a builder-role agent to repair whatever broke the loop.

    The fix counts as successful when the agent's diff applies (or it
    edited the tree directly) and the build passes afterwards.
    """

    _TASK = (
        "The autonomous repair loop crashed. Diagnose the failure described below and fix "
        "the repository so the loop can continue. Keep the change minimal."
    )

    def __init__(
        self,
        llm: Any,
        tools: RepositoryTools,
        deployment: str,
        config: Optional[AgentConfig] = None,
        ledger: Any = None,
    ):
        self.llm = llm
        self.tools = tools
        self.deployment = deployment
        self.config = config or AgentConfig()
        self.ledger = ledger
        self.registry = ToolRegistry(tools, max_output_chars=self.config.max_tool_output_chars)

    def attempt(self, error_context: str) -> bool:
        session = AgentSession(
            role=AgentRole.BUILDER,
            deployment=self.deployment,
            system_prompt=system_prompt(AgentRole.BUILDER),
            initial_context=f"{self._TASK}\n\n{error_context}",
            llm=self.llm,
            registry=self.registry,
            ledger=self.ledger,
            config=self.config,
            iteration_start_tokens=self.ledger.total_tokens if self.ledger is not None else 0,
            label="auto-fix",
        )
        outcome = session.run()
        if isinstance(outcome, UnifiedDiff):
            git_ops.apply_patch(self.tools.repo_path, outcome.text)
        elif not git_ops.has_changes(self.tools.repo_path):
            logger.warning("Auto-fix produced no changes (%s)", outcome.kind)
            return False

        build = self.tools.build()
        if not build.success:
            logger.warning("Auto-fix left the build broken")
            return False
        git_ops.commit(self.tools.repo_path, "repair loop: automated recovery fix")
        return True


class RecoverySupervisor:
    """Last line of defence around the loop body."""

    def __init__(
        self,
        repo_path: str,
        state_dir: Path,
        fixer: Optional[AutoFixer],
        max_attempts: int = 3,
        observability: Optional[LoopObservability] = None,
        keep_paths: Optional[list[str]] = None,
        forced_mode_file: str = "forced_mode.txt",
    ):
        self.repo_path = repo_path
        self.state_dir = Path(state_dir)
        self.fixer = fixer
        self.max_attempts = max_attempts
        self.observability = observability
        self.keep_paths = keep_paths or []
        self.forced_mode_path = self.state_dir / forced_mode_file
        self.consecutive_failures = 0

    def handle(self, error: BaseException, iteration: int) -> bool:
        """Recover from an uncaught error. Returns True when the fix worked.

        Raises:
            AutoFixExhaustedError: When the error follows max_attempts
                consecutive failed fixes.
        """
        self._log(f"Iteration {iteration} crashed: {type(error).__name__}: {error}")
        self._commit_in_progress(iteration)

        tail = self.observability.tail() if self.observability else ""
        context = capture_error_context(self.repo_path, error, iteration, log_tail=tail)
        write_error_context(context, self.state_dir)
        if self.consecutive_failures >= self.max_attempts:
            raise AutoFixExhaustedError(self.consecutive_failures, error)

        fixed = False
        if self.fixer is not None:
            try:
                fixed = self.fixer.attempt(context.to_text())
            except (RepairLoopError, OSError) as e:
                logger.error("Automated fix raised: %s", e)

        if fixed:
            self._log("Automated fix succeeded")
            self.consecutive_failures = 0
            return True

        self.consecutive_failures += 1
        self._log(f"Automated fix failed ({self.consecutive_failures}/{self.max_attempts})")
        self._fallback_reset()
        return False

    def reset(self) -> None:
        self.consecutive_failures = 0

    def _commit_in_progress(self, iteration: int) -> None:
        try:
            if git_ops.has_changes(self.repo_path):
                git_ops.commit(self.repo_path, f"repair loop: save work in progress (iteration {iteration})")
        except RepairLoopError as e:
            logger.warning("Could not commit in-progress work: %s", e)

    def _fallback_reset(self) -> None:
        try:
            git_ops.reset_hard(self.repo_path, keep=self.keep_paths)
        except RepairLoopError as e:
            logger.warning("Fallback reset failed: %s", e)
            self._log("Tree could not be reset; forcing stability mode")
            force_mode(self.forced_mode_path, IterationMode.STABILITY)

    def _log(self, message: str) -> None:
        if self.observability is not None:
            self.observability.log(message)
        else:
            logger.info(message)


class RepairLoop:
    """Drives PatchPipeline iterations to a terminal LoopResult."""

    def __init__(
        self,
        pipeline: PatchPipeline,
        convergence: ConvergenceTracker,
        recovery: RecoverySupervisor,
        config: Optional[LoopConfig] = None,
        memory: Optional[MemoryStore] = None,
        observability: Optional[LoopObservability] = None,
        ledger: Optional[BudgetLedger] = None,
        state_dir: Optional[Path] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.pipeline = pipeline
        self.convergence = convergence
        self.recovery = recovery
        self.config = config or LoopConfig()
        self.memory = memory
        self.observability = observability
        self.ledger = ledger
        self.state_dir = Path(state_dir) if state_dir else None
        self._clock = clock
        self._sleep = sleep
        self.iterations = 0
        self.modes: list[IterationMode] = []

    @property
    def backlog_path(self) -> Path:
        return Path(self.pipeline.repo_path) / self.config.backlog_file

    def run(self, max_loops: Optional[int] = None) -> LoopResult:
        max_loops = max_loops if max_loops is not None else self.config.max_loops
        deadline = self._clock() + self.config.max_wall_hours * 3600
        self.convergence.prime()
        self._status(f"running (max {max_loops} loops)")

        while self.iterations < max_loops:
            if self._clock() >= deadline:
                return self._finish(LoopStatus.TIMED_OUT, f"wall-clock limit of {self.config.max_wall_hours}h reached")
            breach = self._persistent_budget_breach()
            if breach is not None:
                return self._finish(LoopStatus.BUDGET_EXHAUSTED, str(breach))

            self.iterations += 1
            iteration = self.iterations
            mode = self._select_mode(iteration)
            self._log(f"Iteration {iteration}/{max_loops} starting (mode: {mode.value})")

            if mode is IterationMode.IDLE:
                idle_result = self._idle(iteration, max_loops)
                if idle_result is not None:
                    return idle_result
                continue

            try:
                outcome = self.pipeline.run_iteration(iteration, mode=mode)
            except Exception as e:  # noqa: BLE001 - recovery boundary for the whole loop body
                logger.exception("Iteration %d raised", iteration)
                try:
                    self.recovery.handle(e, iteration)
                except AutoFixExhaustedError as exhausted:
                    return self._finish(LoopStatus.MANUAL_INTERVENTION, str(exhausted))
                self._sleep(self.config.restart_pause_seconds)
                continue

            self.recovery.reset()
            if outcome.success:
                return self._finish(LoopStatus.SUCCEEDED, f"iteration {iteration} passed build and tests")
            if isinstance(outcome.error, BudgetExceededError) and outcome.error.persistent:
                return self._finish(LoopStatus.BUDGET_EXHAUSTED, str(outcome.error))

            self._log(f"Iteration {iteration} failed at {outcome.failure_kind}")
            if self.memory is not None and self.config.compact_every > 0 and iteration % self.config.compact_every == 0:
                self.memory.compact()

            if outcome.failure_kind == "budget":
                # an aborted iteration proves nothing about convergence
                continue
            self.convergence.observe(idle=backlog_complete(self.backlog_path))
            if self.convergence.converged:
                return self._finish(
                    LoopStatus.CONVERGED,
                    f"no content change for {self.convergence.stagnant_count} iteration(s)",
                )

        return self._finish(LoopStatus.EXHAUSTED, f"{max_loops} loop(s) ran without success")

    def _select_mode(self, iteration: int) -> IterationMode:
        mode = select_mode(iteration, self.config, self.backlog_path, self.state_dir)
        self.modes.append(mode)
        if self.state_dir is not None:
            write_mode(self.state_dir, mode)
        return mode

    def _idle(self, iteration: int, max_loops: int) -> Optional[LoopResult]:
        """Backlog is done: no builders, count toward convergence, wait for new work."""
        self._log(f"Iteration {iteration}: backlog complete, skipping the builder phase")
        self._status(f"iteration {iteration} idle (backlog complete)")
        stagnant = self.convergence.observe(idle=True)
        if stagnant >= self.config.idle_converge_iters or self.convergence.converged:
            return self._finish(LoopStatus.CONVERGED, f"backlog complete for {stagnant} idle iteration(s)")
        if self.iterations < max_loops:
            self._sleep(self.config.idle_pause_seconds)
        return None

    def _persistent_budget_breach(self) -> Optional[BudgetExceededError]:
        if self.ledger is None:
            return None
        try:
            self.ledger.enforce(self.ledger.total_tokens)
        except BudgetExceededError as e:
            if e.persistent:
                return e
        return None

    def _finish(self, status: LoopStatus, reason: str) -> LoopResult:
        result = LoopResult(status=status, iterations=self.iterations, reason=reason)
        self._log(f"Loop finished: {status.value} ({reason})")
        self._status(status.value)
        if self.observability is not None:
            self.observability.emit_event("loop_finished", {
                "status": status.value, "iterations": self.iterations, "reason": reason,
            })
            self.observability.flush_metrics()
        return result

    def _log(self, message: str) -> None:
        if self.observability is not None:
            self.observability.log(message)
        else:
            logger.info(message)

    def _status(self, status: str) -> None:
        if self.observability is not None:
            self.observability.set_status(status)
