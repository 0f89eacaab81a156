"""Multi-candidate patch pipeline: one outer iteration of the repair loop.

Stages, in order:
    reset -> load memory -> builder session per hypothesis -> judge ->
    reviewer -> diff-shape check -> apply -> build -> test -> record

Builder sessions run one at a time because they share the budget ledger.
Only a green build and test commits the tree; every other outcome is
recorded and the next iteration starts again from the committed baseline.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from src.agents.prompts import system_prompt
from src.agents.session import AgentSession
from src.agents.tool_registry import ToolRegistry
from src.core.config import AppConfig, PromptLoader
from src.core.exceptions import (
    BudgetExceededError,
    BuildFailedError,
    FailingTestsError,
    InvalidDiffError,
    PatchApplyError,
    PatchError,
)
from src.core.models import (
    AgentRole,
    IterationMode,
    IterationRecord,
    PatchCandidate,
    StructuredError,
    UnifiedDiff,
)
from src.llm.budget import BudgetLedger
from src.llm.response_parser import is_no_changes, is_unified_diff, strip_code_fences, summarize_diff
from src.memory.store import MemoryStore
from src.orchestrator.modes import mode_context
from src.orchestrator.observability import LoopObservability
from src.orchestrator.test_output import extract_failures
from src.tools import git_ops
from src.tools.workspace import RepositoryTools

logger = logging.getLogger("repairloop.orchestrator.pipeline")

HYPOTHESES = (
    "Fix the failing tests",
    "Fix the core services",
    "Fix the test setup and mocks",
)


@dataclass
class IterationOutcome:
    """What one pass of the pipeline produced."""
    iteration: int
    record: IterationRecord
    failure_kind: Optional[str] = None
    message: str = ""
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.failure_kind is None


class PatchPipeline:
    """Runs one repair attempt against a repository.

    Injected dependencies:
        llm: ChatCompletionClient or ProviderTierSupervisor.
        tools: RepositoryTools for the checkout being repaired.
        memory: MemoryStore holding records and heuristics.
        ledger: BudgetLedger shared by every session in the run.
    """

    def __init__(
        self,
        llm: Any,
        tools: RepositoryTools,
        memory: MemoryStore,
        ledger: BudgetLedger,
        config: Optional[AppConfig] = None,
        prompt_loader: Optional[PromptLoader] = None,
        observability: Optional[LoopObservability] = None,
    ):
        self.llm = llm
        self.tools = tools
        self.memory = memory
        self.ledger = ledger
        self.config = config or AppConfig()
        self.prompt_loader = prompt_loader or PromptLoader()
        self.observability = observability
        self.registry = ToolRegistry(tools, max_output_chars=self.config.agent.max_tool_output_chars)
        self._prepared = False

    @property
    def repo_path(self) -> str:
        return self.tools.repo_path

    def prepare(self) -> None:
        """Keep the state directory out of status, clean and commits."""
        if self._prepared:
            return
        state_dir = self.config.repo.state_dir
        if not os.path.isabs(state_dir):
            git_ops.exclude_path(self.repo_path, state_dir.rstrip("/") + "/")
        self._prepared = True

    def run_iteration(self, iteration: int, mode: IterationMode = IterationMode.NORMAL) -> IterationOutcome:
        """Run every stage once.

        Budget violations end this iteration and come back as a "budget"
        outcome carrying the exception; the loop decides whether the run
        can go on. ForbiddenToolError propagates.
        """
        self.prepare()
        self._reset_tree()
        prior = self.memory.read_prior_state()
        hint = None
        if prior is not None:
            hint = self.memory.suggest_fix(prior.failing_tests, prior.failing_files)
        start_tokens = self.ledger.total_tokens
        record = IterationRecord(iteration=iteration)
        if prior is not None:
            record.failing_tests = list(prior.failing_tests)
            record.failing_files = list(prior.failing_files)

        try:
            outcome = self._attempt(iteration, prior, hint, start_tokens, record, mode)
            self.ledger.enforce(start_tokens)
        except BudgetExceededError as e:
            logger.warning("Iteration %d aborted: %s", iteration, e)
            record.failure_kind = "budget"
            outcome = IterationOutcome(iteration, record, "budget", str(e), error=e)

        if outcome.success:
            git_ops.commit(self.repo_path, f"repair loop: iteration {iteration} passes build and tests")

        self.memory.record_outcome(outcome.record)
        self._emit("iteration_complete", {
            "iteration": iteration,
            "failure_kind": outcome.failure_kind,
            "mode": mode.value,
            "tokens": self.ledger.total_tokens - start_tokens,
        })
        return outcome

    # -- stages --------------------------------------------------------------

    def _attempt(
        self,
        iteration: int,
        prior: Optional[IterationRecord],
        hint: Optional[str],
        start_tokens: int,
        record: IterationRecord,
        mode: IterationMode = IterationMode.NORMAL,
    ) -> IterationOutcome:
        hypotheses = list(HYPOTHESES)
        if hint:
            hypotheses.insert(0, "Apply the suggested fix from memory")

        focus = mode_context(mode)
        candidates = self._build_candidates(hypotheses, prior, hint, start_tokens, focus)
        record.attempts = [f"{c.hypothesis}: {_outcome_label(c)}" for c in candidates]

        chosen, judge_error = self._judge(candidates, start_tokens)
        if judge_error is not None:
            record.attempts.append(f"judge: {judge_error.type}")
            return self._judge_failure(iteration, record, judge_error)
        final = self._review(chosen, start_tokens, focus)
        record.chosen_patch = final
        record.diff_summary = summarize_diff(final) if is_unified_diff(final) else ""

        try:
            self._validate(final)
            git_ops.apply_patch(self.repo_path, final)
            self._build(record)
            self._test(record)
        except PatchError as e:
            return self._failure(iteration, record, e)

        record.build_ok = True
        record.test_ok = True
        record.failing_tests = []
        record.failing_files = []
        record.failure_kind = None
        self._emit("patch_succeeded", {"iteration": iteration, "summary": record.diff_summary})
        return IterationOutcome(iteration, record)

    def _build_candidates(
        self,
        hypotheses: list[str],
        prior: Optional[IterationRecord],
        hint: Optional[str],
        start_tokens: int,
        focus: str = "",
    ) -> list[PatchCandidate]:
        candidates: list[PatchCandidate] = []
        for hypothesis in hypotheses:
            session = self._session(
                AgentRole.BUILDER,
                self._builder_context(hypothesis, prior, hint, focus),
                start_tokens,
                label=f"builder:{hypothesis}",
            )
            outcome = session.run()
            candidates.append(PatchCandidate(hypothesis=hypothesis, outcome=outcome))
            # write_file edits are scratch; each hypothesis starts from the baseline
            self._reset_tree()
        return candidates

    def _judge(
        self, candidates: list[PatchCandidate], start_tokens: int,
    ) -> tuple[str, Optional[StructuredError]]:
        rendered = "\n\n".join(c.render(i) for i, c in enumerate(candidates, start=1))
        session = self._session(AgentRole.JUDGE, rendered, start_tokens)
        reply = session.complete_once()
        return reply, session.error

    def _review(self, chosen: str, start_tokens: int, focus: str = "") -> str:
        """Let the reviewer replace the chosen patch, but only with a diff."""
        context = f"Chosen patch:\n{chosen}" if chosen.strip() else "The judge chose no patch."
        if focus:
            context = f"{focus}\n\n{context}"
        session = self._session(AgentRole.REVIEWER, context, start_tokens)
        outcome = session.run()
        reply = session.last_reply

        if isinstance(outcome, UnifiedDiff):
            logger.info("Reviewer replaced the chosen patch")
            return outcome.text
        if reply.strip() and not is_no_changes(reply):
            logger.warning("Reviewer output is not a diff; keeping the judge's patch")
        return strip_code_fences(chosen)

    def _validate(self, patch: str) -> None:
        if not is_unified_diff(patch):
            raise InvalidDiffError(f"Chosen patch is not a unified diff: {patch[:120]!r}")

    def _build(self, record: IterationRecord) -> None:
        result = self.tools.build()
        if not result.success:
            self.memory.refresh_code_intel(git_ops.tracked_files(self.repo_path), result.output)
            raise BuildFailedError(result.output[-2000:] or f"build exited {result.return_code}")
        record.build_ok = True

    def _test(self, record: IterationRecord) -> None:
        result = self.tools.test()
        if result.success:
            return
        failures = extract_failures(result.output, self.repo_path)
        record.failing_tests = failures.tests
        record.failing_files = failures.files
        self.memory.update_heuristics(failures.tests, failures.files, result.output[-2000:])
        raise FailingTestsError(
            f"{len(failures.tests)} failing test(s)" if failures.tests else result.output[-2000:]
        )

    def _failure(self, iteration: int, record: IterationRecord, error: PatchError) -> IterationOutcome:
        kinds = {
            InvalidDiffError: "formatting",
            PatchApplyError: "apply",
            BuildFailedError: "build",
            FailingTestsError: "test",
        }
        kind = kinds.get(type(error), "patch")
        record.failure_kind = kind
        logger.info("Iteration %d failed at %s: %s", iteration, kind, str(error)[:300])
        self._emit("patch_failed", {"iteration": iteration, "kind": kind})
        return IterationOutcome(iteration, record, kind, str(error))

    def _judge_failure(self, iteration: int, record: IterationRecord, error: StructuredError) -> IterationOutcome:
        record.failure_kind = error.type
        logger.info("Iteration %d: judge failed (%s): %s", iteration, error.type, error.message[:300])
        self._emit("patch_failed", {"iteration": iteration, "kind": error.type})
        return IterationOutcome(iteration, record, error.type, error.message)

    # -- helpers -------------------------------------------------------------

    def _session(
        self,
        role: AgentRole,
        context: str,
        start_tokens: int,
        label: str = "",
    ) -> AgentSession:
        return AgentSession(
            role=role,
            deployment=self.config.llm.deployment_for(
                role.value, required=not self.config.providers.enabled,
            ),
            system_prompt=system_prompt(role, self.prompt_loader),
            initial_context=context,
            llm=self.llm,
            registry=self.registry,
            ledger=self.ledger,
            config=self.config.agent,
            iteration_start_tokens=start_tokens,
            label=label,
        )

    def _builder_context(
        self,
        hypothesis: str,
        prior: Optional[IterationRecord],
        hint: Optional[str],
        focus: str = "",
    ) -> str:
        parts = [f"Hypothesis: {hypothesis}"]
        if focus:
            parts.append(focus)
        if prior is not None and not (prior.build_ok and prior.test_ok):
            if prior.failing_tests:
                parts.append("Failing tests:\n" + "\n".join(f"- {t}" for t in prior.failing_tests))
            if prior.failing_files:
                parts.append("Files involved:\n" + "\n".join(f"- {f}" for f in prior.failing_files))
            if prior.failure_kind:
                parts.append(f"Last iteration failed at: {prior.failure_kind}")
            if prior.chosen_patch.strip():
                parts.append(f"Patch that produced these failures:\n{prior.chosen_patch}")
            if prior.attempts:
                parts.append("Previous attempts:\n" + "\n".join(f"- {a}" for a in prior.attempts))
        if hint:
            parts.append(hint)
        return "\n\n".join(parts)

    def _reset_tree(self) -> None:
        git_ops.reset_hard(self.repo_path, keep=[self.config.repo.state_dir])

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.observability is not None:
            self.observability.emit_event(event_type, payload)


def _outcome_label(candidate: PatchCandidate) -> str:
    if isinstance(candidate.outcome, StructuredError):
        return f"error ({candidate.outcome.type})"
    return candidate.outcome.kind
