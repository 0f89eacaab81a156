"""Best-effort persona mode.

Several independently prompted sessions work on the same checkout at
once, in two phases:

    builders (parallel) -> join -> apply diffs + commit
    reviewers per diff chunk (parallel) -> join -> apply diffs + commit
    backlog groomer -> apply diff + commit

There is no locking between personas. Direct write_file edits race, and
diffs are applied in persona order after the join, so conflicts resolve
as last-writer-wins at each commit point. A diff that no longer applies
is skipped. Personas do not share the budget ledger and the loop's
budget limits are not enforced here.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional

from src.agents.prompts import system_prompt
from src.agents.session import AgentSession
from src.agents.tool_registry import ToolRegistry
from src.core.config import AppConfig, PromptLoader
from src.core.exceptions import PatchApplyError, RepairLoopError
from src.core.models import AgentRole, SessionOutcome, UnifiedDiff
from src.llm.response_parser import chunk_diff
from src.tools import git_ops
from src.tools.workspace import RepositoryTools

logger = logging.getLogger("repairloop.orchestrator.personas")

PERSONA_FOCUS = {
    "bugfix_builder": "Find and fix bugs that make the build or tests fail.",
    "feature_builder": "Finish incomplete features listed in the backlog.",
    "test_builder": "Add or repair tests for code that lacks coverage.",
    "improver": "Make small, safe improvements to readability and structure.",
    "autonomous_reviewer": "Review the changes for correctness and regressions.",
    "security_reviewer": "Review the changes for security problems.",
    "performance_reviewer": "Review the changes for performance problems.",
    "test_quality_reviewer": "Review the tests in the changes for weak or missing assertions.",
    "backlog_groomer": (
        "Keep the backlog current. Add each real issue you find (TODO/FIXME comments, "
        "missing error handling, untested code) as an unchecked item with file:line "
        "evidence, tick items the code shows are done, and never add duplicates."
    ),
}


@dataclass
class PersonaResult:
    persona: str
    outcome: Optional[SessionOutcome] = None
    error: str = ""
    applied: bool = False


@dataclass
class PersonaRunReport:
    base_commit: str
    builders: list[PersonaResult] = field(default_factory=list)
    reviewers: list[PersonaResult] = field(default_factory=list)
    groomer: Optional[PersonaResult] = None
    builder_commit: str = ""
    reviewer_commit: str = ""
    groomer_commit: str = ""


class PersonaRunner:
    """Runs builder then reviewer personas through a thread pool with a join between phases."""

    def __init__(
        self,
        llm: Any,
        tools: RepositoryTools,
        config: Optional[AppConfig] = None,
        prompt_loader: Optional[PromptLoader] = None,
    ):
        self.llm = llm
        self.tools = tools
        self.config = config or AppConfig()
        self.prompt_loader = prompt_loader or PromptLoader()
        self.registry = ToolRegistry(tools, max_output_chars=self.config.agent.max_tool_output_chars)

    @property
    def repo_path(self) -> str:
        return self.tools.repo_path

    def run(self) -> PersonaRunReport:
        state_dir = self.config.repo.state_dir
        if not os.path.isabs(state_dir):
            git_ops.exclude_path(self.repo_path, state_dir.rstrip("/") + "/")
        report = PersonaRunReport(base_commit=git_ops.head_commit(self.repo_path))

        builder_jobs = [
            (persona, AgentRole.BUILDER, "Work on the repository.")
            for persona in self.config.personas.builders
        ]
        report.builders = self._run_phase(builder_jobs)
        report.builder_commit = self._commit_phase(report.builders, "builder personas")

        diff = git_ops.diff_between(self.repo_path, report.base_commit)
        chunks = chunk_diff(diff, self.config.repo.diff_chunk_bytes)
        reviewer_jobs = [
            (persona, AgentRole.REVIEWER, f"Changes to review (part {i}/{len(chunks)}):\n{chunk}")
            for i, chunk in enumerate(chunks, start=1)
            for persona in self.config.personas.reviewers
        ]
        if reviewer_jobs:
            report.reviewers = self._run_phase(reviewer_jobs)
            report.reviewer_commit = self._commit_phase(report.reviewers, "reviewer personas")
        else:
            logger.info("No builder changes; skipping reviewer personas")

        groomer = self.config.personas.groomer
        if groomer:
            backlog = self.config.loop.backlog_file
            report.groomer = self._run_persona(
                groomer, AgentRole.BUILDER, f"Backlog file: {backlog}. Edit only that file.",
            )
            report.groomer_commit = self._commit_phase([report.groomer], "backlog groomer")
        return report

    def _run_phase(self, jobs: list[tuple[str, AgentRole, str]]) -> list[PersonaResult]:
        if not jobs:
            return []
        workers = max(1, min(self.config.personas.max_workers, len(jobs)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._run_persona, *job) for job in jobs]
            # leaving the with-block joins every worker before the next phase
        return [f.result() for f in futures]

    def _run_persona(self, persona: str, role: AgentRole, task: str) -> PersonaResult:
        focus = self.prompt_loader.load(f"{persona}.txt", default=PERSONA_FOCUS.get(persona, ""))
        session = AgentSession(
            role=role,
            deployment=self.config.llm.deployment_for(
                role.value, required=not self.config.providers.enabled,
            ),
            system_prompt=system_prompt(role, self.prompt_loader),
            initial_context=f"Persona: {persona}\n{focus}\n\n{task}",
            llm=self.llm,
            registry=self.registry,
            ledger=None,
            config=self.config.agent,
            label=persona,
        )
        try:
            return PersonaResult(persona=persona, outcome=session.run())
        except RepairLoopError as e:
            logger.error("Persona %s failed: %s", persona, e)
            return PersonaResult(persona=persona, error=str(e))

    def _commit_phase(self, results: list[PersonaResult], label: str) -> str:
        for result in results:
            if not isinstance(result.outcome, UnifiedDiff):
                continue
            try:
                git_ops.apply_patch(self.repo_path, result.outcome.text)
                result.applied = True
            except PatchApplyError as e:
                logger.warning("Skipping %s diff: %s", result.persona, e)
        if not git_ops.has_changes(self.repo_path):
            return ""
        return git_ops.commit(self.repo_path, f"repair loop: {label}")
