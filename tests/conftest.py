"""Shared fixtures for repair loop tests.

Git-facing tests run against REAL repositories created in tmp_path.
LLM-facing tests use a scripted backend that replays canned replies.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import pytest

from src.core.config import AgentConfig, AppConfig, LLMConfig, RepoConfig
from src.llm.budget import BudgetLedger
from src.llm.client import LLMResponse
from src.tools.shell import run_command


def init_git_repo(path: Path, files: dict[str, str] | None = None) -> Path:
    """Initialize a git repo on branch main with one commit."""
    run_command(["git", "init", "-q"], cwd=str(path))
    run_command(["git", "symbolic-ref", "HEAD", "refs/heads/main"], cwd=str(path))
    run_command(["git", "config", "user.email", "test@test.com"], cwd=str(path))
    run_command(["git", "config", "user.name", "Test"], cwd=str(path))
    run_command(["git", "config", "commit.gpgsign", "false"], cwd=str(path))
    for rel, content in (files or {"app.py": "VALUE = 1\n"}).items():
        target = path / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    run_command(["git", "add", "-A"], cwd=str(path))
    run_command(["git", "commit", "-q", "-m", "initial commit"], cwd=str(path))
    return path


def make_diff(path: str, old: str, new: str) -> str:
    """Unified diff replacing the single line `old` with `new` in `path`."""
    return (
        f"diff --git a/{path} b/{path}\n"
        f"--- a/{path}\n"
        f"+++ b/{path}\n"
        "@@ -1 +1 @@\n"
        f"-{old}\n"
        f"+{new}\n"
    )


class ScriptedLLM:
    """LLM backend that returns queued replies in order.

    Records every call so tests can assert on roles and prompts. Once the
    script runs out it keeps returning `fallback`.
    """

    def __init__(
        self,
        replies: Iterable[str] = (),
        fallback: str = "NO_CHANGES",
        ledger: BudgetLedger | None = None,
        tokens: tuple[int, int] = (10, 5),
    ):
        self.replies = list(replies)
        self.fallback = fallback
        self.ledger = ledger
        self.tokens = tokens
        self.calls: list[dict] = []

    def complete(self, messages, deployment: str = "", role: str = "", **_) -> LLMResponse:
        self.calls.append({"messages": list(messages), "deployment": deployment, "role": role})
        content = self.replies.pop(0) if self.replies else self.fallback
        prompt, completion = self.tokens
        if self.ledger is not None:
            self.ledger.add_usage(prompt, completion, role=role, deployment=deployment)
        return LLMResponse(
            content=content, model=deployment, tokens_used=prompt + completion,
            input_tokens=prompt, output_tokens=completion,
        )

    def roles(self) -> list[str]:
        return [c["role"] for c in self.calls]


@pytest.fixture
def git_repo(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    return init_git_repo(repo)


@pytest.fixture
def ledger():
    return BudgetLedger(
        max_iteration_tokens=1_000_000,
        max_total_tokens=10_000_000,
        max_cost_gbp=1_000.0,
    )


@pytest.fixture
def app_config():
    """AppConfig with a deployment set and a trivially green test command."""
    return AppConfig(
        llm=LLMConfig(endpoint="https://llm.example.test", deployments={"builder": "builder-dep"}),
        agent=AgentConfig(max_agent_iterations=6),
        repo=RepoConfig(test_command="true", build_command="", command_timeout_seconds=30),
    )
