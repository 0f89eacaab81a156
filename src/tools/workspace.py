"""Repository-tool collaborator used by agent sessions and the pipeline.

Exposes the six agent-facing tools (search_files, write_file, run_tests,
get_coverage, get_symbols, show_diff) plus the build/test runs the
pipeline validates patches with. Commands come from RepoConfig; symbol
extraction delegates to an external analyser when one is configured.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from pathlib import Path

from src.core.config import RepoConfig
from src.core.exceptions import ShellTimeoutError, ToolError
from src.tools import file_ops, git_ops
from src.tools.shell import ShellResult, run_command

logger = logging.getLogger("repairloop.tools.workspace")

MAX_SEARCH_RESULTS = 50

# Declaration-looking lines, used only when no symbols command is configured.
_DECLARATION_PATTERN = re.compile(
    r"^\s*(?:export\s+)?(?:public|private|protected|internal|static|async|abstract|sealed|\s)*"
    r"(?:def|class|function|func|fn|interface|struct|enum|record|type)\s+\w+",
)


class RepositoryTools:
    """Executes tool calls against one repository checkout."""

    def __init__(self, repo_path: str | Path, config: RepoConfig | None = None):
        self.repo_path = str(Path(repo_path).resolve())
        self.config = config or RepoConfig()

    # -- agent tools -------------------------------------------------------

    def search_files(self, pattern: str) -> list[str]:
        """Paths whose name or content matches `pattern` (glob, regex or literal)."""
        if not pattern.strip():
            raise ToolError("search_files needs a non-empty pattern")

        matches: list[str] = []
        for path in git_ops.tracked_files(self.repo_path):
            if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(Path(path).name, pattern) or pattern in path:
                matches.append(path)

        for path in self._grep(pattern):
            if path not in matches:
                matches.append(path)
        return matches[:MAX_SEARCH_RESULTS]

    def write_file(self, path: str, content: str) -> str:
        written = file_ops.write_file(self.repo_path, path, content)
        rel = written.relative_to(self.repo_path)
        return f"wrote {len(content)} chars to {rel}"

    def run_tests(self) -> str:
        return _describe(self._run(self.config.test_command, "test"))

    def get_coverage(self) -> str:
        if not self.config.coverage_command:
            return "coverage command not configured"
        return _describe(self._run(self.config.coverage_command, "coverage"))

    def get_symbols(self, path: str) -> str:
        resolved = file_ops.resolve_in_root(self.repo_path, path)
        if self.config.symbols_command:
            command = self.config.symbols_command.format(path=str(resolved))
            return _describe(self._run(command, "symbols"))

        text = file_ops.read_file(self.repo_path, resolved)
        lines = [
            f"{number}: {line.strip()}"
            for number, line in enumerate(text.splitlines(), start=1)
            if _DECLARATION_PATTERN.match(line)
        ]
        return "\n".join(lines) or f"no declarations found in {path}"

    def show_diff(self) -> str:
        return git_ops.working_diff(self.repo_path) or "(no changes)"

    # -- pipeline validation -------------------------------------------------

    def build(self) -> ShellResult:
        if not self.config.build_command:
            return ShellResult(command="", return_code=0, stdout="build command not configured", stderr="")
        return self._run(self.config.build_command, "build")

    def test(self) -> ShellResult:
        return self._run(self.config.test_command, "test")

    # -- internals -----------------------------------------------------------

    def _run(self, command: str, label: str) -> ShellResult:
        try:
            return run_command(command, cwd=self.repo_path, timeout=self.config.command_timeout_seconds)
        except ShellTimeoutError as e:
            logger.warning("%s command timed out: %s", label, e)
            stderr = f"{e.stderr}\n{e}" if e.stderr else str(e)
            return ShellResult(command=command, return_code=124, stdout=e.stdout, stderr=stderr, timed_out=True)

    def _grep(self, pattern: str) -> list[str]:
        result = run_command(["git", "grep", "-l", "-I", "-E", "-e", pattern], cwd=self.repo_path)
        if result.return_code > 1:
            # not a valid regex; retry literally
            result = run_command(["git", "grep", "-l", "-I", "-F", "-e", pattern], cwd=self.repo_path)
        if result.return_code > 1:
            raise ToolError(f"git grep failed: {result.stderr.strip()}")
        return [line for line in result.stdout.splitlines() if line]


def _describe(result: ShellResult) -> str:
    status = "timed out" if result.timed_out else f"exit code {result.return_code}"
    return f"[{status}]\n{result.output}".rstrip()
