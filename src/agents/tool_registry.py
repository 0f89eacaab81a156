"""Tool registry and role permission table.

Each role may only call the tools listed for it in PERMISSIONS. Raw tool
JSON is validated into the closed ToolCall union before any handler runs,
and an unregistered name is an error rather than a silent no-op.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from src.core.config import AgentConfig
from src.core.exceptions import ForbiddenToolError, ToolCallParseError, ToolError, UnknownToolError
from src.core.models import (
    TOOL_CALL_ADAPTER,
    AgentRole,
    GetCoverageCall,
    GetSymbolsCall,
    RunTestsCall,
    SearchFilesCall,
    ShowDiffCall,
    WriteFileCall,
)

logger = logging.getLogger("repairloop.agents.tools")

PERMISSIONS: dict[AgentRole, frozenset[str]] = {
    AgentRole.BUILDER: frozenset(
        {"search_files", "write_file", "run_tests", "get_coverage", "get_symbols"}
    ),
    AgentRole.REVIEWER: frozenset({"show_diff", "get_symbols"}),
    AgentRole.JUDGE: frozenset(),
}

# Tools without an entry here are bounded only by the session's turn limit.
_CAP_FIELDS = {
    "search_files": "max_searches",
    "write_file": "max_writes",
    "run_tests": "max_test_runs",
    "get_coverage": "max_coverage_runs",
}


def permitted_tools(role: AgentRole) -> frozenset[str]:
    return PERMISSIONS.get(AgentRole(role), frozenset())


def tool_caps(config: AgentConfig) -> dict[str, int]:
    return {tool: getattr(config, field) for tool, field in _CAP_FIELDS.items()}


class ToolRegistry:
    """Maps tool names to handlers bound to a repository collaborator.

    The collaborator must provide search_files, write_file, run_tests,
    get_coverage, get_symbols and show_diff (see RepositoryTools).
    """

    def __init__(self, tools: Any, max_output_chars: int = 8_000):
        self.tools = tools
        self.max_output_chars = max_output_chars
        self._handlers: dict[str, Callable[[BaseModel], str]] = {
            "search_files": self._search_files,
            "write_file": self._write_file,
            "run_tests": self._run_tests,
            "get_coverage": self._get_coverage,
            "get_symbols": self._get_symbols,
            "show_diff": self._show_diff,
        }

    @property
    def names(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def validate(self, role: AgentRole, raw: dict[str, Any]) -> BaseModel:
        """Turn a raw ``{"tool": ...}`` object into a typed call for `role`.

        Raises:
            UnknownToolError: No handler is registered under that name.
            ForbiddenToolError: The role may not call that tool.
            ToolCallParseError: Arguments don't fit the tool's schema.
        """
        name = raw.get("tool")
        role_name = AgentRole(role).value
        if name not in self._handlers:
            raise UnknownToolError(role_name, str(name))
        if name not in permitted_tools(role):
            raise ForbiddenToolError(role_name, name)
        try:
            return TOOL_CALL_ADAPTER.validate_python(raw)
        except ValidationError as e:
            raise ToolCallParseError(f"Invalid arguments for {name}: {e.error_count()} error(s)") from e

    def execute(self, call: BaseModel) -> str:
        """Run a validated call. Tool failures come back as text for the agent."""
        handler = self._handlers[call.tool]
        try:
            output = handler(call)
        except ToolError as e:
            logger.info("Tool %s failed: %s", call.tool, e)
            output = f"ERROR: {e}"
        if len(output) > self.max_output_chars:
            output = output[: self.max_output_chars] + "\n... [tool output truncated]"
        return output

    def _search_files(self, call: SearchFilesCall) -> str:
        return "\n".join(self.tools.search_files(call.pattern)) or "(no matches)"

    def _write_file(self, call: WriteFileCall) -> str:
        return str(self.tools.write_file(call.path, call.content))

    def _run_tests(self, call: RunTestsCall) -> str:
        return str(self.tools.run_tests())

    def _get_coverage(self, call: GetCoverageCall) -> str:
        return str(self.tools.get_coverage())

    def _get_symbols(self, call: GetSymbolsCall) -> str:
        return str(self.tools.get_symbols(call.path))

    def _show_diff(self, call: ShowDiffCall) -> str:
        return str(self.tools.show_diff())
