"""Custom exception hierarchy for the repair loop.

All exceptions inherit from RepairLoopError so callers can catch broadly
or narrowly as needed.
"""

from typing import Optional


class RepairLoopError(Exception):
    """Base exception for all repair-loop errors."""


# ---------------------------------------------------------------------------
# LLM
# ---------------------------------------------------------------------------

class LLMError(RepairLoopError):
    """Failed LLM operation."""


class RetryExhaustedError(LLMError):
    """Transient failures persisted through every allowed attempt."""

    def __init__(self, attempts: int, last_error: object = None, status_code: Optional[int] = None):
        self.attempts = attempts
        self.last_error = last_error
        self.status_code = status_code
        super().__init__(f"Request failed after {attempts} attempts: {last_error}")


class EmptyChoicesError(LLMError):
    """Response carried an empty or null choice list. Never retried."""


class AuthenticationError(LLMError):
    """Invalid API key or unauthorized."""


class ModelNotFoundError(LLMError):
    """Requested deployment not available."""


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

class BudgetExceededError(RepairLoopError):
    """A token or cost ceiling was crossed. Aborts the current iteration.

    Persistent breaches (the run-wide counters) also end the run.
    """

    persistent = False


class IterationBudgetExceeded(BudgetExceededError):
    def __init__(self, used: int, limit: int):
        self.used = used
        self.limit = limit
        super().__init__(f"iteration budget exceeded: used {used} tokens, limit {limit}")


class TotalBudgetExceeded(BudgetExceededError):
    persistent = True

    def __init__(self, used: int, limit: int):
        self.used = used
        self.limit = limit
        super().__init__(f"total budget exceeded: used {used} tokens, limit {limit}")


class CostBudgetExceeded(BudgetExceededError):
    persistent = True

    def __init__(self, cost: float, limit: float, prompt_tokens: int, completion_tokens: int):
        self.cost = cost
        self.limit = limit
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        super().__init__(
            f"cost budget exceeded: £{cost:.4f} > £{limit:.4f} "
            f"(prompt={prompt_tokens} completion={completion_tokens} tokens)"
        )


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

class AgentError(RepairLoopError):
    """Agent session failure."""


class ForbiddenToolError(AgentError):
    """Agent requested a tool outside its role's permitted set."""

    def __init__(self, role: str, tool: str):
        self.role = role
        self.tool = tool
        super().__init__(f"Tool '{tool}' is not permitted for role '{role}'")


class UnknownToolError(ForbiddenToolError):
    """Agent requested a tool name that no handler is registered for."""

    def __init__(self, role: str, tool: str):
        super().__init__(role, tool)
        self.args = (f"Unknown tool '{tool}' requested by role '{role}'",)


class ToolCallParseError(AgentError):
    """Reply was not a diff, the sentinel, or a single tool-call object."""


# ---------------------------------------------------------------------------
# Patches
# ---------------------------------------------------------------------------

class PatchError(RepairLoopError):
    """A patch attempt failed validation."""


class InvalidDiffError(PatchError):
    """Patch text does not look like a unified diff."""


class PatchApplyError(PatchError):
    """git apply rejected the patch."""


class BuildFailedError(PatchError):
    """Build command exited non-zero after the patch was applied."""


class FailingTestsError(PatchError):
    """Test command exited non-zero after the patch was applied."""


# ---------------------------------------------------------------------------
# Provider tiers
# ---------------------------------------------------------------------------

class ProviderError(RepairLoopError):
    """External provider call failed."""


class ProviderCallError(ProviderError):
    """Ordinary failure: non-zero exit, timeout, or empty output."""


class AllTiersExhaustedError(ProviderError):
    """Every tier is exhausted and the caller asked not to wait."""


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolError(RepairLoopError):
    """Tool execution failure."""


class ShellTimeoutError(ToolError):
    """Shell command exceeded its timeout. Carries whatever it printed first."""

    def __init__(self, command: str, timeout: float, stdout: str = "", stderr: str = ""):
        self.command = command
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"Command timed out after {timeout}s: {command[:200]}")


class GitOperationError(ToolError):
    """Git operation failed."""


# ---------------------------------------------------------------------------
# Configuration / recovery
# ---------------------------------------------------------------------------

class ConfigError(RepairLoopError):
    """Invalid or missing configuration."""


class AutoFixExhaustedError(RepairLoopError):
    """Automated recovery failed too many times in a row."""

    def __init__(self, attempts: int, last_error: object = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Automated fix failed {attempts} consecutive times; manual intervention required "
            f"(last error: {last_error})"
        )
