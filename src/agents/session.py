"""Bounded tool-calling session with a single LLM-backed role.

Each turn sends the accumulated conversation to the LLM and classifies the
reply: a unified diff or NO_CHANGES ends the session, a tool-call object
is validated, counted and executed, and anything else is a parse error.
Backend failures end the session as a StructuredError whose type names
the failure (empty_choices, retry_exhausted, auth, ...).
Forbidden tools and budget violations are not recoverable inside a
session and propagate to the caller.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from src.agents.tool_registry import ToolRegistry, permitted_tools, tool_caps
from src.core.config import AgentConfig
from src.core.exceptions import (
    AllTiersExhaustedError,
    AuthenticationError,
    BudgetExceededError,
    EmptyChoicesError,
    ForbiddenToolError,
    LLMError,
    ModelNotFoundError,
    ProviderCallError,
    ProviderError,
    RetryExhaustedError,
    ToolCallParseError,
)
from src.core.models import AgentRole, NoChanges, SessionOutcome, StructuredError, UnifiedDiff
from src.llm.budget import BudgetLedger
from src.llm.client import LLMMessage
from src.llm.response_parser import (
    is_no_changes,
    is_unified_diff,
    limit_prompt_size,
    parse_tool_call,
    strip_code_fences,
)

# Most specific first; the last two entries catch anything else from the backend.
LLM_ERROR_TYPES: tuple[tuple[type[Exception], str], ...] = (
    (EmptyChoicesError, "empty_choices"),
    (RetryExhaustedError, "retry_exhausted"),
    (AuthenticationError, "auth"),
    (ModelNotFoundError, "model_not_found"),
    (AllTiersExhaustedError, "tiers_exhausted"),
    (ProviderCallError, "provider_failure"),
    (LLMError, "llm_error"),
    (ProviderError, "provider_error"),
)


def llm_error_type(error: Exception) -> str:
    for cls, name in LLM_ERROR_TYPES:
        if isinstance(error, cls):
            return name
    return "llm_error"


class AgentSession:
    """One conversation, discarded after it produces its outcome.

    Injected dependencies:
        llm: Anything with ``complete(messages, deployment=..., role=...)``
            returning an object with ``.content`` (ChatCompletionClient or
            ProviderTierSupervisor).
        registry: Tool registry; may be None for tool-less roles.
        ledger: Budget ledger enforced after every LLM call.
    """

    def __init__(
        self,
        role: AgentRole,
        deployment: str,
        system_prompt: str,
        initial_context: str,
        llm: Any,
        registry: Optional[ToolRegistry] = None,
        ledger: Optional[BudgetLedger] = None,
        config: Optional[AgentConfig] = None,
        iteration_start_tokens: int = 0,
        label: str = "",
    ):
        self.role = AgentRole(role)
        self.deployment = deployment
        self.config = config or AgentConfig()
        self.llm = llm
        self.registry = registry
        self.ledger = ledger
        self.iteration_start_tokens = iteration_start_tokens
        self.label = label or self.role.value
        self.context: list[LLMMessage] = [
            LLMMessage("system", system_prompt),
            LLMMessage("user", limit_prompt_size(initial_context, self.config.max_prompt_chars)),
        ]
        self.tool_counts: dict[str, int] = {}
        self.iterations = 0
        self.last_reply: str = ""
        self.error: Optional[StructuredError] = None
        self._caps = tool_caps(self.config)
        self.logger = logging.getLogger(f"repairloop.agent.{self.role.value}")

    @property
    def total_tool_calls(self) -> int:
        return sum(self.tool_counts.values())

    def run(self) -> SessionOutcome:
        """Drive the conversation to exactly one terminal outcome."""
        self.logger.info("[%s] Starting session (deployment=%s)", self.label, self.deployment)
        start = time.monotonic()
        try:
            outcome = self._loop()
        except (ForbiddenToolError, BudgetExceededError) as e:
            self.logger.error("[%s] Session aborted: %s", self.label, e)
            raise
        self.logger.info(
            "[%s] Complete: outcome=%s turns=%d tools=%d (%.2fs)",
            self.label, outcome.kind, self.iterations, self.total_tool_calls,
            time.monotonic() - start,
        )
        return outcome

    def complete_once(self) -> str:
        """Single turn whose raw reply is the result. Used for the judge.

        Backend failures are classified the same way as in run(); the
        StructuredError lands in ``self.error`` and the reply is "".
        """
        self.iterations += 1
        try:
            reply = self._ask()
        except (LLMError, ProviderError) as e:
            self.error = self._error(llm_error_type(e), str(e))
            return ""
        self.logger.info("[%s] Verbatim reply: %d chars", self.label, len(reply))
        return reply

    def _loop(self) -> SessionOutcome:
        tools_allowed = bool(permitted_tools(self.role))

        while self.iterations < self.config.max_agent_iterations:
            self.iterations += 1
            try:
                reply = self._ask()
            except (LLMError, ProviderError) as e:
                self.error = self._error(llm_error_type(e), str(e))
                return self.error

            if is_unified_diff(reply):
                return UnifiedDiff(text=strip_code_fences(reply))
            if is_no_changes(reply):
                return NoChanges(reason="agent reported no changes")
            if not tools_allowed:
                return self._error("parse_error", "reply is neither a diff nor NO_CHANGES")

            raw = parse_tool_call(reply)
            if raw is None or self.registry is None:
                return self._error("parse_error", f"unrecognised reply: {reply[:200]!r}")

            try:
                call = self.registry.validate(self.role, raw)
            except ToolCallParseError as e:
                return self._error("parse_error", str(e))

            cap = self._caps.get(call.tool)
            used = self.tool_counts.get(call.tool, 0)
            if cap is not None and used >= cap:
                self.logger.info("[%s] %s cap (%d) reached; giving up", self.label, call.tool, cap)
                return NoChanges(reason=f"{call.tool} limit of {cap} reached")

            self.tool_counts[call.tool] = used + 1
            result = self.registry.execute(call)
            self.logger.debug("[%s] %s -> %d chars", self.label, call.tool, len(result))
            self.context.append(LLMMessage("assistant", reply))
            self.context.append(LLMMessage("user", f"Result of {call.tool}:\n{result}"))

        self.logger.info("[%s] Turn limit (%d) reached", self.label, self.config.max_agent_iterations)
        return NoChanges(reason="turn limit reached")

    def _ask(self) -> str:
        response = self.llm.complete(self.context, deployment=self.deployment, role=self.role.value)
        if self.ledger is not None:
            self.ledger.enforce(self.iteration_start_tokens)
        self.last_reply = response.content or ""
        return self.last_reply

    def _error(self, error_type: str, message: str) -> StructuredError:
        self.logger.warning("[%s] %s: %s", self.label, error_type, message)
        return StructuredError(type=error_type, role=self.role.value, message=message)
