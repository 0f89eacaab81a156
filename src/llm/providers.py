"""Provider tier supervisor.

Routes prompts through an ordered ladder of external LLM providers
(primary -> premium -> free). Each call's output is classified:

- quota/billing pattern (or a quota exit code): the tier is marked
  exhausted and the next tier is tried;
- entitlement pattern: as above, and the model is blacklisted;
- any other failure (non-zero exit, timeout, empty output): the next tier
  is tried for this call only, the tier stays available.

Exhaustion flags are persisted in the state directory and cleared at UTC
day rollover; a tier with a cooldown re-enables itself once it elapses.
When every tier is exhausted the supervisor sleeps and rechecks instead
of failing.
"""

from __future__ import annotations

import enum
import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from pydantic import BaseModel, Field

from src.core.config import ProviderConfig, ProviderTierConfig
from src.core.exceptions import (
    AllTiersExhaustedError,
    ConfigError,
    LLMError,
    ProviderCallError,
    RetryExhaustedError,
    ShellTimeoutError,
    ToolError,
)
from src.core.models import ProviderTierState
from src.llm.budget import BudgetLedger
from src.llm.client import ChatCompletionClient, LLMMessage, LLMResponse
from src.tools.shell import run_command

logger = logging.getLogger("repairloop.llm.providers")

STATE_FILENAME = "provider_tiers.json"


class TierVerdict(str, enum.Enum):
    OK = "ok"
    QUOTA = "quota"
    ENTITLEMENT = "entitlement"
    FAILURE = "failure"


@dataclass
class TierResult:
    """Raw outcome of one provider invocation."""
    text: str
    return_code: int = 0
    error: str = ""
    timed_out: bool = False

    @property
    def combined(self) -> str:
        return f"{self.text}\n{self.error}".strip()


class TierProvider(Protocol):
    def invoke(self, prompt: str, model: str) -> TierResult: ...


class CommandTierProvider:
    """Runs a provider CLI as a subprocess with a wall-clock timeout."""

    def __init__(self, tier: ProviderTierConfig, timeout_seconds: int, cwd: Optional[str] = None):
        if not tier.command:
            raise ConfigError(f"Tier '{tier.name}' has no command configured")
        self.tier = tier
        self.timeout_seconds = timeout_seconds
        self.cwd = cwd

    def invoke(self, prompt: str, model: str) -> TierResult:
        argv = [part.replace("{prompt}", prompt).replace("{model}", model) for part in self.tier.command]
        try:
            result = run_command(argv, cwd=self.cwd, timeout=self.timeout_seconds)
        except ShellTimeoutError as e:
            return TierResult(text="", return_code=124, error=str(e), timed_out=True)
        except ToolError as e:
            return TierResult(text="", return_code=127, error=str(e))
        return TierResult(text=result.stdout, return_code=result.return_code, error=result.stderr)


class HttpTierProvider:
    """Routes a tier through the chat-completions adapter."""

    def __init__(self, client: ChatCompletionClient, deployment: str):
        self.client = client
        self.deployment = deployment

    def invoke(self, prompt: str, model: str) -> TierResult:
        try:
            response = self.client.complete(
                [LLMMessage("user", prompt)], deployment=model or self.deployment,
            )
        except RetryExhaustedError as e:
            # the HTTP status stands in for an exit code so quota_exit_codes apply
            return TierResult(text="", return_code=e.status_code or 1, error=str(e))
        except LLMError as e:
            return TierResult(text="", return_code=1, error=str(e))
        return TierResult(text=response.content)


class _TierStateFile(BaseModel):
    day: str = ""
    tiers: list[ProviderTierState] = Field(default_factory=list)
    blacklisted_models: list[str] = Field(default_factory=list)


class ProviderTierSupervisor:
    """Selects and falls back across provider tiers.

    Exposes the same ``complete(messages, deployment=..., role=...)``
    surface as ChatCompletionClient so agent sessions can use either.
    """

    def __init__(
        self,
        config: ProviderConfig,
        providers: dict[str, TierProvider],
        state_dir: Optional[Path] = None,
        ledger: Optional[BudgetLedger] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.tiers = list(config.tiers)
        missing = [t.name for t in self.tiers if t.name not in providers]
        if missing:
            raise ConfigError(f"No provider for tier(s): {', '.join(missing)}")
        self.providers = providers
        self.state_path = Path(state_dir) / STATE_FILENAME if state_dir else None
        self.ledger = ledger
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._quota_patterns = [re.compile(p, re.IGNORECASE) for p in config.quota_patterns]
        self._entitlement_pattern = re.compile(config.entitlement_pattern, re.IGNORECASE)
        self._premium_pattern = re.compile(config.premium_model_pattern, re.IGNORECASE)
        self._state = self._load_state()

    # -- public surface ------------------------------------------------------

    def complete(
        self,
        messages: list[LLMMessage],
        deployment: str = "",
        role: str = "",
        **_: Any,
    ) -> LLMResponse:
        prompt = render_prompt(messages)
        text, tier_name = self.call_with_tier(prompt)
        input_tokens = len(prompt) // 4
        output_tokens = len(text) // 4
        if self.ledger is not None:
            self.ledger.add_usage(input_tokens, output_tokens, role=role, deployment=tier_name)
        return LLMResponse(
            content=text, model=tier_name, tokens_used=input_tokens + output_tokens,
            input_tokens=input_tokens, output_tokens=output_tokens,
        )

    def call(self, prompt: str, block: bool = True) -> str:
        return self.call_with_tier(prompt, block=block)[0]

    def call_with_tier(self, prompt: str, block: bool = True) -> tuple[str, str]:
        """Run `prompt` on the first tier that answers.

        Raises:
            ProviderCallError: Every available tier failed ordinarily.
            AllTiersExhaustedError: Every tier is exhausted and block=False.
        """
        while True:
            available = self.available_tiers()
            if not available:
                if not block:
                    raise AllTiersExhaustedError("All provider tiers are exhausted")
                self._wait_for_tier()
                continue

            failures: list[str] = []
            for tier in available:
                model = self.select_model(tier.model)
                logger.info("Calling tier '%s'%s", tier.name, f" (model={model})" if model else "")
                result = self.providers[tier.name].invoke(prompt, model)
                verdict = self.classify(result, prompt)

                if verdict is TierVerdict.OK:
                    return result.text.strip(), tier.name
                if verdict is TierVerdict.ENTITLEMENT:
                    self._blacklist(model)
                    self._mark_exhausted(tier.name)
                elif verdict is TierVerdict.QUOTA:
                    self._mark_exhausted(tier.name)
                else:
                    detail = "timed out" if result.timed_out else f"exit {result.return_code}"
                    failures.append(f"{tier.name}: {detail}")
                    logger.warning("Tier '%s' failed (%s); falling back for this call", tier.name, detail)

            if failures:
                raise ProviderCallError("All available tiers failed: " + "; ".join(failures))

    def classify(self, result: TierResult, prompt: str) -> TierVerdict:
        output = result.combined
        if self._entitlement_pattern.search(output):
            return TierVerdict.ENTITLEMENT
        if result.return_code in self.config.quota_exit_codes or any(
            p.search(output) for p in self._quota_patterns
        ):
            return TierVerdict.QUOTA
        if result.timed_out or result.return_code != 0:
            return TierVerdict.FAILURE
        if prompt.strip() and not result.text.strip():
            return TierVerdict.FAILURE
        return TierVerdict.OK

    def available_tiers(self) -> list[ProviderTierConfig]:
        self._refresh()
        exhausted = {s.name for s in self._state.tiers if s.exhausted}
        return [t for t in self.tiers if t.name not in exhausted]

    def select_model(self, model: str) -> str:
        """Swap a blacklisted or unavailable premium model for the free tier's model."""
        if not model:
            return model
        fallback = self.tiers[-1].model
        if model in self._state.blacklisted_models and fallback:
            return fallback
        premium = self._tier_state("premium")
        if self._premium_pattern.search(model) and premium is not None and premium.exhausted and fallback:
            return fallback
        return model

    def status(self) -> list[dict[str, Any]]:
        self._refresh()
        return [
            {
                "name": s.name,
                "exhausted": s.exhausted,
                "exhausted_at": s.exhausted_at.isoformat() if s.exhausted_at else None,
                "cooldown_minutes": s.cooldown_minutes,
            }
            for s in self._state.tiers
        ]

    @property
    def blacklisted_models(self) -> list[str]:
        return list(self._state.blacklisted_models)

    def reset(self) -> None:
        with self._lock:
            self._state = self._fresh_state()
            self._save()

    # -- state ---------------------------------------------------------------

    def _today(self) -> str:
        return self._clock().astimezone(UTC).date().isoformat()

    def _fresh_state(self, blacklisted: Optional[list[str]] = None) -> _TierStateFile:
        return _TierStateFile(
            day=self._today(),
            tiers=[ProviderTierState(name=t.name, cooldown_minutes=t.cooldown_minutes) for t in self.tiers],
            blacklisted_models=list(blacklisted or []),
        )

    def _load_state(self) -> _TierStateFile:
        if self.state_path is None or not self.state_path.exists():
            return self._fresh_state()
        try:
            state = _TierStateFile.model_validate_json(self.state_path.read_text())
        except ValueError as e:
            logger.warning("Ignoring unreadable tier state %s: %s", self.state_path, e)
            return self._fresh_state()

        known = {s.name: s for s in state.tiers}
        state.tiers = [
            known.get(t.name, ProviderTierState(name=t.name, cooldown_minutes=t.cooldown_minutes))
            for t in self.tiers
        ]
        return state

    def _refresh(self) -> None:
        with self._lock:
            if self._state.day != self._today():
                logger.info("UTC day rolled over; clearing tier exhaustion flags")
                self._state = self._fresh_state(self._state.blacklisted_models)
                self._save()
                return

            now = self._clock()
            for state in self._state.tiers:
                if state.cooldown_elapsed(now):
                    logger.info("Tier '%s' cooldown elapsed; re-enabling", state.name)
                    state.exhausted = False
                    state.exhausted_at = None
                    self._save()

    def _tier_state(self, name: str) -> Optional[ProviderTierState]:
        return next((s for s in self._state.tiers if s.name == name), None)

    def _mark_exhausted(self, name: str) -> None:
        with self._lock:
            state = self._tier_state(name)
            if state is None or state.exhausted:
                return
            state.exhausted = True
            state.exhausted_at = self._clock()
            self._save()
        logger.warning("Tier '%s' marked exhausted", name)

    def _blacklist(self, model: str) -> None:
        if not model:
            return
        with self._lock:
            if model not in self._state.blacklisted_models:
                self._state.blacklisted_models.append(model)
                self._save()
        logger.warning("Model '%s' blacklisted (not enabled for this account)", model)

    def _wait_for_tier(self) -> None:
        logger.warning(
            "All provider tiers exhausted; rechecking in %ds", self.config.recheck_seconds,
        )
        self._sleep(self.config.recheck_seconds)

    def _save(self) -> None:
        if self.state_path is None:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        self.state_path.write_text(self._state.model_dump_json(indent=2))


def render_prompt(messages: list[LLMMessage]) -> str:
    """Flatten a conversation into one prompt for CLI-style providers."""
    if len(messages) == 1:
        return messages[0].content
    return "\n\n".join(f"[{m.role}]\n{m.content}" for m in messages)


def build_providers(
    config: ProviderConfig,
    client: Optional[ChatCompletionClient] = None,
    default_deployment: str = "",
    cwd: Optional[str] = None,
) -> dict[str, TierProvider]:
    providers: dict[str, TierProvider] = {}
    for tier in config.tiers:
        if tier.kind == "http":
            if client is None:
                raise ConfigError(f"Tier '{tier.name}' is http but no LLM client is configured")
            providers[tier.name] = HttpTierProvider(client, tier.model or default_deployment)
        elif tier.kind == "command":
            providers[tier.name] = CommandTierProvider(tier, config.call_timeout_seconds, cwd=cwd)
        else:
            raise ConfigError(f"Unknown tier kind '{tier.kind}' for tier '{tier.name}'")
    return providers
