"""Configuration loader for the repair loop.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

from src.core.exceptions import ConfigError

ENV_ENDPOINT = "REPAIR_LLM_ENDPOINT"
ENV_API_KEY = "REPAIR_LLM_API_KEY"
ENV_DEPLOYMENTS = {
    "builder": "REPAIR_BUILDER_DEPLOYMENT",
    "reviewer": "REPAIR_REVIEWER_DEPLOYMENT",
    "judge": "REPAIR_JUDGE_DEPLOYMENT",
}


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class LLMConfig(BaseModel):
    endpoint: str = ""
    api_key_env: str = ENV_API_KEY
    api_version: str = "2024-06-01"
    chat_path: str = "/openai/deployments/{deployment}/chat/completions"
    default_temperature: float = 0.2
    default_max_tokens: int = 4096
    timeout_seconds: int = 120
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    deployments: dict[str, str] = Field(default_factory=dict)

    def deployment_for(self, role: str, required: bool = True) -> str:
        """Return the deployment id for a role, falling back to the builder's.

        Provider tiers pick their own model, so callers using them pass
        ``required=False`` and may get "".
        """
        deployment = self.deployments.get(role) or self.deployments.get("builder")
        if not deployment:
            if not required:
                return ""
            raise ConfigError(
                f"No deployment configured for role '{role}'. Set {ENV_DEPLOYMENTS['builder']}."
            )
        return deployment


class AgentConfig(BaseModel):
    max_agent_iterations: int = 20
    max_searches: int = 5
    max_writes: int = 10
    max_test_runs: int = 3
    max_coverage_runs: int = 2
    max_prompt_chars: int = 12_000
    max_tool_output_chars: int = 8_000


class BudgetConfig(BaseModel):
    max_iteration_tokens: int = 200_000
    max_total_tokens: int = 2_000_000
    max_cost_gbp: float = 25.0
    prompt_cost_per_1k: float = 0.002
    completion_cost_per_1k: float = 0.006
    jsonl_path: Optional[str] = "token_usage.jsonl"


class ProviderTierConfig(BaseModel):
    """One rung of the provider ladder.

    ``command`` is an argv template; ``{prompt}`` and ``{model}`` are
    substituted per call. Tiers with ``kind: http`` route through the
    chat-completions adapter instead of a subprocess.
    """
    name: str
    kind: str = "command"
    command: list[str] = Field(default_factory=list)
    model: str = ""
    cooldown_minutes: Optional[int] = None


def _default_tiers() -> list[ProviderTierConfig]:
    return [
        ProviderTierConfig(
            name="primary",
            command=["claude", "-p", "{prompt}", "--dangerously-skip-permissions"],
        ),
        ProviderTierConfig(
            name="premium",
            command=["copilot", "-p", "{prompt}", "--model", "{model}", "--allow-all-tools"],
            model="gpt-5.2",
        ),
        ProviderTierConfig(
            name="free",
            command=["copilot", "-p", "{prompt}", "--model", "{model}", "--allow-all-tools"],
            model="gpt-4.1",
            cooldown_minutes=60,
        ),
    ]


class ProviderConfig(BaseModel):
    enabled: bool = False
    tiers: list[ProviderTierConfig] = Field(default_factory=_default_tiers)
    quota_patterns: list[str] = Field(
        default_factory=lambda: [
            r"Error:.*quota|Error:.*rate.?limit|Error:.*usage.?limit|Error:.*limit.?reached"
            r"|Error:.*payment.?required|Error:.*402|Error:.*429|API.?error.*quota"
            r"|API.?error.*limit|exceeded your.*quota|reached your.*limit|out of.*credits"
            r"|billing.?error|HTTPError.*402|HTTPError.*429",
            r"HTTP.*402|status.*402|error.*402|no quota|you have no quota|quota exceeded"
            r"|out of credits|credits exhausted|usage limit exceeded|rate limit exceeded"
            r"|billing error|payment required|requires copilot pro|not included in your plan"
            r"|increase your limit|features/copilot/plans|upgrade.*plan",
        ]
    )
    entitlement_pattern: str = (
        r"enable this model|interactive mode to enable this model|not enabled for your account"
        r"|model not enabled|not available for your account|not available on your plan"
        r"|not permitted on your plan"
    )
    quota_exit_codes: list[int] = Field(default_factory=lambda: [402, 429])
    premium_model_pattern: str = r"gpt-5\.2"
    recheck_seconds: int = 300
    call_timeout_seconds: int = 900


class LoopConfig(BaseModel):
    max_loops: int = 10
    max_stagnant_iters: int = 5
    max_wall_hours: float = 48.0
    max_auto_fix_attempts: int = 3
    auto_fix_timeout_seconds: int = 300
    restart_pause_seconds: float = 10.0
    compact_every: int = 3
    backlog_file: str = "TODO.md"
    bug_hunt_every: int = 5
    stability_every: int = 0
    idle_converge_iters: int = 3
    idle_pause_seconds: float = 300.0
    forced_mode_file: str = "forced_mode.txt"


class RepoConfig(BaseModel):
    build_command: str = ""
    test_command: str = "pytest -q"
    coverage_command: str = ""
    symbols_command: str = ""
    state_dir: str = ".ai-metrics"
    main_branch: str = "main"
    work_branch: str = "ai-work"
    command_timeout_seconds: int = 900
    diff_chunk_bytes: int = 120_000
    ignore_dirs: list[str] = Field(
        default_factory=lambda: [".git", "bin", "obj", "node_modules", "__pycache__"]
    )


class PersonaConfig(BaseModel):
    builders: list[str] = Field(
        default_factory=lambda: ["bugfix_builder", "feature_builder", "test_builder", "improver"]
    )
    reviewers: list[str] = Field(
        default_factory=lambda: [
            "autonomous_reviewer",
            "security_reviewer",
            "performance_reviewer",
            "test_quality_reviewer",
        ]
    )
    groomer: str = "backlog_groomer"
    max_workers: int = 4


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class AppConfig(BaseModel):
    llm: LLMConfig = Field(default_factory=LLMConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    providers: ProviderConfig = Field(default_factory=ProviderConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    repo: RepoConfig = Field(default_factory=RepoConfig)
    personas: PersonaConfig = Field(default_factory=PersonaConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: default.yaml -> {env}.yaml -> env vars (REPAIR_LLM_ENDPOINT, etc.)
    """
    if config_dir is None:
        config_dir = Path(__file__).parent.parent.parent / "config"

    merged = _load_yaml(config_dir / "default.yaml")

    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    endpoint = os.getenv(ENV_ENDPOINT)
    if endpoint:
        merged.setdefault("llm", {})["endpoint"] = endpoint

    for role, var in ENV_DEPLOYMENTS.items():
        deployment = os.getenv(var)
        if deployment:
            merged.setdefault("llm", {}).setdefault("deployments", {})[role] = deployment

    try:
        return AppConfig(**merged)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def missing_llm_environment(config: AppConfig) -> list[str]:
    """Names of required settings that are unset for the HTTP adapter."""
    missing = []
    if not config.llm.endpoint:
        missing.append(ENV_ENDPOINT)
    if not os.getenv(config.llm.api_key_env):
        missing.append(config.llm.api_key_env)
    if not config.llm.deployments.get("builder"):
        missing.append(ENV_DEPLOYMENTS["builder"])
    return missing


# ---------------------------------------------------------------------------
# Prompt loader
# ---------------------------------------------------------------------------

class PromptLoader:
    """Loads prompt templates from config/prompts/ directory.

    Falls back to hardcoded defaults if the file doesn't exist, so prompts
    can be iterated on without code changes.
    """

    def __init__(self, prompts_dir: Optional[Path] = None):
        if prompts_dir is None:
            prompts_dir = Path(__file__).parent.parent.parent / "config" / "prompts"
        self.prompts_dir = prompts_dir

    def load(self, name: str, default: str = "") -> str:
        """Load a prompt template by filename.

        Args:
            name: Filename within config/prompts/ (e.g. "builder_system.txt").
            default: Fallback text if file doesn't exist.

        Returns:
            Prompt text (stripped of leading/trailing whitespace).
        """
        path = self.prompts_dir / name
        if path.exists():
            return path.read_text().strip()
        return default
