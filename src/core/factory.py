"""Component factory for the repair loop.

Creates and wires config, budget ledger, LLM backend, repository tools,
memory and the loop itself so the CLI receives fully-initialized
dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from src.core.config import AppConfig, PromptLoader, load_config
from src.llm.budget import BudgetLedger
from src.llm.client import ChatCompletionClient
from src.llm.providers import ProviderTierSupervisor, build_providers
from src.memory.store import MemoryStore
from src.orchestrator.convergence import ConvergenceTracker
from src.orchestrator.loop import AgentAutoFixer, RecoverySupervisor, RepairLoop
from src.orchestrator.observability import LoopObservability
from src.orchestrator.personas import PersonaRunner
from src.orchestrator.pipeline import PatchPipeline
from src.tools.workspace import RepositoryTools

logger = logging.getLogger("repairloop.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components of one run."""

    config: AppConfig
    repo_path: str
    state_dir: Path
    ledger: BudgetLedger
    llm_client: ChatCompletionClient
    llm: Any
    tools: RepositoryTools
    memory: MemoryStore
    observability: LoopObservability
    pipeline: PatchPipeline
    loop: RepairLoop
    supervisor: Optional[ProviderTierSupervisor] = None


class ComponentFactory:
    """Factory for creating and wiring repair loop components.

    Usage:
        bundle = ComponentFactory.create(repo_path="/src/app")
        result = bundle.loop.run()
        ComponentFactory.close(bundle)
    """

    @staticmethod
    def create(
        repo_path: str | Path,
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        config: Optional[AppConfig] = None,
        api_key: Optional[str] = None,
    ) -> ComponentBundle:
        """Create and wire every component for a run against `repo_path`.

        The LLM backend is the HTTP client, or the provider tier supervisor
        when ``providers.enabled`` is set.
        """
        logger.info("Initializing components...")
        config = config or load_config(config_dir=config_dir, env=env)
        repo = str(Path(repo_path).resolve())
        state_dir = _state_dir(repo, config)
        state_dir.mkdir(parents=True, exist_ok=True)

        ledger = BudgetLedger.from_config(config.budget, state_dir=state_dir)
        observability = LoopObservability(state_dir)
        tools = RepositoryTools(repo, config.repo)
        memory = MemoryStore(state_dir)
        prompt_loader = PromptLoader(config_dir / "prompts" if config_dir else None)

        supervisor: Optional[ProviderTierSupervisor] = None
        if config.providers.enabled:
            # http tiers go through a ledger-less client; the supervisor records usage
            client = ChatCompletionClient(config.llm, ledger=None, api_key=api_key)
            supervisor = ProviderTierSupervisor(
                config.providers,
                build_providers(
                    config.providers, client,
                    default_deployment=config.llm.deployments.get("builder", ""),
                    cwd=repo,
                ),
                state_dir=state_dir,
                ledger=ledger,
            )
            llm: Any = supervisor
            logger.info("Provider tiers enabled: %s", ", ".join(t.name for t in config.providers.tiers))
        else:
            client = ChatCompletionClient(config.llm, ledger=ledger, api_key=api_key)
            llm = client
            logger.info("LLM client configured (endpoint=%s)", config.llm.endpoint or "<unset>")

        pipeline = PatchPipeline(
            llm=llm,
            tools=tools,
            memory=memory,
            ledger=ledger,
            config=config,
            prompt_loader=prompt_loader,
            observability=observability,
        )
        fixer = AgentAutoFixer(
            llm=llm,
            tools=tools,
            deployment=config.llm.deployments.get("builder", ""),
            config=config.agent,
            ledger=ledger,
        )
        recovery = RecoverySupervisor(
            repo_path=repo,
            state_dir=state_dir,
            fixer=fixer,
            max_attempts=config.loop.max_auto_fix_attempts,
            observability=observability,
            keep_paths=[config.repo.state_dir],
            forced_mode_file=config.loop.forced_mode_file,
        )
        convergence = ConvergenceTracker(
            repo,
            threshold=config.loop.max_stagnant_iters,
            state_dir=state_dir,
            ignore_dirs=[*config.repo.ignore_dirs, config.repo.state_dir],
        )
        loop = RepairLoop(
            pipeline=pipeline,
            convergence=convergence,
            recovery=recovery,
            config=config.loop,
            memory=memory,
            observability=observability,
            ledger=ledger,
            state_dir=state_dir,
        )
        logger.info("All components initialized")

        return ComponentBundle(
            config=config,
            repo_path=repo,
            state_dir=state_dir,
            ledger=ledger,
            llm_client=client,
            llm=llm,
            tools=tools,
            memory=memory,
            observability=observability,
            pipeline=pipeline,
            loop=loop,
            supervisor=supervisor,
        )

    @staticmethod
    def persona_runner(bundle: ComponentBundle) -> PersonaRunner:
        """Persona mode does not share the run's ledger.

        The runner gets ledger-less views of the bundle's backends; HTTP
        connections stay owned by ``bundle.llm_client`` and close with it.
        """
        llm: Any
        if bundle.supervisor is not None:
            llm = ProviderTierSupervisor(
                bundle.config.providers,
                bundle.supervisor.providers,
                state_dir=bundle.state_dir,
                ledger=None,
            )
        else:
            llm = bundle.llm_client.without_ledger()
        return PersonaRunner(llm, bundle.tools, bundle.config, bundle.pipeline.prompt_loader)

    @staticmethod
    def close(bundle: ComponentBundle) -> None:
        bundle.llm_client.close()
        bundle.observability.flush_metrics()
        logger.info("All components shut down")


def _state_dir(repo_path: str, config: AppConfig) -> Path:
    state_dir = Path(config.repo.state_dir)
    if not state_dir.is_absolute():
        state_dir = Path(repo_path) / state_dir
    return state_dir
