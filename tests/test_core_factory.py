"""Tests for src/core/factory.py — component wiring."""

from src.core.config import AppConfig, LLMConfig, ProviderConfig, RepoConfig
from src.core.factory import ComponentFactory, _state_dir
from src.llm.client import ChatCompletionClient
from src.llm.providers import ProviderTierSupervisor
from src.orchestrator.personas import PersonaRunner


def _config(**overrides):
    return AppConfig(
        llm=LLMConfig(endpoint="https://llm.example.test", deployments={"builder": "dep"}),
        repo=RepoConfig(test_command="true"),
        **overrides,
    )


class TestCreate:
    def test_wires_http_client(self, git_repo):
        bundle = ComponentFactory.create(git_repo, config=_config(), api_key="k")
        try:
            assert bundle.repo_path == str(git_repo.resolve())
            assert bundle.state_dir == git_repo.resolve() / ".ai-metrics"
            assert bundle.state_dir.is_dir()
            assert isinstance(bundle.llm, ChatCompletionClient)
            assert bundle.llm.ledger is bundle.ledger
            assert bundle.supervisor is None
            assert bundle.pipeline.ledger is bundle.ledger
            assert bundle.loop.pipeline is bundle.pipeline
            assert bundle.loop.recovery.keep_paths == [".ai-metrics"]
            assert bundle.loop.ledger is bundle.ledger
            assert bundle.loop.state_dir == bundle.state_dir
            assert bundle.loop.recovery.forced_mode_path == bundle.state_dir / "forced_mode.txt"
            assert ".ai-metrics" in bundle.loop.convergence.ignore_dirs
            assert bundle.ledger.jsonl_path == bundle.state_dir / "token_usage.jsonl"
        finally:
            ComponentFactory.close(bundle)

    def test_provider_tiers_replace_client(self, git_repo):
        bundle = ComponentFactory.create(git_repo, config=_config(providers=ProviderConfig(enabled=True)))
        try:
            assert isinstance(bundle.llm, ProviderTierSupervisor)
            assert bundle.supervisor is bundle.llm
            assert bundle.supervisor.ledger is bundle.ledger
            assert bundle.llm_client.ledger is None
        finally:
            ComponentFactory.close(bundle)

    def test_absolute_state_dir(self, git_repo, tmp_path):
        config = _config()
        config.repo.state_dir = str(tmp_path / "elsewhere")
        assert _state_dir(str(git_repo), config) == tmp_path / "elsewhere"

    def test_close_flushes_metrics(self, git_repo):
        bundle = ComponentFactory.create(git_repo, config=_config(), api_key="k")
        ComponentFactory.close(bundle)
        assert bundle.observability.metrics_path.exists()


class TestPersonaRunner:
    def test_runner_has_no_ledger(self, git_repo):
        bundle = ComponentFactory.create(git_repo, config=_config(), api_key="k")
        try:
            runner = ComponentFactory.persona_runner(bundle)
            assert isinstance(runner, PersonaRunner)
            assert runner.llm is not bundle.llm
            assert runner.llm.ledger is None
            assert runner.llm.api_key == "k"
            assert runner.llm.client is bundle.llm_client.client
            assert bundle.llm.ledger is bundle.ledger
        finally:
            ComponentFactory.close(bundle)

    def test_tier_runner_leaves_run_supervisor_metered(self, git_repo):
        bundle = ComponentFactory.create(git_repo, config=_config(providers=ProviderConfig(enabled=True)))
        try:
            runner = ComponentFactory.persona_runner(bundle)
            assert isinstance(runner.llm, ProviderTierSupervisor)
            assert runner.llm is not bundle.supervisor
            assert runner.llm.ledger is None
            assert bundle.supervisor.ledger is bundle.ledger
            assert runner.llm.providers is bundle.supervisor.providers
        finally:
            ComponentFactory.close(bundle)
