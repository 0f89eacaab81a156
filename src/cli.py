"""CLI entrypoint for the repair loop."""

from __future__ import annotations

import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import click

from src.core.config import AppConfig, load_config, missing_llm_environment
from src.core.exceptions import ConfigError, RepairLoopError

# Track the active run for the interrupt summary
_active_repo: str | None = None
_active_state_dir: Path | None = None
_active_loop: Any = None


def _sigint_handler(signum: int, frame: Any) -> None:
    """Handle Ctrl+C with a summary instead of a bare traceback."""
    click.echo("\n")
    click.echo(click.style("Interrupted.", fg="yellow", bold=True))
    if _active_repo:
        click.echo(f"  Repository:  {_active_repo}")
    if _active_state_dir:
        click.echo(f"  State dir:   {_active_state_dir}")
    click.echo(f"  Iterations:  {_active_loop.iterations if _active_loop else 0}")
    click.echo("\nIteration memory is persisted in the state dir; `repairloop run` picks up where it left off.")
    sys.exit(130)


def _setup_logging(verbose: bool = False, config: Optional[AppConfig] = None) -> None:
    """Apply logging configuration from config/default.yaml."""
    if config is None:
        try:
            config = load_config()
        except ConfigError:
            config = AppConfig()
    level = logging.DEBUG if verbose else getattr(logging, config.logging.level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=config.logging.format, stream=sys.stderr, force=True)


def _load(ctx: click.Context, env: Optional[str]) -> AppConfig:
    config_dir = ctx.obj.get("config_dir")
    try:
        return load_config(config_dir=config_dir, env=env)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _check_repo(repo: Path) -> str:
    from src.tools import git_ops

    path = str(repo.resolve())
    if not git_ops.is_git_repo(path):
        raise click.ClickException(f"{path} is not a git repository")
    return path


def _check_environment(config: AppConfig) -> None:
    if config.providers.enabled and all(t.kind == "command" for t in config.providers.tiers):
        return
    missing = missing_llm_environment(config)
    if missing:
        raise click.ClickException(
            "Missing required environment: " + ", ".join(missing)
            + " (set them in the shell or in .env)"
        )


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding default.yaml, <env>.yaml and prompts/.",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Optional[Path]) -> None:
    """Autonomous build-and-test repair loop."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_dir"] = config_dir
    _setup_logging(verbose=verbose)
    signal.signal(signal.SIGINT, _sigint_handler)


@cli.command("run")
@click.option(
    "--repo",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Repository to repair.",
)
@click.option("--branch", default=None, help="Work branch (default: repo.work_branch from config).")
@click.option("--max-loops", type=int, default=None, help="Override loop.max_loops.")
@click.option("--debug", is_flag=True, default=False, help="Force DEBUG logging.")
@click.option("--env", "env_name", default=None, help="Config overlay name (config/<env>.yaml).")
@click.pass_context
def run(
    ctx: click.Context,
    repo: Path,
    branch: Optional[str],
    max_loops: Optional[int],
    debug: bool,
    env_name: Optional[str],
) -> None:
    """Repeat diagnose -> patch -> build -> test until the repository is green."""
    global _active_repo, _active_state_dir, _active_loop
    from src.core.factory import ComponentFactory
    from src.tools import git_ops

    config = _load(ctx, env_name)
    _setup_logging(verbose=debug or ctx.obj.get("verbose", False), config=config)
    repo_path = _check_repo(repo)
    _check_environment(config)
    if max_loops is not None and max_loops < 1:
        raise click.BadParameter("must be at least 1", param_hint="--max-loops")

    try:
        git_ops.ensure_branch(repo_path, branch or config.repo.work_branch)
        bundle = ComponentFactory.create(repo_path, config_dir=ctx.obj.get("config_dir"), config=config)
    except RepairLoopError as exc:
        raise click.ClickException(str(exc)) from exc

    _active_repo = repo_path
    _active_state_dir = bundle.state_dir
    _active_loop = bundle.loop
    click.echo(f"Repairing {repo_path} on branch {git_ops.current_branch(repo_path)}")
    try:
        result = bundle.loop.run(max_loops=max_loops)
    finally:
        ComponentFactory.close(bundle)

    colour = "green" if result.success else "red"
    click.echo(click.style(f"{result.status.value}", fg=colour, bold=True) + f" after {result.iterations} iteration(s): {result.reason}")
    snapshot = bundle.ledger.snapshot()
    click.echo(f"Tokens: {snapshot['total_tokens']}  est. cost: £{snapshot['estimated_cost_gbp']:.4f}")
    sys.exit(0 if result.success else 1)


@cli.command("personas")
@click.option(
    "--repo",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
)
@click.option("--env", "env_name", default=None, help="Config overlay name.")
@click.pass_context
def personas(ctx: click.Context, repo: Path, env_name: Optional[str]) -> None:
    """Run builder personas, then reviewer personas, concurrently (best effort)."""
    from src.core.factory import ComponentFactory

    config = _load(ctx, env_name)
    repo_path = _check_repo(repo)
    _check_environment(config)
    bundle = ComponentFactory.create(repo_path, config_dir=ctx.obj.get("config_dir"), config=config)
    try:
        report = ComponentFactory.persona_runner(bundle).run()
    except RepairLoopError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        ComponentFactory.close(bundle)

    groomed = [report.groomer] if report.groomer is not None else []
    for phase, results in (("builders", report.builders), ("reviewers", report.reviewers), ("groomer", groomed)):
        click.echo(click.style(phase, bold=True))
        for r in results:
            outcome = r.error or (r.outcome.kind if r.outcome else "-")
            mark = "applied" if r.applied else ""
            click.echo(f"  {r.persona:<24} {outcome:<12} {mark}")
    click.echo(f"Builder commit:  {report.builder_commit or '(none)'}")
    click.echo(f"Reviewer commit: {report.reviewer_commit or '(none)'}")
    if report.groomer is not None:
        click.echo(f"Groomer commit:  {report.groomer_commit or '(none)'}")


def _supervisor(ctx: click.Context, repo: Path, env_name: Optional[str]):
    from src.core.factory import _state_dir
    from src.llm.client import ChatCompletionClient
    from src.llm.providers import ProviderTierSupervisor, build_providers

    config = _load(ctx, env_name)
    repo_path = str(repo.resolve())
    client = ChatCompletionClient(config.llm)
    return ProviderTierSupervisor(
        config.providers,
        build_providers(
            config.providers, client,
            default_deployment=config.llm.deployments.get("builder", ""),
            cwd=repo_path,
        ),
        state_dir=_state_dir(repo_path, config),
    )


@cli.command("tiers")
@click.option("--repo", type=click.Path(file_okay=False, path_type=Path), default=Path("."))
@click.option("--env", "env_name", default=None)
@click.pass_context
def tiers(ctx: click.Context, repo: Path, env_name: Optional[str]) -> None:
    """Show provider tier availability."""
    try:
        supervisor = _supervisor(ctx, repo, env_name)
    except RepairLoopError as exc:
        raise click.ClickException(str(exc)) from exc
    for entry in supervisor.status():
        state = click.style("exhausted", fg="red") if entry["exhausted"] else click.style("available", fg="green")
        since = f" since {entry['exhausted_at']}" if entry["exhausted_at"] else ""
        click.echo(f"  {entry['name']:<10} {state}{since} (cooldown {entry['cooldown_minutes']}m)")
    blacklisted = supervisor.blacklisted_models
    if blacklisted:
        click.echo("Blacklisted models: " + ", ".join(blacklisted))


@cli.command("reset-tiers")
@click.option("--repo", type=click.Path(file_okay=False, path_type=Path), default=Path("."))
@click.option("--env", "env_name", default=None)
@click.pass_context
def reset_tiers(ctx: click.Context, repo: Path, env_name: Optional[str]) -> None:
    """Clear exhaustion flags and the model blacklist."""
    try:
        supervisor = _supervisor(ctx, repo, env_name)
    except RepairLoopError as exc:
        raise click.ClickException(str(exc)) from exc
    supervisor.reset()
    click.echo("Provider tiers reset.")


@cli.command("doctor")
@click.option("--env", "env_name", default=None)
@click.pass_context
def doctor(ctx: click.Context, env_name: Optional[str]) -> None:
    """Check that the required settings and tools are present."""
    import shutil

    checks: list[tuple[str, bool, str]] = []  # (label, passed, detail)
    try:
        config = load_config(config_dir=ctx.obj.get("config_dir"), env=env_name)
        checks.append(("config", True, "Parsed OK"))
    except ConfigError as exc:
        config = AppConfig()
        checks.append(("config", False, str(exc)[:120]))

    missing = missing_llm_environment(config)
    checks.append(("LLM environment", not missing, ", ".join(missing) or "endpoint, key and deployment set"))

    api_key = os.getenv(config.llm.api_key_env, "")
    if api_key:
        checks.append((config.llm.api_key_env, True, api_key[:4] + "..." + api_key[-4:]))

    git = shutil.which("git")
    checks.append(("git", bool(git), git or "Not found on PATH"))
    if config.providers.enabled:
        for tier in config.providers.tiers:
            if tier.kind != "command" or not tier.command:
                continue
            exe = shutil.which(tier.command[0])
            checks.append((f"tier {tier.name}", bool(exe), exe or f"{tier.command[0]} not found on PATH"))

    click.echo()
    failed = 0
    for label, ok, detail in checks:
        icon = click.style("PASS", fg="green", bold=True) if ok else click.style("FAIL", fg="red", bold=True)
        failed += 0 if ok else 1
        click.echo(f"  [{icon}] {label}")
        click.echo(f"         {detail}")
    click.echo()
    if failed:
        click.echo(click.style(f"  {failed} of {len(checks)} checks failed.", fg="red", bold=True))
    else:
        click.echo(click.style(f"  All {len(checks)} checks passed.", fg="green", bold=True))


def main() -> None:
    """Entry point used by the `repairloop` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path.cwd() / ".env")
    cli()


if __name__ == "__main__":
    main()
