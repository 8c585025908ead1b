from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from fama.agents import Agent, build_agents
from fama.backends import (
    CircuitBreakerRegistry,
    ClaudeCodeProvider,
    ResilientProvider,
    RetryPolicy,
)
from fama.config import CONFIG_FILE, FamaConfig, load_config, save_config
from fama.errors import FamaError, GateCheckError
from fama.phases import PHASE_DEFINITIONS, PHASE_ORDER, parse_scale, scale_label
from fama.state.manifold import ManifoldStore
from fama.tokens import get_budget_for_scale, resolve_budget
from fama.workflow.orchestrator import WorkflowOrchestrator
from fama.workflow.quality import format_quality_score
from fama.workflow.runner import PhaseRunner

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    project_dir: Path
    config_path: Path
    config: FamaConfig
    orchestrator: WorkflowOrchestrator
    manifold: ManifoldStore


def _resolve_config_path(project_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    return config_path.resolve()


def _load_runtime(project_dir: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except FamaError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        project_dir=project_dir,
        config_path=config_path,
        config=config,
        orchestrator=WorkflowOrchestrator(project_dir, gates_config=config.workflow.gates),
        manifold=ManifoldStore(project_dir),
    )


def _log_provider_event(event: dict[str, Any]) -> None:
    logger.info("Provider event: %s", json.dumps(event, ensure_ascii=False))


def _build_provider(config: FamaConfig, project_dir: Path) -> ResilientProvider:
    backend = config.backend
    policy = RetryPolicy(
        max_retries=max(0, int(backend.max_retries)),
        base_delay_seconds=max(0.0, float(backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(backend.timeout_seconds)),
        jitter=max(0.0, float(backend.retry_jitter)),
    )
    breakers = CircuitBreakerRegistry(
        failure_threshold=backend.circuit_failure_threshold,
        reset_timeout_seconds=backend.circuit_reset_timeout_seconds,
    )
    return ResilientProvider(
        ClaudeCodeProvider(binary=backend.binary, working_directory=project_dir),
        retry_policy=policy,
        breakers=breakers,
        event_hook=_log_provider_event,
    )


def _build_runner(runtime: Runtime) -> PhaseRunner:
    provider = _build_provider(runtime.config, runtime.project_dir)
    agents: dict[str, Agent] = build_agents(provider, model=runtime.config.backend.model)
    return PhaseRunner(
        runtime.project_dir,
        runtime.config,
        agents,
        orchestrator=runtime.orchestrator,
        manifold_store=runtime.manifold,
    )


def _gate_exception(exc: GateCheckError) -> click.ClickException:
    message = exc.reason
    if exc.hints:
        message += "\n" + "\n".join(f"  hint: {hint}" for hint in exc.hints)
    return click.ClickException(message)


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log orchestration details to stderr.")
def cli(verbose: bool) -> None:
    """FAMA phase orchestration CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.argument("name")
@click.option("--scale", "scale_value", default=None, help="QUICK, SMALL, MEDIUM or LARGE.")
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def init_command(name: str, scale_value: str | None, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    if not runtime.config_path.exists():
        runtime.config.project.name = name
        save_config(runtime.config_path, runtime.config)

    scale = parse_scale(scale_value) if scale_value else runtime.config.workflow.scale
    state = runtime.orchestrator.init(name, scale)
    runtime.manifold.ensure(state)

    click.echo(f"Initialized workflow {name} in {project_dir}")
    click.echo(f"Scale: {scale_label(scale)}")
    click.echo(f"Phases: {' -> '.join(state.active_phases)}")
    click.echo(f"Current phase: {state.current_phase}")


@cli.command("status")
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def status_command(config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    try:
        state = runtime.orchestrator.get_state()
    except FamaError as exc:
        raise click.ClickException(str(exc)) from exc
    if state is None:
        raise click.ClickException("No active workflow. Run `fama init` first.")
    payload = state.to_dict()
    payload["recommendedAgents"] = runtime.orchestrator.get_recommended_agents()
    payload["recommendedSkills"] = runtime.orchestrator.get_recommended_skills()
    payload["loopBacks"] = runtime.orchestrator.loop_back_count()
    payload["complete"] = runtime.orchestrator.is_complete()
    _echo_json(payload)


@cli.command("advance")
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def advance_command(config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    try:
        transition = asyncio.run(runtime.orchestrator.advance())
    except GateCheckError as exc:
        raise _gate_exception(exc) from exc
    except FamaError as exc:
        raise click.ClickException(str(exc)) from exc

    if transition is None:
        click.echo("Workflow complete.")
        return
    definition = PHASE_DEFINITIONS[transition.phase]
    click.echo(f"Advanced to {transition.phase} ({definition.name})")
    click.echo(f"Agents: {', '.join(definition.agents)}")


@cli.command("complete")
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def complete_command(config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    try:
        state = runtime.orchestrator.complete_current_phase()
    except FamaError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Completed phase {state.current_phase}")


@cli.command("context")
@click.option("--phase", "phase_value", type=click.Choice(list(PHASE_ORDER)), default=None)
@click.option("--budget", type=int, default=None, help="Token budget for manifold context.")
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def context_command(phase_value: str | None, budget: int | None, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    try:
        state = runtime.orchestrator.get_state()
        if state is None:
            raise click.ClickException("No active workflow. Run `fama init` first.")
        manifold = runtime.manifold.load()
    except FamaError as exc:
        raise click.ClickException(str(exc)) from exc
    if manifold is None:
        click.echo("No context manifold yet.")
        return

    phase = phase_value or state.current_phase
    if budget is None:
        budget = resolve_budget(
            runtime.config.budgets.context, state.scale, get_budget_for_scale(state.scale).context
        )
    text, count = manifold.context_for_phase(phase, budget)  # type: ignore[arg-type]
    click.echo(text)
    logger.debug("Selected %d manifold entries for %s within %d tokens", count, phase, budget)


@cli.command("gates")
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def gates_command(config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    gates = runtime.config.workflow.gates
    _echo_json(
        {
            "require_plan": gates.require_plan,
            "require_approval": gates.require_approval,
            "available": runtime.orchestrator.registry.types(),
            "configured": [gate.to_dict() for gate in gates.gates],
        }
    )


@cli.command("run")
@click.argument("agent")
@click.argument("task")
@click.option("--phase", "phase_value", type=click.Choice(list(PHASE_ORDER)), default=None)
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def run_command(agent: str, task: str, phase_value: str | None, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    runner = _build_runner(runtime)
    try:
        outcome = asyncio.run(runner.run_agent(agent, task, phase_value))  # type: ignore[arg-type]
    except FamaError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(outcome.response.content)
    click.echo(f"Run record: {outcome.record_path.relative_to(project_dir).as_posix()}")
    if outcome.response.cost_usd is not None:
        click.echo(f"Cost: ${outcome.response.cost_usd:.4f}")


@cli.command("validate")
@click.argument("task")
@click.option("--agent", "agent_values", multiple=True, help="Limit validation to these agents.")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def validate_command(task: str, agent_values: tuple[str, ...], as_json: bool, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    runner = _build_runner(runtime)
    try:
        outcome = asyncio.run(runner.run_validation(task, list(agent_values) or None))
    except FamaError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        _echo_json(
            {
                "summary": outcome.summary.to_dict(),
                "quality": outcome.quality.to_dict(),
                "loop_back": outcome.decision.loop_back,
                "reason": outcome.decision.reason,
            }
        )
        return
    click.echo(format_quality_score(outcome.quality))
    click.echo("")
    if outcome.decision.loop_back:
        click.echo(f"Looping back to E: {outcome.decision.reason}")
    else:
        click.echo(outcome.decision.reason)
