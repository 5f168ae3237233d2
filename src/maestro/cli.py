from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from maestro.arbitration import Arbiter
from maestro.blueprints import BlueprintStore
from maestro.config import MaestroConfig, OracleName, load_config, save_config
from maestro.controller import RunController
from maestro.engine import ExecutionEngine
from maestro.executors import (
    AgentRegistry,
    CodeAgent,
    ExecutorSynthesizer,
    FileAgent,
    FixAgent,
    MemoryRecorderAgent,
    ResearchAgent,
)
from maestro.models import Task, ValidationError
from maestro.oracle import (
    ClaudeCodeOracle,
    OpenAICompatibleOracle,
    Oracle,
    OracleError,
    ResilientOracle,
    RetryPolicy,
)
from maestro.orchestrator import Orchestrator
from maestro.planner import PlanResolver
from maestro.state import AuditTrail, JsonStore, StoreError

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG = "maestro.toml"


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: MaestroConfig
    store: JsonStore
    audit: AuditTrail
    registry: AgentRegistry
    synthesizer: ExecutorSynthesizer
    blueprints: BlueprintStore
    resolver: PlanResolver
    orchestrator: Orchestrator


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _resolve_under(root: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else root / path


def _store_root(root: Path, config: MaestroConfig) -> Path:
    return _resolve_under(root, config.store.root)


def _build_single_oracle(config: MaestroConfig, oracle_name: OracleName, root: Path) -> Oracle:
    if oracle_name == "claude":
        return ClaudeCodeOracle(working_directory=root)
    return OpenAICompatibleOracle(
        model=config.oracle.model,
        base_url=config.oracle.base_url or None,
        api_key_env=config.oracle.api_key_env,
    )


def _record_oracle_event(audit: AuditTrail, event: dict[str, Any]) -> None:
    LOGGER.debug("Oracle event: %s", event)
    audit.record("oracle_events", event)


def _build_oracle(config: MaestroConfig, root: Path, audit: AuditTrail) -> Oracle:
    policy = RetryPolicy(
        max_retries=max(0, int(config.oracle.max_retries)),
        backoff_seconds=max(0.0, float(config.oracle.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.oracle.timeout_seconds)),
    )
    return ResilientOracle(
        primary_name=config.oracle.primary,
        primary=_build_single_oracle(config, config.oracle.primary, root),
        fallback_name=config.oracle.fallback,
        fallback=_build_single_oracle(config, config.oracle.fallback, root),
        retry_policy=policy,
        event_hook=lambda event: _record_oracle_event(audit, event),
    )


def _load_runtime(root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    logging.basicConfig(
        level=str(config.logging.level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    store = JsonStore(_store_root(root, config))
    audit = AuditTrail(store, max_entries=config.store.audit_max_entries)
    oracle = _build_oracle(config, root, audit)

    registry = AgentRegistry(
        store,
        builtins={
            "CodeAgent": lambda: CodeAgent(oracle),
            "ResearchAgent": lambda: ResearchAgent(oracle),
            "FixAgent": lambda: FixAgent(oracle),
            "FileAgent": lambda: FileAgent(
                oracle, _resolve_under(root, config.execution.file_base_dir), audit=audit
            ),
            "MemoryRecorderAgent": lambda: MemoryRecorderAgent(store),
        },
    )
    synthesizer = ExecutorSynthesizer(
        oracle,
        store,
        registry,
        audit,
        min_plausible_length=config.execution.min_synthesized_length,
    )
    engine = ExecutionEngine(
        registry,
        synthesizer,
        oracle,
        audit,
        auto_heal=config.execution.auto_heal,
        output_preview_chars=config.execution.output_preview_chars,
    )
    arbiter = Arbiter(
        oracle,
        audit,
        default_executors=config.planner.allowed_executors,
        heuristic_confidence=config.arbitration.heuristic_confidence,
    )
    blueprints = BlueprintStore(store)
    resolver = PlanResolver(
        blueprints,
        arbiter,
        oracle,
        audit,
        allowed_executors=config.planner.allowed_executors,
        min_steps=config.planner.min_blueprint_steps,
        max_steps=config.planner.max_blueprint_steps,
        validation_max_steps=config.planner.self_check_max_steps,
    )
    controller = RunController(
        engine,
        oracle,
        audit,
        memory_executor=config.execution.memory_executor,
        record_memory=config.execution.record_memory,
    )
    orchestrator = Orchestrator(resolver, controller, audit, oracle=oracle)
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        store=store,
        audit=audit,
        registry=registry,
        synthesizer=synthesizer,
        blueprints=blueprints,
        resolver=resolver,
        orchestrator=orchestrator,
    )


def _runtime_from_cwd(config_value: str) -> Runtime:
    root = Path.cwd().resolve()
    return _load_runtime(root, _resolve_config_path(root, config_value))


def _parse_details(pairs: tuple[str, ...]) -> dict[str, str]:
    details: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--detail")
        details[key.strip()] = value
    return details


def _build_task(goal: str, category: str, details: tuple[str, ...]) -> Task:
    try:
        return Task(category=category, goal=goal, details=_parse_details(details))
    except ValidationError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override [logging] level from the config file.",
)
def cli(log_level: str | None) -> None:
    """Maestro multi-agent task orchestrator."""
    if log_level:
        logging.basicConfig(
            level=log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@cli.command("init")
@click.option("--oracle", "oracle_name", type=click.Choice(["openai", "claude"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(oracle_name: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    if oracle_name:
        config.oracle.primary = oracle_name  # type: ignore[assignment]
    save_config(config_path, config)

    store = JsonStore(_store_root(root, config))

    click.echo(f"Initialized Maestro in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Store: {store.root}")
    click.echo(f"Oracle: {config.oracle.primary} (fallback {config.oracle.fallback})")


@cli.command("run")
@click.argument("goal")
@click.option("--category", default="general", show_default=True)
@click.option("--detail", "details", multiple=True, help="Task detail as KEY=VALUE.")
@click.option("--summarize", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(
    goal: str, category: str, details: tuple[str, ...], summarize: bool, config_value: str
) -> None:
    task = _build_task(goal, category, details)
    runtime = _runtime_from_cwd(config_value)
    try:
        task_run = asyncio.run(runtime.orchestrator.run_task(task, summarize=summarize))
    except (StoreError, OracleError) as exc:
        raise click.ClickException(str(exc)) from exc

    result = task_run.result
    click.echo(f"Task: {task.summary()}")
    click.echo(f"Run ID: {result.run_id}")
    click.echo(f"Blueprint: {task_run.plan.metadata.get('blueprint_origin')}")
    for step_log in result.step_logs:
        marker = "ok" if step_log.success else "FAILED"
        click.echo(
            f"  {step_log.step_id} [{step_log.executor_name}] {step_log.title}: "
            f"{marker} after {len(step_log.attempts)} attempt(s)"
        )
    click.echo(f"Status: {result.status}")
    if result.review_summary:
        click.echo(f"Review: {result.review_summary}")
    if task_run.summary:
        click.echo(task_run.summary)
    if result.status != "success":
        outcome = result.context.get(result.failed_step_id or "")
        reason = outcome.error if outcome else "unknown error"
        raise click.ClickException(f"Run failed at {result.failed_step_id}: {reason}")


@cli.command("plan")
@click.argument("goal")
@click.option("--category", default="general", show_default=True)
@click.option("--detail", "details", multiple=True, help="Task detail as KEY=VALUE.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def plan_command(goal: str, category: str, details: tuple[str, ...], config_value: str) -> None:
    task = _build_task(goal, category, details)
    runtime = _runtime_from_cwd(config_value)
    try:
        plan = asyncio.run(runtime.resolver.resolve(task))
    except (StoreError, OracleError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(plan.to_dict(), ensure_ascii=False, indent=2))


@cli.command("blueprints")
@click.option("--category", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def blueprints_command(category: str | None, config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    if category:
        blueprint = runtime.blueprints.get(category)
        if blueprint is None:
            raise click.ClickException(f"No blueprint stored for category: {category}")
        click.echo(json.dumps(blueprint.to_dict(), ensure_ascii=False, indent=2))
        return
    categories = runtime.blueprints.categories()
    if not categories:
        click.echo("No blueprints stored.")
        return
    for name in categories:
        click.echo(name)


@cli.command("agents")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def agents_command(config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    specs = runtime.synthesizer.specs()
    for name, locator in runtime.registry.entries().items():
        description = (specs.get(name) or {}).get("description")
        click.echo(f"{name}\t{locator}\t{description}" if description else f"{name}\t{locator}")


@cli.command("runs")
@click.option("--limit", default=10, show_default=True, type=int)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def runs_command(limit: int, config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    records = runtime.audit.entries("runs", limit=max(1, limit))
    click.echo(json.dumps(records, ensure_ascii=False, indent=2))


@cli.command("oracle")
@click.argument("oracle_name", type=click.Choice(["openai", "claude"]))
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def oracle_command(oracle_name: str, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    config.oracle.primary = oracle_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary oracle set to {oracle_name}")
