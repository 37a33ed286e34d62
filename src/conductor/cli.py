from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click

from conductor.batch import ScriptedDriver, SpecTaskRunner
from conductor.config import ConductorConfig, ConfigError, load_config, save_config
from conductor.hooks import (
    EventType,
    HumanGate,
    WalkthroughReport,
    WorkflowEvent,
    approve_all,
    deny_all,
)
from conductor.log import setup_logging
from conductor.orchestrator import TransitionResult, WorkflowOrchestrator
from conductor.workflow import TRANSITIONS, available_transitions, coerce_role, context_to_dict
from conductor.workflow.roles import Role


@dataclass(slots=True)
class EventLog:
    """Collects workflow events, echoing them as they happen unless output is JSON."""

    echo: bool
    events: list[dict[str, Any]] = field(default_factory=list)

    def __call__(self, event: WorkflowEvent) -> None:
        self.events.append(
            {
                "type": event.type.value,
                "from": event.from_role.value,
                "to": event.to_role.value,
                "message": event.message,
            }
        )
        if not self.echo:
            return
        if event.type is EventType.TRANSITION:
            line = f"{event.from_role.value} -> {event.to_role.value}"
        else:
            line = f"[{event.type.value}] {event.from_role.value} -> {event.to_role.value}"
        if event.message:
            line = f"{line}  ({event.message})"
        click.echo(line)


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _load(ctx: click.Context, config_value: str) -> ConductorConfig:
    try:
        config = load_config(_resolve_config_path(config_value))
    except (ConfigError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config {config_value}: {exc}") from exc
    level = (ctx.obj or {}).get("log_level") or config.logging.level
    setup_logging(level, config.logging.log_file or None)
    return config


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path} is not valid JSON: {exc}") from exc


def _build_orchestrator(
    config: ConductorConfig, *, approve: bool, report_dir: str | None
) -> WorkflowOrchestrator:
    if report_dir:
        config.report.output_dir = report_dir
    report = WalkthroughReport(config.report) if config.report.enabled else None
    gate: HumanGate = approve_all() if approve else deny_all
    return WorkflowOrchestrator(config.workflow, human_gate=gate, report=report)


def _echo_result(result: TransitionResult) -> None:
    if result.success:
        for warning in result.warnings:
            click.echo(f"  warning: {warning}")
        return
    kind = result.failure.value if result.failure else "error"
    click.echo(f"  {kind}: {result.error}")


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Override [logging].level from the config file.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Conductor CLI."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@cli.command("init")
@click.option("--report-dir", default=None, help="Where walkthrough reports are written.")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
@click.pass_context
def init_command(ctx: click.Context, report_dir: str | None, config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = _load(ctx, config_value)
    if report_dir:
        config.report.output_dir = report_dir
    save_config(config_path, config)

    click.echo(f"Config: {config_path}")
    click.echo(
        "Retry limits: "
        f"test={config.workflow.max_test_retries} "
        f"security={config.workflow.max_security_retries} "
        f"design_review={config.workflow.max_design_review_retries}"
    )
    click.echo(f"Reports: {config.report.output_dir}/{config.report.filename}")


@cli.command("edges")
@click.option("--from", "source", default=None, help="Only list edges leaving this role.")
def edges_command(source: str | None) -> None:
    role: Role | None = None
    if source:
        try:
            role = coerce_role(source)
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc
    for item in TRANSITIONS:
        if role is not None and item.source is not role:
            continue
        click.echo(f"{item.source.value:<15} -> {item.target.value:<15} {item.label}")
    click.echo(f"{'any':<15} -> {'planner':<15} Re-plan escape (not in table)")


async def _replay(
    orchestrator: WorkflowOrchestrator, script: dict[str, Any], echo: bool
) -> list[TransitionResult]:
    task = script.get("task")
    if task is not None:
        started = await orchestrator.start_from_spec_task(
            task, parent_task_id=script.get("parentTaskId")
        )
    else:
        started = await orchestrator.start()
    results = [started]
    for handoff in script.get("handoffs", []):
        if orchestrator.current_role is Role.COMPLETED:
            break
        if echo:
            click.echo(f"handoff from {orchestrator.current_role.value}")
        result = await orchestrator.handle_role_completion(handoff)
        results.append(result)
        if echo:
            _echo_result(result)
    return results


@cli.command("replay")
@click.argument("script_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--approve/--deny", default=False, help="Answer for human intervention requests.")
@click.option("--report-dir", default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
@click.pass_context
def replay_command(
    ctx: click.Context,
    script_path: Path,
    approve: bool,
    report_dir: str | None,
    as_json: bool,
    config_value: str,
) -> None:
    """Drive one unit of work from a JSON list of handoffs."""
    config = _load(ctx, config_value)
    script = _read_json(script_path)
    if isinstance(script, list):
        script = {"handoffs": script}
    if not isinstance(script, dict):
        raise click.ClickException("Replay script must be a list of handoffs or an object")

    orchestrator = _build_orchestrator(config, approve=approve, report_dir=report_dir)
    event_log = EventLog(echo=not as_json)
    orchestrator.add_listener(event_log)
    asyncio.run(_replay(orchestrator, script, echo=not as_json))

    status = orchestrator.get_status()
    if as_json:
        context = orchestrator.context
        payload = {
            "status": status,
            "events": event_log.events,
            "context": context_to_dict(context) if context else None,
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    click.echo(f"Final role: {status['current_role']}")
    ready = available_transitions(orchestrator.current_role, orchestrator.context)
    if ready:
        click.echo("Open edges: " + ", ".join(item.target.value for item in ready))
    click.echo(
        "Rejections: "
        f"test={status['test_rejections']} "
        f"security={status['security_rejections']} "
        f"design_review={status['design_review_rejections']}"
    )


@cli.command("batch")
@click.argument("tasks_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--approve/--deny", default=False, help="Answer for human intervention requests.")
@click.option("--report-dir", default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
@click.pass_context
def batch_command(
    ctx: click.Context,
    tasks_path: Path,
    approve: bool,
    report_dir: str | None,
    as_json: bool,
    config_value: str,
) -> None:
    """Run spec tasks in order with scripted per-role handoffs."""
    config = _load(ctx, config_value)
    data = _read_json(tasks_path)
    if not isinstance(data, dict) or not isinstance(data.get("tasks"), list):
        raise click.ClickException("Tasks file must be an object with a 'tasks' list")

    orchestrator = _build_orchestrator(config, approve=approve, report_dir=report_dir)
    if not as_json:
        orchestrator.add_listener(EventLog(echo=True))
    runner = SpecTaskRunner(orchestrator, ScriptedDriver(data.get("handoffs", {})), config.batch)
    try:
        summary = asyncio.run(runner.run(data["tasks"]))
    except ValueError as exc:
        raise click.ClickException(f"Invalid task definition: {exc}") from exc

    if as_json:
        click.echo(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
    else:
        for outcome in summary.outcomes:
            line = f"{outcome.task_id}: {outcome.status} after {outcome.steps} handoffs"
            if outcome.error:
                line = f"{line} ({outcome.error})"
            click.echo(line)
        click.echo(f"Tasks: {summary.completed}/{len(summary.outcomes)} completed")
    if not summary.all_succeeded:
        raise click.ClickException(f"{summary.failed} task(s) did not complete")
