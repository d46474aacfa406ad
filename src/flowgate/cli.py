from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from flowgate import __version__
from flowgate.config import CONFIG_FILENAME, dumps_toml, load_config, save_config
from flowgate.errors import FlowgateError, GateFailure
from flowgate.lifecycle import LifecycleController
from flowgate.models import STEPS
from flowgate.state import StateStore


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_controller(config_value: str) -> LifecycleController:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    return LifecycleController(repo_root, config)


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


@contextmanager
def _engine_errors() -> Iterator[None]:
    try:
        yield
    except FlowgateError as exc:
        lines = [str(exc)]
        where = ", ".join(
            f"{label}={value}"
            for label, value in (("step", exc.step), ("gate", exc.gate), ("task", exc.task_id))
            if value
        )
        if where:
            lines.append(f"at: {where}")
        if isinstance(exc, GateFailure):
            lines.extend(
                f"  [{finding.severity}] {finding.location}: {finding.description}"
                for finding in exc.findings
            )
        if exc.recovery_actions:
            lines.append("recovery: " + ", ".join(exc.recovery_actions))
        raise click.ClickException("\n".join(lines)) from exc


config_option = click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)


@click.group()
@click.version_option(__version__, prog_name="flowgate")
@click.option("--verbose", is_flag=True, default=False, help="Log engine activity to stderr.")
def cli(verbose: bool) -> None:
    """Flowgate workflow engine."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@config_option
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    (repo_root / config.project.specs_dir).mkdir(parents=True, exist_ok=True)
    store = StateStore(repo_root / config.state.path)
    if not store.exists():
        store.replace({})
    click.echo(f"Initialized flowgate in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {store.path}")


@cli.command("config")
@config_option
def config_command(config_value: str) -> None:
    config = load_config(_resolve_config_path(Path.cwd().resolve(), config_value))
    click.echo(dumps_toml(config), nl=False)


@cli.command("status")
@config_option
def status_command(config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        _echo_json(controller.status())


@cli.command("next")
@click.option("--batch", is_flag=True, default=False, help="Return every parallel-safe ready task.")
@click.option("--verify", is_flag=True, default=False, help="Serve verification tasks.")
@config_option
def next_command(batch: bool, verify: bool, config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        _echo_json(controller.next_task(batch=batch, verify=verify))


@cli.command("mark")
@click.argument("task_ids", nargs=-1, required=True)
@click.option("--blocked", "blocked_reason", default=None, help="Mark blocked with this reason.")
@click.option("--defer", "defer_reason", default=None, help="Defer with this reason.")
@config_option
def mark_command(
    task_ids: tuple[str, ...],
    blocked_reason: str | None,
    defer_reason: str | None,
    config_value: str,
) -> None:
    controller = _load_controller(config_value)
    ids = [item for raw in task_ids for item in raw.split(",") if item.strip()]
    with _engine_errors():
        result = controller.mark_task(ids, blocked=blocked_reason, deferred=defer_reason)
    queue = result["queue"]
    click.echo(f"Marked {', '.join(result['marked'])} {result['status']}")
    click.echo(f"Progress: {queue['completed']}/{queue['total']} complete, {queue['remaining']} remaining")
    if queue["newly_eligible"]:
        click.echo(f"Now ready: {', '.join(queue['newly_eligible'])}")


@cli.command("check")
@click.argument("gate")
@click.option("--strict/--no-strict", default=None, help="Fail on any finding, not only critical ones.")
@config_option
@click.pass_context
def check_command(ctx: click.Context, gate: str, strict: bool | None, config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        result = controller.check_gate(gate, strict=strict)
    _echo_json(result.to_dict())
    if not result.passed:
        ctx.exit(1)


@cli.command("checks")
@click.argument("step", required=False, type=click.Choice(["analyze", "verify"]))
@config_option
def checks_command(step: str | None, config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        result = asyncio.run(controller.run_checks(step))
    _echo_json(result.to_dict())


@cli.group("state")
def state_group() -> None:
    """Read and write the persisted workflow state."""


@state_group.command("get")
@click.argument("path", required=False)
@config_option
def state_get_command(path: str | None, config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        value = controller.get_state(path) if path else controller.store.snapshot()
    _echo_json(value)


@state_group.command("set")
@click.argument("path")
@click.argument("value")
@config_option
def state_set_command(path: str, value: str, config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        controller.set_state(path, _parse_value(value))
    click.echo(f"Set {path}")


@cli.group("phase")
def phase_group() -> None:
    """Start, close and archive phases."""


@phase_group.command("start")
@click.argument("name")
@click.option("--goal", "goals", multiple=True, help="Phase goal; repeat for several.")
@click.option("--id", "phase_id", default=None, help="Explicit 4-digit phase id.")
@click.option("--after", default=None, help="Insert after this phase id.")
@config_option
def phase_start_command(
    name: str,
    goals: tuple[str, ...],
    phase_id: str | None,
    after: str | None,
    config_value: str,
) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        phase = controller.start_phase(name, list(goals), phase_id=phase_id, after=after)
    click.echo(f"Started phase {phase.id} {phase.name} ({len(phase.goals)} goals)")
    click.echo(f"Branch: {phase.branch}")


@phase_group.command("close")
@config_option
def phase_close_command(config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        phase = controller.close_phase()
    click.echo(f"Closed phase {phase.id}")


@phase_group.command("archive")
@config_option
def phase_archive_command(config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        record = controller.archive_phase()
    click.echo(f"Archived phase {record.get('id')}")


@phase_group.command("history")
@config_option
def phase_history_command(config_value: str) -> None:
    controller = _load_controller(config_value)
    history = controller.history()
    if not history:
        click.echo("No archived phases.")
        return
    for item in history:
        click.echo(f"{item.get('id')} {item.get('name')} archived {item.get('archived_at')}")


@cli.group("step")
def step_group() -> None:
    """Operator controls for the current step."""


@step_group.command("complete")
@config_option
def step_complete_command(config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        payload = controller.complete_step()
    _echo_json(payload)


@step_group.command("reset")
@click.argument("step", type=click.Choice(list(STEPS)))
@config_option
def step_reset_command(step: str, config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        controller.reset(step)
    click.echo(f"Reset to {step}")


@step_group.command("skip")
@click.argument("step", type=click.Choice(list(STEPS)))
@config_option
def step_skip_command(step: str, config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        controller.skip_to(step)
    click.echo(f"Skipped to {step}")


@step_group.command("retry")
@config_option
def step_retry_command(config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        controller.retry()
    click.echo("Step back in progress.")


@cli.group("autofix")
def autofix_group() -> None:
    """Decide what happens after the auto-fix budget runs out."""


@autofix_group.command("resolve")
@click.argument("choice", type=click.Choice(["continue", "abort"]))
@config_option
def autofix_resolve_command(choice: str, config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        outcome = controller.resolve_auto_fix(choice)
    _echo_json(outcome.to_dict())
    with _engine_errors():
        outcome.raise_for_status(controller.step().get("current"))


@cli.group("human")
def human_group() -> None:
    """Human approval gates."""


@human_group.command("request")
@click.argument("gate")
@click.option("--criterion", "criteria", multiple=True)
@config_option
def human_request_command(gate: str, criteria: tuple[str, ...], config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        controller.await_human(gate, list(criteria))
    click.echo(f"Waiting on human decision for {gate}")


@human_group.command("decide")
@click.argument("decision", type=click.Choice(["confirmed", "skipped", "pending"]))
@config_option
def human_decide_command(decision: str, config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        result = controller.confirm_human_gate(decision=decision)
    click.echo(f"Human gate {result}")


@cli.command("defer-goal")
@click.argument("goal_id")
@click.argument("reason")
@config_option
def defer_goal_command(goal_id: str, reason: str, config_value: str) -> None:
    controller = _load_controller(config_value)
    with _engine_errors():
        controller.defer_goal(goal_id, reason)
    click.echo(f"Deferred {goal_id}")


@cli.command("events")
@click.option("--event", "event_name", default=None)
@click.option("--limit", default=20, show_default=True)
@config_option
def events_command(event_name: str | None, limit: int, config_value: str) -> None:
    controller = _load_controller(config_value)
    for record in controller.events(event_name)[-limit:]:
        details = {key: value for key, value in record.items() if key not in {"event", "at"}}
        click.echo(f"{record.get('at')} {record.get('event')} {json.dumps(details, ensure_ascii=False)}")
