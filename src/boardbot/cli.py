from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from boardbot.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    CodexSDKBackend,
    ResilientBackend,
    RetryPolicy,
)
from boardbot.config import BackendName, BoardbotConfig, load_config, save_config
from boardbot.dependencies import DependencyResolver
from boardbot.driver import PollCycleDriver
from boardbot.errors import BoardbotError
from boardbot.models import FeatureKey, Priority, Task, TaskStatus, new_task_id
from boardbot.store import SQLiteTaskStore
from boardbot.workflow import resolve_gates

logger = logging.getLogger("boardbot")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: BoardbotConfig
    store: SQLiteTaskStore


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(config: BoardbotConfig) -> None:
    level = getattr(logging, config.logging.level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    _configure_logging(config)
    store_path = Path(config.store.path)
    if not store_path.is_absolute():
        store_path = repo_root / store_path
    try:
        store = SQLiteTaskStore(store_path, timeout_seconds=config.store.timeout_seconds)
    except BoardbotError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(repo_root=repo_root, config_path=config_path, config=config, store=store)


def _build_single_backend(
    backend_name: BackendName, repo_root: Path, config: BoardbotConfig
) -> AgentBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    if backend_name == "codex_sdk":
        return CodexSDKBackend(model=config.backend.model, working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


def _record_backend_event(event: dict[str, Any]) -> None:
    name = event.get("event", "backend_event")
    if name in {"backend_attempt_failed", "backend_failover_start"}:
        logger.warning("%s: %s", name, event)
    else:
        logger.debug("%s: %s", name, event)


def _build_backend(config: BoardbotConfig, repo_root: Path) -> ResilientBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, repo_root, config),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root, config),
        retry_policy=policy,
        event_hook=_record_backend_event,
    )


def _build_driver(runtime: Runtime) -> PollCycleDriver:
    working_directory = Path(runtime.config.worker.working_directory)
    if not working_directory.is_absolute():
        working_directory = (runtime.repo_root / working_directory).resolve()
    runtime.config.worker.working_directory = str(working_directory)
    backend = _build_backend(runtime.config, working_directory)
    return PollCycleDriver(runtime.store, backend, runtime.config)


def _parse_setting(raw: str) -> tuple[str, Any]:
    key, sep, value = raw.partition("=")
    if not sep or not key.strip():
        raise click.BadParameter(f"Expected key=value, got '{raw}'")
    try:
        parsed: Any = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    return key.strip(), parsed


@click.group()
def cli() -> None:
    """Boardbot CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "codex", "codex_sdk"]), default=None)
@click.option("--workspace", "workspace_id", default=None)
@click.option("--config", "config_value", default="boardbot.toml", show_default=True)
def init_command(backend: str | None, workspace_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    if workspace_id:
        config.worker.workspace_id = workspace_id
    save_config(config_path, config)

    runtime = _load_runtime(repo_root, config_path)
    toggles = runtime.store.get_feature_toggles(config.worker.workspace_id)

    click.echo(f"Initialized boardbot in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Store: {runtime.store.path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(
        "Features: "
        + ", ".join(
            f"{toggle.feature_key.value}={'on' if toggle.enabled else 'off'}"
            for toggle in toggles
        )
    )


@cli.command("add")
@click.argument("title")
@click.option("--description", default="")
@click.option(
    "--priority",
    type=click.Choice([priority.value for priority in Priority]),
    default=Priority.MEDIUM.value,
    show_default=True,
)
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=TaskStatus.TODO.value,
    show_default=True,
)
@click.option("--parent", "parent_task_id", default=None)
@click.option("--project", "task_list_id", default=None)
@click.option("--label", "labels", multiple=True)
@click.option("--config", "config_value", default="boardbot.toml", show_default=True)
def add_command(
    title: str,
    description: str,
    priority: str,
    status: str,
    parent_task_id: str | None,
    task_list_id: str | None,
    labels: tuple[str, ...],
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    workspace_id = runtime.config.worker.workspace_id
    gates = resolve_gates(runtime.store.get_feature_toggles(workspace_id))
    if TaskStatus(status) not in gates.valid_statuses:
        raise click.ClickException(
            f"Status {status} is not available: enable the feature that owns it first"
        )
    if parent_task_id and runtime.store.get_task(parent_task_id) is None:
        raise click.ClickException(f"Parent task not found: {parent_task_id}")
    existing = runtime.store.list_tasks(workspace_id, [TaskStatus(status)])
    task = Task(
        id=new_task_id(),
        workspace_id=workspace_id,
        title=title,
        description=description,
        status=TaskStatus(status),
        priority=Priority(priority),
        task_list_id=task_list_id,
        parent_task_id=parent_task_id,
        labels=list(labels),
        order=len(existing),
    )
    try:
        runtime.store.create_task(task)
    except BoardbotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(task.id)


@cli.command("depend")
@click.argument("task_id")
@click.argument("depends_on_task_id")
@click.option("--config", "config_value", default="boardbot.toml", show_default=True)
def depend_command(task_id: str, depends_on_task_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        DependencyResolver(runtime.store).add_dependency(task_id, depends_on_task_id)
    except BoardbotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{task_id} now depends on {depends_on_task_id}")


@cli.command("feature")
@click.argument("feature_key", type=click.Choice([key.value for key in FeatureKey]))
@click.option("--enable/--disable", "enabled", default=None)
@click.option("--set", "settings", multiple=True, help="Config entry as key=value.")
@click.option("--config", "config_value", default="boardbot.toml", show_default=True)
def feature_command(
    feature_key: str,
    enabled: bool | None,
    settings: tuple[str, ...],
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    workspace_id = runtime.config.worker.workspace_id
    toggles = {
        toggle.feature_key: toggle for toggle in runtime.store.get_feature_toggles(workspace_id)
    }
    toggle = toggles[FeatureKey(feature_key)]
    if enabled is not None:
        toggle.enabled = enabled
    for raw in settings:
        key, value = _parse_setting(raw)
        toggle.config[key] = value
    runtime.store.set_feature_toggle(toggle)
    click.echo(
        json.dumps(
            {
                "feature_key": toggle.feature_key.value,
                "enabled": toggle.enabled,
                "config": toggle.config,
            },
            ensure_ascii=False,
            indent=2,
        )
    )


@cli.command("poll")
@click.option("--config", "config_value", default="boardbot.toml", show_default=True)
def poll_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    driver = _build_driver(runtime)
    try:
        report = asyncio.run(driver.poll_once())
    except BoardbotError as exc:
        raise click.ClickException(str(exc)) from exc
    if report.task_id is None:
        click.echo("No work available.")
        return
    click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))


@cli.command("run")
@click.option("--config", "config_value", default="boardbot.toml", show_default=True)
def run_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    driver = _build_driver(runtime)
    try:
        asyncio.run(driver.run_forever())
    except KeyboardInterrupt:
        click.echo("Worker interrupted.")
    except BoardbotError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("status")
@click.option("--task", "task_id", default=None)
@click.option("--config", "config_value", default="boardbot.toml", show_default=True)
def status_command(task_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    if task_id:
        task = runtime.store.get_task(task_id)
        if task is None:
            raise click.ClickException(f"Task not found: {task_id}")
        resolver = DependencyResolver(runtime.store)
        payload: dict[str, Any] = {
            "task": task.to_dict(),
            "blocked": resolver.blocking_reason(task),
            "events": [event.to_dict() for event in runtime.store.list_events(task_id)],
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    workspace_id = runtime.config.worker.workspace_id
    counts: dict[str, int] = {status.value: 0 for status in TaskStatus}
    tasks = runtime.store.list_tasks(workspace_id)
    for task in tasks:
        counts[task.status.value] += 1
    payload = {
        "workspace_id": workspace_id,
        "counts": counts,
        "tasks": [
            {
                "id": task.id,
                "title": task.title,
                "status": task.status.value,
                "priority": task.priority.value,
                "assigned_to": task.assigned_to,
                "error_count": task.error_count,
                "retry_count": task.retry_count,
            }
            for task in tasks
        ],
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
