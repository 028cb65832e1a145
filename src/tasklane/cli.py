from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from tasklane import __version__
from tasklane.config import DEFAULT_CONFIG_FILENAME, load_config, save_config
from tasklane.engine import Engine, OperationKind, dispatch, load_engine
from tasklane.errors import TasklaneError
from tasklane.state.progress_log import EntryType
from tasklane.state.task_graph import DEFAULT_VERSION, DESTINATION_HINTS, TASK_STATUSES, Artifacts

LOG_LEVELS = ["debug", "info", "warning", "error"]


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_engine(config_value: str) -> Engine:
    repo_root = Path.cwd().resolve()
    return load_engine(repo_root, _resolve_config_path(repo_root, config_value))


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _parse_json_option(raw: str, name: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint=name) from exc


@contextmanager
def _engine_errors() -> Iterator[None]:
    try:
        yield
    except TasklaneError as exc:
        raise click.ClickException(str(exc)) from exc


config_option = click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)


@click.group()
@click.version_option(__version__, prog_name="tasklane")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="warning",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Tasklane task and progress state engine."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--spec", default=None, help="Create an empty task graph for this spec.")
@click.option("--version", "graph_version", default=DEFAULT_VERSION, show_default=True)
@click.option("--tasks-file", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
@config_option
def init_command(spec: str | None, graph_version: str, tasks_file: Path | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    with _engine_errors():
        config = load_config(config_path)
        if not config_path.exists():
            save_config(config_path, config)
        state_root = config.state_root(repo_root)
        for sub in ("progress", "specs", "state", "backlog"):
            (state_root / sub).mkdir(parents=True, exist_ok=True)
        click.echo(f"Initialized tasklane in {repo_root}")
        click.echo(f"Config: {config_path}")
        click.echo(f"State: {state_root}")
        if spec:
            tasks: list[dict[str, Any]] = []
            if tasks_file is not None:
                raw = _parse_json_option(tasks_file.read_text(encoding="utf-8"), "--tasks-file")
                tasks = raw.get("tasks", []) if isinstance(raw, dict) else raw
            engine = load_engine(repo_root, config_path)
            graph = engine.init_spec(spec, version=graph_version, tasks=tasks)
            click.echo(f"Spec: {graph.spec} ({len(graph.tasks)} tasks)")


@cli.command("status")
@click.argument("spec")
@config_option
def status_command(spec: str, config_value: str) -> None:
    with _engine_errors():
        _echo_json(_load_engine(config_value).status(spec))


@cli.command("log")
@click.argument("entry_type", type=click.Choice([item.value for item in EntryType]))
@click.option("--payload", "payload_json", default="{}", show_default=True)
@click.option("--spec", default=None)
@config_option
def log_command(entry_type: str, payload_json: str, spec: str | None, config_value: str) -> None:
    payload = _parse_json_option(payload_json, "--payload")
    if not isinstance(payload, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--payload")
    if spec:
        payload.setdefault("spec", spec)
    with _engine_errors():
        engine = _load_engine(config_value)
        _echo_json(dispatch(engine, OperationKind.APPEND, entry_type=entry_type, payload=payload, spec=spec))


@cli.command("progress")
@click.option("--type", "entry_type", type=click.Choice([item.value for item in EntryType]), default=None)
@click.option("--count", default=10, show_default=True, type=click.IntRange(min=1))
@config_option
def progress_command(entry_type: str | None, count: int, config_value: str) -> None:
    with _engine_errors():
        entries = _load_engine(config_value).progress(entry_type, count)
        _echo_json([entry.to_dict() for entry in entries])


@cli.command("archive")
@config_option
def archive_command(config_value: str) -> None:
    with _engine_errors():
        result = _load_engine(config_value).archive()
    if result.moved:
        click.echo(f"Archived {result.moved} entries into {', '.join(result.periods)}")
    else:
        click.echo("Nothing to archive.")
    click.echo(f"Live entries: {result.live_count}")


@cli.command("update")
@click.argument("spec")
@click.argument("task_id")
@click.argument("status", type=click.Choice(list(TASK_STATUSES)))
@click.option("--notes", default=None)
@click.option("--blocker", default=None)
@config_option
def update_command(
    spec: str,
    task_id: str,
    status: str,
    notes: str | None,
    blocker: str | None,
    config_value: str,
) -> None:
    with _engine_errors():
        task = _load_engine(config_value).update_status(spec, task_id, status, notes=notes, blocker=blocker)
    _echo_json({"success": True, "task_id": task.id, "status": task.status})


@cli.command("reopen")
@click.argument("spec")
@click.argument("task_id")
@click.option("--reason", required=True)
@config_option
def reopen_command(spec: str, task_id: str, reason: str, config_value: str) -> None:
    with _engine_errors():
        task = _load_engine(config_value).reopen(spec, task_id, reason)
    _echo_json({"success": True, "task_id": task.id, "status": task.status})


@cli.command("artifacts")
@click.argument("spec")
@click.argument("task_id")
@click.argument("artifacts_json")
@click.option("--merge", is_flag=True, default=False)
@config_option
def artifacts_command(spec: str, task_id: str, artifacts_json: str, merge: bool, config_value: str) -> None:
    raw = _parse_json_option(artifacts_json, "ARTIFACTS_JSON")
    with _engine_errors():
        artifacts = Artifacts.from_dict(raw)
        task = _load_engine(config_value).set_artifacts(spec, task_id, artifacts, merge=merge)
    _echo_json({"success": True, "task_id": task.id, "artifacts": task.artifacts.to_dict()})


@cli.command("defer")
@click.argument("spec")
@click.argument("description")
@click.option("--origin", default="")
@click.option("--hint", "destination_hint", type=click.Choice(list(DESTINATION_HINTS)), default="wave_task")
@click.option("--file", "files", multiple=True)
@click.option("--priority", default=None)
@click.option("--id", "item_id", default=None)
@config_option
def defer_command(
    spec: str,
    description: str,
    origin: str,
    destination_hint: str,
    files: tuple[str, ...],
    priority: str | None,
    item_id: str | None,
    config_value: str,
) -> None:
    with _engine_errors():
        item = _load_engine(config_value).defer(
            spec,
            description,
            origin=origin,
            destination_hint=destination_hint,
            file_context=files,
            priority=priority,
            item_id=item_id,
        )
    _echo_json(item.to_dict())


@cli.command("render")
@click.argument("spec", required=False)
@config_option
def render_command(spec: str | None, config_value: str) -> None:
    with _engine_errors():
        _echo_json(dispatch(_load_engine(config_value), OperationKind.RENDER, spec=spec))


@cli.command("graduate")
@click.argument("spec")
@click.option("--allow-duplicates", is_flag=True, default=False)
@config_option
def graduate_command(spec: str, allow_duplicates: bool, config_value: str) -> None:
    with _engine_errors():
        _echo_json(
            dispatch(
                _load_engine(config_value),
                OperationKind.GRADUATE,
                spec=spec,
                allow_duplicates=allow_duplicates,
            )
        )


@cli.command("promote")
@click.argument("spec")
@click.argument("item_id", required=False)
@click.option("--wave", required=True, type=click.IntRange(min=1))
@config_option
def promote_command(spec: str, item_id: str | None, wave: int, config_value: str) -> None:
    """Promote one deferred item, or every item prioritized for the wave."""
    with _engine_errors():
        engine = _load_engine(config_value)
        if item_id:
            _echo_json(engine.promote(spec, item_id, wave))
        else:
            _echo_json(engine.promote_wave(spec, wave))


@cli.command("checkpoint")
@click.option("--reason", default="manual", show_default=True)
@click.option("--spec", default=None)
@config_option
def checkpoint_command(reason: str, spec: str | None, config_value: str) -> None:
    with _engine_errors():
        payload = dispatch(_load_engine(config_value), OperationKind.CHECKPOINT, reason=reason, spec=spec)
    click.echo(f"Checkpoint: {payload['name']}")


@cli.command("checkpoints")
@config_option
def checkpoints_command(config_value: str) -> None:
    with _engine_errors():
        checkpoints = _load_engine(config_value).checkpoints.list()
    if not checkpoints:
        click.echo("No checkpoints found.")
        return
    for checkpoint in checkpoints:
        click.echo(
            f"{checkpoint.name} {checkpoint.reason:<12} rev={checkpoint.external_revision[:10]} "
            f"tasks={checkpoint.tasks_completed}"
        )


@cli.group("session")
def session_group() -> None:
    """Session start and end."""


@session_group.command("start")
@click.option("--spec", default=None)
@config_option
def session_start_command(spec: str | None, config_value: str) -> None:
    with _engine_errors():
        state, briefing = _load_engine(config_value).start_session(spec)
    _echo_json({"session": state.to_dict(), "briefing": briefing.to_dict()})


@session_group.command("end")
@config_option
def session_end_command(config_value: str) -> None:
    with _engine_errors():
        summary = _load_engine(config_value).end_session()
    _echo_json(summary.to_dict())


@cli.group("hook")
def hook_group() -> None:
    """Entry points for editor and agent hooks."""


@hook_group.command("post-file-change")
@click.argument("path", type=click.Path(path_type=Path))
@config_option
def post_file_change_command(path: Path, config_value: str) -> None:
    with _engine_errors():
        _echo_json(_load_engine(config_value).post_file_change(path))


@hook_group.command("session-start")
@click.option("--spec", default=None)
@config_option
def hook_session_start_command(spec: str | None, config_value: str) -> None:
    with _engine_errors():
        engine = _load_engine(config_value)
        state, briefing = engine.start_session(spec)
        rendered = dispatch(engine, OperationKind.RENDER, spec=state.spec)
    _echo_json({"session": state.to_dict(), "briefing": briefing.to_dict(), **rendered})


@hook_group.command("session-end")
@config_option
def hook_session_end_command(config_value: str) -> None:
    with _engine_errors():
        engine = _load_engine(config_value)
        session = engine.sessions.current()
        summary = engine.end_session()
        rendered = dispatch(engine, OperationKind.RENDER, spec=session.spec if session else None)
    _echo_json({**summary.to_dict(), **rendered})


@cli.command("run")
@click.argument("spec")
@click.argument("task_ids", nargs=-1)
@click.option("--override", is_flag=True, default=False, help="Run more than one parent task.")
@click.option("--resume", is_flag=True, default=False, help="Continue the latest checkpoint's plan.")
@config_option
@click.pass_context
def run_command(
    ctx: click.Context,
    spec: str,
    task_ids: tuple[str, ...],
    override: bool,
    resume: bool,
    config_value: str,
) -> None:
    with _engine_errors():
        engine = _load_engine(config_value)
        report = asyncio.run(engine.run(spec, task_ids, override=override, resume=resume))

    click.echo(f"Run ID: {report.run_id}")
    click.echo(f"Status: {report.status.value}")
    click.echo(f"Plan: {', '.join(report.plan) or '-'}")
    if report.requires_confirmation:
        click.echo(f"Needs confirmation: {', '.join(report.requested)} (use --override)")
    for item in report.results:
        detail = f" ({item.blocker or item.notes})" if (item.blocker or item.notes) else ""
        click.echo(f"  {item.task_id}: {item.status}{detail}")
    if report.reason:
        click.echo(f"Reason: {report.reason}")
    if report.checkpoint:
        click.echo(f"Checkpoint: {report.checkpoint}")
    ctx.exit(report.exit_code)
