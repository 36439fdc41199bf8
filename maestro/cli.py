"""maestro CLI — typer-based command interface."""

from __future__ import annotations

import asyncio
import json
import uuid
from pathlib import Path

import typer

from .errors import MaestroError

app = typer.Typer(
    name="maestro",
    help="maestro — mode orchestration and handoff protocol",
    no_args_is_help=True,
)

# -------------------------------------------------------------------
# Templates
# -------------------------------------------------------------------

DEFAULT_CONFIG_TEMPLATE = """\
# .maestro/config.yaml — team-shared configuration
# Mode definitions (*-mode.md) are read from modes_dir; the built-in
# catalogue is used while it is empty.
modes_dir: .maestro/modes

router:
  retry_limit: 2
  dispatch_retry_limit: 2
  max_steps: 20
  design_first: true

dispatch:
  backend: text_gen
  provider: anthropic
  model: claude-sonnet-4-5
  timeout_sec: 600
  max_prior_artifacts: 50

state:
  db_path: .maestro/state.db
  markdown_path: .maestro/workflow_state.md

notify:
  webhook_url: ""
  events:
    - workflow.blocked
    - workflow.terminated

logging:
  level: INFO
  log_dir: ""
"""

DEFAULT_LOCAL_CONFIG_TEMPLATE = """\
# .maestro/local.config.yaml — personal overrides (DO NOT commit)
# providers:
#   anthropic:
#     api_key: sk-ant-xxx
#   openai:
#     api_key: sk-xxx
#   google:
#     api_key: AIza-xxx
"""

GITIGNORE_ENTRIES = [
    ".maestro/local.config.yaml",
    ".maestro/state.db",
    ".maestro/state.db-wal",
    ".maestro/state.db-shm",
]

STATE_ICONS = {
    "idle": "⏳", "dispatching": "🔄", "awaiting_report": "🔄",
    "evaluating": "🔄", "blocked": "⛔", "terminated": "✅",
}


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _get_project_root() -> Path:
    return Path.cwd()


def _run_async(coro):
    """Run an async coroutine from sync context."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def _load(root: Path):
    """Load config and set up logging from it."""
    from .config import load_config
    from .logging_config import setup_logging

    config = load_config(root)
    log_dir = str(config.resolve(config.logging.log_dir)) if config.logging.log_dir else ""
    setup_logging(config.logging.level, log_dir)
    return config


async def _get_db(config):
    from .db import Database
    db_path = config.resolve(config.state.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = Database(str(db_path))
    await db.init()
    return db


def _create_dispatcher(registry, config):
    from .dispatcher import Dispatcher
    return Dispatcher.from_config(registry, config)


def _create_notifier(config):
    from .notifier import Notifier
    return Notifier(webhook_url=config.notify.webhook_url, events=config.notify.events)


def _new_workflow_id() -> str:
    return f"wf-{uuid.uuid4().hex[:8]}"


def _print_outcome(outcome) -> None:
    icon = STATE_ICONS.get(outcome.state.value, "  ")
    typer.echo(f"\n  {icon} {outcome.workflow_id} {outcome.state.value} after {outcome.steps} step(s)")
    if outcome.error_kind:
        typer.echo(f"  Error: {outcome.error_kind}")
    if outcome.reason:
        typer.echo(f"  Reason: {outcome.reason}")
    if outcome.blocked:
        typer.echo(f"  Resume with: maestro resume {outcome.workflow_id} --mode <mode>")


def _fail(exc: MaestroError) -> None:
    typer.echo(f"  {exc.kind}: {exc}", err=True)
    raise typer.Exit(1)


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------

@app.command()
def init():
    """Initialize maestro in the current project."""
    root = _get_project_root()

    maestro_dir = root / ".maestro"
    maestro_dir.mkdir(exist_ok=True)

    config_path = maestro_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
        typer.echo(f"  Created {config_path.relative_to(root)}")
    else:
        typer.echo(f"  Exists  {config_path.relative_to(root)}")

    local_path = maestro_dir / "local.config.yaml"
    if not local_path.exists():
        local_path.write_text(DEFAULT_LOCAL_CONFIG_TEMPLATE)
        typer.echo(f"  Created {local_path.relative_to(root)}")

    modes_dir = maestro_dir / "modes"
    if not modes_dir.exists():
        modes_dir.mkdir()
        typer.echo(f"  Created {modes_dir.relative_to(root)}/")

    gitignore_path = root / ".gitignore"
    existing = ""
    if gitignore_path.exists():
        existing = gitignore_path.read_text()
    additions = [e for e in GITIGNORE_ENTRIES if e not in existing]
    if additions:
        with open(gitignore_path, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write("# maestro\n")
            for entry in additions:
                f.write(f"{entry}\n")
        typer.echo("  Updated .gitignore")

    typer.echo("\n  maestro initialized. Run `maestro modes` to list the catalogue.")


@app.command()
def modes(
    export: Path = typer.Option(None, "--export", help="Write the catalogue as .roomodes JSON"),
):
    """List registered modes."""
    root = _get_project_root()

    from .registry import load_registry, to_roomodes

    try:
        registry = load_registry(_load(root))
    except MaestroError as exc:
        _fail(exc)

    if export is not None:
        export.write_text(json.dumps(to_roomodes(registry), indent=2) + "\n", encoding="utf-8")
        typer.echo(f"  Wrote {len(registry)} mode(s) to {export}")
        return

    typer.echo(f"\n  {'Mode':<22} {'Capabilities':<32} {'Reports'}")
    typer.echo(f"  {'─' * 22} {'─' * 32} {'─' * 30}")
    for mode in registry:
        caps = ", ".join(sorted(mode.capabilities)) or "—"
        kinds = ", ".join(sorted(k.value for k in mode.report_kinds)) or "—"
        typer.echo(f"  {mode.name:<22} {caps:<32} {kinds}")
    typer.echo("")


@app.command()
def run(
    objective: str = typer.Argument(..., help="What the workflow should achieve"),
    category: str = typer.Option("", "--category", "-c", help="Task category, e.g. debug"),
    mode: str = typer.Option("", "--mode", "-m", help="Start at this mode"),
    constraint: list[str] = typer.Option([], "--constraint", help="Constraint (repeatable)"),
):
    """Start a new workflow."""
    root = _get_project_root()

    async def _run():
        from .models import Objective
        from .registry import load_registry
        from .router import Maestro
        from .state import WorkflowStateStore

        config = _load(root)
        registry = load_registry(config)
        db = await _get_db(config)
        notifier = _create_notifier(config)
        try:
            workflow_id = _new_workflow_id()
            store = WorkflowStateStore(
                db, workflow_id, config.resolve(config.state.markdown_path),
            )
            maestro = Maestro(
                registry, _create_dispatcher(registry, config), store, db, config, notifier,
            )
            typer.echo(f"  maestro — starting workflow {workflow_id}")
            return await maestro.run(Objective(
                text=objective, category=category, mode=mode, constraints=tuple(constraint),
            ))
        finally:
            await notifier.close()
            await db.close()

    try:
        outcome = _run_async(_run())
    except MaestroError as exc:
        _fail(exc)
    _print_outcome(outcome)


@app.command()
def resume(
    workflow_id: str = typer.Argument(..., help="Blocked workflow ID"),
    mode: str = typer.Option(..., "--mode", "-m", help="Mode to dispatch next"),
    instruction: str = typer.Option("", "--instruction", "-i", help="Instruction for the mode"),
    category: str = typer.Option("", "--category", "-c", help="Category of the remaining work"),
):
    """Resume a blocked workflow with an explicit directive."""
    root = _get_project_root()

    async def _resume():
        from .models import Directive
        from .registry import load_registry
        from .router import Maestro

        config = _load(root)
        registry = load_registry(config)
        db = await _get_db(config)
        notifier = _create_notifier(config)
        try:
            maestro = await Maestro.restore(
                workflow_id, registry, _create_dispatcher(registry, config), db, config,
                notifier, markdown_path=config.resolve(config.state.markdown_path),
            )
            return await maestro.resume(
                Directive(mode=mode, instruction=instruction, category=category)
            )
        finally:
            await notifier.close()
            await db.close()

    try:
        outcome = _run_async(_resume())
    except MaestroError as exc:
        _fail(exc)
    _print_outcome(outcome)


@app.command()
def fanout(
    workflow_id: str = typer.Argument(..., help="Blocked workflow ID"),
    task: list[str] = typer.Option(..., "--task", "-t", help="MODE:INSTRUCTION (repeatable)"),
):
    """Resume a blocked workflow with concurrent, independent tasks."""
    root = _get_project_root()

    directives = []
    for item in task:
        mode_name, _, instruction = item.partition(":")
        directives.append((mode_name.strip(), instruction.strip()))

    async def _fanout():
        from .models import Directive
        from .registry import load_registry
        from .router import Maestro

        config = _load(root)
        registry = load_registry(config)
        db = await _get_db(config)
        notifier = _create_notifier(config)
        try:
            maestro = await Maestro.restore(
                workflow_id, registry, _create_dispatcher(registry, config), db, config,
                notifier, markdown_path=config.resolve(config.state.markdown_path),
            )
            return await maestro.fan_out(
                [Directive(mode=m, instruction=i) for m, i in directives]
            )
        finally:
            await notifier.close()
            await db.close()

    try:
        outcome = _run_async(_fanout())
    except MaestroError as exc:
        _fail(exc)
    _print_outcome(outcome)


@app.command()
def status(
    workflow_id: str = typer.Argument(None, help="Show details for a specific workflow"),
):
    """Show status overview."""
    root = _get_project_root()

    async def _status():
        config = _load(root)
        db = await _get_db(config)
        try:
            if workflow_id:
                wf = await db.get_workflow(workflow_id)
                if not wf:
                    typer.echo(f"  Workflow '{workflow_id}' not found.")
                    return
                typer.echo(f"\n  {wf['id']}")
                typer.echo(f"  Objective: {wf['objective']}")
                typer.echo(f"  Category: {wf['category'] or '—'}")
                typer.echo(f"  State: {wf['state']}")
                if wf["current_mode"]:
                    typer.echo(f"  Mode: {wf['current_mode']}")
                if wf["error_kind"]:
                    typer.echo(f"  Error: {wf['error_kind']}")
                if wf["reason"]:
                    typer.echo(f"  Reason: {wf['reason']}")
                tasks = await db.get_tasks(workflow_id)
                if tasks:
                    typer.echo("\n  Tasks:")
                    for t in tasks:
                        failure = f" — {t.failure_reason}" if t.failure_reason else ""
                        typer.echo(
                            f"    {t.id}: {t.target_mode} [{t.status.value}] "
                            f"attempts={t.attempt}{failure}"
                        )
                return

            workflows = await db.list_workflows()
            if not workflows:
                typer.echo("  No workflows found.")
                return

            typer.echo("\n  maestro — Status Overview")
            typer.echo("  " + "─" * 50)
            for wf in workflows:
                icon = STATE_ICONS.get(wf["state"], "  ")
                typer.echo(f"  {icon} {wf['id']:<14} {wf['state']:<12} {wf['objective'][:40]}")
        finally:
            await db.close()

    _run_async(_status())


@app.command()
def history(workflow_id: str = typer.Argument(..., help="Workflow ID")):
    """Show the workflow's history in order."""
    root = _get_project_root()

    async def _history():
        from .state import WorkflowStateStore

        config = _load(root)
        db = await _get_db(config)
        try:
            if not await db.get_workflow(workflow_id):
                typer.echo(f"  Workflow '{workflow_id}' not found.")
                return
            state = await WorkflowStateStore(db, workflow_id).load()
            typer.echo(f"\n  History — {workflow_id}")
            typer.echo("  " + "─" * 50)
            for h in state.history:
                error = f" [{h.error_kind}]" if h.error_kind else ""
                typer.echo(
                    f"  {h.seq:>3} {h.kind.value:<10} {h.task_id or '-':<16} "
                    f"{h.mode or '-':<20}{error} {h.summary}"
                )
        finally:
            await db.close()

    _run_async(_history())


@app.command()
def state(workflow_id: str = typer.Argument(..., help="Workflow ID")):
    """Print the workflow state record as markdown."""
    root = _get_project_root()

    async def _state():
        from .state import WorkflowStateStore, render_state_markdown

        config = _load(root)
        db = await _get_db(config)
        try:
            if not await db.get_workflow(workflow_id):
                typer.echo(f"  Workflow '{workflow_id}' not found.")
                return
            snapshot = await WorkflowStateStore(db, workflow_id).load()
            typer.echo(render_state_markdown(snapshot))
        finally:
            await db.close()

    _run_async(_state())


@app.command()
def logs(workflow_id: str = typer.Argument(..., help="Workflow ID")):
    """Show execution logs."""
    root = _get_project_root()

    async def _logs():
        config = _load(root)
        db = await _get_db(config)
        try:
            entries = await db.get_logs(workflow_id)
            if not entries:
                typer.echo(f"  No logs for '{workflow_id}'.")
                return
            typer.echo(f"\n  Logs — {workflow_id}")
            typer.echo("  " + "─" * 50)
            for entry in entries:
                typer.echo(f"  [{entry['created_at']}] {entry['event']}")
                if entry.get("detail"):
                    typer.echo(f"    {json.dumps(entry['detail'], ensure_ascii=False)}")
        finally:
            await db.close()

    _run_async(_logs())


@app.command("config")
def config_show():
    """Show merged configuration."""
    root = _get_project_root()

    import yaml
    from dataclasses import asdict

    config = _load(root)

    data = asdict(config)
    # Remove sensitive keys
    if "providers" in data:
        for p in data["providers"].values():
            if isinstance(p, dict) and "api_key" in p and p["api_key"]:
                p["api_key"] = p["api_key"][:8] + "..."

    typer.echo("\n  maestro — Merged Configuration")
    typer.echo("  " + "─" * 40)
    typer.echo(yaml.dump(data, default_flow_style=False, allow_unicode=True))


if __name__ == "__main__":
    app()
