# cli.py
from __future__ import annotations

import logging
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import click

from jobgraph.config import EngineConfig, load_config
from jobgraph.dag import validate_acyclic
from jobgraph.errors import JobgraphError, ValidationError
from jobgraph.events import LoggingSink
from jobgraph.git_facts.git import repo_facts
from jobgraph.loader import load_workflow
from jobgraph.matrix import expand_all
from jobgraph.model import EventKind, TriggerContext, WorkflowDefinition
from jobgraph.report import RunReport
from jobgraph.runner import Scheduler
from jobgraph.triggers import CronError, next_fire, trigger_decision
from jobgraph.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_INTERRUPTED = 130

DEFAULT_WORKFLOWS = ("jobgraph.yml", "jobgraph.yaml")
EVENT_CHOICES = ["push", "pull_request", "schedule", "manual", "workflow_dispatch"]


def find_workflow_files(root: Path = Path(".")) -> list[Path]:
    """
    Find candidate workflow files in `root`.

    A default `jobgraph.yml`/`jobgraph.yaml` wins; otherwise every
    `*_workflow.yml`/`*_workflow.yaml` is a candidate.
    """
    for name in DEFAULT_WORKFLOWS:
        default = root / name
        if default.exists():
            return [default]
    found = list(root.glob("*_workflow.yml")) + list(root.glob("*_workflow.yaml"))
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = workflow_path.with_suffix(".yml")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  jobgraph run my_workflow.yml",
            )
            sys.exit(EXIT_INVALID)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOWS), "  *_workflow.yml"],
            suggestion="Create jobgraph.yml, or pass a workflow path:\n  jobgraph run my_workflow.yml",
        )
        sys.exit(EXIT_INVALID)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
        )
        sys.exit(EXIT_INVALID)

    return workflow_files[0]


def _load(workflow_arg: str | None, config_path: str | None, workers: int | None = None):
    """Load engine config and workflow; ValidationError exits with EXIT_INVALID."""
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        config = load_config(config_path)
        if workers is not None:
            config = replace(config, max_workers=workers).checked()
        workflow = load_workflow(workflow_path, config=config)
    except ValidationError as e:
        console.print_validation_error(e)
        sys.exit(EXIT_INVALID)
    console.print_debug(f"Loaded {len(workflow.jobs)} job(s) from {workflow_path}")
    return workflow, config


def _parse_meta(ctx, param, values) -> dict:
    meta = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}")
        meta[key] = value
    return meta


def _trigger_context(event, branch, actor, sha, fork, schedule, meta) -> TriggerContext:
    if branch is None or sha is None or actor is None:
        facts = repo_facts()
        branch = branch if branch is not None else facts.get("branch")
        sha = sha if sha is not None else facts.get("sha")
        actor = actor if actor is not None else facts.get("actor")
    return TriggerContext(
        event=EventKind.parse(event),
        branch=branch,
        is_fork=fork,
        actor=actor,
        sha=sha,
        schedule=schedule,
        timestamp=datetime.now(timezone.utc),
        metadata=meta,
    )


def trigger_options(f):
    """Options shared by `run` and `plan` that describe the triggering event."""
    options = [
        click.option("--event", default="push", show_default=True, type=click.Choice(EVENT_CHOICES),
                     help="Event that triggers the run"),
        click.option("--branch", default=None, help="Branch name (defaults to the current git branch)"),
        click.option("--actor", default=None, help="User that triggered the event"),
        click.option("--sha", default=None, help="Commit sha (defaults to git HEAD)"),
        click.option("--fork/--no-fork", default=False, help="Event comes from a fork"),
        click.option("--schedule", default=None, help="Cron expression that fired (schedule events)"),
        click.option("--meta", multiple=True, callback=_parse_meta, metavar="KEY=VALUE",
                     help="Extra github.<KEY> context values"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level for engine logging",
)
@click.pass_context
def cli(ctx, debug, log_level):
    """jobgraph: run CI job graphs from a declarative workflow file."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow", required=False)
@trigger_options
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--config", "config_path", default=None, help="Engine config file (YAML)")
@click.option("--report", "report_path", default=None, help="Write the JSON run report to this path")
@click.option("--verbose", is_flag=True, default=False, help="Print every state transition")
@click.pass_context
def run(ctx, workflow, event, branch, actor, sha, fork, schedule, meta, workers, config_path,
        report_path, verbose):
    """Run a workflow for one trigger event."""
    console = get_console()
    console.verbose = verbose

    wf, config = _load(workflow, config_path, workers)
    trigger = _trigger_context(event, branch, actor, sha, fork, schedule, meta)

    try:
        scheduler = Scheduler(
            wf,
            trigger,
            config=config,
            sinks=[LoggingSink(level=logging.DEBUG), console.print_transition],
        )
        console.print_run_started(wf.name, trigger.event.value, len(wf.jobs), len(scheduler.slots))
        report = scheduler.run()
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except ValidationError as e:
        console.print_validation_error(e)
        sys.exit(EXIT_INVALID)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_results(report)
    if report_path:
        saved = report.save(report_path)
        console.print_info(f"Report written to {saved}")

    if scheduler.interrupted:
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(EXIT_OK if report.succeeded else EXIT_FAILED)


@cli.command()
@click.argument("workflow", required=False)
@click.option("--config", "config_path", default=None, help="Engine config file (YAML)")
def validate(workflow, config_path):
    """Validate a workflow without running it."""
    console = get_console()
    wf, _ = _load(workflow, config_path)
    instances = sum(len(i) for i in expand_all(wf.jobs, env=wf.env).values())
    console.print_info(f"OK: {wf.name} ({len(wf.jobs)} jobs, {instances} instances)")


@cli.command()
@click.argument("workflow", required=False)
@trigger_options
@click.option("--config", "config_path", default=None, help="Engine config file (YAML)")
def plan(workflow, event, branch, actor, sha, fork, schedule, meta, config_path):
    """Show the trigger decision and expanded instances, stage by stage."""
    console = get_console()
    wf, config = _load(workflow, config_path)
    trigger = _trigger_context(event, branch, actor, sha, fork, schedule, meta)
    _print_plan(console, wf, config, trigger)


def _print_plan(console: Console, wf: WorkflowDefinition, config: EngineConfig, trigger: TriggerContext) -> None:
    matched, detail = trigger_decision(wf.triggers, trigger)
    instances = expand_all(
        wf.jobs, env=wf.env, trigger=trigger, default_timeout_minutes=config.default_timeout_minutes
    )
    now = trigger.timestamp or datetime.now(timezone.utc)
    schedules = []
    for cron in wf.triggers.schedules:
        try:
            schedules.append((cron, next_fire(cron, now)))
        except CronError:
            schedules.append((cron, None))
    console.print_plan(wf.name, matched, detail, validate_acyclic(wf.jobs.values()), instances, schedules)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def report(path):
    """Summarise a saved JSON run report; exit status mirrors the run."""
    console = get_console()
    try:
        saved = RunReport.load(path)
    except (ValueError, OSError) as e:
        console.print_error("Unreadable report", f"Could not read run report from {path}", details=[str(e)])
        sys.exit(EXIT_INVALID)
    console.print_info(f"Workflow: {saved.workflow} ({saved.event})")
    console.print_results(saved)
    sys.exit(EXIT_OK if saved.succeeded else EXIT_FAILED)


def main() -> None:
    try:
        cli(obj={})
    except JobgraphError as e:
        get_console().print_exception(e)
        sys.exit(EXIT_FAILED)


if __name__ == "__main__":
    main()
