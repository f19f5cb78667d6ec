"""
CLI interface for seqjobs.

Provides commands to submit jobs, run the worker, and inspect jobs and the
queue. Configuration comes from $SEQJOBS_HOME/config.yaml (see
seqjobs.config); --config points at another file.
"""

import json
from pathlib import Path
from typing import Optional

import click

from seqjobs import __version__


def _read_json_file(path: Path) -> dict:
    try:
        data = json.loads(Path(path).read_text())
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{path} is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} must contain a JSON object")
    return data


def _require_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _store(ctx):
    from seqjobs.store import FileJobStore

    return FileJobStore(_require_config(ctx).jobs_dir)


@click.group()
@click.version_option(version=__version__, prog_name="seqjobs")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Config file to use")
@click.option("--log-level", help="Override the configured log level")
@click.pass_context
def main(ctx, config_path: Optional[Path], log_level: Optional[str]):
    """
    seqjobs - Job queue and worker for MAGUS and XTree.

    Submit jobs, run the worker, and inspect job status.
    """
    from seqjobs.config import load_config
    from seqjobs.errors import ConfigError
    from seqjobs.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except (ConfigError, FileNotFoundError) as e:
        # Commands that need config report the error themselves
        ctx.obj["config_error"] = str(e)
        return

    if log_level:
        config.log_level = log_level
    ctx.obj["config"] = config
    setup_logging(config.log_file, config.log_level, config.log_format)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Write a default config file to $SEQJOBS_HOME."""
    import yaml

    from seqjobs.config import get_seqjobs_home

    home = get_seqjobs_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = {
        "jobs_dir": "jobs",
        "lock_path": "tmp/jobs/job.lock",
        "execution_mode": "stub",
        "poll_interval": 2,
        "cleanup_interval": 3600,
        "retention_hours": 168,
        "magus_path": "magus",
        "xtree_path": "xtree",
        "timeouts": {"magus": 3600, "xtree": 1800},
        "notifier": "log",
        "log_level": "INFO",
        "log_format": "pretty",
        "env_file": ".env",
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text(
            "# EMAIL_HOST=...\n# EMAIL_PORT=587\n# EMAIL_USER=...\n"
            "# EMAIL_PASS=...\n# EMAIL_SECURE=false\n# EMAIL_FROM=...\n"
        )

    click.echo(f"Initialized seqjobs config at {cfg_path}")


@main.command("worker")
@click.option("--once", is_flag=True, help="Process at most one queued job, then exit")
@click.option("--stub/--real", "stub", default=None, help="Override the configured execution mode")
@click.pass_context
def worker(ctx, once: bool, stub: Optional[bool]):
    """Run the worker loop."""
    from seqjobs.worker import build_worker

    config = _require_config(ctx)
    if stub is not None:
        config.execution_mode = "stub" if stub else "real"

    try:
        w = build_worker(config)
    except Exception as e:
        click.echo(f"✗ Worker failed to start: {e}", err=True)
        raise SystemExit(1)

    if once:
        w.startup()
        if not w.run_once():
            click.echo("Queue is empty")
        return

    w.install_signal_handlers()
    w.run_forever()


@main.group("submit")
def submit_group():
    """Submit a job to the queue."""
    pass


def _submit(ctx, tool: str, input_file: Path, email: str, params: dict, mapping: Optional[Path] = None):
    from seqjobs.errors import SeqJobsError
    from seqjobs.submit import submit_job
    from seqjobs.utils import print_warning

    try:
        result = submit_job(_store(ctx), tool, email, params, input_file, mapping_file=mapping)
    except SeqJobsError as e:
        click.echo(f"✗ Submission rejected: {e}", err=True)
        raise SystemExit(1)

    for warning in result.warnings:
        print_warning(f"{warning.stage.value}: {warning.message} (stage disabled)")
    click.echo(f"✓ Queued job {result.job_id}")
    click.echo(f"  steps: {', '.join(result.steps)}")


@submit_group.command("magus")
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--email", required=True, help="Notification recipient")
@click.option("--workflow", "workflow_file", required=True,
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Workflow state JSON")
@click.pass_context
def submit_magus(ctx, input_file: Path, email: str, workflow_file: Path):
    """
    Submit a MAGUS workflow.

    Examples:

        seqjobs submit magus reads.fastq --email me@example.org --workflow workflow.json
    """
    _submit(ctx, "magus", input_file, email, _read_json_file(workflow_file))


@submit_group.command("xtree")
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--email", required=True, help="Notification recipient")
@click.option("--params", "params_file", required=True,
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="XTree parameters JSON")
@click.option("--mapping", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Taxonomy mapping file (BUILD mode)")
@click.pass_context
def submit_xtree(ctx, input_file: Path, email: str, params_file: Path, mapping: Optional[Path]):
    """Submit an XTree ALIGN or BUILD job."""
    _submit(ctx, "xtree", input_file, email, _read_json_file(params_file), mapping)


@main.command("status")
@click.argument("job_id")
@click.option("--transcript", is_flag=True, help="Also print the execution transcript")
@click.pass_context
def status(ctx, job_id: str, transcript: bool):
    """Show a job's metadata and status."""
    from seqjobs.errors import JobStoreError

    store = _store(ctx)
    try:
        job = store.get_job(job_id)
        current = store.get_status(job_id)
        commands = store.read_commands(job_id)
        abandoned = store.abandoned_reason(job_id)
    except JobStoreError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    shown = {"job": job.to_dict(), "status": current.to_dict()}
    if abandoned is not None:
        # Still queued on disk, but the worker will never run it
        shown["abandoned"] = abandoned
    if commands is not None:
        shown["commands"] = commands
    click.echo(json.dumps(shown, indent=2))
    if transcript:
        text = store.read_transcript(job_id)
        click.echo(text if text is not None else "(no transcript yet)")


@main.command("queue")
@click.pass_context
def queue(ctx):
    """List queued job ids, head first."""
    ids = _store(ctx).queue_snapshot()
    if not ids:
        click.echo("Queue is empty")
        return
    for position, job_id in enumerate(ids, start=1):
        click.echo(f"{position:>3}  {job_id}")


@main.command("compile")
@click.argument("params_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--tool", type=click.Choice(["magus", "xtree"]), default="magus", show_default=True)
@click.option("--input", "input_path", default="INPUT", show_default=True, help="Input path shown in argv")
@click.option("--mapping", help="Mapping path shown in argv (XTree BUILD)")
@click.pass_context
def compile_cmd(ctx, params_file: Path, tool: str, input_path: str, mapping: Optional[str]):
    """
    Show the commands a job would run, without queueing it.

    Prints dependency warnings, then one argv per step.
    """
    from seqjobs.compiler import compile_workflow, plan_magus, plan_xtree
    from seqjobs.dependencies import enforce_with_warnings
    from seqjobs.errors import CompileError
    from seqjobs.schemas import WorkflowState, XTreeParams
    from seqjobs.utils import print_warning

    params = _read_json_file(params_file)
    config = ctx.obj.get("config")
    magus_path = config.magus_path if config else "magus"
    xtree_path = config.xtree_path if config else "xtree"

    try:
        if tool == "magus":
            state, warnings = enforce_with_warnings(WorkflowState.from_dict(params))
            for warning in warnings:
                print_warning(f"{warning.stage.value}: {warning.message}")
            steps = compile_workflow(state)
            plan = plan_magus(state, Path(input_path), magus_path)
            for step, command in zip(steps, plan):
                click.echo(f"[{step.stage.value}] {step.id}")
                click.echo(f"    {command.command_line}")
        else:
            try:
                xtree_params = XTreeParams.from_dict(params)
            except ValueError as e:
                raise CompileError(f"Invalid XTree parameters: {e}") from e
            for command in plan_xtree(xtree_params, Path(input_path), xtree_path,
                                      Path(mapping) if mapping else None):
                click.echo(f"[xtree] {command.step_id}")
                click.echo(f"    {command.command_line}")
    except CompileError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


@main.command("cleanup")
@click.option("--older-than", help="Retention window such as 7d or 12h (default: configured)")
@click.option("--dry-run", is_flag=True, help="List what would be purged")
@click.pass_context
def cleanup(ctx, older_than: Optional[str], dry_run: bool):
    """Flag stale running jobs and purge expired job directories."""
    from datetime import timedelta

    from seqjobs.utils import parse_duration
    from seqjobs.worker import build_worker

    config = _require_config(ctx)
    if older_than:
        try:
            retention = parse_duration(older_than)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--older-than")
        config.retention_hours = retention / timedelta(hours=1)

    w = build_worker(config)
    if dry_run:
        expired = w.store.list_expired(timedelta(hours=config.retention_hours))
        for job_id in expired:
            click.echo(f"would purge {job_id}")
        click.echo(f"{len(expired)} job(s) past retention")
        return

    stale = w.sweep_stale()
    purged = w.sweep_expired()
    click.echo(f"✓ Flagged {len(stale)} stale job(s), purged {len(purged)} expired job(s)")


if __name__ == "__main__":
    main()
