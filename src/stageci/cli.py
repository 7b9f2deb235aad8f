# cli.py
from __future__ import annotations

import shutil
import subprocess
import sys
from pathlib import Path

import click

from stageci import settings
from stageci.artifacts import ArtifactStore
from stageci.cache import CacheStore
from stageci.errors import ArtifactNotFound, ExpansionError, SchemaError
from stageci.executor import DockerExecutor, ShellExecutor
from stageci.git_facts.git import get_current_ref
from stageci.model import JobState, PipelineState, RefKind, TriggerContext
from stageci.runner import plan_pipeline, start_pipeline
from stageci.scheduler import stage_levels
from stageci.ui.console import Console, get_console, set_console

PIPELINE_FILE_CANDIDATES = (".stageci.yml", ".stageci.yaml", ".gitlab-ci.yml")

EXIT_FAILED = 1
EXIT_SCHEMA = 2
EXIT_CANCELED = 130


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Find the pipeline descriptor from the argument, settings or defaults.

    Raises:
        SystemExit: If no descriptor can be found
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
            )
            sys.exit(EXIT_FAILED)
        return path

    candidates = [settings.PIPELINE_FILE] + [c for c in PIPELINE_FILE_CANDIDATES if c != settings.PIPELINE_FILE]
    for name in candidates:
        path = Path(name)
        if path.exists():
            return path

    console.print_error(
        "No pipeline file found",
        "Could not find a pipeline descriptor.",
        details=["Looked for:"] + [f"  {c}" for c in candidates],
        suggestion="Pass one explicitly:\n  stageci run path/to/pipeline.yml",
    )
    sys.exit(EXIT_FAILED)


def resolve_trigger(ref: str | None, is_tag: bool) -> TriggerContext:
    """Trigger from --ref/--tag, falling back to the git checkout."""
    console = get_console()
    if ref:
        return TriggerContext(ref_name=ref, ref_kind=RefKind.TAG if is_tag else RefKind.BRANCH)

    try:
        name, kind = get_current_ref()
    except (subprocess.CalledProcessError, FileNotFoundError):
        console.print_error(
            "Could not determine ref",
            "No --ref given and the current directory is not a usable git checkout.",
            suggestion="Specify the ref explicitly:\n  stageci run --ref master",
        )
        sys.exit(EXIT_FAILED)

    console.print_debug(f"Using git ref: {name} ({kind})")
    return TriggerContext(ref_name=name, ref_kind=RefKind(kind))


def _report_schema_error(e: Exception) -> None:
    title = "Invalid pipeline" if isinstance(e, SchemaError) else "Job expansion failed"
    get_console().print_error(title, str(e), suggestion="No job was started.")


ref_option = click.option("--ref", default=None, help="Branch or tag name to run for (defaults to the git checkout)")
tag_option = click.option("--tag", "is_tag", is_flag=True, default=False, help="Treat --ref as a tag")


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """stageci: stage-ordered CI pipeline runner."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("pipeline", required=False)
def validate(pipeline):
    """Parse and expand a pipeline without running anything."""
    console = get_console()
    path = discover_pipeline(pipeline)
    try:
        plan = plan_pipeline(path, TriggerContext.branch("validate"))
    except (SchemaError, ExpansionError) as e:
        _report_schema_error(e)
        sys.exit(EXIT_SCHEMA)

    doc = plan.document
    console.print_info(f"{path}: OK")
    console.print_info(f"  stages: {', '.join(doc.stages)}")
    console.print_info(f"  templates: {len(doc.templates)}")
    console.print_info(f"  jobs: {len(doc.jobs)} ({len(plan.jobs)} after matrix expansion)")


@cli.command()
@click.argument("pipeline", required=False)
@ref_option
@tag_option
def plan(pipeline, ref, is_tag):
    """Show which jobs a ref would run, stage by stage."""
    console = get_console()
    path = discover_pipeline(pipeline)
    trigger = resolve_trigger(ref, is_tag)
    try:
        result = plan_pipeline(path, trigger, print_plan=True)
    except (SchemaError, ExpansionError) as e:
        _report_schema_error(e)
        sys.exit(EXIT_SCHEMA)

    console.print_header("Stages")
    for stage, jobs in stage_levels(result.document, result.included):
        names = ", ".join(j.name for j in jobs) if jobs else "(no jobs)"
        console.print_info(f"  {stage}: {names}")


@cli.command()
@click.argument("pipeline", required=False)
@ref_option
@tag_option
@click.option("--workspace", default=".", show_default=True, help="Directory jobs run in")
@click.option("--workers", default=settings.WORKERS, type=int, help="Max parallel jobs per stage")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--artifact-dir", default=settings.ARTIFACT_DIR, show_default=True, help="Artifact directory")
@click.option(
    "--executor",
    "executor_name",
    type=click.Choice(["shell", "docker"]),
    default=settings.EXECUTOR,
    show_default=True,
    help="How job commands are run",
)
@click.option("--runner-tag", "runner_tags", multiple=True, help="Tag offered by this runner (repeatable); jobs needing other tags fail")
@click.option("--default-image", default=None, help="Image for docker jobs that do not set one")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print included/excluded jobs")
@click.pass_context
def run(ctx, pipeline, ref, is_tag, workspace, workers, cache_dir, artifact_dir, executor_name, runner_tags, default_image, print_plan):
    """Run a pipeline."""
    console = get_console()
    path = discover_pipeline(pipeline)
    trigger = resolve_trigger(ref, is_tag)

    tags = list(runner_tags) or None
    if executor_name == "docker":
        executor = DockerExecutor(tags, default_image=default_image)
    else:
        executor = ShellExecutor(tags)

    try:
        pipeline_run = start_pipeline(
            path,
            trigger,
            workspace=workspace,
            cache=CacheStore(cache_dir),
            artifacts=ArtifactStore(artifact_dir),
            executor=executor,
            max_workers=workers,
            print_plan=print_plan,
        )
    except (SchemaError, ExpansionError) as e:
        _report_schema_error(e)
        sys.exit(EXIT_SCHEMA)

    console.print_run_started(
        pipeline=path.name,
        ref=trigger.ref_name,
        ref_kind=trigger.ref_kind.value,
        job_count=len(pipeline_run.jobs),
    )

    try:
        result = pipeline_run.run()
    except KeyboardInterrupt:
        pipeline_run.cancel()
        console.print_info("\nCanceled by user")
        sys.exit(EXIT_CANCELED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if result.state == PipelineState.CANCELED:
        canceled = result.by_state(JobState.CANCELED)
        console.print_info(f"Pipeline canceled ({len(canceled)} job(s) canceled)")
        sys.exit(EXIT_CANCELED)
    if result.state == PipelineState.FAILED:
        sys.exit(EXIT_FAILED)


# ----------------------------------------------------------------------
# Artifacts
# ----------------------------------------------------------------------

@cli.group()
@click.option("--artifact-dir", default=settings.ARTIFACT_DIR, show_default=True, help="Artifact directory")
@click.pass_context
def artifacts(ctx, artifact_dir):
    """Inspect stored artifacts."""
    ctx.obj["artifacts"] = ArtifactStore(artifact_dir)


@artifacts.command("list")
@click.pass_context
def artifacts_list(ctx):
    """List artifact records, including expired ones."""
    console = get_console()
    store: ArtifactStore = ctx.obj["artifacts"]
    now = store.clock()
    records = store.records()
    if not records:
        console.print_info("No artifacts.")
        return
    for r in records:
        if r.is_expired(now):
            status = "expired"
        elif r.expires_at:
            status = f"expires {r.expires_at.isoformat()}"
        else:
            status = "kept"
        console.print_info(f"  {r.name} [{r.stage}/{r.job}] {len(r.files)} file(s), {status}")


@artifacts.command("get")
@click.argument("name")
@click.option("--output", "-o", default=None, help="Copy the archive to this path")
@click.pass_context
def artifacts_get(ctx, name, output):
    """Fetch an artifact archive by name."""
    console = get_console()
    store: ArtifactStore = ctx.obj["artifacts"]
    try:
        archive = store.get(name)
    except ArtifactNotFound as e:
        console.print_error("Artifact not available", str(e))
        try:
            record = store.metadata(name)
            console.print_info(f"Record: job={record.job} stage={record.stage} created={record.created_at.isoformat()}")
        except ArtifactNotFound:
            pass
        sys.exit(EXIT_FAILED)

    if output:
        shutil.copyfile(archive, output)
        console.print_info(f"Wrote {output}")
    else:
        console.print_info(str(archive))


@artifacts.command("expire")
@click.pass_context
def artifacts_expire(ctx):
    """Delete archives past their retention; records are kept."""
    console = get_console()
    store: ArtifactStore = ctx.obj["artifacts"]
    dropped = store.expire()
    console.print_info(f"Expired {len(dropped)} artifact(s)")
    for r in dropped:
        console.print_info(f"  {r.name}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
