# runner.py
from __future__ import annotations

import tarfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .artifacts import ArtifactStore
from .cache import CacheStore, resolve_cache_key
from .errors import JobFailure
from .executor import Executor, ShellExecutor
from .expander import expand_pipeline
from .filters import Selection, select_jobs
from .model import ExpandedJob, JobResult, JobState, PipelineDocument, PipelineResult, TriggerContext
from .parser import load_pipeline
from .scheduler import PipelineRun, validate_stages
from .ui.console import get_console
from .variables import expand, job_variables


@dataclass
class Plan:
    """Everything decided before the first job runs."""
    document: PipelineDocument
    jobs: List[ExpandedJob]
    selection: Selection

    @property
    def included(self) -> List[ExpandedJob]:
        return self.selection.included


def plan_pipeline(
    source: str | Path | PipelineDocument,
    ctx: TriggerContext,
    *,
    print_plan: bool = False,
) -> Plan:
    """
    Parse, expand, filter and validate.

    Raises SchemaError / ExpansionError; nothing has run at that point.
    """
    doc = source if isinstance(source, PipelineDocument) else load_pipeline(source)
    jobs = expand_pipeline(doc)
    validate_stages(doc, jobs)
    if print_plan:
        get_console().print_header(f"Plan for {ctx.ref_name}")
    selection = select_jobs(jobs, ctx, print_plan=print_plan)
    return Plan(document=doc, jobs=jobs, selection=selection)


# ----------------------------------------------------------------------
# One job: cache restore -> executor -> cache save -> artifacts
# ----------------------------------------------------------------------

def run_job(
    job: ExpandedJob,
    ctx: TriggerContext,
    *,
    workspace: Path,
    executor: Executor,
    cache: CacheStore,
    artifacts: ArtifactStore,
    cancel_event: Optional[threading.Event] = None,
) -> JobResult:
    console = get_console()
    started = time.monotonic()
    console.print_job_start(job.name, job.image)

    if not executor.supports(job.tags):
        reason = f"no executor offers tags {sorted(job.tags)} (executor '{executor.name}' has {sorted(executor.tags or [])})"
        failure = JobFailure(job=job.name, stage=job.stage, step=None, exit_code=1, details={"reason": reason})
        console.print_failure(failure, allowed=job.allow_failure)
        return JobResult(job=job.name, stage=job.stage, state=JobState.FAILED, exit_code=1, reason=reason)

    variables = job_variables(job, ctx, project_dir=workspace)

    # ---- restore ----
    policy = job.spec.cache
    cache_key: Optional[str] = None
    cache_note: Optional[str] = None
    if policy is not None and policy.paths:
        cache_key = resolve_cache_key(policy, job, ctx)
        hit = cache.restore(cache_key, workspace=workspace)
        if hit.hit:
            console.print_cache_hit(job.name, cache_key)
        else:
            console.print_cache_miss(job.name, cache_key, hit.reason)
        cache_note = f"{'hit' if hit.hit else 'miss'}:{cache_key}"

    # ---- run ----
    execution = executor.execute(job, workspace, variables, cancel_event)
    duration = time.monotonic() - started

    if execution.canceled:
        console.print_canceled(job.name)
        return JobResult(
            job=job.name,
            stage=job.stage,
            state=JobState.CANCELED,
            exit_code=execution.exit_code,
            log=execution.log,
            failed_step=execution.failed_step,
            reason="canceled",
            cache=cache_note,
            duration=duration,
        )

    succeeded = execution.succeeded

    # ---- save ----
    if succeeded and cache_key is not None:
        try:
            entry = cache.save(cache_key, [expand(p, variables) for p in policy.paths], workspace=workspace, job=job.name)
        except (OSError, ValueError, tarfile.TarError) as e:
            console.print_cache_warning(job.name, cache_key, f"save failed: {e}")
            cache_note = f"save-failed:{cache_key}"
        else:
            console.print_cache_saved(job.name, cache_key, len(entry.files))
            cache_note = f"saved:{cache_key}"

    # ---- artifacts ----
    artifact_name: Optional[str] = None
    art = job.spec.artifacts
    if art is not None and art.paths and art.applies_to(succeeded):
        artifact_name = expand(art.name, variables)
        record = artifacts.put(
            artifact_name,
            [expand(p, variables) for p in art.paths],
            workspace=workspace,
            expire_in=art.expire_in,
            job=job.name,
            stage=job.stage,
        )
        console.print_artifact_saved(
            job.name,
            artifact_name,
            len(record.files),
            record.expires_at.isoformat() if record.expires_at else None,
        )

    result = JobResult(
        job=job.name,
        stage=job.stage,
        state=JobState.SUCCEEDED if succeeded else JobState.FAILED,
        exit_code=execution.exit_code,
        log=execution.log,
        failed_step=execution.failed_step,
        cache=cache_note,
        artifact=artifact_name,
        duration=duration,
    )

    if not succeeded:
        failure = JobFailure(
            job=job.name,
            stage=job.stage,
            step=execution.failed_step,
            exit_code=execution.exit_code,
            log_tail=execution.log_tail,
            details={"phase": execution.phase} if execution.phase else {},
        )
        result.reason = str(failure)
        console.print_failure(failure, execution.log_tail, allowed=job.allow_failure)

    return result


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def start_pipeline(
    source: str | Path | PipelineDocument,
    ctx: TriggerContext,
    *,
    workspace: str | Path = ".",
    cache: CacheStore | None = None,
    artifacts: ArtifactStore | None = None,
    executor: Executor | None = None,
    max_workers: int | None = None,
    print_plan: bool = True,
) -> PipelineRun:
    """
    Plan a pipeline and return the (not yet started) run.

    Useful when the caller needs the handle, e.g. to cancel from another thread.
    """
    plan = plan_pipeline(source, ctx, print_plan=print_plan)

    workspace_p = Path(workspace).resolve()
    cache = cache if cache is not None else CacheStore(workspace_p / ".stageci" / "cache")
    artifacts = artifacts if artifacts is not None else ArtifactStore(workspace_p / ".stageci" / "artifacts")
    executor = executor if executor is not None else ShellExecutor()

    def _job_runner(job: ExpandedJob, cancel_event: threading.Event) -> JobResult:
        return run_job(
            job,
            ctx,
            workspace=workspace_p,
            executor=executor,
            cache=cache,
            artifacts=artifacts,
            cancel_event=cancel_event,
        )

    return PipelineRun(plan.document, plan.included, _job_runner, max_workers=max_workers)


def run_pipeline(
    source: str | Path | PipelineDocument,
    ctx: TriggerContext,
    **kwargs,
) -> PipelineResult:
    """Plan and run a pipeline to completion."""
    return start_pipeline(source, ctx, **kwargs).run()
