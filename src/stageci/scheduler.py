# scheduler.py
from __future__ import annotations

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .errors import SchemaError
from .model import (
    ExpandedJob,
    JobResult,
    JobState,
    PipelineDocument,
    PipelineResult,
    PipelineState,
)
from .ui.console import get_console

JobRunner = Callable[[ExpandedJob, threading.Event], JobResult]


def validate_stages(doc: PipelineDocument, jobs: Iterable[ExpandedJob]) -> None:
    """Reject the whole pipeline if any job sits in an undeclared stage."""
    declared = set(doc.stages)
    bad = sorted({f"{j.name} -> {j.stage}" for j in jobs if j.stage not in declared})
    if bad:
        raise SchemaError(f"jobs reference undeclared stages: {bad}; declared: {doc.stages}")


def stage_levels(doc: PipelineDocument, jobs: Iterable[ExpandedJob]) -> List[Tuple[str, List[ExpandedJob]]]:
    """
    Group jobs by stage, in stage declaration order.
    Each level can run in parallel.
    """
    by_stage: Dict[str, List[ExpandedJob]] = {s: [] for s in doc.stages}
    for j in jobs:
        by_stage[j.stage].append(j)
    return [(s, by_stage[s]) for s in doc.stages]


class PipelineRun:
    """
    Scheduler for one pipeline run.

    Run state:  pending -> running -> succeeded | failed | canceled
    Job state:  pending -> running -> succeeded | failed | canceled
                pending -> skipped     (an earlier stage blocked advancement)
                pending -> canceled    (cancel before the job started)

    Stages run strictly in order. All jobs of a stage are submitted together
    and the next stage starts only once every one of them is terminal. A
    failure without allow_failure stops advancement. No retries.
    """

    def __init__(
        self,
        document: PipelineDocument,
        jobs: List[ExpandedJob],
        run_job: JobRunner,
        *,
        max_workers: int | None = None,
    ):
        jobs = list(jobs)
        validate_stages(document, jobs)

        names = [j.name for j in jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise SchemaError(f"duplicate job names: {dupes}")

        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)

        self.document = document
        self.jobs = jobs
        self.run_job = run_job
        self.max_workers = max_workers

        self.state = PipelineState.PENDING
        self.job_states: Dict[str, JobState] = {n: JobState.PENDING for n in names}
        self.results: Dict[str, JobResult] = {}

        self._cancel = threading.Event()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """
        Stop the run: no further stage starts, pending jobs become canceled,
        running jobs are signaled through the shared cancel event. Terminal
        jobs keep their state.
        """
        with self._lock:
            if self.state not in (PipelineState.PENDING, PipelineState.RUNNING):
                return
            self._cancel.set()
            for name, state in self.job_states.items():
                if state == JobState.PENDING:
                    self.job_states[name] = JobState.CANCELED
                    self.results[name] = self._placeholder(name, JobState.CANCELED, "canceled before start")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _job(self, name: str) -> ExpandedJob:
        return next(j for j in self.jobs if j.name == name)

    def _placeholder(self, name: str, state: JobState, reason: str) -> JobResult:
        return JobResult(job=name, stage=self._job(name).stage, state=state, reason=reason)

    def _execute(self, job: ExpandedJob) -> JobResult:
        with self._lock:
            if self.job_states[job.name] != JobState.PENDING:
                return self.results[job.name]
            self.job_states[job.name] = JobState.RUNNING

        try:
            result = self.run_job(job, self._cancel)
        except Exception as e:
            result = JobResult(job=job.name, stage=job.stage, state=JobState.FAILED, reason=f"{type(e).__name__}: {e}")

        with self._lock:
            self.job_states[job.name] = result.state
            self.results[job.name] = result
        return result

    def _collect(self, fut: Future, job: ExpandedJob, seen: Set[str]) -> None:
        if job.name in seen:
            return
        seen.add(job.name)
        result = fut.result()
        get_console().print_job_finished(result)

    def _run_stage(self, stage_jobs: List[ExpandedJob]) -> None:
        console = get_console()
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {pool.submit(self._execute, j): j for j in stage_jobs}
            seen: Set[str] = set()
            try:
                for fut in as_completed(futures):
                    self._collect(fut, futures[fut], seen)
            except KeyboardInterrupt:
                console.print_info("\nInterrupt received, canceling pipeline...")
                self.cancel()
                for fut, j in futures.items():
                    self._collect(fut, j, seen)

    def run(self) -> PipelineResult:
        console = get_console()
        with self._lock:
            if self.state != PipelineState.PENDING:
                raise RuntimeError(f"pipeline run already {self.state.value}")
            self.state = PipelineState.RUNNING

        blocked_at: Optional[str] = None
        allowed: List[str] = []

        for stage, stage_jobs in stage_levels(self.document, self.jobs):
            if not stage_jobs:
                continue

            if self._cancel.is_set():
                console.print_stage_skipped(stage, "pipeline canceled")
                continue

            if blocked_at is not None:
                console.print_stage_skipped(stage, f"stage '{blocked_at}' failed")
                with self._lock:
                    for j in stage_jobs:
                        self.job_states[j.name] = JobState.SKIPPED
                        self.results[j.name] = self._placeholder(j.name, JobState.SKIPPED, f"stage '{blocked_at}' failed")
                continue

            console.print_stage(stage, [j.name for j in stage_jobs])
            self._run_stage(stage_jobs)

            for j in stage_jobs:
                if self.job_states[j.name] != JobState.FAILED:
                    continue
                if j.allow_failure:
                    allowed.append(j.name)
                elif blocked_at is None:
                    blocked_at = stage

        with self._lock:
            if self._cancel.is_set():
                self.state = PipelineState.CANCELED
            elif blocked_at is not None:
                self.state = PipelineState.FAILED
            else:
                self.state = PipelineState.SUCCEEDED

        result = PipelineResult(
            state=self.state,
            jobs={j.name: self.results[j.name] for j in self.jobs},
            allowed_failures=allowed,
            failed_stage=blocked_at,
        )
        console.print_results(result)
        return result
