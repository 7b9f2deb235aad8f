from __future__ import annotations

import threading

import pytest

from stageci.errors import SchemaError
from stageci.model import (
    ExpandedJob,
    JobResult,
    JobSpec,
    JobState,
    PipelineDocument,
    PipelineState,
)
from stageci.scheduler import PipelineRun, stage_levels, validate_stages


def make_job(name, stage, allow_failure=False):
    return ExpandedJob(name=name, spec=JobSpec(name=name, stage=stage, script=["x"], allow_failure=allow_failure))


class FakeRunner:
    """Records call order; jobs listed in `fail` end failed."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, job, cancel_event):
        with self._lock:
            self.calls.append(job.name)
        state = JobState.FAILED if job.name in self.fail else JobState.SUCCEEDED
        return JobResult(job=job.name, stage=job.stage, state=state, exit_code=1 if job.name in self.fail else 0)


DOC = PipelineDocument(stages=["a", "b", "c"])


def test_stages_run_in_declaration_order():
    jobs = [make_job("c1", "c"), make_job("a1", "a"), make_job("b1", "b"), make_job("a2", "a")]
    runner = FakeRunner()

    result = PipelineRun(DOC, jobs, runner, max_workers=1).run()

    assert result.state == PipelineState.SUCCEEDED
    assert set(runner.calls[:2]) == {"a1", "a2"}
    assert runner.calls[2:] == ["b1", "c1"]
    assert list(result.jobs) == ["c1", "a1", "b1", "a2"]


def test_failure_in_first_stage_blocks_later_stages():
    jobs = [make_job("a1", "a"), make_job("a2", "a"), make_job("b1", "b"), make_job("c1", "c")]
    runner = FakeRunner(fail={"a1"})

    result = PipelineRun(DOC, jobs, runner).run()

    assert result.state == PipelineState.FAILED
    assert result.failed_stage == "a"
    assert sorted(runner.calls) == ["a1", "a2"]
    assert result.jobs["a2"].state == JobState.SUCCEEDED
    assert result.jobs["b1"].state == JobState.SKIPPED
    assert result.jobs["c1"].state == JobState.SKIPPED


def test_allowed_failure_does_not_block():
    jobs = [make_job("a1", "a", allow_failure=True), make_job("b1", "b")]
    runner = FakeRunner(fail={"a1"})

    result = PipelineRun(DOC, jobs, runner).run()

    assert result.state == PipelineState.SUCCEEDED
    assert result.allowed_failures == ["a1"]
    assert result.jobs["a1"].state == JobState.FAILED
    assert runner.calls[-1] == "b1"


def test_runner_exception_is_a_job_failure_not_a_crash():
    def boom(job, cancel_event):
        raise OSError("disk full")

    result = PipelineRun(DOC, [make_job("a1", "a")], boom).run()

    assert result.state == PipelineState.FAILED
    assert result.jobs["a1"].state == JobState.FAILED
    assert "disk full" in result.jobs["a1"].reason


def test_undeclared_stage_rejects_whole_pipeline():
    runner = FakeRunner()
    jobs = [make_job("a1", "a"), make_job("x1", "nope")]

    with pytest.raises(SchemaError, match="nope"):
        PipelineRun(DOC, jobs, runner)
    with pytest.raises(SchemaError):
        validate_stages(DOC, jobs)
    assert runner.calls == []


def test_duplicate_names_rejected():
    with pytest.raises(SchemaError, match="duplicate"):
        PipelineRun(DOC, [make_job("a1", "a"), make_job("a1", "b")], FakeRunner())


def test_stage_levels_keeps_empty_stages():
    levels = stage_levels(DOC, [make_job("b1", "b")])
    assert [(s, [j.name for j in js]) for s, js in levels] == [("a", []), ("b", ["b1"]), ("c", [])]


def test_cancel_during_stage():
    started = threading.Event()

    def runner(job, cancel_event):
        if job.name == "slow":
            started.set()
            cancel_event.wait(timeout=10)
            return JobResult(job=job.name, stage=job.stage, state=JobState.CANCELED)
        return JobResult(job=job.name, stage=job.stage, state=JobState.SUCCEEDED)

    jobs = [make_job("slow", "a"), make_job("next", "b")]
    run = PipelineRun(DOC, jobs, runner, max_workers=2)

    t = threading.Thread(target=lambda: (started.wait(timeout=10), run.cancel()))
    t.start()
    result = run.run()
    t.join()

    assert result.state == PipelineState.CANCELED
    assert result.jobs["slow"].state == JobState.CANCELED
    assert result.jobs["next"].state == JobState.CANCELED
    assert result.by_state(JobState.SUCCEEDED) == []


def test_cancel_leaves_terminal_jobs_alone():
    gate = threading.Event()

    def runner(job, cancel_event):
        if job.name == "slow":
            gate.set()
            cancel_event.wait(timeout=10)
            return JobResult(job=job.name, stage=job.stage, state=JobState.CANCELED)
        return JobResult(job=job.name, stage=job.stage, state=JobState.SUCCEEDED)

    jobs = [make_job("fast", "a"), make_job("slow", "b"), make_job("later", "c")]
    run = PipelineRun(DOC, jobs, runner)

    t = threading.Thread(target=lambda: (gate.wait(timeout=10), run.cancel()))
    t.start()
    result = run.run()
    t.join()

    assert result.jobs["fast"].state == JobState.SUCCEEDED
    assert result.jobs["slow"].state == JobState.CANCELED
    assert result.jobs["later"].state == JobState.CANCELED


def test_cancel_before_run_runs_nothing():
    runner = FakeRunner()
    run = PipelineRun(DOC, [make_job("a1", "a")], runner)
    run.cancel()

    result = run.run()

    assert runner.calls == []
    assert result.state == PipelineState.CANCELED
    assert result.jobs["a1"].state == JobState.CANCELED


def test_run_twice_is_an_error():
    run = PipelineRun(DOC, [make_job("a1", "a")], FakeRunner())
    run.run()
    with pytest.raises(RuntimeError):
        run.run()
