from __future__ import annotations

import textwrap

from stageci.artifacts import ArtifactStore
from stageci.cache import CacheStore
from stageci.executor import ShellExecutor
from stageci.model import JobState, PipelineState, TriggerContext
from stageci.runner import plan_pipeline, run_pipeline

from conftest import RUST_MATRIX_PIPELINE, RUST_PIPELINE

PIPELINE = textwrap.dedent(
    """
    stages: [test, build, deploy]

    variables:
      OUT_DIR: $CI_PROJECT_DIR/out

    cache:
      key: $CI_BUILD_STAGE-$CI_BUILD_REF_NAME
      paths: [deps/]

    .build:
      stage: build
      before_script:
        - mkdir -p deps out
      script:
        - echo "$CI_JOB_NAME" > "$OUT_DIR/$CI_JOB_IMAGE.txt"
        - echo cached > deps/lib.txt
      artifacts:
        name: "${CI_JOB_STAGE}-${CI_JOB_NAME}"
        paths: [out/]
        expire_in: 1 week
      only: [master]
      except: [/test.*/]

    unit:
      stage: test
      script: [echo unit]

    tox:
      extends: .build
      matrix:
        image: [stable, beta]

    release:
      stage: deploy
      script: [echo deploy]
      only: [tags]
    """
)


def _stores(tmp_path):
    return CacheStore(tmp_path / "cache"), ArtifactStore(tmp_path / "artifacts")


def test_reference_scenario_master_includes_four_build_jobs(write_pipeline):
    for text in (RUST_PIPELINE, RUST_MATRIX_PIPELINE):
        plan = plan_pipeline(write_pipeline(text), TriggerContext.branch("master"))
        assert len(plan.included) == 4
        assert {j.stage for j in plan.included} == {"build"}


def test_reference_scenario_test_branch_excludes_everything(write_pipeline):
    for text in (RUST_PIPELINE, RUST_MATRIX_PIPELINE):
        plan = plan_pipeline(write_pipeline(text), TriggerContext.branch("test-branch"))
        assert plan.included == []
        assert len(plan.selection.excluded) == 4


def test_end_to_end_run(tmp_path, write_pipeline):
    path = write_pipeline(PIPELINE)
    ws = tmp_path / "ws"
    ws.mkdir()
    cache, artifacts = _stores(tmp_path)

    result = run_pipeline(
        path,
        TriggerContext.branch("master"),
        workspace=ws,
        cache=cache,
        artifacts=artifacts,
        executor=ShellExecutor(),
        max_workers=2,
    )

    assert result.state == PipelineState.SUCCEEDED
    assert list(result.jobs) == ["unit", "tox: [stable]", "tox: [beta]"]
    assert (ws / "out" / "stable.txt").read_text().strip() == "tox: [stable]"

    # both matrix jobs share the stage-scoped cache entry
    entry = cache.entry("build-master")
    assert entry is not None
    assert [f[0] for f in entry.files] == ["deps/lib.txt"]

    record = artifacts.metadata("build-tox: [beta]")
    assert record.stage == "build"
    assert "out/beta.txt" in record.files
    assert result.jobs["tox: [beta]"].artifact == "build-tox: [beta]"


def test_failed_job_saves_no_cache_and_blocks_next_stage(tmp_path, write_pipeline):
    path = write_pipeline(
        """
        stages: [build, deploy]
        cache:
          key: $CI_JOB_STAGE
          paths: [deps/]
        compile:
          stage: build
          script:
            - mkdir -p deps && echo x > deps/a
            - exit 2
          artifacts:
            paths: [deps/]
            when: on_failure
        ship:
          stage: deploy
          script: [touch shipped]
        """
    )
    ws = tmp_path / "ws"
    ws.mkdir()
    cache, artifacts = _stores(tmp_path)

    result = run_pipeline(path, TriggerContext.branch("main"), workspace=ws, cache=cache, artifacts=artifacts)

    assert result.state == PipelineState.FAILED
    assert result.failed_stage == "build"
    job = result.jobs["compile"]
    assert job.state == JobState.FAILED
    assert job.exit_code == 2
    assert job.failed_step == "exit 2"
    assert result.jobs["ship"].state == JobState.SKIPPED
    assert not (ws / "shipped").exists()
    assert cache.entry("build") is None
    # on_failure artifacts are still kept
    assert artifacts.metadata("compile").files == ["deps/a"]


def test_cache_is_restored_for_the_next_run(tmp_path, write_pipeline):
    path = write_pipeline(
        """
        stages: [build]
        cache:
          key: $CI_JOB_STAGE-$CI_COMMIT_REF_NAME
          paths: [deps/]
        compile:
          stage: build
          script:
            - 'echo "found: $(ls deps 2>/dev/null)"'
            - mkdir -p deps && touch deps/warm
        """
    )
    cache, artifacts = _stores(tmp_path)

    first_ws = tmp_path / "one"
    first_ws.mkdir()
    first = run_pipeline(path, TriggerContext.branch("main"), workspace=first_ws, cache=cache, artifacts=artifacts)
    assert "found: warm" not in first.jobs["compile"].log

    second_ws = tmp_path / "two"
    second_ws.mkdir()
    second = run_pipeline(path, TriggerContext.branch("main"), workspace=second_ws, cache=cache, artifacts=artifacts)
    assert "found: warm" in second.jobs["compile"].log
    assert second.jobs["compile"].cache == "saved:build-main"


def test_unsatisfied_tags_fail_the_job(tmp_path, write_pipeline):
    path = write_pipeline(
        """
        stages: [build]
        compile:
          stage: build
          tags: [docker]
          script: [touch ran]
        """
    )
    cache, artifacts = _stores(tmp_path)
    result = run_pipeline(
        path,
        TriggerContext.branch("main"),
        workspace=tmp_path,
        cache=cache,
        artifacts=artifacts,
        executor=ShellExecutor(tags=["linux"]),
    )
    assert result.jobs["compile"].state == JobState.FAILED
    assert "docker" in result.jobs["compile"].reason
    assert not (tmp_path / "ran").exists()


def test_tag_ref_runs_tag_only_jobs(tmp_path, write_pipeline):
    plan = plan_pipeline(write_pipeline(PIPELINE), TriggerContext.tag("v1.0"))
    assert [j.name for j in plan.included] == ["unit", "release"]


def test_cache_path_outside_workspace_does_not_fail_the_job(tmp_path, write_pipeline):
    shared = tmp_path / "shared"
    shared.mkdir()
    (shared / "f.txt").write_text("outside", encoding="utf-8")
    path = write_pipeline(
        """
        stages: [build, deploy]
        compile:
          stage: build
          cache: {key: k, paths: ['../shared']}
          artifacts: {paths: ['../shared', out.txt]}
          script: [echo ok > out.txt]
        ship:
          stage: deploy
          script: [touch shipped]
        """
    )
    ws = tmp_path / "ws"
    ws.mkdir()
    cache, artifacts = _stores(tmp_path)

    result = run_pipeline(path, TriggerContext.branch("main"), workspace=ws, cache=cache, artifacts=artifacts)

    assert result.state == PipelineState.SUCCEEDED
    assert result.jobs["compile"].state == JobState.SUCCEEDED
    assert cache.entry("k").skipped == ["../shared"]
    assert artifacts.metadata("compile").files == ["out.txt"]
    assert (ws / "shipped").exists()


def test_cache_save_error_is_only_a_warning(tmp_path, write_pipeline, monkeypatch, capsys):
    path = write_pipeline(
        """
        stages: [build]
        compile:
          stage: build
          cache: {key: k, paths: [deps/]}
          script: [mkdir -p deps]
        """
    )
    cache, artifacts = _stores(tmp_path)

    def broken_save(*args, **kwargs):
        raise OSError("No space left on device")

    monkeypatch.setattr(cache, "save", broken_save)
    result = run_pipeline(path, TriggerContext.branch("main"), workspace=tmp_path, cache=cache, artifacts=artifacts)

    assert result.state == PipelineState.SUCCEEDED
    assert result.jobs["compile"].cache == "save-failed:k"
    assert "No space left on device" in capsys.readouterr().err
