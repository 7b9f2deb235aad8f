# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Dict, List, Optional

from .filters import FilterRules


class RefKind(str, Enum):
    BRANCH = "branch"
    TAG = "tag"


@dataclass(frozen=True)
class TriggerContext:
    """The ref a pipeline run was started for. Immutable for the run."""
    ref_name: str
    ref_kind: RefKind = RefKind.BRANCH

    @classmethod
    def branch(cls, name: str) -> TriggerContext:
        return cls(ref_name=name, ref_kind=RefKind.BRANCH)

    @classmethod
    def tag(cls, name: str) -> TriggerContext:
        return cls(ref_name=name, ref_kind=RefKind.TAG)


@dataclass(frozen=True)
class CachePolicy:
    key: str = "default"
    paths: tuple[str, ...] = ()


ARTIFACT_WHEN = ("on_success", "on_failure", "always")


@dataclass(frozen=True)
class ArtifactPolicy:
    paths: tuple[str, ...] = ()
    name: str = "$CI_JOB_NAME"
    expire_in: Optional[timedelta] = None   # None = kept forever
    when: str = "on_success"

    def applies_to(self, succeeded: bool) -> bool:
        if self.when == "always":
            return True
        if self.when == "on_failure":
            return not succeeded
        return succeeded


@dataclass(frozen=True)
class MatrixAxis:
    """One variant axis, e.g. name='image', values=('rust:stable', 'rust:beta')."""
    name: str
    values: tuple[str, ...]


@dataclass
class JobSpec:
    """
    A concrete, fully merged job from the descriptor.

    Templates have already been folded in by the parser; nothing here refers
    back to a template.
    """
    name: str
    stage: str
    script: List[str]
    before_script: List[str] = field(default_factory=list)
    image: Optional[str] = None
    matrix: Optional[MatrixAxis] = None
    filters: FilterRules = field(default_factory=FilterRules)
    artifacts: Optional[ArtifactPolicy] = None
    tags: List[str] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)
    cache: Optional[CachePolicy] = None
    allow_failure: bool = False


@dataclass
class PipelineDocument:
    stages: List[str]
    jobs: Dict[str, JobSpec] = field(default_factory=dict)
    templates: Dict[str, dict] = field(default_factory=dict)
    variables: Dict[str, str] = field(default_factory=dict)
    cache: Optional[CachePolicy] = None
    source: Optional[str] = None


@dataclass(frozen=True, eq=False)
class ExpandedJob:
    """
    One schedulable unit: a JobSpec combined with one matrix axis value.

    Identity is (source job name, axis value); `name` is the unique display
    name used in logs, results and artifact names.
    """
    name: str
    spec: JobSpec
    axis_value: Optional[str] = None
    image: Optional[str] = None
    variables: Dict[str, str] = field(default_factory=dict)

    @property
    def identity(self) -> tuple[str, Optional[str]]:
        return (self.spec.name, self.axis_value)

    @property
    def stage(self) -> str:
        return self.spec.stage

    @property
    def script(self) -> List[str]:
        return self.spec.script

    @property
    def before_script(self) -> List[str]:
        return self.spec.before_script

    @property
    def tags(self) -> List[str]:
        return self.spec.tags

    @property
    def allow_failure(self) -> bool:
        return self.spec.allow_failure


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self not in (JobState.PENDING, JobState.RUNNING)


class PipelineState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass
class JobResult:
    job: str
    stage: str
    state: JobState
    exit_code: Optional[int] = None
    log: str = ""
    failed_step: Optional[str] = None
    reason: Optional[str] = None
    cache: Optional[str] = None        # human readable cache outcome
    artifact: Optional[str] = None     # artifact name, if one was stored
    duration: float = 0.0


@dataclass
class PipelineResult:
    state: PipelineState
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    allowed_failures: List[str] = field(default_factory=list)
    failed_stage: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.SUCCEEDED

    def by_state(self, state: JobState) -> List[str]:
        return [name for name, r in self.jobs.items() if r.state == state]
