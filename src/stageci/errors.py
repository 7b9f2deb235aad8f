# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class StageCIError(Exception):
    """Base class for every error raised by the engine."""


@dataclass
class SchemaError(StageCIError):
    """
    The descriptor is malformed or inconsistent.

    Always fatal and always raised before any job runs.
    """
    message: str
    location: str | None = None

    def __str__(self) -> str:
        if self.location:
            return f"{self.location}: {self.message}"
        return self.message


@dataclass
class ExpansionError(StageCIError):
    """A job could not be expanded into concrete instances (e.g. empty matrix axis)."""
    job: str
    message: str

    def __str__(self) -> str:
        return f"[{self.job}] {self.message}"


@dataclass
class JobFailure(StageCIError):
    """
    A step exited non-zero. Local to the job: the scheduler turns it into
    a terminal `failed` state, it never crashes the engine.
    """
    job: str
    stage: str
    step: str | None
    exit_code: int
    log_tail: str = ""
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"[{self.job}] failed in stage '{self.stage}' (exit={self.exit_code})"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class ArtifactNotFound(StageCIError):
    """Artifact is missing or past its retention. Non-fatal."""
    name: str
    reason: str

    def __str__(self) -> str:
        return f"artifact '{self.name}' not available: {self.reason}"
